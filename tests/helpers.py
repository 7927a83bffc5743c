from datetime import datetime

from srlens.contracts.schemas import Transaction
from srlens.pipeline.transform import transactions_to_frame

DAY = datetime(2025, 10, 3, 12, 0)


def tx(status="SUCCESS", when=DAY, **fields) -> Transaction:
    fields.setdefault("payment_mode", "UPI")
    return Transaction(status=status, tx_time=when, **fields)


def frame(transactions):
    return transactions_to_frame(transactions)
