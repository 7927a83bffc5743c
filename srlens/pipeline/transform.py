"""
Materialized transactions -> polars frames for period analysis.

The RCA, segmentation and volume-mix code all group on the same derived
columns (flow, scope, handle, failure label, customer id), so they are
computed once here with the same classifiers the streaming views use.
"""

from dataclasses import asdict, dataclass
from typing import Iterable, Optional

import polars as pl

from srlens.contracts.schemas import (
    PAYMENT_MODE_GROUPS,
    TRANSACTION_FRAME_SCHEMA,
    UNKNOWN,
    Transaction,
)
from srlens.errors import ValidationError
from srlens.pipeline.classify import (
    classify_card_scope,
    classify_upi_flow,
    extract_upi_handle,
    failure_label,
    normalize_gateway,
)
from srlens.pipeline.stream import calculate_sr


def transactions_to_frame(transactions: Iterable[Transaction]) -> pl.DataFrame:
    columns = {name: [] for name in TRANSACTION_FRAME_SCHEMA}
    for tx in transactions:
        columns["status"].append(tx.status)
        columns["payment_mode"].append(tx.payment_mode)
        columns["merchant_id"].append(tx.merchant_id)
        columns["pg"].append(normalize_gateway(tx.pg))
        columns["bank_name"].append(tx.bank_name)
        columns["card_type"].append(tx.card_type)
        columns["card_scope"].append(classify_card_scope(tx.card_country))
        columns["processing_card_type"].append(tx.processing_card_type)
        columns["native_otp_eligible"].append(tx.native_otp_eligible)
        columns["is_frictionless"].append(tx.is_frictionless)
        columns["upi_flow"].append(classify_upi_flow(tx.bank_name))
        columns["upi_handle"].append(extract_upi_handle(tx.card_masked) or "")
        columns["upi_psp"].append(tx.upi_psp)
        columns["tx_msg"].append(tx.tx_msg)
        columns["failure_label"].append(failure_label(tx) if tx.is_failed else "")
        columns["customer_id"].append(tx.customer_id)
        columns["tx_time"].append(tx.tx_time)
        columns["tx_date"].append(tx.tx_date)
        columns["tx_amount"].append(tx.tx_amount)
        columns["is_success"].append(tx.is_success)
        columns["is_failed"].append(tx.is_failed)
        columns["is_user_dropped"].append(tx.is_user_dropped)
    return pl.DataFrame(columns, schema=TRANSACTION_FRAME_SCHEMA)


def value_expr(column: str, alias: str = "value") -> pl.Expr:
    """Dimension value with blanks collapsed to Unknown."""
    value = pl.col(column).fill_null("").str.strip_chars()
    return pl.when(value == "").then(pl.lit(UNKNOWN)).otherwise(value).alias(alias)


# ---------------------------------------------------------------------------
# Payment-mode scoping
# ---------------------------------------------------------------------------

def dimension_group(mode: str) -> str:
    """Which RCA dimension table applies to a payment-mode group."""
    mode = (mode or "ALL").upper()
    if mode not in PAYMENT_MODE_GROUPS:
        raise ValidationError(
            f"unknown payment mode '{mode}', expected one of {', '.join(PAYMENT_MODE_GROUPS)}",
            stage="rca",
            payment_mode=mode,
        )
    if mode in ("CARDS", "CREDIT_CARD", "DEBIT_CARD", "PREPAID_CARD"):
        return "CARDS"
    return mode


def filter_payment_mode(df: pl.DataFrame, mode: str) -> pl.DataFrame:
    dimension_group(mode)
    modes = PAYMENT_MODE_GROUPS[(mode or "ALL").upper()]
    if modes is None:
        return df
    return df.filter(pl.col("payment_mode").is_in(list(modes)))


# ---------------------------------------------------------------------------
# Period metrics
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class PeriodMetrics:
    total: int
    success: int
    failed: int
    user_dropped: int
    success_gmv: float

    @property
    def sr(self) -> float:
        return calculate_sr(self.success, self.total)

    @property
    def failed_rate(self) -> float:
        return calculate_sr(self.failed, self.total)

    def to_dict(self) -> dict:
        return {**asdict(self), "sr": self.sr, "failed_rate": self.failed_rate}


def period_metrics(df: pl.DataFrame) -> PeriodMetrics:
    if df.is_empty():
        return PeriodMetrics(0, 0, 0, 0, 0.0)
    row = df.select(
        pl.len().alias("total"),
        pl.col("is_success").sum().alias("success"),
        pl.col("is_failed").sum().alias("failed"),
        pl.col("is_user_dropped").sum().alias("user_dropped"),
        pl.col("tx_amount").filter(pl.col("is_success")).sum().alias("success_gmv"),
    ).row(0, named=True)
    return PeriodMetrics(
        total=int(row["total"]),
        success=int(row["success"]),
        failed=int(row["failed"]),
        user_dropped=int(row["user_dropped"]),
        success_gmv=round(float(row["success_gmv"] or 0.0), 2),
    )


def counterfactual_sr(success: int, total: int, removed_failures: int) -> Optional[float]:
    """
    SR with ``removed_failures`` taken out of the denominator, success held
    fixed. None when the adjusted denominator could not hold the successes.
    """
    adjusted_total = total - removed_failures
    if adjusted_total <= 0 or adjusted_total < success:
        return None
    return calculate_sr(success, adjusted_total)
