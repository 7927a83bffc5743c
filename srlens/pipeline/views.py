"""
Business views: which dimensions each metrics query groups by.

Each view is one streaming pass. A view is a scope (which payment modes it
covers) plus a list of Dimensions; finalization turns the pass into a JSON
payload with per-group daily trends and a failure breakdown.
"""

from dataclasses import dataclass
from typing import Callable, Optional, Sequence

from srlens.contracts.schemas import (
    AMOUNT_BUCKETS,
    CARD_MODES,
    NETBANKING_MODES,
    UNKNOWN,
    UPI_MODES,
    WEEKDAYS,
    Transaction,
)
from srlens.errors import ValidationError
from srlens.pipeline.classify import (
    classify_bank_tier,
    classify_card_scope,
    classify_upi_flow,
    extract_upi_handle,
    normalize_gateway,
)
from srlens.pipeline.filters import FilterSet
from srlens.pipeline.stream import Dimension, Source, aggregate, field_dimension


def _amount_bucket(tx: Transaction) -> str:
    for upper, label in AMOUNT_BUCKETS:
        if tx.tx_amount < upper:
            return label
    return AMOUNT_BUCKETS[-1][1]


HOURS = [f"{h:02d}:00" for h in range(24)]

GATEWAY = Dimension("pg", lambda tx: normalize_gateway(tx.pg))


@dataclass(frozen=True)
class View:
    name: str
    dimensions: Sequence[Dimension]
    scope: Optional[Callable[[Transaction], bool]] = None
    failure_limit: Optional[int] = None


VIEWS = {
    "overview": View(
        "overview",
        [
            field_dimension("payment_mode", "payment_mode"),
            GATEWAY,
            field_dimension("bank", "bank_name", limit=30),
            Dimension("hour", lambda tx: tx.tx_time.strftime("%H:00"), order=HOURS),
            Dimension("weekday", lambda tx: WEEKDAYS[tx.tx_time.weekday()], order=WEEKDAYS),
            Dimension("amount_bucket", _amount_bucket, order=[label for _, label in AMOUNT_BUCKETS]),
        ],
        failure_limit=50,
    ),
    "upi": View(
        "upi",
        [
            GATEWAY,
            Dimension("flow", lambda tx: classify_upi_flow(tx.bank_name)),
            Dimension("handle", lambda tx: extract_upi_handle(tx.card_masked), exclude=frozenset({UNKNOWN})),
            field_dimension("psp", "upi_psp"),
        ],
        scope=lambda tx: tx.payment_mode in UPI_MODES,
    ),
    "cards": View(
        "cards",
        [
            GATEWAY,
            field_dimension("card_type", "card_type"),
            Dimension("scope", lambda tx: classify_card_scope(tx.card_country)),
            field_dimension("processing_card_type", "processing_card_type"),
            field_dimension("native_otp_eligible", "native_otp_eligible"),
            field_dimension("is_frictionless", "is_frictionless"),
            field_dimension("native_otp_action", "native_otp_action"),
            field_dimension("card_par", "card_par"),
            field_dimension("cvv_present", "cvv_present"),
        ],
        scope=lambda tx: tx.payment_mode in CARD_MODES,
    ),
    "netbanking": View(
        "netbanking",
        [
            GATEWAY,
            field_dimension("bank", "bank_name"),
            Dimension("bank_tier", lambda tx: classify_bank_tier(tx.bank_name)),
        ],
        scope=lambda tx: tx.payment_mode in NETBANKING_MODES,
    ),
}


def compute_view(source: Source, view_name: str, filters: Optional[FilterSet] = None) -> dict:
    """Run the named view over ``source`` and return its payload."""
    view = VIEWS.get(view_name)
    if view is None:
        raise ValidationError(
            f"unknown view '{view_name}', expected one of {', '.join(VIEWS)}", stage="metrics", view=view_name
        )
    result = aggregate(source, view.dimensions, filters=filters, scope=view.scope)
    payload = result.to_dict(failure_limit=view.failure_limit)
    payload["view"] = view.name
    return payload
