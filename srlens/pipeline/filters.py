"""
Filter predicate shared by every streaming pass.

Window discovery and aggregation passes both call ``FilterSet.matches``, so a
query evaluates exactly one predicate no matter how many passes it makes.
"""

from dataclasses import dataclass
from datetime import date, datetime, time
from typing import Iterable, Mapping, Optional

from srlens.contracts.schemas import Transaction
from srlens.errors import ValidationError
from srlens.pipeline.classify import classify_upi_flow, normalize_gateway
from srlens.pipeline.normalize import parse_tx_time

END_OF_DAY = time(23, 59, 59, 999_000)


def _as_set(value, name: str, upper: bool = False) -> frozenset:
    if value is None:
        return frozenset()
    if isinstance(value, str):
        value = [value]
    if not isinstance(value, (list, tuple, set, frozenset)):
        raise ValidationError(f"'{name}' must be a list of strings", stage="filters", field=name)
    items = set()
    for item in value:
        if not isinstance(item, str):
            raise ValidationError(f"'{name}' must be a list of strings", stage="filters", field=name)
        item = item.strip()
        if item:
            items.add(item.upper() if upper else item)
    return frozenset(items)


def _as_bound(value, name: str, end: bool = False) -> Optional[datetime]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, date):
        parsed = datetime.combine(value, END_OF_DAY if end else time.min)
    else:
        parsed = parse_tx_time(value)
        if parsed is None:
            raise ValidationError(f"'{name}' is not a recognised date: {value!r}", stage="filters", field=name)
        # Date-only end bounds cover the whole day
        if end and parsed.time() == time.min and len(str(value).strip()) <= 10:
            parsed = datetime.combine(parsed.date(), END_OF_DAY)
    return parsed


@dataclass(frozen=True)
class FilterSet:
    start: Optional[datetime] = None
    end: Optional[datetime] = None
    payment_modes: frozenset = frozenset()
    merchant_ids: frozenset = frozenset()
    pgs: frozenset = frozenset()
    banks: frozenset = frozenset()
    card_types: frozenset = frozenset()

    @classmethod
    def from_payload(cls, payload: Optional[Mapping]) -> "FilterSet":
        """
        Build a FilterSet from a transport payload such as
        ``{"start_date": "2025-10-01", "payment_modes": ["UPI"], ...}``.

        Raises ValidationError for unknown keys, non-list allow-lists and
        unparseable or inverted dates.
        """
        if payload is None:
            return cls()
        if not isinstance(payload, Mapping):
            raise ValidationError("filter payload must be an object", stage="filters")

        unknown = set(payload) - _PAYLOAD_KEYS
        if unknown:
            raise ValidationError(
                f"unknown filter keys: {', '.join(sorted(unknown))}", stage="filters", keys=sorted(unknown)
            )

        filters = cls(
            start=_as_bound(payload.get("start_date"), "start_date"),
            end=_as_bound(payload.get("end_date"), "end_date", end=True),
            payment_modes=_as_set(payload.get("payment_modes"), "payment_modes", upper=True),
            merchant_ids=_as_set(payload.get("merchant_ids"), "merchant_ids"),
            pgs=_as_set(payload.get("pgs"), "pgs"),
            banks=_as_set(payload.get("banks"), "banks"),
            card_types=_as_set(payload.get("card_types"), "card_types"),
        )
        if filters.start and filters.end and filters.start > filters.end:
            raise ValidationError("start_date is after end_date", stage="filters")
        return filters

    @property
    def has_date_range(self) -> bool:
        return self.start is not None or self.end is not None

    def matches(self, tx: Transaction) -> bool:
        if self.has_date_range:
            if tx.tx_time is None:
                return False
            if self.start is not None and tx.tx_time < self.start:
                return False
            if self.end is not None and tx.tx_time > self.end:
                return False
        if self.payment_modes and tx.payment_mode not in self.payment_modes:
            return False
        if self.merchant_ids and tx.merchant_id not in self.merchant_ids:
            return False
        if self.pgs and normalize_gateway(tx.pg) not in self.pgs:
            return False
        if self.banks and classify_upi_flow(tx.bank_name) not in self.banks and tx.bank_name not in self.banks:
            return False
        if self.card_types and tx.card_type not in self.card_types:
            return False
        return True

    def apply(self, transactions: Iterable[Transaction]):
        return (tx for tx in transactions if self.matches(tx))


_PAYLOAD_KEYS = {"start_date", "end_date", "payment_modes", "merchant_ids", "pgs", "banks", "card_types"}
