"""
Single-purpose passes over an export: time bounds, period windows,
materialization for RCA, capped sampling and filter-option discovery.

Every pass takes the caller's FilterSet unchanged, so the window-discovery
and materialization passes of an RCA query evaluate the same predicate.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Iterable, Optional

from srlens.contracts.schemas import Transaction
from srlens.pipeline.classify import normalize_gateway
from srlens.pipeline.filters import FilterSet
from srlens.pipeline.stream import PassStats, Source, iter_transactions

logger = logging.getLogger(__name__)

FILTER_OPTION_LIMIT = 500


# ---------------------------------------------------------------------------
# Time bounds and windows
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class TimeBounds:
    min_time: datetime
    max_time: datetime

    def to_dict(self) -> dict:
        return {"min_time": self.min_time.isoformat(), "max_time": self.max_time.isoformat()}


def discover_time_bounds(
    source: Source,
    filters: Optional[FilterSet] = None,
    statuses: Optional[Iterable[str]] = None,
    stats: Optional[PassStats] = None,
) -> Optional[TimeBounds]:
    """Min/max timestamp over filtered (and optionally status-filtered) dated rows."""
    filters = filters or FilterSet()
    status_set = {s.upper() for s in statuses} if statuses else None
    lo = hi = None
    for tx in iter_transactions(source, stats):
        if tx.tx_time is None or not filters.matches(tx):
            continue
        if status_set is not None and tx.status not in status_set:
            continue
        if lo is None or tx.tx_time < lo:
            lo = tx.tx_time
        if hi is None or tx.tx_time > hi:
            hi = tx.tx_time
    if lo is None:
        return None
    return TimeBounds(lo, hi)


@dataclass(frozen=True)
class Window:
    start: datetime
    end: datetime

    def contains(self, moment: datetime) -> bool:
        return self.start <= moment <= self.end

    def to_dict(self) -> dict:
        return {"start": self.start.isoformat(), "end": self.end.isoformat()}


def rca_windows(max_time: datetime, period_days: int) -> tuple[Window, Window]:
    """
    Current window ends at the latest transaction and spans ``period_days``.
    The previous window ends one day before the current one starts.
    """
    current = Window(max_time - timedelta(days=period_days), max_time)
    previous_end = current.start - timedelta(days=1)
    previous = Window(previous_end - timedelta(days=period_days), previous_end)
    return current, previous


def materialize_windows(
    source: Source,
    filters: FilterSet,
    current: Window,
    previous: Window,
    stats: Optional[PassStats] = None,
) -> tuple[list[Transaction], list[Transaction]]:
    """Second RCA pass: keep in-window transactions for both periods."""
    current_rows: list[Transaction] = []
    previous_rows: list[Transaction] = []
    for tx in iter_transactions(source, stats):
        if tx.tx_time is None or not filters.matches(tx):
            continue
        if current.contains(tx.tx_time):
            current_rows.append(tx)
        elif previous.contains(tx.tx_time):
            previous_rows.append(tx)
    logger.info(
        f"Materialized {len(current_rows):,} current and {len(previous_rows):,} previous transactions"
    )
    return current_rows, previous_rows


# ---------------------------------------------------------------------------
# Sampling
# ---------------------------------------------------------------------------

def sample_transactions(
    source: Source,
    filters: Optional[FilterSet] = None,
    max_rows: int = 100_000,
    stats: Optional[PassStats] = None,
) -> tuple[list[Transaction], bool]:
    """
    Up to ``max_rows`` matching transactions in file order. Reading stops as
    soon as the cap is reached; the flag says whether the cap cut it short.
    """
    filters = filters or FilterSet()
    rows: list[Transaction] = []
    if max_rows <= 0:
        return rows, True
    reader = iter_transactions(source, stats)
    truncated = False
    try:
        for tx in reader:
            if not filters.matches(tx):
                continue
            if len(rows) >= max_rows:
                truncated = True
                break
            rows.append(tx)
    finally:
        reader.close()
    return rows, truncated


# ---------------------------------------------------------------------------
# Filter options
# ---------------------------------------------------------------------------

_OPTION_FIELDS = {
    "payment_modes": lambda tx: tx.payment_mode,
    "merchant_ids": lambda tx: tx.merchant_id,
    "pgs": lambda tx: normalize_gateway(tx.pg),
    "banks": lambda tx: tx.bank_name,
    "card_types": lambda tx: tx.card_type,
}


def collect_filter_options(
    source: Source,
    filters: Optional[FilterSet] = None,
    limit: int = FILTER_OPTION_LIMIT,
) -> dict:
    """Distinct values per filterable field, capped at ``limit`` each."""
    filters = filters or FilterSet()
    values = {name: set() for name in _OPTION_FIELDS}
    truncated = {name: False for name in _OPTION_FIELDS}
    for tx in iter_transactions(source):
        if not filters.matches(tx):
            continue
        for name, getter in _OPTION_FIELDS.items():
            value = getter(tx)
            if not value or value in values[name]:
                continue
            if len(values[name]) >= limit:
                truncated[name] = True
                continue
            values[name].add(value)
    return {
        "options": {name: sorted(found) for name, found in values.items()},
        "truncated": truncated,
    }
