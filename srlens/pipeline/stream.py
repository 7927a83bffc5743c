"""
Streaming aggregation engine.

One forward pass over an export file: every row is normalized, run through a
FilterSet and folded into a bank of GroupAggregate counters, one map per
requested Dimension, plus global counters, an overall daily trend and a
failure-reason histogram. Memory is bounded by the number of distinct
dimension values, never by the number of rows.
"""

import csv
import logging
from collections import Counter
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Iterator, Optional, Sequence, TextIO, Union

from srlens.contracts.schemas import UNKNOWN, Transaction
from srlens.errors import ValidationError
from srlens.pipeline.classify import failure_label
from srlens.pipeline.filters import FilterSet
from srlens.pipeline.normalize import build_transaction, normalize_header

logger = logging.getLogger(__name__)

REQUIRED_FIELDS = ("status", "payment_mode", "tx_time")

Source = Union[str, Path, TextIO]


def calculate_sr(success: int, total: int) -> float:
    """Success rate in percent, 2 decimals; 0.0 for an empty denominator."""
    if total <= 0:
        return 0.0
    return round(100.0 * success / total, 2)


# ---------------------------------------------------------------------------
# Counters
# ---------------------------------------------------------------------------

class StatusCounters:
    __slots__ = ("volume", "success", "failed", "user_dropped", "other", "success_gmv")

    def __init__(self):
        self.volume = 0
        self.success = 0
        self.failed = 0
        self.user_dropped = 0
        self.other = 0
        self.success_gmv = 0.0

    def add(self, tx: Transaction) -> None:
        self.volume += 1
        if tx.is_success:
            self.success += 1
            self.success_gmv += tx.tx_amount
        elif tx.is_failed:
            self.failed += 1
        elif tx.is_user_dropped:
            self.user_dropped += 1
        else:
            self.other += 1

    @property
    def sr(self) -> float:
        return calculate_sr(self.success, self.volume)

    def to_dict(self) -> dict:
        return {
            "volume": self.volume,
            "success_count": self.success,
            "failed_count": self.failed,
            "user_dropped_count": self.user_dropped,
            "other_count": self.other,
            "sr": self.sr,
            "success_gmv": round(self.success_gmv, 2),
        }


def _daily_trend(daily: dict[str, StatusCounters]) -> list[dict]:
    return [{"date": day, **daily[day].to_dict()} for day in sorted(daily)]


class GroupAggregate:
    """Counters for one dimension value, with a per-day breakdown."""

    __slots__ = ("group", "counters", "daily")

    def __init__(self, group: str):
        self.group = group
        self.counters = StatusCounters()
        self.daily: dict[str, StatusCounters] = {}

    @property
    def volume(self) -> int:
        return self.counters.volume

    def add(self, tx: Transaction) -> None:
        self.counters.add(tx)
        day = self.daily.get(tx.tx_date)
        if day is None:
            day = self.daily[tx.tx_date] = StatusCounters()
        day.add(tx)

    def to_dict(self) -> dict:
        return {"group": self.group, **self.counters.to_dict(), "daily_trend": _daily_trend(self.daily)}


@dataclass(frozen=True)
class Dimension:
    """
    A grouping key. ``order`` fixes the output order (hours, weekdays) instead
    of sorting by volume; ``exclude`` drops values from the final output only.
    """

    name: str
    key: Callable[[Transaction], Optional[str]]
    order: Optional[Sequence[str]] = None
    limit: Optional[int] = None
    exclude: frozenset = frozenset()

    def value(self, tx: Transaction) -> str:
        raw = self.key(tx)
        raw = raw.strip() if isinstance(raw, str) else raw
        return raw or UNKNOWN


def field_dimension(name: str, attribute: str, **kwargs) -> Dimension:
    return Dimension(name, lambda tx: getattr(tx, attribute), **kwargs)


@dataclass
class PassStats:
    rows_read: int = 0
    rows_skipped: int = 0
    rows_empty: int = 0
    rows_matched: int = 0
    rows_undated: int = 0

    def to_dict(self) -> dict:
        return dict(self.__dict__)


@dataclass
class AggregationResult:
    dimensions: Sequence[Dimension]
    totals: StatusCounters = field(default_factory=StatusCounters)
    daily: dict = field(default_factory=dict)
    groups: dict = field(default_factory=dict)
    failure_reasons: Counter = field(default_factory=Counter)
    stats: PassStats = field(default_factory=PassStats)

    def finalize_groups(self, dimension: Dimension) -> list[dict]:
        groups = list(self.groups.get(dimension.name, {}).values())
        if dimension.order is not None:
            rank = {value: i for i, value in enumerate(dimension.order)}
            groups.sort(key=lambda g: rank.get(g.group, len(rank)))
        else:
            # list.sort is stable, so equal volumes keep first-seen order
            groups.sort(key=lambda g: g.volume, reverse=True)
        rows = [g.to_dict() for g in groups if g.group not in dimension.exclude]
        if dimension.limit is not None:
            rows = rows[: dimension.limit]
        return rows

    def failure_breakdown(self, limit: Optional[int] = None) -> list[dict]:
        """
        Failure labels by count. ``adjusted_sr`` is the SR with that label's
        failures removed from the denominator; ``impact`` is its gain over the
        actual SR.
        """
        total = self.totals.volume
        success = self.totals.success
        current_sr = self.totals.sr
        rows = []
        for label, count in self.failure_reasons.most_common(limit):
            adjusted = calculate_sr(success, total - count)
            rows.append({
                "label": label,
                "failure_count": count,
                "failure_percent": calculate_sr(count, total),
                "adjusted_sr": adjusted,
                "impact": round(adjusted - current_sr, 2),
            })
        return rows

    def to_dict(self, failure_limit: Optional[int] = None) -> dict:
        return {
            "totals": self.totals.to_dict(),
            "daily_trend": _daily_trend(self.daily),
            "groups": {d.name: self.finalize_groups(d) for d in self.dimensions},
            "failure_reasons": self.failure_breakdown(failure_limit),
            "stats": self.stats.to_dict(),
        }


# ---------------------------------------------------------------------------
# Reading
# ---------------------------------------------------------------------------

def _open(source: Source) -> TextIO:
    # Read-only; writers on other files are never contended
    return open(source, "r", encoding="utf-8-sig", errors="replace", newline="")


def _read_rows(stream: TextIO, stats: PassStats) -> Iterator[Transaction]:
    reader = csv.reader(stream)
    headers = next(reader, None)
    if headers is None:
        return
    names = [normalize_header(h) for h in headers]
    missing = [f for f in REQUIRED_FIELDS if f not in names]
    if missing:
        raise ValidationError(
            f"export is missing required columns: {', '.join(missing)}",
            stage="aggregation",
            missing_columns=missing,
        )

    while True:
        try:
            row = next(reader)
        except StopIteration:
            return
        except csv.Error as exc:
            stats.rows_skipped += 1
            logger.debug(f"Skipping malformed row near line {reader.line_num}: {exc}")
            continue

        stats.rows_read += 1
        record: dict[str, str] = {}
        for name, value in zip(names, row):
            if not record.get(name):
                record[name] = value
        try:
            tx = build_transaction(record)
        except (TypeError, ValueError) as exc:
            stats.rows_skipped += 1
            logger.debug(f"Skipping row {reader.line_num}: {exc}")
            continue
        if tx is None:
            stats.rows_empty += 1
            continue
        yield tx


def estimate_row_count(path: Union[str, Path], sample_bytes: int = 1 << 20) -> int:
    """
    Data rows in an export, extrapolated from the line density of its first
    ``sample_bytes``. Exact (barring quoted newlines) when the file fits in
    the sample.
    """
    size = Path(path).stat().st_size
    with open(path, "rb") as fh:
        head = fh.read(sample_bytes)
    if not head:
        return 0
    lines = head.count(b"\n")
    if len(head) == size:
        if not head.endswith(b"\n"):
            lines += 1
        return max(0, lines - 1)
    if lines == 0:
        return 0
    return max(0, round(lines * size / len(head)) - 1)


def iter_transactions(source: Source, stats: Optional[PassStats] = None) -> Iterator[Transaction]:
    """
    Yield normalized transactions from a CSV export path or open text stream.

    Malformed rows are skipped and counted in ``stats``. Closing the generator
    (breaking out of the loop) closes a file this function opened.
    """
    stats = stats if stats is not None else PassStats()
    if isinstance(source, (str, Path)):
        with _open(source) as stream:
            yield from _read_rows(stream, stats)
    else:
        yield from _read_rows(source, stats)


# ---------------------------------------------------------------------------
# Aggregation pass
# ---------------------------------------------------------------------------

def aggregate(
    source: Source,
    dimensions: Sequence[Dimension] = (),
    filters: Optional[FilterSet] = None,
    scope: Optional[Callable[[Transaction], bool]] = None,
    failure_key: Callable[[Transaction], str] = failure_label,
    include_undated: bool = False,
    on_progress: Optional[Callable[[PassStats], None]] = None,
    progress_every: int = 50_000,
) -> AggregationResult:
    """
    Run one grouped aggregation pass.

    Undated rows never reach groups or daily trends. With ``include_undated``
    they still count toward the global totals and failure histogram.
    ``on_progress`` is called every ``progress_every`` rows read.
    """
    filters = filters or FilterSet()
    result = AggregationResult(dimensions=list(dimensions))
    stats = result.stats
    groups = result.groups = {d.name: {} for d in dimensions}
    next_checkpoint = progress_every

    for tx in iter_transactions(source, stats):
        if on_progress is not None and stats.rows_read >= next_checkpoint:
            on_progress(stats)
            next_checkpoint += progress_every
        if not filters.matches(tx) or (scope is not None and not scope(tx)):
            continue
        stats.rows_matched += 1

        if tx.tx_time is None:
            stats.rows_undated += 1
            if not include_undated:
                continue
        else:
            day = result.daily.get(tx.tx_date)
            if day is None:
                day = result.daily[tx.tx_date] = StatusCounters()
            day.add(tx)
            for dimension in dimensions:
                value = dimension.value(tx)
                bucket = groups[dimension.name]
                aggregate_ = bucket.get(value)
                if aggregate_ is None:
                    aggregate_ = bucket[value] = GroupAggregate(value)
                aggregate_.add(tx)

        result.totals.add(tx)
        if tx.is_failed:
            result.failure_reasons[failure_key(tx)] += 1

    logger.debug(
        f"Aggregation pass: {stats.rows_read:,} rows read, {stats.rows_matched:,} matched, "
        f"{stats.rows_skipped:,} skipped"
    )
    return result
