"""
Failure-focused passes: description-level failure insights and the RCA
drill-down.

Failure insights are a two-pass query over FAILED rows. Pass 1 finds the
failed time range, which picks the comparison windows (daily halves for up
to a week of data, 7-day windows up to a month, 30-day windows beyond).
Pass 2 groups failures by (payment mode, error description) with a daily
series per group. Each group is then scored:

    spike day     count > max(median, mean) + 1.5 * stddev of the daily series
    anomaly       current-window failures > mean + 2 * stddev
    spike type    SUDDEN      new with >= 10 failures, or grew by >= 2x previous
                  GRADUAL     new with < 10 failures, or grew by >= 0.5x previous
                  RECURRING   >= 3 days above 1.5x the mean (7+ days of data)
                  PERSISTENT  last 5 days average > 1.2x mean, 4 of them above it

The drill-down takes one value of an RCA dimension in one period and shows
where its FAILED (or USER_DROPPED) transactions came from, by payment mode
and by gateway.
"""

import logging
import math
from collections import Counter
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from typing import Callable, Optional

import numpy as np

from srlens.contracts.schemas import (
    ANOMALY_STDDEV_MULTIPLIER,
    BREAKDOWN_STATUSES,
    FAILURE_REASON_DIMENSION,
    MIN_INSIGHT_FAILURES,
    SPIKE_GRADUAL,
    SPIKE_MERGE_GAP_DAYS,
    SPIKE_PERSISTENT,
    SPIKE_RECURRING,
    SPIKE_STDDEV_MULTIPLIER,
    SPIKE_SUDDEN,
    STATUS_FAILED,
    TREND_CHANGE_PERCENT,
    TREND_DECREASING,
    TREND_INCREASING,
    TREND_STABLE,
    UNKNOWN,
    UNKNOWN_ERROR,
    Transaction,
)
from srlens.errors import ValidationError
from srlens.pipeline.classify import (
    classify_card_scope,
    classify_upi_flow,
    extract_upi_handle,
    failure_category,
    failure_label,
    normalize_gateway,
)
from srlens.pipeline.filters import FilterSet
from srlens.pipeline.scans import Window, discover_time_bounds
from srlens.pipeline.stream import PassStats, Source, iter_transactions

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Insight windows
# ---------------------------------------------------------------------------

def _day_label(moment: datetime) -> str:
    return f"{moment:%b} {moment.day}"


def _long_date(day: str) -> str:
    parsed = date.fromisoformat(day)
    return f"{parsed:%b} {parsed.day}, {parsed.year}"


@dataclass(frozen=True)
class InsightWindows:
    current: Window
    previous: Window
    window_type: str

    @property
    def current_label(self) -> str:
        return f"{_day_label(self.current.start)} - {_day_label(self.current.end)}"

    @property
    def previous_label(self) -> str:
        return f"{_day_label(self.previous.start)} - {_day_label(self.previous.end)}"

    def to_dict(self) -> dict:
        return {
            "current": {**self.current.to_dict(), "label": self.current_label},
            "previous": {**self.previous.to_dict(), "label": self.previous_label},
            "window_type": self.window_type,
        }


def insight_windows(min_time: datetime, max_time: datetime) -> InsightWindows:
    """Adjacent current/previous windows sized by how many days the data spans."""
    total_days = (max_time - min_time).days + 1
    if total_days <= 7:
        window_type, window_days = "daily", max(1, total_days // 2)
    elif total_days <= 30:
        window_type, window_days = "weekly", 7
    else:
        window_type, window_days = "monthly", 30

    span = timedelta(days=window_days - 1)
    current = Window(max_time - span, max_time)
    previous_end = current.start - timedelta(days=1)
    return InsightWindows(current, Window(previous_end - span, previous_end), window_type)


# ---------------------------------------------------------------------------
# Per-group detection
# ---------------------------------------------------------------------------

@dataclass
class FailureGroup:
    payment_mode: str
    description: str
    total_volume: int = 0
    current_volume: int = 0
    previous_volume: int = 0
    daily_counts: Counter = field(default_factory=Counter)

    def series(self) -> list[tuple[str, int]]:
        return sorted(self.daily_counts.items())


def failure_description(tx: Transaction) -> str:
    return tx.cf_error_description.strip() or tx.tx_msg.strip() or UNKNOWN_ERROR


def trend_direction(current_volume: int, previous_volume: int) -> str:
    if previous_volume == 0:
        return TREND_INCREASING if current_volume > 0 else TREND_STABLE
    change = 100.0 * (current_volume - previous_volume) / previous_volume
    if change > TREND_CHANGE_PERCENT:
        return TREND_INCREASING
    if change < -TREND_CHANGE_PERCENT:
        return TREND_DECREASING
    return TREND_STABLE


def spike_threshold(counts: list[int]) -> float:
    values = np.asarray(counts, dtype=float)
    median = float(np.sort(values)[len(values) // 2])
    return max(median, float(values.mean())) + SPIKE_STDDEV_MULTIPLIER * float(values.std())


def _is_recurring(counts: list[int]) -> bool:
    if len(counts) < 7:
        return False
    mean = sum(counts) / len(counts)
    return sum(1 for c in counts if c > mean * 1.5) >= 3


def _is_persistent(counts: list[int]) -> bool:
    if len(counts) < 5:
        return False
    mean = sum(counts) / len(counts)
    recent = counts[-5:]
    return sum(recent) / len(recent) > mean * 1.2 and sum(1 for c in recent if c > mean) >= 4


def classify_spike(current_volume: int, previous_volume: int, counts: list[int]) -> Optional[str]:
    if previous_volume == 0:
        if current_volume == 0:
            return None
        return SPIKE_SUDDEN if current_volume >= 10 else SPIKE_GRADUAL
    increase = current_volume - previous_volume
    if increase >= previous_volume * 2:
        return SPIKE_SUDDEN
    if increase >= previous_volume * 0.5:
        return SPIKE_GRADUAL
    if _is_recurring(counts):
        return SPIKE_RECURRING
    if _is_persistent(counts):
        return SPIKE_PERSISTENT
    return None


def _increase_period(series: list[tuple[str, int]], index: int, baseline: float) -> tuple[str, str]:
    """Widen a peak day to the neighbouring days that stay above the baseline."""
    start = end = index
    for i in range(index - 1, -1, -1):
        count, after = series[i][1], series[i + 1][1]
        if count <= baseline or count < after * 0.5:
            break
        start = i
    for i in range(index + 1, len(series)):
        before, count = series[i - 1][1], series[i][1]
        if count <= baseline or count < before * 0.5:
            break
        end = i
    return series[start][0], series[end][0]


def _format_period(start: str, end: str) -> str:
    if start == end:
        return _long_date(start)
    return f"{_long_date(start)} - {_long_date(end)}"


def spike_period(series: list[tuple[str, int]]) -> Optional[str]:
    """
    The date range of the strongest spike. Spike days within three days of
    each other merge into one period; the period with the highest single day
    wins, the longer one on a tie. Without spike days the peak day is widened
    to its surrounding elevated days.
    """
    if not series:
        return None
    counts = [count for _, count in series]
    mean = sum(counts) / len(counts)
    median = sorted(counts)[len(counts) // 2]
    baseline = max(median, mean)
    threshold = spike_threshold(counts)

    spike_days = [(day, count) for day, count in series if count > threshold]
    if len(spike_days) <= 1:
        if spike_days:
            index = next(i for i, (day, _) in enumerate(series) if day == spike_days[0][0])
        else:
            index = counts.index(max(counts))
        return _format_period(*_increase_period(series, index, baseline))

    periods = []
    for day, count in spike_days:
        if periods and (date.fromisoformat(day) - date.fromisoformat(periods[-1][1])).days <= SPIKE_MERGE_GAP_DAYS:
            start, _, peak = periods[-1]
            periods[-1] = (start, day, max(peak, count))
        else:
            periods.append((day, day, count))

    def strength(period):
        start, end, peak = period
        return peak, (date.fromisoformat(end) - date.fromisoformat(start)).days

    best = periods[0]
    for period in periods[1:]:
        if strength(period) > strength(best):
            best = period
    return _format_period(best[0], best[1])


def _impact_score(failure_share: float, absolute_change: int, is_anomaly: bool, current_volume: int) -> float:
    score = min(failure_share * 5, 50.0)
    score += min(absolute_change / 100 * 30, 30.0)
    if is_anomaly:
        score += 20
    score += min(math.log10(current_volume + 1) * 5, 20.0)
    return round(score, 2)


def _summary(group: FailureGroup, delta: int, trend: str, spike: Optional[str], share: float) -> str:
    parts = [f'"{group.description}" failures']
    is_new = group.previous_volume == 0
    if spike == SPIKE_SUDDEN:
        parts.append(f"suddenly appeared with {group.current_volume} failures" if is_new
                     else f"suddenly increased by {delta} failures")
    elif spike == SPIKE_GRADUAL:
        parts.append(f"gradually increased to {group.current_volume} failures" if is_new
                     else f"gradually increased by {delta} failures")
    elif spike == SPIKE_RECURRING:
        parts.append("show a recurring pattern")
    elif spike == SPIKE_PERSISTENT:
        parts.append("remain persistently high")
    elif is_new:
        parts.append(f"appeared with {group.current_volume} failures")

    if trend == TREND_INCREASING:
        parts.append("and are increasing")
    elif trend == TREND_DECREASING:
        parts.append("and are decreasing")
    parts.append(f"({share:.1f}% of total failures) in {group.payment_mode}")
    return " ".join(parts)


def _recommendation(group: FailureGroup, delta: int, trend: str, spike: Optional[str], share: float) -> str:
    if share >= 10:
        return (f'High impact: investigate "{group.description}" for {group.payment_mode} first '
                f"({delta:+d} failures vs previous window).")
    if spike == SPIKE_SUDDEN:
        return f'Sudden spike: check recent changes touching {group.payment_mode} around "{group.description}".'
    if trend == TREND_INCREASING:
        return (f"Drill down by gateway and bank for {group.payment_mode} to find where "
                f'"{group.description}" is rising.')
    return f'Confirm whether "{group.description}" on {group.payment_mode} is expected or a new regression.'


def build_failure_insights(groups: list[FailureGroup], total_failures: int, windows: InsightWindows) -> list[dict]:
    """Scored insight rows, highest impact first. Groups under 5 failures or absent now are skipped."""
    insights = []
    for group in groups:
        if group.total_volume < MIN_INSIGHT_FAILURES or group.current_volume == 0:
            continue
        share = 100.0 * group.current_volume / total_failures if total_failures else 0.0
        delta = group.current_volume - group.previous_volume
        trend = trend_direction(group.current_volume, group.previous_volume)

        series = group.series()
        counts = [count for _, count in series]
        values = np.asarray(counts, dtype=float)
        is_anomaly = bool(group.current_volume > values.mean() + ANOMALY_STDDEV_MULTIPLIER * values.std())
        spike = classify_spike(group.current_volume, group.previous_volume, counts)

        insights.append({
            "payment_mode": group.payment_mode,
            "description": group.description,
            "failure_share": round(share, 2),
            "primary_spike_period": spike_period(series) or windows.current_label,
            "trend_direction": trend,
            "volume_delta": delta,
            "current_volume": group.current_volume,
            "previous_volume": group.previous_volume,
            "is_anomaly": is_anomaly,
            "spike_type": spike,
            "impact_score": _impact_score(share, abs(delta), is_anomaly, group.current_volume),
            "summary": _summary(group, delta, trend, spike, share),
            "recommendation": _recommendation(group, delta, trend, spike, share),
        })

    insights.sort(key=lambda row: -row["impact_score"])
    return insights


def failure_insights(source: Source, filters: Optional[FilterSet] = None) -> dict:
    """Two passes over the FAILED rows that match ``filters``."""
    filters = filters or FilterSet()
    bounds = discover_time_bounds(source, filters, statuses=[STATUS_FAILED])
    if bounds is None:
        return {"total_failures": 0, "windows": None, "insights": []}

    windows = insight_windows(bounds.min_time, bounds.max_time)
    groups: dict[tuple[str, str], FailureGroup] = {}
    total_failures = 0
    stats = PassStats()
    for tx in iter_transactions(source, stats):
        if not tx.is_failed or tx.tx_time is None or not filters.matches(tx):
            continue
        total_failures += 1
        mode = tx.payment_mode or "UNKNOWN"
        description = failure_description(tx)
        group = groups.get((mode, description))
        if group is None:
            group = groups[(mode, description)] = FailureGroup(mode, description)
        group.total_volume += 1
        if windows.current.contains(tx.tx_time):
            group.current_volume += 1
        if windows.previous.contains(tx.tx_time):
            group.previous_volume += 1
        group.daily_counts[tx.tx_date] += 1

    logger.info(f"Failure insights: {total_failures:,} failures in {len(groups):,} groups")
    return {
        "total_failures": total_failures,
        "windows": windows.to_dict(),
        "insights": build_failure_insights(list(groups.values()), total_failures, windows),
        "stats": stats.to_dict(),
    }


# ---------------------------------------------------------------------------
# RCA drill-down
# ---------------------------------------------------------------------------

FAILURE_CATEGORY_DIMENSION = "Failure Category"

# Dimension name -> raw value; names match the RCA dimension tables
BREAKDOWN_DIMENSIONS: dict[str, Callable[[Transaction], Optional[str]]] = {
    "Payment Mode": lambda tx: tx.payment_mode,
    "PG": lambda tx: normalize_gateway(tx.pg),
    "Flow Type": lambda tx: classify_upi_flow(tx.bank_name),
    "Handle": lambda tx: extract_upi_handle(tx.card_masked),
    "PSP": lambda tx: tx.upi_psp,
    "Card Type": lambda tx: tx.card_type,
    "Card Scope": lambda tx: classify_card_scope(tx.card_country),
    "Bank": lambda tx: tx.bank_name,
    "Processing Card Type": lambda tx: tx.processing_card_type,
    "Native OTP Eligible": lambda tx: tx.native_otp_eligible,
    "Frictionless": lambda tx: tx.is_frictionless,
    FAILURE_REASON_DIMENSION: lambda tx: tx.tx_msg,
    FAILURE_CATEGORY_DIMENSION: lambda tx: failure_category(tx).value,
    "Failure Label": failure_label,
    "CF Error Code": lambda tx: tx.cf_error_code,
    "CF Error Reason": lambda tx: tx.cf_error_reason,
    "CF Error Source": lambda tx: tx.cf_error_source,
    "CF Error Description": lambda tx: tx.cf_error_description,
    "PG Error Code": lambda tx: tx.pg_error_code,
    "PG Error Message": lambda tx: tx.pg_error_message,
}


def breakdown_value(tx: Transaction, dimension: str) -> str:
    return (BREAKDOWN_DIMENSIONS[dimension](tx) or "").strip() or UNKNOWN


def check_breakdown_request(dimension: str, analysis_type: str) -> str:
    """Validate the drill-down target; returns the normalized status."""
    if dimension not in BREAKDOWN_DIMENSIONS:
        raise ValidationError(
            f"unknown breakdown dimension {dimension!r}", stage="breakdown",
            allowed=sorted(BREAKDOWN_DIMENSIONS),
        )
    status = (analysis_type or "").strip().upper()
    if status not in BREAKDOWN_STATUSES:
        raise ValidationError(
            f"analysis type must be one of {', '.join(BREAKDOWN_STATUSES)}", stage="breakdown",
            analysis_type=analysis_type,
        )
    return status


def _distribution(counter: Counter, total: int) -> list[dict]:
    rows = [
        {"name": name, "count": count, "percent": round(100.0 * count / total, 2) if total else 0.0}
        for name, count in counter.items()
    ]
    rows.sort(key=lambda row: (-row["count"], row["name"]))
    return rows


def failure_breakdown(
    source: Source,
    filters: FilterSet,
    window: Window,
    dimension: str,
    value: str,
    analysis_type: str = STATUS_FAILED,
) -> dict:
    """Payment-mode and gateway distribution of one dimension value's failures in ``window``."""
    status = check_breakdown_request(dimension, analysis_type)
    modes: Counter = Counter()
    gateways: Counter = Counter()
    for tx in iter_transactions(source):
        if tx.status != status or tx.tx_time is None or not window.contains(tx.tx_time):
            continue
        if not filters.matches(tx) or breakdown_value(tx, dimension) != value:
            continue
        modes[tx.payment_mode or UNKNOWN] += 1
        gateways[normalize_gateway(tx.pg)] += 1

    total = sum(modes.values())
    return {
        "dimension": dimension,
        "value": value,
        "analysis_type": status,
        "window": window.to_dict(),
        "total": total,
        "payment_modes": _distribution(modes, total),
        "pgs": _distribution(gateways, total),
    }
