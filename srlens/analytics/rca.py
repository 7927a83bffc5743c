"""
Period-over-period root-cause analysis.

Compares a current and a previous period of materialized transactions for one
payment-mode group. Dimension analysis runs over the failure subset only
(status != SUCCESS): for every value of every mode-appropriate dimension it
measures how the value's share of failures and its failure rate of total
volume moved, flags values that crossed a threshold, and estimates a
counterfactual SR with that value's failures removed.

Counterfactuals treat segments as independent: removing one value's failures
is assumed not to change anything else. They attribute, they do not prove
cause.
"""

from dataclasses import asdict, dataclass, field
from typing import Optional

import polars as pl

from srlens.analytics.insights import generate_insights
from srlens.contracts.schemas import (
    FAILURE_EXPLOSION_RATIO,
    FAILURE_RATE_DELTA_THRESHOLD,
    FAILURE_REASON_DIMENSION,
    MIN_VOLUME_SHARE_FOR_ANALYSIS,
    RCA_DIMENSIONS,
    SR_DEGRADATION_THRESHOLD,
    SR_DROP_THRESHOLD,
    VOLUME_SHARE_SPIKE_THRESHOLD,
)
from srlens.pipeline.transform import (
    PeriodMetrics,
    counterfactual_sr,
    dimension_group,
    filter_payment_mode,
    period_metrics,
    value_expr,
)

VOLUME_SPIKE = "VOLUME_SPIKE"
SR_DEGRADATION = "SR_DEGRADATION"
FAILURE_EXPLOSION = "FAILURE_EXPLOSION"

FAILURE_SPIKE = "FAILURE_SPIKE"
VOLUME_MIX = "VOLUME_MIX"
SEGMENT_DEGRADATION = "SEGMENT_DEGRADATION"
MIXED = "MIXED"


def _pct(part: float, whole: float) -> float:
    return 100.0 * part / whole if whole else 0.0


# ---------------------------------------------------------------------------
# Dimension analysis
# ---------------------------------------------------------------------------

@dataclass
class DimensionAnalysis:
    dimension: str
    value: str
    current_failures: int
    previous_failures: int
    current_failure_share: float
    previous_failure_share: float
    failure_share_delta: float
    current_failure_rate: float
    previous_failure_rate: float
    failure_rate_delta: float
    sr_delta: float
    flagged: bool = False
    flag_reason: Optional[str] = None
    counterfactual_sr: Optional[float] = None
    impact_on_sr: Optional[float] = None
    top_failure_reason: Optional[str] = None

    def to_dict(self) -> dict:
        return asdict(self)


def _failure_counts(failures: pl.DataFrame, column: str, alias: str) -> pl.DataFrame:
    return failures.group_by(value_expr(column)).agg(pl.len().cast(pl.Int64).alias(alias))


def _top_reasons(failures: pl.DataFrame, column: str) -> dict[str, str]:
    """Most frequent raw failure message per dimension value."""
    if failures.is_empty():
        return {}
    first = (
        failures.group_by([value_expr(column), value_expr("tx_msg", "reason")])
        .agg(pl.len().alias("n"))
        .sort(["n", "reason"], descending=[True, False])
        .group_by("value", maintain_order=True)
        .first()
    )
    return dict(zip(first["value"].to_list(), first["reason"].to_list()))


def _flag(dimension: str, analysis: DimensionAnalysis) -> Optional[str]:
    # Later checks overwrite earlier ones
    reason = None
    share_ok = analysis.current_failure_share >= MIN_VOLUME_SHARE_FOR_ANALYSIS
    if analysis.failure_share_delta > VOLUME_SHARE_SPIKE_THRESHOLD and share_ok:
        reason = VOLUME_SPIKE
    if (
        analysis.failure_rate_delta > FAILURE_RATE_DELTA_THRESHOLD
        and analysis.current_failure_rate >= MIN_VOLUME_SHARE_FOR_ANALYSIS
    ):
        reason = SR_DEGRADATION
    if (
        dimension == FAILURE_REASON_DIMENSION
        and analysis.previous_failures > 0
        and analysis.current_failures > FAILURE_EXPLOSION_RATIO * analysis.previous_failures
        and share_ok
    ):
        reason = FAILURE_EXPLOSION
    return reason


def analyze_dimensions(
    current_df: pl.DataFrame,
    previous_df: pl.DataFrame,
    payment_mode: str,
    current: PeriodMetrics,
    previous: PeriodMetrics,
) -> list[DimensionAnalysis]:
    """Both frames must already be scoped to ``payment_mode``."""
    current_failures = current_df.filter(~pl.col("is_success"))
    previous_failures = previous_df.filter(~pl.col("is_success"))
    total_current = current_failures.height
    total_previous = previous_failures.height

    analyses = []
    for dimension, column in RCA_DIMENSIONS[dimension_group(payment_mode)].items():
        merged = (
            _failure_counts(current_failures, column, "current")
            .join(_failure_counts(previous_failures, column, "previous"), on="value", how="full", coalesce=True)
            .with_columns(pl.col("current").fill_null(0), pl.col("previous").fill_null(0))
            .sort(["current", "previous", "value"], descending=[True, True, False])
        )
        reasons = {} if dimension == FAILURE_REASON_DIMENSION else _top_reasons(current_failures, column)

        for row in merged.iter_rows(named=True):
            cur, prev = int(row["current"]), int(row["previous"])
            share_cur = _pct(cur, total_current)
            share_prev = _pct(prev, total_previous)
            rate_cur = _pct(cur, current.total)
            rate_prev = _pct(prev, previous.total)
            analysis = DimensionAnalysis(
                dimension=dimension,
                value=row["value"],
                current_failures=cur,
                previous_failures=prev,
                current_failure_share=round(share_cur, 2),
                previous_failure_share=round(share_prev, 2),
                failure_share_delta=round(share_cur - share_prev, 2),
                current_failure_rate=round(rate_cur, 2),
                previous_failure_rate=round(rate_prev, 2),
                failure_rate_delta=round(rate_cur - rate_prev, 2),
                sr_delta=round(rate_prev - rate_cur, 2),
                top_failure_reason=reasons.get(row["value"]),
            )
            analysis.flag_reason = _flag(dimension, analysis)
            analysis.flagged = analysis.flag_reason is not None
            if analysis.flagged and cur > 0:
                cf = counterfactual_sr(current.success, current.total, cur)
                if cf is not None:
                    analysis.counterfactual_sr = cf
                    analysis.impact_on_sr = round(cf - current.sr, 2)
            analyses.append(analysis)
    return analyses


# ---------------------------------------------------------------------------
# Classification
# ---------------------------------------------------------------------------

def sr_movement(sr_delta: float) -> str:
    if sr_delta < -SR_DROP_THRESHOLD:
        return "SR_DROP"
    if sr_delta > SR_DROP_THRESHOLD:
        return "SR_IMPROVEMENT"
    return "NO_SIGNIFICANT_CHANGE"


def determine_primary_cause(
    current: PeriodMetrics, previous: PeriodMetrics, analyses: list[DimensionAnalysis]
) -> str:
    """
    FAILURE_SPIKE, VOLUME_MIX or SEGMENT_DEGRADATION when exactly one of those
    conditions holds; MIXED when several or none do. No condition outranks
    another, so a failure spike that coincides with a volume shift is MIXED.
    """
    conditions = []
    if current.failed_rate > previous.failed_rate + FAILURE_RATE_DELTA_THRESHOLD:
        conditions.append(FAILURE_SPIKE)
    if any(
        a.failure_share_delta > VOLUME_SHARE_SPIKE_THRESHOLD
        and a.current_failure_share >= MIN_VOLUME_SHARE_FOR_ANALYSIS
        for a in analyses
    ):
        conditions.append(VOLUME_MIX)
    if any(a.sr_delta < -SR_DEGRADATION_THRESHOLD for a in analyses):
        conditions.append(SEGMENT_DEGRADATION)
    return conditions[0] if len(conditions) == 1 else MIXED


# ---------------------------------------------------------------------------
# Comparison
# ---------------------------------------------------------------------------

@dataclass
class PeriodComparison:
    payment_mode: str
    current: PeriodMetrics
    previous: PeriodMetrics
    analyses: list = field(default_factory=list)
    insights: list = field(default_factory=list)

    @property
    def sr_delta(self) -> float:
        return round(self.current.sr - self.previous.sr, 2)

    @property
    def primary_cause(self) -> str:
        return determine_primary_cause(self.current, self.previous, self.analyses)

    def flagged(self, dimension: Optional[str] = None) -> list[DimensionAnalysis]:
        return [a for a in self.analyses if a.flagged and (dimension is None or a.dimension == dimension)]

    def to_dict(self) -> dict:
        return {
            "payment_mode": self.payment_mode,
            "current": self.current.to_dict(),
            "previous": self.previous.to_dict(),
            "sr_delta": self.sr_delta,
            "sr_movement": sr_movement(self.sr_delta),
            "primary_cause": self.primary_cause,
            "dimension_analyses": [a.to_dict() for a in self.analyses],
            "insights": self.insights,
        }


def compare(current_df: pl.DataFrame, previous_df: pl.DataFrame, payment_mode: str = "ALL") -> PeriodComparison:
    """Full period comparison, insights included, for one payment-mode group."""
    payment_mode = (payment_mode or "ALL").upper()
    current_df = filter_payment_mode(current_df, payment_mode)
    previous_df = filter_payment_mode(previous_df, payment_mode)
    comparison = PeriodComparison(
        payment_mode=payment_mode,
        current=period_metrics(current_df),
        previous=period_metrics(previous_df),
    )
    comparison.analyses = analyze_dimensions(
        current_df, previous_df, payment_mode, comparison.current, comparison.previous
    )
    comparison.insights = generate_insights(comparison, current_df)
    return comparison
