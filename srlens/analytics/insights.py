"""
Insight generation for period comparisons.

Turns flagged gateway-level dimension analyses into short statements an
operations team can act on. Each gateway insight is cross-referenced against
the payment modes it affects (with a per-mode counterfactual SR) and carries
the top raw failure messages as evidence. At most MAX_INSIGHTS statements are
returned, highest impact first.
"""

import polars as pl

from srlens.contracts.schemas import (
    HIGH_CONFIDENCE_FAILURE_RATE,
    MAX_EVIDENCE_REASONS,
    MAX_INSIGHTS,
    PAYMENT_MODE_GROUPS,
    SR_DROP_THRESHOLD,
)
from srlens.pipeline.classify import payment_mode_group
from srlens.pipeline.stream import calculate_sr
from srlens.pipeline.transform import counterfactual_sr, value_expr

GATEWAY_DIMENSION = "PG"

_FLAG_PHRASES = {
    "VOLUME_SPIKE": "share of failures rose from {prev:.2f}% to {cur:.2f}%",
    "SR_DEGRADATION": "failure rate rose from {prev_rate:.2f}% to {cur_rate:.2f}% of all transactions",
    "FAILURE_EXPLOSION": "failures grew from {prev_n:,} to {cur_n:,}",
}


def _overall_insight(comparison) -> dict:
    current, previous = comparison.current, comparison.previous
    drop = abs(comparison.sr_delta)
    return {
        "type": "OVERALL_SR_DROP",
        "statement": (
            f"{comparison.payment_mode} SR dropped by {drop:.2f}pp, from {previous.sr:.2f}% "
            f"to {current.sr:.2f}% across {current.total:,} transactions."
        ),
        "dimension": None,
        "value": None,
        "impact": round(drop, 2),
        "confidence": "HIGH",
        "evidence": [
            f"Failed rate {previous.failed_rate:.2f}% -> {current.failed_rate:.2f}%",
        ],
        "affected_modes": [],
    }


def _mode_breakdown(current_df: pl.DataFrame, gateway_failures: pl.DataFrame) -> list[dict]:
    """Per payment-mode counterfactual SR if this gateway's failures were removed."""
    counts: dict[str, int] = {}
    for mode, n in gateway_failures.group_by("payment_mode").agg(pl.len().alias("n")).iter_rows():
        group = payment_mode_group(mode)
        if group is not None:
            counts[group] = counts.get(group, 0) + n

    rows = []
    for group, failures in sorted(counts.items(), key=lambda item: item[1], reverse=True):
        scoped = current_df.filter(pl.col("payment_mode").is_in(list(PAYMENT_MODE_GROUPS[group])))
        total = scoped.height
        success = int(scoped["is_success"].sum())
        sr = calculate_sr(success, total)
        cf = counterfactual_sr(success, total, failures)
        rows.append({
            "payment_mode": group,
            "failures": failures,
            "current_sr": sr,
            "counterfactual_sr": cf,
            "impact": round(cf - sr, 2) if cf is not None else None,
        })
    return rows


def _top_messages(gateway_failures: pl.DataFrame) -> list[str]:
    top = (
        gateway_failures.group_by(value_expr("tx_msg", "reason"))
        .agg(pl.len().alias("n"))
        .sort(["n", "reason"], descending=[True, False])
        .head(MAX_EVIDENCE_REASONS)
    )
    return [f"{reason} ({n:,})" for reason, n in top.iter_rows()]


def _gateway_insight(analysis, comparison, current_df: pl.DataFrame) -> dict:
    gateway_failures = current_df.filter(~pl.col("is_success") & (pl.col("pg") == analysis.value))
    phrase = _FLAG_PHRASES[analysis.flag_reason].format(
        prev=analysis.previous_failure_share,
        cur=analysis.current_failure_share,
        prev_rate=analysis.previous_failure_rate,
        cur_rate=analysis.current_failure_rate,
        prev_n=analysis.previous_failures,
        cur_n=analysis.current_failures,
    )
    statement = f"{analysis.value}: {phrase}."
    if analysis.counterfactual_sr is not None:
        statement += (
            f" Without these failures SR would be {analysis.counterfactual_sr:.2f}% "
            f"instead of {comparison.current.sr:.2f}% (+{analysis.impact_on_sr:.2f}pp)."
        )

    impact = analysis.impact_on_sr if analysis.impact_on_sr is not None else analysis.failure_share_delta
    return {
        "type": analysis.flag_reason,
        "statement": statement,
        "dimension": analysis.dimension,
        "value": analysis.value,
        "impact": round(abs(impact), 2),
        "confidence": "HIGH" if analysis.current_failure_rate > HIGH_CONFIDENCE_FAILURE_RATE else "MEDIUM",
        "evidence": _top_messages(gateway_failures),
        "affected_modes": _mode_breakdown(current_df, gateway_failures),
    }


def generate_insights(comparison, current_df: pl.DataFrame) -> list[dict]:
    """
    ``comparison`` is a PeriodComparison whose analyses are already computed;
    ``current_df`` is the current period scoped to the same payment mode.
    """
    insights = []
    if comparison.sr_delta <= -SR_DROP_THRESHOLD:
        insights.append(_overall_insight(comparison))

    gateways = sorted(
        comparison.flagged(GATEWAY_DIMENSION),
        key=lambda a: abs(a.impact_on_sr or 0.0),
        reverse=True,
    )[:MAX_INSIGHTS]
    for analysis in gateways:
        insights.append(_gateway_insight(analysis, comparison, current_df))

    insights.sort(key=lambda i: i["impact"], reverse=True)
    return insights[:MAX_INSIGHTS]
