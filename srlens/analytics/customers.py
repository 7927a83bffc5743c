"""
Customer-behaviour segmentation for a materialized period.

Every transaction gets exactly one segment. Customers are identified by card
number, else masked card/VPA. The earliest transaction per identifier is the
first attempt; anything strictly later is a retry. USER_DROPPED status wins
over everything, retries win over value-based classification.

Also flags problematic customers: identifiers that keep retrying and almost
never succeed.
"""

from typing import Optional

import numpy as np
import polars as pl

from srlens.contracts.schemas import (
    HIGH_VALUE_PERCENTILE,
    PROBLEMATIC_MAX_RETRY_SR,
    PROBLEMATIC_MIN_RETRIES,
)
from srlens.pipeline.stream import calculate_sr
from srlens.pipeline.transform import counterfactual_sr

RETRY_CUSTOMER = "RETRY_CUSTOMER"
USER_DROPPED = "USER_DROPPED"
HIGH_VALUE = "HIGH_VALUE"
LOW_VALUE = "LOW_VALUE"
SINGLE_ATTEMPT = "SINGLE_ATTEMPT"

SEGMENT_LABELS = {
    RETRY_CUSTOMER: "Retry Customers",
    USER_DROPPED: "User Dropped",
    HIGH_VALUE: "High Value Transactions",
    LOW_VALUE: "Low Value Transactions",
    SINGLE_ATTEMPT: "Single Attempt",
}


# ---------------------------------------------------------------------------
# Classification
# ---------------------------------------------------------------------------

def high_value_threshold(df: pl.DataFrame) -> float:
    """75th-percentile amount over positive amounts (lower-index pick, no interpolation)."""
    amounts = df["tx_amount"].to_numpy()
    positive = np.sort(amounts[amounts > 0])
    if positive.size == 0:
        return 0.0
    return float(positive[int(np.floor(positive.size * HIGH_VALUE_PERCENTILE))])


def tag_customer_segments(df: pl.DataFrame, threshold: Optional[float] = None) -> pl.DataFrame:
    """
    Add 'is_retry' and 'customer_segment' columns.

    A transaction is a retry iff its timestamp is strictly later than its
    identifier's earliest timestamp, so simultaneous first attempts all count
    as first attempts.
    """
    if threshold is None:
        threshold = high_value_threshold(df)
    first_seen = pl.col("tx_time").min().over("customer_id")
    tagged = df.with_columns((pl.col("tx_time") > first_seen).fill_null(False).alias("is_retry"))
    return tagged.with_columns(
        pl.when(pl.col("is_user_dropped")).then(pl.lit(USER_DROPPED))
        .when(pl.col("is_retry")).then(pl.lit(RETRY_CUSTOMER))
        .when(pl.col("tx_amount") <= 0).then(pl.lit(SINGLE_ATTEMPT))
        .when(pl.col("tx_amount") >= threshold).then(pl.lit(HIGH_VALUE))
        .otherwise(pl.lit(LOW_VALUE))
        .alias("customer_segment")
    )


# ---------------------------------------------------------------------------
# Segment metrics
# ---------------------------------------------------------------------------

def analyze_customer_segments(df: pl.DataFrame) -> dict:
    """
    Per-segment volume, SR and impact on overall SR, most negative impact
    first. impact = (segment SR - overall SR) * segment volume / total volume.
    """
    total = df.height
    overall_success = int(df["is_success"].sum()) if total else 0
    overall_sr = calculate_sr(overall_success, total)
    threshold = high_value_threshold(df) if total else 0.0

    segments = []
    if total:
        agg = (
            tag_customer_segments(df, threshold)
            .group_by("customer_segment", maintain_order=True)
            .agg(
                pl.len().alias("volume"),
                pl.col("is_success").sum().alias("success"),
                pl.col("is_failed").sum().alias("failed"),
                pl.col("customer_id").n_unique().alias("customers"),
            )
        )
        for row in agg.iter_rows(named=True):
            sr = calculate_sr(row["success"], row["volume"])
            segments.append({
                "segment": row["customer_segment"],
                "label": SEGMENT_LABELS[row["customer_segment"]],
                "volume": row["volume"],
                "volume_share": round(100.0 * row["volume"] / total, 2),
                "success_count": row["success"],
                "failed_count": row["failed"],
                "customers": row["customers"],
                "sr": sr,
                "impact_on_sr": round((sr - overall_sr) * row["volume"] / total, 4),
            })
    segments.sort(key=lambda s: s["impact_on_sr"])

    by_segment = {s["segment"]: s for s in segments}
    return {
        "overall_sr": overall_sr,
        "amount_threshold": threshold,
        "segments": segments,
        "retry_customer_sr": by_segment.get(RETRY_CUSTOMER, {}).get("sr", 0.0),
        "single_attempt_sr": by_segment.get(SINGLE_ATTEMPT, {}).get("sr", 0.0),
        "high_value_sr": by_segment.get(HIGH_VALUE, {}).get("sr", 0.0),
        "low_value_sr": by_segment.get(LOW_VALUE, {}).get("sr", 0.0),
    }


def compare_customer_segments(current_df: pl.DataFrame, previous_df: pl.DataFrame) -> dict:
    """Segment analytics for both periods plus per-segment deltas (current minus previous)."""
    current = analyze_customer_segments(current_df)
    previous = analyze_customer_segments(previous_df)
    previous_by_segment = {s["segment"]: s for s in previous["segments"]}

    deltas = []
    for segment in current["segments"]:
        before = previous_by_segment.get(segment["segment"], {"volume": 0, "sr": 0.0, "impact_on_sr": 0.0})
        deltas.append({
            "segment": segment["segment"],
            "volume_delta": segment["volume"] - before["volume"],
            "sr_delta": round(segment["sr"] - before["sr"], 2),
            "impact_delta": round(segment["impact_on_sr"] - before["impact_on_sr"], 4),
        })
    deltas.sort(key=lambda d: d["impact_delta"])
    return {"current": current, "previous": previous, "deltas": deltas}


# ---------------------------------------------------------------------------
# Problematic customers
# ---------------------------------------------------------------------------

def detect_problematic_customers(
    df: pl.DataFrame,
    min_retries: int = PROBLEMATIC_MIN_RETRIES,
    max_retry_sr: float = PROBLEMATIC_MAX_RETRY_SR,
) -> list[dict]:
    """
    Identifiers with at least ``min_retries`` retries whose retry-only SR is
    at most ``max_retry_sr``. Impact removes all of the identifier's failed
    transactions, first attempt included, from the overall denominator.
    Largest SR lift first.
    """
    if df.is_empty():
        return []
    total = df.height
    overall_success = int(df["is_success"].sum())
    overall_sr = calculate_sr(overall_success, total)

    tagged = tag_customer_segments(df, threshold=0.0)
    stats = (
        tagged.group_by("customer_id")
        .agg(
            pl.len().alias("attempts"),
            pl.col("is_retry").sum().alias("retries"),
            (pl.col("is_retry") & pl.col("is_success")).sum().alias("retry_success"),
            (pl.col("is_retry") & pl.col("is_failed")).sum().alias("retry_failed"),
            pl.col("is_failed").sum().alias("failed_all"),
        )
        .filter(pl.col("retries") >= min_retries)
    )

    reasons = (
        tagged.filter(pl.col("is_retry") & pl.col("is_failed"))
        .group_by(["customer_id", "failure_label"])
        .agg(pl.len().alias("n"))
        .sort(["n", "failure_label"], descending=[True, False])
        .group_by("customer_id", maintain_order=True)
        .first()
    )
    top_reason = {row["customer_id"]: (row["failure_label"], row["n"]) for row in reasons.iter_rows(named=True)}

    flagged = []
    for row in stats.iter_rows(named=True):
        retry_sr = calculate_sr(row["retry_success"], row["retries"])
        if retry_sr > max_retry_sr:
            continue
        cf = counterfactual_sr(overall_success, total, row["failed_all"])
        if cf is None:
            cf = overall_sr
        reason, reason_count = top_reason.get(row["customer_id"], (None, None))
        flagged.append({
            "identifier": row["customer_id"],
            "attempts": row["attempts"],
            "retries": row["retries"],
            "retry_success_count": row["retry_success"],
            "retry_failed_count": row["retry_failed"],
            "retry_sr": retry_sr,
            "volume_share": round(100.0 * row["attempts"] / total, 2),
            "counterfactual_sr": cf,
            "impact_on_sr": round(cf - overall_sr, 2),
            "top_failure_reason": reason or None,
            "top_failure_reason_count": reason_count,
        })
    flagged.sort(key=lambda c: (-c["impact_on_sr"], c["identifier"]))
    return flagged
