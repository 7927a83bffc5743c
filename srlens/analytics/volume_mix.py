"""
Volume-mix attribution: how traffic composition moved between two periods.

Unlike the failure-driven dimension analysis this looks at every
transaction. For each dimension value it compares the share of total volume
across periods and attributes SR impact as

    (value's current SR - overall current SR) * share delta / 100

so a shift toward segments that convert worse shows up as negative impact even
when no segment's own SR changed.
"""

import polars as pl

from srlens.contracts.schemas import VOLUME_MIX_DIMENSIONS
from srlens.pipeline.stream import calculate_sr
from srlens.pipeline.transform import dimension_group, filter_payment_mode, value_expr


def _volume_by_value(df: pl.DataFrame, column: str, prefix: str) -> pl.DataFrame:
    return df.group_by(value_expr(column)).agg(
        pl.len().cast(pl.Int64).alias(f"{prefix}_volume"),
        pl.col("is_success").sum().cast(pl.Int64).alias(f"{prefix}_success"),
    )


def analyze_volume_mix(current_df: pl.DataFrame, previous_df: pl.DataFrame, payment_mode: str = "ALL") -> list[dict]:
    """Per-dimension volume-share shifts, most negative impact first."""
    group = dimension_group(payment_mode)
    current_df = filter_payment_mode(current_df, payment_mode)
    previous_df = filter_payment_mode(previous_df, payment_mode)

    total_current = current_df.height
    total_previous = previous_df.height
    overall_sr = calculate_sr(int(current_df["is_success"].sum()) if total_current else 0, total_current)

    rows = []
    for dimension, column in VOLUME_MIX_DIMENSIONS[group].items():
        merged = (
            _volume_by_value(current_df, column, "current")
            .join(_volume_by_value(previous_df, column, "previous"), on="value", how="full", coalesce=True)
            .with_columns(pl.col(pl.Int64).fill_null(0))
        )
        for row in merged.iter_rows(named=True):
            share_cur = 100.0 * row["current_volume"] / total_current if total_current else 0.0
            share_prev = 100.0 * row["previous_volume"] / total_previous if total_previous else 0.0
            sr_cur = calculate_sr(row["current_success"], row["current_volume"])
            share_delta = share_cur - share_prev
            rows.append({
                "dimension": dimension,
                "value": row["value"],
                "current_volume": row["current_volume"],
                "previous_volume": row["previous_volume"],
                "current_volume_share": round(share_cur, 2),
                "previous_volume_share": round(share_prev, 2),
                "volume_share_delta": round(share_delta, 2),
                "current_sr": sr_cur,
                "previous_sr": calculate_sr(row["previous_success"], row["previous_volume"]),
                "impact_on_sr": round((sr_cur - overall_sr) * share_delta / 100.0, 4),
            })

    rows.sort(key=lambda r: (r["impact_on_sr"], r["dimension"], r["value"]))
    return rows
