from datetime import timedelta

import pytest

from helpers import DAY, frame, tx
from srlens.analytics.customers import (
    HIGH_VALUE,
    LOW_VALUE,
    RETRY_CUSTOMER,
    SINGLE_ATTEMPT,
    USER_DROPPED,
    analyze_customer_segments,
    compare_customer_segments,
    detect_problematic_customers,
    high_value_threshold,
    tag_customer_segments,
)
from srlens.pipeline.stream import calculate_sr

LATER = DAY + timedelta(hours=1)


def _mixed_customers():
    return frame([
        tx("FAILED", card_number="X", tx_amount=50),
        tx("SUCCESS", when=LATER, card_number="X", tx_amount=50),
        tx("SUCCESS", card_number="Y", tx_amount=500),
        tx("SUCCESS", card_number="Z", tx_amount=1000),
        tx("USER_DROPPED", card_masked="w@ybl", tx_amount=10),
        tx("SUCCESS", card_number="V", tx_amount=0),
    ])


def test_threshold_is_lower_index_75th_percentile():
    assert high_value_threshold(_mixed_customers()) == 500.0
    assert high_value_threshold(frame([])) == 0.0


def test_retry_follows_first_attempt_regardless_of_status():
    tagged = tag_customer_segments(_mixed_customers())
    segments = dict(zip(zip(tagged["customer_id"], tagged["status"]), tagged["customer_segment"]))
    assert segments[("X", "FAILED")] == LOW_VALUE
    assert segments[("X", "SUCCESS")] == RETRY_CUSTOMER
    assert segments[("Y", "SUCCESS")] == HIGH_VALUE
    assert segments[("w@ybl", "USER_DROPPED")] == USER_DROPPED
    assert segments[("V", "SUCCESS")] == SINGLE_ATTEMPT


def test_simultaneous_first_attempts_are_not_retries():
    tagged = tag_customer_segments(frame([tx("FAILED", card_number="S"), tx("FAILED", card_number="S")]))
    assert tagged["is_retry"].to_list() == [False, False]


def test_user_dropped_wins_over_retry():
    tagged = tag_customer_segments(frame([
        tx("FAILED", card_number="R", tx_amount=10),
        tx("USER_DROPPED", when=LATER, card_number="R", tx_amount=10),
    ]))
    assert tagged["customer_segment"].to_list() == [HIGH_VALUE, USER_DROPPED]


def test_segment_impact_and_ordering():
    result = analyze_customer_segments(_mixed_customers())
    overall = calculate_sr(4, 6)
    assert result["overall_sr"] == overall

    by_segment = {s["segment"]: s for s in result["segments"]}
    assert sum(s["volume"] for s in result["segments"]) == 6
    assert by_segment[HIGH_VALUE]["volume"] == 2
    assert by_segment[LOW_VALUE]["impact_on_sr"] == pytest.approx(round((0.0 - overall) / 6, 4))
    assert by_segment[HIGH_VALUE]["impact_on_sr"] == pytest.approx(round((100.0 - overall) * 2 / 6, 4))

    impacts = [s["impact_on_sr"] for s in result["segments"]]
    assert impacts == sorted(impacts)
    assert result["segments"][-1]["segment"] == HIGH_VALUE
    assert result["retry_customer_sr"] == 100.0
    assert result["low_value_sr"] == 0.0


def test_segment_deltas_against_previous_period():
    previous = frame([tx("SUCCESS", card_number="Y", tx_amount=500)])
    comparison = compare_customer_segments(_mixed_customers(), previous)
    deltas = {d["segment"]: d for d in comparison["deltas"]}
    # new in the current period: raw values
    assert deltas[RETRY_CUSTOMER]["volume_delta"] == 1
    assert deltas[RETRY_CUSTOMER]["sr_delta"] == 100.0
    impact_deltas = [d["impact_delta"] for d in comparison["deltas"]]
    assert impact_deltas == sorted(impact_deltas)


def test_empty_period():
    result = analyze_customer_segments(frame([]))
    assert result["segments"] == []
    assert result["overall_sr"] == 0.0


# ---------------------------------------------------------------------------
# Problematic customers
# ---------------------------------------------------------------------------

def _attempts(card, status, count, msg=""):
    return [tx(status, when=DAY + timedelta(minutes=i), card_number=card, tx_msg=msg) for i in range(count)]


def test_problematic_customer_detection():
    df = frame(
        _attempts("C", "FAILED", 11, msg="Timeout")
        + _attempts("D", "SUCCESS", 11)
        + _attempts("E", "FAILED", 6, msg="Timeout")
    )
    [flagged] = detect_problematic_customers(df)

    assert flagged["identifier"] == "C"
    assert flagged["attempts"] == 11
    assert flagged["retries"] == 10
    assert flagged["retry_failed_count"] == 10
    assert flagged["retry_sr"] == 0.0
    assert flagged["top_failure_reason"] == "Timeout"
    assert flagged["top_failure_reason_count"] == 10

    overall = calculate_sr(11, 28)
    # all 11 of C's failures, first attempt included, leave the denominator
    assert flagged["counterfactual_sr"] == calculate_sr(11, 17)
    assert flagged["impact_on_sr"] == round(calculate_sr(11, 17) - overall, 2)


def test_problematic_thresholds_are_configurable():
    df = frame(_attempts("E", "FAILED", 6))
    assert detect_problematic_customers(df) == []
    [flagged] = detect_problematic_customers(df, min_retries=5)
    assert flagged["identifier"] == "E"
    # no successes anywhere, so removing E's failures leaves nothing to measure
    assert flagged["counterfactual_sr"] == 0.0
    assert flagged["impact_on_sr"] == 0.0
