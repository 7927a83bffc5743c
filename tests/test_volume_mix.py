import pytest

from helpers import frame, tx
from srlens.analytics.volume_mix import analyze_volume_mix


def _rows(mode, successes, failures):
    return [tx("SUCCESS", payment_mode=mode) for _ in range(successes)] + [
        tx("FAILED", payment_mode=mode) for _ in range(failures)
    ]


def _lookup(rows, dimension, value):
    [row] = [r for r in rows if r["dimension"] == dimension and r["value"] == value]
    return row


def test_shift_toward_weaker_segment():
    current = frame(_rows("UPI", 40, 40) + _rows("DEBIT_CARD", 20, 0))
    previous = frame(_rows("UPI", 25, 25) + _rows("DEBIT_CARD", 50, 0))

    rows = analyze_volume_mix(current, previous)
    upi = _lookup(rows, "Payment Mode", "UPI")
    cards = _lookup(rows, "Payment Mode", "DEBIT_CARD")

    assert upi["current_volume_share"] == 80.0
    assert upi["previous_volume_share"] == 50.0
    assert upi["volume_share_delta"] == 30.0
    assert upi["current_sr"] == 50.0
    # overall current SR is 60
    assert upi["impact_on_sr"] == pytest.approx(-3.0)
    assert cards["impact_on_sr"] == pytest.approx(-12.0)

    gateway = _lookup(rows, "PG", "Unknown")
    assert gateway["volume_share_delta"] == 0.0
    assert gateway["impact_on_sr"] == 0.0

    impacts = [r["impact_on_sr"] for r in rows]
    assert impacts == sorted(impacts)


def test_value_missing_from_one_period():
    current = frame(_rows("UPI", 10, 0))
    previous = frame(_rows("UPI", 5, 0) + _rows("NET_BANKING", 5, 0))
    netbanking = _lookup(analyze_volume_mix(current, previous), "Payment Mode", "NET_BANKING")
    assert netbanking["current_volume"] == 0
    assert netbanking["previous_volume_share"] == 50.0
    assert netbanking["current_sr"] == 0.0
    assert netbanking["impact_on_sr"] == pytest.approx(50.0)


def test_mode_specific_dimensions():
    current = frame([tx("SUCCESS", payment_mode="UPI", card_masked="a@ybl", upi_psp="PhonePe")])
    rows = analyze_volume_mix(current, frame([]), "UPI")
    assert {r["dimension"] for r in rows} == {"PG", "Flow Type", "Handle", "PSP"}
    assert _lookup(rows, "Handle", "ybl")["previous_volume_share"] == 0.0
