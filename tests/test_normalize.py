from datetime import datetime

import pytest

from srlens.pipeline.normalize import (
    build_transaction,
    normalize_header,
    normalize_row,
    parse_amount,
    parse_tx_time,
)


def test_export_row_with_mixed_casing_and_formats():
    tx = normalize_row({
        "txstatus": "success",
        "paymentmode": " upi ",
        "txtime": "October 3, 2025, 1:43 PM",
        "txamount": "1,250.50",
    })
    assert tx.status == "SUCCESS"
    assert tx.payment_mode == "UPI"
    assert tx.tx_amount == pytest.approx(1250.50)
    assert tx.tx_time == datetime(2025, 10, 3, 13, 43)
    assert tx.tx_date == "2025-10-03"
    assert tx.is_success and not tx.is_failed and not tx.is_user_dropped


@pytest.mark.parametrize("header", ["Transaction Status", "tx-status", "TXSTATUS", "  status  "])
def test_status_header_aliases(header):
    assert normalize_header(header) == "status"


def test_unknown_header_kept_in_normalized_form():
    assert normalize_header("Some Extra Column") == "some_extra_column"


def test_first_non_blank_duplicate_wins():
    tx = normalize_row({"txstatus": "", "Transaction Status": "failed", "status": "SUCCESS"})
    assert tx.status == "FAILED"
    assert tx.is_failed


def test_empty_row_returns_none():
    assert normalize_row({"txstatus": " ", "paymentmode": ""}) is None
    assert build_transaction({}) is None


def test_unknown_status_has_no_derived_flag():
    tx = normalize_row({"txstatus": "pending", "paymentmode": "UPI"})
    assert tx.status == "PENDING"
    assert not (tx.is_success or tx.is_failed or tx.is_user_dropped)


def test_customer_id_prefers_card_number():
    assert normalize_row({"txstatus": "FAILED", "cardnumber": "4111", "cardmasked": "x@ybl"}).customer_id == "4111"
    assert normalize_row({"txstatus": "FAILED", "cardmasked": "x@ybl"}).customer_id == "x@ybl"
    assert normalize_row({"txstatus": "FAILED"}).customer_id == "unknown"


# ---------------------------------------------------------------------------
# Timestamps
# ---------------------------------------------------------------------------

@pytest.mark.parametrize(
    "raw, expected",
    [
        ("2025-10-03T10:00:00", datetime(2025, 10, 3, 10, 0)),
        ("2025-10-03T10:00:00+05:30", datetime(2025, 10, 3, 4, 30)),
        ("2025-10-03 10:00:00", datetime(2025, 10, 3, 10, 0)),
        ("Oct 3, 2025, 9:05 AM", datetime(2025, 10, 3, 9, 5)),
        ("10/03/2025 14:30", datetime(2025, 10, 3, 14, 30)),
        ("25/10/2025 14:30", datetime(2025, 10, 25, 14, 30)),
        ("45000", datetime(2023, 3, 15)),
        ("1696329000", datetime(2023, 10, 3, 10, 30)),
        ("1696329000000", datetime(2023, 10, 3, 10, 30)),
        (1696329000, datetime(2023, 10, 3, 10, 30)),
    ],
)
def test_parse_tx_time_formats(raw, expected):
    assert parse_tx_time(raw) == expected


@pytest.mark.parametrize("raw", ["", None, "not a date", "12345", float("nan"), "2025-13-45"])
def test_unparseable_timestamps_are_none(raw):
    assert parse_tx_time(raw) is None


def test_undated_row_still_normalizes():
    tx = normalize_row({"txstatus": "SUCCESS", "txtime": "yesterday-ish"})
    assert tx.tx_time is None
    assert tx.tx_date is None


# ---------------------------------------------------------------------------
# Amounts
# ---------------------------------------------------------------------------

@pytest.mark.parametrize(
    "raw, expected",
    [("1,250.50", 1250.5), ("  42 ", 42.0), (17, 17.0), ("", 0.0), ("abc", 0.0), ("nan", 0.0), ("inf", 0.0), (None, 0.0)],
)
def test_parse_amount(raw, expected):
    assert parse_amount(raw) == expected
