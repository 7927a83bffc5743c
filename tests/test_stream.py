import io

import pytest

from srlens.errors import ValidationError
from srlens.pipeline.filters import FilterSet
from srlens.pipeline.stream import (
    aggregate,
    calculate_sr,
    estimate_row_count,
    field_dimension,
    iter_transactions,
)
from srlens.pipeline.views import compute_view

ROWS = [
    {"txstatus": "SUCCESS", "paymentmode": "UPI", "txtime": "October 3, 2025, 1:43 PM", "txamount": "1,000",
     "pg": "PAYU", "bankname": "", "cardmasked": "a@ybl", "upi_psp": "PhonePe"},
    {"txstatus": "FAILED", "paymentmode": "UPI", "txtime": "October 3, 2025, 2:10 PM", "txamount": "50",
     "pg": "PAYU", "bankname": "link", "cardmasked": "b@okaxis", "txmsg": "Bank declined",
     "cf_errorcode": "U30", "cf_errorreason": "DEBIT_FAILED"},
    {"txstatus": "USER_DROPPED", "paymentmode": "UPI", "txtime": "October 4, 2025, 9:00 AM", "txamount": "75",
     "pg": "N/A", "bankname": "", "cardmasked": "4111XXXX"},
    {"txstatus": "PENDING", "paymentmode": "CREDIT_CARD", "txtime": "October 4, 2025, 9:30 AM", "txamount": "300",
     "pg": "RAZORPAY", "cardtype": "VISA", "cardcountry": "IN", "cardnumber": "4111"},
    {"txstatus": "SUCCESS", "paymentmode": "CREDIT_CARD", "txtime": "not a time", "txamount": "20",
     "pg": "RAZORPAY", "cardtype": "VISA", "cardcountry": "US"},
    {},
]


def test_sr_rounding_and_empty_denominator():
    assert calculate_sr(1, 3) == 33.33
    assert calculate_sr(0, 0) == 0.0


def test_overview_totals_and_daily_invariants(write_export):
    path = write_export(ROWS)
    payload = compute_view(path, "overview")
    totals = payload["totals"]

    # the undated row never reaches totals for a grouped view
    assert totals["volume"] == 4
    assert totals["volume"] == (
        totals["success_count"] + totals["failed_count"] + totals["user_dropped_count"] + totals["other_count"]
    )
    assert 0.0 <= totals["sr"] <= 100.0
    assert sum(day["volume"] for day in payload["daily_trend"]) == totals["volume"]

    for rows in payload["groups"].values():
        for group in rows:
            assert sum(day["volume"] for day in group["daily_trend"]) == group["volume"]

    pgs = {g["group"]: g["volume"] for g in payload["groups"]["pg"]}
    assert pgs == {"PAYU": 2, "Unknown": 1, "RAZORPAY": 1}
    assert payload["stats"]["rows_undated"] == 1
    assert payload["stats"]["rows_empty"] == 1


def test_hour_dimension_keeps_fixed_order(write_export):
    payload = compute_view(write_export(ROWS), "overview")
    hours = [g["group"] for g in payload["groups"]["hour"]]
    assert hours == ["09:00", "13:00", "14:00"]


def test_upi_view_excludes_unknown_handle_from_output(write_export):
    payload = compute_view(write_export(ROWS), "upi")
    handles = {g["group"] for g in payload["groups"]["handle"]}
    assert handles == {"ybl", "okaxis"}
    # the row without a handle still counts in the totals
    assert payload["totals"]["volume"] == 3
    flows = {g["group"]: g["volume"] for g in payload["groups"]["flow"]}
    assert flows == {"COLLECT": 2, "INTENT": 1}


def test_failure_breakdown_reports_adjusted_sr(write_export):
    payload = compute_view(write_export(ROWS), "overview")
    [reason] = payload["failure_reasons"]
    assert reason["label"] == "U30 — DEBIT_FAILED"
    assert reason["failure_count"] == 1
    assert reason["adjusted_sr"] == calculate_sr(1, 3)
    assert reason["impact"] == round(calculate_sr(1, 3) - calculate_sr(1, 4), 2)


def test_filters_apply_before_grouping(write_export):
    filters = FilterSet.from_payload({"pgs": ["PAYU"]})
    payload = compute_view(write_export(ROWS), "overview", filters)
    assert payload["totals"]["volume"] == 2
    assert payload["stats"]["rows_matched"] == 2


def test_include_undated_counts_global_totals_only(write_export):
    dimension = field_dimension("pg", "pg")
    result = aggregate(write_export(ROWS), [dimension], include_undated=True)
    assert result.totals.volume == 5
    assert sum(g.volume for g in result.groups["pg"].values()) == 4


def test_progress_callback(write_export):
    seen = []
    aggregate(write_export(ROWS), on_progress=lambda stats: seen.append(stats.rows_read), progress_every=2)
    assert seen == [2, 4]


def test_unknown_view_rejected(write_export):
    with pytest.raises(ValidationError):
        compute_view(write_export(ROWS), "wallets")


def test_missing_required_columns_rejected():
    stream = io.StringIO("pg,bank\nPAYU,HDFC\n")
    with pytest.raises(ValidationError) as excinfo:
        list(iter_transactions(stream))
    assert "status" in excinfo.value.details["missing_columns"]


def test_ragged_rows_are_tolerated():
    stream = io.StringIO("txstatus,paymentmode,txtime\nSUCCESS,UPI\nFAILED,UPI,2025-10-03 10:00,extra\n")
    rows = list(iter_transactions(stream))
    assert [r.status for r in rows] == ["SUCCESS", "FAILED"]
    assert rows[0].tx_time is None


def test_row_estimate_is_exact_for_small_files(write_export):
    assert estimate_row_count(write_export(ROWS)) == len(ROWS)


def test_row_estimate_extrapolates_from_the_head(tmp_path):
    path = tmp_path / "big.csv"
    path.write_bytes(b"a\n" + b"xxxx\n" * 100)
    # 52-byte sample: the header plus ten rows
    assert 95 <= estimate_row_count(path, sample_bytes=52) <= 110
    assert estimate_row_count(path) == 100
