from datetime import datetime

import pytest

from helpers import tx
from srlens.errors import ValidationError
from srlens.pipeline.filters import FilterSet


def test_empty_payload_matches_everything():
    filters = FilterSet.from_payload(None)
    assert filters.matches(tx())
    assert filters.matches(tx(when=None))


def test_date_only_end_covers_whole_day():
    filters = FilterSet.from_payload({"start_date": "2025-10-01", "end_date": "2025-10-03"})
    assert filters.matches(tx(when=datetime(2025, 10, 3, 23, 59, 59)))
    assert not filters.matches(tx(when=datetime(2025, 10, 4, 0, 0)))
    assert not filters.matches(tx(when=datetime(2025, 9, 30, 23, 59)))


def test_undated_rows_fail_a_date_range():
    filters = FilterSet.from_payload({"start_date": "2025-10-01"})
    assert not filters.matches(tx(when=None))


def test_allow_lists():
    filters = FilterSet.from_payload({"payment_modes": ["upi"], "pgs": ["Unknown"], "merchant_ids": ["M1"]})
    assert filters.matches(tx(payment_mode="UPI", pg="N/A", merchant_id="M1"))
    assert not filters.matches(tx(payment_mode="UPI", pg="PAYU", merchant_id="M1"))
    assert not filters.matches(tx(payment_mode="CREDIT_CARD", pg="N/A", merchant_id="M1"))


def test_bank_filter_matches_flow_or_bank():
    filters = FilterSet.from_payload({"banks": ["COLLECT", "HDFC Bank"]})
    assert filters.matches(tx(bank_name=""))
    assert filters.matches(tx(bank_name="HDFC Bank"))
    assert not filters.matches(tx(bank_name="link"))


@pytest.mark.parametrize(
    "payload",
    [
        {"start": "2025-10-01"},
        {"payment_modes": "UPI", "banks": 3},
        {"pgs": [1, 2]},
        {"start_date": "not-a-date"},
        {"start_date": "2025-10-05", "end_date": "2025-10-01"},
        ["start_date"],
    ],
)
def test_invalid_payloads(payload):
    with pytest.raises(ValidationError) as excinfo:
        FilterSet.from_payload(payload)
    assert excinfo.value.stage == "filters"
