import pytest

from srlens.data_generator.generate import DEGRADED_GATEWAY, write_export
from srlens.errors import ConflictError, ValidationError


@pytest.fixture
def generated_session(tmp_path, upload_file):
    path = tmp_path / "generated.csv"
    write_export(path, rows=3_000, seed=7)
    return upload_file(path)


def test_queries_require_a_completed_upload(service, assembler):
    session = assembler.init_session("pending.csv", 10, chunk_size_bytes=5)
    with pytest.raises(ConflictError):
        service.metrics(session.id)


def test_bad_filters_fail_before_any_scan(service, assembler):
    session = assembler.init_session("pending.csv", 10, chunk_size_bytes=5)
    # the filter error wins over the incomplete upload
    with pytest.raises(ValidationError):
        service.metrics(session.id, filter_payload={"colour": ["red"]})


def test_metrics_views(service, generated_session):
    overview = service.metrics(generated_session, "overview")
    assert overview["totals"]["volume"] > 3_000
    upi = service.metrics(generated_session, "upi", {"pgs": [DEGRADED_GATEWAY]})
    assert {g["group"] for g in upi["groups"]["pg"]} == {DEGRADED_GATEWAY}


def test_rca_payload(service, generated_session):
    payload = service.rca(generated_session, period_days=7, payment_mode="upi")

    assert payload["payment_mode"] == "UPI"
    assert payload["empty"] is False
    comparison = payload["period_comparison"]
    assert comparison["current"]["total"] > 0
    assert comparison["previous"]["total"] > 0
    assert comparison["sr_delta"] < 0
    assert comparison["sr_movement"] == "SR_DROP"
    flagged_gateways = {
        a["value"] for a in comparison["dimension_analyses"] if a["dimension"] == "PG" and a["flagged"]
    }
    assert DEGRADED_GATEWAY in flagged_gateways
    assert comparison["insights"]
    assert {"current", "previous"} == set(payload["windows"])
    assert payload["volume_mix"]
    assert payload["customer_segments"]["current"]["segments"]


def test_rca_period_days_are_clamped(service, settings, generated_session):
    payload = service.rca(generated_session, period_days=500)
    assert payload["period_days"] == settings.max_period_days
    assert service.rca(generated_session, period_days=0)["period_days"] == 1


def test_rca_with_no_matching_rows(service, generated_session):
    payload = service.rca(generated_session, {"pgs": ["NOBODY"]})
    assert payload["empty"] is True
    assert payload["windows"] is None


def test_problematic_customers_surface_in_card_rca(service, generated_session):
    payload = service.rca(generated_session, payment_mode="CARDS")
    identifiers = {c["identifier"] for c in payload["problematic_customers"]}
    assert identifiers
    assert all(identifier.startswith("5") for identifier in identifiers)


def test_sample_is_clamped(service, settings, generated_session):
    sample = service.sample(generated_session, max_rows=5)
    assert sample["count"] == 5
    assert sample["truncated"] is True
    assert service.sample(generated_session, max_rows=-3)["count"] == 1


def test_time_bounds_and_options(service, generated_session):
    bounds = service.time_bounds(generated_session)["bounds"]
    assert bounds["min_time"] < bounds["max_time"]
    options = service.filter_options(generated_session)["options"]
    assert "UPI" in options["payment_modes"]
    assert "Unknown" in options["pgs"]


def test_background_analysis_through_the_service(service, generated_session):
    started = service.start_analysis(generated_session)
    assert started["started"] is True
    status = service.wait_for_analysis(generated_session, timeout=60)
    assert status["status"] == "completed"
    assert status["result"]["meta"]["processed_rows"] > 3_000


def test_failure_insights_through_the_service(service, generated_session):
    payload = service.failure_insights(generated_session)
    assert payload["total_failures"] > 0
    assert payload["windows"]["window_type"] in ("daily", "weekly", "monthly")
    scores = [row["impact_score"] for row in payload["insights"]]
    assert scores == sorted(scores, reverse=True)
    with pytest.raises(ValidationError):
        service.failure_insights(generated_session, {"colour": ["red"]})


def _breakdown_row(status, mode, pg, message, when="2025-10-03 10:00:00"):
    return {"txstatus": status, "paymentmode": mode, "pg": pg, "txmsg": message, "txtime": when, "txamount": "100"}


@pytest.fixture
def breakdown_session(write_export, upload_file):
    timeout = "Bank did not respond in time"
    rows = [_breakdown_row("FAILED", "UPI", "PAYU", timeout) for _ in range(3)]
    rows += [
        _breakdown_row("FAILED", "UPI", "RAZORPAY", timeout),
        _breakdown_row("FAILED", "CREDIT_CARD", "PAYU", timeout),
        _breakdown_row("FAILED", "UPI", "PAYU", "Incorrect UPI PIN"),
        _breakdown_row("FAILED", "UPI", "PAYU", "Incorrect UPI PIN"),
        _breakdown_row("USER_DROPPED", "UPI", "PAYU", ""),
        _breakdown_row("SUCCESS", "UPI", "PAYU", ""),
        _breakdown_row("FAILED", "UPI", "PAYU", timeout, when="2025-09-20 10:00:00"),
    ]
    return upload_file(write_export(rows, "breakdown.csv"))


def test_rca_breakdown_by_failure_category(service, breakdown_session):
    payload = service.rca_breakdown(breakdown_session, None, 7, "Failure Category", "ISSUER_BANK")

    assert payload["empty"] is False
    assert payload["period"] == "current"
    assert payload["total"] == 5
    assert payload["payment_modes"] == [
        {"name": "UPI", "count": 4, "percent": 80.0},
        {"name": "CREDIT_CARD", "count": 1, "percent": 20.0},
    ]
    assert [(row["name"], row["count"]) for row in payload["pgs"]] == [("PAYU", 4), ("RAZORPAY", 1)]

    previous = service.rca_breakdown(breakdown_session, None, 7, "Failure Category", "ISSUER_BANK", period="previous")
    assert previous["total"] == 1

    customer = service.rca_breakdown(breakdown_session, None, 7, "Failure Category", "CUSTOMER")
    assert customer["total"] == 2
    dropped = service.rca_breakdown(
        breakdown_session, None, 7, "Failure Category", "CUSTOMER", analysis_type="user_dropped"
    )
    assert dropped["analysis_type"] == "USER_DROPPED"
    assert dropped["total"] == 1


def test_rca_breakdown_validation(service, breakdown_session):
    with pytest.raises(ValidationError):
        service.rca_breakdown(breakdown_session, None, 7, "Colour", "red")
    with pytest.raises(ValidationError):
        service.rca_breakdown(breakdown_session, None, 7, "PG", "PAYU", analysis_type="SUCCESS")
    with pytest.raises(ValidationError):
        service.rca_breakdown(breakdown_session, None, 7, "PG", "PAYU", period="last")


def test_rca_breakdown_with_no_matching_rows(service, breakdown_session):
    payload = service.rca_breakdown(breakdown_session, {"pgs": ["NOPE"]}, 7, "PG", "PAYU")
    assert payload["empty"] is True
