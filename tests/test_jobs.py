import pytest

from srlens.errors import NotFoundError

ROWS = [
    {"txstatus": "SUCCESS", "paymentmode": "UPI", "txtime": "2025-10-01 10:00", "txamount": "100"},
    {"txstatus": "FAILED", "paymentmode": "UPI", "txtime": "2025-10-01 11:00", "txmsg": "Timeout"},
    {"txstatus": "FAILED", "paymentmode": "UPI", "txtime": "2025-10-02 11:00", "txmsg": "Timeout"},
    {"txstatus": "SUCCESS", "paymentmode": "UPI", "txtime": "", "txamount": "50"},
    {"txstatus": "USER_DROPPED", "paymentmode": "UPI", "txtime": "2025-10-02 12:00"},
]


def _stored_file_id(store, session_id):
    return store.get_upload_session(session_id).stored_file_id


def test_analysis_runs_to_completion(jobs, store, write_export, upload_file):
    file_id = _stored_file_id(store, upload_file(write_export(ROWS)))

    assert jobs.start(file_id) is True
    status = jobs.wait(file_id, timeout=30)

    assert status["status"] == "completed"
    assert status["processed_rows"] == 5
    result = status["result"]
    # undated rows count toward the totals but not the daily trend
    assert result["totals"]["volume"] == 5
    assert result["totals"]["success_count"] == 2
    assert sum(day["volume"] for day in result["daily_trend"]) == 4
    assert result["meta"]["undated_rows"] == 1
    assert result["failure_reasons"][0]["label"] == "Timeout"
    assert result["failure_reasons"][0]["failure_count"] == 2


def test_completed_analysis_is_not_restarted(jobs, store, write_export, upload_file):
    file_id = _stored_file_id(store, upload_file(write_export(ROWS)))
    jobs.start(file_id)
    jobs.wait(file_id, timeout=30)
    assert jobs.start(file_id) is False


def test_failed_analysis_records_the_error(jobs, store, write_export, upload_file):
    path = write_export([{"pg": "PAYU"}], headers=["pg"])
    file_id = _stored_file_id(store, upload_file(path))

    jobs.start(file_id)
    status = jobs.wait(file_id, timeout=30)

    assert status["status"] == "failed"
    assert "missing required columns" in status["error"]
    assert status["result"] is None
    # a failed job may be queued again
    assert jobs.start(file_id) is True
    jobs.wait(file_id, timeout=30)


def test_claim_is_compare_and_swap(store):
    assert store.queue_analysis("file-1") is True
    assert store.claim_analysis("file-1") is True
    assert store.claim_analysis("file-1") is False
    assert store.queue_analysis("file-1") is False


def test_progress_checkpoints_are_persisted(store):
    store.queue_analysis("file-2")
    store.claim_analysis("file-2")
    store.update_analysis_progress("file-2", 10)
    store.update_analysis_progress("file-2", 20)
    assert store.get_analysis("file-2").processed_rows == 20


def test_unknown_file(jobs):
    with pytest.raises(NotFoundError):
        jobs.start("nope")
    with pytest.raises(NotFoundError):
        jobs.status("nope")


def test_claim_records_the_row_estimate(store):
    store.queue_analysis("file-3")
    store.claim_analysis("file-3", total_rows=200)
    store.update_analysis_progress("file-3", 50)
    job = store.get_analysis("file-3")
    assert job.total_rows == 200
    assert job.processed_rows == 50


def test_status_reports_a_progress_fraction(jobs, store, write_export, upload_file):
    file_id = _stored_file_id(store, upload_file(write_export(ROWS)))
    jobs.start(file_id)
    status = jobs.wait(file_id, timeout=30)
    # completion replaces the estimate with the exact count
    assert status["total_rows"] == 5
    assert status["progress_percent"] == 100.0

    store.queue_analysis("file-4")
    store.claim_analysis("file-4", total_rows=8)
    store.update_analysis_progress("file-4", 2)
    assert jobs.status("file-4")["progress_percent"] == 25.0
