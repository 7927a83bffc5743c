import json

import pytest
from click.testing import CliRunner

from srlens.main import cli


@pytest.fixture
def runner(monkeypatch, tmp_path):
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("SRLENS_DATA_DIR", str(tmp_path / "data"))
    monkeypatch.setenv("SRLENS_MIN_CHUNK_SIZE", "1")
    monkeypatch.setenv("SRLENS_LOG_LEVEL", "WARNING")
    return CliRunner()


@pytest.fixture
def uploaded(runner, tmp_path):
    export = tmp_path / "export.csv"
    result = runner.invoke(cli, ["generate", "--out", str(export), "--rows", "1500", "--seed", "3"])
    assert result.exit_code == 0, result.output
    result = runner.invoke(cli, ["--json", "upload", str(export), "--chunk-size", "65536"])
    assert result.exit_code == 0, result.output
    payload = json.loads(result.stdout)
    assert payload["size_bytes"] == export.stat().st_size
    return payload["session_id"]


def test_upload_then_status(runner, uploaded):
    result = runner.invoke(cli, ["status", uploaded])
    assert result.exit_code == 0
    status = json.loads(result.stdout)
    assert status["status"] == "completed"
    assert status["received_parts"] == []
    assert status["stored_file"]["sha256"]


def test_metrics_with_filters(runner, uploaded):
    result = runner.invoke(cli, ["--json", "metrics", uploaded, "--view", "cards", "--card-type", "VISA"])
    assert result.exit_code == 0, result.output
    payload = json.loads(result.stdout)
    assert {g["group"] for g in payload["groups"]["card_type"]} == {"VISA"}


def test_metrics_table_output(runner, uploaded):
    result = runner.invoke(cli, ["metrics", uploaded])
    assert result.exit_code == 0, result.output
    assert "overview" in result.stdout


def test_rca_command(runner, uploaded):
    result = runner.invoke(cli, ["--json", "rca", uploaded, "--period-days", "7", "--group", "UPI"])
    assert result.exit_code == 0, result.output
    payload = json.loads(result.stdout)
    assert payload["payment_mode"] == "UPI"
    assert "primary_cause" in payload["period_comparison"]


def test_analyze_and_wait(runner, uploaded):
    result = runner.invoke(cli, ["analyze", uploaded, "--wait"])
    assert result.exit_code == 0, result.output
    assert json.loads(result.stdout)["status"] == "completed"


def test_unknown_session_exits_with_error(runner):
    result = runner.invoke(cli, ["status", "missing"])
    assert result.exit_code == 1
    assert "not_found" in result.output


def test_invalid_filter_exits_with_error(runner, uploaded):
    result = runner.invoke(cli, ["metrics", uploaded, "--from", "someday"])
    assert result.exit_code == 1
    assert "validation" in result.output


def test_insights_command(runner, uploaded):
    result = runner.invoke(cli, ["--json", "insights", uploaded, "--mode", "UPI"])
    assert result.exit_code == 0, result.output
    payload = json.loads(result.stdout)
    assert payload["total_failures"] > 0
    assert all(row["payment_mode"] == "UPI" for row in payload["insights"])

    result = runner.invoke(cli, ["insights", uploaded])
    assert result.exit_code == 0, result.output


def test_breakdown_command(runner, uploaded):
    args = ["breakdown", uploaded, "--value", "ISSUER_BANK", "--period-days", "7"]
    result = runner.invoke(cli, ["--json", *args])
    assert result.exit_code == 0, result.output
    payload = json.loads(result.stdout)
    assert payload["dimension"] == "Failure Category"
    assert payload["total"] == sum(row["count"] for row in payload["payment_modes"])

    result = runner.invoke(cli, args + ["--period", "previous"])
    assert result.exit_code == 0, result.output
    assert "ISSUER_BANK" in result.stdout


def test_breakdown_rejects_an_unknown_dimension(runner, uploaded):
    result = runner.invoke(cli, ["breakdown", uploaded, "--dimension", "Colour", "--value", "red"])
    assert result.exit_code == 1
    assert "validation" in result.output
