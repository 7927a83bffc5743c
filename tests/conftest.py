import csv
import io

import pytest

from srlens.config import build_settings
from srlens.jobs.analysis import AnalysisJobs
from srlens.service import AnalyticsService
from srlens.upload.assembler import UploadAssembler
from srlens.upload.store import RecordStore

EXPORT_HEADERS = [
    "txstatus", "paymentmode", "txtime", "txamount", "merchantid", "pg", "bankname",
    "cardtype", "cardcountry", "cardnumber", "cardmasked", "upi_psp", "txmsg",
    "cf_errorcode", "cf_errorreason", "cf_errorsource",
]


@pytest.fixture
def settings(tmp_path):
    return build_settings(
        tmp_path / "data",
        min_chunk_size=1,
        default_chunk_size=64,
        copy_buffer_size=7,
        progress_every_rows=2,
        analysis_workers=1,
    )


@pytest.fixture
def store(settings):
    store = RecordStore.from_settings(settings)
    yield store
    store.close()


@pytest.fixture
def assembler(settings, store):
    return UploadAssembler(settings, store)


@pytest.fixture
def jobs(settings, store):
    jobs = AnalysisJobs(settings, store)
    yield jobs
    jobs.shutdown()


@pytest.fixture
def service(settings, store, assembler, jobs):
    return AnalyticsService(settings, store, assembler, jobs)


@pytest.fixture
def write_export(tmp_path):
    """Write rows (dicts keyed by EXPORT_HEADERS) to a CSV and return its path."""

    def _write(rows, name="export.csv", headers=EXPORT_HEADERS):
        path = tmp_path / name
        with open(path, "w", newline="", encoding="utf-8") as fh:
            writer = csv.DictWriter(fh, fieldnames=headers)
            writer.writeheader()
            for row in rows:
                writer.writerow({h: row.get(h, "") for h in headers})
        return path

    return _write


@pytest.fixture
def upload_file(assembler):
    """Push a local file through the assembler in one part; returns the session id."""

    def _upload(path):
        data = path.read_bytes()
        session = assembler.init_session(path.name, len(data), chunk_size_bytes=len(data))
        assembler.accept_part(session.id, 1, io.BytesIO(data), len(data))
        assembler.complete(session.id)
        return session.id

    return _upload

