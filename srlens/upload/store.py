"""
Record store for upload sessions, stored files and analysis jobs.

A thin SQLAlchemy layer that hands out frozen snapshots (see
``srlens.contracts.schemas``) instead of live ORM rows, so callers never hold
a database session. SQLite lock contention surfaces as a retryable
UnavailableError.
"""

import logging
import uuid
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import create_engine, update
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import sessionmaker

from srlens.config import Settings
from srlens.contracts.schemas import (
    JOB_COMPLETED,
    JOB_FAILED,
    JOB_QUEUED,
    JOB_RUNNING,
    UPLOAD_COMPLETED,
    UPLOAD_FAILED,
    UPLOAD_UPLOADING,
    AnalysisJob,
    StoredFile,
    UploadSession,
)
from srlens.errors import NotFoundError, UnavailableError
from srlens.upload.models import AnalysisJobRow, Base, StoredFileRow, UploadSessionRow

logger = logging.getLogger(__name__)

_CONTENTION_MARKERS = ("database is locked", "database is busy", "database table is locked")


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def new_id() -> str:
    return uuid.uuid4().hex


def _session_snapshot(row: UploadSessionRow) -> UploadSession:
    return UploadSession(
        id=row.id,
        original_name=row.original_name,
        content_type=row.content_type,
        size_bytes=row.size_bytes,
        chunk_size_bytes=row.chunk_size_bytes,
        received_bytes=row.received_bytes,
        status=row.status,
        expected_sha256=row.expected_sha256,
        stored_file_id=row.stored_file_id,
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


def _file_snapshot(row: StoredFileRow) -> StoredFile:
    return StoredFile(
        id=row.id,
        original_name=row.original_name,
        content_type=row.content_type,
        size_bytes=row.size_bytes,
        sha256=row.sha256,
        storage_path=row.storage_path,
        created_at=row.created_at,
    )


def _job_snapshot(row: AnalysisJobRow) -> AnalysisJob:
    return AnalysisJob(
        stored_file_id=row.stored_file_id,
        status=row.status,
        processed_rows=row.processed_rows,
        total_rows=row.total_rows,
        result_json=row.result_json,
        error=row.error,
        started_at=row.started_at,
        completed_at=row.completed_at,
        updated_at=row.updated_at,
    )


class RecordStore:
    def __init__(self, database_url: str, retry_after: float = 1.0):
        connect_args = {}
        if database_url.startswith("sqlite"):
            connect_args = {"check_same_thread": False, "timeout": 5}
        self.engine = create_engine(database_url, connect_args=connect_args)
        self._sessions = sessionmaker(bind=self.engine, expire_on_commit=False)
        self.retry_after = retry_after
        Base.metadata.create_all(bind=self.engine)

    @classmethod
    def from_settings(cls, settings: Settings) -> "RecordStore":
        settings.data_dir.mkdir(parents=True, exist_ok=True)
        return cls(settings.database_url, retry_after=settings.store_retry_after)

    def close(self) -> None:
        self.engine.dispose()

    @contextmanager
    def _db(self, stage: str):
        db = self._sessions()
        try:
            yield db
            db.commit()
        except OperationalError as exc:
            db.rollback()
            if any(marker in str(exc.orig).lower() for marker in _CONTENTION_MARKERS):
                logger.warning(f"Record store contended during {stage}: {exc.orig}")
                raise UnavailableError(
                    "record store is busy, retry shortly", stage=stage, retry_after=self.retry_after
                ) from exc
            raise
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    # ------------------------------------------------------------------
    # Upload sessions
    # ------------------------------------------------------------------

    def create_upload_session(
        self,
        original_name: str,
        size_bytes: int,
        chunk_size_bytes: int,
        content_type: Optional[str] = None,
        expected_sha256: Optional[str] = None,
    ) -> UploadSession:
        now = utcnow()
        row = UploadSessionRow(
            id=new_id(),
            original_name=original_name,
            content_type=content_type,
            size_bytes=size_bytes,
            chunk_size_bytes=chunk_size_bytes,
            received_bytes=0,
            status=UPLOAD_UPLOADING,
            expected_sha256=expected_sha256,
            created_at=now,
            updated_at=now,
        )
        with self._db("init") as db:
            db.add(row)
            db.flush()
            return _session_snapshot(row)

    def get_upload_session(self, session_id: str) -> Optional[UploadSession]:
        with self._db("lookup") as db:
            row = db.get(UploadSessionRow, session_id)
            return _session_snapshot(row) if row else None

    def require_upload_session(self, session_id: str) -> UploadSession:
        session = self.get_upload_session(session_id)
        if session is None:
            raise NotFoundError(f"upload session '{session_id}' not found", stage="lookup", session_id=session_id)
        return session

    def add_received_bytes(self, session_id: str, count: int) -> None:
        # Single UPDATE so concurrent parts never lose an increment
        with self._db("part") as db:
            db.execute(
                update(UploadSessionRow)
                .where(UploadSessionRow.id == session_id)
                .values(received_bytes=UploadSessionRow.received_bytes + count, updated_at=utcnow())
            )

    def mark_upload_completed(self, session_id: str, stored_file_id: str, size_bytes: int) -> None:
        with self._db("complete") as db:
            db.execute(
                update(UploadSessionRow)
                .where(UploadSessionRow.id == session_id)
                .values(
                    status=UPLOAD_COMPLETED,
                    stored_file_id=stored_file_id,
                    received_bytes=size_bytes,
                    updated_at=utcnow(),
                )
            )

    def mark_upload_failed(self, session_id: str) -> None:
        with self._db("abort") as db:
            db.execute(
                update(UploadSessionRow)
                .where(UploadSessionRow.id == session_id)
                .values(status=UPLOAD_FAILED, updated_at=utcnow())
            )

    # ------------------------------------------------------------------
    # Stored files
    # ------------------------------------------------------------------

    def create_stored_file(
        self, original_name: str, size_bytes: int, content_type: Optional[str] = None
    ) -> StoredFile:
        row = StoredFileRow(
            id=new_id(),
            original_name=original_name,
            content_type=content_type,
            size_bytes=size_bytes,
            created_at=utcnow(),
        )
        with self._db("complete") as db:
            db.add(row)
            db.flush()
            return _file_snapshot(row)

    def finalize_stored_file(self, file_id: str, storage_path: str, sha256: str) -> StoredFile:
        with self._db("complete") as db:
            row = db.get(StoredFileRow, file_id)
            if row is None:
                raise NotFoundError(f"stored file '{file_id}' not found", stage="complete", file_id=file_id)
            row.storage_path = storage_path
            row.sha256 = sha256
            db.flush()
            return _file_snapshot(row)

    def delete_stored_file(self, file_id: str) -> None:
        with self._db("complete") as db:
            row = db.get(StoredFileRow, file_id)
            if row is not None:
                db.delete(row)

    def get_stored_file(self, file_id: str) -> Optional[StoredFile]:
        with self._db("lookup") as db:
            row = db.get(StoredFileRow, file_id)
            return _file_snapshot(row) if row else None

    # ------------------------------------------------------------------
    # Analysis jobs
    # ------------------------------------------------------------------

    def get_analysis(self, stored_file_id: str) -> Optional[AnalysisJob]:
        with self._db("analysis") as db:
            row = db.get(AnalysisJobRow, stored_file_id)
            return _job_snapshot(row) if row else None

    def queue_analysis(self, stored_file_id: str) -> bool:
        """Persist a queued job. False when one is already running or completed."""
        with self._db("analysis") as db:
            row = db.get(AnalysisJobRow, stored_file_id)
            if row is not None and row.status in (JOB_RUNNING, JOB_COMPLETED):
                return False
            if row is None:
                row = AnalysisJobRow(stored_file_id=stored_file_id)
                db.add(row)
            row.status = JOB_QUEUED
            row.processed_rows = 0
            row.total_rows = None
            row.result_json = None
            row.error = None
            row.started_at = None
            row.completed_at = None
            row.updated_at = utcnow()
            return True

    def claim_analysis(self, stored_file_id: str, total_rows: Optional[int] = None) -> bool:
        """
        Compare-and-swap queued -> running. Only one caller can win.
        ``total_rows`` is the winner's estimate; completion replaces it with the exact count.
        """
        now = utcnow()
        with self._db("analysis") as db:
            result = db.execute(
                update(AnalysisJobRow)
                .where(AnalysisJobRow.stored_file_id == stored_file_id, AnalysisJobRow.status == JOB_QUEUED)
                .values(status=JOB_RUNNING, total_rows=total_rows, started_at=now, updated_at=now)
            )
            return result.rowcount == 1

    def update_analysis_progress(self, stored_file_id: str, processed_rows: int) -> None:
        with self._db("analysis") as db:
            db.execute(
                update(AnalysisJobRow)
                .where(AnalysisJobRow.stored_file_id == stored_file_id, AnalysisJobRow.status == JOB_RUNNING)
                .values(processed_rows=processed_rows, updated_at=utcnow())
            )

    def complete_analysis(self, stored_file_id: str, processed_rows: int, result_json: str) -> None:
        now = utcnow()
        with self._db("analysis") as db:
            db.execute(
                update(AnalysisJobRow)
                .where(AnalysisJobRow.stored_file_id == stored_file_id)
                .values(
                    status=JOB_COMPLETED,
                    processed_rows=processed_rows,
                    total_rows=processed_rows,
                    result_json=result_json,
                    completed_at=now,
                    updated_at=now,
                )
            )

    def fail_analysis(self, stored_file_id: str, error: str, processed_rows: Optional[int] = None) -> None:
        now = utcnow()
        values = {"status": JOB_FAILED, "error": error, "completed_at": now, "updated_at": now}
        if processed_rows is not None:
            values["processed_rows"] = processed_rows
        with self._db("analysis") as db:
            db.execute(
                update(AnalysisJobRow).where(AnalysisJobRow.stored_file_id == stored_file_id).values(**values)
            )
