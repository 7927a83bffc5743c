"""
Resumable chunked upload assembler.

Parts arrive in any order, possibly retried, and are written once each under
``<data_dir>/uploads/tmp/<session_id>/``. Completion concatenates them in
index order into ``<data_dir>/uploads/files/``, hashing the bytes as they are
written, and only publishes the file once size and digest check out.
"""

import hashlib
import logging
import os
import re
import shutil
import uuid
from contextlib import contextmanager
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import BinaryIO, Optional

from srlens.config import Settings
from srlens.contracts.schemas import UPLOAD_COMPLETED, UPLOAD_FAILED, UploadSession
from srlens.errors import (
    ConflictError,
    IncompleteError,
    IntegrityError,
    NotFoundError,
    SizeMismatchError,
    SRLensError,
    UnknownError,
    ValidationError,
)
from srlens.upload.store import RecordStore

logger = logging.getLogger(__name__)

MAX_REPORTED_MISSING = 200

_PART_NAME = re.compile(r"^part-(\d+)\.bin$")
_SHA256 = re.compile(r"^[0-9a-f]{64}$")
_UNSAFE_NAME = re.compile(r"[^A-Za-z0-9._-]+")


@dataclass(frozen=True)
class PartReceipt:
    part_index: int
    accepted: bool
    bytes_written: int
    already_had_part: bool = False

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass(frozen=True)
class CompletionResult:
    stored_file_id: str
    sha256: str
    size_bytes: int
    already_completed: bool = False

    def to_dict(self) -> dict:
        return asdict(self)


def _safe_name(name: str) -> str:
    return _UNSAFE_NAME.sub("_", name).strip("._")[:200] or "upload"


class UploadAssembler:
    def __init__(self, settings: Settings, store: RecordStore):
        self.settings = settings
        self.store = store

    # ------------------------------------------------------------------
    # Paths
    # ------------------------------------------------------------------

    def _part_dir(self, session_id: str) -> Path:
        return self.settings.uploads_tmp_dir / session_id

    def _part_path(self, session_id: str, part_index: int) -> Path:
        return self._part_dir(session_id) / f"part-{part_index}.bin"

    def received_parts(self, session_id: str) -> list[int]:
        part_dir = self._part_dir(session_id)
        if not part_dir.is_dir():
            return []
        found = []
        for entry in part_dir.iterdir():
            match = _PART_NAME.match(entry.name)
            if match:
                found.append(int(match.group(1)))
        return sorted(found)

    # ------------------------------------------------------------------
    # Session lifecycle
    # ------------------------------------------------------------------

    def init_session(
        self,
        original_name: str,
        size_bytes: int,
        chunk_size_bytes: Optional[int] = None,
        content_type: Optional[str] = None,
        sha256: Optional[str] = None,
    ) -> UploadSession:
        name = (original_name or "").strip()
        if not name:
            raise ValidationError("original_name is required", stage="init")
        if not isinstance(size_bytes, int) or size_bytes <= 0:
            raise ValidationError("size_bytes must be a positive integer", stage="init")
        chunk = self.settings.default_chunk_size if chunk_size_bytes is None else chunk_size_bytes
        if not isinstance(chunk, int) or not self.settings.min_chunk_size <= chunk <= self.settings.max_chunk_size:
            raise ValidationError(
                f"chunk_size_bytes must be between {self.settings.min_chunk_size} "
                f"and {self.settings.max_chunk_size}",
                stage="init",
                chunk_size_bytes=chunk,
            )
        digest = sha256.strip().lower() if sha256 else None
        if digest is not None and not _SHA256.match(digest):
            raise ValidationError("sha256 must be 64 hex characters", stage="init")

        session = self.store.create_upload_session(name, size_bytes, chunk, content_type, digest)
        self._part_dir(session.id).mkdir(parents=True, exist_ok=True)
        logger.info(
            f"Upload session {session.id} started: '{name}', {size_bytes:,} bytes in {session.expected_parts} parts"
        )
        return session

    def _require_open(self, session_id: str, stage: str) -> UploadSession:
        session = self.store.require_upload_session(session_id)
        if session.status == UPLOAD_COMPLETED:
            raise ConflictError("upload session is already completed", stage=stage, session_id=session_id)
        if session.status == UPLOAD_FAILED:
            raise ConflictError("upload session was aborted or failed", stage=stage, session_id=session_id)
        return session

    def abort(self, session_id: str) -> None:
        session = self.store.require_upload_session(session_id)
        if session.status == UPLOAD_COMPLETED:
            raise ConflictError("completed sessions cannot be aborted", stage="abort", session_id=session_id)
        shutil.rmtree(self._part_dir(session_id), ignore_errors=True)
        self.store.mark_upload_failed(session_id)
        logger.info(f"Upload session {session_id} aborted")

    def describe(self, session_id: str) -> dict:
        session = self.store.require_upload_session(session_id)
        stored = self.store.get_stored_file(session.stored_file_id) if session.stored_file_id else None
        return {
            "id": session.id,
            "original_name": session.original_name,
            "status": session.status,
            "size_bytes": session.size_bytes,
            "chunk_size_bytes": session.chunk_size_bytes,
            "received_bytes": session.received_bytes,
            "expected_parts": session.expected_parts,
            "received_parts": self.received_parts(session_id),
            "stored_file": None if stored is None else {
                "id": stored.id,
                "original_name": stored.original_name,
                "size_bytes": stored.size_bytes,
                "sha256": stored.sha256,
                "storage_path": stored.storage_path,
            },
        }

    # ------------------------------------------------------------------
    # Parts
    # ------------------------------------------------------------------

    def accept_part(
        self, session_id: str, part_index: int, stream: BinaryIO, declared_length: int
    ) -> PartReceipt:
        """
        Write one part. A part slot is either absent, fully written or
        rejected: bytes go to a private temp file and are hard-linked into
        place, which fails if another writer got there first.
        """
        session = self._require_open(session_id, "part")
        if not isinstance(declared_length, int) or declared_length <= 0:
            raise ValidationError("declared length must be a positive integer", stage="part")
        if not isinstance(part_index, int) or not 1 <= part_index <= session.expected_parts:
            raise ValidationError(
                f"part index must be between 1 and {session.expected_parts}",
                stage="part",
                part_index=part_index,
            )
        max_size = session.max_part_size(part_index)
        if declared_length > max_size:
            raise ValidationError(
                f"part {part_index} may be at most {max_size} bytes",
                stage="part",
                part_index=part_index,
                max_size=max_size,
            )

        final = self._part_path(session_id, part_index)
        if final.exists():
            return self._existing_part(session_id, part_index, final, declared_length)

        final.parent.mkdir(parents=True, exist_ok=True)
        temp = final.with_name(f".{final.name}.{uuid.uuid4().hex}.tmp")
        try:
            written = self._write_body(stream, temp, declared_length)
            if written != declared_length:
                raise ValidationError(
                    f"part {part_index} body has {written} bytes, declared {declared_length}",
                    stage="part",
                    part_index=part_index,
                )
            try:
                os.link(temp, final)
            except FileExistsError:
                return self._existing_part(session_id, part_index, final, declared_length)
        except OSError as exc:
            raise UnknownError(f"could not write part {part_index}: {exc}", stage="part") from exc
        finally:
            temp.unlink(missing_ok=True)

        self.store.add_received_bytes(session_id, written)
        logger.debug(f"Session {session_id}: part {part_index} stored ({written:,} bytes)")
        return PartReceipt(part_index, accepted=True, bytes_written=written)

    def _write_body(self, stream: BinaryIO, temp: Path, declared_length: int) -> int:
        # Reads at most one byte past the declared length to detect oversized bodies
        written = 0
        buffer_size = self.settings.copy_buffer_size
        with open(temp, "xb") as out:
            while written <= declared_length:
                block = stream.read(min(buffer_size, declared_length + 1 - written))
                if not block:
                    break
                out.write(block)
                written += len(block)
        return written

    def _existing_part(self, session_id: str, part_index: int, path: Path, declared_length: int) -> PartReceipt:
        existing = path.stat().st_size
        if existing != declared_length:
            raise ConflictError(
                f"part {part_index} already stored with {existing} bytes",
                stage="part",
                part_index=part_index,
                existing_size=existing,
            )
        logger.debug(f"Session {session_id}: part {part_index} already present, ignoring retry")
        return PartReceipt(part_index, accepted=True, bytes_written=0, already_had_part=True)

    # ------------------------------------------------------------------
    # Completion
    # ------------------------------------------------------------------

    @contextmanager
    def _assembly_lock(self, session_id: str):
        lock_path = self.settings.uploads_tmp_dir / f"{session_id}.assembling"
        lock_path.parent.mkdir(parents=True, exist_ok=True)
        try:
            fd = os.open(lock_path, os.O_CREAT | os.O_EXCL | os.O_WRONLY)
        except FileExistsError as exc:
            raise ConflictError(
                "assembly already in progress for this session", stage="complete", session_id=session_id
            ) from exc
        try:
            yield
        finally:
            os.close(fd)
            lock_path.unlink(missing_ok=True)

    def _completed_result(self, session: UploadSession) -> CompletionResult:
        stored = self.store.get_stored_file(session.stored_file_id) if session.stored_file_id else None
        if stored is None:
            raise NotFoundError(
                "completed session has no stored file", stage="complete", session_id=session.id
            )
        return CompletionResult(stored.id, stored.sha256, stored.size_bytes, already_completed=True)

    def complete(self, session_id: str, claimed_part_count: Optional[int] = None) -> CompletionResult:
        session = self.store.require_upload_session(session_id)
        if session.status == UPLOAD_COMPLETED:
            return self._completed_result(session)
        if session.status == UPLOAD_FAILED:
            raise ConflictError("upload session was aborted or failed", stage="complete", session_id=session_id)
        if claimed_part_count is not None and claimed_part_count != session.expected_parts:
            raise ValidationError(
                f"client reports {claimed_part_count} parts, expected {session.expected_parts}",
                stage="complete",
                expected_parts=session.expected_parts,
            )

        with self._assembly_lock(session_id):
            # Another caller may have finished while we waited on the checks above
            session = self.store.require_upload_session(session_id)
            if session.status == UPLOAD_COMPLETED:
                return self._completed_result(session)

            received = set(self.received_parts(session_id))
            missing = [i for i in range(1, session.expected_parts + 1) if i not in received]
            if missing:
                raise IncompleteError(
                    f"{len(missing)} of {session.expected_parts} parts missing",
                    stage="complete",
                    missing_parts=missing[:MAX_REPORTED_MISSING],
                    missing_count=len(missing),
                )
            return self._assemble(session)

    def _assemble(self, session: UploadSession) -> CompletionResult:
        stored = self.store.create_stored_file(session.original_name, session.size_bytes, session.content_type)
        files_dir = self.settings.files_dir
        files_dir.mkdir(parents=True, exist_ok=True)
        destination = files_dir / f"{stored.id}-{_safe_name(session.original_name)}"
        staging = destination.with_name(destination.name + ".assembling")

        logger.info(f"Assembling session {session.id} ({session.expected_parts} parts) into {destination}")
        try:
            digest, written = self._concatenate(session, staging)
            if written != session.size_bytes:
                raise SizeMismatchError(
                    f"assembled {written} bytes, declared {session.size_bytes}",
                    stage="complete",
                    expected=session.size_bytes,
                    actual=written,
                )
            if session.expected_sha256 and digest != session.expected_sha256:
                raise IntegrityError(
                    "assembled file digest does not match the declared sha256",
                    stage="complete",
                    expected=session.expected_sha256,
                    actual=digest,
                )
            os.replace(staging, destination)
        except SRLensError:
            self._roll_back(session, stored.id, staging, destination)
            raise
        except OSError as exc:
            self._roll_back(session, stored.id, staging, destination)
            raise UnknownError(f"assembly failed: {exc}", stage="complete") from exc

        try:
            stored = self.store.finalize_stored_file(stored.id, str(destination), digest)
            self.store.mark_upload_completed(session.id, stored.id, written)
        except Exception:
            # parts stay in place and the session stays open, so complete() can be retried
            logger.error(f"Recording session {session.id} failed, withdrawing {destination}")
            destination.unlink(missing_ok=True)
            self.store.delete_stored_file(stored.id)
            raise
        shutil.rmtree(self._part_dir(session.id), ignore_errors=True)
        logger.info(f"Session {session.id} completed: {written:,} bytes, sha256 {digest}")
        return CompletionResult(stored.id, digest, written)

    def _concatenate(self, session: UploadSession, staging: Path) -> tuple[str, int]:
        """Copy parts 1..N into ``staging`` in order, hashing the same bytes."""
        digest = hashlib.sha256()
        written = 0
        buffer_size = self.settings.copy_buffer_size
        with open(staging, "xb") as out:
            for index in range(1, session.expected_parts + 1):
                with open(self._part_path(session.id, index), "rb") as part:
                    while True:
                        block = part.read(buffer_size)
                        if not block:
                            break
                        digest.update(block)
                        out.write(block)
                        written += len(block)
            out.flush()
            os.fsync(out.fileno())
        return digest.hexdigest(), written

    def _roll_back(self, session: UploadSession, stored_file_id: str, staging: Path, destination: Path) -> None:
        logger.error(f"Assembly of session {session.id} failed, removing partial output")
        staging.unlink(missing_ok=True)
        destination.unlink(missing_ok=True)
        self.store.delete_stored_file(stored_file_id)
        self.store.mark_upload_failed(session.id)
