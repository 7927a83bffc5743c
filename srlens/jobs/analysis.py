"""
Background full-file analysis jobs.

One job per stored file. The persisted record walks queued -> running ->
completed | failed; progress checkpoints are written while the pass runs so a
status poll sees ``processed_rows`` grow against a ``total_rows`` estimate
taken from the file size at claim time. A job already running or completed
is never started twice: the in-process map of futures guards this process and
the store's compare-and-swap claim guards everything else.
"""

import json
import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from pathlib import Path
from typing import Optional

from srlens.config import Settings
from srlens.contracts.schemas import JOB_COMPLETED
from srlens.errors import NotFoundError
from srlens.pipeline.stream import PassStats, aggregate, estimate_row_count
from srlens.upload.store import RecordStore, utcnow

logger = logging.getLogger(__name__)

FAILURE_REASON_LIMIT = 50


def _progress_percent(processed_rows: int, total_rows: Optional[int]) -> Optional[float]:
    # total_rows is an estimate while running, so cap at 100
    if not total_rows:
        return None
    return min(100.0, round(100.0 * processed_rows / total_rows, 1))


class AnalysisJobs:
    def __init__(self, settings: Settings, store: RecordStore):
        self.settings = settings
        self.store = store
        self._lock = threading.RLock()
        self._futures: dict[str, Future] = {}
        self._executor = ThreadPoolExecutor(
            max_workers=settings.analysis_workers, thread_name_prefix="srlens-analysis"
        )

    def _resolve_path(self, stored_file_id: str) -> Path:
        stored = self.store.get_stored_file(stored_file_id)
        if stored is None or not stored.storage_path:
            raise NotFoundError(
                f"stored file {stored_file_id} not found", stage="analysis", stored_file_id=stored_file_id
            )
        path = Path(stored.storage_path)
        if not path.exists():
            raise NotFoundError(
                f"stored file {stored_file_id} is missing on disk", stage="analysis", stored_file_id=stored_file_id
            )
        return path

    def start(self, stored_file_id: str) -> bool:
        """Queue a run. False when one is in flight or already completed."""
        path = self._resolve_path(stored_file_id)
        with self._lock:
            running = self._futures.get(stored_file_id)
            if running is not None and not running.done():
                return False
            if not self.store.queue_analysis(stored_file_id):
                return False
            future = self._executor.submit(self._run, stored_file_id, path)
            self._futures[stored_file_id] = future
            future.add_done_callback(lambda _: self._forget(stored_file_id, future))
        logger.info(f"Queued analysis for {stored_file_id}")
        return True

    def _forget(self, stored_file_id: str, future: Future) -> None:
        with self._lock:
            if self._futures.get(stored_file_id) is future:
                del self._futures[stored_file_id]

    def _run(self, stored_file_id: str, path: Path) -> None:
        try:
            estimate = estimate_row_count(path)
        except OSError as exc:
            logger.warning(f"Could not size {path} for progress reporting: {exc}")
            estimate = None
        if not self.store.claim_analysis(stored_file_id, total_rows=estimate):
            logger.info(f"Analysis for {stored_file_id} was claimed elsewhere")
            return

        started_at = utcnow()
        progress = PassStats()

        def checkpoint(stats: PassStats) -> None:
            progress.rows_read = stats.rows_read
            self.store.update_analysis_progress(stored_file_id, stats.rows_read)
            logger.debug(f"Analysis for {stored_file_id}: {stats.rows_read:,} rows processed")

        try:
            result = aggregate(
                path,
                include_undated=True,
                on_progress=checkpoint,
                progress_every=self.settings.progress_every_rows,
            )
            stats = result.stats
            summary = result.to_dict(failure_limit=FAILURE_REASON_LIMIT)
            payload = {
                "totals": summary["totals"],
                "daily_trend": summary["daily_trend"],
                "failure_reasons": summary["failure_reasons"],
                "meta": {
                    "processed_rows": stats.rows_read,
                    "undated_rows": stats.rows_undated,
                    "skipped_rows": stats.rows_skipped,
                    "empty_rows": stats.rows_empty,
                    "started_at": started_at.isoformat(),
                    "completed_at": utcnow().isoformat(),
                },
            }
            self.store.complete_analysis(stored_file_id, stats.rows_read, json.dumps(payload))
            logger.info(f"Analysis for {stored_file_id} completed: {stats.rows_read:,} rows")
        except Exception as exc:
            logger.exception(f"Analysis for {stored_file_id} failed")
            self.store.fail_analysis(stored_file_id, str(exc), processed_rows=progress.rows_read)

    def status(self, stored_file_id: str) -> dict:
        job = self.store.get_analysis(stored_file_id)
        if job is None:
            raise NotFoundError(
                f"no analysis for stored file {stored_file_id}", stage="analysis", stored_file_id=stored_file_id
            )
        return {
            "stored_file_id": job.stored_file_id,
            "status": job.status,
            "processed_rows": job.processed_rows,
            "total_rows": job.total_rows,
            "progress_percent": _progress_percent(job.processed_rows, job.total_rows),
            "error": job.error,
            "started_at": job.started_at.isoformat() if job.started_at else None,
            "completed_at": job.completed_at.isoformat() if job.completed_at else None,
            "updated_at": job.updated_at.isoformat() if job.updated_at else None,
            "result": json.loads(job.result_json) if job.status == JOB_COMPLETED and job.result_json else None,
        }

    def wait(self, stored_file_id: str, timeout: Optional[float] = None) -> dict:
        """Block until the in-flight run (if any) finishes, then report status."""
        with self._lock:
            future = self._futures.get(stored_file_id)
        if future is not None:
            future.result(timeout=timeout)
        return self.status(stored_file_id)

    def shutdown(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait)
