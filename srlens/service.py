"""
Analytics operations over completed uploads.

Every query names an upload session, is resolved to the assembled file on
disk and runs one (or, for RCA, two) read-only passes over it. Filter
payloads are validated up front so a bad filter never costs a file scan.
"""

import logging
from pathlib import Path
from typing import Optional

from srlens.analytics.customers import compare_customer_segments, detect_problematic_customers
from srlens.analytics.rca import compare
from srlens.analytics.volume_mix import analyze_volume_mix
from srlens.config import Settings
from srlens.contracts.schemas import UPLOAD_COMPLETED, StoredFile
from srlens.errors import ConflictError, NotFoundError, ValidationError
from srlens.jobs.analysis import AnalysisJobs
from srlens.pipeline.failures import check_breakdown_request, failure_breakdown, failure_insights
from srlens.pipeline.filters import FilterSet
from srlens.pipeline.scans import (
    collect_filter_options,
    discover_time_bounds,
    materialize_windows,
    rca_windows,
    sample_transactions,
)
from srlens.pipeline.stream import PassStats
from srlens.pipeline.transform import dimension_group, filter_payment_mode, transactions_to_frame
from srlens.pipeline.views import compute_view
from srlens.upload.assembler import UploadAssembler
from srlens.upload.store import RecordStore

logger = logging.getLogger(__name__)


def _sample_row(tx) -> dict:
    return {
        "status": tx.status,
        "payment_mode": tx.payment_mode,
        "merchant_id": tx.merchant_id,
        "pg": tx.pg,
        "bank_name": tx.bank_name,
        "card_type": tx.card_type,
        "tx_msg": tx.tx_msg,
        "tx_time": tx.tx_time.isoformat() if tx.tx_time else None,
        "tx_amount": tx.tx_amount,
    }


class AnalyticsService:
    def __init__(self, settings: Settings, store: RecordStore, assembler: UploadAssembler, jobs: AnalysisJobs):
        self.settings = settings
        self.store = store
        self.assembler = assembler
        self.jobs = jobs

    @classmethod
    def from_settings(cls, settings: Settings) -> "AnalyticsService":
        store = RecordStore.from_settings(settings)
        return cls(settings, store, UploadAssembler(settings, store), AnalysisJobs(settings, store))

    def close(self) -> None:
        self.jobs.shutdown()
        self.store.close()

    # ------------------------------------------------------------------
    # File resolution
    # ------------------------------------------------------------------

    def resolve_file(self, session_id: str) -> tuple[StoredFile, Path]:
        session = self.store.require_upload_session(session_id)
        if session.status != UPLOAD_COMPLETED or not session.stored_file_id:
            raise ConflictError(
                f"upload session is {session.status}, not completed", stage="analytics", session_id=session_id
            )
        stored = self.store.get_stored_file(session.stored_file_id)
        if stored is None or not stored.storage_path or not Path(stored.storage_path).exists():
            raise NotFoundError(
                "assembled file is missing", stage="analytics", session_id=session_id,
                stored_file_id=session.stored_file_id,
            )
        return stored, Path(stored.storage_path)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def metrics(self, session_id: str, view: str = "overview", filter_payload: Optional[dict] = None) -> dict:
        filters = FilterSet.from_payload(filter_payload)
        _, path = self.resolve_file(session_id)
        return compute_view(path, view, filters)

    def time_bounds(self, session_id: str, filter_payload: Optional[dict] = None) -> dict:
        filters = FilterSet.from_payload(filter_payload)
        _, path = self.resolve_file(session_id)
        stats = PassStats()
        bounds = discover_time_bounds(path, filters, stats=stats)
        return {
            "bounds": bounds.to_dict() if bounds else None,
            "stats": stats.to_dict(),
        }

    def sample(self, session_id: str, filter_payload: Optional[dict] = None, max_rows: Optional[int] = None) -> dict:
        filters = FilterSet.from_payload(filter_payload)
        _, path = self.resolve_file(session_id)
        limit = self.settings.sample_default_rows if max_rows is None else max_rows
        limit = max(1, min(limit, self.settings.sample_max_rows))
        rows, truncated = sample_transactions(path, filters, limit)
        return {"rows": [_sample_row(tx) for tx in rows], "count": len(rows), "truncated": truncated}

    def filter_options(self, session_id: str, filter_payload: Optional[dict] = None) -> dict:
        filters = FilterSet.from_payload(filter_payload)
        _, path = self.resolve_file(session_id)
        return collect_filter_options(path, filters)

    def rca(
        self,
        session_id: str,
        filter_payload: Optional[dict] = None,
        period_days: int = 7,
        payment_mode: str = "ALL",
    ) -> dict:
        """
        Two passes: find the latest filtered timestamp, then materialize the
        current and previous windows ending there and compare them.
        """
        filters = FilterSet.from_payload(filter_payload)
        payment_mode = (payment_mode or "ALL").upper()
        dimension_group(payment_mode)
        period_days = max(1, min(int(period_days), self.settings.max_period_days))
        _, path = self.resolve_file(session_id)

        bounds = discover_time_bounds(path, filters)
        if bounds is None:
            logger.info(f"RCA for {session_id}: no dated transactions match the filters")
            return {"payment_mode": payment_mode, "period_days": period_days, "windows": None, "empty": True}

        current_window, previous_window = rca_windows(bounds.max_time, period_days)
        current_rows, previous_rows = materialize_windows(path, filters, current_window, previous_window)
        current_df = transactions_to_frame(current_rows)
        previous_df = transactions_to_frame(previous_rows)

        comparison = compare(current_df, previous_df, payment_mode)
        scoped_current = filter_payment_mode(current_df, payment_mode)
        scoped_previous = filter_payment_mode(previous_df, payment_mode)
        return {
            "payment_mode": payment_mode,
            "period_days": period_days,
            "empty": False,
            "windows": {"current": current_window.to_dict(), "previous": previous_window.to_dict()},
            "period_comparison": comparison.to_dict(),
            "volume_mix": analyze_volume_mix(current_df, previous_df, payment_mode),
            "customer_segments": compare_customer_segments(scoped_current, scoped_previous),
            "problematic_customers": detect_problematic_customers(scoped_current),
        }

    def failure_insights(self, session_id: str, filter_payload: Optional[dict] = None) -> dict:
        filters = FilterSet.from_payload(filter_payload)
        _, path = self.resolve_file(session_id)
        return failure_insights(path, filters)

    def rca_breakdown(
        self,
        session_id: str,
        filter_payload: Optional[dict] = None,
        period_days: int = 7,
        dimension: str = "Failure Category",
        value: str = "",
        analysis_type: str = "FAILED",
        period: str = "current",
    ) -> dict:
        """
        Drill into one RCA dimension value: where its failures (or user drops)
        came from in the current or previous window, by payment mode and gateway.
        """
        filters = FilterSet.from_payload(filter_payload)
        status = check_breakdown_request(dimension, analysis_type)
        period = (period or "current").lower()
        if period not in ("current", "previous"):
            raise ValidationError("period must be 'current' or 'previous'", stage="breakdown", period=period)
        period_days = max(1, min(int(period_days), self.settings.max_period_days))
        _, path = self.resolve_file(session_id)

        bounds = discover_time_bounds(path, filters)
        if bounds is None:
            logger.info(f"Breakdown for {session_id}: no dated transactions match the filters")
            return {
                "dimension": dimension, "value": value, "analysis_type": status, "period": period,
                "period_days": period_days, "empty": True,
            }

        current_window, previous_window = rca_windows(bounds.max_time, period_days)
        window = current_window if period == "current" else previous_window
        result = failure_breakdown(path, filters, window, dimension, value, status)
        return {**result, "period": period, "period_days": period_days, "empty": False}

    # ------------------------------------------------------------------
    # Background analysis
    # ------------------------------------------------------------------

    def start_analysis(self, session_id: str) -> dict:
        stored, _ = self.resolve_file(session_id)
        started = self.jobs.start(stored.id)
        return {"stored_file_id": stored.id, "started": started}

    def analysis_status(self, session_id: str) -> dict:
        stored, _ = self.resolve_file(session_id)
        return self.jobs.status(stored.id)

    def wait_for_analysis(self, session_id: str, timeout: Optional[float] = None) -> dict:
        stored, _ = self.resolve_file(session_id)
        return self.jobs.wait(stored.id, timeout=timeout)
