"""
Data contracts for SRLens.

Record types, thresholds and frame schemas shared by every layer.

Layer flow: uploaded parts -> stored export file -> streaming passes
(grouped metrics) -> materialized period frames -> RCA payloads
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

import polars as pl


# =============================================================================
# LAYER 1: Upload records (record store)
# =============================================================================

UPLOAD_UPLOADING = "uploading"
UPLOAD_COMPLETED = "completed"
UPLOAD_FAILED = "failed"


@dataclass(frozen=True)
class UploadSession:
    id: str
    original_name: str
    content_type: Optional[str]
    size_bytes: int
    chunk_size_bytes: int
    received_bytes: int
    status: str
    expected_sha256: Optional[str]
    stored_file_id: Optional[str]
    created_at: datetime
    updated_at: datetime

    @property
    def expected_parts(self) -> int:
        return -(-self.size_bytes // self.chunk_size_bytes)

    def max_part_size(self, part_index: int) -> int:
        """Chunk size for every part except the last, which holds the remainder."""
        if part_index == self.expected_parts:
            return self.size_bytes - (self.expected_parts - 1) * self.chunk_size_bytes
        return self.chunk_size_bytes


@dataclass(frozen=True)
class StoredFile:
    id: str
    original_name: str
    content_type: Optional[str]
    size_bytes: int
    sha256: Optional[str]
    storage_path: Optional[str]
    created_at: datetime


JOB_QUEUED = "queued"
JOB_RUNNING = "running"
JOB_COMPLETED = "completed"
JOB_FAILED = "failed"


@dataclass(frozen=True)
class AnalysisJob:
    stored_file_id: str
    status: str
    processed_rows: int
    total_rows: Optional[int]
    result_json: Optional[str]
    error: Optional[str]
    started_at: Optional[datetime]
    completed_at: Optional[datetime]
    updated_at: datetime


# =============================================================================
# LAYER 2: Canonical transaction (normalizer output)
# =============================================================================

STATUS_SUCCESS = "SUCCESS"
STATUS_FAILED = "FAILED"
STATUS_USER_DROPPED = "USER_DROPPED"


@dataclass(frozen=True, slots=True)
class Transaction:
    """One normalized export row. Derived flags are fixed at construction."""

    status: str = ""
    payment_mode: str = ""
    merchant_id: str = ""
    pg: str = ""
    bank_name: str = ""
    card_number: str = ""
    card_masked: str = ""
    card_type: str = ""
    card_country: str = ""
    processing_card_type: str = ""
    native_otp_eligible: str = ""
    is_frictionless: str = ""
    native_otp_action: str = ""
    card_par: str = ""
    cvv_present: str = ""
    upi_psp: str = ""
    tx_msg: str = ""
    cf_error_code: str = ""
    cf_error_reason: str = ""
    cf_error_source: str = ""
    cf_error_description: str = ""
    pg_error_code: str = ""
    pg_error_message: str = ""
    tx_time: Optional[datetime] = None
    tx_amount: float = 0.0
    order_amount: float = 0.0
    captured_amount: float = 0.0
    tx_date: Optional[str] = field(init=False, default=None)
    is_success: bool = field(init=False, default=False)
    is_failed: bool = field(init=False, default=False)
    is_user_dropped: bool = field(init=False, default=False)

    def __post_init__(self):
        set_ = object.__setattr__
        set_(self, "tx_date", self.tx_time.strftime("%Y-%m-%d") if self.tx_time else None)
        set_(self, "is_success", self.status == STATUS_SUCCESS)
        set_(self, "is_failed", self.status == STATUS_FAILED)
        set_(self, "is_user_dropped", self.status == STATUS_USER_DROPPED)

    @property
    def customer_id(self) -> str:
        return self.card_number or self.card_masked or "unknown"


# =============================================================================
# LAYER 3: Materialized period frames (RCA input)
# =============================================================================

TRANSACTION_FRAME_SCHEMA = {
    "status": pl.Utf8,
    "payment_mode": pl.Utf8,
    "merchant_id": pl.Utf8,
    "pg": pl.Utf8,
    "bank_name": pl.Utf8,
    "card_type": pl.Utf8,
    "card_scope": pl.Utf8,            # DOMESTIC, INTERNATIONAL, UNKNOWN
    "processing_card_type": pl.Utf8,
    "native_otp_eligible": pl.Utf8,
    "is_frictionless": pl.Utf8,
    "upi_flow": pl.Utf8,              # COLLECT, INTENT or the bank name
    "upi_handle": pl.Utf8,
    "upi_psp": pl.Utf8,
    "tx_msg": pl.Utf8,
    "failure_label": pl.Utf8,         # empty unless status == FAILED
    "customer_id": pl.Utf8,           # card number, else masked id, else "unknown"
    "tx_time": pl.Datetime("us"),
    "tx_date": pl.Utf8,
    "tx_amount": pl.Float64,
    "is_success": pl.Boolean,
    "is_failed": pl.Boolean,
    "is_user_dropped": pl.Boolean,
}


# =============================================================================
# CONSTANTS
# =============================================================================

UNKNOWN = "Unknown"

UPI_MODES = ("UPI", "UPI_CREDIT_CARD", "UPI_PPI")
CARD_MODES = ("CREDIT_CARD", "DEBIT_CARD", "PREPAID_CARD")
NETBANKING_MODES = ("NET_BANKING", "NETBANKING")

# Mode group -> raw payment_mode values; None means every mode
PAYMENT_MODE_GROUPS = {
    "ALL": None,
    "UPI": UPI_MODES,
    "CARDS": CARD_MODES,
    "CREDIT_CARD": ("CREDIT_CARD",),
    "DEBIT_CARD": ("DEBIT_CARD",),
    "PREPAID_CARD": ("PREPAID_CARD",),
    "NETBANKING": NETBANKING_MODES,
}

INTENT_BANK_LITERAL = "link"

TIER_1_BANKS = (
    "Axis Bank",
    "HDFC Bank",
    "ICICI Bank",
    "Kotak Mahindra Bank",
    "State Bank Of India",
    "Yes Bank Ltd",
)
TIER_1_LABEL = "Tier 1 Bank"
TIER_2_LABEL = "Tier 2 Bank"

# RCA thresholds, all in percentage points
SR_DROP_THRESHOLD = 0.5
VOLUME_SHARE_SPIKE_THRESHOLD = 5.0
SR_DEGRADATION_THRESHOLD = 2.0
MIN_VOLUME_SHARE_FOR_ANALYSIS = 1.0
FAILURE_RATE_DELTA_THRESHOLD = 1.0
FAILURE_EXPLOSION_RATIO = 1.5
HIGH_CONFIDENCE_FAILURE_RATE = 2.0
MAX_INSIGHTS = 10
MAX_EVIDENCE_REASONS = 3

PROBLEMATIC_MIN_RETRIES = 10
PROBLEMATIC_MAX_RETRY_SR = 1.0
HIGH_VALUE_PERCENTILE = 0.75

FAILURE_REASON_DIMENSION = "Failure Reason"

# Display name -> frame column, per payment-mode group
RCA_DIMENSIONS = {
    "UPI": {
        "PG": "pg",
        "Flow Type": "upi_flow",
        "Handle": "upi_handle",
        "PSP": "upi_psp",
        FAILURE_REASON_DIMENSION: "tx_msg",
    },
    "CARDS": {
        "PG": "pg",
        "Card Type": "card_type",
        "Card Scope": "card_scope",
        "Bank": "bank_name",
        "Processing Card Type": "processing_card_type",
        "Native OTP Eligible": "native_otp_eligible",
        "Frictionless": "is_frictionless",
        FAILURE_REASON_DIMENSION: "tx_msg",
    },
    "NETBANKING": {
        "PG": "pg",
        "Bank": "bank_name",
        FAILURE_REASON_DIMENSION: "tx_msg",
    },
    "ALL": {
        "Payment Mode": "payment_mode",
        "PG": "pg",
        FAILURE_REASON_DIMENSION: "tx_msg",
    },
}

# Failure insights: spike kinds, trend labels and detection constants
SPIKE_SUDDEN = "SUDDEN"
SPIKE_GRADUAL = "GRADUAL"
SPIKE_RECURRING = "RECURRING"
SPIKE_PERSISTENT = "PERSISTENT"
TREND_INCREASING = "INCREASING"
TREND_DECREASING = "DECREASING"
TREND_STABLE = "STABLE"
TREND_CHANGE_PERCENT = 10.0
SPIKE_STDDEV_MULTIPLIER = 1.5       # spike day: count > max(median, mean) + 1.5 sigma
ANOMALY_STDDEV_MULTIPLIER = 2.0     # anomaly: current-window volume > mean + 2 sigma
SPIKE_MERGE_GAP_DAYS = 3
MIN_INSIGHT_FAILURES = 5
UNKNOWN_ERROR = "Unknown Error"

# RCA drill-down: which statuses a breakdown can cover
BREAKDOWN_STATUSES = (STATUS_FAILED, STATUS_USER_DROPPED)

VOLUME_MIX_DIMENSIONS = {
    "UPI": {"PG": "pg", "Flow Type": "upi_flow", "Handle": "upi_handle", "PSP": "upi_psp"},
    "CARDS": {"PG": "pg", "Card Type": "card_type", "Card Scope": "card_scope", "Bank": "bank_name"},
    "NETBANKING": {"PG": "pg", "Bank": "bank_name"},
    "ALL": {"Payment Mode": "payment_mode", "PG": "pg"},
}

AMOUNT_BUCKETS = [
    (100.0, "0-100"),
    (500.0, "100-500"),
    (1_000.0, "500-1K"),
    (5_000.0, "1K-5K"),
    (10_000.0, "5K-10K"),
    (float("inf"), "10K+"),
]
WEEKDAYS = ["Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday", "Sunday"]
