"""
Row normalizer: raw export rows -> canonical Transaction records.

Exports arrive from several upstream systems with different header spellings,
thousands separators and date formats. Everything downstream works on the
fixed-shape Transaction, so all of that variation is absorbed here.
"""

import math
import re
from dataclasses import fields as dataclass_fields
from datetime import datetime, timedelta, timezone
from typing import Mapping, Optional

from srlens.contracts.schemas import Transaction


# ---------------------------------------------------------------------------
# Header normalization
# ---------------------------------------------------------------------------

# Normalized header -> Transaction field
HEADER_ALIASES = {
    "txstatus": "status",
    "tx_status": "status",
    "transaction_status": "status",
    "status": "status",
    "paymentmode": "payment_mode",
    "payment_mode": "payment_mode",
    "payment_method": "payment_mode",
    "txtime": "tx_time",
    "tx_time": "tx_time",
    "transaction_time": "tx_time",
    "transaction_timestamp": "tx_time",
    "timestamp": "tx_time",
    "txamount": "tx_amount",
    "tx_amount": "tx_amount",
    "transaction_amount": "tx_amount",
    "amount": "tx_amount",
    "merchantid": "merchant_id",
    "merchant_id": "merchant_id",
    "merchant": "merchant_id",
    "pg": "pg",
    "payment_gateway": "pg",
    "gateway": "pg",
    "bankname": "bank_name",
    "bank_name": "bank_name",
    "bank": "bank_name",
    "cardtype": "card_type",
    "card_type": "card_type",
    "cardcountry": "card_country",
    "card_country": "card_country",
    "cardnumber": "card_number",
    "card_number": "card_number",
    "cardmasked": "card_masked",
    "card_masked": "card_masked",
    "processingcardtype": "processing_card_type",
    "processing_card_type": "processing_card_type",
    "nativeotpurleligible": "native_otp_eligible",
    "native_otp_url_eligible": "native_otp_eligible",
    "native_otp_eligible": "native_otp_eligible",
    "card_isfrictionless": "is_frictionless",
    "card_is_frictionless": "is_frictionless",
    "card_nativeotpaction": "native_otp_action",
    "card_native_otp_action": "native_otp_action",
    "card_par": "card_par",
    "iscvvpresent": "cvv_present",
    "is_cvv_present": "cvv_present",
    "upi_psp": "upi_psp",
    "txmsg": "tx_msg",
    "tx_msg": "tx_msg",
    "tx_message": "tx_msg",
    "error_message": "tx_msg",
    "cf_errorcode": "cf_error_code",
    "cf_error_code": "cf_error_code",
    "cf_errorreason": "cf_error_reason",
    "cf_error_reason": "cf_error_reason",
    "cf_errorsource": "cf_error_source",
    "cf_error_source": "cf_error_source",
    "cf_errordescription": "cf_error_description",
    "cf_error_description": "cf_error_description",
    "pg_errorcode": "pg_error_code",
    "pg_error_code": "pg_error_code",
    "pg_errormessage": "pg_error_message",
    "pg_error_message": "pg_error_message",
    "orderamount": "order_amount",
    "order_amount": "order_amount",
    "capturedamount": "captured_amount",
    "captured_amount": "captured_amount",
}

_INPUT_FIELDS = tuple(f.name for f in dataclass_fields(Transaction) if f.init)
_UPPERCASE_FIELDS = ("status", "payment_mode")
_AMOUNT_FIELDS = ("tx_amount", "order_amount", "captured_amount")
_NON_ALNUM = re.compile(r"[^a-z0-9]+")


def normalize_header(header: str) -> str:
    """
    Map a raw header to its Transaction field name.

    Case, surrounding whitespace and punctuation are ignored, so
    "Transaction Status", "tx-status" and "TXSTATUS" all resolve to "status".
    Unrecognised headers come back in their normalized form.
    """
    key = _NON_ALNUM.sub("_", header.strip().lower()).strip("_")
    return HEADER_ALIASES.get(key, key)


# ---------------------------------------------------------------------------
# Scalar parsing
# ---------------------------------------------------------------------------

# Tried in order after ISO-8601; month/day ambiguity resolves month-first.
TIMESTAMP_FORMATS = [
    "%B %d, %Y, %I:%M %p",
    "%B %d, %Y, %I:%M:%S %p",
    "%b %d, %Y, %I:%M %p",
    "%b %d, %Y, %I:%M:%S %p",
    "%m/%d/%Y %I:%M %p",
    "%m/%d/%Y %I:%M:%S %p",
    "%m/%d/%Y %H:%M",
    "%m/%d/%Y %H:%M:%S",
    "%d/%m/%Y %I:%M %p",
    "%d/%m/%Y %I:%M:%S %p",
    "%d/%m/%Y %H:%M",
    "%d/%m/%Y %H:%M:%S",
    "%d-%m-%Y %H:%M",
    "%d-%m-%Y %H:%M:%S",
    "%m-%d-%Y %H:%M",
    "%m-%d-%Y %H:%M:%S",
    "%Y-%m-%d %H:%M",
    "%Y-%m-%d %H:%M:%S",
    "%Y-%m-%d %H:%M:%S.%f",
    "%Y/%m/%d %H:%M",
    "%Y/%m/%d %H:%M:%S",
    "%Y/%m/%d",
    "%Y-%m-%d",
    "%d/%m/%Y",
    "%m/%d/%Y",
    "%d-%m-%Y",
    "%m-%d-%Y",
]

EXCEL_EPOCH = datetime(1899, 12, 30)
EXCEL_SERIAL_RANGE = (20_000, 80_000)
EPOCH_SECONDS_RANGE = (1e9, 1e10)
EPOCH_MILLIS_RANGE = (1e11, 1e14)

_NUMERIC = re.compile(r"^[+-]?\d+(\.\d+)?$")


def _to_naive_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def _parse_numeric_time(number: float) -> Optional[datetime]:
    magnitude = abs(number)
    try:
        if EXCEL_SERIAL_RANGE[0] <= number <= EXCEL_SERIAL_RANGE[1]:
            return EXCEL_EPOCH + timedelta(days=number)
        if EPOCH_SECONDS_RANGE[0] <= magnitude < EPOCH_SECONDS_RANGE[1]:
            return datetime(1970, 1, 1) + timedelta(seconds=number)
        if EPOCH_MILLIS_RANGE[0] <= magnitude < EPOCH_MILLIS_RANGE[1]:
            return datetime(1970, 1, 1) + timedelta(milliseconds=number)
    except OverflowError:
        return None
    return None


def parse_tx_time(value) -> Optional[datetime]:
    """
    Parse an export timestamp into a naive datetime.

    Accepted, in order: ISO-8601 (offsets are converted to UTC), the explicit
    TIMESTAMP_FORMATS, Excel serial days, epoch seconds and epoch milliseconds.
    Anything else returns None; callers decide whether undated rows count.
    """
    if value is None:
        return None
    if isinstance(value, datetime):
        return _to_naive_utc(value)
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return _parse_numeric_time(float(value)) if math.isfinite(value) else None

    text = str(value).strip()
    if not text:
        return None
    if _NUMERIC.match(text):
        return _parse_numeric_time(float(text))

    try:
        return _to_naive_utc(datetime.fromisoformat(text))
    except ValueError:
        pass
    for fmt in TIMESTAMP_FORMATS:
        try:
            return datetime.strptime(text, fmt)
        except ValueError:
            continue
    return None


def parse_amount(value) -> float:
    """Thousands separators are stripped; anything unparseable is 0.0."""
    if value is None:
        return 0.0
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        number = float(value)
    else:
        text = str(value).replace(",", "").strip()
        if not text:
            return 0.0
        try:
            number = float(text)
        except ValueError:
            return 0.0
    return number if math.isfinite(number) else 0.0


# ---------------------------------------------------------------------------
# Row normalization
# ---------------------------------------------------------------------------

def build_transaction(fields: Mapping[str, object]) -> Optional[Transaction]:
    """
    Build a Transaction from a row whose keys are already Transaction field
    names (see normalize_header). Returns None for rows with no content.
    """
    if not any(str(v).strip() for v in fields.values() if v is not None):
        return None

    values = {}
    for name in _INPUT_FIELDS:
        if name not in fields:
            continue
        raw = fields[name]
        if name == "tx_time":
            values[name] = parse_tx_time(raw)
        elif name in _AMOUNT_FIELDS:
            values[name] = parse_amount(raw)
        else:
            text = "" if raw is None else str(raw).strip()
            values[name] = text.upper() if name in _UPPERCASE_FIELDS else text
    return Transaction(**values)


def normalize_row(raw: Mapping[str, object]) -> Optional[Transaction]:
    """
    Normalize a raw row with arbitrary header spellings.

    When two headers resolve to the same field the first non-blank value wins.
    """
    fields: dict[str, object] = {}
    for header, value in raw.items():
        if header is None:
            continue
        name = normalize_header(str(header))
        if name not in fields or fields[name] in (None, ""):
            fields[name] = value
    return build_transaction(fields)
