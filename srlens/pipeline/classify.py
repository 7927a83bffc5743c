"""
Derived classifications over normalized transactions.

All functions are pure and deterministic. The failure-category classifier is
an ordered rule table: the first rule whose keywords appear in the combined
error text decides the category, so precedence is the table order.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Optional

from srlens.contracts.schemas import (
    INTENT_BANK_LITERAL,
    STATUS_USER_DROPPED,
    TIER_1_BANKS,
    TIER_1_LABEL,
    TIER_2_LABEL,
    UNKNOWN,
    Transaction,
)


# ---------------------------------------------------------------------------
# Instrument classifiers
# ---------------------------------------------------------------------------

def classify_upi_flow(bank_name: Optional[str]) -> str:
    """COLLECT for a blank bank field, INTENT for the intent literal, else the bank itself."""
    bank = (bank_name or "").strip()
    if not bank:
        return "COLLECT"
    if bank.lower() == INTENT_BANK_LITERAL:
        return "INTENT"
    return bank


def classify_card_scope(card_country: Optional[str]) -> str:
    country = (card_country or "").strip()
    if not country:
        return "UNKNOWN"
    return "DOMESTIC" if country.upper() == "IN" else "INTERNATIONAL"


_TIER_1_LOWER = {name.lower() for name in TIER_1_BANKS}


def classify_bank_tier(bank_name: Optional[str]) -> str:
    bank = (bank_name or "").strip().lower()
    return TIER_1_LABEL if bank in _TIER_1_LOWER else TIER_2_LABEL


def extract_upi_handle(card_masked: Optional[str]) -> Optional[str]:
    """The part of a masked VPA after '@', e.g. 'okaxis' for 'xx12@okaxis'."""
    if not card_masked or "@" not in card_masked:
        return None
    handle = card_masked.split("@", 1)[1].strip()
    return handle or None


def normalize_gateway(pg: Optional[str]) -> str:
    """Gateway placeholders ("N/A", "NA", blank) collapse to Unknown."""
    value = (pg or "").strip()
    if not value or value.upper() in ("N/A", "NA"):
        return UNKNOWN
    return value


def payment_mode_group(payment_mode: str) -> Optional[str]:
    """Collapse a raw payment mode into the group used for per-mode attribution."""
    mode = (payment_mode or "").upper()
    if mode.startswith("UPI"):
        return "UPI"
    if mode in ("CREDIT_CARD", "DEBIT_CARD", "PREPAID_CARD"):
        return mode
    if mode in ("NET_BANKING", "NETBANKING"):
        return "NETBANKING"
    return None


# ---------------------------------------------------------------------------
# Failure category
# ---------------------------------------------------------------------------

class FailureCategory(str, Enum):
    CUSTOMER = "CUSTOMER"
    ISSUER_BANK = "ISSUER_BANK"
    PSP_APP = "PSP_APP"
    GATEWAY_OR_PROCESSOR = "GATEWAY_OR_PROCESSOR"
    FRAUD_OR_RISK = "FRAUD_OR_RISK"
    MERCHANT_OR_VALIDATION = "MERCHANT_OR_VALIDATION"
    UNKNOWN = "UNKNOWN"


# cf_errorsource vocabulary (lowercased) -> category
ERROR_SOURCE_CATEGORIES = {
    "customer": FailureCategory.CUSTOMER,
    "issuing_bank": FailureCategory.ISSUER_BANK,
    "psp_app": FailureCategory.PSP_APP,
    "payment_gateway": FailureCategory.GATEWAY_OR_PROCESSOR,
    "gateway": FailureCategory.GATEWAY_OR_PROCESSOR,
    "processor": FailureCategory.GATEWAY_OR_PROCESSOR,
}


@dataclass(frozen=True)
class FailureRule:
    category: FailureCategory
    keywords: tuple[str, ...]

    def matches(self, text: str) -> bool:
        return any(keyword in text for keyword in self.keywords)


FAILURE_RULES = (
    FailureRule(FailureCategory.CUSTOMER, (
        "invalid_pin",
        "incorrect upi pin",
        "customer_declined",
        "cancelled by the customer",
        "invalid cvv",
        "invalid card verification",
        "did not enter otp",
        "could not complete their otp",
    )),
    FailureRule(FailureCategory.ISSUER_BANK, (
        "insufficient_funds",
        "insufficient funds",
        "exceeds_credit_limit",
        "credit limit",
    )),
    FailureRule(FailureCategory.ISSUER_BANK, (
        "issuing_bank",
        "issuer bank",
        "debit_failed",
        "declined the transaction",
        "high_response_time",
        "did not respond in time",
    )),
    FailureRule(FailureCategory.PSP_APP, (
        "psp_app",
        "session_expired",
        "session has been expired",
        "expired",
    )),
    FailureRule(FailureCategory.FRAUD_OR_RISK, ("fraud", "risk")),
    FailureRule(FailureCategory.MERCHANT_OR_VALIDATION, (
        "validation problem",
        "not supported",
        "merchant",
    )),
    FailureRule(FailureCategory.GATEWAY_OR_PROCESSOR, (
        "technical error",
        "processor_declined",
        "payment gateway",
    )),
)


def classify_failure_text(text: str, rules=FAILURE_RULES) -> FailureCategory:
    """First matching rule wins; the text must already be lowercased."""
    if not text:
        return FailureCategory.UNKNOWN
    for rule in rules:
        if rule.matches(text):
            return rule.category
    return FailureCategory.UNKNOWN


def failure_category(tx: Transaction) -> FailureCategory:
    if tx.status == STATUS_USER_DROPPED:
        return FailureCategory.CUSTOMER

    source = tx.cf_error_source.strip().lower()
    if source in ERROR_SOURCE_CATEGORIES:
        return ERROR_SOURCE_CATEGORIES[source]

    text = " ".join(
        part for part in (
            tx.cf_error_reason,
            tx.cf_error_description,
            tx.pg_error_message,
            tx.tx_msg,
        ) if part
    ).lower()
    return classify_failure_text(text)


# ---------------------------------------------------------------------------
# Failure label
# ---------------------------------------------------------------------------

USER_DROPPED_LABEL = "User Abandoned Transaction"
LABEL_SEPARATOR = " — "
FRAGMENT_SEPARATOR = " • "


def failure_label(tx: Transaction) -> str:
    """
    Stable grouping label for a failed transaction.

    The primary part is the first present of cf_error_code, pg_error_code and
    tx_msg. Up to two enrichment fragments follow (reason, source,
    description), skipping blanks and anything that repeats an earlier part
    case-insensitively.

    >>> failure_label(Transaction(status="FAILED", cf_error_code="U30",
    ...                           cf_error_reason="DEBIT_FAILED", cf_error_source="issuing_bank"))
    'U30 — DEBIT_FAILED • issuing_bank'
    """
    if tx.status == STATUS_USER_DROPPED:
        return USER_DROPPED_LABEL

    primary = tx.cf_error_code or tx.pg_error_code or tx.tx_msg or UNKNOWN
    seen = {primary.lower()}
    fragments = []
    for part in (
        tx.cf_error_reason or tx.tx_msg,
        tx.cf_error_source,
        tx.cf_error_description or tx.pg_error_message,
    ):
        if not part or part.lower() in seen:
            continue
        seen.add(part.lower())
        fragments.append(part)

    fragments = fragments[:2]
    if not fragments:
        return primary
    return primary + LABEL_SEPARATOR + FRAGMENT_SEPARATOR.join(fragments)
