"""
Synthetic payment export generator.

Writes a CSV shaped like a real gateway export (raw header spellings,
"October 3, 2025, 1:43 PM" timestamps, mixed UPI/card/netbanking rows) with
two degradations embedded in the final week:
  1. One gateway starts failing UPI collect requests at the issuing bank.
  2. Traffic mix shifts toward international cards, which convert worse.

A handful of repeat card numbers retry over and over so the problematic
customer report has something to find.

Usage:
    srlens generate --rows 20000 --out data/sample_export.csv
"""

from datetime import datetime, timedelta
from pathlib import Path

import numpy as np
import polars as pl

START_DATE = datetime(2025, 9, 22)
DAYS = 21
DEGRADED_FROM_DAY = 14

PAYMENT_MODES = {"UPI": 0.55, "CREDIT_CARD": 0.15, "DEBIT_CARD": 0.15, "PREPAID_CARD": 0.03, "NET_BANKING": 0.12}
GATEWAYS = {"RAZORPAY": 0.4, "PAYU": 0.3, "CASHFREE": 0.2, "N/A": 0.1}
DEGRADED_GATEWAY = "PAYU"
UPI_BANKS = {"": 0.45, "link": 0.4, "HDFC Bank": 0.1, "ICICI Bank": 0.05}
UPI_HANDLES = {"okaxis": 0.3, "ybl": 0.35, "paytm": 0.2, "okhdfcbank": 0.15}
UPI_PSPS = {"PhonePe": 0.4, "Google Pay": 0.35, "Paytm": 0.25}
CARD_BANKS = {"HDFC Bank": 0.3, "ICICI Bank": 0.25, "State Bank of India": 0.2, "Kotak Bank": 0.15, "Federal Bank": 0.1}
CARD_NETWORKS = {"VISA": 0.55, "MASTERCARD": 0.35, "RUPAY": 0.1}
NETBANKING_BANKS = {"HDFC Bank": 0.3, "State Bank of India": 0.3, "Axis Bank": 0.2, "Yes Bank": 0.1, "IDBI Bank": 0.1}

# (tx_msg, cf_error_code, cf_error_reason, cf_error_source) weighted per failure
FAILURES = {
    ("Transaction declined by issuing bank", "U30", "DEBIT_FAILED", "issuing_bank"): 0.3,
    ("Insufficient funds in account", "U09", "INSUFFICIENT_FUNDS", "customer"): 0.25,
    ("Incorrect UPI PIN entered", "ZM", "INVALID_PIN", "customer"): 0.15,
    ("Bank did not respond in time", "U68", "HIGH_RESPONSE_TIME", "issuing_bank"): 0.1,
    ("Technical error at payment gateway", "E500", "PROCESSOR_DECLINED", "payment_gateway"): 0.1,
    ("Transaction flagged by risk checks", "R01", "RISK_DECLINED", "risk"): 0.1,
}
DEGRADED_FAILURE = ("Bank did not respond in time", "U68", "HIGH_RESPONSE_TIME", "issuing_bank")

REPEAT_CUSTOMERS = 5
REPEAT_ATTEMPTS = 15


def _pick(rng: np.random.Generator, weights: dict):
    keys = list(weights)
    probs = np.array(list(weights.values()), dtype=float)
    probs /= probs.sum()
    return keys[int(rng.choice(len(keys), p=probs))]


def format_export_time(ts: datetime) -> str:
    """Gateway-export style timestamp, e.g. 'October 3, 2025, 1:43 PM'."""
    hour = ts.hour % 12 or 12
    return f"{ts:%B} {ts.day}, {ts.year}, {hour}:{ts:%M} {ts:%p}"


def _timestamp(rng: np.random.Generator, day: int) -> datetime:
    # Daytime-heavy traffic
    hour = int(rng.integers(9, 23)) if rng.random() < 0.8 else int(rng.integers(0, 9))
    return START_DATE + timedelta(days=day, hours=hour, minutes=int(rng.integers(0, 60)))


def success_probability(mode: str, gateway: str, bank: str, country: str, day: int) -> float:
    degraded = day >= DEGRADED_FROM_DAY
    rate = 0.82
    if mode == "UPI" and gateway == DEGRADED_GATEWAY and bank == "" and degraded:
        rate = 0.35
    if country and country != "IN":
        rate = min(rate, 0.6)
    return rate


def _row(rng: np.random.Generator, day: int, card_number: str = "") -> dict:
    degraded = day >= DEGRADED_FROM_DAY
    mode = "CREDIT_CARD" if card_number else _pick(rng, PAYMENT_MODES)
    gateway = _pick(rng, GATEWAYS)
    row = {
        "txstatus": "",
        "paymentmode": mode,
        "txtime": format_export_time(_timestamp(rng, day)),
        "txamount": f"{float(rng.lognormal(6.5, 1.0)):,.2f}",
        "merchantid": f"M{int(rng.integers(1, 40)):03d}",
        "pg": gateway,
        "bankname": "",
        "cardtype": "",
        "cardcountry": "",
        "cardnumber": card_number,
        "cardmasked": "",
        "upi_psp": "",
        "txmsg": "",
        "cf_errorcode": "",
        "cf_errorreason": "",
        "cf_errorsource": "",
    }

    if mode == "UPI":
        row["bankname"] = _pick(rng, UPI_BANKS)
        row["cardmasked"] = f"user{int(rng.integers(1, 5000))}@{_pick(rng, UPI_HANDLES)}"
        row["upi_psp"] = _pick(rng, UPI_PSPS)
    elif mode == "NET_BANKING":
        row["bankname"] = _pick(rng, NETBANKING_BANKS)
    else:
        international_share = 0.35 if degraded else 0.1
        row["bankname"] = _pick(rng, CARD_BANKS)
        row["cardtype"] = _pick(rng, CARD_NETWORKS)
        row["cardcountry"] = "US" if rng.random() < international_share else "IN"
        if not card_number:
            row["cardnumber"] = f"4{int(rng.integers(10**14, 10**15))}"

    p = success_probability(mode, gateway, row["bankname"], row["cardcountry"], day)
    if card_number:
        p = 0.0
    if rng.random() < p:
        row["txstatus"] = "SUCCESS"
        return row

    row["txstatus"] = "USER_DROPPED" if rng.random() < 0.1 else "FAILED"
    if row["txstatus"] == "FAILED":
        if mode == "UPI" and gateway == DEGRADED_GATEWAY and degraded:
            failure = DEGRADED_FAILURE
        else:
            failure = _pick(rng, FAILURES)
        row["txmsg"], row["cf_errorcode"], row["cf_errorreason"], row["cf_errorsource"] = failure
    return row


def generate_export(rows: int = 20_000, seed: int = 42) -> pl.DataFrame:
    rng = np.random.default_rng(seed=seed)
    records = [_row(rng, int(rng.integers(0, DAYS))) for _ in range(rows)]

    for i in range(REPEAT_CUSTOMERS):
        card = f"5{i:015d}"
        day = int(rng.integers(DEGRADED_FROM_DAY, DAYS))
        records.extend(_row(rng, day, card_number=card) for _ in range(REPEAT_ATTEMPTS))

    order = rng.permutation(len(records))
    return pl.DataFrame([records[i] for i in order])


def write_export(path: Path, rows: int = 20_000, seed: int = 42) -> pl.DataFrame:
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    df = generate_export(rows, seed)
    df.write_csv(path)
    print(f"[generate] Wrote {df.height:,} rows to {path}")
    return df
