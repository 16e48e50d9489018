# 📂 backend/trustledger/utils.py - shared helpers (Decimal, addresses, ids, time)
# -----------------------------------------------------------------------------
# Here:
# - Decimal handling for ledger amounts (4 decimal places),
# - integer-only scaling of on-chain token units to the ledger format,
# - EVM address normalisation (EIP-55 checksum, keccak-256),
# - ticket id generation (base62),
# - UTC time helpers that behave the same on PostgreSQL and SQLite.

from __future__ import annotations

import re
import secrets
from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation, getcontext
from typing import Any, Optional

from Crypto.Hash import keccak

from .errors import InvalidAddress, InvalidAmount

getcontext().prec = 40  # room for 18-decimal token amounts

# =========================
# 🔢 Decimal
# =========================
AMOUNT_Q = Decimal("0.0001")
ZERO = Decimal("0.0000")
BALANCE_EPSILON = Decimal("0.000000001")  # overdraft tolerance


def dec(x: Any) -> Decimal:
    """Coerce to Decimal via str (never via float arithmetic)."""
    if isinstance(x, Decimal):
        return x
    return Decimal(str(x))


def q4(x: Any) -> Decimal:
    """Round to 4 decimal places (HALF_UP)."""
    return dec(x).quantize(AMOUNT_Q, rounding=ROUND_HALF_UP)


def parse_amount(value: Any) -> Decimal:
    """
    Validates a ledger amount and returns it quantised to 4 places.
    Negative values are allowed (refunds are negative debits); NaN, infinity,
    booleans and non-numeric strings are rejected.
    """
    if value is None or isinstance(value, bool):
        raise InvalidAmount("amount is required")
    try:
        d = dec(value.strip() if isinstance(value, str) else value)
    except (InvalidOperation, ValueError, TypeError):
        raise InvalidAmount(f"invalid amount: {value!r}")
    if not d.is_finite():
        raise InvalidAmount(f"invalid amount: {value!r}")
    return q4(d)


def to_decimal4_from_units(amount: Any, decimals: int = 18) -> str:
    """
    Converts an on-chain integer amount (token base units) into the ledger's
    4-decimal string using integer arithmetic only. Truncates after the 4th
    decimal:  10**18 with 18 decimals -> "1.0000".
    """
    d = max(0, min(36, int(decimals)))
    raw = int(amount)
    if raw < 0:
        raise InvalidAmount("on-chain amount cannot be negative")
    scaled = (raw * 10000) // (10 ** d)
    int_part, frac_part = divmod(scaled, 10000)
    return f"{int_part}.{frac_part:04d}"


# =========================
# 🔐 Keccak / addresses
# =========================
_ADDRESS_RE = re.compile(r"^0x[0-9a-fA-F]{40}$")
TX_HASH_RE = re.compile(r"^0x[0-9a-fA-F]{64}$")


def keccak256(data: bytes) -> bytes:
    k = keccak.new(digest_bits=256)
    k.update(data)
    return k.digest()


def to_checksum_address(addr: str) -> str:
    """EIP-55 mixed-case checksum of a 0x-prefixed 20-byte hex address."""
    lower = addr[2:].lower()
    digest = keccak256(lower.encode("ascii")).hex()
    out = []
    for ch, h in zip(lower, digest):
        if ch.isdigit():
            out.append(ch)
        else:
            out.append(ch.upper() if int(h, 16) >= 8 else ch)
    return "0x" + "".join(out)


def normalize_address(value: Any) -> str:
    """
    Returns the checksummed form of an EVM address.
    All-lowercase and all-uppercase inputs are accepted as-is; mixed-case
    inputs must already carry a valid checksum.
    """
    s = str(value or "").strip()
    if not _ADDRESS_RE.match(s):
        raise InvalidAddress(f"invalid address: {s!r}")
    checksummed = to_checksum_address(s)
    body = s[2:]
    if body != body.lower() and body != body.upper() and s != checksummed:
        raise InvalidAddress(f"bad address checksum: {s!r}")
    return checksummed


def same_address(a: Optional[str], b: Optional[str]) -> bool:
    return (a or "").lower() == (b or "").lower()


def topic_to_address(topic: str) -> str:
    """Indexed address topic (32-byte, left-padded) -> checksummed address."""
    return normalize_address("0x" + topic[-40:])


# =========================
# 🆔 Ids
# =========================
BASE62 = "0123456789abcdefghijklmnopqrstuvwxyzABCDEFGHIJKLMNOPQRSTUVWXYZ"


def random_base62(length: int) -> str:
    return "".join(secrets.choice(BASE62) for _ in range(length))


def new_ticket() -> str:
    """48-char base62 verification ticket."""
    return random_base62(48)


# =========================
# 🕒 Time
# =========================
def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(dt: datetime) -> datetime:
    """SQLite returns naive datetimes; treat them as UTC."""
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)
