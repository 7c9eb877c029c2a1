from __future__ import annotations

from decimal import Decimal
from typing import Annotated, Literal, Optional
from uuid import UUID

from pydantic import BeforeValidator, StringConstraints

from .errors import InvalidRequest


def _to_upper_str(v):
    if v is None:
        return v
    return str(v).strip().upper()


def _to_lower_str(v):
    if v is None:
        return v
    return str(v).strip().lower()


def _to_decimal(v):
    # Money arrives as JSON numbers or strings; go through str() so floats never leak in.
    if v is None or isinstance(v, Decimal):
        return v
    if isinstance(v, bool):
        raise ValueError("invalid decimal")
    try:
        out = Decimal(str(v).strip())
    except ArithmeticError:
        raise ValueError("invalid decimal")
    if not out.is_finite():
        raise ValueError("invalid decimal")
    return out


# Stored statuses mirror the `sale_payment_status` enum in `receivables/db/migrations/001_init.sql`.
SalePaymentStatus = Annotated[Literal["PENDING", "PARTIAL", "PAID", "OVERDUE"], BeforeValidator(_to_upper_str)]


# Payment methods are free identifiers owned by the POS (cash, card, transfer, ...).
# Keep a tight, safe character set so methods are stable identifiers.
PaymentMethod = Annotated[
    str,
    BeforeValidator(_to_lower_str),
    StringConstraints(min_length=1, max_length=32, pattern=r"^[a-z0-9][a-z0-9_-]*$"),
]


Money = Annotated[Decimal, BeforeValidator(_to_decimal)]


def uuid_or_none(value) -> Optional[str]:
    """Canonical text form of a UUID, or None when `value` is not one (lookups treat it as "not found")."""
    raw = str(value or "").strip()
    if not raw:
        return None
    try:
        return str(UUID(raw))
    except ValueError:
        return None


def parse_uuid_optional(value: Optional[str], field_name: str) -> Optional[str]:
    raw = (value or "").strip()
    if not raw:
        return None
    out = uuid_or_none(raw)
    if out is None:
        raise InvalidRequest(f"{field_name} must be a valid UUID")
    return out
