from decimal import Decimal

import pytest
from pydantic import BaseModel, ValidationError

from receivables.app.errors import InvalidRequest
from receivables.app.validation import Money, PaymentMethod, SalePaymentStatus, parse_uuid_optional, uuid_or_none


class _M(BaseModel):
    method: PaymentMethod
    status: SalePaymentStatus
    amount: Money


def test_validation_types_normalize_case():
    m = _M(method=" Cash ", status="partial", amount="12.50")
    assert m.method == "cash"
    assert m.status == "PARTIAL"
    assert m.amount == Decimal("12.50")


def test_money_never_goes_through_float():
    m = _M(method="card", status="PENDING", amount=0.1)
    assert m.amount == Decimal("0.1")


@pytest.mark.parametrize("amount", ["abc", "NaN", "Infinity", True])
def test_money_rejects_non_decimals(amount):
    with pytest.raises(ValidationError):
        _M(method="cash", status="PENDING", amount=amount)


def test_payment_method_rejects_spaces_and_weird_chars():
    # spaces are normalized out by strip, but internal spaces should fail regex
    with pytest.raises(ValidationError):
        _M(method="cash money", status="PENDING", amount="1")


def test_unknown_status_is_rejected():
    with pytest.raises(ValidationError):
        _M(method="cash", status="VOID", amount="1")


def test_uuid_or_none_canonicalizes_and_rejects_garbage():
    raw = "6F9619FF-8B86-D011-B42D-00C04FC964FF"
    assert uuid_or_none(raw) == raw.lower()
    assert uuid_or_none(f"  {raw}  ") == raw.lower()
    assert uuid_or_none("not-a-uuid") is None
    assert uuid_or_none("") is None
    assert uuid_or_none(None) is None


def test_parse_uuid_optional_names_the_bad_field():
    assert parse_uuid_optional(None, "customer_id") is None
    assert parse_uuid_optional("  ", "customer_id") is None
    with pytest.raises(InvalidRequest) as exc_info:
        parse_uuid_optional("abc", "sale_id")
    assert exc_info.value.status_code == 400
    assert exc_info.value.detail == "sale_id must be a valid UUID"
