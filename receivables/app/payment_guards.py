from decimal import Decimal

from .errors import InvalidAmount
from .ledger_math import EPS, ZERO, d, q_money


def assert_positive_amount(amount, detail: str = "amount must be > 0") -> Decimal:
    try:
        value = d(amount)
    except ArithmeticError:
        raise InvalidAmount("amount is not a valid decimal")
    if not value.is_finite():
        raise InvalidAmount(detail, amount=str(amount))
    # Judge the amount as it will be stored, so sub-precision input can't round to a zero payment.
    value = q_money(value)
    if value <= ZERO:
        raise InvalidAmount(detail, amount=str(amount))
    return value


def assert_not_overpaid(
    remaining_balance: Decimal,
    amount: Decimal,
    detail: str = "payment exceeds invoice outstanding balance",
):
    if d(amount) > (d(remaining_balance) + EPS):
        raise InvalidAmount(detail, remaining_balance=d(remaining_balance), amount=d(amount))
