from decimal import Decimal, ROUND_HALF_UP

MONEY_Q = Decimal("0.0001")
# Rounding tolerance for every balance comparison (one cent).
EPS = Decimal("0.01")
ZERO = Decimal("0")

PENDING = "PENDING"
PARTIAL = "PARTIAL"
PAID = "PAID"
OVERDUE = "OVERDUE"

STATEMENT_STATUSES = (PENDING, PARTIAL, OVERDUE)


def d(v) -> Decimal:
    if isinstance(v, Decimal):
        return v
    return Decimal(str(v or 0))


def q_money(v) -> Decimal:
    return d(v).quantize(MONEY_Q, rounding=ROUND_HALF_UP)


def remaining_after(total: Decimal, amount_paid: Decimal) -> Decimal:
    rem = q_money(d(total) - d(amount_paid))
    return rem if rem > ZERO else ZERO


def payment_status(total: Decimal, amount_paid: Decimal) -> str:
    """Stored status for a sale. OVERDUE is never derived here; it is a read-time classification."""
    paid = d(amount_paid)
    if remaining_after(total, paid) <= EPS:
        return PAID
    if paid <= ZERO:
        return PENDING
    return PARTIAL
