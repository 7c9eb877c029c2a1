"""
Customer payment allocation.

Incoming money is spread over the customer's open invoices oldest-first. Each
invoice touched gets its own payment row, so the payment log stays a flat list
of (invoice, amount) facts; whatever is left over becomes a single advance
payment with no invoice. The customer's debt only goes down by what actually
landed on invoices.

The plan is computed by `plan_allocation`, a pure function over the locked open
sales, and then written row by row inside the caller's transaction.
"""

from dataclasses import dataclass, field
from datetime import date, datetime, time, timezone
from decimal import Decimal
from typing import Optional

from . import ledger_store
from .customer_locks import lock_customer
from .errors import InvalidAmount, InvalidRequest, PaymentNotFound, SaleNotFound
from .jsonlog import json_log
from .ledger_math import EPS, STATEMENT_STATUSES, ZERO, d, payment_status, q_money, remaining_after
from .payment_guards import assert_not_overpaid, assert_positive_amount

AUTO_NOTE = "Payment distributed automatically"
ADVANCE_NOTE = "Advance payment on account"
CORRECTED_NOTE = "Payment applied to invoice (corrected)"
RESIDUE_NOTE = "Advance payment on account (residue)"


@dataclass
class AllocationStep:
    sale_id: str
    folio: Optional[str]
    applied: Decimal
    amount_paid: Decimal
    remaining_balance: Decimal
    status: str


@dataclass
class AllocationPlan:
    amount: Decimal
    steps: list = field(default_factory=list)
    advance_amount: Decimal = ZERO
    # Leftover at or below EPS; dropped without a payment row.
    dust: Decimal = ZERO

    @property
    def applied_total(self) -> Decimal:
        return sum((s.applied for s in self.steps), ZERO)


def plan_allocation(open_sales: list, amount) -> AllocationPlan:
    """
    FIFO split of `amount` over `open_sales` (already ordered oldest-first).

    Sales with no balance are skipped. Each step never takes more than the sale's
    remaining balance, so balances can't go negative however large the payment.
    """
    remaining = q_money(amount)
    plan = AllocationPlan(amount=remaining)
    for sale in open_sales:
        if remaining <= ZERO:
            break
        balance = d(sale["remaining_balance"])
        if balance <= ZERO:
            continue
        applied = min(remaining, balance)
        amount_paid = q_money(d(sale["amount_paid"]) + applied)
        new_balance = remaining_after(d(sale["total"]), amount_paid)
        plan.steps.append(
            AllocationStep(
                sale_id=sale["id"],
                folio=sale.get("folio"),
                applied=applied,
                amount_paid=amount_paid,
                remaining_balance=new_balance,
                status=payment_status(sale["total"], amount_paid),
            )
        )
        remaining -= applied
    if remaining > EPS:
        plan.advance_amount = remaining
    elif remaining > ZERO:
        plan.dust = remaining
    return plan


def as_payment_timestamp(value) -> datetime:
    if value is None:
        return datetime.now(timezone.utc)
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, date):
        return datetime.combine(value, time.min, tzinfo=timezone.utc)
    raise InvalidRequest("payment_date must be a date or datetime")


def _write_steps(
    cur,
    customer_id: str,
    plan: AllocationPlan,
    *,
    method: str,
    reference: Optional[str],
    payment_date: datetime,
    notes: Optional[str],
    created_at: Optional[datetime] = None,
) -> list[dict]:
    allocations = []
    for step in plan.steps:
        payment_id = ledger_store.insert_payment(
            cur,
            customer_id=customer_id,
            sale_id=step.sale_id,
            amount=step.applied,
            method=method,
            reference=reference,
            payment_date=payment_date,
            notes=notes,
            created_at=created_at,
        )
        ledger_store.update_sale_payment(
            cur,
            step.sale_id,
            amount_paid=step.amount_paid,
            remaining_balance=step.remaining_balance,
            status=step.status,
        )
        allocations.append(
            {
                "sale_id": step.sale_id,
                "folio": step.folio,
                "payment_id": payment_id,
                "applied": step.applied,
                "amount_paid": step.amount_paid,
                "remaining_balance": step.remaining_balance,
                "status": step.status,
            }
        )
    return allocations


def _result(customer: dict, plan: AllocationPlan, allocations: list, advance_payment_id, current_debt: Decimal) -> dict:
    return {
        "customer_id": customer["id"],
        "amount": plan.amount,
        "allocations": allocations,
        "advance_amount": plan.advance_amount,
        "advance_payment_id": advance_payment_id,
        "applied_total": plan.applied_total,
        "current_debt": current_debt,
    }


def _open_sale_for_direct_payment(cur, customer: dict, sale_id: str) -> dict:
    sale = ledger_store.fetch_sale(cur, sale_id, for_update=True)
    if not sale or str(sale["customer_id"]) != str(customer["id"]):
        raise SaleNotFound(sale_id)
    if sale["payment_status"] not in STATEMENT_STATUSES or d(sale["remaining_balance"]) <= EPS:
        raise InvalidAmount("invoice has no outstanding balance", sale_id=str(sale_id))
    return sale


def apply_payment(
    cur,
    customer_id: str,
    amount,
    method: str,
    reference: Optional[str] = None,
    payment_date=None,
    notes: Optional[str] = None,
    *,
    sale_id: Optional[str] = None,
) -> dict:
    """
    Record a customer payment.

    Without `sale_id` the amount is spread FIFO over open invoices and any
    leftover above one cent becomes an advance payment. With `sale_id` the
    whole amount goes to that invoice and may not exceed its balance.
    """
    value = assert_positive_amount(amount)
    method = (method or "").strip().lower() or "cash"
    pay_ts = as_payment_timestamp(payment_date)

    customer = lock_customer(cur, customer_id)
    customer_id = customer["id"]

    if sale_id:
        sale = _open_sale_for_direct_payment(cur, customer, sale_id)
        assert_not_overpaid(d(sale["remaining_balance"]), value)
        # The guard leaves at most EPS above the balance, which the plan drops as dust.
        plan = plan_allocation([sale], value)
        step_notes = notes
    else:
        plan = plan_allocation(ledger_store.fetch_open_sales(cur, customer_id), value)
        step_notes = f"{notes} (auto-distributed)" if notes else AUTO_NOTE

    allocations = _write_steps(
        cur,
        customer_id,
        plan,
        method=method,
        reference=reference,
        payment_date=pay_ts,
        notes=step_notes,
    )

    advance_payment_id = None
    if plan.advance_amount > ZERO:
        advance_payment_id = ledger_store.insert_payment(
            cur,
            customer_id=customer_id,
            sale_id=None,
            amount=plan.advance_amount,
            method=method,
            reference=reference,
            payment_date=pay_ts,
            notes=f"{notes} (advance)" if notes else ADVANCE_NOTE,
        )

    applied_total = plan.applied_total
    if applied_total > ZERO:
        ledger_store.add_customer_debt(cur, customer_id, -applied_total)
    current_debt = d(customer["current_debt"]) - applied_total

    json_log(
        "info",
        "payment.applied",
        customer_id=str(customer_id),
        amount=plan.amount,
        method=method,
        invoices=len(allocations),
        applied_total=applied_total,
        advance_amount=plan.advance_amount,
        dust=plan.dust,
        current_debt=current_debt,
    )
    return _result(customer, plan, allocations, advance_payment_id, current_debt)


def _reallocate_advance(cur, customer: dict, payment: dict) -> dict:
    customer_id = customer["id"]
    plan = plan_allocation(ledger_store.fetch_open_sales(cur, customer_id), d(payment["amount"]))
    if not plan.steps:
        # Nothing open to pay: the advance stays exactly as it was.
        return _result(customer, plan, [], payment["id"], d(customer["current_debt"]))

    original_notes = payment.get("notes")
    allocations = _write_steps(
        cur,
        customer_id,
        plan,
        method=payment["payment_method"],
        reference=payment.get("reference"),
        payment_date=payment["payment_date"],
        notes=f"{original_notes} (corrected)" if original_notes else CORRECTED_NOTE,
        created_at=payment.get("created_at"),
    )

    advance_payment_id = None
    if plan.advance_amount > ZERO:
        ledger_store.shrink_payment(cur, payment["id"], amount=plan.advance_amount, notes=RESIDUE_NOTE)
        advance_payment_id = payment["id"]
    else:
        ledger_store.delete_payment(cur, payment["id"])

    applied_total = plan.applied_total
    ledger_store.add_customer_debt(cur, customer_id, -applied_total)
    current_debt = d(customer["current_debt"]) - applied_total

    json_log(
        "info",
        "payment.advance_reallocated",
        customer_id=str(customer_id),
        payment_id=str(payment["id"]),
        invoices=len(allocations),
        applied_total=applied_total,
        residue=plan.advance_amount,
        current_debt=current_debt,
    )
    return _result(customer, plan, allocations, advance_payment_id, current_debt)


def allocate_advance_payment(cur, payment_id: str) -> dict:
    """
    Retroactively spread an existing advance payment over open invoices.

    The advance row is replaced by one row per invoice touched (same method,
    reference, payment date and creation timestamp); it is deleted when fully
    used, or shrunk to the unused residue.
    """
    head = ledger_store.fetch_payment(cur, payment_id)
    if not head:
        raise PaymentNotFound(payment_id)
    customer = lock_customer(cur, head["customer_id"])
    # Re-read under the customer lock: a concurrent correction may have consumed it.
    payment = ledger_store.fetch_payment(cur, payment_id, for_update=True)
    if not payment:
        raise PaymentNotFound(payment_id)
    if payment.get("sale_id") is not None:
        raise PaymentNotFound(payment_id, detail="payment is already allocated to an invoice")
    return _reallocate_advance(cur, customer, payment)


def allocate_latest_advance(cur, customer_id: str) -> dict:
    customer = lock_customer(cur, customer_id)
    customer_id = customer["id"]
    payment = ledger_store.fetch_latest_advance_payment(cur, customer_id)
    if not payment:
        return _result(customer, AllocationPlan(amount=ZERO), [], None, d(customer["current_debt"]))
    return _reallocate_advance(cur, customer, payment)
