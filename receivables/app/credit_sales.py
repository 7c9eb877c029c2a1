"""
Credit sale issuance.

A credit sale books a new invoice against a customer's account: the customer's
debt grows by the invoice total, stock leaves the shelf, and the invoice starts
out PENDING with its whole total outstanding. The credit limit is checked once,
here, against the locked customer row.
"""

import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Iterable, Optional

from . import ledger_store
from .config import settings
from .customer_locks import lock_customer
from .errors import CreditLimitExceeded, InvalidItems, InvalidRequest
from .jsonlog import json_log
from .ledger_math import EPS, ZERO, d, q_money
from .validation import uuid_or_none


@dataclass
class CreditSaleLine:
    product_id: str
    quantity: Decimal
    unit_price: Decimal


@dataclass
class CreditSaleTotals:
    subtotal: Decimal
    tax: Decimal
    total: Decimal
    line_totals: list


def generate_folio(now: datetime) -> str:
    stamp = int(now.timestamp() * 1000) % 100_000_000
    return f"V-{stamp:08d}-{secrets.token_hex(2).upper()}"


def normalize_lines(items: Iterable) -> list[CreditSaleLine]:
    lines: list[CreditSaleLine] = []
    for idx, raw in enumerate(items or []):
        if isinstance(raw, CreditSaleLine):
            line = raw
        elif isinstance(raw, dict):
            line = CreditSaleLine(
                product_id=raw.get("product_id"),
                quantity=raw.get("quantity"),
                unit_price=raw.get("unit_price"),
            )
        else:
            line = CreditSaleLine(
                product_id=getattr(raw, "product_id", None),
                quantity=getattr(raw, "quantity", None),
                unit_price=getattr(raw, "unit_price", None),
            )
        product_id = str(line.product_id or "").strip()
        if not product_id:
            raise InvalidItems(f"items[{idx}]: product_id is required")
        try:
            qty = d(line.quantity)
            price = d(line.unit_price)
        except ArithmeticError:
            raise InvalidItems(f"items[{idx}]: quantity and unit_price must be decimals")
        if not qty.is_finite() or qty <= ZERO:
            raise InvalidItems(f"items[{idx}]: quantity must be > 0")
        if not price.is_finite() or price < ZERO:
            raise InvalidItems(f"items[{idx}]: unit_price must be >= 0")
        lines.append(CreditSaleLine(product_id=product_id, quantity=qty, unit_price=price))
    if not lines:
        raise InvalidItems("a credit sale needs at least one item")
    return lines


def compute_totals(lines: list[CreditSaleLine], tax_rate: Decimal) -> CreditSaleTotals:
    line_totals = [q_money(line.quantity * line.unit_price) for line in lines]
    subtotal = q_money(sum(line_totals, ZERO))
    tax = q_money(subtotal * d(tax_rate))
    return CreditSaleTotals(subtotal=subtotal, tax=tax, total=subtotal + tax, line_totals=line_totals)


def issue_credit_sale(
    cur,
    customer_id: str,
    items: Iterable,
    due_in_days: Optional[int] = None,
    *,
    tax_rate: Optional[Decimal] = None,
    now: Optional[datetime] = None,
) -> dict:
    lines = normalize_lines(items)
    due_in_days = settings.default_due_days if due_in_days is None else int(due_in_days)
    if due_in_days < 0:
        raise InvalidRequest("due_in_days must be >= 0")
    rate = settings.tax_rate if tax_rate is None else d(tax_rate)
    if rate < ZERO:
        raise InvalidRequest("tax_rate must be >= 0")
    now = now or datetime.now(timezone.utc)

    customer = lock_customer(cur, customer_id)
    customer_id = customer["id"]

    product_ids = sorted({line.product_id for line in lines})
    found = {str(p["id"]) for p in ledger_store.fetch_products(cur, product_ids)}
    missing = [pid for pid in product_ids if uuid_or_none(pid) not in found]
    if missing:
        raise InvalidItems(f"unknown product(s): {', '.join(missing)}", missing_product_ids=missing)

    totals = compute_totals(lines, rate)
    if totals.total <= EPS:
        # Nothing to collect: the invoice would sit PENDING with a zero balance.
        raise InvalidItems("credit sale total must be > 0.01", total=totals.total)
    current_debt = d(customer["current_debt"])
    credit_limit = d(customer["credit_limit"])
    if current_debt + totals.total > credit_limit:
        available = credit_limit - current_debt
        raise CreditLimitExceeded(
            available_credit=available if available > ZERO else ZERO,
            requested_total=totals.total,
            credit_limit=credit_limit,
        )

    sale = ledger_store.insert_sale(
        cur,
        folio=generate_folio(now),
        customer_id=customer_id,
        subtotal=totals.subtotal,
        tax=totals.tax,
        total=totals.total,
        due_date=now + timedelta(days=due_in_days),
        created_at=now,
    )
    sale_id = sale["id"]

    out_items = []
    for line, line_total in zip(lines, totals.line_totals):
        ledger_store.insert_sale_item(
            cur,
            sale_id=sale_id,
            product_id=line.product_id,
            quantity=line.quantity,
            unit_price=line.unit_price,
            line_total=line_total,
        )
        previous_stock, new_stock = ledger_store.decrement_stock(cur, line.product_id, line.quantity)
        ledger_store.insert_inventory_movement(
            cur,
            product_id=line.product_id,
            sale_id=sale_id,
            quantity=line.quantity,
            previous_stock=previous_stock,
            new_stock=new_stock,
            reason=f"Credit sale {sale['folio']}",
        )
        out_items.append(
            {
                "product_id": line.product_id,
                "quantity": line.quantity,
                "unit_price": line.unit_price,
                "line_total": line_total,
                "new_stock": new_stock,
            }
        )

    ledger_store.add_customer_debt(cur, customer_id, totals.total)
    new_debt = current_debt + totals.total

    json_log(
        "info",
        "credit_sale.issued",
        customer_id=str(customer_id),
        sale_id=str(sale_id),
        folio=sale["folio"],
        total=totals.total,
        current_debt=new_debt,
    )
    return {
        "sale": sale,
        "items": out_items,
        "current_debt": new_debt,
        "available_credit": credit_limit - new_debt,
    }
