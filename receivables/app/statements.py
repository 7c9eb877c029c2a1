import calendar
import math
from datetime import date, datetime, time, timedelta, timezone
from decimal import Decimal
from typing import Optional

from . import ledger_store
from .config import settings
from .errors import CustomerNotFound, InvalidRequest
from .ledger_math import ZERO, d, q_money

ADVANCE_LABEL = "advance"
MAX_PAYMENTS_LIMIT = 500
COLLECTIONS_TOP = 10
MAX_COLLECTIONS_MONTHS = 60


def days_until_due(due_date: Optional[datetime], now: datetime) -> Optional[int]:
    if due_date is None:
        return None
    return math.ceil((due_date - now).total_seconds() / 86400)


def classify_due(due_date: Optional[datetime], now: datetime, due_soon_days: Optional[int] = None) -> str:
    """overdue | due_soon | current, evaluated at read time."""
    if due_date is None:
        return "current"
    if due_date < now:
        return "overdue"
    window = settings.due_soon_days if due_soon_days is None else due_soon_days
    days = days_until_due(due_date, now)
    if 0 < days <= window:
        return "due_soon"
    return "current"


def _available_credit(credit_limit, current_debt) -> Decimal:
    available = d(credit_limit) - d(current_debt)
    return available if available > ZERO else ZERO


def get_statement(cur, customer_id: str, now: Optional[datetime] = None, payments_limit: Optional[int] = None) -> dict:
    now = now or datetime.now(timezone.utc)
    limit = settings.statement_payments_limit if payments_limit is None else payments_limit
    limit = max(1, min(int(limit), MAX_PAYMENTS_LIMIT))

    customer = ledger_store.fetch_customer(cur, customer_id)
    if not customer:
        raise CustomerNotFound(customer_id)
    customer_id = customer["id"]

    outstanding, overdue, due_soon, current = [], [], [], []
    for sale in ledger_store.fetch_statement_sales(cur, customer_id):
        bucket = classify_due(sale.get("due_date"), now)
        row = {
            **sale,
            "days_until_due": days_until_due(sale.get("due_date"), now),
            "classification": bucket,
        }
        outstanding.append(row)
        if bucket == "overdue":
            overdue.append(row)
        elif bucket == "due_soon":
            due_soon.append(row)
        else:
            current.append(row)

    payments = []
    for p in ledger_store.fetch_recent_payments(cur, customer_id, limit):
        payments.append({**p, "applied_to": p.get("folio") or ADVANCE_LABEL})

    credit_limit = d(customer["credit_limit"])
    current_debt = d(customer["current_debt"])
    available = _available_credit(credit_limit, current_debt)
    return {
        "customer": {
            "id": customer["id"],
            "name": customer.get("name"),
            "email": customer.get("email"),
            "phone": customer.get("phone"),
            "credit_limit": credit_limit,
            "current_debt": current_debt,
            "available_credit": available,
        },
        "available_credit": available,
        "outstanding_sales": outstanding,
        "overdue": overdue,
        "due_soon": due_soon,
        "current": current,
        "payments": payments,
        "summary": {
            "total_debt": current_debt,
            "credit_limit": credit_limit,
            "available_credit": available,
            "outstanding_balance": q_money(sum((d(s["remaining_balance"]) for s in outstanding), ZERO)),
            "overdue_amount": q_money(sum((d(s["remaining_balance"]) for s in overdue), ZERO)),
            "pending_sales": len(outstanding),
            "overdue_sales": len(overdue),
            "due_soon": len(due_soon),
            "total_payments": len(payments),
        },
        "as_of": now,
    }


def aging_bucket(created_at: datetime, now: datetime) -> str:
    days_old = (now - created_at).days
    if days_old <= 30:
        return "current"
    if days_old <= 60:
        return "days_30"
    if days_old <= 90:
        return "days_60"
    return "days_90_plus"


def get_receivables_dashboard(cur, now: Optional[datetime] = None, top: int = 5, recent: int = 10) -> dict:
    now = now or datetime.now(timezone.utc)
    customers = ledger_store.fetch_customers_with_debt(cur)
    ids = [str(c["id"]) for c in customers]
    sales_by_customer: dict[str, list] = {cid: [] for cid in ids}
    if ids:
        for sale in ledger_store.fetch_outstanding_sales_for_customers(cur, ids):
            sales_by_customer.setdefault(str(sale["customer_id"]), []).append(sale)

    aging = {"current": ZERO, "days_30": ZERO, "days_60": ZERO, "days_90_plus": ZERO}
    overdue_amount = ZERO
    overdue_customers = 0
    total_receivable = ZERO
    total_credit_limit = ZERO
    rows = []
    for c in customers:
        cid = str(c["id"])
        debt = d(c["current_debt"])
        limit = d(c["credit_limit"])
        total_receivable += debt
        total_credit_limit += limit
        sales = sales_by_customer.get(cid, [])
        has_overdue = False
        for sale in sales:
            balance = d(sale["remaining_balance"])
            aging[aging_bucket(sale["created_at"], now)] += balance
            if sale.get("due_date") is not None and sale["due_date"] < now:
                overdue_amount += balance
                has_overdue = True
        if has_overdue:
            overdue_customers += 1
        rows.append(
            {
                "id": c["id"],
                "name": c.get("name"),
                "phone": c.get("phone"),
                "email": c.get("email"),
                "current_debt": debt,
                "credit_limit": limit,
                "available_credit": _available_credit(limit, debt),
                "utilization_percent": (debt / limit * 100).quantize(Decimal("0.01")) if limit > ZERO else None,
                "pending_sales": len(sales),
                # Sales come newest first.
                "oldest_sale_date": sales[-1]["created_at"] if sales else None,
                "has_overdue": has_overdue,
            }
        )

    recent_payments = [
        {**p, "applied_to": p.get("folio") or ADVANCE_LABEL}
        for p in ledger_store.list_payments(cur, limit=recent)
    ]
    return {
        "summary": {
            "total_receivable": total_receivable,
            "total_credit_limit": total_credit_limit,
            "total_customers_with_debt": len(customers),
            "overdue_amount": overdue_amount,
            "overdue_customers": overdue_customers,
            "utilization_percent": (
                (total_receivable / total_credit_limit * 100).quantize(Decimal("0.01"))
                if total_credit_limit > ZERO
                else Decimal("0")
            ),
        },
        "aging": aging,
        "top_debtors": rows[:top],
        "recent_payments": recent_payments,
        "customers": rows,
        "as_of": now,
    }


def _months_back(moment: datetime, months: int) -> datetime:
    year, month = divmod(moment.year * 12 + moment.month - 1 - months, 12)
    month += 1
    day = min(moment.day, calendar.monthrange(year, month)[1])
    return moment.replace(year=year, month=month, day=day)


def collections_period(
    date_from: Optional[date], date_to: Optional[date], months: int, now: datetime
) -> tuple[datetime, datetime]:
    """
    Half-open UTC window `[start, end)` for the collections report.

    `date_to` is inclusive (the window ends at the following midnight). A missing
    `date_to` means "now"; a missing `date_from` means `months` before the end.
    """
    if not 1 <= months <= MAX_COLLECTIONS_MONTHS:
        raise InvalidRequest(f"months must be between 1 and {MAX_COLLECTIONS_MONTHS}")
    end = datetime.combine(date_to + timedelta(days=1), time.min, tzinfo=timezone.utc) if date_to else now
    start = datetime.combine(date_from, time.min, tzinfo=timezone.utc) if date_from else _months_back(end, months)
    if start >= end:
        raise InvalidRequest("date_from must be on or before date_to")
    return start, end


def _month_key(moment: datetime) -> str:
    if moment.tzinfo is not None:
        moment = moment.astimezone(timezone.utc)
    return moment.strftime("%Y-%m")


def get_collections_report(
    cur,
    date_from: Optional[date] = None,
    date_to: Optional[date] = None,
    months: int = 6,
    now: Optional[datetime] = None,
) -> dict:
    """Money collected against credit issued over a period, bucketed by month and payment method."""
    now = now or datetime.now(timezone.utc)
    start, end = collections_period(date_from, date_to, int(months), now)

    payments = ledger_store.fetch_payments_between(cur, start, end)
    sales = ledger_store.fetch_sales_between(cur, start, end)
    debtors = ledger_store.fetch_customers_with_debt(cur)

    payments_by_month: dict[str, dict] = {}
    payments_by_method: dict[str, dict] = {}
    payers: dict[str, dict] = {}
    total_collected = ZERO
    for p in payments:
        amount = d(p["amount"])
        method = p.get("payment_method") or "cash"
        total_collected += amount

        month = payments_by_month.setdefault(
            _month_key(p["payment_date"]),
            {"month": _month_key(p["payment_date"]), "total": ZERO, "count": 0, "by_method": {}},
        )
        month["total"] += amount
        month["count"] += 1
        month["by_method"][method] = month["by_method"].get(method, ZERO) + amount

        bucket = payments_by_method.setdefault(method, {"method": method, "total": ZERO, "count": 0})
        bucket["total"] += amount
        bucket["count"] += 1

        cid = str(p["customer_id"])
        payer = payers.setdefault(cid, {"id": p["customer_id"], "name": p.get("customer_name"), "total": ZERO, "count": 0})
        payer["total"] += amount
        payer["count"] += 1

    sales_by_month: dict[str, dict] = {}
    total_sales = ZERO
    for sale in sales:
        total = d(sale["total"])
        total_sales += total
        key = _month_key(sale["created_at"])
        month = sales_by_month.setdefault(key, {"month": key, "total": ZERO, "count": 0})
        month["total"] += total
        month["count"] += 1

    total_debt = sum((d(c["current_debt"]) for c in debtors), ZERO)
    top_debtors = []
    for c in debtors[:COLLECTIONS_TOP]:
        debt = d(c["current_debt"])
        limit = d(c["credit_limit"])
        top_debtors.append(
            {
                "id": c["id"],
                "name": c.get("name"),
                "debt": debt,
                "limit": limit,
                "usage_percent": (debt / limit * 100).quantize(Decimal("0.01")) if limit > ZERO else None,
            }
        )
    top_payers = sorted(payers.values(), key=lambda r: r["total"], reverse=True)[:COLLECTIONS_TOP]

    return {
        "period": {"start": start, "end": end, "months": int(months)},
        "summary": {
            "total_collected": total_collected,
            "total_sales": total_sales,
            "total_debt": total_debt,
            "collection_rate": (
                (total_collected / total_sales * 100).quantize(Decimal("0.01")) if total_sales > ZERO else Decimal("0")
            ),
            "average_payment": q_money(total_collected / len(payments)) if payments else ZERO,
            "total_payments": len(payments),
            "total_credit_sales": len(sales),
            "customers_with_debt": len(debtors),
        },
        "charts": {
            "payments_by_month": list(payments_by_month.values()),
            "sales_by_month": list(sales_by_month.values()),
            "payments_by_method": list(payments_by_method.values()),
        },
        "rankings": {"top_debtors": top_debtors, "top_payers": top_payers},
    }
