import os
import sys
import uuid
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest


# Allow running pytest from either the repo root or from within `receivables/`.
# Tests import `receivables.*`, which requires the repo root on sys.path.
REPO_ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), "..", ".."))
if REPO_ROOT not in sys.path:
    sys.path.insert(0, REPO_ROOT)


BASE_TIME = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


def _norm(sql: str) -> str:
    return " ".join(sql.lower().split())


def _dec(v) -> Decimal:
    return v if isinstance(v, Decimal) else Decimal(str(v))


class FakeLedgerCursor:
    """
    In-memory stand-in for a dict_row psycopg cursor.

    Understands exactly the statements issued by `receivables.app.ledger_store`
    and `customer_locks`, and keeps the rows in plain dicts so tests can inspect
    the ledger after a service call.
    """

    def __init__(self):
        self.customers: dict[str, dict] = {}
        self.products: dict[str, dict] = {}
        self.sales: dict[str, dict] = {}
        self.sale_items: list[dict] = []
        self.movements: list[dict] = []
        self.payments: dict[str, dict] = {}
        self.executed: list[tuple[str, tuple]] = []
        self.locked_customers: list[str] = []
        self.lock_timeouts: list[str] = []
        self._rows: list[dict] = []
        self._tick = 0

    # --- cursor protocol ----------------------------------------------------

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        return False

    def fetchone(self):
        return dict(self._rows[0]) if self._rows else None

    def fetchall(self):
        return [dict(r) for r in self._rows]

    def execute(self, sql, params=None):
        params = tuple(params or ())
        text = _norm(sql)
        self.executed.append((text, params))
        self._rows = self._dispatch(text, params)

    # --- seeding helpers ----------------------------------------------------

    def _now(self) -> datetime:
        self._tick += 1
        return BASE_TIME + timedelta(seconds=self._tick)

    def add_customer(self, credit_limit="1000", current_debt="0", name="Test Customer", customer_id=None) -> str:
        cid = customer_id or str(uuid.uuid4())
        now = self._now()
        self.customers[cid] = {
            "id": cid,
            "name": name,
            "phone": None,
            "email": None,
            "credit_limit": _dec(credit_limit),
            "current_debt": _dec(current_debt),
            "is_active": True,
            "created_at": now,
            "updated_at": now,
        }
        return cid

    def add_product(self, stock="10", name="Widget") -> str:
        pid = str(uuid.uuid4())
        self.products[pid] = {"id": pid, "name": name, "stock": _dec(stock)}
        return pid

    def add_sale(self, customer_id, total, amount_paid="0", created_at=None, due_date=None, status=None) -> str:
        sid = str(uuid.uuid4())
        total = _dec(total)
        paid = _dec(amount_paid)
        remaining = max(total - paid, Decimal("0"))
        if status is None:
            status = "PAID" if remaining <= Decimal("0.01") else ("PARTIAL" if paid > 0 else "PENDING")
        created_at = created_at or self._now()
        self.sales[sid] = {
            "id": sid,
            "folio": f"V-{len(self.sales) + 1:08d}-TEST",
            "customer_id": customer_id,
            "subtotal": total,
            "tax": Decimal("0"),
            "total": total,
            "amount_paid": paid,
            "remaining_balance": remaining,
            "payment_status": status,
            "due_date": due_date if due_date is not None else created_at + timedelta(days=30),
            "created_at": created_at,
        }
        return sid

    def add_payment(self, customer_id, amount, sale_id=None, method="cash", reference=None, notes=None, payment_date=None, created_at=None) -> str:
        pid = str(uuid.uuid4())
        created_at = created_at or self._now()
        self.payments[pid] = {
            "id": pid,
            "customer_id": customer_id,
            "sale_id": sale_id,
            "amount": _dec(amount),
            "payment_method": method,
            "reference": reference,
            "payment_date": payment_date or created_at,
            "notes": notes,
            "created_at": created_at,
        }
        return pid

    def debt(self, customer_id) -> Decimal:
        return self.customers[customer_id]["current_debt"]

    def payments_for(self, customer_id) -> list[dict]:
        rows = [p for p in self.payments.values() if p["customer_id"] == customer_id]
        return sorted(rows, key=lambda p: p["created_at"])

    def outstanding(self, customer_id) -> Decimal:
        return sum(
            (s["remaining_balance"] for s in self.sales.values() if s["customer_id"] == customer_id and s["remaining_balance"] > 0),
            Decimal("0"),
        )

    def writes(self) -> list[str]:
        return [sql for sql, _ in self.executed if sql.startswith(("insert", "update", "delete"))]

    # --- statement dispatch -------------------------------------------------

    _SALE_KEYS = (
        "id", "folio", "customer_id", "subtotal", "tax", "total", "amount_paid",
        "remaining_balance", "payment_status", "due_date", "created_at",
    )

    def _sale_row(self, sale):
        return {k: sale[k] for k in self._SALE_KEYS}

    def _dispatch(self, text: str, p: tuple) -> list[dict]:
        if "set_config('lock_timeout'" in text:
            self.lock_timeouts.append(p[0])
            return [{"set_config": p[0]}]

        # customers
        if text.startswith("select id, name, phone, email, credit_limit, current_debt") and "from customers where id = %s" in text:
            if text.endswith("for update"):
                self.locked_customers.append(p[0])
            row = self.customers.get(p[0])
            return [row] if row else []
        if "from customers where is_active = true and current_debt > 0" in text:
            rows = [c for c in self.customers.values() if c["is_active"] and c["current_debt"] > 0]
            return sorted(rows, key=lambda c: (-c["current_debt"], c["id"]))
        if text.startswith("insert into customers"):
            name, phone, email, credit_limit = p
            cid = self.add_customer(credit_limit=credit_limit, name=name)
            self.customers[cid].update(phone=phone, email=email)
            return [self.customers[cid]]
        if text.startswith("update customers set current_debt = current_debt + %s"):
            delta, cid = p
            if cid in self.customers:
                self.customers[cid]["current_debt"] += _dec(delta)
            return []
        if text.startswith("update customers set current_debt = %s"):
            value, cid = p
            if cid in self.customers:
                self.customers[cid]["current_debt"] = _dec(value)
            return []
        if text.startswith("select id from customers order by"):
            rows = sorted(self.customers.values(), key=lambda c: (c["created_at"], c["id"]))
            return [{"id": c["id"]} for c in rows]

        # products / inventory
        if text.startswith("select id, name, stock from products where id = any(%s)"):
            return [dict(self.products[pid]) for pid in p[0] if pid in self.products]
        if text.startswith("update products set stock = stock - %s"):
            qty, pid = p
            product = self.products.get(pid)
            if not product:
                return []
            product["stock"] -= _dec(qty)
            return [{"new_stock": product["stock"]}]
        if text.startswith("insert into inventory_movements"):
            product_id, sale_id, quantity, previous_stock, new_stock, reason = p
            self.movements.append(
                {
                    "product_id": product_id,
                    "sale_id": sale_id,
                    "movement_type": "SALE_OUT",
                    "quantity": quantity,
                    "previous_stock": previous_stock,
                    "new_stock": new_stock,
                    "reason": reason,
                }
            )
            return []

        # sales
        if text.startswith("insert into sales"):
            folio, customer_id, subtotal, tax, total, remaining, due_date, created_at, _updated_at = p
            if any(s["folio"] == folio for s in self.sales.values()):
                raise AssertionError(f"duplicate folio {folio}")
            sid = str(uuid.uuid4())
            self.sales[sid] = {
                "id": sid,
                "folio": folio,
                "customer_id": customer_id,
                "subtotal": subtotal,
                "tax": tax,
                "total": total,
                "amount_paid": Decimal("0"),
                "remaining_balance": remaining,
                "payment_status": "PENDING",
                "due_date": due_date,
                "created_at": created_at,
            }
            return [self._sale_row(self.sales[sid])]
        if text.startswith("insert into sale_items"):
            sale_id, product_id, quantity, unit_price, line_total = p
            self.sale_items.append(
                {
                    "id": str(uuid.uuid4()),
                    "sale_id": sale_id,
                    "product_id": product_id,
                    "quantity": quantity,
                    "unit_price": unit_price,
                    "line_total": line_total,
                }
            )
            return []
        if "from sales where id = %s" in text:
            sale = self.sales.get(p[0])
            return [self._sale_row(sale)] if sale else []
        if "from sale_items where sale_id = %s" in text:
            return [
                {k: i[k] for k in ("id", "product_id", "quantity", "unit_price", "line_total")}
                for i in sorted(self.sale_items, key=lambda i: i["id"])
                if i["sale_id"] == p[0]
            ]
        if "payment_status in ('pending', 'partial') and remaining_balance > 0" in text:
            rows = [
                s
                for s in self.sales.values()
                if s["customer_id"] == p[0] and s["payment_status"] in ("PENDING", "PARTIAL") and s["remaining_balance"] > 0
            ]
            return [self._sale_row(s) for s in sorted(rows, key=lambda s: (s["created_at"], s["id"]))]
        if text.startswith("update sales set amount_paid = %s"):
            amount_paid, remaining, status, sid = p
            self.sales[sid].update(amount_paid=amount_paid, remaining_balance=remaining, payment_status=status)
            return []
        if text.startswith("select coalesce(sum(remaining_balance), 0) as outstanding"):
            return [{"outstanding": self.outstanding(p[0])}]
        if "payment_status in ('pending', 'partial', 'overdue') and remaining_balance > %s" in text:
            customer_id, eps = p
            rows = [
                s
                for s in self.sales.values()
                if s["customer_id"] == customer_id
                and s["payment_status"] in ("PENDING", "PARTIAL", "OVERDUE")
                and s["remaining_balance"] > eps
            ]
            rows.sort(key=lambda s: (s["created_at"], s["id"]), reverse=True)
            return [self._sale_row(s) for s in rows]
        if "from sales where customer_id = any(%s) and remaining_balance > 0" in text:
            ids = set(p[0])
            rows = [s for s in self.sales.values() if s["customer_id"] in ids and s["remaining_balance"] > 0]
            rows.sort(key=lambda s: (s["created_at"], s["id"]), reverse=True)
            return [self._sale_row(s) for s in rows]

        if "from sales where created_at >= %s and created_at < %s" in text:
            start, end = p
            rows = [s for s in self.sales.values() if start <= s["created_at"] < end]
            return [self._sale_row(s) for s in sorted(rows, key=lambda s: (s["created_at"], s["id"]))]

        # payments
        if text.startswith("insert into customer_payments"):
            customer_id, sale_id, amount, method, reference, payment_date, notes, created_at = p
            pid = self.add_payment(
                customer_id,
                amount,
                sale_id=sale_id,
                method=method,
                reference=reference,
                notes=notes,
                payment_date=payment_date,
            )
            if created_at is not None:
                self.payments[pid]["created_at"] = created_at
            return [{"id": pid}]
        if text.startswith("select") and "from customer_payments where id = %s" in text:
            row = self.payments.get(p[0])
            return [row] if row else []
        if "from customer_payments where customer_id = %s and sale_id is null" in text:
            rows = [x for x in self.payments.values() if x["customer_id"] == p[0] and x["sale_id"] is None]
            rows.sort(key=lambda x: (x["created_at"], x["id"]), reverse=True)
            return rows[:1]
        if text.startswith("delete from customer_payments where id = %s"):
            self.payments.pop(p[0], None)
            return []
        if text.startswith("update customer_payments set amount = %s, notes = %s"):
            amount, notes, pid = p
            self.payments[pid].update(amount=amount, notes=notes)
            return []
        if "left join sales s on s.id = p.sale_id where p.customer_id = %s" in text:
            customer_id, limit = p
            rows = [self._payment_view(x) for x in self.payments.values() if x["customer_id"] == customer_id]
            rows.sort(key=lambda x: (x["payment_date"], x["created_at"]), reverse=True)
            return rows[:limit]
        if "where p.payment_date >= %s and p.payment_date < %s" in text:
            start, end = p
            rows = [self._payment_view(x) for x in self.payments.values() if start <= x["payment_date"] < end]
            rows.sort(key=lambda x: (x["payment_date"], x["id"]))
            return rows
        if "join customers c on c.id = p.customer_id" in text:
            return self._list_payments(text, list(p))

        raise AssertionError(f"unexpected SQL: {text}")

    def _payment_view(self, payment: dict) -> dict:
        sale = self.sales.get(payment["sale_id"]) if payment["sale_id"] else None
        customer = self.customers.get(payment["customer_id"]) or {}
        return {
            **payment,
            "folio": sale["folio"] if sale else None,
            "customer_name": customer.get("name"),
        }

    def _list_payments(self, text: str, params: list) -> list[dict]:
        rows = [self._payment_view(x) for x in self.payments.values()]
        if "and p.customer_id = %s" in text:
            cid = params.pop(0)
            rows = [r for r in rows if r["customer_id"] == cid]
        if "and p.sale_id = %s" in text:
            sid = params.pop(0)
            rows = [r for r in rows if r["sale_id"] == sid]
        if "p.payment_date::date >= %s" in text:
            start = params.pop(0)
            rows = [r for r in rows if r["payment_date"].date() >= start]
        if "p.payment_date::date <= %s" in text:
            end = params.pop(0)
            rows = [r for r in rows if r["payment_date"].date() <= end]
        limit = params.pop(0)
        rows.sort(key=lambda x: (x["payment_date"], x["created_at"]), reverse=True)
        return rows[:limit]


class FakeConn:
    def __init__(self, cursor: FakeLedgerCursor):
        self._cursor = cursor
        self.transactions = 0

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        return False

    def cursor(self):
        return self._cursor

    @contextmanager
    def transaction(self):
        self.transactions += 1
        yield


@pytest.fixture
def ledger() -> FakeLedgerCursor:
    return FakeLedgerCursor()


@pytest.fixture
def fake_conn(ledger) -> FakeConn:
    return FakeConn(ledger)
