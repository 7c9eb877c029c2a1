"""
SQL access for the receivables ledger.

Every helper takes an open psycopg cursor (dict_row) and runs inside the caller's
transaction. No business rules live here: callers decide what to lock, when to
write and what the new values are.
"""

from datetime import date, datetime
from decimal import Decimal
from typing import Optional

from .ledger_math import EPS, d
from .validation import uuid_or_none

_CUSTOMER_COLUMNS = "id, name, phone, email, credit_limit, current_debt, is_active, created_at, updated_at"
_SALE_COLUMNS = (
    "id, folio, customer_id, subtotal, tax, total, amount_paid, remaining_balance, "
    "payment_status, due_date, created_at"
)
_PAYMENT_COLUMNS = "id, customer_id, sale_id, amount, payment_method, reference, payment_date, notes, created_at"


# --- customers ---------------------------------------------------------------


def fetch_customer(cur, customer_id: str, *, for_update: bool = False) -> Optional[dict]:
    # A malformed id cannot match a row; skip the query instead of letting the uuid cast fail.
    customer_id = uuid_or_none(customer_id)
    if customer_id is None:
        return None
    sql = f"SELECT {_CUSTOMER_COLUMNS} FROM customers WHERE id = %s"
    if for_update:
        sql += " FOR UPDATE"
    cur.execute(sql, (customer_id,))
    return cur.fetchone()


def insert_customer(cur, *, name: str, phone: Optional[str], email: Optional[str], credit_limit: Decimal) -> dict:
    cur.execute(
        f"""
        INSERT INTO customers (id, name, phone, email, credit_limit, current_debt)
        VALUES (gen_random_uuid(), %s, %s, %s, %s, 0)
        RETURNING {_CUSTOMER_COLUMNS}
        """,
        (name, phone, email, credit_limit),
    )
    return cur.fetchone()


def add_customer_debt(cur, customer_id: str, delta: Decimal) -> None:
    cur.execute(
        """
        UPDATE customers
        SET current_debt = current_debt + %s, updated_at = now()
        WHERE id = %s
        """,
        (delta, customer_id),
    )


def set_customer_debt(cur, customer_id: str, value: Decimal) -> None:
    cur.execute(
        """
        UPDATE customers
        SET current_debt = %s, updated_at = now()
        WHERE id = %s
        """,
        (value, customer_id),
    )


def list_customer_ids(cur) -> list[str]:
    cur.execute("SELECT id FROM customers ORDER BY created_at ASC, id ASC")
    return [str(r["id"]) for r in cur.fetchall()]


def fetch_customers_with_debt(cur) -> list[dict]:
    cur.execute(
        f"""
        SELECT {_CUSTOMER_COLUMNS}
        FROM customers
        WHERE is_active = true AND current_debt > 0
        ORDER BY current_debt DESC, id ASC
        """
    )
    return cur.fetchall()


# --- products / inventory ----------------------------------------------------


def fetch_products(cur, product_ids: list[str]) -> list[dict]:
    ids = [pid for pid in map(uuid_or_none, product_ids) if pid]
    if not ids:
        return []
    cur.execute("SELECT id, name, stock FROM products WHERE id = ANY(%s)", (ids,))
    return cur.fetchall()


def decrement_stock(cur, product_id: str, quantity: Decimal) -> tuple[Decimal, Decimal]:
    """Returns (previous_stock, new_stock). Stock may go negative; availability is checked upstream."""
    cur.execute(
        """
        UPDATE products
        SET stock = stock - %s, updated_at = now()
        WHERE id = %s
        RETURNING stock AS new_stock
        """,
        (quantity, product_id),
    )
    row = cur.fetchone()
    new_stock = d(row["new_stock"]) if row else Decimal("0")
    return new_stock + d(quantity), new_stock


def insert_inventory_movement(
    cur,
    *,
    product_id: str,
    sale_id: str,
    quantity: Decimal,
    previous_stock: Decimal,
    new_stock: Decimal,
    reason: str,
) -> None:
    cur.execute(
        """
        INSERT INTO inventory_movements
          (id, product_id, sale_id, movement_type, quantity, previous_stock, new_stock, reason)
        VALUES
          (gen_random_uuid(), %s, %s, 'SALE_OUT', %s, %s, %s, %s)
        """,
        (product_id, sale_id, quantity, previous_stock, new_stock, reason),
    )


# --- sales -------------------------------------------------------------------


def insert_sale(
    cur,
    *,
    folio: str,
    customer_id: str,
    subtotal: Decimal,
    tax: Decimal,
    total: Decimal,
    due_date: datetime,
    created_at: datetime,
) -> dict:
    cur.execute(
        f"""
        INSERT INTO sales
          (id, folio, customer_id, payment_method, subtotal, tax, total,
           amount_paid, remaining_balance, payment_status, due_date, created_at, updated_at)
        VALUES
          (gen_random_uuid(), %s, %s, 'credit', %s, %s, %s, 0, %s, 'PENDING', %s, %s, %s)
        RETURNING {_SALE_COLUMNS}
        """,
        (folio, customer_id, subtotal, tax, total, total, due_date, created_at, created_at),
    )
    return cur.fetchone()


def insert_sale_item(cur, *, sale_id: str, product_id: str, quantity: Decimal, unit_price: Decimal, line_total: Decimal) -> None:
    cur.execute(
        """
        INSERT INTO sale_items (id, sale_id, product_id, quantity, unit_price, line_total)
        VALUES (gen_random_uuid(), %s, %s, %s, %s, %s)
        """,
        (sale_id, product_id, quantity, unit_price, line_total),
    )


def fetch_sale(cur, sale_id: str, *, for_update: bool = False) -> Optional[dict]:
    sale_id = uuid_or_none(sale_id)
    if sale_id is None:
        return None
    sql = f"SELECT {_SALE_COLUMNS} FROM sales WHERE id = %s"
    if for_update:
        sql += " FOR UPDATE"
    cur.execute(sql, (sale_id,))
    return cur.fetchone()


def fetch_sale_items(cur, sale_id: str) -> list[dict]:
    cur.execute(
        """
        SELECT id, product_id, quantity, unit_price, line_total
        FROM sale_items
        WHERE sale_id = %s
        ORDER BY id
        """,
        (sale_id,),
    )
    return cur.fetchall()


def fetch_open_sales(cur, customer_id: str) -> list[dict]:
    """Allocatable invoices, oldest first, locked for the rest of the transaction."""
    cur.execute(
        f"""
        SELECT {_SALE_COLUMNS}
        FROM sales
        WHERE customer_id = %s
          AND payment_status IN ('PENDING', 'PARTIAL')
          AND remaining_balance > 0
        ORDER BY created_at ASC, id ASC
        FOR UPDATE
        """,
        (customer_id,),
    )
    return cur.fetchall()


def update_sale_payment(cur, sale_id: str, *, amount_paid: Decimal, remaining_balance: Decimal, status: str) -> None:
    cur.execute(
        """
        UPDATE sales
        SET amount_paid = %s, remaining_balance = %s, payment_status = %s, updated_at = now()
        WHERE id = %s
        """,
        (amount_paid, remaining_balance, status, sale_id),
    )


def sum_outstanding_balance(cur, customer_id: str) -> Decimal:
    cur.execute(
        """
        SELECT COALESCE(SUM(remaining_balance), 0) AS outstanding
        FROM sales
        WHERE customer_id = %s AND remaining_balance > 0
        """,
        (customer_id,),
    )
    row = cur.fetchone() or {}
    return d(row.get("outstanding"))


def fetch_statement_sales(cur, customer_id: str) -> list[dict]:
    cur.execute(
        f"""
        SELECT {_SALE_COLUMNS}
        FROM sales
        WHERE customer_id = %s
          AND payment_status IN ('PENDING', 'PARTIAL', 'OVERDUE')
          AND remaining_balance > %s
        ORDER BY created_at DESC, id DESC
        """,
        (customer_id, EPS),
    )
    return cur.fetchall()


def fetch_outstanding_sales_for_customers(cur, customer_ids: list[str]) -> list[dict]:
    cur.execute(
        f"""
        SELECT {_SALE_COLUMNS}
        FROM sales
        WHERE customer_id = ANY(%s) AND remaining_balance > 0
        ORDER BY created_at DESC, id DESC
        """,
        (list(customer_ids),),
    )
    return cur.fetchall()


# --- payments ----------------------------------------------------------------


def insert_payment(
    cur,
    *,
    customer_id: str,
    sale_id: Optional[str],
    amount: Decimal,
    method: str,
    reference: Optional[str],
    payment_date: datetime,
    notes: Optional[str],
    created_at: Optional[datetime] = None,
) -> str:
    cur.execute(
        """
        INSERT INTO customer_payments
          (id, customer_id, sale_id, amount, payment_method, reference, payment_date, notes, created_at)
        VALUES
          (gen_random_uuid(), %s, %s, %s, %s, %s, %s, %s, COALESCE(%s, now()))
        RETURNING id
        """,
        (customer_id, sale_id, amount, method, reference, payment_date, notes, created_at),
    )
    return cur.fetchone()["id"]


def fetch_payment(cur, payment_id: str, *, for_update: bool = False) -> Optional[dict]:
    payment_id = uuid_or_none(payment_id)
    if payment_id is None:
        return None
    sql = f"SELECT {_PAYMENT_COLUMNS} FROM customer_payments WHERE id = %s"
    if for_update:
        sql += " FOR UPDATE"
    cur.execute(sql, (payment_id,))
    return cur.fetchone()


def fetch_latest_advance_payment(cur, customer_id: str) -> Optional[dict]:
    cur.execute(
        f"""
        SELECT {_PAYMENT_COLUMNS}
        FROM customer_payments
        WHERE customer_id = %s AND sale_id IS NULL
        ORDER BY created_at DESC, id DESC
        LIMIT 1
        FOR UPDATE
        """,
        (customer_id,),
    )
    return cur.fetchone()


def delete_payment(cur, payment_id: str) -> None:
    cur.execute("DELETE FROM customer_payments WHERE id = %s", (payment_id,))


def shrink_payment(cur, payment_id: str, *, amount: Decimal, notes: Optional[str]) -> None:
    cur.execute(
        """
        UPDATE customer_payments
        SET amount = %s, notes = %s
        WHERE id = %s
        """,
        (amount, notes, payment_id),
    )


def fetch_recent_payments(cur, customer_id: str, limit: int) -> list[dict]:
    cur.execute(
        """
        SELECT p.id, p.sale_id, s.folio, p.amount, p.payment_method, p.reference,
               p.payment_date, p.notes, p.created_at
        FROM customer_payments p
        LEFT JOIN sales s ON s.id = p.sale_id
        WHERE p.customer_id = %s
        ORDER BY p.payment_date DESC, p.created_at DESC
        LIMIT %s
        """,
        (customer_id, limit),
    )
    return cur.fetchall()


def list_payments(
    cur,
    *,
    customer_id: Optional[str] = None,
    sale_id: Optional[str] = None,
    date_from: Optional[date] = None,
    date_to: Optional[date] = None,
    limit: int = 50,
) -> list[dict]:
    sql = """
        SELECT p.id, p.customer_id, c.name AS customer_name, p.sale_id, s.folio,
               p.amount, p.payment_method, p.reference, p.payment_date, p.notes, p.created_at
        FROM customer_payments p
        JOIN customers c ON c.id = p.customer_id
        LEFT JOIN sales s ON s.id = p.sale_id
        WHERE true
    """
    params: list = []
    if customer_id:
        sql += " AND p.customer_id = %s"
        params.append(customer_id)
    if sale_id:
        sql += " AND p.sale_id = %s"
        params.append(sale_id)
    if date_from:
        sql += " AND p.payment_date::date >= %s"
        params.append(date_from)
    if date_to:
        sql += " AND p.payment_date::date <= %s"
        params.append(date_to)
    sql += " ORDER BY p.payment_date DESC, p.created_at DESC LIMIT %s"
    params.append(limit)
    cur.execute(sql, params)
    return cur.fetchall()


# --- collections -------------------------------------------------------------


def fetch_payments_between(cur, start: datetime, end: datetime) -> list[dict]:
    """Payments with `start <= payment_date < end`, oldest first."""
    cur.execute(
        """
        SELECT p.id, p.customer_id, c.name AS customer_name, p.amount, p.payment_method, p.payment_date
        FROM customer_payments p
        JOIN customers c ON c.id = p.customer_id
        WHERE p.payment_date >= %s AND p.payment_date < %s
        ORDER BY p.payment_date ASC, p.id ASC
        """,
        (start, end),
    )
    return cur.fetchall()


def fetch_sales_between(cur, start: datetime, end: datetime) -> list[dict]:
    cur.execute(
        f"""
        SELECT {_SALE_COLUMNS}
        FROM sales
        WHERE created_at >= %s AND created_at < %s
        ORDER BY created_at ASC, id ASC
        """,
        (start, end),
    )
    return cur.fetchall()
