from decimal import Decimal
from typing import Optional

from fastapi import APIRouter
from pydantic import BaseModel, Field

from ..db import get_conn, run_in_transaction
from ..errors import CustomerNotFound, InvalidRequest
from ..ledger_math import ZERO, d
from ..ledger_reconcile import reconcile_customer
from ..ledger_store import fetch_customer, insert_customer
from ..payment_allocation import allocate_latest_advance
from ..statements import get_statement
from ..validation import Money

router = APIRouter(prefix="/customers", tags=["customers"])


class CustomerIn(BaseModel):
    name: str = Field(min_length=1, max_length=200)
    phone: Optional[str] = None
    email: Optional[str] = None
    credit_limit: Money = Decimal("0")


@router.post("")
def create_customer(data: CustomerIn):
    if d(data.credit_limit) < ZERO:
        raise InvalidRequest("credit_limit must be >= 0")

    def _tx(cur):
        return insert_customer(
            cur,
            name=data.name.strip(),
            phone=(data.phone or "").strip() or None,
            email=(data.email or "").strip() or None,
            credit_limit=d(data.credit_limit),
        )

    return {"customer": run_in_transaction(_tx)}


@router.get("/{customer_id}")
def get_customer(customer_id: str):
    with get_conn() as conn:
        with conn.cursor() as cur:
            row = fetch_customer(cur, customer_id)
            if not row:
                raise CustomerNotFound(customer_id)
            available = d(row["credit_limit"]) - d(row["current_debt"])
            return {"customer": {**row, "available_credit": available if available > ZERO else ZERO}}


@router.get("/{customer_id}/statement")
def customer_statement(customer_id: str, payments_limit: Optional[int] = None):
    with get_conn() as conn:
        with conn.cursor() as cur:
            return get_statement(cur, customer_id, payments_limit=payments_limit)


@router.post("/{customer_id}/reconcile")
def reconcile(customer_id: str):
    result = run_in_transaction(lambda cur: reconcile_customer(cur, customer_id))
    return result.to_dict()


@router.post("/{customer_id}/allocate-advance")
def allocate_customer_advance(customer_id: str):
    return run_in_transaction(lambda cur: allocate_latest_advance(cur, customer_id))
