from datetime import date, datetime
from typing import Optional

from fastapi import APIRouter, HTTPException
from pydantic import BaseModel

from ..db import get_conn, run_in_transaction
from ..ledger_store import list_payments
from ..payment_allocation import allocate_advance_payment, apply_payment
from ..validation import Money, PaymentMethod, parse_uuid_optional

router = APIRouter(prefix="/customer-payments", tags=["customer-payments"])


class CustomerPaymentIn(BaseModel):
    customer_id: str
    amount: Money
    method: PaymentMethod = "cash"
    reference: Optional[str] = None
    payment_date: Optional[datetime] = None
    notes: Optional[str] = None
    # Pay one named invoice instead of spreading the amount oldest-first.
    sale_id: Optional[str] = None


@router.get("")
def list_customer_payments(
    customer_id: Optional[str] = None,
    sale_id: Optional[str] = None,
    date_from: Optional[date] = None,
    date_to: Optional[date] = None,
    limit: int = 50,
):
    if limit <= 0 or limit > 500:
        raise HTTPException(status_code=400, detail="limit must be between 1 and 500")
    customer_id = parse_uuid_optional(customer_id, "customer_id")
    sale_id = parse_uuid_optional(sale_id, "sale_id")
    with get_conn() as conn:
        with conn.cursor() as cur:
            rows = list_payments(
                cur,
                customer_id=customer_id,
                sale_id=sale_id,
                date_from=date_from,
                date_to=date_to,
                limit=limit,
            )
            return {"payments": rows}


@router.post("", status_code=201)
def create_customer_payment(data: CustomerPaymentIn):
    def _tx(cur):
        return apply_payment(
            cur,
            data.customer_id,
            data.amount,
            data.method,
            reference=(data.reference or "").strip() or None,
            payment_date=data.payment_date,
            notes=(data.notes or "").strip() or None,
            sale_id=data.sale_id,
        )

    return run_in_transaction(_tx)


@router.post("/{payment_id}/allocate")
def allocate_payment(payment_id: str):
    return run_in_transaction(lambda cur: allocate_advance_payment(cur, payment_id))
