from typing import List, Optional

from fastapi import APIRouter
from pydantic import BaseModel

from ..credit_sales import CreditSaleLine, issue_credit_sale
from ..db import get_conn, run_in_transaction
from ..errors import SaleNotFound
from ..ledger_store import fetch_sale, fetch_sale_items, list_payments
from ..validation import Money

router = APIRouter(prefix="/sales", tags=["sales"])


class CreditSaleItemIn(BaseModel):
    product_id: str
    quantity: Money
    unit_price: Money


class CreditSaleIn(BaseModel):
    customer_id: str
    items: List[CreditSaleItemIn]
    due_in_days: Optional[int] = None


@router.post("/credit", status_code=201)
def create_credit_sale(data: CreditSaleIn):
    lines = [CreditSaleLine(product_id=i.product_id, quantity=i.quantity, unit_price=i.unit_price) for i in data.items]
    return run_in_transaction(lambda cur: issue_credit_sale(cur, data.customer_id, lines, data.due_in_days))


@router.get("/{sale_id}")
def get_sale(sale_id: str):
    with get_conn() as conn:
        with conn.cursor() as cur:
            sale = fetch_sale(cur, sale_id)
            if not sale:
                raise SaleNotFound(sale_id)
            items = fetch_sale_items(cur, sale_id)
            payments = list_payments(cur, sale_id=sale_id, limit=500)
            return {"sale": sale, "items": items, "payments": payments}
