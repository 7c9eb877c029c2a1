from datetime import date
from typing import Optional

from fastapi import APIRouter

from ..db import get_conn
from ..statements import get_collections_report, get_receivables_dashboard

router = APIRouter(prefix="/receivables", tags=["receivables"])


@router.get("/dashboard")
def receivables_dashboard():
    with get_conn() as conn:
        with conn.cursor() as cur:
            return get_receivables_dashboard(cur)


@router.get("/collections")
def collections_report(date_from: Optional[date] = None, date_to: Optional[date] = None, months: int = 6):
    with get_conn() as conn:
        with conn.cursor() as cur:
            return get_collections_report(cur, date_from=date_from, date_to=date_to, months=months)
