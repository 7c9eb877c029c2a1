"""
Ledger reconciliation.

`customers.current_debt` is a cached sum. The authoritative value is the sum of
remaining balances on the customer's sales; this module recomputes it and
overwrites the cache when the two drift apart by more than one cent.
"""

from dataclasses import asdict, dataclass
from decimal import Decimal
from typing import Iterable, Optional

from . import ledger_store
from .customer_locks import lock_customer
from .errors import CustomerNotFound
from .jsonlog import json_log
from .ledger_math import EPS, ZERO, d, q_money

UNCHANGED = "unchanged"
CORRECTED = "corrected"


@dataclass(frozen=True)
class ReconcileResult:
    customer_id: str
    status: str
    previous_debt: Decimal
    corrected_debt: Decimal

    @property
    def corrected(self) -> bool:
        return self.status == CORRECTED

    @property
    def drift(self) -> Decimal:
        return self.corrected_debt - self.previous_debt

    def to_dict(self) -> dict:
        out = asdict(self)
        out["corrected"] = self.corrected
        return out


def compute_correction(customer_id: str, previous_debt, balances: Iterable) -> ReconcileResult:
    """Pure core: what the debt should be given the outstanding sale balances."""
    expected = q_money(sum((d(b) for b in balances if d(b) > ZERO), ZERO))
    previous = d(previous_debt)
    status = CORRECTED if abs(expected - previous) > EPS else UNCHANGED
    return ReconcileResult(
        customer_id=str(customer_id),
        status=status,
        previous_debt=previous,
        corrected_debt=expected if status == CORRECTED else previous,
    )


def reconcile_customer(cur, customer_id: str) -> ReconcileResult:
    customer = lock_customer(cur, customer_id)
    customer_id = customer["id"]
    outstanding = ledger_store.sum_outstanding_balance(cur, customer_id)
    result = compute_correction(customer_id, customer["current_debt"], [outstanding])
    if result.corrected:
        ledger_store.set_customer_debt(cur, customer_id, result.corrected_debt)
        json_log(
            "warn",
            "ledger.drift_corrected",
            customer_id=str(customer_id),
            previous_debt=result.previous_debt,
            corrected_debt=result.corrected_debt,
            drift=result.drift,
        )
    return result


def reconcile_all(conn, customer_ids: Optional[list] = None) -> list[ReconcileResult]:
    """
    Reconcile every customer, one short transaction each so a long run never
    holds more than one customer lock at a time.

    `conn` must be in autocommit mode; otherwise each `conn.transaction()` block
    becomes a savepoint of one long transaction.
    """
    if customer_ids is None:
        with conn.cursor() as cur:
            customer_ids = ledger_store.list_customer_ids(cur)
    results: list[ReconcileResult] = []
    for customer_id in customer_ids:
        try:
            with conn.transaction():
                with conn.cursor() as cur:
                    results.append(reconcile_customer(cur, customer_id))
        except CustomerNotFound:
            # Deleted after the id list was read.
            json_log("warn", "ledger.reconcile_skipped", customer_id=str(customer_id))
    corrected = [r for r in results if r.corrected]
    json_log("info", "ledger.reconcile_all", customers=len(results), corrected=len(corrected))
    return results
