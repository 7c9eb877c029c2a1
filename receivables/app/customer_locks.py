from .config import settings
from .errors import CustomerNotFound
from .ledger_store import fetch_customer


def set_lock_timeout(cur, timeout_ms: int):
    # `SET LOCAL ... = %s` is not valid with the extended query protocol; set_config(..., true)
    # scopes the value to the current transaction.
    cur.execute("SELECT set_config('lock_timeout', %s::text, true)", (f"{int(timeout_ms)}ms",))


def lock_customer(cur, customer_id: str) -> dict:
    """
    Take the per-customer ledger lock and return the locked row.

    Every writer and the reconciler go through here before reading sales or debt,
    so two transactions for the same customer never compute from the same snapshot.
    """
    set_lock_timeout(cur, settings.lock_timeout_ms)
    row = fetch_customer(cur, customer_id, for_update=True)
    if not row:
        raise CustomerNotFound(customer_id)
    return row
