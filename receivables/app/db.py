import time
from contextlib import contextmanager
from typing import Callable, Optional, TypeVar

from psycopg import errors as pg_errors
from psycopg.rows import dict_row

# psycopg3 connection pooling lives in a separate package.
from psycopg_pool import ConnectionPool

from .config import settings
from .jsonlog import json_log

T = TypeVar("T")

# Failures where the whole unit of work can be replayed from scratch: every ledger
# operation re-reads its state under the customer lock, so nothing is applied twice.
RETRYABLE_ERRORS = (
    pg_errors.SerializationFailure,
    pg_errors.DeadlockDetected,
    pg_errors.LockNotAvailable,
)

_pool: Optional[ConnectionPool] = None


def _get_pool() -> ConnectionPool:
    # Opened on first use so importing routers never touches the network.
    global _pool
    if _pool is None:
        _pool = ConnectionPool(
            conninfo=settings.db_url,
            min_size=settings.pool_min_size,
            max_size=settings.pool_max_size,
            kwargs={"row_factory": dict_row},
            open=True,
        )
    return _pool


@contextmanager
def _pooled_conn(pool: ConnectionPool):
    # `with get_conn() as conn:` commits on success, rolls back on exception
    # and returns the connection to the pool.
    with pool.connection() as conn:
        with conn:
            yield conn


def get_conn():
    return _pooled_conn(_get_pool())


def close_pools() -> None:
    # Best-effort shutdown hook (e.g. uvicorn shutdown).
    global _pool
    if _pool is None:
        return
    try:
        _pool.close()
    except Exception as exc:
        json_log("warn", "db.pool.close_failed", error=str(exc))
    _pool = None


def run_in_transaction(fn: Callable[..., T], *, attempts: Optional[int] = None) -> T:
    """
    Run `fn(cur)` inside a single transaction, replaying it on transient
    lock/serialization failures. Any other exception rolls back and propagates.
    """
    attempts = attempts or settings.tx_retries
    attempt = 0
    while True:
        attempt += 1
        try:
            with get_conn() as conn:
                with conn.transaction():
                    with conn.cursor() as cur:
                        return fn(cur)
        except RETRYABLE_ERRORS as exc:
            if attempt >= attempts:
                json_log("error", "db.transaction.gave_up", attempts=attempt, error=str(exc))
                raise
            json_log("warn", "db.transaction.retry", attempt=attempt, error=type(exc).__name__)
            time.sleep(min(0.05 * (2 ** (attempt - 1)), 1.0))
