#!/usr/bin/env python3
"""
Ledger reconcile worker.

Recomputes every customer's `current_debt` from the remaining balances of their
sales and overwrites it where it drifted. Runs a single pass with `--once`, or
continuously every `--interval` seconds.
"""

import argparse
import os
import sys
import time
import traceback

import psycopg
from psycopg.rows import dict_row

# Allow running as a script: `python3 receivables/workers/reconcile_worker.py`
REPO_ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), "..", ".."))
if REPO_ROOT not in sys.path:
    sys.path.insert(0, REPO_ROOT)

from receivables.app.config import settings  # noqa: E402
from receivables.app.jsonlog import json_log  # noqa: E402
from receivables.app.ledger_reconcile import reconcile_all  # noqa: E402

WORKER_NAME = "ledger-reconcile-worker"


def get_conn(db_url):
    # Autocommit so each customer's `conn.transaction()` is its own real transaction.
    return psycopg.connect(db_url, row_factory=dict_row, autocommit=True)


def run_pass(db_url: str, customer_ids=None) -> dict:
    started = time.time()
    with get_conn(db_url) as conn:
        results = reconcile_all(conn, customer_ids=customer_ids or None)
    corrected = [r for r in results if r.corrected]
    summary = {
        "customers": len(results),
        "corrected": len(corrected),
        "corrected_customer_ids": [r.customer_id for r in corrected],
        "duration_ms": int((time.time() - started) * 1000),
    }
    json_log("info", "worker.reconcile.pass", worker=WORKER_NAME, **summary)
    return summary


def main():
    parser = argparse.ArgumentParser()
    parser.add_argument("--db", default=settings.db_url)
    parser.add_argument("--customers", nargs="*", help="Optional list of customer UUIDs to reconcile")
    parser.add_argument("--interval", type=float, default=3600.0, help="Seconds between passes")
    parser.add_argument("--once", action="store_true", help="Run a single pass and exit")
    args = parser.parse_args()

    while True:
        try:
            run_pass(args.db, args.customers)
        except Exception as ex:
            if args.once:
                raise
            # Never crash the worker loop; the next pass starts from a fresh read.
            json_log("error", "worker.reconcile.error", worker=WORKER_NAME, error=str(ex))
            traceback.print_exc(file=sys.stderr)
        if args.once:
            break
        time.sleep(max(1.0, args.interval))


if __name__ == "__main__":
    main()
