#!/usr/bin/env python3
"""
Receivables ledger integrity checks.

Verifies the invariants the ledger relies on:
- customers.current_debt == sum(remaining_balance) of the customer's open sales
- sales.remaining_balance == max(0, total - amount_paid)
- sales.payment_status agrees with the balance (PAID iff balance <= 0.01)
- sales.amount_paid == sum(customer_payments.amount) allocated to the sale

Read-only and safe to run against production DBs. To repair debt drift, run
`receivables/workers/reconcile_worker.py --once`.
"""

from __future__ import annotations

import argparse
import os
import sys
from dataclasses import dataclass


# Allow running from repo root without installing as a package.
REPO_ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
if REPO_ROOT not in sys.path:
    sys.path.insert(0, REPO_ROOT)

from receivables.app.db import get_conn  # noqa: E402
from receivables.app.ledger_math import EPS, d  # noqa: E402


@dataclass
class Finding:
    kind: str
    id: str
    ref: str
    message: str


def _parse_args() -> argparse.Namespace:
    p = argparse.ArgumentParser()
    p.add_argument("--customer-id", default=os.environ.get("CUSTOMER_ID") or "", help="Limit checks to one customer")
    p.add_argument("--limit", type=int, default=200, help="Rows per check (default: 200)")
    return p.parse_args()


def check_customer_debt(customer_id: str, limit: int) -> list[Finding]:
    findings: list[Finding] = []
    with get_conn() as conn:
        with conn.cursor() as cur:
            cur.execute(
                """
                SELECT c.id, c.name, c.current_debt,
                       COALESCE(s.outstanding, 0) AS outstanding
                FROM customers c
                LEFT JOIN LATERAL (
                  SELECT SUM(remaining_balance) AS outstanding
                  FROM sales
                  WHERE customer_id = c.id AND remaining_balance > 0
                ) s ON true
                WHERE (%s = '' OR c.id::text = %s)
                  AND ABS(c.current_debt - COALESCE(s.outstanding, 0)) > %s
                ORDER BY c.name
                LIMIT %s
                """,
                (customer_id, customer_id, EPS, limit),
            )
            for r in cur.fetchall():
                got = d(r["current_debt"])
                expected = d(r["outstanding"])
                findings.append(
                    Finding(
                        kind="customer_debt_drift",
                        id=str(r["id"]),
                        ref=str(r["name"] or r["id"]),
                        message=f"current_debt={got} expected={expected} delta={got - expected}",
                    )
                )
    return findings


def check_sale_balances(customer_id: str, limit: int) -> list[Finding]:
    findings: list[Finding] = []
    with get_conn() as conn:
        with conn.cursor() as cur:
            cur.execute(
                """
                SELECT id, folio, total, amount_paid, remaining_balance, payment_status
                FROM sales
                WHERE (%s = '' OR customer_id::text = %s)
                  AND (
                    ABS(remaining_balance - GREATEST(total - amount_paid, 0)) > %s
                    OR (payment_status = 'PAID' AND remaining_balance > %s)
                    OR (payment_status IN ('PENDING', 'PARTIAL') AND remaining_balance <= %s)
                    OR (payment_status = 'PENDING' AND amount_paid > 0)
                  )
                ORDER BY created_at DESC
                LIMIT %s
                """,
                (customer_id, customer_id, EPS, EPS, EPS, limit),
            )
            for r in cur.fetchall():
                findings.append(
                    Finding(
                        kind="sale_balance_mismatch",
                        id=str(r["id"]),
                        ref=str(r["folio"] or r["id"]),
                        message=(
                            f"total={d(r['total'])} amount_paid={d(r['amount_paid'])} "
                            f"remaining={d(r['remaining_balance'])} status={r['payment_status']}"
                        ),
                    )
                )
    return findings


def check_sale_payments(customer_id: str, limit: int) -> list[Finding]:
    findings: list[Finding] = []
    with get_conn() as conn:
        with conn.cursor() as cur:
            cur.execute(
                """
                SELECT s.id, s.folio, s.amount_paid, COALESCE(SUM(p.amount), 0) AS allocated
                FROM sales s
                LEFT JOIN customer_payments p ON p.sale_id = s.id
                WHERE (%s = '' OR s.customer_id::text = %s)
                GROUP BY s.id, s.folio, s.amount_paid
                HAVING ABS(s.amount_paid - COALESCE(SUM(p.amount), 0)) > %s
                ORDER BY s.folio
                LIMIT %s
                """,
                (customer_id, customer_id, EPS, limit),
            )
            for r in cur.fetchall():
                paid = d(r["amount_paid"])
                allocated = d(r["allocated"])
                findings.append(
                    Finding(
                        kind="sale_payments_mismatch",
                        id=str(r["id"]),
                        ref=str(r["folio"] or r["id"]),
                        message=f"amount_paid={paid} allocated_payments={allocated} delta={paid - allocated}",
                    )
                )
    return findings


def main() -> int:
    args = _parse_args()
    customer_id = (args.customer_id or "").strip()
    limit = max(1, min(int(args.limit or 200), 5000))

    findings: list[Finding] = []
    findings.extend(check_customer_debt(customer_id, limit))
    findings.extend(check_sale_balances(customer_id, limit))
    findings.extend(check_sale_payments(customer_id, limit))

    if not findings:
        print("OK: no ledger integrity issues found.")
        return 0

    print(f"Found {len(findings)} issue(s):")
    for f in findings[:200]:
        print(f"- {f.kind}: {f.ref} ({f.id}) -> {f.message}")
    if len(findings) > 200:
        print(f"... plus {len(findings) - 200} more")
    return 1


if __name__ == "__main__":
    raise SystemExit(main())
