#!/usr/bin/env python3
"""Nightly credit reconciliation script.

Checks every credit account for two invariants:

* ``available_credits == total_credits_received - credits_used``
* ``available_credits`` equals the sum of the account's ``credit_transactions``

and reports any discrepancies as JSON.

Usage:
    DATABASE_URL=postgresql+asyncpg://... python scripts/reconcile_credits.py

Exit codes:
    0 -- all balances match
    1 -- one or more discrepancies found
"""

from __future__ import annotations

import asyncio
import json
import sys
from datetime import datetime, timezone

from postora.database import engine, get_session_factory
from postora.services.audit_logger import AuditLogger
from postora.services.ledger_store import LedgerDiscrepancy, LedgerStore


def _as_dict(item: LedgerDiscrepancy) -> dict:
    return {
        "user_id": item.user_id,
        "available_credits": item.available_credits,
        "total_credits_received": item.total_credits_received,
        "credits_used": item.credits_used,
        "ledger_sum": item.ledger_sum,
        "counters_consistent": item.counters_consistent,
        "log_consistent": item.log_consistent,
        "difference": item.available_credits - item.ledger_sum,
    }


async def reconcile(store: LedgerStore, audit: AuditLogger | None = None) -> list[dict]:
    """Run the reconciliation and return a list of discrepancy dicts."""
    audit = audit or AuditLogger()
    discrepancies = await store.find_discrepancies()
    for item in discrepancies:
        audit.log_discrepancy(
            item.user_id,
            available_credits=item.available_credits,
            total_credits_received=item.total_credits_received,
            credits_used=item.credits_used,
            ledger_sum=item.ledger_sum,
        )
    return [_as_dict(item) for item in discrepancies]


async def main() -> int:
    try:
        discrepancies = await reconcile(LedgerStore(get_session_factory()))
    finally:
        await engine.dispose()

    report = {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "total_discrepancies": len(discrepancies),
        "discrepancies": discrepancies,
    }

    json.dump(report, sys.stdout, indent=2)
    sys.stdout.write("\n")

    return 1 if discrepancies else 0


if __name__ == "__main__":
    exit_code = asyncio.run(main())
    sys.exit(exit_code)
