"""Structured JSON audit logger for credit and billing events.

Emits structured log entries via structlog for every ledger mutation and
every billing event the reconciler consumes.  Every entry carries an
``audit: true`` flag so production log pipelines can filter on it easily.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

import structlog


log = structlog.get_logger()


class AuditLogger:
    """Structured audit logger for ledger events.

    All methods are synchronous -- they only emit log lines and perform
    no I/O beyond writing to the configured structlog sink.
    """

    # ------------------------------------------------------------------
    # Credit event
    # ------------------------------------------------------------------

    def log_credit_event(
        self,
        user_id,
        amount: int,
        txn_type: str,
        balance_after: int,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        """Log a credit transaction (grant, deduction, refund, etc.)."""
        log.info(
            "audit_event",
            event_type="credit_event",
            timestamp=datetime.now(timezone.utc).isoformat(),
            user_id=str(user_id),
            amount=amount,
            txn_type=txn_type,
            balance_after=balance_after,
            metadata=metadata or {},
            audit=True,
        )

    # ------------------------------------------------------------------
    # Billing event
    # ------------------------------------------------------------------

    def log_billing_event(
        self,
        event_id: str,
        event_kind: str,
        action: str,
        user_id=None,
        credits_granted: int = 0,
        duplicate: bool = False,
    ) -> None:
        """Record how a billing event was reconciled."""
        log.info(
            "audit_event",
            event_type="billing_event",
            timestamp=datetime.now(timezone.utc).isoformat(),
            event_id=event_id,
            event_kind=event_kind,
            action=action,
            user_id=str(user_id) if user_id else None,
            credits_granted=credits_granted,
            duplicate=duplicate,
            audit=True,
        )

    # ------------------------------------------------------------------
    # Ledger discrepancy
    # ------------------------------------------------------------------

    def log_discrepancy(
        self,
        user_id,
        available_credits: int,
        total_credits_received: int,
        credits_used: int,
        ledger_sum: int,
    ) -> None:
        """Flag an account whose counters disagree with its transaction log."""
        log.error(
            "audit_event",
            event_type="ledger_discrepancy",
            timestamp=datetime.now(timezone.utc).isoformat(),
            user_id=str(user_id),
            available_credits=available_credits,
            total_credits_received=total_credits_received,
            credits_used=credits_used,
            ledger_sum=ledger_sum,
            audit=True,
        )
