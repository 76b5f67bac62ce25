"""Tests for structured audit logging.

Run with:
    pytest tests/test_audit.py -v
"""

from __future__ import annotations

from unittest.mock import patch

import pytest

from postora.services.audit_logger import AuditLogger

FAKE_USER = "user_audit_1"


# ---------------------------------------------------------------------------
# 1. test_log_credit_event
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_log_credit_event():
    """Verify credit event log includes user, amount, type, balance and audit flag."""
    logger = AuditLogger()

    with patch("postora.services.audit_logger.log") as mock_log:
        logger.log_credit_event(
            user_id=FAKE_USER,
            amount=-3,
            txn_type="image_generation",
            balance_after=7,
            metadata={"request_id": "req-1"},
        )

        mock_log.info.assert_called_once()
        call_kwargs = mock_log.info.call_args[1]

        assert call_kwargs["event_type"] == "credit_event"
        assert call_kwargs["audit"] is True
        assert call_kwargs["user_id"] == FAKE_USER
        assert call_kwargs["amount"] == -3
        assert call_kwargs["txn_type"] == "image_generation"
        assert call_kwargs["balance_after"] == 7
        assert call_kwargs["metadata"] == {"request_id": "req-1"}
        assert "timestamp" in call_kwargs


# ---------------------------------------------------------------------------
# 2. test_log_billing_event
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_log_billing_event():
    """Verify billing event log records the reconciliation outcome."""
    logger = AuditLogger()

    with patch("postora.services.audit_logger.log") as mock_log:
        logger.log_billing_event(
            event_id="evt_1",
            event_kind="invoice_paid",
            action="duplicate_ignored",
            user_id=FAKE_USER,
            duplicate=True,
        )

        mock_log.info.assert_called_once()
        call_kwargs = mock_log.info.call_args[1]

        assert call_kwargs["event_type"] == "billing_event"
        assert call_kwargs["audit"] is True
        assert call_kwargs["event_id"] == "evt_1"
        assert call_kwargs["action"] == "duplicate_ignored"
        assert call_kwargs["credits_granted"] == 0
        assert call_kwargs["duplicate"] is True


@pytest.mark.asyncio
async def test_log_billing_event_without_user():
    logger = AuditLogger()

    with patch("postora.services.audit_logger.log") as mock_log:
        logger.log_billing_event("evt_2", "invoice_paid", "ignored_unresolved")

        assert mock_log.info.call_args[1]["user_id"] is None


# ---------------------------------------------------------------------------
# 3. test_log_discrepancy
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_log_discrepancy():
    """Discrepancies are logged at error level."""
    logger = AuditLogger()

    with patch("postora.services.audit_logger.log") as mock_log:
        logger.log_discrepancy(
            FAKE_USER,
            available_credits=12,
            total_credits_received=13,
            credits_used=1,
            ledger_sum=2,
        )

        mock_log.error.assert_called_once()
        mock_log.info.assert_not_called()
        call_kwargs = mock_log.error.call_args[1]

        assert call_kwargs["event_type"] == "ledger_discrepancy"
        assert call_kwargs["ledger_sum"] == 2
        assert call_kwargs["audit"] is True
