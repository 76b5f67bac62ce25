"""Credit management service -- account setup, balance queries, deductions and grants."""

from __future__ import annotations

from typing import Any

import structlog

from postora.config import settings
from postora.services.audit_logger import AuditLogger
from postora.services.ledger_store import (
    AccountAlreadyExists,
    AccountNotFound,
    CreditAccount,
    CreditTransactionEntry,
    DuplicateIdempotencyKey,
    InsufficientCredits,
    LedgerStore,
    TransactionType,
)

log = structlog.get_logger()


def _require_positive(value: int, name: str) -> None:
    if isinstance(value, bool) or not isinstance(value, int):
        raise TypeError(f"{name} must be an integer, got {value!r}")
    if value < 1:
        raise ValueError(f"{name} must be >= 1, got {value}")


class CreditService:
    """Business-logic surface over the ledger.

    Generation code, the billing reconciler and the HTTP routes all go
    through this class; none of them touch :class:`LedgerStore` directly.
    """

    def __init__(self, store: LedgerStore, audit: AuditLogger | None = None) -> None:
        self._store = store
        self._audit = audit or AuditLogger()

    @property
    def store(self) -> LedgerStore:
        return self._store

    # ------------------------------------------------------------------
    # Account lifecycle
    # ------------------------------------------------------------------

    async def ensure_account(
        self,
        user_id: str,
        default_credits: int | None = None,
    ) -> CreditAccount:
        """Return the user's account, creating it with *default_credits* if absent.

        Idempotent: concurrent or repeated calls create at most one account
        and one ``initial_credits`` transaction.
        """
        if default_credits is None:
            default_credits = settings.DEFAULT_SIGNUP_CREDITS

        try:
            return await self._store.get_account(user_id)
        except AccountNotFound:
            pass

        try:
            account = await self._store.create_account(
                user_id,
                default_credits,
                TransactionType.INITIAL_CREDITS,
                {"source": "ensure_account"},
            )
        except AccountAlreadyExists:
            return await self._store.get_account(user_id)

        log.info("credit_account_created", user_id=user_id, initial_credits=default_credits)
        if default_credits > 0:
            self._audit.log_credit_event(
                user_id,
                default_credits,
                TransactionType.INITIAL_CREDITS.value,
                balance_after=account.available_credits,
            )
        return account

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def has_sufficient_credits(self, user_id: str, required: int) -> bool:
        """Fast-fail check; a missing account counts as a zero balance.

        Not a reservation: :meth:`deduct` re-checks atomically.
        """
        _require_positive(required, "required")
        try:
            account = await self._store.get_account(user_id)
        except AccountNotFound:
            return False
        return account.available_credits >= required

    async def get_balance(self, user_id: str) -> CreditAccount:
        """Return the account, or an unpersisted zero view if none exists."""
        try:
            return await self._store.get_account(user_id)
        except AccountNotFound:
            return CreditAccount(
                user_id=user_id,
                available_credits=0,
                total_credits_received=0,
                credits_used=0,
            )

    async def get_history(
        self,
        user_id: str,
        limit: int = 10,
        offset: int = 0,
    ) -> list[CreditTransactionEntry]:
        return await self._store.list_transactions(user_id, limit=limit, offset=offset)

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    async def deduct(
        self,
        user_id: str,
        amount: int,
        reason: TransactionType | str,
        metadata: dict[str, Any] | None = None,
        *,
        idempotency_key: str | None = None,
    ) -> CreditAccount:
        """Deduct *amount* credits or raise InsufficientCredits / AccountNotFound."""
        _require_positive(amount, "amount")
        reason = TransactionType(reason)
        try:
            account = await self._store.apply_delta(
                user_id,
                -amount,
                reason,
                metadata,
                idempotency_key=idempotency_key,
            )
        except InsufficientCredits as exc:
            log.info(
                "credit_deduction_rejected",
                user_id=user_id,
                required=exc.required,
                available=exc.available,
                reason=reason.value,
            )
            raise

        self._audit.log_credit_event(
            user_id, -amount, reason.value, account.available_credits, metadata
        )
        return account

    async def grant(
        self,
        user_id: str,
        amount: int,
        reason: TransactionType | str,
        metadata: dict[str, Any] | None = None,
        *,
        idempotency_key: str | None = None,
    ) -> CreditAccount:
        """Add *amount* credits, creating the account if needed."""
        _require_positive(amount, "amount")
        reason = TransactionType(reason)
        account = await self._store.apply_delta(
            user_id,
            amount,
            reason,
            metadata,
            idempotency_key=idempotency_key,
            create_missing=True,
        )
        self._audit.log_credit_event(
            user_id, amount, reason.value, account.available_credits, metadata
        )
        return account

    async def refund(
        self,
        user_id: str,
        amount: int,
        metadata: dict[str, Any] | None = None,
        *,
        idempotency_key: str | None = None,
    ) -> CreditAccount:
        """Return credits to a user. Delegates to grant with type 'refund'."""
        return await self.grant(
            user_id,
            amount,
            TransactionType.REFUND,
            metadata,
            idempotency_key=idempotency_key,
        )

    async def grant_free_trial(self, user_id: str) -> tuple[CreditAccount, bool]:
        """Grant the one-time free-trial bundle.

        Returns ``(account, granted)``; *granted* is False when the user
        already received it.
        """
        try:
            account = await self.grant(
                user_id,
                settings.FREE_TRIAL_CREDITS,
                TransactionType.FREE_TRIAL,
                {"plan_id": "free"},
                idempotency_key=f"free_trial:{user_id}",
            )
        except DuplicateIdempotencyKey:
            log.info("free_trial_already_granted", user_id=user_id)
            return await self.get_balance(user_id), False
        return account, True
