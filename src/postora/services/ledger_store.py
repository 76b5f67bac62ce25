"""Ledger store -- durable credit accounts and the append-only transaction log.

Every balance change goes through :meth:`LedgerStore.apply_delta`, which runs
the conditional ``UPDATE ... RETURNING``, the transaction insert and the
optional idempotency-key claim inside one database transaction.  Deductions
never read-then-write: the ``available_credits >= :amount`` predicate is
evaluated by the database under the row lock, so concurrent deductions for
the same user serialize and can never overdraw the account.
"""

from __future__ import annotations

import enum
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

import structlog
from pydantic import BaseModel
from sqlalchemy import func, or_, select, update
from sqlalchemy.exc import DBAPIError, IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from postora.config import settings
from postora.models import CreditTransaction, LedgerIdempotencyKey, UserCredit

log = structlog.get_logger()

# serialization_failure, deadlock_detected, lock_not_available
_TRANSIENT_SQLSTATES = frozenset({"40001", "40P01", "55P03"})


# ---------------------------------------------------------------------------
# Transaction types
# ---------------------------------------------------------------------------

class TransactionType(str, enum.Enum):
    INITIAL_CREDITS = "initial_credits"
    FREE_TRIAL = "free_trial"
    PURCHASE = "purchase"
    SUBSCRIPTION_RENEWAL = "subscription_renewal"
    IMAGE_GENERATION = "image_generation"
    SOCIAL_POST_GENERATION = "social_post_generation"
    MANUAL_ADDITION = "manual_addition"
    REFUND = "refund"


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------

class LedgerError(Exception):
    """Base class for ledger failures."""


class AccountNotFound(LedgerError):
    def __init__(self, user_id: str) -> None:
        super().__init__(f"No credit account for user {user_id}")
        self.user_id = user_id


class AccountAlreadyExists(LedgerError):
    def __init__(self, user_id: str) -> None:
        super().__init__(f"Credit account for user {user_id} already exists")
        self.user_id = user_id


class InsufficientCredits(LedgerError):
    """The account cannot cover the requested deduction. Nothing was written."""

    def __init__(self, user_id: str, required: int, available: int) -> None:
        super().__init__(
            f"User {user_id} needs {required} credits but has {available}"
        )
        self.user_id = user_id
        self.required = required
        self.available = available

    @property
    def shortfall(self) -> int:
        return self.required - self.available


class LedgerWriteConflict(LedgerError):
    """Transient contention on the ledger row; retried before surfacing."""


class DuplicateIdempotencyKey(LedgerError):
    """The idempotency key was already claimed. Nothing was written."""

    def __init__(self, key: str) -> None:
        super().__init__(f"Idempotency key {key!r} already applied")
        self.key = key


# ---------------------------------------------------------------------------
# Pydantic schemas
# ---------------------------------------------------------------------------

class CreditAccount(BaseModel):
    user_id: str
    available_credits: int
    total_credits_received: int
    credits_used: int
    created_at: datetime | None = None
    updated_at: datetime | None = None


class CreditTransactionEntry(BaseModel):
    id: uuid.UUID
    user_id: str
    amount: int
    transaction_type: TransactionType
    metadata: dict[str, Any]
    idempotency_key: str | None = None
    created_at: datetime


@dataclass(frozen=True)
class LedgerDiscrepancy:
    """An account whose balance fields or log disagree with each other."""

    user_id: str
    available_credits: int
    total_credits_received: int
    credits_used: int
    ledger_sum: int

    @property
    def counters_consistent(self) -> bool:
        return self.available_credits == self.total_credits_received - self.credits_used

    @property
    def log_consistent(self) -> bool:
        return self.available_credits == self.ledger_sum


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

_ACCOUNT_COLUMNS = (
    UserCredit.user_id,
    UserCredit.available_credits,
    UserCredit.total_credits_received,
    UserCredit.credits_used,
    UserCredit.created_at,
    UserCredit.updated_at,
)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _is_transient(exc: DBAPIError) -> bool:
    """Return True for lock/serialization failures worth retrying."""
    orig = exc.orig
    sqlstate = getattr(orig, "sqlstate", None) or getattr(orig, "pgcode", None)
    if sqlstate in _TRANSIENT_SQLSTATES:
        return True
    # SQLite reports lock contention only through the message text
    message = str(orig).lower()
    return "database is locked" in message or "database table is locked" in message


def _validate_amount(amount: int) -> None:
    if isinstance(amount, bool) or not isinstance(amount, int):
        raise TypeError(f"Credit amounts must be integers, got {amount!r}")
    if amount == 0:
        raise ValueError("Credit delta must be non-zero")


def _to_entry(txn: CreditTransaction) -> CreditTransactionEntry:
    return CreditTransactionEntry(
        id=txn.transaction_uuid,
        user_id=txn.user_id,
        amount=txn.amount,
        transaction_type=TransactionType(txn.transaction_type),
        metadata=dict(txn.metadata_ or {}),
        idempotency_key=txn.idempotency_key,
        created_at=txn.created_at,
    )


def _log_retry(retry_state: RetryCallState) -> None:
    log.warning(
        "ledger_write_retry",
        attempt=retry_state.attempt_number,
        error=str(retry_state.outcome.exception()) if retry_state.outcome else None,
    )


# ---------------------------------------------------------------------------
# Store
# ---------------------------------------------------------------------------

class LedgerStore:
    """Persistence for ``user_credits``, ``credit_transactions`` and
    ``ledger_idempotency_keys``.

    Each mutating call opens its own session and transaction from
    *session_factory*; callers never share a session with the store.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        max_attempts: int | None = None,
        min_wait: float | None = None,
        max_wait: float | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._max_attempts = max_attempts or settings.LEDGER_WRITE_MAX_ATTEMPTS
        self._min_wait = min_wait if min_wait is not None else settings.LEDGER_RETRY_MIN_WAIT
        self._max_wait = max_wait if max_wait is not None else settings.LEDGER_RETRY_MAX_WAIT

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get_account(self, user_id: str) -> CreditAccount:
        """Return the account for *user_id* or raise AccountNotFound."""
        async with self._session_factory() as session:
            result = await session.execute(
                select(*_ACCOUNT_COLUMNS).where(UserCredit.user_id == user_id)
            )
            row = result.fetchone()
        if row is None:
            raise AccountNotFound(user_id)
        return CreditAccount(**row._mapping)

    async def list_transactions(
        self,
        user_id: str,
        limit: int = 10,
        offset: int = 0,
    ) -> list[CreditTransactionEntry]:
        """Return transactions newest first, paginated by *limit*/*offset*."""
        if limit < 1 or limit > settings.HISTORY_MAX_LIMIT:
            raise ValueError(f"limit must be between 1 and {settings.HISTORY_MAX_LIMIT}")
        if offset < 0:
            raise ValueError("offset must be >= 0")

        async with self._session_factory() as session:
            result = await session.execute(
                select(CreditTransaction)
                .where(CreditTransaction.user_id == user_id)
                .order_by(CreditTransaction.created_at.desc(), CreditTransaction.txn_id.desc())
                .limit(limit)
                .offset(offset)
            )
            return [_to_entry(txn) for txn in result.scalars().all()]

    async def has_applied_idempotency_key(self, key: str) -> bool:
        async with self._session_factory() as session:
            found = await session.scalar(
                select(LedgerIdempotencyKey.idempotency_key).where(
                    LedgerIdempotencyKey.idempotency_key == key
                )
            )
        return found is not None

    async def find_discrepancies(self) -> list[LedgerDiscrepancy]:
        """Return accounts whose counters or transaction log disagree."""
        sums = (
            select(
                CreditTransaction.user_id.label("user_id"),
                func.sum(CreditTransaction.amount).label("ledger_sum"),
            )
            .group_by(CreditTransaction.user_id)
            .subquery()
        )
        ledger_sum = func.coalesce(sums.c.ledger_sum, 0)
        stmt = (
            select(*_ACCOUNT_COLUMNS[:4], ledger_sum.label("ledger_sum"))
            .outerjoin(sums, sums.c.user_id == UserCredit.user_id)
            .where(
                or_(
                    UserCredit.available_credits
                    != UserCredit.total_credits_received - UserCredit.credits_used,
                    UserCredit.available_credits != ledger_sum,
                )
            )
            .order_by(UserCredit.user_id)
        )
        async with self._session_factory() as session:
            rows = (await session.execute(stmt)).fetchall()
        return [
            LedgerDiscrepancy(
                user_id=row[0],
                available_credits=row[1],
                total_credits_received=row[2],
                credits_used=row[3],
                ledger_sum=int(row[4]),
            )
            for row in rows
        ]

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def create_account(
        self,
        user_id: str,
        initial_credits: int,
        transaction_type: TransactionType = TransactionType.INITIAL_CREDITS,
        metadata: dict[str, Any] | None = None,
    ) -> CreditAccount:
        """Create the account seeded with *initial_credits*.

        Raises AccountAlreadyExists if a row for *user_id* is present.
        """
        if isinstance(initial_credits, bool) or not isinstance(initial_credits, int):
            raise TypeError(f"Credit amounts must be integers, got {initial_credits!r}")
        if initial_credits < 0:
            raise ValueError("initial_credits must be >= 0")
        return await self._retrying(
            self._create_account_once,
            user_id,
            initial_credits,
            TransactionType(transaction_type),
            metadata,
        )

    async def apply_delta(
        self,
        user_id: str,
        amount: int,
        transaction_type: TransactionType | str,
        metadata: dict[str, Any] | None = None,
        *,
        idempotency_key: str | None = None,
        create_missing: bool = False,
    ) -> CreditAccount:
        """Atomically add *amount* (signed) to the account and log it.

        Deductions raise InsufficientCredits or AccountNotFound without
        writing anything.  Grants raise AccountNotFound unless
        *create_missing* is set.  A reused *idempotency_key* raises
        DuplicateIdempotencyKey.
        """
        _validate_amount(amount)
        txn_type = TransactionType(transaction_type)
        return await self._retrying(
            self._apply_delta_once,
            user_id,
            amount,
            txn_type,
            dict(metadata or {}),
            idempotency_key,
            create_missing,
        )

    async def record_idempotency_key(self, key: str, user_id: str | None = None) -> bool:
        """Claim *key* outside of any balance change.

        Returns False if the key had already been claimed.
        """
        try:
            await self._retrying(self._claim_key_once, key, user_id)
        except DuplicateIdempotencyKey:
            return False
        return True

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _retrying(self, fn, *args):
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self._max_attempts),
            wait=wait_exponential(
                multiplier=self._min_wait, min=self._min_wait, max=self._max_wait
            ),
            retry=retry_if_exception_type(LedgerWriteConflict),
            before_sleep=_log_retry,
            reraise=True,
        )
        return await retrying(fn, *args)

    async def _create_account_once(
        self,
        user_id: str,
        initial_credits: int,
        txn_type: TransactionType,
        metadata: dict[str, Any] | None,
    ) -> CreditAccount:
        now = _utcnow()
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    account = UserCredit(
                        user_id=user_id,
                        available_credits=initial_credits,
                        total_credits_received=initial_credits,
                        credits_used=0,
                        created_at=now,
                        updated_at=now,
                    )
                    session.add(account)
                    try:
                        await session.flush()
                    except IntegrityError as exc:
                        raise AccountAlreadyExists(user_id) from exc

                    if initial_credits > 0:
                        session.add(
                            CreditTransaction(
                                user_id=user_id,
                                amount=initial_credits,
                                transaction_type=txn_type.value,
                                metadata_=dict(metadata or {}),
                                created_at=now,
                            )
                        )
                        await session.flush()
        except DBAPIError as exc:
            if _is_transient(exc):
                raise LedgerWriteConflict(str(exc)) from exc
            raise

        return CreditAccount(
            user_id=user_id,
            available_credits=initial_credits,
            total_credits_received=initial_credits,
            credits_used=0,
            created_at=now,
            updated_at=now,
        )

    async def _apply_delta_once(
        self,
        user_id: str,
        amount: int,
        txn_type: TransactionType,
        metadata: dict[str, Any],
        idempotency_key: str | None,
        create_missing: bool,
    ) -> CreditAccount:
        now = _utcnow()
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    if idempotency_key is not None:
                        await self._claim_key(session, idempotency_key, user_id, now)

                    if amount < 0:
                        account = await self._debit(session, user_id, -amount, now)
                    else:
                        account = await self._credit(
                            session, user_id, amount, now, create_missing
                        )

                    session.add(
                        CreditTransaction(
                            user_id=user_id,
                            amount=amount,
                            transaction_type=txn_type.value,
                            metadata_=metadata,
                            idempotency_key=idempotency_key,
                            created_at=now,
                        )
                    )
                    await session.flush()
        except DBAPIError as exc:
            if _is_transient(exc):
                raise LedgerWriteConflict(str(exc)) from exc
            raise

        return account

    async def _claim_key_once(self, key: str, user_id: str | None) -> None:
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    await self._claim_key(session, key, user_id, _utcnow())
        except DBAPIError as exc:
            if _is_transient(exc):
                raise LedgerWriteConflict(str(exc)) from exc
            raise

    @staticmethod
    async def _claim_key(
        session: AsyncSession,
        key: str,
        user_id: str | None,
        now: datetime,
    ) -> None:
        session.add(
            LedgerIdempotencyKey(idempotency_key=key, user_id=user_id, created_at=now)
        )
        try:
            await session.flush()
        except IntegrityError as exc:
            raise DuplicateIdempotencyKey(key) from exc

    @staticmethod
    async def _debit(
        session: AsyncSession,
        user_id: str,
        amount: int,
        now: datetime,
    ) -> CreditAccount:
        """Conditional decrement; the WHERE clause is the overdraft guard."""
        result = await session.execute(
            update(UserCredit)
            .where(
                UserCredit.user_id == user_id,
                UserCredit.available_credits >= amount,
            )
            .values(
                available_credits=UserCredit.available_credits - amount,
                credits_used=UserCredit.credits_used + amount,
                updated_at=now,
            )
            .returning(*_ACCOUNT_COLUMNS)
            .execution_options(synchronize_session=False)
        )
        row = result.fetchone()
        if row is not None:
            return CreditAccount(**row._mapping)

        available = await session.scalar(
            select(UserCredit.available_credits).where(UserCredit.user_id == user_id)
        )
        if available is None:
            raise AccountNotFound(user_id)
        raise InsufficientCredits(user_id, required=amount, available=available)

    @staticmethod
    async def _credit(
        session: AsyncSession,
        user_id: str,
        amount: int,
        now: datetime,
        create_missing: bool,
    ) -> CreditAccount:
        stmt = (
            update(UserCredit)
            .where(UserCredit.user_id == user_id)
            .values(
                available_credits=UserCredit.available_credits + amount,
                total_credits_received=UserCredit.total_credits_received + amount,
                updated_at=now,
            )
            .returning(*_ACCOUNT_COLUMNS)
            .execution_options(synchronize_session=False)
        )
        row = (await session.execute(stmt)).fetchone()
        if row is None:
            if not create_missing:
                raise AccountNotFound(user_id)
            session.add(
                UserCredit(
                    user_id=user_id,
                    available_credits=0,
                    total_credits_received=0,
                    credits_used=0,
                    created_at=now,
                    updated_at=now,
                )
            )
            try:
                await session.flush()
            except IntegrityError as exc:
                # Another request created the row first; retry the whole unit
                raise LedgerWriteConflict(f"Concurrent creation of {user_id}") from exc
            row = (await session.execute(stmt)).fetchone()
        return CreditAccount(**row._mapping)
