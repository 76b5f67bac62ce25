"""Credit account and ledger transaction models."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy import (
    JSON,
    BigInteger,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Uuid,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column, relationship

from postora.models.base import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# BIGSERIAL in Postgres; SQLite only autoincrements a plain INTEGER key
_TxnId = BigInteger().with_variant(Integer, "sqlite")
_Metadata = JSON().with_variant(JSONB, "postgresql")

TRANSACTION_TYPES = (
    "initial_credits",
    "free_trial",
    "purchase",
    "subscription_renewal",
    "image_generation",
    "social_post_generation",
    "manual_addition",
    "refund",
)


class UserCredit(Base):
    __tablename__ = "user_credits"

    user_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    available_credits: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    total_credits_received: Mapped[int] = mapped_column(
        Integer, default=0, nullable=False
    )
    credits_used: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, nullable=False
    )

    __table_args__ = (
        CheckConstraint("available_credits >= 0", name="ck_available_nonneg"),
        CheckConstraint("total_credits_received >= 0", name="ck_total_nonneg"),
        CheckConstraint("credits_used >= 0", name="ck_used_nonneg"),
        CheckConstraint(
            "available_credits = total_credits_received - credits_used",
            name="ck_balance_reconciled",
        ),
    )

    transactions: Mapped[list[CreditTransaction]] = relationship(
        back_populates="account", lazy="noload"
    )


class CreditTransaction(Base):
    """Append-only; rows are never updated or deleted."""

    __tablename__ = "credit_transactions"

    txn_id: Mapped[int] = mapped_column(_TxnId, primary_key=True, autoincrement=True)
    transaction_uuid: Mapped[uuid.UUID] = mapped_column(
        Uuid, unique=True, default=uuid.uuid4, nullable=False
    )
    user_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("user_credits.user_id"), nullable=False
    )
    amount: Mapped[int] = mapped_column(Integer, nullable=False)
    transaction_type: Mapped[str] = mapped_column(String(40), nullable=False)
    metadata_: Mapped[dict[str, Any]] = mapped_column(
        "metadata", _Metadata, default=dict, nullable=False
    )
    idempotency_key: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, nullable=False
    )

    __table_args__ = (
        CheckConstraint("amount <> 0", name="ck_credit_txn_nonzero"),
        CheckConstraint(
            "transaction_type IN ("
            + ", ".join(f"'{t}'" for t in TRANSACTION_TYPES)
            + ")",
            name="ck_credit_txn_type",
        ),
        Index("idx_credit_txn_user_created", "user_id", "created_at"),
    )

    account: Mapped[UserCredit] = relationship(back_populates="transactions")


class LedgerIdempotencyKey(Base):
    """One row per external event / request id that has touched the ledger."""

    __tablename__ = "ledger_idempotency_keys"

    idempotency_key: Mapped[str] = mapped_column(String(255), primary_key=True)
    user_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, nullable=False
    )
