"""ORM models package -- re-exports all models and the Base class."""

from postora.models.base import Base
from postora.models.credit import (
    TRANSACTION_TYPES,
    CreditTransaction,
    LedgerIdempotencyKey,
    UserCredit,
)
from postora.models.billing import (
    Purchase,
    Subscription,
)

__all__ = [
    "Base",
    "TRANSACTION_TYPES",
    "UserCredit",
    "CreditTransaction",
    "LedgerIdempotencyKey",
    "Subscription",
    "Purchase",
]
