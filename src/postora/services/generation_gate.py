"""Generation gate -- the credits side of "spend N credits on N generations".

Protocol:
1. ``reserve`` checks the balance covers ``requested_count``; no deduction.
2. The caller runs up to ``requested_count`` external generation attempts.
3. ``finalize`` deducts exactly the number of successful attempts.

Failed, cancelled or timed-out attempts are never charged.  The check in
step 1 is advisory: the deduction in step 3 re-validates the balance
atomically, so a concurrent drain surfaces as GenerationCreditsRequired
rather than a negative balance.
"""

from __future__ import annotations

import uuid
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

import structlog

from postora.services.credit_service import CreditService
from postora.services.ledger_store import (
    CreditAccount,
    DuplicateIdempotencyKey,
    InsufficientCredits,
    TransactionType,
)

log = structlog.get_logger()

_GENERATION_REASONS = frozenset(
    {TransactionType.IMAGE_GENERATION, TransactionType.SOCIAL_POST_GENERATION}
)


class GenerationCreditsRequired(Exception):
    """The user cannot pay for the requested generations."""

    def __init__(self, user_id: str, required: int, available: int) -> None:
        self.user_id = user_id
        self.required = required
        self.available = available
        self.shortfall = max(required - available, 0)
        super().__init__(
            f"You need {self.shortfall} more credits to generate {required} items."
        )


@dataclass(frozen=True)
class GenerationTicket:
    """Result of a passed sufficiency check; carries what finalize needs."""

    user_id: str
    requested_count: int
    reason: TransactionType
    request_id: str


class GenerationGate:
    def __init__(self, credits: CreditService, seed_credits: int | None = None) -> None:
        """*seed_credits*: when set, first-time users get an account seeded
        with this many credits before the check."""
        self._credits = credits
        self._seed_credits = seed_credits

    async def reserve(
        self,
        user_id: str,
        requested_count: int,
        *,
        reason: TransactionType | str = TransactionType.IMAGE_GENERATION,
        request_id: str | None = None,
    ) -> GenerationTicket:
        """Fail fast with GenerationCreditsRequired if the balance is short."""
        if isinstance(requested_count, bool) or not isinstance(requested_count, int):
            raise TypeError(f"requested_count must be an integer, got {requested_count!r}")
        if requested_count < 1:
            raise ValueError("requested_count must be >= 1")
        reason = TransactionType(reason)
        if reason not in _GENERATION_REASONS:
            raise ValueError(f"{reason.value} is not a generation charge")

        if self._seed_credits is not None:
            await self._credits.ensure_account(user_id, self._seed_credits)

        if not await self._credits.has_sufficient_credits(user_id, requested_count):
            balance = await self._credits.get_balance(user_id)
            log.info(
                "generation_rejected_insufficient_credits",
                user_id=user_id,
                requested=requested_count,
                available=balance.available_credits,
            )
            raise GenerationCreditsRequired(
                user_id, requested_count, balance.available_credits
            )

        return GenerationTicket(
            user_id=user_id,
            requested_count=requested_count,
            reason=reason,
            request_id=request_id or str(uuid.uuid4()),
        )

    async def finalize(
        self,
        ticket: GenerationTicket,
        successful_count: int,
        metadata: dict[str, Any] | None = None,
    ) -> CreditAccount | None:
        """Charge for *successful_count* delivered items.

        Returns the updated account, or None when nothing was charged.
        A finalize repeated for the same request id is not charged twice.
        """
        if isinstance(successful_count, bool) or not isinstance(successful_count, int):
            raise TypeError(f"successful_count must be an integer, got {successful_count!r}")
        if not 0 <= successful_count <= ticket.requested_count:
            raise ValueError(
                f"successful_count must be between 0 and {ticket.requested_count}"
            )

        if successful_count == 0:
            log.info(
                "generation_not_charged",
                user_id=ticket.user_id,
                request_id=ticket.request_id,
                requested=ticket.requested_count,
            )
            return None

        charge_metadata = {
            **(metadata or {}),
            "request_id": ticket.request_id,
            "requested_count": ticket.requested_count,
            "successful_count": successful_count,
            "success_rate": f"{successful_count}/{ticket.requested_count}",
        }
        try:
            return await self._credits.deduct(
                ticket.user_id,
                successful_count,
                ticket.reason,
                charge_metadata,
                idempotency_key=f"generation:{ticket.request_id}",
            )
        except InsufficientCredits as exc:
            raise GenerationCreditsRequired(
                ticket.user_id, exc.required, exc.available
            ) from exc
        except DuplicateIdempotencyKey:
            log.info(
                "generation_already_charged",
                user_id=ticket.user_id,
                request_id=ticket.request_id,
            )
            return await self._credits.get_balance(ticket.user_id)

    async def run(
        self,
        user_id: str,
        requested_count: int,
        work: Callable[[int], Awaitable[int]],
        *,
        reason: TransactionType | str = TransactionType.IMAGE_GENERATION,
        request_id: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> tuple[int, CreditAccount | None]:
        """Reserve, await ``work(requested_count)``, then charge for its successes.

        *work* returns the number of successful attempts.  If it raises or
        is cancelled nothing is charged and the exception propagates.
        """
        ticket = await self.reserve(
            user_id, requested_count, reason=reason, request_id=request_id
        )
        successful = await work(requested_count)
        account = await self.finalize(ticket, successful, metadata)
        return successful, account
