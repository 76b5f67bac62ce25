"""Entitlement reconciler -- billing events in, ledger grants out.

Subscription state machine (per Stripe subscription):

    NONE -> ACTIVE -> (CANCEL_PENDING) -> CANCELED

ACTIVE is re-entered on every paid renewal invoice; CANCELED is terminal.

Each credit-bearing event is granted under an idempotency key that is
claimed in the same database transaction as the grant, so redelivered
webhooks, or the checkout and first-invoice notifications for one payment,
never grant twice.  Subscription and purchase records are refreshed even
when the grant is skipped as a duplicate.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional

import structlog
from pydantic import BaseModel
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from postora.config import settings
from postora.models import Purchase, Subscription
from postora.services.audit_logger import AuditLogger
from postora.services.credit_service import CreditService
from postora.services.ledger_store import DuplicateIdempotencyKey, TransactionType

log = structlog.get_logger()


# ---------------------------------------------------------------------------
# Data containers
# ---------------------------------------------------------------------------

class BillingEventKind(str, enum.Enum):
    CHECKOUT_COMPLETED = "checkout_completed"
    PAYMENT_SUCCEEDED = "payment_succeeded"
    INVOICE_PAID = "invoice_paid"
    SUBSCRIPTION_UPDATED = "subscription_updated"
    SUBSCRIPTION_DELETED = "subscription_deleted"


class SubscriptionStatus(str, enum.Enum):
    ACTIVE = "active"
    CANCEL_PENDING = "cancel_pending"
    CANCELED = "canceled"


@dataclass(frozen=True)
class BillingEvent:
    """Provider-neutral view of one billing notification."""

    kind: BillingEventKind
    event_id: str
    idempotency_key: str
    user_id: Optional[str] = None
    plan_id: Optional[str] = None
    mode: str = "subscription"
    subscription_id: Optional[str] = None
    payment_intent_id: Optional[str] = None
    provider_status: Optional[str] = None
    current_period_start: Optional[datetime] = None
    current_period_end: Optional[datetime] = None
    cancel_at_period_end: Optional[bool] = None
    cancel_at: Optional[datetime] = None
    canceled_at: Optional[datetime] = None
    amount_cents: Optional[int] = None
    currency: Optional[str] = None


@dataclass(frozen=True)
class ReconcileOutcome:
    event_id: str
    action: str
    user_id: Optional[str] = None
    credits_granted: int = 0
    duplicate: bool = False
    details: dict[str, Any] = field(default_factory=dict)


class SubscriptionResponse(BaseModel):
    stripe_subscription_id: str
    user_id: str
    plan_id: str
    status: SubscriptionStatus
    provider_status: Optional[str] = None
    current_period_start: Optional[datetime] = None
    current_period_end: Optional[datetime] = None
    cancel_at_period_end: bool = False
    cancel_at: Optional[datetime] = None
    canceled_at: Optional[datetime] = None

    model_config = {"from_attributes": True}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _status_for(
    provider_status: Optional[str],
    cancel_at_period_end: bool,
    previous: Optional[str] = None,
) -> SubscriptionStatus:
    """Map provider state onto the local state machine."""
    if previous == SubscriptionStatus.CANCELED.value:
        return SubscriptionStatus.CANCELED
    if provider_status in ("canceled", "incomplete_expired"):
        return SubscriptionStatus.CANCELED
    if cancel_at_period_end:
        return SubscriptionStatus.CANCEL_PENDING
    return SubscriptionStatus.ACTIVE


# ---------------------------------------------------------------------------
# Billing record persistence
# ---------------------------------------------------------------------------

class BillingRepository:
    """Encapsulates database operations for subscription and purchase records."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def get_subscription(self, subscription_id: str) -> Subscription | None:
        async with self._session_factory() as session:
            return await session.get(Subscription, subscription_id)

    async def latest_subscription_for_user(self, user_id: str) -> Subscription | None:
        """Return the newest subscription that has not been canceled."""
        async with self._session_factory() as session:
            result = await session.execute(
                select(Subscription)
                .where(
                    Subscription.user_id == user_id,
                    Subscription.status != SubscriptionStatus.CANCELED.value,
                )
                .order_by(Subscription.created_at.desc())
                .limit(1)
            )
            return result.scalar_one_or_none()

    async def upsert_subscription(
        self,
        subscription_id: str,
        values: dict[str, Any],
    ) -> Subscription:
        """Create or update the mirror row for *subscription_id*.

        A concurrent first insert loses with IntegrityError; the second pass
        then takes the update branch.
        """
        for attempt in range(2):
            now = _utcnow()
            try:
                async with self._session_factory() as session:
                    async with session.begin():
                        record = await session.get(
                            Subscription, subscription_id, with_for_update=True
                        )
                        if record is None:
                            record = Subscription(
                                stripe_subscription_id=subscription_id,
                                created_at=now,
                                **values,
                            )
                            session.add(record)
                        else:
                            for key, value in values.items():
                                setattr(record, key, value)
                        record.updated_at = now
                return record
            except IntegrityError:
                if attempt:
                    raise
        raise AssertionError("unreachable")

    async def record_purchase(
        self,
        user_id: str,
        plan_id: str,
        credits: int,
        payment_intent_id: str,
        amount_cents: int | None,
        currency: str | None,
    ) -> bool:
        """Insert a purchase row unless one exists for *payment_intent_id*."""
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    existing = await session.scalar(
                        select(Purchase.purchase_id).where(
                            Purchase.stripe_payment_intent_id == payment_intent_id
                        )
                    )
                    if existing is not None:
                        return False
                    session.add(
                        Purchase(
                            user_id=user_id,
                            plan_id=plan_id,
                            credits=credits,
                            stripe_payment_intent_id=payment_intent_id,
                            amount_cents=amount_cents,
                            currency=currency,
                            created_at=_utcnow(),
                        )
                    )
        except IntegrityError:
            return False
        return True


# ---------------------------------------------------------------------------
# Reconciler
# ---------------------------------------------------------------------------

class EntitlementReconciler:
    """Applies billing events to the ledger exactly once per idempotency key."""

    def __init__(
        self,
        credits: CreditService,
        session_factory: async_sessionmaker[AsyncSession],
        plan_credits: dict[str, int] | None = None,
        audit: AuditLogger | None = None,
    ) -> None:
        self._credits = credits
        self._billing = BillingRepository(session_factory)
        self._plan_credits = dict(plan_credits or settings.PLAN_CREDITS)
        self._audit = audit or AuditLogger()

    def credits_for_plan(self, plan_id: str | None) -> int | None:
        """Return the credits granted per purchase/cycle of *plan_id*."""
        if plan_id is None:
            return None
        return self._plan_credits.get(plan_id)

    async def get_subscription(self, user_id: str) -> SubscriptionResponse | None:
        record = await self._billing.latest_subscription_for_user(user_id)
        if record is None:
            return None
        return SubscriptionResponse.model_validate(record)

    async def handle(self, event: BillingEvent) -> ReconcileOutcome:
        """Apply one billing event and return what was done."""
        handlers = {
            BillingEventKind.CHECKOUT_COMPLETED: self._on_checkout_completed,
            BillingEventKind.PAYMENT_SUCCEEDED: self._on_one_time_payment,
            BillingEventKind.INVOICE_PAID: self._on_subscription_payment,
            BillingEventKind.SUBSCRIPTION_UPDATED: self._on_subscription_changed,
            BillingEventKind.SUBSCRIPTION_DELETED: self._on_subscription_changed,
        }
        outcome = await handlers[event.kind](event)
        self._audit.log_billing_event(
            event_id=event.event_id,
            event_kind=event.kind.value,
            action=outcome.action,
            user_id=outcome.user_id,
            credits_granted=outcome.credits_granted,
            duplicate=outcome.duplicate,
        )
        return outcome

    # ------------------------------------------------------------------
    # Event handlers
    # ------------------------------------------------------------------

    async def _on_checkout_completed(self, event: BillingEvent) -> ReconcileOutcome:
        if event.mode == "subscription":
            return await self._on_subscription_payment(event)
        return await self._on_one_time_payment(event)

    async def _on_subscription_payment(self, event: BillingEvent) -> ReconcileOutcome:
        """First checkout or renewal invoice: refresh the record, then top up."""
        record = None
        if event.subscription_id:
            record = await self._billing.get_subscription(event.subscription_id)

        user_id = event.user_id or (record.user_id if record else None)
        plan_id = event.plan_id or (record.plan_id if record else None)
        if user_id is None or plan_id is None:
            log.warning(
                "billing_event_unresolved",
                event_id=event.event_id,
                kind=event.kind.value,
                subscription_id=event.subscription_id,
            )
            return ReconcileOutcome(event.event_id, "ignored_unresolved")

        if event.subscription_id:
            await self._save_subscription(event, record, user_id, plan_id)

        return await self._grant_once(
            event,
            user_id,
            plan_id,
            TransactionType.SUBSCRIPTION_RENEWAL,
            {
                "subscription_id": event.subscription_id,
                "plan_id": plan_id,
                "event_id": event.event_id,
            },
        )

    async def _on_one_time_payment(self, event: BillingEvent) -> ReconcileOutcome:
        if event.user_id is None or event.plan_id is None:
            log.warning(
                "billing_event_unresolved",
                event_id=event.event_id,
                kind=event.kind.value,
                payment_intent_id=event.payment_intent_id,
            )
            return ReconcileOutcome(event.event_id, "ignored_unresolved")

        outcome = await self._grant_once(
            event,
            event.user_id,
            event.plan_id,
            TransactionType.PURCHASE,
            {
                "plan_id": event.plan_id,
                "payment_intent_id": event.payment_intent_id,
                "event_id": event.event_id,
            },
        )

        credits = self.credits_for_plan(event.plan_id)
        if credits is not None and event.payment_intent_id:
            await self._billing.record_purchase(
                user_id=event.user_id,
                plan_id=event.plan_id,
                credits=credits,
                payment_intent_id=event.payment_intent_id,
                amount_cents=event.amount_cents,
                currency=event.currency,
            )
        return outcome

    async def _on_subscription_changed(self, event: BillingEvent) -> ReconcileOutcome:
        """Updated/deleted notifications touch the mirror row only."""
        if not event.subscription_id:
            return ReconcileOutcome(event.event_id, "ignored_unresolved")

        record = await self._billing.get_subscription(event.subscription_id)
        user_id = event.user_id or (record.user_id if record else None)
        plan_id = event.plan_id or (record.plan_id if record else None)
        if user_id is None or plan_id is None:
            log.warning(
                "subscription_change_unresolved",
                event_id=event.event_id,
                subscription_id=event.subscription_id,
            )
            return ReconcileOutcome(event.event_id, "ignored_unresolved")

        saved = await self._save_subscription(event, record, user_id, plan_id)
        return ReconcileOutcome(
            event.event_id,
            f"subscription_{saved.status}",
            user_id=user_id,
        )

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _save_subscription(
        self,
        event: BillingEvent,
        record: Subscription | None,
        user_id: str,
        plan_id: str,
    ) -> Subscription:
        provider_status = event.provider_status
        if event.kind is BillingEventKind.SUBSCRIPTION_DELETED:
            provider_status = "canceled"

        cancel_flag = event.cancel_at_period_end
        if cancel_flag is None:
            cancel_flag = record.cancel_at_period_end if record else False

        status = _status_for(
            provider_status,
            cancel_flag,
            previous=record.status if record else None,
        )

        values: dict[str, Any] = {
            "user_id": user_id,
            "plan_id": plan_id,
            "status": status.value,
            "cancel_at_period_end": cancel_flag,
        }
        optional = {
            "provider_status": provider_status,
            "current_period_start": event.current_period_start,
            "current_period_end": event.current_period_end,
            "cancel_at": event.cancel_at,
            "canceled_at": event.canceled_at,
        }
        values.update({k: v for k, v in optional.items() if v is not None})
        if status is SubscriptionStatus.CANCELED and "canceled_at" not in values:
            if record is None or record.canceled_at is None:
                values["canceled_at"] = _utcnow()

        saved = await self._billing.upsert_subscription(event.subscription_id, values)
        log.info(
            "subscription_record_saved",
            subscription_id=event.subscription_id,
            user_id=user_id,
            plan_id=plan_id,
            status=saved.status,
        )
        return saved

    async def _grant_once(
        self,
        event: BillingEvent,
        user_id: str,
        plan_id: str,
        reason: TransactionType,
        metadata: dict[str, Any],
    ) -> ReconcileOutcome:
        credits = self.credits_for_plan(plan_id)
        if credits is None:
            log.warning(
                "unknown_plan_no_credit_action",
                event_id=event.event_id,
                plan_id=plan_id,
                user_id=user_id,
            )
            return ReconcileOutcome(event.event_id, "ignored_unknown_plan", user_id=user_id)

        key = event.idempotency_key
        duplicate = ReconcileOutcome(
            event.event_id, "duplicate_ignored", user_id=user_id, duplicate=True
        )
        if await self._credits.store.has_applied_idempotency_key(key):
            log.info("duplicate_billing_event_ignored", event_id=event.event_id, key=key)
            return duplicate

        try:
            account = await self._credits.grant(
                user_id, credits, reason, metadata, idempotency_key=key
            )
        except DuplicateIdempotencyKey:
            log.info("duplicate_billing_event_ignored", event_id=event.event_id, key=key)
            return duplicate

        log.info(
            "billing_credits_granted",
            event_id=event.event_id,
            user_id=user_id,
            plan_id=plan_id,
            credits=credits,
            balance=account.available_credits,
        )
        return ReconcileOutcome(
            event.event_id,
            "credits_granted",
            user_id=user_id,
            credits_granted=credits,
            details={"available_credits": account.available_credits},
        )
