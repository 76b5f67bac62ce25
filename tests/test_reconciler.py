"""Tests for billing-event reconciliation into ledger grants."""

from __future__ import annotations

from unittest.mock import MagicMock

import pytest
from sqlalchemy import func, select

from postora.models import Purchase, Subscription
from postora.services.entitlement_reconciler import (
    BillingEvent,
    BillingEventKind,
    EntitlementReconciler,
    SubscriptionStatus,
)
from postora.services.ledger_store import TransactionType

USER = "user_billing_1"


def _invoice_paid(event_id="evt_inv_1", invoice_id="in_1", **overrides):
    values = dict(
        kind=BillingEventKind.INVOICE_PAID,
        event_id=event_id,
        idempotency_key=f"invoice:{invoice_id}",
        user_id=USER,
        plan_id="pro",
        subscription_id="sub_1",
        provider_status="active",
    )
    values.update(overrides)
    return BillingEvent(**values)


def _subscription_event(kind, event_id, **overrides):
    values = dict(
        kind=kind,
        event_id=event_id,
        idempotency_key=f"event:{event_id}",
        subscription_id="sub_1",
        provider_status="active",
        cancel_at_period_end=False,
    )
    values.update(overrides)
    return BillingEvent(**values)


async def _load_subscription(session_factory, subscription_id="sub_1"):
    async with session_factory() as session:
        return await session.get(Subscription, subscription_id)


# ---------------------------------------------------------------------------
# Subscription grants
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_invoice_paid_grants_plan_credits_once(credits, reconciler):
    await credits.ensure_account(USER, 5)

    outcome = await reconciler.handle(_invoice_paid())

    assert outcome.action == "credits_granted"
    assert outcome.credits_granted == 200
    balance = await credits.get_balance(USER)
    assert (balance.available_credits, balance.total_credits_received, balance.credits_used) == (
        205,
        205,
        0,
    )
    latest = (await credits.get_history(USER, limit=1))[0]
    assert latest.amount == 200
    assert latest.transaction_type is TransactionType.SUBSCRIPTION_RENEWAL

    # Redelivery of the same invoice under a new event id
    replay = await reconciler.handle(_invoice_paid(event_id="evt_inv_1_retry"))

    assert replay.duplicate is True
    assert replay.action == "duplicate_ignored"
    assert (await credits.get_balance(USER)).available_credits == 205
    assert len(await credits.get_history(USER)) == 2


@pytest.mark.asyncio
async def test_checkout_and_first_invoice_grant_once(credits, reconciler):
    checkout = BillingEvent(
        kind=BillingEventKind.CHECKOUT_COMPLETED,
        event_id="evt_cs_1",
        idempotency_key="invoice:in_1",
        user_id=USER,
        plan_id="starter",
        mode="subscription",
        subscription_id="sub_1",
        provider_status="active",
    )

    first = await reconciler.handle(checkout)
    second = await reconciler.handle(_invoice_paid(plan_id="starter"))

    assert first.credits_granted == 50
    assert second.duplicate is True
    assert (await credits.get_balance(USER)).available_credits == 50

    subscription = await reconciler.get_subscription(USER)
    assert subscription.plan_id == "starter"
    assert subscription.status is SubscriptionStatus.ACTIVE


@pytest.mark.asyncio
async def test_renewal_resolves_user_from_subscription_record(credits, reconciler):
    await reconciler.handle(_invoice_paid())

    renewal = _invoice_paid(
        event_id="evt_inv_2", invoice_id="in_2", user_id=None, plan_id=None
    )
    outcome = await reconciler.handle(renewal)

    assert outcome.action == "credits_granted"
    assert outcome.user_id == USER
    assert (await credits.get_balance(USER)).available_credits == 400


@pytest.mark.asyncio
async def test_unresolvable_event_is_ignored(credits, reconciler):
    outcome = await reconciler.handle(
        _invoice_paid(user_id=None, plan_id=None, subscription_id="sub_unknown")
    )

    assert outcome.action == "ignored_unresolved"
    assert (await credits.get_balance(USER)).available_credits == 0


@pytest.mark.asyncio
async def test_unknown_plan_grants_nothing(credits, reconciler):
    outcome = await reconciler.handle(_invoice_paid(plan_id="enterprise"))

    assert outcome.action == "ignored_unknown_plan"
    assert outcome.credits_granted == 0
    assert (await credits.get_balance(USER)).total_credits_received == 0


@pytest.mark.asyncio
async def test_plan_table_override(credits, session_factory):
    reconciler = EntitlementReconciler(credits, session_factory, plan_credits={"pro": 7})

    outcome = await reconciler.handle(_invoice_paid())

    assert outcome.credits_granted == 7
    assert reconciler.credits_for_plan("starter") is None


# ---------------------------------------------------------------------------
# One-time purchases
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_one_time_purchase_and_payment_intent_grant_once(
    credits, reconciler, session_factory
):
    checkout = BillingEvent(
        kind=BillingEventKind.CHECKOUT_COMPLETED,
        event_id="evt_cs_2",
        idempotency_key="payment_intent:pi_1",
        user_id=USER,
        plan_id="pay-as-you-go",
        mode="payment",
        payment_intent_id="pi_1",
        amount_cents=999,
        currency="usd",
    )
    intent = BillingEvent(
        kind=BillingEventKind.PAYMENT_SUCCEEDED,
        event_id="evt_pi_1",
        idempotency_key="payment_intent:pi_1",
        user_id=USER,
        plan_id="pay-as-you-go",
        mode="payment",
        payment_intent_id="pi_1",
    )

    first = await reconciler.handle(checkout)
    second = await reconciler.handle(intent)

    assert first.credits_granted == 15
    assert second.duplicate is True
    assert (await credits.get_balance(USER)).available_credits == 15
    assert (await credits.get_history(USER, limit=1))[0].transaction_type is (
        TransactionType.PURCHASE
    )

    async with session_factory() as session:
        purchases = (await session.execute(select(Purchase))).scalars().all()
    assert len(purchases) == 1
    assert purchases[0].credits == 15
    assert purchases[0].amount_cents == 999


@pytest.mark.asyncio
async def test_purchase_recorded_even_when_grant_was_duplicate(
    credits, reconciler, session_factory
):
    # The grant landed but the purchase row was never written
    await credits.grant(
        USER, 15, TransactionType.PURCHASE, idempotency_key="payment_intent:pi_9"
    )

    outcome = await reconciler.handle(
        BillingEvent(
            kind=BillingEventKind.PAYMENT_SUCCEEDED,
            event_id="evt_pi_9",
            idempotency_key="payment_intent:pi_9",
            user_id=USER,
            plan_id="pay-as-you-go",
            mode="payment",
            payment_intent_id="pi_9",
        )
    )

    assert outcome.duplicate is True
    async with session_factory() as session:
        count = await session.scalar(select(func.count()).select_from(Purchase))
    assert count == 1


# ---------------------------------------------------------------------------
# Subscription state machine
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_cancel_at_period_end_marks_pending(reconciler):
    await reconciler.handle(_invoice_paid())

    outcome = await reconciler.handle(
        _subscription_event(
            BillingEventKind.SUBSCRIPTION_UPDATED,
            "evt_upd_1",
            cancel_at_period_end=True,
        )
    )

    assert outcome.action == "subscription_cancel_pending"
    assert outcome.credits_granted == 0
    subscription = await reconciler.get_subscription(USER)
    assert subscription.status is SubscriptionStatus.CANCEL_PENDING
    assert subscription.cancel_at_period_end is True

    # Undoing the cancellation reactivates it
    outcome = await reconciler.handle(
        _subscription_event(BillingEventKind.SUBSCRIPTION_UPDATED, "evt_upd_2")
    )
    assert outcome.action == "subscription_active"


@pytest.mark.asyncio
async def test_deleted_subscription_stays_canceled(reconciler, session_factory):
    await reconciler.handle(_invoice_paid())

    outcome = await reconciler.handle(
        _subscription_event(BillingEventKind.SUBSCRIPTION_DELETED, "evt_del_1")
    )
    assert outcome.action == "subscription_canceled"
    assert await reconciler.get_subscription(USER) is None

    # A late "updated" delivered after the deletion
    await reconciler.handle(
        _subscription_event(BillingEventKind.SUBSCRIPTION_UPDATED, "evt_upd_late")
    )

    record = await _load_subscription(session_factory)
    assert record.status == SubscriptionStatus.CANCELED.value
    assert record.canceled_at is not None


@pytest.mark.asyncio
async def test_subscription_change_without_known_owner_is_ignored(reconciler):
    outcome = await reconciler.handle(
        _subscription_event(BillingEventKind.SUBSCRIPTION_UPDATED, "evt_upd_x")
    )

    assert outcome.action == "ignored_unresolved"


@pytest.mark.asyncio
async def test_every_event_is_audited(credits, session_factory):
    audit = MagicMock()
    reconciler = EntitlementReconciler(credits, session_factory, audit=audit)

    await reconciler.handle(_invoice_paid())
    await reconciler.handle(_invoice_paid(event_id="evt_inv_1_retry"))

    calls = audit.log_billing_event.call_args_list
    assert [c.kwargs["action"] for c in calls] == ["credits_granted", "duplicate_ignored"]
    assert calls[0].kwargs["credits_granted"] == 200
    assert calls[1].kwargs["duplicate"] is True
