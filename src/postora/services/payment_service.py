"""Stripe payment integration -- checkout sessions and webhook translation."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

import stripe
import structlog

from postora.config import settings
from postora.services.entitlement_reconciler import (
    BillingEvent,
    BillingEventKind,
    EntitlementReconciler,
    ReconcileOutcome,
    SubscriptionResponse,
)

stripe.api_key = settings.STRIPE_SECRET_KEY

log = structlog.get_logger()


class WebhookVerificationError(Exception):
    """Raised when a webhook payload or its signature is invalid."""


class NoActiveSubscription(Exception):
    """Raised when a user has no subscription to act on."""


# ---------------------------------------------------------------------------
# Checkout session creation
# ---------------------------------------------------------------------------

def is_one_time_plan(plan_id: str) -> bool:
    return plan_id in settings.ONE_TIME_PLANS


async def create_checkout_session(
    user_id: str,
    plan_id: str,
    price_id: str,
    success_url: str,
    cancel_url: str,
    customer_email: str | None = None,
) -> Any:
    """Create a Stripe Checkout Session for *plan_id*.

    The user and plan ids are attached to the session and propagated to the
    resulting payment intent or subscription, so every later webhook can be
    attributed without a lookup.
    """
    if plan_id not in settings.PLAN_CREDITS:
        raise ValueError(f"Unknown plan: {plan_id}")

    metadata = {"user_id": user_id, "plan_id": plan_id}
    params: dict[str, Any] = {
        "line_items": [{"price": price_id, "quantity": 1}],
        "mode": "payment" if is_one_time_plan(plan_id) else "subscription",
        "client_reference_id": user_id,
        "metadata": metadata,
        "success_url": success_url,
        "cancel_url": cancel_url,
    }
    if customer_email:
        params["customer_email"] = customer_email
    if params["mode"] == "payment":
        params["payment_intent_data"] = {"metadata": metadata}
    else:
        params["subscription_data"] = {"metadata": metadata}

    session = stripe.checkout.Session.create(**params)
    log.info(
        "checkout_session_created",
        user_id=user_id,
        plan_id=plan_id,
        mode=params["mode"],
        session_id=session.id,
    )
    return session


async def cancel_subscription_at_period_end(
    reconciler: EntitlementReconciler,
    user_id: str,
) -> SubscriptionResponse:
    """Ask Stripe to cancel the user's subscription at period end and mirror it."""
    current = await reconciler.get_subscription(user_id)
    if current is None:
        raise NoActiveSubscription(f"No active subscription for user {user_id}")

    stripe_sub = stripe.Subscription.modify(
        current.stripe_subscription_id,
        cancel_at_period_end=True,
    )
    event = billing_event_from_subscription(
        stripe_sub,
        BillingEventKind.SUBSCRIPTION_UPDATED,
        event_id=f"cancel_request:{current.stripe_subscription_id}",
    )
    await reconciler.handle(event)

    updated = await reconciler.get_subscription(user_id)
    return updated or current


# ---------------------------------------------------------------------------
# Stripe object -> BillingEvent translation
# ---------------------------------------------------------------------------

def _dig(obj: Any, *path: str) -> Any:
    """Follow *path* through nested Stripe objects, returning None on a gap."""
    for key in path:
        if obj is None:
            return None
        try:
            obj = obj[key]
        except (KeyError, TypeError, IndexError):
            return None
    return obj


def _ts(value: Any) -> datetime | None:
    if value is None:
        return None
    return datetime.fromtimestamp(int(value), tz=timezone.utc)


def _first(items: Any) -> Any:
    data = _dig(items, "data") or []
    return data[0] if data else None


def billing_event_from_subscription(
    sub: Any,
    kind: BillingEventKind,
    event_id: str,
) -> BillingEvent:
    """Build an updated/deleted event from a Stripe Subscription object."""
    metadata = _dig(sub, "metadata") or {}
    item = _first(_dig(sub, "items"))
    # Newer API versions moved the period bounds onto subscription items
    period_start = _dig(sub, "current_period_start") or _dig(item, "current_period_start")
    period_end = _dig(sub, "current_period_end") or _dig(item, "current_period_end")
    return BillingEvent(
        kind=kind,
        event_id=event_id,
        idempotency_key=f"event:{event_id}",
        user_id=_dig(metadata, "user_id"),
        plan_id=_dig(metadata, "plan_id"),
        subscription_id=sub["id"],
        provider_status=_dig(sub, "status"),
        current_period_start=_ts(period_start),
        current_period_end=_ts(period_end),
        cancel_at_period_end=bool(_dig(sub, "cancel_at_period_end")),
        cancel_at=_ts(_dig(sub, "cancel_at")),
        canceled_at=_ts(_dig(sub, "canceled_at")),
    )


def _from_checkout_session(event_id: str, session: Any) -> BillingEvent:
    metadata = _dig(session, "metadata") or {}
    mode = _dig(session, "mode") or "payment"
    if mode == "subscription":
        # Keyed on the first invoice so the matching invoice.paid is a duplicate
        invoice_id = _dig(session, "invoice")
        key = f"invoice:{invoice_id}" if invoice_id else f"checkout:{session['id']}"
        return BillingEvent(
            kind=BillingEventKind.CHECKOUT_COMPLETED,
            event_id=event_id,
            idempotency_key=key,
            user_id=_dig(metadata, "user_id"),
            plan_id=_dig(metadata, "plan_id"),
            mode="subscription",
            subscription_id=_dig(session, "subscription"),
            provider_status="active",
        )

    payment_intent_id = _dig(session, "payment_intent")
    key = (
        f"payment_intent:{payment_intent_id}"
        if payment_intent_id
        else f"checkout:{session['id']}"
    )
    return BillingEvent(
        kind=BillingEventKind.CHECKOUT_COMPLETED,
        event_id=event_id,
        idempotency_key=key,
        user_id=_dig(metadata, "user_id"),
        plan_id=_dig(metadata, "plan_id"),
        mode="payment",
        payment_intent_id=payment_intent_id,
        amount_cents=_dig(session, "amount_total"),
        currency=_dig(session, "currency"),
    )


def _from_payment_intent(event_id: str, intent: Any) -> BillingEvent | None:
    if _dig(intent, "invoice"):
        # Subscription charges are handled through invoice.paid
        return None
    metadata = _dig(intent, "metadata") or {}
    return BillingEvent(
        kind=BillingEventKind.PAYMENT_SUCCEEDED,
        event_id=event_id,
        idempotency_key=f"payment_intent:{intent['id']}",
        user_id=_dig(metadata, "user_id"),
        plan_id=_dig(metadata, "plan_id"),
        mode="payment",
        payment_intent_id=intent["id"],
        amount_cents=_dig(intent, "amount_received"),
        currency=_dig(intent, "currency"),
    )


def _from_invoice(event_id: str, invoice: Any) -> BillingEvent | None:
    details = _dig(invoice, "subscription_details") or _dig(
        invoice, "parent", "subscription_details"
    )
    subscription_id = _dig(invoice, "subscription") or _dig(details, "subscription")
    if not subscription_id:
        return None
    metadata = _dig(details, "metadata") or {}
    period = _dig(_first(_dig(invoice, "lines")), "period")
    return BillingEvent(
        kind=BillingEventKind.INVOICE_PAID,
        event_id=event_id,
        idempotency_key=f"invoice:{invoice['id']}",
        user_id=_dig(metadata, "user_id"),
        plan_id=_dig(metadata, "plan_id"),
        mode="subscription",
        subscription_id=subscription_id,
        provider_status="active",
        current_period_start=_ts(_dig(period, "start")),
        current_period_end=_ts(_dig(period, "end")),
        amount_cents=_dig(invoice, "amount_paid"),
        currency=_dig(invoice, "currency"),
    )


def billing_event_from_stripe(event: Any) -> BillingEvent | None:
    """Translate a verified Stripe event; None for types this service ignores."""
    event_id: str = event["id"]
    obj = event["data"]["object"]
    event_type = event["type"]

    if event_type == "checkout.session.completed":
        return _from_checkout_session(event_id, obj)
    if event_type == "payment_intent.succeeded":
        return _from_payment_intent(event_id, obj)
    if event_type == "invoice.paid":
        return _from_invoice(event_id, obj)
    if event_type == "customer.subscription.updated":
        return billing_event_from_subscription(
            obj, BillingEventKind.SUBSCRIPTION_UPDATED, event_id
        )
    if event_type == "customer.subscription.deleted":
        return billing_event_from_subscription(
            obj, BillingEventKind.SUBSCRIPTION_DELETED, event_id
        )
    return None


# ---------------------------------------------------------------------------
# Webhook entry-point
# ---------------------------------------------------------------------------

def _verify_stripe_event(payload: bytes, sig_header: str) -> Any:
    """Verify the Stripe webhook signature and return the parsed event."""
    if not sig_header or not settings.STRIPE_WEBHOOK_SECRET:
        raise WebhookVerificationError("Missing webhook signature or secret")
    try:
        return stripe.Webhook.construct_event(
            payload,
            sig_header,
            settings.STRIPE_WEBHOOK_SECRET,
        )
    except stripe.SignatureVerificationError as exc:
        raise WebhookVerificationError("Invalid signature") from exc
    except ValueError as exc:
        raise WebhookVerificationError("Invalid payload") from exc


async def handle_webhook(
    payload: bytes,
    sig_header: str,
    reconciler: EntitlementReconciler,
) -> ReconcileOutcome | None:
    """Verify a Stripe webhook and reconcile the event it carries.

    Idempotent -- the reconciler skips grants whose key was already applied.
    """
    event = _verify_stripe_event(payload, sig_header)
    billing_event = billing_event_from_stripe(event)
    if billing_event is None:
        log.info("stripe_event_ignored", event_id=event["id"], event_type=event["type"])
        return None
    return await reconciler.handle(billing_event)
