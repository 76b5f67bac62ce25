"""Subscription checkout, status and cancellation endpoints."""

from __future__ import annotations

from typing import Any, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field

from postora.api.dependencies import get_reconciler, get_token_claims
from postora.services.entitlement_reconciler import (
    EntitlementReconciler,
    SubscriptionResponse,
)
from postora.services.payment_service import (
    NoActiveSubscription,
    cancel_subscription_at_period_end,
    create_checkout_session,
)

router = APIRouter(prefix="/api/v1/subscriptions", tags=["subscriptions"])


class CheckoutRequest(BaseModel):
    plan_id: str = Field(..., min_length=1, max_length=50)
    price_id: str = Field(..., min_length=1, max_length=255)
    success_url: str = Field(..., min_length=1, max_length=2000)
    cancel_url: str = Field(..., min_length=1, max_length=2000)


class CheckoutResponse(BaseModel):
    session_id: str
    checkout_url: Optional[str] = None


class CurrentSubscriptionResponse(BaseModel):
    subscription: Optional[SubscriptionResponse] = None


@router.post("/checkout", response_model=CheckoutResponse)
async def start_checkout(
    body: CheckoutRequest,
    claims: dict[str, Any] = Depends(get_token_claims),
):
    """Create a Stripe Checkout Session for a plan or credit pack."""
    try:
        session = await create_checkout_session(
            user_id=claims["sub"],
            plan_id=body.plan_id,
            price_id=body.price_id,
            success_url=body.success_url,
            cancel_url=body.cancel_url,
            customer_email=claims.get("email"),
        )
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    return CheckoutResponse(session_id=session.id, checkout_url=session.url)


@router.get("/current", response_model=CurrentSubscriptionResponse)
async def read_current_subscription(
    claims: dict[str, Any] = Depends(get_token_claims),
    reconciler: EntitlementReconciler = Depends(get_reconciler),
):
    """Return the user's live subscription, or null."""
    subscription = await reconciler.get_subscription(claims["sub"])
    return CurrentSubscriptionResponse(subscription=subscription)


@router.post("/cancel", response_model=SubscriptionResponse)
async def cancel_subscription(
    claims: dict[str, Any] = Depends(get_token_claims),
    reconciler: EntitlementReconciler = Depends(get_reconciler),
):
    """Cancel the user's subscription at the end of the current period."""
    try:
        return await cancel_subscription_at_period_end(reconciler, claims["sub"])
    except NoActiveSubscription:
        raise HTTPException(status_code=404, detail="No active subscription found")
