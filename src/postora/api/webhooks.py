"""Stripe webhook endpoint."""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request

from postora.api.dependencies import get_reconciler
from postora.services.entitlement_reconciler import EntitlementReconciler
from postora.services.payment_service import handle_webhook

router = APIRouter(prefix="/api/v1/webhooks", tags=["webhooks"])


@router.post("/stripe")
async def stripe_webhook(
    request: Request,
    reconciler: EntitlementReconciler = Depends(get_reconciler),
):
    """Receive and process Stripe webhook events.

    Reads the raw request body and the Stripe-Signature header,
    then delegates to the payment service for verification and handling.
    """
    payload = await request.body()
    sig_header = request.headers.get("stripe-signature", "")
    outcome = await handle_webhook(payload, sig_header, reconciler)
    return {
        "received": True,
        "action": outcome.action if outcome else "ignored",
        "duplicate": outcome.duplicate if outcome else False,
    }
