"""
Billing API routes.

- POST /api/create-account: reconcile a paid checkout session into a member account
- POST /api/stripe/checkout: create a subscription checkout session
- POST /api/webhooks/stripe: handle Stripe webhooks
- GET  /api/user/payments: purchase history (backfilled from Stripe charges)
"""
from typing import Any, Dict, Optional

from fastapi import APIRouter, Body, Depends, Query, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field

from tilespace.core.errors import AppError
from tilespace.core.identity import Identity, MemberIdentity, current_identity, require_member
from tilespace.core.logging import log_event
from tilespace.features.billing.service import (
    backfill_purchases,
    process_webhook_event,
    reconcile,
    start_checkout,
)
from tilespace.models.purchase import Purchase


router = APIRouter(tags=["billing"])


class CreateAccountRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    session_id: Optional[str] = Field(default=None, alias="sessionId")


class CheckoutRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    success_url: Optional[str] = Field(default=None, alias="successUrl")
    cancel_url: Optional[str] = Field(default=None, alias="cancelUrl")


def _purchase_dict(purchase: Purchase) -> Dict[str, Any]:
    return {
        "sessionId": purchase.stripe_session_id,
        "customerId": purchase.stripe_customer_id,
        "subscriptionId": purchase.subscription_id,
        "amount": purchase.amount,
        "currency": purchase.currency,
        "plan": purchase.plan,
        "status": purchase.status,
        "createdAt": purchase.created_at.isoformat() if purchase.created_at else None,
    }


@router.post("/api/create-account")
def create_account(
    body: Optional[CreateAccountRequest] = Body(default=None),
    session_id: Optional[str] = Query(default=None),
    session_id_camel: Optional[str] = Query(default=None, alias="sessionId"),
    identity: Identity = Depends(current_identity),
):
    """
    Confirm a checkout session and upgrade the payer to a member.

    Errors:
        400: missing session id or no user on the session
        402: session not paid
        404: session not found
        500: Stripe error (generic message)
    """
    resolved_session_id = (body.session_id if body else None) or session_id or session_id_camel
    member_id = identity.member_id if isinstance(identity, MemberIdentity) else None

    result = reconcile(resolved_session_id, authenticated_member_id=member_id)
    return JSONResponse(
        content={
            "success": True,
            "plan": result.plan,
            "limits": result.limits,
            "redirect": "/admin",
        },
        headers={"Cache-Control": "no-store"},
    )


@router.post("/api/stripe/checkout")
def create_checkout(
    body: Optional[CheckoutRequest] = Body(default=None),
    identity: Identity = Depends(current_identity),
):
    """
    Create Stripe checkout session for the caller (member or guest).

    Returns:
        {"url": "https://checkout.stripe.com/...", "sessionId": "cs_..."}
    """
    link = start_checkout(
        identity,
        success_url=body.success_url if body else None,
        cancel_url=body.cancel_url if body else None,
    )
    return {"url": link.url, "sessionId": link.session_id}


@router.post("/api/webhooks/stripe")
async def stripe_webhook(request: Request):
    """
    Handle Stripe webhook events.

    Raw body is required for signature verification. Event deduplication uses
    the Stripe event id (billing_events table).

    Errors:
        400: missing or invalid signature
        500: processing failed (event stored with its error)
    """
    body = await request.body()
    headers = dict(request.headers)

    try:
        result = process_webhook_event(headers, body)
    except AppError:
        raise
    except Exception as e:
        log_event("error", "billing.webhook_error", error_code="webhook_failed", extra={"error": str(e)})
        raise AppError("Webhook processing failed", code="webhook_failed", status_code=500) from e

    return {"received": True, "eventId": result.event_id}


@router.get("/api/user/payments")
def user_payments(member: MemberIdentity = Depends(require_member)):
    purchases = backfill_purchases(member.member_id, email=member.email)
    return {"purchases": [_purchase_dict(p) for p in purchases]}
