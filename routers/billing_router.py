"""
Billing Router - Stripe checkout, billing portal, access state and webhook
Webhook is defined FIRST to avoid middleware conflicts
"""

import logging

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession

from auth import get_access_decision, get_current_user
from context import AppContext, get_context
from database import get_db
from database_models import User
from models.entitlement import AccessDecision
from services.billing_service import BillingService, handle_billing_event
from utils.responses import access_payload, error_response, success_response

logger = logging.getLogger(__name__)

# Create billing router
billing_router = APIRouter(prefix="/api/billing", tags=["billing"])

WEBHOOK_PATH = "/api/billing/webhook"


# WEBHOOK ENDPOINT - MUST BE DEFINED FIRST TO AVOID MIDDLEWARE CONFLICTS
@billing_router.post("/webhook")
async def stripe_webhook(
    request: Request,
    context: AppContext = Depends(get_context),
):
    """
    Handle Stripe webhook events with signature verification.

    Responds 400 for requests that must not be retried (bad signature or
    malformed event), 503 when the event was left unprocessed so Stripe
    redelivers it, and 200 once it is applied or deliberately ignored.
    """
    # Raw body is required for signature verification
    payload = await request.body()
    stripe_signature = request.headers.get("stripe-signature")

    result = await handle_billing_event(context, payload, stripe_signature)
    return JSONResponse(
        status_code=result.status_code,
        content={
            "ok": result.ok,
            "received": not result.rejected,
            "event_type": result.event_type,
            "message": result.message,
        },
    )


@billing_router.get("/access")
async def get_access(decision: AccessDecision = Depends(get_access_decision)):
    """Current entitlement of the caller: entitled, status, days_remaining, reason"""
    return success_response(access_payload(decision))


@billing_router.post("/create-checkout-session")
async def create_checkout_session(
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    context: AppContext = Depends(get_context),
):
    """
    Create a Stripe Checkout session for the current user.

    Returns:
        JSON response with checkout session URL
    """
    result = await BillingService(db, context).create_checkout_session(user)
    if result.get("is_error"):
        return error_response("checkout_unavailable", status=503, message=result.get("error", "Unknown error"))
    return success_response({"url": result["data"]})


@billing_router.post("/portal")
async def create_billing_portal_session(
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    context: AppContext = Depends(get_context),
):
    """
    Create a Stripe Billing Portal session so the user can manage or cancel.

    Returns:
        JSON response with portal session URL
    """
    result = await BillingService(db, context).create_billing_portal_session(user)
    if result.get("is_error"):
        return error_response("portal_unavailable", status=400, message=result.get("error", "Unknown error"))
    return success_response({"url": result["data"]})
