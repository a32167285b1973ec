"""
Billing Service - Stripe checkout, billing portal and webhook handling
"""

import logging
from dataclasses import dataclass
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from crud.entitlement import EntitlementRepository
from database_models import User
from services.errors import (
    InvalidSignature,
    NotFound,
    StorageConflict,
    UpstreamUnavailable,
)
from services.stripe_gateway import event_from_payload

logger = logging.getLogger(__name__)


@dataclass
class WebhookResult:
    """Outcome of handle_billing_event, mapped 1:1 onto the HTTP response."""
    status_code: int
    ok: bool
    message: str
    event_type: Optional[str] = None
    event_id: Optional[str] = None

    @property
    def rejected(self) -> bool:
        return 400 <= self.status_code < 500


class BillingService:
    """
    Service class for handling billing-related business logic.
    """

    def __init__(self, db: AsyncSession, context):
        """
        Args:
            db: AsyncSession for read-only lookups in the request transaction
            context: AppContext owning the Stripe gateway and reconciler
        """
        self.db = db
        self.context = context
        self.gateway = context.gateway
        self.reconciler = context.reconciler

    async def ensure_customer(self, user: User) -> str:
        """
        Return the user's Stripe customer id, creating and linking one if needed.

        Linking is first-write-wins: if a concurrent request linked another
        customer first, that one is returned.
        """
        record = await EntitlementRepository(self.db).get_by_user_id(user.id)
        if record is None:
            raise NotFound(f"No entitlement record for user {user.id}")
        if record.billing_customer_ref:
            return record.billing_customer_ref

        customer_ref = await self.gateway.create_customer(user.email, user.id)
        effective = await self.reconciler.link_customer(user.id, customer_ref)
        if effective is None:
            raise NotFound(f"No entitlement record for user {user.id}")
        return effective

    async def create_checkout_session(self, user: User):
        """
        Create a Stripe Checkout session for the monthly subscription.

        Returns:
            Normalized response: {"data": url, "is_error": False} or {"error": str(e), "is_error": True}
        """
        if not self.gateway.configured:
            logger.error("STRIPE_SECRET_KEY is not set. Cannot create checkout session.")
            return {"error": "STRIPE_SECRET_KEY is not set. Cannot create checkout session.", "is_error": True}

        frontend_url = self.context.settings.frontend_url or "http://localhost:5173"
        try:
            customer_ref = await self.ensure_customer(user)
            url = await self.gateway.create_checkout_session(
                customer_ref=customer_ref,
                user_id=user.id,
                success_url=f"{frontend_url}/billing/success?session_id={{CHECKOUT_SESSION_ID}}",
                cancel_url=f"{frontend_url}/billing/cancel",
            )
            return {"data": url, "is_error": False}
        except (UpstreamUnavailable, NotFound, StorageConflict) as e:
            logger.error(f"Failed to create checkout session for user {user.id}: {e}", exc_info=True)
            return {"error": str(e), "is_error": True}

    async def create_billing_portal_session(self, user: User):
        """
        Create a Stripe Billing Portal session for a linked user.

        Returns:
            Normalized response: {"data": url, "is_error": False} or {"error": str(e), "is_error": True}
        """
        record = await EntitlementRepository(self.db).get_by_user_id(user.id)
        if record is None or not record.billing_customer_ref:
            return {"error": "No billing account yet. Start a subscription first.", "is_error": True}

        frontend_url = self.context.settings.frontend_url or "http://localhost:5173"
        try:
            url = await self.gateway.create_portal_session(record.billing_customer_ref, f"{frontend_url}/settings")
            return {"data": url, "is_error": False}
        except (UpstreamUnavailable, NotFound) as e:
            logger.error(f"Failed to create billing portal session for user {user.id}: {e}", exc_info=True)
            return {"error": str(e), "is_error": True}


async def handle_billing_event(context, payload: bytes, signature: Optional[str]) -> WebhookResult:
    """
    Verify and apply one Stripe webhook delivery.

    400 for anything Stripe should not retry (bad signature, malformed event),
    503 when the event was left unprocessed and must be redelivered, 200 once
    it has been applied or deliberately ignored.
    """
    try:
        event = context.gateway.construct_event(payload, signature)
    except InvalidSignature as e:
        logger.error(f"Rejected Stripe webhook: {e}")
        return WebhookResult(status_code=400, ok=False, message=str(e))

    event_type = event.get("type")
    event_id = event.get("id")
    try:
        billing_event = event_from_payload(event)
    except ValueError as e:
        logger.error(f"Malformed Stripe event {event_id} ({event_type}): {e}")
        return WebhookResult(400, False, f"Malformed event: {e}", event_type, event_id)

    if billing_event is None:
        logger.info(f"Ignoring Stripe event {event_id} of type {event_type}")
        return WebhookResult(200, True, "Event type not handled", event_type, event_id)

    try:
        outcome = await context.reconciler.apply(billing_event)
    except UpstreamUnavailable as e:
        logger.error(f"Stripe event {event_id} ({event_type}) left unprocessed, Stripe unavailable: {e}")
        return WebhookResult(503, False, "Billing provider unavailable, retry later", event_type, event_id)
    except StorageConflict as e:
        logger.error(f"Stripe event {event_id} ({event_type}) left unprocessed, storage conflict: {e}")
        return WebhookResult(503, False, "Storage busy, retry later", event_type, event_id)

    logger.info(f"Stripe event {event_id} ({event_type}): {outcome.result.value} - {outcome.message}")
    return WebhookResult(200, True, outcome.message, event_type, event_id)
