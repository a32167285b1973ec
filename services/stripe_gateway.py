"""
Stripe gateway - the only module that talks to the Stripe API.

Translates verified webhook payloads into billing event variants and
re-fetches authoritative subscription state. The API key travels with every
call instead of being set on the stripe module.
"""

import asyncio
import json
import logging
from datetime import datetime, timezone
from typing import Any, Optional

import stripe

from models.entitlement import (
    BillingEvent,
    BillingSubscription,
    CheckoutCompleted,
    PaymentFailed,
    PaymentSucceeded,
    SubscriptionCanceled,
    SubscriptionCreatedOrUpdated,
    SubscriptionStatus,
)
from services.errors import InvalidSignature, NotFound, UpstreamUnavailable

logger = logging.getLogger(__name__)

# Stripe subscription status -> local subscription status
STRIPE_STATUS_MAP = {
    "active": SubscriptionStatus.ACTIVE,
    "trialing": SubscriptionStatus.ACTIVE,
    "past_due": SubscriptionStatus.ACTIVE,
    "canceled": SubscriptionStatus.CANCELED,
    "unpaid": SubscriptionStatus.EXPIRED,
    "incomplete_expired": SubscriptionStatus.EXPIRED,
}

SUBSCRIPTION_UPSERT_EVENTS = ("customer.subscription.created", "customer.subscription.updated")
PAYMENT_SUCCEEDED_EVENTS = ("invoice.payment_succeeded", "invoice.paid")


def map_stripe_status(stripe_status: Optional[str]) -> SubscriptionStatus:
    return STRIPE_STATUS_MAP.get((stripe_status or "").lower(), SubscriptionStatus.INACTIVE)


def _field(obj: Any, key: str) -> Any:
    """Read a key from a dict or StripeObject, None when absent."""
    if obj is None:
        return None
    try:
        return obj[key]
    except (KeyError, TypeError, IndexError):
        return None


def _ref(value: Any) -> Optional[str]:
    """Stripe references arrive either as ids or as expanded objects."""
    if value is None:
        return None
    if isinstance(value, str):
        return value
    return _field(value, "id")


def _from_epoch(value: Any) -> Optional[datetime]:
    if value is None:
        return None
    return datetime.fromtimestamp(int(value), tz=timezone.utc)


def period_end_of(subscription: Any) -> Optional[datetime]:
    """
    Current period end of a subscription. Newer API versions report it per
    subscription item rather than on the subscription itself.
    """
    period_end = _field(subscription, "current_period_end")
    if period_end is None:
        items = _field(_field(subscription, "items"), "data") or []
        ends = [_field(item, "current_period_end") for item in items]
        ends = [end for end in ends if end is not None]
        period_end = max(ends) if ends else None
    return _from_epoch(period_end)


def subscription_from_stripe(subscription: Any) -> BillingSubscription:
    subscription_ref = _field(subscription, "id")
    customer_ref = _ref(_field(subscription, "customer"))
    if not subscription_ref or not customer_ref:
        raise ValueError("Subscription object is missing id or customer")
    return BillingSubscription(
        subscription_ref=subscription_ref,
        customer_ref=customer_ref,
        status=map_stripe_status(_field(subscription, "status")),
        period_end=period_end_of(subscription),
    )


def _invoice_subscription_ref(invoice: Any) -> Optional[str]:
    subscription_ref = _ref(_field(invoice, "subscription"))
    if subscription_ref is None:
        details = _field(_field(invoice, "parent"), "subscription_details")
        subscription_ref = _ref(_field(details, "subscription"))
    return subscription_ref


def event_from_payload(event: dict) -> Optional[BillingEvent]:
    """
    Convert a verified Stripe event into a billing event variant.

    Returns:
        The variant, or None for event types this service does not consume.

    Raises:
        ValueError: if a consumed event type lacks the fields it needs
    """
    event_type = _field(event, "type")
    data_object = _field(_field(event, "data"), "object")
    if data_object is None:
        raise ValueError(f"Event {event_type} has no data.object")

    if event_type in SUBSCRIPTION_UPSERT_EVENTS:
        subscription = subscription_from_stripe(data_object)
        return SubscriptionCreatedOrUpdated(
            customer_ref=subscription.customer_ref,
            subscription_ref=subscription.subscription_ref,
            status=subscription.status,
            period_end=subscription.period_end,
        )

    if event_type == "customer.subscription.deleted":
        customer_ref = _ref(_field(data_object, "customer"))
        if not customer_ref:
            raise ValueError("Subscription deletion is missing customer")
        return SubscriptionCanceled(customer_ref=customer_ref)

    if event_type in PAYMENT_SUCCEEDED_EVENTS:
        subscription_ref = _invoice_subscription_ref(data_object)
        if not subscription_ref:
            # One-off invoices carry no subscription and do not affect access
            logger.info(f"Ignoring {event_type} without a subscription")
            return None
        return PaymentSucceeded(subscription_ref=subscription_ref)

    if event_type == "invoice.payment_failed":
        customer_ref = _ref(_field(data_object, "customer"))
        if not customer_ref:
            raise ValueError("Failed invoice is missing customer")
        return PaymentFailed(customer_ref=customer_ref)

    if event_type == "checkout.session.completed":
        if _field(data_object, "mode") not in (None, "subscription"):
            return None
        customer_ref = _ref(_field(data_object, "customer"))
        client_reference_id = _field(data_object, "client_reference_id")
        if not customer_ref or not client_reference_id:
            logger.warning("checkout.session.completed without customer or client_reference_id, ignoring")
            return None
        try:
            user_id = int(client_reference_id)
        except (TypeError, ValueError):
            raise ValueError(f"Unexpected client_reference_id {client_reference_id!r}")
        return CheckoutCompleted(
            user_id=user_id,
            customer_ref=customer_ref,
            subscription_ref=_ref(_field(data_object, "subscription")),
        )

    return None


class StripeGateway:
    """
    Thin async wrapper over the blocking stripe SDK.
    """

    def __init__(
        self,
        api_key: Optional[str],
        webhook_secret: Optional[str],
        price_id: Optional[str] = None,
        timeout_seconds: float = 10.0,
    ):
        self.api_key = api_key
        self.webhook_secret = webhook_secret
        self.price_id = price_id
        self.timeout_seconds = timeout_seconds

    @property
    def configured(self) -> bool:
        return bool(self.api_key)

    def construct_event(self, payload: bytes, signature: Optional[str]) -> dict:
        """
        Verify the Stripe-Signature header and decode the payload.

        Raises:
            InvalidSignature: on a missing secret or header, a bad signature,
                or a payload that is not a JSON event
        """
        if not self.webhook_secret:
            raise InvalidSignature("STRIPE_WEBHOOK_SECRET is not set, cannot verify webhooks")
        if not signature:
            raise InvalidSignature("Missing Stripe-Signature header")

        if isinstance(payload, bytes):
            try:
                payload = payload.decode("utf-8")
            except UnicodeDecodeError as e:
                raise InvalidSignature(f"Payload is not UTF-8: {e}") from e

        try:
            stripe.WebhookSignature.verify_header(
                payload, signature, self.webhook_secret, stripe.Webhook.DEFAULT_TOLERANCE
            )
        except stripe.SignatureVerificationError as e:
            raise InvalidSignature(f"Invalid webhook signature: {e}") from e

        try:
            event = json.loads(payload)
        except ValueError as e:
            raise InvalidSignature(f"Invalid payload format: {e}") from e
        if not isinstance(event, dict) or "type" not in event:
            raise InvalidSignature("Payload is not a Stripe event")
        return event

    async def _call(self, func, *args, **kwargs):
        if not self.api_key:
            raise UpstreamUnavailable("STRIPE_SECRET_KEY is not set")
        try:
            return await asyncio.wait_for(
                asyncio.to_thread(func, *args, api_key=self.api_key, **kwargs),
                timeout=self.timeout_seconds,
            )
        except asyncio.TimeoutError as e:
            raise UpstreamUnavailable(f"Stripe call timed out after {self.timeout_seconds}s") from e
        except stripe.InvalidRequestError as e:
            if getattr(e, "http_status", None) == 404:
                raise NotFound(str(e)) from e
            raise UpstreamUnavailable(f"Stripe rejected the request: {e}") from e
        except stripe.StripeError as e:
            raise UpstreamUnavailable(f"Stripe call failed: {e}") from e

    async def retrieve_subscription(self, subscription_ref: str) -> BillingSubscription:
        """
        Fetch the authoritative state of a subscription.

        Raises:
            UpstreamUnavailable: Stripe unreachable, erroring or too slow
            NotFound: Stripe does not know the subscription
        """
        subscription = await self._call(stripe.Subscription.retrieve, subscription_ref)
        try:
            return subscription_from_stripe(subscription)
        except ValueError as e:
            raise UpstreamUnavailable(f"Unexpected subscription payload: {e}") from e

    async def create_customer(self, email: str, user_id: int) -> str:
        customer = await self._call(
            stripe.Customer.create,
            email=email,
            metadata={"user_id": str(user_id)},
        )
        return customer["id"]

    async def create_checkout_session(
        self,
        customer_ref: str,
        user_id: int,
        success_url: str,
        cancel_url: str,
    ) -> str:
        if not self.price_id:
            raise UpstreamUnavailable("STRIPE_PRICE_ID is not set")
        session = await self._call(
            stripe.checkout.Session.create,
            customer=customer_ref,
            client_reference_id=str(user_id),
            payment_method_types=["card"],
            line_items=[{"price": self.price_id, "quantity": 1}],
            mode="subscription",
            success_url=success_url,
            cancel_url=cancel_url,
            metadata={"user_id": str(user_id)},
        )
        return session["url"]

    async def create_portal_session(self, customer_ref: str, return_url: str) -> str:
        session = await self._call(
            stripe.billing_portal.Session.create,
            customer=customer_ref,
            return_url=return_url,
        )
        return session["url"]
