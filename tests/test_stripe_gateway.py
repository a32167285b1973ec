"""
Unit tests for Stripe payload mapping and the gateway's error translation
"""
import json
import time
from datetime import datetime, timedelta, timezone

import pytest
import stripe

from models.entitlement import (
    CheckoutCompleted,
    PaymentFailed,
    PaymentSucceeded,
    SubscriptionCanceled,
    SubscriptionCreatedOrUpdated,
    SubscriptionStatus,
)
from services.errors import InvalidSignature, NotFound, UpstreamUnavailable
from services.stripe_gateway import StripeGateway, event_from_payload, map_stripe_status, period_end_of
from tests.conftest import WEBHOOK_SECRET, sign_payload, stripe_event

PERIOD_END = datetime(2026, 4, 1, tzinfo=timezone.utc)


def event(event_type, data_object):
    return {"id": "evt_1", "type": event_type, "data": {"object": data_object}}


@pytest.mark.parametrize("stripe_status,expected", [
    ("active", SubscriptionStatus.ACTIVE),
    ("trialing", SubscriptionStatus.ACTIVE),
    ("past_due", SubscriptionStatus.ACTIVE),
    ("canceled", SubscriptionStatus.CANCELED),
    ("unpaid", SubscriptionStatus.EXPIRED),
    ("incomplete_expired", SubscriptionStatus.EXPIRED),
    ("incomplete", SubscriptionStatus.INACTIVE),
    ("paused", SubscriptionStatus.INACTIVE),
    (None, SubscriptionStatus.INACTIVE),
])
def test_map_stripe_status(stripe_status, expected):
    assert map_stripe_status(stripe_status) == expected


def test_period_end_read_from_subscription():
    assert period_end_of({"current_period_end": int(PERIOD_END.timestamp())}) == PERIOD_END


def test_period_end_read_from_items_on_newer_api_versions():
    subscription = {
        "id": "sub_1",
        "items": {"data": [
            {"current_period_end": int((PERIOD_END - timedelta(days=3)).timestamp())},
            {"current_period_end": int(PERIOD_END.timestamp())},
        ]},
    }
    assert period_end_of(subscription) == PERIOD_END


def test_period_end_missing():
    assert period_end_of({"id": "sub_1"}) is None


def test_subscription_update_maps_to_variant():
    result = event_from_payload(event("customer.subscription.updated", {
        "id": "sub_1",
        "customer": {"id": "cus_1", "object": "customer"},
        "status": "past_due",
        "current_period_end": int(PERIOD_END.timestamp()),
    }))
    assert result == SubscriptionCreatedOrUpdated("cus_1", "sub_1", SubscriptionStatus.ACTIVE, PERIOD_END)


def test_subscription_deleted_maps_to_cancellation():
    result = event_from_payload(event("customer.subscription.deleted", {"id": "sub_1", "customer": "cus_1"}))
    assert result == SubscriptionCanceled(customer_ref="cus_1")


@pytest.mark.parametrize("event_type", ["invoice.payment_succeeded", "invoice.paid"])
def test_paid_invoice_maps_to_payment_succeeded(event_type):
    result = event_from_payload(event(event_type, {"id": "in_1", "customer": "cus_1", "subscription": "sub_1"}))
    assert result == PaymentSucceeded(subscription_ref="sub_1")


def test_paid_invoice_reads_subscription_from_parent_details():
    invoice = {
        "id": "in_1",
        "customer": "cus_1",
        "parent": {"subscription_details": {"subscription": "sub_9"}},
    }
    assert event_from_payload(event("invoice.paid", invoice)) == PaymentSucceeded(subscription_ref="sub_9")


def test_one_off_invoice_is_not_consumed():
    assert event_from_payload(event("invoice.paid", {"id": "in_1", "customer": "cus_1"})) is None


def test_failed_invoice_maps_to_payment_failed():
    result = event_from_payload(event("invoice.payment_failed", {"id": "in_1", "customer": "cus_1"}))
    assert result == PaymentFailed(customer_ref="cus_1")


def test_checkout_completed_carries_client_reference():
    result = event_from_payload(event("checkout.session.completed", {
        "id": "cs_1",
        "mode": "subscription",
        "customer": "cus_1",
        "subscription": "sub_1",
        "client_reference_id": "42",
    }))
    assert result == CheckoutCompleted(user_id=42, customer_ref="cus_1", subscription_ref="sub_1")


def test_checkout_without_client_reference_is_not_consumed():
    assert event_from_payload(event("checkout.session.completed", {"id": "cs_1", "customer": "cus_1"})) is None


def test_payment_mode_checkout_is_not_consumed():
    data = {"id": "cs_1", "mode": "payment", "customer": "cus_1", "client_reference_id": "42"}
    assert event_from_payload(event("checkout.session.completed", data)) is None


def test_unconsumed_event_type_returns_none():
    assert event_from_payload(event("charge.refunded", {"id": "ch_1"})) is None


@pytest.mark.parametrize("payload", [
    {"type": "customer.subscription.updated", "data": {}},
    event("customer.subscription.updated", {"id": "sub_1", "status": "active"}),
    event("customer.subscription.deleted", {"id": "sub_1"}),
    event("checkout.session.completed", {"id": "cs_1", "customer": "cus_1", "client_reference_id": "abc"}),
])
def test_malformed_events_raise(payload):
    with pytest.raises(ValueError):
        event_from_payload(payload)


class TestConstructEvent:

    def setup_method(self):
        self.gateway = StripeGateway(api_key=None, webhook_secret=WEBHOOK_SECRET)

    def test_valid_signature_returns_event(self):
        payload = stripe_event("invoice.paid", {"id": "in_1"})
        result = self.gateway.construct_event(payload.encode("utf-8"), sign_payload(payload))
        assert result["type"] == "invoice.paid"
        assert result["data"]["object"]["id"] == "in_1"

    def test_expired_timestamp_is_rejected(self):
        payload = stripe_event("invoice.paid", {"id": "in_1"})
        old = int(time.time()) - 3600
        with pytest.raises(InvalidSignature):
            self.gateway.construct_event(payload.encode("utf-8"), sign_payload(payload, timestamp=old))

    def test_missing_header_is_rejected(self):
        with pytest.raises(InvalidSignature):
            self.gateway.construct_event(b"{}", None)

    def test_missing_secret_rejects_everything(self):
        gateway = StripeGateway(api_key=None, webhook_secret=None)
        payload = stripe_event("invoice.paid", {"id": "in_1"})
        with pytest.raises(InvalidSignature):
            gateway.construct_event(payload.encode("utf-8"), sign_payload(payload))

    def test_signed_non_event_payload_is_rejected(self):
        payload = json.dumps(["not", "an", "event"])
        with pytest.raises(InvalidSignature):
            self.gateway.construct_event(payload.encode("utf-8"), sign_payload(payload))


class TestErrorTranslation:

    def setup_method(self):
        self.gateway = StripeGateway(api_key="sk_test_fake", webhook_secret=WEBHOOK_SECRET, timeout_seconds=0.05)

    @pytest.mark.asyncio
    async def test_missing_api_key_is_upstream_unavailable(self):
        gateway = StripeGateway(api_key=None, webhook_secret=WEBHOOK_SECRET)
        with pytest.raises(UpstreamUnavailable):
            await gateway._call(lambda **kwargs: None)

    @pytest.mark.asyncio
    async def test_api_key_is_passed_per_call(self):
        seen = {}

        def fake_call(ref, **kwargs):
            seen.update(kwargs, ref=ref)
            return "ok"

        assert await self.gateway._call(fake_call, "sub_1") == "ok"
        assert seen == {"ref": "sub_1", "api_key": "sk_test_fake"}

    @pytest.mark.asyncio
    async def test_timeout_is_upstream_unavailable(self):
        def slow(**kwargs):
            time.sleep(0.5)

        with pytest.raises(UpstreamUnavailable):
            await self.gateway._call(slow)

    @pytest.mark.asyncio
    async def test_missing_resource_is_not_found(self):
        def missing(**kwargs):
            raise stripe.InvalidRequestError("No such subscription: 'sub_x'", "id", http_status=404)

        with pytest.raises(NotFound):
            await self.gateway._call(missing)

    @pytest.mark.asyncio
    async def test_api_error_is_upstream_unavailable(self):
        def broken(**kwargs):
            raise stripe.APIConnectionError("Network is unreachable")

        with pytest.raises(UpstreamUnavailable):
            await self.gateway._call(broken)
