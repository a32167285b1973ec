"""
Pytest configuration and fixtures for testing
"""
import hashlib
import hmac
import json
import time
from datetime import datetime, timedelta, timezone
from typing import Dict, Optional

import httpx
import pytest

from auth_utils import hash_password
from config.settings import Settings
from context import AppContext
from crud.user import UserRepository
from models.entitlement import BillingSubscription, SubscriptionStatus
from services.errors import NotFound, UpstreamUnavailable
from services.stripe_gateway import StripeGateway

FIXED_NOW = datetime(2026, 3, 1, 12, 0, 0, tzinfo=timezone.utc)
WEBHOOK_SECRET = "whsec_test_secret"
JWT_SECRET = "test-jwt-secret"


class FrozenClock:
    """Callable clock that only moves when told to."""

    def __init__(self, now: datetime = FIXED_NOW):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs):
        self.now = self.now + timedelta(**kwargs)


class FakeStripeGateway(StripeGateway):
    """
    Real webhook signature verification, canned Stripe API responses.
    """

    def __init__(self):
        super().__init__(
            api_key="sk_test_fake",
            webhook_secret=WEBHOOK_SECRET,
            price_id="price_test_monthly",
        )
        self.subscriptions: Dict[str, BillingSubscription] = {}
        self.unavailable = False
        self.retrieve_calls = 0
        self.created_customers = []

    async def retrieve_subscription(self, subscription_ref: str) -> BillingSubscription:
        self.retrieve_calls += 1
        if self.unavailable:
            raise UpstreamUnavailable("Stripe call timed out after 10.0s")
        if subscription_ref not in self.subscriptions:
            raise NotFound(f"No such subscription: {subscription_ref}")
        return self.subscriptions[subscription_ref]

    async def create_customer(self, email: str, user_id: int) -> str:
        customer_ref = f"cus_test_{user_id}_{len(self.created_customers)}"
        self.created_customers.append(customer_ref)
        return customer_ref

    async def create_checkout_session(self, customer_ref, user_id, success_url, cancel_url) -> str:
        return f"https://checkout.stripe.test/{customer_ref}"

    async def create_portal_session(self, customer_ref, return_url) -> str:
        return f"https://billing.stripe.test/{customer_ref}"

    def add_subscription(
        self,
        subscription_ref: str,
        customer_ref: str,
        status: SubscriptionStatus,
        period_end: Optional[datetime],
    ):
        self.subscriptions[subscription_ref] = BillingSubscription(
            subscription_ref=subscription_ref,
            customer_ref=customer_ref,
            status=status,
            period_end=period_end,
        )


def sign_payload(payload: str, secret: str = WEBHOOK_SECRET, timestamp: Optional[int] = None) -> str:
    """Build a Stripe-Signature header the way Stripe does."""
    timestamp = timestamp or int(time.time())
    signed = f"{timestamp}.{payload}".encode("utf-8")
    signature = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={signature}"


def stripe_event(event_type: str, data_object: dict, event_id: str = "evt_test_1") -> str:
    return json.dumps({
        "id": event_id,
        "object": "event",
        "type": event_type,
        "data": {"object": data_object},
    })


@pytest.fixture
def clock():
    return FrozenClock()


@pytest.fixture
def gateway():
    return FakeStripeGateway()


@pytest.fixture
def settings(tmp_path):
    return Settings(
        _env_file=None,
        JWT_SECRET_KEY=JWT_SECRET,
        STRIPE_WEBHOOK_SECRET=WEBHOOK_SECRET,
        STRIPE_SECRET_KEY="sk_test_fake",
        STRIPE_PRICE_ID="price_test_monthly",
        DATABASE_URL=f"sqlite+aiosqlite:///{tmp_path / 'test.db'}",
        SWEEP_ENABLED=False,
        RATE_LIMIT_PER_MINUTE=1000,
    )


@pytest.fixture
async def context(settings, clock, gateway):
    """
    Fixture that provides a started AppContext on an isolated SQLite file.
    """
    ctx = AppContext(settings, clock=clock, gateway=gateway)
    await ctx.start(schedule_jobs=False)
    yield ctx
    await ctx.stop()


@pytest.fixture
async def test_db(context):
    async with context.session_factory() as session:
        yield session


@pytest.fixture
async def async_client(context):
    """
    Async HTTP client bound to an app that uses the test context.
    """
    from main import create_app

    app = create_app(context=context)
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        yield client


@pytest.fixture
def make_user(context):
    """Create a user (and its trial record) directly in the database."""

    async def _make_user(email: str = "user@example.com", password: str = "secret123", **entitlement):
        async with context.session_factory() as db:
            user = await UserRepository(db).create_user(
                {"email": email, "hashed_password": hash_password(password)},
                now=context.clock(),
                trial_days=context.settings.trial_days,
            )
            for key, value in entitlement.items():
                setattr(user.entitlement, key, value)
            await db.commit()
            return user.id

    return _make_user


@pytest.fixture
def get_record(context):
    async def _get_record(user_id: int):
        from crud.entitlement import EntitlementRepository
        from models.entitlement import EntitlementSnapshot

        async with context.session_factory() as db:
            row = await EntitlementRepository(db).get_by_user_id(user_id)
            return EntitlementSnapshot.from_row(row) if row else None

    return _get_record
