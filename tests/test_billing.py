"""
Tests for the access, checkout and billing portal routes
"""
from datetime import timedelta

import pytest

from auth_utils import create_jwt
from models.entitlement import SubscriptionStatus
from tests.conftest import FIXED_NOW, JWT_SECRET

NOW = FIXED_NOW


def auth_headers(user_id):
    return {"Authorization": f"Bearer {create_jwt(str(user_id), JWT_SECRET)}"}


@pytest.mark.asyncio
async def test_access_reports_trial(async_client, make_user):
    user_id = await make_user()

    response = await async_client.get("/api/billing/access", headers=auth_headers(user_id))

    assert response.status_code == 200
    data = response.json()["data"]
    assert data["entitled"] is True
    assert data["status"] == "trial"
    assert data["days_remaining"] == 7


@pytest.mark.asyncio
async def test_access_follows_the_clock_without_writes(async_client, clock, make_user, get_record):
    user_id = await make_user()
    before = await get_record(user_id)

    clock.advance(days=7)
    response = await async_client.get("/api/billing/access", headers=auth_headers(user_id))

    data = response.json()["data"]
    assert data["entitled"] is False
    assert data["status"] == "expired"
    assert data["days_remaining"] == 0
    assert await get_record(user_id) == before


@pytest.mark.asyncio
async def test_access_reports_active_subscription(async_client, make_user):
    user_id = await make_user(
        trial_ends_at=NOW - timedelta(days=1),
        subscription_status=SubscriptionStatus.ACTIVE.value,
        subscription_ends_at=NOW + timedelta(days=20, hours=3),
    )

    data = (await async_client.get("/api/billing/access", headers=auth_headers(user_id))).json()["data"]

    assert data["entitled"] is True
    assert data["status"] == "active"
    assert data["days_remaining"] == 21


@pytest.mark.asyncio
async def test_checkout_creates_and_reuses_customer(async_client, gateway, make_user, get_record):
    user_id = await make_user()

    first = await async_client.post("/api/billing/create-checkout-session", headers=auth_headers(user_id))
    second = await async_client.post("/api/billing/create-checkout-session", headers=auth_headers(user_id))

    assert first.status_code == second.status_code == 200
    assert first.json()["data"]["url"] == f"https://checkout.stripe.test/cus_test_{user_id}_0"
    assert second.json()["data"]["url"] == first.json()["data"]["url"]
    assert gateway.created_customers == [f"cus_test_{user_id}_0"]
    assert (await get_record(user_id)).billing_customer_ref == f"cus_test_{user_id}_0"


@pytest.mark.asyncio
async def test_checkout_requires_login(async_client):
    response = await async_client.post("/api/billing/create-checkout-session")
    assert response.status_code == 401


@pytest.mark.asyncio
async def test_portal_needs_a_billing_account(async_client, make_user):
    user_id = await make_user()

    response = await async_client.post("/api/billing/portal", headers=auth_headers(user_id))

    assert response.status_code == 400
    assert response.json()["error"] == "portal_unavailable"


@pytest.mark.asyncio
async def test_portal_for_linked_user(async_client, make_user):
    user_id = await make_user(billing_customer_ref="cus_portal")

    response = await async_client.post("/api/billing/portal", headers=auth_headers(user_id))

    assert response.status_code == 200
    assert response.json()["data"]["url"] == "https://billing.stripe.test/cus_portal"
