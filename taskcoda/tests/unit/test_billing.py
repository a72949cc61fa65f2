from __future__ import annotations

import json

import httpx
import pytest
from sqlalchemy import select

from taskcoda.core.config import get_settings
from taskcoda.core.errors import (
    BillingConfigError,
    BillingProviderError,
    NotFoundError,
    PermissionDeniedError,
    SubscriptionNotFoundError,
)
from taskcoda.domain.models import AuditLog, Subscription
from taskcoda.persistence.db import SessionLocal
from taskcoda.services import billing
from taskcoda.tests.utils.seed import add_member, create_organization, create_user


_PRODUCTS = {
    "items": [
        {
            "id": "prod_pro",
            "name": "Pro",
            "description": "For teams",
            "is_recurring": True,
            "prices": [
                {"id": "price_pro_month", "price_amount": 2000, "price_currency": "usd", "recurring_interval": "month"},
                {"id": "price_custom", "amount_type": "custom"},
            ],
        }
    ]
}


def _client(handler) -> billing.PolarClient:
    return billing.PolarClient(client=httpx.AsyncClient(transport=httpx.MockTransport(handler)))


@pytest.fixture
def polar_token(monkeypatch) -> None:
    monkeypatch.setenv("POLAR_ACCESS_TOKEN", "polar_test_token")
    monkeypatch.setenv("POLAR_ORGANIZATION_ID", "polar_org")
    get_settings.cache_clear()


async def test_missing_token_is_a_config_error() -> None:
    client = _client(lambda request: httpx.Response(200, json=_PRODUCTS))
    with pytest.raises(BillingConfigError):
        await client.list_products()


async def test_plans_list_fixed_prices_only(polar_token) -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json=_PRODUCTS)

    plans = await billing.get_available_plans(_client(handler))
    assert seen[0].url.host == "sandbox-api.polar.sh"
    assert seen[0].url.params["organization_id"] == "polar_org"
    assert seen[0].headers["Authorization"] == "Bearer polar_test_token"
    assert plans["plans"][0]["prices"] == [
        {"id": "price_pro_month", "amount": 2000, "currency": "usd", "interval": "month"}
    ]


async def test_provider_errors_surface_as_billing_errors(polar_token) -> None:
    client = _client(lambda request: httpx.Response(500, json={"detail": "boom"}))
    with pytest.raises(BillingProviderError):
        await client.list_products()


async def test_checkout_carries_organization_metadata(polar_token) -> None:
    owner = await create_user(email="owner@example.com")
    org = await create_organization(owner)
    bodies: list[dict] = []

    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/v1/products/":
            return httpx.Response(200, json=_PRODUCTS)
        bodies.append(json.loads(request.content))
        return httpx.Response(201, json={"url": "https://polar.example/checkout/1"})

    async with SessionLocal() as session:
        result = await billing.create_organization_checkout(
            session,
            user=owner,
            organization_id=org.id,
            price_id="price_pro_month",
            plan="pro",
            client=_client(handler),
        )
    assert result == {"checkout_url": "https://polar.example/checkout/1"}
    assert bodies[0]["products"] == ["prod_pro"]
    assert bodies[0]["customer_email"] == "owner@example.com"
    assert bodies[0]["metadata"] == {
        "organizationId": org.id,
        "userId": owner.id,
        "priceId": "price_pro_month",
        "plan": "pro",
    }


async def test_checkout_requires_manager_and_known_price(polar_token) -> None:
    owner = await create_user()
    member = await create_user()
    org = await create_organization(owner)
    await add_member(org, member)
    client = _client(lambda request: httpx.Response(200, json=_PRODUCTS))

    async with SessionLocal() as session:
        with pytest.raises(PermissionDeniedError):
            await billing.create_organization_checkout(
                session, user=member, organization_id=org.id, price_id="price_pro_month", plan="pro", client=client
            )
        with pytest.raises(NotFoundError):
            await billing.create_organization_checkout(
                session, user=owner, organization_id=org.id, price_id="price_missing", plan="pro", client=client
            )


async def test_cancel_is_owner_only_and_audited(polar_token) -> None:
    owner = await create_user()
    admin = await create_user()
    org = await create_organization(owner)
    await add_member(org, admin, role="admin")
    calls: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        return httpx.Response(200, json={"id": "sub_1", "cancel_at_period_end": True})

    async with SessionLocal() as session:
        with pytest.raises(SubscriptionNotFoundError):
            await billing.cancel_organization_subscription(
                session, user=owner, organization_id=org.id, client=_client(handler)
            )
        session.add(Subscription(polar_id="sub_1", organization_id=org.id, customer_id="cus_1", status="active"))
        await session.commit()

        with pytest.raises(PermissionDeniedError):
            await billing.cancel_organization_subscription(
                session, user=admin, organization_id=org.id, client=_client(handler)
            )
        result = await billing.cancel_organization_subscription(
            session, user=owner, organization_id=org.id, client=_client(handler)
        )
        actions = (await session.execute(select(AuditLog.action))).scalars().all()

    assert result == {"success": True}
    assert calls[0].method == "PATCH"
    assert calls[0].url.path == "/v1/subscriptions/sub_1"
    assert json.loads(calls[0].content) == {"cancel_at_period_end": True}
    assert "SUBSCRIPTION_CANCELED" in actions


async def test_portal_requires_customer(polar_token) -> None:
    owner = await create_user()
    org = await create_organization(owner)
    client = _client(lambda request: httpx.Response(201, json={"customer_portal_url": "https://polar.example/portal"}))
    async with SessionLocal() as session:
        with pytest.raises(SubscriptionNotFoundError):
            await billing.get_customer_portal_url(session, user=owner, organization_id=org.id, client=client)
        session.add(Subscription(polar_id="sub_1", organization_id=org.id, customer_id="cus_1", status="active"))
        await session.commit()
        result = await billing.get_customer_portal_url(session, user=owner, organization_id=org.id, client=client)
    assert result == {"url": "https://polar.example/portal"}
