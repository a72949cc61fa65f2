from __future__ import annotations

import json
from uuid import uuid4

from sqlalchemy import func, select

from taskcoda.core.config import get_settings
from taskcoda.domain.models import Organization, Subscription, WebhookEvent
from taskcoda.persistence.db import SessionLocal
from taskcoda.services.subscriptions import sign_webhook_payload
from taskcoda.tests.utils.seed import create_organization, create_user


def _created_payload(organization_id: str, user_id: str) -> bytes:
    return json.dumps(
        {
            "type": "subscription.created",
            "data": {
                "id": f"sub_{uuid4().hex[:8]}",
                "status": "active",
                "customer_id": "cus_1",
                "product_id": "prod_pro",
                "amount": 2000,
                "currency": "usd",
                "created_at": "2026-05-01T00:00:00Z",
                "metadata": {"organizationId": organization_id, "userId": user_id, "plan": "pro"},
            },
        }
    ).encode("utf-8")


def _signed(body: bytes) -> dict[str, str]:
    headers = sign_webhook_payload(body, get_settings().polar_webhook_secret, msg_id=f"msg_{uuid4().hex}")
    headers["Content-Type"] = "application/json"
    return headers


async def _row_count(model) -> int:
    async with SessionLocal() as session:
        return int(await session.scalar(select(func.count()).select_from(model)))


async def test_unsigned_delivery_is_rejected(client) -> None:
    response = await client.post("/payments/webhook", content=b'{"type":"order.created","data":{"id":"o1"}}')
    assert response.status_code == 403
    assert response.json() == {"message": "Webhook verification failed"}
    assert await _row_count(WebhookEvent) == 0


async def test_tampered_body_is_rejected_before_any_write(client) -> None:
    owner = await create_user()
    org = await create_organization(owner, plan="free")
    body = _created_payload(org.id, owner.id)
    headers = _signed(body)
    tampered = body.replace(b'"plan": "pro"', b'"plan": "enterprise"')
    assert tampered != body

    response = await client.post("/payments/webhook", content=tampered, headers=headers)
    assert response.status_code == 403
    assert await _row_count(WebhookEvent) == 0
    assert await _row_count(Subscription) == 0
    async with SessionLocal() as session:
        stored = await session.get(Organization, org.id)
    assert stored.plan == "free"


async def test_signed_subscription_upgrades_organization(client) -> None:
    owner = await create_user()
    org = await create_organization(owner, plan="free")
    body = _created_payload(org.id, owner.id)

    response = await client.post("/payments/webhook", content=body, headers=_signed(body))
    assert response.status_code == 200
    assert response.json() == {"message": "Webhook received!"}
    async with SessionLocal() as session:
        stored = await session.get(Organization, org.id)
    assert stored.plan == "pro"
    assert stored.subscription_id is not None


async def test_unknown_event_type_is_a_bad_request(client) -> None:
    body = b'{"type":"customer.created","data":{"id":"c1"}}'
    response = await client.post("/payments/webhook", content=body, headers=_signed(body))
    assert response.status_code == 400
    assert response.json() == {"message": "Webhook failed"}


async def test_missing_organization_is_a_bad_request(client) -> None:
    body = _created_payload("org_missing", "user_1")
    response = await client.post("/payments/webhook", content=body, headers=_signed(body))
    assert response.status_code == 400


async def test_missing_secret_fails(client, monkeypatch) -> None:
    body = b'{"type":"order.created","data":{"id":"o1"}}'
    headers = _signed(body)
    monkeypatch.setenv("POLAR_WEBHOOK_SECRET", "")
    get_settings.cache_clear()
    response = await client.post("/payments/webhook", content=body, headers=headers)
    assert response.status_code == 400
