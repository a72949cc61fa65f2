from __future__ import annotations

import json
from typing import Any

from sqlalchemy import func, select

from taskcoda.domain.models import AuditLog, Organization, Subscription, WebhookEvent
from taskcoda.domain.webhooks import parse_webhook_event
from taskcoda.persistence.db import SessionLocal
from taskcoda.services.subscriptions import (
    WebhookProcessor,
    get_organization_subscription,
    get_subscription_by_polar_id,
)
from taskcoda.tests.utils.seed import create_organization, create_user


def _subscription(sub_id: str = "sub_1", **overrides: Any) -> dict[str, Any]:
    data = {
        "id": sub_id,
        "status": "active",
        "customer_id": "cus_1",
        "product_id": "prod_1",
        "price_id": "price_1",
        "amount": 2000,
        "currency": "usd",
        "recurring_interval": "month",
        "created_at": "2026-05-01T00:00:00Z",
        "current_period_start": "2026-05-01T00:00:00Z",
        "current_period_end": "2026-06-01T00:00:00Z",
        "cancel_at_period_end": False,
        "metadata": {},
    }
    data.update(overrides)
    return data


def _event(event_type: str, data: dict[str, Any]):
    return parse_webhook_event(json.dumps({"type": event_type, "data": data}))


async def test_created_links_organization_and_plan() -> None:
    owner = await create_user()
    org = await create_organization(owner, plan="free")
    data = _subscription(metadata={"organizationId": org.id, "userId": owner.id, "plan": "pro"})

    async with SessionLocal() as session:
        outcome = await WebhookProcessor().handle_webhook_event(session, _event("subscription.created", data))
    assert outcome.applied is True

    async with SessionLocal() as session:
        stored_org = await session.get(Organization, org.id)
        sub = await session.get(Subscription, outcome.subscription_id)
        events = await session.scalar(select(func.count()).select_from(WebhookEvent))
        audits = await session.scalar(
            select(func.count()).select_from(AuditLog).where(AuditLog.action == "SUBSCRIPTION_CREATED")
        )
    assert stored_org.plan == "pro"
    assert stored_org.subscription_id == sub.id
    assert sub.user_id == owner.id
    assert sub.amount == 2000
    assert events == 1
    assert audits == 1


async def test_duplicate_created_refreshes_single_row() -> None:
    processor = WebhookProcessor()
    async with SessionLocal() as session:
        await processor.handle_webhook_event(session, _event("subscription.created", _subscription()))
        await processor.handle_webhook_event(
            session, _event("subscription.created", _subscription(amount=3000))
        )
        rows = list((await session.execute(select(Subscription))).scalars().all())
        events = await session.scalar(select(func.count()).select_from(WebhookEvent))
    assert len(rows) == 1
    assert rows[0].amount == 3000
    assert events == 2


async def test_uncanceled_clears_cancellation_fields() -> None:
    processor = WebhookProcessor()
    async with SessionLocal() as session:
        await processor.handle_webhook_event(session, _event("subscription.created", _subscription()))
        await processor.handle_webhook_event(
            session,
            _event(
                "subscription.canceled",
                _subscription(
                    status="canceled",
                    cancel_at_period_end=True,
                    canceled_at="2026-05-10T00:00:00Z",
                    customer_cancellation_reason="too_expensive",
                    customer_cancellation_comment="Pricey",
                ),
            ),
        )
        await processor.handle_webhook_event(session, _event("subscription.uncanceled", _subscription()))
        sub = (await session.execute(select(Subscription))).scalar_one()
    assert sub.status == "active"
    assert sub.cancel_at_period_end is False
    assert sub.canceled_at is None
    assert sub.customer_cancellation_reason is None
    assert sub.customer_cancellation_comment is None


async def test_transition_for_unknown_subscription_is_dropped() -> None:
    async with SessionLocal() as session:
        outcome = await WebhookProcessor().handle_webhook_event(
            session, _event("subscription.revoked", _subscription("sub_missing", status="revoked"))
        )
        subs = await session.scalar(select(func.count()).select_from(Subscription))
        events = await session.scalar(select(func.count()).select_from(WebhookEvent))
    assert outcome.applied is False
    assert subs == 0
    assert events == 1


async def test_revoked_marks_subscription_revoked() -> None:
    processor = WebhookProcessor()
    async with SessionLocal() as session:
        await processor.handle_webhook_event(session, _event("subscription.created", _subscription()))
        await processor.handle_webhook_event(
            session,
            _event("subscription.revoked", _subscription(status="canceled", ended_at="2026-06-01T00:00:00Z")),
        )
        sub = (await session.execute(select(Subscription))).scalar_one()
    assert sub.status == "revoked"
    assert sub.ended_at is not None


async def test_subscription_lookups_follow_organization_link() -> None:
    owner = await create_user()
    org = await create_organization(owner, plan="free")
    data = _subscription("sub_lookup", metadata={"organizationId": org.id, "userId": owner.id, "plan": "pro"})

    async with SessionLocal() as session:
        await WebhookProcessor().handle_webhook_event(session, _event("subscription.created", data))

    async with SessionLocal() as session:
        by_polar = await get_subscription_by_polar_id(session, "sub_lookup")
        by_org = await get_organization_subscription(session, org.id)
        missing = await get_subscription_by_polar_id(session, "sub_unknown")
    assert by_polar is not None
    assert by_org is not None
    assert by_org.id == by_polar.id
    assert missing is None
