from __future__ import annotations

from datetime import datetime, timezone

import pytest

from taskcoda.core.errors import OrganizationNotFoundError
from taskcoda.persistence.db import SessionLocal
from taskcoda.services.quota import QuotaService
from taskcoda.services.usage import UsageMeter
from taskcoda.tests.utils.seed import create_organization, create_user


def _fixed(ts: datetime):
    return lambda: ts


async def test_quota_denies_exactly_at_limit() -> None:
    owner = await create_user()
    org = await create_organization(owner, plan="free")
    clock = _fixed(datetime(2026, 5, 10, tzinfo=timezone.utc))
    meter = UsageMeter(time_provider=clock)
    service = QuotaService(usage_meter=meter, time_provider=clock)

    async with SessionLocal() as session:
        await meter.record_usage(
            session, organization_id=org.id, metric_type="ai_messages", quantity=99, user_id=owner.id
        )
        before = await service.check_quota(session, organization_id=org.id, metric_type="ai_messages")
        assert before.has_quota is True
        assert before.used == 99
        assert before.remaining == 1

        await meter.record_usage(
            session, organization_id=org.id, metric_type="ai_messages", quantity=1, user_id=owner.id
        )
        after = await service.check_quota(session, organization_id=org.id, metric_type="ai_messages")
    assert after.has_quota is False
    assert after.used == 100
    assert after.remaining == 0
    assert after.percentage == 100.0


async def test_usage_resets_on_month_rollover() -> None:
    owner = await create_user()
    org = await create_organization(owner, plan="free")
    january = _fixed(datetime(2026, 1, 31, 23, 59, tzinfo=timezone.utc))
    february = _fixed(datetime(2026, 2, 1, 0, 1, tzinfo=timezone.utc))

    async with SessionLocal() as session:
        await UsageMeter(time_provider=january).record_usage(
            session, organization_id=org.id, metric_type="ai_messages", quantity=100, user_id=owner.id
        )
        service = QuotaService(usage_meter=UsageMeter(time_provider=february), time_provider=february)
        status = await service.check_quota(session, organization_id=org.id, metric_type="ai_messages")
    assert status.has_quota is True
    assert status.used == 0


async def test_enterprise_is_unlimited() -> None:
    owner = await create_user()
    org = await create_organization(owner, plan="enterprise")
    meter = UsageMeter()
    async with SessionLocal() as session:
        await meter.record_usage(
            session, organization_id=org.id, metric_type="ai_messages", quantity=1_000_000, user_id=owner.id
        )
        status = await QuotaService(usage_meter=meter).check_quota(
            session, organization_id=org.id, metric_type="ai_messages"
        )
    assert status.has_quota is True
    assert status.used == 1_000_000


async def test_admin_override_raises_limit() -> None:
    owner = await create_user()
    org = await create_organization(owner, plan="free", settings={"quotas": {"ai_messages": 500}})
    meter = UsageMeter()
    async with SessionLocal() as session:
        await meter.record_usage(
            session, organization_id=org.id, metric_type="ai_messages", quantity=150, user_id=owner.id
        )
        status = await QuotaService(usage_meter=meter).check_quota(
            session, organization_id=org.id, metric_type="ai_messages"
        )
    assert status.has_quota is True
    assert status.limit == 500


async def test_missing_organization_raises() -> None:
    async with SessionLocal() as session:
        with pytest.raises(OrganizationNotFoundError):
            await QuotaService().check_quota(session, organization_id="missing", metric_type="ai_messages")


async def test_fractional_storage_rounds_up_to_whole_units() -> None:
    owner = await create_user()
    org = await create_organization(owner, plan="free")
    meter = UsageMeter()

    async with SessionLocal() as session:
        row = await meter.record_usage(
            session, organization_id=org.id, metric_type="storage_mb", quantity=0.4, user_id=owner.id
        )
        await meter.record_usage(
            session, organization_id=org.id, metric_type="storage_mb", quantity=2.0, user_id=owner.id
        )
        total = await meter.sum_usage(session, organization_id=org.id, metric_type="storage_mb")
    assert row.quantity == 1
    assert total == 3
