from __future__ import annotations

from datetime import timedelta
import logging
from typing import Any

from sqlalchemy import func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from taskcoda.core.config import get_settings
from taskcoda.core.errors import (
    OrganizationNotFoundError,
    PermissionDeniedError,
    UserNotFoundError,
    ValidationFailedError,
)
from taskcoda.core.periods import TimeProvider, month_start, utc_now
from taskcoda.domain.models import AuditLog, Organization, Subscription, TeamMember, UsageMetric, User
from taskcoda.persistence.repos import subscriptions as subs_repo
from taskcoda.services import audit as audit_service
from taskcoda.services.audit import AUDIT_ACTIONS, record_audit_log, serialize_audit_log
from taskcoda.services.billing import update_organization_plan
from taskcoda.services.organizations import list_team_members, serialize_organization
from taskcoda.services.quota import PLAN_QUOTAS
from taskcoda.services.rate_limit import get_rate_limiter
from taskcoda.services.subscriptions import get_organization_subscription, serialize_subscription


logger = logging.getLogger(__name__)

SUPER_ADMIN_ROLE = "super_admin"
_DEFAULT_PAGE_SIZE = 50


def require_super_admin(user: User) -> User:
    if user.role != SUPER_ADMIN_ROLE:
        raise PermissionDeniedError("Super admin access required")
    return user


def serialize_user(user: User) -> dict[str, Any]:
    return {
        "id": user.id,
        "token_identifier": user.token_identifier,
        "name": user.name,
        "email": user.email,
        "image": user.image,
        "role": user.role,
        "organization_id": user.organization_id,
        "is_suspended": user.suspended_at is not None,
        "suspended_at": user.suspended_at.isoformat() if user.suspended_at else None,
        "created_at": user.created_at.isoformat() if user.created_at else None,
    }


def _serialize_metric(metric: UsageMetric) -> dict[str, Any]:
    return {
        "id": metric.id,
        "organization_id": metric.organization_id,
        "user_id": metric.user_id,
        "metric_type": metric.metric_type,
        "quantity": metric.quantity,
        "metadata": metric.metadata_json,
        "timestamp": metric.timestamp.isoformat() if metric.timestamp else None,
    }


async def search_users(
    session: AsyncSession,
    *,
    query: str | None = None,
    role: str | None = None,
    suspended: bool | None = None,
    limit: int = _DEFAULT_PAGE_SIZE,
    offset: int = 0,
) -> dict[str, Any]:
    # Case-insensitive substring match on email, name and identity subject.
    stmt = select(User).where(User.deleted_at.is_(None))
    if role:
        stmt = stmt.where(User.role == role)
    if suspended is True:
        stmt = stmt.where(User.suspended_at.is_not(None))
    elif suspended is False:
        stmt = stmt.where(User.suspended_at.is_(None))
    if query:
        pattern = f"%{query.lower()}%"
        stmt = stmt.where(
            or_(
                func.lower(User.email).like(pattern),
                func.lower(User.name).like(pattern),
                func.lower(User.token_identifier).like(pattern),
            )
        )

    total = int(await session.scalar(select(func.count()).select_from(stmt.subquery())) or 0)
    result = await session.execute(stmt.order_by(User.created_at.desc()).offset(offset).limit(limit))
    users = [serialize_user(user) for user in result.scalars().all()]
    return {"users": users, "total": total, "has_more": offset + limit < total}


async def get_user_details(
    session: AsyncSession, user_id: str, *, time_provider: TimeProvider | None = None
) -> dict[str, Any]:
    user = await session.get(User, user_id)
    if user is None:
        raise UserNotFoundError("User not found")

    organization = None
    if user.organization_id:
        org = await session.get(Organization, user.organization_id)
        organization = serialize_organization(org) if org is not None else None
    subscription = await subs_repo.get_for_user(session, user.id)
    audit_logs = await audit_service.list_by_user(session, user.id, limit=50)

    period_start = month_start((time_provider or utc_now)())
    result = await session.execute(
        select(UsageMetric).where(UsageMetric.user_id == user.id, UsageMetric.period_start >= period_start)
    )
    return {
        "user": serialize_user(user),
        "organization": organization,
        "subscription": serialize_subscription(subscription) if subscription is not None else None,
        "audit_logs": [serialize_audit_log(entry) for entry in audit_logs],
        "usage_metrics": [_serialize_metric(metric) for metric in result.scalars().all()],
    }


async def suspend_user(session: AsyncSession, *, admin: User, user_id: str, reason: str) -> None:
    user = await session.get(User, user_id)
    if user is None:
        raise UserNotFoundError("User not found")
    if user.role == SUPER_ADMIN_ROLE:
        raise PermissionDeniedError("Cannot suspend super admin users")

    now = utc_now()
    user.suspended_at = now
    user.updated_at = now
    await session.commit()
    await record_audit_log(
        session=session,
        user_id=admin.id,
        organization_id=user.organization_id,
        action=AUDIT_ACTIONS["USER_SUSPENDED"],
        resource=f"user/{user_id}",
        resource_id=user_id,
        status="success",
        metadata={"reason": reason},
        commit=True,
    )
    logger.info("user_suspended user_id=%s admin_id=%s", user_id, admin.id)


async def activate_user(session: AsyncSession, *, admin: User, user_id: str) -> None:
    user = await session.get(User, user_id)
    if user is None:
        raise UserNotFoundError("User not found")
    user.suspended_at = None
    user.updated_at = utc_now()
    await session.commit()
    await record_audit_log(
        session=session,
        user_id=admin.id,
        organization_id=user.organization_id,
        action=AUDIT_ACTIONS["USER_ACTIVATED"],
        resource=f"user/{user_id}",
        resource_id=user_id,
        status="success",
        metadata={},
        commit=True,
    )


async def get_user_activity(session: AsyncSession, user_id: str, *, limit: int = 100) -> list[dict[str, Any]]:
    entries = await audit_service.list_by_user(session, user_id, limit=limit)
    return [serialize_audit_log(entry) for entry in entries]


async def list_organizations(
    session: AsyncSession,
    *,
    query: str | None = None,
    plan: str | None = None,
    limit: int = _DEFAULT_PAGE_SIZE,
    offset: int = 0,
) -> dict[str, Any]:
    stmt = select(Organization)
    if plan:
        stmt = stmt.where(Organization.plan == plan)
    if query:
        pattern = f"%{query.lower()}%"
        stmt = stmt.where(or_(func.lower(Organization.name).like(pattern), func.lower(Organization.slug).like(pattern)))

    total = int(await session.scalar(select(func.count()).select_from(stmt.subquery())) or 0)
    result = await session.execute(stmt.order_by(Organization.created_at.desc()).offset(offset).limit(limit))
    orgs = list(result.scalars().all())

    counts: dict[str, int] = {}
    if orgs:
        count_rows = await session.execute(
            select(TeamMember.organization_id, func.count())
            .where(TeamMember.organization_id.in_([org.id for org in orgs]))
            .group_by(TeamMember.organization_id)
        )
        counts = {org_id: int(count) for org_id, count in count_rows.all()}

    organizations = []
    for org in orgs:
        payload = serialize_organization(org)
        payload["member_count"] = counts.get(org.id, 0)
        payload["deleted_at"] = org.deleted_at.isoformat() if org.deleted_at else None
        organizations.append(payload)
    return {"organizations": organizations, "total": total, "has_more": offset + limit < total}


async def get_organization_details(
    session: AsyncSession, organization_id: str, *, time_provider: TimeProvider | None = None
) -> dict[str, Any]:
    # Admins see soft-deleted organizations too.
    org = await session.get(Organization, organization_id)
    if org is None:
        raise OrganizationNotFoundError("Organization not found")

    subscription = await get_organization_subscription(session, organization_id)
    period_start = month_start((time_provider or utc_now)())
    metrics = await session.execute(
        select(UsageMetric).where(
            UsageMetric.organization_id == organization_id,
            UsageMetric.period_start == period_start,
        )
    )
    audit_logs = await audit_service.list_by_organization(session, organization_id, limit=100)
    return {
        "organization": serialize_organization(org),
        "members": await list_team_members(session, organization_id),
        "subscription": serialize_subscription(subscription) if subscription is not None else None,
        "usage_metrics": [_serialize_metric(metric) for metric in metrics.scalars().all()],
        "audit_logs": [serialize_audit_log(entry) for entry in audit_logs],
    }


async def override_subscription(
    session: AsyncSession, *, admin: User, organization_id: str, new_plan: str, reason: str
) -> None:
    old_plan = await update_organization_plan(session, organization_id=organization_id, plan=new_plan)
    await record_audit_log(
        session=session,
        user_id=admin.id,
        organization_id=organization_id,
        action=AUDIT_ACTIONS["SUBSCRIPTION_OVERRIDE"],
        resource=f"organization/{organization_id}",
        resource_id=organization_id,
        status="success",
        metadata={"old_plan": old_plan, "new_plan": new_plan, "reason": reason},
        commit=True,
    )
    logger.info("plan_overridden organization_id=%s old=%s new=%s", organization_id, old_plan, new_plan)


async def adjust_quota(
    session: AsyncSession,
    *,
    admin: User,
    organization_id: str,
    quota_type: str,
    new_limit: int | None,
    reason: str,
) -> None:
    # A null limit lifts the cap for that metric; a zero limit would read as unset.
    if quota_type not in PLAN_QUOTAS["free"]:
        raise ValidationFailedError(f"Unknown quota type: {quota_type}")
    if new_limit is not None and new_limit < 1:
        raise ValidationFailedError("Quota limit must be a positive integer or null")
    org = await session.get(Organization, organization_id)
    if org is None:
        raise OrganizationNotFoundError("Organization not found")

    settings = dict(org.settings or {})
    quotas = dict(settings.get("quotas") or {})
    quotas[quota_type] = new_limit
    settings["quotas"] = quotas
    # Reassign so the JSON column is flagged dirty.
    org.settings = settings
    org.updated_at = utc_now()
    await session.commit()
    await record_audit_log(
        session=session,
        user_id=admin.id,
        organization_id=organization_id,
        action=AUDIT_ACTIONS["QUOTA_ADJUSTED"],
        resource=f"organization/{organization_id}",
        resource_id=organization_id,
        status="success",
        metadata={"quota_type": quota_type, "new_limit": new_limit, "reason": reason},
        commit=True,
    )


async def get_system_health(session: AsyncSession, *, time_provider: TimeProvider | None = None) -> dict[str, Any]:
    now = (time_provider or utc_now)()
    since = now - timedelta(days=1)

    total_users = int(await session.scalar(select(func.count()).select_from(User)) or 0)
    active_users = int(
        await session.scalar(select(func.count()).select_from(User).where(User.updated_at >= since)) or 0
    )
    total_orgs = int(await session.scalar(select(func.count()).select_from(Organization)) or 0)
    active_subscriptions = int(
        await session.scalar(select(func.count()).select_from(Subscription).where(Subscription.status == "active"))
        or 0
    )
    recent = await session.execute(
        select(AuditLog.status, func.count()).where(AuditLog.timestamp >= since).group_by(AuditLog.status)
    )
    status_counts = {status: int(count) for status, count in recent.all()}
    total_actions = sum(status_counts.values())
    failed_actions = status_counts.get("failure", 0)
    api_calls_today = int(
        await session.scalar(
            select(func.coalesce(func.sum(UsageMetric.quantity), 0)).where(
                UsageMetric.metric_type == "api_calls",
                UsageMetric.timestamp >= now.replace(hour=0, minute=0, second=0, microsecond=0),
            )
        )
        or 0
    )
    error_rate = (failed_actions / total_actions) * 100 if total_actions else 0.0
    return {
        "active_users": active_users,
        "total_users": total_users,
        "total_organizations": total_orgs,
        "active_subscriptions": active_subscriptions,
        "error_rate": round(error_rate, 2),
        "api_calls_today": api_calls_today,
        "total_actions_last_24h": total_actions,
        "failed_actions_last_24h": failed_actions,
    }


async def get_recent_errors(session: AsyncSession, *, limit: int = 50) -> list[dict[str, Any]]:
    result = await session.execute(
        select(AuditLog).where(AuditLog.status == "failure").order_by(AuditLog.timestamp.desc()).limit(limit)
    )
    return [serialize_audit_log(entry) for entry in result.scalars().all()]


async def reset_rate_limit(*, admin: User, key: str, prefix: str | None = None) -> None:
    # Cache errors propagate; an admin reset must not silently no-op.
    await get_rate_limiter().reset(key, prefix or get_settings().rl_redis_prefix)
    logger.info("rate_limit_reset key=%s admin_id=%s", key, admin.id)
