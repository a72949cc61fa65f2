from __future__ import annotations

from collections import Counter
from datetime import datetime, timedelta
import logging
from typing import Any

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from starlette.requests import Request

from taskcoda.core.periods import utc_now
from taskcoda.domain.models import AuditLog
from taskcoda.persistence.db import SessionLocal


logger = logging.getLogger(__name__)

AUDIT_ACTIONS = {
    # User actions
    "USER_CREATED": "USER_CREATED",
    "USER_UPDATED": "USER_UPDATED",
    "USER_DELETED": "USER_DELETED",
    "USER_LOGIN": "USER_LOGIN",
    "USER_LOGOUT": "USER_LOGOUT",
    "USER_SUSPENDED": "USER_SUSPENDED",
    "USER_ACTIVATED": "USER_ACTIVATED",
    # Organization actions
    "ORG_CREATED": "ORG_CREATED",
    "ORG_UPDATED": "ORG_UPDATED",
    "ORG_DELETED": "ORG_DELETED",
    # Team member actions
    "TEAM_MEMBER_INVITED": "TEAM_MEMBER_INVITED",
    "TEAM_MEMBER_JOINED": "TEAM_MEMBER_JOINED",
    "TEAM_MEMBER_REMOVED": "TEAM_MEMBER_REMOVED",
    "TEAM_MEMBER_ROLE_CHANGED": "TEAM_MEMBER_ROLE_CHANGED",
    # Subscription actions
    "SUBSCRIPTION_CREATED": "SUBSCRIPTION_CREATED",
    "SUBSCRIPTION_UPDATED": "SUBSCRIPTION_UPDATED",
    "SUBSCRIPTION_CANCELED": "SUBSCRIPTION_CANCELED",
    "SUBSCRIPTION_RENEWED": "SUBSCRIPTION_RENEWED",
    "SUBSCRIPTION_REVOKED": "SUBSCRIPTION_REVOKED",
    "SUBSCRIPTION_OVERRIDE": "SUBSCRIPTION_OVERRIDE",
    # Data actions
    "DATA_EXPORTED": "DATA_EXPORTED",
    "DATA_IMPORTED": "DATA_IMPORTED",
    "DATA_DELETED": "DATA_DELETED",
    # Security actions
    "PASSWORD_CHANGED": "PASSWORD_CHANGED",
    "MFA_ENABLED": "MFA_ENABLED",
    "MFA_DISABLED": "MFA_DISABLED",
    "API_KEY_CREATED": "API_KEY_CREATED",
    "API_KEY_REVOKED": "API_KEY_REVOKED",
    # AI actions
    "AI_CHAT_MESSAGE": "AI_CHAT_MESSAGE",
    "AI_GENERATION_STARTED": "AI_GENERATION_STARTED",
    "AI_GENERATION_COMPLETED": "AI_GENERATION_COMPLETED",
    # Admin actions
    "ADMIN_USER_IMPERSONATED": "ADMIN_USER_IMPERSONATED",
    "ADMIN_SETTING_CHANGED": "ADMIN_SETTING_CHANGED",
    "QUOTA_ADJUSTED": "QUOTA_ADJUSTED",
    # Feature flag actions
    "FEATURE_FLAG_CREATED": "FEATURE_FLAG_CREATED",
    "FEATURE_FLAG_UPDATED": "FEATURE_FLAG_UPDATED",
    "FEATURE_FLAG_DELETED": "FEATURE_FLAG_DELETED",
}

# Audit rows may carry usage counters such as tokensUsed, so match credential
# names rather than any key containing "token".
_SENSITIVE_KEYS = {"token", "access_token", "refresh_token", "id_token", "bearer"}
_SENSITIVE_KEY_PATTERNS = ["api_key", "apikey", "authorization", "secret", "password", "credential"]
_REDACTED_VALUE = "[REDACTED]"
_DEFAULT_LIMIT = 100
_STATS_SCAN_LIMIT = 10_000
_EXPORT_LIMIT = 50_000


def _is_sensitive_key(key: str) -> bool:
    # Match sensitive key fragments case-insensitively to enforce redaction policy.
    lowered = key.lower()
    if lowered in _SENSITIVE_KEYS:
        return True
    return any(pattern in lowered for pattern in _SENSITIVE_KEY_PATTERNS)


def sanitize_metadata(value: Any) -> Any:
    # Recursively scrub sensitive fields while preserving safe structure.
    if isinstance(value, dict):
        sanitized: dict[str, Any] = {}
        for raw_key, raw_value in value.items():
            key = str(raw_key)
            if _is_sensitive_key(key):
                sanitized[key] = _REDACTED_VALUE
            else:
                sanitized[key] = sanitize_metadata(raw_value)
        return sanitized
    if isinstance(value, list):
        return [sanitize_metadata(item) for item in value]
    return value


def get_request_context(request: Request | None) -> dict[str, str | None]:
    # Extract client hints without persisting credentials.
    if request is None:
        return {"ip_address": None, "user_agent": None}
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        ip_address = forwarded.split(",")[0].strip()
    else:
        ip_address = request.client.host if request.client else None
    user_agent = request.headers.get("user-agent")
    return {"ip_address": ip_address, "user_agent": user_agent}


async def record_audit_log(
    *,
    session: AsyncSession | None = None,
    user_id: str | None,
    action: str,
    resource: str,
    status: str,
    organization_id: str | None = None,
    resource_id: str | None = None,
    metadata: dict[str, Any] | None = None,
    ip_address: str | None = None,
    user_agent: str | None = None,
    timestamp: datetime | None = None,
    commit: bool | None = None,
    best_effort: bool = True,
) -> None:
    # Write audit rows in a best-effort manner to avoid breaking user flows.
    entry = AuditLog(
        user_id=user_id,
        organization_id=organization_id,
        action=action,
        resource=resource,
        resource_id=resource_id,
        status=status,
        metadata_json=sanitize_metadata(metadata) if metadata is not None else None,
        ip_address=ip_address,
        user_agent=user_agent,
        timestamp=timestamp or utc_now(),
    )

    if session is None:
        async with SessionLocal() as audit_session:
            try:
                audit_session.add(entry)
                await audit_session.commit()
            except SQLAlchemyError as exc:
                await audit_session.rollback()
                level = logger.warning if best_effort else logger.error
                level(
                    "audit_log_write_failed action=%s organization_id=%s",
                    action,
                    organization_id,
                    exc_info=exc,
                )
        return

    resolved_commit = commit if commit is not None else False
    try:
        session.add(entry)
        if resolved_commit:
            await session.commit()
    except SQLAlchemyError as exc:
        if resolved_commit:
            await session.rollback()
        level = logger.warning if best_effort else logger.error
        level(
            "audit_log_write_failed action=%s organization_id=%s",
            action,
            organization_id,
            exc_info=exc,
        )


def serialize_audit_log(entry: AuditLog) -> dict[str, Any]:
    return {
        "id": entry.id,
        "user_id": entry.user_id,
        "organization_id": entry.organization_id,
        "action": entry.action,
        "resource": entry.resource,
        "resource_id": entry.resource_id,
        "status": entry.status,
        "metadata": entry.metadata_json,
        "ip_address": entry.ip_address,
        "user_agent": entry.user_agent,
        "timestamp": entry.timestamp.isoformat() if entry.timestamp else None,
    }


async def list_by_user(session: AsyncSession, user_id: str, *, limit: int = _DEFAULT_LIMIT) -> list[AuditLog]:
    result = await session.execute(
        select(AuditLog)
        .where(AuditLog.user_id == user_id)
        .order_by(AuditLog.timestamp.desc())
        .limit(limit)
    )
    return list(result.scalars().all())


async def list_by_organization(
    session: AsyncSession, organization_id: str, *, limit: int = _DEFAULT_LIMIT
) -> list[AuditLog]:
    result = await session.execute(
        select(AuditLog)
        .where(AuditLog.organization_id == organization_id)
        .order_by(AuditLog.timestamp.desc())
        .limit(limit)
    )
    return list(result.scalars().all())


async def list_by_action(session: AsyncSession, action: str, *, limit: int = _DEFAULT_LIMIT) -> list[AuditLog]:
    result = await session.execute(
        select(AuditLog)
        .where(AuditLog.action == action)
        .order_by(AuditLog.timestamp.desc())
        .limit(limit)
    )
    return list(result.scalars().all())


async def list_by_time_range(
    session: AsyncSession,
    *,
    start: datetime,
    end: datetime,
    organization_id: str | None = None,
    limit: int = _DEFAULT_LIMIT,
) -> list[AuditLog]:
    # Range bounds are inclusive on both ends.
    stmt = select(AuditLog).where(AuditLog.timestamp >= start, AuditLog.timestamp <= end)
    if organization_id:
        stmt = stmt.where(AuditLog.organization_id == organization_id)
    result = await session.execute(stmt.order_by(AuditLog.timestamp.desc()).limit(limit))
    return list(result.scalars().all())


async def get_audit_log_stats(
    session: AsyncSession,
    organization_id: str,
    *,
    days: int = 30,
    now: datetime | None = None,
) -> dict[str, Any]:
    # Summarize recent activity per organization for the dashboard.
    since = (now or utc_now()) - timedelta(days=days)
    result = await session.execute(
        select(AuditLog)
        .where(AuditLog.organization_id == organization_id, AuditLog.timestamp >= since)
        .order_by(AuditLog.timestamp.desc())
        .limit(_STATS_SCAN_LIMIT)
    )
    logs = list(result.scalars().all())
    action_counts = Counter(entry.action for entry in logs)
    return {
        "total": len(logs),
        "success_count": sum(1 for entry in logs if entry.status == "success"),
        "failure_count": sum(1 for entry in logs if entry.status == "failure"),
        "action_counts": dict(action_counts),
        "period_days": days,
    }


async def export_audit_logs(
    session: AsyncSession,
    organization_id: str,
    *,
    start: datetime | None = None,
    end: datetime | None = None,
) -> list[AuditLog]:
    # Compliance export; bounded to keep a single response manageable.
    stmt = select(AuditLog).where(AuditLog.organization_id == organization_id)
    if start is not None:
        stmt = stmt.where(AuditLog.timestamp >= start)
    if end is not None:
        stmt = stmt.where(AuditLog.timestamp <= end)
    result = await session.execute(stmt.order_by(AuditLog.timestamp.desc()).limit(_EXPORT_LIMIT))
    return list(result.scalars().all())
