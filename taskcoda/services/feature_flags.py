from __future__ import annotations

import hashlib
import logging
from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from taskcoda.core.errors import ConflictError, FeatureFlagNotFoundError, ValidationFailedError
from taskcoda.core.periods import utc_now
from taskcoda.domain.models import FeatureFlag, User
from taskcoda.services.audit import AUDIT_ACTIONS, record_audit_log


logger = logging.getLogger(__name__)

FULL_ROLLOUT = 100


def serialize_flag(flag: FeatureFlag) -> dict[str, Any]:
    return {
        "id": flag.id,
        "name": flag.name,
        "description": flag.description,
        "enabled": flag.enabled,
        "organization_id": flag.organization_id,
        "rollout_percentage": flag.rollout_percentage,
        "metadata": flag.metadata_json,
        "created_at": flag.created_at.isoformat() if flag.created_at else None,
        "updated_at": flag.updated_at.isoformat() if flag.updated_at else None,
    }


def _validate_rollout(value: int | None) -> None:
    if value is not None and not 0 <= value <= FULL_ROLLOUT:
        raise ValidationFailedError("Rollout percentage must be between 0 and 100")


def rollout_bucket(flag_name: str, organization_id: str) -> int:
    # Stable across processes and restarts, unlike hash().
    digest = hashlib.sha256(f"{flag_name}:{organization_id}".encode("utf-8")).hexdigest()
    return int(digest[:8], 16) % 100


async def get_flag_by_name(session: AsyncSession, name: str) -> FeatureFlag | None:
    result = await session.execute(select(FeatureFlag).where(FeatureFlag.name == name))
    return result.scalar_one_or_none()


async def list_feature_flags(session: AsyncSession) -> list[FeatureFlag]:
    result = await session.execute(select(FeatureFlag).order_by(FeatureFlag.name))
    return list(result.scalars().all())


async def create_feature_flag(
    session: AsyncSession,
    *,
    admin: User,
    name: str,
    description: str,
    enabled: bool,
    organization_id: str | None = None,
    rollout_percentage: int | None = None,
) -> FeatureFlag:
    _validate_rollout(rollout_percentage)
    if await get_flag_by_name(session, name) is not None:
        raise ConflictError("Feature flag with this name already exists")

    now = utc_now()
    flag = FeatureFlag(
        name=name,
        description=description,
        enabled=enabled,
        organization_id=organization_id,
        rollout_percentage=FULL_ROLLOUT if rollout_percentage is None else rollout_percentage,
        metadata_json={},
        created_at=now,
        updated_at=now,
    )
    session.add(flag)
    await session.commit()
    await record_audit_log(
        session=session,
        user_id=admin.id,
        organization_id=organization_id,
        action=AUDIT_ACTIONS["FEATURE_FLAG_CREATED"],
        resource=f"feature_flag/{name}",
        resource_id=flag.id,
        status="success",
        metadata={"name": name},
        commit=True,
    )
    return flag


async def update_feature_flag(
    session: AsyncSession,
    *,
    admin: User,
    flag_id: str,
    enabled: bool | None = None,
    rollout_percentage: int | None = None,
    description: str | None = None,
) -> FeatureFlag:
    _validate_rollout(rollout_percentage)
    flag = await session.get(FeatureFlag, flag_id)
    if flag is None:
        raise FeatureFlagNotFoundError("Feature flag not found")

    updates: dict[str, Any] = {}
    if enabled is not None:
        flag.enabled = enabled
        updates["enabled"] = enabled
    if rollout_percentage is not None:
        flag.rollout_percentage = rollout_percentage
        updates["rollout_percentage"] = rollout_percentage
    if description is not None:
        flag.description = description
        updates["description"] = description
    flag.updated_at = utc_now()
    await session.commit()
    await record_audit_log(
        session=session,
        user_id=admin.id,
        organization_id=flag.organization_id,
        action=AUDIT_ACTIONS["FEATURE_FLAG_UPDATED"],
        resource=f"feature_flag/{flag.name}",
        resource_id=flag.id,
        status="success",
        metadata={"updates": updates},
        commit=True,
    )
    return flag


async def delete_feature_flag(session: AsyncSession, *, admin: User, flag_id: str) -> None:
    flag = await session.get(FeatureFlag, flag_id)
    if flag is None:
        raise FeatureFlagNotFoundError("Feature flag not found")
    name = flag.name
    organization_id = flag.organization_id
    await session.delete(flag)
    await session.commit()
    await record_audit_log(
        session=session,
        user_id=admin.id,
        organization_id=organization_id,
        action=AUDIT_ACTIONS["FEATURE_FLAG_DELETED"],
        resource=f"feature_flag/{name}",
        resource_id=flag_id,
        status="success",
        metadata={"name": name},
        commit=True,
    )


def evaluate_flag(flag: FeatureFlag | None, organization_id: str | None) -> bool:
    if flag is None or not flag.enabled:
        return False
    if flag.organization_id and flag.organization_id != organization_id:
        return False
    percentage = FULL_ROLLOUT if flag.rollout_percentage is None else flag.rollout_percentage
    if percentage >= FULL_ROLLOUT:
        return True
    if percentage <= 0 or not organization_id:
        return False
    return rollout_bucket(flag.name, organization_id) < percentage


async def is_feature_enabled(session: AsyncSession, name: str, organization_id: str | None) -> bool:
    # Unknown flags are off.
    flag = await get_flag_by_name(session, name)
    enabled = evaluate_flag(flag, organization_id)
    logger.debug("feature_flag_evaluated name=%s organization_id=%s enabled=%s", name, organization_id, enabled)
    return enabled
