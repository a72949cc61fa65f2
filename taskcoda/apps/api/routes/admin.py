from __future__ import annotations

from typing import Literal

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from taskcoda.apps.api.deps import get_db, get_super_admin
from taskcoda.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from taskcoda.apps.api.response import success_response
from taskcoda.domain.models import User
from taskcoda.services import admin as admin_service
from taskcoda.services import feature_flags as flag_service
from taskcoda.services.feature_flags import serialize_flag


router = APIRouter(prefix="/admin", tags=["admin"], responses=DEFAULT_ERROR_RESPONSES)


class SuspendRequest(BaseModel):
    reason: str = Field(min_length=1, max_length=1000)


class PlanOverrideRequest(BaseModel):
    plan: Literal["free", "pro", "enterprise"]
    reason: str = Field(min_length=1, max_length=1000)


class QuotaAdjustRequest(BaseModel):
    quota_type: str
    new_limit: int | None = None
    reason: str = Field(min_length=1, max_length=1000)


class RateLimitResetRequest(BaseModel):
    key: str = Field(min_length=1)
    prefix: str | None = None


class FeatureFlagCreateRequest(BaseModel):
    name: str = Field(min_length=1, max_length=100, pattern=r"^[a-z0-9][a-z0-9_.-]*$")
    description: str = ""
    enabled: bool = False
    organization_id: str | None = None
    rollout_percentage: int | None = Field(default=None, ge=0, le=100)


class FeatureFlagUpdateRequest(BaseModel):
    enabled: bool | None = None
    rollout_percentage: int | None = Field(default=None, ge=0, le=100)
    description: str | None = None


@router.get("/users")
async def search_users(
    request: Request,
    query: str | None = None,
    role: str | None = None,
    suspended: bool | None = None,
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    admin: User = Depends(get_super_admin),
    db: AsyncSession = Depends(get_db),
) -> dict:
    _ = admin
    result = await admin_service.search_users(
        db, query=query, role=role, suspended=suspended, limit=limit, offset=offset
    )
    return success_response(request=request, data=result)


@router.get("/users/{user_id}")
async def user_details(
    user_id: str,
    request: Request,
    admin: User = Depends(get_super_admin),
    db: AsyncSession = Depends(get_db),
) -> dict:
    _ = admin
    return success_response(request=request, data=await admin_service.get_user_details(db, user_id))


@router.get("/users/{user_id}/activity")
async def user_activity(
    user_id: str,
    request: Request,
    limit: int = Query(default=100, ge=1, le=500),
    admin: User = Depends(get_super_admin),
    db: AsyncSession = Depends(get_db),
) -> dict:
    _ = admin
    items = await admin_service.get_user_activity(db, user_id, limit=limit)
    return success_response(request=request, data={"items": items})


@router.post("/users/{user_id}/suspend")
async def suspend_user(
    user_id: str,
    payload: SuspendRequest,
    request: Request,
    admin: User = Depends(get_super_admin),
    db: AsyncSession = Depends(get_db),
) -> dict:
    await admin_service.suspend_user(db, admin=admin, user_id=user_id, reason=payload.reason)
    return success_response(request=request, data={"success": True})


@router.post("/users/{user_id}/activate")
async def activate_user(
    user_id: str,
    request: Request,
    admin: User = Depends(get_super_admin),
    db: AsyncSession = Depends(get_db),
) -> dict:
    await admin_service.activate_user(db, admin=admin, user_id=user_id)
    return success_response(request=request, data={"success": True})


@router.get("/organizations")
async def list_organizations(
    request: Request,
    query: str | None = None,
    plan: str | None = None,
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    admin: User = Depends(get_super_admin),
    db: AsyncSession = Depends(get_db),
) -> dict:
    _ = admin
    result = await admin_service.list_organizations(db, query=query, plan=plan, limit=limit, offset=offset)
    return success_response(request=request, data=result)


@router.get("/organizations/{organization_id}")
async def organization_details(
    organization_id: str,
    request: Request,
    admin: User = Depends(get_super_admin),
    db: AsyncSession = Depends(get_db),
) -> dict:
    _ = admin
    details = await admin_service.get_organization_details(db, organization_id)
    return success_response(request=request, data=details)


@router.post("/organizations/{organization_id}/plan")
async def override_plan(
    organization_id: str,
    payload: PlanOverrideRequest,
    request: Request,
    admin: User = Depends(get_super_admin),
    db: AsyncSession = Depends(get_db),
) -> dict:
    await admin_service.override_subscription(
        db, admin=admin, organization_id=organization_id, new_plan=payload.plan, reason=payload.reason
    )
    return success_response(request=request, data={"success": True})


@router.post("/organizations/{organization_id}/quotas")
async def adjust_quota(
    organization_id: str,
    payload: QuotaAdjustRequest,
    request: Request,
    admin: User = Depends(get_super_admin),
    db: AsyncSession = Depends(get_db),
) -> dict:
    await admin_service.adjust_quota(
        db,
        admin=admin,
        organization_id=organization_id,
        quota_type=payload.quota_type,
        new_limit=payload.new_limit,
        reason=payload.reason,
    )
    return success_response(request=request, data={"success": True})


@router.get("/system/health")
async def system_health(
    request: Request,
    admin: User = Depends(get_super_admin),
    db: AsyncSession = Depends(get_db),
) -> dict:
    _ = admin
    return success_response(request=request, data=await admin_service.get_system_health(db))


@router.get("/system/errors")
async def recent_errors(
    request: Request,
    limit: int = Query(default=50, ge=1, le=500),
    admin: User = Depends(get_super_admin),
    db: AsyncSession = Depends(get_db),
) -> dict:
    _ = admin
    items = await admin_service.get_recent_errors(db, limit=limit)
    return success_response(request=request, data={"items": items})


@router.post("/rate-limits/reset")
async def reset_rate_limit(
    payload: RateLimitResetRequest,
    request: Request,
    admin: User = Depends(get_super_admin),
) -> dict:
    await admin_service.reset_rate_limit(admin=admin, key=payload.key, prefix=payload.prefix)
    return success_response(request=request, data={"success": True})


@router.get("/feature-flags")
async def list_feature_flags(
    request: Request,
    admin: User = Depends(get_super_admin),
    db: AsyncSession = Depends(get_db),
) -> dict:
    _ = admin
    flags = await flag_service.list_feature_flags(db)
    return success_response(request=request, data={"items": [serialize_flag(flag) for flag in flags]})


@router.post("/feature-flags", status_code=201)
async def create_feature_flag(
    payload: FeatureFlagCreateRequest,
    request: Request,
    admin: User = Depends(get_super_admin),
    db: AsyncSession = Depends(get_db),
) -> dict:
    flag = await flag_service.create_feature_flag(
        db,
        admin=admin,
        name=payload.name,
        description=payload.description,
        enabled=payload.enabled,
        organization_id=payload.organization_id,
        rollout_percentage=payload.rollout_percentage,
    )
    return success_response(request=request, data=serialize_flag(flag))


@router.patch("/feature-flags/{flag_id}")
async def update_feature_flag(
    flag_id: str,
    payload: FeatureFlagUpdateRequest,
    request: Request,
    admin: User = Depends(get_super_admin),
    db: AsyncSession = Depends(get_db),
) -> dict:
    flag = await flag_service.update_feature_flag(
        db,
        admin=admin,
        flag_id=flag_id,
        enabled=payload.enabled,
        rollout_percentage=payload.rollout_percentage,
        description=payload.description,
    )
    return success_response(request=request, data=serialize_flag(flag))


@router.delete("/feature-flags/{flag_id}")
async def delete_feature_flag(
    flag_id: str,
    request: Request,
    admin: User = Depends(get_super_admin),
    db: AsyncSession = Depends(get_db),
) -> dict:
    await flag_service.delete_feature_flag(db, admin=admin, flag_id=flag_id)
    return success_response(request=request, data={"success": True})
