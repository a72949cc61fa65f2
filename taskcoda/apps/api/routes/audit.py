from __future__ import annotations

from datetime import datetime

from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy.ext.asyncio import AsyncSession

from taskcoda.apps.api.deps import get_current_user, get_db, get_super_admin
from taskcoda.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from taskcoda.apps.api.response import success_response
from taskcoda.core.errors import PermissionDeniedError
from taskcoda.domain.models import User
from taskcoda.services import audit as audit_service
from taskcoda.services.audit import AUDIT_ACTIONS, get_request_context, record_audit_log, serialize_audit_log
from taskcoda.services.organizations import check_permission


router = APIRouter(prefix="/audit-logs", tags=["audit"], responses=DEFAULT_ERROR_RESPONSES)


async def _require_org_admin(db: AsyncSession, organization_id: str, user: User) -> None:
    # Organization audit trails are visible to owners and admins only.
    result = await check_permission(db, user_id=user.id, organization_id=organization_id, required_role="admin")
    if not result["has_permission"]:
        raise PermissionDeniedError("Must be owner or admin")


@router.get("/me")
async def my_audit_logs(
    request: Request,
    limit: int = Query(default=100, ge=1, le=500),
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
) -> dict:
    entries = await audit_service.list_by_user(db, user.id, limit=limit)
    return success_response(request=request, data={"items": [serialize_audit_log(e) for e in entries]})


@router.get("/organizations/{organization_id}")
async def organization_audit_logs(
    organization_id: str,
    request: Request,
    limit: int = Query(default=100, ge=1, le=500),
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
) -> dict:
    await _require_org_admin(db, organization_id, user)
    entries = await audit_service.list_by_organization(db, organization_id, limit=limit)
    return success_response(request=request, data={"items": [serialize_audit_log(e) for e in entries]})


@router.get("/organizations/{organization_id}/stats")
async def organization_audit_stats(
    organization_id: str,
    request: Request,
    days: int = Query(default=30, ge=1, le=365),
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
) -> dict:
    await _require_org_admin(db, organization_id, user)
    stats = await audit_service.get_audit_log_stats(db, organization_id, days=days)
    return success_response(request=request, data=stats)


@router.get("/organizations/{organization_id}/export")
async def export_organization_audit_logs(
    organization_id: str,
    request: Request,
    start: datetime | None = None,
    end: datetime | None = None,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
) -> dict:
    await _require_org_admin(db, organization_id, user)
    entries = await audit_service.export_audit_logs(db, organization_id, start=start, end=end)
    request_ctx = get_request_context(request)
    await record_audit_log(
        session=db,
        user_id=user.id,
        organization_id=organization_id,
        action=AUDIT_ACTIONS["DATA_EXPORTED"],
        resource="audit_logs",
        status="success",
        metadata={"count": len(entries)},
        ip_address=request_ctx["ip_address"],
        user_agent=request_ctx["user_agent"],
        commit=True,
    )
    return success_response(request=request, data={"items": [serialize_audit_log(e) for e in entries]})


@router.get("/actions/{action}")
async def audit_logs_by_action(
    action: str,
    request: Request,
    limit: int = Query(default=100, ge=1, le=500),
    admin: User = Depends(get_super_admin),
    db: AsyncSession = Depends(get_db),
) -> dict:
    _ = admin
    entries = await audit_service.list_by_action(db, action, limit=limit)
    return success_response(request=request, data={"items": [serialize_audit_log(e) for e in entries]})


@router.get("/range")
async def audit_logs_by_range(
    request: Request,
    start: datetime,
    end: datetime,
    organization_id: str | None = None,
    limit: int = Query(default=100, ge=1, le=500),
    admin: User = Depends(get_super_admin),
    db: AsyncSession = Depends(get_db),
) -> dict:
    _ = admin
    entries = await audit_service.list_by_time_range(
        db, start=start, end=end, organization_id=organization_id, limit=limit
    )
    return success_response(request=request, data={"items": [serialize_audit_log(e) for e in entries]})
