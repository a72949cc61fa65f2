from __future__ import annotations

from datetime import datetime

from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy.ext.asyncio import AsyncSession

from taskcoda.apps.api.deps import get_current_user, get_db
from taskcoda.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from taskcoda.apps.api.response import success_response
from taskcoda.core.periods import month_end, month_start
from taskcoda.domain.models import User
from taskcoda.services.organizations import require_member
from taskcoda.services.quota import get_quota_service
from taskcoda.services.usage import METRIC_TYPES, get_usage_meter


router = APIRouter(prefix="/usage", tags=["usage"], responses=DEFAULT_ERROR_RESPONSES)

_METRIC_PATTERN = "^(" + "|".join(METRIC_TYPES.values()) + ")$"


@router.get("/{organization_id}")
async def current_usage(
    organization_id: str,
    request: Request,
    metric_type: str | None = Query(default=None, pattern=_METRIC_PATTERN),
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
) -> dict:
    await require_member(db, organization_id, user.id)
    data = await get_usage_meter().get_current_usage(db, organization_id=organization_id, metric_type=metric_type)
    return success_response(request=request, data=data)


@router.get("/{organization_id}/quota/{metric_type}")
async def quota_status(
    organization_id: str,
    metric_type: str,
    request: Request,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
) -> dict:
    await require_member(db, organization_id, user.id)
    status = await get_quota_service().check_quota(db, organization_id=organization_id, metric_type=metric_type)
    return success_response(request=request, data=status.as_dict())


@router.get("/{organization_id}/history/{metric_type}")
async def usage_history(
    organization_id: str,
    metric_type: str,
    request: Request,
    months: int = Query(default=6, ge=1, le=24),
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
) -> dict:
    await require_member(db, organization_id, user.id)
    history = await get_usage_meter().get_usage_history(
        db, organization_id=organization_id, metric_type=metric_type, months=months
    )
    return success_response(request=request, data={"items": history})


@router.get("/{organization_id}/by-user/{metric_type}")
async def usage_by_user(
    organization_id: str,
    metric_type: str,
    request: Request,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
) -> dict:
    await require_member(db, organization_id, user.id)
    items = await get_usage_meter().get_usage_by_user(db, organization_id=organization_id, metric_type=metric_type)
    return success_response(request=request, data={"items": items})


@router.get("/{organization_id}/export")
async def export_usage(
    organization_id: str,
    request: Request,
    period: datetime | None = Query(default=None, description="Any instant inside the month to export"),
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
) -> dict:
    await require_member(db, organization_id, user.id)
    meter = get_usage_meter()
    start, end = meter.current_period() if period is None else (month_start(period), month_end(period))
    data = await meter.export_usage_for_billing(
        db, organization_id=organization_id, period_start=start, period_end=end
    )
    return success_response(request=request, data=data)
