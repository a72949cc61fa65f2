from __future__ import annotations

from fastapi import APIRouter, Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from taskcoda.apps.api.deps import get_current_user, get_db
from taskcoda.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from taskcoda.apps.api.response import success_response
from taskcoda.domain.models import User
from taskcoda.services.feature_flags import is_feature_enabled


router = APIRouter(prefix="/feature-flags", tags=["feature-flags"], responses=DEFAULT_ERROR_RESPONSES)


@router.get("/{name}/enabled")
async def feature_enabled(
    name: str,
    request: Request,
    organization_id: str | None = None,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
) -> dict:
    # Defaults to the caller's active organization.
    org_id = organization_id or user.organization_id
    enabled = await is_feature_enabled(db, name, org_id)
    return success_response(request=request, data={"name": name, "enabled": enabled})
