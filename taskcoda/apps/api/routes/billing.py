from __future__ import annotations

from typing import Literal

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from taskcoda.apps.api.deps import get_current_user, get_db
from taskcoda.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from taskcoda.apps.api.response import success_response
from taskcoda.domain.models import User
from taskcoda.services import billing as billing_service


router = APIRouter(prefix="/billing", tags=["billing"], responses=DEFAULT_ERROR_RESPONSES)


class CheckoutRequest(BaseModel):
    price_id: str = Field(min_length=1)
    plan: Literal["free", "pro", "enterprise"]


@router.get("/plans")
async def available_plans(request: Request, user: User = Depends(get_current_user)) -> dict:
    _ = user
    return success_response(request=request, data=await billing_service.get_available_plans())


@router.get("/organizations/{organization_id}")
async def organization_billing(
    organization_id: str,
    request: Request,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
) -> dict:
    data = await billing_service.get_organization_billing(db, user=user, organization_id=organization_id)
    return success_response(request=request, data=data)


@router.post("/organizations/{organization_id}/checkout")
async def create_checkout(
    organization_id: str,
    payload: CheckoutRequest,
    request: Request,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
) -> dict:
    data = await billing_service.create_organization_checkout(
        db, user=user, organization_id=organization_id, price_id=payload.price_id, plan=payload.plan
    )
    return success_response(request=request, data=data)


@router.post("/organizations/{organization_id}/portal")
async def customer_portal(
    organization_id: str,
    request: Request,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
) -> dict:
    data = await billing_service.get_customer_portal_url(db, user=user, organization_id=organization_id)
    return success_response(request=request, data=data)


@router.post("/organizations/{organization_id}/cancel")
async def cancel_subscription(
    organization_id: str,
    request: Request,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
) -> dict:
    data = await billing_service.cancel_organization_subscription(db, user=user, organization_id=organization_id)
    return success_response(request=request, data=data)
