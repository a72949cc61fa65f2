from __future__ import annotations

from typing import Any, Literal

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from taskcoda.apps.api.deps import get_current_user, get_db
from taskcoda.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from taskcoda.apps.api.response import success_response
from taskcoda.domain.models import User
from taskcoda.services import organizations as org_service
from taskcoda.services.organizations import serialize_member, serialize_organization


router = APIRouter(prefix="/organizations", tags=["organizations"], responses=DEFAULT_ERROR_RESPONSES)


class OrganizationCreateRequest(BaseModel):
    name: str = Field(min_length=1, max_length=200)
    slug: str = Field(min_length=1, max_length=100, pattern=r"^[a-z0-9][a-z0-9-]*$")
    plan: Literal["free", "pro", "enterprise"] | None = None


class OrganizationUpdateRequest(BaseModel):
    name: str | None = Field(default=None, min_length=1, max_length=200)
    settings: dict[str, Any] | None = None
    metadata: dict[str, Any] | None = None


class InvitationRequest(BaseModel):
    email: str = Field(min_length=3, max_length=320)
    role: Literal["admin", "member"]


class RoleUpdateRequest(BaseModel):
    role: Literal["admin", "member"]


@router.post("", status_code=201)
async def create_organization(
    payload: OrganizationCreateRequest,
    request: Request,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
) -> dict:
    org = await org_service.create_organization(
        db, user=user, name=payload.name, slug=payload.slug, plan=payload.plan
    )
    return success_response(request=request, data=serialize_organization(org))


@router.get("")
async def list_organizations(
    request: Request,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
) -> dict:
    organizations = await org_service.list_user_organizations(db, user.id)
    return success_response(request=request, data={"items": organizations})


@router.get("/by-slug/{slug}")
async def get_organization_by_slug(
    slug: str,
    request: Request,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
) -> dict:
    org = await org_service.get_organization_by_slug(db, slug)
    await org_service.require_member(db, org.id, user.id)
    return success_response(request=request, data=serialize_organization(org))


@router.get("/{organization_id}")
async def get_organization(
    organization_id: str,
    request: Request,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
) -> dict:
    org = await org_service.get_organization(db, organization_id)
    await org_service.require_member(db, organization_id, user.id)
    return success_response(request=request, data=serialize_organization(org))


@router.patch("/{organization_id}")
async def update_organization(
    organization_id: str,
    payload: OrganizationUpdateRequest,
    request: Request,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
) -> dict:
    org = await org_service.update_organization(
        db,
        user=user,
        organization_id=organization_id,
        name=payload.name,
        settings=payload.settings,
        metadata=payload.metadata,
    )
    return success_response(request=request, data=serialize_organization(org))


@router.delete("/{organization_id}")
async def delete_organization(
    organization_id: str,
    request: Request,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
) -> dict:
    await org_service.delete_organization(db, user=user, organization_id=organization_id)
    return success_response(request=request, data={"success": True})


@router.get("/{organization_id}/members")
async def list_members(
    organization_id: str,
    request: Request,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
) -> dict:
    await org_service.require_member(db, organization_id, user.id)
    members = await org_service.list_team_members(db, organization_id)
    return success_response(request=request, data={"items": members})


@router.post("/{organization_id}/invitations", status_code=201)
async def invite_member(
    organization_id: str,
    payload: InvitationRequest,
    request: Request,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
) -> dict:
    membership = await org_service.invite_team_member(
        db, user=user, organization_id=organization_id, email=payload.email, role=payload.role
    )
    return success_response(request=request, data=serialize_member(membership))


@router.get("/{organization_id}/permissions")
async def check_permission(
    organization_id: str,
    request: Request,
    required_role: Literal["owner", "admin", "member"] | None = None,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
) -> dict:
    result = await org_service.check_permission(
        db, user_id=user.id, organization_id=organization_id, required_role=required_role
    )
    return success_response(request=request, data=result)


@router.post("/memberships/{membership_id}/accept")
async def accept_invitation(
    membership_id: str,
    request: Request,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
) -> dict:
    organization_id = await org_service.accept_invitation(db, user=user, membership_id=membership_id)
    return success_response(request=request, data={"organization_id": organization_id})


@router.patch("/memberships/{membership_id}")
async def update_member_role(
    membership_id: str,
    payload: RoleUpdateRequest,
    request: Request,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
) -> dict:
    membership = await org_service.update_team_member_role(
        db, user=user, membership_id=membership_id, role=payload.role
    )
    return success_response(request=request, data=serialize_member(membership))


@router.delete("/memberships/{membership_id}")
async def remove_member(
    membership_id: str,
    request: Request,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
) -> dict:
    await org_service.remove_team_member(db, user=user, membership_id=membership_id)
    return success_response(request=request, data={"success": True})
