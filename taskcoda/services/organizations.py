from __future__ import annotations

from datetime import datetime
import logging
from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from taskcoda.core.errors import (
    ConflictError,
    MembershipNotFoundError,
    OrganizationNotFoundError,
    PermissionDeniedError,
    UserNotFoundError,
    ValidationFailedError,
)
from taskcoda.core.periods import utc_now
from taskcoda.domain.models import Organization, TeamMember, User
from taskcoda.persistence.repos import organizations as org_repo
from taskcoda.persistence.repos import users as users_repo
from taskcoda.services import emails
from taskcoda.services.audit import AUDIT_ACTIONS, record_audit_log


logger = logging.getLogger(__name__)

ROLE_HIERARCHY = {"owner": 3, "admin": 2, "member": 1}
_MANAGER_ROLES = {"owner", "admin"}
_ASSIGNABLE_ROLES = {"admin", "member"}
_PLANS = {"free", "pro", "enterprise"}


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def serialize_organization(org: Organization) -> dict[str, Any]:
    return {
        "id": org.id,
        "name": org.name,
        "slug": org.slug,
        "owner_id": org.owner_id,
        "plan": org.plan or "free",
        "subscription_id": org.subscription_id,
        "settings": org.settings,
        "metadata": org.metadata_json,
        "created_at": _iso(org.created_at),
        "updated_at": _iso(org.updated_at),
    }


def serialize_member(member: TeamMember, user: User | None = None) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "id": member.id,
        "organization_id": member.organization_id,
        "user_id": member.user_id,
        "role": member.role,
        "status": member.status,
        "invited_by": member.invited_by,
        "invited_at": _iso(member.invited_at),
        "joined_at": _iso(member.joined_at),
    }
    if user is not None:
        payload["user"] = {"name": user.name, "email": user.email, "image": user.image}
    else:
        payload["user"] = None
    return payload


async def _require_manager(session: AsyncSession, organization_id: str, user_id: str) -> TeamMember:
    # Owners and admins manage organization settings and membership.
    membership = await org_repo.get_membership(session, organization_id, user_id)
    if membership is None or membership.role not in _MANAGER_ROLES:
        raise PermissionDeniedError("Must be owner or admin")
    return membership


async def require_member(session: AsyncSession, organization_id: str, user_id: str) -> TeamMember:
    membership = await org_repo.get_membership(session, organization_id, user_id)
    if membership is None or membership.status != "active":
        raise PermissionDeniedError("Not a member of this organization")
    return membership


async def create_organization(
    session: AsyncSession,
    *,
    user: User,
    name: str,
    slug: str,
    plan: str | None = None,
) -> Organization:
    if not name.strip() or not slug.strip():
        raise ValidationFailedError("Name and slug are required")
    if await org_repo.slug_taken(session, slug):
        raise ConflictError("Organization slug already exists")

    now = utc_now()
    resolved_plan = plan if plan in _PLANS else "free"
    org = Organization(
        name=name,
        slug=slug,
        owner_id=user.id,
        plan=resolved_plan,
        created_at=now,
        updated_at=now,
    )
    session.add(org)
    await session.flush()
    session.add(
        TeamMember(
            organization_id=org.id,
            user_id=user.id,
            role="owner",
            status="active",
            joined_at=now,
            created_at=now,
            updated_at=now,
        )
    )
    user.organization_id = org.id
    user.updated_at = now
    await session.commit()

    await record_audit_log(
        session=session,
        user_id=user.id,
        organization_id=org.id,
        action=AUDIT_ACTIONS["ORG_CREATED"],
        resource=f"organization/{org.id}",
        resource_id=org.id,
        status="success",
        metadata={"name": name, "slug": slug},
        commit=True,
    )
    if user.email:
        await emails.send_organization_created_email(to=user.email, organization_name=name, plan=resolved_plan)
    logger.info("organization_created organization_id=%s slug=%s", org.id, slug)
    return org


async def get_organization(session: AsyncSession, organization_id: str) -> Organization:
    org = await org_repo.get_active(session, organization_id)
    if org is None:
        raise OrganizationNotFoundError("Organization not found")
    return org


async def get_organization_by_slug(session: AsyncSession, slug: str) -> Organization:
    org = await org_repo.get_by_slug(session, slug)
    if org is None:
        raise OrganizationNotFoundError("Organization not found")
    return org


async def list_user_organizations(session: AsyncSession, user_id: str) -> list[dict[str, Any]]:
    # Active memberships only; soft-deleted organizations are hidden.
    memberships = await org_repo.list_memberships_for_user(session, user_id)
    organizations = []
    for membership in memberships:
        if membership.status != "active":
            continue
        org = await org_repo.get_active(session, membership.organization_id)
        if org is None:
            continue
        payload = serialize_organization(org)
        payload["role"] = membership.role
        payload["membership_id"] = membership.id
        organizations.append(payload)
    return organizations


async def update_organization(
    session: AsyncSession,
    *,
    user: User,
    organization_id: str,
    name: str | None = None,
    settings: dict[str, Any] | None = None,
    metadata: dict[str, Any] | None = None,
) -> Organization:
    org = await get_organization(session, organization_id)
    await _require_manager(session, organization_id, user.id)
    if name:
        org.name = name
    if settings is not None:
        org.settings = settings
    if metadata is not None:
        org.metadata_json = metadata
    org.updated_at = utc_now()
    await session.commit()
    await record_audit_log(
        session=session,
        user_id=user.id,
        organization_id=organization_id,
        action=AUDIT_ACTIONS["ORG_UPDATED"],
        resource=f"organization/{organization_id}",
        resource_id=organization_id,
        status="success",
        metadata={"name": name, "settings": settings},
        commit=True,
    )
    return org


async def delete_organization(session: AsyncSession, *, user: User, organization_id: str) -> None:
    # Soft delete only; the owner is the only caller allowed.
    org = await org_repo.get_active(session, organization_id)
    if org is None or org.owner_id != user.id:
        raise PermissionDeniedError("Must be owner to delete organization")
    now = utc_now()
    org.deleted_at = now
    org.updated_at = now
    await session.commit()
    await record_audit_log(
        session=session,
        user_id=user.id,
        organization_id=organization_id,
        action=AUDIT_ACTIONS["ORG_DELETED"],
        resource=f"organization/{organization_id}",
        resource_id=organization_id,
        status="success",
        commit=True,
    )


async def list_team_members(session: AsyncSession, organization_id: str) -> list[dict[str, Any]]:
    members = await org_repo.list_members(session, organization_id)
    user_ids = [member.user_id for member in members]
    users: dict[str, User] = {}
    if user_ids:
        result = await session.execute(select(User).where(User.id.in_(user_ids)))
        users = {user.id: user for user in result.scalars().all()}
    return [serialize_member(member, users.get(member.user_id)) for member in members]


async def invite_team_member(
    session: AsyncSession,
    *,
    user: User,
    organization_id: str,
    email: str,
    role: str,
) -> TeamMember:
    if role not in _ASSIGNABLE_ROLES:
        raise ValidationFailedError("Role must be admin or member")
    org = await get_organization(session, organization_id)
    await _require_manager(session, organization_id, user.id)

    invitee = await users_repo.get_by_email(session, email)
    if invitee is None:
        raise UserNotFoundError("User not found with this email")
    if await org_repo.get_membership(session, organization_id, invitee.id) is not None:
        raise ConflictError("User is already a member of this organization")

    now = utc_now()
    membership = TeamMember(
        organization_id=organization_id,
        user_id=invitee.id,
        role=role,
        status="pending",
        invited_by=user.id,
        invited_at=now,
        created_at=now,
        updated_at=now,
    )
    session.add(membership)
    await session.commit()

    await record_audit_log(
        session=session,
        user_id=user.id,
        organization_id=organization_id,
        action=AUDIT_ACTIONS["TEAM_MEMBER_INVITED"],
        resource=f"team_member/{membership.id}",
        resource_id=membership.id,
        status="success",
        metadata={"invited_email": email, "role": role},
        commit=True,
    )
    await emails.send_team_invitation_email(
        to=email,
        organization_name=org.name,
        inviter_name=user.name or "A team member",
        role=role,
    )
    return membership


async def accept_invitation(session: AsyncSession, *, user: User, membership_id: str) -> str:
    membership = await session.get(TeamMember, membership_id)
    if membership is None or membership.user_id != user.id:
        raise PermissionDeniedError("Invalid invitation")
    if membership.status != "pending":
        raise ConflictError("Invitation already processed")

    now = utc_now()
    membership.status = "active"
    membership.joined_at = now
    membership.updated_at = now
    if not user.organization_id:
        user.organization_id = membership.organization_id
        user.updated_at = now
    await session.commit()

    await record_audit_log(
        session=session,
        user_id=user.id,
        organization_id=membership.organization_id,
        action=AUDIT_ACTIONS["TEAM_MEMBER_JOINED"],
        resource=f"team_member/{membership.id}",
        resource_id=membership.id,
        status="success",
        commit=True,
    )
    return membership.organization_id


async def remove_team_member(session: AsyncSession, *, user: User, membership_id: str) -> None:
    membership = await session.get(TeamMember, membership_id)
    if membership is None:
        raise MembershipNotFoundError("Membership not found")

    requester = await org_repo.get_membership(session, membership.organization_id, user.id)
    is_manager = requester is not None and requester.role in _MANAGER_ROLES
    if not is_manager and membership.user_id != user.id:
        raise PermissionDeniedError("Cannot remove this team member")
    if membership.role == "owner":
        raise PermissionDeniedError("Cannot remove organization owner")

    organization_id = membership.organization_id
    removed_user_id = membership.user_id
    await session.delete(membership)
    await session.commit()

    await record_audit_log(
        session=session,
        user_id=user.id,
        organization_id=organization_id,
        action=AUDIT_ACTIONS["TEAM_MEMBER_REMOVED"],
        resource=f"team_member/{membership_id}",
        resource_id=membership_id,
        status="success",
        metadata={"removed_user_id": removed_user_id},
        commit=True,
    )


async def update_team_member_role(
    session: AsyncSession, *, user: User, membership_id: str, role: str
) -> TeamMember:
    if role not in _ASSIGNABLE_ROLES:
        raise ValidationFailedError("Role must be admin or member")
    membership = await session.get(TeamMember, membership_id)
    if membership is None:
        raise MembershipNotFoundError("Membership not found")
    await _require_manager(session, membership.organization_id, user.id)
    if membership.role == "owner":
        raise PermissionDeniedError("Cannot change owner role")

    previous_role = membership.role
    membership.role = role
    membership.updated_at = utc_now()
    await session.commit()

    await record_audit_log(
        session=session,
        user_id=user.id,
        organization_id=membership.organization_id,
        action=AUDIT_ACTIONS["TEAM_MEMBER_ROLE_CHANGED"],
        resource=f"team_member/{membership_id}",
        resource_id=membership_id,
        status="success",
        metadata={"new_role": role, "previous_role": previous_role},
        commit=True,
    )
    return membership


async def check_permission(
    session: AsyncSession,
    *,
    user_id: str,
    organization_id: str,
    required_role: str | None = None,
) -> dict[str, Any]:
    # Role hierarchy: owner > admin > member; pending members have no access.
    membership = await org_repo.get_membership(session, organization_id, user_id)
    if membership is None or membership.status != "active":
        return {"has_permission": False, "role": None}
    if required_role is None:
        return {"has_permission": True, "role": membership.role}
    has_permission = ROLE_HIERARCHY.get(membership.role, 0) >= ROLE_HIERARCHY.get(required_role, 0)
    return {"has_permission": has_permission, "role": membership.role}
