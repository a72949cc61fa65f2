from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from taskcoda.domain.models import Organization, TeamMember


async def get_active(session: AsyncSession, organization_id: str) -> Organization | None:
    # Soft-deleted organizations are invisible to normal reads.
    org = await session.get(Organization, organization_id)
    if org is None or org.deleted_at is not None:
        return None
    return org


async def get_by_slug(session: AsyncSession, slug: str) -> Organization | None:
    result = await session.execute(
        select(Organization).where(Organization.slug == slug, Organization.deleted_at.is_(None))
    )
    return result.scalars().first()


async def slug_taken(session: AsyncSession, slug: str) -> bool:
    # Slugs stay reserved after soft delete.
    result = await session.execute(select(Organization.id).where(Organization.slug == slug))
    return result.first() is not None


async def get_membership(session: AsyncSession, organization_id: str, user_id: str) -> TeamMember | None:
    result = await session.execute(
        select(TeamMember).where(
            TeamMember.organization_id == organization_id,
            TeamMember.user_id == user_id,
        )
    )
    return result.scalars().first()


async def list_members(session: AsyncSession, organization_id: str) -> list[TeamMember]:
    result = await session.execute(
        select(TeamMember)
        .where(TeamMember.organization_id == organization_id)
        .order_by(TeamMember.created_at.asc())
    )
    return list(result.scalars().all())


async def list_memberships_for_user(session: AsyncSession, user_id: str) -> list[TeamMember]:
    result = await session.execute(select(TeamMember).where(TeamMember.user_id == user_id))
    return list(result.scalars().all())
