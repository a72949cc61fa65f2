from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from taskcoda.domain.models import Subscription


async def get_by_polar_id(session: AsyncSession, polar_id: str) -> Subscription | None:
    result = await session.execute(select(Subscription).where(Subscription.polar_id == polar_id))
    return result.scalars().first()


async def get_for_organization(session: AsyncSession, organization_id: str) -> Subscription | None:
    # Most recently created subscription wins when an organization re-subscribes.
    result = await session.execute(
        select(Subscription)
        .where(Subscription.organization_id == organization_id)
        .order_by(Subscription.created_at.desc())
    )
    return result.scalars().first()


async def get_for_user(session: AsyncSession, user_id: str) -> Subscription | None:
    result = await session.execute(
        select(Subscription).where(Subscription.user_id == user_id).order_by(Subscription.created_at.desc())
    )
    return result.scalars().first()
