from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from taskcoda.domain.models import User


async def get_by_token(session: AsyncSession, token_identifier: str) -> User | None:
    result = await session.execute(select(User).where(User.token_identifier == token_identifier))
    return result.scalars().first()


async def get_by_email(session: AsyncSession, email: str) -> User | None:
    result = await session.execute(select(User).where(User.email == email, User.deleted_at.is_(None)))
    return result.scalars().first()
