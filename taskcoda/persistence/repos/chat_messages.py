from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from taskcoda.domain.models import ChatMessage


async def add_message(
    session: AsyncSession,
    *,
    organization_id: str | None,
    user_id: str,
    role: str,
    content: str,
    conversation_id: str,
    timestamp: datetime,
    metadata: dict[str, Any] | None = None,
) -> ChatMessage:
    message = ChatMessage(
        organization_id=organization_id,
        user_id=user_id,
        role=role,
        content=content,
        conversation_id=conversation_id,
        metadata_json=metadata,
        timestamp=timestamp,
    )
    session.add(message)
    return message


async def list_conversation(session: AsyncSession, conversation_id: str, *, limit: int) -> list[ChatMessage]:
    result = await session.execute(
        select(ChatMessage)
        .where(ChatMessage.conversation_id == conversation_id, ChatMessage.deleted_at.is_(None))
        .order_by(ChatMessage.timestamp.asc())
        .limit(limit)
    )
    return list(result.scalars().all())


async def list_for_user(session: AsyncSession, user_id: str, *, limit: int) -> list[ChatMessage]:
    result = await session.execute(
        select(ChatMessage)
        .where(ChatMessage.user_id == user_id, ChatMessage.deleted_at.is_(None))
        .order_by(ChatMessage.timestamp.desc())
        .limit(limit)
    )
    return list(result.scalars().all())
