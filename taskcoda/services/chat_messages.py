from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from taskcoda.core.periods import utc_now
from taskcoda.domain.models import ChatMessage
from taskcoda.persistence.repos import chat_messages as messages_repo


_CONVERSATION_SCAN_LIMIT = 1000
_PREVIEW_CHARS = 100


def serialize_message(message: ChatMessage) -> dict[str, Any]:
    return {
        "id": message.id,
        "organization_id": message.organization_id,
        "user_id": message.user_id,
        "role": message.role,
        "content": message.content,
        "conversation_id": message.conversation_id,
        "metadata": message.metadata_json,
        "timestamp": message.timestamp.isoformat() if message.timestamp else None,
    }


async def save_message(
    session: AsyncSession,
    *,
    organization_id: str | None,
    user_id: str,
    role: str,
    content: str,
    conversation_id: str,
    metadata: dict[str, Any] | None = None,
    commit: bool = True,
) -> ChatMessage:
    message = await messages_repo.add_message(
        session,
        organization_id=organization_id,
        user_id=user_id,
        role=role,
        content=content,
        conversation_id=conversation_id,
        timestamp=utc_now(),
        metadata=metadata,
    )
    if commit:
        await session.commit()
    return message


async def get_conversation_messages(
    session: AsyncSession, *, user_id: str, conversation_id: str, limit: int = 100
) -> list[ChatMessage]:
    # Only the caller's own messages are visible in history views.
    messages = await messages_repo.list_conversation(session, conversation_id, limit=limit)
    return [message for message in messages if message.user_id == user_id]


async def get_user_conversations(session: AsyncSession, *, user_id: str, limit: int = 50) -> list[dict[str, Any]]:
    # Group recent messages by conversation, newest conversation first.
    messages = await messages_repo.list_for_user(session, user_id, limit=_CONVERSATION_SCAN_LIMIT)
    conversations: dict[str, dict[str, Any]] = {}
    for message in messages:
        entry = conversations.get(message.conversation_id)
        if entry is None:
            conversations[message.conversation_id] = {
                "conversation_id": message.conversation_id,
                "last_message": message.content[:_PREVIEW_CHARS],
                "timestamp": message.timestamp.isoformat(),
                "message_count": 1,
            }
        else:
            entry["message_count"] += 1
    return list(conversations.values())[:limit]


async def get_organization_messages(
    session: AsyncSession, *, organization_id: str, limit: int = 100
) -> list[ChatMessage]:
    result = await session.execute(
        select(ChatMessage)
        .where(ChatMessage.organization_id == organization_id, ChatMessage.deleted_at.is_(None))
        .order_by(ChatMessage.timestamp.desc())
        .limit(limit)
    )
    return list(result.scalars().all())


async def delete_conversation(session: AsyncSession, *, user_id: str, conversation_id: str) -> int:
    # Soft delete; messages owned by other users stay visible to them.
    result = await session.execute(
        select(ChatMessage).where(
            ChatMessage.conversation_id == conversation_id,
            ChatMessage.user_id == user_id,
            ChatMessage.deleted_at.is_(None),
        )
    )
    now = utc_now()
    deleted = 0
    for message in result.scalars().all():
        message.deleted_at = now
        deleted += 1
    await session.commit()
    return deleted


async def export_chat_history(
    session: AsyncSession,
    *,
    user_id: str,
    organization_id: str | None = None,
    start: datetime | None = None,
    end: datetime | None = None,
) -> list[dict[str, Any]]:
    stmt = select(ChatMessage).where(ChatMessage.user_id == user_id, ChatMessage.deleted_at.is_(None))
    if organization_id:
        stmt = stmt.where(ChatMessage.organization_id == organization_id)
    if start is not None:
        stmt = stmt.where(ChatMessage.timestamp >= start)
    if end is not None:
        stmt = stmt.where(ChatMessage.timestamp <= end)
    result = await session.execute(stmt.order_by(ChatMessage.timestamp.asc()))
    return [
        {
            "timestamp": message.timestamp.isoformat(),
            "role": message.role,
            "content": message.content,
            "conversation_id": message.conversation_id,
        }
        for message in result.scalars().all()
    ]
