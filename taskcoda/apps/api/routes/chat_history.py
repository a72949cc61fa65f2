from __future__ import annotations

from datetime import datetime

from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy.ext.asyncio import AsyncSession

from taskcoda.apps.api.deps import get_current_user, get_db
from taskcoda.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from taskcoda.apps.api.response import success_response
from taskcoda.domain.models import User
from taskcoda.services import chat_messages as chat_service
from taskcoda.services.audit import AUDIT_ACTIONS, get_request_context, record_audit_log
from taskcoda.services.chat_messages import serialize_message
from taskcoda.services.organizations import require_member


router = APIRouter(prefix="/chat", tags=["chat-history"], responses=DEFAULT_ERROR_RESPONSES)


@router.get("/conversations")
async def list_conversations(
    request: Request,
    limit: int = Query(default=50, ge=1, le=200),
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
) -> dict:
    items = await chat_service.get_user_conversations(db, user_id=user.id, limit=limit)
    return success_response(request=request, data={"items": items})


@router.get("/conversations/{conversation_id}/messages")
async def conversation_messages(
    conversation_id: str,
    request: Request,
    limit: int = Query(default=100, ge=1, le=500),
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
) -> dict:
    messages = await chat_service.get_conversation_messages(
        db, user_id=user.id, conversation_id=conversation_id, limit=limit
    )
    return success_response(request=request, data={"items": [serialize_message(m) for m in messages]})


@router.delete("/conversations/{conversation_id}")
async def delete_conversation(
    conversation_id: str,
    request: Request,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
) -> dict:
    deleted = await chat_service.delete_conversation(db, user_id=user.id, conversation_id=conversation_id)
    await record_audit_log(
        session=db,
        user_id=user.id,
        organization_id=user.organization_id,
        action=AUDIT_ACTIONS["DATA_DELETED"],
        resource=f"conversation/{conversation_id}",
        resource_id=conversation_id,
        status="success",
        metadata={"deleted_count": deleted},
        commit=True,
    )
    return success_response(request=request, data={"success": True, "deleted_count": deleted})


@router.get("/organizations/{organization_id}/messages")
async def organization_messages(
    organization_id: str,
    request: Request,
    limit: int = Query(default=100, ge=1, le=500),
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
) -> dict:
    await require_member(db, organization_id, user.id)
    messages = await chat_service.get_organization_messages(db, organization_id=organization_id, limit=limit)
    return success_response(request=request, data={"items": [serialize_message(m) for m in messages]})


@router.get("/export")
async def export_history(
    request: Request,
    organization_id: str | None = None,
    start: datetime | None = None,
    end: datetime | None = None,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
) -> dict:
    items = await chat_service.export_chat_history(
        db, user_id=user.id, organization_id=organization_id, start=start, end=end
    )
    request_ctx = get_request_context(request)
    await record_audit_log(
        session=db,
        user_id=user.id,
        organization_id=organization_id,
        action=AUDIT_ACTIONS["DATA_EXPORTED"],
        resource="chat_history",
        status="success",
        metadata={"count": len(items)},
        ip_address=request_ctx["ip_address"],
        user_agent=request_ctx["user_agent"],
        commit=True,
    )
    return success_response(request=request, data={"items": items})
