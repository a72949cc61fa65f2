from __future__ import annotations

from dataclasses import dataclass
import logging
from typing import Any, AsyncIterator
from uuid import uuid4

from fastapi import APIRouter, Request, Response
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field, ValidationError
from starlette.responses import StreamingResponse

from taskcoda.apps.api.response import get_request_id
from taskcoda.core.config import get_settings
from taskcoda.core.errors import AuthenticationError
from taskcoda.domain.models import User
from taskcoda.persistence.db import SessionLocal
from taskcoda.persistence.repos import organizations as org_repo
from taskcoda.providers.llm.base import LLMChunk, LLMProvider
from taskcoda.providers.llm.factory import get_llm_provider
from taskcoda.services import emails
from taskcoda.services.audit import AUDIT_ACTIONS, get_request_context, record_audit_log
from taskcoda.services.auth import get_or_create_user, parse_bearer_token, verify_token
from taskcoda.services.chat_messages import save_message
from taskcoda.services.quota import QuotaStatus, build_status, crossed_threshold, get_quota_service, quota_headers
from taskcoda.services.rate_limit import KIND_CHAT, get_rate_limit_for_plan, get_rate_limiter, rate_limit_headers
from taskcoda.services.usage import METRIC_TYPES, get_usage_meter


logger = logging.getLogger(__name__)

router = APIRouter(tags=["chat"])

_METRIC = METRIC_TYPES["AI_MESSAGES"]


class ChatMessageIn(BaseModel):
    role: str
    content: str


class ChatRequest(BaseModel):
    messages: list[ChatMessageIn] = Field(min_length=1)
    conversation_id: str | None = Field(default=None, alias="conversationId")


@dataclass(frozen=True)
class _ChatContext:
    user_id: str
    organization_id: str
    organization_name: str
    owner_id: str
    plan: str
    conversation_id: str
    last_user_message: str | None
    quota: QuotaStatus
    ip_address: str | None
    user_agent: str | None


def _error(status_code: int, payload: dict[str, Any], headers: dict[str, str] | None = None) -> JSONResponse:
    return JSONResponse(content=payload, status_code=status_code, headers=headers)


def _cors_headers() -> dict[str, str]:
    return {
        "Access-Control-Allow-Origin": get_settings().frontend_url,
        "Access-Control-Allow-Methods": "POST, OPTIONS",
        "Access-Control-Allow-Headers": "Content-Type, Authorization",
        "Access-Control-Allow-Credentials": "true",
        "Vary": "origin",
    }


async def _reject(user: User, organization_id: str, reason: str, request: Request, **extra: Any) -> None:
    # Throttle and plan-limit rejections stay distinguishable in the audit trail.
    request_ctx = get_request_context(request)
    await record_audit_log(
        user_id=user.id,
        organization_id=organization_id,
        action=AUDIT_ACTIONS["AI_CHAT_MESSAGE"],
        resource="chat",
        status="failure",
        metadata={"reason": reason, **extra},
        ip_address=request_ctx["ip_address"],
        user_agent=request_ctx["user_agent"],
    )


async def _on_finish(ctx: _ChatContext, text: str, total_tokens: int, model: str) -> None:
    # Runs after the last chunk; uses its own session since the request session is gone.
    async with SessionLocal() as session:
        try:
            await get_usage_meter().record_usage(
                session,
                organization_id=ctx.organization_id,
                metric_type=_METRIC,
                quantity=1,
                user_id=ctx.user_id,
                metadata={
                    "conversationId": ctx.conversation_id,
                    "tokensUsed": total_tokens,
                    "model": model,
                },
            )
            if ctx.last_user_message is not None:
                await save_message(
                    session,
                    organization_id=ctx.organization_id,
                    user_id=ctx.user_id,
                    role="user",
                    content=ctx.last_user_message,
                    conversation_id=ctx.conversation_id,
                )
            await save_message(
                session,
                organization_id=ctx.organization_id,
                user_id=ctx.user_id,
                role="assistant",
                content=text,
                conversation_id=ctx.conversation_id,
                metadata={"tokensUsed": total_tokens},
            )
            await record_audit_log(
                session=session,
                user_id=ctx.user_id,
                organization_id=ctx.organization_id,
                action=AUDIT_ACTIONS["AI_GENERATION_COMPLETED"],
                resource="chat",
                status="success",
                metadata={"conversationId": ctx.conversation_id, "tokensUsed": total_tokens},
                ip_address=ctx.ip_address,
                user_agent=ctx.user_agent,
                commit=True,
            )

            settings = get_settings()
            after = build_status(ctx.quota.used + 1, ctx.quota.limit)
            if crossed_threshold(ctx.quota.used, after, settings.quota_warning_ratio):
                owner = await session.get(User, ctx.owner_id)
                if owner is not None and owner.email:
                    await emails.send_quota_warning_email(
                        to=owner.email,
                        organization_name=ctx.organization_name,
                        metric_type=_METRIC,
                        percentage=after.percentage,
                        used=after.used,
                        limit=int(after.limit),
                        plan=ctx.plan,
                    )
        except Exception as exc:  # noqa: BLE001 - the response is already streaming
            await session.rollback()
            logger.error(
                "chat_finish_failed organization_id=%s conversation_id=%s",
                ctx.organization_id,
                ctx.conversation_id,
                exc_info=exc,
            )


async def _stream_body(
    provider: LLMProvider,
    first: LLMChunk | None,
    rest: AsyncIterator[LLMChunk],
    ctx: _ChatContext,
) -> AsyncIterator[str]:
    parts: list[str] = []
    total_tokens = 0

    def _take(chunk: LLMChunk) -> str:
        nonlocal total_tokens
        if chunk.total_tokens is not None:
            total_tokens = chunk.total_tokens
        if chunk.text:
            parts.append(chunk.text)
        return chunk.text

    if first is not None:
        text = _take(first)
        if text:
            yield text
        try:
            async for chunk in rest:
                text = _take(chunk)
                if text:
                    yield text
        except Exception as exc:  # noqa: BLE001 - headers are sent; record and stop
            logger.error("chat_stream_failed conversation_id=%s", ctx.conversation_id, exc_info=exc)
            await record_audit_log(
                user_id=ctx.user_id,
                organization_id=ctx.organization_id,
                action=AUDIT_ACTIONS["AI_CHAT_MESSAGE"],
                resource="chat",
                status="failure",
                metadata={"error": type(exc).__name__, "conversationId": ctx.conversation_id},
            )
            return
    await _on_finish(ctx, "".join(parts), total_tokens, provider.model)


@router.post("/api/chat")
async def chat(request: Request) -> Response:
    settings = get_settings()
    token = parse_bearer_token(request.headers.get("Authorization"))
    if not token:
        return _error(401, {"error": "Unauthorized: Missing auth token"})
    try:
        identity = verify_token(token)
    except AuthenticationError:
        return _error(401, {"error": "Unauthorized: Invalid token"})

    user: User | None = None
    organization_id: str | None = None
    try:
        async with SessionLocal() as session:
            user, _created = await get_or_create_user(session, identity)
            if user.suspended_at is not None:
                return _error(403, {"error": "Account suspended"})
            if not user.organization_id:
                return _error(403, {"error": "Organization required: Please create or join an organization"})
            org = await org_repo.get_active(session, user.organization_id)
            if org is None:
                return _error(404, {"error": "Organization not found"})
            organization_id = org.id

            rate_headers: dict[str, str] = {}
            if settings.rate_limit_enabled:
                window = get_rate_limit_for_plan(org.plan, KIND_CHAT)
                rate = await get_rate_limiter().check(
                    f"chat:{org.id}", window.limit, window.window, settings.rl_redis_prefix
                )
                rate_headers = rate_limit_headers(rate)
                if not rate.success:
                    await _reject(user, org.id, "rate_limit_exceeded", request)
                    return _error(
                        429,
                        {"error": "Rate limit exceeded", "retryAfter": rate.retry_after, "limit": rate.limit},
                        headers=rate_headers,
                    )

            quota = await get_quota_service().check_quota(session, organization_id=org.id, metric_type=_METRIC)
            if not quota.has_quota:
                await _reject(user, org.id, "quota_exceeded", request, quota=quota.as_dict())
                return _error(
                    429,
                    {
                        "error": "Monthly quota exceeded",
                        "used": quota.used,
                        "limit": int(quota.limit),
                        "plan": org.plan or "free",
                    },
                )

            try:
                body = ChatRequest.model_validate_json(await request.body())
            except ValidationError:
                return _error(400, {"error": "Invalid request body"})

            conversation_id = body.conversation_id or uuid4().hex
            request_ctx = get_request_context(request)
            await record_audit_log(
                session=session,
                user_id=user.id,
                organization_id=org.id,
                action=AUDIT_ACTIONS["AI_GENERATION_STARTED"],
                resource="chat",
                status="success",
                metadata={"messageCount": len(body.messages), "conversationId": conversation_id},
                ip_address=request_ctx["ip_address"],
                user_agent=request_ctx["user_agent"],
                commit=True,
            )
            user_messages = [message for message in body.messages if message.role == "user"]
            ctx = _ChatContext(
                user_id=user.id,
                organization_id=org.id,
                organization_name=org.name,
                owner_id=org.owner_id,
                plan=org.plan or "free",
                conversation_id=conversation_id,
                last_user_message=user_messages[-1].content if user_messages else None,
                quota=quota,
                ip_address=request_ctx["ip_address"],
                user_agent=request_ctx["user_agent"],
            )

        provider = get_llm_provider(request_id=get_request_id(request))
        chunks = provider.stream([message.model_dump() for message in body.messages])
        # Pull the first chunk so provider configuration errors surface as a 500, not a broken stream.
        try:
            first: LLMChunk | None = await chunks.__anext__()
        except StopAsyncIteration:
            first = None

        headers = {
            **_cors_headers(),
            **{key: value for key, value in rate_headers.items() if key != "Retry-After"},
            **quota_headers(quota),
            "X-Conversation-Id": conversation_id,
        }
        return StreamingResponse(
            _stream_body(provider, first, chunks, ctx),
            media_type="text/plain; charset=utf-8",
            headers=headers,
        )
    except Exception as exc:  # noqa: BLE001 - outermost boundary returns a generic 500
        logger.error("chat_failed organization_id=%s", organization_id, exc_info=exc)
        if user is not None and organization_id:
            await record_audit_log(
                user_id=user.id,
                organization_id=organization_id,
                action=AUDIT_ACTIONS["AI_CHAT_MESSAGE"],
                resource="chat",
                status="failure",
                metadata={"error": type(exc).__name__},
            )
        return _error(500, {"error": "Internal server error"})


@router.options("/api/chat")
async def chat_preflight(request: Request) -> Response:
    headers = request.headers
    if (
        headers.get("Origin") is not None
        and headers.get("Access-Control-Request-Method") is not None
        and headers.get("Access-Control-Request-Headers") is not None
    ):
        return Response(
            headers={
                "Access-Control-Allow-Origin": get_settings().frontend_url,
                "Access-Control-Allow-Methods": "POST",
                "Access-Control-Allow-Headers": "Content-Type, Authorization",
                "Access-Control-Allow-Credentials": "true",
                "Access-Control-Max-Age": "86400",
            }
        )
    return Response()
