from __future__ import annotations

import logging

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from taskcoda.core.config import get_settings
from taskcoda.core.errors import WebhookVerificationError
from taskcoda.domain.webhooks import parse_webhook_event
from taskcoda.persistence.db import SessionLocal
from taskcoda.services.subscriptions import get_webhook_processor, verify_webhook_signature


logger = logging.getLogger(__name__)

router = APIRouter(tags=["payments"])


@router.post("/payments/webhook")
async def payment_webhook(request: Request) -> JSONResponse:
    # Signature failures fail closed (403) before any database access; everything else is a 400.
    settings = get_settings()
    body = await request.body()
    try:
        if not settings.polar_webhook_secret:
            raise RuntimeError("POLAR_WEBHOOK_SECRET is not configured")
        verify_webhook_signature(
            body,
            request.headers,
            settings.polar_webhook_secret,
            tolerance_s=settings.polar_webhook_tolerance_s,
        )
        event = parse_webhook_event(body)
        async with SessionLocal() as session:
            await get_webhook_processor().handle_webhook_event(session, event)
    except WebhookVerificationError as exc:
        logger.warning("webhook_verification_failed reason=%s", exc)
        return JSONResponse(content={"message": "Webhook verification failed"}, status_code=403)
    except Exception as exc:  # noqa: BLE001 - any processing failure maps to a generic 400
        logger.error("webhook_failed", exc_info=exc)
        return JSONResponse(content={"message": "Webhook failed"}, status_code=400)
    return JSONResponse(content={"message": "Webhook received!"}, status_code=200)
