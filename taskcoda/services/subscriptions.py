from __future__ import annotations

import base64
from dataclasses import dataclass
from datetime import datetime, timezone
import hashlib
import hmac
import logging
import time
from typing import Any, Awaitable, Callable, Mapping

from sqlalchemy.ext.asyncio import AsyncSession

from taskcoda.core.errors import OrganizationNotFoundError, WebhookVerificationError
from taskcoda.core.periods import TimeProvider, utc_now
from taskcoda.domain.models import Organization, Subscription, WebhookEvent
from taskcoda.domain.webhooks import OrderData, SubscriptionData
from taskcoda.persistence.repos import subscriptions as subscriptions_repo
from taskcoda.services.audit import AUDIT_ACTIONS, record_audit_log


logger = logging.getLogger(__name__)

# Provider-originated changes are attributed to this pseudo-user in audit rows.
SYSTEM_ACTOR = "system:polar"

_WEBHOOK_ID_HEADER = "webhook-id"
_WEBHOOK_TIMESTAMP_HEADER = "webhook-timestamp"
_WEBHOOK_SIGNATURE_HEADER = "webhook-signature"
_SIGNATURE_VERSION = "v1"


@dataclass(frozen=True)
class WebhookOutcome:
    # Summarize what a delivery changed for logging and tests.
    event_type: str
    applied: bool
    subscription_id: str | None = None


def _signing_key(secret: str) -> bytes:
    # Polar signs with the full secret text, "whsec_" prefix included.
    return secret.encode("utf-8")


def _sign(secret: str, msg_id: str, timestamp: int, body: bytes) -> str:
    # Standard Webhooks signs "{id}.{timestamp}.{body}" with HMAC-SHA256.
    to_sign = f"{msg_id}.{timestamp}.".encode("utf-8") + body
    digest = hmac.new(_signing_key(secret), to_sign, hashlib.sha256).digest()
    return base64.b64encode(digest).decode("ascii")


def sign_webhook_payload(
    body: bytes,
    secret: str,
    *,
    msg_id: str,
    timestamp: int | None = None,
) -> dict[str, str]:
    # Produce headers that verify_webhook_signature accepts.
    ts = int(time.time()) if timestamp is None else int(timestamp)
    signature = _sign(secret, msg_id, ts, body)
    return {
        _WEBHOOK_ID_HEADER: msg_id,
        _WEBHOOK_TIMESTAMP_HEADER: str(ts),
        _WEBHOOK_SIGNATURE_HEADER: f"{_SIGNATURE_VERSION},{signature}",
    }


def verify_webhook_signature(
    body: bytes,
    headers: Mapping[str, str],
    secret: str,
    *,
    now: float | None = None,
    tolerance_s: int = 300,
) -> None:
    """Verify a Standard Webhooks signature over the raw request body.

    Raises :class:`WebhookVerificationError` when a header is missing, the
    timestamp falls outside ``tolerance_s`` of ``now``, or none of the
    space-separated ``v1,<base64>`` entries matches the expected digest.
    """
    lowered = {key.lower(): value for key, value in headers.items()}
    msg_id = lowered.get(_WEBHOOK_ID_HEADER)
    raw_timestamp = lowered.get(_WEBHOOK_TIMESTAMP_HEADER)
    raw_signatures = lowered.get(_WEBHOOK_SIGNATURE_HEADER)
    if not msg_id or not raw_timestamp or not raw_signatures:
        raise WebhookVerificationError("Missing required headers")

    try:
        timestamp = int(raw_timestamp)
    except ValueError as exc:
        raise WebhookVerificationError("Invalid signature headers") from exc

    current = time.time() if now is None else now
    if timestamp < current - tolerance_s:
        raise WebhookVerificationError("Message timestamp too old")
    if timestamp > current + tolerance_s:
        raise WebhookVerificationError("Message timestamp too new")

    expected = _sign(secret, msg_id, timestamp, body)
    for entry in raw_signatures.split(" "):
        version, _, signature = entry.partition(",")
        if version != _SIGNATURE_VERSION:
            continue
        if hmac.compare_digest(signature.encode("utf-8"), expected.encode("utf-8")):
            return
    raise WebhookVerificationError("No matching signature found")


def _parse_ts(value: str | None) -> datetime | None:
    # Provider timestamps are ISO-8601 strings, usually with a trailing Z.
    if not value:
        return None
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _link_metadata(metadata: dict[str, Any] | None) -> dict[str, Any] | None:
    # Only the linking keys are mirrored locally.
    if metadata is None:
        return None
    return {
        "userId": metadata.get("userId"),
        "organizationId": metadata.get("organizationId"),
        "plan": metadata.get("plan"),
    }


class WebhookProcessor:
    """Mirror billing provider subscription state into local rows.

    Every delivery is appended to the webhook event log and committed before
    dispatch, so the log survives downstream failures. Transitions for
    unknown subscriptions are dropped without error.
    """

    def __init__(
        self,
        *,
        time_provider: TimeProvider | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self._time_provider = time_provider or utc_now
        self._logger = logger or logging.getLogger(__name__)
        self._handlers: dict[str, Callable[[AsyncSession, Any], Awaitable[WebhookOutcome]]] = {
            "subscription.created": self._on_created,
            "subscription.updated": self._on_updated,
            "subscription.active": self._on_active,
            "subscription.canceled": self._on_canceled,
            "subscription.uncanceled": self._on_uncanceled,
            "subscription.revoked": self._on_revoked,
            "order.created": self._on_order_created,
        }

    async def handle_webhook_event(self, session: AsyncSession, event: Any) -> WebhookOutcome:
        await self._log_event(session, event.type, event.data)
        handler = self._handlers.get(event.type)
        if handler is None:
            self._logger.info("webhook_event_unhandled type=%s", event.type)
            return WebhookOutcome(event_type=event.type, applied=False)
        outcome = await handler(session, event.data)
        self._logger.info(
            "webhook_event_processed type=%s polar_id=%s applied=%s",
            event.type,
            event.data.id,
            outcome.applied,
        )
        return outcome

    async def _log_event(self, session: AsyncSession, event_type: str, data: SubscriptionData | OrderData) -> None:
        # Append-only; replays of the same delivery add another row.
        session.add(
            WebhookEvent(
                type=event_type,
                polar_event_id=data.id,
                created_at=data.created_at,
                modified_at=data.modified_at or data.created_at,
                data=data.model_dump(mode="json"),
                received_at=self._time_provider(),
            )
        )
        await session.commit()

    async def _audit(self, session: AsyncSession, action: str, sub: Subscription, event_type: str) -> None:
        await record_audit_log(
            session=session,
            user_id=SYSTEM_ACTOR,
            organization_id=sub.organization_id,
            action=AUDIT_ACTIONS[action],
            resource="subscription",
            resource_id=sub.polar_id,
            status="success",
            metadata={"event_type": event_type, "status": sub.status},
            commit=True,
        )

    async def _existing(self, session: AsyncSession, data: SubscriptionData, event_type: str) -> Subscription | None:
        sub = await subscriptions_repo.get_by_polar_id(session, data.id)
        if sub is None:
            self._logger.info("webhook_subscription_missing type=%s polar_id=%s", event_type, data.id)
        return sub

    async def _on_created(self, session: AsyncSession, data: SubscriptionData) -> WebhookOutcome:
        metadata = data.metadata or {}
        sub = await subscriptions_repo.get_by_polar_id(session, data.id)
        if sub is None:
            sub = Subscription(polar_id=data.id)
            session.add(sub)
        else:
            # Replayed creation: refresh the existing mirror instead of inserting a duplicate.
            self._logger.warning("webhook_subscription_duplicate polar_id=%s", data.id)

        sub.customer_id = data.customer_id
        sub.product_id = data.product_id
        sub.polar_price_id = data.price_id
        sub.currency = data.currency or "USD"
        sub.amount = data.amount or 0
        sub.interval = data.recurring_interval
        sub.user_id = metadata.get("userId")
        sub.organization_id = metadata.get("organizationId")
        sub.status = data.status
        sub.created_at = _parse_ts(data.created_at) or self._time_provider()
        sub.modified_at = _parse_ts(data.modified_at)
        sub.current_period_start = _parse_ts(data.current_period_start) or self._time_provider()
        sub.current_period_end = _parse_ts(data.current_period_end)
        sub.cancel_at_period_end = bool(data.cancel_at_period_end)
        sub.started_at = _parse_ts(data.started_at)
        sub.ended_at = _parse_ts(data.ended_at)
        sub.canceled_at = _parse_ts(data.canceled_at)
        sub.customer_cancellation_reason = data.customer_cancellation_reason
        sub.customer_cancellation_comment = data.customer_cancellation_comment or None
        sub.discount_id = data.discount_id
        sub.checkout_id = data.checkout_id
        sub.metadata_json = _link_metadata(data.metadata)
        sub.custom_field_data = data.custom_field_data
        await session.commit()

        organization_id = metadata.get("organizationId")
        if organization_id:
            # Second, separately committed write; no atomicity with the insert above.
            org = await session.get(Organization, organization_id)
            if org is None or org.deleted_at is not None:
                raise OrganizationNotFoundError("Organization not found")
            org.subscription_id = sub.id
            org.plan = metadata.get("plan") or "pro"
            org.updated_at = self._time_provider()
            await session.commit()

        await self._audit(session, "SUBSCRIPTION_CREATED", sub, "subscription.created")
        return WebhookOutcome(event_type="subscription.created", applied=True, subscription_id=sub.id)

    async def _on_updated(self, session: AsyncSession, data: SubscriptionData) -> WebhookOutcome:
        sub = await self._existing(session, data, "subscription.updated")
        if sub is None:
            return WebhookOutcome(event_type="subscription.updated", applied=False)
        if data.amount is not None:
            sub.amount = data.amount
        sub.status = data.status
        if data.current_period_start:
            sub.current_period_start = _parse_ts(data.current_period_start)
        if data.current_period_end:
            sub.current_period_end = _parse_ts(data.current_period_end)
        if data.cancel_at_period_end is not None:
            sub.cancel_at_period_end = data.cancel_at_period_end
        if data.modified_at:
            sub.modified_at = _parse_ts(data.modified_at)
        if data.metadata is not None:
            sub.metadata_json = _link_metadata(data.metadata)
        if data.custom_field_data:
            sub.custom_field_data = data.custom_field_data
        await session.commit()
        await self._audit(session, "SUBSCRIPTION_UPDATED", sub, "subscription.updated")
        return WebhookOutcome(event_type="subscription.updated", applied=True, subscription_id=sub.id)

    async def _on_active(self, session: AsyncSession, data: SubscriptionData) -> WebhookOutcome:
        sub = await self._existing(session, data, "subscription.active")
        if sub is None:
            return WebhookOutcome(event_type="subscription.active", applied=False)
        sub.status = data.status
        if data.started_at:
            sub.started_at = _parse_ts(data.started_at)
        await session.commit()
        await self._audit(session, "SUBSCRIPTION_UPDATED", sub, "subscription.active")
        return WebhookOutcome(event_type="subscription.active", applied=True, subscription_id=sub.id)

    async def _on_canceled(self, session: AsyncSession, data: SubscriptionData) -> WebhookOutcome:
        sub = await self._existing(session, data, "subscription.canceled")
        if sub is None:
            return WebhookOutcome(event_type="subscription.canceled", applied=False)
        sub.status = data.status
        if data.canceled_at:
            sub.canceled_at = _parse_ts(data.canceled_at)
        if data.customer_cancellation_reason:
            sub.customer_cancellation_reason = data.customer_cancellation_reason
        if data.customer_cancellation_comment:
            sub.customer_cancellation_comment = data.customer_cancellation_comment
        await session.commit()
        await self._audit(session, "SUBSCRIPTION_CANCELED", sub, "subscription.canceled")
        return WebhookOutcome(event_type="subscription.canceled", applied=True, subscription_id=sub.id)

    async def _on_uncanceled(self, session: AsyncSession, data: SubscriptionData) -> WebhookOutcome:
        sub = await self._existing(session, data, "subscription.uncanceled")
        if sub is None:
            return WebhookOutcome(event_type="subscription.uncanceled", applied=False)
        # Reverse a pending cancellation regardless of prior values.
        sub.status = data.status
        sub.cancel_at_period_end = False
        sub.canceled_at = None
        sub.customer_cancellation_reason = None
        sub.customer_cancellation_comment = None
        await session.commit()
        await self._audit(session, "SUBSCRIPTION_RENEWED", sub, "subscription.uncanceled")
        return WebhookOutcome(event_type="subscription.uncanceled", applied=True, subscription_id=sub.id)

    async def _on_revoked(self, session: AsyncSession, data: SubscriptionData) -> WebhookOutcome:
        sub = await self._existing(session, data, "subscription.revoked")
        if sub is None:
            return WebhookOutcome(event_type="subscription.revoked", applied=False)
        sub.status = "revoked"
        sub.ended_at = _parse_ts(data.ended_at)
        await session.commit()
        await self._audit(session, "SUBSCRIPTION_REVOKED", sub, "subscription.revoked")
        return WebhookOutcome(event_type="subscription.revoked", applied=True, subscription_id=sub.id)

    async def _on_order_created(self, session: AsyncSession, data: OrderData) -> WebhookOutcome:
        # Billing state changes arrive through the subscription events.
        return WebhookOutcome(event_type="order.created", applied=False)


_webhook_processor: WebhookProcessor | None = None


def get_webhook_processor() -> WebhookProcessor:
    global _webhook_processor
    if _webhook_processor is None:
        _webhook_processor = WebhookProcessor()
    return _webhook_processor


def reset_webhook_processor() -> None:
    global _webhook_processor
    _webhook_processor = None


async def get_subscription_by_polar_id(session: AsyncSession, polar_id: str) -> Subscription | None:
    return await subscriptions_repo.get_by_polar_id(session, polar_id)


async def get_organization_subscription(session: AsyncSession, organization_id: str) -> Subscription | None:
    # Prefer the subscription linked on the organization, then the newest mirror row.
    org = await session.get(Organization, organization_id)
    if org is not None and org.subscription_id:
        linked = await session.get(Subscription, org.subscription_id)
        if linked is not None:
            return linked
    return await subscriptions_repo.get_for_organization(session, organization_id)


async def has_active_subscription(session: AsyncSession, user_id: str) -> bool:
    sub = await subscriptions_repo.get_for_user(session, user_id)
    return sub is not None and sub.status == "active"


def serialize_subscription(sub: Subscription) -> dict[str, Any]:
    def _iso(value: datetime | None) -> str | None:
        return value.isoformat() if value is not None else None

    return {
        "id": sub.id,
        "polar_id": sub.polar_id,
        "polar_price_id": sub.polar_price_id,
        "product_id": sub.product_id,
        "customer_id": sub.customer_id,
        "user_id": sub.user_id,
        "organization_id": sub.organization_id,
        "currency": sub.currency,
        "amount": sub.amount,
        "interval": sub.interval,
        "status": sub.status,
        "current_period_start": _iso(sub.current_period_start),
        "current_period_end": _iso(sub.current_period_end),
        "cancel_at_period_end": sub.cancel_at_period_end,
        "started_at": _iso(sub.started_at),
        "ended_at": _iso(sub.ended_at),
        "canceled_at": _iso(sub.canceled_at),
        "customer_cancellation_reason": sub.customer_cancellation_reason,
        "customer_cancellation_comment": sub.customer_cancellation_comment,
        "metadata": sub.metadata_json,
    }
