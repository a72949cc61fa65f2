from __future__ import annotations

from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter


SubscriptionStatus = Literal[
    "incomplete",
    "incomplete_expired",
    "trialing",
    "active",
    "past_due",
    "canceled",
    "unpaid",
    "revoked",
]


class SubscriptionData(BaseModel):
    # Billing provider subscription object; unknown provider fields are kept.
    model_config = ConfigDict(extra="allow")

    id: str
    status: SubscriptionStatus
    customer_id: str
    product_id: str
    amount: int | None = None
    currency: str | None = None
    price_id: str | None = None
    recurring_interval: str | None = None
    current_period_start: str | None = None
    current_period_end: str | None = None
    cancel_at_period_end: bool | None = None
    started_at: str | None = None
    ended_at: str | None = None
    canceled_at: str | None = None
    customer_cancellation_reason: str | None = None
    customer_cancellation_comment: str | None = None
    discount_id: str | None = None
    checkout_id: str | None = None
    created_at: str
    modified_at: str | None = None
    metadata: dict[str, Any] | None = None
    custom_field_data: dict[str, Any] | None = None


class OrderData(BaseModel):
    # Orders are logged only; keep the payload loosely typed.
    model_config = ConfigDict(extra="allow")

    id: str
    created_at: str | None = None
    modified_at: str | None = None


class SubscriptionCreatedEvent(BaseModel):
    type: Literal["subscription.created"]
    data: SubscriptionData


class SubscriptionUpdatedEvent(BaseModel):
    type: Literal["subscription.updated"]
    data: SubscriptionData


class SubscriptionActiveEvent(BaseModel):
    type: Literal["subscription.active"]
    data: SubscriptionData


class SubscriptionCanceledEvent(BaseModel):
    type: Literal["subscription.canceled"]
    data: SubscriptionData


class SubscriptionUncanceledEvent(BaseModel):
    type: Literal["subscription.uncanceled"]
    data: SubscriptionData


class SubscriptionRevokedEvent(BaseModel):
    type: Literal["subscription.revoked"]
    data: SubscriptionData


class OrderCreatedEvent(BaseModel):
    type: Literal["order.created"]
    data: OrderData


WebhookEventPayload = Annotated[
    Union[
        SubscriptionCreatedEvent,
        SubscriptionUpdatedEvent,
        SubscriptionActiveEvent,
        SubscriptionCanceledEvent,
        SubscriptionUncanceledEvent,
        SubscriptionRevokedEvent,
        OrderCreatedEvent,
    ],
    Field(discriminator="type"),
]

_event_adapter: TypeAdapter[Any] = TypeAdapter(WebhookEventPayload)


def parse_webhook_event(raw: bytes | str) -> Any:
    # Raises pydantic.ValidationError for unknown types or malformed payloads.
    return _event_adapter.validate_json(raw)
