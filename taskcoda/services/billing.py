from __future__ import annotations

import logging
import time
from typing import Any

import httpx
from sqlalchemy.ext.asyncio import AsyncSession

from taskcoda.core.config import get_settings
from taskcoda.core.errors import (
    BillingConfigError,
    BillingProviderError,
    NotFoundError,
    PermissionDeniedError,
    SubscriptionNotFoundError,
    ValidationFailedError,
)
from taskcoda.core.periods import utc_now
from taskcoda.domain.models import User
from taskcoda.persistence.repos import organizations as org_repo
from taskcoda.services.audit import AUDIT_ACTIONS, record_audit_log
from taskcoda.services.organizations import get_organization, require_member, serialize_organization
from taskcoda.services.subscriptions import get_organization_subscription, serialize_subscription


logger = logging.getLogger(__name__)

_POLAR_HOSTS = {
    "sandbox": "https://sandbox-api.polar.sh",
    "production": "https://api.polar.sh",
}
_PLANS = {"free", "pro", "enterprise"}


class PolarClient:
    """Thin async client for the Polar REST API.

    Only the calls the billing flows need are wrapped. Every failure is
    surfaced as ``BillingProviderError`` so routes can map it to a 502.
    """

    def __init__(self, client: httpx.AsyncClient | None = None) -> None:
        self._settings = get_settings()
        self._client = client

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is not None:
            return self._client
        # Reuse a single client per instance for connection pooling.
        timeout_s = self._settings.ext_call_timeout_ms / 1000.0
        self._client = httpx.AsyncClient(timeout=timeout_s)
        return self._client

    def _base_url(self) -> str:
        server = (self._settings.polar_server or "sandbox").lower()
        return _POLAR_HOSTS.get(server, _POLAR_HOSTS["sandbox"])

    async def _request(
        self,
        method: str,
        path: str,
        *,
        json: dict[str, Any] | None = None,
        params: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        token = self._settings.polar_access_token
        if not token:
            raise BillingConfigError("POLAR_ACCESS_TOKEN is required for billing calls")

        url = f"{self._base_url()}{path}"
        headers = {"Authorization": f"Bearer {token}", "Accept": "application/json"}
        start = time.monotonic()
        try:
            response = await self._get_client().request(method, url, json=json, params=params, headers=headers)
        except httpx.HTTPError as exc:
            logger.warning("polar_request_failed method=%s path=%s error=%s", method, path, type(exc).__name__)
            raise BillingProviderError("Billing provider request failed.") from exc

        latency_ms = (time.monotonic() - start) * 1000.0
        if response.status_code >= 400:
            logger.warning(
                "polar_request_error method=%s path=%s status=%s latency_ms=%.1f",
                method,
                path,
                response.status_code,
                latency_ms,
            )
            error = BillingProviderError(f"Billing provider error: {response.status_code}")
            setattr(error, "status_code", response.status_code)
            raise error

        logger.info("polar_request method=%s path=%s latency_ms=%.1f", method, path, latency_ms)
        if not response.content:
            return {}
        return response.json()

    async def list_products(self) -> list[dict[str, Any]]:
        params: dict[str, Any] = {"is_archived": "false"}
        if self._settings.polar_organization_id:
            params["organization_id"] = self._settings.polar_organization_id
        payload = await self._request("GET", "/v1/products/", params=params)
        return list(payload.get("items") or [])

    async def create_checkout(
        self,
        *,
        product_id: str,
        success_url: str,
        customer_email: str | None,
        metadata: dict[str, Any],
    ) -> dict[str, Any]:
        body: dict[str, Any] = {
            "products": [product_id],
            "success_url": success_url,
            "metadata": metadata,
        }
        if customer_email:
            body["customer_email"] = customer_email
        return await self._request("POST", "/v1/checkouts/", json=body)

    async def create_customer_session(self, customer_id: str) -> dict[str, Any]:
        return await self._request("POST", "/v1/customer-sessions/", json={"customer_id": customer_id})

    async def cancel_subscription(self, subscription_id: str) -> dict[str, Any]:
        # Cancels at period end; the provider confirms through a webhook.
        return await self._request(
            "PATCH",
            f"/v1/subscriptions/{subscription_id}",
            json={"cancel_at_period_end": True},
        )


_polar_client: PolarClient | None = None


def get_polar_client() -> PolarClient:
    global _polar_client
    if _polar_client is None:
        _polar_client = PolarClient()
    return _polar_client


def set_polar_client(client: PolarClient | None) -> None:
    # Tests inject a client backed by httpx.MockTransport.
    global _polar_client
    _polar_client = client


def _has_fixed_price(price: Any) -> bool:
    return (
        isinstance(price, dict)
        and "id" in price
        and "price_amount" in price
        and "price_currency" in price
    )


async def get_available_plans(client: PolarClient | None = None) -> dict[str, Any]:
    # Custom and free-form prices have no amount; only fixed prices are listed.
    products = await (client or get_polar_client()).list_products()
    plans = []
    for product in products:
        prices = [price for price in product.get("prices") or [] if _has_fixed_price(price)]
        plans.append(
            {
                "id": product.get("id"),
                "name": product.get("name"),
                "description": product.get("description"),
                "is_recurring": product.get("is_recurring"),
                "prices": [
                    {
                        "id": price["id"],
                        "amount": price["price_amount"],
                        "currency": price["price_currency"],
                        "interval": price.get("recurring_interval"),
                    }
                    for price in prices
                ],
            }
        )
    return {"plans": plans}


async def create_organization_checkout(
    session: AsyncSession,
    *,
    user: User,
    organization_id: str,
    price_id: str,
    plan: str,
    client: PolarClient | None = None,
) -> dict[str, str]:
    if plan not in _PLANS:
        raise ValidationFailedError("Unknown plan")
    membership = await org_repo.get_membership(session, organization_id, user.id)
    if membership is None or membership.role not in {"owner", "admin"}:
        raise PermissionDeniedError("Organization not found or not authorized")
    org = await get_organization(session, organization_id)

    polar = client or get_polar_client()
    product_id = None
    for product in await polar.list_products():
        if any(price.get("id") == price_id for price in product.get("prices") or []):
            product_id = product.get("id")
            break
    if not product_id:
        raise NotFoundError(f"Product not found for price ID: {price_id}")

    settings = get_settings()
    checkout = await polar.create_checkout(
        product_id=product_id,
        success_url=f"{settings.frontend_url}/dashboard/settings?tab=billing&success=true",
        customer_email=user.email,
        metadata={
            "organizationId": org.id,
            "userId": user.id,
            "priceId": price_id,
            "plan": plan,
        },
    )
    logger.info("checkout_created organization_id=%s product_id=%s plan=%s", org.id, product_id, plan)
    return {"checkout_url": checkout.get("url", "")}


async def get_customer_portal_url(
    session: AsyncSession,
    *,
    user: User,
    organization_id: str,
    client: PolarClient | None = None,
) -> dict[str, str]:
    await require_member(session, organization_id, user.id)
    subscription = await get_organization_subscription(session, organization_id)
    if subscription is None or not subscription.customer_id:
        raise SubscriptionNotFoundError("No customer ID found")
    result = await (client or get_polar_client()).create_customer_session(subscription.customer_id)
    return {"url": result.get("customer_portal_url", "")}


async def cancel_organization_subscription(
    session: AsyncSession,
    *,
    user: User,
    organization_id: str,
    client: PolarClient | None = None,
) -> dict[str, bool]:
    membership = await org_repo.get_membership(session, organization_id, user.id)
    if membership is None or membership.role != "owner":
        raise PermissionDeniedError("Only organization owners can cancel subscriptions")
    subscription = await get_organization_subscription(session, organization_id)
    if subscription is None or not subscription.polar_id:
        raise SubscriptionNotFoundError("No active subscription found")

    await (client or get_polar_client()).cancel_subscription(subscription.polar_id)
    await record_audit_log(
        session=session,
        user_id=user.id,
        organization_id=organization_id,
        action=AUDIT_ACTIONS["SUBSCRIPTION_CANCELED"],
        resource=f"subscription/{subscription.id}",
        resource_id=subscription.id,
        status="success",
        metadata={"polar_id": subscription.polar_id, "requested_by": "owner"},
        commit=True,
    )
    return {"success": True}


async def get_organization_billing(
    session: AsyncSession, *, user: User, organization_id: str
) -> dict[str, Any]:
    await require_member(session, organization_id, user.id)
    org = await get_organization(session, organization_id)
    subscription = await get_organization_subscription(session, organization_id)
    return {
        "organization": serialize_organization(org),
        "subscription": serialize_subscription(subscription) if subscription is not None else None,
        "has_active_subscription": subscription is not None and subscription.status == "active",
        "plan": org.plan or "free",
    }


async def update_organization_plan(session: AsyncSession, *, organization_id: str, plan: str) -> str:
    """Set an organization's plan directly and return the previous one."""
    if plan not in _PLANS:
        raise ValidationFailedError("Unknown plan")
    org = await get_organization(session, organization_id)
    previous = org.plan or "free"
    org.plan = plan
    org.updated_at = utc_now()
    await session.commit()
    logger.info("organization_plan_updated organization_id=%s old=%s new=%s", organization_id, previous, plan)
    return previous
