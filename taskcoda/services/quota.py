from __future__ import annotations

from dataclasses import dataclass
import logging
import math

from sqlalchemy.ext.asyncio import AsyncSession

from taskcoda.core.errors import OrganizationNotFoundError
from taskcoda.core.periods import TimeProvider, utc_now
from taskcoda.domain.models import Organization
from taskcoda.services.usage import UsageMeter


_DEFAULT_PLAN = "free"

PLAN_QUOTAS: dict[str, dict[str, float]] = {
    "free": {
        "ai_messages": 100,
        "api_calls": 1_000,
        "storage_mb": 100,
        "team_members": 3,
    },
    "pro": {
        "ai_messages": 10_000,
        "api_calls": 100_000,
        "storage_mb": 10_000,
        "team_members": 25,
    },
    "enterprise": {
        "ai_messages": math.inf,
        "api_calls": math.inf,
        "storage_mb": math.inf,
        "team_members": math.inf,
    },
}


@dataclass(frozen=True)
class QuotaStatus:
    # Allow/deny decision plus the balance used for headers and upsell payloads.
    has_quota: bool
    used: int
    limit: float
    remaining: float
    percentage: float

    def as_dict(self) -> dict[str, object]:
        return {
            "has_quota": self.has_quota,
            "used": self.used,
            "limit": _format_limit(self.limit),
            "remaining": _format_limit(self.remaining),
            "percentage": self.percentage,
        }


def get_quota_for_plan(plan: str | None) -> dict[str, float]:
    # Unknown or unset plans fall back to the free tier.
    return PLAN_QUOTAS.get(plan or _DEFAULT_PLAN, PLAN_QUOTAS[_DEFAULT_PLAN])


def _override_limit(org: Organization, metric_type: str) -> float | None:
    # Super-admin overrides live under settings["quotas"]; null means unlimited.
    overrides = (org.settings or {}).get("quotas") or {}
    if metric_type not in overrides:
        return None
    value = overrides[metric_type]
    return math.inf if value is None else float(value)


def resolve_limit(org: Organization, metric_type: str) -> float | None:
    override = _override_limit(org, metric_type)
    if override is not None:
        return override
    return get_quota_for_plan(org.plan).get(metric_type)


def build_status(used: int, limit: float) -> QuotaStatus:
    # Clamp percentage to [0, 100] even when usage overshoots the limit.
    if math.isinf(limit):
        return QuotaStatus(has_quota=True, used=used, limit=limit, remaining=math.inf, percentage=0)
    remaining = max(0, limit - used)
    percentage = min(100.0, (used / limit) * 100) if limit > 0 else 100.0
    return QuotaStatus(
        has_quota=used < limit,
        used=used,
        limit=int(limit),
        remaining=int(remaining),
        percentage=max(0.0, percentage),
    )


class QuotaService:
    """Monthly quota checks against the organization's plan table.

    The check is read-only: it does not reserve capacity, so concurrent
    requests may both pass before either records usage. Callers treat the
    result as a soft limit.
    """

    def __init__(
        self,
        *,
        usage_meter: UsageMeter | None = None,
        time_provider: TimeProvider | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        # Allow time injection for deterministic rollover tests.
        self._time_provider = time_provider or utc_now
        self._usage = usage_meter or UsageMeter(time_provider=self._time_provider)
        self._logger = logger or logging.getLogger(__name__)

    async def check_quota(
        self,
        session: AsyncSession,
        *,
        organization_id: str,
        metric_type: str,
    ) -> QuotaStatus:
        org = await session.get(Organization, organization_id)
        if org is None or org.deleted_at is not None:
            raise OrganizationNotFoundError("Organization not found")

        limit = resolve_limit(org, metric_type)
        if not limit:
            # Metrics without a configured ceiling are unlimited.
            return QuotaStatus(has_quota=True, used=0, limit=math.inf, remaining=math.inf, percentage=0)

        used = await self._usage.sum_usage(
            session, organization_id=organization_id, metric_type=metric_type
        )
        status = build_status(used, limit)
        if not status.has_quota:
            self._logger.info(
                "quota_exhausted organization_id=%s metric=%s used=%s limit=%s",
                organization_id,
                metric_type,
                used,
                status.limit,
            )
        return status


_quota_service: QuotaService | None = None


def get_quota_service() -> QuotaService:
    # Cache the quota service for reuse across requests.
    global _quota_service
    if _quota_service is None:
        _quota_service = QuotaService()
    return _quota_service


def reset_quota_service() -> None:
    # Reset cached services for deterministic tests.
    global _quota_service
    _quota_service = None


def _format_limit(value: float) -> int | str:
    # Represent unlimited limits using the agreed header token.
    return "unlimited" if math.isinf(value) else int(value)


def quota_headers(status: QuotaStatus) -> dict[str, str]:
    # Render quota headers for responses with consistent casing.
    return {
        "X-Quota-Used": str(status.used),
        "X-Quota-Limit": str(_format_limit(status.limit)),
        "X-Quota-Remaining": str(_format_limit(status.remaining)),
    }


def crossed_threshold(previous_used: int, status: QuotaStatus, ratio: float) -> bool:
    # True only on the increment that moves usage across the warning ratio.
    if math.isinf(status.limit) or status.limit <= 0:
        return False
    threshold = status.limit * ratio
    return previous_used < threshold <= status.used
