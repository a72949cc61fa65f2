from __future__ import annotations

from collections import defaultdict
from datetime import datetime
import logging
import math
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from taskcoda.core.periods import TimeProvider, month_end, month_start, shift_months, utc_now
from taskcoda.domain.models import UsageMetric, User


METRIC_TYPES = {
    "AI_MESSAGES": "ai_messages",
    "API_CALLS": "api_calls",
    "STORAGE_MB": "storage_mb",
    "TEAM_MEMBERS": "team_members",
    "WEBHOOK_CALLS": "webhook_calls",
    "EXPORTS": "exports",
}


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


class UsageMeter:
    """Append-only usage recording and read-time aggregation.

    Every call to :meth:`record_usage` inserts a new row keyed by the calendar
    month it happened in; totals are summed on read. There is no compaction,
    so read cost grows with the number of events per organization per month.
    """

    def __init__(
        self,
        *,
        time_provider: TimeProvider | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        # Allow time injection for deterministic period boundary tests.
        self._time_provider = time_provider or utc_now
        self._logger = logger or logging.getLogger(__name__)

    def current_period(self) -> tuple[datetime, datetime]:
        now = self._time_provider()
        return month_start(now), month_end(now)

    async def record_usage(
        self,
        session: AsyncSession,
        *,
        organization_id: str,
        metric_type: str,
        quantity: int | float,
        user_id: str | None,
        metadata: dict[str, Any] | None = None,
        commit: bool = True,
    ) -> UsageMetric:
        # Stamp the row with the current billing period; never merge with prior rows.
        now = self._time_provider()
        # Stored in whole units; a partial unit such as 0.4 MB counts as one.
        quantity = math.ceil(quantity)
        row = UsageMetric(
            organization_id=organization_id,
            user_id=user_id,
            metric_type=metric_type,
            quantity=quantity,
            metadata_json=metadata,
            period_start=month_start(now),
            period_end=month_end(now),
            timestamp=now,
        )
        session.add(row)
        if commit:
            await session.commit()
        self._logger.info(
            "usage_recorded organization_id=%s metric=%s quantity=%s",
            organization_id,
            metric_type,
            quantity,
        )
        return row

    async def sum_usage(
        self,
        session: AsyncSession,
        *,
        organization_id: str,
        metric_type: str,
        period_start: datetime | None = None,
    ) -> int:
        # Sum all rows in one organization/metric/month bucket.
        start = period_start or month_start(self._time_provider())
        result = await session.execute(
            select(func.coalesce(func.sum(UsageMetric.quantity), 0)).where(
                UsageMetric.organization_id == organization_id,
                UsageMetric.metric_type == metric_type,
                UsageMetric.period_start == start,
            )
        )
        return int(result.scalar_one() or 0)

    async def get_current_usage(
        self,
        session: AsyncSession,
        *,
        organization_id: str,
        metric_type: str | None = None,
    ) -> dict[str, Any]:
        now = self._time_provider()
        start = month_start(now)
        stmt = select(UsageMetric.metric_type, func.sum(UsageMetric.quantity)).where(
            UsageMetric.organization_id == organization_id,
            UsageMetric.period_start == start,
        )
        if metric_type:
            stmt = stmt.where(UsageMetric.metric_type == metric_type)
        result = await session.execute(stmt.group_by(UsageMetric.metric_type))
        usage = {name: int(total or 0) for name, total in result.all()}
        return {
            "period": {"start": _iso(start), "end": _iso(month_end(now))},
            "usage": usage,
            "total": sum(usage.values()),
        }

    async def get_usage_history(
        self,
        session: AsyncSession,
        *,
        organization_id: str,
        metric_type: str,
        months: int = 6,
    ) -> list[dict[str, Any]]:
        # Return oldest-first monthly totals ending with the current month.
        now = self._time_provider()
        history: list[dict[str, Any]] = []
        for offset in range(months - 1, -1, -1):
            start = shift_months(now, -offset)
            total = await self.sum_usage(
                session,
                organization_id=organization_id,
                metric_type=metric_type,
                period_start=start,
            )
            history.append(
                {"period": {"start": _iso(start), "end": _iso(month_end(start))}, "usage": total}
            )
        return history

    async def get_usage_by_user(
        self,
        session: AsyncSession,
        *,
        organization_id: str,
        metric_type: str,
    ) -> list[dict[str, Any]]:
        start = month_start(self._time_provider())
        result = await session.execute(
            select(UsageMetric.user_id, func.sum(UsageMetric.quantity))
            .where(
                UsageMetric.organization_id == organization_id,
                UsageMetric.metric_type == metric_type,
                UsageMetric.period_start == start,
            )
            .group_by(UsageMetric.user_id)
        )
        totals = {user_id: int(total or 0) for user_id, total in result.all()}
        users: dict[str, User] = {}
        user_ids = [user_id for user_id in totals if user_id]
        if user_ids:
            user_rows = await session.execute(select(User).where(User.id.in_(user_ids)))
            users = {user.id: user for user in user_rows.scalars().all()}

        enriched = []
        for user_id, quantity in totals.items():
            user = users.get(user_id) if user_id else None
            enriched.append(
                {
                    "user_id": user_id,
                    "user_name": (user.name if user and user.name else "Unknown"),
                    "user_email": (user.email if user and user.email else ""),
                    "quantity": quantity,
                }
            )
        enriched.sort(key=lambda item: item["quantity"], reverse=True)
        return enriched

    async def export_usage_for_billing(
        self,
        session: AsyncSession,
        *,
        organization_id: str,
        period_start: datetime,
        period_end: datetime,
    ) -> dict[str, Any]:
        # Rows are bucketed by the month their period starts in.
        result = await session.execute(
            select(UsageMetric)
            .where(
                UsageMetric.organization_id == organization_id,
                UsageMetric.period_start == month_start(period_start),
            )
            .order_by(UsageMetric.timestamp)
        )
        rows = list(result.scalars().all())
        metrics: dict[str, dict[str, Any]] = defaultdict(lambda: {"quantity": 0, "details": []})
        for row in rows:
            bucket = metrics[row.metric_type]
            bucket["quantity"] += row.quantity
            bucket["details"].append(
                {
                    "timestamp": _iso(row.timestamp),
                    "user_id": row.user_id,
                    "quantity": row.quantity,
                    "metadata": row.metadata_json,
                }
            )
        return {
            "organization_id": organization_id,
            "period": {"start": _iso(period_start), "end": _iso(period_end)},
            "metrics": dict(metrics),
            "total_usage": sum(row.quantity for row in rows),
        }


_usage_meter: UsageMeter | None = None


def get_usage_meter() -> UsageMeter:
    # Cache the usage meter for reuse across requests.
    global _usage_meter
    if _usage_meter is None:
        _usage_meter = UsageMeter()
    return _usage_meter


def reset_usage_meter() -> None:
    # Reset cached services for deterministic tests.
    global _usage_meter
    _usage_meter = None
