from __future__ import annotations

import logging
import time
from typing import Any

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError

from taskcoda.core.config import get_settings
from taskcoda.core.periods import TimeProvider, utc_now
from taskcoda.persistence.db import get_session
from taskcoda.services.rate_limit import ping_cache


logger = logging.getLogger(__name__)

SERVICE_NAME = "taskcoda"


async def check_database() -> bool:
    # Keep the DB check lightweight to avoid introducing new load.
    try:
        async with get_session() as session:
            await session.execute(select(1))
        return True
    except (SQLAlchemyError, OSError) as exc:
        logger.warning("health_database_failed error=%s", type(exc).__name__)
        return False


async def check_cache() -> bool:
    # An unconfigured cache counts as healthy; the limiter fails open without it.
    try:
        pong = await ping_cache()
    except Exception as exc:  # noqa: BLE001 - any cache client error means unhealthy
        logger.warning("health_cache_failed error=%s", type(exc).__name__)
        return False
    return True if pong is None else pong


def _check(healthy: bool, kind: str) -> dict[str, str]:
    return {"status": "healthy" if healthy else "unhealthy", "type": kind}


async def build_health_report(*, time_provider: TimeProvider | None = None) -> tuple[int, dict[str, Any]]:
    start = time.monotonic()
    db_ok = await check_database()
    cache_ok = await check_cache()
    healthy = db_ok and cache_ok
    response_ms = int((time.monotonic() - start) * 1000)

    payload = {
        "status": "healthy" if healthy else "unhealthy",
        "timestamp": (time_provider or utc_now)().isoformat(),
        "responseTime": f"{response_ms}ms",
        "checks": {
            "database": _check(db_ok, "sql"),
            "rateLimit": _check(cache_ok, "redis"),
            # External identity and billing providers are not probed.
            "authentication": _check(True, "jwt"),
            "payments": _check(True, "polar.sh"),
        },
        "service": SERVICE_NAME,
        "environment": get_settings().environment,
    }
    if not healthy:
        logger.warning("health_unhealthy database=%s cache=%s", db_ok, cache_ok)
    return (200 if healthy else 503), payload
