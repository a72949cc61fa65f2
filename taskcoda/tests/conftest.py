from __future__ import annotations

import os
import tempfile

# Point settings at throwaway backends before any taskcoda module builds the engine.
_DB_DIR = tempfile.mkdtemp(prefix="taskcoda-tests-")
os.environ["DATABASE_URL"] = f"sqlite+aiosqlite:///{os.path.join(_DB_DIR, 'taskcoda.db')}"
os.environ["REDIS_URL"] = ""
os.environ["LLM_PROVIDER"] = "fake"
os.environ["AUTH_JWT_SECRET"] = "taskcoda-test-secret-0123456789abcdef"
os.environ["AUTH_JWT_ALGORITHMS"] = "HS256"
os.environ["POLAR_WEBHOOK_SECRET"] = "whsec_taskcoda-test-webhook-secret"
os.environ["POLAR_ACCESS_TOKEN"] = ""
os.environ["RESEND_API_KEY"] = ""
os.environ["OPENAI_API_KEY"] = ""
os.environ["ENVIRONMENT"] = "test"

import pytest
from httpx import ASGITransport, AsyncClient

from taskcoda.apps.api.main import create_app
from taskcoda.core.config import get_settings
from taskcoda.domain.models import Base
from taskcoda.persistence.db import engine
from taskcoda.services import billing, quota, rate_limit, subscriptions, usage


def _reset_singletons() -> None:
    get_settings.cache_clear()
    rate_limit.reset_rate_limiter_state()
    quota.reset_quota_service()
    usage.reset_usage_meter()
    subscriptions.reset_webhook_processor()
    billing.set_polar_client(None)


@pytest.fixture(autouse=True)
async def database() -> None:
    # Fresh schema per test; dispose the engine so connections never outlive their loop.
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


@pytest.fixture(autouse=True)
def reset_services() -> None:
    # Clear cached settings and service singletons so env overrides never leak.
    _reset_singletons()
    yield
    _reset_singletons()


@pytest.fixture
async def client() -> AsyncClient:
    transport = ASGITransport(app=create_app())
    async with AsyncClient(transport=transport, base_url="http://test") as http:
        yield http
