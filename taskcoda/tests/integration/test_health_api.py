from __future__ import annotations

from taskcoda.services import health


async def test_health_reports_dependencies(client) -> None:
    response = await client.get("/health")
    assert response.status_code == 200
    assert response.headers["Cache-Control"] == "no-cache, no-store, must-revalidate"
    payload = response.json()
    assert payload["status"] == "healthy"
    assert payload["service"] == "taskcoda"
    assert payload["environment"] == "test"
    assert payload["checks"]["database"] == {"status": "healthy", "type": "sql"}
    assert payload["checks"]["rateLimit"] == {"status": "healthy", "type": "redis"}
    assert payload["responseTime"].endswith("ms")


async def test_health_degrades_when_cache_fails(client, monkeypatch) -> None:
    async def _down() -> bool:
        raise ConnectionError("cache unavailable")

    monkeypatch.setattr(health, "ping_cache", _down)
    response = await client.get("/health")
    assert response.status_code == 503
    payload = response.json()
    assert payload["status"] == "unhealthy"
    assert payload["checks"]["rateLimit"]["status"] == "unhealthy"
    assert payload["checks"]["database"]["status"] == "healthy"
