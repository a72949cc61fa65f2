from __future__ import annotations

from sqlalchemy import select

from taskcoda.domain.models import AuditLog
from taskcoda.persistence.db import SessionLocal
from taskcoda.services.audit import record_audit_log, sanitize_metadata


def test_credentials_are_redacted_recursively() -> None:
    sanitized = sanitize_metadata(
        {
            "access_token": "abc",
            "nested": {"API_KEY": "k", "items": [{"password": "p", "ok": 1}]},
            "Authorization": "Bearer x",
        }
    )
    assert sanitized["access_token"] == "[REDACTED]"
    assert sanitized["nested"]["API_KEY"] == "[REDACTED]"
    assert sanitized["nested"]["items"] == [{"password": "[REDACTED]", "ok": 1}]
    assert sanitized["Authorization"] == "[REDACTED]"


def test_usage_counters_survive_sanitizing() -> None:
    assert sanitize_metadata({"tokensUsed": 42, "conversationId": "c1"}) == {
        "tokensUsed": 42,
        "conversationId": "c1",
    }


async def test_record_without_session_opens_its_own() -> None:
    await record_audit_log(
        user_id="u1",
        organization_id="o1",
        action="AI_CHAT_MESSAGE",
        resource="chat",
        status="failure",
        metadata={"reason": "quota_exceeded", "secret": "s"},
    )
    async with SessionLocal() as session:
        entry = (await session.execute(select(AuditLog))).scalar_one()
    assert entry.status == "failure"
    assert entry.metadata_json == {"reason": "quota_exceeded", "secret": "[REDACTED]"}
