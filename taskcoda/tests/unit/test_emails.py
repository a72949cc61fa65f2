from __future__ import annotations

import resend

from taskcoda.core.config import get_settings
from taskcoda.services import emails


async def test_send_is_skipped_when_unconfigured() -> None:
    result = await emails.send_welcome_email(to="ada@example.com", user_name="Ada")
    assert result.success is False
    assert result.message == "Email not configured"


async def test_send_uses_provider_when_configured(monkeypatch) -> None:
    monkeypatch.setenv("RESEND_API_KEY", "re_test")
    get_settings.cache_clear()
    sent: list[dict] = []

    def _fake_send(params: dict) -> dict:
        sent.append(params)
        return {"id": "email_1"}

    monkeypatch.setattr(resend.Emails, "send", _fake_send)
    result = await emails.send_team_invitation_email(
        to="bob@example.com", organization_name="Acme", inviter_name="Ada", role="admin"
    )
    assert result.success is True
    assert result.email_id == "email_1"
    assert sent[0]["to"] == ["bob@example.com"]
    assert "Acme" in sent[0]["subject"]


async def test_provider_failure_is_reported_not_raised(monkeypatch) -> None:
    monkeypatch.setenv("RESEND_API_KEY", "re_test")
    get_settings.cache_clear()

    def _boom(params: dict) -> dict:
        raise RuntimeError("provider down")

    monkeypatch.setattr(resend.Emails, "send", _boom)
    result = await emails.send_email(to="bob@example.com", subject="Hi", html="<p>Hi</p>")
    assert result.success is False
    assert result.error == "provider down"


def test_templates_escape_user_content() -> None:
    html = emails.welcome_template("<script>", "https://app.example.com/dashboard")
    assert "<script>" not in html
    assert "&lt;script&gt;" in html
