from __future__ import annotations

import asyncio
from dataclasses import dataclass
from html import escape
import logging
from typing import Any

import resend

from taskcoda.core.config import get_settings


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class EmailResult:
    # Summarize delivery attempts; email failures never reach request handlers.
    success: bool
    email_id: str | None = None
    error: str | None = None
    message: str | None = None


def _layout(title: str, body: str, cta_label: str | None = None, cta_link: str | None = None) -> str:
    button = ""
    if cta_label and cta_link:
        button = (
            f'<p><a href="{escape(cta_link)}" style="background:#111827;color:#fff;'
            f'padding:12px 20px;border-radius:6px;text-decoration:none">{escape(cta_label)}</a></p>'
        )
    return (
        "<!DOCTYPE html><html><body style=\"font-family:sans-serif;line-height:1.5\">"
        f"<h1>{escape(title)}</h1>{body}{button}"
        "</body></html>"
    )


def welcome_template(user_name: str, dashboard_link: str) -> str:
    return _layout(
        f"Welcome, {user_name}!",
        "<p>Your account is ready. Create an organization to start collaborating.</p>",
        "Open dashboard",
        dashboard_link,
    )


def team_invitation_template(
    *, organization_name: str, inviter_name: str, role: str, invitation_link: str
) -> str:
    return _layout(
        f"Join {organization_name}",
        f"<p>{escape(inviter_name)} invited you to join <strong>{escape(organization_name)}</strong>"
        f" as <strong>{escape(role)}</strong>.</p>",
        "Accept invitation",
        invitation_link,
    )


def quota_warning_template(
    *, organization_name: str, metric_type: str, percentage: int, used: int, limit: int, plan: str,
    upgrade_link: str,
) -> str:
    return _layout(
        f"{organization_name} is at {percentage}% of its {metric_type} quota",
        f"<p>You have used {used} of {limit} this month on the {escape(plan)} plan.</p>",
        "Upgrade plan",
        upgrade_link,
    )


def organization_created_template(*, organization_name: str, plan: str, dashboard_link: str) -> str:
    return _layout(
        f"{organization_name} is ready",
        f"<p>Your organization was created on the {escape(plan)} plan.</p>",
        "Go to dashboard",
        dashboard_link,
    )


async def send_email(*, to: str, subject: str, html: str) -> EmailResult:
    # Skip quietly when the provider is not configured.
    settings = get_settings()
    if not settings.resend_api_key:
        logger.warning("email_skipped reason=not_configured subject=%s", subject)
        return EmailResult(success=False, message="Email not configured")

    resend.api_key = settings.resend_api_key
    params: dict[str, Any] = {
        "from": settings.email_from,
        "to": [to],
        "subject": subject,
        "html": html,
    }
    try:
        # The SDK is synchronous; keep it off the event loop.
        response = await asyncio.to_thread(resend.Emails.send, params)
    except Exception as exc:  # noqa: BLE001 - email failures are non-fatal
        logger.warning("email_send_failed subject=%s", subject, exc_info=exc)
        return EmailResult(success=False, error=str(exc))

    email_id = response.get("id") if isinstance(response, dict) else getattr(response, "id", None)
    logger.info("email_sent subject=%s email_id=%s", subject, email_id)
    return EmailResult(success=True, email_id=email_id)


async def send_welcome_email(*, to: str, user_name: str) -> EmailResult:
    settings = get_settings()
    return await send_email(
        to=to,
        subject="Welcome to TaskCoda!",
        html=welcome_template(user_name, f"{settings.frontend_url}/dashboard"),
    )


async def send_team_invitation_email(
    *, to: str, organization_name: str, inviter_name: str, role: str
) -> EmailResult:
    settings = get_settings()
    return await send_email(
        to=to,
        subject=f"You've been invited to join {organization_name}",
        html=team_invitation_template(
            organization_name=organization_name,
            inviter_name=inviter_name,
            role=role,
            invitation_link=f"{settings.frontend_url}/dashboard/team",
        ),
    )


async def send_quota_warning_email(
    *,
    to: str,
    organization_name: str,
    metric_type: str,
    percentage: float,
    used: int,
    limit: int,
    plan: str,
) -> EmailResult:
    settings = get_settings()
    rounded = int(round(percentage))
    return await send_email(
        to=to,
        subject=f"{organization_name}: {rounded}% of {metric_type} quota used",
        html=quota_warning_template(
            organization_name=organization_name,
            metric_type=metric_type,
            percentage=rounded,
            used=used,
            limit=limit,
            plan=plan,
            upgrade_link=f"{settings.frontend_url}/dashboard/billing",
        ),
    )


async def send_organization_created_email(*, to: str, organization_name: str, plan: str) -> EmailResult:
    settings = get_settings()
    return await send_email(
        to=to,
        subject=f"{organization_name} has been created",
        html=organization_created_template(
            organization_name=organization_name,
            plan=plan,
            dashboard_link=f"{settings.frontend_url}/dashboard",
        ),
    )
