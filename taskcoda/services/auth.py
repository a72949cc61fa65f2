from __future__ import annotations

from dataclasses import dataclass
import logging
from typing import Any

import jwt
from sqlalchemy.ext.asyncio import AsyncSession

from taskcoda.core.config import get_settings
from taskcoda.core.errors import AuthenticationError
from taskcoda.core.periods import utc_now
from taskcoda.domain.models import User
from taskcoda.persistence.repos import users as users_repo
from taskcoda.services import emails
from taskcoda.services.audit import AUDIT_ACTIONS, record_audit_log


logger = logging.getLogger(__name__)

_ASYMMETRIC_PREFIXES = ("RS", "ES", "PS")


@dataclass(frozen=True)
class Identity:
    # Verified claims from the identity provider's bearer token.
    subject: str
    name: str | None = None
    email: str | None = None
    image: str | None = None


def parse_bearer_token(header_value: str | None) -> str | None:
    # Enforce the "Bearer <token>" format; anything else counts as missing.
    if not header_value:
        return None
    parts = header_value.split()
    if len(parts) != 2 or parts[0].lower() != "bearer":
        return None
    return parts[1]


def _verification_key() -> tuple[Any, list[str]]:
    settings = get_settings()
    algorithms = settings.jwt_algorithms()
    if settings.auth_jwt_public_key:
        return settings.auth_jwt_public_key, [alg for alg in algorithms if alg.startswith(_ASYMMETRIC_PREFIXES)]
    if settings.auth_jwt_secret:
        return settings.auth_jwt_secret, [alg for alg in algorithms if alg.startswith("HS")]
    raise AuthenticationError("Token verification is not configured")


def verify_token(token: str) -> Identity:
    # Validate signature, expiry and (when configured) issuer and audience.
    settings = get_settings()
    key, algorithms = _verification_key()
    if not algorithms:
        raise AuthenticationError("No usable JWT algorithm configured")
    options = {"require": ["sub", "exp"], "verify_aud": bool(settings.auth_jwt_audience)}
    try:
        claims = jwt.decode(
            token,
            key,
            algorithms=algorithms,
            audience=settings.auth_jwt_audience,
            issuer=settings.auth_jwt_issuer,
            leeway=settings.auth_jwt_leeway_s,
            options=options,
        )
    except jwt.PyJWTError as exc:
        logger.info("auth_token_rejected error=%s", type(exc).__name__)
        raise AuthenticationError("Invalid token") from exc

    return Identity(
        subject=str(claims["sub"]),
        name=claims.get("name"),
        email=claims.get("email"),
        image=claims.get("picture") or claims.get("image_url"),
    )


async def get_or_create_user(session: AsyncSession, identity: Identity) -> tuple[User, bool]:
    # First sight of a subject provisions a local user row.
    user = await users_repo.get_by_token(session, identity.subject)
    if user is not None:
        return user, False

    now = utc_now()
    user = User(
        token_identifier=identity.subject,
        name=identity.name,
        email=identity.email,
        image=identity.image,
        role="user",
        created_at=now,
        updated_at=now,
    )
    session.add(user)
    await session.commit()
    await record_audit_log(
        session=session,
        user_id=user.id,
        action=AUDIT_ACTIONS["USER_CREATED"],
        resource=f"user/{user.id}",
        resource_id=user.id,
        status="success",
        commit=True,
    )
    if user.email:
        await emails.send_welcome_email(to=user.email, user_name=user.name or "there")
    logger.info("user_provisioned user_id=%s", user.id)
    return user, True
