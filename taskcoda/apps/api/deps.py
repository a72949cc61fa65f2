from __future__ import annotations

from typing import AsyncGenerator

from fastapi import Depends, HTTPException, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from taskcoda.core.errors import AuthenticationError
from taskcoda.domain.models import User
from taskcoda.persistence.db import get_session
from taskcoda.services.admin import require_super_admin
from taskcoda.services.auth import Identity, get_or_create_user, parse_bearer_token, verify_token


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    # One AsyncSession per request; context manager ensures close on success/error.
    async with get_session() as session:
        yield session


def _auth_error(message: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail={"code": "AUTH_UNAUTHORIZED", "message": message},
        headers={"WWW-Authenticate": "Bearer"},
    )


def get_identity(request: Request) -> Identity:
    token = parse_bearer_token(request.headers.get("Authorization"))
    if not token:
        raise _auth_error("Missing or invalid bearer token")
    try:
        return verify_token(token)
    except AuthenticationError as exc:
        raise _auth_error("Invalid token") from exc


async def get_current_user(
    identity: Identity = Depends(get_identity),
    db: AsyncSession = Depends(get_db),
) -> User:
    user, _created = await get_or_create_user(db, identity)
    if user.suspended_at is not None:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail={"code": "ACCOUNT_SUSPENDED", "message": "Account suspended"},
        )
    return user


async def get_super_admin(user: User = Depends(get_current_user)) -> User:
    return require_super_admin(user)
