from __future__ import annotations

import pytest
from sqlalchemy import select

from taskcoda.core.errors import AuthenticationError
from taskcoda.domain.models import AuditLog
from taskcoda.persistence.db import SessionLocal
from taskcoda.services.auth import Identity, get_or_create_user, parse_bearer_token, verify_token
from taskcoda.tests.utils.auth import make_token


def test_bearer_header_parsing() -> None:
    assert parse_bearer_token("Bearer abc") == "abc"
    assert parse_bearer_token("bearer abc") == "abc"
    assert parse_bearer_token("Token abc") is None
    assert parse_bearer_token("Bearer") is None
    assert parse_bearer_token(None) is None


def test_valid_token_yields_identity() -> None:
    identity = verify_token(make_token("user_1", email="ada@example.com", name="Ada", picture="https://img"))
    assert identity == Identity(subject="user_1", name="Ada", email="ada@example.com", image="https://img")


def test_expired_and_forged_tokens_are_rejected() -> None:
    with pytest.raises(AuthenticationError):
        verify_token(make_token("user_1", expires_in=-3600))
    with pytest.raises(AuthenticationError):
        verify_token(make_token("user_1", secret="some-other-secret-0123456789abcdef"))
    with pytest.raises(AuthenticationError):
        verify_token("not-a-jwt")


async def test_first_sight_provisions_user_once() -> None:
    identity = Identity(subject="user_1", name="Ada", email="ada@example.com")
    async with SessionLocal() as session:
        user, created = await get_or_create_user(session, identity)
        again, created_again = await get_or_create_user(session, identity)
        actions = (await session.execute(select(AuditLog.action))).scalars().all()
    assert created is True
    assert created_again is False
    assert again.id == user.id
    assert actions == ["USER_CREATED"]
