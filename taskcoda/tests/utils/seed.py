from __future__ import annotations

from uuid import uuid4

from taskcoda.core.periods import utc_now
from taskcoda.domain.models import Organization, TeamMember, User
from taskcoda.persistence.db import SessionLocal


async def create_user(
    *,
    subject: str | None = None,
    email: str | None = None,
    name: str | None = "Test User",
    role: str = "user",
    suspended: bool = False,
) -> User:
    # Provision a user row keyed by the token subject used in auth headers.
    now = utc_now()
    async with SessionLocal() as session:
        user = User(
            token_identifier=subject or f"user_{uuid4().hex}",
            email=email,
            name=name,
            role=role,
            suspended_at=now if suspended else None,
            created_at=now,
            updated_at=now,
        )
        session.add(user)
        await session.commit()
        return user


async def create_organization(
    owner: User,
    *,
    plan: str | None = "free",
    slug: str | None = None,
    settings: dict | None = None,
) -> Organization:
    # Create an organization with the owner as its active member and current context.
    now = utc_now()
    async with SessionLocal() as session:
        org = Organization(
            name="Acme",
            slug=slug or f"acme-{uuid4().hex[:8]}",
            owner_id=owner.id,
            plan=plan,
            settings=settings,
            created_at=now,
            updated_at=now,
        )
        session.add(org)
        await session.flush()
        session.add(
            TeamMember(
                organization_id=org.id,
                user_id=owner.id,
                role="owner",
                status="active",
                joined_at=now,
                created_at=now,
                updated_at=now,
            )
        )
        db_owner = await session.get(User, owner.id)
        db_owner.organization_id = org.id
        await session.commit()
        owner.organization_id = org.id
        return org


async def add_member(organization: Organization, user: User, *, role: str = "member", status: str = "active") -> TeamMember:
    now = utc_now()
    async with SessionLocal() as session:
        member = TeamMember(
            organization_id=organization.id,
            user_id=user.id,
            role=role,
            status=status,
            joined_at=now if status == "active" else None,
            created_at=now,
            updated_at=now,
        )
        session.add(member)
        await session.commit()
        return member
