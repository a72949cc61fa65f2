from __future__ import annotations

from sqlalchemy import select

from taskcoda.domain.models import AuditLog, Organization, User
from taskcoda.persistence.db import SessionLocal
from taskcoda.tests.utils.auth import auth_headers
from taskcoda.tests.utils.seed import create_organization, create_user


async def test_admin_routes_require_super_admin(client) -> None:
    await create_user(subject="user_plain")
    response = await client.get("/v1/admin/users", headers=auth_headers("user_plain"))
    assert response.status_code == 403
    assert response.json()["error"]["code"] == "AUTH_FORBIDDEN"


async def test_search_and_suspend_user(client) -> None:
    await create_user(subject="user_root", role="super_admin")
    target = await create_user(subject="user_target", email="target@example.com", name="Target")
    headers = auth_headers("user_root")

    found = await client.get("/v1/admin/users", params={"query": "TARGET@"}, headers=headers)
    assert found.status_code == 200
    data = found.json()["data"]
    assert data["total"] == 1
    assert data["users"][0]["id"] == target.id

    suspended = await client.post(
        f"/v1/admin/users/{target.id}/suspend", json={"reason": "abuse"}, headers=headers
    )
    assert suspended.status_code == 200

    blocked = await client.get("/v1/organizations", headers=auth_headers("user_target"))
    assert blocked.status_code == 403
    assert blocked.json()["error"]["code"] == "ACCOUNT_SUSPENDED"

    restored = await client.post(f"/v1/admin/users/{target.id}/activate", headers=headers)
    assert restored.status_code == 200
    async with SessionLocal() as session:
        stored = await session.get(User, target.id)
        actions = (await session.execute(select(AuditLog.action))).scalars().all()
    assert stored.suspended_at is None
    assert "USER_SUSPENDED" in actions
    assert "USER_ACTIVATED" in actions


async def test_super_admins_cannot_be_suspended(client) -> None:
    await create_user(subject="user_root", role="super_admin")
    other = await create_user(subject="user_root2", role="super_admin")
    response = await client.post(
        f"/v1/admin/users/{other.id}/suspend", json={"reason": "x"}, headers=auth_headers("user_root")
    )
    assert response.status_code == 403


async def test_plan_override_and_quota_adjustment(client) -> None:
    await create_user(subject="user_root", role="super_admin")
    owner = await create_user()
    org = await create_organization(owner, plan="free")
    headers = auth_headers("user_root")

    overridden = await client.post(
        f"/v1/admin/organizations/{org.id}/plan", json={"plan": "enterprise", "reason": "deal"}, headers=headers
    )
    assert overridden.status_code == 200

    adjusted = await client.post(
        f"/v1/admin/organizations/{org.id}/quotas",
        json={"quota_type": "ai_messages", "new_limit": 250, "reason": "pilot"},
        headers=headers,
    )
    assert adjusted.status_code == 200

    rejected = await client.post(
        f"/v1/admin/organizations/{org.id}/quotas",
        json={"quota_type": "ai_messages", "new_limit": 0, "reason": "oops"},
        headers=headers,
    )
    assert rejected.status_code == 400

    async with SessionLocal() as session:
        stored = await session.get(Organization, org.id)
    assert stored.plan == "enterprise"
    assert stored.settings["quotas"] == {"ai_messages": 250}


async def test_feature_flag_crud_and_evaluation(client) -> None:
    await create_user(subject="user_root", role="super_admin")
    owner = await create_user(subject="user_flag_owner")
    org = await create_organization(owner)
    headers = auth_headers("user_root")

    created = await client.post(
        "/v1/admin/feature-flags",
        json={"name": "beta-chat", "description": "Beta", "enabled": True, "organization_id": org.id},
        headers=headers,
    )
    assert created.status_code == 201
    flag = created.json()["data"]

    enabled = await client.get("/v1/feature-flags/beta-chat/enabled", headers=auth_headers("user_flag_owner"))
    assert enabled.json()["data"] == {"name": "beta-chat", "enabled": True}

    await client.patch(f"/v1/admin/feature-flags/{flag['id']}", json={"enabled": False}, headers=headers)
    disabled = await client.get("/v1/feature-flags/beta-chat/enabled", headers=auth_headers("user_flag_owner"))
    assert disabled.json()["data"]["enabled"] is False

    deleted = await client.delete(f"/v1/admin/feature-flags/{flag['id']}", headers=headers)
    assert deleted.status_code == 200
    missing = await client.delete(f"/v1/admin/feature-flags/{flag['id']}", headers=headers)
    assert missing.status_code == 404
    assert missing.json()["error"]["code"] == "FEATURE_FLAG_NOT_FOUND"


async def test_system_health_counts(client) -> None:
    await create_user(subject="user_root", role="super_admin")
    response = await client.get("/v1/admin/system/health", headers=auth_headers("user_root"))
    assert response.status_code == 200
    data = response.json()["data"]
    assert data["total_users"] == 1
    assert data["error_rate"] == 0.0
