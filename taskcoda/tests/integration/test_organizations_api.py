from __future__ import annotations

from taskcoda.tests.utils.auth import auth_headers
from taskcoda.tests.utils.seed import add_member, create_organization, create_user


async def test_unauthenticated_requests_get_enveloped_401(client) -> None:
    response = await client.get("/v1/organizations")
    assert response.status_code == 401
    body = response.json()
    assert body["error"]["code"] == "AUTH_UNAUTHORIZED"
    assert body["meta"]["api_version"] == "v1"
    assert response.headers["X-Request-Id"]


async def test_create_list_and_duplicate_slug(client) -> None:
    headers = auth_headers("user_founder", email="founder@example.com", name="Founder")
    created = await client.post("/v1/organizations", json={"name": "Acme", "slug": "acme"}, headers=headers)
    assert created.status_code == 201
    org = created.json()["data"]
    assert org["slug"] == "acme"
    assert org["plan"] == "free"

    listed = await client.get("/v1/organizations", headers=headers)
    items = listed.json()["data"]["items"]
    assert [(item["id"], item["role"]) for item in items] == [(org["id"], "owner")]

    duplicate = await client.post("/v1/organizations", json={"name": "Other", "slug": "acme"}, headers=headers)
    assert duplicate.status_code == 409
    assert duplicate.json()["error"]["code"] == "CONFLICT"


async def test_invite_accept_and_list_members(client) -> None:
    owner = await create_user(subject="user_owner", email="owner@example.com")
    await create_user(subject="user_invitee", email="invitee@example.com")
    org = await create_organization(owner)

    invited = await client.post(
        f"/v1/organizations/{org.id}/invitations",
        json={"email": "invitee@example.com", "role": "member"},
        headers=auth_headers("user_owner"),
    )
    assert invited.status_code == 201
    membership = invited.json()["data"]
    assert membership["status"] == "pending"

    pending_view = await client.get(f"/v1/organizations/{org.id}", headers=auth_headers("user_invitee"))
    assert pending_view.status_code == 403

    accepted = await client.post(
        f"/v1/organizations/memberships/{membership['id']}/accept",
        headers=auth_headers("user_invitee"),
    )
    assert accepted.status_code == 200
    assert accepted.json()["data"] == {"organization_id": org.id}

    members = await client.get(f"/v1/organizations/{org.id}/members", headers=auth_headers("user_invitee"))
    assert members.status_code == 200
    roles = sorted(member["role"] for member in members.json()["data"]["items"])
    assert roles == ["member", "owner"]

    again = await client.post(
        f"/v1/organizations/memberships/{membership['id']}/accept",
        headers=auth_headers("user_invitee"),
    )
    assert again.status_code == 409


async def test_members_cannot_invite(client) -> None:
    owner = await create_user(subject="user_owner2")
    member = await create_user(subject="user_member2")
    await create_user(subject="user_target", email="target@example.com")
    org = await create_organization(owner)
    invited = await client.post(
        f"/v1/organizations/{org.id}/invitations",
        json={"email": "target@example.com", "role": "member"},
        headers=auth_headers("user_owner2"),
    )
    assert invited.status_code == 201

    await add_member(org, member)
    forbidden = await client.post(
        f"/v1/organizations/{org.id}/invitations",
        json={"email": "target@example.com", "role": "admin"},
        headers=auth_headers("user_member2"),
    )
    assert forbidden.status_code == 403
    assert forbidden.json()["error"]["code"] == "AUTH_FORBIDDEN"


async def test_permission_check_follows_role_hierarchy(client) -> None:
    owner = await create_user(subject="user_perm")
    org = await create_organization(owner)
    response = await client.get(
        f"/v1/organizations/{org.id}/permissions",
        params={"required_role": "admin"},
        headers=auth_headers("user_perm"),
    )
    assert response.json()["data"] == {"has_permission": True, "role": "owner"}
