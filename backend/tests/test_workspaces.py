# tests/test_workspaces.py — Workspaces, membership and channels
import pytest
from httpx import AsyncClient

from tests.conftest import get_auth_headers


@pytest.mark.asyncio
class TestWorkspaces:
    async def test_create_and_list(self, client: AsyncClient, test_user):
        headers = get_auth_headers(test_user)
        res = await client.post("/api/v1/workspaces", json={"name": "Design Team"}, headers=headers)
        assert res.status_code == 201
        ws = res.json()
        assert ws["role"] == "owner"
        assert ws["slug"].startswith("design-team-")

        listed = await client.get("/api/v1/workspaces", headers=headers)
        assert [w["id"] for w in listed.json()] == [ws["id"]]

    async def test_outsider_forbidden(self, client: AsyncClient, outsider, test_workspace):
        res = await client.get(f"/api/v1/workspaces/{test_workspace.id}", headers=get_auth_headers(outsider))
        assert res.status_code == 403

    async def test_unknown_workspace(self, client: AsyncClient, test_user):
        res = await client.get("/api/v1/workspaces/does-not-exist", headers=get_auth_headers(test_user))
        assert res.status_code == 404

    async def test_members_listing(self, client: AsyncClient, member_user, test_workspace):
        res = await client.get(
            f"/api/v1/workspaces/{test_workspace.id}/members", headers=get_auth_headers(member_user),
        )
        assert res.status_code == 200
        roles = {m["email"]: m["role"] for m in res.json()}
        assert roles == {
            "testuser@huddle.dev": "owner",
            "member@huddle.dev": "member",
            "guest@huddle.dev": "guest",
        }

    async def test_add_member_by_email(self, client: AsyncClient, test_user, outsider, test_workspace):
        url = f"/api/v1/workspaces/{test_workspace.id}/members"
        res = await client.post(url, json={"email": outsider.email}, headers=get_auth_headers(test_user))
        assert res.status_code == 201

        dup = await client.post(url, json={"user_id": outsider.id}, headers=get_auth_headers(test_user))
        assert dup.status_code == 409

        # New members land in #general
        channels = await client.get(
            "/api/v1/channels", params={"workspace_id": test_workspace.id}, headers=get_auth_headers(outsider),
        )
        assert channels.json()[0]["is_member"] is True

    async def test_member_cannot_add_members(self, client: AsyncClient, member_user, outsider, test_workspace):
        res = await client.post(
            f"/api/v1/workspaces/{test_workspace.id}/members",
            json={"user_id": outsider.id},
            headers=get_auth_headers(member_user),
        )
        assert res.status_code == 403

    async def test_owner_role_is_fixed(self, client: AsyncClient, test_user, test_workspace):
        res = await client.patch(
            f"/api/v1/workspaces/{test_workspace.id}/members/{test_user.id}",
            json={"role": "member"},
            headers=get_auth_headers(test_user),
        )
        assert res.status_code == 403

    async def test_promote_and_remove(self, client: AsyncClient, test_user, member_user, guest_user, test_workspace):
        base = f"/api/v1/workspaces/{test_workspace.id}/members"
        res = await client.patch(f"{base}/{member_user.id}", json={"role": "admin"}, headers=get_auth_headers(test_user))
        assert res.status_code == 200

        # The new admin can now remove the guest
        res = await client.delete(f"{base}/{guest_user.id}", headers=get_auth_headers(member_user))
        assert res.status_code == 200
        res = await client.get(f"/api/v1/workspaces/{test_workspace.id}", headers=get_auth_headers(guest_user))
        assert res.status_code == 403

    async def test_member_can_leave(self, client: AsyncClient, member_user, test_workspace):
        res = await client.delete(
            f"/api/v1/workspaces/{test_workspace.id}/members/{member_user.id}",
            headers=get_auth_headers(member_user),
        )
        assert res.status_code == 200


@pytest.mark.asyncio
class TestChannels:
    async def test_create_channel_joins_members(self, client: AsyncClient, test_user, member_user, test_workspace):
        res = await client.post(
            "/api/v1/channels",
            json={"workspace_id": test_workspace.id, "name": "Release Planning"},
            headers=get_auth_headers(test_user),
        )
        assert res.status_code == 201
        channel = res.json()
        assert channel["name"] == "release-planning"
        assert channel["display_name"] == "Release Planning"
        # Public channels start with every workspace member
        assert channel["member_count"] == 3

    async def test_duplicate_name_case_insensitive(self, client: AsyncClient, test_user, test_workspace):
        res = await client.post(
            "/api/v1/channels",
            json={"workspace_id": test_workspace.id, "name": "General"},
            headers=get_auth_headers(test_user),
        )
        assert res.status_code == 409

    async def test_symbol_and_non_latin_names_stay_distinct(self, client: AsyncClient, test_user, test_workspace):
        headers = get_auth_headers(test_user)
        names = []
        for raw in ["🎉", "!!!", "Équipe Produit", "設計"]:
            res = await client.post(
                "/api/v1/channels", json={"workspace_id": test_workspace.id, "name": raw}, headers=headers,
            )
            assert res.status_code == 201
            names.append(res.json()["name"])
        assert names == ["🎉", "!!!", "équipe-produit", "設計"]

    async def test_long_names_sharing_a_prefix(self, client: AsyncClient, test_user, test_workspace):
        headers = get_auth_headers(test_user)
        for suffix in ["-alpha", "-beta"]:
            res = await client.post(
                "/api/v1/channels", json={"workspace_id": test_workspace.id, "name": "x" * 50 + suffix},
                headers=headers,
            )
            assert res.status_code == 201
            assert res.json()["name"] == "x" * 50 + suffix

    async def test_blank_name_rejected(self, client: AsyncClient, test_user, test_workspace):
        res = await client.post(
            "/api/v1/channels", json={"workspace_id": test_workspace.id, "name": "   "},
            headers=get_auth_headers(test_user),
        )
        assert res.status_code == 400

    async def test_private_channel_hidden(self, client: AsyncClient, test_user, member_user, test_workspace):
        res = await client.post(
            "/api/v1/channels",
            json={"workspace_id": test_workspace.id, "name": "leads", "is_private": True},
            headers=get_auth_headers(test_user),
        )
        private_id = res.json()["id"]
        assert res.json()["member_count"] == 1

        listed = await client.get(
            "/api/v1/channels", params={"workspace_id": test_workspace.id}, headers=get_auth_headers(member_user),
        )
        assert private_id not in [c["id"] for c in listed.json()]

        join = await client.post(
            "/api/v1/channels/join", json={"channel_id": private_id}, headers=get_auth_headers(member_user),
        )
        assert join.status_code == 403

    async def test_join_and_leave(self, client: AsyncClient, guest_user, general_channel):
        headers = get_auth_headers(guest_user)
        res = await client.post("/api/v1/channels/join", json={"channel_id": general_channel.id}, headers=headers)
        assert res.status_code == 200
        again = await client.post("/api/v1/channels/join", json={"channel_id": general_channel.id}, headers=headers)
        assert again.status_code == 409

        res = await client.post("/api/v1/channels/leave", json={"channel_id": general_channel.id}, headers=headers)
        assert res.status_code == 200
        again = await client.post("/api/v1/channels/leave", json={"channel_id": general_channel.id}, headers=headers)
        assert again.status_code == 404

    async def test_outsider_cannot_list(self, client: AsyncClient, outsider, test_workspace):
        res = await client.get(
            "/api/v1/channels", params={"workspace_id": test_workspace.id}, headers=get_auth_headers(outsider),
        )
        assert res.status_code == 403
