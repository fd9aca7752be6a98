# tests/test_integrations.py — Integrations, connections, webhooks and API keys
import json
from datetime import datetime, timedelta, timezone

import httpx
import pytest
from httpx import AsyncClient

from auth import AuthService
from models import ApiKey
from routers import integrations
from routers.integrations import sign_payload
from tests.conftest import get_auth_headers


async def _integration(client, user, workspace_id, **fields):
    body = {"workspace_id": workspace_id, "name": "GitHub", "provider": "github", **fields}
    return await client.post("/api/v1/integrations", json=body, headers=get_auth_headers(user))


class TestSigning:
    def test_signature_is_hmac_sha256(self):
        sig = sign_payload("secret", b'{"event": "ping"}')
        assert len(sig) == 64
        assert sig == sign_payload("secret", b'{"event": "ping"}')
        assert sig != sign_payload("other", b'{"event": "ping"}')


@pytest.mark.asyncio
class TestIntegrations:
    async def test_admin_creates_members_list(self, client: AsyncClient, test_user, member_user, test_workspace):
        res = await _integration(client, test_user, test_workspace.id, config={"org": "huddle"})
        assert res.status_code == 201

        listed = await client.get(
            "/api/v1/integrations", params={"workspace_id": test_workspace.id}, headers=get_auth_headers(member_user),
        )
        assert [i["provider"] for i in listed.json()] == ["github"]

    async def test_member_cannot_create(self, client: AsyncClient, member_user, test_workspace):
        res = await _integration(client, member_user, test_workspace.id)
        assert res.status_code == 403

    async def test_unknown_provider(self, client: AsyncClient, test_user, test_workspace):
        res = await _integration(client, test_user, test_workspace.id, provider="myspace")
        assert res.status_code == 400

    async def test_connection_requires_active_integration(self, client: AsyncClient, test_user, member_user, test_workspace):
        integration = (await _integration(client, test_user, test_workspace.id)).json()
        res = await client.post(
            "/api/v1/integrations/connections",
            json={"integration_id": integration["id"], "external_account": "octocat"},
            headers=get_auth_headers(member_user),
        )
        assert res.status_code == 201

        await client.patch(
            f"/api/v1/integrations/{integration['id']}", json={"is_active": False}, headers=get_auth_headers(test_user),
        )
        res = await client.post(
            "/api/v1/integrations/connections",
            json={"integration_id": integration["id"]},
            headers=get_auth_headers(member_user),
        )
        assert res.status_code == 409

        connections = await client.get(
            "/api/v1/integrations/connections", params={"workspace_id": test_workspace.id},
            headers=get_auth_headers(member_user),
        )
        assert [c["external_account"] for c in connections.json()] == ["octocat"]

    async def test_config_redacted_for_members(self, client: AsyncClient, test_user, member_user, test_workspace):
        await _integration(client, test_user, test_workspace.id, config={"org": "huddle", "token": "ghp_secret"})
        params = {"workspace_id": test_workspace.id}

        as_member = await client.get("/api/v1/integrations", params=params, headers=get_auth_headers(member_user))
        assert as_member.json()[0]["config"] == {"org": "***", "token": "***"}

        as_admin = await client.get("/api/v1/integrations", params=params, headers=get_auth_headers(test_user))
        assert as_admin.json()[0]["config"] == {"org": "huddle", "token": "ghp_secret"}

    async def test_connection_settings_visible_to_owner_and_admins(
        self, client: AsyncClient, test_user, member_user, guest_user, test_workspace,
    ):
        integration = (await _integration(client, test_user, test_workspace.id)).json()
        await client.post(
            "/api/v1/integrations/connections",
            json={"integration_id": integration["id"], "settings": {"refresh_token": "r-123"}},
            headers=get_auth_headers(member_user),
        )

        def settings_for(res):
            return res.json()[0]["settings"]

        params = {"workspace_id": test_workspace.id}
        url = "/api/v1/integrations/connections"
        assert settings_for(await client.get(url, params=params, headers=get_auth_headers(member_user))) == {"refresh_token": "r-123"}
        assert settings_for(await client.get(url, params=params, headers=get_auth_headers(test_user))) == {"refresh_token": "r-123"}
        assert settings_for(await client.get(url, params=params, headers=get_auth_headers(guest_user))) == {"refresh_token": "***"}

    async def test_delete_detaches_webhooks(self, client: AsyncClient, test_user, test_workspace):
        headers = get_auth_headers(test_user)
        integration = (await _integration(client, test_user, test_workspace.id)).json()
        hook = await client.post(
            "/api/v1/integrations/webhooks",
            json={"workspace_id": test_workspace.id, "url": "https://hooks.example.com/in",
                  "events": ["task.created"], "integration_id": integration["id"]},
            headers=headers,
        )
        assert hook.status_code == 201

        res = await client.delete(f"/api/v1/integrations/{integration['id']}", headers=headers)
        assert res.status_code == 200
        hooks = await client.get("/api/v1/integrations/webhooks", params={"workspace_id": test_workspace.id}, headers=headers)
        assert hooks.json()[0]["integration_id"] is None


@pytest.mark.asyncio
class TestWebhooks:
    async def test_secret_shown_once(self, client: AsyncClient, test_user, test_workspace):
        headers = get_auth_headers(test_user)
        res = await client.post(
            "/api/v1/integrations/webhooks",
            json={"workspace_id": test_workspace.id, "url": "https://hooks.example.com/in",
                  "events": ["task.created", "task.created", "message.created"]},
            headers=headers,
        )
        assert res.status_code == 201
        assert len(res.json()["secret"]) == 64
        assert res.json()["events"] == ["message.created", "task.created"]

        listed = await client.get("/api/v1/integrations/webhooks", params={"workspace_id": test_workspace.id}, headers=headers)
        assert "secret" not in listed.json()[0]

    async def test_unknown_event(self, client: AsyncClient, test_user, test_workspace):
        res = await client.post(
            "/api/v1/integrations/webhooks",
            json={"workspace_id": test_workspace.id, "url": "https://hooks.example.com/in", "events": ["user.sneezed"]},
            headers=get_auth_headers(test_user),
        )
        assert res.status_code == 400

    async def test_ping_is_signed(self, client: AsyncClient, test_user, test_workspace, monkeypatch):
        headers = get_auth_headers(test_user)
        hook = (await client.post(
            "/api/v1/integrations/webhooks",
            json={"workspace_id": test_workspace.id, "url": "https://hooks.example.com/in", "events": ["task.updated"]},
            headers=headers,
        )).json()

        received = {}

        def handler(request: httpx.Request) -> httpx.Response:
            received["signature"] = request.headers["X-Huddle-Signature"]
            received["body"] = request.content
            return httpx.Response(204)

        real_client = httpx.AsyncClient
        monkeypatch.setattr(
            integrations.httpx, "AsyncClient",
            lambda **kwargs: real_client(transport=httpx.MockTransport(handler), **kwargs),
        )
        res = await client.post(f"/api/v1/integrations/webhooks/{hook['id']}/test", headers=headers)
        assert res.json() == {"delivered": True, "status_code": 204}
        assert received["signature"] == f"sha256={sign_payload(hook['secret'], received['body'])}"
        assert json.loads(received["body"])["event"] == "ping"

    async def test_ping_failure_reported(self, client: AsyncClient, test_user, test_workspace, monkeypatch):
        headers = get_auth_headers(test_user)
        hook = (await client.post(
            "/api/v1/integrations/webhooks",
            json={"workspace_id": test_workspace.id, "url": "https://hooks.example.com/in", "events": ["task.updated"]},
            headers=headers,
        )).json()

        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        real_client = httpx.AsyncClient
        monkeypatch.setattr(
            integrations.httpx, "AsyncClient",
            lambda **kwargs: real_client(transport=httpx.MockTransport(handler), **kwargs),
        )
        res = await client.post(f"/api/v1/integrations/webhooks/{hook['id']}/test", headers=headers)
        assert res.status_code == 200
        assert res.json()["delivered"] is False


@pytest.mark.asyncio
class TestApiKeys:
    async def test_raw_key_returned_once_and_hashed(self, client: AsyncClient, db_session, test_user, test_workspace):
        headers = get_auth_headers(test_user)
        res = await client.post(
            "/api/v1/integrations/api-keys",
            json={"workspace_id": test_workspace.id, "name": "CI", "scopes": ["read", "write"]},
            headers=headers,
        )
        assert res.status_code == 201
        key = res.json()
        assert key["key"].startswith("hdl_")
        assert key["key_prefix"] == key["key"][:12]

        listed = await client.get("/api/v1/integrations/api-keys", params={"workspace_id": test_workspace.id}, headers=headers)
        assert "key" not in listed.json()[0]
        assert set(listed.json()[0]) == {"id", "name", "key_prefix", "scopes", "is_active", "expires_at", "revoked_at", "created_at"}
        stored = await db_session.get(ApiKey, key["id"])
        assert stored.key_hash == AuthService.hash_secret(key["key"])

    async def test_unknown_scope(self, client: AsyncClient, test_user, test_workspace):
        res = await client.post(
            "/api/v1/integrations/api-keys",
            json={"workspace_id": test_workspace.id, "name": "CI", "scopes": ["superuser"]},
            headers=get_auth_headers(test_user),
        )
        assert res.status_code == 400

    async def test_revoke_twice(self, client: AsyncClient, test_user, test_workspace):
        headers = get_auth_headers(test_user)
        key = (await client.post(
            "/api/v1/integrations/api-keys",
            json={"workspace_id": test_workspace.id, "name": "CI"},
            headers=headers,
        )).json()
        assert (await client.delete(f"/api/v1/integrations/api-keys/{key['id']}", headers=headers)).status_code == 200
        assert (await client.delete(f"/api/v1/integrations/api-keys/{key['id']}", headers=headers)).status_code == 409

    async def test_pause_resume_and_expiry(self, client: AsyncClient, test_user, member_user, test_workspace):
        headers = get_auth_headers(test_user)
        key = (await client.post(
            "/api/v1/integrations/api-keys",
            json={"workspace_id": test_workspace.id, "name": "CI"},
            headers=headers,
        )).json()
        url = f"/api/v1/integrations/api-keys/{key['id']}"
        assert key["is_active"] is True

        res = await client.patch(url, json={"is_active": False}, headers=headers)
        assert res.status_code == 200
        assert res.json()["is_active"] is False
        assert res.json()["revoked_at"] is None
        assert "key" not in res.json()

        expiry = (datetime.now(timezone.utc) + timedelta(days=30)).isoformat()
        res = await client.patch(url, json={"is_active": True, "expires_at": expiry}, headers=headers)
        assert res.json()["is_active"] is True
        assert res.json()["expires_at"] is not None

        res = await client.patch(url, json={"expires_at": None}, headers=headers)
        assert res.json()["expires_at"] is None

        past = (datetime.now(timezone.utc) - timedelta(days=1)).isoformat()
        assert (await client.patch(url, json={"expires_at": past}, headers=headers)).status_code == 400
        assert (await client.patch(
            url, json={"is_active": False}, headers=get_auth_headers(member_user),
        )).status_code == 403

    async def test_revoked_key_cannot_be_reactivated(self, client: AsyncClient, test_user, test_workspace):
        headers = get_auth_headers(test_user)
        key = (await client.post(
            "/api/v1/integrations/api-keys",
            json={"workspace_id": test_workspace.id, "name": "CI"},
            headers=headers,
        )).json()
        await client.delete(f"/api/v1/integrations/api-keys/{key['id']}", headers=headers)
        res = await client.patch(f"/api/v1/integrations/api-keys/{key['id']}", json={"is_active": True}, headers=headers)
        assert res.status_code == 409
