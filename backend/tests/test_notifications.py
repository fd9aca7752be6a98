# tests/test_notifications.py — Notification inbox
import pytest
from httpx import AsyncClient

from tests.conftest import get_auth_headers


async def _notify(client, sender, **fields):
    body = {"title": "Heads up", "content": "Standup moved", **fields}
    return await client.post("/api/v1/notifications", json=body, headers=get_auth_headers(sender))


@pytest.mark.asyncio
class TestNotifications:
    async def test_self_notification_and_unread_count(self, client: AsyncClient, test_user):
        res = await _notify(client, test_user)
        assert res.status_code == 201
        assert res.json()["is_read"] is False

        count = await client.get("/api/v1/notifications/unread-count", headers=get_auth_headers(test_user))
        assert count.json() == {"unread": 1}

    async def test_notify_workspace_member(self, client: AsyncClient, test_user, member_user, test_workspace):
        res = await _notify(client, test_user, user_id=member_user.id, workspace_id=test_workspace.id, type="mention")
        assert res.status_code == 201

        inbox = await client.get("/api/v1/notifications", headers=get_auth_headers(member_user))
        assert [n["type"] for n in inbox.json()] == ["mention"]
        mine = await client.get("/api/v1/notifications", headers=get_auth_headers(test_user))
        assert mine.json() == []

    async def test_notify_other_needs_workspace(self, client: AsyncClient, test_user, member_user, test_workspace):
        res = await _notify(client, test_user, user_id=member_user.id)
        assert res.status_code == 400

    async def test_notify_non_member(self, client: AsyncClient, test_user, outsider, test_workspace):
        res = await _notify(client, test_user, user_id=outsider.id, workspace_id=test_workspace.id)
        assert res.status_code == 404

    async def test_mark_read(self, client: AsyncClient, test_user):
        headers = get_auth_headers(test_user)
        first = (await _notify(client, test_user)).json()
        await _notify(client, test_user, title="Second")
        await _notify(client, test_user, title="Third")

        res = await client.post("/api/v1/notifications/mark-read", json={"notification_ids": [first["id"]]}, headers=headers)
        assert res.json() == {"marked": 1}

        unread = await client.get("/api/v1/notifications", params={"unread_only": True}, headers=headers)
        assert len(unread.json()) == 2

        res = await client.post("/api/v1/notifications/mark-read", json={"mark_all": True}, headers=headers)
        assert res.json() == {"marked": 2}

    async def test_mark_read_needs_target(self, client: AsyncClient, test_user):
        res = await client.post("/api/v1/notifications/mark-read", json={}, headers=get_auth_headers(test_user))
        assert res.status_code == 400

    async def test_delete_only_own(self, client: AsyncClient, test_user, member_user):
        notif = (await _notify(client, test_user)).json()
        res = await client.delete(f"/api/v1/notifications/{notif['id']}", headers=get_auth_headers(member_user))
        assert res.status_code == 404
        res = await client.delete(f"/api/v1/notifications/{notif['id']}", headers=get_auth_headers(test_user))
        assert res.status_code == 200
