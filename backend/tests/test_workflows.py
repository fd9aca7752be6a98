# tests/test_workflows.py — Automation workflows and executions
import json

import httpx
import pytest
from httpx import AsyncClient

from routers import workflows
from routers.workflows import render
from tests.conftest import get_auth_headers


class TestRender:
    def test_substitutes_trigger_fields(self):
        out = render({"title": "Follow up with $customer", "tags": ["$tier"]}, {"customer": "Acme", "tier": 2})
        assert out == {"title": "Follow up with Acme", "tags": ["2"]}

    def test_unknown_names_left_alone(self):
        assert render("Cost: $amount", {}) == "Cost: $amount"


async def _workflow(client, user, workspace_id, actions, **fields):
    body = {"workspace_id": workspace_id, "name": "Triage", "actions": actions, **fields}
    res = await client.post("/api/v1/workflows", json=body, headers=get_auth_headers(user))
    return res


async def _run(client, user, workflow_id, trigger_data=None):
    return await client.post(
        f"/api/v1/workflows/{workflow_id}/executions",
        json={"trigger_data": trigger_data or {}},
        headers=get_auth_headers(user),
    )


@pytest.mark.asyncio
class TestWorkflowCrud:
    async def test_create_and_list(self, client: AsyncClient, test_user, member_user, test_workspace):
        res = await _workflow(client, member_user, test_workspace.id, [
            {"type": "notify", "config": {"title": "Hi"}},
        ])
        assert res.status_code == 201
        assert res.json()["trigger_type"] == "manual"
        assert res.json()["creator"]["name"] == "Member User"

        listed = await client.get(
            "/api/v1/workflows", params={"workspace_id": test_workspace.id}, headers=get_auth_headers(test_user),
        )
        assert [w["name"] for w in listed.json()] == ["Triage"]
        assert listed.json()[0]["execution_count"] == 0

    async def test_unknown_action_type_rejected(self, client: AsyncClient, test_user, test_workspace):
        res = await _workflow(client, test_user, test_workspace.id, [{"type": "send_fax"}])
        assert res.status_code == 400

    async def test_guest_cannot_create(self, client: AsyncClient, guest_user, test_workspace):
        res = await _workflow(client, guest_user, test_workspace.id, [])
        assert res.status_code == 403

    async def test_update_and_delete_permissions(self, client: AsyncClient, test_user, member_user, test_workspace):
        wf = (await _workflow(client, test_user, test_workspace.id, [])).json()

        res = await client.patch(
            f"/api/v1/workflows/{wf['id']}", json={"is_active": False}, headers=get_auth_headers(member_user),
        )
        assert res.status_code == 403
        res = await client.patch(
            f"/api/v1/workflows/{wf['id']}", json={"is_active": False}, headers=get_auth_headers(test_user),
        )
        assert res.json()["is_active"] is False

        res = await client.delete(f"/api/v1/workflows/{wf['id']}", headers=get_auth_headers(member_user))
        assert res.status_code == 403
        res = await client.delete(f"/api/v1/workflows/{wf['id']}", headers=get_auth_headers(test_user))
        assert res.status_code == 200
        res = await client.get(f"/api/v1/workflows/{wf['id']}", headers=get_auth_headers(test_user))
        assert res.status_code == 404


@pytest.mark.asyncio
class TestExecutions:
    async def test_actions_run_in_order(self, client: AsyncClient, test_user, member_user, test_workspace, general_channel):
        wf = (await _workflow(client, test_user, test_workspace.id, [
            {"type": "create_task", "config": {"title": "Call $customer", "assignee_id": member_user.id}},
            {"type": "send_message", "config": {"channel_id": general_channel.id, "content": "New lead: $customer"}},
            {"type": "create_document", "config": {"title": "$customer account plan"}},
            {"type": "notify", "config": {"user_id": member_user.id, "title": "Lead assigned"}},
        ])).json()

        res = await _run(client, test_user, wf["id"], {"customer": "Acme"})
        assert res.status_code == 201
        execution = res.json()
        assert execution["status"] == "completed"
        assert [r["status"] for r in execution["results"]] == ["success"] * 4

        task_id = execution["results"][0]["output"]["task_id"]
        task = await client.get(f"/api/v1/tasks/{task_id}", headers=get_auth_headers(member_user))
        assert task.json()["title"] == "Call Acme"

        messages = await client.get(
            "/api/v1/messages", params={"channel_id": general_channel.id}, headers=get_auth_headers(member_user),
        )
        assert [m["content"] for m in messages.json()["messages"]] == ["New lead: Acme"]

        notifications = await client.get("/api/v1/notifications", headers=get_auth_headers(member_user))
        assert "Lead assigned" in [n["title"] for n in notifications.json()]

    async def test_first_failure_stops_the_run(self, client: AsyncClient, test_user, test_workspace):
        wf = (await _workflow(client, test_user, test_workspace.id, [
            {"type": "create_task", "config": {"title": "Kept"}},
            {"type": "send_message", "config": {"channel_id": "missing", "content": "x"}},
            {"type": "create_task", "config": {"title": "Never created"}},
        ])).json()

        execution = (await _run(client, test_user, wf["id"])).json()
        assert execution["status"] == "failed"
        assert execution["error_message"].startswith("Step 2 (send_message)")
        assert [r["status"] for r in execution["results"]] == ["success", "error"]

        tasks = await client.get(
            "/api/v1/tasks", params={"workspace_id": test_workspace.id}, headers=get_auth_headers(test_user),
        )
        assert [t["title"] for t in tasks.json()["tasks"]] == ["Kept"]

        history = await client.get(f"/api/v1/workflows/{wf['id']}/executions", headers=get_auth_headers(test_user))
        assert [e["status"] for e in history.json()] == ["failed"]

    async def test_actions_use_callers_permissions(self, client: AsyncClient, test_user, member_user, test_workspace):
        private = (await client.post(
            "/api/v1/channels", json={"workspace_id": test_workspace.id, "name": "leads", "is_private": True},
            headers=get_auth_headers(test_user),
        )).json()
        wf = (await _workflow(client, test_user, test_workspace.id, [
            {"type": "send_message", "config": {"channel_id": private["id"], "content": "psst"}},
        ])).json()

        execution = (await _run(client, member_user, wf["id"])).json()
        assert execution["status"] == "failed"
        assert "Not a member" in execution["error_message"]

    async def test_inactive_workflow(self, client: AsyncClient, test_user, test_workspace):
        wf = (await _workflow(client, test_user, test_workspace.id, [])).json()
        await client.patch(
            f"/api/v1/workflows/{wf['id']}", json={"is_active": False}, headers=get_auth_headers(test_user),
        )
        res = await _run(client, test_user, wf["id"])
        assert res.status_code == 400

    async def test_guest_cannot_run(self, client: AsyncClient, test_user, guest_user, test_workspace):
        wf = (await _workflow(client, test_user, test_workspace.id, [])).json()
        res = await _run(client, guest_user, wf["id"])
        assert res.status_code == 403

    async def test_api_call_failure_is_recorded(self, client: AsyncClient, test_user, test_workspace, monkeypatch):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["workflow"] = request.headers["X-Huddle-Workflow"]
            seen["body"] = json.loads(request.content)
            return httpx.Response(503)

        real_client = httpx.AsyncClient
        monkeypatch.setattr(
            workflows.httpx, "AsyncClient",
            lambda **kwargs: real_client(transport=httpx.MockTransport(handler), **kwargs),
        )
        wf = (await _workflow(client, test_user, test_workspace.id, [
            {"type": "api_call", "config": {"url": "https://hooks.example.com/lead"}},
        ])).json()

        execution = (await _run(client, test_user, wf["id"], {"lead": "Acme"})).json()
        assert execution["status"] == "failed"
        assert "503" in execution["error_message"]
        assert seen == {"workflow": wf["id"], "body": {"lead": "Acme"}}
