# tests/test_analytics.py — Reports, snapshots and dashboards
from datetime import timedelta

import pytest
from httpx import AsyncClient

from routers.analytics import TimeWindow
from tests.conftest import get_auth_headers


class TestTimeWindow:
    def test_deltas(self):
        assert TimeWindow.DAY.delta == timedelta(days=1)
        assert TimeWindow.QUARTER.delta == timedelta(days=90)


async def _report(client, user, workspace_id, **fields):
    body = {"workspace_id": workspace_id, "name": "Weekly pulse", **fields}
    return await client.post("/api/v1/analytics/reports", json=body, headers=get_auth_headers(user))


@pytest.mark.asyncio
class TestReports:
    async def test_live_figures(self, client: AsyncClient, test_user, member_user, test_workspace, general_channel):
        for user, text in ((test_user, "hello"), (member_user, "hi"), (member_user, "standup?")):
            await client.post(
                "/api/v1/messages", json={"channel_id": general_channel.id, "content": text},
                headers=get_auth_headers(user),
            )
        await client.post(
            "/api/v1/tasks", json={"workspace_id": test_workspace.id, "title": "Ship it", "status": "done"},
            headers=get_auth_headers(test_user),
        )

        report = (await _report(client, test_user, test_workspace.id)).json()
        res = await client.get(
            f"/api/v1/analytics/reports/{report['id']}", params={"window": "1d"}, headers=get_auth_headers(test_user),
        )
        data = res.json()["data"]
        assert data["window"] == "1d"
        assert data["messages"]["total"] == 3
        assert data["messages"]["active_authors"] == 2
        assert data["messages"]["by_channel"] == {"general": 3}
        assert data["tasks"]["by_status"] == {"done": 1}
        assert data["tasks"]["completed"] == 1
        assert data["members"]["total"] == 3

    async def test_typed_report_is_scoped(self, client: AsyncClient, test_user, test_workspace):
        report = (await _report(client, test_user, test_workspace.id, report_type="tasks")).json()
        res = await client.get(f"/api/v1/analytics/reports/{report['id']}", headers=get_auth_headers(test_user))
        data = res.json()["data"]
        assert "tasks" in data
        assert "messages" not in data

    async def test_unknown_window(self, client: AsyncClient, test_user, test_workspace):
        report = (await _report(client, test_user, test_workspace.id)).json()
        res = await client.get(
            f"/api/v1/analytics/reports/{report['id']}", params={"window": "2y"}, headers=get_auth_headers(test_user),
        )
        assert res.status_code == 400

    async def test_private_reports(self, client: AsyncClient, test_user, member_user, guest_user, test_workspace):
        private = (await _report(client, member_user, test_workspace.id, name="Mine")).json()
        await _report(client, member_user, test_workspace.id, name="Shared", is_public=True)

        listed = await client.get(
            "/api/v1/analytics/reports", params={"workspace_id": test_workspace.id},
            headers=get_auth_headers(guest_user),
        )
        assert [r["name"] for r in listed.json()] == ["Shared"]

        res = await client.get(f"/api/v1/analytics/reports/{private['id']}", headers=get_auth_headers(guest_user))
        assert res.status_code == 403
        # Admins see everything
        res = await client.get(f"/api/v1/analytics/reports/{private['id']}", headers=get_auth_headers(test_user))
        assert res.status_code == 200

    async def test_only_creator_modifies(self, client: AsyncClient, test_user, member_user, test_workspace):
        report = (await _report(client, member_user, test_workspace.id, is_public=True)).json()
        url = f"/api/v1/analytics/reports/{report['id']}"
        res = await client.put(url, json={"name": "Renamed"}, headers=get_auth_headers(test_user))
        assert res.status_code == 403
        res = await client.put(url, json={"name": "Renamed"}, headers=get_auth_headers(member_user))
        assert res.json()["name"] == "Renamed"
        res = await client.delete(url, headers=get_auth_headers(member_user))
        assert res.status_code == 200

    async def test_snapshots(self, client: AsyncClient, test_user, test_workspace):
        headers = get_auth_headers(test_user)
        report = (await _report(client, test_user, test_workspace.id, report_type="members")).json()
        url = f"/api/v1/analytics/reports/{report['id']}/snapshots"

        res = await client.post(url, json={"window": "30d"}, headers=headers)
        assert res.status_code == 201
        assert res.json()["data"]["window"] == "30d"
        await client.post(url, headers=headers)

        snapshots = await client.get(url, headers=headers)
        assert len(snapshots.json()) == 2
        assert {s["data"]["members"]["total"] for s in snapshots.json()} == {3}


@pytest.mark.asyncio
class TestDashboards:
    async def test_create_with_widgets(self, client: AsyncClient, member_user, test_workspace):
        res = await client.post(
            "/api/v1/analytics/dashboards",
            json={"workspace_id": test_workspace.id, "name": "Team",
                  "widgets": [{"widget_type": "metric", "title": "Open tasks"},
                              {"widget_type": "bar_chart", "title": "Messages per channel"}]},
            headers=get_auth_headers(member_user),
        )
        assert res.status_code == 201
        assert res.json()["widget_count"] == 2

        listed = await client.get(
            "/api/v1/analytics/dashboards", params={"workspace_id": test_workspace.id},
            headers=get_auth_headers(member_user),
        )
        assert sorted(w["title"] for w in listed.json()[0]["widgets"]) == ["Messages per channel", "Open tasks"]

    async def test_default_is_exclusive(self, client: AsyncClient, test_user, member_user, test_workspace):
        url = "/api/v1/analytics/dashboards"
        res = await client.post(
            url, json={"workspace_id": test_workspace.id, "name": "Mine", "is_default": True},
            headers=get_auth_headers(member_user),
        )
        assert res.status_code == 403

        headers = get_auth_headers(test_user)
        await client.post(url, json={"workspace_id": test_workspace.id, "name": "Old", "is_default": True}, headers=headers)
        await client.post(url, json={"workspace_id": test_workspace.id, "name": "New", "is_default": True}, headers=headers)
        listed = await client.get(url, params={"workspace_id": test_workspace.id}, headers=headers)
        defaults = [d["name"] for d in listed.json() if d["is_default"]]
        assert defaults == ["New"]

    async def test_bad_widget_type(self, client: AsyncClient, test_user, test_workspace):
        res = await client.post(
            "/api/v1/analytics/dashboards",
            json={"workspace_id": test_workspace.id, "name": "x", "widgets": [{"widget_type": "gauge", "title": "t"}]},
            headers=get_auth_headers(test_user),
        )
        assert res.status_code == 400


async def _metric(client, user, workspace_id, kind, metric_type="page_load_ms", value=120.5, **fields):
    body = {"workspace_id": workspace_id, "kind": kind, "metric_type": metric_type, "value": value, **fields}
    return await client.post("/api/v1/analytics/metrics", json=body, headers=get_auth_headers(user))


@pytest.mark.asyncio
class TestMetrics:
    async def test_record_and_list_by_kind(self, client: AsyncClient, test_user, member_user, test_workspace):
        res = await _metric(client, test_user, test_workspace.id, "performance", details={"route": "/docs"})
        assert res.status_code == 201
        assert res.json()["user_id"] is None
        await _metric(client, test_user, test_workspace.id, "workspace", "active_channels", 4)
        await _metric(client, test_user, test_workspace.id, "user", "messages_sent", 10)
        await _metric(client, member_user, test_workspace.id, "user", "messages_sent", 3)

        res = await client.get(
            "/api/v1/analytics/metrics", params={"workspace_id": test_workspace.id},
            headers=get_auth_headers(member_user),
        )
        data = res.json()
        assert [m["value"] for m in data["performance_metrics"]] == [120.5]
        assert data["performance_metrics"][0]["details"] == {"route": "/docs"}
        assert [m["metric_type"] for m in data["workspace_metrics"]] == ["active_channels"]
        # Only the caller's own user metrics come back
        assert [m["value"] for m in data["user_metrics"]] == [3]

    async def test_filter_by_type(self, client: AsyncClient, test_user, test_workspace):
        await _metric(client, test_user, test_workspace.id, "performance", "page_load_ms", 90)
        await _metric(client, test_user, test_workspace.id, "performance", "api_latency_ms", 30)
        res = await client.get(
            "/api/v1/analytics/metrics",
            params={"workspace_id": test_workspace.id, "metric_type": "api_latency_ms"},
            headers=get_auth_headers(test_user),
        )
        assert [m["value"] for m in res.json()["performance_metrics"]] == [30]

    async def test_guest_records_only_own_activity(self, client: AsyncClient, guest_user, test_workspace):
        res = await _metric(client, guest_user, test_workspace.id, "workspace", "active_channels", 1)
        assert res.status_code == 403
        res = await _metric(client, guest_user, test_workspace.id, "user", "pages_viewed", 2)
        assert res.status_code == 201
        assert res.json()["user_id"] == guest_user.id

    async def test_unknown_kind_rejected(self, client: AsyncClient, test_user, test_workspace):
        res = await _metric(client, test_user, test_workspace.id, "system")
        assert res.status_code == 400

    async def test_outsider_forbidden(self, client: AsyncClient, outsider, test_workspace):
        res = await client.get(
            "/api/v1/analytics/metrics", params={"workspace_id": test_workspace.id},
            headers=get_auth_headers(outsider),
        )
        assert res.status_code == 403
