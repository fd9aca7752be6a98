# tests/test_documents.py — Documents, versions, collaborators, comments and templates
import pytest
from httpx import AsyncClient

from tests.conftest import get_auth_headers


async def _create_doc(client, user, workspace_id, title="Design doc", content="v1"):
    res = await client.post(
        "/api/v1/documents",
        json={"workspace_id": workspace_id, "title": title, "content": content},
        headers=get_auth_headers(user),
    )
    assert res.status_code == 201
    return res.json()


@pytest.mark.asyncio
class TestDocumentCrud:
    async def test_create_starts_at_version_one(self, client: AsyncClient, test_user, test_workspace):
        doc = await _create_doc(client, test_user, test_workspace.id)
        assert doc["version"] == 1

        res = await client.get(f"/api/v1/documents/{doc['id']}", headers=get_auth_headers(test_user))
        assert res.status_code == 200
        assert res.json()["permissions"] == {"can_write": True, "can_manage": True}

    async def test_guest_is_read_only(self, client: AsyncClient, test_user, guest_user, test_workspace):
        doc = await _create_doc(client, test_user, test_workspace.id)
        headers = get_auth_headers(guest_user)

        res = await client.get(f"/api/v1/documents/{doc['id']}", headers=headers)
        assert res.status_code == 200
        assert res.json()["permissions"]["can_write"] is False

        res = await client.put(f"/api/v1/documents/{doc['id']}", json={"content": "x"}, headers=headers)
        assert res.status_code == 403

        res = await client.post(
            "/api/v1/documents", json={"workspace_id": test_workspace.id, "title": "Nope"}, headers=headers,
        )
        assert res.status_code == 403

    async def test_outsider_denied(self, client: AsyncClient, test_user, outsider, test_workspace):
        doc = await _create_doc(client, test_user, test_workspace.id)
        res = await client.get(f"/api/v1/documents/{doc['id']}", headers=get_auth_headers(outsider))
        assert res.status_code == 403

    async def test_unknown_document(self, client: AsyncClient, test_user, test_workspace):
        res = await client.get("/api/v1/documents/missing", headers=get_auth_headers(test_user))
        assert res.status_code == 404

    async def test_list_with_search(self, client: AsyncClient, test_user, test_workspace):
        await _create_doc(client, test_user, test_workspace.id, title="Roadmap 2025")
        await _create_doc(client, test_user, test_workspace.id, title="Onboarding")
        res = await client.get(
            "/api/v1/documents",
            params={"workspace_id": test_workspace.id, "search": "road"},
            headers=get_auth_headers(test_user),
        )
        assert res.json()["total"] == 1
        assert res.json()["documents"][0]["title"] == "Roadmap 2025"

    async def test_delete_requires_manager(self, client: AsyncClient, test_user, member_user, test_workspace):
        doc = await _create_doc(client, test_user, test_workspace.id)
        res = await client.delete(f"/api/v1/documents/{doc['id']}", headers=get_auth_headers(member_user))
        assert res.status_code == 403
        res = await client.delete(f"/api/v1/documents/{doc['id']}", headers=get_auth_headers(test_user))
        assert res.status_code == 200
        res = await client.get(f"/api/v1/documents/{doc['id']}", headers=get_auth_headers(test_user))
        assert res.status_code == 404


@pytest.mark.asyncio
class TestVersions:
    async def test_update_writes_version_and_activity(self, client: AsyncClient, test_user, member_user, test_workspace):
        doc = await _create_doc(client, test_user, test_workspace.id)
        res = await client.put(
            f"/api/v1/documents/{doc['id']}",
            json={"content": "v2", "change_log": "second draft"},
            headers=get_auth_headers(member_user),
        )
        assert res.status_code == 200
        assert res.json()["version"] == 2
        assert res.json()["content"] == "v2"

        activities = await client.get(
            f"/api/v1/documents/{doc['id']}/activities", headers=get_auth_headers(test_user),
        )
        actions = [a["action"] for a in activities.json()["activities"]]
        assert set(actions) == {"created", "updated"}

    async def test_noop_update_adds_no_version(self, client: AsyncClient, test_user, test_workspace):
        doc = await _create_doc(client, test_user, test_workspace.id)
        res = await client.put(
            f"/api/v1/documents/{doc['id']}",
            json={"title": "Design doc", "content": "v1"},
            headers=get_auth_headers(test_user),
        )
        assert res.json()["version"] == 1

    async def test_restore_creates_new_version(self, client: AsyncClient, test_user, test_workspace):
        headers = get_auth_headers(test_user)
        doc = await _create_doc(client, test_user, test_workspace.id)
        await client.put(f"/api/v1/documents/{doc['id']}", json={"content": "v2"}, headers=headers)
        await client.put(f"/api/v1/documents/{doc['id']}", json={"content": "v3"}, headers=headers)

        res = await client.post(f"/api/v1/documents/{doc['id']}/versions/1/restore", headers=headers)
        assert res.status_code == 200
        body = res.json()
        assert body["version"]["version"] == 4
        assert body["document"]["content"] == "v1"

        versions = await client.get(f"/api/v1/documents/{doc['id']}/versions", headers=headers)
        numbers = [v["version"] for v in versions.json()["versions"]]
        assert numbers == [4, 3, 2, 1]

    async def test_restore_unknown_version(self, client: AsyncClient, test_user, test_workspace):
        doc = await _create_doc(client, test_user, test_workspace.id)
        res = await client.post(
            f"/api/v1/documents/{doc['id']}/versions/9/restore", headers=get_auth_headers(test_user),
        )
        assert res.status_code == 404

    async def test_manual_checkpoint(self, client: AsyncClient, test_user, test_workspace):
        doc = await _create_doc(client, test_user, test_workspace.id)
        res = await client.post(
            f"/api/v1/documents/{doc['id']}/versions", json={}, headers=get_auth_headers(test_user),
        )
        assert res.status_code == 201
        assert res.json()["version"] == 2
        assert res.json()["change_log"] == "Manual checkpoint"


@pytest.mark.asyncio
class TestCollaborators:
    async def test_outside_collaborator_can_edit(self, client: AsyncClient, test_user, outsider, test_workspace):
        doc = await _create_doc(client, test_user, test_workspace.id)
        url = f"/api/v1/documents/{doc['id']}/collaborators"

        res = await client.post(url, json={"user_id": outsider.id, "role": "editor"}, headers=get_auth_headers(test_user))
        assert res.status_code == 201
        dup = await client.post(url, json={"user_id": outsider.id}, headers=get_auth_headers(test_user))
        assert dup.status_code == 409

        res = await client.put(
            f"/api/v1/documents/{doc['id']}", json={"title": "Shared"}, headers=get_auth_headers(outsider),
        )
        assert res.status_code == 200

        # Collaborators may remove themselves
        res = await client.delete(f"{url}/{outsider.id}", headers=get_auth_headers(outsider))
        assert res.status_code == 200
        res = await client.get(f"/api/v1/documents/{doc['id']}", headers=get_auth_headers(outsider))
        assert res.status_code == 403

    async def test_viewer_collaborator_cannot_edit(self, client: AsyncClient, test_user, outsider, test_workspace):
        doc = await _create_doc(client, test_user, test_workspace.id)
        await client.post(
            f"/api/v1/documents/{doc['id']}/collaborators",
            json={"user_id": outsider.id, "role": "viewer"},
            headers=get_auth_headers(test_user),
        )
        res = await client.put(
            f"/api/v1/documents/{doc['id']}", json={"content": "edit"}, headers=get_auth_headers(outsider),
        )
        assert res.status_code == 403


@pytest.mark.asyncio
class TestCommentsAndTemplates:
    async def test_threaded_comments(self, client: AsyncClient, test_user, member_user, test_workspace):
        doc = await _create_doc(client, test_user, test_workspace.id)
        url = f"/api/v1/documents/{doc['id']}/comments"
        parent = await client.post(url, json={"content": "Looks good"}, headers=get_auth_headers(member_user))
        assert parent.status_code == 201
        reply = await client.post(
            url, json={"content": "Thanks", "parent_id": parent.json()["id"]}, headers=get_auth_headers(test_user),
        )
        assert reply.status_code == 201

        listed = await client.get(url, headers=get_auth_headers(test_user))
        assert [c["parent_id"] for c in listed.json()] == [None, parent.json()["id"]]

    async def test_template_use_counts(self, client: AsyncClient, test_user, test_workspace):
        headers = get_auth_headers(test_user)
        res = await client.post(
            "/api/v1/documents/templates",
            json={"workspace_id": test_workspace.id, "name": "Retro", "category": "meetings", "content": "## Went well"},
            headers=headers,
        )
        assert res.status_code == 201
        template_id = res.json()["id"]

        doc = await client.post(f"/api/v1/documents/templates/{template_id}/use", json={}, headers=headers)
        assert doc.status_code == 201
        assert doc.json()["title"] == "Retro"
        assert doc.json()["content"] == "## Went well"

        templates = await client.get(
            "/api/v1/documents/templates", params={"workspace_id": test_workspace.id}, headers=headers,
        )
        assert templates.json()[0]["usage_count"] == 1

    async def test_private_template_is_creator_only(self, client: AsyncClient, test_user, member_user, test_workspace):
        member = get_auth_headers(member_user)
        res = await client.post(
            "/api/v1/documents/templates",
            json={"workspace_id": test_workspace.id, "name": "1:1 notes", "is_public": False},
            headers=member,
        )
        assert res.status_code == 201
        assert res.json()["is_public"] is False
        url = f"/api/v1/documents/templates/{res.json()['id']}"

        assert (await client.get(url, headers=member)).json()["name"] == "1:1 notes"
        owner = get_auth_headers(test_user)
        assert (await client.get(url, headers=owner)).status_code == 404
        assert (await client.post(f"{url}/use", json={}, headers=owner)).status_code == 404
        listed = await client.get(
            "/api/v1/documents/templates", params={"workspace_id": test_workspace.id}, headers=owner,
        )
        assert listed.json() == []

    async def test_only_the_creator_edits_or_deletes(
        self, client: AsyncClient, test_user, member_user, outsider, test_workspace,
    ):
        headers = get_auth_headers(test_user)
        res = await client.post(
            "/api/v1/documents/templates",
            json={"workspace_id": test_workspace.id, "name": "Retro", "content": "## Went well"},
            headers=headers,
        )
        url = f"/api/v1/documents/templates/{res.json()['id']}"

        member = get_auth_headers(member_user)
        assert (await client.get(url, headers=member)).status_code == 200
        assert (await client.put(url, json={"name": "Mine now"}, headers=member)).status_code == 404
        assert (await client.delete(url, headers=member)).status_code == 404
        assert (await client.get(url, headers=get_auth_headers(outsider))).status_code == 403

        res = await client.put(url, json={"name": "Sprint retro", "is_public": False}, headers=headers)
        assert res.status_code == 200
        assert (res.json()["name"], res.json()["is_public"], res.json()["content"]) == ("Sprint retro", False, "## Went well")
        assert (await client.get(url, headers=member)).status_code == 404

        assert (await client.delete(url, headers=headers)).status_code == 200
        assert (await client.get(url, headers=headers)).status_code == 404


@pytest.mark.asyncio
class TestDocumentAnalytics:
    async def test_counts_and_rankings(self, client: AsyncClient, test_user, member_user, test_workspace):
        design = await _create_doc(client, test_user, test_workspace.id, title="Design notes")
        await _create_doc(client, member_user, test_workspace.id, title="Notes")
        for content in ("v2", "v3"):
            await client.put(
                f"/api/v1/documents/{design['id']}", json={"content": content}, headers=get_auth_headers(test_user),
            )
        member = get_auth_headers(member_user)
        await client.post(f"/api/v1/documents/{design['id']}/activities", json={"action": "viewed"}, headers=member)
        for text in ("Looks good", "One nit"):
            await client.post(f"/api/v1/documents/{design['id']}/comments", json={"content": text}, headers=member)

        res = await client.get(
            "/api/v1/documents/analytics", params={"workspace_id": test_workspace.id, "window": "7d"},
            headers=get_auth_headers(test_user),
        )
        assert res.status_code == 200
        data = res.json()
        assert data["totals"] == {
            "documents": 2, "documents_created": 2, "activities": 7, "views": 1,
            "edits": 4, "comments": 2, "active_users": 2,
        }

        top = data["top_documents"][0]
        assert (top["id"], top["title"]) == (design["id"], "Design notes")
        assert (top["activities"], top["views"], top["edits"], top["comments"]) == (6, 1, 3, 2)

        people = {p["name"]: p for p in data["top_contributors"]}
        assert people["Test User"]["edits"] == 3
        assert people["Test User"]["comments"] == 0
        assert people["Member User"]["documents_created"] == 1
        assert people["Member User"]["comments"] == 2

        today = data["trend"][-1]
        assert (today["views"], today["edits"], today["comments"]) == (1, 4, 2)
        assert len(data["trend"]) == 8

    async def test_empty_workspace(self, client: AsyncClient, test_user, test_workspace):
        res = await client.get(
            "/api/v1/documents/analytics", params={"workspace_id": test_workspace.id},
            headers=get_auth_headers(test_user),
        )
        data = res.json()
        assert data["window"] == "30d"
        assert data["totals"]["documents"] == 0
        assert data["top_documents"] == []
        assert data["top_contributors"] == []

    async def test_outsider_denied(self, client: AsyncClient, outsider, test_workspace):
        res = await client.get(
            "/api/v1/documents/analytics", params={"workspace_id": test_workspace.id},
            headers=get_auth_headers(outsider),
        )
        assert res.status_code == 403
