# tests/test_knowledge.py — Knowledge bases, categories and articles
import pytest
from httpx import AsyncClient

from routers.knowledge import article_slug
from tests.conftest import get_auth_headers


class TestArticleSlug:
    def test_keeps_words(self):
        assert article_slug("Getting Started: VPN setup") == "getting-started-vpn-setup"

    def test_non_latin_titles_survive(self):
        assert article_slug("Руководство") == "руководство"

    def test_symbols_only(self):
        assert article_slug("???") == "article"


async def _base(client, user, workspace_id, **fields):
    body = {"workspace_id": workspace_id, "name": "Engineering", **fields}
    return await client.post("/api/v1/knowledge-bases", json=body, headers=get_auth_headers(user))


async def _article(client, user, base_id, **fields):
    body = {"base_id": base_id, "title": "Onboarding", "content": "Welcome", **fields}
    return await client.post("/api/v1/knowledge-articles", json=body, headers=get_auth_headers(user))


async def _list(client, user, workspace_id, **params):
    res = await client.get(
        "/api/v1/knowledge-articles", params={"workspace_id": workspace_id, **params}, headers=get_auth_headers(user),
    )
    assert res.status_code == 200
    return res.json()


@pytest.mark.asyncio
class TestKnowledgeBases:
    async def test_admin_creates_nested_bases(self, client: AsyncClient, test_user, member_user, test_workspace):
        root = (await _base(client, test_user, test_workspace.id)).json()
        res = await _base(client, test_user, test_workspace.id, name="Runbooks", parent_id=root["id"], is_category=True)
        assert res.status_code == 201

        listed = await client.get(
            "/api/v1/knowledge-bases", params={"workspace_id": test_workspace.id, "top_level": True},
            headers=get_auth_headers(member_user),
        )
        assert [b["name"] for b in listed.json()] == ["Engineering"]
        assert listed.json()[0]["child_count"] == 1

    async def test_member_cannot_create(self, client: AsyncClient, member_user, test_workspace):
        res = await _base(client, member_user, test_workspace.id)
        assert res.status_code == 403

    async def test_parent_from_another_workspace(self, client: AsyncClient, test_user, outsider, test_workspace):
        other_ws = (await client.post(
            "/api/v1/workspaces", json={"name": "Elsewhere"}, headers=get_auth_headers(outsider),
        )).json()
        foreign = (await _base(client, outsider, other_ws["id"])).json()
        res = await _base(client, test_user, test_workspace.id, parent_id=foreign["id"])
        assert res.status_code == 404

    async def test_guest_sees_public_bases_only(self, client: AsyncClient, test_user, guest_user, test_workspace):
        await _base(client, test_user, test_workspace.id, name="Handbook")
        await _base(client, test_user, test_workspace.id, name="Internal", is_public=False)
        listed = await client.get(
            "/api/v1/knowledge-bases", params={"workspace_id": test_workspace.id},
            headers=get_auth_headers(guest_user),
        )
        assert [b["name"] for b in listed.json()] == ["Handbook"]

    async def test_archive_hides_articles(self, client: AsyncClient, test_user, test_workspace):
        base = (await _base(client, test_user, test_workspace.id)).json()
        await _article(client, test_user, base["id"], status="published")
        res = await client.delete(f"/api/v1/knowledge-bases/{base['id']}", headers=get_auth_headers(test_user))
        assert res.status_code == 200
        assert await _list(client, test_user, test_workspace.id) == []


@pytest.mark.asyncio
class TestArticles:
    async def test_drafts_hidden_from_readers(self, client: AsyncClient, test_user, member_user, test_workspace):
        base = (await _base(client, test_user, test_workspace.id)).json()
        draft = (await _article(client, test_user, base["id"])).json()
        assert draft["status"] == "draft"
        assert draft["published_at"] is None

        assert await _list(client, member_user, test_workspace.id) == []
        assert await _list(client, member_user, test_workspace.id, status="draft") == []
        res = await client.get(f"/api/v1/knowledge-articles/{draft['id']}", headers=get_auth_headers(member_user))
        assert res.status_code == 404

        assert [a["id"] for a in await _list(client, test_user, test_workspace.id, status="draft")] == [draft["id"]]

    async def test_publishing_and_versions(self, client: AsyncClient, test_user, member_user, test_workspace):
        base = (await _base(client, test_user, test_workspace.id)).json()
        article = (await _article(client, test_user, base["id"])).json()
        assert article["version_count"] == 1

        res = await client.put(
            f"/api/v1/knowledge-articles/{article['id']}",
            json={"status": "published", "content": "Welcome aboard"},
            headers=get_auth_headers(test_user),
        )
        assert res.status_code == 200
        assert res.json()["published_at"] is not None
        assert res.json()["version_count"] == 2

        # Status-only changes add no version
        await client.put(
            f"/api/v1/knowledge-articles/{article['id']}", json={"is_featured": True},
            headers=get_auth_headers(test_user),
        )
        versions = await client.get(
            f"/api/v1/knowledge-articles/{article['id']}/versions", headers=get_auth_headers(member_user),
        )
        assert [v["version"] for v in versions.json()] == [2, 1]
        assert versions.json()[0]["content"] == "Welcome aboard"

    async def test_duplicate_titles_get_distinct_slugs(self, client: AsyncClient, test_user, test_workspace):
        base = (await _base(client, test_user, test_workspace.id)).json()
        first = (await _article(client, test_user, base["id"])).json()
        second = (await _article(client, test_user, base["id"])).json()
        assert first["slug"] == "onboarding"
        assert second["slug"].startswith("onboarding-")

    async def test_search_and_tags(self, client: AsyncClient, test_user, test_workspace):
        base = (await _base(client, test_user, test_workspace.id)).json()
        await _article(client, test_user, base["id"], title="VPN", content="Install the client",
                       status="published", tags=["Network", "network", " setup "])
        await _article(client, test_user, base["id"], title="Expenses", content="Submit receipts",
                       status="published", tags=["finance"])

        found = await _list(client, test_user, test_workspace.id, search="receipts")
        assert [a["title"] for a in found] == ["Expenses"]
        tagged = await _list(client, test_user, test_workspace.id, tag="network")
        assert [a["title"] for a in tagged] == ["VPN"]
        assert tagged[0]["tags"] == ["network", "setup"]

    async def test_category_must_be_a_category(self, client: AsyncClient, test_user, test_workspace):
        base = (await _base(client, test_user, test_workspace.id)).json()
        plain = (await _base(client, test_user, test_workspace.id, name="Plain")).json()
        res = await _article(client, test_user, base["id"], category_id=plain["id"])
        assert res.status_code == 404

        category = (await _base(client, test_user, test_workspace.id, name="How-to", is_category=True)).json()
        res = await _article(client, test_user, base["id"], category_id=category["id"])
        assert res.status_code == 201
        assert res.json()["category_id"] == category["id"]

    async def test_only_author_or_admin_edits(self, client: AsyncClient, test_user, member_user, test_workspace):
        base = (await _base(client, test_user, test_workspace.id)).json()
        article = (await _article(client, test_user, base["id"], status="published")).json()
        res = await client.put(
            f"/api/v1/knowledge-articles/{article['id']}", json={"title": "Hijacked"},
            headers=get_auth_headers(member_user),
        )
        assert res.status_code == 403

    async def test_guest_sees_public_articles_only(self, client: AsyncClient, test_user, guest_user, test_workspace):
        base = (await _base(client, test_user, test_workspace.id)).json()
        await _article(client, test_user, base["id"], title="Open", status="published")
        hidden = (await _article(client, test_user, base["id"], title="Staff only",
                                 status="published", is_public=False)).json()
        assert [a["title"] for a in await _list(client, guest_user, test_workspace.id)] == ["Open"]
        res = await client.get(f"/api/v1/knowledge-articles/{hidden['id']}", headers=get_auth_headers(guest_user))
        assert res.status_code == 404
