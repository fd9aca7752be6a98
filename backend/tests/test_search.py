# tests/test_search.py — Query parsing, scoring and workspace search
import pytest
from httpx import AsyncClient

from routers.search import parse_search_query, score_result
from tests.conftest import get_auth_headers


class TestParseQuery:
    def test_all_operators(self):
        parsed = parse_search_query('"release notes" -draft @alice #General roadmap  q3')
        assert parsed.exact == ["release notes"]
        assert parsed.exclude == ["draft"]
        assert parsed.mentions == ["alice"]
        assert parsed.channels == ["general"]
        assert parsed.regular == "roadmap q3"

    def test_hyphenated_words_are_not_exclusions(self):
        parsed = parse_search_query("follow-up")
        assert parsed.exclude == []
        assert parsed.regular == "follow-up"

    def test_empty_quotes_ignored(self):
        parsed = parse_search_query('"" budget')
        assert parsed.exact == []
        assert parsed.terms == ["budget"]


class TestScore:
    def test_title_outweighs_content(self):
        in_title = score_result({"title": "Budget review", "content": ""}, "budget")
        in_content = score_result({"title": "Notes", "content": "the budget"}, "budget")
        assert in_title == 13
        assert in_content == 5

    def test_empty_term(self):
        assert score_result({"title": "x", "content": "x"}, "") == 0


async def _post(client, user, channel_id, content):
    res = await client.post(
        "/api/v1/messages", json={"channel_id": channel_id, "content": content}, headers=get_auth_headers(user),
    )
    assert res.status_code == 201
    return res.json()


@pytest.mark.asyncio
class TestSearchEndpoint:
    async def test_empty_query(self, client: AsyncClient, test_user, test_workspace):
        res = await client.get(
            "/api/v1/search", params={"q": "   ", "workspace_id": test_workspace.id}, headers=get_auth_headers(test_user),
        )
        assert res.json() == {"results": [], "query": None}

    async def test_finds_messages_and_excludes(self, client: AsyncClient, test_user, test_workspace, general_channel):
        await _post(client, test_user, general_channel.id, "Budget draft attached")
        await _post(client, test_user, general_channel.id, "Final budget approved")
        await _post(client, test_user, general_channel.id, "Lunch?")

        res = await client.get(
            "/api/v1/search", params={"q": "budget -draft", "workspace_id": test_workspace.id, "type": "messages"},
            headers=get_auth_headers(test_user),
        )
        assert [r["content"] for r in res.json()["results"]] == ["Final budget approved"]
        assert res.json()["query"]["exclude"] == ["draft"]

    async def test_hidden_channels_stay_hidden(self, client: AsyncClient, test_user, guest_user, test_workspace, general_channel):
        await _post(client, test_user, general_channel.id, "secret launch date")
        res = await client.get(
            "/api/v1/search", params={"q": "launch", "workspace_id": test_workspace.id, "type": "messages"},
            headers=get_auth_headers(guest_user),
        )
        assert res.json()["results"] == []

    async def test_channel_filter(self, client: AsyncClient, test_user, test_workspace, general_channel):
        channel = (await client.post(
            "/api/v1/channels", json={"workspace_id": test_workspace.id, "name": "design"},
            headers=get_auth_headers(test_user),
        )).json()
        await _post(client, test_user, general_channel.id, "mockups in general")
        await _post(client, test_user, channel["id"], "mockups in design")

        res = await client.get(
            "/api/v1/search", params={"q": "mockups #design", "workspace_id": test_workspace.id},
            headers=get_auth_headers(test_user),
        )
        messages = [r for r in res.json()["results"] if r["type"] == "message"]
        assert [m["content"] for m in messages] == ["mockups in design"]

    async def test_direct_messages_and_people(self, client: AsyncClient, test_user, member_user, test_workspace):
        await client.post(
            "/api/v1/direct-messages", json={"receiver_id": member_user.id, "content": "Member review tomorrow"},
            headers=get_auth_headers(test_user),
        )
        res = await client.get(
            "/api/v1/search", params={"q": "member", "workspace_id": test_workspace.id},
            headers=get_auth_headers(test_user),
        )
        results = res.json()["results"]
        titles = {r["type"]: r["title"] for r in results}
        assert titles["user"] == "Member User"
        assert any(r["title"] == "Direct message with Member User" for r in results)
        assert results == sorted(results, key=lambda r: r["score"], reverse=True)

    async def test_mine_filter(self, client: AsyncClient, test_user, member_user, test_workspace, general_channel):
        await _post(client, test_user, general_channel.id, "deploy notes from owner")
        await _post(client, member_user, general_channel.id, "deploy notes from member")
        res = await client.get(
            "/api/v1/search",
            params={"q": "deploy", "workspace_id": test_workspace.id, "type": "messages", "mine": True},
            headers=get_auth_headers(member_user),
        )
        assert [r["content"] for r in res.json()["results"]] == ["deploy notes from member"]

    async def test_outsider_forbidden(self, client: AsyncClient, outsider, test_workspace):
        res = await client.get(
            "/api/v1/search", params={"q": "x", "workspace_id": test_workspace.id}, headers=get_auth_headers(outsider),
        )
        assert res.status_code == 403
