# tests/test_ai.py — AI content generation and document analysis
import json

import httpx
import pytest
from httpx import AsyncClient

import config
from routers import ai
from routers.ai import LLMError, interpret_analysis, FALLBACK_CONFIDENCE
from tests.conftest import get_auth_headers


class TestInterpretAnalysis:
    def test_summary_is_passed_through(self):
        result, confidence = interpret_analysis("summary", "Short and sweet")
        assert result == {"summary": "Short and sweet"}
        assert confidence == 0.9

    def test_keywords_parsed(self):
        result, confidence = interpret_analysis("keywords", '["roadmap", "q3"]')
        assert result == {"keywords": ["roadmap", "q3"]}
        assert confidence == 0.85

    def test_sentiment_uses_reported_confidence(self):
        result, confidence = interpret_analysis("sentiment", '{"sentiment": "positive", "confidence": 0.97}')
        assert result["sentiment"] == "positive"
        assert confidence == 0.97

    def test_bad_json_falls_back(self):
        result, confidence = interpret_analysis("readability", "not json at all")
        assert result == {"score": 50, "level": "middle", "suggestions": []}
        assert confidence == FALLBACK_CONFIDENCE

    def test_wrong_shape_falls_back(self):
        result, confidence = interpret_analysis("keywords", '{"keywords": "nope"}')
        assert result == {"keywords": []}
        assert confidence == FALLBACK_CONFIDENCE


class TestProviderResolution:
    def test_stub_without_keys(self, monkeypatch):
        monkeypatch.setattr(config, "LLM_PROVIDER", "")
        monkeypatch.setattr(config, "LOCAL_LLM_URL", "")
        for key in ("GROQ_API_KEY", "OPENAI_API_KEY", "ANTHROPIC_API_KEY"):
            monkeypatch.delenv(key, raising=False)
        provider, _, model, api_key = ai._resolve_provider()
        assert (provider, model, api_key) == ("stub", "stub-model", None)

    def test_preferred_provider_wins(self, monkeypatch):
        monkeypatch.setenv("GROQ_API_KEY", "gsk-test")
        monkeypatch.setenv("OPENAI_API_KEY", "sk-test")
        monkeypatch.setattr(config, "LLM_PROVIDER", "openai")
        provider, _, model, api_key = ai._resolve_provider()
        assert provider == "openai"
        assert model == "gpt-4o-mini"
        assert api_key == "sk-test"

    def test_first_configured_in_order(self, monkeypatch):
        monkeypatch.setattr(config, "LLM_PROVIDER", "")
        monkeypatch.delenv("GROQ_API_KEY", raising=False)
        monkeypatch.delenv("OPENAI_API_KEY", raising=False)
        monkeypatch.setenv("ANTHROPIC_API_KEY", "sk-ant-test")
        provider, _, _, _ = ai._resolve_provider()
        assert provider == "anthropic"

    def test_explicit_model_picks_its_provider(self, monkeypatch):
        monkeypatch.setenv("GROQ_API_KEY", "gsk-test")
        monkeypatch.setenv("OPENAI_API_KEY", "sk-test")
        monkeypatch.setattr(config, "LLM_PROVIDER", "groq")
        provider, _, model, api_key = ai._resolve_provider("gpt-4o")
        assert (provider, model, api_key) == ("openai", "gpt-4o", "sk-test")

    def test_explicit_model_without_provider(self, monkeypatch):
        monkeypatch.delenv("ANTHROPIC_API_KEY", raising=False)
        with pytest.raises(ai.ModelUnavailable):
            ai._resolve_provider("claude-3-5-sonnet-latest")


@pytest.mark.asyncio
class TestContentGeneration:
    async def test_stub_generation_is_stored(self, client: AsyncClient, test_user, test_workspace):
        headers = get_auth_headers(test_user)
        res = await client.post(
            "/api/v1/ai/content-generation",
            json={"workspace_id": test_workspace.id, "prompt": "Announce the launch", "type": "email", "tone": "upbeat"},
            headers=headers,
        )
        assert res.status_code == 201
        body = res.json()
        assert body["model"] == "stub-model"
        assert body["response"].startswith("[Stub] Announce the launch")

        history = await client.get(
            "/api/v1/ai/content-generation", params={"workspace_id": test_workspace.id}, headers=headers,
        )
        assert [g["id"] for g in history.json()["generations"]] == [body["id"]]

    async def test_history_is_private(self, client: AsyncClient, test_user, member_user, test_workspace):
        await client.post(
            "/api/v1/ai/content-generation",
            json={"workspace_id": test_workspace.id, "prompt": "x", "type": "title"},
            headers=get_auth_headers(test_user),
        )
        res = await client.get(
            "/api/v1/ai/content-generation", params={"workspace_id": test_workspace.id},
            headers=get_auth_headers(member_user),
        )
        assert res.json()["generations"] == []

    async def test_unknown_type_rejected(self, client: AsyncClient, test_user, test_workspace):
        res = await client.post(
            "/api/v1/ai/content-generation",
            json={"workspace_id": test_workspace.id, "prompt": "x", "type": "poem"},
            headers=get_auth_headers(test_user),
        )
        assert res.status_code == 400

    async def test_provider_failure_is_500(self, client: AsyncClient, test_user, test_workspace, monkeypatch):
        async def failing(*args, **kwargs):
            raise LLMError("upstream down")

        monkeypatch.setattr(ai, "_call_llm", failing)
        res = await client.post(
            "/api/v1/ai/content-generation",
            json={"workspace_id": test_workspace.id, "prompt": "x", "type": "summary"},
            headers=get_auth_headers(test_user),
        )
        assert res.status_code == 500
        assert res.json()["error"] == "Failed to generate content"

    async def test_requested_model_is_used(self, client: AsyncClient, test_user, test_workspace, monkeypatch):
        sent = {}

        def handler(request: httpx.Request) -> httpx.Response:
            sent["url"] = str(request.url)
            sent["model"] = json.loads(request.content)["model"]
            return httpx.Response(200, json={"choices": [{"message": {"content": "Launch day!"}}]})

        real_client = httpx.AsyncClient
        monkeypatch.setattr(
            ai.httpx, "AsyncClient",
            lambda **kwargs: real_client(transport=httpx.MockTransport(handler), **kwargs),
        )
        monkeypatch.setattr(config, "LLM_PROVIDER", "")
        monkeypatch.setenv("GROQ_API_KEY", "gsk-test")
        res = await client.post(
            "/api/v1/ai/content-generation",
            json={"workspace_id": test_workspace.id, "prompt": "x", "type": "title", "model": "llama-3.1-8b-instant"},
            headers=get_auth_headers(test_user),
        )
        assert res.status_code == 201
        assert res.json()["model"] == "groq/llama-3.1-8b-instant"
        assert res.json()["response"] == "Launch day!"
        assert sent == {"url": "https://api.groq.com/openai/v1/chat/completions", "model": "llama-3.1-8b-instant"}

    async def test_unavailable_model_rejected(self, client: AsyncClient, test_user, test_workspace, monkeypatch):
        monkeypatch.delenv("OPENAI_API_KEY", raising=False)
        for model in ("gpt-4o", "no-such-model"):
            res = await client.post(
                "/api/v1/ai/content-generation",
                json={"workspace_id": test_workspace.id, "prompt": "x", "type": "title", "model": model},
                headers=get_auth_headers(test_user),
            )
            assert res.status_code == 400
            assert model in res.json()["error"]

        history = await client.get(
            "/api/v1/ai/content-generation", params={"workspace_id": test_workspace.id},
            headers=get_auth_headers(test_user),
        )
        assert history.json()["generations"] == []

    async def test_models_listing(self, client: AsyncClient, test_user, monkeypatch):
        monkeypatch.setattr(config, "LLM_PROVIDER", "")
        monkeypatch.setattr(config, "LOCAL_LLM_URL", "")
        monkeypatch.delenv("GROQ_API_KEY", raising=False)
        monkeypatch.delenv("ANTHROPIC_API_KEY", raising=False)
        monkeypatch.setenv("OPENAI_API_KEY", "sk-test")
        res = await client.get("/api/v1/ai/models", headers=get_auth_headers(test_user))
        assert res.json() == {
            "default": "gpt-4o-mini",
            "provider": "openai",
            "providers": {"openai": ["gpt-4o", "gpt-4o-mini", "gpt-3.5-turbo"]},
        }


@pytest.mark.asyncio
class TestDocumentAnalysis:
    async def _doc(self, client, user, workspace_id):
        res = await client.post(
            "/api/v1/documents",
            json={"workspace_id": workspace_id, "title": "Plan", "content": "We ship in March."},
            headers=get_auth_headers(user),
        )
        return res.json()["id"]

    async def test_summary_with_stub(self, client: AsyncClient, test_user, test_workspace):
        doc_id = await self._doc(client, test_user, test_workspace.id)
        res = await client.post(
            "/api/v1/ai/document-analysis",
            json={"document_id": doc_id, "analysis_type": "summary"},
            headers=get_auth_headers(test_user),
        )
        assert res.status_code == 201
        assert res.json()["result"]["summary"].startswith("[Stub]")

    async def test_stub_keywords_degrade(self, client: AsyncClient, test_user, test_workspace):
        doc_id = await self._doc(client, test_user, test_workspace.id)
        res = await client.post(
            "/api/v1/ai/document-analysis",
            json={"document_id": doc_id, "analysis_type": "keywords"},
            headers=get_auth_headers(test_user),
        )
        # The stub reply is not JSON
        assert res.json()["result"] == {"keywords": []}
        assert res.json()["confidence"] == FALLBACK_CONFIDENCE

    async def test_provider_failure_degrades(self, client: AsyncClient, test_user, test_workspace, monkeypatch):
        async def failing(*args, **kwargs):
            raise LLMError("timeout")

        monkeypatch.setattr(ai, "_call_llm", failing)
        doc_id = await self._doc(client, test_user, test_workspace.id)
        res = await client.post(
            "/api/v1/ai/document-analysis",
            json={"document_id": doc_id, "analysis_type": "sentiment"},
            headers=get_auth_headers(test_user),
        )
        assert res.status_code == 201
        body = res.json()
        assert body["result"]["sentiment"] == "neutral"
        assert body["result"]["error"] == "AI analysis failed"
        assert body["confidence"] == 0.0
        assert body["model"] == "unavailable"

    async def test_outsider_cannot_analyse(self, client: AsyncClient, test_user, outsider, test_workspace):
        doc_id = await self._doc(client, test_user, test_workspace.id)
        res = await client.post(
            "/api/v1/ai/document-analysis",
            json={"document_id": doc_id, "analysis_type": "summary"},
            headers=get_auth_headers(outsider),
        )
        assert res.status_code == 403
