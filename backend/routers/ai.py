# routers/ai.py — AI content generation and document analysis
import json
import logging
import time
from typing import Optional, Dict, List

import httpx
from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import Field
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

import config
from access import require_workspace_member
from auth import get_current_user, CurrentUser, RequestModel
from database import get_db_session
from models import AIContentGeneration, AIDocumentAnalysis, iso
from routers.documents import document_access

logger = logging.getLogger("huddle.ai")

router = APIRouter(prefix="/api/v1/ai", tags=["AI"])


class LLMError(Exception):
    """Raised when a configured provider cannot produce a completion."""


class ModelUnavailable(LLMError):
    """The requested model is not offered by any configured provider."""


# ============================================================
# PROVIDERS
# ============================================================

LLM_PROVIDERS = {
    "openai": {"base_url": "https://api.openai.com/v1", "env_key": "OPENAI_API_KEY", "default_model": "gpt-4o-mini", "models": ["gpt-4o", "gpt-4o-mini", "gpt-3.5-turbo"]},
    "groq": {"base_url": "https://api.groq.com/openai/v1", "env_key": "GROQ_API_KEY", "default_model": "llama-3.3-70b-versatile", "models": ["llama-3.3-70b-versatile", "llama-3.1-8b-instant"]},
    "anthropic": {"base_url": "https://api.anthropic.com/v1", "env_key": "ANTHROPIC_API_KEY", "default_model": "claude-3-5-haiku-latest", "models": ["claude-3-5-haiku-latest", "claude-3-5-sonnet-latest"]},
    "local": {"base_url": None, "env_key": None, "default_model": "llama3.1:8b", "models": ["llama3.1:8b", "qwen2.5:7b"]},
}
PROVIDER_ORDER = ("groq", "openai", "anthropic", "local")


def _provider_key(name: str) -> Optional[str]:
    if name == "local":
        return "local" if config.LOCAL_LLM_URL else None
    return config.llm_api_key(LLM_PROVIDERS[name]["env_key"])


def available_models() -> Dict[str, List[str]]:
    """Models callers may ask for, keyed by configured provider"""
    return {
        name: list(LLM_PROVIDERS[name]["models"])
        for name in PROVIDER_ORDER
        if _provider_key(name)
    }


def _resolve_provider(model: Optional[str] = None):
    """Pick (provider, settings, model, api_key); ``stub`` when nothing is configured.

    An explicit ``model`` must be offered by a configured provider, otherwise
    ModelUnavailable is raised rather than silently answering with another model.
    """
    if model:
        for name in PROVIDER_ORDER:
            settings = LLM_PROVIDERS[name]
            if model in settings["models"]:
                api_key = _provider_key(name)
                if api_key:
                    return name, settings, model, api_key
        raise ModelUnavailable(model)
    preferred = config.LLM_PROVIDER
    if preferred in LLM_PROVIDERS:
        api_key = _provider_key(preferred)
        if api_key:
            return preferred, LLM_PROVIDERS[preferred], LLM_PROVIDERS[preferred]["default_model"], api_key
    for name in PROVIDER_ORDER:
        api_key = _provider_key(name)
        if api_key:
            return name, LLM_PROVIDERS[name], LLM_PROVIDERS[name]["default_model"], api_key
    return "stub", {}, "stub-model", None


def _stub_completion(system: str, prompt: str) -> str:
    return f"[Stub] {prompt[:200]}"


async def _call_llm(
    system: str, prompt: str, max_tokens: int = 500, temperature: float = 0.7, model: Optional[str] = None,
) -> Dict[str, str]:
    provider, settings, model_name, api_key = _resolve_provider(model)
    if provider == "stub":
        return {"content": _stub_completion(system, prompt), "model_used": model_name}

    try:
        async with httpx.AsyncClient(timeout=config.LLM_TIMEOUT_SECONDS) as client:
            if provider == "anthropic":
                resp = await client.post(
                    f"{settings['base_url']}/messages",
                    headers={"x-api-key": api_key, "anthropic-version": "2023-06-01", "content-type": "application/json"},
                    json={
                        "model": model_name, "system": system, "max_tokens": max_tokens, "temperature": temperature,
                        "messages": [{"role": "user", "content": prompt}],
                    },
                )
                resp.raise_for_status()
                content = resp.json().get("content", [{}])[0].get("text", "")
            else:
                base_url = config.LOCAL_LLM_URL.rstrip("/") if provider == "local" else settings["base_url"]
                headers = {"Content-Type": "application/json"}
                if provider != "local":
                    headers["Authorization"] = f"Bearer {api_key}"
                resp = await client.post(
                    f"{base_url}/chat/completions",
                    headers=headers,
                    json={
                        "model": model_name,
                        "messages": [{"role": "system", "content": system}, {"role": "user", "content": prompt}],
                        "max_tokens": max_tokens,
                        "temperature": temperature,
                    },
                )
                resp.raise_for_status()
                content = resp.json().get("choices", [{}])[0].get("message", {}).get("content", "")
    except (httpx.HTTPError, ValueError, KeyError, IndexError) as e:
        logger.warning(f"LLM call failed ({provider}/{model_name}): {e}")
        raise LLMError(str(e)) from e

    return {"content": content or "No content generated", "model_used": f"{provider}/{model_name}"}


# ============================================================
# CONTENT GENERATION
# ============================================================

# type -> (system prompt, max_tokens, temperature)
CONTENT_TYPES = {
    "document": ("You are an expert content writer. Create well-structured, professional document content based on the user's request.", 800, 0.7),
    "email": ("You are a professional email writer. Write clear, concise, and effective emails with a subject line, greeting, body and closing.", 600, 0.6),
    "summary": ("You are an expert at creating concise summaries. Capture the key points while keeping them clear and brief.", 300, 0.5),
    "title": ("You are an expert at creating catchy, descriptive titles that accurately reflect the content.", 100, 0.8),
    "translation": ("You are a professional translator. Provide accurate, natural translations that keep the original meaning and tone.", 600, 0.3),
}


class ContentRequest(RequestModel):
    workspace_id: str
    prompt: str = Field(..., min_length=1, max_length=20000)
    type: str = Field(..., pattern=r"^(document|email|summary|title|translation)$")
    context: Optional[str] = Field(default=None, max_length=20000)
    tone: Optional[str] = Field(default=None, max_length=50)
    length: Optional[str] = Field(default=None, pattern=r"^(short|medium|long)$")
    model: Optional[str] = Field(default=None, min_length=1, max_length=100)


def _build_prompt(data: ContentRequest) -> str:
    parts = [data.prompt]
    if data.context:
        parts.append(f"Context:\n{data.context}")
    if data.tone:
        parts.append(f"Tone: {data.tone}")
    if data.length:
        parts.append(f"Length: {data.length}")
    return "\n\n".join(parts)


def _generation_out(g: AIContentGeneration) -> dict:
    return {
        "id": g.id,
        "type": g.content_type,
        "prompt": g.prompt,
        "context": g.context,
        "tone": g.tone,
        "length": g.length,
        "response": g.generated_content,
        "model": g.model_used,
        "created_at": iso(g.created_at),
    }


@router.get("/models")
async def list_models(user: CurrentUser = Depends(get_current_user)):
    provider, _, default_model, _ = _resolve_provider()
    return {"default": default_model, "provider": provider, "providers": available_models()}


@router.get("/content-generation")
async def list_generations(
    workspace_id: str = Query(...),
    type: Optional[str] = Query(default=None, pattern=r"^(document|email|summary|title|translation)$"),
    limit: int = Query(default=20, ge=1, le=100),
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    """The caller's own generation history"""
    await require_workspace_member(db, user, workspace_id)
    stmt = select(AIContentGeneration).where(
        AIContentGeneration.workspace_id == workspace_id,
        AIContentGeneration.user_id == user.id,
    )
    if type:
        stmt = stmt.where(AIContentGeneration.content_type == type)
    rows = await db.execute(stmt.order_by(AIContentGeneration.created_at.desc()).limit(limit))
    return {"generations": [_generation_out(g) for g in rows.scalars().all()]}


@router.post("/content-generation", status_code=201)
async def generate_content(
    data: ContentRequest,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    await require_workspace_member(db, user, data.workspace_id)
    system, max_tokens, temperature = CONTENT_TYPES[data.type]
    try:
        result = await _call_llm(system, _build_prompt(data), max_tokens, temperature, model=data.model)
    except ModelUnavailable:
        raise HTTPException(status_code=400, detail=f"Model '{data.model}' is not available")
    except LLMError:
        raise HTTPException(status_code=500, detail="Failed to generate content")

    generation = AIContentGeneration(
        workspace_id=data.workspace_id,
        user_id=user.id,
        content_type=data.type,
        prompt=data.prompt,
        context=data.context,
        tone=data.tone,
        length=data.length,
        generated_content=result["content"],
        model_used=result["model_used"],
    )
    db.add(generation)
    await db.commit()
    return _generation_out(generation)


# ============================================================
# DOCUMENT ANALYSIS
# ============================================================

# type -> (system prompt, instruction, max_tokens, temperature, parsed confidence, fallback payload)
ANALYSIS_TYPES = {
    "summary": (
        "You are an expert document analyst. Provide clear, concise summaries.",
        "Provide a comprehensive summary of the following document:",
        500, 0.7, 0.9, None,
    ),
    "keywords": (
        "You are an expert at keyword extraction. Return only a JSON array of keywords.",
        "Extract the most important keywords and phrases from the following document as a JSON array:",
        200, 0.3, 0.85, {"keywords": []},
    ),
    "sentiment": (
        "You are an expert at sentiment analysis. Return only a JSON object.",
        "Analyse the sentiment of the following document. Return a JSON object with 'sentiment' "
        "(positive, negative or neutral) and 'confidence' (0-1):",
        100, 0.2, 0.8, {"sentiment": "neutral", "confidence": 0.5},
    ),
    "readability": (
        "You are an expert at readability analysis. Return only a JSON object.",
        "Analyse the readability of the following document. Return a JSON object with 'score' (0-100), "
        "'level' (elementary, middle, high, college) and 'suggestions' (array):",
        300, 0.3, 0.8, {"score": 50, "level": "middle", "suggestions": []},
    ),
    "insights": (
        "You are an expert business analyst. Provide actionable insights and recommendations as a JSON object.",
        "Provide insights for the following document. Return a JSON object with 'key_insights', "
        "'recommendations' and 'action_items' (arrays):",
        600, 0.7, 0.85, {"key_insights": [], "recommendations": [], "action_items": []},
    ),
}
FALLBACK_CONFIDENCE = 0.5


class AnalysisRequest(RequestModel):
    document_id: str
    analysis_type: str = Field(..., pattern=r"^(summary|keywords|sentiment|readability|insights)$")


def interpret_analysis(analysis_type: str, content: str):
    """Turn a raw completion into (result, confidence); unparseable JSON degrades to defaults."""
    _, _, _, _, confidence, fallback = ANALYSIS_TYPES[analysis_type]
    if analysis_type == "summary":
        return {"summary": content}, confidence
    try:
        parsed = json.loads(content)
    except ValueError:
        return dict(fallback), FALLBACK_CONFIDENCE

    if analysis_type == "keywords":
        if not isinstance(parsed, list):
            return dict(fallback), FALLBACK_CONFIDENCE
        return {"keywords": [str(k) for k in parsed]}, confidence
    if not isinstance(parsed, dict):
        return dict(fallback), FALLBACK_CONFIDENCE
    if analysis_type == "sentiment":
        try:
            confidence = float(parsed.get("confidence", confidence))
        except (TypeError, ValueError):
            pass
    return parsed, confidence


def _analysis_out(a: AIDocumentAnalysis) -> dict:
    return {
        "id": a.id,
        "document_id": a.document_id,
        "analysis_type": a.analysis_type,
        "result": a.result,
        "confidence": a.confidence,
        "model": a.model_used,
        "created_at": iso(a.created_at),
    }


@router.get("/document-analysis")
async def list_analyses(
    document_id: str = Query(...),
    analysis_type: Optional[str] = Query(default=None, pattern=r"^(summary|keywords|sentiment|readability|insights)$"),
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    await document_access(db, user, document_id)
    stmt = select(AIDocumentAnalysis).where(AIDocumentAnalysis.document_id == document_id)
    if analysis_type:
        stmt = stmt.where(AIDocumentAnalysis.analysis_type == analysis_type)
    rows = await db.execute(stmt.order_by(AIDocumentAnalysis.created_at.desc()).limit(50))
    return {"analyses": [_analysis_out(a) for a in rows.scalars().all()]}


@router.post("/document-analysis", status_code=201)
async def analyse_document(
    data: AnalysisRequest,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    """Run one analysis over the document's current content and keep the result"""
    doc, _, _ = await document_access(db, user, data.document_id)
    system, instruction, max_tokens, temperature, _, fallback = ANALYSIS_TYPES[data.analysis_type]

    started = time.monotonic()
    try:
        completion = await _call_llm(system, f"{instruction}\n\n{doc.content or ''}", max_tokens, temperature)
        result, confidence = interpret_analysis(data.analysis_type, completion["content"])
        model_used = completion["model_used"]
    except LLMError:
        result = dict(fallback) if fallback else {"summary": ""}
        result["error"] = "AI analysis failed"
        confidence = 0.0
        model_used = "unavailable"
    processing_ms = int((time.monotonic() - started) * 1000)

    analysis = AIDocumentAnalysis(
        document_id=doc.id,
        workspace_id=doc.workspace_id,
        user_id=user.id,
        analysis_type=data.analysis_type,
        result=result,
        confidence=confidence,
        model_used=model_used,
    )
    db.add(analysis)
    await db.commit()
    out = _analysis_out(analysis)
    out["processing_ms"] = processing_ms
    return out
