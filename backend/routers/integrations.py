# routers/integrations.py — Third-party integrations, connections, outgoing webhooks, API keys
import hashlib
import hmac
import json
import logging
import secrets
from datetime import datetime
from typing import Optional, List, Dict, Any

import httpx
from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import Field
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from access import require_workspace_member, require_workspace_admin, get_or_404, is_privileged
from auth import get_current_user, CurrentUser, RequestModel, AuthService
from database import get_db_session
from models import Integration, IntegrationConnection, Webhook, ApiKey, utcnow, as_utc, iso

logger = logging.getLogger("huddle.integrations")

router = APIRouter(prefix="/api/v1/integrations", tags=["Integrations"])

PROVIDER_PATTERN = r"^(github|gitlab|jira|slack|google_drive|dropbox|zapier|custom)$"
WEBHOOK_EVENTS = {
    "message.created", "task.created", "task.updated", "document.updated",
    "meeting.scheduled", "member.joined", "approval.decided",
}


# --- Schemas ---

class IntegrationCreate(RequestModel):
    workspace_id: str
    name: str = Field(..., min_length=1, max_length=200)
    provider: str = Field(..., pattern=PROVIDER_PATTERN)
    config: Dict[str, Any] = Field(default_factory=dict)


class IntegrationUpdate(RequestModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=200)
    config: Optional[Dict[str, Any]] = None
    is_active: Optional[bool] = None


class ConnectionCreate(RequestModel):
    integration_id: str
    external_account: Optional[str] = Field(default=None, max_length=300)
    settings: Dict[str, Any] = Field(default_factory=dict)


class WebhookCreate(RequestModel):
    workspace_id: str
    url: str = Field(..., pattern=r"^https?://", max_length=2048)
    events: List[str] = Field(..., min_length=1)
    integration_id: Optional[str] = None


class ApiKeyCreate(RequestModel):
    workspace_id: str
    name: str = Field(..., min_length=1, max_length=200)
    scopes: List[str] = Field(default_factory=lambda: ["read"])
    expires_at: Optional[datetime] = None


class ApiKeyUpdate(RequestModel):
    is_active: Optional[bool] = None
    expires_at: Optional[datetime] = None


REDACTED = "***"


def redact(values: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """Keep the keys so callers can see what is configured, hide the values"""
    return {key: REDACTED for key in (values or {})}


def _integration_out(i: Integration, reveal_config: bool = True) -> dict:
    return {
        "id": i.id,
        "workspace_id": i.workspace_id,
        "name": i.name,
        "provider": i.provider,
        "config": (i.config or {}) if reveal_config else redact(i.config),
        "is_active": bool(i.is_active),
        "created_by": i.created_by,
        "created_at": iso(i.created_at),
    }


def _webhook_out(w: Webhook) -> dict:
    return {
        "id": w.id,
        "workspace_id": w.workspace_id,
        "integration_id": w.integration_id,
        "url": w.url,
        "events": w.events or [],
        "is_active": bool(w.is_active),
        "created_at": iso(w.created_at),
    }


def _key_out(k: ApiKey) -> dict:
    return {
        "id": k.id,
        "name": k.name,
        "key_prefix": k.key_prefix,
        "scopes": k.scopes or [],
        "is_active": bool(k.is_active),
        "expires_at": iso(k.expires_at),
        "revoked_at": iso(k.revoked_at),
        "created_at": iso(k.created_at),
    }


def sign_payload(secret: str, body: bytes) -> str:
    return hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()


# ============================================================
# INTEGRATIONS
# ============================================================

@router.get("")
async def list_integrations(
    workspace_id: str = Query(...),
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    membership = await require_workspace_member(db, user, workspace_id)
    rows = await db.execute(
        select(Integration).where(Integration.workspace_id == workspace_id).order_by(Integration.name.asc())
    )
    reveal = is_privileged(membership)
    return [_integration_out(i, reveal_config=reveal) for i in rows.scalars().all()]


@router.post("", status_code=201)
async def create_integration(
    data: IntegrationCreate,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    await require_workspace_admin(db, user, data.workspace_id)
    integration = Integration(created_by=user.id, **data.model_dump())
    db.add(integration)
    await db.commit()
    logger.info(f"Integration {integration.provider} added to ws={data.workspace_id[:8]}")
    return _integration_out(integration)


# ============================================================
# CONNECTIONS
# ============================================================

@router.get("/connections")
async def list_connections(
    workspace_id: str = Query(...),
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    membership = await require_workspace_member(db, user, workspace_id)
    reveal_all = is_privileged(membership)
    rows = await db.execute(
        select(IntegrationConnection, Integration.name, Integration.provider)
        .join(Integration, Integration.id == IntegrationConnection.integration_id)
        .where(Integration.workspace_id == workspace_id)
        .order_by(IntegrationConnection.created_at.desc())
    )
    return [
        {
            "id": c.id,
            "integration_id": c.integration_id,
            "integration_name": name,
            "provider": provider,
            "external_account": c.external_account,
            "status": c.status,
            "settings": (c.settings or {}) if reveal_all or c.connected_by == user.id else redact(c.settings),
            "connected_by": c.connected_by,
            "created_at": iso(c.created_at),
        }
        for c, name, provider in rows.all()
    ]


@router.post("/connections", status_code=201)
async def create_connection(
    data: ConnectionCreate,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    integration = await get_or_404(db, Integration, data.integration_id, "Integration")
    await require_workspace_member(db, user, integration.workspace_id)
    if not integration.is_active:
        raise HTTPException(status_code=409, detail="Integration is disabled")

    connection = IntegrationConnection(
        integration_id=integration.id,
        external_account=data.external_account,
        settings=data.settings,
        connected_by=user.id,
    )
    db.add(connection)
    await db.commit()
    return {"id": connection.id, "status": connection.status, "created_at": iso(connection.created_at)}


# ============================================================
# WEBHOOKS
# ============================================================

@router.get("/webhooks")
async def list_webhooks(
    workspace_id: str = Query(...),
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    await require_workspace_admin(db, user, workspace_id)
    rows = await db.execute(
        select(Webhook).where(Webhook.workspace_id == workspace_id).order_by(Webhook.created_at.desc())
    )
    return [_webhook_out(w) for w in rows.scalars().all()]


@router.post("/webhooks", status_code=201)
async def create_webhook(
    data: WebhookCreate,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    """Register an outgoing webhook; the signing secret is shown only here"""
    await require_workspace_admin(db, user, data.workspace_id)
    unknown = set(data.events) - WEBHOOK_EVENTS
    if unknown:
        raise HTTPException(status_code=400, detail=f"Unknown events: {', '.join(sorted(unknown))}")
    if data.integration_id:
        integration = await get_or_404(db, Integration, data.integration_id, "Integration")
        if integration.workspace_id != data.workspace_id:
            raise HTTPException(status_code=400, detail="Integration belongs to another workspace")

    webhook = Webhook(
        workspace_id=data.workspace_id,
        integration_id=data.integration_id,
        url=data.url,
        events=sorted(set(data.events)),
        secret=secrets.token_hex(32),
        created_by=user.id,
    )
    db.add(webhook)
    await db.commit()
    out = _webhook_out(webhook)
    out["secret"] = webhook.secret
    return out


@router.post("/webhooks/{webhook_id}/test")
async def test_webhook(
    webhook_id: str,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    """Send a signed ping to the webhook URL and report the outcome"""
    webhook = await get_or_404(db, Webhook, webhook_id, "Webhook")
    await require_workspace_admin(db, user, webhook.workspace_id)

    body = json.dumps({"event": "ping", "webhook_id": webhook.id, "sent_at": iso(utcnow())}).encode()
    headers = {
        "Content-Type": "application/json",
        "X-Huddle-Signature": f"sha256={sign_payload(webhook.secret, body)}",
    }
    try:
        async with httpx.AsyncClient(timeout=10.0) as client:
            resp = await client.post(webhook.url, content=body, headers=headers)
        return {"delivered": resp.is_success, "status_code": resp.status_code}
    except httpx.HTTPError as e:
        logger.warning(f"Webhook {webhook.id[:8]} ping failed: {e}")
        return {"delivered": False, "error": str(e)}


# ============================================================
# API KEYS
# ============================================================

@router.get("/api-keys")
async def list_api_keys(
    workspace_id: str = Query(...),
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    await require_workspace_admin(db, user, workspace_id)
    rows = await db.execute(
        select(ApiKey).where(ApiKey.workspace_id == workspace_id).order_by(ApiKey.created_at.desc())
    )
    return [_key_out(k) for k in rows.scalars().all()]


@router.post("/api-keys", status_code=201)
async def create_api_key(
    data: ApiKeyCreate,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    await require_workspace_admin(db, user, data.workspace_id)
    for scope in data.scopes:
        if scope not in ("read", "write", "admin"):
            raise HTTPException(status_code=400, detail=f"Unknown scope: {scope}")
    expires_at = as_utc(data.expires_at)
    if expires_at and expires_at <= utcnow():
        raise HTTPException(status_code=400, detail="expires_at must be in the future")

    raw_key, key_hash, key_prefix = AuthService.generate_api_key()
    api_key = ApiKey(
        workspace_id=data.workspace_id,
        name=data.name,
        key_hash=key_hash,
        key_prefix=key_prefix,
        scopes=sorted(set(data.scopes)),
        expires_at=expires_at,
        created_by=user.id,
    )
    db.add(api_key)
    await db.commit()
    out = _key_out(api_key)
    # Never retrievable again
    out["key"] = raw_key
    return out


@router.delete("/api-keys/{key_id}")
async def revoke_api_key(
    key_id: str,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    api_key = await get_or_404(db, ApiKey, key_id, "API key")
    await require_workspace_admin(db, user, api_key.workspace_id)
    if api_key.revoked_at:
        raise HTTPException(status_code=409, detail="API key is already revoked")
    api_key.revoked_at = utcnow()
    await db.commit()
    return {"status": "revoked", "key_id": key_id}


@router.patch("/api-keys/{key_id}")
async def update_api_key(
    key_id: str,
    data: ApiKeyUpdate,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    """Pause or resume a key, or move its expiry; a null expires_at removes it"""
    api_key = await get_or_404(db, ApiKey, key_id, "API key")
    await require_workspace_admin(db, user, api_key.workspace_id)
    if api_key.revoked_at:
        raise HTTPException(status_code=409, detail="API key is revoked")

    updates = data.model_dump(exclude_unset=True)
    if "expires_at" in updates:
        expires_at = as_utc(updates["expires_at"])
        if expires_at and expires_at <= utcnow():
            raise HTTPException(status_code=400, detail="expires_at must be in the future")
        api_key.expires_at = expires_at
    if updates.get("is_active") is not None:
        api_key.is_active = updates["is_active"]
    await db.commit()
    return _key_out(api_key)


# ============================================================
# INTEGRATION UPDATE / DELETE
# ============================================================

@router.patch("/{integration_id}")
async def update_integration(
    integration_id: str,
    data: IntegrationUpdate,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    integration = await get_or_404(db, Integration, integration_id, "Integration")
    await require_workspace_admin(db, user, integration.workspace_id)
    for key, value in data.model_dump(exclude_unset=True).items():
        if value is not None:
            setattr(integration, key, value)
    await db.commit()
    return _integration_out(integration)


@router.delete("/{integration_id}")
async def delete_integration(
    integration_id: str,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    integration = await get_or_404(db, Integration, integration_id, "Integration")
    await require_workspace_admin(db, user, integration.workspace_id)
    webhooks = (await db.execute(
        select(Webhook).where(Webhook.integration_id == integration.id)
    )).scalars().all()
    for webhook in webhooks:
        webhook.integration_id = None
    await db.delete(integration)
    await db.commit()
    return {"status": "deleted", "integration_id": integration_id}
