# routers/security.py — MFA (TOTP + backup codes), workspace security policies, audit log
import logging
import secrets
from datetime import datetime
from typing import Optional, Dict, Any

import pyotp
from fastapi import APIRouter, Depends, HTTPException, Query, Request
from pydantic import Field
from sqlalchemy import select, func, delete
from sqlalchemy.ext.asyncio import AsyncSession

from access import require_workspace_member, require_workspace_admin, get_or_404
from audit import log_security_event
from auth import get_current_user, CurrentUser, RequestModel, AuthService
from database import get_db_session
from models import (
    UserSecuritySetting, MfaBackupCode, SecurityPolicy, SecurityAuditLog, User,
    utcnow, as_utc, iso,
)

logger = logging.getLogger("huddle.security")

router = APIRouter(prefix="/api/v1/security", tags=["Security"])

MFA_ISSUER = "Huddle"
BACKUP_CODE_COUNT = 10
POLICY_TYPE_PATTERN = r"^(password|session|mfa|ip_allowlist|data_retention|sharing)$"


# ============================================================
# SCHEMAS
# ============================================================

class MfaSetupRequest(RequestModel):
    workspace_id: str


class MfaCodeRequest(RequestModel):
    workspace_id: str
    code: str = Field(..., min_length=6, max_length=32)


class PolicyCreate(RequestModel):
    workspace_id: str
    name: str = Field(..., min_length=1, max_length=200)
    policy_type: str = Field(..., pattern=POLICY_TYPE_PATTERN)
    rules: Dict[str, Any] = Field(default_factory=dict)
    is_active: bool = True


class PolicyUpdate(RequestModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=200)
    rules: Optional[Dict[str, Any]] = None
    is_active: Optional[bool] = None


class AuditLogCreate(RequestModel):
    workspace_id: str
    action: str = Field(..., min_length=1, max_length=100)
    resource_type: Optional[str] = Field(default=None, max_length=100)
    resource_id: Optional[str] = None
    details: Dict[str, Any] = Field(default_factory=dict)


# ============================================================
# HELPERS
# ============================================================

def generate_backup_codes(count: int = BACKUP_CODE_COUNT) -> list:
    """Human-typable one-time codes, e.g. ``4F2A-9C1B``."""
    codes = []
    for _ in range(count):
        raw = secrets.token_hex(4).upper()
        codes.append(f"{raw[:4]}-{raw[4:]}")
    return codes


def _normalise_code(code: str) -> str:
    return code.strip().upper().replace(" ", "")


async def _get_setting(db: AsyncSession, user_id: str, workspace_id: str) -> Optional[UserSecuritySetting]:
    result = await db.execute(
        select(UserSecuritySetting).where(
            UserSecuritySetting.user_id == user_id,
            UserSecuritySetting.workspace_id == workspace_id,
        )
    )
    return result.scalar_one_or_none()


async def _consume_backup_code(db: AsyncSession, setting_id: str, code: str) -> bool:
    """Delete the matching code; only the request that removes the row wins."""
    result = await db.execute(
        delete(MfaBackupCode).where(
            MfaBackupCode.setting_id == setting_id,
            MfaBackupCode.code_hash == AuthService.hash_secret(_normalise_code(code)),
        )
    )
    return result.rowcount == 1


def _policy_out(p: SecurityPolicy) -> dict:
    return {
        "id": p.id,
        "workspace_id": p.workspace_id,
        "name": p.name,
        "policy_type": p.policy_type,
        "rules": p.rules or {},
        "is_active": bool(p.is_active),
        "created_by": p.created_by,
        "created_at": iso(p.created_at),
        "updated_at": iso(p.updated_at),
    }


# ============================================================
# MFA
# ============================================================

@router.post("/mfa/setup")
async def setup_mfa(
    data: MfaSetupRequest,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    """
    Start MFA enrolment for the caller in a workspace.

    Generates a fresh TOTP secret and a new set of backup codes. The raw
    codes are returned once; only their hashes are kept. MFA stays disabled
    until a code is confirmed via ``PUT /mfa/setup``.
    """
    await require_workspace_member(db, user, data.workspace_id)

    setting = await _get_setting(db, user.id, data.workspace_id)
    if setting and setting.mfa_enabled:
        raise HTTPException(status_code=409, detail="MFA is already enabled")
    if setting is None:
        setting = UserSecuritySetting(user_id=user.id, workspace_id=data.workspace_id)
        db.add(setting)
        await db.flush()

    secret = pyotp.random_base32()
    setting.mfa_secret = secret
    setting.mfa_enabled = False

    codes = generate_backup_codes()
    await db.execute(delete(MfaBackupCode).where(MfaBackupCode.setting_id == setting.id))
    for code in codes:
        db.add(MfaBackupCode(setting_id=setting.id, code_hash=AuthService.hash_secret(_normalise_code(code))))
    await db.commit()

    uri = pyotp.TOTP(secret).provisioning_uri(name=user.email, issuer_name=MFA_ISSUER)
    return {"secret": secret, "provisioning_uri": uri, "backup_codes": codes}


@router.put("/mfa/setup")
async def enable_mfa(
    data: MfaCodeRequest,
    request: Request,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    await require_workspace_member(db, user, data.workspace_id)
    setting = await _get_setting(db, user.id, data.workspace_id)
    if setting is None or not setting.mfa_secret:
        raise HTTPException(status_code=400, detail="MFA setup has not been started")
    if setting.mfa_enabled:
        raise HTTPException(status_code=409, detail="MFA is already enabled")

    if not pyotp.TOTP(setting.mfa_secret).verify(data.code, valid_window=1):
        raise HTTPException(status_code=400, detail="Invalid verification code")

    setting.mfa_enabled = True
    log_security_event(db, data.workspace_id, user.id, "mfa_enabled", request,
                       resource_type="user", resource_id=user.id)
    await db.commit()
    return {"mfa_enabled": True}


@router.post("/mfa/verify")
async def verify_mfa(
    data: MfaCodeRequest,
    request: Request,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    """Accept a TOTP code or a single-use backup code"""
    await require_workspace_member(db, user, data.workspace_id)
    setting = await _get_setting(db, user.id, data.workspace_id)
    if setting is None or not setting.mfa_enabled:
        raise HTTPException(status_code=400, detail="MFA is not enabled")

    method = None
    code = data.code.strip()
    if code.isdigit() and pyotp.TOTP(setting.mfa_secret).verify(code, valid_window=1):
        method = "totp"
    elif await _consume_backup_code(db, setting.id, code):
        method = "backup_code"

    if method is None:
        log_security_event(db, data.workspace_id, user.id, "mfa_verification_failed", request,
                           resource_type="user", resource_id=user.id)
        # The failure trail is kept even though the request is rejected
        await db.commit()
        raise HTTPException(status_code=400, detail="Invalid verification code")

    remaining = (await db.execute(
        select(func.count(MfaBackupCode.id)).where(MfaBackupCode.setting_id == setting.id)
    )).scalar() or 0
    log_security_event(db, data.workspace_id, user.id, "mfa_verified", request,
                       resource_type="user", resource_id=user.id, details={"method": method})
    await db.commit()
    return {"verified": True, "method": method, "backup_codes_remaining": remaining}


# ============================================================
# POLICIES
# ============================================================

@router.get("/policies")
async def list_policies(
    workspace_id: str = Query(...),
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    await require_workspace_member(db, user, workspace_id)
    policies = (await db.execute(
        select(SecurityPolicy)
        .where(SecurityPolicy.workspace_id == workspace_id)
        .order_by(SecurityPolicy.created_at.asc())
    )).scalars().all()
    return [_policy_out(p) for p in policies]


@router.post("/policies", status_code=201)
async def create_policy(
    data: PolicyCreate,
    request: Request,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    await require_workspace_admin(db, user, data.workspace_id)
    policy = SecurityPolicy(created_by=user.id, **data.model_dump())
    db.add(policy)
    await db.flush()
    log_security_event(db, data.workspace_id, user.id, "policy_created", request,
                       resource_type="security_policy", resource_id=policy.id,
                       details={"name": policy.name, "policy_type": policy.policy_type})
    await db.commit()
    return _policy_out(policy)


@router.put("/policies/{policy_id}")
async def update_policy(
    policy_id: str,
    data: PolicyUpdate,
    request: Request,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    policy = await get_or_404(db, SecurityPolicy, policy_id, "Policy")
    await require_workspace_admin(db, user, policy.workspace_id)

    changed = {}
    for key, value in data.model_dump(exclude_unset=True).items():
        if value is not None and getattr(policy, key) != value:
            changed[key] = value
            setattr(policy, key, value)
    if changed:
        policy.updated_at = utcnow()
        log_security_event(db, policy.workspace_id, user.id, "policy_updated", request,
                           resource_type="security_policy", resource_id=policy.id,
                           details={"fields": sorted(changed)})
    await db.commit()
    return _policy_out(policy)


@router.delete("/policies/{policy_id}")
async def delete_policy(
    policy_id: str,
    request: Request,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    policy = await get_or_404(db, SecurityPolicy, policy_id, "Policy")
    await require_workspace_admin(db, user, policy.workspace_id)
    log_security_event(db, policy.workspace_id, user.id, "policy_deleted", request,
                       resource_type="security_policy", resource_id=policy.id,
                       details={"name": policy.name})
    await db.delete(policy)
    await db.commit()
    return {"status": "deleted", "policy_id": policy_id}


# ============================================================
# AUDIT LOG
# ============================================================

@router.get("/audit-logs")
async def list_audit_logs(
    workspace_id: str = Query(...),
    action: Optional[str] = None,
    user_id: Optional[str] = None,
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
    limit: int = Query(default=50, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    await require_workspace_admin(db, user, workspace_id)

    stmt = select(SecurityAuditLog).where(SecurityAuditLog.workspace_id == workspace_id)
    if action:
        stmt = stmt.where(SecurityAuditLog.action == action)
    if user_id:
        stmt = stmt.where(SecurityAuditLog.user_id == user_id)
    if start_date:
        stmt = stmt.where(SecurityAuditLog.created_at >= as_utc(start_date))
    if end_date:
        stmt = stmt.where(SecurityAuditLog.created_at <= as_utc(end_date))

    total = (await db.execute(select(func.count()).select_from(stmt.subquery()))).scalar() or 0
    rows = await db.execute(
        stmt.add_columns(User.name)
        .outerjoin(User, User.id == SecurityAuditLog.user_id)
        .order_by(SecurityAuditLog.created_at.desc())
        .offset(offset)
        .limit(limit)
    )
    logs = [
        {
            "id": entry.id,
            "action": entry.action,
            "user": {"id": entry.user_id, "name": name} if entry.user_id else None,
            "resource_type": entry.resource_type,
            "resource_id": entry.resource_id,
            "details": entry.details or {},
            "ip_address": entry.ip_address,
            "user_agent": entry.user_agent,
            "created_at": iso(entry.created_at),
        }
        for entry, name in rows.all()
    ]
    return {"logs": logs, "total": total, "limit": limit, "offset": offset}


@router.post("/audit-logs", status_code=201)
async def create_audit_log(
    data: AuditLogCreate,
    request: Request,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    await require_workspace_member(db, user, data.workspace_id)
    entry = log_security_event(db, data.workspace_id, user.id, data.action, request,
                               resource_type=data.resource_type, resource_id=data.resource_id,
                               details=data.details)
    await db.commit()
    return {"id": entry.id, "action": entry.action, "created_at": iso(entry.created_at)}
