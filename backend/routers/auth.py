# routers/auth.py — Registration, login, token refresh and logout
import re
import secrets
import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Request, Response
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

import config
from auth import (
    AuthService, UserRegister, UserLogin, TokenResponse, RefreshRequest,
    get_current_user, CurrentUser,
)
from database import get_db_session
from models import (
    User, Workspace, UserWorkspace, WorkspaceRole, Channel, ChannelMember,
    new_uuid, iso,
)

router = APIRouter(prefix="/api/v1/auth", tags=["Authentication"])
logger = logging.getLogger("huddle.auth")


def slugify(name: str) -> str:
    slug = re.sub(r"[^a-z0-9]+", "-", name.lower()).strip("-")
    return slug[:48] or "workspace"


def _user_out(user: User) -> dict:
    return {
        "id": user.id,
        "email": user.email,
        "name": user.name or "",
        "avatar_url": user.avatar_url,
        "status": user.status,
    }


def _set_auth_cookies(response: Response, access_token: str, session_id: Optional[str]) -> None:
    response.set_cookie(
        config.AUTH_TOKEN_COOKIE, access_token,
        max_age=config.ACCESS_TOKEN_EXPIRE_MINUTES * 60,
        httponly=True, secure=config.COOKIE_SECURE, samesite="lax",
    )
    if session_id:
        response.set_cookie(
            config.SESSION_COOKIE, session_id,
            max_age=config.SESSION_EXPIRE_HOURS * 3600,
            httponly=True, secure=config.COOKIE_SECURE, samesite="lax",
        )


def _issue_credentials(
    user: User,
    db: AsyncSession,
    response: Response,
    request: Optional[Request] = None,
    with_session: bool = True,
) -> dict:
    """Mint both credential kinds so either strategy works after login."""
    token_data = {"sub": user.id, "email": user.email}
    access_token = AuthService.create_access_token(token_data)
    refresh_token = AuthService.create_refresh_token(token_data)
    session_id = AuthService.create_session(user, db, request) if with_session else None

    _set_auth_cookies(response, access_token, session_id)
    body = TokenResponse(
        access_token=access_token,
        refresh_token=refresh_token,
        expires_in=config.ACCESS_TOKEN_EXPIRE_MINUTES * 60,
        user=_user_out(user),
    ).model_dump()
    if session_id:
        body["session_id"] = session_id
    return body


@router.post("/register", status_code=201)
async def register(
    data: UserRegister,
    request: Request,
    response: Response,
    db: AsyncSession = Depends(get_db_session),
):
    """Create an account with a personal workspace and a #general channel"""
    email = data.email.lower()
    existing = await db.execute(select(User).where(User.email == email))
    if existing.scalar_one_or_none():
        raise HTTPException(status_code=409, detail="User already exists")

    name = data.name or email.split("@")[0]
    user = User(
        id=new_uuid(),
        email=email,
        name=name,
        password_hash=AuthService.hash_password(data.password),
        is_active=True,
    )
    workspace_name = data.workspace_name or f"{name}'s Workspace"
    workspace = Workspace(
        id=new_uuid(),
        name=workspace_name,
        slug=f"{slugify(workspace_name)}-{secrets.token_hex(3)}",
        owner_id=user.id,
        settings={},
    )
    channel = Channel(
        id=new_uuid(),
        workspace_id=workspace.id,
        name="general",
        display_name="General",
        description="Workspace-wide announcements and chat",
        is_private=False,
        created_by=user.id,
    )
    db.add_all([
        user,
        workspace,
        UserWorkspace(user_id=user.id, workspace_id=workspace.id, role=WorkspaceRole.OWNER),
        channel,
        ChannelMember(channel_id=channel.id, user_id=user.id),
    ])

    body = _issue_credentials(user, db, response, request)
    await db.commit()
    logger.info(f"Registered user {user.id[:8]} with workspace {workspace.id[:8]}")

    body["workspace"] = {"id": workspace.id, "name": workspace.name, "slug": workspace.slug}
    return body


@router.post("/login")
async def login(
    credentials: UserLogin,
    request: Request,
    response: Response,
    db: AsyncSession = Depends(get_db_session),
):
    """Authenticate and receive tokens plus a session cookie"""
    user = await AuthService.authenticate_user(credentials.email, credentials.password, db)
    if not user:
        raise HTTPException(status_code=401, detail="Invalid credentials")

    body = _issue_credentials(user, db, response, request)
    await db.commit()
    return body


@router.post("/refresh")
async def refresh_token(
    refresh_req: RefreshRequest,
    response: Response,
    db: AsyncSession = Depends(get_db_session),
):
    """Exchange a refresh token for a new token pair; the old refresh token is revoked"""
    payload = AuthService.verify_token(refresh_req.refresh_token)
    if payload.get("type") != "refresh":
        raise HTTPException(status_code=401, detail="Invalid token type. Expected refresh token.")

    jti = payload.get("jti")
    if jti and await AuthService.is_token_revoked(jti, db):
        raise HTTPException(status_code=401, detail="Refresh token has been revoked")

    result = await db.execute(select(User).where(User.id == payload.get("sub")))
    user = result.scalar_one_or_none()
    if not user or not user.is_active or user.deleted_at is not None:
        raise HTTPException(status_code=401, detail="User not found or inactive")

    if jti:
        expires_at = datetime.fromtimestamp(payload["exp"], tz=timezone.utc) if payload.get("exp") \
            else datetime.now(timezone.utc) + timedelta(days=config.REFRESH_TOKEN_EXPIRE_DAYS)
        AuthService.revoke_token(jti, user.id, expires_at, db)

    body = _issue_credentials(user, db, response, with_session=False)
    await db.commit()
    return body


@router.post("/logout")
async def logout(
    request: Request,
    response: Response,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    """Revoke the presented token and end the server-side session"""
    if user.token_jti:
        AuthService.revoke_token(
            user.token_jti, user.id,
            user.token_expires_at or datetime.now(timezone.utc), db,
        )

    session_hash = user.session_hash
    raw_session = request.cookies.get(config.SESSION_COOKIE)
    if not session_hash and raw_session:
        session_hash = AuthService.hash_secret(raw_session)
    if session_hash:
        await AuthService.end_session(session_hash, db)

    await db.commit()
    response.delete_cookie(config.AUTH_TOKEN_COOKIE)
    response.delete_cookie(config.SESSION_COOKIE)
    return {"status": "logged_out"}


@router.get("/me")
async def get_current_user_info(
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    """Current user with every workspace they belong to"""
    stmt = (
        select(Workspace, UserWorkspace.role, UserWorkspace.joined_at)
        .join(UserWorkspace, UserWorkspace.workspace_id == Workspace.id)
        .where(UserWorkspace.user_id == user.id)
        .order_by(UserWorkspace.joined_at.asc())
    )
    result = await db.execute(stmt)
    workspaces = [
        {
            "id": ws.id,
            "name": ws.name,
            "slug": ws.slug,
            "role": WorkspaceRole(role).value,
            "joined_at": iso(joined_at),
        }
        for ws, role, joined_at in result.all()
    ]
    return {
        "id": user.id,
        "email": user.email,
        "name": user.name,
        "auth_method": user.auth_method,
        "workspaces": workspaces,
    }
