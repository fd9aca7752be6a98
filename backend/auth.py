# auth.py — Authentication for the Huddle API
# Features:
# - Secure JWT with JTI for revocation (access + refresh)
# - Server-side sessions (opaque id, only its hash is stored)
# - One credential-resolution strategy per process, chosen by AUTH_STRATEGY
# - Password policy enforcement

import uuid
import hashlib
import secrets
import logging
from datetime import datetime, timedelta, timezone
from typing import Optional, Dict, Any

import bcrypt
from jose import jwt, JWTError, ExpiredSignatureError
from fastapi import HTTPException, Depends, Request
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator
from sqlalchemy import select, delete
from sqlalchemy.ext.asyncio import AsyncSession

import config
from database import get_db_session
from models import User, UserSession, RevokedToken, utcnow

logger = logging.getLogger("huddle.auth")

MIN_PASSWORD_LENGTH = 12

# auto_error=False: a missing credential is a 401 from the resolver, not a 403
security = HTTPBearer(auto_error=False)


# ============================================================
# PYDANTIC SCHEMAS
# ============================================================

class RequestModel(BaseModel):
    """Base for request bodies; unrecognised fields are rejected with a 400."""
    model_config = ConfigDict(extra="forbid")


class UserRegister(RequestModel):
    email: EmailStr
    password: str
    name: str = Field(default="", max_length=100)
    workspace_name: Optional[str] = Field(default=None, max_length=100)

    @field_validator("password")
    @classmethod
    def validate_password(cls, v: str) -> str:
        if len(v) < MIN_PASSWORD_LENGTH:
            raise ValueError(f"Password must be at least {MIN_PASSWORD_LENGTH} characters")
        if not any(c.isupper() for c in v):
            raise ValueError("Password must contain at least one uppercase letter")
        if not any(c.isdigit() for c in v):
            raise ValueError("Password must contain at least one digit")
        return v


class UserLogin(RequestModel):
    email: EmailStr
    password: str


class TokenResponse(BaseModel):
    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    expires_in: int
    user: Dict[str, Any]


class RefreshRequest(RequestModel):
    refresh_token: str


class CurrentUser(BaseModel):
    id: str
    email: str
    name: str
    is_active: bool
    auth_method: str
    token_jti: Optional[str] = None
    token_expires_at: Optional[datetime] = None
    session_hash: Optional[str] = None


# ============================================================
# AUTH SERVICE
# ============================================================

class AuthService:
    """Password hashing, token minting and session bookkeeping"""

    @staticmethod
    def hash_password(password: str) -> str:
        salt = bcrypt.gensalt(rounds=12)
        return bcrypt.hashpw(password.encode("utf-8"), salt).decode("utf-8")

    @staticmethod
    def verify_password(password: str, password_hash: str) -> bool:
        return bcrypt.checkpw(password.encode("utf-8"), password_hash.encode("utf-8"))

    @staticmethod
    def _create_token(data: Dict[str, Any], token_type: str, expires_delta: timedelta) -> str:
        to_encode = data.copy()
        now = datetime.now(timezone.utc)
        to_encode.update({
            "exp": now + expires_delta,
            "iat": now,
            "type": token_type,
            "jti": str(uuid.uuid4()),
        })
        return jwt.encode(to_encode, config.JWT_SECRET_KEY, algorithm=config.JWT_ALGORITHM)

    @staticmethod
    def create_access_token(data: Dict[str, Any], expires_delta: Optional[timedelta] = None) -> str:
        delta = expires_delta or timedelta(minutes=config.ACCESS_TOKEN_EXPIRE_MINUTES)
        return AuthService._create_token(data, "access", delta)

    @staticmethod
    def create_refresh_token(data: Dict[str, Any]) -> str:
        return AuthService._create_token(data, "refresh", timedelta(days=config.REFRESH_TOKEN_EXPIRE_DAYS))

    @staticmethod
    def verify_token(token: str) -> Dict[str, Any]:
        try:
            return jwt.decode(token, config.JWT_SECRET_KEY, algorithms=[config.JWT_ALGORITHM])
        except ExpiredSignatureError:
            raise HTTPException(status_code=401, detail="Token expired")
        except JWTError:
            raise HTTPException(status_code=401, detail="Invalid token")

    @staticmethod
    def hash_secret(raw: str) -> str:
        return hashlib.sha256(raw.encode()).hexdigest()

    @staticmethod
    def generate_api_key() -> tuple:
        """Generate an API key. Returns (raw_key, key_hash, key_prefix)"""
        raw_key = f"hdl_{secrets.token_urlsafe(32)}"
        return raw_key, AuthService.hash_secret(raw_key), raw_key[:12]

    @staticmethod
    async def authenticate_user(email: str, password: str, db: AsyncSession) -> Optional[User]:
        stmt = select(User).where(User.email == email.lower())
        result = await db.execute(stmt)
        user = result.scalar_one_or_none()

        if not user or not AuthService.verify_password(password, user.password_hash):
            return None
        if not user.is_active or user.deleted_at is not None:
            return None

        user.last_login_at = utcnow()
        return user

    @staticmethod
    def create_session(user: User, db: AsyncSession, request: Optional[Request] = None) -> str:
        """Stage a session row and return the raw id (shown to the client once)."""
        raw = secrets.token_urlsafe(32)
        db.add(UserSession(
            user_id=user.id,
            session_hash=AuthService.hash_secret(raw),
            ip_address=request.client.host if request and request.client else None,
            user_agent=request.headers.get("user-agent") if request else None,
            expires_at=utcnow() + timedelta(hours=config.SESSION_EXPIRE_HOURS),
        ))
        return raw

    @staticmethod
    async def end_session(session_hash: str, db: AsyncSession) -> None:
        await db.execute(delete(UserSession).where(UserSession.session_hash == session_hash))

    @staticmethod
    async def is_token_revoked(jti: str, db: AsyncSession) -> bool:
        stmt = select(RevokedToken).where(RevokedToken.jti == jti)
        result = await db.execute(stmt)
        return result.scalar_one_or_none() is not None

    @staticmethod
    def revoke_token(jti: str, user_id: str, expires_at: datetime, db: AsyncSession) -> None:
        db.add(RevokedToken(jti=jti, user_id=user_id, expires_at=expires_at))


async def _load_active_user(user_id: Optional[str], db: AsyncSession) -> User:
    if not user_id:
        raise HTTPException(status_code=401, detail="Invalid credentials")
    result = await db.execute(select(User).where(User.id == user_id))
    user = result.scalar_one_or_none()
    if not user or not user.is_active or user.deleted_at is not None:
        raise HTTPException(status_code=401, detail="User not found or inactive")
    return user


# ============================================================
# CREDENTIAL STRATEGIES
# ============================================================

class TokenCredentials:
    """Signed JWT from the Authorization header or the auth-token cookie."""

    name = "token"

    async def resolve(
        self,
        request: Request,
        bearer: Optional[HTTPAuthorizationCredentials],
        db: AsyncSession,
    ) -> CurrentUser:
        token = bearer.credentials if bearer else request.cookies.get(config.AUTH_TOKEN_COOKIE)
        if not token:
            raise HTTPException(status_code=401, detail="Unauthorized")

        payload = AuthService.verify_token(token)
        if payload.get("type") != "access":
            raise HTTPException(status_code=401, detail="Invalid token type")

        jti = payload.get("jti")
        if jti and await AuthService.is_token_revoked(jti, db):
            logger.info(f"Rejected revoked token jti={jti[:8]}")
            raise HTTPException(status_code=401, detail="Token has been revoked")

        user = await _load_active_user(payload.get("sub"), db)
        exp = payload.get("exp")
        return CurrentUser(
            id=user.id,
            email=user.email,
            name=user.name or "",
            is_active=user.is_active,
            auth_method=self.name,
            token_jti=jti,
            token_expires_at=datetime.fromtimestamp(exp, tz=timezone.utc) if exp else None,
        )


class SessionCredentials:
    """Opaque server-side session id from the session-id cookie or Bearer header."""

    name = "session"

    async def resolve(
        self,
        request: Request,
        bearer: Optional[HTTPAuthorizationCredentials],
        db: AsyncSession,
    ) -> CurrentUser:
        raw = request.cookies.get(config.SESSION_COOKIE) or (bearer.credentials if bearer else None)
        if not raw:
            raise HTTPException(status_code=401, detail="Unauthorized")

        session_hash = AuthService.hash_secret(raw)
        stmt = select(UserSession).where(
            UserSession.session_hash == session_hash,
            UserSession.expires_at > utcnow(),
        )
        result = await db.execute(stmt)
        session = result.scalar_one_or_none()
        if not session:
            raise HTTPException(status_code=401, detail="Session expired or invalid")

        user = await _load_active_user(session.user_id, db)
        return CurrentUser(
            id=user.id,
            email=user.email,
            name=user.name or "",
            is_active=user.is_active,
            auth_method=self.name,
            session_hash=session_hash,
        )


CREDENTIAL_STRATEGIES = {
    TokenCredentials.name: TokenCredentials(),
    SessionCredentials.name: SessionCredentials(),
}


def get_credential_strategy():
    strategy = CREDENTIAL_STRATEGIES.get(config.AUTH_STRATEGY)
    if strategy is None:
        raise RuntimeError(f"Unknown AUTH_STRATEGY: {config.AUTH_STRATEGY!r}")
    return strategy


# ============================================================
# FASTAPI DEPENDENCIES
# ============================================================

async def get_current_user(
    request: Request,
    bearer: Optional[HTTPAuthorizationCredentials] = Depends(security),
    db: AsyncSession = Depends(get_db_session),
) -> CurrentUser:
    return await get_credential_strategy().resolve(request, bearer, db)

