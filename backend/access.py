# access.py — Workspace scoping and resource access checks
"""
Every resource hangs off exactly one workspace. Handlers resolve the caller
through ``auth.get_current_user`` and then ask this module whether that
caller may touch a given workspace, channel or resource.

The decision is one of four outcomes; ``enforce`` turns the non-allow ones
into the matching HTTP error (401 / 403 / 404). Each check is a fresh point
lookup: nothing is cached between requests.
"""
from enum import Enum
from typing import Optional, Tuple, Iterable

from fastapi import HTTPException
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from auth import CurrentUser
from models import (
    Workspace, UserWorkspace, WorkspaceRole, Channel, ChannelMember,
    PRIVILEGED_ROLES,
)


class AccessDecision(str, Enum):
    ALLOW = "allow"
    UNAUTHENTICATED = "deny-unauthenticated"
    FORBIDDEN = "deny-forbidden"
    NOT_FOUND = "not-found"


_DENIALS = {
    AccessDecision.UNAUTHENTICATED: (401, "Unauthorized"),
    AccessDecision.FORBIDDEN: (403, "Access denied"),
    AccessDecision.NOT_FOUND: (404, "Not found"),
}


def enforce(decision: AccessDecision, detail: Optional[str] = None) -> None:
    """Raise the HTTP error for a denial; return silently on allow."""
    if decision == AccessDecision.ALLOW:
        return
    status_code, default_detail = _DENIALS[decision]
    raise HTTPException(status_code=status_code, detail=detail or default_detail)


def is_privileged(membership: Optional[UserWorkspace]) -> bool:
    return membership is not None and WorkspaceRole(membership.role) in PRIVILEGED_ROLES


async def get_membership(db: AsyncSession, user_id: str, workspace_id: str) -> Optional[UserWorkspace]:
    stmt = select(UserWorkspace).where(
        UserWorkspace.user_id == user_id,
        UserWorkspace.workspace_id == workspace_id,
    )
    result = await db.execute(stmt)
    return result.scalar_one_or_none()


async def check_workspace_access(
    db: AsyncSession,
    user_id: Optional[str],
    workspace_id: str,
    roles: Optional[Iterable[WorkspaceRole]] = None,
) -> Tuple[AccessDecision, Optional[UserWorkspace]]:
    if not user_id:
        return AccessDecision.UNAUTHENTICATED, None

    workspace = await db.get(Workspace, workspace_id)
    if workspace is None:
        return AccessDecision.NOT_FOUND, None

    membership = await get_membership(db, user_id, workspace_id)
    if membership is None:
        return AccessDecision.FORBIDDEN, None
    if roles is not None and WorkspaceRole(membership.role) not in tuple(roles):
        return AccessDecision.FORBIDDEN, membership
    return AccessDecision.ALLOW, membership


async def require_workspace_member(
    db: AsyncSession,
    user: CurrentUser,
    workspace_id: str,
    roles: Optional[Iterable[WorkspaceRole]] = None,
) -> UserWorkspace:
    decision, membership = await check_workspace_access(db, user.id, workspace_id, roles)
    if decision == AccessDecision.NOT_FOUND:
        enforce(decision, "Workspace not found")
    if decision == AccessDecision.FORBIDDEN and membership is not None:
        enforce(decision, "Insufficient workspace role")
    enforce(decision)
    return membership


async def require_workspace_admin(db: AsyncSession, user: CurrentUser, workspace_id: str) -> UserWorkspace:
    return await require_workspace_member(db, user, workspace_id, roles=PRIVILEGED_ROLES)


async def get_or_404(db: AsyncSession, model, obj_id: str, label: str = "Resource"):
    obj = await db.get(model, obj_id)
    if obj is None:
        raise HTTPException(status_code=404, detail=f"{label} not found")
    return obj


async def load_scoped(
    db: AsyncSession,
    model,
    obj_id: str,
    user: CurrentUser,
    label: str = "Resource",
    roles: Optional[Iterable[WorkspaceRole]] = None,
):
    """Load a workspace-owned row and the caller's membership, or raise 404/403."""
    obj = await get_or_404(db, model, obj_id, label)
    membership = await require_workspace_member(db, user, obj.workspace_id, roles)
    return obj, membership


async def get_channel_membership(db: AsyncSession, channel_id: str, user_id: str) -> Optional[ChannelMember]:
    stmt = select(ChannelMember).where(
        ChannelMember.channel_id == channel_id,
        ChannelMember.user_id == user_id,
    )
    result = await db.execute(stmt)
    return result.scalar_one_or_none()


async def require_channel_member(db: AsyncSession, user: CurrentUser, channel_id: str) -> Tuple[Channel, ChannelMember]:
    channel = await get_or_404(db, Channel, channel_id, "Channel")
    member = await get_channel_membership(db, channel_id, user.id)
    if member is None:
        raise HTTPException(status_code=403, detail="Not a member of this channel")
    return channel, member
