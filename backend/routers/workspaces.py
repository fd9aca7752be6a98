# routers/workspaces.py — Workspaces and their membership
import secrets
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import Field, EmailStr, model_validator
from sqlalchemy import select, func, delete
from sqlalchemy.ext.asyncio import AsyncSession

from access import require_workspace_member, require_workspace_admin, get_membership
from auth import get_current_user, CurrentUser, RequestModel
from database import get_db_session
from models import (
    User, Workspace, UserWorkspace, WorkspaceRole, Channel, ChannelMember,
    new_uuid, iso,
)
from routers.auth import slugify
from routers.realtime import evict_from_workspace

router = APIRouter(prefix="/api/v1/workspaces", tags=["Workspaces"])

ASSIGNABLE_ROLES = r"^(admin|member|guest)$"


# --- Schemas ---

class WorkspaceCreate(RequestModel):
    name: str = Field(..., min_length=1, max_length=100)
    description: Optional[str] = Field(default=None, max_length=2000)


class MemberAdd(RequestModel):
    user_id: Optional[str] = None
    email: Optional[EmailStr] = None
    role: str = Field(default="member", pattern=ASSIGNABLE_ROLES)

    @model_validator(mode="after")
    def _needs_identity(self):
        if not self.user_id and not self.email:
            raise ValueError("user_id or email is required")
        return self


class MemberUpdate(RequestModel):
    role: str = Field(..., pattern=ASSIGNABLE_ROLES)


def _workspace_out(ws: Workspace, role=None, member_count: int = 0) -> dict:
    return {
        "id": ws.id,
        "name": ws.name,
        "slug": ws.slug,
        "description": ws.description,
        "owner_id": ws.owner_id,
        "role": WorkspaceRole(role).value if role else None,
        "member_count": member_count,
        "created_at": iso(ws.created_at),
    }


async def _member_count(db: AsyncSession, workspace_id: str) -> int:
    result = await db.execute(
        select(func.count(UserWorkspace.id)).where(UserWorkspace.workspace_id == workspace_id)
    )
    return result.scalar() or 0


# --- Endpoints ---

@router.get("")
async def list_workspaces(
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    stmt = (
        select(Workspace, UserWorkspace.role)
        .join(UserWorkspace, UserWorkspace.workspace_id == Workspace.id)
        .where(UserWorkspace.user_id == user.id)
        .order_by(Workspace.created_at.asc())
    )
    result = await db.execute(stmt)
    return [
        _workspace_out(ws, role, await _member_count(db, ws.id))
        for ws, role in result.all()
    ]


@router.post("", status_code=201)
async def create_workspace(
    data: WorkspaceCreate,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    """Create a workspace; the creator becomes its owner and joins #general"""
    workspace = Workspace(
        id=new_uuid(),
        name=data.name,
        slug=f"{slugify(data.name)}-{secrets.token_hex(3)}",
        description=data.description,
        owner_id=user.id,
        settings={},
    )
    channel = Channel(
        id=new_uuid(),
        workspace_id=workspace.id,
        name="general",
        display_name="General",
        is_private=False,
        created_by=user.id,
    )
    db.add_all([
        workspace,
        UserWorkspace(user_id=user.id, workspace_id=workspace.id, role=WorkspaceRole.OWNER),
        channel,
        ChannelMember(channel_id=channel.id, user_id=user.id),
    ])
    await db.commit()
    return _workspace_out(workspace, WorkspaceRole.OWNER, 1)


@router.get("/{workspace_id}")
async def get_workspace(
    workspace_id: str,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    membership = await require_workspace_member(db, user, workspace_id)
    workspace = await db.get(Workspace, workspace_id)
    return _workspace_out(workspace, membership.role, await _member_count(db, workspace_id))


@router.get("/{workspace_id}/members")
async def list_members(
    workspace_id: str,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    await require_workspace_member(db, user, workspace_id)
    stmt = (
        select(UserWorkspace, User)
        .join(User, User.id == UserWorkspace.user_id)
        .where(UserWorkspace.workspace_id == workspace_id)
        .order_by(UserWorkspace.joined_at.asc())
    )
    result = await db.execute(stmt)
    return [
        {
            "user_id": u.id,
            "email": u.email,
            "name": u.name,
            "avatar_url": u.avatar_url,
            "status": u.status,
            "role": WorkspaceRole(m.role).value,
            "joined_at": iso(m.joined_at),
        }
        for m, u in result.all()
    ]


@router.post("/{workspace_id}/members", status_code=201)
async def add_member(
    workspace_id: str,
    data: MemberAdd,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    """Add an existing user to the workspace (owner/admin only)"""
    await require_workspace_admin(db, user, workspace_id)

    if data.user_id:
        stmt = select(User).where(User.id == data.user_id)
    else:
        stmt = select(User).where(User.email == data.email.lower())
    result = await db.execute(stmt)
    target = result.scalar_one_or_none()
    if not target or not target.is_active:
        raise HTTPException(status_code=404, detail="User not found")

    if await get_membership(db, target.id, workspace_id):
        raise HTTPException(status_code=409, detail="User is already a member")

    db.add(UserWorkspace(user_id=target.id, workspace_id=workspace_id, role=WorkspaceRole(data.role)))

    general = await db.execute(
        select(Channel).where(Channel.workspace_id == workspace_id, Channel.name == "general")
    )
    general_channel = general.scalar_one_or_none()
    if general_channel:
        db.add(ChannelMember(channel_id=general_channel.id, user_id=target.id))

    await db.commit()
    return {"user_id": target.id, "workspace_id": workspace_id, "role": data.role}


@router.patch("/{workspace_id}/members/{member_id}")
async def update_member_role(
    workspace_id: str,
    member_id: str,
    data: MemberUpdate,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    await require_workspace_admin(db, user, workspace_id)
    membership = await get_membership(db, member_id, workspace_id)
    if not membership:
        raise HTTPException(status_code=404, detail="Member not found")
    if WorkspaceRole(membership.role) == WorkspaceRole.OWNER:
        raise HTTPException(status_code=403, detail="The workspace owner's role cannot be changed")

    membership.role = WorkspaceRole(data.role)
    await db.commit()
    return {"user_id": member_id, "workspace_id": workspace_id, "role": data.role}


@router.delete("/{workspace_id}/members/{member_id}")
async def remove_member(
    workspace_id: str,
    member_id: str,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    """Remove a member (owner/admin), or leave the workspace yourself"""
    if member_id == user.id:
        await require_workspace_member(db, user, workspace_id)
    else:
        await require_workspace_admin(db, user, workspace_id)

    membership = await get_membership(db, member_id, workspace_id)
    if not membership:
        raise HTTPException(status_code=404, detail="Member not found")
    if WorkspaceRole(membership.role) == WorkspaceRole.OWNER:
        raise HTTPException(status_code=403, detail="The workspace owner cannot be removed")

    channel_ids = select(Channel.id).where(Channel.workspace_id == workspace_id)
    await db.execute(
        delete(ChannelMember)
        .where(ChannelMember.user_id == member_id, ChannelMember.channel_id.in_(channel_ids))
        .execution_options(synchronize_session=False)
    )
    await db.delete(membership)
    await db.commit()
    await evict_from_workspace(member_id, workspace_id)
    return {"status": "removed", "user_id": member_id}
