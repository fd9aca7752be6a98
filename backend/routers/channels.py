# routers/channels.py — Workspace channels: list, create, join, leave
import re
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import Field
from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession

from access import (
    require_workspace_member, get_or_404, get_channel_membership, is_privileged,
)
from auth import get_current_user, CurrentUser, RequestModel
from database import get_db_session
from models import Channel, ChannelMember, Message, UserWorkspace, iso
from routers.realtime import drop_from_channel

router = APIRouter(prefix="/api/v1/channels", tags=["Channels"])


def channel_name(name: str) -> str:
    """Lower-case and hyphenate whitespace; everything else is kept as typed."""
    return re.sub(r"\s+", "-", name.strip().lower())


class ChannelCreate(RequestModel):
    workspace_id: str
    name: str = Field(..., min_length=1, max_length=80)
    description: Optional[str] = Field(default=None, max_length=1000)
    is_private: bool = False


class ChannelRef(RequestModel):
    channel_id: str


async def _channel_out(db: AsyncSession, channel: Channel, user_id: str) -> dict:
    member_count = (await db.execute(
        select(func.count(ChannelMember.id)).where(ChannelMember.channel_id == channel.id)
    )).scalar() or 0
    message_count = (await db.execute(
        select(func.count(Message.id)).where(Message.channel_id == channel.id)
    )).scalar() or 0
    is_member = await get_channel_membership(db, channel.id, user_id) is not None
    return {
        "id": channel.id,
        "workspace_id": channel.workspace_id,
        "name": channel.name,
        "display_name": channel.display_name,
        "description": channel.description,
        "is_private": channel.is_private,
        "created_by": channel.created_by,
        "is_member": is_member,
        "member_count": member_count,
        "message_count": message_count,
        "created_at": iso(channel.created_at),
    }


@router.get("")
async def list_channels(
    workspace_id: str = Query(...),
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    """Public channels plus private channels the caller belongs to"""
    await require_workspace_member(db, user, workspace_id)

    my_channels = select(ChannelMember.channel_id).where(ChannelMember.user_id == user.id)
    stmt = (
        select(Channel)
        .where(
            Channel.workspace_id == workspace_id,
            (Channel.is_private.is_(False)) | (Channel.id.in_(my_channels)),
        )
        .order_by(Channel.name.asc())
    )
    result = await db.execute(stmt)
    return [await _channel_out(db, c, user.id) for c in result.scalars().all()]


@router.post("", status_code=201)
async def create_channel(
    data: ChannelCreate,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    """Create a channel; names are unique per workspace, case-insensitively"""
    await require_workspace_member(db, user, data.workspace_id)

    name = channel_name(data.name)
    if not name:
        raise HTTPException(status_code=400, detail="Channel name is required")
    dup = await db.execute(
        select(Channel.id).where(
            Channel.workspace_id == data.workspace_id,
            func.lower(Channel.name) == name,
        )
    )
    if dup.scalar_one_or_none():
        raise HTTPException(status_code=409, detail="Channel name already exists")

    channel = Channel(
        workspace_id=data.workspace_id,
        name=name,
        display_name=data.name.strip(),
        description=data.description,
        is_private=data.is_private,
        created_by=user.id,
    )
    db.add(channel)
    await db.flush()

    if data.is_private:
        member_ids = [user.id]
    else:
        result = await db.execute(
            select(UserWorkspace.user_id).where(UserWorkspace.workspace_id == data.workspace_id)
        )
        member_ids = list(result.scalars().all())
    for member_id in member_ids:
        db.add(ChannelMember(channel_id=channel.id, user_id=member_id))

    await db.commit()
    return await _channel_out(db, channel, user.id)


@router.post("/join")
async def join_channel(
    data: ChannelRef,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    channel = await get_or_404(db, Channel, data.channel_id, "Channel")
    membership = await require_workspace_member(db, user, channel.workspace_id)

    if await get_channel_membership(db, channel.id, user.id):
        raise HTTPException(status_code=409, detail="Already a member of this channel")
    if channel.is_private and not is_privileged(membership):
        raise HTTPException(status_code=403, detail="Private channels are invite-only")

    db.add(ChannelMember(channel_id=channel.id, user_id=user.id))
    await db.commit()
    return {"status": "joined", "channel_id": channel.id}


@router.post("/leave")
async def leave_channel(
    data: ChannelRef,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    channel = await get_or_404(db, Channel, data.channel_id, "Channel")
    await require_workspace_member(db, user, channel.workspace_id)

    member = await get_channel_membership(db, channel.id, user.id)
    if not member:
        raise HTTPException(status_code=404, detail="Not a member of this channel")

    await db.delete(member)
    await db.commit()
    drop_from_channel(channel, user.id)
    return {"status": "left", "channel_id": channel.id}
