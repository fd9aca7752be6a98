# routers/messages.py — Channel messages, threads, pins, reactions, scheduling
from datetime import datetime
from typing import Optional, List, Dict

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import Field, field_validator
from sqlalchemy import select, func, and_
from sqlalchemy.ext.asyncio import AsyncSession

from access import require_channel_member, get_or_404, get_membership, is_privileged
from auth import get_current_user, CurrentUser, RequestModel
from database import get_db_session
from models import (
    Channel, Message, MessageReaction, UploadedFile, User, utcnow, as_utc, iso,
)
from routers.realtime import publish_to_channel

router = APIRouter(prefix="/api/v1/messages", tags=["Messages"])


# --- Schemas ---

class MessageCreate(RequestModel):
    channel_id: str
    content: str = Field(..., min_length=1, max_length=10000)
    thread_id: Optional[str] = None


class MessageSchedule(RequestModel):
    channel_id: str
    content: str = Field(..., min_length=1, max_length=10000)
    scheduled_at: datetime

    @field_validator("scheduled_at")
    @classmethod
    def _future_only(cls, v: datetime) -> datetime:
        v = as_utc(v)
        if v <= utcnow():
            raise ValueError("scheduled_at must be in the future")
        return v


class ReactionToggle(RequestModel):
    emoji: str = Field(..., min_length=1, max_length=64)


# --- Helpers ---

def _visible():
    """Scheduled messages stay hidden until their time arrives."""
    return (Message.scheduled_at.is_(None)) | (Message.scheduled_at <= utcnow())


def _is_due(message: Message) -> bool:
    return message.scheduled_at is None or as_utc(message.scheduled_at) <= utcnow()


async def _messages_out(db: AsyncSession, messages: List[Message], viewer_id: str) -> List[dict]:
    if not messages:
        return []
    ids = [m.id for m in messages]

    user_ids = {m.user_id for m in messages}
    users = {
        u.id: u for u in (await db.execute(select(User).where(User.id.in_(user_ids)))).scalars().all()
    }

    reactions: Dict[str, Dict[str, dict]] = {}
    rows = await db.execute(
        select(MessageReaction, User.name)
        .join(User, User.id == MessageReaction.user_id)
        .where(MessageReaction.message_id.in_(ids))
        .order_by(MessageReaction.created_at.asc())
    )
    for reaction, user_name in rows.all():
        bucket = reactions.setdefault(reaction.message_id, {}).setdefault(
            reaction.emoji, {"emoji": reaction.emoji, "count": 0, "users": [], "reacted": False}
        )
        bucket["count"] += 1
        bucket["users"].append({"id": reaction.user_id, "name": user_name})
        if reaction.user_id == viewer_id:
            bucket["reacted"] = True

    reply_counts = dict((await db.execute(
        select(Message.thread_id, func.count(Message.id))
        .where(Message.thread_id.in_(ids), _visible())
        .group_by(Message.thread_id)
    )).all())

    files: Dict[str, list] = {}
    for f in (await db.execute(select(UploadedFile).where(UploadedFile.message_id.in_(ids)))).scalars().all():
        files.setdefault(f.message_id, []).append(
            {"id": f.id, "name": f.name, "size": f.size, "mime_type": f.mime_type, "url": f.url}
        )

    out = []
    for m in messages:
        author = users.get(m.user_id)
        out.append({
            "id": m.id,
            "channel_id": m.channel_id,
            "content": m.content,
            "thread_id": m.thread_id,
            "user": {
                "id": m.user_id,
                "name": author.name if author else None,
                "avatar_url": author.avatar_url if author else None,
            },
            "is_pinned": bool(m.is_pinned),
            "pinned_at": iso(m.pinned_at),
            "scheduled_at": iso(m.scheduled_at),
            "reactions": list(reactions.get(m.id, {}).values()),
            "reply_count": reply_counts.get(m.id, 0),
            "files": files.get(m.id, []),
            "edited_at": iso(m.edited_at),
            "created_at": iso(m.created_at),
        })
    return out


async def _load_message_for_member(db: AsyncSession, user: CurrentUser, message_id: str) -> Message:
    """Load a message the caller can see; a scheduled one stays hidden from all but its author until due"""
    message = await get_or_404(db, Message, message_id, "Message")
    await require_channel_member(db, user, message.channel_id)
    if not _is_due(message) and message.user_id != user.id:
        raise HTTPException(status_code=404, detail="Message not found")
    return message


# ============================================================
# LIST / CREATE
# ============================================================

@router.get("")
async def list_messages(
    channel_id: str = Query(...),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    """Top-level messages of a channel, oldest first within the page"""
    await require_channel_member(db, user, channel_id)

    stmt = (
        select(Message)
        .where(Message.channel_id == channel_id, Message.thread_id.is_(None), _visible())
        .order_by(Message.created_at.desc())
        .offset(offset)
        .limit(limit)
    )
    messages = list(reversed((await db.execute(stmt)).scalars().all()))
    return {"messages": await _messages_out(db, messages, user.id), "limit": limit, "offset": offset}


@router.post("", status_code=201)
async def create_message(
    data: MessageCreate,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    channel, _ = await require_channel_member(db, user, data.channel_id)

    if data.thread_id:
        parent = await _load_message_for_member(db, user, data.thread_id)
        if parent.channel_id != data.channel_id:
            raise HTTPException(status_code=400, detail="Thread parent belongs to another channel")
        if parent.thread_id:
            # Replies always hang off the thread root
            data.thread_id = parent.thread_id

    message = Message(
        channel_id=data.channel_id,
        user_id=user.id,
        content=data.content,
        thread_id=data.thread_id,
    )
    db.add(message)
    await db.commit()
    out = (await _messages_out(db, [message], user.id))[0]
    await publish_to_channel(channel, "message.created", {"message": out}, exclude_user=user.id)
    return out


# ============================================================
# THREADS
# ============================================================

@router.get("/thread/{message_id}")
async def get_thread(
    message_id: str,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    parent = await _load_message_for_member(db, user, message_id)
    replies = (await db.execute(
        select(Message)
        .where(Message.thread_id == parent.id, _visible())
        .order_by(Message.created_at.asc())
    )).scalars().all()
    parent_out, *replies_out = await _messages_out(db, [parent, *replies], user.id)
    return {"parent": parent_out, "replies": replies_out}


# ============================================================
# PINS
# ============================================================

@router.get("/pinned")
async def list_pinned(
    channel_id: str = Query(...),
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    await require_channel_member(db, user, channel_id)
    stmt = (
        select(Message)
        .where(Message.channel_id == channel_id, Message.is_pinned.is_(True), _visible())
        .order_by(Message.pinned_at.desc())
    )
    messages = (await db.execute(stmt)).scalars().all()
    return {"messages": await _messages_out(db, list(messages), user.id)}


@router.post("/pin/{message_id}")
async def pin_message(
    message_id: str,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    message = await _load_message_for_member(db, user, message_id)
    if message.is_pinned:
        raise HTTPException(status_code=409, detail="Message is already pinned")
    message.is_pinned = True
    message.pinned_at = utcnow()
    message.pinned_by = user.id
    await db.commit()
    return {"status": "pinned", "message_id": message.id, "pinned_at": iso(message.pinned_at)}


@router.delete("/pin/{message_id}")
async def unpin_message(
    message_id: str,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    message = await _load_message_for_member(db, user, message_id)
    if not message.is_pinned:
        raise HTTPException(status_code=404, detail="Message is not pinned")
    message.is_pinned = False
    message.pinned_at = None
    message.pinned_by = None
    await db.commit()
    return {"status": "unpinned", "message_id": message.id}


# ============================================================
# SCHEDULING
# ============================================================

@router.get("/schedule")
async def list_scheduled(
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    """The caller's messages that have not been delivered yet"""
    stmt = (
        select(Message, Channel.display_name)
        .join(Channel, Channel.id == Message.channel_id)
        .where(Message.user_id == user.id, Message.scheduled_at > utcnow())
        .order_by(Message.scheduled_at.asc())
    )
    result = await db.execute(stmt)
    return {
        "messages": [
            {
                "id": m.id,
                "channel_id": m.channel_id,
                "channel_name": channel_name,
                "content": m.content,
                "scheduled_at": iso(m.scheduled_at),
            }
            for m, channel_name in result.all()
        ]
    }


@router.post("/schedule", status_code=201)
async def schedule_message(
    data: MessageSchedule,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    await require_channel_member(db, user, data.channel_id)
    message = Message(
        channel_id=data.channel_id,
        user_id=user.id,
        content=data.content,
        scheduled_at=data.scheduled_at,
        created_at=data.scheduled_at,
    )
    db.add(message)
    await db.commit()
    return {
        "id": message.id,
        "channel_id": message.channel_id,
        "content": message.content,
        "scheduled_at": iso(message.scheduled_at),
    }


@router.delete("/schedule/{message_id}")
async def cancel_scheduled(
    message_id: str,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    message = await get_or_404(db, Message, message_id, "Scheduled message")
    if message.user_id != user.id:
        raise HTTPException(status_code=403, detail="Only the author can cancel a scheduled message")
    if not message.scheduled_at or as_utc(message.scheduled_at) <= utcnow():
        raise HTTPException(status_code=409, detail="Message has already been delivered")
    await db.delete(message)
    await db.commit()
    return {"status": "cancelled", "message_id": message_id}


# ============================================================
# REACTIONS / DELETE
# ============================================================

@router.post("/{message_id}/reactions")
async def toggle_reaction(
    message_id: str,
    data: ReactionToggle,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    """Add the caller's reaction, or remove it if already present"""
    message = await _load_message_for_member(db, user, message_id)
    existing = (await db.execute(
        select(MessageReaction).where(and_(
            MessageReaction.message_id == message.id,
            MessageReaction.user_id == user.id,
            MessageReaction.emoji == data.emoji,
        ))
    )).scalar_one_or_none()

    if existing:
        await db.delete(existing)
        action = "removed"
    else:
        db.add(MessageReaction(message_id=message.id, user_id=user.id, emoji=data.emoji))
        action = "added"
    await db.commit()

    out = (await _messages_out(db, [message], user.id))[0]
    if _is_due(message):
        channel = await db.get(Channel, message.channel_id)
        await publish_to_channel(channel, "reaction.updated", {
            "message_id": message.id, "emoji": data.emoji, "user_id": user.id, "action": action,
        })
    return {"action": action, "reactions": out["reactions"]}


@router.delete("/{message_id}")
async def delete_message(
    message_id: str,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    message = await get_or_404(db, Message, message_id, "Message")
    channel = await get_or_404(db, Channel, message.channel_id, "Channel")
    if message.user_id != user.id:
        membership = await get_membership(db, user.id, channel.workspace_id)
        if not is_privileged(membership):
            raise HTTPException(status_code=403, detail="Only the author or an admin can delete this message")
    await db.delete(message)
    await db.commit()
    if _is_due(message):
        await publish_to_channel(channel, "message.deleted", {"message_id": message_id})
    return {"status": "deleted", "message_id": message_id}
