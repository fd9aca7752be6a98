# routers/direct_messages.py — One-to-one messages between workspace co-members
from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import Field
from sqlalchemy import select, update, or_, and_
from sqlalchemy.orm import aliased
from sqlalchemy.ext.asyncio import AsyncSession

from auth import get_current_user, CurrentUser, RequestModel
from database import get_db_session
from models import DirectMessage, User, UserWorkspace, utcnow, iso
from routers.realtime import publish_to_user

router = APIRouter(prefix="/api/v1/direct-messages", tags=["Direct Messages"])


class DirectMessageCreate(RequestModel):
    receiver_id: str
    content: str = Field(..., min_length=1, max_length=10000)


async def _require_shared_workspace(db: AsyncSession, user_id: str, other_id: str) -> User:
    other = await db.get(User, other_id)
    if not other or not other.is_active:
        raise HTTPException(status_code=404, detail="User not found")

    mine = aliased(UserWorkspace)
    theirs = aliased(UserWorkspace)
    stmt = (
        select(mine.workspace_id)
        .join(theirs, theirs.workspace_id == mine.workspace_id)
        .where(mine.user_id == user_id, theirs.user_id == other_id)
        .limit(1)
    )
    if (await db.execute(stmt)).scalar_one_or_none() is None:
        raise HTTPException(status_code=403, detail="You do not share a workspace with this user")
    return other


def _dm_out(dm: DirectMessage) -> dict:
    return {
        "id": dm.id,
        "sender_id": dm.sender_id,
        "receiver_id": dm.receiver_id,
        "content": dm.content,
        "read_at": iso(dm.read_at),
        "created_at": iso(dm.created_at),
    }


@router.get("")
async def get_conversation(
    user_id: str = Query(..., description="The other participant"),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    """Conversation with another user; their unread messages are marked read"""
    other = await _require_shared_workspace(db, user.id, user_id)

    stmt = (
        select(DirectMessage)
        .where(or_(
            and_(DirectMessage.sender_id == user.id, DirectMessage.receiver_id == other.id),
            and_(DirectMessage.sender_id == other.id, DirectMessage.receiver_id == user.id),
        ))
        .order_by(DirectMessage.created_at.asc())
        .offset(offset)
        .limit(limit)
    )
    messages = (await db.execute(stmt)).scalars().all()
    out = [_dm_out(m) for m in messages]

    await db.execute(
        update(DirectMessage)
        .where(
            DirectMessage.sender_id == other.id,
            DirectMessage.receiver_id == user.id,
            DirectMessage.read_at.is_(None),
        )
        .values(read_at=utcnow())
    )
    await db.commit()

    return {
        "with": {"id": other.id, "name": other.name, "avatar_url": other.avatar_url, "status": other.status},
        "messages": out,
    }


@router.post("", status_code=201)
async def send_direct_message(
    data: DirectMessageCreate,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    if data.receiver_id == user.id:
        raise HTTPException(status_code=400, detail="Cannot send a direct message to yourself")
    await _require_shared_workspace(db, user.id, data.receiver_id)

    dm = DirectMessage(sender_id=user.id, receiver_id=data.receiver_id, content=data.content)
    db.add(dm)
    await db.commit()
    out = _dm_out(dm)
    await publish_to_user(data.receiver_id, "direct_message.created", {"message": out})
    return out
