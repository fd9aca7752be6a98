# routers/notifications.py — Per-user notification inbox
from typing import Optional, List

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field
from sqlalchemy import select, func, update
from sqlalchemy.ext.asyncio import AsyncSession

from access import require_workspace_member, get_membership
from auth import get_current_user, CurrentUser, RequestModel
from database import get_db_session
from models import Notification, utcnow, iso
from routers.realtime import publish_to_user

router = APIRouter(prefix="/api/v1/notifications", tags=["Notifications"])

TYPE_PATTERN = r"^(info|success|warning|error|mention|task|meeting|approval)$"


# --- Schemas ---

class NotificationOut(BaseModel):
    id: str
    workspace_id: Optional[str] = None
    type: str
    title: str
    content: str
    action_url: Optional[str] = None
    read_at: Optional[str] = None
    is_read: bool
    created_at: str


class NotificationCreate(RequestModel):
    title: str = Field(..., min_length=1, max_length=200)
    content: str = Field(..., min_length=1, max_length=2000)
    type: str = Field(default="info", pattern=TYPE_PATTERN)
    action_url: Optional[str] = Field(default=None, max_length=2048)
    workspace_id: Optional[str] = None
    # Defaults to the caller; notifying someone else needs a shared workspace
    user_id: Optional[str] = None


class MarkRead(RequestModel):
    notification_ids: List[str] = Field(default_factory=list)
    mark_all: bool = False


def _notif_out(n: Notification) -> dict:
    return NotificationOut(
        id=n.id, workspace_id=n.workspace_id, type=n.type,
        title=n.title, content=n.content, action_url=n.action_url,
        read_at=iso(n.read_at),
        is_read=n.read_at is not None,
        created_at=iso(n.created_at),
    ).model_dump()


# ============================================================
# LIST
# ============================================================

@router.get("")
async def list_notifications(
    unread_only: bool = Query(default=False),
    workspace_id: Optional[str] = Query(None),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    db: AsyncSession = Depends(get_db_session),
    user: CurrentUser = Depends(get_current_user),
):
    query = select(Notification).where(Notification.user_id == user.id)
    if unread_only:
        query = query.where(Notification.read_at.is_(None))
    if workspace_id:
        query = query.where(Notification.workspace_id == workspace_id)
    query = query.order_by(Notification.created_at.desc()).offset(offset).limit(limit)
    result = await db.execute(query)
    return [_notif_out(n) for n in result.scalars().all()]


@router.get("/unread-count")
async def unread_count(
    db: AsyncSession = Depends(get_db_session),
    user: CurrentUser = Depends(get_current_user),
):
    unread = (await db.execute(
        select(func.count(Notification.id)).where(
            Notification.user_id == user.id,
            Notification.read_at.is_(None),
        )
    )).scalar() or 0
    return {"unread": unread}


# ============================================================
# CREATE
# ============================================================

@router.post("", status_code=201)
async def create_notification(
    data: NotificationCreate,
    db: AsyncSession = Depends(get_db_session),
    user: CurrentUser = Depends(get_current_user),
):
    target_id = data.user_id or user.id
    if data.workspace_id:
        await require_workspace_member(db, user, data.workspace_id)
        if target_id != user.id and not await get_membership(db, target_id, data.workspace_id):
            raise HTTPException(404, "Recipient not found in this workspace")
    elif target_id != user.id:
        raise HTTPException(400, "workspace_id is required to notify another user")

    notif = Notification(
        user_id=target_id, workspace_id=data.workspace_id,
        type=data.type, title=data.title, content=data.content,
        action_url=data.action_url,
    )
    db.add(notif)
    await db.commit()
    out = _notif_out(notif)
    await publish_to_user(target_id, "notification.created", {"notification": out})
    return out


# ============================================================
# MARK READ
# ============================================================

@router.post("/mark-read")
async def mark_read(
    data: MarkRead,
    db: AsyncSession = Depends(get_db_session),
    user: CurrentUser = Depends(get_current_user),
):
    if not data.mark_all and not data.notification_ids:
        raise HTTPException(400, "Provide notification_ids or mark_all")

    stmt = update(Notification).where(
        Notification.user_id == user.id,
        Notification.read_at.is_(None),
    )
    if not data.mark_all:
        stmt = stmt.where(Notification.id.in_(data.notification_ids))
    result = await db.execute(stmt.values(read_at=utcnow()))
    await db.commit()
    return {"marked": result.rowcount}


# ============================================================
# DELETE
# ============================================================

@router.delete("/{notification_id}")
async def delete_notification(
    notification_id: str,
    db: AsyncSession = Depends(get_db_session),
    user: CurrentUser = Depends(get_current_user),
):
    result = await db.execute(
        select(Notification).where(
            Notification.id == notification_id,
            Notification.user_id == user.id,
        )
    )
    notif = result.scalar_one_or_none()
    if not notif:
        raise HTTPException(404, "Notification not found")
    await db.delete(notif)
    await db.commit()
    return {"status": "deleted"}
