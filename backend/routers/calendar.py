# routers/calendar.py — Calendar events, attendees, reminders and RSVP
from datetime import datetime
from typing import Optional, List

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import Field
from sqlalchemy import select, delete
from sqlalchemy.ext.asyncio import AsyncSession

from access import require_workspace_member, load_scoped, get_membership, is_privileged
from auth import get_current_user, CurrentUser, RequestModel
from database import get_db_session
from models import CalendarEvent, EventAttendee, EventReminder, User, utcnow, as_utc, iso

router = APIRouter(prefix="/api/v1/calendar-events", tags=["Calendar"])

RSVP_PATTERN = r"^(accepted|declined|tentative)$"
RECURRENCE_PATTERN = r"^(daily|weekly|monthly|yearly)$"


class ReminderIn(RequestModel):
    minutes_before: int = Field(default=15, ge=0, le=40320)
    method: str = Field(default="notification", pattern=r"^(notification|email)$")


class EventCreate(RequestModel):
    workspace_id: str
    title: str = Field(..., min_length=1, max_length=300)
    description: Optional[str] = Field(default=None, max_length=5000)
    location: Optional[str] = Field(default=None, max_length=500)
    channel_id: Optional[str] = None
    start_time: datetime
    end_time: datetime
    all_day: bool = False
    recurrence: Optional[str] = Field(default=None, pattern=RECURRENCE_PATTERN)
    attendee_ids: List[str] = Field(default_factory=list)
    reminders: List[ReminderIn] = Field(default_factory=list)


class EventUpdate(RequestModel):
    title: Optional[str] = Field(default=None, min_length=1, max_length=300)
    description: Optional[str] = Field(default=None, max_length=5000)
    location: Optional[str] = Field(default=None, max_length=500)
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    all_day: Optional[bool] = None
    recurrence: Optional[str] = Field(default=None, pattern=RECURRENCE_PATTERN)
    attendee_ids: Optional[List[str]] = None
    reminders: Optional[List[ReminderIn]] = None


class RsvpIn(RequestModel):
    status: str = Field(..., pattern=RSVP_PATTERN)


def _check_window(start: datetime, end: datetime) -> None:
    if as_utc(end) < as_utc(start):
        raise HTTPException(status_code=400, detail="end_time must not precede start_time")


async def _event_out(db: AsyncSession, event: CalendarEvent) -> dict:
    attendees = await db.execute(
        select(EventAttendee, User.name)
        .join(User, User.id == EventAttendee.user_id)
        .where(EventAttendee.event_id == event.id)
    )
    reminders = (await db.execute(
        select(EventReminder).where(EventReminder.event_id == event.id)
        .order_by(EventReminder.minutes_before.desc())
    )).scalars().all()
    return {
        "id": event.id,
        "workspace_id": event.workspace_id,
        "channel_id": event.channel_id,
        "title": event.title,
        "description": event.description,
        "location": event.location,
        "start_time": iso(event.start_time),
        "end_time": iso(event.end_time),
        "all_day": bool(event.all_day),
        "recurrence": event.recurrence,
        "created_by": event.created_by,
        "attendees": [
            {"user_id": a.user_id, "name": name, "status": a.status, "responded_at": iso(a.responded_at)}
            for a, name in attendees.all()
        ],
        "reminders": [{"minutes_before": r.minutes_before, "method": r.method} for r in reminders],
        "created_at": iso(event.created_at),
    }


async def _invite(db: AsyncSession, event: CalendarEvent, attendee_ids: List[str]) -> None:
    for attendee_id in dict.fromkeys(attendee_ids):
        if not await get_membership(db, attendee_id, event.workspace_id):
            raise HTTPException(status_code=400, detail="Attendees must belong to the workspace")
        db.add(EventAttendee(event_id=event.id, user_id=attendee_id))


def _require_organizer(event: CalendarEvent, user: CurrentUser, membership) -> None:
    if event.created_by != user.id and not is_privileged(membership):
        raise HTTPException(status_code=403, detail="Only the organizer can change this event")


@router.get("")
async def list_events(
    workspace_id: str = Query(...),
    start: Optional[datetime] = Query(default=None, description="Window start"),
    end: Optional[datetime] = Query(default=None, description="Window end"),
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    """Events overlapping the optional [start, end] window"""
    await require_workspace_member(db, user, workspace_id)
    stmt = select(CalendarEvent).where(CalendarEvent.workspace_id == workspace_id)
    if start:
        stmt = stmt.where(CalendarEvent.end_time >= as_utc(start))
    if end:
        stmt = stmt.where(CalendarEvent.start_time <= as_utc(end))
    events = (await db.execute(stmt.order_by(CalendarEvent.start_time.asc()))).scalars().all()
    return [await _event_out(db, e) for e in events]


@router.post("", status_code=201)
async def create_event(
    data: EventCreate,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    await require_workspace_member(db, user, data.workspace_id)
    _check_window(data.start_time, data.end_time)

    event = CalendarEvent(
        workspace_id=data.workspace_id,
        channel_id=data.channel_id,
        title=data.title,
        description=data.description,
        location=data.location,
        start_time=as_utc(data.start_time),
        end_time=as_utc(data.end_time),
        all_day=data.all_day,
        recurrence=data.recurrence,
        created_by=user.id,
    )
    db.add(event)
    await db.flush()

    await _invite(db, event, data.attendee_ids)
    for reminder in data.reminders:
        db.add(EventReminder(event_id=event.id, **reminder.model_dump()))
    await db.commit()
    return await _event_out(db, event)


@router.get("/{event_id}")
async def get_event(
    event_id: str,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    event, _ = await load_scoped(db, CalendarEvent, event_id, user, "Event")
    return await _event_out(db, event)


@router.put("/{event_id}")
async def update_event(
    event_id: str,
    data: EventUpdate,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    event, membership = await load_scoped(db, CalendarEvent, event_id, user, "Event")
    _require_organizer(event, user, membership)

    updates = data.model_dump(exclude_unset=True)
    attendee_ids = updates.pop("attendee_ids", None)
    reminders = updates.pop("reminders", None)
    for key in ("start_time", "end_time"):
        if key in updates:
            if updates[key] is None:
                raise HTTPException(status_code=400, detail=f"{key} cannot be cleared")
            updates[key] = as_utc(updates[key])
    _check_window(updates.get("start_time", event.start_time), updates.get("end_time", event.end_time))

    for key, value in updates.items():
        if value is None and key in ("title", "all_day"):
            continue
        setattr(event, key, value)

    if attendee_ids is not None:
        # Keep RSVP state for people who stay invited
        current = {
            a.user_id: a for a in (await db.execute(
                select(EventAttendee).where(EventAttendee.event_id == event.id)
            )).scalars().all()
        }
        for user_id, attendee in current.items():
            if user_id not in attendee_ids:
                await db.delete(attendee)
        await _invite(db, event, [a for a in attendee_ids if a not in current])

    if reminders is not None:
        await db.execute(delete(EventReminder).where(EventReminder.event_id == event.id))
        for reminder in reminders:
            db.add(EventReminder(event_id=event.id, **reminder))

    event.updated_at = utcnow()
    await db.commit()
    return await _event_out(db, event)


@router.delete("/{event_id}")
async def delete_event(
    event_id: str,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    event, membership = await load_scoped(db, CalendarEvent, event_id, user, "Event")
    _require_organizer(event, user, membership)
    await db.delete(event)
    await db.commit()
    return {"status": "deleted", "event_id": event_id}


@router.post("/{event_id}/attendees")
async def rsvp(
    event_id: str,
    data: RsvpIn,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    """Record the caller's RSVP; only invited attendees may respond"""
    event, _ = await load_scoped(db, CalendarEvent, event_id, user, "Event")
    attendee = (await db.execute(
        select(EventAttendee).where(
            EventAttendee.event_id == event.id,
            EventAttendee.user_id == user.id,
        )
    )).scalar_one_or_none()
    if attendee is None:
        raise HTTPException(status_code=403, detail="You are not invited to this event")

    attendee.status = data.status
    attendee.responded_at = utcnow()
    await db.commit()
    return {"event_id": event.id, "status": attendee.status, "responded_at": iso(attendee.responded_at)}
