# routers/meeting_rooms.py — Bookable rooms and their reservations
from datetime import datetime
from typing import Optional, List

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import Field
from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession

from access import require_workspace_member, load_scoped, get_or_404, is_privileged
from auth import get_current_user, CurrentUser, RequestModel
from database import get_db_session
from models import MeetingRoom, RoomBooking, Meeting, CONTRIBUTOR_ROLES, PRIVILEGED_ROLES, utcnow, as_utc, iso

router = APIRouter(prefix="/api/v1/meeting-rooms", tags=["Meeting Rooms"])


class RoomCreate(RequestModel):
    workspace_id: str
    name: str = Field(..., min_length=1, max_length=200)
    description: Optional[str] = Field(default=None, max_length=2000)
    location: Optional[str] = Field(default=None, max_length=300)
    capacity: Optional[int] = Field(default=None, ge=1, le=10000)
    equipment: List[str] = Field(default_factory=list, max_length=50)


class RoomUpdate(RequestModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=200)
    description: Optional[str] = Field(default=None, max_length=2000)
    location: Optional[str] = Field(default=None, max_length=300)
    capacity: Optional[int] = Field(default=None, ge=1, le=10000)
    equipment: Optional[List[str]] = Field(default=None, max_length=50)
    is_active: Optional[bool] = None


class BookingCreate(RequestModel):
    title: str = Field(..., min_length=1, max_length=300)
    start_time: datetime
    end_time: datetime
    meeting_id: Optional[str] = None


async def _room_out(db: AsyncSession, room: MeetingRoom) -> dict:
    upcoming = (await db.execute(
        select(func.count(RoomBooking.id)).where(RoomBooking.room_id == room.id, RoomBooking.end_time >= utcnow())
    )).scalar() or 0
    return {
        "id": room.id,
        "workspace_id": room.workspace_id,
        "name": room.name,
        "description": room.description,
        "location": room.location,
        "capacity": room.capacity,
        "equipment": room.equipment or [],
        "is_active": bool(room.is_active),
        "upcoming_bookings": upcoming,
        "created_at": iso(room.created_at),
    }


def _booking_out(b: RoomBooking) -> dict:
    return {
        "id": b.id,
        "room_id": b.room_id,
        "meeting_id": b.meeting_id,
        "title": b.title,
        "start_time": iso(b.start_time),
        "end_time": iso(b.end_time),
        "booked_by": b.booked_by,
        "created_at": iso(b.created_at),
    }


@router.get("")
async def list_rooms(
    workspace_id: str = Query(...),
    include_inactive: bool = False,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    await require_workspace_member(db, user, workspace_id)
    stmt = select(MeetingRoom).where(MeetingRoom.workspace_id == workspace_id)
    if not include_inactive:
        stmt = stmt.where(MeetingRoom.is_active.is_(True))
    rooms = (await db.execute(stmt.order_by(MeetingRoom.name.asc()))).scalars().all()
    return [await _room_out(db, r) for r in rooms]


@router.post("", status_code=201)
async def create_room(
    data: RoomCreate,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    await require_workspace_member(db, user, data.workspace_id, roles=PRIVILEGED_ROLES)
    room = MeetingRoom(created_by=user.id, **data.model_dump())
    db.add(room)
    await db.commit()
    return await _room_out(db, room)


@router.patch("/{room_id}")
async def update_room(
    room_id: str,
    data: RoomUpdate,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    room, _ = await load_scoped(db, MeetingRoom, room_id, user, "Meeting room", roles=PRIVILEGED_ROLES)
    for key, value in data.model_dump(exclude_unset=True).items():
        if value is not None or key in ("description", "location", "capacity"):
            setattr(room, key, value)
    await db.commit()
    return await _room_out(db, room)


@router.get("/{room_id}/bookings")
async def list_bookings(
    room_id: str,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    """Bookings overlapping [start, end]; defaults to everything not yet over"""
    await load_scoped(db, MeetingRoom, room_id, user, "Meeting room")
    stmt = select(RoomBooking).where(RoomBooking.room_id == room_id)
    stmt = stmt.where(RoomBooking.end_time > (as_utc(start) if start else utcnow()))
    if end:
        stmt = stmt.where(RoomBooking.start_time < as_utc(end))
    bookings = (await db.execute(stmt.order_by(RoomBooking.start_time.asc()))).scalars().all()
    return [_booking_out(b) for b in bookings]


@router.post("/{room_id}/bookings", status_code=201)
async def book_room(
    room_id: str,
    data: BookingCreate,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    room, _ = await load_scoped(db, MeetingRoom, room_id, user, "Meeting room", roles=CONTRIBUTOR_ROLES)
    if not room.is_active:
        raise HTTPException(status_code=400, detail="Meeting room is not available")
    start, end = as_utc(data.start_time), as_utc(data.end_time)
    if end <= start:
        raise HTTPException(status_code=400, detail="end_time must be after start_time")
    if data.meeting_id:
        meeting = await get_or_404(db, Meeting, data.meeting_id, "Meeting")
        if meeting.workspace_id != room.workspace_id:
            raise HTTPException(status_code=400, detail="Meeting belongs to another workspace")

    # Half-open intervals: back-to-back bookings do not clash
    clash = (await db.execute(
        select(RoomBooking.id).where(
            RoomBooking.room_id == room.id,
            RoomBooking.start_time < end,
            RoomBooking.end_time > start,
        ).limit(1)
    )).scalar_one_or_none()
    if clash:
        raise HTTPException(status_code=409, detail="Room is already booked for that time")

    booking = RoomBooking(
        room_id=room.id, meeting_id=data.meeting_id, title=data.title,
        start_time=start, end_time=end, booked_by=user.id,
    )
    db.add(booking)
    await db.commit()
    return _booking_out(booking)


@router.delete("/{room_id}/bookings/{booking_id}")
async def cancel_booking(
    room_id: str,
    booking_id: str,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    _, membership = await load_scoped(db, MeetingRoom, room_id, user, "Meeting room")
    booking = await get_or_404(db, RoomBooking, booking_id, "Booking")
    if booking.room_id != room_id:
        raise HTTPException(status_code=404, detail="Booking not found")
    if booking.booked_by != user.id and not is_privileged(membership):
        raise HTTPException(status_code=403, detail="Only the booker or an admin can cancel this booking")
    await db.delete(booking)
    await db.commit()
    return {"status": "cancelled", "booking_id": booking_id}
