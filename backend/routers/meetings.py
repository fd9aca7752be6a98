# routers/meetings.py — Scheduled meetings, participants and recordings
from datetime import datetime
from typing import Optional, List

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import Field, model_validator
from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession

from access import require_workspace_member, load_scoped, get_membership, get_or_404
from auth import get_current_user, CurrentUser, RequestModel
from database import get_db_session
from models import (
    Meeting, MeetingParticipant, MeetingRecording, Channel, User, utcnow, as_utc, iso,
)

router = APIRouter(prefix="/api/v1/meetings", tags=["Meetings"])

STATUS_PATTERN = r"^(scheduled|in_progress|ended|cancelled)$"


# --- Schemas ---

class MeetingCreate(RequestModel):
    workspace_id: str
    title: str = Field(..., min_length=1, max_length=300)
    description: Optional[str] = Field(default=None, max_length=5000)
    channel_id: Optional[str] = None
    start_time: datetime
    end_time: Optional[datetime] = None
    recording_enabled: bool = False
    participant_ids: List[str] = Field(default_factory=list)

    @model_validator(mode="after")
    def _end_after_start(self):
        if self.end_time and as_utc(self.end_time) < as_utc(self.start_time):
            raise ValueError("end_time must not precede start_time")
        return self


class MeetingUpdate(RequestModel):
    title: Optional[str] = Field(default=None, min_length=1, max_length=300)
    description: Optional[str] = Field(default=None, max_length=5000)
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    status: Optional[str] = Field(default=None, pattern=STATUS_PATTERN)
    recording_enabled: Optional[bool] = None


class ParticipantAdd(RequestModel):
    user_id: str
    role: str = Field(default="participant", pattern=r"^(participant|presenter|co_host)$")


class RecordingCreate(RequestModel):
    url: str = Field(..., min_length=1, max_length=2048)
    duration_seconds: Optional[int] = Field(default=None, ge=0)
    size: Optional[int] = Field(default=None, ge=0)


# --- Helpers ---

def _meeting_out(m: Meeting, participant_count: int = 0) -> dict:
    return {
        "id": m.id,
        "workspace_id": m.workspace_id,
        "channel_id": m.channel_id,
        "title": m.title,
        "description": m.description,
        "host_id": m.host_id,
        "room_id": m.room_id,
        "status": m.status,
        "start_time": iso(m.start_time),
        "end_time": iso(m.end_time),
        "recording_enabled": bool(m.recording_enabled),
        "participant_count": participant_count,
        "created_at": iso(m.created_at),
    }


def _require_host(meeting: Meeting, user: CurrentUser) -> None:
    if meeting.host_id != user.id:
        raise HTTPException(status_code=403, detail="Only the host can change this meeting")


async def _participant(db: AsyncSession, meeting_id: str, user_id: str) -> Optional[MeetingParticipant]:
    result = await db.execute(
        select(MeetingParticipant).where(
            MeetingParticipant.meeting_id == meeting_id,
            MeetingParticipant.user_id == user_id,
        )
    )
    return result.scalar_one_or_none()


async def _participant_count(db: AsyncSession, meeting_id: str) -> int:
    return (await db.execute(
        select(func.count(MeetingParticipant.id)).where(MeetingParticipant.meeting_id == meeting_id)
    )).scalar() or 0


# ============================================================
# MEETINGS
# ============================================================

@router.get("")
async def list_meetings(
    workspace_id: str = Query(...),
    status: Optional[str] = Query(default=None, pattern=STATUS_PATTERN),
    upcoming: bool = Query(default=False),
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    await require_workspace_member(db, user, workspace_id)
    stmt = select(Meeting).where(Meeting.workspace_id == workspace_id)
    if status:
        stmt = stmt.where(Meeting.status == status)
    if upcoming:
        stmt = stmt.where(Meeting.start_time >= utcnow())
    meetings = (await db.execute(stmt.order_by(Meeting.start_time.asc()))).scalars().all()
    return [_meeting_out(m, await _participant_count(db, m.id)) for m in meetings]


@router.post("", status_code=201)
async def create_meeting(
    data: MeetingCreate,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    """Schedule a meeting; the caller becomes host and first participant"""
    await require_workspace_member(db, user, data.workspace_id)
    if data.channel_id:
        channel = await get_or_404(db, Channel, data.channel_id, "Channel")
        if channel.workspace_id != data.workspace_id:
            raise HTTPException(status_code=400, detail="Channel belongs to another workspace")

    meeting = Meeting(
        workspace_id=data.workspace_id,
        channel_id=data.channel_id,
        title=data.title,
        description=data.description,
        host_id=user.id,
        start_time=as_utc(data.start_time),
        end_time=as_utc(data.end_time),
        recording_enabled=data.recording_enabled,
    )
    db.add(meeting)
    await db.flush()

    db.add(MeetingParticipant(meeting_id=meeting.id, user_id=user.id, role="host"))
    invited = {user.id}
    for participant_id in data.participant_ids:
        if participant_id in invited:
            continue
        if not await get_membership(db, participant_id, data.workspace_id):
            raise HTTPException(status_code=400, detail="Participants must belong to the workspace")
        db.add(MeetingParticipant(meeting_id=meeting.id, user_id=participant_id))
        invited.add(participant_id)

    await db.commit()
    return _meeting_out(meeting, len(invited))


@router.get("/{meeting_id}")
async def get_meeting(
    meeting_id: str,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    meeting, _ = await load_scoped(db, Meeting, meeting_id, user, "Meeting")
    return _meeting_out(meeting, await _participant_count(db, meeting.id))


@router.put("/{meeting_id}")
async def update_meeting(
    meeting_id: str,
    data: MeetingUpdate,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    meeting, _ = await load_scoped(db, Meeting, meeting_id, user, "Meeting")
    _require_host(meeting, user)

    updates = data.model_dump(exclude_unset=True)
    for key in ("start_time", "end_time"):
        if key in updates:
            updates[key] = as_utc(updates[key])
    start = updates.get("start_time") or as_utc(meeting.start_time)
    end = updates["end_time"] if "end_time" in updates else as_utc(meeting.end_time)
    if start is None:
        raise HTTPException(status_code=400, detail="start_time cannot be cleared")
    if end and end < start:
        raise HTTPException(status_code=400, detail="end_time must not precede start_time")

    for key, value in updates.items():
        if value is None and key in ("title", "status", "recording_enabled"):
            continue
        setattr(meeting, key, value)
    meeting.updated_at = utcnow()
    await db.commit()
    return _meeting_out(meeting, await _participant_count(db, meeting.id))


@router.delete("/{meeting_id}")
async def delete_meeting(
    meeting_id: str,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    meeting, _ = await load_scoped(db, Meeting, meeting_id, user, "Meeting")
    _require_host(meeting, user)
    await db.delete(meeting)
    await db.commit()
    return {"status": "deleted", "meeting_id": meeting_id}


# ============================================================
# PARTICIPANTS
# ============================================================

@router.get("/{meeting_id}/participants")
async def list_participants(
    meeting_id: str,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    await load_scoped(db, Meeting, meeting_id, user, "Meeting")
    rows = await db.execute(
        select(MeetingParticipant, User.name, User.avatar_url)
        .join(User, User.id == MeetingParticipant.user_id)
        .where(MeetingParticipant.meeting_id == meeting_id)
        .order_by(MeetingParticipant.invited_at.asc())
    )
    return [
        {
            "user_id": p.user_id,
            "name": name,
            "avatar_url": avatar_url,
            "role": p.role,
            "invited_at": iso(p.invited_at),
            "joined_at": iso(p.joined_at),
            "left_at": iso(p.left_at),
        }
        for p, name, avatar_url in rows.all()
    ]


@router.post("/{meeting_id}/participants", status_code=201)
async def add_participant(
    meeting_id: str,
    data: ParticipantAdd,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    meeting, _ = await load_scoped(db, Meeting, meeting_id, user, "Meeting")
    _require_host(meeting, user)
    if not await get_membership(db, data.user_id, meeting.workspace_id):
        raise HTTPException(status_code=404, detail="User not found in this workspace")
    if await _participant(db, meeting.id, data.user_id):
        raise HTTPException(status_code=409, detail="User is already a participant")

    db.add(MeetingParticipant(meeting_id=meeting.id, user_id=data.user_id, role=data.role))
    await db.commit()
    return {"status": "added", "meeting_id": meeting.id, "user_id": data.user_id}


@router.post("/{meeting_id}/join")
async def join_meeting(
    meeting_id: str,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    """Record the caller as present; workspace members may join uninvited"""
    meeting, _ = await load_scoped(db, Meeting, meeting_id, user, "Meeting")
    if meeting.status in ("ended", "cancelled"):
        raise HTTPException(status_code=409, detail=f"Meeting is {meeting.status}")

    participant = await _participant(db, meeting.id, user.id)
    if participant is None:
        participant = MeetingParticipant(meeting_id=meeting.id, user_id=user.id)
        db.add(participant)
    participant.joined_at = utcnow()
    participant.left_at = None
    if meeting.status == "scheduled" and meeting.host_id == user.id:
        meeting.status = "in_progress"
    await db.commit()
    return {"status": "joined", "room_id": meeting.room_id, "joined_at": iso(participant.joined_at)}


@router.delete("/{meeting_id}/join")
async def leave_meeting(
    meeting_id: str,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    meeting, _ = await load_scoped(db, Meeting, meeting_id, user, "Meeting")
    participant = await _participant(db, meeting.id, user.id)
    if participant is None:
        raise HTTPException(status_code=404, detail="Not a participant of this meeting")
    participant.left_at = utcnow()
    await db.commit()
    return {"status": "left", "left_at": iso(participant.left_at)}


# ============================================================
# RECORDINGS
# ============================================================

@router.get("/{meeting_id}/recordings")
async def list_recordings(
    meeting_id: str,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    await load_scoped(db, Meeting, meeting_id, user, "Meeting")
    recordings = (await db.execute(
        select(MeetingRecording)
        .where(MeetingRecording.meeting_id == meeting_id)
        .order_by(MeetingRecording.created_at.desc())
    )).scalars().all()
    return [
        {
            "id": r.id, "url": r.url, "duration_seconds": r.duration_seconds,
            "size": r.size, "created_by": r.created_by, "created_at": iso(r.created_at),
        }
        for r in recordings
    ]


@router.post("/{meeting_id}/recordings", status_code=201)
async def add_recording(
    meeting_id: str,
    data: RecordingCreate,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    meeting, _ = await load_scoped(db, Meeting, meeting_id, user, "Meeting")
    _require_host(meeting, user)
    if not meeting.recording_enabled:
        raise HTTPException(status_code=400, detail="Recording is disabled for this meeting")

    recording = MeetingRecording(
        meeting_id=meeting.id,
        url=data.url,
        duration_seconds=data.duration_seconds,
        size=data.size,
        created_by=user.id,
    )
    db.add(recording)
    await db.commit()
    return {"id": recording.id, "url": recording.url, "created_at": iso(recording.created_at)}
