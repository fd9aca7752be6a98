# routers/search.py — Workspace search across messages, people and files
"""
Query syntax:

    "exact phrase"   must appear verbatim (case-insensitive)
    -word            results containing ``word`` are dropped
    @name            message mentions ``@name``
    #channel         restrict messages to the named channel(s)

Whatever is left over is matched as a plain substring. Results from all
sources are merged, scored and returned newest-first within a score.
"""
import re
from dataclasses import dataclass, field
from datetime import timedelta
from typing import List, Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy import select, or_, not_, func
from sqlalchemy.ext.asyncio import AsyncSession

from access import require_workspace_member
from auth import get_current_user, CurrentUser
from database import get_db_session
from models import (
    Message, Channel, ChannelMember, DirectMessage, User, UserWorkspace, UploadedFile,
    utcnow, iso,
)

router = APIRouter(prefix="/api/v1/search", tags=["Search"])

MAX_RESULTS = 50

_EXACT = re.compile(r'"([^"]*)"')
_EXCLUDE = re.compile(r"(?<!\S)-\s*(\S+)")
_MENTION = re.compile(r"@(\S+)")
_CHANNEL = re.compile(r"#(\S+)")


@dataclass
class SearchQuery:
    exact: List[str] = field(default_factory=list)
    exclude: List[str] = field(default_factory=list)
    mentions: List[str] = field(default_factory=list)
    channels: List[str] = field(default_factory=list)
    regular: str = ""

    @property
    def terms(self) -> List[str]:
        return [t for t in [self.regular, *self.exact] if t]


def parse_search_query(q: str) -> SearchQuery:
    parsed = SearchQuery()
    rest = q

    parsed.exact = [m for m in _EXACT.findall(rest) if m]
    rest = _EXACT.sub("", rest)
    parsed.exclude = _EXCLUDE.findall(rest)
    rest = _EXCLUDE.sub("", rest)
    parsed.mentions = _MENTION.findall(rest)
    rest = _MENTION.sub("", rest)
    parsed.channels = [c.lower() for c in _CHANNEL.findall(rest)]
    rest = _CHANNEL.sub("", rest)

    parsed.regular = " ".join(rest.split())
    return parsed


def date_floor(date_filter: str):
    now = utcnow()
    if date_filter == "today":
        return now.replace(hour=0, minute=0, second=0, microsecond=0)
    if date_filter == "week":
        return now - timedelta(days=7)
    if date_filter == "month":
        return now - timedelta(days=30)
    return None


def _contains(column, term: str):
    return func.lower(column).contains(term.lower(), autoescape=True)


def score_result(result: dict, term: str) -> int:
    term = term.lower()
    if not term:
        return 0
    title = (result.get("title") or "").lower()
    content = (result.get("content") or "").lower()
    score = 0
    if term in title:
        score += 10
    if term in content:
        score += 5
    if any(term in word for word in title.split()):
        score += 3
    return score


def _user_ref(u: Optional[User]) -> Optional[dict]:
    if u is None:
        return None
    return {"id": u.id, "name": u.name, "email": u.email, "avatar_url": u.avatar_url}


async def _search_messages(db, user, workspace_id, parsed: SearchQuery, since, only_mine: bool) -> List[dict]:
    my_channels = select(ChannelMember.channel_id).where(ChannelMember.user_id == user.id)
    stmt = (
        select(Message, Channel, User)
        .join(Channel, Channel.id == Message.channel_id)
        .join(User, User.id == Message.user_id)
        .where(
            Channel.workspace_id == workspace_id,
            Message.channel_id.in_(my_channels),
            (Message.scheduled_at.is_(None)) | (Message.scheduled_at <= utcnow()),
        )
    )
    matches = [_contains(Message.content, t) for t in parsed.terms]
    matches += [_contains(Message.content, f"@{m}") for m in parsed.mentions]
    if matches:
        stmt = stmt.where(or_(*matches))
    for word in parsed.exclude:
        stmt = stmt.where(not_(_contains(Message.content, word)))
    if parsed.channels:
        stmt = stmt.where(func.lower(Channel.name).in_(parsed.channels))
    if since:
        stmt = stmt.where(Message.created_at >= since)
    if only_mine:
        stmt = stmt.where(Message.user_id == user.id)

    rows = await db.execute(stmt.order_by(Message.created_at.desc()).limit(20))
    return [
        {
            "id": m.id,
            "type": "message",
            "title": f"Message in #{c.display_name or c.name}",
            "content": m.content,
            "user": _user_ref(author),
            "created_at": iso(m.created_at),
            "url": f"/channels/{m.channel_id}?message={m.id}",
        }
        for m, c, author in rows.all()
    ]


async def _search_direct_messages(db, user, parsed: SearchQuery, since) -> List[dict]:
    stmt = select(DirectMessage).where(
        or_(DirectMessage.sender_id == user.id, DirectMessage.receiver_id == user.id)
    )
    if parsed.terms:
        stmt = stmt.where(or_(*[_contains(DirectMessage.content, t) for t in parsed.terms]))
    for word in parsed.exclude:
        stmt = stmt.where(not_(_contains(DirectMessage.content, word)))
    if since:
        stmt = stmt.where(DirectMessage.created_at >= since)
    dms = (await db.execute(stmt.order_by(DirectMessage.created_at.desc()).limit(10))).scalars().all()
    if not dms:
        return []

    people_ids = {dm.sender_id for dm in dms} | {dm.receiver_id for dm in dms}
    people = {u.id: u for u in (await db.execute(select(User).where(User.id.in_(people_ids)))).scalars().all()}
    results = []
    for dm in dms:
        other = people.get(dm.receiver_id if dm.sender_id == user.id else dm.sender_id)
        if other is None:
            continue
        results.append({
            "id": dm.id,
            "type": "message",
            "title": f"Direct message with {other.name or other.email}",
            "content": dm.content,
            "user": _user_ref(people.get(dm.sender_id)),
            "created_at": iso(dm.created_at),
            "url": f"/direct-messages/{other.id}",
        })
    return results


async def _search_users(db, user, workspace_id, parsed: SearchQuery) -> List[dict]:
    members = select(UserWorkspace.user_id).where(UserWorkspace.workspace_id == workspace_id)
    stmt = select(User).where(User.id.in_(members), User.id != user.id, User.is_active.is_(True))
    terms = parsed.terms + parsed.mentions
    if terms:
        stmt = stmt.where(or_(*[or_(_contains(User.name, t), _contains(User.email, t)) for t in terms]))
    users = (await db.execute(stmt.order_by(User.name.asc()).limit(10))).scalars().all()
    return [
        {
            "id": u.id,
            "type": "user",
            "title": u.name or u.email,
            "content": u.status,
            "user": _user_ref(u),
            "created_at": iso(u.created_at),
        }
        for u in users
    ]


async def _search_files(db, user, workspace_id, parsed: SearchQuery, since, only_mine: bool) -> List[dict]:
    stmt = (
        select(UploadedFile, User)
        .join(User, User.id == UploadedFile.uploaded_by)
        .where(UploadedFile.workspace_id == workspace_id)
    )
    if parsed.terms:
        stmt = stmt.where(or_(*[
            or_(_contains(UploadedFile.name, t), _contains(UploadedFile.mime_type, t)) for t in parsed.terms
        ]))
    for word in parsed.exclude:
        stmt = stmt.where(not_(_contains(UploadedFile.name, word)))
    if since:
        stmt = stmt.where(UploadedFile.created_at >= since)
    if only_mine:
        stmt = stmt.where(UploadedFile.uploaded_by == user.id)

    rows = await db.execute(stmt.order_by(UploadedFile.created_at.desc()).limit(20))
    return [
        {
            "id": f.id,
            "type": "file",
            "title": f.name,
            "content": f"{f.mime_type or 'file'} • {round((f.size or 0) / 1024)}KB",
            "user": _user_ref(uploader),
            "created_at": iso(f.created_at),
            "url": f.url,
        }
        for f, uploader in rows.all()
    ]


@router.get("")
async def search(
    q: str = Query(default=""),
    workspace_id: str = Query(...),
    type: str = Query(default="all", pattern=r"^(all|messages|users|files)$"),
    date_filter: str = Query(default="all", pattern=r"^(all|today|week|month)$"),
    mine: bool = Query(default=False, description="Only the caller's own messages and files"),
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    await require_workspace_member(db, user, workspace_id)
    if not q.strip():
        return {"results": [], "query": None}

    parsed = parse_search_query(q)
    since = date_floor(date_filter)

    results: List[dict] = []
    if type in ("all", "messages"):
        results += await _search_messages(db, user, workspace_id, parsed, since, mine)
        if not parsed.channels:
            results += await _search_direct_messages(db, user, parsed, since)
    if type in ("all", "users"):
        results += await _search_users(db, user, workspace_id, parsed)
    if type in ("all", "files"):
        results += await _search_files(db, user, workspace_id, parsed, since, mine)

    term = parsed.regular or (parsed.exact[0] if parsed.exact else "")
    for result in results:
        result["score"] = score_result(result, term)
    # Stable sorts: newest first, then by score
    results.sort(key=lambda r: r["created_at"] or "", reverse=True)
    results.sort(key=lambda r: r["score"], reverse=True)

    return {
        "results": results[:MAX_RESULTS],
        "query": {
            "regular": parsed.regular,
            "exact": parsed.exact,
            "exclude": parsed.exclude,
            "mentions": parsed.mentions,
            "channels": parsed.channels,
        },
    }
