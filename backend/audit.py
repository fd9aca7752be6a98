# audit.py — Append-only history for versioned writes
# Rows are staged on the caller's session; the handler commits them together
# with the primary mutation, so a change and its trail land atomically.

import logging
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Tuple

from fastapi import Request
from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession

from models import (
    Document, DocumentVersion, DocumentActivity, TaskActivity, SecurityAuditLog, as_utc,
)

logger = logging.getLogger("huddle.audit")

Change = Tuple[str, Any, Any]


def as_text(value: Any) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, datetime):
        return as_utc(value).isoformat()
    return str(value)


def diff_fields(current: Any, updates: Dict[str, Any], fields: Iterable[str]) -> List[Change]:
    """Return (field, old, new) for every tracked field whose value changes.

    Only keys present in ``updates`` are considered, so partial payloads
    (``model_dump(exclude_unset=True)``) diff cleanly.
    """
    changes = []
    for field in fields:
        if field not in updates:
            continue
        old = getattr(current, field)
        new = updates[field]
        if as_text(old) != as_text(new):
            changes.append((field, old, new))
    return changes


async def next_document_version(db: AsyncSession, document_id: str) -> int:
    stmt = select(func.max(DocumentVersion.version)).where(DocumentVersion.document_id == document_id)
    result = await db.execute(stmt)
    return (result.scalar() or 0) + 1


async def record_document_version(
    db: AsyncSession, document: Document, user_id: str, change_log: Optional[str] = None,
) -> DocumentVersion:
    """Snapshot the document's current title/content as the next version."""
    version = DocumentVersion(
        document_id=document.id,
        version=await next_document_version(db, document.id),
        title=document.title,
        content=document.content or "",
        change_log=change_log,
        user_id=user_id,
    )
    db.add(version)
    return version


def record_document_activity(
    db: AsyncSession, document_id: str, user_id: str, action: str, details: Optional[dict] = None,
) -> DocumentActivity:
    entry = DocumentActivity(
        document_id=document_id,
        user_id=user_id,
        action=action,
        details=details or {},
    )
    db.add(entry)
    return entry


def record_task_activity(
    db: AsyncSession, task_id: str, user_id: str, action: str,
    field_name: str = None, old_value: Any = None, new_value: Any = None,
) -> TaskActivity:
    entry = TaskActivity(
        task_id=task_id,
        user_id=user_id,
        action=action,
        field_name=field_name,
        old_value=as_text(old_value),
        new_value=as_text(new_value),
    )
    db.add(entry)
    return entry


def request_origin(request: Optional[Request]) -> Tuple[str, str]:
    if request is None:
        return "unknown", "unknown"
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        ip = forwarded.split(",")[0].strip()
    else:
        ip = request.client.host if request.client else "unknown"
    return ip, request.headers.get("user-agent", "unknown")


def log_security_event(
    db: AsyncSession,
    workspace_id: str,
    user_id: Optional[str],
    action: str,
    request: Optional[Request] = None,
    resource_type: Optional[str] = None,
    resource_id: Optional[str] = None,
    details: Optional[dict] = None,
) -> SecurityAuditLog:
    ip, user_agent = request_origin(request)
    entry = SecurityAuditLog(
        workspace_id=workspace_id,
        user_id=user_id,
        action=action,
        resource_type=resource_type,
        resource_id=resource_id,
        details=details or {},
        ip_address=ip,
        user_agent=user_agent,
    )
    db.add(entry)
    logger.info(f"security event {action} ws={workspace_id[:8]} user={(user_id or '-')[:8]}")
    return entry
