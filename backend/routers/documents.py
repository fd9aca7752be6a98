# routers/documents.py — Documents with version history, activity trail and collaborators
"""
Read access: creator, any workspace member, or an explicit collaborator.
Write access: creator, workspace owner/admin/member, or a collaborator with
the owner/editor role. Guests and viewer collaborators are read-only.
Managing collaborators and deleting: creator or workspace owner/admin.

Every content change writes a new DocumentVersion, so the document row always
mirrors its latest version. Version numbers only ever grow, restores included.
"""
from collections import defaultdict
from datetime import timedelta
from typing import Optional, Tuple

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field
from sqlalchemy import select, func, or_
from sqlalchemy.ext.asyncio import AsyncSession

from access import (
    require_workspace_member, get_membership, get_or_404, is_privileged,
)
from audit import diff_fields, record_document_version, record_document_activity
from auth import get_current_user, CurrentUser, RequestModel
from database import get_db_session
from models import (
    Document, DocumentVersion, DocumentActivity, DocumentCollaborator, DocumentComment,
    DocumentTemplate, Channel, User, UserWorkspace, WorkspaceRole, CollaboratorRole,
    CONTRIBUTOR_ROLES, utcnow, as_utc, iso,
)
from routers.analytics import TimeWindow

router = APIRouter(prefix="/api/v1/documents", tags=["Documents"])

TRACKED_FIELDS = ("title", "content")
WRITER_COLLABORATORS = (CollaboratorRole.OWNER, CollaboratorRole.EDITOR)
# Activity actions that change title or content
EDIT_ACTIONS = ("created", "updated", "version_restored")


# ============================================================
# SCHEMAS
# ============================================================

class DocumentCreate(RequestModel):
    workspace_id: str
    title: str = Field(..., min_length=1, max_length=500)
    content: str = Field(default="", max_length=1_000_000)
    channel_id: Optional[str] = None


class DocumentUpdate(RequestModel):
    title: Optional[str] = Field(default=None, min_length=1, max_length=500)
    content: Optional[str] = Field(default=None, max_length=1_000_000)
    change_log: Optional[str] = Field(default=None, max_length=1000)


class VersionCreate(RequestModel):
    change_log: Optional[str] = Field(default=None, max_length=1000)


class ActivityCreate(RequestModel):
    action: str = Field(..., min_length=1, max_length=50)
    details: dict = Field(default_factory=dict)


class CollaboratorAdd(RequestModel):
    user_id: str
    role: str = Field(default="viewer", pattern=r"^(owner|editor|viewer)$")


class CommentCreate(RequestModel):
    content: str = Field(..., min_length=1, max_length=10000)
    parent_id: Optional[str] = None


class TemplateCreate(RequestModel):
    workspace_id: str
    name: str = Field(..., min_length=1, max_length=200)
    description: Optional[str] = Field(default=None, max_length=2000)
    category: str = Field(default="general", max_length=50)
    content: str = Field(default="", max_length=1_000_000)
    is_public: bool = True


class TemplateUpdate(RequestModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=200)
    description: Optional[str] = Field(default=None, max_length=2000)
    category: Optional[str] = Field(default=None, max_length=50)
    content: Optional[str] = Field(default=None, max_length=1_000_000)
    is_public: Optional[bool] = None


class TemplateUse(RequestModel):
    title: Optional[str] = Field(default=None, min_length=1, max_length=500)
    channel_id: Optional[str] = None


class DocumentOut(BaseModel):
    id: str
    workspace_id: str
    channel_id: Optional[str] = None
    title: str
    content: str
    created_by: str
    version: int
    created_at: str
    updated_at: str


# ============================================================
# HELPERS
# ============================================================

async def _latest_version(db: AsyncSession, document_id: str) -> int:
    result = await db.execute(
        select(func.max(DocumentVersion.version)).where(DocumentVersion.document_id == document_id)
    )
    return result.scalar() or 0


async def _doc_out(db: AsyncSession, doc: Document) -> dict:
    return DocumentOut(
        id=doc.id,
        workspace_id=doc.workspace_id,
        channel_id=doc.channel_id,
        title=doc.title,
        content=doc.content or "",
        created_by=doc.created_by,
        version=await _latest_version(db, doc.id),
        created_at=iso(doc.created_at),
        updated_at=iso(doc.updated_at),
    ).model_dump()


def _version_out(v: DocumentVersion) -> dict:
    return {
        "id": v.id,
        "document_id": v.document_id,
        "version": v.version,
        "title": v.title,
        "content": v.content,
        "change_log": v.change_log,
        "user_id": v.user_id,
        "created_at": iso(v.created_at),
    }


async def document_access(
    db: AsyncSession, user: CurrentUser, document_id: str,
) -> Tuple[Document, Optional[UserWorkspace], Optional[DocumentCollaborator]]:
    """Load a document the caller may at least read, or raise 404/403."""
    doc = await get_or_404(db, Document, document_id, "Document")
    membership = await get_membership(db, user.id, doc.workspace_id)
    collaborator = (await db.execute(
        select(DocumentCollaborator).where(
            DocumentCollaborator.document_id == doc.id,
            DocumentCollaborator.user_id == user.id,
        )
    )).scalar_one_or_none()
    if doc.created_by != user.id and membership is None and collaborator is None:
        raise HTTPException(status_code=403, detail="Access denied")
    return doc, membership, collaborator


def _can_write(doc, user, membership, collaborator) -> bool:
    if doc.created_by == user.id:
        return True
    if membership is not None and WorkspaceRole(membership.role) in CONTRIBUTOR_ROLES:
        return True
    return collaborator is not None and CollaboratorRole(collaborator.role) in WRITER_COLLABORATORS


def _can_manage(doc, user, membership) -> bool:
    return doc.created_by == user.id or is_privileged(membership)


async def _writable(db: AsyncSession, user: CurrentUser, document_id: str) -> Document:
    doc, membership, collaborator = await document_access(db, user, document_id)
    if not _can_write(doc, user, membership, collaborator):
        raise HTTPException(status_code=403, detail="Write access required")
    return doc


async def _check_channel(db: AsyncSession, channel_id: Optional[str], workspace_id: str) -> None:
    if channel_id:
        channel = await get_or_404(db, Channel, channel_id, "Channel")
        if channel.workspace_id != workspace_id:
            raise HTTPException(status_code=400, detail="Channel belongs to another workspace")


async def _create_document(
    db: AsyncSession, user: CurrentUser, workspace_id: str, title: str, content: str,
    channel_id: Optional[str], details: Optional[dict] = None,
) -> Document:
    doc = Document(
        workspace_id=workspace_id,
        channel_id=channel_id,
        title=title,
        content=content,
        created_by=user.id,
    )
    db.add(doc)
    await db.flush()
    await record_document_version(db, doc, user.id, "Initial version")
    record_document_activity(db, doc.id, user.id, "created", details)
    return doc


# ============================================================
# TEMPLATES
# ============================================================

def _template_out(t: DocumentTemplate) -> dict:
    return {
        "id": t.id, "workspace_id": t.workspace_id, "name": t.name,
        "description": t.description, "category": t.category, "content": t.content,
        "is_public": bool(t.is_public), "usage_count": t.usage_count or 0,
        "created_by": t.created_by,
        "created_at": iso(t.created_at), "updated_at": iso(t.updated_at),
    }


async def _visible_template(db: AsyncSession, user: CurrentUser, template_id: str, roles=None) -> DocumentTemplate:
    """Public templates are shared with the workspace; private ones only with their creator"""
    template = await get_or_404(db, DocumentTemplate, template_id, "Template")
    await require_workspace_member(db, user, template.workspace_id, roles=roles)
    if not template.is_public and template.created_by != user.id:
        raise HTTPException(status_code=404, detail="Template not found")
    return template


async def _own_template(db: AsyncSession, user: CurrentUser, template_id: str) -> DocumentTemplate:
    template = await get_or_404(db, DocumentTemplate, template_id, "Template")
    await require_workspace_member(db, user, template.workspace_id)
    if template.created_by != user.id:
        raise HTTPException(status_code=404, detail="Template not found")
    return template


@router.get("/templates")
async def list_templates(
    workspace_id: str = Query(...),
    category: Optional[str] = None,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    await require_workspace_member(db, user, workspace_id)
    stmt = select(DocumentTemplate).where(
        DocumentTemplate.workspace_id == workspace_id,
        or_(DocumentTemplate.is_public.is_(True), DocumentTemplate.created_by == user.id),
    )
    if category:
        stmt = stmt.where(DocumentTemplate.category == category)
    stmt = stmt.order_by(DocumentTemplate.usage_count.desc(), DocumentTemplate.name.asc())
    templates = (await db.execute(stmt)).scalars().all()
    return [_template_out(t) for t in templates]


@router.post("/templates", status_code=201)
async def create_template(
    data: TemplateCreate,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    await require_workspace_member(db, user, data.workspace_id, roles=CONTRIBUTOR_ROLES)
    template = DocumentTemplate(
        workspace_id=data.workspace_id,
        name=data.name,
        description=data.description,
        category=data.category,
        content=data.content,
        is_public=data.is_public,
        created_by=user.id,
    )
    db.add(template)
    await db.commit()
    return _template_out(template)


@router.get("/templates/{template_id}")
async def get_template(
    template_id: str,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    return _template_out(await _visible_template(db, user, template_id))


@router.put("/templates/{template_id}")
async def update_template(
    template_id: str,
    data: TemplateUpdate,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    template = await _own_template(db, user, template_id)
    updates = {k: v for k, v in data.model_dump(exclude_unset=True).items() if v is not None}
    for key, value in updates.items():
        setattr(template, key, value)
    if updates:
        template.updated_at = utcnow()
    await db.commit()
    return _template_out(template)


@router.delete("/templates/{template_id}")
async def delete_template(
    template_id: str,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    template = await _own_template(db, user, template_id)
    await db.delete(template)
    await db.commit()
    return {"status": "deleted", "template_id": template_id}


@router.post("/templates/{template_id}/use", status_code=201)
async def use_template(
    template_id: str,
    data: TemplateUse,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    """Start a new document from a template"""
    template = await _visible_template(db, user, template_id, roles=CONTRIBUTOR_ROLES)
    await _check_channel(db, data.channel_id, template.workspace_id)

    doc = await _create_document(
        db, user, template.workspace_id, data.title or template.name, template.content,
        data.channel_id, {"template_id": template.id},
    )
    template.usage_count = (template.usage_count or 0) + 1
    await db.commit()
    return await _doc_out(db, doc)


# ============================================================
# ANALYTICS
# ============================================================

@router.get("/analytics")
async def document_analytics(
    workspace_id: str = Query(...),
    window: TimeWindow = Query(default=TimeWindow.MONTH),
    top: int = Query(default=10, ge=1, le=50),
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    """Document usage over the trailing window.

    Totals, a per-day trend, the busiest documents and the most active
    contributors. Views are whatever clients log as ``viewed`` activities;
    edits are the content-changing actions the API records itself.
    """
    await require_workspace_member(db, user, workspace_id)
    since = utcnow() - window.delta
    doc_ids = select(Document.id).where(Document.workspace_id == workspace_id)

    created = (await db.execute(
        select(Document.id, Document.created_by)
        .where(Document.workspace_id == workspace_id, Document.created_at >= since)
    )).all()
    activities = (await db.execute(
        select(DocumentActivity.document_id, DocumentActivity.user_id,
               DocumentActivity.action, DocumentActivity.created_at)
        .where(DocumentActivity.document_id.in_(doc_ids), DocumentActivity.created_at >= since)
    )).all()
    comments = (await db.execute(
        select(DocumentComment.document_id, DocumentComment.user_id, DocumentComment.created_at)
        .where(DocumentComment.document_id.in_(doc_ids), DocumentComment.created_at >= since)
    )).all()
    total_documents = (await db.execute(
        select(func.count(Document.id)).where(Document.workspace_id == workspace_id)
    )).scalar() or 0

    trend = {}
    day = since.date()
    while day <= utcnow().date():
        trend[day.isoformat()] = {"date": day.isoformat(), "views": 0, "edits": 0, "comments": 0}
        day += timedelta(days=1)

    per_doc = defaultdict(lambda: {"activities": 0, "views": 0, "edits": 0, "comments": 0, "last": None})
    per_user = defaultdict(lambda: {"documents_created": 0, "edits": 0, "comments": 0, "activities": 0})

    for doc_id, user_id, action, at in activities:
        at = as_utc(at)
        stats = per_doc[doc_id]
        stats["activities"] += 1
        stats["last"] = max(stats["last"], at) if stats["last"] else at
        per_user[user_id]["activities"] += 1
        bucket = trend.get(at.date().isoformat())
        if action == "viewed":
            stats["views"] += 1
            if bucket:
                bucket["views"] += 1
        elif action in EDIT_ACTIONS:
            stats["edits"] += 1
            per_user[user_id]["edits"] += 1
            if bucket:
                bucket["edits"] += 1

    for doc_id, user_id, at in comments:
        per_doc[doc_id]["comments"] += 1
        per_user[user_id]["comments"] += 1
        bucket = trend.get(as_utc(at).date().isoformat())
        if bucket:
            bucket["comments"] += 1

    for _, creator in created:
        per_user[creator]["documents_created"] += 1

    busiest = sorted(per_doc.items(), key=lambda kv: (kv[1]["activities"], kv[1]["comments"]), reverse=True)[:top]
    titles = {}
    if busiest:
        rows = await db.execute(select(Document.id, Document.title).where(Document.id.in_([d for d, _ in busiest])))
        titles = dict(rows.all())

    contributors = sorted(
        per_user.items(),
        key=lambda kv: kv[1]["activities"] + kv[1]["comments"] + kv[1]["documents_created"],
        reverse=True,
    )[:top]
    names = {}
    if contributors:
        rows = await db.execute(select(User.id, User.name).where(User.id.in_([u for u, _ in contributors])))
        names = dict(rows.all())

    return {
        "window": window.value,
        "since": iso(since),
        "totals": {
            "documents": total_documents,
            "documents_created": len(created),
            "activities": len(activities),
            "views": sum(s["views"] for s in per_doc.values()),
            "edits": sum(s["edits"] for s in per_doc.values()),
            "comments": len(comments),
            "active_users": len({a[1] for a in activities} | {c[1] for c in comments}),
        },
        "top_documents": [
            {
                "id": doc_id, "title": titles.get(doc_id),
                "activities": s["activities"], "views": s["views"], "edits": s["edits"],
                "comments": s["comments"], "last_activity": iso(s["last"]),
            }
            for doc_id, s in busiest if doc_id in titles
        ],
        "top_contributors": [
            {"id": user_id, "name": names.get(user_id), **s}
            for user_id, s in contributors
        ],
        "trend": list(trend.values()),
    }


# ============================================================
# DOCUMENT CRUD
# ============================================================

@router.get("")
async def list_documents(
    workspace_id: str = Query(...),
    channel_id: Optional[str] = None,
    search: Optional[str] = Query(default=None, max_length=200),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    await require_workspace_member(db, user, workspace_id)
    stmt = select(Document).where(Document.workspace_id == workspace_id)
    if channel_id:
        stmt = stmt.where(Document.channel_id == channel_id)
    if search:
        stmt = stmt.where(Document.title.ilike(f"%{search}%"))

    total = (await db.execute(select(func.count()).select_from(stmt.subquery()))).scalar() or 0
    docs = (await db.execute(
        stmt.order_by(Document.updated_at.desc()).offset(offset).limit(limit)
    )).scalars().all()
    return {
        "documents": [await _doc_out(db, d) for d in docs],
        "total": total,
        "limit": limit,
        "offset": offset,
    }


@router.post("", status_code=201)
async def create_document(
    data: DocumentCreate,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    await require_workspace_member(db, user, data.workspace_id, roles=CONTRIBUTOR_ROLES)
    await _check_channel(db, data.channel_id, data.workspace_id)
    doc = await _create_document(db, user, data.workspace_id, data.title, data.content, data.channel_id)
    await db.commit()
    return await _doc_out(db, doc)


@router.get("/{document_id}")
async def get_document(
    document_id: str,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    doc, membership, collaborator = await document_access(db, user, document_id)
    out = await _doc_out(db, doc)
    out["permissions"] = {
        "can_write": _can_write(doc, user, membership, collaborator),
        "can_manage": _can_manage(doc, user, membership),
    }
    return out


@router.put("/{document_id}")
async def update_document(
    document_id: str,
    data: DocumentUpdate,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    """Versioned update: a new version and an activity row land with the change"""
    doc = await _writable(db, user, document_id)

    changes = diff_fields(doc, data.model_dump(exclude_unset=True, exclude_none=True), TRACKED_FIELDS)
    if not changes:
        return await _doc_out(db, doc)

    for field, _old, new in changes:
        setattr(doc, field, new)
    version = await record_document_version(db, doc, user.id, data.change_log)
    record_document_activity(db, doc.id, user.id, "updated", {
        "version": version.version,
        "title_changed": any(f == "title" for f, _, _ in changes),
        "content_changed": any(f == "content" for f, _, _ in changes),
    })
    await db.commit()
    return await _doc_out(db, doc)


@router.delete("/{document_id}")
async def delete_document(
    document_id: str,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    doc, membership, _ = await document_access(db, user, document_id)
    if not _can_manage(doc, user, membership):
        raise HTTPException(status_code=403, detail="Only the creator or a workspace admin can delete this document")
    await db.delete(doc)
    await db.commit()
    return {"status": "deleted", "document_id": document_id}


# ============================================================
# VERSIONS
# ============================================================

@router.get("/{document_id}/versions")
async def list_versions(
    document_id: str,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    await document_access(db, user, document_id)
    versions = (await db.execute(
        select(DocumentVersion)
        .where(DocumentVersion.document_id == document_id)
        .order_by(DocumentVersion.version.desc())
    )).scalars().all()
    return {"versions": [_version_out(v) for v in versions]}


@router.post("/{document_id}/versions", status_code=201)
async def create_version(
    document_id: str,
    data: VersionCreate,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    """Checkpoint the current state as a named version"""
    doc = await _writable(db, user, document_id)
    version = await record_document_version(db, doc, user.id, data.change_log or "Manual checkpoint")
    record_document_activity(db, doc.id, user.id, "version_created", {"version": version.version})
    await db.commit()
    return _version_out(version)


@router.post("/{document_id}/versions/{version}/restore")
async def restore_version(
    document_id: str,
    version: int,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    """Copy an old version back and record it as a brand-new version"""
    doc = await _writable(db, user, document_id)
    source = (await db.execute(
        select(DocumentVersion).where(
            DocumentVersion.document_id == doc.id,
            DocumentVersion.version == version,
        )
    )).scalar_one_or_none()
    if not source:
        raise HTTPException(status_code=404, detail="Version not found")

    doc.title = source.title
    doc.content = source.content
    restored = await record_document_version(db, doc, user.id, f"Restored from version {version}")
    record_document_activity(db, doc.id, user.id, "version_restored", {
        "from_version": version,
        "to_version": restored.version,
    })
    await db.commit()
    return {"document": await _doc_out(db, doc), "version": _version_out(restored)}


# ============================================================
# ACTIVITIES
# ============================================================

@router.get("/{document_id}/activities")
async def list_activities(
    document_id: str,
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    await document_access(db, user, document_id)
    total = (await db.execute(
        select(func.count(DocumentActivity.id)).where(DocumentActivity.document_id == document_id)
    )).scalar() or 0
    rows = await db.execute(
        select(DocumentActivity, User.name)
        .join(User, User.id == DocumentActivity.user_id)
        .where(DocumentActivity.document_id == document_id)
        .order_by(DocumentActivity.created_at.desc())
        .offset(offset)
        .limit(limit)
    )
    return {
        "activities": [
            {
                "id": a.id, "action": a.action, "details": a.details or {},
                "user": {"id": a.user_id, "name": name},
                "created_at": iso(a.created_at),
            }
            for a, name in rows.all()
        ],
        "total": total,
        "has_more": offset + limit < total,
    }


@router.post("/{document_id}/activities", status_code=201)
async def log_activity(
    document_id: str,
    data: ActivityCreate,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    """Client-reported activity such as viewed or exported"""
    doc, _, _ = await document_access(db, user, document_id)
    entry = record_document_activity(db, doc.id, user.id, data.action, data.details)
    await db.commit()
    return {"id": entry.id, "action": entry.action, "created_at": iso(entry.created_at)}


# ============================================================
# COLLABORATORS
# ============================================================

@router.get("/{document_id}/collaborators")
async def list_collaborators(
    document_id: str,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    await document_access(db, user, document_id)
    rows = await db.execute(
        select(DocumentCollaborator, User)
        .join(User, User.id == DocumentCollaborator.user_id)
        .where(DocumentCollaborator.document_id == document_id)
        .order_by(DocumentCollaborator.created_at.asc())
    )
    return [
        {
            "user_id": u.id, "name": u.name, "email": u.email,
            "role": CollaboratorRole(c.role).value, "added_at": iso(c.created_at),
        }
        for c, u in rows.all()
    ]


@router.post("/{document_id}/collaborators", status_code=201)
async def add_collaborator(
    document_id: str,
    data: CollaboratorAdd,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    doc, membership, collaborator = await document_access(db, user, document_id)
    is_owner_collab = collaborator is not None and CollaboratorRole(collaborator.role) == CollaboratorRole.OWNER
    if not (_can_manage(doc, user, membership) or is_owner_collab):
        raise HTTPException(status_code=403, detail="Cannot manage collaborators on this document")

    target = await db.get(User, data.user_id)
    if not target or not target.is_active:
        raise HTTPException(status_code=404, detail="User not found")

    existing = (await db.execute(
        select(DocumentCollaborator).where(
            DocumentCollaborator.document_id == doc.id,
            DocumentCollaborator.user_id == target.id,
        )
    )).scalar_one_or_none()
    if existing:
        raise HTTPException(status_code=409, detail="User is already a collaborator")

    db.add(DocumentCollaborator(
        document_id=doc.id, user_id=target.id,
        role=CollaboratorRole(data.role), added_by=user.id,
    ))
    record_document_activity(db, doc.id, user.id, "collaborator_added", {
        "user_id": target.id, "role": data.role,
    })
    await db.commit()
    return {"user_id": target.id, "role": data.role}


@router.delete("/{document_id}/collaborators/{collaborator_id}")
async def remove_collaborator(
    document_id: str,
    collaborator_id: str,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    doc, membership, _ = await document_access(db, user, document_id)
    if not _can_manage(doc, user, membership) and collaborator_id != user.id:
        raise HTTPException(status_code=403, detail="Cannot manage collaborators on this document")

    existing = (await db.execute(
        select(DocumentCollaborator).where(
            DocumentCollaborator.document_id == doc.id,
            DocumentCollaborator.user_id == collaborator_id,
        )
    )).scalar_one_or_none()
    if not existing:
        raise HTTPException(status_code=404, detail="Collaborator not found")

    await db.delete(existing)
    record_document_activity(db, doc.id, user.id, "collaborator_removed", {"user_id": collaborator_id})
    await db.commit()
    return {"status": "removed", "user_id": collaborator_id}


# ============================================================
# COMMENTS
# ============================================================

@router.get("/{document_id}/comments")
async def list_comments(
    document_id: str,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    await document_access(db, user, document_id)
    rows = await db.execute(
        select(DocumentComment, User.name)
        .join(User, User.id == DocumentComment.user_id)
        .where(DocumentComment.document_id == document_id)
        .order_by(DocumentComment.created_at.asc())
    )
    return [
        {
            "id": c.id, "content": c.content, "parent_id": c.parent_id,
            "resolved": bool(c.resolved),
            "user": {"id": c.user_id, "name": name},
            "created_at": iso(c.created_at),
        }
        for c, name in rows.all()
    ]


@router.post("/{document_id}/comments", status_code=201)
async def add_comment(
    document_id: str,
    data: CommentCreate,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    doc, _, _ = await document_access(db, user, document_id)
    if data.parent_id:
        parent = await get_or_404(db, DocumentComment, data.parent_id, "Parent comment")
        if parent.document_id != doc.id:
            raise HTTPException(status_code=400, detail="Parent comment belongs to another document")

    comment = DocumentComment(
        document_id=doc.id, user_id=user.id,
        content=data.content, parent_id=data.parent_id,
    )
    db.add(comment)
    await db.flush()
    record_document_activity(db, doc.id, user.id, "commented", {"comment_id": comment.id})
    await db.commit()
    return {"id": comment.id, "content": comment.content, "parent_id": comment.parent_id, "created_at": iso(comment.created_at)}
