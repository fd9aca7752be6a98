# routers/tasks.py — Workspace tasks with labels, comments and an activity trail
from datetime import datetime
from typing import Optional, List

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import Field
from sqlalchemy import select, func, delete
from sqlalchemy.ext.asyncio import AsyncSession

from access import require_workspace_member, load_scoped, get_membership, get_or_404, is_privileged
from audit import diff_fields, record_task_activity
from auth import get_current_user, CurrentUser, RequestModel
from database import get_db_session
from models import (
    Task, TaskLabel, TaskComment, TaskActivity, TaskStatus, TaskPriority, Channel, Project,
    User, CONTRIBUTOR_ROLES, utcnow, as_utc, iso,
)

router = APIRouter(prefix="/api/v1/tasks", tags=["Tasks"])

STATUS_PATTERN = r"^(todo|in_progress|review|done)$"
PRIORITY_PATTERN = r"^(low|medium|high|urgent)$"
TRACKED_FIELDS = ("title", "description", "status", "priority", "assignee_id", "due_date")

# Field -> activity action; everything else is a plain "updated"
FIELD_ACTIONS = {
    "status": "status_changed",
    "priority": "priority_changed",
    "assignee_id": "assigned",
}


# ============================================================
# SCHEMAS
# ============================================================

class LabelIn(RequestModel):
    name: str = Field(..., min_length=1, max_length=50)
    color: str = Field(default="#6366f1", pattern=r"^#[0-9a-fA-F]{6}$")


class TaskCreate(RequestModel):
    workspace_id: str
    title: str = Field(..., min_length=1, max_length=500)
    description: Optional[str] = Field(default=None, max_length=20000)
    status: str = Field(default="todo", pattern=STATUS_PATTERN)
    priority: str = Field(default="medium", pattern=PRIORITY_PATTERN)
    assignee_id: Optional[str] = None
    channel_id: Optional[str] = None
    project_id: Optional[str] = None
    due_date: Optional[datetime] = None
    labels: List[LabelIn] = Field(default_factory=list)


class TaskUpdate(RequestModel):
    title: Optional[str] = Field(default=None, min_length=1, max_length=500)
    description: Optional[str] = Field(default=None, max_length=20000)
    status: Optional[str] = Field(default=None, pattern=STATUS_PATTERN)
    priority: Optional[str] = Field(default=None, pattern=PRIORITY_PATTERN)
    assignee_id: Optional[str] = None
    due_date: Optional[datetime] = None
    labels: Optional[List[LabelIn]] = None


class CommentCreate(RequestModel):
    content: str = Field(..., min_length=1, max_length=10000)


# ============================================================
# HELPERS
# ============================================================

async def _task_out(db: AsyncSession, task: Task) -> dict:
    labels = (await db.execute(
        select(TaskLabel).where(TaskLabel.task_id == task.id).order_by(TaskLabel.name.asc())
    )).scalars().all()
    comment_count = (await db.execute(
        select(func.count(TaskComment.id)).where(TaskComment.task_id == task.id)
    )).scalar() or 0
    assignee = await db.get(User, task.assignee_id) if task.assignee_id else None
    return {
        "id": task.id,
        "workspace_id": task.workspace_id,
        "channel_id": task.channel_id,
        "project_id": task.project_id,
        "title": task.title,
        "description": task.description,
        "status": TaskStatus(task.status).value,
        "priority": TaskPriority(task.priority).value,
        "assignee": {"id": assignee.id, "name": assignee.name} if assignee else None,
        "created_by": task.created_by,
        "due_date": iso(task.due_date),
        "completed_at": iso(task.completed_at),
        "labels": [{"id": l.id, "name": l.name, "color": l.color} for l in labels],
        "comment_count": comment_count,
        "created_at": iso(task.created_at),
        "updated_at": iso(task.updated_at),
    }


async def _check_assignee(db: AsyncSession, workspace_id: str, assignee_id: Optional[str]) -> None:
    if assignee_id and not await get_membership(db, assignee_id, workspace_id):
        raise HTTPException(status_code=400, detail="Assignee is not a member of this workspace")


async def _check_parent(db: AsyncSession, model, obj_id: Optional[str], workspace_id: str, label: str) -> None:
    if obj_id:
        obj = await get_or_404(db, model, obj_id, label)
        if obj.workspace_id != workspace_id:
            raise HTTPException(status_code=400, detail=f"{label} belongs to another workspace")


def _replace_labels(db: AsyncSession, task_id: str, labels: List[LabelIn]) -> None:
    # Labels are a set keyed by name; the last colour given wins
    for name, color in {l.name: l.color for l in labels}.items():
        db.add(TaskLabel(task_id=task_id, name=name, color=color))


# ============================================================
# TASK CRUD
# ============================================================

@router.get("")
async def list_tasks(
    workspace_id: str = Query(...),
    status: Optional[str] = Query(default=None, pattern=STATUS_PATTERN),
    priority: Optional[str] = Query(default=None, pattern=PRIORITY_PATTERN),
    assignee_id: Optional[str] = None,
    channel_id: Optional[str] = None,
    project_id: Optional[str] = None,
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    await require_workspace_member(db, user, workspace_id)
    stmt = select(Task).where(Task.workspace_id == workspace_id)
    if status:
        stmt = stmt.where(Task.status == TaskStatus(status))
    if priority:
        stmt = stmt.where(Task.priority == TaskPriority(priority))
    if assignee_id:
        stmt = stmt.where(Task.assignee_id == assignee_id)
    if channel_id:
        stmt = stmt.where(Task.channel_id == channel_id)
    if project_id:
        stmt = stmt.where(Task.project_id == project_id)

    total = (await db.execute(select(func.count()).select_from(stmt.subquery()))).scalar() or 0
    tasks = (await db.execute(
        stmt.order_by(Task.created_at.desc()).offset(offset).limit(limit)
    )).scalars().all()
    return {"tasks": [await _task_out(db, t) for t in tasks], "total": total}


@router.post("", status_code=201)
async def create_task(
    data: TaskCreate,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    await require_workspace_member(db, user, data.workspace_id, roles=CONTRIBUTOR_ROLES)
    await _check_assignee(db, data.workspace_id, data.assignee_id)
    await _check_parent(db, Channel, data.channel_id, data.workspace_id, "Channel")
    await _check_parent(db, Project, data.project_id, data.workspace_id, "Project")

    status = TaskStatus(data.status)
    task = Task(
        workspace_id=data.workspace_id,
        channel_id=data.channel_id,
        project_id=data.project_id,
        title=data.title,
        description=data.description,
        status=status,
        priority=TaskPriority(data.priority),
        assignee_id=data.assignee_id,
        created_by=user.id,
        due_date=as_utc(data.due_date),
        completed_at=utcnow() if status == TaskStatus.DONE else None,
    )
    db.add(task)
    await db.flush()

    _replace_labels(db, task.id, data.labels)
    record_task_activity(db, task.id, user.id, "created")
    if data.assignee_id:
        record_task_activity(db, task.id, user.id, "assigned", "assignee_id", None, data.assignee_id)
    await db.commit()
    return await _task_out(db, task)


@router.get("/{task_id}")
async def get_task(
    task_id: str,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    task, _ = await load_scoped(db, Task, task_id, user, "Task")
    return await _task_out(db, task)


@router.put("/{task_id}")
async def update_task(
    task_id: str,
    data: TaskUpdate,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    """Apply changed fields and log one activity row per change"""
    task, _ = await load_scoped(db, Task, task_id, user, "Task", roles=CONTRIBUTOR_ROLES)

    updates = data.model_dump(exclude_unset=True)
    labels = updates.pop("labels", None)
    if "status" in updates and updates["status"] is not None:
        updates["status"] = TaskStatus(updates["status"])
    if "priority" in updates and updates["priority"] is not None:
        updates["priority"] = TaskPriority(updates["priority"])
    if "due_date" in updates:
        updates["due_date"] = as_utc(updates["due_date"])
    # title/status/priority cannot be cleared
    for required in ("title", "status", "priority"):
        if required in updates and updates[required] is None:
            updates.pop(required)
    if updates.get("assignee_id"):
        await _check_assignee(db, task.workspace_id, updates["assignee_id"])

    changes = diff_fields(task, updates, TRACKED_FIELDS)
    for field, old, new in changes:
        if field == "status":
            if new == TaskStatus.DONE:
                task.completed_at = utcnow()
            elif old == TaskStatus.DONE:
                task.completed_at = None
        if field == "assignee_id" and new is None:
            action = "unassigned"
        else:
            action = FIELD_ACTIONS.get(field, "updated")
        setattr(task, field, new)
        record_task_activity(db, task.id, user.id, action, field, old, new)

    if labels is not None:
        old_names = sorted((await db.execute(
            select(TaskLabel.name).where(TaskLabel.task_id == task.id)
        )).scalars().all())
        new_labels = [LabelIn(**l) for l in labels]
        new_names = sorted({l.name for l in new_labels})
        await db.execute(delete(TaskLabel).where(TaskLabel.task_id == task.id))
        _replace_labels(db, task.id, new_labels)
        if old_names != new_names:
            record_task_activity(db, task.id, user.id, "labels_updated", "labels",
                                 ", ".join(old_names), ", ".join(new_names))

    if changes or labels is not None:
        task.updated_at = utcnow()
    await db.commit()
    return await _task_out(db, task)


@router.delete("/{task_id}")
async def delete_task(
    task_id: str,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    task, membership = await load_scoped(db, Task, task_id, user, "Task")
    if task.created_by != user.id and not is_privileged(membership):
        raise HTTPException(status_code=403, detail="Only the creator or a workspace admin can delete this task")
    await db.delete(task)
    await db.commit()
    return {"status": "deleted", "task_id": task_id}


# ============================================================
# COMMENTS & ACTIVITY
# ============================================================

@router.get("/{task_id}/comments")
async def list_comments(
    task_id: str,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    await load_scoped(db, Task, task_id, user, "Task")
    rows = await db.execute(
        select(TaskComment, User.name)
        .join(User, User.id == TaskComment.user_id)
        .where(TaskComment.task_id == task_id)
        .order_by(TaskComment.created_at.asc())
    )
    return [
        {
            "id": c.id, "content": c.content,
            "user": {"id": c.user_id, "name": name},
            "created_at": iso(c.created_at),
        }
        for c, name in rows.all()
    ]


@router.post("/{task_id}/comments", status_code=201)
async def add_comment(
    task_id: str,
    data: CommentCreate,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    task, _ = await load_scoped(db, Task, task_id, user, "Task")
    comment = TaskComment(task_id=task.id, user_id=user.id, content=data.content)
    db.add(comment)
    await db.flush()
    record_task_activity(db, task.id, user.id, "commented", new_value=comment.id)
    await db.commit()
    return {"id": comment.id, "content": comment.content, "created_at": iso(comment.created_at)}


@router.get("/{task_id}/activities")
async def list_activities(
    task_id: str,
    limit: int = Query(default=50, ge=1, le=200),
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    await load_scoped(db, Task, task_id, user, "Task")
    rows = await db.execute(
        select(TaskActivity, User.name)
        .join(User, User.id == TaskActivity.user_id)
        .where(TaskActivity.task_id == task_id)
        .order_by(TaskActivity.created_at.desc())
        .limit(limit)
    )
    return [
        {
            "id": a.id,
            "action": a.action,
            "field_name": a.field_name,
            "old_value": a.old_value,
            "new_value": a.new_value,
            "user": {"id": a.user_id, "name": name},
            "created_at": iso(a.created_at),
        }
        for a, name in rows.all()
    ]
