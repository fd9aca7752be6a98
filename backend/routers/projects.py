# routers/projects.py — Projects with members, resources and milestones
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import Field
from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession

from access import require_workspace_member, load_scoped, get_membership, is_privileged
from auth import get_current_user, CurrentUser, RequestModel
from database import get_db_session
from models import (
    Project, ProjectMember, ProjectResource, ProjectMilestone, Task, TaskStatus, User, CONTRIBUTOR_ROLES,
    UserWorkspace, utcnow, as_utc, iso,
)

router = APIRouter(prefix="/api/v1/projects", tags=["Projects"])

PROJECT_STATUS_PATTERN = r"^(planning|active|on_hold|completed|archived)$"
MANAGING_ROLES = ("owner", "manager")


# --- Schemas ---

class ProjectCreate(RequestModel):
    workspace_id: str
    name: str = Field(..., min_length=1, max_length=200)
    description: Optional[str] = Field(default=None, max_length=5000)
    status: str = Field(default="active", pattern=PROJECT_STATUS_PATTERN)
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None


class ProjectUpdate(RequestModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=200)
    description: Optional[str] = Field(default=None, max_length=5000)
    status: Optional[str] = Field(default=None, pattern=PROJECT_STATUS_PATTERN)
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None


class MemberAdd(RequestModel):
    user_id: str
    role: str = Field(default="member", pattern=r"^(manager|member|viewer)$")


class ResourceCreate(RequestModel):
    name: str = Field(..., min_length=1, max_length=200)
    resource_type: str = Field(default="link", pattern=r"^(link|person|budget|equipment|other)$")
    url: Optional[str] = Field(default=None, max_length=2048)
    allocation: Optional[float] = Field(default=None, ge=0)


class MilestoneCreate(RequestModel):
    title: str = Field(..., min_length=1, max_length=300)
    description: Optional[str] = Field(default=None, max_length=5000)
    due_date: Optional[datetime] = None
    status: str = Field(default="pending", pattern=r"^(pending|in_progress|completed|missed)$")


# --- Helpers ---

def _check_dates(start, end) -> None:
    if start and end and as_utc(end) < as_utc(start):
        raise HTTPException(status_code=400, detail="end_date must not precede start_date")


async def _project_member(db: AsyncSession, project_id: str, user_id: str) -> Optional[ProjectMember]:
    result = await db.execute(
        select(ProjectMember).where(ProjectMember.project_id == project_id, ProjectMember.user_id == user_id)
    )
    return result.scalar_one_or_none()


async def _require_manager(db: AsyncSession, project: Project, user: CurrentUser, membership: UserWorkspace) -> None:
    if is_privileged(membership):
        return
    member = await _project_member(db, project.id, user.id)
    if member is None or member.role not in MANAGING_ROLES:
        raise HTTPException(status_code=403, detail="Only project owners or managers can change this project")


async def _project_out(db: AsyncSession, p: Project) -> dict:
    member_count = (await db.execute(
        select(func.count(ProjectMember.id)).where(ProjectMember.project_id == p.id)
    )).scalar() or 0
    by_status = dict((await db.execute(
        select(Task.status, func.count(Task.id)).where(Task.project_id == p.id).group_by(Task.status)
    )).all())
    total_tasks = sum(by_status.values())
    done = by_status.get(TaskStatus.DONE, 0)
    return {
        "id": p.id,
        "workspace_id": p.workspace_id,
        "name": p.name,
        "description": p.description,
        "status": p.status,
        "start_date": iso(p.start_date),
        "end_date": iso(p.end_date),
        "created_by": p.created_by,
        "member_count": member_count,
        "task_count": total_tasks,
        "progress": round(done / total_tasks * 100, 1) if total_tasks else 0.0,
        "created_at": iso(p.created_at),
        "updated_at": iso(p.updated_at),
    }


# ============================================================
# PROJECTS
# ============================================================

@router.get("")
async def list_projects(
    workspace_id: str = Query(...),
    status: Optional[str] = Query(default=None, pattern=PROJECT_STATUS_PATTERN),
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    await require_workspace_member(db, user, workspace_id)
    stmt = select(Project).where(Project.workspace_id == workspace_id)
    if status:
        stmt = stmt.where(Project.status == status)
    projects = (await db.execute(stmt.order_by(Project.created_at.desc()))).scalars().all()
    return [await _project_out(db, p) for p in projects]


@router.post("", status_code=201)
async def create_project(
    data: ProjectCreate,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    await require_workspace_member(db, user, data.workspace_id, roles=CONTRIBUTOR_ROLES)
    _check_dates(data.start_date, data.end_date)

    project = Project(
        workspace_id=data.workspace_id,
        name=data.name,
        description=data.description,
        status=data.status,
        start_date=as_utc(data.start_date),
        end_date=as_utc(data.end_date),
        created_by=user.id,
    )
    db.add(project)
    await db.flush()
    db.add(ProjectMember(project_id=project.id, user_id=user.id, role="owner"))
    await db.commit()
    return await _project_out(db, project)


@router.get("/{project_id}")
async def get_project(
    project_id: str,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    project, _ = await load_scoped(db, Project, project_id, user, "Project")
    out = await _project_out(db, project)
    milestones = (await db.execute(
        select(ProjectMilestone).where(ProjectMilestone.project_id == project.id)
        .order_by(ProjectMilestone.due_date.asc())
    )).scalars().all()
    out["milestones"] = [
        {"id": m.id, "title": m.title, "status": m.status, "due_date": iso(m.due_date)} for m in milestones
    ]
    return out


@router.patch("/{project_id}")
async def update_project(
    project_id: str,
    data: ProjectUpdate,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    project, membership = await load_scoped(db, Project, project_id, user, "Project")
    await _require_manager(db, project, user, membership)

    updates = data.model_dump(exclude_unset=True)
    for key in ("start_date", "end_date"):
        if key in updates:
            updates[key] = as_utc(updates[key])
    _check_dates(updates.get("start_date", project.start_date), updates.get("end_date", project.end_date))
    for key, value in updates.items():
        if value is None and key in ("name", "status"):
            continue
        setattr(project, key, value)
    project.updated_at = utcnow()
    await db.commit()
    return await _project_out(db, project)


@router.delete("/{project_id}")
async def delete_project(
    project_id: str,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    project, membership = await load_scoped(db, Project, project_id, user, "Project")
    if project.created_by != user.id and not is_privileged(membership):
        raise HTTPException(status_code=403, detail="Only the creator or a workspace admin can delete this project")
    # Tasks outlive their project
    tasks = (await db.execute(select(Task).where(Task.project_id == project.id))).scalars().all()
    for task in tasks:
        task.project_id = None
    await db.delete(project)
    await db.commit()
    return {"status": "deleted", "project_id": project_id}


# ============================================================
# MEMBERS
# ============================================================

@router.get("/{project_id}/members")
async def list_members(
    project_id: str,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    await load_scoped(db, Project, project_id, user, "Project")
    rows = await db.execute(
        select(ProjectMember, User.name, User.email)
        .join(User, User.id == ProjectMember.user_id)
        .where(ProjectMember.project_id == project_id)
        .order_by(ProjectMember.joined_at.asc())
    )
    return [
        {"user_id": m.user_id, "name": name, "email": email, "role": m.role, "joined_at": iso(m.joined_at)}
        for m, name, email in rows.all()
    ]


@router.post("/{project_id}/members", status_code=201)
async def add_member(
    project_id: str,
    data: MemberAdd,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    project, membership = await load_scoped(db, Project, project_id, user, "Project")
    await _require_manager(db, project, user, membership)
    if not await get_membership(db, data.user_id, project.workspace_id):
        raise HTTPException(status_code=404, detail="User not found in this workspace")
    if await _project_member(db, project.id, data.user_id):
        raise HTTPException(status_code=409, detail="User is already a project member")

    db.add(ProjectMember(project_id=project.id, user_id=data.user_id, role=data.role))
    await db.commit()
    return {"status": "added", "project_id": project.id, "user_id": data.user_id, "role": data.role}


# ============================================================
# RESOURCES
# ============================================================

@router.get("/{project_id}/resources")
async def list_resources(
    project_id: str,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    await load_scoped(db, Project, project_id, user, "Project")
    resources = (await db.execute(
        select(ProjectResource).where(ProjectResource.project_id == project_id)
        .order_by(ProjectResource.created_at.asc())
    )).scalars().all()
    return [
        {
            "id": r.id, "name": r.name, "resource_type": r.resource_type, "url": r.url,
            "allocation": r.allocation, "added_by": r.added_by, "created_at": iso(r.created_at),
        }
        for r in resources
    ]


@router.post("/{project_id}/resources", status_code=201)
async def add_resource(
    project_id: str,
    data: ResourceCreate,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    project, membership = await load_scoped(db, Project, project_id, user, "Project")
    await _require_manager(db, project, user, membership)
    resource = ProjectResource(project_id=project.id, added_by=user.id, **data.model_dump())
    db.add(resource)
    await db.commit()
    return {"id": resource.id, "name": resource.name, "created_at": iso(resource.created_at)}


# ============================================================
# MILESTONES
# ============================================================

@router.get("/{project_id}/milestones")
async def list_milestones(
    project_id: str,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    await load_scoped(db, Project, project_id, user, "Project")
    milestones = (await db.execute(
        select(ProjectMilestone).where(ProjectMilestone.project_id == project_id)
        .order_by(ProjectMilestone.due_date.asc())
    )).scalars().all()
    return [
        {
            "id": m.id, "title": m.title, "description": m.description,
            "due_date": iso(m.due_date), "status": m.status, "created_at": iso(m.created_at),
        }
        for m in milestones
    ]


@router.post("/{project_id}/milestones", status_code=201)
async def add_milestone(
    project_id: str,
    data: MilestoneCreate,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    project, membership = await load_scoped(db, Project, project_id, user, "Project")
    await _require_manager(db, project, user, membership)
    milestone = ProjectMilestone(
        project_id=project.id,
        title=data.title,
        description=data.description,
        due_date=as_utc(data.due_date),
        status=data.status,
    )
    db.add(milestone)
    await db.commit()
    return {"id": milestone.id, "title": milestone.title, "due_date": iso(milestone.due_date)}
