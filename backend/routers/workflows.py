# routers/workflows.py — Automation workflows and their execution history
"""
A workflow is an ordered list of actions. Running it (``POST
/workflows/{id}/executions``) performs the actions in order on behalf of the
caller, with the caller's permissions, and stops at the first failure.
Whatever the earlier actions created is kept; the execution row records
each step's outcome.

String values in an action's config may reference the trigger payload as
``$name``; unknown names are left as written.
"""
import logging
from string import Template
from typing import Optional, List, Dict, Any

import httpx
from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import Field
from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession

from access import require_workspace_member, load_scoped, get_membership, get_channel_membership, is_privileged
from audit import record_document_version, record_document_activity, record_task_activity
from auth import get_current_user, CurrentUser, RequestModel
from database import get_db_session
from models import (
    Workflow, WorkflowExecution, Channel, Message, Task, TaskPriority, Document, Notification,
    User, CONTRIBUTOR_ROLES, PRIVILEGED_ROLES, utcnow, iso,
)

router = APIRouter(prefix="/api/v1/workflows", tags=["Workflows"])
logger = logging.getLogger("huddle.workflows")

TRIGGER_PATTERN = r"^(manual|schedule|message_posted|task_created|document_created|webhook)$"
ACTION_PATTERN = r"^(send_message|create_task|create_document|notify|api_call)$"
RECENT_EXECUTIONS = 10
API_CALL_TIMEOUT = 10.0


# ============================================================
# SCHEMAS
# ============================================================

class ActionIn(RequestModel):
    type: str = Field(..., pattern=ACTION_PATTERN)
    config: Dict[str, Any] = Field(default_factory=dict)


class WorkflowCreate(RequestModel):
    workspace_id: str
    name: str = Field(..., min_length=1, max_length=200)
    description: Optional[str] = Field(default=None, max_length=2000)
    trigger_type: str = Field(default="manual", pattern=TRIGGER_PATTERN)
    trigger_config: Dict[str, Any] = Field(default_factory=dict)
    actions: List[ActionIn] = Field(default_factory=list, max_length=20)


class WorkflowUpdate(RequestModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=200)
    description: Optional[str] = Field(default=None, max_length=2000)
    trigger_type: Optional[str] = Field(default=None, pattern=TRIGGER_PATTERN)
    trigger_config: Optional[Dict[str, Any]] = None
    actions: Optional[List[ActionIn]] = Field(default=None, max_length=20)
    is_active: Optional[bool] = None


class ExecutionCreate(RequestModel):
    trigger_data: Dict[str, Any] = Field(default_factory=dict)


# ============================================================
# ACTIONS
# ============================================================

class ActionFailed(Exception):
    pass


def render(value: Any, trigger: Dict[str, Any]) -> Any:
    if isinstance(value, str):
        return Template(value).safe_substitute({k: str(v) for k, v in trigger.items()})
    if isinstance(value, dict):
        return {k: render(v, trigger) for k, v in value.items()}
    if isinstance(value, list):
        return [render(v, trigger) for v in value]
    return value


def _required(config: dict, key: str) -> str:
    value = config.get(key)
    if not isinstance(value, str) or not value.strip():
        raise ActionFailed(f"'{key}' is required")
    return value


async def _send_message(db: AsyncSession, workflow: Workflow, user: CurrentUser, config: dict, trigger: dict) -> dict:
    channel = await db.get(Channel, _required(config, "channel_id"))
    if channel is None or channel.workspace_id != workflow.workspace_id:
        raise ActionFailed("Channel not found in this workspace")
    if await get_channel_membership(db, channel.id, user.id) is None:
        raise ActionFailed("Not a member of this channel")
    message = Message(channel_id=channel.id, user_id=user.id, content=_required(config, "content"))
    db.add(message)
    await db.flush()
    return {"message_id": message.id}


async def _create_task(db: AsyncSession, workflow: Workflow, user: CurrentUser, config: dict, trigger: dict) -> dict:
    title = _required(config, "title")
    assignee_id = config.get("assignee_id")
    if assignee_id and not await get_membership(db, assignee_id, workflow.workspace_id):
        raise ActionFailed("Assignee is not a member of this workspace")
    try:
        priority = TaskPriority(config.get("priority", "medium"))
    except ValueError:
        raise ActionFailed(f"Unknown priority {config.get('priority')!r}")

    task = Task(
        workspace_id=workflow.workspace_id,
        title=title[:500],
        description=config.get("description"),
        priority=priority,
        assignee_id=assignee_id,
        created_by=user.id,
    )
    db.add(task)
    await db.flush()
    record_task_activity(db, task.id, user.id, "created")
    return {"task_id": task.id}


async def _create_document(db: AsyncSession, workflow: Workflow, user: CurrentUser, config: dict, trigger: dict) -> dict:
    doc = Document(
        workspace_id=workflow.workspace_id,
        title=_required(config, "title")[:500],
        content=str(config.get("content", "")),
        created_by=user.id,
    )
    db.add(doc)
    await db.flush()
    await record_document_version(db, doc, user.id, "Initial version")
    record_document_activity(db, doc.id, user.id, "created", {"workflow_id": workflow.id})
    return {"document_id": doc.id}


async def _notify(db: AsyncSession, workflow: Workflow, user: CurrentUser, config: dict, trigger: dict) -> dict:
    recipient = config.get("user_id") or user.id
    if not await get_membership(db, recipient, workflow.workspace_id):
        raise ActionFailed("Recipient is not a member of this workspace")
    notif = Notification(
        user_id=recipient,
        workspace_id=workflow.workspace_id,
        type="workflow",
        title=_required(config, "title"),
        content=str(config.get("content", "")),
    )
    db.add(notif)
    await db.flush()
    return {"notification_id": notif.id}


async def _api_call(db: AsyncSession, workflow: Workflow, user: CurrentUser, config: dict, trigger: dict) -> dict:
    url = _required(config, "url")
    method = str(config.get("method", "POST")).upper()
    if method not in ("GET", "POST", "PUT", "PATCH", "DELETE"):
        raise ActionFailed(f"Unsupported method {method}")
    body = config.get("body", trigger)
    try:
        async with httpx.AsyncClient(timeout=API_CALL_TIMEOUT) as client:
            resp = await client.request(
                method, url,
                json=None if method == "GET" else body,
                headers={"X-Huddle-Workflow": workflow.id},
            )
    except httpx.HTTPError as e:
        raise ActionFailed(f"Request failed: {e}")
    if not resp.is_success:
        raise ActionFailed(f"Endpoint answered {resp.status_code}")
    return {"status_code": resp.status_code}


ACTION_HANDLERS = {
    "send_message": _send_message,
    "create_task": _create_task,
    "create_document": _create_document,
    "notify": _notify,
    "api_call": _api_call,
}


async def run_workflow(
    db: AsyncSession, workflow: Workflow, user: CurrentUser, trigger_data: Dict[str, Any],
) -> WorkflowExecution:
    """Perform every action in order; the first failure ends the run."""
    execution = WorkflowExecution(
        workflow_id=workflow.id, user_id=user.id, status="running", trigger_data=trigger_data,
    )
    db.add(execution)
    await db.flush()

    results = []
    error = None
    for index, action in enumerate(workflow.actions or []):
        kind = action.get("type")
        handler = ACTION_HANDLERS.get(kind)
        try:
            if handler is None:
                raise ActionFailed(f"Unknown action type {kind!r}")
            output = await handler(db, workflow, user, render(action.get("config") or {}, trigger_data), trigger_data)
        except ActionFailed as e:
            error = f"Step {index + 1} ({kind}): {e}"
            results.append({"action": kind, "status": "error", "error": str(e)})
            break
        results.append({"action": kind, "status": "success", "output": output})

    execution.results = results
    execution.status = "failed" if error else "completed"
    execution.error_message = error
    execution.completed_at = utcnow()
    logger.info(f"Workflow {workflow.id} run {execution.id} by {user.id}: {execution.status}")
    return execution


# ============================================================
# HELPERS
# ============================================================

def _execution_out(e: WorkflowExecution) -> dict:
    return {
        "id": e.id,
        "workflow_id": e.workflow_id,
        "user_id": e.user_id,
        "status": e.status,
        "trigger_data": e.trigger_data or {},
        "results": e.results or [],
        "error_message": e.error_message,
        "started_at": iso(e.started_at),
        "completed_at": iso(e.completed_at),
    }


async def _workflow_out(db: AsyncSession, w: Workflow, recent: int = RECENT_EXECUTIONS) -> dict:
    creator = await db.get(User, w.created_by)
    total = (await db.execute(
        select(func.count(WorkflowExecution.id)).where(WorkflowExecution.workflow_id == w.id)
    )).scalar() or 0
    executions = (await db.execute(
        select(WorkflowExecution)
        .where(WorkflowExecution.workflow_id == w.id)
        .order_by(WorkflowExecution.started_at.desc())
        .limit(recent)
    )).scalars().all()
    return {
        "id": w.id,
        "workspace_id": w.workspace_id,
        "name": w.name,
        "description": w.description,
        "trigger_type": w.trigger_type,
        "trigger_config": w.trigger_config or {},
        "actions": w.actions or [],
        "is_active": bool(w.is_active),
        "creator": {"id": creator.id, "name": creator.name} if creator else None,
        "execution_count": total,
        "executions": [_execution_out(e) for e in executions],
        "created_at": iso(w.created_at),
        "updated_at": iso(w.updated_at),
    }


# ============================================================
# ROUTES
# ============================================================

@router.get("")
async def list_workflows(
    workspace_id: str = Query(...),
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    await require_workspace_member(db, user, workspace_id)
    workflows = (await db.execute(
        select(Workflow).where(Workflow.workspace_id == workspace_id).order_by(Workflow.created_at.desc())
    )).scalars().all()
    return [await _workflow_out(db, w) for w in workflows]


@router.post("", status_code=201)
async def create_workflow(
    data: WorkflowCreate,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    await require_workspace_member(db, user, data.workspace_id, roles=CONTRIBUTOR_ROLES)
    workflow = Workflow(
        workspace_id=data.workspace_id,
        name=data.name,
        description=data.description,
        trigger_type=data.trigger_type,
        trigger_config=data.trigger_config,
        actions=[a.model_dump() for a in data.actions],
        created_by=user.id,
    )
    db.add(workflow)
    await db.commit()
    return await _workflow_out(db, workflow)


@router.get("/{workflow_id}")
async def get_workflow(
    workflow_id: str,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    workflow, _ = await load_scoped(db, Workflow, workflow_id, user, "Workflow")
    return await _workflow_out(db, workflow, recent=50)


@router.patch("/{workflow_id}")
async def update_workflow(
    workflow_id: str,
    data: WorkflowUpdate,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    workflow, membership = await load_scoped(db, Workflow, workflow_id, user, "Workflow")
    if workflow.created_by != user.id and not is_privileged(membership):
        raise HTTPException(status_code=403, detail="Only the creator or an admin can modify this workflow")

    updates = data.model_dump(exclude_unset=True)
    for key, value in updates.items():
        if value is None and key != "description":
            continue
        setattr(workflow, key, value)
    workflow.updated_at = utcnow()
    await db.commit()
    return await _workflow_out(db, workflow)


@router.delete("/{workflow_id}")
async def delete_workflow(
    workflow_id: str,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    workflow, _ = await load_scoped(db, Workflow, workflow_id, user, "Workflow", roles=PRIVILEGED_ROLES)
    await db.delete(workflow)
    await db.commit()
    return {"status": "deleted", "workflow_id": workflow_id}


@router.get("/{workflow_id}/executions")
async def list_executions(
    workflow_id: str,
    limit: int = Query(default=50, ge=1, le=200),
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    await load_scoped(db, Workflow, workflow_id, user, "Workflow")
    executions = (await db.execute(
        select(WorkflowExecution)
        .where(WorkflowExecution.workflow_id == workflow_id)
        .order_by(WorkflowExecution.started_at.desc())
        .limit(limit)
    )).scalars().all()
    return [_execution_out(e) for e in executions]


@router.post("/{workflow_id}/executions", status_code=201)
async def execute_workflow(
    workflow_id: str,
    data: ExecutionCreate = ExecutionCreate(),
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    workflow, _ = await load_scoped(db, Workflow, workflow_id, user, "Workflow", roles=CONTRIBUTOR_ROLES)
    if not workflow.is_active:
        raise HTTPException(status_code=400, detail="Workflow is not active")
    execution = await run_workflow(db, workflow, user, data.trigger_data)
    await db.commit()
    return _execution_out(execution)
