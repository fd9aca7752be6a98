# routers/approvals.py — Multi-stage approval workflows and requests
"""
A workflow is an ordered list of stages. A request walks those stages one
at a time: approving moves it to the next stage (or completes it after the
last one), rejecting completes it immediately. Every decision is kept as a
history row.
"""
import logging
from typing import Optional, List

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import Field
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from access import require_workspace_member, require_workspace_admin, get_membership, get_or_404, is_privileged
from auth import get_current_user, CurrentUser, RequestModel
from database import get_db_session
from models import (
    ApprovalWorkflow, ApprovalStage, ApprovalRequest, ApprovalDecision, ApprovalStatus,
    User, utcnow, iso,
)

logger = logging.getLogger("huddle.approvals")

router = APIRouter(prefix="/api/v1", tags=["Approvals"])


class StageIn(RequestModel):
    name: str = Field(..., min_length=1, max_length=200)
    approver_id: Optional[str] = None


class WorkflowCreate(RequestModel):
    workspace_id: str
    name: str = Field(..., min_length=1, max_length=200)
    description: Optional[str] = Field(default=None, max_length=2000)
    stages: List[StageIn] = Field(..., min_length=1, max_length=20)


class RequestCreate(RequestModel):
    workflow_id: str
    title: str = Field(..., min_length=1, max_length=300)
    description: Optional[str] = Field(default=None, max_length=5000)
    resource_type: Optional[str] = Field(default=None, max_length=100)
    resource_id: Optional[str] = None


class DecisionIn(RequestModel):
    decision: str = Field(..., pattern=r"^(approved|rejected)$")
    comment: Optional[str] = Field(default=None, max_length=2000)


async def _stages(db: AsyncSession, workflow_id: str) -> List[ApprovalStage]:
    result = await db.execute(
        select(ApprovalStage).where(ApprovalStage.workflow_id == workflow_id).order_by(ApprovalStage.position.asc())
    )
    return list(result.scalars().all())


def _stage_out(s: ApprovalStage) -> dict:
    return {"id": s.id, "position": s.position, "name": s.name, "approver_id": s.approver_id}


async def _request_out(db: AsyncSession, r: ApprovalRequest) -> dict:
    decisions = await db.execute(
        select(ApprovalDecision, User.name)
        .join(User, User.id == ApprovalDecision.user_id)
        .where(ApprovalDecision.request_id == r.id)
        .order_by(ApprovalDecision.created_at.asc())
    )
    current = await db.get(ApprovalStage, r.current_stage_id) if r.current_stage_id else None
    return {
        "id": r.id,
        "workflow_id": r.workflow_id,
        "workspace_id": r.workspace_id,
        "title": r.title,
        "description": r.description,
        "resource_type": r.resource_type,
        "resource_id": r.resource_id,
        "requested_by": r.requested_by,
        "status": ApprovalStatus(r.status).value,
        "current_stage": _stage_out(current) if current else None,
        "history": [
            {
                "stage_id": d.stage_id,
                "decision": d.decision,
                "comment": d.comment,
                "user": {"id": d.user_id, "name": name},
                "created_at": iso(d.created_at),
            }
            for d, name in decisions.all()
        ],
        "completed_at": iso(r.completed_at),
        "created_at": iso(r.created_at),
    }


# ============================================================
# WORKFLOWS
# ============================================================

@router.get("/approval-workflows")
async def list_workflows(
    workspace_id: str = Query(...),
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    await require_workspace_member(db, user, workspace_id)
    workflows = (await db.execute(
        select(ApprovalWorkflow)
        .where(ApprovalWorkflow.workspace_id == workspace_id)
        .order_by(ApprovalWorkflow.created_at.asc())
    )).scalars().all()
    return [
        {
            "id": w.id,
            "name": w.name,
            "description": w.description,
            "is_active": bool(w.is_active),
            "stages": [_stage_out(s) for s in await _stages(db, w.id)],
            "created_at": iso(w.created_at),
        }
        for w in workflows
    ]


@router.post("/approval-workflows", status_code=201)
async def create_workflow(
    data: WorkflowCreate,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    await require_workspace_admin(db, user, data.workspace_id)
    for stage in data.stages:
        if stage.approver_id and not await get_membership(db, stage.approver_id, data.workspace_id):
            raise HTTPException(status_code=400, detail="Stage approvers must belong to the workspace")

    workflow = ApprovalWorkflow(
        workspace_id=data.workspace_id,
        name=data.name,
        description=data.description,
        created_by=user.id,
    )
    db.add(workflow)
    await db.flush()
    stages = []
    for position, stage in enumerate(data.stages, start=1):
        row = ApprovalStage(workflow_id=workflow.id, position=position, name=stage.name, approver_id=stage.approver_id)
        db.add(row)
        stages.append(row)
    await db.commit()
    return {
        "id": workflow.id,
        "name": workflow.name,
        "description": workflow.description,
        "stages": [_stage_out(s) for s in stages],
    }


# ============================================================
# REQUESTS
# ============================================================

@router.get("/approvals")
async def list_requests(
    workspace_id: str = Query(...),
    status: Optional[str] = Query(default=None, pattern=r"^(pending|approved|rejected)$"),
    mine: bool = Query(default=False, description="Only requests awaiting the caller"),
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    membership = await require_workspace_member(db, user, workspace_id)
    stmt = select(ApprovalRequest).where(ApprovalRequest.workspace_id == workspace_id)
    if status:
        stmt = stmt.where(ApprovalRequest.status == ApprovalStatus(status))
    if mine:
        stmt = stmt.join(ApprovalStage, ApprovalStage.id == ApprovalRequest.current_stage_id).where(
            ApprovalRequest.status == ApprovalStatus.PENDING
        )
        if is_privileged(membership):
            stmt = stmt.where((ApprovalStage.approver_id == user.id) | (ApprovalStage.approver_id.is_(None)))
        else:
            stmt = stmt.where(ApprovalStage.approver_id == user.id)
    requests = (await db.execute(stmt.order_by(ApprovalRequest.created_at.desc()))).scalars().all()
    return [await _request_out(db, r) for r in requests]


@router.post("/approvals", status_code=201)
async def create_request(
    data: RequestCreate,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    workflow = await get_or_404(db, ApprovalWorkflow, data.workflow_id, "Workflow")
    await require_workspace_member(db, user, workflow.workspace_id)
    if not workflow.is_active:
        raise HTTPException(status_code=409, detail="Workflow is inactive")

    stages = await _stages(db, workflow.id)
    if not stages:
        raise HTTPException(status_code=409, detail="Workflow has no stages")

    request = ApprovalRequest(
        workflow_id=workflow.id,
        workspace_id=workflow.workspace_id,
        title=data.title,
        description=data.description,
        resource_type=data.resource_type,
        resource_id=data.resource_id,
        requested_by=user.id,
        current_stage_id=stages[0].id,
        status=ApprovalStatus.PENDING,
    )
    db.add(request)
    await db.commit()
    return await _request_out(db, request)


@router.post("/approvals/{request_id}/decision")
async def decide(
    request_id: str,
    data: DecisionIn,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    """Approve or reject the request at its current stage"""
    request = await get_or_404(db, ApprovalRequest, request_id, "Approval request")
    membership = await require_workspace_member(db, user, request.workspace_id)
    if ApprovalStatus(request.status) != ApprovalStatus.PENDING:
        raise HTTPException(status_code=409, detail="Request is already completed")

    stage = await get_or_404(db, ApprovalStage, request.current_stage_id, "Stage")
    if stage.approver_id != user.id and not is_privileged(membership):
        raise HTTPException(status_code=403, detail="You are not an approver for this stage")

    db.add(ApprovalDecision(
        request_id=request.id,
        stage_id=stage.id,
        user_id=user.id,
        decision=data.decision,
        comment=data.comment,
    ))

    if data.decision == "rejected":
        values = {"status": ApprovalStatus.REJECTED, "completed_at": utcnow()}
    else:
        stages = await _stages(db, request.workflow_id)
        following = [s for s in stages if s.position > stage.position]
        if following:
            values = {"current_stage_id": following[0].id}
        else:
            values = {"status": ApprovalStatus.APPROVED, "completed_at": utcnow()}

    # Only one decision may move the request off this stage
    result = await db.execute(
        update(ApprovalRequest)
        .where(
            ApprovalRequest.id == request.id,
            ApprovalRequest.status == ApprovalStatus.PENDING,
            ApprovalRequest.current_stage_id == stage.id,
        )
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        await db.rollback()
        raise HTTPException(status_code=409, detail="Request was decided concurrently")
    await db.commit()
    await db.refresh(request)
    logger.info(f"Approval {request.id[:8]} stage {stage.position}: {data.decision} by {user.id[:8]}")
    return await _request_out(db, request)
