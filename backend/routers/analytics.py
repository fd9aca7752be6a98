# routers/analytics.py — Saved reports, snapshots, dashboards and recorded metrics
"""
Reports are saved queries over workspace activity. Taking a snapshot runs
the report against the database and stores the figures, so a report's
history can be charted later without recomputing it.

Metrics are raw data points pushed by clients (page timings, feature usage)
and are stored as sent.
"""
from datetime import datetime, timedelta
from enum import Enum
from typing import Optional, List, Dict, Any

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import Field
from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession

from access import require_workspace_member, load_scoped, is_privileged
from auth import get_current_user, CurrentUser, RequestModel
from database import get_db_session
from models import (
    AnalyticsReport, ReportSnapshot, Dashboard, DashboardWidget,
    Channel, Message, Task, TaskStatus, Document, Meeting, UserWorkspace,
    Metric, MetricKind, CONTRIBUTOR_ROLES, utcnow, as_utc, iso,
)

router = APIRouter(prefix="/api/v1/analytics", tags=["Analytics"])

REPORT_TYPE_PATTERN = r"^(messages|tasks|documents|meetings|members|overview|custom)$"
WIDGET_TYPE_PATTERN = r"^(metric|line_chart|bar_chart|pie_chart|table|list)$"


class TimeWindow(str, Enum):
    DAY = "1d"
    WEEK = "7d"
    MONTH = "30d"
    QUARTER = "90d"

    @property
    def delta(self) -> timedelta:
        return timedelta(days=int(self.value[:-1]))


# --- Schemas ---

class ReportCreate(RequestModel):
    workspace_id: str
    name: str = Field(..., min_length=1, max_length=200)
    description: Optional[str] = Field(default=None, max_length=2000)
    report_type: str = Field(default="overview", pattern=REPORT_TYPE_PATTERN)
    config: Dict[str, Any] = Field(default_factory=dict)
    is_public: bool = False


class ReportUpdate(RequestModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=200)
    description: Optional[str] = Field(default=None, max_length=2000)
    config: Optional[Dict[str, Any]] = None
    is_public: Optional[bool] = None


class SnapshotCreate(RequestModel):
    window: TimeWindow = TimeWindow.WEEK


class WidgetIn(RequestModel):
    widget_type: str = Field(..., pattern=WIDGET_TYPE_PATTERN)
    title: str = Field(..., min_length=1, max_length=200)
    config: Dict[str, Any] = Field(default_factory=dict)
    position: Dict[str, Any] = Field(default_factory=dict)


class DashboardCreate(RequestModel):
    workspace_id: str
    name: str = Field(..., min_length=1, max_length=200)
    description: Optional[str] = Field(default=None, max_length=2000)
    layout: Dict[str, Any] = Field(default_factory=dict)
    is_default: bool = False
    widgets: List[WidgetIn] = Field(default_factory=list)


# --- Metrics ---

async def _count(db: AsyncSession, stmt) -> int:
    return (await db.execute(stmt)).scalar() or 0


async def compute_metrics(db: AsyncSession, workspace_id: str, report_type: str, window: TimeWindow) -> dict:
    """Aggregate workspace activity over the trailing window."""
    since = utcnow() - window.delta
    data: Dict[str, Any] = {"window": window.value, "since": iso(since)}

    if report_type in ("messages", "overview", "custom"):
        channel_ids = select(Channel.id).where(Channel.workspace_id == workspace_id)
        per_channel = await db.execute(
            select(Channel.name, func.count(Message.id))
            .join(Message, Message.channel_id == Channel.id)
            .where(Channel.workspace_id == workspace_id, Message.created_at >= since)
            .group_by(Channel.name)
        )
        data["messages"] = {
            "total": await _count(db, select(func.count(Message.id)).where(
                Message.channel_id.in_(channel_ids), Message.created_at >= since)),
            "active_authors": await _count(db, select(func.count(func.distinct(Message.user_id))).where(
                Message.channel_id.in_(channel_ids), Message.created_at >= since)),
            "by_channel": dict(per_channel.all()),
        }

    if report_type in ("tasks", "overview", "custom"):
        by_status = await db.execute(
            select(Task.status, func.count(Task.id))
            .where(Task.workspace_id == workspace_id)
            .group_by(Task.status)
        )
        data["tasks"] = {
            "by_status": {TaskStatus(s).value: n for s, n in by_status.all()},
            "created": await _count(db, select(func.count(Task.id)).where(
                Task.workspace_id == workspace_id, Task.created_at >= since)),
            "completed": await _count(db, select(func.count(Task.id)).where(
                Task.workspace_id == workspace_id, Task.completed_at >= since)),
        }

    if report_type in ("documents", "overview", "custom"):
        data["documents"] = {
            "total": await _count(db, select(func.count(Document.id)).where(
                Document.workspace_id == workspace_id)),
            "updated": await _count(db, select(func.count(Document.id)).where(
                Document.workspace_id == workspace_id, Document.updated_at >= since)),
        }

    if report_type in ("meetings", "overview", "custom"):
        data["meetings"] = {
            "held": await _count(db, select(func.count(Meeting.id)).where(
                Meeting.workspace_id == workspace_id, Meeting.start_time >= since,
                Meeting.start_time <= utcnow())),
        }

    if report_type in ("members", "overview", "custom"):
        data["members"] = {
            "total": await _count(db, select(func.count(UserWorkspace.id)).where(
                UserWorkspace.workspace_id == workspace_id)),
            "joined": await _count(db, select(func.count(UserWorkspace.id)).where(
                UserWorkspace.workspace_id == workspace_id, UserWorkspace.joined_at >= since)),
        }

    return data


def _report_out(r: AnalyticsReport) -> dict:
    return {
        "id": r.id,
        "workspace_id": r.workspace_id,
        "name": r.name,
        "description": r.description,
        "report_type": r.report_type,
        "config": r.config or {},
        "is_public": bool(r.is_public),
        "created_by": r.created_by,
        "created_at": iso(r.created_at),
        "updated_at": iso(r.updated_at),
    }


async def _readable_report(db: AsyncSession, report_id: str, user: CurrentUser) -> AnalyticsReport:
    report, membership = await load_scoped(db, AnalyticsReport, report_id, user, "Report")
    if not report.is_public and report.created_by != user.id and not is_privileged(membership):
        raise HTTPException(status_code=403, detail="This report is private")
    return report


# ============================================================
# REPORTS
# ============================================================

@router.get("/reports")
async def list_reports(
    workspace_id: str = Query(...),
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    membership = await require_workspace_member(db, user, workspace_id)
    stmt = select(AnalyticsReport).where(AnalyticsReport.workspace_id == workspace_id)
    if not is_privileged(membership):
        stmt = stmt.where(
            (AnalyticsReport.is_public.is_(True)) | (AnalyticsReport.created_by == user.id)
        )
    reports = (await db.execute(stmt.order_by(AnalyticsReport.created_at.desc()))).scalars().all()
    return [_report_out(r) for r in reports]


@router.post("/reports", status_code=201)
async def create_report(
    data: ReportCreate,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    await require_workspace_member(db, user, data.workspace_id)
    report = AnalyticsReport(created_by=user.id, **data.model_dump())
    db.add(report)
    await db.commit()
    return _report_out(report)


@router.get("/reports/{report_id}")
async def get_report(
    report_id: str,
    window: TimeWindow = Query(default=TimeWindow.WEEK),
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    """Report definition plus live figures for the requested window"""
    report = await _readable_report(db, report_id, user)
    out = _report_out(report)
    out["data"] = await compute_metrics(db, report.workspace_id, report.report_type, window)
    return out


@router.put("/reports/{report_id}")
async def update_report(
    report_id: str,
    data: ReportUpdate,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    report, _ = await load_scoped(db, AnalyticsReport, report_id, user, "Report")
    if report.created_by != user.id:
        raise HTTPException(status_code=403, detail="Only the creator can modify this report")
    for key, value in data.model_dump(exclude_unset=True).items():
        if value is not None or key == "description":
            setattr(report, key, value)
    report.updated_at = utcnow()
    await db.commit()
    return _report_out(report)


@router.delete("/reports/{report_id}")
async def delete_report(
    report_id: str,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    report, _ = await load_scoped(db, AnalyticsReport, report_id, user, "Report")
    if report.created_by != user.id:
        raise HTTPException(status_code=403, detail="Only the creator can delete this report")
    await db.delete(report)
    await db.commit()
    return {"status": "deleted", "report_id": report_id}


# ============================================================
# SNAPSHOTS
# ============================================================

@router.get("/reports/{report_id}/snapshots")
async def list_snapshots(
    report_id: str,
    limit: int = Query(default=30, ge=1, le=365),
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    await _readable_report(db, report_id, user)
    snapshots = (await db.execute(
        select(ReportSnapshot)
        .where(ReportSnapshot.report_id == report_id)
        .order_by(ReportSnapshot.created_at.desc())
        .limit(limit)
    )).scalars().all()
    return [
        {"id": s.id, "data": s.data, "created_by": s.created_by, "created_at": iso(s.created_at)}
        for s in snapshots
    ]


@router.post("/reports/{report_id}/snapshots", status_code=201)
async def take_snapshot(
    report_id: str,
    data: SnapshotCreate = SnapshotCreate(),
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    report = await _readable_report(db, report_id, user)
    figures = await compute_metrics(db, report.workspace_id, report.report_type, data.window)
    snapshot = ReportSnapshot(report_id=report.id, data=figures, created_by=user.id)
    db.add(snapshot)
    await db.commit()
    return {"id": snapshot.id, "data": snapshot.data, "created_at": iso(snapshot.created_at)}


# ============================================================
# DASHBOARDS
# ============================================================

@router.get("/dashboards")
async def list_dashboards(
    workspace_id: str = Query(...),
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    await require_workspace_member(db, user, workspace_id)
    dashboards = (await db.execute(
        select(Dashboard).where(Dashboard.workspace_id == workspace_id)
        .order_by(Dashboard.is_default.desc(), Dashboard.created_at.asc())
    )).scalars().all()

    widgets: Dict[str, list] = {}
    if dashboards:
        rows = await db.execute(
            select(DashboardWidget).where(DashboardWidget.dashboard_id.in_([d.id for d in dashboards]))
        )
        for w in rows.scalars().all():
            widgets.setdefault(w.dashboard_id, []).append({
                "id": w.id, "widget_type": w.widget_type, "title": w.title,
                "config": w.config, "position": w.position,
            })

    return [
        {
            "id": d.id, "name": d.name, "description": d.description,
            "layout": d.layout, "is_default": bool(d.is_default),
            "created_by": d.created_by, "widgets": widgets.get(d.id, []),
            "created_at": iso(d.created_at),
        }
        for d in dashboards
    ]


@router.post("/dashboards", status_code=201)
async def create_dashboard(
    data: DashboardCreate,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    membership = await require_workspace_member(db, user, data.workspace_id)
    if data.is_default and not is_privileged(membership):
        raise HTTPException(status_code=403, detail="Only admins can set the default dashboard")

    if data.is_default:
        current = (await db.execute(
            select(Dashboard).where(Dashboard.workspace_id == data.workspace_id, Dashboard.is_default.is_(True))
        )).scalars().all()
        for d in current:
            d.is_default = False

    dashboard = Dashboard(
        workspace_id=data.workspace_id,
        name=data.name,
        description=data.description,
        layout=data.layout,
        is_default=data.is_default,
        created_by=user.id,
    )
    db.add(dashboard)
    await db.flush()
    for widget in data.widgets:
        db.add(DashboardWidget(dashboard_id=dashboard.id, **widget.model_dump()))
    await db.commit()
    return {"id": dashboard.id, "name": dashboard.name, "widget_count": len(data.widgets)}


# ============================================================
# METRICS
# ============================================================

METRIC_PAGE = 100


class MetricCreate(RequestModel):
    workspace_id: str
    kind: MetricKind
    metric_type: str = Field(..., min_length=1, max_length=100)
    value: float
    details: Dict[str, Any] = Field(default_factory=dict)


def _metric_out(m: Metric) -> dict:
    return {
        "id": m.id,
        "workspace_id": m.workspace_id,
        "kind": MetricKind(m.kind).value,
        "user_id": m.user_id,
        "metric_type": m.metric_type,
        "value": m.value,
        "details": m.details or {},
        "recorded_at": iso(m.recorded_at),
    }


@router.get("/metrics")
async def list_metrics(
    workspace_id: str = Query(...),
    metric_type: Optional[str] = Query(default=None, max_length=100),
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    """Latest data points per kind; user metrics are limited to the caller's own"""
    await require_workspace_member(db, user, workspace_id)
    if start and end and as_utc(end) < as_utc(start):
        raise HTTPException(status_code=400, detail="end must not be before start")

    async def _latest(kind: MetricKind, *extra) -> list:
        stmt = select(Metric).where(Metric.workspace_id == workspace_id, Metric.kind == kind, *extra)
        if metric_type:
            stmt = stmt.where(Metric.metric_type == metric_type)
        if start:
            stmt = stmt.where(Metric.recorded_at >= as_utc(start))
        if end:
            stmt = stmt.where(Metric.recorded_at <= as_utc(end))
        rows = await db.execute(stmt.order_by(Metric.recorded_at.desc()).limit(METRIC_PAGE))
        return [_metric_out(m) for m in rows.scalars().all()]

    return {
        "workspace_metrics": await _latest(MetricKind.WORKSPACE),
        "user_metrics": await _latest(MetricKind.USER, Metric.user_id == user.id),
        "performance_metrics": await _latest(MetricKind.PERFORMANCE),
    }


@router.post("/metrics", status_code=201)
async def record_metric(
    data: MetricCreate,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    # Guests may only report their own activity
    roles = None if data.kind == MetricKind.USER else CONTRIBUTOR_ROLES
    await require_workspace_member(db, user, data.workspace_id, roles=roles)
    metric = Metric(
        workspace_id=data.workspace_id,
        kind=data.kind,
        user_id=user.id if data.kind == MetricKind.USER else None,
        metric_type=data.metric_type,
        value=data.value,
        details=data.details,
    )
    db.add(metric)
    await db.commit()
    return _metric_out(metric)
