# models.py — Database models for the Huddle collaboration platform
# - UUID string primary keys everywhere
# - Every resource hangs off exactly one Workspace
# - Append-only history tables (document versions/activities, task
#   activities, security audit log, approval decisions)

import uuid
from datetime import datetime, timezone
from enum import Enum as PyEnum
from sqlalchemy import (
    Column, String, DateTime, JSON, Boolean, BigInteger, Integer, Float,
    Enum as SQLEnum, ForeignKey, Text, Index, UniqueConstraint,
)
from sqlalchemy.orm import declarative_base, relationship

Base = declarative_base()


def utcnow():
    return datetime.now(timezone.utc)


def new_uuid():
    return str(uuid.uuid4())


def as_utc(dt):
    """SQLite hands back naive datetimes; treat them as UTC."""
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def iso(dt):
    return as_utc(dt).isoformat() if dt else None


# ============================================================
# ENUMS
# ============================================================

class WorkspaceRole(str, PyEnum):
    OWNER = "owner"
    ADMIN = "admin"
    MEMBER = "member"
    GUEST = "guest"


PRIVILEGED_ROLES = (WorkspaceRole.OWNER, WorkspaceRole.ADMIN)
# Everyone but guests may create and edit content
CONTRIBUTOR_ROLES = (WorkspaceRole.OWNER, WorkspaceRole.ADMIN, WorkspaceRole.MEMBER)


class TaskStatus(str, PyEnum):
    TODO = "todo"
    IN_PROGRESS = "in_progress"
    REVIEW = "review"
    DONE = "done"


class TaskPriority(str, PyEnum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    URGENT = "urgent"


class CollaboratorRole(str, PyEnum):
    OWNER = "owner"
    EDITOR = "editor"
    VIEWER = "viewer"


class ApprovalStatus(str, PyEnum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


# ============================================================
# IDENTITY & TENANCY
# ============================================================

class User(Base):
    __tablename__ = "users"

    id = Column(String, primary_key=True, default=new_uuid)
    email = Column(String, unique=True, nullable=False, index=True)
    name = Column(String, nullable=False, default="")
    avatar_url = Column(String, nullable=True)
    password_hash = Column(String, nullable=False)
    status = Column(String, nullable=False, default="offline")
    is_active = Column(Boolean, default=True, index=True)
    last_login_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, index=True)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)
    deleted_at = Column(DateTime(timezone=True), nullable=True)

    memberships = relationship("UserWorkspace", back_populates="user", cascade="all, delete-orphan")


class Workspace(Base):
    __tablename__ = "workspaces"

    id = Column(String, primary_key=True, default=new_uuid)
    name = Column(String, nullable=False)
    slug = Column(String, unique=True, nullable=False, index=True)
    description = Column(Text, nullable=True)
    owner_id = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    settings = Column(JSON, nullable=False, default=dict)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    memberships = relationship("UserWorkspace", back_populates="workspace", cascade="all, delete-orphan")


class UserWorkspace(Base):
    __tablename__ = "user_workspaces"

    id = Column(String, primary_key=True, default=new_uuid)
    user_id = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    workspace_id = Column(String, ForeignKey("workspaces.id"), nullable=False, index=True)
    role = Column(SQLEnum(WorkspaceRole), nullable=False, default=WorkspaceRole.MEMBER)
    joined_at = Column(DateTime(timezone=True), default=utcnow)

    user = relationship("User", back_populates="memberships")
    workspace = relationship("Workspace", back_populates="memberships")

    __table_args__ = (
        UniqueConstraint("user_id", "workspace_id", name="uq_user_workspace"),
    )


class UserSession(Base):
    """Server-side session; only the SHA-256 of the opaque id is stored."""
    __tablename__ = "user_sessions"

    id = Column(String, primary_key=True, default=new_uuid)
    user_id = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    session_hash = Column(String, unique=True, nullable=False, index=True)
    ip_address = Column(String, nullable=True)
    user_agent = Column(String, nullable=True)
    expires_at = Column(DateTime(timezone=True), nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow)


class RevokedToken(Base):
    __tablename__ = "revoked_tokens"

    id = Column(String, primary_key=True, default=new_uuid)
    jti = Column(String, unique=True, nullable=False, index=True)
    user_id = Column(String, ForeignKey("users.id"), nullable=False)
    expires_at = Column(DateTime(timezone=True), nullable=False)
    revoked_at = Column(DateTime(timezone=True), default=utcnow)


# ============================================================
# CHANNELS & MESSAGES
# ============================================================

class Channel(Base):
    __tablename__ = "channels"

    id = Column(String, primary_key=True, default=new_uuid)
    workspace_id = Column(String, ForeignKey("workspaces.id"), nullable=False, index=True)
    name = Column(String, nullable=False)
    display_name = Column(String, nullable=False)
    description = Column(Text, nullable=True)
    is_private = Column(Boolean, default=False)
    created_by = Column(String, ForeignKey("users.id"), nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow)

    members = relationship("ChannelMember", cascade="all, delete-orphan")
    messages = relationship("Message", cascade="all, delete-orphan", foreign_keys="Message.channel_id")

    __table_args__ = (
        UniqueConstraint("workspace_id", "name", name="uq_channel_workspace_name"),
    )


class ChannelMember(Base):
    __tablename__ = "channel_members"

    id = Column(String, primary_key=True, default=new_uuid)
    channel_id = Column(String, ForeignKey("channels.id"), nullable=False, index=True)
    user_id = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    joined_at = Column(DateTime(timezone=True), default=utcnow)

    __table_args__ = (
        UniqueConstraint("channel_id", "user_id", name="uq_channel_member"),
    )


class Message(Base):
    __tablename__ = "messages"

    id = Column(String, primary_key=True, default=new_uuid)
    channel_id = Column(String, ForeignKey("channels.id"), nullable=False, index=True)
    user_id = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    content = Column(Text, nullable=False)
    thread_id = Column(String, ForeignKey("messages.id"), nullable=True, index=True)
    is_pinned = Column(Boolean, default=False, index=True)
    pinned_at = Column(DateTime(timezone=True), nullable=True)
    pinned_by = Column(String, ForeignKey("users.id"), nullable=True)
    scheduled_at = Column(DateTime(timezone=True), nullable=True, index=True)
    edited_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, index=True)

    reactions = relationship("MessageReaction", cascade="all, delete-orphan")
    replies = relationship("Message", cascade="all, delete-orphan")
    files = relationship("UploadedFile")

    __table_args__ = (
        Index("idx_message_channel_created", "channel_id", "created_at"),
    )


class MessageReaction(Base):
    __tablename__ = "message_reactions"

    id = Column(String, primary_key=True, default=new_uuid)
    message_id = Column(String, ForeignKey("messages.id"), nullable=False, index=True)
    user_id = Column(String, ForeignKey("users.id"), nullable=False)
    emoji = Column(String(64), nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow)

    __table_args__ = (
        UniqueConstraint("message_id", "user_id", "emoji", name="uq_message_reaction"),
    )


class DirectMessage(Base):
    __tablename__ = "direct_messages"

    id = Column(String, primary_key=True, default=new_uuid)
    sender_id = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    receiver_id = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    content = Column(Text, nullable=False)
    read_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, index=True)


class UploadedFile(Base):
    __tablename__ = "uploaded_files"

    id = Column(String, primary_key=True, default=new_uuid)
    workspace_id = Column(String, ForeignKey("workspaces.id"), nullable=False, index=True)
    uploaded_by = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    message_id = Column(String, ForeignKey("messages.id"), nullable=True, index=True)
    name = Column(String, nullable=False)
    stored_name = Column(String, unique=True, nullable=False)
    mime_type = Column(String, nullable=True)
    size = Column(BigInteger, nullable=False, default=0)
    url = Column(String, nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow, index=True)


# ============================================================
# DOCUMENTS
# ============================================================

class Document(Base):
    __tablename__ = "documents"

    id = Column(String, primary_key=True, default=new_uuid)
    workspace_id = Column(String, ForeignKey("workspaces.id"), nullable=False, index=True)
    channel_id = Column(String, ForeignKey("channels.id"), nullable=True, index=True)
    title = Column(String, nullable=False)
    content = Column(Text, nullable=False, default="")
    created_by = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    versions = relationship("DocumentVersion", cascade="all, delete-orphan")
    activities = relationship("DocumentActivity", cascade="all, delete-orphan")
    collaborators = relationship("DocumentCollaborator", cascade="all, delete-orphan")
    comments = relationship("DocumentComment", cascade="all, delete-orphan")
    analyses = relationship("AIDocumentAnalysis", cascade="all, delete-orphan")


class DocumentVersion(Base):
    __tablename__ = "document_versions"

    id = Column(String, primary_key=True, default=new_uuid)
    document_id = Column(String, ForeignKey("documents.id"), nullable=False, index=True)
    version = Column(Integer, nullable=False)
    title = Column(String, nullable=False)
    content = Column(Text, nullable=False, default="")
    change_log = Column(Text, nullable=True)
    user_id = Column(String, ForeignKey("users.id"), nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow)

    __table_args__ = (
        UniqueConstraint("document_id", "version", name="uq_document_version"),
    )


class DocumentActivity(Base):
    __tablename__ = "document_activities"

    id = Column(String, primary_key=True, default=new_uuid)
    document_id = Column(String, ForeignKey("documents.id"), nullable=False, index=True)
    user_id = Column(String, ForeignKey("users.id"), nullable=False)
    action = Column(String, nullable=False)
    details = Column(JSON, nullable=False, default=dict)
    created_at = Column(DateTime(timezone=True), default=utcnow, index=True)


class DocumentCollaborator(Base):
    __tablename__ = "document_collaborators"

    id = Column(String, primary_key=True, default=new_uuid)
    document_id = Column(String, ForeignKey("documents.id"), nullable=False, index=True)
    user_id = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    role = Column(SQLEnum(CollaboratorRole), nullable=False, default=CollaboratorRole.VIEWER)
    added_by = Column(String, ForeignKey("users.id"), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)

    __table_args__ = (
        UniqueConstraint("document_id", "user_id", name="uq_document_collaborator"),
    )


class DocumentComment(Base):
    __tablename__ = "document_comments"

    id = Column(String, primary_key=True, default=new_uuid)
    document_id = Column(String, ForeignKey("documents.id"), nullable=False, index=True)
    user_id = Column(String, ForeignKey("users.id"), nullable=False)
    parent_id = Column(String, ForeignKey("document_comments.id"), nullable=True)
    content = Column(Text, nullable=False)
    resolved = Column(Boolean, default=False)
    created_at = Column(DateTime(timezone=True), default=utcnow)


class DocumentTemplate(Base):
    __tablename__ = "document_templates"

    id = Column(String, primary_key=True, default=new_uuid)
    workspace_id = Column(String, ForeignKey("workspaces.id"), nullable=False, index=True)
    name = Column(String, nullable=False)
    description = Column(Text, nullable=True)
    category = Column(String, nullable=False, default="general")
    content = Column(Text, nullable=False, default="")
    usage_count = Column(Integer, nullable=False, default=0)
    is_public = Column(Boolean, default=True)
    created_by = Column(String, ForeignKey("users.id"), nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)


# ============================================================
# TASKS
# ============================================================

class Task(Base):
    __tablename__ = "tasks"

    id = Column(String, primary_key=True, default=new_uuid)
    workspace_id = Column(String, ForeignKey("workspaces.id"), nullable=False, index=True)
    channel_id = Column(String, ForeignKey("channels.id"), nullable=True, index=True)
    project_id = Column(String, ForeignKey("projects.id"), nullable=True, index=True)
    title = Column(String, nullable=False)
    description = Column(Text, nullable=True)
    status = Column(SQLEnum(TaskStatus), nullable=False, default=TaskStatus.TODO, index=True)
    priority = Column(SQLEnum(TaskPriority), nullable=False, default=TaskPriority.MEDIUM)
    assignee_id = Column(String, ForeignKey("users.id"), nullable=True, index=True)
    created_by = Column(String, ForeignKey("users.id"), nullable=False)
    due_date = Column(DateTime(timezone=True), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, index=True)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    labels = relationship("TaskLabel", cascade="all, delete-orphan")
    comments = relationship("TaskComment", cascade="all, delete-orphan")
    activities = relationship("TaskActivity", cascade="all, delete-orphan")


class TaskLabel(Base):
    __tablename__ = "task_labels"

    id = Column(String, primary_key=True, default=new_uuid)
    task_id = Column(String, ForeignKey("tasks.id"), nullable=False, index=True)
    name = Column(String(50), nullable=False)
    color = Column(String(7), nullable=False, default="#6366f1")


class TaskComment(Base):
    __tablename__ = "task_comments"

    id = Column(String, primary_key=True, default=new_uuid)
    task_id = Column(String, ForeignKey("tasks.id"), nullable=False, index=True)
    user_id = Column(String, ForeignKey("users.id"), nullable=False)
    content = Column(Text, nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow)


class TaskActivity(Base):
    __tablename__ = "task_activities"

    id = Column(String, primary_key=True, default=new_uuid)
    task_id = Column(String, ForeignKey("tasks.id"), nullable=False, index=True)
    user_id = Column(String, ForeignKey("users.id"), nullable=False)
    action = Column(String, nullable=False)
    field_name = Column(String, nullable=True)
    old_value = Column(Text, nullable=True)
    new_value = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, index=True)


# ============================================================
# MEETINGS & CALENDAR
# ============================================================

class Meeting(Base):
    __tablename__ = "meetings"

    id = Column(String, primary_key=True, default=new_uuid)
    workspace_id = Column(String, ForeignKey("workspaces.id"), nullable=False, index=True)
    channel_id = Column(String, ForeignKey("channels.id"), nullable=True)
    title = Column(String, nullable=False)
    description = Column(Text, nullable=True)
    host_id = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    room_id = Column(String, unique=True, nullable=False, default=new_uuid)
    status = Column(String, nullable=False, default="scheduled")
    start_time = Column(DateTime(timezone=True), nullable=False)
    end_time = Column(DateTime(timezone=True), nullable=True)
    recording_enabled = Column(Boolean, default=False)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    participants = relationship("MeetingParticipant", cascade="all, delete-orphan")
    recordings = relationship("MeetingRecording", cascade="all, delete-orphan")


class MeetingParticipant(Base):
    __tablename__ = "meeting_participants"

    id = Column(String, primary_key=True, default=new_uuid)
    meeting_id = Column(String, ForeignKey("meetings.id"), nullable=False, index=True)
    user_id = Column(String, ForeignKey("users.id"), nullable=False)
    role = Column(String, nullable=False, default="participant")
    invited_at = Column(DateTime(timezone=True), default=utcnow)
    joined_at = Column(DateTime(timezone=True), nullable=True)
    left_at = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        UniqueConstraint("meeting_id", "user_id", name="uq_meeting_participant"),
    )


class MeetingRecording(Base):
    __tablename__ = "meeting_recordings"

    id = Column(String, primary_key=True, default=new_uuid)
    meeting_id = Column(String, ForeignKey("meetings.id"), nullable=False, index=True)
    url = Column(String, nullable=False)
    duration_seconds = Column(Integer, nullable=True)
    size = Column(BigInteger, nullable=True)
    created_by = Column(String, ForeignKey("users.id"), nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow)


class CalendarEvent(Base):
    __tablename__ = "calendar_events"

    id = Column(String, primary_key=True, default=new_uuid)
    workspace_id = Column(String, ForeignKey("workspaces.id"), nullable=False, index=True)
    channel_id = Column(String, ForeignKey("channels.id"), nullable=True)
    title = Column(String, nullable=False)
    description = Column(Text, nullable=True)
    location = Column(String, nullable=True)
    start_time = Column(DateTime(timezone=True), nullable=False, index=True)
    end_time = Column(DateTime(timezone=True), nullable=False)
    all_day = Column(Boolean, default=False)
    recurrence = Column(String, nullable=True)
    created_by = Column(String, ForeignKey("users.id"), nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    attendees = relationship("EventAttendee", cascade="all, delete-orphan")
    reminders = relationship("EventReminder", cascade="all, delete-orphan")


class EventAttendee(Base):
    __tablename__ = "event_attendees"

    id = Column(String, primary_key=True, default=new_uuid)
    event_id = Column(String, ForeignKey("calendar_events.id"), nullable=False, index=True)
    user_id = Column(String, ForeignKey("users.id"), nullable=False)
    status = Column(String, nullable=False, default="pending")
    responded_at = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        UniqueConstraint("event_id", "user_id", name="uq_event_attendee"),
    )


class EventReminder(Base):
    __tablename__ = "event_reminders"

    id = Column(String, primary_key=True, default=new_uuid)
    event_id = Column(String, ForeignKey("calendar_events.id"), nullable=False, index=True)
    minutes_before = Column(Integer, nullable=False, default=15)
    method = Column(String, nullable=False, default="notification")


# ============================================================
# ANALYTICS
# ============================================================

class AnalyticsReport(Base):
    __tablename__ = "analytics_reports"

    id = Column(String, primary_key=True, default=new_uuid)
    workspace_id = Column(String, ForeignKey("workspaces.id"), nullable=False, index=True)
    name = Column(String, nullable=False)
    description = Column(Text, nullable=True)
    report_type = Column(String, nullable=False, default="custom")
    config = Column(JSON, nullable=False, default=dict)
    is_public = Column(Boolean, default=False)
    created_by = Column(String, ForeignKey("users.id"), nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    snapshots = relationship("ReportSnapshot", cascade="all, delete-orphan")


class ReportSnapshot(Base):
    __tablename__ = "report_snapshots"

    id = Column(String, primary_key=True, default=new_uuid)
    report_id = Column(String, ForeignKey("analytics_reports.id"), nullable=False, index=True)
    data = Column(JSON, nullable=False, default=dict)
    created_by = Column(String, ForeignKey("users.id"), nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow, index=True)


class Dashboard(Base):
    __tablename__ = "dashboards"

    id = Column(String, primary_key=True, default=new_uuid)
    workspace_id = Column(String, ForeignKey("workspaces.id"), nullable=False, index=True)
    name = Column(String, nullable=False)
    description = Column(Text, nullable=True)
    layout = Column(JSON, nullable=False, default=dict)
    is_default = Column(Boolean, default=False)
    created_by = Column(String, ForeignKey("users.id"), nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow)

    widgets = relationship("DashboardWidget", cascade="all, delete-orphan")


class DashboardWidget(Base):
    __tablename__ = "dashboard_widgets"

    id = Column(String, primary_key=True, default=new_uuid)
    dashboard_id = Column(String, ForeignKey("dashboards.id"), nullable=False, index=True)
    widget_type = Column(String, nullable=False)
    title = Column(String, nullable=False)
    config = Column(JSON, nullable=False, default=dict)
    position = Column(JSON, nullable=False, default=dict)


class MetricKind(str, PyEnum):
    WORKSPACE = "workspace"
    USER = "user"
    PERFORMANCE = "performance"


class Metric(Base):
    """A single recorded data point; user metrics belong to the member who sent them."""
    __tablename__ = "metrics"

    id = Column(String, primary_key=True, default=new_uuid)
    workspace_id = Column(String, ForeignKey("workspaces.id"), nullable=False, index=True)
    kind = Column(SQLEnum(MetricKind), nullable=False)
    user_id = Column(String, ForeignKey("users.id"), nullable=True, index=True)
    metric_type = Column(String(100), nullable=False)
    value = Column(Float, nullable=False)
    details = Column(JSON, nullable=False, default=dict)
    recorded_at = Column(DateTime(timezone=True), default=utcnow, index=True)

    __table_args__ = (
        Index("ix_metrics_workspace_kind_type", "workspace_id", "kind", "metric_type"),
    )


# ============================================================
# SECURITY
# ============================================================

class SecurityPolicy(Base):
    __tablename__ = "security_policies"

    id = Column(String, primary_key=True, default=new_uuid)
    workspace_id = Column(String, ForeignKey("workspaces.id"), nullable=False, index=True)
    name = Column(String, nullable=False)
    policy_type = Column(String, nullable=False)
    rules = Column(JSON, nullable=False, default=dict)
    is_active = Column(Boolean, default=True)
    created_by = Column(String, ForeignKey("users.id"), nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)


class UserSecuritySetting(Base):
    __tablename__ = "user_security_settings"

    id = Column(String, primary_key=True, default=new_uuid)
    user_id = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    workspace_id = Column(String, ForeignKey("workspaces.id"), nullable=False, index=True)
    mfa_enabled = Column(Boolean, default=False)
    mfa_secret = Column(String, nullable=True)
    session_timeout = Column(Integer, nullable=False, default=480)
    last_login_at = Column(DateTime(timezone=True), nullable=True)
    last_login_ip = Column(String, nullable=True)
    last_login_device = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    backup_codes = relationship("MfaBackupCode", cascade="all, delete-orphan")

    __table_args__ = (
        UniqueConstraint("user_id", "workspace_id", name="uq_user_security_setting"),
    )


class MfaBackupCode(Base):
    __tablename__ = "mfa_backup_codes"

    id = Column(String, primary_key=True, default=new_uuid)
    setting_id = Column(String, ForeignKey("user_security_settings.id"), nullable=False, index=True)
    code_hash = Column(String, nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow)

    __table_args__ = (
        UniqueConstraint("setting_id", "code_hash", name="uq_mfa_backup_code"),
    )


class SecurityAuditLog(Base):
    __tablename__ = "security_audit_logs"

    id = Column(String, primary_key=True, default=new_uuid)
    workspace_id = Column(String, ForeignKey("workspaces.id"), nullable=False, index=True)
    user_id = Column(String, ForeignKey("users.id"), nullable=True, index=True)
    action = Column(String, nullable=False, index=True)
    resource_type = Column(String, nullable=True)
    resource_id = Column(String, nullable=True)
    details = Column(JSON, nullable=False, default=dict)
    ip_address = Column(String, nullable=True)
    user_agent = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, index=True)

    __table_args__ = (
        Index("idx_security_audit_ws_created", "workspace_id", "created_at"),
    )


# ============================================================
# INTEGRATIONS
# ============================================================

class Integration(Base):
    __tablename__ = "integrations"

    id = Column(String, primary_key=True, default=new_uuid)
    workspace_id = Column(String, ForeignKey("workspaces.id"), nullable=False, index=True)
    name = Column(String, nullable=False)
    provider = Column(String, nullable=False)
    config = Column(JSON, nullable=False, default=dict)
    is_active = Column(Boolean, default=True)
    created_by = Column(String, ForeignKey("users.id"), nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow)

    connections = relationship("IntegrationConnection", cascade="all, delete-orphan")


class IntegrationConnection(Base):
    __tablename__ = "integration_connections"

    id = Column(String, primary_key=True, default=new_uuid)
    integration_id = Column(String, ForeignKey("integrations.id"), nullable=False, index=True)
    external_account = Column(String, nullable=True)
    status = Column(String, nullable=False, default="connected")
    settings = Column(JSON, nullable=False, default=dict)
    connected_by = Column(String, ForeignKey("users.id"), nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow)


class Webhook(Base):
    __tablename__ = "webhooks"

    id = Column(String, primary_key=True, default=new_uuid)
    workspace_id = Column(String, ForeignKey("workspaces.id"), nullable=False, index=True)
    integration_id = Column(String, ForeignKey("integrations.id"), nullable=True)
    url = Column(String, nullable=False)
    events = Column(JSON, nullable=False, default=list)
    secret = Column(String, nullable=False)
    is_active = Column(Boolean, default=True)
    created_by = Column(String, ForeignKey("users.id"), nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow)


class ApiKey(Base):
    __tablename__ = "api_keys"

    id = Column(String, primary_key=True, default=new_uuid)
    workspace_id = Column(String, ForeignKey("workspaces.id"), nullable=False, index=True)
    name = Column(String, nullable=False)
    key_hash = Column(String, unique=True, nullable=False, index=True)
    key_prefix = Column(String(16), nullable=False)
    scopes = Column(JSON, nullable=False, default=list)
    is_active = Column(Boolean, default=True)
    created_by = Column(String, ForeignKey("users.id"), nullable=False)
    expires_at = Column(DateTime(timezone=True), nullable=True)
    revoked_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)


# ============================================================
# APPROVALS
# ============================================================

class ApprovalWorkflow(Base):
    __tablename__ = "approval_workflows"

    id = Column(String, primary_key=True, default=new_uuid)
    workspace_id = Column(String, ForeignKey("workspaces.id"), nullable=False, index=True)
    name = Column(String, nullable=False)
    description = Column(Text, nullable=True)
    is_active = Column(Boolean, default=True)
    created_by = Column(String, ForeignKey("users.id"), nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow)

    stages = relationship("ApprovalStage", cascade="all, delete-orphan")


class ApprovalStage(Base):
    __tablename__ = "approval_stages"

    id = Column(String, primary_key=True, default=new_uuid)
    workflow_id = Column(String, ForeignKey("approval_workflows.id"), nullable=False, index=True)
    position = Column(Integer, nullable=False)
    name = Column(String, nullable=False)
    # NULL approver means any workspace owner/admin may decide
    approver_id = Column(String, ForeignKey("users.id"), nullable=True)

    __table_args__ = (
        UniqueConstraint("workflow_id", "position", name="uq_approval_stage_position"),
    )


class ApprovalRequest(Base):
    __tablename__ = "approval_requests"

    id = Column(String, primary_key=True, default=new_uuid)
    workflow_id = Column(String, ForeignKey("approval_workflows.id"), nullable=False, index=True)
    workspace_id = Column(String, ForeignKey("workspaces.id"), nullable=False, index=True)
    title = Column(String, nullable=False)
    description = Column(Text, nullable=True)
    resource_type = Column(String, nullable=True)
    resource_id = Column(String, nullable=True)
    requested_by = Column(String, ForeignKey("users.id"), nullable=False)
    current_stage_id = Column(String, ForeignKey("approval_stages.id"), nullable=True)
    status = Column(SQLEnum(ApprovalStatus), nullable=False, default=ApprovalStatus.PENDING, index=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)

    decisions = relationship("ApprovalDecision", cascade="all, delete-orphan")


class ApprovalDecision(Base):
    __tablename__ = "approval_decisions"

    id = Column(String, primary_key=True, default=new_uuid)
    request_id = Column(String, ForeignKey("approval_requests.id"), nullable=False, index=True)
    stage_id = Column(String, ForeignKey("approval_stages.id"), nullable=False)
    user_id = Column(String, ForeignKey("users.id"), nullable=False)
    decision = Column(String, nullable=False)
    comment = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)


# ============================================================
# PROJECTS
# ============================================================

class Project(Base):
    __tablename__ = "projects"

    id = Column(String, primary_key=True, default=new_uuid)
    workspace_id = Column(String, ForeignKey("workspaces.id"), nullable=False, index=True)
    name = Column(String, nullable=False)
    description = Column(Text, nullable=True)
    status = Column(String, nullable=False, default="active")
    start_date = Column(DateTime(timezone=True), nullable=True)
    end_date = Column(DateTime(timezone=True), nullable=True)
    created_by = Column(String, ForeignKey("users.id"), nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    members = relationship("ProjectMember", cascade="all, delete-orphan")
    resources = relationship("ProjectResource", cascade="all, delete-orphan")
    milestones = relationship("ProjectMilestone", cascade="all, delete-orphan")


class ProjectMember(Base):
    __tablename__ = "project_members"

    id = Column(String, primary_key=True, default=new_uuid)
    project_id = Column(String, ForeignKey("projects.id"), nullable=False, index=True)
    user_id = Column(String, ForeignKey("users.id"), nullable=False)
    role = Column(String, nullable=False, default="member")
    joined_at = Column(DateTime(timezone=True), default=utcnow)

    __table_args__ = (
        UniqueConstraint("project_id", "user_id", name="uq_project_member"),
    )


class ProjectResource(Base):
    __tablename__ = "project_resources"

    id = Column(String, primary_key=True, default=new_uuid)
    project_id = Column(String, ForeignKey("projects.id"), nullable=False, index=True)
    name = Column(String, nullable=False)
    resource_type = Column(String, nullable=False, default="link")
    url = Column(String, nullable=True)
    allocation = Column(Float, nullable=True)
    added_by = Column(String, ForeignKey("users.id"), nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow)


class ProjectMilestone(Base):
    __tablename__ = "project_milestones"

    id = Column(String, primary_key=True, default=new_uuid)
    project_id = Column(String, ForeignKey("projects.id"), nullable=False, index=True)
    title = Column(String, nullable=False)
    description = Column(Text, nullable=True)
    due_date = Column(DateTime(timezone=True), nullable=True)
    status = Column(String, nullable=False, default="pending")
    created_at = Column(DateTime(timezone=True), default=utcnow)


# ============================================================
# KNOWLEDGE BASE
# ============================================================

class KnowledgeBase(Base):
    """A shelf of articles; categories are bases flagged ``is_category`` and may nest."""
    __tablename__ = "knowledge_bases"

    id = Column(String, primary_key=True, default=new_uuid)
    workspace_id = Column(String, ForeignKey("workspaces.id"), nullable=False, index=True)
    parent_id = Column(String, ForeignKey("knowledge_bases.id"), nullable=True, index=True)
    name = Column(String, nullable=False)
    description = Column(Text, nullable=True)
    is_category = Column(Boolean, default=False)
    icon = Column(String, nullable=True)
    color = Column(String, nullable=True)
    sort_order = Column(Integer, nullable=False, default=0)
    is_public = Column(Boolean, default=True)
    is_archived = Column(Boolean, default=False)
    created_by = Column(String, ForeignKey("users.id"), nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow)


class KnowledgeArticle(Base):
    __tablename__ = "knowledge_articles"

    id = Column(String, primary_key=True, default=new_uuid)
    base_id = Column(String, ForeignKey("knowledge_bases.id"), nullable=False, index=True)
    category_id = Column(String, ForeignKey("knowledge_bases.id"), nullable=True)
    title = Column(String, nullable=False)
    slug = Column(String, nullable=False)
    content = Column(Text, nullable=False, default="")
    excerpt = Column(Text, nullable=True)
    status = Column(String, nullable=False, default="draft")
    tags = Column(JSON, nullable=False, default=list)
    sort_order = Column(Integer, nullable=False, default=0)
    is_featured = Column(Boolean, default=False)
    is_public = Column(Boolean, default=True)
    author_id = Column(String, ForeignKey("users.id"), nullable=False)
    published_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    versions = relationship("KnowledgeArticleVersion", cascade="all, delete-orphan")

    __table_args__ = (
        UniqueConstraint("base_id", "slug", name="uq_article_slug"),
    )


class KnowledgeArticleVersion(Base):
    __tablename__ = "knowledge_article_versions"

    id = Column(String, primary_key=True, default=new_uuid)
    article_id = Column(String, ForeignKey("knowledge_articles.id"), nullable=False, index=True)
    version = Column(Integer, nullable=False)
    title = Column(String, nullable=False)
    content = Column(Text, nullable=False, default="")
    author_id = Column(String, ForeignKey("users.id"), nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow)

    __table_args__ = (
        UniqueConstraint("article_id", "version", name="uq_article_version"),
    )


# ============================================================
# AUTOMATION WORKFLOWS
# ============================================================

class Workflow(Base):
    __tablename__ = "workflows"

    id = Column(String, primary_key=True, default=new_uuid)
    workspace_id = Column(String, ForeignKey("workspaces.id"), nullable=False, index=True)
    name = Column(String, nullable=False)
    description = Column(Text, nullable=True)
    trigger_type = Column(String, nullable=False, default="manual")
    trigger_config = Column(JSON, nullable=False, default=dict)
    actions = Column(JSON, nullable=False, default=list)
    is_active = Column(Boolean, default=True)
    created_by = Column(String, ForeignKey("users.id"), nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    executions = relationship("WorkflowExecution", cascade="all, delete-orphan")


class WorkflowExecution(Base):
    __tablename__ = "workflow_executions"

    id = Column(String, primary_key=True, default=new_uuid)
    workflow_id = Column(String, ForeignKey("workflows.id"), nullable=False, index=True)
    user_id = Column(String, ForeignKey("users.id"), nullable=False)
    status = Column(String, nullable=False, default="running")
    trigger_data = Column(JSON, nullable=False, default=dict)
    results = Column(JSON, nullable=False, default=list)
    error_message = Column(Text, nullable=True)
    started_at = Column(DateTime(timezone=True), default=utcnow, index=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)


# ============================================================
# MEETING ROOMS
# ============================================================

class MeetingRoom(Base):
    __tablename__ = "meeting_rooms"

    id = Column(String, primary_key=True, default=new_uuid)
    workspace_id = Column(String, ForeignKey("workspaces.id"), nullable=False, index=True)
    name = Column(String, nullable=False)
    description = Column(Text, nullable=True)
    location = Column(String, nullable=True)
    capacity = Column(Integer, nullable=True)
    equipment = Column(JSON, nullable=False, default=list)
    is_active = Column(Boolean, default=True)
    created_by = Column(String, ForeignKey("users.id"), nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow)

    bookings = relationship("RoomBooking", cascade="all, delete-orphan")


class RoomBooking(Base):
    __tablename__ = "room_bookings"

    id = Column(String, primary_key=True, default=new_uuid)
    room_id = Column(String, ForeignKey("meeting_rooms.id"), nullable=False, index=True)
    meeting_id = Column(String, ForeignKey("meetings.id"), nullable=True)
    title = Column(String, nullable=False)
    start_time = Column(DateTime(timezone=True), nullable=False)
    end_time = Column(DateTime(timezone=True), nullable=False)
    booked_by = Column(String, ForeignKey("users.id"), nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow)

    __table_args__ = (
        Index("idx_room_booking_window", "room_id", "start_time", "end_time"),
    )


# ============================================================
# NOTIFICATIONS
# ============================================================

class Notification(Base):
    __tablename__ = "notifications"

    id = Column(String, primary_key=True, default=new_uuid)
    user_id = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    workspace_id = Column(String, ForeignKey("workspaces.id"), nullable=True)
    type = Column(String, nullable=False, default="info")
    title = Column(String, nullable=False)
    content = Column(Text, nullable=False)
    action_url = Column(String, nullable=True)
    read_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, index=True)

    __table_args__ = (
        Index("idx_notification_user_unread", "user_id", "read_at"),
    )


# ============================================================
# AI
# ============================================================

class AIContentGeneration(Base):
    __tablename__ = "ai_content_generations"

    id = Column(String, primary_key=True, default=new_uuid)
    workspace_id = Column(String, ForeignKey("workspaces.id"), nullable=False, index=True)
    user_id = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    content_type = Column(String, nullable=False)
    prompt = Column(Text, nullable=False)
    context = Column(Text, nullable=True)
    tone = Column(String, nullable=True)
    length = Column(String, nullable=True)
    generated_content = Column(Text, nullable=False)
    model_used = Column(String, nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow, index=True)


class AIDocumentAnalysis(Base):
    __tablename__ = "ai_document_analyses"

    id = Column(String, primary_key=True, default=new_uuid)
    document_id = Column(String, ForeignKey("documents.id"), nullable=False, index=True)
    workspace_id = Column(String, ForeignKey("workspaces.id"), nullable=False, index=True)
    user_id = Column(String, ForeignKey("users.id"), nullable=False)
    analysis_type = Column(String, nullable=False)
    result = Column(JSON, nullable=False, default=dict)
    confidence = Column(Float, nullable=False, default=0.0)
    model_used = Column(String, nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow, index=True)
