# models.py — Database models for the PMS API
# - UUID string primary keys everywhere
# - Workspace-scoped member roles (ADMIN ... CLIENT)
# - Tasks, bugs, attendance, weekly reports, requirements, notifications, invitations
# - JSON metadata columns for labels, skills, daily descriptions, activity changes

import uuid
from datetime import datetime, timezone
from enum import Enum as PyEnum
from typing import Optional

from sqlalchemy import (
    Column, String, DateTime, JSON, Boolean, Integer,
    Enum as SQLEnum, ForeignKey, Text, Index, UniqueConstraint,
)
from sqlalchemy.orm import declarative_base, relationship

Base = declarative_base()


def utcnow():
    return datetime.now(timezone.utc)


def new_uuid():
    return str(uuid.uuid4())


def as_utc(dt: Optional[datetime]) -> Optional[datetime]:
    """SQLite hands back naive datetimes; everything is stored as UTC."""
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def iso(dt) -> Optional[str]:
    if dt is None:
        return None
    return as_utc(dt).isoformat() if isinstance(dt, datetime) else str(dt)


def _enum(enum_cls):
    return SQLEnum(
        enum_cls,
        values_callable=lambda e: [m.value for m in e],
        native_enum=False,
        length=32,
    )


# ============================================================
# ENUMS
# ============================================================

class MemberRole(str, PyEnum):
    ADMIN = "ADMIN"
    PROJECT_MANAGER = "PROJECT_MANAGER"
    TEAM_LEAD = "TEAM_LEAD"
    MANAGEMENT = "MANAGEMENT"
    EMPLOYEE = "EMPLOYEE"
    CLIENT = "CLIENT"


class TaskStatus(str, PyEnum):
    BACKLOG = "BACKLOG"
    TODO = "TODO"
    IN_PROGRESS = "IN_PROGRESS"
    IN_REVIEW = "IN_REVIEW"
    DONE = "DONE"


class TaskPriority(str, PyEnum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"


class IssueType(str, PyEnum):
    TASK = "TASK"
    STORY = "STORY"
    BUG = "BUG"
    EPIC = "EPIC"
    SUB_TASK = "SUB_TASK"
    IMPROVEMENT = "IMPROVEMENT"


class BugStatus(str, PyEnum):
    OPEN = "Open"
    IN_PROGRESS = "In Progress"
    RESOLVED = "Resolved"
    CLOSED = "Closed"


class BugPriority(str, PyEnum):
    LOW = "Low"
    MEDIUM = "Medium"
    HIGH = "High"
    CRITICAL = "Critical"


class AttendanceStatus(str, PyEnum):
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    AUTO_COMPLETED = "AUTO_COMPLETED"


class WeeklyReportStatus(str, PyEnum):
    DRAFT = "draft"
    SUBMITTED = "submitted"
    REVIEWED = "reviewed"
    ARCHIVED = "archived"


class InvitationStatus(str, PyEnum):
    PENDING = "PENDING"
    ACCEPTED = "ACCEPTED"
    DECLINED = "DECLINED"
    EXPIRED = "EXPIRED"


class ClientInvitationStatus(str, PyEnum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    REVOKED = "revoked"


class RequirementStatus(str, PyEnum):
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"


class NotificationType(str, PyEnum):
    TASK_ASSIGNED = "TASK_ASSIGNED"
    TASK_STATUS_CHANGED = "TASK_STATUS_CHANGED"
    TASK_UPDATED = "TASK_UPDATED"
    BUG_ASSIGNED = "BUG_ASSIGNED"
    BUG_STATUS_CHANGED = "BUG_STATUS_CHANGED"
    BUG_COMMENT = "BUG_COMMENT"
    WEEKLY_REPORT_REVIEWED = "WEEKLY_REPORT_REVIEWED"
    WORKSPACE_INVITE = "WORKSPACE_INVITE"
    REQUIREMENT_ASSIGNED = "REQUIREMENT_ASSIGNED"
    REQUIREMENT_STATUS_CHANGED = "REQUIREMENT_STATUS_CHANGED"


# ============================================================
# USERS
# ============================================================

class User(Base):
    __tablename__ = "users"

    id = Column(String, primary_key=True, default=new_uuid)
    email = Column(String, unique=True, nullable=False, index=True)
    name = Column(String, nullable=False, index=True)
    password_hash = Column(String, nullable=False)
    mobile_no = Column(String, nullable=True, index=True)
    native = Column(String, nullable=True)
    designation = Column(String, nullable=True)
    department = Column(String, nullable=True, index=True)
    experience = Column(Integer, nullable=True)
    date_of_birth = Column(DateTime(timezone=True), nullable=True)
    date_of_joining = Column(DateTime(timezone=True), nullable=True)
    skills = Column(JSON, nullable=True)
    is_active = Column(Boolean, default=True, index=True)
    last_login_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, index=True)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    memberships = relationship("Member", back_populates="user", passive_deletes=True)
    notifications = relationship("Notification", back_populates="user", passive_deletes=True)


class RevokedToken(Base):
    __tablename__ = "revoked_tokens"

    id = Column(String, primary_key=True, default=new_uuid)
    jti = Column(String, unique=True, nullable=False, index=True)
    user_id = Column(String, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    revoked_at = Column(DateTime(timezone=True), default=utcnow)
    expires_at = Column(DateTime(timezone=True), nullable=False)


# ============================================================
# WORKSPACES & MEMBERS
# ============================================================

class Workspace(Base):
    __tablename__ = "workspaces"

    id = Column(String, primary_key=True, default=new_uuid)
    name = Column(String, nullable=False, index=True)
    image_url = Column(String, nullable=True)
    invite_code = Column(String, unique=True, nullable=False, index=True)
    user_id = Column(String, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow, index=True)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    members = relationship("Member", back_populates="workspace", passive_deletes=True)
    projects = relationship("Project", back_populates="workspace", passive_deletes=True)


class Member(Base):
    __tablename__ = "members"

    id = Column(String, primary_key=True, default=new_uuid)
    user_id = Column(String, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    workspace_id = Column(String, ForeignKey("workspaces.id", ondelete="CASCADE"), nullable=False, index=True)
    project_id = Column(String, ForeignKey("projects.id", ondelete="SET NULL"), nullable=True)  # CLIENT scope
    role = Column(_enum(MemberRole), nullable=False, default=MemberRole.EMPLOYEE, index=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    user = relationship("User", back_populates="memberships")
    workspace = relationship("Workspace", back_populates="members")

    __table_args__ = (
        UniqueConstraint("workspace_id", "user_id", name="uq_member_workspace_user"),
    )


# ============================================================
# PROJECTS & TASKS
# ============================================================

class Project(Base):
    __tablename__ = "projects"

    id = Column(String, primary_key=True, default=new_uuid)
    name = Column(String, nullable=False, index=True)
    image_url = Column(String, nullable=True)
    description = Column(Text, nullable=True)
    workspace_id = Column(String, ForeignKey("workspaces.id", ondelete="SET NULL"), nullable=True, index=True)
    post_date = Column(DateTime(timezone=True), nullable=True)
    tentative_end_date = Column(DateTime(timezone=True), nullable=True)
    assignees = Column(JSON, default=list)  # user ids
    created_at = Column(DateTime(timezone=True), default=utcnow, index=True)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    workspace = relationship("Workspace", back_populates="projects")
    tasks = relationship("Task", back_populates="project", passive_deletes=True)


class Task(Base):
    __tablename__ = "tasks"

    id = Column(String, primary_key=True, default=new_uuid)
    issue_id = Column(String, nullable=False, index=True)  # e.g. "PMS-42"
    summary = Column(String, nullable=False)
    description = Column(Text, nullable=True)
    issue_type = Column(_enum(IssueType), default=IssueType.TASK, nullable=False)
    status = Column(_enum(TaskStatus), default=TaskStatus.TODO, nullable=False, index=True)
    priority = Column(_enum(TaskPriority), default=TaskPriority.MEDIUM, nullable=False)
    resolution = Column(String, nullable=True)

    project_id = Column(String, ForeignKey("projects.id", ondelete="CASCADE"), nullable=True, index=True)
    workspace_id = Column(String, ForeignKey("workspaces.id", ondelete="SET NULL"), nullable=True, index=True)
    parent_task_id = Column(String, ForeignKey("tasks.id", ondelete="SET NULL"), nullable=True)

    assignee_id = Column(String, ForeignKey("users.id", ondelete="SET NULL"), nullable=True, index=True)
    reporter_id = Column(String, ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    creator_id = Column(String, ForeignKey("users.id", ondelete="SET NULL"), nullable=True)

    due_date = Column(DateTime(timezone=True), nullable=True, index=True)
    labels = Column(JSON, default=list)
    estimated_hours = Column(Integer, nullable=True)
    actual_hours = Column(Integer, nullable=True, default=0)
    position = Column(Integer, default=1000)
    upload_batch_id = Column(String, nullable=True, index=True)

    created_at = Column(DateTime(timezone=True), default=utcnow, index=True)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)
    resolved_at = Column(DateTime(timezone=True), nullable=True)

    project = relationship("Project", back_populates="tasks")

    __table_args__ = (
        Index("idx_task_project_status", "project_id", "status"),
        Index("idx_task_workspace_assignee", "workspace_id", "assignee_id"),
    )


class ActivityLog(Base):
    """Append-only trail of who changed what"""
    __tablename__ = "activity_logs"

    id = Column(String, primary_key=True, default=new_uuid)
    action_type = Column(String, nullable=False, index=True)
    entity_type = Column(String, nullable=False)
    entity_id = Column(String, nullable=True)
    user_id = Column(String, ForeignKey("users.id", ondelete="SET NULL"), nullable=True, index=True)
    user_name = Column(String, nullable=False)
    workspace_id = Column(String, nullable=True, index=True)
    project_id = Column(String, nullable=True, index=True)
    task_id = Column(String, nullable=True, index=True)
    changes = Column(JSON, nullable=True)
    summary = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, index=True)


# ============================================================
# BUG TRACKER
# ============================================================

class BugType(Base):
    __tablename__ = "bug_types"

    id = Column(String, primary_key=True, default=new_uuid)
    name = Column(String, unique=True, nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow)


class Bug(Base):
    __tablename__ = "bugs"

    id = Column(String, primary_key=True, default=new_uuid)
    bug_id = Column(String, unique=True, nullable=False, index=True)  # "BUG-001"
    bug_type = Column(String, nullable=False, default="Development")
    bug_description = Column(Text, nullable=False)
    priority = Column(_enum(BugPriority), default=BugPriority.MEDIUM, nullable=False)
    status = Column(_enum(BugStatus), default=BugStatus.OPEN, nullable=False, index=True)
    assigned_to = Column(String, ForeignKey("users.id", ondelete="SET NULL"), nullable=True, index=True)
    assigned_to_name = Column(String, nullable=True)
    reported_by = Column(String, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    reported_by_name = Column(String, nullable=False)
    workspace_id = Column(String, ForeignKey("workspaces.id", ondelete="SET NULL"), nullable=True)
    file_url = Column(Text, nullable=True)
    output_file_url = Column(Text, nullable=True)
    resolved_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, index=True)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    comments = relationship(
        "BugComment", back_populates="bug", passive_deletes=True,
        order_by="BugComment.created_at",
    )


class BugComment(Base):
    __tablename__ = "bug_comments"

    id = Column(String, primary_key=True, default=new_uuid)
    bug_id = Column(String, ForeignKey("bugs.id", ondelete="CASCADE"), nullable=False, index=True)
    user_id = Column(String, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    user_name = Column(String, nullable=False)
    comment = Column(Text, nullable=False)
    file_url = Column(Text, nullable=True)
    is_system_comment = Column(Boolean, default=False, nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow, index=True)

    bug = relationship("Bug", back_populates="comments")


# ============================================================
# ATTENDANCE
# ============================================================

class Attendance(Base):
    __tablename__ = "attendance"

    id = Column(String, primary_key=True, default=new_uuid)
    user_id = Column(String, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    workspace_id = Column(String, ForeignKey("workspaces.id", ondelete="SET NULL"), nullable=True)
    project_id = Column(String, ForeignKey("projects.id", ondelete="SET NULL"), nullable=True)
    shift_start_time = Column(DateTime(timezone=True), nullable=False, index=True)
    shift_end_time = Column(DateTime(timezone=True), nullable=True)
    total_duration = Column(Integer, nullable=True)  # minutes
    end_activity = Column(Text, nullable=True)
    daily_tasks = Column(JSON, nullable=True)
    status = Column(_enum(AttendanceStatus), default=AttendanceStatus.IN_PROGRESS, nullable=False, index=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    __table_args__ = (
        Index("idx_attendance_user_status", "user_id", "status"),
    )


# ============================================================
# NOTIFICATIONS
# ============================================================

class Notification(Base):
    __tablename__ = "notifications"

    id = Column(String, primary_key=True, default=new_uuid)
    user_id = Column(String, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    task_id = Column(String, nullable=True)
    type = Column(String, nullable=False)
    title = Column(String, nullable=False)
    message = Column(Text, nullable=True)
    action_by = Column(String, nullable=True)
    action_by_name = Column(String, nullable=True)
    is_read = Column(Boolean, default=False, nullable=False)
    read_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, index=True)

    user = relationship("User", back_populates="notifications")


# ============================================================
# WEEKLY REPORTS
# ============================================================

class WeeklyReport(Base):
    __tablename__ = "weekly_reports"

    id = Column(String, primary_key=True, default=new_uuid)
    user_id = Column(String, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    from_date = Column(DateTime(timezone=True), nullable=False, index=True)
    to_date = Column(DateTime(timezone=True), nullable=False, index=True)
    department = Column(String, nullable=False, index=True)
    daily_descriptions = Column(JSON, nullable=False, default=dict)  # {"2024-01-01": "..."}
    uploaded_files = Column(JSON, nullable=False, default=list)
    status = Column(_enum(WeeklyReportStatus), default=WeeklyReportStatus.SUBMITTED, nullable=False)
    is_draft = Column(Boolean, default=False, nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow, index=True)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)


# ============================================================
# PROJECT REQUIREMENTS
# ============================================================

class Requirement(Base):
    """Customer requirement captured before a project is set up"""
    __tablename__ = "project_requirements"

    id = Column(String, primary_key=True, default=new_uuid)
    tentative_title = Column(String, nullable=False)
    customer = Column(String, nullable=False, index=True)
    project_manager_id = Column(String, ForeignKey("users.id", ondelete="SET NULL"), nullable=True, index=True)
    project_description = Column(Text, nullable=True)
    due_date = Column(DateTime(timezone=True), nullable=True, index=True)
    sample_input_files = Column(JSON, nullable=False, default=list)
    expected_output_files = Column(JSON, nullable=False, default=list)
    status = Column(_enum(RequirementStatus), default=RequirementStatus.PENDING, nullable=False, index=True)
    created_by = Column(String, ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    workspace_id = Column(String, ForeignKey("workspaces.id", ondelete="SET NULL"), nullable=True, index=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, index=True)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)


# ============================================================
# INVITATIONS
# ============================================================

class Invitation(Base):
    """Invitation of an internal user into a workspace"""
    __tablename__ = "invitations"

    id = Column(String, primary_key=True, default=new_uuid)
    email = Column(String, nullable=False, index=True)
    workspace_id = Column(String, ForeignKey("workspaces.id", ondelete="CASCADE"), nullable=False, index=True)
    invited_by = Column(String, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    status = Column(_enum(InvitationStatus), default=InvitationStatus.PENDING, nullable=False)
    expires_at = Column(DateTime(timezone=True), nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)


class ClientInvitation(Base):
    """Token-based invitation giving an external client access to one project"""
    __tablename__ = "client_invitations"

    id = Column(String, primary_key=True, default=new_uuid)
    email = Column(String, nullable=False, index=True)
    project_id = Column(String, ForeignKey("projects.id", ondelete="CASCADE"), nullable=False, index=True)
    workspace_id = Column(String, ForeignKey("workspaces.id", ondelete="CASCADE"), nullable=False)
    invited_by = Column(String, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    token = Column(String, unique=True, nullable=False, index=True)
    status = Column(_enum(ClientInvitationStatus), default=ClientInvitationStatus.PENDING, nullable=False)
    expires_at = Column(DateTime(timezone=True), nullable=False)
    accepted_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)
