# routers/tasks.py — Tasks with role filtering, activity history and spreadsheet import
import re
import logging
from datetime import datetime, timedelta, timezone
from typing import Optional, List

from fastapi import APIRouter, Depends, HTTPException, Query, UploadFile, File, Form
from pydantic import BaseModel, Field, model_validator
from sqlalchemy import select, func, or_, and_, false
from sqlalchemy.ext.asyncio import AsyncSession

from activity import record_activity, diff_fields, reject_nulls, ActionType
from auth import get_current_user, require_admin_level, require_member, CurrentUser
from database import get_db_session
from models import (
    Task, TaskStatus, TaskPriority, IssueType, Project, User, ActivityLog,
    NotificationType, iso, new_uuid, utcnow,
)
from routers.notifications import notify
from spreadsheets import read_rows, parse_date, split_list, cell_text, SpreadsheetError

router = APIRouter(prefix="/api/tasks", tags=["Tasks"])
logger = logging.getLogger("pms.tasks")

DEFAULT_ISSUE_PREFIX = "PMS"
MAX_LIST_LIMIT = 2000
MAX_IMPORT_BYTES = 10 * 1024 * 1024

STATUS_ALIASES = {
    "backlog": TaskStatus.BACKLOG,
    "todo": TaskStatus.TODO,
    "to do": TaskStatus.TODO,
    "open": TaskStatus.TODO,
    "selected for development": TaskStatus.TODO,
    "in progress": TaskStatus.IN_PROGRESS,
    "in_progress": TaskStatus.IN_PROGRESS,
    "in review": TaskStatus.IN_REVIEW,
    "in_review": TaskStatus.IN_REVIEW,
    "review": TaskStatus.IN_REVIEW,
    "done": TaskStatus.DONE,
    "closed": TaskStatus.DONE,
    "resolved": TaskStatus.DONE,
}

PRIORITY_ALIASES = {
    "lowest": TaskPriority.LOW,
    "low": TaskPriority.LOW,
    "medium": TaskPriority.MEDIUM,
    "high": TaskPriority.HIGH,
    "highest": TaskPriority.CRITICAL,
    "critical": TaskPriority.CRITICAL,
    "blocker": TaskPriority.CRITICAL,
}

ISSUE_TYPE_ALIASES = {
    "task": IssueType.TASK,
    "story": IssueType.STORY,
    "bug": IssueType.BUG,
    "epic": IssueType.EPIC,
    "sub-task": IssueType.SUB_TASK,
    "subtask": IssueType.SUB_TASK,
    "sub_task": IssueType.SUB_TASK,
    "improvement": IssueType.IMPROVEMENT,
}


# ============================================================
# SCHEMAS
# ============================================================

class TaskCreate(BaseModel):
    summary: str = Field(..., min_length=1, max_length=500)
    description: Optional[str] = None
    issue_id: Optional[str] = Field(None, max_length=50)
    issue_type: IssueType = IssueType.TASK
    status: TaskStatus = TaskStatus.TODO
    priority: TaskPriority = TaskPriority.MEDIUM
    project_id: Optional[str] = None
    workspace_id: Optional[str] = None
    assignee_id: Optional[str] = None
    parent_task_id: Optional[str] = None
    due_date: Optional[datetime] = None
    labels: List[str] = []
    estimated_hours: Optional[int] = Field(None, ge=0)


class TaskUpdate(BaseModel):
    summary: Optional[str] = Field(None, min_length=1, max_length=500)
    description: Optional[str] = None
    issue_type: Optional[IssueType] = None
    status: Optional[TaskStatus] = None
    priority: Optional[TaskPriority] = None
    resolution: Optional[str] = None
    project_id: Optional[str] = None
    assignee_id: Optional[str] = None
    due_date: Optional[datetime] = None
    labels: Optional[List[str]] = None
    estimated_hours: Optional[int] = Field(None, ge=0)
    actual_hours: Optional[int] = Field(None, ge=0)
    position: Optional[int] = None

    @model_validator(mode="after")
    def check_required_fields(self):
        reject_nulls(self, ("summary", "issue_type", "status", "priority", "labels", "position"))
        return self


class BulkTaskItem(BaseModel):
    id: str
    status: Optional[TaskStatus] = None
    position: Optional[int] = None


class BulkUpdateRequest(BaseModel):
    tasks: List[BulkTaskItem] = Field(..., min_length=1, max_length=500)


class TaskOut(BaseModel):
    id: str
    issue_id: str
    summary: str
    description: Optional[str] = None
    issue_type: str
    status: str
    priority: str
    resolution: Optional[str] = None
    project_id: Optional[str] = None
    workspace_id: Optional[str] = None
    parent_task_id: Optional[str] = None
    assignee_id: Optional[str] = None
    reporter_id: Optional[str] = None
    creator_id: Optional[str] = None
    due_date: Optional[str] = None
    labels: List[str] = []
    estimated_hours: Optional[int] = None
    actual_hours: Optional[int] = None
    position: int = 0
    upload_batch_id: Optional[str] = None
    created_at: str
    updated_at: Optional[str] = None
    resolved_at: Optional[str] = None


# ============================================================
# HELPERS
# ============================================================

def _enum_value(v):
    return v.value if hasattr(v, "value") else v


def _task_out(t: Task) -> dict:
    return TaskOut(
        id=t.id, issue_id=t.issue_id, summary=t.summary, description=t.description,
        issue_type=_enum_value(t.issue_type), status=_enum_value(t.status),
        priority=_enum_value(t.priority), resolution=t.resolution,
        project_id=t.project_id, workspace_id=t.workspace_id,
        parent_task_id=t.parent_task_id,
        assignee_id=t.assignee_id, reporter_id=t.reporter_id, creator_id=t.creator_id,
        due_date=iso(t.due_date), labels=t.labels or [],
        estimated_hours=t.estimated_hours, actual_hours=t.actual_hours,
        position=t.position or 0, upload_batch_id=t.upload_batch_id,
        created_at=iso(t.created_at), updated_at=iso(t.updated_at),
        resolved_at=iso(t.resolved_at),
    ).model_dump()


def issue_prefix(project_name: Optional[str]) -> str:
    """'Customer Portal' -> 'CP', 'Billing' -> 'BIL'."""
    if not project_name:
        return DEFAULT_ISSUE_PREFIX
    words = re.findall(r"[A-Za-z0-9]+", project_name)
    if not words:
        return DEFAULT_ISSUE_PREFIX
    if len(words) == 1:
        return words[0][:3].upper()
    return "".join(w[0] for w in words[:4]).upper()


async def next_issue_id(db: AsyncSession, prefix: str) -> str:
    existing = (await db.execute(
        select(Task.issue_id).where(Task.issue_id.like(f"{prefix}-%"))
    )).scalars().all()
    highest = 0
    for issue_id in existing:
        suffix = issue_id[len(prefix) + 1:]
        if suffix.isdigit():
            highest = max(highest, int(suffix))
    return f"{prefix}-{highest + 1}"


async def _member_project_ids(db: AsyncSession, user_id: str) -> List[str]:
    rows = (await db.execute(select(Project.id, Project.assignees))).all()
    return [pid for pid, assignees in rows if assignees and user_id in assignees]


async def visibility_filter(db: AsyncSession, user: CurrentUser):
    """SQL condition limiting tasks to what the caller may see (None = everything)."""
    if user.is_admin_level:
        return None
    if user.is_client:
        if not user.client_project_id:
            return false()
        return Task.project_id == user.client_project_id
    conds = [Task.assignee_id == user.id, Task.reporter_id == user.id, Task.creator_id == user.id]
    project_ids = await _member_project_ids(db, user.id)
    if project_ids:
        conds.append(Task.project_id.in_(project_ids))
    return or_(*conds)


async def get_visible_task(db: AsyncSession, task_id: str, user: CurrentUser) -> Task:
    task = (await db.execute(select(Task).where(Task.id == task_id))).scalar_one_or_none()
    if not task:
        raise HTTPException(status_code=404, detail="Task not found")
    cond = await visibility_filter(db, user)
    if cond is not None:
        visible = (await db.execute(select(Task.id).where(Task.id == task_id, cond))).scalar_one_or_none()
        if not visible:
            raise HTTPException(status_code=403, detail="Unauthorized")
    return task


def _ensure_can_edit(task: Task, user: CurrentUser) -> None:
    if user.is_client:
        raise HTTPException(status_code=403, detail="Clients cannot modify tasks")
    if user.is_admin_level:
        return
    if user.id not in (task.assignee_id, task.reporter_id, task.creator_id):
        raise HTTPException(status_code=403, detail="Unauthorized")


def _apply_status(task: Task, status: TaskStatus) -> None:
    task.status = status
    task.resolved_at = utcnow() if status == TaskStatus.DONE else None


async def _ensure_user_exists(db: AsyncSession, user_id: Optional[str]) -> None:
    if user_id and not (await db.execute(select(User.id).where(User.id == user_id))).scalar_one_or_none():
        raise HTTPException(status_code=400, detail="Assignee not found")


# ============================================================
# TASK ENDPOINTS
# ============================================================

@router.post("", status_code=201)
async def create_task(
    data: TaskCreate,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    if user.is_client:
        raise HTTPException(status_code=403, detail="Clients cannot create tasks")

    project = None
    if data.project_id:
        project = (await db.execute(select(Project).where(Project.id == data.project_id))).scalar_one_or_none()
        if not project:
            raise HTTPException(status_code=404, detail="Project not found")
    workspace_id = data.workspace_id or (project.workspace_id if project else None)
    if workspace_id and not user.is_admin_level:
        await require_member(db, workspace_id, user)
    await _ensure_user_exists(db, data.assignee_id)

    issue_id = data.issue_id or await next_issue_id(db, issue_prefix(project.name if project else None))
    task = Task(
        issue_id=issue_id,
        summary=data.summary.strip(),
        description=data.description,
        issue_type=data.issue_type,
        priority=data.priority,
        project_id=data.project_id,
        workspace_id=workspace_id,
        parent_task_id=data.parent_task_id,
        assignee_id=data.assignee_id,
        reporter_id=user.id,
        creator_id=user.id,
        due_date=data.due_date,
        labels=data.labels,
        estimated_hours=data.estimated_hours,
    )
    _apply_status(task, data.status)
    db.add(task)
    await db.flush()

    await record_activity(
        db, ActionType.TASK_CREATED, "task", user.id, user.name,
        entity_id=task.id, workspace_id=workspace_id, project_id=task.project_id, task_id=task.id,
        summary=f"{user.name} created {issue_id}",
    )
    await notify(
        db, data.assignee_id, NotificationType.TASK_ASSIGNED,
        title=f"{issue_id} assigned to you",
        message=task.summary, task_id=task.id, actor=user,
    )
    await db.commit()
    await db.refresh(task)
    return {"data": _task_out(task)}


@router.get("")
async def list_tasks(
    workspace_id: Optional[str] = Query(None),
    project_id: Optional[str] = Query(None),
    assignee_id: Optional[str] = Query(None),
    status: Optional[TaskStatus] = Query(None),
    priority: Optional[TaskPriority] = Query(None),
    issue_type: Optional[IssueType] = Query(None),
    search: Optional[str] = Query(None, max_length=200),
    due_date: Optional[datetime] = Query(None),
    limit: int = Query(default=500, ge=1, le=MAX_LIST_LIMIT),
    offset: int = Query(default=0, ge=0),
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    filters = []
    cond = await visibility_filter(db, user)
    if cond is not None:
        filters.append(cond)
    if workspace_id:
        filters.append(Task.workspace_id == workspace_id)
    if project_id:
        filters.append(Task.project_id == project_id)
    if assignee_id:
        filters.append(Task.assignee_id == assignee_id)
    if status:
        filters.append(Task.status == status)
    if priority:
        filters.append(Task.priority == priority)
    if issue_type:
        filters.append(Task.issue_type == issue_type)
    if search:
        term = f"%{search.lower()}%"
        filters.append(or_(func.lower(Task.summary).like(term), func.lower(Task.issue_id).like(term)))
    if due_date:
        day = due_date.replace(hour=0, minute=0, second=0, microsecond=0)
        if day.tzinfo is None:
            day = day.replace(tzinfo=timezone.utc)
        filters.append(and_(Task.due_date >= day, Task.due_date < day + timedelta(days=1)))

    base = select(Task).where(*filters)
    total = (await db.execute(select(func.count()).select_from(base.subquery()))).scalar() or 0
    result = await db.execute(base.order_by(Task.created_at.desc()).offset(offset).limit(limit))
    return {"data": {"documents": [_task_out(t) for t in result.scalars().all()], "total": total}}


@router.post("/bulk-update")
async def bulk_update_tasks(
    data: BulkUpdateRequest,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    updated = []
    for item in data.tasks:
        task = await get_visible_task(db, item.id, user)
        _ensure_can_edit(task, user)
        if item.status is not None and item.status != task.status:
            old = _enum_value(task.status)
            _apply_status(task, item.status)
            await record_activity(
                db, ActionType.TASK_STATUS_CHANGED, "task", user.id, user.name,
                entity_id=task.id, workspace_id=task.workspace_id,
                project_id=task.project_id, task_id=task.id,
                changes={"status": {"old": old, "new": item.status.value}},
            )
        if item.position is not None:
            task.position = item.position
        updated.append(task)

    await db.commit()
    return {"data": {"documents": [_task_out(t) for t in updated], "total": len(updated)}}


@router.post("/bulk-import", status_code=201)
async def bulk_import_tasks(
    file: UploadFile = File(...),
    project_id: Optional[str] = Form(None),
    workspace_id: Optional[str] = Form(None),
    user: CurrentUser = Depends(require_admin_level),
    db: AsyncSession = Depends(get_db_session),
):
    """Import tasks from a Jira-style CSV/XLSX export"""
    content = await file.read()
    if len(content) > MAX_IMPORT_BYTES:
        raise HTTPException(status_code=400, detail="File size exceeds 10MB limit")
    try:
        rows = read_rows(file.filename, content)
    except SpreadsheetError as e:
        raise HTTPException(status_code=400, detail=str(e))
    if not rows:
        raise HTTPException(status_code=400, detail="File contains no data rows")

    target_project = None
    if project_id:
        target_project = (await db.execute(select(Project).where(Project.id == project_id))).scalar_one_or_none()
        if not target_project:
            raise HTTPException(status_code=404, detail="Project not found")

    projects_by_name = {p.name.lower(): p for p in (await db.execute(select(Project))).scalars().all()}
    users = (await db.execute(select(User))).scalars().all()
    users_by_key = {}
    for u in users:
        users_by_key[u.name.lower()] = u.id
        users_by_key[u.email.lower()] = u.id

    batch_id = new_uuid()
    created, skipped = [], []
    issued = {}
    explicit_ids = {cell_text(r.get("Issue id")) or cell_text(r.get("Issue key")) for r in rows} - {""}
    for row_number, row in enumerate(rows, start=2):
        summary = cell_text(row.get("Summary"))
        if not summary:
            skipped.append(f"Row {row_number}: missing Summary")
            continue

        project = target_project or projects_by_name.get(cell_text(row.get("Project name")).lower())
        issue_id = cell_text(row.get("Issue id")) or cell_text(row.get("Issue key"))
        if not issue_id:
            prefix = issue_prefix(project.name if project else None)
            if prefix not in issued:
                issued[prefix] = int((await next_issue_id(db, prefix)).rsplit("-", 1)[1]) - 1
            # Skip numbers taken by explicit ids anywhere in the file
            while not issue_id or issue_id in explicit_ids:
                issued[prefix] += 1
                issue_id = f"{prefix}-{issued[prefix]}"

        status = STATUS_ALIASES.get(cell_text(row.get("Status")).lower(), TaskStatus.TODO)
        created_at = parse_date(row.get("Created")) or utcnow()
        resolved_at = parse_date(row.get("Resolved"))
        task = Task(
            issue_id=issue_id,
            summary=summary[:500],
            description=cell_text(row.get("Description")) or None,
            issue_type=ISSUE_TYPE_ALIASES.get(cell_text(row.get("Issue Type")).lower(), IssueType.TASK),
            status=status,
            priority=PRIORITY_ALIASES.get(cell_text(row.get("Priority")).lower(), TaskPriority.MEDIUM),
            resolution=cell_text(row.get("Resolution")) or None,
            project_id=project.id if project else None,
            workspace_id=workspace_id or (project.workspace_id if project else None),
            assignee_id=users_by_key.get(cell_text(row.get("Assignee")).lower()),
            reporter_id=users_by_key.get(cell_text(row.get("Reporter")).lower(), user.id),
            creator_id=users_by_key.get(cell_text(row.get("Creator")).lower(), user.id),
            due_date=parse_date(row.get("Due date")),
            labels=split_list(row.get("Labels")),
            upload_batch_id=batch_id,
            created_at=created_at,
            updated_at=parse_date(row.get("Updated")) or created_at,
            resolved_at=(resolved_at or utcnow()) if status == TaskStatus.DONE else None,
        )
        db.add(task)
        created.append(task)

    if not created:
        raise HTTPException(status_code=400, detail="No valid rows to import")

    await record_activity(
        db, ActionType.TASKS_IMPORTED, "task", user.id, user.name,
        entity_id=batch_id, workspace_id=workspace_id,
        project_id=target_project.id if target_project else None,
        changes={"created": len(created), "skipped": len(skipped)},
        summary=f"{user.name} imported {len(created)} tasks from {file.filename}",
    )
    await db.commit()
    logger.info(f"Task import {batch_id}: {len(created)} created, {len(skipped)} skipped")
    return {"data": {
        "batch_id": batch_id,
        "created": len(created),
        "skipped": len(skipped),
        "messages": skipped,
    }}


@router.get("/{task_id}")
async def get_task(
    task_id: str,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    task = await get_visible_task(db, task_id, user)
    return {"data": _task_out(task)}


@router.patch("/{task_id}")
async def update_task(
    task_id: str,
    data: TaskUpdate,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    task = await get_visible_task(db, task_id, user)
    _ensure_can_edit(task, user)

    updates = data.model_dump(exclude_unset=True)
    if "assignee_id" in updates:
        await _ensure_user_exists(db, updates["assignee_id"])
    changes = diff_fields(task, updates)
    if not changes:
        return {"data": _task_out(task)}

    old_assignee = task.assignee_id
    status = updates.pop("status", None)
    for field, value in updates.items():
        setattr(task, field, value)
    if status is not None and "status" in changes:
        _apply_status(task, status)

    if "status" in changes:
        action = ActionType.TASK_STATUS_CHANGED
    elif "assignee_id" in changes:
        action = ActionType.TASK_ASSIGNED
    else:
        action = ActionType.TASK_UPDATED
    await record_activity(
        db, action, "task", user.id, user.name,
        entity_id=task.id, workspace_id=task.workspace_id, project_id=task.project_id,
        task_id=task.id, changes=changes,
        summary=f"{user.name} updated {', '.join(sorted(changes))} on {task.issue_id}",
    )

    if "assignee_id" in changes and task.assignee_id and task.assignee_id != old_assignee:
        await notify(
            db, task.assignee_id, NotificationType.TASK_ASSIGNED,
            title=f"{task.issue_id} assigned to you",
            message=task.summary, task_id=task.id, actor=user,
        )
    if "status" in changes:
        title = f"{task.issue_id} moved to {changes['status']['new']}"
        for recipient in {task.assignee_id, task.reporter_id} - {None}:
            await notify(
                db, recipient, NotificationType.TASK_STATUS_CHANGED,
                title=title, message=task.summary, task_id=task.id, actor=user,
            )

    await db.commit()
    await db.refresh(task)
    return {"data": _task_out(task)}


@router.delete("/{task_id}")
async def delete_task(
    task_id: str,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    task = await get_visible_task(db, task_id, user)
    if not user.is_admin_level and task.creator_id != user.id:
        raise HTTPException(status_code=403, detail="Only admins or the creator can delete a task")

    await record_activity(
        db, ActionType.TASK_DELETED, "task", user.id, user.name,
        entity_id=task.id, workspace_id=task.workspace_id, project_id=task.project_id,
        task_id=task.id, summary=f"{user.name} deleted {task.issue_id}",
    )
    await db.delete(task)
    await db.commit()
    return {"data": {"id": task_id}}


@router.get("/{task_id}/history")
async def task_history(
    task_id: str,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    await get_visible_task(db, task_id, user)
    entries = (await db.execute(
        select(ActivityLog).where(ActivityLog.task_id == task_id).order_by(ActivityLog.created_at)
    )).scalars().all()
    return {"data": {"documents": [
        {
            "id": e.id,
            "action_type": e.action_type,
            "user_id": e.user_id,
            "user_name": e.user_name,
            "changes": e.changes or {},
            "summary": e.summary,
            "created_at": iso(e.created_at),
        }
        for e in entries
    ], "total": len(entries)}}
