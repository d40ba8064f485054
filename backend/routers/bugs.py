# routers/bugs.py — Bug tracker with reporter/assignee workflow and comments
import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field, model_validator
from sqlalchemy import select, func, or_, delete
from sqlalchemy.ext.asyncio import AsyncSession

from activity import record_activity, diff_fields, reject_nulls, ActionType
from auth import get_current_user, require_admin_level, CurrentUser
from database import get_db_session, ensure_bug_types
from models import (
    Bug, BugComment, BugType, BugStatus, BugPriority, User, NotificationType,
    iso, utcnow,
)
from routers.notifications import notify

router = APIRouter(prefix="/api/bugs", tags=["Bugs"])
logger = logging.getLogger("pms.bugs")

BUG_ID_PREFIX = "BUG-"
RESOLVED_STATES = {BugStatus.RESOLVED, BugStatus.CLOSED}

ASSIGNEE_FIELDS = {"status", "output_file_url"}
REPORTER_FIELDS = {"bug_description", "file_url", "priority", "bug_type"}


# ============================================================
# SCHEMAS
# ============================================================

class BugTypeCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)


class BugCreate(BaseModel):
    bug_type: str = Field(default="Development", min_length=1, max_length=100)
    bug_description: str = Field(..., min_length=1, max_length=10000)
    priority: BugPriority = BugPriority.MEDIUM
    assigned_to: Optional[str] = None
    workspace_id: Optional[str] = None
    file_url: Optional[str] = None


class BugUpdate(BaseModel):
    bug_type: Optional[str] = Field(None, min_length=1, max_length=100)
    bug_description: Optional[str] = Field(None, min_length=1, max_length=10000)
    priority: Optional[BugPriority] = None
    status: Optional[BugStatus] = None
    assigned_to: Optional[str] = None
    file_url: Optional[str] = None
    output_file_url: Optional[str] = None

    @model_validator(mode="after")
    def check_required_fields(self):
        reject_nulls(self, ("bug_type", "bug_description", "priority", "status"))
        return self


class CommentCreate(BaseModel):
    comment: str = Field(..., min_length=1, max_length=5000)
    file_url: Optional[str] = None


# ============================================================
# HELPERS
# ============================================================

def _enum_value(v):
    return v.value if hasattr(v, "value") else v


def _bug_out(b: Bug, comment_count: int = None) -> dict:
    out = {
        "id": b.id,
        "bug_id": b.bug_id,
        "bug_type": b.bug_type,
        "bug_description": b.bug_description,
        "priority": _enum_value(b.priority),
        "status": _enum_value(b.status),
        "assigned_to": b.assigned_to,
        "assigned_to_name": b.assigned_to_name,
        "reported_by": b.reported_by,
        "reported_by_name": b.reported_by_name,
        "workspace_id": b.workspace_id,
        "file_url": b.file_url,
        "output_file_url": b.output_file_url,
        "resolved_at": iso(b.resolved_at),
        "created_at": iso(b.created_at),
        "updated_at": iso(b.updated_at),
    }
    if comment_count is not None:
        out["comment_count"] = comment_count
    return out


def _comment_out(c: BugComment) -> dict:
    return {
        "id": c.id,
        "bug_id": c.bug_id,
        "user_id": c.user_id,
        "user_name": c.user_name,
        "comment": c.comment,
        "file_url": c.file_url,
        "is_system_comment": bool(c.is_system_comment),
        "created_at": iso(c.created_at),
    }


def format_bug_id(number: int) -> str:
    return f"{BUG_ID_PREFIX}{number:03d}"


async def next_bug_id(db: AsyncSession) -> str:
    existing = (await db.execute(select(Bug.bug_id).where(Bug.bug_id.like(f"{BUG_ID_PREFIX}%")))).scalars().all()
    highest = 0
    for bug_id in existing:
        suffix = bug_id[len(BUG_ID_PREFIX):]
        if suffix.isdigit():
            highest = max(highest, int(suffix))
    return format_bug_id(highest + 1)


async def _user_name(db: AsyncSession, user_id: Optional[str]) -> Optional[str]:
    if not user_id:
        return None
    name = (await db.execute(select(User.name).where(User.id == user_id))).scalar_one_or_none()
    if name is None:
        raise HTTPException(status_code=400, detail="Assignee not found")
    return name


async def get_visible_bug(db: AsyncSession, bug_id: str, user: CurrentUser) -> Bug:
    bug = (await db.execute(select(Bug).where(Bug.id == bug_id))).scalar_one_or_none()
    if not bug:
        raise HTTPException(status_code=404, detail="Bug not found")
    if not user.is_admin_level and user.id not in (bug.assigned_to, bug.reported_by):
        raise HTTPException(status_code=403, detail="Unauthorized")
    return bug


def _check_update_rights(bug: Bug, user: CurrentUser, fields: set) -> None:
    if user.is_admin_level:
        return
    allowed = set()
    if user.id == bug.assigned_to:
        allowed |= ASSIGNEE_FIELDS
    if user.id == bug.reported_by:
        if bug.status == BugStatus.OPEN:
            allowed |= REPORTER_FIELDS
        if bug.status == BugStatus.CLOSED:
            allowed.add("status")
    denied = fields - allowed
    if denied:
        raise HTTPException(status_code=403, detail=f"You cannot change: {', '.join(sorted(denied))}")


async def _add_system_comment(db: AsyncSession, bug: Bug, user: CurrentUser, text: str) -> None:
    db.add(BugComment(
        bug_id=bug.id, user_id=user.id, user_name=user.name,
        comment=text, is_system_comment=True,
    ))


# ============================================================
# BUG TYPES
# ============================================================

@router.get("/types")
async def list_bug_types(
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    if await ensure_bug_types(db):
        await db.commit()
    types = (await db.execute(select(BugType).order_by(BugType.name))).scalars().all()
    return {"data": [{"id": t.id, "name": t.name} for t in types]}


@router.post("/types", status_code=201)
async def create_bug_type(
    data: BugTypeCreate,
    user: CurrentUser = Depends(require_admin_level),
    db: AsyncSession = Depends(get_db_session),
):
    name = data.name.strip()
    if (await db.execute(select(BugType.id).where(func.lower(BugType.name) == name.lower()))).scalar_one_or_none():
        raise HTTPException(status_code=409, detail="Bug type already exists")
    bug_type = BugType(name=name)
    db.add(bug_type)
    await db.commit()
    return {"data": {"id": bug_type.id, "name": bug_type.name}}


# ============================================================
# BUG ENDPOINTS
# ============================================================

@router.post("", status_code=201)
async def create_bug(
    data: BugCreate,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    bug = Bug(
        bug_id=await next_bug_id(db),
        bug_type=data.bug_type.strip(),
        bug_description=data.bug_description,
        priority=data.priority,
        status=BugStatus.OPEN,
        assigned_to=data.assigned_to,
        assigned_to_name=await _user_name(db, data.assigned_to),
        reported_by=user.id,
        reported_by_name=user.name,
        workspace_id=data.workspace_id,
        file_url=data.file_url,
    )
    db.add(bug)
    await db.flush()

    await record_activity(
        db, ActionType.BUG_CREATED, "bug", user.id, user.name,
        entity_id=bug.id, workspace_id=bug.workspace_id,
        summary=f"{user.name} reported {bug.bug_id}",
    )
    await notify(
        db, bug.assigned_to, NotificationType.BUG_ASSIGNED,
        title=f"{bug.bug_id} assigned to you",
        message=bug.bug_description[:200], actor=user,
    )
    await db.commit()
    await db.refresh(bug)
    logger.info(f"Bug {bug.bug_id} reported by {user.id}")
    return {"data": _bug_out(bug)}


@router.get("")
async def list_bugs(
    status: Optional[BugStatus] = Query(None),
    priority: Optional[BugPriority] = Query(None),
    assigned_to: Optional[str] = Query(None),
    bug_type: Optional[str] = Query(None),
    workspace_id: Optional[str] = Query(None),
    search: Optional[str] = Query(None, max_length=200),
    limit: int = Query(default=100, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    base = select(Bug)
    if not user.is_admin_level:
        base = base.where(or_(Bug.assigned_to == user.id, Bug.reported_by == user.id))
    if status:
        base = base.where(Bug.status == status)
    if priority:
        base = base.where(Bug.priority == priority)
    if assigned_to:
        base = base.where(Bug.assigned_to == assigned_to)
    if bug_type:
        base = base.where(Bug.bug_type == bug_type)
    if workspace_id:
        base = base.where(Bug.workspace_id == workspace_id)
    if search:
        term = f"%{search.lower()}%"
        base = base.where(or_(func.lower(Bug.bug_description).like(term), func.lower(Bug.bug_id).like(term)))

    total = (await db.execute(select(func.count()).select_from(base.subquery()))).scalar() or 0
    bugs = (await db.execute(base.order_by(Bug.created_at.desc()).offset(offset).limit(limit))).scalars().all()
    return {"data": {"documents": [_bug_out(b) for b in bugs], "total": total}}


@router.get("/{bug_id}")
async def get_bug(
    bug_id: str,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    bug = await get_visible_bug(db, bug_id, user)
    count = (await db.execute(
        select(func.count(BugComment.id)).where(BugComment.bug_id == bug.id)
    )).scalar() or 0
    return {"data": _bug_out(bug, comment_count=count)}


@router.patch("/{bug_id}")
async def update_bug(
    bug_id: str,
    data: BugUpdate,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    bug = await get_visible_bug(db, bug_id, user)
    updates = data.model_dump(exclude_unset=True)
    changes = diff_fields(bug, updates)
    if not changes:
        return {"data": _bug_out(bug)}

    _check_update_rights(bug, user, set(changes))
    if (
        not user.is_admin_level
        and "status" in changes
        and user.id != bug.assigned_to
        and updates["status"] != BugStatus.OPEN
    ):
        raise HTTPException(status_code=403, detail="A closed bug can only be reopened by its reporter")

    old_status = _enum_value(bug.status)
    for field in changes:
        setattr(bug, field, updates[field])

    if "assigned_to" in changes:
        bug.assigned_to_name = await _user_name(db, bug.assigned_to)
        await notify(
            db, bug.assigned_to, NotificationType.BUG_ASSIGNED,
            title=f"{bug.bug_id} assigned to you",
            message=bug.bug_description[:200], actor=user,
        )

    if "status" in changes:
        new_status = BugStatus(updates["status"])
        bug.resolved_at = (bug.resolved_at or utcnow()) if new_status in RESOLVED_STATES else None
        reopened = old_status == BugStatus.CLOSED.value and new_status == BugStatus.OPEN
        if reopened:
            text = f"Bug reopened by {user.name}"
        else:
            text = f"Status changed from {old_status} to {new_status.value} by {user.name}"
        await _add_system_comment(db, bug, user, text)
        recipients = {bug.reported_by, bug.assigned_to} - {None}
        for recipient in recipients:
            await notify(
                db, recipient, NotificationType.BUG_STATUS_CHANGED,
                title=f"{bug.bug_id} is now {new_status.value}",
                message=text, actor=user,
            )

    await record_activity(
        db, ActionType.BUG_UPDATED, "bug", user.id, user.name,
        entity_id=bug.id, workspace_id=bug.workspace_id, changes=changes,
    )
    await db.commit()
    await db.refresh(bug)
    return {"data": _bug_out(bug)}


@router.delete("/{bug_id}")
async def delete_bug(
    bug_id: str,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    bug = await get_visible_bug(db, bug_id, user)
    if not user.is_admin_level and not (user.id == bug.reported_by and bug.status == BugStatus.OPEN):
        raise HTTPException(status_code=403, detail="Only admins, or the reporter while the bug is open, can delete it")
    await db.execute(delete(BugComment).where(BugComment.bug_id == bug.id))
    await db.delete(bug)
    await db.commit()
    return {"data": {"id": bug_id}}


# ============================================================
# COMMENTS
# ============================================================

@router.get("/{bug_id}/comments")
async def list_comments(
    bug_id: str,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    bug = await get_visible_bug(db, bug_id, user)
    comments = (await db.execute(
        select(BugComment).where(BugComment.bug_id == bug.id).order_by(BugComment.created_at)
    )).scalars().all()
    return {"data": {"documents": [_comment_out(c) for c in comments], "total": len(comments)}}


@router.post("/{bug_id}/comments", status_code=201)
async def add_comment(
    bug_id: str,
    data: CommentCreate,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    bug = await get_visible_bug(db, bug_id, user)
    comment = BugComment(
        bug_id=bug.id, user_id=user.id, user_name=user.name,
        comment=data.comment, file_url=data.file_url, is_system_comment=False,
    )
    db.add(comment)
    for recipient in {bug.reported_by, bug.assigned_to} - {None}:
        await notify(
            db, recipient, NotificationType.BUG_COMMENT,
            title=f"New comment on {bug.bug_id}",
            message=data.comment[:200], actor=user,
        )
    await db.commit()
    await db.refresh(comment)
    return {"data": _comment_out(comment)}
