# routers/requirements.py — Customer requirements captured ahead of project setup
import logging
from datetime import datetime
from typing import Optional, List

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field, model_validator
from sqlalchemy import select, func, or_
from sqlalchemy.ext.asyncio import AsyncSession

from activity import record_activity, diff_fields, reject_nulls, ActionType
from auth import get_current_user, require_member, CurrentUser
from database import get_db_session
from models import Requirement, RequirementStatus, User, NotificationType, iso
from routers.notifications import notify

router = APIRouter(prefix="/api/requirements", tags=["Requirements"])
logger = logging.getLogger("pms.requirements")


# ============================================================
# SCHEMAS
# ============================================================

class RequirementCreate(BaseModel):
    tentative_title: str = Field(..., min_length=1, max_length=300)
    customer: str = Field(..., min_length=1, max_length=200)
    project_manager_id: str
    project_description: Optional[str] = Field(None, max_length=10000)
    due_date: Optional[datetime] = None
    sample_input_files: List[str] = []
    expected_output_files: List[str] = []
    workspace_id: Optional[str] = None


class RequirementUpdate(BaseModel):
    tentative_title: Optional[str] = Field(None, min_length=1, max_length=300)
    customer: Optional[str] = Field(None, min_length=1, max_length=200)
    project_manager_id: Optional[str] = None
    project_description: Optional[str] = Field(None, max_length=10000)
    due_date: Optional[datetime] = None
    sample_input_files: Optional[List[str]] = None
    expected_output_files: Optional[List[str]] = None

    @model_validator(mode="after")
    def check_required_fields(self):
        reject_nulls(self, ("tentative_title", "customer", "project_manager_id",
                            "sample_input_files", "expected_output_files"))
        return self


class RequirementStatusUpdate(BaseModel):
    status: RequirementStatus


# ============================================================
# HELPERS
# ============================================================

def _requirement_out(r: Requirement, manager_name: Optional[str] = None) -> dict:
    return {
        "id": r.id,
        "tentative_title": r.tentative_title,
        "customer": r.customer,
        "project_manager_id": r.project_manager_id,
        "project_manager_name": manager_name,
        "project_description": r.project_description,
        "due_date": iso(r.due_date),
        "sample_input_files": r.sample_input_files or [],
        "expected_output_files": r.expected_output_files or [],
        "status": r.status.value if hasattr(r.status, "value") else r.status,
        "created_by": r.created_by,
        "workspace_id": r.workspace_id,
        "created_at": iso(r.created_at),
        "updated_at": iso(r.updated_at),
    }


def _reject_clients(user: CurrentUser) -> None:
    if user.is_client:
        raise HTTPException(status_code=403, detail="Clients cannot access requirements")


async def _manager_name(db: AsyncSession, user_id: Optional[str]) -> Optional[str]:
    if not user_id:
        return None
    return (await db.execute(select(User.name).where(User.id == user_id))).scalar_one_or_none()


async def _require_manager(db: AsyncSession, user_id: str) -> str:
    name = await _manager_name(db, user_id)
    if name is None:
        raise HTTPException(status_code=400, detail="Project manager not found")
    return name


async def get_visible_requirement(db: AsyncSession, requirement_id: str, user: CurrentUser) -> Requirement:
    _reject_clients(user)
    req = (await db.execute(select(Requirement).where(Requirement.id == requirement_id))).scalar_one_or_none()
    if not req:
        raise HTTPException(status_code=404, detail="Requirement not found")
    if not user.is_admin_level and user.id not in (req.created_by, req.project_manager_id):
        raise HTTPException(status_code=403, detail="Unauthorized")
    return req


# ============================================================
# ENDPOINTS
# ============================================================

@router.post("", status_code=201)
async def create_requirement(
    data: RequirementCreate,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    _reject_clients(user)
    manager_name = await _require_manager(db, data.project_manager_id)
    if data.workspace_id:
        await require_member(db, data.workspace_id, user)

    req = Requirement(
        tentative_title=data.tentative_title.strip(),
        customer=data.customer.strip(),
        project_manager_id=data.project_manager_id,
        project_description=data.project_description or None,
        due_date=data.due_date,
        sample_input_files=data.sample_input_files,
        expected_output_files=data.expected_output_files,
        status=RequirementStatus.PENDING,
        created_by=user.id,
        workspace_id=data.workspace_id,
    )
    db.add(req)
    await db.flush()

    await record_activity(
        db, ActionType.REQUIREMENT_CREATED, "requirement", user.id, user.name,
        entity_id=req.id, workspace_id=req.workspace_id,
        summary=f"{user.name} added requirement {req.tentative_title} for {req.customer}",
    )
    await notify(
        db, req.project_manager_id, NotificationType.REQUIREMENT_ASSIGNED,
        title=f"New requirement from {req.customer}",
        message=req.tentative_title, actor=user,
    )
    await db.commit()
    await db.refresh(req)
    logger.info(f"Requirement {req.id} created by {user.id}")
    return {"data": _requirement_out(req, manager_name)}


@router.get("")
async def list_requirements(
    status: Optional[RequirementStatus] = Query(None),
    project_manager_id: Optional[str] = Query(None),
    workspace_id: Optional[str] = Query(None),
    search: Optional[str] = Query(None, max_length=200),
    limit: int = Query(default=100, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    _reject_clients(user)
    filters = []
    if not user.is_admin_level:
        filters.append(or_(Requirement.created_by == user.id, Requirement.project_manager_id == user.id))
    if status:
        filters.append(Requirement.status == status)
    if project_manager_id:
        filters.append(Requirement.project_manager_id == project_manager_id)
    if workspace_id:
        filters.append(Requirement.workspace_id == workspace_id)
    if search:
        term = f"%{search.lower()}%"
        filters.append(or_(
            func.lower(Requirement.tentative_title).like(term),
            func.lower(Requirement.customer).like(term),
        ))

    total = (await db.execute(select(func.count(Requirement.id)).where(*filters))).scalar() or 0
    rows = (await db.execute(
        select(Requirement, User.name)
        .outerjoin(User, User.id == Requirement.project_manager_id)
        .where(*filters)
        .order_by(Requirement.created_at.desc())
        .offset(offset).limit(limit)
    )).all()
    return {"data": {"documents": [_requirement_out(r, name) for r, name in rows], "total": total}}


@router.get("/{requirement_id}")
async def get_requirement(
    requirement_id: str,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    req = await get_visible_requirement(db, requirement_id, user)
    return {"data": _requirement_out(req, await _manager_name(db, req.project_manager_id))}


@router.patch("/{requirement_id}")
async def update_requirement(
    requirement_id: str,
    data: RequirementUpdate,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    req = await get_visible_requirement(db, requirement_id, user)
    if not user.is_admin_level and user.id != req.created_by:
        raise HTTPException(status_code=403, detail="Only the author can edit a requirement")
    if req.status != RequirementStatus.PENDING:
        raise HTTPException(status_code=400, detail="Only pending requirements can be edited")

    updates = data.model_dump(exclude_unset=True)
    if "project_manager_id" in updates:
        await _require_manager(db, updates["project_manager_id"])
    changes = diff_fields(req, updates)
    for field in changes:
        setattr(req, field, updates[field])

    if "project_manager_id" in changes:
        await notify(
            db, req.project_manager_id, NotificationType.REQUIREMENT_ASSIGNED,
            title=f"New requirement from {req.customer}",
            message=req.tentative_title, actor=user,
        )
    if changes:
        await record_activity(
            db, ActionType.REQUIREMENT_UPDATED, "requirement", user.id, user.name,
            entity_id=req.id, workspace_id=req.workspace_id, changes=changes,
        )
        await db.commit()
        await db.refresh(req)
    return {"data": _requirement_out(req, await _manager_name(db, req.project_manager_id))}


@router.patch("/{requirement_id}/status")
async def update_requirement_status(
    requirement_id: str,
    data: RequirementStatusUpdate,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    """Approve or reject; open to admin-level users and the assigned project manager"""
    req = await get_visible_requirement(db, requirement_id, user)
    if not user.is_admin_level and user.id != req.project_manager_id:
        raise HTTPException(status_code=403, detail="Only the project manager can change the status")

    old_status = req.status.value if hasattr(req.status, "value") else req.status
    if old_status != data.status.value:
        req.status = data.status
        await record_activity(
            db, ActionType.REQUIREMENT_STATUS_CHANGED, "requirement", user.id, user.name,
            entity_id=req.id, workspace_id=req.workspace_id,
            changes={"status": {"old": old_status, "new": data.status.value}},
        )
        await notify(
            db, req.created_by, NotificationType.REQUIREMENT_STATUS_CHANGED,
            title=f"Requirement {req.tentative_title} is now {data.status.value.lower()}",
            message=f"{user.name} changed the status from {old_status} to {data.status.value}",
            actor=user,
        )
        await db.commit()
        await db.refresh(req)
        logger.info(f"Requirement {req.id} {old_status} -> {data.status.value} by {user.id}")
    return {"data": _requirement_out(req, await _manager_name(db, req.project_manager_id))}


@router.delete("/{requirement_id}")
async def delete_requirement(
    requirement_id: str,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    req = await get_visible_requirement(db, requirement_id, user)
    if not user.is_admin_level and not (user.id == req.created_by and req.status == RequirementStatus.PENDING):
        raise HTTPException(status_code=403, detail="Only admins, or the author while pending, can delete it")
    await db.delete(req)
    await db.commit()
    return {"data": {"id": requirement_id}}
