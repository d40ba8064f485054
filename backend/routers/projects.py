# routers/projects.py — Projects with role-based visibility
import logging
from datetime import datetime
from typing import Optional, List

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field, model_validator
from sqlalchemy import select, update, delete
from sqlalchemy.ext.asyncio import AsyncSession

from activity import record_activity, diff_fields, reject_nulls, ActionType
from auth import get_current_user, require_admin_level, require_member, CurrentUser
from database import get_db_session
from models import Project, Task, Member, ClientInvitation, Attendance, iso
from reporting import TaskSnapshot, month_over_month

router = APIRouter(prefix="/api/projects", tags=["Projects"])
logger = logging.getLogger("pms.projects")

ADMIN_LIST_LIMIT = 50


# ============================================================
# SCHEMAS
# ============================================================

class ProjectCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=200)
    description: Optional[str] = None
    image_url: Optional[str] = None
    workspace_id: Optional[str] = None
    post_date: Optional[datetime] = None
    tentative_end_date: Optional[datetime] = None
    assignees: List[str] = []


class ProjectUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=200)
    description: Optional[str] = None
    image_url: Optional[str] = None
    post_date: Optional[datetime] = None
    tentative_end_date: Optional[datetime] = None
    assignees: Optional[List[str]] = None

    @model_validator(mode="after")
    def check_required_fields(self):
        reject_nulls(self, ("name", "assignees"))
        return self


class BulkDeleteRequest(BaseModel):
    ids: List[str] = Field(..., min_length=1)


class ProjectOut(BaseModel):
    id: str
    name: str
    description: Optional[str] = None
    image_url: Optional[str] = None
    workspace_id: Optional[str] = None
    post_date: Optional[str] = None
    tentative_end_date: Optional[str] = None
    assignees: List[str] = []
    created_at: str
    updated_at: Optional[str] = None


# ============================================================
# HELPERS
# ============================================================

def _project_out(p: Project) -> dict:
    return ProjectOut(
        id=p.id, name=p.name, description=p.description, image_url=p.image_url,
        workspace_id=p.workspace_id,
        post_date=iso(p.post_date), tentative_end_date=iso(p.tentative_end_date),
        assignees=p.assignees or [],
        created_at=iso(p.created_at), updated_at=iso(p.updated_at),
    ).model_dump()


async def get_project_or_404(db: AsyncSession, project_id: str) -> Project:
    project = (await db.execute(select(Project).where(Project.id == project_id))).scalar_one_or_none()
    if not project:
        raise HTTPException(status_code=404, detail="Project not found")
    return project


def ensure_project_visible(project: Project, user: CurrentUser) -> None:
    if user.is_client and project.id != user.client_project_id:
        raise HTTPException(status_code=403, detail="Unauthorized")


async def _delete_projects(db: AsyncSession, project_ids: List[str]) -> None:
    """Remove projects with their tasks and detach anything that points at them"""
    await db.execute(delete(Task).where(Task.project_id.in_(project_ids)))
    await db.execute(delete(ClientInvitation).where(ClientInvitation.project_id.in_(project_ids)))
    await db.execute(update(Member).where(Member.project_id.in_(project_ids)).values(project_id=None))
    await db.execute(update(Attendance).where(Attendance.project_id.in_(project_ids)).values(project_id=None))
    await db.execute(delete(Project).where(Project.id.in_(project_ids)))


# ============================================================
# PROJECT ENDPOINTS
# ============================================================

@router.post("", status_code=201)
async def create_project(
    data: ProjectCreate,
    user: CurrentUser = Depends(require_admin_level),
    db: AsyncSession = Depends(get_db_session),
):
    if data.workspace_id:
        await require_member(db, data.workspace_id, user)

    project = Project(
        name=data.name.strip(),
        description=data.description,
        image_url=data.image_url,
        workspace_id=data.workspace_id,
        post_date=data.post_date,
        tentative_end_date=data.tentative_end_date,
        assignees=data.assignees,
    )
    db.add(project)
    await db.flush()
    await record_activity(
        db, ActionType.PROJECT_CREATED, "project", user.id, user.name,
        entity_id=project.id, workspace_id=project.workspace_id, project_id=project.id,
        summary=f"{user.name} created project {project.name}",
    )
    await db.commit()
    await db.refresh(project)
    logger.info(f"Project {project.id} created by {user.id}")
    return {"data": _project_out(project)}


@router.get("")
async def list_projects(
    workspace_id: Optional[str] = Query(None),
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    if user.is_client:
        if not user.client_project_id:
            return {"data": {"documents": [], "total": 0}}
        stmt = select(Project).where(Project.id == user.client_project_id)
    elif user.is_admin_level:
        stmt = select(Project)
        if workspace_id:
            stmt = stmt.where(Project.workspace_id == workspace_id)
        stmt = stmt.order_by(Project.created_at.desc()).limit(ADMIN_LIST_LIMIT)
    else:
        assigned = select(Task.project_id).where(Task.assignee_id == user.id, Task.project_id.isnot(None))
        stmt = select(Project).where(Project.id.in_(assigned)).order_by(Project.created_at.desc())
        if workspace_id:
            stmt = stmt.where(Project.workspace_id == workspace_id)

    projects = (await db.execute(stmt)).scalars().all()
    return {"data": {"documents": [_project_out(p) for p in projects], "total": len(projects)}}


@router.post("/bulk-delete")
async def bulk_delete_projects(
    data: BulkDeleteRequest,
    user: CurrentUser = Depends(require_admin_level),
    db: AsyncSession = Depends(get_db_session),
):
    ids = list(dict.fromkeys(data.ids))
    found = set((await db.execute(select(Project.id).where(Project.id.in_(ids)))).scalars().all())
    missing = [i for i in ids if i not in found]
    if missing:
        raise HTTPException(status_code=404, detail=f"Projects not found: {', '.join(missing)}")

    await _delete_projects(db, ids)
    for project_id in ids:
        await record_activity(
            db, ActionType.PROJECT_DELETED, "project", user.id, user.name,
            entity_id=project_id, project_id=project_id,
        )
    await db.commit()
    logger.info(f"{len(ids)} projects deleted by {user.id}")
    return {"data": {"deleted": len(ids), "ids": ids}}


@router.get("/{project_id}")
async def get_project(
    project_id: str,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    project = await get_project_or_404(db, project_id)
    ensure_project_visible(project, user)
    return {"data": _project_out(project)}


@router.patch("/{project_id}")
async def update_project(
    project_id: str,
    data: ProjectUpdate,
    user: CurrentUser = Depends(require_admin_level),
    db: AsyncSession = Depends(get_db_session),
):
    project = await get_project_or_404(db, project_id)
    updates = data.model_dump(exclude_unset=True)
    changes = diff_fields(project, updates)
    for field, value in updates.items():
        setattr(project, field, value)

    if changes:
        await record_activity(
            db, ActionType.PROJECT_UPDATED, "project", user.id, user.name,
            entity_id=project.id, workspace_id=project.workspace_id, project_id=project.id,
            changes=changes,
        )
    await db.commit()
    await db.refresh(project)
    return {"data": _project_out(project)}


@router.delete("/{project_id}")
async def delete_project(
    project_id: str,
    user: CurrentUser = Depends(require_admin_level),
    db: AsyncSession = Depends(get_db_session),
):
    project = await get_project_or_404(db, project_id)
    workspace_id, name = project.workspace_id, project.name
    await _delete_projects(db, [project_id])
    await record_activity(
        db, ActionType.PROJECT_DELETED, "project", user.id, user.name,
        entity_id=project_id, workspace_id=workspace_id, project_id=project_id,
        summary=f"{user.name} deleted project {name}",
    )
    await db.commit()
    logger.info(f"Project {project_id} deleted by {user.id}")
    return {"data": {"id": project_id}}


@router.get("/{project_id}/analytics")
async def project_analytics(
    project_id: str,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    project = await get_project_or_404(db, project_id)
    ensure_project_visible(project, user)
    tasks = (await db.execute(select(Task).where(Task.project_id == project_id))).scalars().all()
    return {"data": month_over_month([TaskSnapshot.from_task(t) for t in tasks], user_id=user.id)}
