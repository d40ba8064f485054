# routers/workspaces.py — Workspaces, invite codes and month-over-month analytics
import string
import secrets
import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field, model_validator
from sqlalchemy import select, update, delete
from sqlalchemy.ext.asyncio import AsyncSession

from activity import reject_nulls
from auth import get_current_user, get_member, require_member, require_workspace_role, CurrentUser
from database import get_db_session
from models import (
    Workspace, Member, MemberRole, Project, Task, Attendance, Invitation,
    ClientInvitation, Bug, Requirement, iso,
)
from reporting import TaskSnapshot, month_over_month

router = APIRouter(prefix="/api/workspaces", tags=["Workspaces"])
logger = logging.getLogger("pms.workspaces")

INVITE_CODE_LENGTH = 10


# ============================================================
# SCHEMAS
# ============================================================

class WorkspaceCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=200)
    image_url: Optional[str] = None


class WorkspaceUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=200)
    image_url: Optional[str] = None

    @model_validator(mode="after")
    def check_name(self):
        reject_nulls(self, ("name",))
        return self


class JoinRequest(BaseModel):
    code: str = Field(..., min_length=1)


class WorkspaceOut(BaseModel):
    id: str
    name: str
    image_url: Optional[str] = None
    invite_code: str
    user_id: str
    created_at: str
    updated_at: Optional[str] = None


# ============================================================
# HELPERS
# ============================================================

def generate_invite_code(length: int = INVITE_CODE_LENGTH) -> str:
    alphabet = string.ascii_uppercase + string.digits
    return "".join(secrets.choice(alphabet) for _ in range(length))


def _ws_out(w: Workspace) -> dict:
    return WorkspaceOut(
        id=w.id, name=w.name, image_url=w.image_url,
        invite_code=w.invite_code, user_id=w.user_id,
        created_at=iso(w.created_at), updated_at=iso(w.updated_at),
    ).model_dump()


async def get_workspace_or_404(db: AsyncSession, workspace_id: str) -> Workspace:
    ws = (await db.execute(select(Workspace).where(Workspace.id == workspace_id))).scalar_one_or_none()
    if not ws:
        raise HTTPException(status_code=404, detail="Workspace not found")
    return ws


# ============================================================
# WORKSPACE ENDPOINTS
# ============================================================

@router.post("", status_code=201)
async def create_workspace(
    data: WorkspaceCreate,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    ws = Workspace(
        name=data.name.strip(),
        image_url=data.image_url,
        invite_code=generate_invite_code(),
        user_id=user.id,
    )
    db.add(ws)
    await db.flush()
    db.add(Member(user_id=user.id, workspace_id=ws.id, role=MemberRole.ADMIN))
    await db.commit()
    await db.refresh(ws)
    logger.info(f"Workspace {ws.id} created by {user.id}")
    return {"data": _ws_out(ws)}


@router.get("")
async def list_workspaces(
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    stmt = (
        select(Workspace)
        .join(Member, Member.workspace_id == Workspace.id)
        .where(Member.user_id == user.id)
        .order_by(Workspace.created_at.desc())
    )
    workspaces = (await db.execute(stmt)).scalars().all()
    return {"data": {"documents": [_ws_out(w) for w in workspaces], "total": len(workspaces)}}


@router.get("/{workspace_id}")
async def get_workspace(
    workspace_id: str,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    ws = await get_workspace_or_404(db, workspace_id)
    await require_member(db, workspace_id, user)
    return {"data": _ws_out(ws)}


@router.patch("/{workspace_id}")
async def update_workspace(
    workspace_id: str,
    data: WorkspaceUpdate,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    ws = await get_workspace_or_404(db, workspace_id)
    await require_workspace_role(db, workspace_id, user, MemberRole.ADMIN)
    for field, value in data.model_dump(exclude_unset=True).items():
        setattr(ws, field, value)
    await db.commit()
    await db.refresh(ws)
    return {"data": _ws_out(ws)}


@router.delete("/{workspace_id}")
async def delete_workspace(
    workspace_id: str,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    ws = await get_workspace_or_404(db, workspace_id)
    await require_workspace_role(db, workspace_id, user, MemberRole.ADMIN)

    # Projects, tasks, bugs, attendance and requirements outlive the workspace
    for model in (Project, Task, Bug, Attendance, Requirement):
        await db.execute(update(model).where(model.workspace_id == workspace_id).values(workspace_id=None))
    for model in (Member, Invitation, ClientInvitation):
        await db.execute(delete(model).where(model.workspace_id == workspace_id))
    await db.delete(ws)
    await db.commit()
    logger.info(f"Workspace {workspace_id} deleted by {user.id}")
    return {"data": {"id": workspace_id}}


@router.post("/{workspace_id}/reset-invite-code")
async def reset_invite_code(
    workspace_id: str,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    ws = await get_workspace_or_404(db, workspace_id)
    await require_workspace_role(db, workspace_id, user, MemberRole.ADMIN)
    ws.invite_code = generate_invite_code()
    await db.commit()
    await db.refresh(ws)
    return {"data": _ws_out(ws)}


@router.post("/{workspace_id}/join")
async def join_workspace(
    workspace_id: str,
    data: JoinRequest,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    ws = await get_workspace_or_404(db, workspace_id)
    if await get_member(db, workspace_id, user.id):
        raise HTTPException(status_code=400, detail="Already a member")
    if ws.invite_code != data.code.strip():
        raise HTTPException(status_code=400, detail="Invalid invite code")

    db.add(Member(user_id=user.id, workspace_id=workspace_id, role=MemberRole.EMPLOYEE))
    await db.commit()
    logger.info(f"User {user.id} joined workspace {workspace_id} by invite code")
    return {"data": _ws_out(ws)}


@router.get("/{workspace_id}/analytics")
async def workspace_analytics(
    workspace_id: str,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    await get_workspace_or_404(db, workspace_id)
    await require_member(db, workspace_id, user)
    tasks = (await db.execute(select(Task).where(Task.workspace_id == workspace_id))).scalars().all()
    return {"data": month_over_month([TaskSnapshot.from_task(t) for t in tasks], user_id=user.id)}
