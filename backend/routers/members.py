# routers/members.py — Workspace membership management
import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, EmailStr, model_validator
from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession

from activity import record_activity, ActionType
from auth import get_current_user, get_member, require_member, require_workspace_role, CurrentUser
from database import get_db_session
from models import Member, MemberRole, User, iso

router = APIRouter(prefix="/api/members", tags=["Members"])
logger = logging.getLogger("pms.members")


class MemberAdd(BaseModel):
    workspace_id: str
    email: Optional[EmailStr] = None
    user_id: Optional[str] = None
    role: MemberRole = MemberRole.EMPLOYEE
    project_id: Optional[str] = None

    @model_validator(mode="after")
    def check_target(self):
        if not self.email and not self.user_id:
            raise ValueError("Either email or user_id is required")
        return self


class MemberRoleUpdate(BaseModel):
    role: MemberRole


def _member_out(m: Member, u: Optional[User]) -> dict:
    return {
        "id": m.id,
        "user_id": m.user_id,
        "workspace_id": m.workspace_id,
        "project_id": m.project_id,
        "role": m.role.value if hasattr(m.role, "value") else m.role,
        "name": u.name if u else "",
        "email": u.email if u else "",
        "department": u.department if u else None,
        "designation": u.designation if u else None,
        "created_at": iso(m.created_at),
    }


async def _get_member_or_404(db: AsyncSession, member_id: str) -> Member:
    member = (await db.execute(select(Member).where(Member.id == member_id))).scalar_one_or_none()
    if not member:
        raise HTTPException(status_code=404, detail="Member not found")
    return member


async def _admin_count(db: AsyncSession, workspace_id: str) -> int:
    return (await db.execute(
        select(func.count(Member.id)).where(
            Member.workspace_id == workspace_id, Member.role == MemberRole.ADMIN,
        )
    )).scalar() or 0


@router.get("")
async def list_members(
    workspace_id: str = Query(...),
    role: Optional[MemberRole] = Query(None),
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    await require_member(db, workspace_id, user)
    stmt = (
        select(Member, User)
        .join(User, User.id == Member.user_id)
        .where(Member.workspace_id == workspace_id)
        .order_by(User.name)
    )
    if role:
        stmt = stmt.where(Member.role == role)
    rows = (await db.execute(stmt)).all()
    return {"data": {"documents": [_member_out(m, u) for m, u in rows], "total": len(rows)}}


@router.post("", status_code=201)
async def add_member(
    data: MemberAdd,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    await require_workspace_role(db, data.workspace_id, user, MemberRole.ADMIN)

    if data.user_id:
        stmt = select(User).where(User.id == data.user_id)
    else:
        stmt = select(User).where(User.email == data.email.lower())
    target = (await db.execute(stmt)).scalar_one_or_none()
    if not target:
        raise HTTPException(status_code=404, detail="User not found")

    if await get_member(db, data.workspace_id, target.id):
        raise HTTPException(status_code=400, detail="User is already a member of this workspace")

    member = Member(
        user_id=target.id,
        workspace_id=data.workspace_id,
        role=data.role,
        project_id=data.project_id if data.role == MemberRole.CLIENT else None,
    )
    db.add(member)
    await db.flush()
    await record_activity(
        db, ActionType.MEMBER_ADDED, "member", user.id, user.name,
        entity_id=member.id, workspace_id=data.workspace_id,
        summary=f"{user.name} added {target.name} as {data.role.value}",
    )
    await db.commit()
    await db.refresh(member)
    return {"data": _member_out(member, target)}


@router.patch("/{member_id}")
async def update_member_role(
    member_id: str,
    data: MemberRoleUpdate,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    member = await _get_member_or_404(db, member_id)
    await require_workspace_role(db, member.workspace_id, user, MemberRole.ADMIN)

    if member.role == MemberRole.ADMIN and data.role != MemberRole.ADMIN:
        if await _admin_count(db, member.workspace_id) <= 1:
            raise HTTPException(status_code=400, detail="Cannot downgrade the only admin")

    old_role = member.role.value if hasattr(member.role, "value") else member.role
    member.role = data.role
    if data.role != MemberRole.CLIENT:
        member.project_id = None
    await record_activity(
        db, ActionType.MEMBER_ROLE_CHANGED, "member", user.id, user.name,
        entity_id=member.id, workspace_id=member.workspace_id,
        changes={"role": {"old": old_role, "new": data.role.value}},
    )
    await db.commit()
    await db.refresh(member)
    target = (await db.execute(select(User).where(User.id == member.user_id))).scalar_one_or_none()
    return {"data": _member_out(member, target)}


@router.delete("/{member_id}")
async def remove_member(
    member_id: str,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    member = await _get_member_or_404(db, member_id)
    if member.user_id != user.id:
        await require_workspace_role(db, member.workspace_id, user, MemberRole.ADMIN)

    if member.role == MemberRole.ADMIN and await _admin_count(db, member.workspace_id) <= 1:
        raise HTTPException(status_code=400, detail="Cannot remove the only admin")

    workspace_id = member.workspace_id
    await db.delete(member)
    await record_activity(
        db, ActionType.MEMBER_REMOVED, "member", user.id, user.name,
        entity_id=member_id, workspace_id=workspace_id,
    )
    await db.commit()
    logger.info(f"Member {member_id} removed from {workspace_id} by {user.id}")
    return {"data": {"id": member_id}}
