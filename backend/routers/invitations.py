# routers/invitations.py — Email invitations into a workspace
import os
import logging
from datetime import timedelta

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, EmailStr
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from auth import get_current_user, get_member, require_workspace_role, CurrentUser
from database import get_db_session
from models import (
    Invitation, InvitationStatus, Member, MemberRole, User, Workspace,
    NotificationType, as_utc, iso, utcnow,
)
from routers.notifications import notify

router = APIRouter(prefix="/api/invitations", tags=["Invitations"])
logger = logging.getLogger("pms.invitations")

APP_URL = os.getenv("APP_URL", "http://localhost:3000").rstrip("/")
INVITATION_TTL_DAYS = 7


class InvitationCreate(BaseModel):
    workspace_id: str
    email: EmailStr


def _invite_link(invitation_id: str) -> str:
    return f"{APP_URL}/invite/{invitation_id}"


def _inv_out(inv: Invitation, workspace_name: str = None) -> dict:
    return {
        "id": inv.id,
        "email": inv.email,
        "workspace_id": inv.workspace_id,
        "workspace_name": workspace_name,
        "invited_by": inv.invited_by,
        "status": inv.status.value if hasattr(inv.status, "value") else inv.status,
        "expires_at": iso(inv.expires_at),
        "created_at": iso(inv.created_at),
        "invite_link": _invite_link(inv.id),
    }


async def _get_invitation_or_404(db: AsyncSession, invitation_id: str) -> Invitation:
    inv = (await db.execute(select(Invitation).where(Invitation.id == invitation_id))).scalar_one_or_none()
    if not inv:
        raise HTTPException(status_code=404, detail="Invitation not found")
    return inv


async def _ensure_usable(db: AsyncSession, inv: Invitation) -> None:
    if inv.status != InvitationStatus.PENDING:
        raise HTTPException(status_code=400, detail="Invitation already used")
    if as_utc(inv.expires_at) < utcnow():
        inv.status = InvitationStatus.EXPIRED
        await db.commit()
        raise HTTPException(status_code=400, detail="Invitation expired")


# ============================================================
# ENDPOINTS
# ============================================================

@router.post("", status_code=201)
async def create_invitation(
    data: InvitationCreate,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    await require_workspace_role(db, data.workspace_id, user, MemberRole.ADMIN)
    email = data.email.lower()

    invitee = (await db.execute(select(User).where(User.email == email))).scalar_one_or_none()
    if invitee and await get_member(db, data.workspace_id, invitee.id):
        raise HTTPException(status_code=400, detail="User is already a member of this workspace")

    pending = (await db.execute(
        select(Invitation).where(
            Invitation.workspace_id == data.workspace_id,
            Invitation.email == email,
            Invitation.status == InvitationStatus.PENDING,
        )
    )).scalars().all()
    if any(as_utc(p.expires_at) >= utcnow() for p in pending):
        raise HTTPException(status_code=400, detail="An invitation is already pending for this email")

    inv = Invitation(
        email=email,
        workspace_id=data.workspace_id,
        invited_by=user.id,
        status=InvitationStatus.PENDING,
        expires_at=utcnow() + timedelta(days=INVITATION_TTL_DAYS),
    )
    db.add(inv)
    await db.flush()

    ws = (await db.execute(select(Workspace).where(Workspace.id == data.workspace_id))).scalar_one()
    if invitee:
        await notify(
            db, invitee.id, NotificationType.WORKSPACE_INVITE,
            title=f"Invitation to {ws.name}",
            message=f"{user.name} invited you to join {ws.name}",
            actor=user,
        )
    await db.commit()
    await db.refresh(inv)
    logger.info(f"Workspace invitation for {email}: {_invite_link(inv.id)}")
    return {"data": _inv_out(inv, ws.name)}


@router.get("")
async def list_invitations(
    workspace_id: str = Query(...),
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    await require_workspace_role(db, workspace_id, user, MemberRole.ADMIN)
    invitations = (await db.execute(
        select(Invitation)
        .where(Invitation.workspace_id == workspace_id)
        .order_by(Invitation.created_at.desc())
    )).scalars().all()
    return {"data": {"documents": [_inv_out(i) for i in invitations], "total": len(invitations)}}


@router.get("/{invitation_id}")
async def get_invitation(
    invitation_id: str,
    db: AsyncSession = Depends(get_db_session),
):
    """Public lookup used by the accept page"""
    inv = await _get_invitation_or_404(db, invitation_id)
    await _ensure_usable(db, inv)
    ws = (await db.execute(select(Workspace).where(Workspace.id == inv.workspace_id))).scalar_one_or_none()
    return {"data": _inv_out(inv, ws.name if ws else None)}


@router.post("/{invitation_id}/accept")
async def accept_invitation(
    invitation_id: str,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    inv = await _get_invitation_or_404(db, invitation_id)
    await _ensure_usable(db, inv)
    if inv.email.lower() != user.email.lower():
        raise HTTPException(status_code=403, detail="This invitation was sent to a different email address")

    if await get_member(db, inv.workspace_id, user.id):
        inv.status = InvitationStatus.ACCEPTED
        await db.commit()
        raise HTTPException(status_code=400, detail="Already a member of this workspace")

    member = Member(user_id=user.id, workspace_id=inv.workspace_id, role=MemberRole.EMPLOYEE)
    db.add(member)
    inv.status = InvitationStatus.ACCEPTED
    await db.commit()
    logger.info(f"User {user.id} accepted invitation {inv.id}")
    return {"data": {"workspace_id": inv.workspace_id, "member_id": member.id}}


@router.post("/{invitation_id}/decline")
async def decline_invitation(
    invitation_id: str,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    inv = await _get_invitation_or_404(db, invitation_id)
    await _ensure_usable(db, inv)
    if inv.email.lower() != user.email.lower():
        raise HTTPException(status_code=403, detail="This invitation was sent to a different email address")
    inv.status = InvitationStatus.DECLINED
    await db.commit()
    return {"data": _inv_out(inv)}


@router.delete("/{invitation_id}")
async def delete_invitation(
    invitation_id: str,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    inv = await _get_invitation_or_404(db, invitation_id)
    await require_workspace_role(db, inv.workspace_id, user, MemberRole.ADMIN)
    await db.delete(inv)
    await db.commit()
    return {"data": {"id": invitation_id}}
