# routers/clients.py — Token invitations giving external clients access to one project
import os
import secrets
import logging
from datetime import timedelta
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, EmailStr, Field
from sqlalchemy import select, delete
from sqlalchemy.ext.asyncio import AsyncSession

from auth import (
    get_current_user, get_member, require_workspace_role, normalize_role,
    AuthService, CurrentUser,
)
from database import get_db_session
from models import (
    ClientInvitation, ClientInvitationStatus, Member, MemberRole, Project, User,
    as_utc, iso, utcnow,
)

router = APIRouter(prefix="/api/clients", tags=["Clients"])
logger = logging.getLogger("pms.clients")

APP_URL = os.getenv("APP_URL", "http://localhost:3000").rstrip("/")
CLIENT_INVITE_TTL_DAYS = 7
MIN_CLIENT_PASSWORD = 6
INVITER_ROLES = (MemberRole.ADMIN, MemberRole.PROJECT_MANAGER)


# ============================================================
# SCHEMAS
# ============================================================

class ClientInvite(BaseModel):
    email: EmailStr
    project_id: str


class ClientAccept(BaseModel):
    token: str = Field(..., min_length=1)
    name: Optional[str] = Field(None, max_length=200)
    password: Optional[str] = None


# ============================================================
# HELPERS
# ============================================================

def _accept_link(token: str) -> str:
    return f"{APP_URL}/client/accept?token={token}"


def _client_inv_out(inv: ClientInvitation, inviter: Optional[User] = None) -> dict:
    out = {
        "id": inv.id,
        "email": inv.email,
        "project_id": inv.project_id,
        "workspace_id": inv.workspace_id,
        "invited_by": inv.invited_by,
        "status": inv.status.value if hasattr(inv.status, "value") else inv.status,
        "expires_at": iso(inv.expires_at),
        "accepted_at": iso(inv.accepted_at),
        "created_at": iso(inv.created_at),
    }
    if inviter is not None:
        out["inviter"] = {"id": inviter.id, "name": inviter.name, "email": inviter.email}
    return out


async def _get_project_or_404(db: AsyncSession, project_id: str) -> Project:
    project = (await db.execute(select(Project).where(Project.id == project_id))).scalar_one_or_none()
    if not project:
        raise HTTPException(status_code=404, detail="Project not found")
    return project


def _project_workspace(project: Project, user: CurrentUser) -> str:
    workspace_id = project.workspace_id or (user.workspace_ids[0] if user.workspace_ids else None)
    if not workspace_id:
        raise HTTPException(status_code=400, detail="Project is not attached to a workspace")
    return workspace_id


async def _usable_invitation(db: AsyncSession, token: str) -> ClientInvitation:
    inv = (await db.execute(
        select(ClientInvitation).where(ClientInvitation.token == token)
    )).scalar_one_or_none()
    if not inv:
        raise HTTPException(status_code=404, detail="Invalid invitation")
    if inv.status != ClientInvitationStatus.PENDING:
        raise HTTPException(status_code=400, detail="Invitation already used")
    if as_utc(inv.expires_at) < utcnow():
        raise HTTPException(status_code=400, detail="Invitation expired")
    return inv


# ============================================================
# ENDPOINTS
# ============================================================

@router.post("/invite", status_code=201)
async def invite_client(
    data: ClientInvite,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    project = await _get_project_or_404(db, data.project_id)
    workspace_id = _project_workspace(project, user)
    await require_workspace_role(db, workspace_id, user, *INVITER_ROLES)
    email = data.email.lower()

    existing_user = (await db.execute(select(User).where(User.email == email))).scalar_one_or_none()
    if existing_user:
        roles = (await db.execute(
            select(Member.role).where(Member.user_id == existing_user.id)
        )).scalars().all()
        if any(normalize_role(r) != MemberRole.CLIENT for r in roles):
            raise HTTPException(status_code=400, detail="This email belongs to an internal employee")

    # A fresh invite replaces any pending one for the same project
    await db.execute(
        delete(ClientInvitation).where(
            ClientInvitation.email == email,
            ClientInvitation.project_id == project.id,
            ClientInvitation.status == ClientInvitationStatus.PENDING,
        )
    )

    inv = ClientInvitation(
        email=email,
        project_id=project.id,
        workspace_id=workspace_id,
        invited_by=user.id,
        token=secrets.token_hex(32),
        status=ClientInvitationStatus.PENDING,
        expires_at=utcnow() + timedelta(days=CLIENT_INVITE_TTL_DAYS),
    )
    db.add(inv)
    await db.commit()
    await db.refresh(inv)

    link = _accept_link(inv.token)
    logger.info(f"Client invitation for {email} on project {project.id}: {link}")
    return {"data": {**_client_inv_out(inv), "invite_link": link}}


@router.get("/project/{project_id}")
async def list_project_invitations(
    project_id: str,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    project = await _get_project_or_404(db, project_id)
    await require_workspace_role(db, _project_workspace(project, user), user, *INVITER_ROLES)

    rows = (await db.execute(
        select(ClientInvitation, User)
        .outerjoin(User, User.id == ClientInvitation.invited_by)
        .where(ClientInvitation.project_id == project_id)
        .order_by(ClientInvitation.created_at.desc())
    )).all()
    return {"data": {"documents": [_client_inv_out(inv, inviter) for inv, inviter in rows], "total": len(rows)}}


@router.get("/verify/{token}")
async def verify_invitation(
    token: str,
    db: AsyncSession = Depends(get_db_session),
):
    inv = await _usable_invitation(db, token)
    project = (await db.execute(select(Project).where(Project.id == inv.project_id))).scalar_one_or_none()
    has_account = (await db.execute(select(User.id).where(User.email == inv.email))).scalar_one_or_none() is not None
    return {"data": {
        "email": inv.email,
        "project_id": inv.project_id,
        "project_name": project.name if project else None,
        "expires_at": iso(inv.expires_at),
        "has_account": has_account,
    }}


@router.post("/accept")
async def accept_invitation(
    data: ClientAccept,
    db: AsyncSession = Depends(get_db_session),
):
    inv = await _usable_invitation(db, data.token)

    client = (await db.execute(select(User).where(User.email == inv.email))).scalar_one_or_none()
    if not client:
        if not data.name or not data.name.strip():
            raise HTTPException(status_code=400, detail="Name is required to create an account")
        if not data.password or len(data.password) < MIN_CLIENT_PASSWORD:
            raise HTTPException(
                status_code=400,
                detail=f"Password must be at least {MIN_CLIENT_PASSWORD} characters",
            )
        client = User(
            email=inv.email,
            name=data.name.strip(),
            password_hash=AuthService.hash_password(data.password),
            is_active=True,
        )
        db.add(client)
        await db.flush()

    member = await get_member(db, inv.workspace_id, client.id)
    if member and normalize_role(member.role) != MemberRole.CLIENT:
        raise HTTPException(status_code=400, detail="This email belongs to an internal employee")
    if member:
        member.project_id = inv.project_id
    else:
        member = Member(
            user_id=client.id,
            workspace_id=inv.workspace_id,
            project_id=inv.project_id,
            role=MemberRole.CLIENT,
        )
        db.add(member)

    inv.status = ClientInvitationStatus.ACCEPTED
    inv.accepted_at = utcnow()
    await db.commit()
    logger.info(f"Client {client.id} accepted invitation to project {inv.project_id}")
    return {"data": {
        "user_id": client.id,
        "email": client.email,
        "project_id": inv.project_id,
        "workspace_id": inv.workspace_id,
    }}


@router.delete("/{invitation_id}")
async def revoke_invitation(
    invitation_id: str,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    inv = (await db.execute(
        select(ClientInvitation).where(ClientInvitation.id == invitation_id)
    )).scalar_one_or_none()
    if not inv:
        raise HTTPException(status_code=404, detail="Invitation not found")
    await require_workspace_role(db, inv.workspace_id, user, *INVITER_ROLES)
    inv.status = ClientInvitationStatus.REVOKED
    await db.commit()
    return {"data": _client_inv_out(inv)}
