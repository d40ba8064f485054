# routers/auth.py — Authentication endpoints with session cookie and token revocation
import logging
from datetime import datetime, timezone, timedelta
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Response
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from auth import (
    AuthService, UserRegister, UserLogin, TokenResponse, RefreshRequest, LogoutRequest,
    ChangePasswordRequest, get_current_user, get_memberships, primary_membership,
    normalize_role, CurrentUser, ACCESS_TOKEN_EXPIRE_MINUTES, SESSION_COOKIE_NAME,
    COOKIE_SECURE,
)
from database import get_db_session
from models import User, MemberRole, iso

router = APIRouter(prefix="/api/auth", tags=["Authentication"])
logger = logging.getLogger("pms.auth")


def _set_session_cookie(response: Response, token: str) -> None:
    response.set_cookie(
        key=SESSION_COOKIE_NAME,
        value=token,
        max_age=ACCESS_TOKEN_EXPIRE_MINUTES * 60,
        httponly=True,
        secure=COOKIE_SECURE,
        samesite="lax",
        path="/",
    )


async def _build_token_response(user_obj: User, db: AsyncSession) -> TokenResponse:
    """Build token response from a user ORM instance"""
    primary = primary_membership(await get_memberships(db, user_obj.id))
    role = normalize_role(primary.role) if primary else MemberRole.EMPLOYEE
    token_data = {"sub": user_obj.id, "email": user_obj.email}
    access_token = AuthService.create_access_token(token_data)
    refresh_token = AuthService.create_refresh_token(token_data)

    return TokenResponse(
        access_token=access_token,
        refresh_token=refresh_token,
        expires_in=ACCESS_TOKEN_EXPIRE_MINUTES * 60,
        user={
            "id": user_obj.id,
            "email": user_obj.email,
            "name": user_obj.name,
            "role": role.value,
            "department": user_obj.department,
        },
    )


@router.post("/register", status_code=201)
async def register(
    user_data: UserRegister,
    response: Response,
    db: AsyncSession = Depends(get_db_session),
):
    """Register a new user account"""
    user = await AuthService.register_user(user_data, db)
    tokens = await _build_token_response(user, db)
    _set_session_cookie(response, tokens.access_token)
    return {"data": tokens.model_dump()}


@router.post("/login")
async def login(
    credentials: UserLogin,
    response: Response,
    db: AsyncSession = Depends(get_db_session),
):
    """Authenticate and receive tokens"""
    user = await AuthService.authenticate_user(credentials.email, credentials.password, db)
    if not user:
        raise HTTPException(status_code=401, detail="Invalid credentials")
    tokens = await _build_token_response(user, db)
    _set_session_cookie(response, tokens.access_token)
    logger.info(f"User {user.id} logged in")
    return {"data": tokens.model_dump()}


@router.post("/refresh")
async def refresh_token(
    refresh_req: RefreshRequest,
    response: Response,
    db: AsyncSession = Depends(get_db_session),
):
    """Refresh access token using a refresh token"""
    payload = AuthService.verify_token(refresh_req.refresh_token)

    if payload.get("type") != "refresh":
        raise HTTPException(status_code=401, detail="Invalid token type. Expected refresh token.")

    jti = payload.get("jti")
    if jti and await AuthService.is_token_revoked(jti, db):
        raise HTTPException(status_code=401, detail="Refresh token has been revoked")

    result = await db.execute(select(User).where(User.id == payload.get("sub")))
    user = result.scalar_one_or_none()
    if not user or not user.is_active:
        raise HTTPException(status_code=401, detail="User not found or inactive")

    tokens = await _build_token_response(user, db)
    _set_session_cookie(response, tokens.access_token)
    return {"data": tokens.model_dump()}


@router.post("/logout")
async def logout(
    response: Response,
    data: Optional[LogoutRequest] = None,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    """Logout and revoke the current access token, plus the refresh token when one is sent"""
    refresh_claims = None
    if data and data.refresh_token:
        try:
            refresh_claims = AuthService.verify_token(data.refresh_token)
        except HTTPException:
            refresh_claims = None  # expired or invalid, nothing left to revoke
        if refresh_claims and (refresh_claims.get("type") != "refresh" or refresh_claims.get("sub") != user.id):
            raise HTTPException(status_code=400, detail="Invalid refresh token")

    if user.jti:
        expires_at = user.token_expires_at or datetime.now(timezone.utc) + timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES)
        await AuthService.revoke_token(user.jti, user.id, expires_at, db)

    refresh_jti = refresh_claims.get("jti") if refresh_claims else None
    if refresh_jti and not await AuthService.is_token_revoked(refresh_jti, db):
        expires_at = datetime.fromtimestamp(refresh_claims["exp"], tz=timezone.utc)
        await AuthService.revoke_token(refresh_jti, user.id, expires_at, db)

    response.delete_cookie(SESSION_COOKIE_NAME, path="/")
    return {"data": {"success": True}}


@router.get("/me")
async def get_current_user_info(
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    """Get current authenticated user information"""
    result = await db.execute(select(User).where(User.id == user.id))
    user_obj = result.scalar_one()
    return {"data": {
        "id": user.id,
        "email": user.email,
        "name": user.name,
        "role": user.role,
        "department": user_obj.department,
        "designation": user_obj.designation,
        "mobile_no": user_obj.mobile_no,
        "skills": user_obj.skills or [],
        "workspace_ids": user.workspace_ids,
        "project_id": user.client_project_id,
        "last_login_at": iso(user_obj.last_login_at),
    }}


@router.post("/change-password")
async def change_password(
    password_data: ChangePasswordRequest,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    """Change current user's password"""
    result = await db.execute(select(User).where(User.id == user.id))
    user_obj = result.scalar_one_or_none()
    if not user_obj:
        raise HTTPException(status_code=404, detail="User not found")

    if not AuthService.verify_password(password_data.current_password, user_obj.password_hash):
        raise HTTPException(status_code=401, detail="Current password is incorrect")

    user_obj.password_hash = AuthService.hash_password(password_data.new_password)
    db.add(user_obj)
    await db.commit()
    logger.info(f"User {user.id} changed password")

    return {"data": {"success": True}}
