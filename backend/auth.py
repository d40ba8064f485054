# auth.py — Authentication & workspace role checks for the PMS API
# Features:
# - Secure JWT with JTI for revocation
# - Session token from Authorization header or the session cookie
# - Workspace-scoped roles (ADMIN ... CLIENT), primary role = highest membership
# - Brute force protection
# - Token revocation support

import os
import uuid
import secrets
import logging
from datetime import datetime, timedelta, timezone
from typing import Optional, Dict, Any, List
from collections import defaultdict

import bcrypt
from jose import jwt, JWTError, ExpiredSignatureError
from fastapi import HTTPException, Depends, Request
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from pydantic import BaseModel, EmailStr, Field, field_validator
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db_session
from models import User, Member, MemberRole, RevokedToken

logger = logging.getLogger("pms.auth")

# ============================================================
# CONFIGURATION
# ============================================================

SECRET_KEY = os.getenv("JWT_SECRET_KEY", "")
if not SECRET_KEY or SECRET_KEY == "change-this-to-a-secure-random-key-in-production":
    SECRET_KEY = secrets.token_urlsafe(64)
    logger.warning(
        "JWT_SECRET_KEY not set or insecure. Generated ephemeral key. "
        "Set JWT_SECRET_KEY in production!"
    )

ALGORITHM = "HS256"
ACCESS_TOKEN_EXPIRE_MINUTES = int(os.getenv("ACCESS_TOKEN_EXPIRE_MINUTES", "60"))
REFRESH_TOKEN_EXPIRE_DAYS = int(os.getenv("REFRESH_TOKEN_EXPIRE_DAYS", "7"))
SESSION_COOKIE_NAME = os.getenv("SESSION_COOKIE_NAME", "pms-session")
COOKIE_SECURE = os.getenv("COOKIE_SECURE", "false").lower() == "true"
MIN_PASSWORD_LENGTH = 8
MAX_LOGIN_ATTEMPTS = 5
LOGIN_LOCKOUT_MINUTES = 15

security = HTTPBearer(auto_error=False)

# Failed login timestamps per email, held per process
_login_attempts: Dict[str, list] = defaultdict(list)


# ============================================================
# ROLE HIERARCHY
# ============================================================

ROLE_HIERARCHY = {
    MemberRole.ADMIN: 6,
    MemberRole.PROJECT_MANAGER: 5,
    MemberRole.MANAGEMENT: 4,
    MemberRole.TEAM_LEAD: 3,
    MemberRole.EMPLOYEE: 2,
    MemberRole.CLIENT: 1,
}

# Roles allowed to see and manage everything in a workspace
ADMIN_ROLES = {MemberRole.ADMIN, MemberRole.PROJECT_MANAGER, MemberRole.MANAGEMENT}


def normalize_role(role) -> MemberRole:
    """Map stored/legacy role strings onto MemberRole ("MEMBER" is the old EMPLOYEE)."""
    if isinstance(role, MemberRole):
        return role
    value = str(role or "").upper()
    if value == "MEMBER":
        return MemberRole.EMPLOYEE
    try:
        return MemberRole(value)
    except ValueError:
        return MemberRole.EMPLOYEE


# ============================================================
# PYDANTIC SCHEMAS
# ============================================================

class UserRegister(BaseModel):
    name: str = Field(..., min_length=1, max_length=200)
    email: EmailStr
    password: str

    @field_validator("password")
    @classmethod
    def validate_password(cls, v: str) -> str:
        if len(v) < MIN_PASSWORD_LENGTH:
            raise ValueError(f"Password must be at least {MIN_PASSWORD_LENGTH} characters")
        return v


class UserLogin(BaseModel):
    email: EmailStr
    password: str


class TokenResponse(BaseModel):
    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    expires_in: int
    user: Dict[str, Any]


class CurrentUser(BaseModel):
    id: str
    email: str
    name: str
    role: str
    department: Optional[str] = None
    is_active: bool
    workspace_ids: List[str] = []
    client_project_id: Optional[str] = None
    jti: Optional[str] = None
    token_expires_at: Optional[datetime] = None

    @property
    def is_admin_level(self) -> bool:
        return normalize_role(self.role) in ADMIN_ROLES

    @property
    def is_client(self) -> bool:
        return normalize_role(self.role) == MemberRole.CLIENT


class RefreshRequest(BaseModel):
    refresh_token: str


class LogoutRequest(BaseModel):
    refresh_token: Optional[str] = None


class ChangePasswordRequest(BaseModel):
    current_password: str
    new_password: str

    @field_validator("new_password")
    @classmethod
    def validate_new_password(cls, v: str) -> str:
        if len(v) < MIN_PASSWORD_LENGTH:
            raise ValueError(f"Password must be at least {MIN_PASSWORD_LENGTH} characters")
        return v


# ============================================================
# AUTH SERVICE
# ============================================================

class AuthService:
    """Authentication service: hashing, tokens, login tracking"""

    @staticmethod
    def hash_password(password: str) -> str:
        salt = bcrypt.gensalt(rounds=12)
        return bcrypt.hashpw(password.encode("utf-8"), salt).decode("utf-8")

    @staticmethod
    def verify_password(password: str, password_hash: str) -> bool:
        try:
            return bcrypt.checkpw(password.encode("utf-8"), password_hash.encode("utf-8"))
        except ValueError:
            return False

    @staticmethod
    def _create_token(data: Dict[str, Any], token_type: str, expires_delta: timedelta) -> str:
        to_encode = data.copy()
        now = datetime.now(timezone.utc)
        to_encode.update({
            "exp": now + expires_delta,
            "iat": now,
            "type": token_type,
            "jti": str(uuid.uuid4()),
        })
        return jwt.encode(to_encode, SECRET_KEY, algorithm=ALGORITHM)

    @staticmethod
    def create_access_token(data: Dict[str, Any], expires_delta: Optional[timedelta] = None) -> str:
        delta = expires_delta or timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES)
        return AuthService._create_token(data, "access", delta)

    @staticmethod
    def create_refresh_token(data: Dict[str, Any]) -> str:
        return AuthService._create_token(data, "refresh", timedelta(days=REFRESH_TOKEN_EXPIRE_DAYS))

    @staticmethod
    def verify_token(token: str) -> Dict[str, Any]:
        try:
            payload = jwt.decode(token, SECRET_KEY, algorithms=[ALGORITHM])
            return payload
        except ExpiredSignatureError:
            raise HTTPException(status_code=401, detail="Token expired")
        except JWTError:
            raise HTTPException(status_code=401, detail="Invalid token")

    @staticmethod
    def _check_brute_force(email: str) -> None:
        """Check if login attempts exceed threshold"""
        now = datetime.now(timezone.utc)
        cutoff = now - timedelta(minutes=LOGIN_LOCKOUT_MINUTES)
        _login_attempts[email] = [t for t in _login_attempts[email] if t > cutoff]
        if len(_login_attempts[email]) >= MAX_LOGIN_ATTEMPTS:
            raise HTTPException(
                status_code=429,
                detail=f"Too many login attempts. Try again in {LOGIN_LOCKOUT_MINUTES} minutes.",
            )

    @staticmethod
    def _record_failed_attempt(email: str) -> None:
        _login_attempts[email].append(datetime.now(timezone.utc))

    @staticmethod
    def _clear_attempts(email: str) -> None:
        _login_attempts.pop(email, None)

    @staticmethod
    async def register_user(user_data: UserRegister, db: AsyncSession) -> User:
        email = user_data.email.lower()
        stmt = select(User).where(User.email == email)
        result = await db.execute(stmt)
        if result.scalar_one_or_none():
            raise HTTPException(status_code=409, detail="User already exists")

        new_user = User(
            email=email,
            name=user_data.name.strip(),
            password_hash=AuthService.hash_password(user_data.password),
            is_active=True,
        )
        db.add(new_user)
        await db.commit()
        await db.refresh(new_user)
        logger.info(f"Registered user {new_user.id}")
        return new_user

    @staticmethod
    async def authenticate_user(email: str, password: str, db: AsyncSession) -> Optional[User]:
        email = email.lower()
        AuthService._check_brute_force(email)

        stmt = select(User).where(User.email == email)
        result = await db.execute(stmt)
        user = result.scalar_one_or_none()

        if not user or not AuthService.verify_password(password, user.password_hash):
            AuthService._record_failed_attempt(email)
            logger.warning(f"Failed login for {email}")
            return None

        if not user.is_active:
            return None

        AuthService._clear_attempts(email)

        user.last_login_at = datetime.now(timezone.utc)
        db.add(user)
        await db.commit()
        return user

    @staticmethod
    async def is_token_revoked(jti: str, db: AsyncSession) -> bool:
        stmt = select(RevokedToken).where(RevokedToken.jti == jti)
        result = await db.execute(stmt)
        return result.scalar_one_or_none() is not None

    @staticmethod
    async def revoke_token(jti: str, user_id: str, expires_at: datetime, db: AsyncSession) -> None:
        revoked = RevokedToken(jti=jti, user_id=user_id, expires_at=expires_at)
        db.add(revoked)
        await db.commit()


# ============================================================
# MEMBERSHIP HELPERS
# ============================================================

async def get_memberships(db: AsyncSession, user_id: str) -> List[Member]:
    result = await db.execute(
        select(Member).where(Member.user_id == user_id).order_by(Member.created_at)
    )
    return list(result.scalars().all())


def primary_membership(memberships: List[Member]) -> Optional[Member]:
    """Highest-ranked membership; the earliest one wins a tie."""
    best = None
    for m in memberships:
        if best is None or ROLE_HIERARCHY[normalize_role(m.role)] > ROLE_HIERARCHY[normalize_role(best.role)]:
            best = m
    return best


async def get_member(db: AsyncSession, workspace_id: str, user_id: str) -> Optional[Member]:
    result = await db.execute(
        select(Member).where(Member.workspace_id == workspace_id, Member.user_id == user_id)
    )
    return result.scalar_one_or_none()


async def require_member(db: AsyncSession, workspace_id: str, user: "CurrentUser") -> Member:
    member = await get_member(db, workspace_id, user.id)
    if not member:
        raise HTTPException(status_code=403, detail="Unauthorized")
    return member


async def require_workspace_role(
    db: AsyncSession, workspace_id: str, user: "CurrentUser", *roles: MemberRole,
) -> Member:
    """Require the caller to hold one of `roles` in the given workspace"""
    member = await require_member(db, workspace_id, user)
    if normalize_role(member.role) not in roles:
        raise HTTPException(status_code=403, detail="Insufficient role privileges")
    return member


# ============================================================
# FASTAPI DEPENDENCIES
# ============================================================

def _extract_token(request: Request, credentials: Optional[HTTPAuthorizationCredentials]) -> str:
    if credentials and credentials.credentials:
        return credentials.credentials
    cookie = request.cookies.get(SESSION_COOKIE_NAME)
    if cookie:
        return cookie
    raise HTTPException(status_code=401, detail="Unauthorized")


async def get_current_user(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    db: AsyncSession = Depends(get_db_session),
) -> CurrentUser:
    payload = AuthService.verify_token(_extract_token(request, credentials))

    if payload.get("type") != "access":
        raise HTTPException(status_code=401, detail="Invalid token type")

    jti = payload.get("jti")
    if jti and await AuthService.is_token_revoked(jti, db):
        raise HTTPException(status_code=401, detail="Token has been revoked")

    user_id = payload.get("sub")
    if not user_id:
        raise HTTPException(status_code=401, detail="Invalid token")

    stmt = select(User).where(User.id == user_id)
    result = await db.execute(stmt)
    user = result.scalar_one_or_none()

    if not user or not user.is_active:
        raise HTTPException(status_code=401, detail="User not found or inactive")

    memberships = await get_memberships(db, user.id)
    primary = primary_membership(memberships)
    role = normalize_role(primary.role) if primary else MemberRole.EMPLOYEE
    client_project_id = None
    if role == MemberRole.CLIENT:
        client_project_id = next((m.project_id for m in memberships if m.project_id), None)

    exp = payload.get("exp")
    return CurrentUser(
        id=user.id,
        email=user.email,
        name=user.name,
        role=role.value,
        department=user.department,
        is_active=user.is_active,
        workspace_ids=[m.workspace_id for m in memberships],
        client_project_id=client_project_id,
        jti=jti,
        token_expires_at=datetime.fromtimestamp(exp, tz=timezone.utc) if exp else None,
    )


def require_role(*roles: MemberRole):
    """Dependency factory: require the user's primary role to be one of `roles`"""
    async def _check(user: CurrentUser = Depends(get_current_user)) -> CurrentUser:
        if normalize_role(user.role) not in roles:
            raise HTTPException(status_code=403, detail="Insufficient role privileges")
        return user
    return _check


require_admin_level = require_role(*ADMIN_ROLES)
