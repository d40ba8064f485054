# routers/profiles.py — User profiles with admin management and bulk upload
import re
import logging
from datetime import datetime
from typing import Optional, List, Dict, Any

from fastapi import APIRouter, Depends, HTTPException, Query, UploadFile, File, Form
from fastapi.responses import JSONResponse
from pydantic import BaseModel, EmailStr, Field, ValidationError, field_validator, model_validator
from sqlalchemy import select, func, or_, delete
from sqlalchemy.ext.asyncio import AsyncSession

from activity import reject_nulls
from auth import (
    get_current_user, require_admin_level, require_role, require_workspace_role,
    AuthService, CurrentUser, ADMIN_ROLES,
)
from database import get_db_session
from models import User, Member, MemberRole, iso
from spreadsheets import read_rows, parse_date, split_list, cell_text, SpreadsheetError

router = APIRouter(prefix="/api/profiles", tags=["Profiles"])
logger = logging.getLogger("pms.profiles")

MAX_UPLOAD_BYTES = 10 * 1024 * 1024
MAX_UPLOAD_ROWS = 100
MIN_PROFILE_PASSWORD = 6

# Normalised spreadsheet header -> User attribute
UPLOAD_COLUMNS = {
    "name": "name",
    "email": "email",
    "password": "password",
    "mobileno": "mobile_no",
    "mobile": "mobile_no",
    "native": "native",
    "designation": "designation",
    "department": "department",
    "experience": "experience",
    "dateofbirth": "date_of_birth",
    "dob": "date_of_birth",
    "dateofjoining": "date_of_joining",
    "doj": "date_of_joining",
    "skills": "skills",
}


# --- Schemas ---

class ProfileOut(BaseModel):
    id: str
    name: str
    email: str
    mobile_no: Optional[str] = None
    native: Optional[str] = None
    designation: Optional[str] = None
    department: Optional[str] = None
    experience: Optional[int] = None
    date_of_birth: Optional[str] = None
    date_of_joining: Optional[str] = None
    skills: List[str] = []
    is_active: bool
    created_at: str


class ProfileCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=200)
    email: EmailStr
    password: str = Field(..., min_length=MIN_PROFILE_PASSWORD)
    mobile_no: Optional[str] = None
    native: Optional[str] = None
    designation: Optional[str] = None
    department: Optional[str] = None
    experience: Optional[int] = Field(None, ge=0)
    date_of_birth: Optional[datetime] = None
    date_of_joining: Optional[datetime] = None
    skills: List[str] = []
    workspace_id: Optional[str] = None
    role: MemberRole = MemberRole.EMPLOYEE


class ProfileUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=200)
    email: Optional[EmailStr] = None
    mobile_no: Optional[str] = None
    native: Optional[str] = None
    designation: Optional[str] = None
    department: Optional[str] = None
    experience: Optional[int] = Field(None, ge=0)
    date_of_birth: Optional[datetime] = None
    date_of_joining: Optional[datetime] = None
    skills: Optional[List[str]] = None

    @field_validator("skills")
    @classmethod
    def strip_skills(cls, v):
        if v is None:
            return v
        return [s.strip() for s in v if s and s.strip()]

    @model_validator(mode="after")
    def check_required_fields(self):
        reject_nulls(self, ("name", "email"))
        return self


def _profile_out(u: User) -> dict:
    return ProfileOut(
        id=u.id, name=u.name, email=u.email,
        mobile_no=u.mobile_no, native=u.native,
        designation=u.designation, department=u.department,
        experience=u.experience,
        date_of_birth=iso(u.date_of_birth),
        date_of_joining=iso(u.date_of_joining),
        skills=u.skills or [],
        is_active=bool(u.is_active),
        created_at=iso(u.created_at),
    ).model_dump()


async def _find_conflict(db: AsyncSession, name: str, email: str, mobile_no: Optional[str], exclude_id: str = None) -> Optional[str]:
    conds = [func.lower(User.email) == email.lower(), User.name == name]
    if mobile_no:
        conds.append(User.mobile_no == mobile_no)
    stmt = select(User).where(or_(*conds))
    if exclude_id:
        stmt = stmt.where(User.id != exclude_id)
    existing = (await db.execute(stmt)).scalars().first()
    if not existing:
        return None
    if existing.email.lower() == email.lower():
        return f"Email {email} already exists"
    if existing.name == name:
        return f"Name {name} already exists"
    return f"Mobile number {mobile_no} already exists"


# ============================================================
# LIST / LOOKUPS
# ============================================================

@router.get("")
async def list_profiles(
    department: Optional[str] = Query(None),
    search: Optional[str] = Query(None, max_length=200),
    limit: int = Query(default=100, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    user: CurrentUser = Depends(require_admin_level),
    db: AsyncSession = Depends(get_db_session),
):
    base = select(User).where(User.is_active.is_(True))
    if department:
        base = base.where(User.department == department)
    if search:
        term = f"%{search.lower()}%"
        base = base.where(or_(func.lower(User.name).like(term), func.lower(User.email).like(term)))

    total = (await db.execute(select(func.count()).select_from(base.subquery()))).scalar() or 0
    result = await db.execute(base.order_by(User.name).offset(offset).limit(limit))
    return {"data": {"documents": [_profile_out(u) for u in result.scalars().all()], "total": total}}


@router.get("/departments")
async def list_departments(
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    result = await db.execute(
        select(User.department).where(User.department.isnot(None)).distinct().order_by(User.department)
    )
    return {"data": [d for d in result.scalars().all() if d]}


@router.get("/{user_id}")
async def get_profile(
    user_id: str,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    if user_id != user.id and not user.is_admin_level:
        raise HTTPException(status_code=403, detail="Unauthorized")
    profile = (await db.execute(select(User).where(User.id == user_id))).scalar_one_or_none()
    if not profile:
        raise HTTPException(status_code=404, detail="Profile not found")
    return {"data": _profile_out(profile)}


# ============================================================
# CREATE / UPDATE / DELETE
# ============================================================

@router.post("", status_code=201)
async def create_profile(
    data: ProfileCreate,
    user: CurrentUser = Depends(require_admin_level),
    db: AsyncSession = Depends(get_db_session),
):
    conflict = await _find_conflict(db, data.name.strip(), data.email, data.mobile_no)
    if conflict:
        raise HTTPException(status_code=409, detail=conflict)

    if data.workspace_id:
        await require_workspace_role(db, data.workspace_id, user, *ADMIN_ROLES)

    profile = User(
        name=data.name.strip(),
        email=data.email.lower(),
        password_hash=AuthService.hash_password(data.password),
        mobile_no=data.mobile_no,
        native=data.native,
        designation=data.designation,
        department=data.department,
        experience=data.experience,
        date_of_birth=data.date_of_birth,
        date_of_joining=data.date_of_joining,
        skills=[s.strip() for s in data.skills if s.strip()],
        is_active=True,
    )
    db.add(profile)
    await db.flush()

    if data.workspace_id:
        db.add(Member(user_id=profile.id, workspace_id=data.workspace_id, role=data.role))

    await db.commit()
    await db.refresh(profile)
    logger.info(f"Profile {profile.id} created by {user.id}")
    return {"data": _profile_out(profile)}


@router.patch("/{user_id}")
async def update_profile(
    user_id: str,
    data: ProfileUpdate,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    if user_id != user.id and not user.is_admin_level:
        raise HTTPException(status_code=403, detail="Unauthorized")

    profile = (await db.execute(select(User).where(User.id == user_id))).scalar_one_or_none()
    if not profile:
        raise HTTPException(status_code=404, detail="Profile not found")

    updates = data.model_dump(exclude_unset=True)
    if "email" in updates and updates["email"]:
        updates["email"] = updates["email"].lower()
        taken = (await db.execute(
            select(User.id).where(User.email == updates["email"], User.id != user_id)
        )).scalar_one_or_none()
        if taken:
            raise HTTPException(status_code=409, detail="Email already in use")

    for field, value in updates.items():
        setattr(profile, field, value)
    await db.commit()
    await db.refresh(profile)
    return {"data": _profile_out(profile)}


@router.delete("/{user_id}")
async def delete_profile(
    user_id: str,
    user: CurrentUser = Depends(require_role(MemberRole.ADMIN)),
    db: AsyncSession = Depends(get_db_session),
):
    if user_id == user.id:
        raise HTTPException(status_code=400, detail="You cannot delete your own profile")

    profile = (await db.execute(select(User).where(User.id == user_id))).scalar_one_or_none()
    if not profile:
        raise HTTPException(status_code=404, detail="Profile not found")

    await db.execute(delete(Member).where(Member.user_id == user_id))
    await db.delete(profile)
    await db.commit()
    logger.info(f"Profile {user_id} deleted by {user.id}")
    return {"data": {"id": user_id}}


# ============================================================
# BULK UPLOAD
# ============================================================

def _normalise_row(row: Dict[str, Any]) -> Dict[str, Any]:
    out = {}
    for header, value in row.items():
        key = UPLOAD_COLUMNS.get(re.sub(r"[\s_\-]", "", header.lower()))
        if key:
            out[key] = value
    return out


class ProfileRow(BaseModel):
    """One normalised bulk-upload row; only the columns that can reject a row."""
    name: str = Field(..., min_length=1)
    email: EmailStr
    password: str = Field(..., min_length=MIN_PROFILE_PASSWORD)
    experience: Optional[int] = None

    @field_validator("experience", mode="before")
    @classmethod
    def coerce_experience(cls, v):
        try:
            return int(float(v))
        except (TypeError, ValueError):
            raise ValueError("experience must be a number")


ROW_ERROR_MESSAGES = {
    "name": "name is required",
    "email": "invalid email format",
    "password": f"password must be at least {MIN_PROFILE_PASSWORD} characters",
    "experience": "experience must be a number",
}


def _validate_row(row: Dict[str, Any], row_number: int) -> List[str]:
    values = {
        "name": cell_text(row.get("name")),
        "email": cell_text(row.get("email")),
        "password": cell_text(row.get("password")),
        "experience": row.get("experience"),
    }
    try:
        ProfileRow.model_validate({k: v for k, v in values.items() if v not in (None, "")})
    except ValidationError as e:
        errors = []
        for err in e.errors():
            field = err["loc"][0] if err["loc"] else "row"
            if err["type"] == "missing":
                message = f"{field} is required"
            else:
                message = ROW_ERROR_MESSAGES.get(field, err["msg"])
            errors.append(f"Row {row_number}: {message}")
        return errors
    return []


@router.post("/bulk-upload")
async def bulk_upload_profiles(
    file: UploadFile = File(...),
    workspace_id: Optional[str] = Form(None),
    user: CurrentUser = Depends(require_admin_level),
    db: AsyncSession = Depends(get_db_session),
):
    """Create profiles from an .xlsx/.csv sheet; rows clashing with existing users are skipped"""
    content = await file.read()
    if len(content) > MAX_UPLOAD_BYTES:
        raise HTTPException(status_code=400, detail="File size exceeds 10MB limit")
    try:
        raw_rows = read_rows(file.filename, content)
    except SpreadsheetError as e:
        raise HTTPException(status_code=400, detail=str(e))

    if not raw_rows:
        raise HTTPException(status_code=400, detail="File contains no data rows")
    if len(raw_rows) > MAX_UPLOAD_ROWS:
        raise HTTPException(status_code=400, detail=f"Maximum {MAX_UPLOAD_ROWS} rows allowed per upload")

    if workspace_id:
        await require_workspace_role(db, workspace_id, user, *ADMIN_ROLES)

    rows = [_normalise_row(r) for r in raw_rows]
    errors = []
    for i, row in enumerate(rows, start=2):  # row 1 is the header
        errors.extend(_validate_row(row, i))
    if errors:
        return JSONResponse(status_code=400, content={"error": "Validation failed", "details": errors})

    created, skipped = [], []
    seen_names, seen_emails, seen_mobiles = set(), set(), set()
    for i, row in enumerate(rows, start=2):
        name = cell_text(row.get("name"))
        email = cell_text(row.get("email")).lower()
        mobile_no = cell_text(row.get("mobile_no")) or None

        conflict = None
        if email in seen_emails:
            conflict = f"Email {email} appears more than once in the file"
        elif name in seen_names:
            conflict = f"Name {name} appears more than once in the file"
        elif mobile_no and mobile_no in seen_mobiles:
            conflict = f"Mobile number {mobile_no} appears more than once in the file"
        else:
            conflict = await _find_conflict(db, name, email, mobile_no)
        if conflict:
            skipped.append(f"Row {i}: {conflict}")
            continue

        seen_names.add(name)
        seen_emails.add(email)
        if mobile_no:
            seen_mobiles.add(mobile_no)

        experience = row.get("experience")
        profile = User(
            name=name,
            email=email,
            password_hash=AuthService.hash_password(cell_text(row.get("password"))),
            mobile_no=mobile_no,
            native=cell_text(row.get("native")) or None,
            designation=cell_text(row.get("designation")) or None,
            department=cell_text(row.get("department")) or None,
            experience=int(float(experience)) if experience not in (None, "") else None,
            date_of_birth=parse_date(row.get("date_of_birth")),
            date_of_joining=parse_date(row.get("date_of_joining")),
            skills=split_list(row.get("skills")),
            is_active=True,
        )
        db.add(profile)
        await db.flush()
        if workspace_id:
            db.add(Member(user_id=profile.id, workspace_id=workspace_id, role=MemberRole.EMPLOYEE))
        created.append(profile)

    if not created:
        await db.rollback()
        return JSONResponse(
            status_code=409,
            content={"error": "All profiles already exist", "details": skipped},
        )

    await db.commit()
    logger.info(f"Bulk upload by {user.id}: {len(created)} created, {len(skipped)} skipped")
    return {"data": {
        "created": len(created),
        "skipped": len(skipped),
        "messages": skipped,
        "profiles": [_profile_out(p) for p in created],
    }}
