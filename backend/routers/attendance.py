# routers/attendance.py — Shift start/end tracking with midnight auto-end
import logging
from datetime import datetime, timedelta, timezone
from typing import Optional, List

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field, model_validator
from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession

from attendance_rules import auto_end_expired_shifts, duration_minutes
from activity import reject_nulls
from auth import get_current_user, require_admin_level, CurrentUser
from database import get_db_session
from models import Attendance, AttendanceStatus, User, as_utc, iso, utcnow

router = APIRouter(prefix="/api/attendance", tags=["Attendance"])
logger = logging.getLogger("pms.attendance")


# ============================================================
# SCHEMAS
# ============================================================

class ShiftStart(BaseModel):
    workspace_id: Optional[str] = None
    project_id: Optional[str] = None


class ShiftEnd(BaseModel):
    end_activity: Optional[str] = Field(None, max_length=5000)
    daily_tasks: List[str] = []


class AttendanceUpdate(BaseModel):
    shift_start_time: Optional[datetime] = None
    shift_end_time: Optional[datetime] = None
    end_activity: Optional[str] = Field(None, max_length=5000)
    daily_tasks: Optional[List[str]] = None
    status: Optional[AttendanceStatus] = None

    @model_validator(mode="after")
    def check_required_fields(self):
        reject_nulls(self, ("shift_start_time", "status"))
        return self


# ============================================================
# HELPERS
# ============================================================

def _record_out(a: Attendance, user_name: str = None) -> dict:
    out = {
        "id": a.id,
        "user_id": a.user_id,
        "workspace_id": a.workspace_id,
        "project_id": a.project_id,
        "shift_start_time": iso(a.shift_start_time),
        "shift_end_time": iso(a.shift_end_time),
        "total_duration": a.total_duration,
        "end_activity": a.end_activity,
        "daily_tasks": a.daily_tasks or [],
        "status": a.status.value if hasattr(a.status, "value") else a.status,
        "created_at": iso(a.created_at),
    }
    if user_name is not None:
        out["user_name"] = user_name
    return out


async def _active_shift(db: AsyncSession, user_id: str) -> Optional[Attendance]:
    result = await db.execute(
        select(Attendance).where(
            Attendance.user_id == user_id,
            Attendance.status == AttendanceStatus.IN_PROGRESS,
        )
    )
    return result.scalars().first()


def _date_filters(start_date: Optional[datetime], end_date: Optional[datetime]) -> list:
    filters = []
    if start_date:
        start = start_date if start_date.tzinfo else start_date.replace(tzinfo=timezone.utc)
        filters.append(Attendance.shift_start_time >= start)
    if end_date:
        end = end_date if end_date.tzinfo else end_date.replace(tzinfo=timezone.utc)
        # Date-only values include the whole day
        if (end.hour, end.minute, end.second, end.microsecond) == (0, 0, 0, 0):
            end = end + timedelta(days=1)
        filters.append(Attendance.shift_start_time < end)
    return filters


# ============================================================
# SHIFT ENDPOINTS
# ============================================================

@router.post("/start", status_code=201)
async def start_shift(
    data: ShiftStart,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    await auto_end_expired_shifts(db, user_id=user.id)
    if await _active_shift(db, user.id):
        raise HTTPException(status_code=409, detail="A shift is already in progress")

    shift = Attendance(
        user_id=user.id,
        workspace_id=data.workspace_id,
        project_id=data.project_id,
        shift_start_time=utcnow(),
        status=AttendanceStatus.IN_PROGRESS,
    )
    db.add(shift)
    await db.commit()
    await db.refresh(shift)
    logger.info(f"Shift {shift.id} started by {user.id}")
    return {"data": _record_out(shift)}


@router.post("/end")
async def end_shift(
    data: ShiftEnd,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    await auto_end_expired_shifts(db, user_id=user.id)
    shift = await _active_shift(db, user.id)
    if not shift:
        raise HTTPException(status_code=404, detail="No active shift found")

    now = utcnow()
    shift.shift_end_time = now
    shift.total_duration = duration_minutes(shift.shift_start_time, now)
    shift.end_activity = data.end_activity
    shift.daily_tasks = [t.strip() for t in data.daily_tasks if t and t.strip()]
    shift.status = AttendanceStatus.COMPLETED
    await db.commit()
    await db.refresh(shift)
    logger.info(f"Shift {shift.id} ended by {user.id} after {shift.total_duration} min")
    return {"data": _record_out(shift)}


@router.get("/active")
async def get_active_shift(
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    await auto_end_expired_shifts(db, user_id=user.id)
    shift = await _active_shift(db, user.id)
    return {"data": _record_out(shift) if shift else None}


@router.get("/me")
async def my_attendance(
    start_date: Optional[datetime] = Query(None),
    end_date: Optional[datetime] = Query(None),
    limit: int = Query(default=100, ge=1, le=1000),
    offset: int = Query(default=0, ge=0),
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    await auto_end_expired_shifts(db, user_id=user.id)
    base = select(Attendance).where(Attendance.user_id == user.id, *_date_filters(start_date, end_date))
    total = (await db.execute(select(func.count()).select_from(base.subquery()))).scalar() or 0
    records = (await db.execute(
        base.order_by(Attendance.shift_start_time.desc()).offset(offset).limit(limit)
    )).scalars().all()
    return {"data": {"documents": [_record_out(r) for r in records], "total": total}}


@router.get("")
async def list_attendance(
    user_id: Optional[str] = Query(None),
    status: Optional[AttendanceStatus] = Query(None),
    start_date: Optional[datetime] = Query(None),
    end_date: Optional[datetime] = Query(None),
    limit: int = Query(default=200, ge=1, le=2000),
    offset: int = Query(default=0, ge=0),
    user: CurrentUser = Depends(require_admin_level),
    db: AsyncSession = Depends(get_db_session),
):
    await auto_end_expired_shifts(db)
    filters = _date_filters(start_date, end_date)
    if user_id:
        filters.append(Attendance.user_id == user_id)
    if status:
        filters.append(Attendance.status == status)

    total = (await db.execute(select(func.count(Attendance.id)).where(*filters))).scalar() or 0
    rows = (await db.execute(
        select(Attendance, User.name)
        .join(User, User.id == Attendance.user_id)
        .where(*filters)
        .order_by(Attendance.shift_start_time.desc())
        .offset(offset).limit(limit)
    )).all()
    return {"data": {"documents": [_record_out(a, name) for a, name in rows], "total": total}}


@router.post("/auto-end")
async def trigger_auto_end(
    user: CurrentUser = Depends(require_admin_level),
    db: AsyncSession = Depends(get_db_session),
):
    ended = await auto_end_expired_shifts(db)
    return {"data": {"ended": len(ended), "ids": [s.id for s in ended]}}


@router.patch("/{attendance_id}")
async def update_attendance(
    attendance_id: str,
    data: AttendanceUpdate,
    user: CurrentUser = Depends(require_admin_level),
    db: AsyncSession = Depends(get_db_session),
):
    record = (await db.execute(select(Attendance).where(Attendance.id == attendance_id))).scalar_one_or_none()
    if not record:
        raise HTTPException(status_code=404, detail="Attendance record not found")

    for field, value in data.model_dump(exclude_unset=True).items():
        setattr(record, field, value)
    if record.shift_end_time is not None:
        if as_utc(record.shift_end_time) < as_utc(record.shift_start_time):
            raise HTTPException(status_code=400, detail="Shift end must be after shift start")
        record.total_duration = duration_minutes(record.shift_start_time, record.shift_end_time)

    await db.commit()
    await db.refresh(record)
    logger.info(f"Attendance {attendance_id} edited by {user.id}")
    return {"data": _record_out(record)}
