# routers/weekly_reports.py — Weekly work reports with drafts and review
import logging
from datetime import date, datetime, timezone
from typing import Optional, List, Dict

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field, model_validator
from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession

from activity import reject_nulls
from auth import get_current_user, require_admin_level, normalize_role, CurrentUser
from database import get_db_session
from models import (
    WeeklyReport, WeeklyReportStatus, User, MemberRole, NotificationType, iso,
)
from routers.notifications import notify

router = APIRouter(prefix="/api/weekly-reports", tags=["Weekly Reports"])
logger = logging.getLogger("pms.weekly_reports")


# ============================================================
# SCHEMAS
# ============================================================

class WeeklyReportCreate(BaseModel):
    from_date: date
    to_date: date
    department: Optional[str] = Field(None, max_length=200)
    daily_descriptions: Dict[str, str] = {}
    uploaded_files: List[str] = []
    is_draft: bool = False


class WeeklyReportUpdate(BaseModel):
    from_date: Optional[date] = None
    to_date: Optional[date] = None
    department: Optional[str] = Field(None, max_length=200)
    daily_descriptions: Optional[Dict[str, str]] = None
    uploaded_files: Optional[List[str]] = None
    is_draft: Optional[bool] = None

    @model_validator(mode="after")
    def check_required_fields(self):
        reject_nulls(self, ("from_date", "to_date", "department", "daily_descriptions", "uploaded_files", "is_draft"))
        return self


# ============================================================
# HELPERS
# ============================================================

def _day(d: date) -> datetime:
    return datetime(d.year, d.month, d.day, tzinfo=timezone.utc)


def _report_out(r: WeeklyReport, user_name: str = None) -> dict:
    out = {
        "id": r.id,
        "user_id": r.user_id,
        "from_date": iso(r.from_date),
        "to_date": iso(r.to_date),
        "department": r.department,
        "daily_descriptions": r.daily_descriptions or {},
        "uploaded_files": r.uploaded_files or [],
        "status": r.status.value if hasattr(r.status, "value") else r.status,
        "is_draft": bool(r.is_draft),
        "created_at": iso(r.created_at),
        "updated_at": iso(r.updated_at),
    }
    if user_name is not None:
        out["user_name"] = user_name
    return out


async def _get_report_or_404(db: AsyncSession, report_id: str) -> WeeklyReport:
    report = (await db.execute(select(WeeklyReport).where(WeeklyReport.id == report_id))).scalar_one_or_none()
    if not report:
        raise HTTPException(status_code=404, detail="Weekly report not found")
    return report


async def _ensure_no_submitted_duplicate(db: AsyncSession, user_id: str, from_date: datetime, exclude_id: str = None) -> None:
    stmt = select(WeeklyReport.id).where(
        WeeklyReport.user_id == user_id,
        WeeklyReport.from_date == from_date,
        WeeklyReport.is_draft.is_(False),
    )
    if exclude_id:
        stmt = stmt.where(WeeklyReport.id != exclude_id)
    if (await db.execute(stmt)).first():
        raise HTTPException(status_code=409, detail="A report for this week has already been submitted")


# ============================================================
# ENDPOINTS
# ============================================================

@router.post("", status_code=201)
async def create_report(
    data: WeeklyReportCreate,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    if data.from_date > data.to_date:
        raise HTTPException(status_code=400, detail="From date must be on or before to date")
    department = (data.department or user.department or "").strip()
    if not department:
        raise HTTPException(status_code=400, detail="Department is required")

    from_date = _day(data.from_date)
    if not data.is_draft:
        await _ensure_no_submitted_duplicate(db, user.id, from_date)

    report = WeeklyReport(
        user_id=user.id,
        from_date=from_date,
        to_date=_day(data.to_date),
        department=department,
        daily_descriptions=data.daily_descriptions,
        uploaded_files=data.uploaded_files,
        is_draft=data.is_draft,
        status=WeeklyReportStatus.DRAFT if data.is_draft else WeeklyReportStatus.SUBMITTED,
    )
    db.add(report)
    await db.commit()
    await db.refresh(report)
    logger.info(f"Weekly report {report.id} {'drafted' if data.is_draft else 'submitted'} by {user.id}")
    return {"data": _report_out(report)}


@router.get("/my-reports")
async def my_reports(
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    reports = (await db.execute(
        select(WeeklyReport)
        .where(WeeklyReport.user_id == user.id)
        .order_by(WeeklyReport.from_date.desc())
    )).scalars().all()
    return {"data": {"documents": [_report_out(r) for r in reports], "total": len(reports)}}


@router.get("")
async def list_reports(
    department: Optional[str] = Query(None),
    user_id: Optional[str] = Query(None),
    from_date: Optional[date] = Query(None),
    to_date: Optional[date] = Query(None),
    limit: int = Query(default=200, ge=1, le=1000),
    offset: int = Query(default=0, ge=0),
    user: CurrentUser = Depends(require_admin_level),
    db: AsyncSession = Depends(get_db_session),
):
    filters = [WeeklyReport.is_draft.is_(False)]
    if department:
        filters.append(WeeklyReport.department == department)
    if user_id:
        filters.append(WeeklyReport.user_id == user_id)
    if from_date:
        filters.append(WeeklyReport.from_date >= _day(from_date))
    if to_date:
        filters.append(WeeklyReport.to_date <= _day(to_date))

    total = (await db.execute(select(func.count(WeeklyReport.id)).where(*filters))).scalar() or 0
    rows = (await db.execute(
        select(WeeklyReport, User.name)
        .join(User, User.id == WeeklyReport.user_id)
        .where(*filters)
        .order_by(WeeklyReport.from_date.desc())
        .offset(offset).limit(limit)
    )).all()
    return {"data": {"documents": [_report_out(r, name) for r, name in rows], "total": total}}


@router.get("/{report_id}")
async def get_report(
    report_id: str,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    report = await _get_report_or_404(db, report_id)
    if report.user_id != user.id and not user.is_admin_level:
        raise HTTPException(status_code=403, detail="Unauthorized")
    return {"data": _report_out(report)}


@router.patch("/{report_id}")
async def update_report(
    report_id: str,
    data: WeeklyReportUpdate,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    report = await _get_report_or_404(db, report_id)
    if report.user_id != user.id:
        raise HTTPException(status_code=403, detail="Unauthorized")
    if not report.is_draft:
        raise HTTPException(status_code=400, detail="Only draft reports can be edited")

    updates = data.model_dump(exclude_unset=True)
    for key in ("from_date", "to_date"):
        if updates.get(key) is not None:
            updates[key] = _day(updates[key])
    for field, value in updates.items():
        if field != "is_draft" and value is not None:
            setattr(report, field, value)

    if report.from_date.replace(tzinfo=None) > report.to_date.replace(tzinfo=None):
        raise HTTPException(status_code=400, detail="From date must be on or before to date")

    if updates.get("is_draft") is False:
        await _ensure_no_submitted_duplicate(db, user.id, _day(report.from_date.date()), exclude_id=report.id)
        report.is_draft = False
        report.status = WeeklyReportStatus.SUBMITTED

    await db.commit()
    await db.refresh(report)
    return {"data": _report_out(report)}


@router.post("/{report_id}/review")
async def review_report(
    report_id: str,
    user: CurrentUser = Depends(require_admin_level),
    db: AsyncSession = Depends(get_db_session),
):
    report = await _get_report_or_404(db, report_id)
    if report.is_draft:
        raise HTTPException(status_code=400, detail="Draft reports cannot be reviewed")
    report.status = WeeklyReportStatus.REVIEWED
    await notify(
        db, report.user_id, NotificationType.WEEKLY_REPORT_REVIEWED,
        title="Weekly report reviewed",
        message=f"{user.name} reviewed your report for the week of {report.from_date.date().isoformat()}",
        actor=user,
    )
    await db.commit()
    await db.refresh(report)
    return {"data": _report_out(report)}


@router.delete("/{report_id}")
async def delete_report(
    report_id: str,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    report = await _get_report_or_404(db, report_id)
    is_owner_draft = report.user_id == user.id and report.is_draft
    if not is_owner_draft and normalize_role(user.role) != MemberRole.ADMIN:
        raise HTTPException(status_code=403, detail="Only drafts can be deleted by their owner")
    await db.delete(report)
    await db.commit()
    return {"data": {"id": report_id}}
