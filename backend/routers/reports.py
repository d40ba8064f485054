# routers/reports.py — Task reports (JSON or XLSX download)
import logging
from typing import Optional, List

from fastapi import APIRouter, Depends, HTTPException, Query
from fastapi.responses import Response
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from auth import get_current_user, require_member, CurrentUser
from database import get_db_session
from models import Task, Project, Member, User
import reporting
from reporting import TaskSnapshot, ReportTable
from routers.tasks import visibility_filter
from spreadsheets import workbook_bytes, XLSX_MEDIA_TYPE
from telemetry import traced

router = APIRouter(prefix="/api/reports", tags=["Reports"])
logger = logging.getLogger("pms.reports")

FORMAT_PATTERN = r"^(json|xlsx)$"


# ============================================================
# HELPERS
# ============================================================

async def _load_tasks(
    db: AsyncSession, user: CurrentUser,
    project_id: Optional[str], workspace_id: Optional[str],
) -> List[TaskSnapshot]:
    filters = []
    cond = await visibility_filter(db, user)
    if cond is not None:
        filters.append(cond)
    if project_id:
        filters.append(Task.project_id == project_id)
    if workspace_id:
        filters.append(Task.workspace_id == workspace_id)
    tasks = (await db.execute(select(Task).where(*filters))).scalars().all()
    return [TaskSnapshot.from_task(t) for t in tasks]


def _xlsx_response(tables: List[ReportTable], filename: str) -> Response:
    return Response(
        content=workbook_bytes(tables),
        media_type=XLSX_MEDIA_TYPE,
        headers={"Content-Disposition": f'attachment; filename="{filename}.xlsx"'},
    )


# ============================================================
# REPORT ENDPOINTS
# ============================================================

@router.get("/completion-rate")
async def completion_rate_report(
    project_id: Optional[str] = Query(None),
    workspace_id: Optional[str] = Query(None),
    days: int = Query(default=30, ge=1, le=365),
    format: str = Query(default="json", pattern=FORMAT_PATTERN),
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    tasks = await _load_tasks(db, user, project_id, workspace_id)
    with traced("report.completion_rate", tasks=len(tasks), days=days):
        report = reporting.completion_rate(tasks, days=days)
    if format == "xlsx":
        return _xlsx_response([reporting.completion_rate_table(report)], "completion-rate")
    return {"data": report}


@router.get("/cumulative-flow")
async def cumulative_flow_report(
    project_id: Optional[str] = Query(None),
    workspace_id: Optional[str] = Query(None),
    days: int = Query(default=30, ge=1, le=365),
    format: str = Query(default="json", pattern=FORMAT_PATTERN),
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    tasks = await _load_tasks(db, user, project_id, workspace_id)
    with traced("report.cumulative_flow", tasks=len(tasks), days=days):
        report = reporting.cumulative_flow(tasks, days=days)
    if format == "xlsx":
        return _xlsx_response([reporting.cumulative_flow_table(report)], "cumulative-flow")
    return {"data": report}


@router.get("/cycle-time")
async def cycle_time_report(
    project_id: Optional[str] = Query(None),
    workspace_id: Optional[str] = Query(None),
    format: str = Query(default="json", pattern=FORMAT_PATTERN),
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    tasks = await _load_tasks(db, user, project_id, workspace_id)
    with traced("report.cycle_time", tasks=len(tasks)):
        report = reporting.cycle_time(tasks)
    if format == "xlsx":
        return _xlsx_response([reporting.cycle_time_table(report)], "cycle-time")
    return {"data": report}


@router.get("/burndown")
async def burndown_report(
    project_id: Optional[str] = Query(None),
    workspace_id: Optional[str] = Query(None),
    days: int = Query(default=14, ge=1, le=365),
    format: str = Query(default="json", pattern=FORMAT_PATTERN),
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    tasks = await _load_tasks(db, user, project_id, workspace_id)
    with traced("report.burndown", tasks=len(tasks), days=days):
        report = reporting.burndown(tasks, days=days)
    if format == "xlsx":
        return _xlsx_response([reporting.burndown_table(report)], "burndown")
    return {"data": report}


@router.get("/workspace/{workspace_id}")
async def workspace_report(
    workspace_id: str,
    format: str = Query(default="json", pattern=FORMAT_PATTERN),
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    if user.is_client:
        raise HTTPException(status_code=403, detail="Unauthorized")
    await require_member(db, workspace_id, user)

    tasks = await _load_tasks(db, user, None, workspace_id)
    projects = {
        pid: name for pid, name in (await db.execute(
            select(Project.id, Project.name).where(Project.workspace_id == workspace_id).order_by(Project.name)
        )).all()
    }
    members = {
        uid: name for uid, name in (await db.execute(
            select(User.id, User.name)
            .join(Member, Member.user_id == User.id)
            .where(Member.workspace_id == workspace_id)
            .order_by(User.name)
        )).all()
    }
    with traced("report.workspace_summary", tasks=len(tasks), workspace_id=workspace_id):
        report = reporting.workspace_summary(tasks, projects, members)
    if format == "xlsx":
        return _xlsx_response(reporting.workspace_summary_tables(report), "workspace-report")
    return {"data": report}
