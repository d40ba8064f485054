# routers/activity.py — Activity log feed
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession

from auth import get_current_user, require_member, CurrentUser
from database import get_db_session
from models import ActivityLog, iso

router = APIRouter(prefix="/api/activity", tags=["Activity"])


def _entry_out(e: ActivityLog) -> dict:
    return {
        "id": e.id,
        "action_type": e.action_type,
        "entity_type": e.entity_type,
        "entity_id": e.entity_id,
        "user_id": e.user_id,
        "user_name": e.user_name,
        "workspace_id": e.workspace_id,
        "project_id": e.project_id,
        "task_id": e.task_id,
        "changes": e.changes or {},
        "summary": e.summary,
        "created_at": iso(e.created_at),
    }


@router.get("")
async def list_activity(
    workspace_id: Optional[str] = Query(None),
    project_id: Optional[str] = Query(None),
    task_id: Optional[str] = Query(None),
    user_id: Optional[str] = Query(None),
    action_type: Optional[str] = Query(None),
    limit: int = Query(default=50, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    if user.is_client:
        raise HTTPException(status_code=403, detail="Unauthorized")

    filters = []
    if workspace_id:
        await require_member(db, workspace_id, user)
        filters.append(ActivityLog.workspace_id == workspace_id)
    elif not user.is_admin_level:
        # Everyone else only sees their own trail outside a workspace view
        filters.append(ActivityLog.user_id == user.id)
    if project_id:
        filters.append(ActivityLog.project_id == project_id)
    if task_id:
        filters.append(ActivityLog.task_id == task_id)
    if user_id:
        filters.append(ActivityLog.user_id == user_id)
    if action_type:
        filters.append(ActivityLog.action_type == action_type)

    total = (await db.execute(select(func.count(ActivityLog.id)).where(*filters))).scalar() or 0
    entries = (await db.execute(
        select(ActivityLog).where(*filters)
        .order_by(ActivityLog.created_at.desc())
        .offset(offset).limit(limit)
    )).scalars().all()
    return {"data": {"documents": [_entry_out(e) for e in entries], "total": total}}
