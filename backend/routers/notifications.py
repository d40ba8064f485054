# routers/notifications.py — In-app notifications
import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel
from sqlalchemy import select, func, update, delete
from sqlalchemy.ext.asyncio import AsyncSession

from auth import get_current_user, CurrentUser
from database import get_db_session
from models import Notification, NotificationType, iso, utcnow

router = APIRouter(prefix="/api/notifications", tags=["Notifications"])
logger = logging.getLogger("pms.notifications")


# --- Schemas ---

class NotificationOut(BaseModel):
    id: str
    user_id: str
    task_id: Optional[str] = None
    type: str
    title: str
    message: Optional[str] = None
    action_by: Optional[str] = None
    action_by_name: Optional[str] = None
    is_read: bool
    read_at: Optional[str] = None
    created_at: str


def _notif_out(n) -> dict:
    return NotificationOut(
        id=n.id, user_id=n.user_id, task_id=n.task_id,
        type=n.type, title=n.title, message=n.message,
        action_by=n.action_by, action_by_name=n.action_by_name,
        is_read=bool(n.is_read),
        read_at=iso(n.read_at),
        created_at=iso(n.created_at),
    ).model_dump()


async def notify(
    db: AsyncSession,
    user_id: Optional[str],
    type: NotificationType,
    title: str,
    message: Optional[str] = None,
    task_id: Optional[str] = None,
    actor: Optional[CurrentUser] = None,
) -> Optional[Notification]:
    """Queue a notification on the session; the caller commits. Self-actions are skipped."""
    if not user_id or (actor and actor.id == user_id):
        return None
    notif = Notification(
        user_id=user_id,
        task_id=task_id,
        type=type.value if hasattr(type, "value") else str(type),
        title=title,
        message=message,
        action_by=actor.id if actor else None,
        action_by_name=actor.name if actor else None,
        is_read=False,
    )
    db.add(notif)
    logger.debug(f"Notification {notif.type} queued for {user_id}")
    return notif


# ============================================================
# LIST
# ============================================================

@router.get("")
async def list_notifications(
    unread_only: bool = Query(default=False),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    db: AsyncSession = Depends(get_db_session),
    user: CurrentUser = Depends(get_current_user),
):
    base = select(Notification).where(Notification.user_id == user.id)
    if unread_only:
        base = base.where(Notification.is_read.is_(False))
    total = (await db.execute(select(func.count()).select_from(base.subquery()))).scalar() or 0
    query = base.order_by(Notification.created_at.desc()).offset(offset).limit(limit)
    result = await db.execute(query)
    return {"data": {"documents": [_notif_out(n) for n in result.scalars().all()], "total": total}}


# ============================================================
# COUNT
# ============================================================

@router.get("/unread-count")
async def notification_count(
    db: AsyncSession = Depends(get_db_session),
    user: CurrentUser = Depends(get_current_user),
):
    unread = (await db.execute(
        select(func.count(Notification.id)).where(
            Notification.user_id == user.id,
            Notification.is_read.is_(False),
        )
    )).scalar() or 0
    return {"data": {"count": unread}}


# ============================================================
# MARK READ
# ============================================================

@router.patch("/read-all")
async def mark_all_read(
    db: AsyncSession = Depends(get_db_session),
    user: CurrentUser = Depends(get_current_user),
):
    result = await db.execute(
        update(Notification)
        .where(Notification.user_id == user.id, Notification.is_read.is_(False))
        .values(is_read=True, read_at=utcnow())
    )
    await db.commit()
    return {"data": {"marked": result.rowcount or 0}}


@router.patch("/{notification_id}/read")
async def mark_read(
    notification_id: str,
    db: AsyncSession = Depends(get_db_session),
    user: CurrentUser = Depends(get_current_user),
):
    result = await db.execute(
        select(Notification).where(
            Notification.id == notification_id,
            Notification.user_id == user.id,
        )
    )
    notif = result.scalar_one_or_none()
    if not notif:
        raise HTTPException(404, "Notification not found")
    if not notif.is_read:
        notif.is_read = True
        notif.read_at = utcnow()
        await db.commit()
    return {"data": _notif_out(notif)}


# ============================================================
# DELETE
# ============================================================

@router.delete("/{notification_id}")
async def delete_notification(
    notification_id: str,
    db: AsyncSession = Depends(get_db_session),
    user: CurrentUser = Depends(get_current_user),
):
    result = await db.execute(
        select(Notification).where(
            Notification.id == notification_id,
            Notification.user_id == user.id,
        )
    )
    notif = result.scalar_one_or_none()
    if not notif:
        raise HTTPException(404, "Notification not found")
    await db.delete(notif)
    await db.commit()
    return {"data": {"id": notification_id}}


@router.delete("")
async def clear_read_notifications(
    db: AsyncSession = Depends(get_db_session),
    user: CurrentUser = Depends(get_current_user),
):
    result = await db.execute(
        delete(Notification).where(
            Notification.user_id == user.id,
            Notification.is_read.is_(True),
        )
    )
    await db.commit()
    return {"data": {"deleted": result.rowcount or 0}}
