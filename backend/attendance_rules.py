# attendance_rules.py — Shift timing rules (midnight auto-end)
"""
A shift that is still IN_PROGRESS once the midnight following its start day
has passed is closed at that midnight and marked AUTO_COMPLETED. Midnight is
evaluated in ATTENDANCE_TIMEZONE (default UTC).
"""
import os
import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Optional, List
from zoneinfo import ZoneInfo

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from models import Attendance, AttendanceStatus, as_utc, utcnow

logger = logging.getLogger("pms.attendance")

ATTENDANCE_TIMEZONE = ZoneInfo(os.getenv("ATTENDANCE_TIMEZONE", "UTC"))

AUTO_END_ACTIVITY = "Shift automatically ended at midnight - Not ended manually"
AUTO_END_DAILY_TASKS = ["Auto-ended at midnight - No tasks entered"]


def next_midnight(start: datetime, tz=ATTENDANCE_TIMEZONE) -> datetime:
    """Midnight that ends the calendar day `start` falls on, as UTC."""
    local = as_utc(start).astimezone(tz)
    midnight = datetime(local.year, local.month, local.day, tzinfo=tz) + timedelta(days=1)
    return midnight.astimezone(timezone.utc)


def duration_minutes(start: datetime, end: datetime) -> int:
    delta = as_utc(end) - as_utc(start)
    return max(0, int(delta.total_seconds() // 60))


def is_expired(start: datetime, now: Optional[datetime] = None, tz=ATTENDANCE_TIMEZONE) -> bool:
    now = as_utc(now) if now else utcnow()
    return now >= next_midnight(start, tz)


def apply_auto_end(shift: Attendance, tz=ATTENDANCE_TIMEZONE) -> None:
    end = next_midnight(shift.shift_start_time, tz)
    shift.shift_end_time = end
    shift.total_duration = duration_minutes(shift.shift_start_time, end)
    shift.end_activity = AUTO_END_ACTIVITY
    if not shift.daily_tasks:
        shift.daily_tasks = list(AUTO_END_DAILY_TASKS)
    shift.status = AttendanceStatus.AUTO_COMPLETED


async def auto_end_expired_shifts(
    db: AsyncSession, user_id: Optional[str] = None, now: Optional[datetime] = None,
) -> List[Attendance]:
    """Close every expired IN_PROGRESS shift (optionally for one user) and commit."""
    stmt = select(Attendance).where(Attendance.status == AttendanceStatus.IN_PROGRESS)
    if user_id:
        stmt = stmt.where(Attendance.user_id == user_id)
    result = await db.execute(stmt)

    ended = []
    for shift in result.scalars().all():
        if is_expired(shift.shift_start_time, now):
            apply_auto_end(shift)
            ended.append(shift)

    if ended:
        await db.commit()
        logger.info(f"Auto-ended {len(ended)} shift(s) at midnight")
    return ended


ATTENDANCE_SWEEP_SECONDS = int(os.getenv("ATTENDANCE_SWEEP_SECONDS", 300))


async def sweep_once(session_factory=None, now: Optional[datetime] = None) -> int:
    """Run one auto-end pass in a fresh session; returns how many shifts were closed."""
    if session_factory is None:
        from database import async_session_maker as session_factory

    async with session_factory() as db:
        ended = await auto_end_expired_shifts(db, now=now)
    return len(ended)


async def run_midnight_sweeper(interval: int = ATTENDANCE_SWEEP_SECONDS, session_factory=None):
    """Background loop closing expired shifts every `interval` seconds until cancelled."""
    logger.info(f"Attendance sweeper running every {interval}s ({ATTENDANCE_TIMEZONE.key})")
    while True:
        try:
            await sweep_once(session_factory)
        except Exception as e:
            logger.error(f"Attendance sweep failed: {e}")
        await asyncio.sleep(interval)
