# activity.py — Activity log helpers shared by the feature routers
import logging
from datetime import datetime
from typing import Optional, Dict, Any

from sqlalchemy.ext.asyncio import AsyncSession

from models import ActivityLog, iso

logger = logging.getLogger("pms.activity")


class ActionType:
    TASK_CREATED = "TASK_CREATED"
    TASK_UPDATED = "TASK_UPDATED"
    TASK_DELETED = "TASK_DELETED"
    TASK_STATUS_CHANGED = "TASK_STATUS_CHANGED"
    TASK_ASSIGNED = "TASK_ASSIGNED"
    TASKS_IMPORTED = "TASKS_IMPORTED"
    PROJECT_CREATED = "PROJECT_CREATED"
    PROJECT_UPDATED = "PROJECT_UPDATED"
    PROJECT_DELETED = "PROJECT_DELETED"
    MEMBER_ADDED = "MEMBER_ADDED"
    MEMBER_ROLE_CHANGED = "MEMBER_ROLE_CHANGED"
    MEMBER_REMOVED = "MEMBER_REMOVED"
    BUG_CREATED = "BUG_CREATED"
    BUG_UPDATED = "BUG_UPDATED"
    REQUIREMENT_CREATED = "REQUIREMENT_CREATED"
    REQUIREMENT_UPDATED = "REQUIREMENT_UPDATED"
    REQUIREMENT_STATUS_CHANGED = "REQUIREMENT_STATUS_CHANGED"


def _plain(value):
    if hasattr(value, "value"):
        value = value.value
    if value is None or isinstance(value, (str, int, float, bool, list, dict)):
        return value
    if isinstance(value, datetime):
        return iso(value)
    return str(value)


def diff_fields(obj, updates: Dict[str, Any]) -> Dict[str, Dict[str, Any]]:
    """{field: {"old": ..., "new": ...}} for every value that actually changes."""
    changes = {}
    for field, new in updates.items():
        old = _plain(getattr(obj, field, None))
        new = _plain(new)
        if old != new:
            changes[field] = {"old": old, "new": new}
    return changes


def reject_nulls(model, fields) -> None:
    """Raise ValueError for fields a partial update sent as explicit null that must keep a value."""
    nulls = sorted(f for f in fields if f in model.model_fields_set and getattr(model, f) is None)
    if nulls:
        raise ValueError(f"{', '.join(nulls)} cannot be null")


async def record_activity(
    db: AsyncSession,
    action_type: str,
    entity_type: str,
    user_id: str,
    user_name: str,
    entity_id: Optional[str] = None,
    workspace_id: Optional[str] = None,
    project_id: Optional[str] = None,
    task_id: Optional[str] = None,
    changes: Optional[dict] = None,
    summary: Optional[str] = None,
) -> ActivityLog:
    """Add an activity entry to the session; the caller commits"""
    entry = ActivityLog(
        action_type=action_type,
        entity_type=entity_type,
        entity_id=entity_id,
        user_id=user_id,
        user_name=user_name,
        workspace_id=workspace_id,
        project_id=project_id,
        task_id=task_id,
        changes=changes or {},
        summary=summary,
    )
    db.add(entry)
    logger.debug(f"{action_type} {entity_type}:{entity_id} by {user_id}")
    return entry
