"""
PMS — Report aggregation

Completion rate, cumulative flow, cycle time, burndown, month-over-month
analytics and workspace summaries, computed in memory over task rows that
the routers have already fetched and filtered.
"""

from dataclasses import dataclass, field
from typing import Dict, List, Optional, Any, Iterable
from datetime import datetime, date, timezone, timedelta
import statistics

from models import TaskStatus, as_utc


FLOW_BUCKETS = {
    TaskStatus.BACKLOG.value: "To Do",
    TaskStatus.TODO.value: "To Do",
    TaskStatus.IN_PROGRESS.value: "In Progress",
    TaskStatus.IN_REVIEW.value: "In Review",
    TaskStatus.DONE.value: "Done",
}
FLOW_COLUMNS = ["To Do", "In Progress", "In Review", "Done"]

CYCLE_RED = "#ef4444"
CYCLE_AMBER = "#f59e0b"
CYCLE_GREEN = "#22c55e"


@dataclass
class TaskSnapshot:
    id: str
    status: str
    created_at: datetime
    updated_at: Optional[datetime] = None
    resolved_at: Optional[datetime] = None
    due_date: Optional[datetime] = None
    project_id: Optional[str] = None
    assignee_id: Optional[str] = None
    issue_id: str = ""
    summary: str = ""

    @classmethod
    def from_task(cls, task) -> "TaskSnapshot":
        status = task.status.value if hasattr(task.status, "value") else str(task.status)
        return cls(
            id=task.id,
            status=status,
            created_at=as_utc(task.created_at),
            updated_at=as_utc(task.updated_at),
            resolved_at=as_utc(task.resolved_at),
            due_date=as_utc(task.due_date),
            project_id=task.project_id,
            assignee_id=task.assignee_id,
            issue_id=task.issue_id or "",
            summary=task.summary or "",
        )

    @property
    def is_done(self) -> bool:
        return self.status == TaskStatus.DONE.value

    @property
    def done_at(self) -> Optional[datetime]:
        """When the task reached DONE; falls back to the last update for old rows."""
        if not self.is_done:
            return None
        return self.resolved_at or self.updated_at or self.created_at

    def is_overdue(self, now: datetime) -> bool:
        return not self.is_done and self.due_date is not None and self.due_date < now


@dataclass
class ReportTable:
    """Tabular form of a report, used for spreadsheet export"""
    title: str
    headers: List[str]
    rows: List[List[Any]] = field(default_factory=list)


# ============================================================
# HELPERS
# ============================================================

def day_range(days: int, today: Optional[date] = None) -> List[date]:
    """The last `days` calendar days, oldest first, ending today (UTC)."""
    today = today or datetime.now(timezone.utc).date()
    days = max(1, days)
    return [today - timedelta(days=offset) for offset in range(days - 1, -1, -1)]


def end_of_day(day: date) -> datetime:
    return datetime(day.year, day.month, day.day, 23, 59, 59, 999999, tzinfo=timezone.utc)


def _pct(part: int, whole: int) -> int:
    return round(part / whole * 100) if whole else 0


def month_bounds(now: datetime, months_back: int = 0):
    """[start, end) of the calendar month `months_back` before `now`."""
    year, month = now.year, now.month - months_back
    while month < 1:
        month += 12
        year -= 1
    start = datetime(year, month, 1, tzinfo=timezone.utc)
    end = datetime(year + (month // 12), month % 12 + 1, 1, tzinfo=timezone.utc)
    return start, end


# ============================================================
# COMPLETION RATE
# ============================================================

def completion_rate(tasks: Iterable[TaskSnapshot], days: int = 30, today: Optional[date] = None) -> Dict[str, Any]:
    tasks = list(tasks)
    series = []
    for day in day_range(days, today):
        cutoff = end_of_day(day)
        total = sum(1 for t in tasks if t.created_at <= cutoff)
        completed = sum(1 for t in tasks if t.is_done and t.done_at <= cutoff)
        series.append({
            "date": day.isoformat(),
            "total": total,
            "completed": completed,
            "rate": _pct(completed, total),
        })

    rates = [point["rate"] for point in series]
    return {
        "series": series,
        "current_rate": rates[-1] if rates else 0,
        "average_rate": round(statistics.mean(rates)) if rates else 0,
    }


def completion_rate_table(report: Dict[str, Any]) -> ReportTable:
    return ReportTable(
        title="Completion Rate",
        headers=["Date", "Total Tasks", "Completed", "Rate (%)"],
        rows=[[p["date"], p["total"], p["completed"], p["rate"]] for p in report["series"]],
    )


# ============================================================
# CUMULATIVE FLOW
# ============================================================

def cumulative_flow(tasks: Iterable[TaskSnapshot], days: int = 30, today: Optional[date] = None) -> Dict[str, Any]:
    """Per day from `days` ago through today, tasks that existed by then grouped by their status column."""
    tasks = list(tasks)
    series = []
    for day in day_range(days + 1, today):
        cutoff = end_of_day(day)
        point = {"date": day.isoformat(), **{col: 0 for col in FLOW_COLUMNS}}
        for t in tasks:
            if t.created_at > cutoff:
                continue
            column = FLOW_BUCKETS.get(t.status, "To Do")
            # Done tasks only appear from the day they were completed
            if column == "Done" and t.done_at > cutoff:
                continue
            point[column] += 1
        series.append(point)
    return {"series": series, "columns": FLOW_COLUMNS}


def cumulative_flow_table(report: Dict[str, Any]) -> ReportTable:
    return ReportTable(
        title="Cumulative Flow",
        headers=["Date"] + FLOW_COLUMNS,
        rows=[[p["date"]] + [p[col] for col in FLOW_COLUMNS] for p in report["series"]],
    )


# ============================================================
# CYCLE TIME
# ============================================================

def cycle_colour(days: float) -> str:
    if days > 14:
        return CYCLE_RED
    if days > 7:
        return CYCLE_AMBER
    return CYCLE_GREEN


def cycle_time(tasks: Iterable[TaskSnapshot]) -> Dict[str, Any]:
    entries = []
    for t in tasks:
        if not t.is_done:
            continue
        elapsed = (t.done_at - t.created_at).total_seconds() / 86400
        elapsed = round(max(0.0, elapsed), 1)
        entries.append({
            "task_id": t.id,
            "issue_id": t.issue_id,
            "summary": t.summary,
            "completed_at": t.done_at.isoformat(),
            "days": elapsed,
            "color": cycle_colour(elapsed),
        })
    entries.sort(key=lambda e: e["completed_at"])

    values = [e["days"] for e in entries]
    return {
        "tasks": entries,
        "count": len(entries),
        "average_days": round(statistics.mean(values), 1) if values else 0,
        "median_days": round(statistics.median(values), 1) if values else 0,
    }


def cycle_time_table(report: Dict[str, Any]) -> ReportTable:
    return ReportTable(
        title="Cycle Time",
        headers=["Issue", "Summary", "Completed", "Days"],
        rows=[[e["issue_id"], e["summary"], e["completed_at"], e["days"]] for e in report["tasks"]],
    )


# ============================================================
# BURNDOWN
# ============================================================

def burndown(tasks: Iterable[TaskSnapshot], days: int = 14, today: Optional[date] = None) -> Dict[str, Any]:
    tasks = list(tasks)
    window = day_range(days, today)
    remaining = []
    for day in window:
        cutoff = end_of_day(day)
        remaining.append(sum(
            1 for t in tasks
            if t.created_at <= cutoff and not (t.is_done and t.done_at <= cutoff)
        ))

    start = remaining[0] if remaining else 0
    steps = max(1, len(window) - 1)
    series = []
    for i, day in enumerate(window):
        series.append({
            "date": day.isoformat(),
            "remaining": remaining[i],
            "ideal": round(start - start * i / steps, 1),
        })
    return {"series": series, "scope": len(tasks), "remaining": remaining[-1] if remaining else 0}


def burndown_table(report: Dict[str, Any]) -> ReportTable:
    return ReportTable(
        title="Burndown",
        headers=["Date", "Remaining", "Ideal"],
        rows=[[p["date"], p["remaining"], p["ideal"]] for p in report["series"]],
    )


# ============================================================
# MONTH-OVER-MONTH ANALYTICS
# ============================================================

def month_over_month(
    tasks: Iterable[TaskSnapshot], user_id: Optional[str] = None, now: Optional[datetime] = None,
) -> Dict[str, int]:
    """Counts created this month vs last month, with differences."""
    now = as_utc(now) if now else datetime.now(timezone.utc)
    tasks = list(tasks)
    this_start, this_end = month_bounds(now, 0)
    last_start, last_end = month_bounds(now, 1)

    def _window(start, end):
        return [t for t in tasks if start <= t.created_at < end]

    def _counts(window):
        return {
            "task": len(window),
            "assigned_task": sum(1 for t in window if user_id and t.assignee_id == user_id),
            "completed_task": sum(1 for t in window if t.is_done),
            "incomplete_task": sum(1 for t in window if not t.is_done),
            "overdue_task": sum(1 for t in window if t.is_overdue(now)),
        }

    this_month = _counts(_window(this_start, this_end))
    last_month = _counts(_window(last_start, last_end))

    result = {}
    for key, value in this_month.items():
        result[f"{key}_count"] = value
        result[f"{key}_difference"] = value - last_month[key]
    return result


# ============================================================
# WORKSPACE SUMMARY
# ============================================================

def workspace_summary(
    tasks: Iterable[TaskSnapshot],
    projects: Dict[str, str],
    members: Dict[str, str],
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """`projects` and `members` map ids to display names."""
    now = as_utc(now) if now else datetime.now(timezone.utc)
    tasks = list(tasks)

    status_distribution = {s.value: 0 for s in TaskStatus}
    for t in tasks:
        status_distribution[t.status] = status_distribution.get(t.status, 0) + 1

    project_progress = []
    for project_id, name in projects.items():
        scoped = [t for t in tasks if t.project_id == project_id]
        done = sum(1 for t in scoped if t.is_done)
        project_progress.append({
            "project_id": project_id,
            "name": name,
            "total": len(scoped),
            "completed": done,
            "progress": _pct(done, len(scoped)),
        })

    workload = []
    for user_id, name in members.items():
        assigned = [t for t in tasks if t.assignee_id == user_id]
        workload.append({
            "user_id": user_id,
            "name": name,
            "assigned": len(assigned),
            "completed": sum(1 for t in assigned if t.is_done),
            "in_progress": sum(1 for t in assigned if t.status == TaskStatus.IN_PROGRESS.value),
            "overdue": sum(1 for t in assigned if t.is_overdue(now)),
        })
    workload.sort(key=lambda w: w["assigned"], reverse=True)

    completed = sum(1 for t in tasks if t.is_done)
    return {
        "total_tasks": len(tasks),
        "completed_tasks": completed,
        "overdue_tasks": sum(1 for t in tasks if t.is_overdue(now)),
        "completion_rate": _pct(completed, len(tasks)),
        "status_distribution": status_distribution,
        "project_progress": project_progress,
        "member_workload": workload,
    }


def workspace_summary_tables(report: Dict[str, Any]) -> List[ReportTable]:
    return [
        ReportTable(
            title="Status",
            headers=["Status", "Tasks"],
            rows=[[status, count] for status, count in report["status_distribution"].items()],
        ),
        ReportTable(
            title="Projects",
            headers=["Project", "Total", "Completed", "Progress (%)"],
            rows=[[p["name"], p["total"], p["completed"], p["progress"]] for p in report["project_progress"]],
        ),
        ReportTable(
            title="Workload",
            headers=["Member", "Assigned", "Completed", "In Progress", "Overdue"],
            rows=[
                [w["name"], w["assigned"], w["completed"], w["in_progress"], w["overdue"]]
                for w in report["member_workload"]
            ],
        ),
    ]
