# tests/test_activity.py — Change tracking helpers and activity feed access rules
import pytest
from httpx import AsyncClient
from pydantic import ValidationError

from activity import diff_fields, record_activity, ActionType
from models import TaskStatus
from routers.attendance import AttendanceUpdate
from routers.projects import ProjectUpdate
from routers.weekly_reports import WeeklyReportUpdate
from tests.conftest import get_auth_headers


class _Obj:
    status = TaskStatus.TODO
    summary = "Old"
    labels = ["a"]


def test_diff_fields_only_reports_changes():
    changes = diff_fields(_Obj(), {"status": TaskStatus.DONE, "summary": "Old", "labels": ["a", "b"]})
    assert changes == {
        "status": {"old": "TODO", "new": "DONE"},
        "labels": {"old": ["a"], "new": ["a", "b"]},
    }


@pytest.mark.parametrize("schema, field", [
    (ProjectUpdate, "name"),
    (AttendanceUpdate, "status"),
    (AttendanceUpdate, "shift_start_time"),
    (WeeklyReportUpdate, "department"),
])
def test_partial_updates_reject_null_required_fields(schema, field):
    with pytest.raises(ValidationError, match="cannot be null"):
        schema.model_validate({field: None})


def test_partial_updates_allow_null_optional_fields():
    assert ProjectUpdate.model_validate({"description": None}).description is None
    assert AttendanceUpdate.model_validate({"shift_end_time": None}).model_fields_set == {"shift_end_time"}


@pytest.mark.asyncio
class TestActivityFeed:
    async def _seed(self, db_session, workspace, admin_user, employee_user):
        await record_activity(
            db_session, ActionType.TASK_CREATED, "task", admin_user.id, admin_user.name,
            workspace_id=workspace.id, summary="admin did something",
        )
        await record_activity(
            db_session, ActionType.TASK_UPDATED, "task", employee_user.id, employee_user.name,
            summary="employee did something",
        )
        await db_session.commit()

    async def test_admin_sees_everything(self, client: AsyncClient, admin_user, employee_user, workspace, db_session):
        await self._seed(db_session, workspace, admin_user, employee_user)
        res = await client.get("/api/activity", headers=get_auth_headers(admin_user))
        assert res.json()["data"]["total"] == 2

    async def test_employee_sees_own_trail(self, client: AsyncClient, admin_user, employee_user, workspace, db_session):
        await self._seed(db_session, workspace, admin_user, employee_user)
        res = await client.get("/api/activity", headers=get_auth_headers(employee_user))
        docs = res.json()["data"]["documents"]
        assert [d["summary"] for d in docs] == ["employee did something"]

    async def test_workspace_feed_for_members(self, client: AsyncClient, admin_user, employee_user, workspace, db_session):
        await self._seed(db_session, workspace, admin_user, employee_user)
        res = await client.get(
            "/api/activity", params={"workspace_id": workspace.id}, headers=get_auth_headers(employee_user),
        )
        assert [d["summary"] for d in res.json()["data"]["documents"]] == ["admin did something"]

    async def test_workspace_feed_outsider(self, client: AsyncClient, outsider_user, workspace):
        res = await client.get(
            "/api/activity", params={"workspace_id": workspace.id}, headers=get_auth_headers(outsider_user),
        )
        assert res.status_code == 403

    async def test_client_forbidden(self, client: AsyncClient, client_user):
        res = await client.get("/api/activity", headers=get_auth_headers(client_user))
        assert res.status_code == 403

    async def test_filter_by_action_type(self, client: AsyncClient, admin_user, employee_user, workspace, db_session):
        await self._seed(db_session, workspace, admin_user, employee_user)
        res = await client.get(
            "/api/activity", params={"action_type": "TASK_UPDATED"}, headers=get_auth_headers(admin_user),
        )
        assert res.json()["data"]["total"] == 1
