# tests/test_tasks.py — Task CRUD, visibility, history and import
import pytest
from httpx import AsyncClient

from models import Task, TaskStatus
from routers.tasks import issue_prefix
from tests.conftest import get_auth_headers


async def _create_task(client: AsyncClient, user, project=None, **fields):
    payload = {"summary": "Implement login form", "priority": "HIGH", **fields}
    if project is not None:
        payload["project_id"] = project.id
    return await client.post("/api/tasks", headers=get_auth_headers(user), json=payload)


def test_issue_prefix():
    assert issue_prefix("Customer Portal") == "CP"
    assert issue_prefix("Billing") == "BIL"
    assert issue_prefix(None) == "PMS"
    assert issue_prefix("!!!") == "PMS"


@pytest.mark.asyncio
class TestTaskCrud:
    async def test_create_task_assigns_issue_id(self, client: AsyncClient, manager_user, employee_user, project):
        res = await _create_task(client, manager_user, project, assignee_id=employee_user.id)
        assert res.status_code == 201
        data = res.json()["data"]
        assert data["issue_id"] == "CP-1"
        assert data["status"] == "TODO"
        assert data["workspace_id"] == project.workspace_id
        assert data["reporter_id"] == manager_user.id

        res = await _create_task(client, manager_user, project, summary="Second")
        assert res.json()["data"]["issue_id"] == "CP-2"

    async def test_create_notifies_assignee(self, client: AsyncClient, manager_user, employee_user, project):
        await _create_task(client, manager_user, project, assignee_id=employee_user.id)
        res = await client.get("/api/notifications", headers=get_auth_headers(employee_user))
        docs = res.json()["data"]["documents"]
        assert docs[0]["type"] == "TASK_ASSIGNED"
        assert docs[0]["title"] == "CP-1 assigned to you"

    async def test_self_assignment_not_notified(self, client: AsyncClient, employee_user, workspace):
        await _create_task(client, employee_user, assignee_id=employee_user.id, workspace_id=workspace.id)
        res = await client.get("/api/notifications/unread-count", headers=get_auth_headers(employee_user))
        assert res.json()["data"]["count"] == 0

    async def test_create_done_sets_resolved_at(self, client: AsyncClient, admin_user, project):
        res = await _create_task(client, admin_user, project, status="DONE")
        assert res.json()["data"]["resolved_at"] is not None

    async def test_client_cannot_create(self, client: AsyncClient, client_user, project):
        res = await _create_task(client, client_user, project)
        assert res.status_code == 403

    async def test_unknown_assignee(self, client: AsyncClient, admin_user, project):
        res = await _create_task(client, admin_user, project, assignee_id="nobody")
        assert res.status_code == 400

    async def test_invalid_status_rejected(self, client: AsyncClient, admin_user, project):
        res = await _create_task(client, admin_user, project, status="SOMEDAY")
        assert res.status_code == 400
        assert res.json()["error"] == "Invalid request data"


@pytest.mark.asyncio
class TestTaskVisibility:
    async def test_employee_sees_own_tasks_only(
        self, client: AsyncClient, admin_user, employee_user, workspace, db_session,
    ):
        db_session.add_all([
            Task(issue_id="PMS-1", summary="Mine", workspace_id=workspace.id, assignee_id=employee_user.id),
            Task(issue_id="PMS-2", summary="Theirs", workspace_id=workspace.id, assignee_id=admin_user.id,
                 creator_id=admin_user.id, reporter_id=admin_user.id),
        ])
        await db_session.commit()

        res = await client.get("/api/tasks", headers=get_auth_headers(employee_user))
        assert [t["summary"] for t in res.json()["data"]["documents"]] == ["Mine"]

        res = await client.get("/api/tasks", headers=get_auth_headers(admin_user))
        assert res.json()["data"]["total"] == 2

    async def test_project_assignee_sees_project_tasks(
        self, client: AsyncClient, admin_user, employee_user, workspace, project, db_session,
    ):
        project.assignees = [employee_user.id]
        db_session.add(project)
        db_session.add(Task(issue_id="CP-1", summary="Team work", project_id=project.id, assignee_id=admin_user.id))
        await db_session.commit()

        res = await client.get("/api/tasks", headers=get_auth_headers(employee_user))
        assert res.json()["data"]["total"] == 1

    async def test_client_sees_project_tasks(self, client: AsyncClient, client_user, project, db_session):
        db_session.add_all([
            Task(issue_id="CP-1", summary="Portal", project_id=project.id),
            Task(issue_id="PMS-1", summary="Elsewhere"),
        ])
        await db_session.commit()

        res = await client.get("/api/tasks", headers=get_auth_headers(client_user))
        assert [t["issue_id"] for t in res.json()["data"]["documents"]] == ["CP-1"]

    async def test_get_invisible_task_forbidden(self, client: AsyncClient, admin_user, employee_user, db_session):
        task = Task(issue_id="PMS-9", summary="Secret", creator_id=admin_user.id)
        db_session.add(task)
        await db_session.commit()
        res = await client.get(f"/api/tasks/{task.id}", headers=get_auth_headers(employee_user))
        assert res.status_code == 403

    async def test_filters(self, client: AsyncClient, admin_user, project, db_session):
        db_session.add_all([
            Task(issue_id="CP-1", summary="Fix checkout", project_id=project.id, status=TaskStatus.IN_PROGRESS),
            Task(issue_id="CP-2", summary="Write docs", project_id=project.id, status=TaskStatus.TODO),
        ])
        await db_session.commit()
        headers = get_auth_headers(admin_user)

        res = await client.get("/api/tasks", params={"status": "IN_PROGRESS"}, headers=headers)
        assert [t["issue_id"] for t in res.json()["data"]["documents"]] == ["CP-1"]

        res = await client.get("/api/tasks", params={"search": "docs"}, headers=headers)
        assert [t["issue_id"] for t in res.json()["data"]["documents"]] == ["CP-2"]


@pytest.mark.asyncio
class TestTaskUpdates:
    async def test_status_change_records_history_and_notifies(
        self, client: AsyncClient, manager_user, employee_user, project,
    ):
        created = (await _create_task(client, manager_user, project, assignee_id=employee_user.id)).json()["data"]
        headers = get_auth_headers(employee_user)
        res = await client.patch(f"/api/tasks/{created['id']}", headers=headers, json={"status": "DONE"})
        assert res.status_code == 200
        assert res.json()["data"]["resolved_at"] is not None

        history = (await client.get(f"/api/tasks/{created['id']}/history", headers=headers)).json()["data"]
        assert [e["action_type"] for e in history["documents"]] == ["TASK_CREATED", "TASK_STATUS_CHANGED"]
        assert history["documents"][1]["changes"]["status"] == {"old": "TODO", "new": "DONE"}

        res = await client.get("/api/notifications", headers=get_auth_headers(manager_user))
        assert res.json()["data"]["documents"][0]["type"] == "TASK_STATUS_CHANGED"

    async def test_reopen_clears_resolved_at(self, client: AsyncClient, admin_user, project):
        created = (await _create_task(client, admin_user, project, status="DONE")).json()["data"]
        res = await client.patch(
            f"/api/tasks/{created['id']}", headers=get_auth_headers(admin_user), json={"status": "IN_PROGRESS"},
        )
        assert res.json()["data"]["resolved_at"] is None

    async def test_noop_update_records_nothing(self, client: AsyncClient, admin_user, project):
        created = (await _create_task(client, admin_user, project)).json()["data"]
        headers = get_auth_headers(admin_user)
        await client.patch(f"/api/tasks/{created['id']}", headers=headers, json={"priority": "HIGH"})
        history = (await client.get(f"/api/tasks/{created['id']}/history", headers=headers)).json()["data"]
        assert history["total"] == 1

    async def test_null_for_required_fields_is_rejected(self, client: AsyncClient, admin_user, project):
        created = (await _create_task(client, admin_user, project)).json()["data"]
        headers = get_auth_headers(admin_user)
        for field in ("status", "summary", "priority"):
            res = await client.patch(f"/api/tasks/{created['id']}", headers=headers, json={field: None})
            assert res.status_code == 400, field
            assert res.json()["error"] == "Invalid request data"

        history = (await client.get(f"/api/tasks/{created['id']}/history", headers=headers)).json()["data"]
        assert history["total"] == 1

    async def test_null_clears_optional_fields(self, client: AsyncClient, admin_user, employee_user, project):
        created = (await _create_task(client, admin_user, project, assignee_id=employee_user.id)).json()["data"]
        res = await client.patch(
            f"/api/tasks/{created['id']}", headers=get_auth_headers(admin_user), json={"assignee_id": None},
        )
        assert res.status_code == 200
        assert res.json()["data"]["assignee_id"] is None

    async def test_unrelated_employee_cannot_edit(
        self, client: AsyncClient, manager_user, employee_user, db_session, project,
    ):
        project.assignees = [employee_user.id]
        db_session.add(project)
        await db_session.commit()
        created = (await _create_task(client, manager_user, project)).json()["data"]
        res = await client.patch(
            f"/api/tasks/{created['id']}", headers=get_auth_headers(employee_user), json={"summary": "Mine now"},
        )
        assert res.status_code == 403

    async def test_bulk_update(self, client: AsyncClient, admin_user, project):
        a = (await _create_task(client, admin_user, project, summary="A")).json()["data"]
        b = (await _create_task(client, admin_user, project, summary="B")).json()["data"]
        res = await client.post("/api/tasks/bulk-update", headers=get_auth_headers(admin_user), json={"tasks": [
            {"id": a["id"], "status": "IN_REVIEW", "position": 1},
            {"id": b["id"], "position": 2},
        ]})
        assert res.status_code == 200
        docs = {t["id"]: t for t in res.json()["data"]["documents"]}
        assert docs[a["id"]]["status"] == "IN_REVIEW"
        assert docs[b["id"]]["position"] == 2

    async def test_delete_by_creator(self, client: AsyncClient, employee_user, workspace):
        created = (await _create_task(client, employee_user, workspace_id=workspace.id)).json()["data"]
        headers = get_auth_headers(employee_user)
        res = await client.delete(f"/api/tasks/{created['id']}", headers=headers)
        assert res.status_code == 200
        res = await client.get(f"/api/tasks/{created['id']}", headers=headers)
        assert res.status_code == 404

    async def test_assignee_cannot_delete(self, client: AsyncClient, manager_user, employee_user, project):
        created = (await _create_task(client, manager_user, project, assignee_id=employee_user.id)).json()["data"]
        res = await client.delete(f"/api/tasks/{created['id']}", headers=get_auth_headers(employee_user))
        assert res.status_code == 403


@pytest.mark.asyncio
class TestTaskImport:
    CSV = (
        "Issue key,Summary,Issue Type,Status,Priority,Assignee,Reporter,Created,Resolved,Labels\n"
        "CP-100,Set up CI,Task,Done,Highest,employee@pms.dev,Admin User,12/Mar/24 9:15 AM,14/Mar/24 5:00 PM,\"infra, ci\"\n"
        ",Design landing page,Story,In Progress,Low,Employee User,,2024-03-20,,\n"
        "CP-102,,Bug,Open,Medium,,,,,\n"
    )

    async def test_import_csv(self, client: AsyncClient, admin_user, employee_user, project):
        headers = get_auth_headers(admin_user)
        res = await client.post(
            "/api/tasks/bulk-import",
            headers=headers,
            data={"project_id": project.id},
            files={"file": ("jira.csv", self.CSV.encode(), "text/csv")},
        )
        assert res.status_code == 201
        data = res.json()["data"]
        assert data["created"] == 2
        assert data["skipped"] == 1
        assert "Row 4" in data["messages"][0]

        tasks = (await client.get("/api/tasks", params={"project_id": project.id}, headers=headers)).json()["data"]
        by_summary = {t["summary"]: t for t in tasks["documents"]}
        ci = by_summary["Set up CI"]
        assert ci["issue_id"] == "CP-100"
        assert ci["status"] == "DONE"
        assert ci["priority"] == "CRITICAL"
        assert ci["assignee_id"] == employee_user.id
        assert ci["labels"] == ["infra", "ci"]
        assert ci["resolved_at"].startswith("2024-03-14")
        assert ci["upload_batch_id"] == data["batch_id"]

        landing = by_summary["Design landing page"]
        assert landing["issue_type"] == "STORY"
        assert landing["status"] == "IN_PROGRESS"
        assert landing["issue_id"] == "CP-101"

    async def test_import_requires_admin_level(self, client: AsyncClient, employee_user):
        res = await client.post(
            "/api/tasks/bulk-import",
            headers=get_auth_headers(employee_user),
            files={"file": ("jira.csv", self.CSV.encode(), "text/csv")},
        )
        assert res.status_code == 403

    async def test_import_empty_file(self, client: AsyncClient, admin_user, workspace):
        res = await client.post(
            "/api/tasks/bulk-import",
            headers=get_auth_headers(admin_user),
            files={"file": ("jira.csv", b"Summary,Status\n", "text/csv")},
        )
        assert res.status_code == 400

    async def test_generated_ids_skip_explicit_ids_later_in_file(self, client: AsyncClient, admin_user, project):
        csv = "Issue key,Summary\n,First\nCP-1,Second\n"
        res = await client.post(
            "/api/tasks/bulk-import",
            headers=get_auth_headers(admin_user),
            data={"project_id": project.id},
            files={"file": ("jira.csv", csv.encode(), "text/csv")},
        )
        assert res.status_code == 201

        tasks = (await client.get(
            "/api/tasks", params={"project_id": project.id}, headers=get_auth_headers(admin_user),
        )).json()["data"]["documents"]
        assert {t["summary"]: t["issue_id"] for t in tasks} == {"First": "CP-2", "Second": "CP-1"}

    async def test_import_compact_dates(self, client: AsyncClient, admin_user, project):
        csv = "Summary,Due date\nShip it,20240314\n"
        res = await client.post(
            "/api/tasks/bulk-import",
            headers=get_auth_headers(admin_user),
            data={"project_id": project.id},
            files={"file": ("jira.csv", csv.encode(), "text/csv")},
        )
        assert res.status_code == 201

        tasks = (await client.get(
            "/api/tasks", params={"project_id": project.id}, headers=get_auth_headers(admin_user),
        )).json()["data"]["documents"]
        assert tasks[0]["due_date"].startswith("2024-03-14")
