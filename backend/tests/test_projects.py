# tests/test_projects.py — Project CRUD, visibility and bulk delete
import pytest
from httpx import AsyncClient
from sqlalchemy import select

from models import Task, TaskStatus, Project, Member
from tests.conftest import get_auth_headers


async def _create_project(client: AsyncClient, user, workspace, name: str = "Billing Revamp"):
    return await client.post("/api/projects", headers=get_auth_headers(user), json={
        "name": name,
        "description": "Rebuild invoicing",
        "workspace_id": workspace.id,
        "post_date": "2024-03-01T00:00:00Z",
        "tentative_end_date": "2024-06-30T00:00:00Z",
    })


@pytest.mark.asyncio
class TestProjectCrud:
    async def test_create_project(self, client: AsyncClient, manager_user, workspace):
        res = await _create_project(client, manager_user, workspace)
        assert res.status_code == 201
        data = res.json()["data"]
        assert data["name"] == "Billing Revamp"
        assert data["workspace_id"] == workspace.id
        assert data["tentative_end_date"].startswith("2024-06-30")

    async def test_employee_cannot_create(self, client: AsyncClient, employee_user, workspace):
        res = await _create_project(client, employee_user, workspace)
        assert res.status_code == 403

    async def test_admin_lists_all(self, client: AsyncClient, admin_user, workspace, project):
        await _create_project(client, admin_user, workspace)
        res = await client.get("/api/projects", headers=get_auth_headers(admin_user))
        assert res.json()["data"]["total"] == 2

    async def test_employee_sees_projects_with_assigned_tasks(
        self, client: AsyncClient, admin_user, employee_user, workspace, project, db_session,
    ):
        other = Project(name="Unrelated", workspace_id=workspace.id, assignees=[])
        db_session.add(other)
        db_session.add(Task(issue_id="CP-1", summary="Build login", project_id=project.id,
                            workspace_id=workspace.id, assignee_id=employee_user.id))
        await db_session.commit()

        res = await client.get("/api/projects", headers=get_auth_headers(employee_user))
        docs = res.json()["data"]["documents"]
        assert [p["name"] for p in docs] == ["Customer Portal"]

    async def test_client_sees_only_own_project(self, client: AsyncClient, client_user, project, workspace, db_session):
        other = Project(name="Internal Tools", workspace_id=workspace.id, assignees=[])
        db_session.add(other)
        await db_session.commit()

        headers = get_auth_headers(client_user)
        res = await client.get("/api/projects", headers=headers)
        assert [p["id"] for p in res.json()["data"]["documents"]] == [project.id]

        res = await client.get(f"/api/projects/{other.id}", headers=headers)
        assert res.status_code == 403

    async def test_get_missing_project(self, client: AsyncClient, admin_user):
        res = await client.get("/api/projects/nope", headers=get_auth_headers(admin_user))
        assert res.status_code == 404

    async def test_update_project_logs_changes(self, client: AsyncClient, admin_user, workspace, project):
        headers = get_auth_headers(admin_user)
        res = await client.patch(f"/api/projects/{project.id}", headers=headers, json={"name": "Customer Portal v2"})
        assert res.status_code == 200
        assert res.json()["data"]["name"] == "Customer Portal v2"

        log = await client.get("/api/activity", params={"project_id": project.id}, headers=headers)
        entry = log.json()["data"]["documents"][0]
        assert entry["action_type"] == "PROJECT_UPDATED"
        assert entry["changes"]["name"] == {"old": "Customer Portal", "new": "Customer Portal v2"}

    async def test_delete_project_cascades(
        self, client: AsyncClient, admin_user, client_user, workspace, project, db_session,
    ):
        db_session.add(Task(issue_id="CP-1", summary="Doomed", project_id=project.id, workspace_id=workspace.id))
        await db_session.commit()

        res = await client.delete(f"/api/projects/{project.id}", headers=get_auth_headers(admin_user))
        assert res.status_code == 200

        tasks = (await db_session.execute(select(Task).where(Task.project_id == project.id))).scalars().all()
        assert tasks == []
        member = (await db_session.execute(
            select(Member).where(Member.user_id == client_user.id).execution_options(populate_existing=True)
        )).scalar_one()
        assert member.project_id is None


@pytest.mark.asyncio
class TestBulkDelete:
    async def test_bulk_delete(self, client: AsyncClient, admin_user, workspace, project):
        second = (await _create_project(client, admin_user, workspace)).json()["data"]
        headers = get_auth_headers(admin_user)
        res = await client.post("/api/projects/bulk-delete", headers=headers, json={"ids": [project.id, second["id"]]})
        assert res.status_code == 200
        assert res.json()["data"]["deleted"] == 2

        res = await client.get("/api/projects", headers=headers)
        assert res.json()["data"]["total"] == 0

    async def test_bulk_delete_reports_missing_ids(self, client: AsyncClient, admin_user, project):
        res = await client.post(
            "/api/projects/bulk-delete", headers=get_auth_headers(admin_user),
            json={"ids": [project.id, "ghost-1"]},
        )
        assert res.status_code == 404
        assert "ghost-1" in res.json()["error"]

    async def test_bulk_delete_requires_ids(self, client: AsyncClient, admin_user, workspace):
        res = await client.post("/api/projects/bulk-delete", headers=get_auth_headers(admin_user), json={"ids": []})
        assert res.status_code == 400


@pytest.mark.asyncio
async def test_project_analytics(client: AsyncClient, employee_user, workspace, project, db_session):
    db_session.add_all([
        Task(issue_id="CP-1", summary="One", project_id=project.id, assignee_id=employee_user.id,
             status=TaskStatus.DONE),
        Task(issue_id="CP-2", summary="Two", project_id=project.id, assignee_id=employee_user.id),
    ])
    await db_session.commit()
    res = await client.get(f"/api/projects/{project.id}/analytics", headers=get_auth_headers(employee_user))
    assert res.status_code == 200
    data = res.json()["data"]
    assert data["task_count"] == 2
    assert data["assigned_task_count"] == 2
    assert data["completed_task_count"] == 1
