# tests/test_requirements.py — Customer requirements: capture, visibility and approval
import pytest
from httpx import AsyncClient

from tests.conftest import get_auth_headers

REQUIREMENT = {
    "tentative_title": "Invoice digitisation",
    "customer": "Acme Corp",
    "project_description": "Extract line items from scanned invoices",
    "due_date": "2024-05-01T00:00:00Z",
    "sample_input_files": ["https://files.pms.dev/invoice-1.pdf"],
    "expected_output_files": ["https://files.pms.dev/invoice-1.xlsx"],
}


async def _create(client: AsyncClient, user, manager, **overrides):
    body = {**REQUIREMENT, "project_manager_id": manager.id, **overrides}
    return await client.post("/api/requirements", headers=get_auth_headers(user), json=body)


@pytest.mark.asyncio
class TestCreate:
    async def test_create_notifies_project_manager(self, client: AsyncClient, employee_user, manager_user):
        res = await _create(client, employee_user, manager_user)
        assert res.status_code == 201
        data = res.json()["data"]
        assert data["status"] == "PENDING"
        assert data["created_by"] == employee_user.id
        assert data["project_manager_name"] == "Manager User"
        assert data["due_date"].startswith("2024-05-01")
        assert data["sample_input_files"] == ["https://files.pms.dev/invoice-1.pdf"]

        notes = (await client.get("/api/notifications", headers=get_auth_headers(manager_user))).json()["data"]
        assert notes["documents"][0]["type"] == "REQUIREMENT_ASSIGNED"

    async def test_unknown_project_manager(self, client: AsyncClient, employee_user):
        res = await client.post("/api/requirements", headers=get_auth_headers(employee_user), json={
            **REQUIREMENT, "project_manager_id": "ghost",
        })
        assert res.status_code == 400
        assert res.json()["error"] == "Project manager not found"

    async def test_title_and_customer_required(self, client: AsyncClient, employee_user, manager_user):
        res = await _create(client, employee_user, manager_user, customer="")
        assert res.status_code == 400

    async def test_clients_cannot_create(self, client: AsyncClient, client_user, manager_user):
        res = await _create(client, client_user, manager_user)
        assert res.status_code == 403

    async def test_workspace_requires_membership(self, client: AsyncClient, outsider_user, manager_user, workspace):
        res = await _create(client, outsider_user, manager_user, workspace_id=workspace.id)
        assert res.status_code == 403


@pytest.mark.asyncio
class TestVisibility:
    async def test_list_scoped_to_author_and_manager(
        self, client: AsyncClient, employee_user, manager_user, outsider_user, admin_user,
    ):
        await _create(client, employee_user, manager_user)
        await _create(client, outsider_user, manager_user, tentative_title="Outsider request")

        mine = (await client.get("/api/requirements", headers=get_auth_headers(employee_user))).json()["data"]
        assert mine["total"] == 1
        assert mine["documents"][0]["tentative_title"] == "Invoice digitisation"
        assert mine["documents"][0]["project_manager_name"] == "Manager User"

        everything = (await client.get("/api/requirements", headers=get_auth_headers(admin_user))).json()["data"]
        assert everything["total"] == 2
        # Newest first
        assert everything["documents"][0]["tentative_title"] == "Outsider request"

    async def test_filters(self, client: AsyncClient, employee_user, manager_user):
        await _create(client, employee_user, manager_user)
        await _create(client, employee_user, manager_user, customer="Globex", tentative_title="Route planner")
        headers = get_auth_headers(manager_user)

        res = await client.get("/api/requirements", headers=headers, params={"search": "globex"})
        assert [r["customer"] for r in res.json()["data"]["documents"]] == ["Globex"]

        res = await client.get("/api/requirements", headers=headers, params={"status": "APPROVED"})
        assert res.json()["data"]["total"] == 0

    async def test_get_hides_from_unrelated_users(
        self, client: AsyncClient, employee_user, manager_user, outsider_user,
    ):
        req_id = (await _create(client, employee_user, manager_user)).json()["data"]["id"]

        res = await client.get(f"/api/requirements/{req_id}", headers=get_auth_headers(employee_user))
        assert res.status_code == 200
        assert res.json()["data"]["customer"] == "Acme Corp"

        res = await client.get(f"/api/requirements/{req_id}", headers=get_auth_headers(outsider_user))
        assert res.status_code == 403

    async def test_missing_requirement(self, client: AsyncClient, employee_user):
        res = await client.get("/api/requirements/nope", headers=get_auth_headers(employee_user))
        assert res.status_code == 404
        assert res.json()["error"] == "Requirement not found"

    async def test_clients_cannot_list(self, client: AsyncClient, client_user):
        res = await client.get("/api/requirements", headers=get_auth_headers(client_user))
        assert res.status_code == 403


@pytest.mark.asyncio
class TestStatus:
    async def test_assigned_manager_approves_and_author_is_notified(
        self, client: AsyncClient, employee_user, outsider_user,
    ):
        req_id = (await _create(client, employee_user, outsider_user)).json()["data"]["id"]

        res = await client.patch(
            f"/api/requirements/{req_id}/status",
            headers=get_auth_headers(outsider_user), json={"status": "APPROVED"},
        )
        assert res.status_code == 200
        assert res.json()["data"]["status"] == "APPROVED"

        notes = (await client.get("/api/notifications", headers=get_auth_headers(employee_user))).json()["data"]
        assert notes["documents"][0]["type"] == "REQUIREMENT_STATUS_CHANGED"

    async def test_author_cannot_approve_own_requirement(self, client: AsyncClient, employee_user, manager_user):
        req_id = (await _create(client, employee_user, manager_user)).json()["data"]["id"]
        res = await client.patch(
            f"/api/requirements/{req_id}/status",
            headers=get_auth_headers(employee_user), json={"status": "APPROVED"},
        )
        assert res.status_code == 403

    async def test_unknown_status(self, client: AsyncClient, employee_user, manager_user):
        req_id = (await _create(client, employee_user, manager_user)).json()["data"]["id"]
        res = await client.patch(
            f"/api/requirements/{req_id}/status",
            headers=get_auth_headers(manager_user), json={"status": "DONE"},
        )
        assert res.status_code == 400

    async def test_status_change_is_logged(self, client: AsyncClient, employee_user, manager_user, db_session):
        from sqlalchemy import select
        from models import ActivityLog

        req_id = (await _create(client, employee_user, manager_user)).json()["data"]["id"]
        await client.patch(
            f"/api/requirements/{req_id}/status",
            headers=get_auth_headers(manager_user), json={"status": "REJECTED"},
        )
        logs = (await db_session.execute(
            select(ActivityLog).where(ActivityLog.entity_id == req_id).order_by(ActivityLog.created_at)
        )).scalars().all()
        assert [log.action_type for log in logs] == ["REQUIREMENT_CREATED", "REQUIREMENT_STATUS_CHANGED"]
        assert logs[-1].changes == {"status": {"old": "PENDING", "new": "REJECTED"}}


@pytest.mark.asyncio
class TestEditAndDelete:
    async def test_author_edits_pending_requirement(self, client: AsyncClient, employee_user, manager_user):
        req_id = (await _create(client, employee_user, manager_user)).json()["data"]["id"]
        res = await client.patch(
            f"/api/requirements/{req_id}", headers=get_auth_headers(employee_user),
            json={"customer": "Acme Holdings", "due_date": None},
        )
        assert res.status_code == 200
        data = res.json()["data"]
        assert data["customer"] == "Acme Holdings"
        assert data["due_date"] is None

    async def test_null_for_required_fields_is_rejected(self, client: AsyncClient, employee_user, manager_user):
        req_id = (await _create(client, employee_user, manager_user)).json()["data"]["id"]
        res = await client.patch(
            f"/api/requirements/{req_id}", headers=get_auth_headers(employee_user),
            json={"tentative_title": None},
        )
        assert res.status_code == 400

    async def test_decided_requirement_is_locked(self, client: AsyncClient, employee_user, manager_user):
        req_id = (await _create(client, employee_user, manager_user)).json()["data"]["id"]
        await client.patch(
            f"/api/requirements/{req_id}/status",
            headers=get_auth_headers(manager_user), json={"status": "APPROVED"},
        )
        res = await client.patch(
            f"/api/requirements/{req_id}", headers=get_auth_headers(employee_user), json={"customer": "Other"},
        )
        assert res.status_code == 400

        res = await client.delete(f"/api/requirements/{req_id}", headers=get_auth_headers(employee_user))
        assert res.status_code == 403

    async def test_author_deletes_pending(self, client: AsyncClient, employee_user, manager_user):
        req_id = (await _create(client, employee_user, manager_user)).json()["data"]["id"]
        res = await client.delete(f"/api/requirements/{req_id}", headers=get_auth_headers(employee_user))
        assert res.status_code == 200

        res = await client.get(f"/api/requirements/{req_id}", headers=get_auth_headers(manager_user))
        assert res.status_code == 404
