# tests/test_weekly_reports.py — Weekly reports: drafts, submission and review
import pytest
from httpx import AsyncClient

from tests.conftest import get_auth_headers

WEEK = {
    "from_date": "2024-03-04",
    "to_date": "2024-03-08",
    "daily_descriptions": {
        "2024-03-04": "Sprint planning",
        "2024-03-05": "Payment gateway integration",
    },
    "uploaded_files": ["https://files.pms.dev/report.pdf"],
}


async def _submit(client: AsyncClient, user, **overrides):
    return await client.post("/api/weekly-reports", headers=get_auth_headers(user), json={**WEEK, **overrides})


@pytest.mark.asyncio
class TestSubmission:
    async def test_submit_uses_profile_department(self, client: AsyncClient, employee_user):
        res = await _submit(client, employee_user)
        assert res.status_code == 201
        data = res.json()["data"]
        assert data["department"] == "Engineering"
        assert data["status"] == "submitted"
        assert data["is_draft"] is False
        assert data["from_date"].startswith("2024-03-04")

    async def test_department_required_without_profile_default(self, client: AsyncClient, outsider_user):
        res = await _submit(client, outsider_user)
        assert res.status_code == 400
        assert res.json()["error"] == "Department is required"

    async def test_from_after_to_rejected(self, client: AsyncClient, employee_user):
        res = await _submit(client, employee_user, from_date="2024-03-09")
        assert res.status_code == 400

    async def test_duplicate_week_rejected(self, client: AsyncClient, employee_user):
        await _submit(client, employee_user)
        res = await _submit(client, employee_user)
        assert res.status_code == 409

    async def test_draft_does_not_block(self, client: AsyncClient, employee_user):
        draft = await _submit(client, employee_user, is_draft=True)
        assert draft.json()["data"]["status"] == "draft"
        res = await _submit(client, employee_user)
        assert res.status_code == 201

    async def test_my_reports(self, client: AsyncClient, employee_user):
        await _submit(client, employee_user, is_draft=True)
        await _submit(client, employee_user, from_date="2024-03-11", to_date="2024-03-15")
        res = await client.get("/api/weekly-reports/my-reports", headers=get_auth_headers(employee_user))
        docs = res.json()["data"]["documents"]
        assert [d["from_date"][:10] for d in docs] == ["2024-03-11", "2024-03-04"]


@pytest.mark.asyncio
class TestDrafts:
    async def test_edit_and_submit_draft(self, client: AsyncClient, employee_user):
        draft = (await _submit(client, employee_user, is_draft=True)).json()["data"]
        headers = get_auth_headers(employee_user)
        res = await client.patch(f"/api/weekly-reports/{draft['id']}", headers=headers, json={
            "daily_descriptions": {"2024-03-06": "Bug bash"},
        })
        assert res.status_code == 200
        assert res.json()["data"]["daily_descriptions"] == {"2024-03-06": "Bug bash"}

        res = await client.patch(f"/api/weekly-reports/{draft['id']}", headers=headers, json={"is_draft": False})
        assert res.json()["data"]["status"] == "submitted"

        res = await client.patch(f"/api/weekly-reports/{draft['id']}", headers=headers, json={
            "department": "QA",
        })
        assert res.status_code == 400

    async def test_submitting_draft_checks_duplicates(self, client: AsyncClient, employee_user):
        await _submit(client, employee_user)
        draft = (await _submit(client, employee_user, is_draft=True)).json()["data"]
        res = await client.patch(
            f"/api/weekly-reports/{draft['id']}", headers=get_auth_headers(employee_user), json={"is_draft": False},
        )
        assert res.status_code == 409

    async def test_only_owner_edits(self, client: AsyncClient, employee_user, admin_user):
        draft = (await _submit(client, employee_user, is_draft=True)).json()["data"]
        res = await client.patch(
            f"/api/weekly-reports/{draft['id']}", headers=get_auth_headers(admin_user), json={"department": "X"},
        )
        assert res.status_code == 403

    async def test_owner_deletes_draft_not_submitted(self, client: AsyncClient, employee_user):
        headers = get_auth_headers(employee_user)
        draft = (await _submit(client, employee_user, is_draft=True)).json()["data"]
        submitted = (await _submit(client, employee_user)).json()["data"]

        res = await client.delete(f"/api/weekly-reports/{draft['id']}", headers=headers)
        assert res.status_code == 200
        res = await client.delete(f"/api/weekly-reports/{submitted['id']}", headers=headers)
        assert res.status_code == 403


@pytest.mark.asyncio
class TestReview:
    async def test_admin_list_excludes_drafts(self, client: AsyncClient, admin_user, employee_user):
        await _submit(client, employee_user, is_draft=True)
        await _submit(client, employee_user, from_date="2024-03-11", to_date="2024-03-15")
        res = await client.get("/api/weekly-reports", headers=get_auth_headers(admin_user))
        data = res.json()["data"]
        assert data["total"] == 1
        assert data["documents"][0]["user_name"] == "Employee User"

    async def test_list_filters_department(self, client: AsyncClient, admin_user, employee_user):
        await _submit(client, employee_user)
        res = await client.get(
            "/api/weekly-reports", params={"department": "Sales"}, headers=get_auth_headers(admin_user),
        )
        assert res.json()["data"]["total"] == 0

    async def test_employee_cannot_list_all(self, client: AsyncClient, employee_user):
        res = await client.get("/api/weekly-reports", headers=get_auth_headers(employee_user))
        assert res.status_code == 403

    async def test_review_notifies_owner(self, client: AsyncClient, manager_user, employee_user):
        report = (await _submit(client, employee_user)).json()["data"]
        res = await client.post(f"/api/weekly-reports/{report['id']}/review", headers=get_auth_headers(manager_user))
        assert res.status_code == 200
        assert res.json()["data"]["status"] == "reviewed"

        notes = (await client.get("/api/notifications", headers=get_auth_headers(employee_user))).json()["data"]
        assert notes["documents"][0]["type"] == "WEEKLY_REPORT_REVIEWED"
        assert "2024-03-04" in notes["documents"][0]["message"]

    async def test_drafts_cannot_be_reviewed(self, client: AsyncClient, admin_user, employee_user):
        draft = (await _submit(client, employee_user, is_draft=True)).json()["data"]
        res = await client.post(f"/api/weekly-reports/{draft['id']}/review", headers=get_auth_headers(admin_user))
        assert res.status_code == 400

    async def test_get_report_access(self, client: AsyncClient, admin_user, employee_user, outsider_user):
        report = (await _submit(client, employee_user)).json()["data"]
        res = await client.get(f"/api/weekly-reports/{report['id']}", headers=get_auth_headers(admin_user))
        assert res.status_code == 200
        res = await client.get(f"/api/weekly-reports/{report['id']}", headers=get_auth_headers(outsider_user))
        assert res.status_code == 403
