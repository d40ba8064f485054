# tests/test_notifications.py — Notification system tests
import pytest
from httpx import AsyncClient

from models import Notification, NotificationType
from tests.conftest import get_auth_headers


async def _seed(db_session, user, count: int = 3, read: int = 0):
    for i in range(count):
        db_session.add(Notification(
            user_id=user.id,
            type=NotificationType.TASK_ASSIGNED.value,
            title=f"Task {i}",
            message="You have a new task",
            is_read=i < read,
        ))
    await db_session.commit()


@pytest.mark.asyncio
async def test_list_notifications_empty(client: AsyncClient, employee_user):
    res = await client.get("/api/notifications", headers=get_auth_headers(employee_user))
    assert res.status_code == 200
    data = res.json()["data"]
    assert data["documents"] == []
    assert data["total"] == 0


@pytest.mark.asyncio
async def test_list_unread_only(client: AsyncClient, employee_user, db_session):
    await _seed(db_session, employee_user, count=3, read=1)
    res = await client.get(
        "/api/notifications", params={"unread_only": True}, headers=get_auth_headers(employee_user),
    )
    assert res.json()["data"]["total"] == 2


@pytest.mark.asyncio
async def test_unread_count(client: AsyncClient, employee_user, db_session):
    await _seed(db_session, employee_user, count=4, read=1)
    res = await client.get("/api/notifications/unread-count", headers=get_auth_headers(employee_user))
    assert res.status_code == 200
    assert res.json()["data"]["count"] == 3


@pytest.mark.asyncio
async def test_mark_one_read(client: AsyncClient, employee_user, db_session):
    await _seed(db_session, employee_user, count=1)
    headers = get_auth_headers(employee_user)
    notif_id = (await client.get("/api/notifications", headers=headers)).json()["data"]["documents"][0]["id"]

    res = await client.patch(f"/api/notifications/{notif_id}/read", headers=headers)
    assert res.status_code == 200
    assert res.json()["data"]["is_read"] is True
    assert res.json()["data"]["read_at"] is not None


@pytest.mark.asyncio
async def test_mark_all_read(client: AsyncClient, employee_user, db_session):
    await _seed(db_session, employee_user, count=3)
    headers = get_auth_headers(employee_user)
    res = await client.patch("/api/notifications/read-all", headers=headers)
    assert res.status_code == 200
    assert res.json()["data"]["marked"] == 3

    res = await client.get("/api/notifications/unread-count", headers=headers)
    assert res.json()["data"]["count"] == 0


@pytest.mark.asyncio
async def test_cannot_touch_other_users_notification(client: AsyncClient, admin_user, employee_user, db_session):
    await _seed(db_session, admin_user, count=1)
    notif_id = (await client.get(
        "/api/notifications", headers=get_auth_headers(admin_user),
    )).json()["data"]["documents"][0]["id"]

    res = await client.patch(f"/api/notifications/{notif_id}/read", headers=get_auth_headers(employee_user))
    assert res.status_code == 404
    res = await client.delete(f"/api/notifications/{notif_id}", headers=get_auth_headers(employee_user))
    assert res.status_code == 404


@pytest.mark.asyncio
async def test_delete_and_clear_read(client: AsyncClient, employee_user, db_session):
    await _seed(db_session, employee_user, count=4, read=2)
    headers = get_auth_headers(employee_user)
    docs = (await client.get("/api/notifications", headers=headers)).json()["data"]["documents"]
    unread = next(d for d in docs if not d["is_read"])

    res = await client.delete(f"/api/notifications/{unread['id']}", headers=headers)
    assert res.status_code == 200

    res = await client.delete("/api/notifications", headers=headers)
    assert res.json()["data"]["deleted"] == 2

    res = await client.get("/api/notifications", headers=headers)
    assert res.json()["data"]["total"] == 1


@pytest.mark.asyncio
async def test_notifications_require_auth(client: AsyncClient):
    res = await client.get("/api/notifications")
    assert res.status_code == 401
