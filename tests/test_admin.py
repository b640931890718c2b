from utils.auth import verify_password
from tests.conftest import auth_headers, make_user


def test_create_user_generates_temporary_password(client, db, admin):
    res = client.post(
        "/admin/users",
        headers=auth_headers(admin),
        json={"email": " New.Person@Example.com", "full_name": "New Person", "role": "manager"},
    )

    assert res.status_code == 201
    body = res.json()
    assert "password_hash" not in body["user"]
    assert body["user"]["email"] == "new.person@example.com"
    stored = db.rows("users", email="new.person@example.com")[0]
    assert stored["created_by"] == admin["id"]
    assert verify_password(body["temporaryPassword"], stored["password_hash"])


def test_create_user_with_explicit_password(client, db, admin):
    res = client.post(
        "/admin/users",
        headers=auth_headers(admin),
        json={"email": "a@b.com", "full_name": "A", "password": "longenough"},
    )
    assert res.status_code == 201
    assert "temporaryPassword" not in res.json()

    short = client.post(
        "/admin/users",
        headers=auth_headers(admin),
        json={"email": "c@b.com", "full_name": "C", "password": "123"},
    )
    assert short.status_code == 400


def test_duplicate_email_is_409(client, db, admin, user):
    res = client.post(
        "/admin/users",
        headers=auth_headers(admin),
        json={"email": user["email"], "full_name": "Dup"},
    )
    assert res.status_code == 409


def test_manager_cannot_create_admin(client, manager):
    res = client.post(
        "/admin/users",
        headers=auth_headers(manager),
        json={"email": "boss@example.com", "full_name": "Boss", "role": "admin"},
    )
    assert res.status_code == 403


def test_manager_sees_only_own_accounts(client, db, manager, admin):
    created = client.post(
        "/admin/users",
        headers=auth_headers(manager),
        json={"email": "staff@example.com", "full_name": "Staff"},
    )
    assert created.status_code == 201
    make_user(db, "user", email="someone@example.com")

    listed = client.get("/admin/users", headers=auth_headers(manager)).json()
    assert [u["email"] for u in listed["users"]] == ["staff@example.com"]

    everyone = client.get("/admin/users", headers=auth_headers(admin)).json()
    assert everyone["count"] == 4


def test_list_filters(client, db, admin):
    make_user(db, "user", is_active=False)
    make_user(db, "user")
    res = client.get("/admin/users?role=user&is_active=false", headers=auth_headers(admin)).json()
    assert res["count"] == 1


def test_get_and_update_user(client, db, admin, user):
    headers = auth_headers(admin)
    assert client.get(f"/admin/users/{user['id']}", headers=headers).json()["email"] == user["email"]
    assert client.get("/admin/users/missing", headers=headers).status_code == 404

    res = client.put(f"/admin/users/{user['id']}", headers=headers, json={"full_name": "Renamed", "role": "manager"})
    assert res.status_code == 200
    assert res.json()["full_name"] == "Renamed"
    assert res.json()["role"] == "manager"

    assert client.put(f"/admin/users/{user['id']}", headers=headers, json={}).status_code == 400


def test_admin_cannot_deactivate_or_delete_self(client, admin):
    headers = auth_headers(admin)
    assert client.put(f"/admin/users/{admin['id']}/status", headers=headers,
                      json={"is_active": False}).status_code == 400
    assert client.delete(f"/admin/users/{admin['id']}", headers=headers).status_code == 400
    assert client.post("/admin/users/bulk", headers=headers,
                       json={"action": "delete", "userIds": [admin["id"]]}).status_code == 400


def test_status_and_delete(client, db, admin, user):
    headers = auth_headers(admin)

    res = client.put(f"/admin/users/{user['id']}/status", headers=headers, json={"is_active": False})
    assert res.status_code == 200
    assert db.rows("users", id=user["id"])[0]["is_active"] is False

    assert client.delete(f"/admin/users/{user['id']}", headers=headers).status_code == 200
    assert not db.rows("users", id=user["id"])
    assert client.delete(f"/admin/users/{user['id']}", headers=headers).status_code == 404


def test_bulk_deactivate(client, db, admin):
    ids = [make_user(db, "user")["id"] for _ in range(3)]

    res = client.post("/admin/users/bulk", headers=auth_headers(admin),
                      json={"action": "deactivate", "userIds": ids[:2]})

    assert res.json()["affected"] == 2
    assert [db.rows("users", id=i)[0]["is_active"] for i in ids] == [False, False, True]


def test_reset_password(client, db, admin, user):
    res = client.post(f"/admin/users/{user['id']}/reset-password", headers=auth_headers(admin))

    assert res.status_code == 200
    stored = db.rows("users", id=user["id"])[0]["password_hash"]
    assert verify_password(res.json()["temporaryPassword"], stored)


def test_manager_cannot_reach_admin_only_routes(client, manager, user):
    assert client.delete(f"/admin/users/{user['id']}", headers=auth_headers(manager)).status_code == 403
    assert client.get("/admin/dashboard-stats", headers=auth_headers(manager)).status_code == 403


def test_dashboard_stats(client, db, admin, user):
    for i in range(6):
        db.seed("reports", {"user_id": user["id"], "title": f"R{i}", "total_amount": 10, "status": "pending"})
    db.seed("payments", {"user_id": user["id"], "amount": 25, "payment_status": "completed"})

    stats = client.get("/admin/dashboard-stats", headers=auth_headers(admin)).json()

    assert stats["totalUsers"] == 2
    assert stats["totalReports"] == 6
    assert stats["totalRevenue"] == 25
    assert stats["activeUsers"] == 1
    assert len(stats["recentActivity"]) == 5
    assert stats["recentActivity"][0]["user"]["id"] == user["id"]


def test_activity_logs_pagination(client, db, admin):
    for i in range(5):
        db.seed("activity_logs", {"user_id": admin["id"], "action": f"a{i}", "entity_type": "user"})
    db.seed("activity_logs", {"user_id": admin["id"], "action": "x", "entity_type": "report"})

    res = client.get("/admin/activity-logs?limit=2&entity_type=user", headers=auth_headers(admin)).json()

    assert len(res["logs"]) == 2
    assert res["pagination"]["total"] == 5
    assert res["pagination"]["totalPages"] == 3
