from datetime import datetime, timedelta, timezone

from tests.conftest import auth_headers, make_user


def _report(db, owner, **extra):
    row = {
        "user_id": owner["id"],
        "title": "June statement",
        "filename": "june.csv",
        "total_amount": 100.0,
        "remaining_amount": 100.0,
        "status": "pending",
        "payment_status": "pending",
        **extra,
    }
    return db.seed("reports", row)[0]


def _days_ago(n):
    return (datetime.now(timezone.utc) - timedelta(days=n)).isoformat()


def test_user_routes_reject_staff(client, manager):
    assert client.get("/user/dashboard-stats", headers=auth_headers(manager)).status_code == 403
    assert client.post("/user/report-history", headers=auth_headers(manager), json={}).status_code == 403


def test_requires_token(client, db):
    assert client.get("/user/dashboard-stats").status_code == 401


def test_dashboard_stats_trends(client, db, user):
    _report(db, user)
    _report(db, user)
    db.seed(
        "payments",
        {"user_id": user["id"], "amount": 50, "payment_status": "completed"},
        {"user_id": user["id"], "amount": 20, "payment_status": "pending"},
    )

    stats = client.get("/user/dashboard-stats", headers=auth_headers(user)).json()

    assert stats["totalReports"] == 2
    assert stats["totalAmount"] == 50
    assert stats["pendingAmount"] == 20
    assert stats["trends"]["reportsMonthlyGrowth"] == 100
    assert stats["trends"]["paymentsWeeklyGrowth"] == 100
    assert stats["trends"]["pendingPaymentsCount"] == 1
    assert stats["trends"]["thisMonthMessage"] == "Great progress!"


def test_recent_lists_are_scoped_and_capped(client, db, user):
    other = make_user(db, "user")
    for i in range(7):
        _report(db, user, title=f"R{i}", created_at=_days_ago(i))
        db.seed("payments", {"user_id": user["id"], "amount": i + 1, "payment_status": "pending",
                             "created_at": _days_ago(i)})
    _report(db, other)
    headers = auth_headers(user)

    reports = client.get("/user/recent-reports", headers=headers).json()["reports"]
    assert [r["title"] for r in reports] == ["R0", "R1", "R2", "R3", "R4"]

    payments = client.get("/user/recent-payments", headers=headers).json()["payments"]
    assert len(payments) == 5
    assert payments[0]["amount"] == 1

    assert client.get("/user/reports", headers=headers).json()["count"] == 7


def test_report_history_uses_stored_entries(client, db, user):
    report = _report(db, user)
    db.seed("report_history", {"report_id": report["id"], "action": "submitted", "new_status": "pending",
                               "performed_by": user["id"]})

    body = client.post("/user/report-history", headers=auth_headers(user), json={}).json()

    entries = body["reports"][0]["history_entries"]
    assert [e["action"] for e in entries] == ["submitted"]
    assert entries[0]["report_id"] == report["id"]


def test_report_history_builds_timeline_for_old_reports(client, db, user, manager):
    _report(db, user, status="approved", payment_status="completed", approved_by=manager["id"],
            manager_comments="ok")

    body = client.post("/user/report-history", headers=auth_headers(user), json={}).json()

    entries = body["reports"][0]["history_entries"]
    assert [e["action"] for e in entries] == ["submitted", "approved", "payment_completed"]
    assert entries[1]["performed_by"] == manager["id"]
    assert entries[1]["comments"] == "ok"


def test_report_history_filters(client, db, user):
    _report(db, user, title="Fuel card", created_at=_days_ago(2))
    _report(db, user, title="Fuel old", created_at=_days_ago(20))
    _report(db, user, title="Hotel", filename="hotel.html", status="approved", created_at=_days_ago(1))
    headers = auth_headers(user)

    recent = client.post("/user/report-history", headers=headers,
                         json={"filters": {"dateRange": "7days", "searchTerm": "FUEL"}}).json()
    assert [r["title"] for r in recent["reports"]] == ["Fuel card"]

    approved = client.post("/user/report-history", headers=headers,
                           json={"filters": {"status": "approved"}}).json()
    assert [r["title"] for r in approved["reports"]] == ["Hotel"]

    bad = client.post("/user/report-history", headers=headers, json={"filters": {"dateRange": "2days"}})
    assert bad.status_code == 422


def test_dashboard_comprehensive_summary(client, db, user):
    _report(db, user, total_amount=100, status="approved", payment_status="completed")
    _report(db, user, total_amount=40, status="pending", payment_status="pending")
    _report(db, user, total_amount=10, status="rejected", payment_status="rejected")

    body = client.post("/user/dashboard-comprehensive", headers=auth_headers(user), json={"filters": {}}).json()

    assert body["stats"] == {
        "totalReports": 3,
        "pendingApproval": 1,
        "approved": 1,
        "rejected": 1,
        "totalAmount": 150,
        "paidAmount": 100,
        "pendingPayment": 50,
    }


def test_clear_pending_payment(client, db, user):
    report = _report(db, user, status="approved", payment_status="pending_approval",
                     payment_method="offline", payment_proof_url="https://x/p.pdf", payment_proof_status="pending")
    db.seed("payment_proofs", {"report_id": report["id"], "user_id": user["id"], "status": "pending_approval"})

    res = client.post("/user/clear-pending-payment", headers=auth_headers(user), json={"reportId": report["id"]})

    assert res.status_code == 200
    assert res.json()["data"]["newPaymentStatus"] == "pending"
    stored = db.rows("reports", id=report["id"])[0]
    assert stored["payment_status"] == "pending"
    assert stored["payment_method"] is None
    assert stored["payment_proof_url"] is None
    assert db.rows("payment_proofs", report_id=report["id"]) == []
    assert db.rows("report_history", report_id=report["id"], action="payment_cleared")
    assert db.rows("notifications", user_id=user["id"], type="payment_cleared")


def test_cleared_payment_can_no_longer_be_approved(client, db, user, manager):
    report = _report(db, user, status="approved", payment_status="pending_approval")
    payment = db.seed("payments", {"report_id": report["id"], "user_id": user["id"], "amount": 100.0,
                                   "payment_method": "offline", "payment_status": "pending_approval"})[0]
    settled = db.seed("payments", {"report_id": report["id"], "user_id": user["id"], "amount": 0.5,
                                   "payment_status": "completed"})[0]

    res = client.post("/user/clear-pending-payment", headers=auth_headers(user), json={"reportId": report["id"]})
    assert res.status_code == 200

    voided = db.rows("payments", id=payment["id"])[0]
    assert voided["payment_status"] == "failed"
    assert voided["rejection_reason"] == "Cleared by user"
    assert db.rows("payments", id=settled["id"])[0]["payment_status"] == "completed"

    approve = client.post(
        "/manager/approve-reject",
        headers=auth_headers(manager),
        json={"type": "payment", "id": payment["id"], "action": "approve"},
    )
    assert approve.status_code == 400
    assert db.rows("reports", id=report["id"])[0]["payment_status"] == "pending"


def test_clear_completed_payment_is_rejected(client, db, user):
    report = _report(db, user, payment_status="completed")
    res = client.post("/user/clear-pending-payment", headers=auth_headers(user), json={"reportId": report["id"]})
    assert res.status_code == 400


def test_clear_someone_elses_payment_is_404(client, db, user):
    report = _report(db, make_user(db, "user"), payment_status="rejected")
    res = client.post("/user/clear-pending-payment", headers=auth_headers(user), json={"reportId": report["id"]})
    assert res.status_code == 404
