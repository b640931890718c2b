import re
from datetime import datetime, timezone

from api.routers.invoices import generate_invoice_number, invoice_amounts, line_items
from tests.conftest import auth_headers, make_user


def _paid(db, owner, amount=250.0, status="completed"):
    report = db.seed("reports", {
        "user_id": owner["id"],
        "title": "May statement",
        "filename": "may.csv",
        "report_date": "2024-05-31",
        "total_amount": amount,
        "status": "approved",
        "payment_status": status,
    })[0]
    payment = db.seed("payments", {
        "user_id": owner["id"],
        "report_id": report["id"],
        "amount": amount,
        "payment_method": "upi",
        "transaction_id": "TX-9",
        "payment_status": status,
    })[0]
    return report, payment


def test_invoice_number_format():
    now = datetime(2024, 5, 15, 12, 0, tzinfo=timezone.utc)
    assert generate_invoice_number(now) == "INV2405400000"
    assert re.fullmatch(r"INV\d{10}", generate_invoice_number())


def test_invoice_amounts_apply_tax():
    assert invoice_amounts(100, 0.18) == {"amount": 100.0, "tax_amount": 18.0, "total_amount": 118.0}
    assert invoice_amounts(None, 0) == {"amount": 0.0, "tax_amount": 0.0, "total_amount": 0.0}


def test_line_items_describe_report():
    items = line_items({"title": "May statement", "report_date": "2024-05-31"}, {"amount": 12.5})
    assert items == [{"description": "May statement (2024-05-31)", "quantity": 1, "rate": 12.5, "amount": 12.5}]
    assert line_items(None, {"amount": 1})[0]["description"] == "Report processing"


def test_generate_invoice_is_idempotent(client, db, user):
    report, payment = _paid(db, user)
    headers = auth_headers(user)

    first = client.post("/invoices/generate", headers=headers, json={"paymentId": payment["id"]})
    assert first.status_code == 200
    body = first.json()
    assert body["created"] is True
    assert re.fullmatch(r"INV\d{10}", body["invoice"]["invoice_number"])
    assert body["invoice"]["status"] == "paid"
    assert body["invoice"]["total_amount"] == 250.0
    assert body["customer"]["email"] == user["email"]
    assert body["report"]["id"] == report["id"]
    assert body["payment"]["transaction_id"] == "TX-9"

    second = client.post("/invoices/generate", headers=headers, json={"paymentId": payment["id"]}).json()
    assert second["created"] is False
    assert second["invoice"]["invoice_number"] == body["invoice"]["invoice_number"]
    assert len(db.rows("invoices")) == 1


def test_generate_requires_completed_payment(client, db, user):
    _, payment = _paid(db, user, status="pending")
    res = client.post("/invoices/generate", headers=auth_headers(user), json={"paymentId": payment["id"]})
    assert res.status_code == 404
    assert db.rows("invoices") == []


def test_generate_for_someone_else_is_forbidden(client, db, user, manager):
    _, payment = _paid(db, make_user(db, "user"))

    assert client.post("/invoices/generate", headers=auth_headers(user),
                       json={"paymentId": payment["id"]}).status_code == 403
    assert client.post("/invoices/generate", headers=auth_headers(manager),
                       json={"paymentId": payment["id"]}).status_code == 200


def test_list_and_get_invoice(client, db, user, manager):
    _, payment = _paid(db, user)
    other = make_user(db, "user")
    _, other_payment = _paid(db, other)
    client.post("/invoices/generate", headers=auth_headers(user), json={"paymentId": payment["id"]})
    client.post("/invoices/generate", headers=auth_headers(other), json={"paymentId": other_payment["id"]})

    mine = client.get("/invoices", headers=auth_headers(user)).json()
    assert mine["count"] == 1
    assert client.get("/invoices", headers=auth_headers(manager)).json()["count"] == 2

    invoice_id = mine["invoices"][0]["id"]
    doc = client.get(f"/invoices/{invoice_id}", headers=auth_headers(user)).json()
    assert doc["company"]["name"] == "Report Processing Solutions"
    assert doc["items"][0]["description"] == "May statement (2024-05-31)"

    assert client.get(f"/invoices/{invoice_id}", headers=auth_headers(other)).status_code == 403
    assert client.get("/invoices/missing", headers=auth_headers(user)).status_code == 404
