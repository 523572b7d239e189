import json
import re

import pytest
from fastapi.testclient import TestClient

from luckylot.server import app


@pytest.fixture(scope="module")
def client():
    with TestClient(app) as c:
        yield c


def _order(client, phone, quantity=2, name="Asha"):
    r = client.post("/api/create-order", json={
        "name": name, "phone": phone, "quantity": quantity,
    })
    assert r.status_code == 200, r.text
    return r.json()


def _webhook(client, event):
    gateway = app.state.gateway
    body = json.dumps(event).encode()
    return client.post(
        "/api/mock/webhook",
        content=body,
        headers={
            "x-mockpay-signature": gateway.sign(body),
            "content-type": "application/json",
        },
    )


def test_remaining_counts_down(client):
    before = client.get("/api/tickets/remaining").json()["remaining"]
    _order(client, "9000000001", quantity=3)
    after = client.get("/api/tickets/remaining").json()["remaining"]
    assert after == before - 3


def test_create_order_rejects_short_phone(client):
    r = client.post("/api/create-order", json={
        "name": "Asha", "mobile": "12345", "quantity": 1,
    })
    assert r.status_code == 400
    assert r.json() == {"error": "Mobile must be 10 digits"}


def test_create_order_rejects_quantity_over_limit(client):
    r = client.post("/api/create-order", json={
        "name": "Asha", "phone": "9000000002", "quantity": 5000,
    })
    assert r.status_code == 400


def test_order_settle_and_verify(client):
    out = _order(client, "9876543210", quantity=2)
    assert out["amount"] == 202

    r = client.post(f"/mockpay/{out['order_id']}/emit",
                    json={"t": "succeeded"})
    assert r.status_code == 200
    # nothing listens on the mock webhook URL during tests
    assert r.json()["delivered"] is False

    r = client.post("/api/verify-payment", json={
        "order_id": out["order_id"],
        "userId": out["user_id"],
        "quantity": 2,
    })
    assert r.status_code == 200, r.text
    tickets = r.json()["tickets"]
    assert len(tickets) == 2
    assert all(re.match(r"^\d+LOT-[A-Z0-9]{5}$", t) for t in tickets)

    r = client.get(f"/api/result/{tickets[0].lower()}")
    assert r.json() == {"won": False}


def test_verify_unpaid_order(client):
    out = _order(client, "9000000003", quantity=1)
    r = client.post("/api/verify-payment", json={
        "order_id": out["order_id"], "user_id": out["user_id"],
    })
    assert r.status_code == 400
    assert r.json() == {"error": "Payment not confirmed yet"}


def test_webhook_is_idempotent(client):
    out = _order(client, "9000000004", quantity=2)
    event = app.state.gateway.settle(out["order_id"], "succeeded")

    first = _webhook(client, event)
    assert first.status_code == 200
    assert first.json()["status"] == "processed"

    second = _webhook(client, event)
    assert second.json() == {"status": "already_processed"}

    r = client.post("/api/verify-payment", json={"order_id": out["order_id"]})
    assert r.json()["tickets"] == first.json()["tickets"]


def test_webhook_ignores_failure_events(client):
    out = _order(client, "9000000005", quantity=1)
    event = app.state.gateway.settle(out["order_id"], "canceled")
    r = _webhook(client, event)
    assert r.status_code == 200
    assert r.json() == {"status": "ignored"}


def test_webhook_rejects_bad_signature_and_unknown_gateway(client):
    body = b'{"type": "payment.succeeded", "order_id": "x"}'
    r = client.post("/api/mock/webhook", content=body,
                    headers={"x-mockpay-signature": "nope"})
    assert r.status_code == 400
    r = client.post("/api/cashfree/webhook", content=body)
    assert r.status_code == 404


def test_admin_requires_login(client):
    client.post("/api/admin/logout")
    assert client.get("/api/admin/stats").status_code == 401
    r = client.post("/api/admin/login", json={"password": "wrong"})
    assert r.status_code == 401
    assert r.json() == {"error": "Invalid password"}


def test_admin_flow(client):
    r = client.post("/api/admin/login", json={"password": "letmein"})
    assert r.status_code == 200

    settings = client.get("/api/admin/settings").json()
    assert settings["ticket_price"] == 101

    r = client.post("/api/admin/settings",
                    json={"banner_image": "banner.png"})
    assert r.json()["settings"]["banner_image"] == "banner.png"
    assert r.json()["settings"]["total_tickets"] == settings["total_tickets"]

    stats = client.get("/api/admin/stats").json()
    assert stats["remaining"] == stats["total"] - stats["reserved"]

    out = _order(client, "9000000006", quantity=2, name="Meera")
    event = app.state.gateway.settle(out["order_id"], "succeeded")
    code = _webhook(client, event).json()["tickets"][0]

    r = client.post("/api/admin/winners", json={
        "winners": [{"ticket_code": code, "prize_amount": 25000}],
    })
    assert r.status_code == 200
    assert client.get(f"/api/result/{code}").json() == \
        {"won": True, "prize": 25000}

    top = client.get("/api/recent-winners").json()["winners"][0]
    assert top["ticket_code"] == code
    assert top["mobile"] == "900xxxxx06"

    r = client.post("/api/admin/auto-generate-winners", json={"count": 2})
    assert r.status_code == 200
    assert len(r.json()["winners"]) == 2

    r = client.post("/api/admin/auto-generate-winners", json={"count": 99})
    assert r.status_code == 400

    users = client.get("/api/admin/users").json()["users"]
    meera = next(u for u in users if u["mobile"] == "9000000006")
    assert code in [t["ticket_code"] for t in meera["tickets"]]

    unpaid = _order(client, "9000000007", quantity=1)
    pending = client.get("/api/admin/pending").json()
    assert unpaid["order_id"] in [p["order_id"] for p in pending["items"]]

    r = client.post("/api/admin/expire-pending",
                    json={"max_age_seconds": 3600})
    assert r.json() == {"success": True, "expired": []}
