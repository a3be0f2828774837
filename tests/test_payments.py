from __future__ import annotations

import hashlib
import hmac
import json
import re

import pytest

from apnaparivar import billing
from apnaparivar.db import get_db


class FakeResponse:
    def __init__(self, status_code, payload):
        self.status_code = status_code
        self._payload = payload
        self.text = json.dumps(payload)

    def json(self):
        return self._payload


def _sign(secret: str, message: bytes) -> str:
    return hmac.new(secret.encode(), message, hashlib.sha256).hexdigest()


@pytest.fixture
def live_payments(app, monkeypatch):
    """Payments switched on with a fake Razorpay order endpoint."""
    app.config.update(
        PAYMENTS_ENABLED=True,
        RAZORPAY_KEY_ID="rzp_test_key",
        RAZORPAY_KEY_SECRET="rzp_secret",
        RAZORPAY_WEBHOOK_SECRET="whsec",
    )
    calls = []

    def fake_post(url, auth=None, json=None, timeout=None):
        calls.append({"url": url, "auth": auth, "json": json})
        return FakeResponse(200, {"id": "order_123", "amount": json["amount"], "currency": "INR", "receipt": json["receipt"]})

    monkeypatch.setattr(billing.requests, "post", fake_post)
    return calls


def test_tax_included():
    assert billing.tax_included(50000) == 7627
    assert billing.tax_included(50000, "USD") == 0


def test_signatures():
    sig = _sign("s3cret", b"order_1|pay_1")
    assert billing.verify_payment_signature("order_1", "pay_1", sig, "s3cret")
    assert not billing.verify_payment_signature("order_1", "pay_2", sig, "s3cret")
    assert not billing.verify_webhook_signature(b"{}", "", "s3cret")
    assert not billing.verify_webhook_signature(b"{}", _sign("s3cret", b"{}"), "")
    assert billing.verify_webhook_signature(b"{}", _sign("s3cret", b"{}"), "s3cret")


def test_status_reports_disabled(client, owner, family):
    _, headers = owner
    body = client.get("/api/payments/status", headers=headers).get_json()
    assert body["paymentsEnabled"] is False
    assert body["family"]["subscription"]["status"] == "trial"


def test_create_order_when_disabled(client, owner, family):
    _, headers = owner
    resp = client.post("/api/payments/create-order", json={}, headers=headers)
    assert resp.status_code == 503
    assert resp.get_json()["paymentsEnabled"] is False


def test_dummy_activation(client, owner, family):
    _, headers = owner
    resp = client.post("/api/payments/dummy/activate", json={"familyId": family["id"]}, headers=headers)
    assert resp.status_code == 200
    assert resp.get_json()["subscriptionEndsAt"]

    status = client.get("/api/payments/status", headers=headers).get_json()["family"]["subscription"]
    assert status["status"] == "active"
    assert status["isActive"] is True

    history = client.get("/api/payments/history", headers=headers).get_json()["payments"]
    assert len(history) == 1
    payment = history[0]
    assert payment["status"] == "paid"
    assert payment["paymentMethod"] == "dummy"
    assert payment["transactionId"].startswith("DUMMY_")
    assert re.fullmatch(r"AP-\d{6}-\d{6}", payment["invoice"]["invoiceNumber"])
    assert payment["invoice"]["taxAmount"] == 7627
    assert payment["invoice"]["totalAmount"] == 50000

    me = client.get("/api/auth/me", headers=headers).get_json()["user"]
    assert me["paymentInfo"]["subscriptionStatus"] == "active"


def test_dummy_needs_admin(client, family, make_user, headers_for):
    headers = headers_for(make_user("nosy@gmail.com"))
    resp = client.post("/api/payments/dummy/activate", json={"familyId": family["id"]}, headers=headers)
    assert resp.status_code == 403


def test_history_needs_admin(client, family, make_user, headers_for):
    headers = headers_for(make_user("nosy@gmail.com"))
    assert client.get(f"/api/payments/history?familyId={family['id']}", headers=headers).status_code == 403


def test_dummy_refused_when_live(client, owner, family, live_payments):
    _, headers = owner
    assert client.post("/api/payments/dummy/activate", json={}, headers=headers).status_code == 400


def test_order_then_verify(client, owner, family, live_payments):
    _, headers = owner
    resp = client.post("/api/payments/create-order", json={"familyId": family["id"]}, headers=headers)
    assert resp.status_code == 200
    body = resp.get_json()
    assert body["order"]["id"] == "order_123"
    assert body["keyId"] == "rzp_test_key"
    assert live_payments[0]["url"].endswith("/orders")
    assert live_payments[0]["auth"] == ("rzp_test_key", "rzp_secret")
    assert live_payments[0]["json"]["amount"] == 50000

    bad = {
        "razorpay_order_id": "order_123",
        "razorpay_payment_id": "pay_1",
        "razorpay_signature": "0" * 64,
    }
    resp = client.post("/api/payments/verify", json=bad, headers=headers)
    assert resp.status_code == 400
    assert resp.get_json()["message"] == "Signature verification failed"

    good = dict(bad, razorpay_signature=_sign("rzp_secret", b"order_123|pay_1"))
    resp = client.post("/api/payments/verify", json=good, headers=headers)
    assert resp.status_code == 200

    history = client.get("/api/payments/history", headers=headers).get_json()["payments"]
    assert len(history) == 1
    assert history[0]["status"] == "paid"
    assert history[0]["razorpayPaymentId"] == "pay_1"

    # verifying again does not issue a second payment
    assert client.post("/api/payments/verify", json=good, headers=headers).status_code == 200
    assert len(client.get("/api/payments/history", headers=headers).get_json()["payments"]) == 1


def test_verified_order_cannot_be_replayed_by_another_family(client, owner, family, live_payments, make_user, headers_for):
    _, headers = owner
    client.post("/api/payments/create-order", json={}, headers=headers)
    good = {
        "razorpay_order_id": "order_123",
        "razorpay_payment_id": "pay_1",
        "razorpay_signature": _sign("rzp_secret", b"order_123|pay_1"),
    }
    assert client.post("/api/payments/verify", json=good, headers=headers).status_code == 200

    other = headers_for(make_user("verma@gmail.com"))
    client.post("/api/families", json={"familyName": "Verma"}, headers=other)
    resp = client.post("/api/payments/verify", json=good, headers=other)
    assert resp.status_code == 400
    assert resp.get_json()["message"] == "Order does not belong to this family"

    status = client.get("/api/payments/status", headers=other).get_json()["family"]["subscription"]
    assert status["status"] == "trial"
    assert client.get("/api/payments/history", headers=other).get_json()["payments"] == []


def test_provider_failure_is_502(client, owner, family, live_payments, monkeypatch):
    _, headers = owner
    monkeypatch.setattr(billing.requests, "post", lambda *a, **kw: FakeResponse(401, {"error": "bad key"}))
    resp = client.post("/api/payments/create-order", json={}, headers=headers)
    assert resp.status_code == 502


def _webhook(client, event, event_id, secret="whsec"):
    body = json.dumps(event).encode()
    return client.post(
        "/api/payments/webhook",
        data=body,
        headers={"X-Razorpay-Signature": _sign(secret, body), "X-Razorpay-Event-Id": event_id},
        content_type="application/json",
    )


def test_webhook_marks_paid_once(client, owner, family, live_payments):
    _, headers = owner
    client.post("/api/payments/create-order", json={}, headers=headers)
    event = {
        "event": "payment.captured",
        "payload": {"payment": {"entity": {"id": "pay_9", "order_id": "order_123", "method": "upi"}}},
    }

    assert _webhook(client, event, "evt_1", secret="wrong").status_code == 400

    resp = _webhook(client, event, "evt_1")
    assert resp.status_code == 200
    assert resp.get_json()["status"] == "paid"
    assert _webhook(client, event, "evt_1").get_json()["status"] == "duplicate"
    assert _webhook(client, event, "evt_2").get_json()["status"] == "duplicate"

    payment = client.get("/api/payments/history", headers=headers).get_json()["payments"][0]
    assert payment["paymentMethod"] == "upi"


def test_webhook_failure_and_unknown_events(client, owner, family, live_payments):
    _, headers = owner
    client.post("/api/payments/create-order", json={}, headers=headers)

    assert _webhook(client, {"event": "refund.created"}, "evt_x").get_json()["status"] == "ignored"

    failed = {
        "event": "payment.failed",
        "payload": {"payment": {"entity": {"order_id": "order_123", "error_description": "card declined"}}},
    }
    assert _webhook(client, failed, "evt_f").get_json()["status"] == "failed"
    payment = client.get("/api/payments/history", headers=headers).get_json()["payments"][0]
    assert payment["failureReason"] == "card declined"

    unknown = {"event": "order.paid", "payload": {"order": {"entity": {"id": "order_nope"}}}}
    assert _webhook(client, unknown, "evt_u").status_code == 404


def test_late_failure_does_not_undo_paid_order(client, owner, family, live_payments):
    _, headers = owner
    client.post("/api/payments/create-order", json={}, headers=headers)
    captured = {
        "event": "payment.captured",
        "payload": {"payment": {"entity": {"id": "pay_ok", "order_id": "order_123", "method": "card"}}},
    }
    failed = {
        "event": "payment.failed",
        "payload": {"payment": {"entity": {"id": "pay_old", "order_id": "order_123", "error_code": "BAD_REQUEST_ERROR"}}},
    }
    assert _webhook(client, captured, "evt_ok").get_json()["status"] == "paid"
    assert _webhook(client, failed, "evt_late").get_json()["status"] == "duplicate"

    payment = client.get("/api/payments/history", headers=headers).get_json()["payments"][0]
    assert payment["status"] == "paid"
    assert payment["failureReason"] is None
    assert payment["invoice"]["invoiceNumber"]


def test_expired_trial_blocks_writes(client, app, owner, family):
    _, headers = owner
    app.config["ENFORCE_SUBSCRIPTION"] = True
    with app.app_context():
        con = get_db()
        with con:
            con.execute("UPDATE families SET trial_ends_at = ? WHERE id = ?", ("2000-01-01T00:00:00+00:00", family["id"]))

    resp = client.post("/api/members", json={"firstName": "A", "lastName": "B"}, headers=headers)
    assert resp.status_code == 402
    assert resp.get_json()["subscription"]["isActive"] is False

    client.post("/api/payments/dummy/activate", json={}, headers=headers)
    resp = client.post("/api/members", json={"firstName": "A", "lastName": "B"}, headers=headers)
    assert resp.status_code == 201
