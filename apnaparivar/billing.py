from __future__ import annotations

import hashlib
import hmac
import logging
import sqlite3
import time
from dataclasses import dataclass
from typing import Any, Dict, Optional

import requests
from flask import current_app

from . import families, users
from .db import dumps, get_db, iso_in, loads, new_id, now_iso, utcnow
from .errors import ApiError, bad_request, forbidden, not_found

log = logging.getLogger(__name__)

SUBSCRIPTION_DAYS = 365
GST_RATE = 0.18
CURRENCY = "INR"


class PaymentProviderError(Exception):
    pass


# -----------------------------
# RAZORPAY
# -----------------------------
@dataclass
class RazorpayClient:
    key_id: str
    key_secret: str
    api_url: str = "https://api.razorpay.com/v1"
    timeout: int = 15

    def create_order(self, amount: int, currency: str, receipt: str, notes: Dict[str, str]) -> Dict[str, Any]:
        try:
            resp = requests.post(
                f"{self.api_url.rstrip('/')}/orders",
                auth=(self.key_id, self.key_secret),
                json={"amount": amount, "currency": currency, "receipt": receipt, "notes": notes},
                timeout=self.timeout,
            )
        except requests.RequestException as e:
            log.warning("Razorpay order request failed: %s", e)
            raise PaymentProviderError("Payment provider unreachable") from e
        if resp.status_code >= 300:
            log.warning("Razorpay order returned %s: %s", resp.status_code, resp.text[:200])
            raise PaymentProviderError("Payment provider rejected the order")
        return resp.json()


def payments_enabled() -> bool:
    return bool(current_app.config.get("PAYMENTS_ENABLED"))


def get_client() -> Optional[RazorpayClient]:
    cfg = current_app.config
    if not payments_enabled() or not cfg.get("RAZORPAY_KEY_ID") or not cfg.get("RAZORPAY_KEY_SECRET"):
        return None
    return RazorpayClient(cfg["RAZORPAY_KEY_ID"], cfg["RAZORPAY_KEY_SECRET"], cfg["RAZORPAY_API_URL"])


def hmac_hex(secret: str, message: bytes) -> str:
    return hmac.new(secret.encode("utf-8"), message, hashlib.sha256).hexdigest()


def verify_payment_signature(order_id: str, payment_id: str, signature: str, secret: str) -> bool:
    expected = hmac_hex(secret, f"{order_id}|{payment_id}".encode("utf-8"))
    return hmac.compare_digest(expected, signature or "")


def verify_webhook_signature(body: bytes, signature: str, secret: str) -> bool:
    if not secret or not signature:
        return False
    return hmac.compare_digest(hmac_hex(secret, body), signature)


# -----------------------------
# INVOICES
# -----------------------------
def tax_included(amount: int, currency: str = CURRENCY) -> int:
    if currency != CURRENCY:
        return 0
    base = int(amount / (1 + GST_RATE) + 0.5)
    return amount - base


def next_invoice_number(con: sqlite3.Connection) -> str:
    now = utcnow()
    seq = int(time.time() * 1000) % 1_000_000
    while True:
        number = f"AP-{now.year}{now.month:02d}-{seq:06d}"
        if con.execute("SELECT 1 FROM payments WHERE invoice_number = ?", (number,)).fetchone() is None:
            return number
        seq = (seq + 1) % 1_000_000


# -----------------------------
# PAYMENT ROWS
# -----------------------------
def find_by_order(order_id: str) -> Optional[sqlite3.Row]:
    return get_db().execute(
        "SELECT * FROM payments WHERE provider_order_id = ? ORDER BY created_at DESC", (order_id,)
    ).fetchone()


def _transaction_id(prefix: str = "TXN") -> str:
    return f"{prefix}_{int(time.time() * 1000)}_{new_id()[:6].upper()}"


def _insert_payment(con: sqlite3.Connection, family_id: str, user_id: str, description: str, *,
                    status: str = "created", order_id: Optional[str] = None, method: Optional[str] = None,
                    prefix: str = "TXN", notes: Optional[dict] = None) -> str:
    pid = new_id()
    now = now_iso()
    amount = int(current_app.config["SUBSCRIPTION_AMOUNT_PAISE"])
    con.execute(
        """
        INSERT INTO payments (id, transaction_id, provider_order_id, family_id, user_id, amount, currency,
                              description, subscription_type, status, payment_method, notes_json,
                              created_at, updated_at)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, 'annual', ?, ?, ?, ?, ?)
        """,
        (pid, _transaction_id(prefix), order_id, family_id, user_id, amount, CURRENCY, description, status,
         method, dumps(notes or {}), now, now),
    )
    return pid


def mark_paid(con: sqlite3.Connection, payment: sqlite3.Row, provider_payment_id: Optional[str] = None,
              signature: Optional[str] = None, method: Optional[str] = None,
              event_id: Optional[str] = None) -> str:
    """Mark a payment paid, issue the invoice and extend the subscription. Returns the new end date."""
    now = now_iso()
    ends_at = iso_in(SUBSCRIPTION_DAYS)
    con.execute(
        """
        UPDATE payments
           SET status = 'paid', paid_at = ?, provider_payment_id = COALESCE(?, provider_payment_id),
               provider_signature = COALESCE(?, provider_signature),
               payment_method = COALESCE(?, payment_method), period_start = ?, period_end = ?,
               invoice_number = COALESCE(invoice_number, ?), invoice_date = COALESCE(invoice_date, ?),
               tax_amount = ?, total_amount = amount, webhook_event_id = COALESCE(?, webhook_event_id),
               updated_at = ?
         WHERE id = ?
        """,
        (now, provider_payment_id, signature, method, now, ends_at, next_invoice_number(con), now,
         tax_included(payment["amount"], payment["currency"]), event_id, now, payment["id"]),
    )
    families.activate_subscription(con, payment["family_id"], ends_at)
    users.set_payment_info(con, payment["user_id"], ends_at, now)
    return ends_at


def mark_failed(con: sqlite3.Connection, payment: sqlite3.Row, reason: str, event_id: Optional[str] = None) -> None:
    con.execute(
        """
        UPDATE payments SET status = 'failed', failed_at = ?, failure_reason = ?,
                            webhook_event_id = COALESCE(?, webhook_event_id), updated_at = ?
         WHERE id = ?
        """,
        (now_iso(), reason, event_id, now_iso(), payment["id"]),
    )


# -----------------------------
# FLOWS
# -----------------------------
def resolve_family_for(user: sqlite3.Row, ref: Any) -> sqlite3.Row:
    ref = str(ref or "").strip() or user["family_id"]
    if not ref:
        raise bad_request("Family ID is required")
    return families.require_family(ref)


def can_pay(family: sqlite3.Row, user: sqlite3.Row) -> bool:
    if families.is_admin(family, user["id"]) or user["user_type"] == "superadmin":
        return True
    return user["family_id"] == family["id"] and user["family_role"] == "creator"


def create_order(family: sqlite3.Row, user: sqlite3.Row) -> Dict[str, Any]:
    if not can_pay(family, user):
        raise forbidden("Admin access required")
    client = get_client()
    if client is None:
        raise ApiError(503, "Payment provider not configured", paymentsEnabled=False)

    amount = int(current_app.config["SUBSCRIPTION_AMOUNT_PAISE"])
    try:
        order = client.create_order(
            amount, CURRENCY, f"rcpt_{int(time.time() * 1000)}", {"familyId": family["id"], "createdBy": user["id"]}
        )
    except PaymentProviderError as e:
        raise ApiError(502, str(e))

    con = get_db()
    with con:
        _insert_payment(con, family["id"], user["id"], "ApnaParivar yearly subscription",
                        order_id=order.get("id"), notes={"receipt": order.get("receipt")})
    log.info("Order %s created for family %s", order.get("id"), family["slug"])
    return order


def verify_payment(family: sqlite3.Row, user: sqlite3.Row, order_id: str, payment_id: str, signature: str) -> str:
    if not families.is_admin(family, user["id"]):
        raise forbidden("Admin access required")

    secret = current_app.config.get("RAZORPAY_KEY_SECRET") or ""
    if secret and order_id and payment_id and signature:
        if not verify_payment_signature(order_id, payment_id, signature, secret):
            log.warning("Signature mismatch for order %s", order_id)
            raise bad_request("Signature verification failed")
    else:
        log.warning("Accepting unsigned payment for family %s", family["slug"])

    con = get_db()
    with con:
        payment = find_by_order(order_id) if order_id else None
        if payment is not None and payment["family_id"] != family["id"]:
            log.warning("Order %s replayed against family %s", order_id, family["slug"])
            raise bad_request("Order does not belong to this family")
        if payment is None:
            pid = _insert_payment(con, family["id"], user["id"], "ApnaParivar yearly subscription",
                                  order_id=order_id or "mock_order")
            payment = con.execute("SELECT * FROM payments WHERE id = ?", (pid,)).fetchone()
        elif payment["status"] == "paid":
            return payment["period_end"]
        ends_at = mark_paid(con, payment, payment_id or "mock_payment", signature or None, "card")
    log.info("Subscription activated for %s until %s", family["slug"], ends_at)
    return ends_at


def dummy_activate(family: sqlite3.Row, user: sqlite3.Row) -> str:
    if payments_enabled():
        raise bad_request("Dummy payments are only available when real payments are disabled")
    if not families.is_admin(family, user["id"]):
        raise forbidden("Admin access required")
    con = get_db()
    with con:
        pid = _insert_payment(con, family["id"], user["id"], "Dummy yearly subscription activation",
                              method="dummy", prefix="DUMMY")
        payment = con.execute("SELECT * FROM payments WHERE id = ?", (pid,)).fetchone()
        ends_at = mark_paid(con, payment, method="dummy")
    log.info("Dummy subscription activated for %s", family["slug"])
    return ends_at


def _entity(event: Dict[str, Any], name: str) -> Dict[str, Any]:
    return ((event.get("payload") or {}).get(name) or {}).get("entity") or {}


def handle_webhook(event: Dict[str, Any], event_id: Optional[str] = None) -> str:
    """Apply a Razorpay webhook event; returns a short outcome label."""
    kind = str(event.get("event") or "")
    payment_entity = _entity(event, "payment")
    order_entity = _entity(event, "order")
    order_id = payment_entity.get("order_id") or order_entity.get("id")

    if kind not in ("payment.captured", "order.paid", "payment.failed"):
        log.info("Ignoring webhook event %s", kind)
        return "ignored"
    if not order_id:
        return "ignored"

    con = get_db()
    if event_id and con.execute("SELECT 1 FROM payments WHERE webhook_event_id = ?", (event_id,)).fetchone():
        return "duplicate"
    payment = find_by_order(order_id)
    if payment is None:
        log.warning("Webhook %s for unknown order %s", kind, order_id)
        raise not_found("Payment not found")

    with con:
        if payment["status"] == "paid":
            # late events for earlier attempts never undo a settled order
            outcome = "duplicate"
        elif kind == "payment.failed":
            reason = payment_entity.get("error_description") or payment_entity.get("error_code") or "failed"
            mark_failed(con, payment, str(reason), event_id)
            outcome = "failed"
        else:
            mark_paid(con, payment, payment_entity.get("id"), None, payment_entity.get("method"), event_id)
            outcome = "paid"
    log.info("Webhook %s for order %s: %s", kind, order_id, outcome)
    return outcome


def history(family_id: str, limit: int = 50) -> list[sqlite3.Row]:
    return get_db().execute(
        "SELECT * FROM payments WHERE family_id = ? ORDER BY created_at DESC LIMIT ?", (family_id, limit)
    ).fetchall()


def payment_to_dict(row: sqlite3.Row, family: Optional[dict] = None, user: Optional[dict] = None) -> Dict[str, Any]:
    return {
        "_id": row["id"],
        "id": row["id"],
        "transactionId": row["transaction_id"],
        "razorpayOrderId": row["provider_order_id"],
        "razorpayPaymentId": row["provider_payment_id"],
        "familyId": family if family is not None else row["family_id"],
        "userId": user if user is not None else row["user_id"],
        "amount": row["amount"],
        "currency": row["currency"],
        "description": row["description"],
        "subscriptionType": row["subscription_type"],
        "subscriptionPeriod": {"startDate": row["period_start"], "endDate": row["period_end"]},
        "status": row["status"],
        "paymentMethod": row["payment_method"],
        "paidAt": row["paid_at"],
        "failedAt": row["failed_at"],
        "failureReason": row["failure_reason"],
        "invoice": {
            "invoiceNumber": row["invoice_number"],
            "invoiceDate": row["invoice_date"],
            "taxAmount": row["tax_amount"],
            "totalAmount": row["total_amount"],
        },
        "notes": loads(row["notes_json"], {}),
        "createdAt": row["created_at"],
    }
