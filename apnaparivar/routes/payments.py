from __future__ import annotations

import logging

from flask import Blueprint, current_app, g, jsonify, request

from .. import billing, families
from ..auth import login_required
from ..errors import ApiError, bad_request, forbidden
from . import json_body

log = logging.getLogger(__name__)

bp = Blueprint("payments", __name__, url_prefix="/api/payments")


def _require_enabled() -> None:
    if not billing.payments_enabled():
        raise ApiError(503, "Payments are disabled right now", paymentsEnabled=False)


@bp.post("/create-order")
@login_required
def create_order():
    _require_enabled()
    family = billing.resolve_family_for(g.user, json_body().get("familyId"))
    order = billing.create_order(family, g.user)
    return jsonify(
        {"success": True, "provider": "razorpay", "order": order, "keyId": current_app.config["RAZORPAY_KEY_ID"]}
    )


@bp.post("/verify")
@login_required
def verify():
    _require_enabled()
    payload = json_body()
    family = billing.resolve_family_for(g.user, payload.get("familyId"))
    ends_at = billing.verify_payment(
        family,
        g.user,
        str(payload.get("razorpay_order_id") or ""),
        str(payload.get("razorpay_payment_id") or ""),
        str(payload.get("razorpay_signature") or ""),
    )
    return jsonify(
        {"success": True, "message": "Payment verified and subscription activated", "subscriptionEndsAt": ends_at}
    )


@bp.post("/webhook")
def webhook():
    raw = request.get_data()
    signature = request.headers.get("X-Razorpay-Signature", "")
    if not billing.verify_webhook_signature(raw, signature, current_app.config.get("RAZORPAY_WEBHOOK_SECRET") or ""):
        log.warning("Rejected webhook with a bad signature")
        raise bad_request("Invalid webhook signature")
    event = request.get_json(silent=True)
    if not isinstance(event, dict):
        raise bad_request("Invalid webhook payload")
    outcome = billing.handle_webhook(event, request.headers.get("X-Razorpay-Event-Id") or None)
    return jsonify({"success": True, "status": outcome})


@bp.get("/status")
@login_required
def status():
    family = billing.resolve_family_for(g.user, request.args.get("familyId"))
    return jsonify(
        {
            "success": True,
            "paymentsEnabled": billing.payments_enabled(),
            "family": {
                "id": family["id"],
                "name": family["family_name"],
                "subscription": families.subscription_dict(family),
            },
        }
    )


@bp.get("/history")
@login_required
def history():
    family = billing.resolve_family_for(g.user, request.args.get("familyId"))
    if not families.is_admin(family, g.user["id"]) and g.user["user_type"] != "superadmin":
        raise forbidden("Admin access required")
    return jsonify({"success": True, "payments": [billing.payment_to_dict(p) for p in billing.history(family["id"])]})


@bp.post("/dummy/activate")
@login_required
def dummy_activate():
    family = billing.resolve_family_for(g.user, json_body().get("familyId"))
    ends_at = billing.dummy_activate(family, g.user)
    return jsonify(
        {"success": True, "message": "Subscription activated (dummy payment)", "subscriptionEndsAt": ends_at}
    )
