from __future__ import annotations

import logging
import secrets
from urllib.parse import urlencode

from flask import Blueprint, current_app, g, jsonify, redirect, request, session

from .. import families, google_oauth, users
from ..auth import clear_auth_cookie, generate_token, login_required, set_auth_cookie, superadmin_required
from ..db import loads
from ..errors import ApiError
from . import json_body

log = logging.getLogger(__name__)

bp = Blueprint("auth", __name__, url_prefix="/api/auth")


def _frontend(path: str, **params: str):
    url = f"{current_app.config['FRONTEND_URL']}{path}"
    if params:
        url += "?" + urlencode(params)
    return redirect(url)


# -----------------------------
# GOOGLE OAUTH
# -----------------------------
@bp.get("/google")
def google_start():
    if not google_oauth.is_configured():
        raise ApiError(503, "Google sign-in is not configured")
    state = secrets.token_urlsafe(24)
    session["oauth_state"] = state
    return redirect(google_oauth.consent_url(state))


@bp.get("/google/callback")
def google_callback():
    if request.args.get("error"):
        return _frontend("/login", error="auth_failed")

    expected = session.pop("oauth_state", None)
    if not expected or request.args.get("state") != expected:
        log.warning("OAuth state mismatch")
        return _frontend("/login", error="auth_failed")

    code = request.args.get("code", "")
    if not code:
        return _frontend("/login", error="auth_failed")

    try:
        tokens = google_oauth.exchange_code(code)
        profile = google_oauth.fetch_profile(tokens.get("access_token", ""))
        user = google_oauth.upsert_google_user(profile)
    except google_oauth.OAuthError as e:
        return _frontend("/login", error="auth_failed", message=str(e))

    token = generate_token(user)
    resp = _frontend("/auth/success", token=token)
    return set_auth_cookie(resp, token)


# -----------------------------
# SESSION
# -----------------------------
@bp.get("/me")
@login_required
def me():
    user = g.user
    family = families.get_family(user["family_id"]) if user["family_id"] else None
    family_info = None
    if family is not None:
        family_info = {
            **families.family_summary(family),
            "description": family["description"],
            "stats": loads(family["stats_json"], {}),
        }
    return jsonify({"success": True, "user": users.user_to_dict(user, family_info)})


@bp.post("/logout")
@login_required
def logout():
    resp = jsonify({"success": True, "message": "Logged out successfully"})
    return clear_auth_cookie(resp)


@bp.post("/refresh")
@login_required
def refresh():
    token = generate_token(g.user)
    resp = jsonify({"success": True, "token": token, "message": "Token refreshed successfully"})
    return set_auth_cookie(resp, token)


@bp.put("/profile")
@login_required
def update_profile():
    payload = json_body()
    prefs = payload.get("preferences")
    user = users.update_profile(g.user["id"], payload.get("name"), prefs if isinstance(prefs, dict) else None)
    return jsonify(
        {
            "success": True,
            "message": "Profile updated successfully",
            "user": {
                "id": user["id"],
                "name": user["name"],
                "email": user["email"],
                "preferences": loads(user["preferences_json"], {}),
            },
        }
    )


@bp.delete("/account")
@login_required
def delete_account():
    users.soft_delete(g.user["id"])
    resp = jsonify({"success": True, "message": "Account deleted successfully"})
    return clear_auth_cookie(resp)


@bp.get("/stats")
@superadmin_required
def auth_stats():
    return jsonify({"success": True, "stats": users.auth_stats()})
