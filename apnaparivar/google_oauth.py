from __future__ import annotations

import logging
from typing import Any, Dict
from urllib.parse import urlencode

import requests
from flask import current_app

from . import users

log = logging.getLogger(__name__)

AUTH_URL = "https://accounts.google.com/o/oauth2/v2/auth"
TOKEN_URL = "https://oauth2.googleapis.com/token"
USERINFO_URL = "https://openidconnect.googleapis.com/v1/userinfo"
SCOPES = "openid email profile"
TIMEOUT = 10


class OAuthError(Exception):
    """Google sign-in failed; the message is safe to show the user."""


def is_configured() -> bool:
    cfg = current_app.config
    return bool(cfg.get("GOOGLE_CLIENT_ID") and cfg.get("GOOGLE_CLIENT_SECRET"))


def consent_url(state: str) -> str:
    cfg = current_app.config
    params = {
        "client_id": cfg["GOOGLE_CLIENT_ID"],
        "redirect_uri": cfg["GOOGLE_CALLBACK_URL"],
        "response_type": "code",
        "scope": SCOPES,
        "state": state,
        "access_type": "online",
        "prompt": "select_account",
    }
    return f"{AUTH_URL}?{urlencode(params)}"


def exchange_code(code: str) -> Dict[str, Any]:
    cfg = current_app.config
    try:
        resp = requests.post(
            TOKEN_URL,
            data={
                "code": code,
                "client_id": cfg["GOOGLE_CLIENT_ID"],
                "client_secret": cfg["GOOGLE_CLIENT_SECRET"],
                "redirect_uri": cfg["GOOGLE_CALLBACK_URL"],
                "grant_type": "authorization_code",
            },
            timeout=TIMEOUT,
        )
    except requests.RequestException as e:
        log.warning("Google token exchange failed: %s", e)
        raise OAuthError("Could not reach Google") from e
    if resp.status_code != 200:
        log.warning("Google token exchange returned %s: %s", resp.status_code, resp.text[:200])
        raise OAuthError("Google sign-in was rejected")
    return resp.json()


def fetch_profile(access_token: str) -> Dict[str, Any]:
    try:
        resp = requests.get(
            USERINFO_URL, headers={"Authorization": f"Bearer {access_token}"}, timeout=TIMEOUT
        )
    except requests.RequestException as e:
        log.warning("Google userinfo request failed: %s", e)
        raise OAuthError("Could not reach Google") from e
    if resp.status_code != 200:
        raise OAuthError("Could not read the Google profile")
    return resp.json()


def email_allowed(email: str) -> bool:
    domain = current_app.config.get("ALLOWED_EMAIL_DOMAIN") or ""
    if not domain:
        return True
    return email.endswith("@" + domain)


def upsert_google_user(profile: Dict[str, Any]):
    """
    Find or create the user behind a Google userinfo document.

    The very first account becomes the superadmin. Every sign-in bumps the
    login counters and refreshes the picture.
    """
    google_id = str(profile.get("sub") or profile.get("id") or "")
    email = str(profile.get("email") or "").strip().lower()
    name = str(profile.get("name") or "").strip()
    picture = profile.get("picture") or None

    if not google_id or not email:
        raise OAuthError("Google profile is missing an email")
    if not email_allowed(email):
        log.warning("Rejected sign-in from %s", email)
        raise OAuthError(f"Only {current_app.config['ALLOWED_EMAIL_DOMAIN']} accounts are allowed")

    user = users.find_by_google_id(google_id) or users.find_by_email(email)
    if user is not None:
        users.record_login(user["id"], google_id=google_id, picture=picture, name=name or None)
        log.info("User %s signed in", email)
        return users.get_user(user["id"])

    user_type = "superadmin" if users.count_users() == 0 else "family_member"
    user = users.create_user(
        email,
        name or "Unknown",
        google_id=google_id,
        profile_picture=picture,
        user_type=user_type,
        is_email_verified=True,
    )
    log.info("New %s account for %s", user_type, email)
    return user
