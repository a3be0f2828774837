from __future__ import annotations

import logging
from datetime import timedelta
from functools import wraps
from typing import Any, Dict, Optional

import jwt
from flask import current_app, g, request

from . import users
from .db import utcnow
from .errors import ApiError

log = logging.getLogger(__name__)

JWT_ALG = "HS256"
COOKIE_NAME = "auth_token"


# -----------------------------
# TOKENS
# -----------------------------
def generate_token(user) -> str:
    now = utcnow()
    payload = {
        "id": user["id"],
        "email": user["email"],
        "userType": user["user_type"],
        "iat": now,
        "exp": now + timedelta(days=current_app.config["JWT_TTL_DAYS"]),
    }
    return jwt.encode(payload, current_app.config["JWT_SECRET"], algorithm=JWT_ALG)


def verify_token(token: str) -> Dict[str, Any]:
    """Decode a token; raises ApiError(401) when it is bad or expired."""
    try:
        return jwt.decode(token, current_app.config["JWT_SECRET"], algorithms=[JWT_ALG])
    except jwt.ExpiredSignatureError:
        raise ApiError(401, "Token expired")
    except jwt.InvalidTokenError:
        raise ApiError(401, "Invalid token")


def token_from_request() -> Optional[str]:
    header = request.headers.get("Authorization", "")
    if header.startswith("Bearer "):
        token = header[7:].strip()
        if token:
            return token
    return request.cookies.get(COOKIE_NAME) or None


def _load_user(payload: Dict[str, Any]):
    user = users.get_user(payload.get("id", ""))
    if user is None or not user["is_active"]:
        raise ApiError(401, "User not found or inactive")
    return user


# -----------------------------
# DECORATORS
# -----------------------------
def login_required(view):
    @wraps(view)
    def wrapped(*args, **kwargs):
        token = token_from_request()
        if not token:
            raise ApiError(401, "Access token required")
        g.user = _load_user(verify_token(token))
        return view(*args, **kwargs)

    return wrapped


def superadmin_required(view):
    @wraps(view)
    @login_required
    def wrapped(*args, **kwargs):
        if g.user["user_type"] != "superadmin":
            raise ApiError(403, "Superadmin access required")
        return view(*args, **kwargs)

    return wrapped


def optional_user():
    """The signed-in user, or None; never raises for a bad token."""
    token = token_from_request()
    if not token:
        return None
    try:
        return _load_user(verify_token(token))
    except ApiError:
        return None


# -----------------------------
# COOKIES
# -----------------------------
def _cookie_kwargs() -> Dict[str, Any]:
    secure = bool(current_app.config.get("COOKIE_SECURE"))
    return {
        "httponly": True,
        "secure": secure,
        "samesite": "None" if secure else "Lax",
        "path": "/",
    }


def set_auth_cookie(resp, token: str):
    resp.set_cookie(
        COOKIE_NAME,
        token,
        max_age=int(current_app.config["JWT_TTL_DAYS"]) * 24 * 60 * 60,
        **_cookie_kwargs(),
    )
    return resp


def clear_auth_cookie(resp):
    resp.set_cookie(COOKIE_NAME, "", expires=0, **_cookie_kwargs())
    return resp
