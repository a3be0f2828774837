"""
Pytest configuration and fixtures.
"""
from __future__ import annotations

from typing import Any, Callable, Dict

import pytest

from apnaparivar import auth, create_app, users


@pytest.fixture
def app(tmp_path):
    """App on a throwaway DATA_DIR with payments off."""
    app = create_app(
        {
            "TESTING": True,
            "DATA_DIR": tmp_path,
            "SECRET_KEY": "test-session-secret",
            "JWT_SECRET": "test-jwt-secret",
            "JWT_TTL_DAYS": 7,
            "FRONTEND_URL": "http://app.test",
            "BACKEND_URL": "http://api.test",
            "GOOGLE_CLIENT_ID": "google-client",
            "GOOGLE_CLIENT_SECRET": "google-secret",
            "GOOGLE_CALLBACK_URL": "http://api.test/api/auth/google/callback",
            "ALLOWED_EMAIL_DOMAIN": "gmail.com",
            "PAYMENTS_ENABLED": False,
            "RAZORPAY_KEY_ID": "",
            "RAZORPAY_KEY_SECRET": "",
            "RAZORPAY_WEBHOOK_SECRET": "",
            "ENFORCE_SUBSCRIPTION": False,
            "COOKIE_SECURE": False,
            "ENV_NAME": "test",
        }
    )
    yield app


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def make_user(app) -> Callable[..., Dict[str, Any]]:
    def _make(email: str, name: str = "", user_type: str = "family_member") -> Dict[str, Any]:
        with app.app_context():
            return dict(users.create_user(email, name or email.split("@")[0], user_type=user_type))

    return _make


@pytest.fixture
def headers_for(app) -> Callable[[Dict[str, Any]], Dict[str, str]]:
    def _headers(user: Dict[str, Any]) -> Dict[str, str]:
        with app.app_context():
            row = users.get_user(user["id"])
            return {"Authorization": f"Bearer {auth.generate_token(row)}"}

    return _headers


@pytest.fixture
def owner(make_user, headers_for):
    user = make_user("owner@gmail.com", "Owner")
    return user, headers_for(user)


@pytest.fixture
def family(client, owner):
    """A family created through the API by `owner`."""
    _, headers = owner
    resp = client.post("/api/families", json={"familyName": "Sharma Family", "description": "Delhi"}, headers=headers)
    assert resp.status_code == 201
    return resp.get_json()["family"]


@pytest.fixture
def add_member(client, owner, family):
    _, headers = owner

    def _add(first: str, last: str = "Sharma", **fields) -> Dict[str, Any]:
        resp = client.post("/api/members", json={"firstName": first, "lastName": last, **fields}, headers=headers)
        assert resp.status_code == 201, resp.get_json()
        return resp.get_json()["member"]

    return _add


@pytest.fixture
def connect(client, owner):
    _, headers = owner

    def _connect(source: str, target: str, relation: str):
        return client.post(
            "/api/members/connect", json={"sourceId": source, "targetId": target, "relation": relation}, headers=headers
        )

    return _connect
