from __future__ import annotations

import sqlite3
from datetime import timezone

import pytest

from apnaparivar import create_app
from apnaparivar.db import date_field, dumps, get_db, loads, parse_dt, require_row
from apnaparivar.errors import ApiError


def test_parse_dt_reads_naive_values_as_utc():
    assert parse_dt("1990-02-03").tzinfo == timezone.utc
    assert parse_dt("2024-01-01T10:00:00Z").hour == 10
    assert parse_dt("not a date") is None
    assert parse_dt("") is None


def test_date_field():
    assert date_field(None, "date") is None
    assert date_field("", "date") is None
    assert date_field("1990-02-03", "date of birth") == "1990-02-03T00:00:00+00:00"
    with pytest.raises(ApiError) as exc:
        date_field("31/02/1990", "date of birth")
    assert exc.value.status == 400
    assert exc.value.message == "Invalid date of birth"


def test_require_row():
    assert require_row({"id": "x"}, "user") == {"id": "x"}
    with pytest.raises(RuntimeError):
        require_row(None, "user")


def test_json_columns():
    assert loads(None, []) == []
    assert loads("{broken", {"a": 1}) == {"a": 1}
    assert loads(dumps({"name": "परिवार"}), {}) == {"name": "परिवार"}


def test_old_database_gets_new_columns(tmp_path):
    con = sqlite3.connect(tmp_path / "apnaparivar.db")
    con.execute(
        """
        CREATE TABLE users (
          id TEXT PRIMARY KEY, google_id TEXT, email TEXT NOT NULL UNIQUE, name TEXT NOT NULL DEFAULT '',
          profile_picture TEXT, user_type TEXT NOT NULL DEFAULT 'family_member',
          is_active INTEGER NOT NULL DEFAULT 1, is_email_verified INTEGER NOT NULL DEFAULT 0,
          family_id TEXT, family_role TEXT NOT NULL DEFAULT 'member',
          family_status TEXT NOT NULL DEFAULT 'pending', family_joined_at TEXT,
          subscription_status TEXT NOT NULL DEFAULT 'trial', trial_ends_at TEXT, subscription_ends_at TEXT,
          last_payment_date TEXT, next_payment_date TEXT, last_login_at TEXT,
          login_count INTEGER NOT NULL DEFAULT 0, created_at TEXT NOT NULL, updated_at TEXT NOT NULL
        )
        """
    )
    con.commit()
    con.close()

    app = create_app({"TESTING": True, "DATA_DIR": tmp_path, "ENV_NAME": "test"})
    with app.app_context():
        columns = {r["name"] for r in get_db().execute("PRAGMA table_info(users)")}
    assert {"invited_by", "preferences_json"} <= columns
