from __future__ import annotations

import json
import logging
import sqlite3
import uuid
from datetime import date, datetime, timedelta, timezone
from pathlib import Path
from typing import Any

from flask import Flask, current_app, g

from .errors import bad_request

log = logging.getLogger(__name__)

SCHEMA = """
CREATE TABLE IF NOT EXISTS users (
  id TEXT PRIMARY KEY,
  google_id TEXT UNIQUE,
  email TEXT NOT NULL UNIQUE,
  name TEXT NOT NULL DEFAULT '',
  profile_picture TEXT,
  user_type TEXT NOT NULL DEFAULT 'family_member',
  is_active INTEGER NOT NULL DEFAULT 1,
  is_email_verified INTEGER NOT NULL DEFAULT 0,
  family_id TEXT REFERENCES families(id),
  family_role TEXT NOT NULL DEFAULT 'member',
  family_status TEXT NOT NULL DEFAULT 'pending',
  family_joined_at TEXT,
  invited_by TEXT,
  subscription_status TEXT NOT NULL DEFAULT 'trial',
  trial_ends_at TEXT,
  subscription_ends_at TEXT,
  last_payment_date TEXT,
  next_payment_date TEXT,
  last_login_at TEXT,
  login_count INTEGER NOT NULL DEFAULT 0,
  preferences_json TEXT NOT NULL DEFAULT '{}',
  created_at TEXT NOT NULL,
  updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS families (
  id TEXT PRIMARY KEY,
  slug TEXT NOT NULL UNIQUE,
  family_name TEXT NOT NULL,
  description TEXT NOT NULL DEFAULT '',
  is_private INTEGER NOT NULL DEFAULT 1,
  allow_public_view INTEGER NOT NULL DEFAULT 0,
  require_approval INTEGER NOT NULL DEFAULT 1,
  created_by TEXT NOT NULL REFERENCES users(id),
  admin1_user_id TEXT NOT NULL REFERENCES users(id),
  admin1_assigned_at TEXT,
  admin2_user_id TEXT REFERENCES users(id),
  admin2_assigned_at TEXT,
  admin2_assigned_by TEXT,
  admin3_user_id TEXT REFERENCES users(id),
  admin3_assigned_at TEXT,
  admin3_assigned_by TEXT,
  root_member_id TEXT,
  tree_style_json TEXT NOT NULL DEFAULT '{}',
  custom_fields_json TEXT NOT NULL DEFAULT '[]',
  stats_json TEXT NOT NULL DEFAULT '{}',
  subscription_status TEXT NOT NULL DEFAULT 'trial',
  trial_ends_at TEXT,
  subscription_ends_at TEXT,
  auto_renew INTEGER NOT NULL DEFAULT 1,
  last_member_added TEXT,
  last_photo_uploaded TEXT,
  last_tree_modified TEXT,
  is_active INTEGER NOT NULL DEFAULT 1,
  is_deleted INTEGER NOT NULL DEFAULT 0,
  deleted_at TEXT,
  deleted_by TEXT,
  created_at TEXT NOT NULL,
  updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS family_viewers (
  family_id TEXT NOT NULL REFERENCES families(id),
  user_id TEXT NOT NULL REFERENCES users(id),
  added_by TEXT,
  added_at TEXT NOT NULL,
  PRIMARY KEY (family_id, user_id)
);

CREATE TABLE IF NOT EXISTS family_members (
  id TEXT PRIMARY KEY,
  family_id TEXT NOT NULL REFERENCES families(id),
  first_name TEXT NOT NULL,
  middle_name TEXT NOT NULL DEFAULT '',
  last_name TEXT NOT NULL DEFAULT '',
  nickname TEXT NOT NULL DEFAULT '',
  gender TEXT NOT NULL DEFAULT 'other',
  date_of_birth TEXT,
  date_of_death TEXT,
  is_alive INTEGER NOT NULL DEFAULT 1,
  place_of_birth_json TEXT NOT NULL DEFAULT '{}',
  current_address_json TEXT NOT NULL DEFAULT '{}',
  contact_json TEXT NOT NULL DEFAULT '{}',
  profession_json TEXT NOT NULL DEFAULT '{}',
  custom_fields_json TEXT NOT NULL DEFAULT '[]',
  tags_json TEXT NOT NULL DEFAULT '[]',
  generation INTEGER NOT NULL DEFAULT 0,
  position_x REAL,
  position_y REAL,
  is_root_member INTEGER NOT NULL DEFAULT 0,
  notes TEXT NOT NULL DEFAULT '',
  added_by TEXT NOT NULL REFERENCES users(id),
  last_modified_by TEXT,
  is_active INTEGER NOT NULL DEFAULT 1,
  is_deleted INTEGER NOT NULL DEFAULT 0,
  deleted_at TEXT,
  deleted_by TEXT,
  created_at TEXT NOT NULL,
  updated_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_members_family ON family_members(family_id, is_deleted);

CREATE TABLE IF NOT EXISTS parent_links (
  family_id TEXT NOT NULL REFERENCES families(id),
  child_id TEXT NOT NULL REFERENCES family_members(id),
  parent_id TEXT NOT NULL REFERENCES family_members(id),
  role TEXT NOT NULL CHECK (role IN ('father', 'mother')),
  created_at TEXT NOT NULL,
  PRIMARY KEY (child_id, role),
  UNIQUE (child_id, parent_id)
);
CREATE INDEX IF NOT EXISTS idx_parent_links_parent ON parent_links(parent_id);

CREATE TABLE IF NOT EXISTS spouse_links (
  family_id TEXT NOT NULL REFERENCES families(id),
  member_a TEXT NOT NULL REFERENCES family_members(id),
  member_b TEXT NOT NULL REFERENCES family_members(id),
  is_current INTEGER NOT NULL DEFAULT 1,
  marriage_date TEXT,
  divorce_date TEXT,
  marriage_place_json TEXT NOT NULL DEFAULT '{}',
  created_at TEXT NOT NULL,
  PRIMARY KEY (member_a, member_b),
  CHECK (member_a < member_b)
);

CREATE TABLE IF NOT EXISTS member_timeline (
  id TEXT PRIMARY KEY,
  member_id TEXT NOT NULL REFERENCES family_members(id),
  title TEXT NOT NULL,
  description TEXT NOT NULL DEFAULT '',
  date TEXT NOT NULL,
  category TEXT NOT NULL DEFAULT 'other',
  added_by TEXT,
  added_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS photos (
  id TEXT PRIMARY KEY,
  family_id TEXT NOT NULL REFERENCES families(id),
  member_id TEXT REFERENCES family_members(id),
  title TEXT NOT NULL DEFAULT 'Family Photo',
  description TEXT NOT NULL DEFAULT '',
  caption TEXT NOT NULL DEFAULT '',
  url TEXT NOT NULL,
  filename TEXT,
  mime_type TEXT,
  size INTEGER,
  category TEXT NOT NULL DEFAULT 'family',
  tags_json TEXT NOT NULL DEFAULT '[]',
  is_private INTEGER NOT NULL DEFAULT 0,
  is_primary INTEGER NOT NULL DEFAULT 0,
  uploaded_by TEXT NOT NULL REFERENCES users(id),
  uploaded_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_photos_family ON photos(family_id, uploaded_at);

CREATE TABLE IF NOT EXISTS events (
  id TEXT PRIMARY KEY,
  family_id TEXT NOT NULL REFERENCES families(id),
  title TEXT NOT NULL,
  description TEXT NOT NULL DEFAULT '',
  event_type TEXT NOT NULL,
  date TEXT NOT NULL,
  end_date TEXT,
  location TEXT NOT NULL DEFAULT '',
  participants_json TEXT NOT NULL DEFAULT '[]',
  participant_names_json TEXT NOT NULL DEFAULT '[]',
  is_recurring INTEGER NOT NULL DEFAULT 0,
  recurrence_pattern TEXT,
  significance TEXT NOT NULL DEFAULT 'medium',
  is_private INTEGER NOT NULL DEFAULT 0,
  tags_json TEXT NOT NULL DEFAULT '[]',
  created_by TEXT NOT NULL REFERENCES users(id),
  updated_by TEXT,
  created_at TEXT NOT NULL,
  updated_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_events_family ON events(family_id, date);

CREATE TABLE IF NOT EXISTS payments (
  id TEXT PRIMARY KEY,
  transaction_id TEXT NOT NULL UNIQUE,
  provider_order_id TEXT,
  provider_payment_id TEXT,
  provider_signature TEXT,
  family_id TEXT NOT NULL REFERENCES families(id),
  user_id TEXT NOT NULL REFERENCES users(id),
  amount INTEGER NOT NULL,
  currency TEXT NOT NULL DEFAULT 'INR',
  description TEXT NOT NULL,
  subscription_type TEXT NOT NULL DEFAULT 'annual',
  period_start TEXT,
  period_end TEXT,
  status TEXT NOT NULL DEFAULT 'created',
  payment_method TEXT,
  paid_at TEXT,
  failed_at TEXT,
  failure_reason TEXT,
  invoice_number TEXT UNIQUE,
  invoice_date TEXT,
  tax_amount INTEGER NOT NULL DEFAULT 0,
  total_amount INTEGER,
  webhook_event_id TEXT,
  notes_json TEXT NOT NULL DEFAULT '{}',
  created_at TEXT NOT NULL,
  updated_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_payments_family ON payments(family_id, status);
CREATE INDEX IF NOT EXISTS idx_payments_order ON payments(provider_order_id);
"""

# Columns added after the first release; patched onto older databases.
MIGRATIONS = {
    "users": {
        "invited_by": "TEXT",
        "preferences_json": "TEXT NOT NULL DEFAULT '{}'",
    },
    "family_members": {
        "tags_json": "TEXT NOT NULL DEFAULT '[]'",
        "position_x": "REAL",
        "position_y": "REAL",
    },
    "payments": {
        "webhook_event_id": "TEXT",
    },
}


# -----------------------------
# SMALL HELPERS
# -----------------------------
def new_id() -> str:
    return uuid.uuid4().hex


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def now_iso() -> str:
    return utcnow().isoformat()


def iso_in(days: int) -> str:
    return (utcnow() + timedelta(days=days)).isoformat()


def parse_dt(raw: Any) -> datetime | None:
    """Parse a stored timestamp or a client date string; naive values are UTC."""
    if not raw:
        return None
    if isinstance(raw, datetime):
        dt = raw
    elif isinstance(raw, date):
        dt = datetime(raw.year, raw.month, raw.day)
    else:
        text = str(raw).strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            dt = datetime.fromisoformat(text)
        except ValueError:
            return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def date_field(raw: Any, label: str) -> str | None:
    """Normalise a client date to ISO; blank is None, junk is a 400."""
    if raw in (None, ""):
        return None
    dt = parse_dt(raw)
    if dt is None:
        raise bad_request(f"Invalid {label}")
    return dt.isoformat()


def is_future(raw: Any) -> bool:
    dt = parse_dt(raw)
    return dt is not None and dt > utcnow()


def require_row(row: sqlite3.Row | None, what: str) -> sqlite3.Row:
    if row is None:
        raise RuntimeError(f"Expected {what} row is missing")
    return row


def loads(raw: Any, default: Any) -> Any:
    if raw is None or raw == "":
        return default
    try:
        return json.loads(raw)
    except (TypeError, ValueError):
        return default


def dumps(value: Any) -> str:
    return json.dumps(value, ensure_ascii=False)


# -----------------------------
# CONNECTION
# -----------------------------
def db_path() -> Path:
    return Path(current_app.config["DATA_DIR"]) / "apnaparivar.db"


def db_connect(path: Path) -> sqlite3.Connection:
    con = sqlite3.connect(path)
    con.row_factory = sqlite3.Row
    con.execute("PRAGMA foreign_keys = ON")
    return con


def get_db() -> sqlite3.Connection:
    if "db" not in g:
        g.db = db_connect(db_path())
    return g.db


def close_db(_exc: BaseException | None = None) -> None:
    con = g.pop("db", None)
    if con is not None:
        con.close()


def db_init() -> None:
    path = db_path()
    path.parent.mkdir(parents=True, exist_ok=True)
    con = db_connect(path)
    try:
        with con:
            con.executescript(SCHEMA)
            for table, columns in MIGRATIONS.items():
                existing = {r["name"] for r in con.execute(f"PRAGMA table_info({table})").fetchall()}
                for column, ddl in columns.items():
                    if column not in existing:
                        log.info("Adding column %s.%s", table, column)
                        con.execute(f"ALTER TABLE {table} ADD COLUMN {column} {ddl}")
    finally:
        con.close()


def check_health() -> dict:
    try:
        get_db().execute("SELECT 1").fetchone()
    except sqlite3.Error as e:
        return {"status": "unhealthy", "connected": False, "error": str(e)}
    return {"status": "healthy", "connected": True, "name": db_path().name}


def init_app(app: Flask) -> None:
    app.teardown_appcontext(close_db)
    with app.app_context():
        db_init()
