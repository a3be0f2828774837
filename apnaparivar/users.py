from __future__ import annotations

import logging
import sqlite3
from datetime import timedelta
from typing import Any, Dict, Optional

from .db import dumps, get_db, iso_in, loads, new_id, now_iso, parse_dt, require_row, utcnow

log = logging.getLogger(__name__)

USER_TYPES = ("superadmin", "family_creator", "family_member")
TRIAL_DAYS = 365

DEFAULT_PREFERENCES: Dict[str, Any] = {
    "notifications": {"email": True, "familyUpdates": True, "paymentReminders": True},
    "privacy": {"profileVisibility": "family_only"},
}


def _merge(base: dict, extra: dict) -> dict:
    out = dict(base)
    for key, value in extra.items():
        if isinstance(value, dict) and isinstance(out.get(key), dict):
            out[key] = _merge(out[key], value)
        else:
            out[key] = value
    return out


# -----------------------------
# LOOKUPS
# -----------------------------
def get_user(user_id: str) -> Optional[sqlite3.Row]:
    if not user_id:
        return None
    return get_db().execute("SELECT * FROM users WHERE id = ?", (str(user_id),)).fetchone()


def find_by_email(email: str, active_only: bool = True) -> Optional[sqlite3.Row]:
    email = (email or "").strip().lower()
    if not email:
        return None
    sql = "SELECT * FROM users WHERE email = ?"
    if active_only:
        sql += " AND is_active = 1"
    return get_db().execute(sql, (email,)).fetchone()


def find_by_google_id(google_id: str) -> Optional[sqlite3.Row]:
    return get_db().execute(
        "SELECT * FROM users WHERE google_id = ? AND is_active = 1", (google_id,)
    ).fetchone()


def count_users() -> int:
    return int(get_db().execute("SELECT COUNT(*) FROM users").fetchone()[0])


# -----------------------------
# WRITES
# -----------------------------
def create_user(
    email: str,
    name: str,
    google_id: Optional[str] = None,
    profile_picture: Optional[str] = None,
    user_type: str = "family_member",
    is_email_verified: bool = False,
) -> sqlite3.Row:
    email = (email or "").strip().lower()
    if not email or "@" not in email:
        raise ValueError("A valid email is required.")
    if user_type not in USER_TYPES:
        raise ValueError(f"Unknown user type: {user_type}")

    uid = new_id()
    now = now_iso()
    con = get_db()
    with con:
        con.execute(
            """
            INSERT INTO users (id, google_id, email, name, profile_picture, user_type,
                               is_email_verified, trial_ends_at, last_login_at, login_count,
                               preferences_json, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, 1, ?, ?, ?)
            """,
            (
                uid,
                google_id,
                email,
                (name or "").strip() or email.split("@", 1)[0],
                profile_picture,
                user_type,
                1 if is_email_verified else 0,
                iso_in(TRIAL_DAYS),
                now,
                dumps(DEFAULT_PREFERENCES),
                now,
                now,
            ),
        )
    log.info("Created user %s (%s)", email, user_type)
    user = require_row(get_user(uid), "user")
    return user


def record_login(user_id: str, google_id: Optional[str] = None, picture: Optional[str] = None,
                 name: Optional[str] = None) -> None:
    con = get_db()
    row = get_user(user_id)
    if row is None:
        return
    with con:
        con.execute(
            """
            UPDATE users
               SET last_login_at = ?, login_count = login_count + 1,
                   google_id = COALESCE(google_id, ?),
                   profile_picture = COALESCE(?, profile_picture),
                   name = CASE WHEN name = '' AND ? IS NOT NULL THEN ? ELSE name END,
                   updated_at = ?
             WHERE id = ?
            """,
            (now_iso(), google_id, picture, name, name, now_iso(), user_id),
        )


def update_profile(user_id: str, name: Optional[str], preferences: Optional[dict]) -> sqlite3.Row:
    row = require_row(get_user(user_id), "user")
    prefs = loads(row["preferences_json"], {})
    if isinstance(preferences, dict):
        prefs = _merge(prefs, preferences)
    con = get_db()
    with con:
        con.execute(
            "UPDATE users SET name = ?, preferences_json = ?, updated_at = ? WHERE id = ?",
            ((name or "").strip() or row["name"], dumps(prefs), now_iso(), user_id),
        )
    updated = require_row(get_user(user_id), "user")
    return updated


def soft_delete(user_id: str) -> None:
    row = get_user(user_id)
    if row is None:
        return
    stamp = int(utcnow().timestamp() * 1000)
    con = get_db()
    with con:
        con.execute(
            "UPDATE users SET is_active = 0, email = ?, updated_at = ? WHERE id = ?",
            (f"deleted_{stamp}_{row['email']}", now_iso(), user_id),
        )
    log.info("Soft-deleted user %s", row["email"])


def set_primary_family(
    con: sqlite3.Connection,
    user_id: str,
    family_id: Optional[str],
    role: str = "member",
    status: str = "active",
    invited_by: Optional[str] = None,
) -> None:
    """Runs inside the caller's transaction."""
    con.execute(
        """
        UPDATE users
           SET family_id = ?, family_role = ?, family_status = ?, family_joined_at = ?,
               invited_by = ?, updated_at = ?
         WHERE id = ?
        """,
        (family_id, role, status, now_iso() if family_id else None, invited_by, now_iso(), user_id),
    )


def set_user_type(con: sqlite3.Connection, user_id: str, user_type: str) -> None:
    con.execute("UPDATE users SET user_type = ?, updated_at = ? WHERE id = ?", (user_type, now_iso(), user_id))


def set_payment_info(con: sqlite3.Connection, user_id: str, ends_at: str, paid_at: str) -> None:
    con.execute(
        """
        UPDATE users
           SET subscription_status = 'active', subscription_ends_at = ?, last_payment_date = ?,
               next_payment_date = ?, updated_at = ?
         WHERE id = ?
        """,
        (ends_at, paid_at, ends_at, now_iso(), user_id),
    )


# -----------------------------
# DERIVED FIELDS
# -----------------------------
def has_active_subscription(row: sqlite3.Row) -> bool:
    now = utcnow()
    status = row["subscription_status"]
    if status == "trial":
        ends = parse_dt(row["trial_ends_at"])
        return ends is not None and ends > now
    if status == "active":
        ends = parse_dt(row["subscription_ends_at"])
        return ends is not None and ends > now
    return False


def auth_stats() -> dict:
    con = get_db()
    since = (utcnow() - timedelta(hours=24)).isoformat()
    by_type = con.execute(
        """
        SELECT user_type, COUNT(*) AS count, SUM(CASE WHEN is_active = 1 THEN 1 ELSE 0 END) AS active
          FROM users GROUP BY user_type
        """
    ).fetchall()
    return {
        "totalUsers": count_users(),
        "activeUsers": int(con.execute("SELECT COUNT(*) FROM users WHERE is_active = 1").fetchone()[0]),
        "recentLogins": int(
            con.execute("SELECT COUNT(*) FROM users WHERE last_login_at >= ?", (since,)).fetchone()[0]
        ),
        "userTypes": [
            {"_id": r["user_type"], "count": int(r["count"]), "activeCount": int(r["active"] or 0)}
            for r in by_type
        ],
    }


# -----------------------------
# SERIALIZATION
# -----------------------------
def primary_family_dict(row: sqlite3.Row, family: Optional[dict] = None) -> Optional[dict]:
    if not row["family_id"]:
        return None
    return {
        "familyId": family if family is not None else row["family_id"],
        "role": row["family_role"],
        "status": row["family_status"],
        "joinedAt": row["family_joined_at"],
        "invitedBy": row["invited_by"],
    }


def user_summary(row: Optional[sqlite3.Row]) -> Optional[dict]:
    if row is None:
        return None
    return {"_id": row["id"], "id": row["id"], "name": row["name"], "email": row["email"]}


def user_to_dict(row: sqlite3.Row, family: Optional[dict] = None) -> Dict[str, Any]:
    return {
        "id": row["id"],
        "_id": row["id"],
        "email": row["email"],
        "name": row["name"],
        "profilePicture": row["profile_picture"],
        "userType": row["user_type"],
        "isActive": bool(row["is_active"]),
        "primaryFamily": primary_family_dict(row, family),
        "hasFamily": bool(row["family_id"]),
        "isFamilyCreator": bool(row["family_id"]) and row["family_role"] == "creator",
        "preferences": loads(row["preferences_json"], {}),
        "hasActiveSubscription": has_active_subscription(row),
        "paymentInfo": {
            "subscriptionStatus": row["subscription_status"],
            "trialEndsAt": row["trial_ends_at"],
            "subscriptionEndsAt": row["subscription_ends_at"],
        },
        "lastLoginAt": row["last_login_at"],
        "createdAt": row["created_at"],
    }
