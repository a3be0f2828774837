from __future__ import annotations

import logging
import secrets
import sqlite3
import string
from typing import Any, Dict, Optional

from flask import current_app

from . import users
from .db import dumps, get_db, iso_in, loads, new_id, now_iso, parse_dt, require_row, utcnow
from .errors import ApiError, bad_request, forbidden, not_found

log = logging.getLogger(__name__)

ADMIN_SLOTS = ("admin1", "admin2", "admin3")
ASSIGNABLE_SLOTS = ("admin2", "admin3")
MAX_CUSTOM_FIELDS = 10
CUSTOM_FIELD_TYPES = ("text", "number", "date", "select", "multiselect", "textarea")
TREE_LAYOUTS = ("vertical", "horizontal", "radial")
TREE_THEMES = ("classic", "modern", "elegant")
SUBSCRIPTION_DAYS = 365

DEFAULT_TREE_STYLE = {"layout": "vertical", "theme": "modern", "showPhotos": True, "showDates": True}


# -----------------------------
# SLUGS
# -----------------------------
def slugify(s: str) -> str:
    s = (s or "").strip().lower()
    return "".join(c for c in s if c.isalnum())[:20]


def _suffix(n: int = 6) -> str:
    alphabet = string.ascii_lowercase + string.digits
    return "".join(secrets.choice(alphabet) for _ in range(n))


def unique_family_slug(con: sqlite3.Connection, name: str) -> str:
    base = slugify(name) or "family"
    while True:
        slug = f"{base}{_suffix()}"
        row = con.execute("SELECT 1 FROM families WHERE slug = ?", (slug,)).fetchone()
        if not row:
            return slug


# -----------------------------
# LOOKUPS
# -----------------------------
def get_family(family_id: str) -> Optional[sqlite3.Row]:
    if not family_id:
        return None
    return get_db().execute(
        "SELECT * FROM families WHERE id = ? AND is_deleted = 0", (str(family_id),)
    ).fetchone()


def get_family_by_slug(slug: str) -> Optional[sqlite3.Row]:
    return get_db().execute(
        "SELECT * FROM families WHERE slug = ? AND is_active = 1 AND is_deleted = 0",
        ((slug or "").strip().lower(),),
    ).fetchone()


def resolve_family(ref: Any) -> Optional[sqlite3.Row]:
    """Accept either a family id or its public slug."""
    ref = str(ref or "").strip()
    if not ref:
        return None
    return get_family(ref) or get_family_by_slug(ref)


def require_family(ref: Any) -> sqlite3.Row:
    family = resolve_family(ref)
    if family is None:
        raise not_found("Family not found")
    return family


def families_for_user(user: sqlite3.Row) -> list[sqlite3.Row]:
    uid = user["id"]
    return get_db().execute(
        """
        SELECT * FROM families
         WHERE is_deleted = 0
           AND (id = ? OR admin1_user_id = ? OR admin2_user_id = ? OR admin3_user_id = ?)
         ORDER BY created_at
        """,
        (user["family_id"], uid, uid, uid),
    ).fetchall()


def member_count(family_id: str) -> int:
    return int(
        get_db()
        .execute(
            "SELECT COUNT(*) FROM family_members WHERE family_id = ? AND is_deleted = 0", (family_id,)
        )
        .fetchone()[0]
    )


# -----------------------------
# PERMISSIONS
# -----------------------------
def admin_level(family: sqlite3.Row, user_id: str) -> Optional[str]:
    uid = str(user_id or "")
    if not uid:
        return None
    for slot in ADMIN_SLOTS:
        if family[f"{slot}_user_id"] == uid:
            return slot
    return None


def is_admin(family: sqlite3.Row, user_id: str) -> bool:
    return admin_level(family, user_id) is not None


def is_viewer(family: sqlite3.Row, user_id: str) -> bool:
    row = get_db().execute(
        "SELECT 1 FROM family_viewers WHERE family_id = ? AND user_id = ?", (family["id"], user_id)
    ).fetchone()
    return row is not None


def in_primary_family(user: sqlite3.Row, family: sqlite3.Row) -> bool:
    return user["family_id"] == family["id"]


def can_access(family: sqlite3.Row, user: sqlite3.Row) -> bool:
    if user["user_type"] == "superadmin" or is_admin(family, user["id"]):
        return True
    if in_primary_family(user, family) and user["family_status"] == "active":
        return True
    return is_viewer(family, user["id"])


def require_access(family: sqlite3.Row, user: sqlite3.Row) -> None:
    if not can_access(family, user):
        raise forbidden("Family access required")


def require_admin(family: sqlite3.Row, user: sqlite3.Row, message: str = "Family admin access required") -> None:
    if not is_admin(family, user["id"]):
        raise forbidden(message)


def user_role(family: sqlite3.Row, user: sqlite3.Row) -> Optional[str]:
    level = admin_level(family, user["id"])
    if level:
        return level
    if in_primary_family(user, family):
        return user["family_role"]
    if is_viewer(family, user["id"]):
        return "viewer"
    return None


def has_active_subscription(family: sqlite3.Row) -> bool:
    now = utcnow()
    if family["subscription_status"] == "trial":
        ends = parse_dt(family["trial_ends_at"])
        return ends is not None and ends > now
    if family["subscription_status"] == "active":
        ends = parse_dt(family["subscription_ends_at"])
        return ends is not None and ends > now
    return False


def require_subscription(family: sqlite3.Row) -> None:
    if current_app.config.get("ENFORCE_SUBSCRIPTION") and not has_active_subscription(family):
        raise ApiError(402, "An active subscription is required", subscription=subscription_dict(family))


# -----------------------------
# WRITES
# -----------------------------
def create_family(user: sqlite3.Row, family_name: str, description: str = "") -> sqlite3.Row:
    family_name = (family_name or "").strip()
    description = (description or "").strip()
    if not family_name:
        raise bad_request("Family name is required")
    if len(family_name) > 100:
        raise bad_request("Family name must be at most 100 characters")
    if len(description) > 500:
        raise bad_request("Description must be at most 500 characters")
    if user["family_id"] and get_family(user["family_id"]) is not None:
        raise bad_request("You already belong to a family")

    fid = new_id()
    now = now_iso()
    con = get_db()
    with con:
        slug = unique_family_slug(con, family_name)
        con.execute(
            """
            INSERT INTO families (id, slug, family_name, description, created_by, admin1_user_id,
                                  admin1_assigned_at, tree_style_json, trial_ends_at,
                                  created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (fid, slug, family_name, description, user["id"], user["id"], now,
             dumps(DEFAULT_TREE_STYLE), iso_in(SUBSCRIPTION_DAYS), now, now),
        )
        users.set_primary_family(con, user["id"], fid, role="creator", status="active")
        if user["user_type"] != "superadmin":
            users.set_user_type(con, user["id"], "family_creator")

    log.info("Family %s (%s) created by %s", family_name, slug, user["email"])
    family = require_row(get_family(fid), "family")
    return family


def update_family(family: sqlite3.Row, payload: Dict[str, Any]) -> sqlite3.Row:
    name = payload.get("familyName")
    description = payload.get("description")
    if name is not None:
        name = str(name).strip()
        if not name or len(name) > 100:
            raise bad_request("Family name must be 1-100 characters")
    if description is not None:
        description = str(description).strip()
        if len(description) > 500:
            raise bad_request("Description must be at most 500 characters")

    style = loads(family["tree_style_json"], dict(DEFAULT_TREE_STYLE))
    incoming = payload.get("treeStyle")
    if isinstance(incoming, dict):
        if "layout" in incoming and incoming["layout"] not in TREE_LAYOUTS:
            raise bad_request(f"Tree layout must be one of: {', '.join(TREE_LAYOUTS)}")
        if "theme" in incoming and incoming["theme"] not in TREE_THEMES:
            raise bad_request(f"Tree theme must be one of: {', '.join(TREE_THEMES)}")
        for key in ("layout", "theme", "showPhotos", "showDates"):
            if key in incoming:
                style[key] = incoming[key]

    def flag(key: str, column: str) -> int:
        if key in payload:
            return 1 if payload.get(key) else 0
        return int(family[column])

    con = get_db()
    with con:
        con.execute(
            """
            UPDATE families
               SET family_name = ?, description = ?, is_private = ?, allow_public_view = ?,
                   require_approval = ?, tree_style_json = ?, updated_at = ?
             WHERE id = ?
            """,
            (
                name if name is not None else family["family_name"],
                description if description is not None else family["description"],
                flag("isPrivate", "is_private"),
                flag("allowPublicView", "allow_public_view"),
                flag("requireApprovalForJoining", "require_approval"),
                dumps(style),
                now_iso(),
                family["id"],
            ),
        )
    updated = require_row(get_family(family["id"]), "family")
    return updated


def soft_delete_family(family: sqlite3.Row, user: sqlite3.Row) -> None:
    if admin_level(family, user["id"]) != "admin1":
        raise forbidden("Only the family creator can delete the family")
    con = get_db()
    with con:
        con.execute(
            """
            UPDATE families SET is_active = 0, is_deleted = 1, deleted_at = ?, deleted_by = ?, updated_at = ?
             WHERE id = ?
            """,
            (now_iso(), user["id"], now_iso(), family["id"]),
        )
        con.execute(
            "UPDATE users SET family_id = NULL, family_status = 'pending', updated_at = ? WHERE family_id = ?",
            (now_iso(), family["id"]),
        )
    log.info("Family %s deleted by %s", family["slug"], user["email"])


def join_family(family: sqlite3.Row, user: sqlite3.Row) -> str:
    if user["family_id"]:
        if user["family_id"] == family["id"]:
            raise bad_request("You are already a member of this family")
        raise bad_request("You already belong to a family")
    status = "pending" if family["require_approval"] else "active"
    con = get_db()
    with con:
        users.set_primary_family(con, user["id"], family["id"], role="member", status=status)
    log.info("User %s joined family %s (%s)", user["email"], family["slug"], status)
    return status


def assign_admin(family: sqlite3.Row, actor: sqlite3.Row, email: str, slot: str) -> sqlite3.Row:
    if admin_level(family, actor["id"]) != "admin1":
        raise forbidden("Only admin1 can assign admins")
    if slot not in ASSIGNABLE_SLOTS:
        raise bad_request("Can only assign admin2 or admin3 roles")
    if family[f"{slot}_user_id"]:
        raise bad_request(f"{slot} role is already assigned")

    target = users.find_by_email(email)
    if target is None:
        raise not_found("No user with that email. Ask them to sign in first.")
    if is_admin(family, target["id"]):
        raise bad_request("User is already an admin of this family")
    if target["family_id"] and target["family_id"] != family["id"]:
        raise bad_request("User already belongs to another family")

    con = get_db()
    with con:
        con.execute(
            f"""
            UPDATE families SET {slot}_user_id = ?, {slot}_assigned_at = ?, {slot}_assigned_by = ?,
                                updated_at = ?
             WHERE id = ?
            """,
            (target["id"], now_iso(), actor["id"], now_iso(), family["id"]),
        )
        if target["family_id"] != family["id"]:
            users.set_primary_family(con, target["id"], family["id"], role="member", status="active",
                                     invited_by=actor["id"])
        elif target["family_status"] != "active":
            con.execute("UPDATE users SET family_status = 'active' WHERE id = ?", (target["id"],))
    log.info("%s assigned to %s in family %s", slot, target["email"], family["slug"])
    return target


def remove_admin(family: sqlite3.Row, actor: sqlite3.Row, slot: str) -> None:
    if slot == "admin1":
        raise bad_request("Cannot remove admin1 role")
    if slot not in ASSIGNABLE_SLOTS:
        raise bad_request("Invalid admin level")
    if admin_level(family, actor["id"]) != "admin1":
        raise forbidden("Only admin1 can remove admins")
    con = get_db()
    with con:
        con.execute(
            f"""
            UPDATE families SET {slot}_user_id = NULL, {slot}_assigned_at = NULL,
                                {slot}_assigned_by = NULL, updated_at = ?
             WHERE id = ?
            """,
            (now_iso(), family["id"]),
        )


def approve_viewer(family: sqlite3.Row, actor: sqlite3.Row, email: str) -> sqlite3.Row:
    target = users.find_by_email(email)
    if target is None:
        raise not_found("No user with that email")
    con = get_db()
    with con:
        con.execute(
            "INSERT OR IGNORE INTO family_viewers (family_id, user_id, added_by, added_at) VALUES (?, ?, ?, ?)",
            (family["id"], target["id"], actor["id"], now_iso()),
        )
        if target["family_id"] == family["id"] and target["family_status"] == "pending":
            con.execute(
                "UPDATE users SET family_status = 'active', invited_by = ?, updated_at = ? WHERE id = ?",
                (actor["id"], now_iso(), target["id"]),
            )
    return target


def remove_viewer(family: sqlite3.Row, user_id: str) -> None:
    con = get_db()
    with con:
        cur = con.execute(
            "DELETE FROM family_viewers WHERE family_id = ? AND user_id = ?", (family["id"], user_id)
        )
    if cur.rowcount == 0:
        raise not_found("Viewer not found")


def add_custom_field(family: sqlite3.Row, field: Dict[str, Any]) -> list[dict]:
    fields = loads(family["custom_fields_json"], [])
    name = str(field.get("fieldName") or "").strip()
    ftype = str(field.get("fieldType") or "").strip()
    if not name or len(name) > 50:
        raise bad_request("fieldName is required (max 50 characters)")
    if ftype not in CUSTOM_FIELD_TYPES:
        raise bad_request(f"fieldType must be one of: {', '.join(CUSTOM_FIELD_TYPES)}")
    if len(fields) >= MAX_CUSTOM_FIELDS:
        raise bad_request(f"Cannot add more than {MAX_CUSTOM_FIELDS} custom fields")
    if any(f.get("fieldName", "").lower() == name.lower() for f in fields):
        raise ApiError(409, "Field name already exists")

    options = field.get("options") or []
    fields.append(
        {
            "fieldName": name,
            "fieldType": ftype,
            "options": [str(o) for o in options] if isinstance(options, list) else [],
            "isRequired": bool(field.get("isRequired")),
            "displayOrder": len(fields),
            "isActive": True,
        }
    )
    con = get_db()
    with con:
        con.execute(
            "UPDATE families SET custom_fields_json = ?, updated_at = ? WHERE id = ?",
            (dumps(fields), now_iso(), family["id"]),
        )
    return fields


def touch_activity(con: sqlite3.Connection, family_id: str, column: str) -> None:
    if column not in ("last_member_added", "last_photo_uploaded", "last_tree_modified"):
        raise ValueError(column)
    con.execute(f"UPDATE families SET {column} = ?, updated_at = ? WHERE id = ?", (now_iso(), now_iso(), family_id))


def activate_subscription(con: sqlite3.Connection, family_id: str, ends_at: str) -> None:
    con.execute(
        """
        UPDATE families SET subscription_status = 'active', subscription_ends_at = ?, auto_renew = 1,
                            updated_at = ?
         WHERE id = ?
        """,
        (ends_at, now_iso(), family_id),
    )


# -----------------------------
# SERIALIZATION
# -----------------------------
def subscription_dict(family: sqlite3.Row) -> dict:
    return {
        "status": family["subscription_status"],
        "trialEndsAt": family["trial_ends_at"],
        "subscriptionEndsAt": family["subscription_ends_at"],
        "autoRenew": bool(family["auto_renew"]),
        "isActive": has_active_subscription(family),
    }


def admins_dict(family: sqlite3.Row) -> dict:
    out: dict = {}
    for slot in ADMIN_SLOTS:
        uid = family[f"{slot}_user_id"]
        if not uid:
            out[slot] = None
            continue
        entry = {
            "userId": users.user_summary(users.get_user(uid)),
            "assignedAt": family[f"{slot}_assigned_at"],
        }
        if slot != "admin1":
            entry["assignedBy"] = family[f"{slot}_assigned_by"]
        out[slot] = entry
    return out


def viewers_list(family_id: str) -> list[dict]:
    rows = get_db().execute(
        """
        SELECT v.user_id, v.added_by, v.added_at, u.name, u.email
          FROM family_viewers v JOIN users u ON u.id = v.user_id
         WHERE v.family_id = ?
         ORDER BY v.added_at
        """,
        (family_id,),
    ).fetchall()
    return [
        {
            "userId": r["user_id"],
            "name": r["name"],
            "email": r["email"],
            "addedBy": r["added_by"],
            "addedAt": r["added_at"],
        }
        for r in rows
    ]


def pending_members(family_id: str) -> list[dict]:
    rows = get_db().execute(
        "SELECT * FROM users WHERE family_id = ? AND family_status = 'pending' AND is_active = 1",
        (family_id,),
    ).fetchall()
    return [users.user_summary(r) for r in rows]


def family_summary(family: Optional[sqlite3.Row]) -> Optional[dict]:
    if family is None:
        return None
    return {"_id": family["id"], "id": family["id"], "familyName": family["family_name"], "familyId": family["slug"]}


def public_family_dict(family: sqlite3.Row) -> dict:
    return {
        "_id": family["id"],
        "id": family["id"],
        "familyName": family["family_name"],
        "familyId": family["slug"],
        "description": family["description"],
        "memberCount": member_count(family["id"]),
        "requireApprovalForJoining": bool(family["require_approval"]),
    }


def family_to_dict(family: sqlite3.Row, viewer: Optional[sqlite3.Row] = None, detail: bool = True) -> Dict[str, Any]:
    out: Dict[str, Any] = {
        "_id": family["id"],
        "id": family["id"],
        "familyName": family["family_name"],
        "familyId": family["slug"],
        "description": family["description"],
        "isPrivate": bool(family["is_private"]),
        "allowPublicView": bool(family["allow_public_view"]),
        "requireApprovalForJoining": bool(family["require_approval"]),
        "createdBy": family["created_by"],
        "stats": loads(family["stats_json"], {}),
        "subscription": subscription_dict(family),
        "hasActiveSubscription": has_active_subscription(family),
        "isActive": bool(family["is_active"]),
        "createdAt": family["created_at"],
        "updatedAt": family["updated_at"],
    }
    if detail:
        out["admins"] = admins_dict(family)
        out["rootMember"] = family["root_member_id"]
        out["treeStyle"] = loads(family["tree_style_json"], dict(DEFAULT_TREE_STYLE))
        out["customFields"] = loads(family["custom_fields_json"], [])
        out["accessSettings"] = {"allowedViewers": viewers_list(family["id"])}
        out["activity"] = {
            "lastMemberAdded": family["last_member_added"],
            "lastPhotoUploaded": family["last_photo_uploaded"],
            "lastTreeModified": family["last_tree_modified"],
        }
    if viewer is not None:
        out["userRole"] = user_role(family, viewer)
        out["isAdmin"] = is_admin(family, viewer["id"])
        if out["isAdmin"] and detail:
            out["pendingMembers"] = pending_members(family["id"])
    return out
