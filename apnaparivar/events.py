from __future__ import annotations

import logging
import sqlite3
from typing import Any, Dict, Optional

from . import families
from .db import date_field, dumps, get_db, loads, new_id, now_iso, require_row
from .errors import bad_request, forbidden, not_found

log = logging.getLogger(__name__)

EVENT_TYPES = (
    "birthday", "anniversary", "wedding", "birth", "death", "graduation",
    "achievement", "reunion", "holiday", "vacation", "milestone", "other",
)
RECURRENCE_PATTERNS = ("yearly", "monthly", "weekly", "daily")
SIGNIFICANCE = ("low", "medium", "high", "milestone")


def get_event(event_id: str) -> Optional[sqlite3.Row]:
    return get_db().execute("SELECT * FROM events WHERE id = ?", (str(event_id),)).fetchone()


def _names(raw: Any) -> list[str]:
    if isinstance(raw, str):
        raw = raw.split(",")
    if not isinstance(raw, list):
        return []
    return [str(n).strip() for n in raw if str(n).strip()]


def _participant_ids(family_id: str, raw: Any) -> list[str]:
    if not isinstance(raw, list):
        return []
    ids = [str(i) for i in raw if i]
    if not ids:
        return []
    marks = ",".join("?" for _ in ids)
    rows = get_db().execute(
        f"SELECT id FROM family_members WHERE family_id = ? AND is_deleted = 0 AND id IN ({marks})",
        [family_id, *ids],
    ).fetchall()
    found = {r["id"] for r in rows}
    return [i for i in ids if i in found]


def _validate(fields: Dict[str, Any]) -> None:
    if fields.get("event_type") is not None and fields["event_type"] not in EVENT_TYPES:
        raise bad_request(f"eventType must be one of: {', '.join(EVENT_TYPES)}")
    if fields.get("significance") is not None and fields["significance"] not in SIGNIFICANCE:
        raise bad_request(f"significance must be one of: {', '.join(SIGNIFICANCE)}")
    if fields.get("is_recurring"):
        if fields.get("recurrence_pattern") not in RECURRENCE_PATTERNS:
            raise bad_request(f"recurrencePattern must be one of: {', '.join(RECURRENCE_PATTERNS)}")
    elif fields.get("recurrence_pattern") and fields["recurrence_pattern"] not in RECURRENCE_PATTERNS:
        raise bad_request(f"recurrencePattern must be one of: {', '.join(RECURRENCE_PATTERNS)}")


def create_event(user: sqlite3.Row, payload: Dict[str, Any]) -> sqlite3.Row:
    if not user["family_id"]:
        raise not_found("User not found or not in a family")
    family = families.get_family(user["family_id"])
    if family is None:
        raise not_found("Family not found")
    if not families.is_admin(family, user["id"]):
        raise forbidden("Only family admins can create events")
    families.require_subscription(family)

    title = str(payload.get("title") or "").strip()
    event_type = str(payload.get("eventType") or "").strip()
    if not title or not event_type or not payload.get("date"):
        raise bad_request("Title, event type, and date are required")

    is_recurring = bool(payload.get("isRecurring"))
    fields = {
        "event_type": event_type,
        "significance": str(payload.get("significance") or "medium"),
        "is_recurring": is_recurring,
        "recurrence_pattern": payload.get("recurrencePattern") if is_recurring else None,
    }
    _validate(fields)

    eid = new_id()
    now = now_iso()
    tags = payload.get("tags")
    con = get_db()
    with con:
        con.execute(
            """
            INSERT INTO events (id, family_id, title, description, event_type, date, end_date, location,
                                participants_json, participant_names_json, is_recurring, recurrence_pattern,
                                significance, is_private, tags_json, created_by, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                eid, family["id"], title, str(payload.get("description") or ""), event_type,
                date_field(payload.get("date"), "date"), date_field(payload.get("endDate"), "end date"),
                str(payload.get("location") or ""),
                dumps(_participant_ids(family["id"], payload.get("participants"))),
                dumps(_names(payload.get("participants")) if isinstance(payload.get("participants"), str)
                      else _names(payload.get("participantNames"))),
                1 if is_recurring else 0, fields["recurrence_pattern"], fields["significance"],
                1 if payload.get("isPrivate") else 0, dumps(_names(tags)), user["id"], now, now,
            ),
        )
    log.info("Event %r created in %s", title, family["slug"])
    event = require_row(get_event(eid), "event")
    return event


def list_events(family_id: str) -> list[sqlite3.Row]:
    return get_db().execute(
        "SELECT * FROM events WHERE family_id = ? ORDER BY date DESC", (family_id,)
    ).fetchall()


def _require_editor(event: sqlite3.Row, user: sqlite3.Row, verb: str) -> sqlite3.Row:
    family = families.get_family(event["family_id"])
    if event["created_by"] != user["id"] and (family is None or not families.is_admin(family, user["id"])):
        raise forbidden(f"You can only {verb} your own events or family admin can {verb} any event")
    return family


def update_event(event: sqlite3.Row, user: sqlite3.Row, payload: Dict[str, Any]) -> sqlite3.Row:
    family = _require_editor(event, user, "edit")
    if family is not None:
        families.require_subscription(family)

    fields: Dict[str, Any] = {}
    if "title" in payload:
        title = str(payload.get("title") or "").strip()
        if not title:
            raise bad_request("Title cannot be empty")
        fields["title"] = title
    for key, column in (("description", "description"), ("location", "location")):
        if key in payload:
            fields[column] = str(payload.get(key) or "")
    if "eventType" in payload:
        fields["event_type"] = str(payload.get("eventType") or "").strip()
    if "significance" in payload:
        fields["significance"] = str(payload.get("significance") or "medium")
    if "date" in payload:
        fields["date"] = date_field(payload.get("date"), "date")
        if fields["date"] is None:
            raise bad_request("Date cannot be empty")
    if "endDate" in payload:
        fields["end_date"] = date_field(payload.get("endDate"), "end date")
    if "isRecurring" in payload:
        fields["is_recurring"] = 1 if payload.get("isRecurring") else 0
    if "recurrencePattern" in payload:
        fields["recurrence_pattern"] = payload.get("recurrencePattern") or None
    if "isPrivate" in payload:
        fields["is_private"] = 1 if payload.get("isPrivate") else 0
    if "tags" in payload:
        fields["tags_json"] = dumps(_names(payload.get("tags")))
    participants = payload.get("participants")
    if isinstance(participants, str):
        fields["participant_names_json"] = dumps(_names(participants))
    elif isinstance(participants, list):
        fields["participants_json"] = dumps(_participant_ids(event["family_id"], participants))
    if "participantNames" in payload:
        fields["participant_names_json"] = dumps(_names(payload.get("participantNames")))

    check = {
        "event_type": fields.get("event_type", event["event_type"]),
        "significance": fields.get("significance", event["significance"]),
        "is_recurring": fields.get("is_recurring", event["is_recurring"]),
        "recurrence_pattern": fields.get("recurrence_pattern", event["recurrence_pattern"]),
    }
    _validate(check)
    if not check["is_recurring"]:
        fields["recurrence_pattern"] = None

    fields["updated_by"] = user["id"]
    fields["updated_at"] = now_iso()
    assignments = ", ".join(f"{column} = ?" for column in fields)
    con = get_db()
    with con:
        con.execute(f"UPDATE events SET {assignments} WHERE id = ?", [*fields.values(), event["id"]])
    updated = require_row(get_event(event["id"]), "event")
    return updated


def delete_event(event: sqlite3.Row, user: sqlite3.Row) -> None:
    _require_editor(event, user, "delete")
    con = get_db()
    with con:
        con.execute("DELETE FROM events WHERE id = ?", (event["id"],))
    log.info("Event %s deleted by %s", event["id"], user["email"])


def event_to_dict(row: sqlite3.Row, creator: Optional[dict] = None) -> Dict[str, Any]:
    return {
        "_id": row["id"],
        "id": row["id"],
        "familyId": row["family_id"],
        "title": row["title"],
        "description": row["description"],
        "eventType": row["event_type"],
        "date": row["date"],
        "endDate": row["end_date"],
        "location": row["location"],
        "participants": loads(row["participants_json"], []),
        "participantNames": loads(row["participant_names_json"], []),
        "isRecurring": bool(row["is_recurring"]),
        "recurrencePattern": row["recurrence_pattern"],
        "significance": row["significance"],
        "isPrivate": bool(row["is_private"]),
        "tags": loads(row["tags_json"], []),
        "createdBy": creator if creator is not None else row["created_by"],
        "updatedBy": row["updated_by"],
        "createdAt": row["created_at"],
        "updatedAt": row["updated_at"],
    }
