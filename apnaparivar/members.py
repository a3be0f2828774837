from __future__ import annotations

import logging
import math
import re
import sqlite3
from typing import Any, Dict, Iterable, Optional

from . import families, graph, stats
from .db import date_field, dumps, get_db, is_future, loads, new_id, now_iso, parse_dt
from .errors import bad_request, forbidden, not_found

log = logging.getLogger(__name__)

GENDERS = ("male", "female", "other")
RELATIONSHIP_TYPES = ("father_of", "mother_of", "child_of", "spouse_of")
TIMELINE_CATEGORIES = ("birth", "education", "career", "marriage", "children", "achievement", "travel", "other")
MAX_NOTES = 1000
LIST_LIMIT = 100
HEX_ID = re.compile(r"^[a-f0-9]{32}$", re.IGNORECASE)


# -----------------------------
# LOOKUPS
# -----------------------------
def get_member(member_id: str) -> Optional[sqlite3.Row]:
    return get_db().execute(
        "SELECT * FROM family_members WHERE id = ? AND is_deleted = 0", (str(member_id),)
    ).fetchone()


def require_member(member_id: str) -> sqlite3.Row:
    member = get_member(member_id)
    if member is None:
        raise not_found("Family member not found")
    return member


def member_family(member: sqlite3.Row) -> sqlite3.Row:
    family = families.get_family(member["family_id"])
    if family is None:
        raise not_found("Family not found")
    return family


def target_family(user: sqlite3.Row, ref: Any = None, forbid_message: str = "Family access required") -> sqlite3.Row:
    """
    The family a request works on: an explicit id / slug, else the caller's
    primary family. The caller must belong to it.
    """
    ref = str(ref or "").strip() or user["family_id"]
    if not ref:
        raise bad_request("Family ID is required")
    family = families.require_family(ref)
    if user["family_id"] != family["id"]:
        raise forbidden(forbid_message)
    return family


def _like(token: str) -> str:
    escaped = token.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    return f"%{escaped}%"


def list_members(family_id: str, q: str = "", member_id: str = "") -> list[sqlite3.Row]:
    sql = "SELECT * FROM family_members WHERE family_id = ? AND is_active = 1 AND is_deleted = 0"
    params: list[Any] = [family_id]
    name_match = "(first_name LIKE ? ESCAPE '\\' OR last_name LIKE ? ESCAPE '\\' OR nickname LIKE ? ESCAPE '\\')"

    if member_id:
        sql += " AND id = ?"
        params.append(member_id)
    elif q:
        if HEX_ID.match(q):
            sql += f" AND ({name_match} OR id = ?)"
            params += [_like(q)] * 3 + [q.lower()]
        else:
            for token in q.split():
                sql += f" AND {name_match}"
                params += [_like(token)] * 3

    sql += " ORDER BY first_name COLLATE NOCASE, last_name COLLATE NOCASE LIMIT ?"
    params.append(LIST_LIMIT)
    return get_db().execute(sql, params).fetchall()


# -----------------------------
# PAYLOAD PARSING
# -----------------------------
def _check_dates(dob: Optional[str], dod: Optional[str]) -> None:
    if dob and is_future(dob):
        raise bad_request("Date of birth cannot be in the future")
    if dob and dod and parse_dt(dod) < parse_dt(dob):
        raise bad_request("Date of death cannot be before date of birth")


def _gender(raw: Any) -> str:
    gender = str(raw or "other").strip().lower()
    if gender not in GENDERS:
        raise bad_request(f"Gender must be one of: {', '.join(GENDERS)}")
    return gender


def _contact(phone: Any, email: Any, base: Optional[dict] = None) -> dict:
    contact = dict(base or {"phoneNumbers": [], "emails": []})
    if phone:
        contact["phoneNumbers"] = [{"type": "mobile", "number": str(phone).strip(), "isPrimary": True}]
    if email:
        contact["emails"] = [{"type": "personal", "email": str(email).strip().lower(), "isPrimary": True}]
    return contact


def _profession(occupation: Any, education: Any, base: Optional[dict] = None) -> dict:
    prof = dict(base or {"currentJob": {}, "education": []})
    if occupation:
        prof["currentJob"] = {"title": str(occupation).strip()}
    if education:
        prof["education"] = [{"degree": str(education).strip()}]
    return prof


def _tags(raw: Any) -> list[str]:
    if isinstance(raw, str):
        raw = raw.split(",")
    if not isinstance(raw, list):
        return []
    return [str(t).strip() for t in raw if str(t).strip()]


def _notes(payload: Dict[str, Any], default: str = "") -> str:
    notes = payload.get("bio", payload.get("notes", default))
    notes = str(notes or "").strip()
    if len(notes) > MAX_NOTES:
        raise bad_request(f"Notes must be at most {MAX_NOTES} characters")
    return notes


# -----------------------------
# WRITES
# -----------------------------
def create_member(family: sqlite3.Row, user: sqlite3.Row, payload: Dict[str, Any]) -> sqlite3.Row:
    first = str(payload.get("firstName") or "").strip()
    last = str(payload.get("lastName") or "").strip()
    if not first or not last:
        raise bad_request("First name and last name are required")
    if not families.is_admin(family, user["id"]):
        raise forbidden("Only family admins can add members")
    families.require_subscription(family)

    dob = date_field(payload.get("dateOfBirth"), "date of birth")
    dod = date_field(payload.get("dateOfDeath"), "date of death")
    _check_dates(dob, dod)
    gender = _gender(payload.get("gender"))

    rel_type = str(payload.get("relationshipType") or "").strip()
    related_id = str(payload.get("relatedToMemberId") or "").strip()
    related = None
    if rel_type and related_id:
        if rel_type not in RELATIONSHIP_TYPES:
            raise bad_request(f"relationshipType must be one of: {', '.join(RELATIONSHIP_TYPES)}")
        related = get_member(related_id)
        if related is None or related["family_id"] != family["id"]:
            raise not_found("Related member not found in this family")

    place = payload.get("placeOfBirth")
    address = payload.get("address")
    mid = new_id()
    now = now_iso()
    is_root = not family["root_member_id"]

    con = get_db()
    with con:
        con.execute(
            """
            INSERT INTO family_members (id, family_id, first_name, middle_name, last_name, nickname, gender,
                                        date_of_birth, date_of_death, is_alive, place_of_birth_json,
                                        current_address_json, contact_json, profession_json,
                                        custom_fields_json, tags_json, is_root_member, notes, added_by,
                                        last_modified_by, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                mid, family["id"], first, str(payload.get("middleName") or "").strip(), last,
                str(payload.get("nickname") or "").strip(), gender, dob, dod, 0 if dod else 1,
                dumps({"city": str(place).strip()} if isinstance(place, str) and place.strip() else place or {}),
                dumps({"street": str(address).strip()} if isinstance(address, str) and address.strip() else address or {}),
                dumps(_contact(payload.get("phone"), payload.get("email"))),
                dumps(_profession(payload.get("occupation"), payload.get("education"))),
                dumps(payload.get("customFields") or []),
                dumps(_tags(payload.get("tags"))),
                1 if is_root else 0,
                _notes(payload),
                user["id"], user["id"], now, now,
            ),
        )
        if is_root:
            con.execute("UPDATE families SET root_member_id = ? WHERE id = ?", (mid, family["id"]))

        if related is not None:
            me = {"id": mid, "gender": gender}
            if rel_type == "father_of":
                graph.link_parent(con, family["id"], me, related["id"], role="father")
            elif rel_type == "mother_of":
                graph.link_parent(con, family["id"], me, related["id"], role="mother")
            elif rel_type == "child_of":
                graph.link_parent(con, family["id"], related, mid)
            else:
                graph.link_spouse(con, family["id"], mid, related["id"])
            families.touch_activity(con, family["id"], "last_tree_modified")
        families.touch_activity(con, family["id"], "last_member_added")

    stats.update_stats(family["id"])
    log.info("Member %s %s added to %s", first, last, family["slug"])
    return require_member(mid)


def update_member(member: sqlite3.Row, user: sqlite3.Row, payload: Dict[str, Any]) -> sqlite3.Row:
    family = member_family(member)
    if not families.is_admin(family, user["id"]):
        raise forbidden("You must be a family admin to edit members")
    families.require_subscription(family)

    fields: Dict[str, Any] = {}
    for key, column in (("firstName", "first_name"), ("lastName", "last_name")):
        if key in payload:
            value = str(payload.get(key) or "").strip()
            if not value:
                raise bad_request(f"{key} cannot be empty")
            fields[column] = value
    for key, column in (("middleName", "middle_name"), ("nickname", "nickname")):
        if key in payload:
            fields[column] = str(payload.get(key) or "").strip()
    if "gender" in payload:
        fields["gender"] = _gender(payload.get("gender"))

    dob = date_field(payload["dateOfBirth"], "date of birth") if "dateOfBirth" in payload else member["date_of_birth"]
    dod = date_field(payload["dateOfDeath"], "date of death") if "dateOfDeath" in payload else member["date_of_death"]
    _check_dates(dob, dod)
    if "dateOfBirth" in payload:
        fields["date_of_birth"] = dob
    if "dateOfDeath" in payload:
        fields["date_of_death"] = dod
        fields["is_alive"] = 0 if dod else 1
    elif "isAlive" in payload and not dod:
        fields["is_alive"] = 1 if payload.get("isAlive") else 0

    if "placeOfBirth" in payload:
        place = payload.get("placeOfBirth")
        fields["place_of_birth_json"] = dumps({"city": place.strip()} if isinstance(place, str) else place or {})
    if "address" in payload:
        addr = payload.get("address")
        fields["current_address_json"] = dumps({"street": addr.strip()} if isinstance(addr, str) else addr or {})
    if "phone" in payload or "email" in payload:
        fields["contact_json"] = dumps(
            _contact(payload.get("phone"), payload.get("email"), loads(member["contact_json"], {}))
        )
    if "occupation" in payload or "education" in payload:
        fields["profession_json"] = dumps(
            _profession(payload.get("occupation"), payload.get("education"), loads(member["profession_json"], {}))
        )
    if "bio" in payload or "notes" in payload:
        fields["notes"] = _notes(payload)
    if "customFields" in payload:
        fields["custom_fields_json"] = dumps(payload.get("customFields") or [])
    if "tags" in payload:
        fields["tags_json"] = dumps(_tags(payload.get("tags")))

    fields["last_modified_by"] = user["id"]
    fields["updated_at"] = now_iso()
    assignments = ", ".join(f"{column} = ?" for column in fields)
    con = get_db()
    with con:
        con.execute(f"UPDATE family_members SET {assignments} WHERE id = ?", [*fields.values(), member["id"]])

    if "gender" in fields or "dateOfBirth" in payload:
        stats.update_stats(family["id"])
    return require_member(member["id"])


def delete_member(member: sqlite3.Row, user: sqlite3.Row) -> None:
    family = member_family(member)
    if not families.is_admin(family, user["id"]):
        raise forbidden("You must be a family admin to delete members")
    con = get_db()
    with con:
        con.execute(
            """
            UPDATE family_members
               SET is_active = 0, is_deleted = 1, deleted_at = ?, deleted_by = ?, last_modified_by = ?,
                   updated_at = ?
             WHERE id = ?
            """,
            (now_iso(), user["id"], user["id"], now_iso(), member["id"]),
        )
        graph.remove_member_edges(con, member["id"])
        if family["root_member_id"] == member["id"]:
            con.execute("UPDATE families SET root_member_id = NULL WHERE id = ?", (family["id"],))
        families.touch_activity(con, family["id"], "last_tree_modified")
    stats.update_stats(family["id"])
    log.info("Member %s deleted from %s by %s", member["id"], family["slug"], user["email"])


def add_photo_url(member: sqlite3.Row, user: sqlite3.Row, url: str, caption: str = "",
                  is_primary: bool = False) -> sqlite3.Row:
    url = (url or "").strip()
    if not url:
        raise bad_request("Photo URL is required")
    family = member_family(member)
    if not families.is_admin(family, user["id"]):
        raise forbidden("You must be a family admin to add photos")
    families.require_subscription(family)

    con = get_db()
    existing = con.execute("SELECT COUNT(*) FROM photos WHERE member_id = ?", (member["id"],)).fetchone()[0]
    is_primary = bool(is_primary) or existing == 0
    pid = new_id()
    with con:
        if is_primary:
            con.execute("UPDATE photos SET is_primary = 0 WHERE member_id = ?", (member["id"],))
        con.execute(
            """
            INSERT INTO photos (id, family_id, member_id, title, caption, url, category, is_primary,
                                uploaded_by, uploaded_at)
            VALUES (?, ?, ?, ?, ?, ?, 'member', ?, ?, ?)
            """,
            (pid, family["id"], member["id"], caption or "Member photo", caption or "", url,
             1 if is_primary else 0, user["id"], now_iso()),
        )
        con.execute(
            "UPDATE family_members SET last_modified_by = ?, updated_at = ? WHERE id = ?",
            (user["id"], now_iso(), member["id"]),
        )
        families.touch_activity(con, family["id"], "last_photo_uploaded")
    return con.execute("SELECT * FROM photos WHERE id = ?", (pid,)).fetchone()


def add_timeline_entry(member: sqlite3.Row, user: sqlite3.Row, payload: Dict[str, Any]) -> sqlite3.Row:
    family = member_family(member)
    if not families.is_admin(family, user["id"]):
        raise forbidden("You must be a family admin to add timeline events")

    title = str(payload.get("title") or "").strip()
    date = payload.get("date")
    if not date or not title:
        raise bad_request("Date and title are required")
    when = date_field(date, "date")
    category = str(payload.get("category") or payload.get("type") or "other").strip().lower()
    if category not in TIMELINE_CATEGORIES:
        category = "other"

    eid = new_id()
    con = get_db()
    with con:
        con.execute(
            """
            INSERT INTO member_timeline (id, member_id, title, description, date, category, added_by, added_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (eid, member["id"], title, str(payload.get("description") or ""), when, category, user["id"], now_iso()),
        )
        con.execute(
            "UPDATE family_members SET last_modified_by = ?, updated_at = ? WHERE id = ?",
            (user["id"], now_iso(), member["id"]),
        )
    return con.execute("SELECT * FROM member_timeline WHERE id = ?", (eid,)).fetchone()


def _finite(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool) and math.isfinite(value)


def set_position(member: sqlite3.Row, user: sqlite3.Row, x: Any, y: Any) -> None:
    if not _finite(x) or not _finite(y):
        raise bad_request("Valid x and y are required")
    family = member_family(member)
    if not families.is_admin(family, user["id"]):
        raise forbidden("Only family admins can move nodes")
    con = get_db()
    with con:
        con.execute(
            """
            UPDATE family_members SET position_x = ?, position_y = ?, last_modified_by = ?, updated_at = ?
             WHERE id = ?
            """,
            (float(x), float(y), user["id"], now_iso(), member["id"]),
        )


# -----------------------------
# SERIALIZATION
# -----------------------------
def full_name(row: sqlite3.Row) -> str:
    return " ".join(p for p in (row["first_name"], row["middle_name"], row["last_name"]) if p)


def member_age(row: sqlite3.Row) -> Optional[int]:
    if row["is_alive"]:
        return stats.age_years(row["date_of_birth"])
    end = parse_dt(row["date_of_death"])
    if end is None:
        return None
    return stats.age_years(row["date_of_birth"], end)


def _briefs(ids: Iterable[str]) -> Dict[str, dict]:
    ids = [i for i in set(ids) if i]
    if not ids:
        return {}
    marks = ",".join("?" for _ in ids)
    rows = get_db().execute(
        f"SELECT id, first_name, last_name, date_of_birth FROM family_members WHERE id IN ({marks})", ids
    ).fetchall()
    return {
        r["id"]: {
            "_id": r["id"],
            "id": r["id"],
            "firstName": r["first_name"],
            "lastName": r["last_name"],
            "dateOfBirth": r["date_of_birth"],
        }
        for r in rows
    }


def timeline_for(member_id: str) -> list[dict]:
    rows = get_db().execute(
        "SELECT * FROM member_timeline WHERE member_id = ? ORDER BY date, added_at", (member_id,)
    ).fetchall()
    return [timeline_to_dict(r) for r in rows]


def timeline_to_dict(r: sqlite3.Row) -> dict:
    return {
        "_id": r["id"],
        "id": r["id"],
        "title": r["title"],
        "description": r["description"],
        "date": r["date"],
        "category": r["category"],
        "addedBy": r["added_by"],
        "addedAt": r["added_at"],
    }


def member_photos(member_id: str) -> list[dict]:
    rows = get_db().execute(
        "SELECT id, url, caption, is_primary, uploaded_by, uploaded_at FROM photos WHERE member_id = ? "
        "ORDER BY uploaded_at",
        (member_id,),
    ).fetchall()
    return [
        {
            "_id": r["id"],
            "url": r["url"],
            "caption": r["caption"],
            "isPrimary": bool(r["is_primary"]),
            "uploadedBy": r["uploaded_by"],
            "uploadedAt": r["uploaded_at"],
        }
        for r in rows
    ]


def member_summary(row: sqlite3.Row, rel: dict) -> Dict[str, Any]:
    """List shape; the tree canvas reads `relationships` straight from it."""
    return {
        "_id": row["id"],
        "id": row["id"],
        "firstName": row["first_name"],
        "middleName": row["middle_name"],
        "lastName": row["last_name"],
        "nickname": row["nickname"],
        "gender": row["gender"],
        "dateOfBirth": row["date_of_birth"],
        "isAlive": bool(row["is_alive"]),
        "generation": row["generation"],
        "position": (
            {"x": row["position_x"], "y": row["position_y"]}
            if row["position_x"] is not None and row["position_y"] is not None
            else None
        ),
        "relationships": {
            "father": rel["father"],
            "mother": rel["mother"],
            "children": rel["children"],
            "spouse": rel["spouses"],
        },
        "createdAt": row["created_at"],
    }


def members_to_list(rows: list[sqlite3.Row]) -> list[dict]:
    rels = graph.relations_for(r["id"] for r in rows)
    return [member_summary(r, rels[r["id"]]) for r in rows]


def member_to_dict(row: sqlite3.Row, detail: bool = False) -> Dict[str, Any]:
    rel = graph.relations_for([row["id"]])[row["id"]]
    spouse_ids = [s["memberId"] for s in rel["spouses"]]
    briefs = _briefs([rel["father"], rel["mother"], *rel["children"], *spouse_ids])

    out: Dict[str, Any] = {
        "_id": row["id"],
        "id": row["id"],
        "familyId": row["family_id"],
        "fullName": full_name(row),
        "firstName": row["first_name"],
        "middleName": row["middle_name"],
        "lastName": row["last_name"],
        "nickname": row["nickname"],
        "dateOfBirth": row["date_of_birth"],
        "dateOfDeath": row["date_of_death"],
        "isAlive": bool(row["is_alive"]),
        "age": member_age(row),
        "gender": row["gender"],
        "generation": row["generation"],
        "parents": {
            "father": briefs.get(rel["father"]) if rel["father"] else None,
            "mother": briefs.get(rel["mother"]) if rel["mother"] else None,
        },
        "spouses": [
            {
                "member": briefs.get(s["memberId"]),
                "marriageDate": s["marriageDate"],
                "divorceDate": s["divorceDate"],
                "isCurrentSpouse": s["isCurrentSpouse"],
            }
            for s in rel["spouses"]
        ],
        "children": [briefs[c] for c in rel["children"] if c in briefs],
        "contact": loads(row["contact_json"], {}),
        "currentAddress": loads(row["current_address_json"], {}),
        "placeOfBirth": loads(row["place_of_birth_json"], {}),
        "profession": loads(row["profession_json"], {}),
        "notes": row["notes"],
        "tags": loads(row["tags_json"], []),
        "customFields": loads(row["custom_fields_json"], []),
        "isRootMember": bool(row["is_root_member"]),
        "createdAt": row["created_at"],
        "updatedAt": row["updated_at"],
        "createdBy": row["added_by"],
        "updatedBy": row["last_modified_by"],
    }
    if detail:
        out["photos"] = member_photos(row["id"])
        out["timeline"] = timeline_for(row["id"])
    return out
