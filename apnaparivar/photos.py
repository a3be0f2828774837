from __future__ import annotations

import logging
import sqlite3
from typing import Any, Dict, Optional

from flask import current_app
from werkzeug.datastructures import FileStorage

from . import families
from .db import dumps, get_db, loads, new_id, now_iso
from .errors import ApiError, bad_request, forbidden, not_found
from .storage import get_storage, is_image

log = logging.getLogger(__name__)


def get_photo(photo_id: str) -> Optional[sqlite3.Row]:
    return get_db().execute("SELECT * FROM photos WHERE id = ?", (str(photo_id),)).fetchone()


def upload_photos(user: sqlite3.Row, family_ref: str, files: list[FileStorage], form: Dict[str, Any]) -> list[sqlite3.Row]:
    family_ref = str(family_ref or "").strip()
    family = families.resolve_family(family_ref) if family_ref else None
    target_id = family["id"] if family is not None else family_ref
    if not user["family_id"] or target_id != user["family_id"]:
        raise forbidden("You can only upload photos to your own family")
    if family is None:
        raise not_found("Family not found")
    if not families.is_admin(family, user["id"]):
        raise forbidden("Only family admins can upload photos")
    families.require_subscription(family)

    files = [f for f in files if f and f.filename]
    if not files:
        raise bad_request("No files uploaded")
    if len(files) > current_app.config["MAX_UPLOAD_FILES"]:
        raise bad_request(f"At most {current_app.config['MAX_UPLOAD_FILES']} files per upload")
    for f in files:
        if not is_image(f):
            raise bad_request("Only image files are allowed!")

    storage = get_storage()
    max_bytes = current_app.config["MAX_UPLOAD_BYTES"]
    tags = [t.strip() for t in str(form.get("tags") or "").split(",") if t.strip()]
    stored = []
    try:
        for f in files:
            stored.append(storage.save(f, "photos", max_bytes=max_bytes))
    except ValueError as e:
        for s in stored:
            storage.delete(s.key)
        raise ApiError(413, "Uploaded file is too large", detail=str(e))

    con = get_db()
    ids = []
    try:
        with con:
            for s in stored:
                pid = new_id()
                ids.append(pid)
                con.execute(
                    """
                    INSERT INTO photos (id, family_id, title, description, url, filename, mime_type, size,
                                        category, tags_json, uploaded_by, uploaded_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        pid, family["id"], str(form.get("title") or "").strip() or "Family Photo",
                        str(form.get("description") or "").strip(), storage.public_url(s.key), s.filename,
                        s.mime_type, s.size, str(form.get("category") or "").strip() or "family", dumps(tags),
                        user["id"], now_iso(),
                    ),
                )
            families.touch_activity(con, family["id"], "last_photo_uploaded")
    except sqlite3.Error:
        log.exception("Photo insert failed for %s; removing %d stored file(s)", family["slug"], len(stored))
        for s in stored:
            storage.delete(s.key)
        raise

    log.info("%d photo(s) uploaded to %s by %s", len(ids), family["slug"], user["email"])
    marks = ",".join("?" for _ in ids)
    return con.execute(f"SELECT * FROM photos WHERE id IN ({marks}) ORDER BY uploaded_at", ids).fetchall()


def list_photos(family_id: str) -> list[sqlite3.Row]:
    return get_db().execute(
        "SELECT * FROM photos WHERE family_id = ? ORDER BY uploaded_at DESC", (family_id,)
    ).fetchall()


def delete_photo(photo: sqlite3.Row, user: sqlite3.Row) -> None:
    family = families.get_family(photo["family_id"])
    if photo["uploaded_by"] != user["id"] and (family is None or not families.is_admin(family, user["id"])):
        raise forbidden("You can only delete your own photos or family admin can delete any photo")
    if photo["filename"]:
        get_storage().delete(f"photos/{photo['filename']}")
    con = get_db()
    with con:
        con.execute("DELETE FROM photos WHERE id = ?", (photo["id"],))
    log.info("Photo %s deleted by %s", photo["id"], user["email"])


def photo_to_dict(row: sqlite3.Row, uploader: Optional[dict] = None) -> Dict[str, Any]:
    return {
        "_id": row["id"],
        "id": row["id"],
        "familyId": row["family_id"],
        "memberId": row["member_id"],
        "title": row["title"],
        "description": row["description"],
        "caption": row["caption"],
        "url": row["url"],
        "filename": row["filename"],
        "mimeType": row["mime_type"],
        "size": row["size"],
        "category": row["category"],
        "tags": loads(row["tags_json"], []),
        "isPrivate": bool(row["is_private"]),
        "isPrimary": bool(row["is_primary"]),
        "uploadedBy": uploader if uploader is not None else row["uploaded_by"],
        "uploadedAt": row["uploaded_at"],
    }
