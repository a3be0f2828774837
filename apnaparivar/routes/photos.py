from __future__ import annotations

from flask import Blueprint, g, jsonify, request

from .. import families, photos, users
from ..auth import login_required
from ..errors import forbidden, not_found

bp = Blueprint("photos", __name__, url_prefix="/api/photos")


def _summaries(rows, column: str) -> dict:
    out: dict = {}
    for r in rows:
        uid = r[column]
        if uid and uid not in out:
            out[uid] = users.user_summary(users.get_user(uid))
    return out


@bp.post("/upload")
@login_required
def upload():
    created = photos.upload_photos(
        g.user, request.form.get("familyId", ""), request.files.getlist("photos"), request.form
    )
    return (
        jsonify(
            {
                "success": True,
                "message": f"Successfully uploaded {len(created)} photo(s)",
                "photos": [photos.photo_to_dict(p) for p in created],
            }
        ),
        201,
    )


@bp.get("/family/<ref>")
@login_required
def family_photos(ref: str):
    family = families.resolve_family(ref)
    family_id = family["id"] if family is not None else ref
    if not g.user["family_id"] or g.user["family_id"] != family_id:
        raise forbidden("You can only view photos from your own family")
    rows = photos.list_photos(family_id)
    uploaders = _summaries(rows, "uploaded_by")
    return jsonify({"success": True, "photos": [photos.photo_to_dict(p, uploaders.get(p["uploaded_by"])) for p in rows]})


@bp.delete("/<photo_id>")
@login_required
def delete_photo(photo_id: str):
    photo = photos.get_photo(photo_id)
    if photo is None:
        raise not_found("Photo not found")
    photos.delete_photo(photo, g.user)
    return jsonify({"success": True, "message": "Photo deleted successfully"})
