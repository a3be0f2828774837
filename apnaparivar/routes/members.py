from __future__ import annotations

from flask import Blueprint, g, jsonify, request

from .. import graph, members, stats
from ..auth import login_required
from ..errors import bad_request, forbidden
from ..members import require_member, target_family
from . import json_body

bp = Blueprint("members", __name__, url_prefix="/api/members")


def _same_family(member) -> None:
    if g.user["family_id"] != member["family_id"]:
        raise forbidden("You do not have access to this family")


# -----------------------------
# RELATIONSHIPS
# -----------------------------
@bp.post("/connect")
@login_required
def connect():
    payload = json_body()
    family = target_family(g.user, payload.get("familyId"), "Only family admins can edit relationships")
    result = graph.connect(
        family, g.user, str(payload.get("sourceId") or ""), str(payload.get("targetId") or ""),
        str(payload.get("relation") or ""),
    )
    if result["changes"]:
        stats.update_stats(family["id"])
    return jsonify({"success": True, **result})


@bp.post("/disconnect")
@login_required
def disconnect():
    payload = json_body()
    family = target_family(g.user, payload.get("familyId"), "Only family admins can edit relationships")
    graph.disconnect(
        family, g.user, str(payload.get("sourceId") or ""), str(payload.get("targetId") or ""),
        str(payload.get("relation") or ""),
    )
    stats.update_stats(family["id"])
    return jsonify({"success": True, "message": "Relationship removed"})


# -----------------------------
# MEMBERS
# -----------------------------
@bp.get("")
@login_required
def list_members():
    family = target_family(g.user, request.args.get("familyId"))
    rows = members.list_members(
        family["id"],
        q=(request.args.get("q") or "").strip(),
        member_id=(request.args.get("memberId") or "").strip(),
    )
    return jsonify({"success": True, "members": members.members_to_list(rows)})


@bp.post("")
@login_required
def create_member():
    payload = json_body()
    if not str(payload.get("firstName") or "").strip() or not str(payload.get("lastName") or "").strip():
        raise bad_request("First name and last name are required")
    if not (payload.get("familyId") or g.user["family_id"]):
        raise bad_request("You must be part of a family to add members")
    family = target_family(g.user, payload.get("familyId"), "You can only add members to your own family")
    member = members.create_member(family, g.user, payload)
    return (
        jsonify({"success": True, "message": "Family member added successfully", "member": members.member_to_dict(member)}),
        201,
    )


@bp.get("/<member_id>")
@login_required
def get_member(member_id: str):
    member = require_member(member_id)
    _same_family(member)
    return jsonify({"success": True, "member": members.member_to_dict(member, detail=True)})


@bp.put("/<member_id>")
@login_required
def update_member(member_id: str):
    member = members.update_member(require_member(member_id), g.user, json_body())
    return jsonify(
        {"success": True, "message": "Family member updated successfully", "member": members.member_to_dict(member)}
    )


@bp.delete("/<member_id>")
@login_required
def delete_member(member_id: str):
    members.delete_member(require_member(member_id), g.user)
    return jsonify({"success": True, "message": "Family member deleted successfully"})


@bp.post("/<member_id>/photos")
@login_required
def add_photo(member_id: str):
    payload = json_body()
    photo = members.add_photo_url(
        require_member(member_id), g.user, str(payload.get("url") or ""), str(payload.get("caption") or ""),
        bool(payload.get("isPrimary")),
    )
    return jsonify(
        {
            "success": True,
            "message": "Photo added successfully",
            "photo": {
                "_id": photo["id"],
                "url": photo["url"],
                "caption": photo["caption"],
                "isPrimary": bool(photo["is_primary"]),
                "uploadedBy": photo["uploaded_by"],
                "uploadedAt": photo["uploaded_at"],
            },
        }
    )


@bp.post("/<member_id>/timeline")
@login_required
def add_timeline(member_id: str):
    member = require_member(member_id)
    entry = members.add_timeline_entry(member, g.user, json_body())
    return jsonify(
        {
            "success": True,
            "message": "Timeline event added successfully",
            "event": members.timeline_to_dict(entry),
            "timeline": members.timeline_for(member["id"]),
        }
    )


@bp.put("/<member_id>/position")
@login_required
def set_position(member_id: str):
    payload = json_body()
    member = require_member(member_id)
    members.set_position(member, g.user, payload.get("x"), payload.get("y"))
    return jsonify({"success": True, "message": "Position updated"})
