from __future__ import annotations

from flask import Blueprint, g, jsonify, request

from .. import families, members, tree, users
from ..auth import login_required, optional_user
from ..errors import not_found
from . import json_body

bp = Blueprint("families", __name__, url_prefix="/api/families")


def _accessible(ref: str):
    family = families.require_family(ref)
    families.require_access(family, g.user)
    return family


@bp.get("")
@login_required
def list_families():
    rows = families.families_for_user(g.user)
    return jsonify({"success": True, "families": [families.family_to_dict(f, g.user, detail=False) for f in rows]})


@bp.post("")
@login_required
def create_family():
    payload = json_body()
    family = families.create_family(g.user, str(payload.get("familyName") or ""), str(payload.get("description") or ""))
    return (
        jsonify(
            {
                "success": True,
                "message": "Family created successfully",
                "family": families.family_to_dict(family, users.get_user(g.user["id"])),
            }
        ),
        201,
    )


@bp.get("/public/<slug>")
def public_family(slug: str):
    family = families.get_family_by_slug(slug)
    if family is None:
        raise not_found("Family not found")
    body = families.public_family_dict(family)
    viewer = optional_user()
    if viewer is not None:
        body["userRole"] = families.user_role(family, viewer)
        body["canAccess"] = families.can_access(family, viewer)
    return jsonify({"success": True, "family": body})


@bp.get("/<ref>")
@login_required
def get_family(ref: str):
    family = _accessible(ref)
    return jsonify({"success": True, "family": families.family_to_dict(family, g.user)})


@bp.put("/<ref>")
@login_required
def update_family(ref: str):
    family = families.require_family(ref)
    families.require_admin(family, g.user)
    family = families.update_family(family, json_body())
    return jsonify(
        {"success": True, "message": "Family updated successfully", "family": families.family_to_dict(family, g.user)}
    )


@bp.delete("/<ref>")
@login_required
def delete_family(ref: str):
    family = families.require_family(ref)
    families.soft_delete_family(family, g.user)
    return jsonify({"success": True, "message": "Family deleted successfully"})


@bp.get("/<ref>/members")
@login_required
def family_members(ref: str):
    family = _accessible(ref)
    rows = members.list_members(family["id"], q=(request.args.get("q") or "").strip())
    return jsonify({"success": True, "members": members.members_to_list(rows)})


@bp.get("/<ref>/tree")
@login_required
def family_tree(ref: str):
    family = _accessible(ref)
    return jsonify({"success": True, "tree": tree.family_tree(family["id"])})


@bp.post("/<ref>/join")
@login_required
def join_family(ref: str):
    family = families.require_family(ref)
    status = families.join_family(family, g.user)
    message = "Join request sent for approval" if status == "pending" else "Joined family successfully"
    return jsonify({"success": True, "message": message, "status": status, "family": families.family_summary(family)})


@bp.post("/<ref>/admins")
@login_required
def assign_admin(ref: str):
    family = families.require_family(ref)
    payload = json_body()
    target = families.assign_admin(family, g.user, str(payload.get("email") or ""), str(payload.get("role") or ""))
    family = families.require_family(family["id"])
    return jsonify(
        {
            "success": True,
            "message": f"{payload.get('role')} assigned to {target['email']}",
            "admins": families.admins_dict(family),
        }
    )


@bp.delete("/<ref>/admins/<role>")
@login_required
def remove_admin(ref: str, role: str):
    family = families.require_family(ref)
    families.remove_admin(family, g.user, role)
    family = families.require_family(family["id"])
    return jsonify({"success": True, "message": f"{role} removed", "admins": families.admins_dict(family)})


@bp.post("/<ref>/viewers")
@login_required
def approve_viewer(ref: str):
    family = families.require_family(ref)
    families.require_admin(family, g.user)
    target = families.approve_viewer(family, g.user, str(json_body().get("email") or ""))
    return jsonify(
        {
            "success": True,
            "message": f"{target['email']} can now view the family",
            "allowedViewers": families.viewers_list(family["id"]),
        }
    )


@bp.delete("/<ref>/viewers/<user_id>")
@login_required
def remove_viewer(ref: str, user_id: str):
    family = families.require_family(ref)
    families.require_admin(family, g.user)
    families.remove_viewer(family, user_id)
    return jsonify({"success": True, "allowedViewers": families.viewers_list(family["id"])})


@bp.post("/<ref>/custom-fields")
@login_required
def add_custom_field(ref: str):
    family = families.require_family(ref)
    families.require_admin(family, g.user)
    fields = families.add_custom_field(family, json_body())
    return jsonify({"success": True, "message": "Custom field added", "customFields": fields}), 201
