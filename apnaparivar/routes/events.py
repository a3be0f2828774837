from __future__ import annotations

from flask import Blueprint, g, jsonify

from .. import events, families, users
from ..auth import login_required
from ..errors import forbidden, not_found
from . import json_body

bp = Blueprint("events", __name__, url_prefix="/api/events")


def _serialize(rows) -> list[dict]:
    creators: dict = {}
    out = []
    for r in rows:
        uid = r["created_by"]
        if uid not in creators:
            creators[uid] = users.user_summary(users.get_user(uid))
        out.append(events.event_to_dict(r, creators[uid]))
    return out


def _require_event(event_id: str):
    event = events.get_event(event_id)
    if event is None:
        raise not_found("Event not found")
    return event


@bp.post("")
@login_required
def create_event():
    event = events.create_event(g.user, json_body())
    return jsonify({"success": True, "message": "Event created successfully", "event": _serialize([event])[0]}), 201


@bp.get("")
@login_required
def my_events():
    if not g.user["family_id"]:
        raise not_found("User not found or not in a family")
    return jsonify({"success": True, "events": _serialize(events.list_events(g.user["family_id"]))})


@bp.get("/family/<ref>")
@login_required
def family_events(ref: str):
    family = families.resolve_family(ref)
    family_id = family["id"] if family is not None else ref
    if not g.user["family_id"] or g.user["family_id"] != family_id:
        raise forbidden("You can only view events from your own family")
    return jsonify({"success": True, "events": _serialize(events.list_events(family_id))})


@bp.put("/<event_id>")
@login_required
def update_event(event_id: str):
    event = events.update_event(_require_event(event_id), g.user, json_body())
    return jsonify({"success": True, "message": "Event updated successfully", "event": _serialize([event])[0]})


@bp.delete("/<event_id>")
@login_required
def delete_event(event_id: str):
    events.delete_event(_require_event(event_id), g.user)
    return jsonify({"success": True, "message": "Event deleted successfully"})
