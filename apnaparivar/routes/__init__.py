from __future__ import annotations

from typing import Any, Dict

from flask import Flask, request


def json_body() -> Dict[str, Any]:
    payload = request.get_json(silent=True)
    return payload if isinstance(payload, dict) else {}


def register_blueprints(app: Flask) -> None:
    from . import admin, auth, events, families, members, payments, photos, system

    for module in (system, auth, families, members, photos, events, admin, payments):
        app.register_blueprint(module.bp)
