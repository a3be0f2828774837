from __future__ import annotations

import time

from flask import Blueprint, current_app, jsonify, send_from_directory

from ..db import check_health, now_iso

bp = Blueprint("system", __name__)

STARTED_AT = time.monotonic()


@bp.get("/")
def index():
    return jsonify(
        {
            "message": "Welcome to ApnaParivar API",
            "version": "1.0.0",
            "status": "active",
            "endpoints": {
                "auth": "/api/auth",
                "families": "/api/families",
                "members": "/api/members",
                "photos": "/api/photos",
                "events": "/api/events",
                "payments": "/api/payments",
                "admin": "/api/admin",
                "uploads": "/uploads",
            },
        }
    )


@bp.get("/health")
def health():
    db = check_health()
    ok = db["status"] == "healthy"
    body = {
        "status": "OK" if ok else "ERROR",
        "timestamp": now_iso(),
        "uptime": round(time.monotonic() - STARTED_AT, 3),
        "environment": current_app.config["ENV_NAME"],
        "database": db,
    }
    return jsonify(body), 200 if ok else 500


@bp.get("/uploads/<path:filename>")
def uploads(filename: str):
    return send_from_directory(current_app.config["UPLOAD_DIR"], filename)
