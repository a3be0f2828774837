from __future__ import annotations

from flask import Blueprint, jsonify

from .. import billing, families, users
from ..auth import superadmin_required
from ..db import get_db, loads

bp = Blueprint("admin", __name__, url_prefix="/api/admin")


def _count(sql: str) -> int:
    return int(get_db().execute(sql).fetchone()[0])


@bp.get("/overview")
@superadmin_required
def overview():
    return jsonify(
        {
            "success": True,
            "data": {
                "users": {
                    "total": _count("SELECT COUNT(*) FROM users"),
                    "active": _count("SELECT COUNT(*) FROM users WHERE is_active = 1"),
                },
                "families": {
                    "total": _count("SELECT COUNT(*) FROM families"),
                    "active": _count("SELECT COUNT(*) FROM families WHERE is_active = 1 AND is_deleted = 0"),
                },
                "payments": {"totalPaid": _count("SELECT COUNT(*) FROM payments WHERE status = 'paid'")},
            },
        }
    )


@bp.get("/users")
@superadmin_required
def list_users():
    rows = get_db().execute("SELECT * FROM users ORDER BY created_at DESC").fetchall()
    return jsonify(
        {
            "success": True,
            "users": [
                {
                    "_id": r["id"],
                    "id": r["id"],
                    "name": r["name"],
                    "email": r["email"],
                    "userType": r["user_type"],
                    "isActive": bool(r["is_active"]),
                    "createdAt": r["created_at"],
                    "lastLoginAt": r["last_login_at"],
                }
                for r in rows
            ],
        }
    )


@bp.get("/families")
@superadmin_required
def list_families():
    rows = get_db().execute(
        """
        SELECT f.*, u.name AS creator_name, u.email AS creator_email
          FROM families f LEFT JOIN users u ON u.id = f.created_by
         WHERE f.is_deleted = 0
         ORDER BY f.created_at DESC
        """
    ).fetchall()
    return jsonify(
        {
            "success": True,
            "families": [
                {
                    "_id": r["id"],
                    "id": r["id"],
                    "familyName": r["family_name"],
                    "familyId": r["slug"],
                    "createdBy": {"_id": r["created_by"], "name": r["creator_name"], "email": r["creator_email"]},
                    "createdAt": r["created_at"],
                    "subscription": families.subscription_dict(r),
                    "stats": loads(r["stats_json"], {}),
                    "isActive": bool(r["is_active"]),
                }
                for r in rows
            ],
        }
    )


@bp.get("/payments")
@superadmin_required
def list_payments():
    rows = get_db().execute("SELECT * FROM payments ORDER BY created_at DESC LIMIT 100").fetchall()
    out = []
    for r in rows:
        family = families.get_family(r["family_id"])
        out.append(
            billing.payment_to_dict(
                r, families.family_summary(family), users.user_summary(users.get_user(r["user_id"]))
            )
        )
    return jsonify({"success": True, "payments": out})
