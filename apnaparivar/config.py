from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Dict

from dotenv import load_dotenv

load_dotenv()

APP_DIR = Path(__file__).resolve().parent.parent


def env_bool(name: str, default: bool = False) -> bool:
    raw = os.environ.get(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


def env_list(name: str, default: str = "") -> list[str]:
    raw = os.environ.get(name, default)
    return [x.strip() for x in raw.split(",") if x.strip()]


def resolve_dir(raw: str | Path) -> Path:
    p = Path(raw)
    if not p.is_absolute():
        p = APP_DIR / p
    return p


def load_config() -> Dict[str, Any]:
    """
    Settings read from the environment (and .env when present).

    DATA_DIR holds the sqlite file; UPLOAD_DIR holds uploaded photos and
    defaults to DATA_DIR/uploads.
    """
    data_dir = resolve_dir(os.environ.get("DATA_DIR", "data"))
    upload_dir = os.environ.get("UPLOAD_DIR")
    frontend_url = os.environ.get("FRONTEND_URL", "http://localhost:3000")
    backend_url = os.environ.get("BACKEND_URL", "http://localhost:5000")

    return {
        "SECRET_KEY": os.environ.get("SESSION_SECRET", "dev-secret-change-me"),
        "JWT_SECRET": os.environ.get("JWT_SECRET", "dev-jwt-secret-change-me"),
        "JWT_TTL_DAYS": int(os.environ.get("JWT_TTL_DAYS", "7")),
        "DATA_DIR": data_dir,
        "UPLOAD_DIR": resolve_dir(upload_dir) if upload_dir else data_dir / "uploads",
        "MAX_UPLOAD_BYTES": int(os.environ.get("MAX_UPLOAD_BYTES", str(10 * 1024 * 1024))),
        "MAX_UPLOAD_FILES": 10,
        "FRONTEND_URL": frontend_url.rstrip("/"),
        "BACKEND_URL": backend_url.rstrip("/"),
        "CORS_ORIGINS": env_list(
            "CORS_ORIGINS",
            f"{frontend_url},http://localhost:5173,http://localhost:5174,http://localhost:5175",
        ),
        "GOOGLE_CLIENT_ID": os.environ.get("GOOGLE_CLIENT_ID", ""),
        "GOOGLE_CLIENT_SECRET": os.environ.get("GOOGLE_CLIENT_SECRET", ""),
        "GOOGLE_CALLBACK_URL": os.environ.get(
            "GOOGLE_CALLBACK_URL", f"{backend_url.rstrip('/')}/api/auth/google/callback"
        ),
        "ALLOWED_EMAIL_DOMAIN": os.environ.get("ALLOWED_EMAIL_DOMAIN", "gmail.com").strip().lower(),
        "PAYMENTS_ENABLED": env_bool("PAYMENTS_ENABLED"),
        "RAZORPAY_KEY_ID": os.environ.get("RAZORPAY_KEY_ID", ""),
        "RAZORPAY_KEY_SECRET": os.environ.get("RAZORPAY_KEY_SECRET", ""),
        "RAZORPAY_WEBHOOK_SECRET": os.environ.get("RAZORPAY_WEBHOOK_SECRET", ""),
        "RAZORPAY_API_URL": os.environ.get("RAZORPAY_API_URL", "https://api.razorpay.com/v1"),
        "SUBSCRIPTION_AMOUNT_PAISE": int(os.environ.get("SUBSCRIPTION_AMOUNT_PAISE", "50000")),
        "ENFORCE_SUBSCRIPTION": env_bool("ENFORCE_SUBSCRIPTION"),
        "LOG_LEVEL": os.environ.get("LOG_LEVEL", "INFO").upper(),
        "COOKIE_SECURE": env_bool("COOKIE_SECURE", os.environ.get("FLASK_ENV") == "production"),
        "ENV_NAME": os.environ.get("FLASK_ENV", "development"),
    }
