from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Mapping, Optional

from flask import Flask
from flask_cors import CORS

from . import db
from .config import load_config
from .errors import register_error_handlers

__version__ = "1.0.0"


def create_app(overrides: Optional[Mapping[str, Any]] = None) -> Flask:
    app = Flask(__name__)
    app.config.update(load_config())
    if overrides:
        app.config.update(overrides)

    # Paths may arrive as strings from overrides
    app.config["DATA_DIR"] = Path(app.config["DATA_DIR"])
    if overrides and "DATA_DIR" in overrides and "UPLOAD_DIR" not in overrides:
        app.config["UPLOAD_DIR"] = app.config["DATA_DIR"] / "uploads"
    app.config["UPLOAD_DIR"] = Path(app.config["UPLOAD_DIR"])

    # Whole multipart request: every allowed file plus form fields
    app.config["MAX_CONTENT_LENGTH"] = app.config["MAX_UPLOAD_BYTES"] * app.config["MAX_UPLOAD_FILES"] + 1024 * 1024

    logging.basicConfig(
        level=getattr(logging, str(app.config["LOG_LEVEL"]), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    CORS(
        app,
        origins=app.config["CORS_ORIGINS"],
        supports_credentials=True,
        allow_headers=["Content-Type", "Authorization", "X-Requested-With"],
        methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
    )

    app.config["UPLOAD_DIR"].mkdir(parents=True, exist_ok=True)
    db.init_app(app)
    register_error_handlers(app)

    from .routes import register_blueprints

    register_blueprints(app)
    logging.getLogger(__name__).info("ApnaParivar API ready (%s)", app.config["ENV_NAME"])
    return app
