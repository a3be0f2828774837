from __future__ import annotations

import logging
from typing import Any

from flask import Flask, jsonify
from werkzeug.exceptions import HTTPException, RequestEntityTooLarge

log = logging.getLogger(__name__)

AVAILABLE_ROUTES = [
    "/",
    "/health",
    "/api/auth",
    "/api/families",
    "/api/members",
    "/api/photos",
    "/api/events",
    "/api/admin",
    "/api/payments",
]


class ApiError(Exception):
    """A failure that maps straight onto an HTTP status and JSON message."""

    def __init__(self, status: int, message: str, **extra: Any):
        super().__init__(message)
        self.status = status
        self.message = message
        self.extra = extra

    def to_dict(self) -> dict:
        return {"success": False, "message": self.message, **self.extra}


def bad_request(message: str, **extra: Any) -> ApiError:
    return ApiError(400, message, **extra)


def forbidden(message: str) -> ApiError:
    return ApiError(403, message)


def not_found(message: str) -> ApiError:
    return ApiError(404, message)


def register_error_handlers(app: Flask) -> None:
    @app.errorhandler(ApiError)
    def handle_api_error(err: ApiError):
        return jsonify(err.to_dict()), err.status

    @app.errorhandler(RequestEntityTooLarge)
    def handle_too_large(err: RequestEntityTooLarge):
        return jsonify({"success": False, "message": "Uploaded file is too large"}), 413

    @app.errorhandler(404)
    def handle_not_found(err: HTTPException):
        return (
            jsonify({"success": False, "message": "Route not found", "availableRoutes": AVAILABLE_ROUTES}),
            404,
        )

    @app.errorhandler(HTTPException)
    def handle_http_error(err: HTTPException):
        return jsonify({"success": False, "message": err.description or err.name}), err.code or 500

    @app.errorhandler(Exception)
    def handle_unexpected(err: Exception):
        log.exception("Unhandled error: %s", err)
        body: dict = {"success": False, "message": "Something went wrong!"}
        if app.config.get("ENV_NAME") == "development":
            body["error"] = str(err)
        return jsonify(body), 500
