"""Error kinds surfaced by the API and their JSON rendering."""
import logging

from flask import jsonify
from werkzeug.exceptions import HTTPException

logger = logging.getLogger(__name__)


class AppError(Exception):
    """Base class for failures that are safe to show to the caller."""

    kind = "server_error"
    status_code = 500

    def __init__(self, message, details=None):
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self):
        body = {"success": False, "error": self.kind, "message": self.message}
        if self.details:
            body["details"] = self.details
        return body


class ValidationError(AppError):
    kind = "validation_error"
    status_code = 400


class DuplicateIdentity(AppError):
    kind = "duplicate_identity"
    status_code = 409


class InvalidCredentials(AppError):
    kind = "invalid_credentials"
    status_code = 401

    def __init__(self):
        # same text for unknown email and wrong password
        super().__init__("Invalid credentials")


class Unauthorized(AppError):
    kind = "unauthorized"
    status_code = 401


class Forbidden(AppError):
    kind = "forbidden"
    status_code = 403


class NotFound(AppError):
    kind = "not_found"
    status_code = 404


class Conflict(AppError):
    kind = "conflict"
    status_code = 409


class UpstreamFailure(AppError):
    kind = "upstream_failure"
    status_code = 502


def error_response(err):
    return jsonify(err.to_dict()), err.status_code


def register_error_handlers(app):
    @app.errorhandler(AppError)
    def handle_app_error(err):
        return error_response(err)

    @app.errorhandler(HTTPException)
    def handle_http_error(err):
        kind = (err.name or "error").lower().replace(" ", "_")
        body = {"success": False, "error": kind, "message": err.description}
        return jsonify(body), err.code

    @app.errorhandler(Exception)
    def handle_unexpected(err):
        logger.exception("Unhandled error: %s", err)
        body = {"success": False, "error": "server_error", "message": "Server error"}
        return jsonify(body), 500
