"""HTTP API exposing the administrative operations as JSON endpoints.

Every response uses the envelope ``{"success": bool, "message": str,
"data": ...}``. When an API key is configured, each request must carry it
in the ``X-API-Key`` header.
"""
from __future__ import annotations

import hmac
import logging
from collections.abc import Mapping

from flask import Flask, Response, jsonify, request
from werkzeug.exceptions import HTTPException

from .errors import ErrorKind
from .results import UNAUTHORIZED, Failure, Success, envelope
from .service import AdminService

LOGGER = logging.getLogger(__name__)

API_KEY_HEADER = "X-API-Key"

STATUS_CODES: dict[ErrorKind, int] = {
    ErrorKind.INVALID_INPUT: 400,
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.CONFLICT: 409,
}


class InvalidBody(ValueError):
    """Raised when a request body is missing or has the wrong shape."""


def status_for(result: Success[object] | Failure) -> int:
    """Return the HTTP status code for *result*."""
    if isinstance(result, Success):
        return 200
    return STATUS_CODES.get(result.kind, 500)


def _respond(result: Success[object] | Failure) -> tuple[Response, int]:
    return jsonify(envelope(result)), status_for(result)


def _message(status: int, message: str) -> tuple[Response, int]:
    return jsonify({"success": False, "message": message}), status


def _json_body() -> Mapping[str, object]:
    payload = request.get_json(silent=True)
    if not isinstance(payload, Mapping):
        raise InvalidBody("Invalid request body")
    return payload


def _string_field(payload: Mapping[str, object], name: str) -> str:
    value = payload.get(name, "")
    if not isinstance(value, str):
        raise InvalidBody("Invalid request body")
    return value


def _days_field(payload: Mapping[str, object]) -> int:
    value = payload.get("days", 0)
    if isinstance(value, bool) or not isinstance(value, int):
        raise InvalidBody("Invalid request body")
    return value


def create_app(service: AdminService, *, api_key: str | None = None) -> Flask:
    """Return the Flask application serving *service*.

    *api_key* defaults to the contents of the configured key file; an empty
    key disables authentication.
    """
    app = Flask("zivctl")
    app.json.sort_keys = False  # type: ignore[attr-defined]
    token = service.load_api_key() if api_key is None else api_key.strip()
    if not token:
        LOGGER.warning("No API key configured; the API accepts unauthenticated requests")

    @app.before_request
    def _authenticate() -> tuple[Response, int] | None:
        if not token:
            return None
        supplied = request.headers.get(API_KEY_HEADER, "")
        if not hmac.compare_digest(supplied.encode("utf-8"), token.encode("utf-8")):
            return _message(401, UNAUTHORIZED)
        return None

    @app.errorhandler(InvalidBody)
    def _invalid_body(exc: InvalidBody) -> tuple[Response, int]:
        return _message(400, str(exc))

    @app.errorhandler(HTTPException)
    def _http_error(exc: HTTPException) -> tuple[Response, int]:
        status = exc.code or 500
        if status == 405:
            return _message(405, "Method not allowed")
        return _message(status, exc.name)

    # Credentials ---------------------------------------------------
    @app.post("/api/user/create")
    def create_user() -> tuple[Response, int]:
        payload = _json_body()
        return _respond(
            service.create_user(_string_field(payload, "password"), _days_field(payload))
        )

    @app.post("/api/user/trial")
    def create_trial() -> tuple[Response, int]:
        return _respond(service.create_trial())

    @app.post("/api/user/delete")
    def delete_user() -> tuple[Response, int]:
        payload = _json_body()
        return _respond(service.delete_user(_string_field(payload, "password")))

    @app.post("/api/user/renew")
    def renew_user() -> tuple[Response, int]:
        payload = _json_body()
        return _respond(
            service.renew_user(_string_field(payload, "password"), _days_field(payload))
        )

    @app.get("/api/users")
    def list_users() -> tuple[Response, int]:
        return _respond(service.list_users())

    @app.get("/api/info")
    def info() -> tuple[Response, int]:
        return _respond(service.info())

    # Backups -------------------------------------------------------
    @app.post("/api/backup")
    def create_backup() -> tuple[Response, int]:
        return _respond(service.create_backup())

    @app.get("/api/backup/list")
    def list_backups() -> tuple[Response, int]:
        return _respond(service.list_backups())

    @app.post("/api/restore")
    def restore_backup() -> tuple[Response, int]:
        payload = _json_body()
        return _respond(service.restore_backup(_string_field(payload, "backup_id")))

    @app.post("/api/backup/cleanup")
    def cleanup_backups() -> tuple[Response, int]:
        return _respond(service.cleanup_backups())

    @app.post("/api/backup/auto")
    def toggle_auto_backup() -> tuple[Response, int]:
        return _respond(service.toggle_auto_backup())

    return app


def run_server(service: AdminService, *, host: str, port: int) -> None:
    """Serve the API with one thread per request until interrupted."""
    app = create_app(service)
    LOGGER.info("zivctl API listening on %s:%s", host, port)
    try:
        app.run(host=host, port=port, threaded=True, use_reloader=False)
    finally:
        service.wait_for_restarts(timeout=5.0)


__all__ = ["API_KEY_HEADER", "create_app", "run_server", "status_for"]
