# -*- coding: utf-8 -*-
"""HTTP helper functions shared by the blueprints."""

import hmac
from typing import Optional, Mapping, Any, Dict
from flask import jsonify, g, current_app, request
from flask_login import current_user


def get_request_id() -> str:
    """Get the current request_id from Flask g object."""
    return getattr(g, 'request_id', 'unknown')


def api_ok(payload: Optional[dict] = None, status: int = 200, request_id: Optional[str] = None):
    """Standard API success response."""
    rid = request_id or get_request_id()
    resp = jsonify({"ok": True, "data": payload, "request_id": rid})
    resp.status_code = status
    resp.headers["X-Request-ID"] = rid
    return resp


def api_error(code: str, message: str, status: int = 400, details: Optional[Mapping[str, Any]] = None, request_id: Optional[str] = None):
    """Standard API error response."""
    rid = request_id or get_request_id()
    body: Dict[str, Any] = {"ok": False, "error": {"code": code, "message": message}, "request_id": rid}
    if details is not None:
        body["error"]["details"] = details
    resp = jsonify(body)
    resp.status_code = status
    resp.headers["X-Request-ID"] = rid
    return resp


def current_user_id() -> Optional[int]:
    """Database id of the signed-in user, None for anonymous visitors."""
    if current_user.is_authenticated:
        return current_user.id
    return None


def has_valid_bearer_token(config_key: str) -> bool:
    """
    Compare the Authorization bearer token with app.config[config_key].
    An unset key never matches.
    """
    expected = (current_app.config.get(config_key) or "").strip()
    if not expected:
        current_app.logger.warning("[AUTH] %s not configured; rejecting bearer request", config_key)
        return False
    header = request.headers.get("Authorization", "")
    scheme, _, token = header.partition(" ")
    if scheme.lower() != "bearer" or not token:
        return False
    return hmac.compare_digest(token.strip().encode("utf-8"), expected.encode("utf-8"))


def log_rejection(reason: str, details: str = "") -> None:
    """
    Safely log rejection reasons without exposing sensitive data.

    Args:
        reason: Short category (unauthenticated, quota, validation, server_error)
        details: Safe description of the issue (no secrets or DB details)
    """
    user_id = current_user.id if current_user.is_authenticated else "anonymous"
    endpoint = request.endpoint or "unknown"
    request_id = get_request_id()
    current_app.logger.warning(f"[REJECT] request_id={request_id} endpoint={endpoint} user={user_id} reason={reason} details={details}")
