# -*- coding: utf-8 -*-
"""Anonymous search session cookie: read, mint and (re)issue."""

import re
import secrets
from typing import Tuple

from flask import current_app, g, request

SEARCH_SESSION_COOKIE = "karmatic_search_session"
SESSION_COOKIE_MAX_AGE = 60 * 60 * 24  # 24 hours

_SESSION_ID_RE = re.compile(r"^[A-Za-z0-9_-]{16,64}$")


def new_session_id() -> str:
    return secrets.token_urlsafe(16)


def cookie_name() -> str:
    return current_app.config.get("SEARCH_SESSION_COOKIE", SEARCH_SESSION_COOKIE)


def read_session_id():
    """Return the identifier carried by the request cookie, or None."""
    value = (request.cookies.get(cookie_name()) or "").strip()
    if value and _SESSION_ID_RE.match(value):
        return value
    return None


def get_or_create_session_id() -> Tuple[str, bool]:
    """
    Resolve the anonymous identifier for this request.

    Returns (identifier, is_new). The value is memoized on ``g`` so every
    call within one request agrees; the response still has to carry it via
    :func:`set_session_cookie`.
    """
    cached = getattr(g, "search_session_id", None)
    if cached:
        return cached, g.search_session_is_new

    existing = read_session_id()
    if existing:
        session_id, is_new = existing, False
    else:
        session_id, is_new = new_session_id(), True
    g.search_session_id = session_id
    g.search_session_is_new = is_new
    return session_id, is_new


def set_session_cookie(response, session_id: str):
    response.set_cookie(
        cookie_name(),
        session_id,
        max_age=current_app.config.get("SEARCH_SESSION_MAX_AGE", SESSION_COOKIE_MAX_AGE),
        path="/",
        secure=bool(current_app.config.get("SESSION_COOKIE_SECURE", False)),
        httponly=True,
        samesite="Lax",
    )
    return response
