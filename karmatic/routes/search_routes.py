# -*- coding: utf-8 -*-
"""Search gate blueprint: anonymous quota check, tracked and saved searches."""

import math

from flask import Blueprint, request
from flask_login import current_user

from karmatic.exceptions import SearchLimitExceeded, ValidationError
from karmatic.models import utcnow
from karmatic.quota import log_access_decision
from karmatic.services.search_service import check_search_limit, save_search, track_search
from karmatic.session import get_or_create_session_id, set_session_cookie
from karmatic.utils.http_helpers import api_ok, api_error, log_rejection
from karmatic.utils.validation import validate_save_request, validate_search_request

bp = Blueprint('search', __name__, url_prefix='/api/search')

LIMIT_REACHED_MESSAGE = "Alcanzaste tu búsqueda gratuita de hoy. Crea una cuenta para seguir buscando."


def _json_body():
    if not request.is_json:
        raise ValidationError("Content-Type must be application/json", code="invalid_content_type", field="payload")
    data = request.get_json(silent=True)
    if data is None:
        raise ValidationError("Invalid JSON payload", code="invalid_json", field="payload")
    return data


def _with_session(payload: dict, session_id):
    if session_id:
        payload["sessionId"] = session_id
    resp = api_ok(payload)
    if session_id:
        set_session_cookie(resp, session_id)
    return resp


@bp.route('/check-limit', methods=['GET'])
def check_limit():
    state, session_id = check_search_limit()
    return _with_session(state.to_dict(), session_id)


@bp.route('/track', methods=['POST'])
def track():
    validated = validate_search_request(_json_body())
    user_id = current_user.id if current_user.is_authenticated else None
    try:
        state, session_id, item = track_search(validated["location"], validated["query"])
    except SearchLimitExceeded as e:
        log_access_decision('/api/search/track', user_id, 'rejected', 'anonymous search limit reached')
        log_rejection("quota", "anonymous search limit reached")
        resp = api_error(e.code, LIMIT_REACHED_MESSAGE, status=429, details=e.details)
        if e.state is not None and e.state.resets_at is not None:
            retry_after = max(0, math.ceil((e.state.resets_at - utcnow()).total_seconds()))
            resp.headers["Retry-After"] = str(retry_after)
        session_id, _ = get_or_create_session_id()
        return set_session_cookie(resp, session_id)

    log_access_decision('/api/search/track', user_id, 'allowed')
    payload = {"success": True, "searchId": item.id}
    payload.update(state.to_dict())
    return _with_session(payload, session_id)


@bp.route('/save', methods=['POST'])
def save():
    validated = validate_save_request(_json_body())
    item, session_id = save_search(validated)
    return _with_session({"success": True, "searchId": item.id}, session_id)
