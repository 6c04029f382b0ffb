# -*- coding: utf-8 -*-
"""Public routes blueprint."""

from flask import Blueprint

from karmatic.utils.http_helpers import api_ok

bp = Blueprint('public', __name__)


@bp.route('/healthz')
def healthz():
    return api_ok({"status": "ok"})
