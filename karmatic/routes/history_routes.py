# -*- coding: utf-8 -*-
"""Search history blueprint: listing, soft delete/restore, transfer and retention cleanup."""

from flask import Blueprint, request
from flask_login import current_user, login_required

from karmatic.exceptions import Unauthorized
from karmatic.services import history_service
from karmatic.session import read_session_id
from karmatic.utils.http_helpers import api_ok, has_valid_bearer_token, log_rejection

bp = Blueprint('history', __name__, url_prefix='/api/search')


def _require_cleanup_token():
    if not has_valid_bearer_token("CLEANUP_SECRET_KEY"):
        log_rejection("unauthenticated", "cleanup bearer token missing or invalid")
        raise Unauthorized("Unauthorized")


@bp.route('/history', methods=['GET'])
def history_list():
    include_deleted = request.args.get("include_deleted", "").lower() in ("1", "true", "yes")
    return api_ok(history_service.list_history(include_deleted=include_deleted))


@bp.route('/history/<int:item_id>', methods=['GET'])
def history_item(item_id):
    return api_ok({"search": history_service.get_search(item_id)})


@bp.route('/history/<int:item_id>', methods=['DELETE'])
def history_delete(item_id):
    item = history_service.soft_delete_search(item_id)
    return api_ok({
        "success": True,
        "message": "Search history deleted successfully",
        "search": item.to_dict(),
    })


@bp.route('/history/<int:item_id>/restore', methods=['POST'])
def history_restore(item_id):
    item = history_service.restore_search(item_id)
    return api_ok({
        "success": True,
        "message": "Search history restored successfully",
        "search": item.to_dict(),
    })


@bp.route('/history/transfer', methods=['POST'])
@login_required
def history_transfer():
    moved = history_service.transfer_anonymous_history(read_session_id(), current_user.id)
    return api_ok({"success": True, "transferred": moved})


@bp.route('/cleanup', methods=['POST'])
def cleanup():
    _require_cleanup_token()
    deleted = history_service.purge_deleted_history()
    return api_ok({
        "success": True,
        "deletedCount": deleted,
        "message": f"Successfully cleaned up {deleted} old records",
    })


@bp.route('/cleanup', methods=['GET'])
def cleanup_status():
    _require_cleanup_token()
    return api_ok(history_service.cleanup_status())
