# -*- coding: utf-8 -*-
"""Search history helpers: listing, lookup, soft delete, restore, retention and transfer."""

import json
import logging
import os
from dataclasses import dataclass
from datetime import datetime, time, timedelta, timezone
from typing import Iterable, List, Optional, Tuple
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from flask import current_app, has_app_context
from sqlalchemy.exc import SQLAlchemyError

from karmatic.exceptions import Forbidden, InvalidState, NotFound, PersistenceError
from karmatic.extensions import db
from karmatic.models import SearchHistory, utcnow
from karmatic.quota import QuotaStore
from karmatic.session import read_session_id
from karmatic.utils.http_helpers import current_user_id

HISTORY_RETENTION_DAYS = 30
HISTORY_LIST_LIMIT = 100
DEFAULT_APP_TZ = "America/Mexico_City"

# (key, label) in display order
HISTORY_GROUPS = (
    ("today", "Hoy"),
    ("yesterday", "Ayer"),
    ("lastWeek", "Última semana"),
    ("lastMonth", "Último mes"),
    ("older", "Más antiguo"),
)

logger = logging.getLogger(__name__)


def resolve_app_timezone() -> Tuple[ZoneInfo, str]:
    """
    Resolve application timezone from APP_TZ env with safe fallback to UTC.
    """
    tz_name = os.environ.get("APP_TZ", DEFAULT_APP_TZ).strip() or DEFAULT_APP_TZ
    try:
        return ZoneInfo(tz_name), tz_name
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning("[HISTORY] Invalid APP_TZ='%s', falling back to UTC", tz_name)
        return ZoneInfo("UTC"), "UTC"


@dataclass(frozen=True)
class HistoryOwner:
    user_id: Optional[int] = None
    anonymous_id: Optional[int] = None

    @property
    def is_known(self) -> bool:
        return self.user_id is not None or self.anonymous_id is not None

    def owns(self, item: SearchHistory) -> bool:
        if self.user_id is not None:
            return item.user_id == self.user_id
        return self.anonymous_id is not None and item.anonymous_id == self.anonymous_id


def resolve_owner() -> HistoryOwner:
    """
    Identify who is asking: the signed-in user, or the anonymous quota
    record behind the session cookie. Never mints a new cookie.
    """
    user_id = current_user_id()
    if user_id is not None:
        return HistoryOwner(user_id=user_id)
    session_id = read_session_id()
    if not session_id:
        return HistoryOwner()
    record = QuotaStore().find(session_id)
    return HistoryOwner(anonymous_id=record.id if record else None)


def group_searches_by_date(items: Iterable[SearchHistory], now_local: datetime) -> List[dict]:
    """
    Bucket items (created_at in naive UTC) relative to local midnight of
    ``now_local``. Empty buckets are omitted.
    """
    tz = now_local.tzinfo or timezone.utc
    today = datetime.combine(now_local.date(), time.min, tzinfo=tz)
    bounds = (
        ("today", today),
        ("yesterday", today - timedelta(days=1)),
        ("lastWeek", today - timedelta(days=7)),
        ("lastMonth", today - timedelta(days=30)),
    )
    buckets = {key: [] for key, _ in HISTORY_GROUPS}
    for item in items:
        created_local = item.created_at.replace(tzinfo=timezone.utc).astimezone(tz)
        key = next((name for name, start in bounds if created_local >= start), "older")
        buckets[key].append(item.to_dict())

    return [
        {"key": key, "label": label, "searches": buckets[key]}
        for key, label in HISTORY_GROUPS
        if buckets[key]
    ]


def list_history(include_deleted: bool = False, now: Optional[datetime] = None) -> dict:
    owner = resolve_owner()
    if not owner.is_known:
        return {"searches": [], "total": 0}

    q = SearchHistory.query
    if owner.user_id is not None:
        q = q.filter(SearchHistory.user_id == owner.user_id)
    else:
        q = q.filter(SearchHistory.anonymous_id == owner.anonymous_id)
    if not include_deleted:
        q = q.filter(SearchHistory.deleted_at.is_(None))

    try:
        items = q.order_by(SearchHistory.created_at.desc(), SearchHistory.id.desc()).limit(HISTORY_LIST_LIMIT).all()
    except SQLAlchemyError as e:
        db.session.rollback()
        logger.exception("[HISTORY] list query failed")
        raise PersistenceError("Failed to fetch search history") from e

    tz = current_app.config.get("APP_TZ_OBJ") if has_app_context() else None
    tz = tz or ZoneInfo("UTC")
    now_local = (now or utcnow()).replace(tzinfo=timezone.utc).astimezone(tz)
    return {"searches": group_searches_by_date(items, now_local), "total": len(items)}


def _get_owned_item(item_id: int) -> SearchHistory:
    item = db.session.get(SearchHistory, item_id)
    if item is None:
        raise NotFound("Search history not found")
    if not resolve_owner().owns(item):
        raise Forbidden("You do not own this search")
    return item


def _decode_results(raw):
    if raw is None:
        return None
    if not isinstance(raw, str):
        return raw
    try:
        return json.loads(raw)
    except ValueError:
        logger.warning("[HISTORY] stored results are not valid JSON")
        return None


def get_search(item_id: int) -> dict:
    """One owned history item together with its saved results payload."""
    try:
        item = _get_owned_item(item_id)
    except SQLAlchemyError as e:
        db.session.rollback()
        logger.exception("[HISTORY] fetch failed id=%s", item_id)
        raise PersistenceError("Failed to fetch search history") from e
    data = item.to_dict()
    data["results"] = _decode_results(item.results_json)
    return data


def soft_delete_search(item_id: int, now: Optional[datetime] = None) -> SearchHistory:
    try:
        item = _get_owned_item(item_id)
        if item.deleted_at is None:
            item.deleted_at = now or utcnow()
            db.session.commit()
            logger.info("[HISTORY] soft deleted id=%s", item_id)
        return item
    except SQLAlchemyError as e:
        db.session.rollback()
        logger.exception("[HISTORY] soft delete failed id=%s", item_id)
        raise PersistenceError("Failed to delete search history") from e


def restore_search(item_id: int) -> SearchHistory:
    try:
        item = _get_owned_item(item_id)
        if item.deleted_at is None:
            raise InvalidState("Search is not deleted", code="not_deleted")
        item.deleted_at = None
        db.session.commit()
        logger.info("[HISTORY] restored id=%s", item_id)
        return item
    except SQLAlchemyError as e:
        db.session.rollback()
        logger.exception("[HISTORY] restore failed id=%s", item_id)
        raise PersistenceError("Failed to restore search history") from e


def _retention_cutoff(now: Optional[datetime], retention_days: Optional[int]) -> Tuple[datetime, int]:
    if retention_days is None:
        retention_days = HISTORY_RETENTION_DAYS
        if has_app_context():
            retention_days = int(current_app.config.get("HISTORY_RETENTION_DAYS", retention_days))
    return (now or utcnow()) - timedelta(days=retention_days), retention_days


def _expired_deleted_query(cutoff: datetime):
    return SearchHistory.query.filter(
        SearchHistory.deleted_at.isnot(None),
        SearchHistory.deleted_at < cutoff,
    )


def purge_deleted_history(now: Optional[datetime] = None, retention_days: Optional[int] = None) -> int:
    """Hard-delete items soft-deleted longer ago than the retention period."""
    cutoff, retention_days = _retention_cutoff(now, retention_days)
    try:
        deleted = _expired_deleted_query(cutoff).delete(synchronize_session=False)
        db.session.commit()
    except SQLAlchemyError as e:
        db.session.rollback()
        logger.exception("[HISTORY] cleanup failed")
        raise PersistenceError("Failed to clean up old records") from e
    logger.info("[HISTORY] Cleaned up %s old soft-deleted records (older than %s days)", deleted, retention_days)
    return deleted


def cleanup_status(now: Optional[datetime] = None, retention_days: Optional[int] = None) -> dict:
    cutoff, retention_days = _retention_cutoff(now, retention_days)
    try:
        pending = _expired_deleted_query(cutoff).count()
        total_soft_deleted = SearchHistory.query.filter(SearchHistory.deleted_at.isnot(None)).count()
    except SQLAlchemyError as e:
        db.session.rollback()
        logger.exception("[HISTORY] cleanup status failed")
        raise PersistenceError("Failed to get cleanup status") from e
    return {
        "pendingCleanup": pending,
        "totalSoftDeleted": total_soft_deleted,
        "cleanupThresholdDays": retention_days,
    }


def transfer_anonymous_history(session_id: Optional[str], user_id: int) -> int:
    """
    Move every history item of the anonymous session to ``user_id``.
    The quota record itself stays; it only decays with its window.
    """
    if not session_id:
        return 0
    try:
        record = QuotaStore().find(session_id)
        if record is None:
            return 0
        moved = (
            SearchHistory.query
            .filter(SearchHistory.anonymous_id == record.id)
            .update({"user_id": user_id, "anonymous_id": None}, synchronize_session=False)
        )
        db.session.commit()
    except SQLAlchemyError as e:
        db.session.rollback()
        logger.exception("[HISTORY] transfer failed user_id=%s", user_id)
        raise PersistenceError("Failed to transfer search history") from e
    logger.info("[HISTORY] Transferred %s searches to user_id=%s", moved, user_id)
    return moved
