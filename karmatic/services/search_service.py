# -*- coding: utf-8 -*-
"""Search gate: quota check, tracked searches and saved searches."""

import logging
from datetime import datetime
from typing import Optional, Tuple

from sqlalchemy.exc import SQLAlchemyError

from karmatic.exceptions import KarmaticError, PersistenceError
from karmatic.extensions import db
from karmatic.models import SearchHistory, utcnow
from karmatic.quota import QuotaState, build_quota_mutator
from karmatic.session import get_or_create_session_id
from karmatic.utils.http_helpers import current_user_id

logger = logging.getLogger(__name__)


def check_search_limit(now: Optional[datetime] = None) -> Tuple[QuotaState, Optional[str]]:
    """
    Evaluate the caller's quota without writing anything.

    Signed-in users are unlimited and never touch the quota table.
    Returns (state, session_id); session_id is None for signed-in users.
    """
    if current_user_id() is not None:
        return QuotaState.unlimited(), None

    session_id, _ = get_or_create_session_id()
    mutator = build_quota_mutator()
    try:
        record = mutator.store.find(session_id)
    except SQLAlchemyError as e:
        db.session.rollback()
        logger.exception("[SEARCH] quota lookup failed")
        raise PersistenceError("Failed to check search limit") from e
    return mutator.evaluate(record, now or utcnow()), session_id


def track_search(location: str, query: Optional[str], now: Optional[datetime] = None) -> Tuple[QuotaState, Optional[str], SearchHistory]:
    """
    Record one performed search.

    Anonymous callers are charged against their quota first; the charge and
    the history row commit together, so a failed insert never costs a search.
    Raises SearchLimitExceeded (nothing written) when the window is used up.
    """
    now = now or utcnow()
    user_id = current_user_id()
    try:
        if user_id is not None:
            item = SearchHistory(user_id=user_id, location=location, search_query=query, created_at=now)
            db.session.add(item)
            db.session.commit()
            logger.info("[SEARCH] tracked user_id=%s history_id=%s", user_id, item.id)
            return QuotaState.unlimited(), None, item

        session_id, _ = get_or_create_session_id()
        mutator = build_quota_mutator()
        state = mutator.increment(session_id, now)
        record = mutator.store.find(session_id)
        item = SearchHistory(anonymous_id=record.id, location=location, search_query=query, created_at=now)
        db.session.add(item)
        db.session.commit()
        logger.info("[SEARCH] tracked anonymous history_id=%s remaining=%s", item.id, state.remaining)
        return state, session_id, item
    except KarmaticError:
        db.session.rollback()
        raise
    except SQLAlchemyError as e:
        db.session.rollback()
        logger.exception("[SEARCH] track failed")
        raise PersistenceError("Failed to track search") from e


def save_search(validated: dict, now: Optional[datetime] = None) -> Tuple[SearchHistory, Optional[str]]:
    """
    Persist a search together with its results payload. Does not charge quota.
    """
    now = now or utcnow()
    user_id = current_user_id()
    results = {
        "agencies": validated.get("results") or [],
        "placeId": validated.get("place_id"),
        "coordinates": validated.get("coordinates"),
        "searchedAt": now.isoformat(),
    }
    session_id = None
    try:
        if user_id is not None:
            item = SearchHistory(user_id=user_id, created_at=now)
        else:
            session_id, _ = get_or_create_session_id()
            store = build_quota_mutator().store
            store.insert_if_absent(session_id, now, search_count=0)
            item = SearchHistory(anonymous_id=store.find(session_id).id, created_at=now)
        item.location = validated["location"]
        item.search_query = validated.get("query")
        item.results_json = results
        db.session.add(item)
        db.session.commit()
    except SQLAlchemyError as e:
        db.session.rollback()
        logger.exception("[SEARCH] save failed")
        raise PersistenceError("Failed to save search") from e

    logger.info("[SEARCH] saved history_id=%s results=%s", item.id, len(results["agencies"]))
    return item, session_id
