import logging
import math
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional, Tuple

from flask import current_app, has_app_context
from sqlalchemy import update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from karmatic.exceptions import PersistenceError, SearchLimitExceeded
from karmatic.extensions import db
from karmatic.models import AnonymousSearchQuota, utcnow

# Defaults (overridden by app config)
ANON_SEARCH_LIMIT = 1
ANON_SEARCH_WINDOW_HOURS = 24

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class QuotaState:
    remaining: float
    total: float
    is_authenticated: bool = False
    resets_at: Optional[datetime] = None

    @classmethod
    def unlimited(cls) -> "QuotaState":
        return cls(remaining=math.inf, total=math.inf, is_authenticated=True)

    @property
    def is_unlimited(self) -> bool:
        return math.isinf(self.total)

    @property
    def can_search(self) -> bool:
        return self.remaining > 0

    def to_dict(self) -> dict:
        # JSON has no infinity; unlimited callers get null counts instead.
        return {
            "remaining": None if math.isinf(self.remaining) else int(self.remaining),
            "total": None if math.isinf(self.total) else int(self.total),
            "unlimited": self.is_unlimited,
            "isAuthenticated": self.is_authenticated,
            "canSearch": self.can_search,
            "resetsAt": self.resets_at.isoformat() if self.resets_at else None,
        }


def resolve_quota_policy() -> Tuple[int, timedelta]:
    """
    Read (limit, window) from app config, falling back to module defaults.
    """
    total = ANON_SEARCH_LIMIT
    hours = ANON_SEARCH_WINDOW_HOURS
    if has_app_context():
        total = int(current_app.config.get("ANON_SEARCH_LIMIT", total))
        hours = int(current_app.config.get("ANON_SEARCH_WINDOW_HOURS", hours))
    return total, timedelta(hours=hours)


def window_expired(last_search_at: datetime, now: datetime, window: timedelta) -> bool:
    return now - last_search_at > window


def evaluate_quota(
    record: Optional[AnonymousSearchQuota],
    now: datetime,
    *,
    total: int = ANON_SEARCH_LIMIT,
    window: timedelta = timedelta(hours=ANON_SEARCH_WINDOW_HOURS),
) -> QuotaState:
    """
    Compute the anonymous quota state of ``record`` at ``now``.

    A missing record or one whose last search is older than ``window`` has the
    full allowance. Pure: reads the record's attributes, writes nothing.
    """
    if record is None or window_expired(record.last_search_at, now, window):
        return QuotaState(remaining=total, total=total)
    remaining = max(0, total - record.search_count)
    resets_at = record.last_search_at + window if remaining == 0 else None
    return QuotaState(remaining=remaining, total=total, resets_at=resets_at)


class QuotaStore:
    """
    Persistence for :class:`AnonymousSearchQuota` rows.

    Never commits; the caller owns the transaction. The guarded helpers are
    single UPDATE statements and report whether a row matched, which is what
    keeps concurrent increments for one identifier from both passing the limit.
    """

    def __init__(self, session=None):
        self.session = session if session is not None else db.session

    def _dialect_name(self) -> str:
        bind = self.session.get_bind()
        return bind.dialect.name if bind else ""

    def find(self, identifier: str) -> Optional[AnonymousSearchQuota]:
        return (
            self.session.query(AnonymousSearchQuota)
            .filter_by(identifier=identifier)
            .populate_existing()
            .first()
        )

    def insert_if_absent(self, identifier: str, now: datetime, search_count: int = 1) -> bool:
        """Insert a row for ``identifier``; False when one already existed."""
        dialect_name = self._dialect_name()
        base_values = {
            "identifier": identifier,
            "search_count": search_count,
            "last_search_at": now,
            "created_at": now,
        }

        if dialect_name == "postgresql":
            from sqlalchemy.dialects.postgresql import insert as pg_insert
            stmt = pg_insert(AnonymousSearchQuota).values(**base_values).on_conflict_do_nothing(
                index_elements=["identifier"]
            )
            return self.session.execute(stmt).rowcount == 1
        if dialect_name == "sqlite":
            from sqlalchemy.dialects.sqlite import insert as sqlite_insert
            stmt = sqlite_insert(AnonymousSearchQuota).values(**base_values).on_conflict_do_nothing(
                index_elements=["identifier"]
            )
            return self.session.execute(stmt).rowcount == 1

        try:
            with self.session.begin_nested():
                self.session.add(AnonymousSearchQuota(**base_values))
            return True
        except IntegrityError:
            return False

    def create(self, identifier: str, now: Optional[datetime] = None) -> Tuple[AnonymousSearchQuota, bool]:
        """Return (record, created); created is False when the row already existed."""
        created = self.insert_if_absent(identifier, now or utcnow(), search_count=1)
        return self.find(identifier), created

    def update(self, identifier: str, search_count: int, last_search_at: datetime) -> Optional[AnonymousSearchQuota]:
        self.session.execute(
            update(AnonymousSearchQuota)
            .where(AnonymousSearchQuota.identifier == identifier)
            .values(search_count=search_count, last_search_at=last_search_at)
            .execution_options(synchronize_session=False)
        )
        return self.find(identifier)

    def reset_expired_window(self, identifier: str, now: datetime, window: timedelta) -> bool:
        """Start a fresh window with this search counted, only if the old one lapsed."""
        result = self.session.execute(
            update(AnonymousSearchQuota)
            .where(
                AnonymousSearchQuota.identifier == identifier,
                AnonymousSearchQuota.last_search_at < now - window,
            )
            .values(search_count=1, last_search_at=now)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    def increment_within_window(self, identifier: str, now: datetime, window: timedelta, total: int) -> bool:
        result = self.session.execute(
            update(AnonymousSearchQuota)
            .where(
                AnonymousSearchQuota.identifier == identifier,
                AnonymousSearchQuota.search_count < total,
                AnonymousSearchQuota.last_search_at >= now - window,
            )
            .values(
                search_count=AnonymousSearchQuota.search_count + 1,
                last_search_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1


class QuotaMutator:
    def __init__(self, store: QuotaStore, total: int = ANON_SEARCH_LIMIT,
                 window: timedelta = timedelta(hours=ANON_SEARCH_WINDOW_HOURS)):
        self.store = store
        self.total = total
        self.window = window

    def evaluate(self, record: Optional[AnonymousSearchQuota], now: datetime) -> QuotaState:
        return evaluate_quota(record, now, total=self.total, window=self.window)

    def increment(self, identifier: str, now: Optional[datetime] = None) -> QuotaState:
        """
        Charge one search to ``identifier``.

        Raises SearchLimitExceeded without writing when the window is used up.
        """
        now = now or utcnow()
        try:
            if self.total <= 0:
                raise SearchLimitExceeded(state=self.evaluate(self.store.find(identifier), now))

            if self.store.insert_if_absent(identifier, now, search_count=1):
                outcome = "created"
            elif self.store.reset_expired_window(identifier, now, self.window):
                outcome = "window_reset"
            elif self.store.increment_within_window(identifier, now, self.window, self.total):
                outcome = "incremented"
            else:
                state = self.evaluate(self.store.find(identifier), now)
                logger.info("[QUOTA] limit reached identifier=%s total=%s", _mask(identifier), self.total)
                raise SearchLimitExceeded(state=state)

            record = self.store.find(identifier)
        except SQLAlchemyError as e:
            logger.exception("[QUOTA] increment failed identifier=%s", _mask(identifier))
            raise PersistenceError("Failed to update search quota") from e

        state = self.evaluate(record, now)
        logger.info(
            "[QUOTA] %s identifier=%s count=%s remaining=%s",
            outcome,
            _mask(identifier),
            record.search_count,
            state.remaining,
        )
        return state

    def reset(self, identifier: str, now: Optional[datetime] = None) -> QuotaState:
        now = now or utcnow()
        try:
            if not self.store.insert_if_absent(identifier, now, search_count=0):
                self.store.update(identifier, 0, now)
            record = self.store.find(identifier)
        except SQLAlchemyError as e:
            logger.exception("[QUOTA] reset failed identifier=%s", _mask(identifier))
            raise PersistenceError("Failed to reset search quota") from e
        logger.info("[QUOTA] reset identifier=%s", _mask(identifier))
        return self.evaluate(record, now)


def build_quota_mutator(session=None) -> QuotaMutator:
    total, window = resolve_quota_policy()
    return QuotaMutator(QuotaStore(session), total=total, window=window)


def log_access_decision(route_name: str, user_id: Optional[int], decision: str, reason: str = ""):
    user_info = f"user_id={user_id}" if user_id else "anonymous"
    log_msg = f"[ACCESS] {route_name} | {user_info} | {decision}"
    if reason:
        log_msg += f" | {reason}"
    logger.info(log_msg)


def _mask(identifier: str) -> str:
    return f"{identifier[:6]}…" if identifier else "-"
