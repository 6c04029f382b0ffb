from datetime import datetime, timezone
from sqlalchemy import desc, event
from sqlalchemy.orm import relationship
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.types import TypeDecorator, Text
from flask_login import UserMixin
import json

from karmatic.extensions import db


def utcnow() -> datetime:
    """Naive UTC timestamp, the form every DateTime column is stored in."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class JSONEncodedText(TypeDecorator):
    """
    A type that stores JSON as Text but validates it on assignment.
    Use JSONB on PostgreSQL, fallback to Text on other databases.
    """
    impl = Text
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is not None:
            if isinstance(value, str):
                # Validate it's valid JSON
                json.loads(value)
                return value
            return json.dumps(value, ensure_ascii=False)
        return value

    def process_result_value(self, value, dialect):
        if value is not None and dialect.name == 'postgresql' and not isinstance(value, str):
            return json.dumps(value, ensure_ascii=False)
        return value

    def load_dialect_impl(self, dialect):
        if dialect.name == 'postgresql':
            return dialect.type_descriptor(JSONB())
        else:
            return dialect.type_descriptor(Text())


class User(db.Model, UserMixin):
    id = db.Column(db.Integer, primary_key=True)
    auth_subject = db.Column(db.String(200), unique=True, nullable=False)
    email = db.Column(db.String(255), nullable=True)
    first_name = db.Column(db.String(100))
    last_name = db.Column(db.String(100))
    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)

    searches = relationship(
        "SearchHistory",
        cascade="all, delete-orphan",
        backref="user",
        lazy=True,
    )


class AnonymousSearchQuota(db.Model):
    """
    One row per anonymous visitor (cookie identifier) counting searches
    in the current rolling window.
    """

    __tablename__ = "anonymous_search_quota"

    id = db.Column(db.Integer, primary_key=True)
    identifier = db.Column(db.String(64), nullable=False)
    search_count = db.Column(db.Integer, nullable=False, default=0)
    last_search_at = db.Column(db.DateTime, nullable=False, default=utcnow)
    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)

    searches = relationship(
        "SearchHistory",
        backref="anonymous",
        lazy=True,
    )

    __table_args__ = (
        db.UniqueConstraint("identifier", name="uq_anonymous_search_quota_identifier"),
        db.CheckConstraint("search_count >= 0", name="ck_anonymous_search_quota_count"),
    )

    def __repr__(self):
        return f"<AnonymousSearchQuota identifier={self.identifier} count={self.search_count}>"


class SearchHistory(db.Model):
    __tablename__ = "search_history"

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("user.id", ondelete="CASCADE"), nullable=True)
    anonymous_id = db.Column(
        db.Integer,
        db.ForeignKey("anonymous_search_quota.id", ondelete="CASCADE"),
        nullable=True,
    )
    location = db.Column(db.String(200), nullable=False)
    # column "query"; attribute renamed so Model.query stays usable
    search_query = db.Column("query", db.String(200), nullable=True)
    results_json = db.Column(JSONEncodedText, nullable=True)
    created_at = db.Column(db.DateTime, nullable=False, default=utcnow, index=True)
    deleted_at = db.Column(db.DateTime, nullable=True, index=True)

    __table_args__ = (
        db.CheckConstraint(
            "(user_id IS NULL) <> (anonymous_id IS NULL)",
            name="ck_search_history_single_owner",
        ),
        db.Index("ix_search_history_user_created", "user_id", desc("created_at")),
        db.Index("ix_search_history_anonymous_created", "anonymous_id", desc("created_at")),
    )

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "location": self.location or "",
            "query": self.search_query,
            "createdAt": self.created_at.isoformat() if self.created_at else None,
            "deletedAt": self.deleted_at.isoformat() if self.deleted_at else None,
        }


@event.listens_for(SearchHistory, "before_insert")
@event.listens_for(SearchHistory, "before_update")
def _check_single_owner(mapper, connection, target):
    if (target.user_id is None) == (target.anonymous_id is None):
        raise ValueError("search history must be owned by exactly one of user_id / anonymous_id")
