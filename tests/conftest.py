import sys
from datetime import timedelta
from pathlib import Path
import pytest

ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

from main import create_app, db, User, AnonymousSearchQuota
from karmatic.models import utcnow

SESSION_COOKIE = "karmatic_search_session"


@pytest.fixture
def app(monkeypatch):
    monkeypatch.setenv("DATABASE_URL", "sqlite:///:memory:")
    monkeypatch.delenv("SKIP_CREATE_ALL", raising=False)
    monkeypatch.delenv("ANON_SEARCH_LIMIT", raising=False)
    monkeypatch.delenv("CLEANUP_SECRET_KEY", raising=False)
    monkeypatch.setenv("APP_TZ", "America/Mexico_City")
    app = create_app()
    app.config.update(TESTING=True)
    with app.app_context():
        db.create_all()
    yield app
    with app.app_context():
        db.session.remove()
        db.drop_all()


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def logged_in_client(app, client):
    with app.app_context():
        user = User(auth_subject="user_test_subject", email="tester@example.com", first_name="Tester")
        db.session.add(user)
        db.session.commit()
        user_id = user.id

    with client.session_transaction() as sess:
        sess["_user_id"] = str(user_id)
        sess["_fresh"] = True

    return client, user_id


@pytest.fixture
def stale_quota(app):
    """An anonymous session that used its search 25 hours ago."""
    identifier = "stale_session_identifier_0001"
    with app.app_context():
        db.session.add(
            AnonymousSearchQuota(
                identifier=identifier,
                search_count=1,
                last_search_at=utcnow() - timedelta(hours=25),
            )
        )
        db.session.commit()
    return identifier
