import pytest
from flask import redirect
from authlib.integrations.base_client.errors import MismatchingStateError, OAuthError

from conftest import SESSION_COOKIE
from main import db, oauth, SearchHistory, User


@pytest.fixture
def identity(app, monkeypatch):
    """Stub the identity provider round trip."""
    calls = {}

    def fake_authorize_redirect(redirect_uri, **kwargs):
        calls["redirect_uri"] = redirect_uri
        return redirect("https://idp.example.test/authorize")

    def fake_authorize_access_token(**kwargs):
        return {
            "access_token": "token",
            "userinfo": {
                "sub": "user_2abcDEF",
                "email": "ana@example.com",
                "given_name": "Ana",
                "family_name": "López",
            },
        }

    monkeypatch.setattr(oauth.identity, "authorize_redirect", fake_authorize_redirect)
    monkeypatch.setattr(oauth.identity, "authorize_access_token", fake_authorize_access_token)
    return calls


def test_login_redirects_to_identity_provider(client, identity):
    resp = client.get("/login")
    assert resp.status_code == 302
    assert resp.headers["Location"] == "https://idp.example.test/authorize"
    assert identity["redirect_uri"].endswith("/auth/callback")


def test_callback_signs_in_and_adopts_anonymous_history(app, client, identity):
    track = client.post("/api/search/track", json={"location": "Puebla"})
    item_id = track.get_json()["data"]["searchId"]
    assert client.get_cookie(SESSION_COOKIE) is not None

    resp = client.get("/auth/callback")
    assert resp.status_code == 302
    assert resp.headers["Location"] == "/"

    data = client.get("/api/search/check-limit").get_json()["data"]
    assert data["isAuthenticated"] is True
    assert data["unlimited"] is True

    with app.app_context():
        user = User.query.filter_by(auth_subject="user_2abcDEF").one()
        assert user.email == "ana@example.com"
        assert user.last_name == "López"
        assert db.session.get(SearchHistory, item_id).user_id == user.id


def test_callback_updates_existing_user(app, client, identity):
    with app.app_context():
        db.session.add(User(auth_subject="user_2abcDEF", email="old@example.com"))
        db.session.commit()

    client.get("/auth/callback")

    with app.app_context():
        users = User.query.filter_by(auth_subject="user_2abcDEF").all()
        assert len(users) == 1
        assert users[0].email == "ana@example.com"


def test_callback_state_mismatch_restarts_login(client, monkeypatch):
    def mismatch(**kwargs):
        raise MismatchingStateError()

    monkeypatch.setattr(oauth.identity, "authorize_access_token", mismatch)
    resp = client.get("/auth/callback")
    assert resp.status_code == 302
    assert resp.headers["Location"].endswith("/login")


def test_callback_provider_error_goes_home_signed_out(app, client, monkeypatch):
    def denied(**kwargs):
        raise OAuthError(error="access_denied")

    monkeypatch.setattr(oauth.identity, "authorize_access_token", denied)
    resp = client.get("/auth/callback")
    assert resp.status_code == 302
    assert client.get("/api/search/check-limit").get_json()["data"]["isAuthenticated"] is False
    with app.app_context():
        assert User.query.count() == 0


def test_logout_ends_session(logged_in_client):
    client, _ = logged_in_client
    assert client.get("/api/search/check-limit").get_json()["data"]["isAuthenticated"] is True

    resp = client.get("/logout")
    assert resp.status_code == 302
    assert client.get("/api/search/check-limit").get_json()["data"]["isAuthenticated"] is False


def test_logout_requires_login(client):
    resp = client.get("/logout")
    assert resp.status_code == 401
    assert resp.get_json()["error"]["code"] == "unauthenticated"
