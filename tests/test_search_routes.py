import pytest

from conftest import SESSION_COOKIE
from main import create_app, db, AnonymousSearchQuota, SearchHistory
from karmatic.quota import QuotaStore


def _track(client, location="Monterrey, NL", query="Toyota"):
    return client.post("/api/search/track", json={"location": location, "query": query})


def test_anonymous_quota_scenario(app, client):
    resp = client.get("/api/search/check-limit")
    data = resp.get_json()
    assert resp.status_code == 200
    assert data["ok"] is True
    assert data["data"]["remaining"] == 1
    assert data["data"]["total"] == 1
    assert data["data"]["isAuthenticated"] is False
    assert data["data"]["canSearch"] is True
    session_id = data["data"]["sessionId"]
    assert client.get_cookie(SESSION_COOKIE).value == session_id

    resp_ok = _track(client)
    data_ok = resp_ok.get_json()
    assert resp_ok.status_code == 200
    assert data_ok["data"]["success"] is True
    assert data_ok["data"]["remaining"] == 0
    assert data_ok["data"]["sessionId"] == session_id

    resp_block = _track(client, query="Honda")
    data_block = resp_block.get_json()
    assert resp_block.status_code == 429
    assert data_block["ok"] is False
    assert data_block["error"]["code"] == "search_limit_exceeded"
    assert data_block["error"]["details"]["remaining"] == 0
    assert int(resp_block.headers["Retry-After"]) > 0

    recheck = client.get("/api/search/check-limit").get_json()
    assert recheck["data"]["remaining"] == 0
    assert recheck["data"]["canSearch"] is False
    assert recheck["data"]["resetsAt"]

    with app.app_context():
        record = QuotaStore().find(session_id)
        assert record.search_count == 1
        history = SearchHistory.query.filter_by(anonymous_id=record.id).all()
        assert len(history) == 1
        assert history[0].search_query == "Toyota"


def test_check_limit_is_idempotent_and_read_only(app, client):
    first = client.get("/api/search/check-limit").get_json()["data"]
    second = client.get("/api/search/check-limit").get_json()["data"]
    assert first["remaining"] == second["remaining"] == 1
    assert first["sessionId"] == second["sessionId"]

    with app.app_context():
        assert AnonymousSearchQuota.query.count() == 0


def test_check_limit_sets_session_cookie_attributes(client):
    resp = client.get("/api/search/check-limit")
    cookie_header = next(h for h in resp.headers.getlist("Set-Cookie") if h.startswith(SESSION_COOKIE))
    assert "HttpOnly" in cookie_header
    assert "SameSite=Lax" in cookie_header
    assert "Max-Age=86400" in cookie_header
    assert "Path=/" in cookie_header
    assert len(resp.get_json()["data"]["sessionId"]) >= 21


def test_malformed_cookie_is_replaced(client):
    client.set_cookie(SESSION_COOKIE, "bad cookie!")
    data = client.get("/api/search/check-limit").get_json()["data"]
    assert data["sessionId"] != "bad cookie!"
    assert client.get_cookie(SESSION_COOKIE).value == data["sessionId"]


def test_window_older_than_24_hours_resets(client, stale_quota):
    client.set_cookie(SESSION_COOKIE, stale_quota)
    data = client.get("/api/search/check-limit").get_json()["data"]
    assert data["remaining"] == 1
    assert data["canSearch"] is True

    resp = _track(client)
    assert resp.status_code == 200
    assert resp.get_json()["data"]["remaining"] == 0


def test_authenticated_check_never_touches_quota_store(logged_in_client, monkeypatch):
    client, _ = logged_in_client

    def fail(*_args, **_kwargs):
        raise AssertionError("quota store must not be used for signed-in users")

    monkeypatch.setattr(QuotaStore, "find", fail)
    monkeypatch.setattr(QuotaStore, "insert_if_absent", fail)

    for _ in range(3):
        resp = client.get("/api/search/check-limit")
        data = resp.get_json()["data"]
        assert resp.status_code == 200
        assert data["remaining"] is None
        assert data["total"] is None
        assert data["unlimited"] is True
        assert data["isAuthenticated"] is True
        assert data["canSearch"] is True
        assert "sessionId" not in data


def test_authenticated_track_records_history_only(app, logged_in_client):
    client, user_id = logged_in_client
    for query in ("Nissan", "Kia", None):
        resp = client.post("/api/search/track", json={"location": "Guadalajara", "query": query})
        data = resp.get_json()["data"]
        assert resp.status_code == 200
        assert data["success"] is True
        assert data["unlimited"] is True
        assert data["isAuthenticated"] is True

    with app.app_context():
        assert AnonymousSearchQuota.query.count() == 0
        assert SearchHistory.query.filter_by(user_id=user_id).count() == 3


def test_track_requires_location(client):
    resp = client.post("/api/search/track", json={"query": "Mazda"})
    data = resp.get_json()
    assert resp.status_code == 400
    assert data["error"]["code"] == "validation_error"
    assert data["error"]["details"]["field"] == "location"


def test_track_rejects_non_json(client):
    resp = client.post("/api/search/track", data="location=CDMX")
    assert resp.status_code == 400
    assert resp.get_json()["error"]["code"] == "invalid_content_type"


def test_rejected_track_does_not_consume_quota(app, client):
    resp = client.post("/api/search/track", json={"location": "   "})
    assert resp.status_code == 400
    assert client.get("/api/search/check-limit").get_json()["data"]["remaining"] == 1


def test_configured_allowance_is_used_everywhere(monkeypatch):
    monkeypatch.setenv("DATABASE_URL", "sqlite:///:memory:")
    app = create_app({"ANON_SEARCH_LIMIT": 2, "TESTING": True})
    client = app.test_client()

    assert client.get("/api/search/check-limit").get_json()["data"]["total"] == 2
    assert _track(client).get_json()["data"]["remaining"] == 1
    assert _track(client).get_json()["data"]["remaining"] == 0
    assert _track(client).status_code == 429

    with app.app_context():
        db.session.remove()
        db.drop_all()


def test_save_stores_results_without_charging_quota(app, client):
    payload = {
        "location": "Ciudad de México",
        "query": "Toyota",
        "placeId": "ChIJU1NoiDs6BIQREZgJa760ZO0",
        "coordinates": {"lat": 19.4326, "lng": -99.1332},
        "results": [{"name": "Toyota Polanco", "rating": 4.6}],
    }
    resp = client.post("/api/search/save", json=payload)
    data = resp.get_json()["data"]
    assert resp.status_code == 200
    assert data["success"] is True

    assert client.get("/api/search/check-limit").get_json()["data"]["remaining"] == 1

    with app.app_context():
        item = db.session.get(SearchHistory, data["searchId"])
        assert item.location == "Ciudad de México"
        assert '"Toyota Polanco"' in item.results_json
        assert QuotaStore().find(data["sessionId"]).search_count == 0


@pytest.mark.parametrize("coordinates", [{"lat": 200, "lng": 0}, {"lat": "x", "lng": 1}, [19.4, -99.1]])
def test_save_rejects_bad_coordinates(client, coordinates):
    resp = client.post("/api/search/save", json={"location": "Puebla", "coordinates": coordinates})
    assert resp.status_code == 400
    assert resp.get_json()["error"]["details"]["field"] == "coordinates"


def test_responses_carry_request_id_and_no_store(client):
    resp = client.get("/api/search/check-limit", headers={"X-Request-ID": "req-abc"})
    assert resp.headers["X-Request-ID"] == "req-abc"
    assert resp.get_json()["request_id"] == "req-abc"
    assert resp.headers["Cache-Control"] == "no-store"


def test_healthz(client):
    resp = client.get("/healthz")
    assert resp.status_code == 200
    assert resp.get_json()["data"]["status"] == "ok"
