"""Tests for the HTTP routes."""

from urllib.parse import parse_qs, urlparse

import httpx
import pytest
from fastapi.testclient import TestClient

import main
from aggregate import CoachDataService
from conftest import API_BASE, TOKEN_URL, mock_http
from token_refresh import TokenRefreshCoordinator
from whoop_client import WhoopClient

HEADERS = {"X-User-Id": "u1"}


def whoop_handler(request: httpx.Request):
    # both the refresh and the code exchange land here
    if request.url.path.endswith("/oauth/oauth2/token"):
        return httpx.Response(200, json={"access_token": "A9", "refresh_token": "R9", "expires_in": 3600})
    if request.url.path.endswith("/recovery"):
        return httpx.Response(500, text="upstream exploded")
    if request.url.path.endswith("/user/profile/basic"):
        return httpx.Response(200, json={"user_id": 1, "first_name": "Ada"})
    return httpx.Response(200, json={"records": []})


@pytest.fixture
def client(store, clock):
    http = mock_http(whoop_handler)
    tokens = TokenRefreshCoordinator(store, http, token_url=TOKEN_URL, clock=clock)
    service = CoachDataService(tokens, WhoopClient(http, base_url=API_BASE), retry_delay=0)

    main.app.dependency_overrides[main.get_service] = lambda: service
    main.app.dependency_overrides[main.get_store] = lambda: store
    main.app.dependency_overrides[main.get_http] = lambda: http
    main.app.dependency_overrides[main.get_generator] = lambda: None
    yield TestClient(main.app)
    main.app.dependency_overrides.clear()
    main.STATE_STORE.clear()


class TestWhoopRoutes:
    def test_missing_user_header(self, client):
        r = client.get("/whoop/cycles")
        assert r.status_code == 401

    def test_not_linked(self, client):
        r = client.get("/whoop/cycles", headers=HEADERS)

        assert r.status_code == 409
        assert r.json()["error"]["code"] == "not_linked"

    def test_records_proxied(self, client, link):
        link()
        r = client.get("/whoop/sleep", params={"limit": 5, "start": "2024-01-01T00:00:00Z"}, headers=HEADERS)

        assert r.status_code == 200
        assert r.json() == {"records": [], "next_token": None}

    def test_upstream_error_surfaced(self, client, link):
        link()
        r = client.get("/whoop/recovery", headers=HEADERS)

        assert r.status_code == 503
        details = r.json()["error"]["details"]
        assert details["status"] == 500
        assert details["body"] == "upstream exploded"

    def test_unknown_resource(self, client, link):
        link()
        assert client.get("/whoop/meals", headers=HEADERS).status_code == 404

    def test_bad_start(self, client, link):
        link()
        r = client.get("/whoop/sleep", params={"start": "last tuesday"}, headers=HEADERS)
        assert r.status_code == 422

    def test_health(self, client, link):
        link()
        r = client.get("/whoop/health", headers=HEADERS)

        assert r.status_code == 200
        assert r.json()["ok"] is True
        assert r.json()["profile"]["first_name"] == "Ada"


class TestCoachRoutes:
    def test_coach_with_partial_data(self, client, link):
        link()
        r = client.get("/coach", headers=HEADERS)

        assert r.status_code == 200
        body = r.json()
        assert body["summary"]["recovery_score"] is None
        assert body["summary"]["unavailable"] == ["recovery"]
        assert body["plan"]["source"] == "rules"
        assert body["plan"]["workout"]["label"] == "Endurance"

    def test_coach_with_goal(self, client, link):
        link()
        r = client.post("/coach", json={"goal": {"goalText": "Gravel 100", "weeklyFocus": "climbing"}},
                        headers=HEADERS)

        assert r.status_code == 200
        assert "Gravel 100" in r.json()["plan"]["workout"]["notes"]

    def test_week(self, client):
        r = client.post("/coach/week", json={"goal": {"weeklyFocus": "speed", "longRideDay": "Sun"}})

        week = {d["day"]: d for d in r.json()["week"]}
        assert week["Sun"]["tone"] == "hard"
        assert week["Tue"]["tone"] == "hard"

    def test_week_ignores_invalid_goal(self, client):
        r = client.post("/coach/week", json={"weeklyFocus": "sprinting", "goalText": "x"})

        assert all(d["note"] != "Goal-aware: x" for d in r.json()["week"])


class TestAuthRoutes:
    def test_start_redirects_with_state(self, client):
        r = client.get("/auth/whoop/start", headers=HEADERS, follow_redirects=False)

        assert r.status_code in (302, 307)
        query = parse_qs(urlparse(r.headers["location"]).query)
        assert query["response_type"] == ["code"]
        assert main.STATE_STORE[query["state"][0]][0] == "u1"

    def test_callback_links_account(self, client, store):
        state = main.make_state("u7")
        r = client.get("/auth/whoop/callback", params={"code": "c0de", "state": state})

        assert r.status_code == 200
        record = store.get("u7")
        assert record.access_token == "A9"
        assert record.refresh_token == "R9"

    def test_callback_state_is_single_use(self, client):
        state = main.make_state("u7")
        client.get("/auth/whoop/callback", params={"code": "c0de", "state": state})

        r = client.get("/auth/whoop/callback", params={"code": "c0de", "state": state})
        assert r.status_code == 400

    def test_callback_provider_error(self, client):
        r = client.get("/auth/whoop/callback", params={"error": "access_denied"})

        assert r.status_code == 400
        assert r.json()["error"] == "access_denied"
