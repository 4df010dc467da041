"""Tests for the token refresh coordinator."""

import asyncio
from urllib.parse import parse_qs

import httpx
import pytest

from conftest import NOW, TOKEN_URL, mock_http
from errors import NotLinked, RefreshFailed
from token_refresh import TokenRefreshCoordinator


class TokenEndpoint:
    """Fake OAuth token endpoint that counts calls and records form bodies."""

    def __init__(self, status=200, body=None, delay=0.0, exc=None):
        self.status = status
        self.body = body if body is not None else {
            "access_token": "A2", "refresh_token": "R2", "expires_in": 3600,
            "token_type": "bearer", "scope": "offline",
        }
        self.delay = delay
        self.exc = exc
        self.calls = 0
        self.forms = []

    async def __call__(self, request: httpx.Request):
        self.calls += 1
        self.forms.append({k: v[0] for k, v in parse_qs(request.content.decode()).items()})
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.exc:
            raise self.exc
        if isinstance(self.body, str):
            return httpx.Response(self.status, text=self.body)
        return httpx.Response(self.status, json=self.body)


def make_coordinator(store, endpoint, clock):
    return TokenRefreshCoordinator(
        store,
        mock_http(endpoint),
        client_id="cid",
        client_secret="secret",
        token_url=TOKEN_URL,
        scope="offline",
        clock=clock,
    )


class TestFastPath:
    @pytest.mark.asyncio
    async def test_fresh_token_returned_without_network(self, store, link, clock):
        link(expires_at=NOW + 61)
        endpoint = TokenEndpoint()
        tokens = make_coordinator(store, endpoint, clock)

        assert await tokens.ensure_valid_access_token("u1") == "A1"
        assert endpoint.calls == 0
        assert store.writes == 0

    @pytest.mark.asyncio
    async def test_null_expiry_never_expires(self, store, link, clock):
        link(expires_at=None)
        endpoint = TokenEndpoint()
        tokens = make_coordinator(store, endpoint, clock)

        assert await tokens.ensure_valid_access_token("u1") == "A1"
        assert endpoint.calls == 0

    @pytest.mark.asyncio
    async def test_unlinked_user(self, store, clock):
        tokens = make_coordinator(store, TokenEndpoint(), clock)

        with pytest.raises(NotLinked):
            await tokens.ensure_valid_access_token("nobody")


class TestRefresh:
    @pytest.mark.asyncio
    async def test_expired_token_is_refreshed_and_persisted(self, store, link, clock):
        link(expires_at=NOW - 10)
        endpoint = TokenEndpoint()
        tokens = make_coordinator(store, endpoint, clock)

        assert await tokens.ensure_valid_access_token("u1") == "A2"

        record = store.get("u1")
        assert record.access_token == "A2"
        assert record.refresh_token == "R2"
        assert abs(record.expires_at - (NOW + 3600)) <= 1
        assert store.writes == 1

    @pytest.mark.asyncio
    async def test_token_inside_safety_margin_is_refreshed(self, store, link, clock):
        link(expires_at=NOW + 60)
        endpoint = TokenEndpoint()
        tokens = make_coordinator(store, endpoint, clock)

        assert await tokens.ensure_valid_access_token("u1") == "A2"
        assert endpoint.calls == 1

    @pytest.mark.asyncio
    async def test_refresh_request_form(self, store, link, clock):
        link(expires_at=NOW - 10)
        endpoint = TokenEndpoint()
        tokens = make_coordinator(store, endpoint, clock)

        await tokens.ensure_valid_access_token("u1")

        assert endpoint.forms[0] == {
            "grant_type": "refresh_token",
            "refresh_token": "R1",
            "client_id": "cid",
            "client_secret": "secret",
            "scope": "offline",
        }

    @pytest.mark.asyncio
    async def test_missing_refresh_token_in_response_keeps_old_one(self, store, link, clock):
        link(expires_at=NOW - 10)
        endpoint = TokenEndpoint(body={"access_token": "A2", "expires_in": 3600})
        tokens = make_coordinator(store, endpoint, clock)

        await tokens.ensure_valid_access_token("u1")

        record = store.get("u1")
        assert record.refresh_token == "R1"
        assert record.token_type == "bearer"
        assert record.scope == "offline read:recovery"

    @pytest.mark.asyncio
    async def test_missing_expires_in_defaults_to_an_hour(self, store, link, clock):
        link(expires_at=NOW - 10)
        tokens = make_coordinator(store, TokenEndpoint(body={"access_token": "A2"}), clock)

        await tokens.ensure_valid_access_token("u1")

        assert store.get("u1").expires_at == NOW + 3600

    @pytest.mark.asyncio
    async def test_zero_lifetime_is_kept(self, store, link, clock):
        link(expires_at=NOW - 10)
        tokens = make_coordinator(store, TokenEndpoint(body={"access_token": "A2", "expires_in": 0}), clock)

        assert await tokens.ensure_valid_access_token("u1") == "A2"
        assert store.get("u1").expires_at == NOW


class TestRefreshFailure:
    @pytest.mark.asyncio
    async def test_rejected_refresh_leaves_record_untouched(self, store, link, clock):
        link(expires_at=NOW - 10)
        endpoint = TokenEndpoint(status=400, body='{"error":"invalid_grant"}')
        tokens = make_coordinator(store, endpoint, clock)

        with pytest.raises(RefreshFailed) as exc:
            await tokens.ensure_valid_access_token("u1")

        assert exc.value.status == 400
        assert "invalid_grant" in exc.value.body
        record = store.get("u1")
        assert record.access_token == "A1"
        assert record.refresh_token == "R1"
        assert store.writes == 0

    @pytest.mark.asyncio
    async def test_network_failure(self, store, link, clock):
        link(expires_at=NOW - 10)
        endpoint = TokenEndpoint(exc=httpx.ConnectError("boom"))
        tokens = make_coordinator(store, endpoint, clock)

        with pytest.raises(RefreshFailed) as exc:
            await tokens.ensure_valid_access_token("u1")

        assert exc.value.status is None
        assert store.writes == 0

    @pytest.mark.asyncio
    async def test_body_without_access_token(self, store, link, clock):
        link(expires_at=NOW - 10)
        tokens = make_coordinator(store, TokenEndpoint(body={"expires_in": 3600}), clock)

        with pytest.raises(RefreshFailed):
            await tokens.ensure_valid_access_token("u1")
        assert store.get("u1").access_token == "A1"

    @pytest.mark.asyncio
    async def test_no_stored_refresh_token(self, store, link, clock):
        link(expires_at=NOW - 10, refresh_token=None)
        endpoint = TokenEndpoint()
        tokens = make_coordinator(store, endpoint, clock)

        with pytest.raises(RefreshFailed):
            await tokens.ensure_valid_access_token("u1")
        assert endpoint.calls == 0

    @pytest.mark.asyncio
    async def test_registry_cleared_after_failure(self, store, link, clock):
        link(expires_at=NOW - 10)
        endpoint = TokenEndpoint(status=500, body="oops")
        tokens = make_coordinator(store, endpoint, clock)

        with pytest.raises(RefreshFailed):
            await tokens.ensure_valid_access_token("u1")

        endpoint.status = 200
        endpoint.body = {"access_token": "A3", "expires_in": 3600}
        assert await tokens.ensure_valid_access_token("u1") == "A3"
        assert endpoint.calls == 2


class TestConcurrency:
    @pytest.mark.asyncio
    async def test_concurrent_callers_share_one_refresh(self, store, link, clock):
        link(expires_at=NOW - 10)
        endpoint = TokenEndpoint(delay=0.05)
        tokens = make_coordinator(store, endpoint, clock)

        results = await asyncio.gather(*(tokens.ensure_valid_access_token("u1") for _ in range(10)))

        assert results == ["A2"] * 10
        assert endpoint.calls == 1
        assert store.writes == 1

    @pytest.mark.asyncio
    async def test_concurrent_failure_is_shared(self, store, link, clock):
        link(expires_at=NOW - 10)
        endpoint = TokenEndpoint(status=401, body="revoked", delay=0.05)
        tokens = make_coordinator(store, endpoint, clock)

        results = await asyncio.gather(
            *(tokens.ensure_valid_access_token("u1") for _ in range(5)),
            return_exceptions=True,
        )

        assert all(isinstance(r, RefreshFailed) for r in results)
        assert endpoint.calls == 1

    @pytest.mark.asyncio
    async def test_different_users_refresh_independently(self, store, link, clock):
        link(user_id="u1", expires_at=NOW - 10)
        link(user_id="u2", expires_at=NOW - 10, refresh_token="R9")
        endpoint = TokenEndpoint(delay=0.02)
        tokens = make_coordinator(store, endpoint, clock)

        await asyncio.gather(
            tokens.ensure_valid_access_token("u1"),
            tokens.ensure_valid_access_token("u2"),
        )

        assert endpoint.calls == 2
        assert sorted(f["refresh_token"] for f in endpoint.forms) == ["R1", "R9"]

    @pytest.mark.asyncio
    async def test_cancelled_waiter_does_not_cancel_refresh(self, store, link, clock):
        link(expires_at=NOW - 10)
        endpoint = TokenEndpoint(delay=0.05)
        tokens = make_coordinator(store, endpoint, clock)

        first = asyncio.ensure_future(tokens.ensure_valid_access_token("u1"))
        second = asyncio.ensure_future(tokens.ensure_valid_access_token("u1"))
        await asyncio.sleep(0.01)
        first.cancel()

        assert await second == "A2"
        assert endpoint.calls == 1


class TestForceRefresh:
    @pytest.mark.asyncio
    async def test_force_refresh_ignores_expiry(self, store, link, clock):
        link(expires_at=NOW + 3600)
        endpoint = TokenEndpoint()
        tokens = make_coordinator(store, endpoint, clock)

        assert await tokens.force_refresh("u1", rejected_token="A1") == "A2"
        assert endpoint.calls == 1

    @pytest.mark.asyncio
    async def test_already_rotated_token_is_not_refreshed_again(self, store, link, clock):
        link(access_token="A5", expires_at=NOW + 3600)
        endpoint = TokenEndpoint()
        tokens = make_coordinator(store, endpoint, clock)

        assert await tokens.force_refresh("u1", rejected_token="A1") == "A5"
        assert endpoint.calls == 0
