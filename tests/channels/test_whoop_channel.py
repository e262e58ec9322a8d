"""
Tests for WHOOP OAuth and the WHOOP detection channel.

============================================================
PURPOSE
============================================================
1. Authorization URL and token exchange / refresh
2. Token store round-trip and missing-token errors
3. On-demand refresh near expiry
4. Activity freshness as check-in detection
5. Background refresher survives failures

============================================================
"""

from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock
from urllib.parse import parse_qs, urlparse
import stat

import pytest

from lastsignal.channels.oauth import (
    AUTH_URL,
    TOKEN_URL,
    TokenRefresher,
    TokenStore,
    WhoopOAuth,
    WhoopTokens,
    build_callback_app,
    callback_url,
)
from lastsignal.channels.whoop import WhoopChannel
from lastsignal.core.clock import MockClock
from lastsignal.core.exceptions import InvalidConfigError, OAuthError


NOW = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)


# ============================================================
# FIXTURES
# ============================================================

@pytest.fixture
def clock():
    return MockClock(NOW)


@pytest.fixture
def http():
    client = MagicMock()
    client.request_json = AsyncMock()
    client.close = AsyncMock()
    return client


@pytest.fixture
def oauth(tmp_path, clock, http):
    return WhoopOAuth(
        data_directory=tmp_path,
        client_id="client-id",
        client_secret="client-secret",
        clock=clock,
        http=http,
    )


def _tokens(expires_at: datetime, **overrides) -> WhoopTokens:
    values = dict(
        access_token="access-1",
        refresh_token="refresh-1",
        expires_at=expires_at,
        client_id="client-id",
        client_secret="client-secret",
    )
    values.update(overrides)
    return WhoopTokens(**values)


def _token_reply(access: str = "access-2", refresh: str = "refresh-2", expires_in: int = 3600):
    return (200, {
        "access_token": access,
        "refresh_token": refresh,
        "expires_in": expires_in,
        "token_type": "bearer",
    })


def _activity(updated_at: datetime):
    return (200, {"records": [{"id": 1, "updated_at": updated_at.isoformat()}]})


# ============================================================
# OAUTH TESTS
# ============================================================

class TestWhoopOAuth:
    """Tests for WhoopOAuth."""

    def test_authorization_url(self, oauth):
        """Test the authorization URL carries client, scopes and redirect."""
        url = urlparse(oauth.authorization_url())
        query = parse_qs(url.query)

        assert f"{url.scheme}://{url.netloc}{url.path}" == AUTH_URL
        assert query["client_id"] == ["client-id"]
        assert query["response_type"] == ["code"]
        assert query["redirect_uri"] == [callback_url(3000)]
        assert "offline" in query["scope"][0].split(" ")

    @pytest.mark.asyncio
    async def test_exchange_code_stores_tokens(self, oauth, http, clock):
        """Test an authorization code is traded and persisted."""
        http.request_json.return_value = _token_reply()

        tokens = await oauth.exchange_code("the-code")

        method, url = http.request_json.call_args.args
        form = http.request_json.call_args.kwargs["data"]
        assert (method, url) == ("POST", TOKEN_URL)
        assert form["grant_type"] == "authorization_code"
        assert form["code"] == "the-code"
        assert tokens.expires_at == NOW + timedelta(hours=1)
        assert oauth.store.load() == tokens

    @pytest.mark.asyncio
    async def test_exchange_without_refresh_token_fails(self, oauth, http):
        """Test offline access is required."""
        http.request_json.return_value = _token_reply(refresh="")

        with pytest.raises(OAuthError):
            await oauth.exchange_code("code")

    @pytest.mark.asyncio
    async def test_token_endpoint_error(self, oauth, http):
        """Test a rejected token request raises OAuthError."""
        http.request_json.return_value = (400, {"error": "invalid_grant"})

        with pytest.raises(OAuthError):
            await oauth.exchange_code("code")

    @pytest.mark.asyncio
    async def test_valid_token_not_refreshed(self, oauth, http):
        """Test a token well inside its lifetime is returned as-is."""
        oauth.store.save(_tokens(NOW + timedelta(hours=1)))

        assert await oauth.get_valid_access_token() == "access-1"
        http.request_json.assert_not_called()

    @pytest.mark.asyncio
    async def test_expiring_token_refreshed(self, oauth, http):
        """Test a token expiring within five minutes is refreshed on demand."""
        oauth.store.save(_tokens(NOW + timedelta(minutes=4)))
        http.request_json.return_value = _token_reply()

        assert await oauth.get_valid_access_token() == "access-2"

        form = http.request_json.call_args.kwargs["data"]
        assert form["grant_type"] == "refresh_token"
        assert form["refresh_token"] == "refresh-1"
        assert oauth.store.load().refresh_token == "refresh-2"

    @pytest.mark.asyncio
    async def test_refresh_uses_stored_client_credentials(self, tmp_path, clock, http):
        """Test refresh works without credentials passed at construction."""
        store = TokenStore(tmp_path)
        store.save(_tokens(NOW - timedelta(minutes=1)))
        http.request_json.return_value = _token_reply()
        oauth = WhoopOAuth(data_directory=tmp_path, clock=clock, http=http)

        await oauth.refresh_if_needed()

        form = http.request_json.call_args.kwargs["data"]
        assert form["client_id"] == "client-id"
        assert form["client_secret"] == "client-secret"

    @pytest.mark.asyncio
    async def test_missing_tokens(self, oauth):
        """Test a missing token file asks the user to authenticate."""
        with pytest.raises(OAuthError) as exc_info:
            await oauth.get_valid_access_token()

        assert "whoop-auth" in exc_info.value.message


class TestTokenStore:
    """Tests for TokenStore."""

    def test_save_is_private(self, tmp_path):
        """Test the token file is readable by the owner only."""
        store = TokenStore(tmp_path)
        store.save(_tokens(NOW))

        mode = stat.S_IMODE(store.path.stat().st_mode)
        assert mode == 0o600

    def test_corrupt_file(self, tmp_path):
        """Test an unreadable token file raises OAuthError."""
        store = TokenStore(tmp_path)
        store.path.write_text("{}", encoding="utf-8")

        with pytest.raises(OAuthError):
            store.load()


class TestTokenRefresher:
    """Tests for TokenRefresher."""

    @pytest.mark.asyncio
    async def test_failures_are_logged_not_raised(self):
        """Test a failing refresh does not stop the background loop."""
        oauth = MagicMock()
        oauth.refresh_if_needed = AsyncMock(side_effect=OAuthError("expired"))
        sleep = AsyncMock()
        refresher = TokenRefresher(oauth, interval_seconds=1800, sleep=sleep)

        await refresher.run(max_iterations=3)

        assert oauth.refresh_if_needed.await_count == 3
        sleep.assert_awaited_with(1800)

    @pytest.mark.asyncio
    async def test_start_and_stop(self):
        """Test the task can be started and cancelled."""
        oauth = MagicMock()
        oauth.refresh_if_needed = AsyncMock()
        refresher = TokenRefresher(oauth, interval_seconds=3600)

        refresher.start()
        assert refresher.is_running

        await refresher.stop()
        assert not refresher.is_running


class TestCallbackApp:
    """Tests for the local OAuth redirect handler."""

    @pytest.mark.asyncio
    async def test_callback_resolves_code(self):
        """Test the redirect handler hands the code to the waiting flow."""
        import asyncio

        from aiohttp.test_utils import TestClient, TestServer

        future = asyncio.get_running_loop().create_future()
        client = TestClient(TestServer(build_callback_app(future)))
        await client.start_server()
        try:
            response = await client.get("/auth/whoop/callback", params={"code": "abc"})
            assert response.status == 200
        finally:
            await client.close()

        assert future.result() == "abc"

    @pytest.mark.asyncio
    async def test_callback_error(self):
        """Test a provider error fails the waiting flow."""
        import asyncio

        from aiohttp.test_utils import TestClient, TestServer

        future = asyncio.get_running_loop().create_future()
        client = TestClient(TestServer(build_callback_app(future)))
        await client.start_server()
        try:
            response = await client.get("/auth/whoop/callback", params={"error": "access_denied"})
            assert response.status == 400
        finally:
            await client.close()

        with pytest.raises(OAuthError):
            future.result()


# ============================================================
# CHANNEL TESTS
# ============================================================

class TestWhoopChannel:
    """Tests for WhoopChannel."""

    @pytest.fixture
    def token_oauth(self):
        oauth = MagicMock()
        oauth.get_valid_access_token = AsyncMock(return_value="tok")
        return oauth

    def test_rejects_non_positive_window(self, token_oauth):
        """Test max_hours_since_activity must be positive."""
        with pytest.raises(InvalidConfigError):
            WhoopChannel(token_oauth, max_hours_since_activity=0)

    @pytest.mark.asyncio
    async def test_send_is_skipped(self, token_oauth, http):
        """Test WHOOP never delivers messages."""
        channel = WhoopChannel(token_oauth, http=http)

        result = await channel.send("hello")

        assert result.is_skipped
        assert result.reason == "WHOOP is a check-only channel"
        http.request_json.assert_not_called()

    @pytest.mark.asyncio
    async def test_fresh_activity_is_checkin(self, token_oauth, http, clock):
        """Test activity inside the window is reported as a check-in."""
        http.request_json.side_effect = [
            _activity(NOW - timedelta(hours=30)),
            _activity(NOW - timedelta(hours=2)),
            (200, {"records": []}),
        ]
        channel = WhoopChannel(token_oauth, max_hours_since_activity=24, clock=clock, http=http)

        responses = await channel.poll_for_replies(None)

        assert len(responses) == 1
        assert responses[0].timestamp == NOW - timedelta(hours=2)
        assert responses[0].subject == "WHOOP Device Activity Detected"
        headers = http.request_json.call_args.kwargs["headers"]
        assert headers == {"Authorization": "Bearer tok"}

    @pytest.mark.asyncio
    async def test_stale_activity_is_not_checkin(self, token_oauth, http, clock):
        """Test activity older than the window is ignored."""
        http.request_json.return_value = _activity(NOW - timedelta(hours=25))
        channel = WhoopChannel(token_oauth, max_hours_since_activity=24, clock=clock, http=http)

        assert await channel.poll_for_replies(None) == []
        assert not await channel.health_check()

    @pytest.mark.asyncio
    async def test_health_tracks_freshness(self, token_oauth, http, clock):
        """Test healthy means recent activity."""
        http.request_json.return_value = _activity(NOW - timedelta(hours=1))
        channel = WhoopChannel(token_oauth, clock=clock, http=http)

        assert await channel.health_check()

    @pytest.mark.asyncio
    async def test_partial_endpoint_failure(self, token_oauth, http, clock):
        """Test one failing endpoint does not hide the others."""
        http.request_json.side_effect = [
            (500, "error"),
            _activity(NOW - timedelta(hours=3)),
            (401, {"error": "unauthorized"}),
        ]
        channel = WhoopChannel(token_oauth, clock=clock, http=http)

        responses = await channel.poll_for_replies(None)

        assert responses[0].timestamp == NOW - timedelta(hours=3)

    @pytest.mark.asyncio
    async def test_auth_failure_is_unhealthy(self, http, clock):
        """Test missing tokens make the channel unhealthy rather than raise."""
        oauth = MagicMock()
        oauth.get_valid_access_token = AsyncMock(side_effect=OAuthError("no tokens"))
        channel = WhoopChannel(oauth, clock=clock, http=http)

        assert not await channel.health_check()
