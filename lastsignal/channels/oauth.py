"""
WHOOP OAuth Token Management.

============================================================
RESPONSIBILITY
============================================================
Owns the WHOOP OAuth tokens stored in the data directory.

- Authorization-code flow with a local aiohttp.web callback
- Token exchange and refresh against the WHOOP token URL
- get_valid_access_token(): on-demand refresh when the token
  expires within five minutes, serialized by an asyncio.Lock
- TokenRefresher: independent periodic task, failures are
  logged and never reach the control loop

============================================================
TOKEN FILE
============================================================
<data_dir>/whoop_tokens.json, written atomically. The client
credentials used for the authorization are stored alongside
the tokens so refreshes work without extra configuration.

============================================================
"""

from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, Optional
from urllib.parse import quote, urlencode
import asyncio
import json
import logging
import os
import tempfile

import aiohttp
from aiohttp import web
from pydantic import BaseModel, ValidationError

from lastsignal.channels.http import HttpClient
from lastsignal.core.clock import ClockProtocol, SystemClock
from lastsignal.core.exceptions import OAuthError


logger = logging.getLogger(__name__)

AUTH_URL = "https://api.prod.whoop.com/oauth/oauth2/auth"
TOKEN_URL = "https://api.prod.whoop.com/oauth/oauth2/token"
SCOPES = ("read:cycles", "read:sleep", "read:recovery", "read:profile", "offline")
AUTH_STATE = "lastsignal_auth"
TOKENS_FILE_NAME = "whoop_tokens.json"
CALLBACK_PATH = "/auth/whoop/callback"
DEFAULT_CALLBACK_PORT = 3000

REFRESH_MARGIN = timedelta(minutes=5)
DEFAULT_REFRESH_INTERVAL_SECONDS = 30 * 60


# ============================================================
# TOKEN MODELS
# ============================================================

class WhoopTokens(BaseModel):
    """Persisted token set."""
    access_token: str
    refresh_token: str
    expires_at: datetime
    token_type: str = "Bearer"
    client_id: Optional[str] = None
    client_secret: Optional[str] = None


class TokenResponse(BaseModel):
    """Body of a successful token endpoint reply."""
    access_token: str
    refresh_token: str = ""
    expires_in: int
    token_type: str = "Bearer"


# ============================================================
# TOKEN STORE
# ============================================================

class TokenStore:
    """Reads and atomically writes whoop_tokens.json."""

    def __init__(self, data_directory: Path):
        self._path = Path(data_directory) / TOKENS_FILE_NAME

    @property
    def path(self) -> Path:
        return self._path

    def exists(self) -> bool:
        return self._path.exists()

    def load(self) -> WhoopTokens:
        if not self._path.exists():
            raise OAuthError(
                "No WHOOP tokens found. Please run 'lastsignal whoop-auth' first.",
                context={"path": str(self._path)},
            )
        try:
            with open(self._path, "r", encoding="utf-8") as f:
                return WhoopTokens.model_validate(json.load(f))
        except (OSError, ValueError, ValidationError) as e:
            raise OAuthError(
                f"Failed to read WHOOP tokens file: {e}",
                context={"path": str(self._path)},
                cause=e,
            ) from e

    def save(self, tokens: WhoopTokens) -> None:
        payload = tokens.model_dump_json(indent=2)
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(dir=self._path.parent, prefix=".whoop-", suffix=".tmp")
            with os.fdopen(fd, "w", encoding="utf-8") as tmp:
                tmp.write(payload)
            os.chmod(tmp_name, 0o600)
            os.replace(tmp_name, self._path)
        except OSError as e:
            raise OAuthError(
                f"Failed to write WHOOP tokens file: {e}",
                context={"path": str(self._path)},
                cause=e,
            ) from e
        logger.info(f"Saved WHOOP tokens to {self._path}")


# ============================================================
# OAUTH CLIENT
# ============================================================

class WhoopOAuth:
    """
    WHOOP OAuth client and single owner of the token file.

    Readers call get_valid_access_token(); the lock makes
    concurrent callers (channel requests, TokenRefresher)
    share one refresh instead of racing on the refresh token.
    """

    def __init__(
        self,
        data_directory: Path,
        client_id: Optional[str] = None,
        client_secret: Optional[str] = None,
        redirect_uri: Optional[str] = None,
        clock: Optional[ClockProtocol] = None,
        http: Optional[HttpClient] = None,
    ):
        self._store = TokenStore(data_directory)
        self._client_id = client_id
        self._client_secret = client_secret
        self._redirect_uri = redirect_uri or callback_url(DEFAULT_CALLBACK_PORT)
        self._clock = clock or SystemClock()
        self._http = http or HttpClient()
        self._lock = asyncio.Lock()

    @property
    def store(self) -> TokenStore:
        return self._store

    def authorization_url(self) -> str:
        params = {
            "response_type": "code",
            "client_id": self._client_id or "",
            "redirect_uri": self._redirect_uri,
            "scope": " ".join(SCOPES),
            "state": AUTH_STATE,
        }
        return f"{AUTH_URL}?{urlencode(params, quote_via=quote)}"

    async def exchange_code(self, code: str) -> WhoopTokens:
        """Trade an authorization code for a token set and store it."""
        tokens = await self._request_tokens(
            {
                "grant_type": "authorization_code",
                "client_id": self._client_id or "",
                "client_secret": self._client_secret or "",
                "redirect_uri": self._redirect_uri,
                "code": code,
            },
            client_id=self._client_id,
            client_secret=self._client_secret,
        )
        self._store.save(tokens)
        return tokens

    async def refresh(self, current: WhoopTokens) -> WhoopTokens:
        """Refresh and store a token set."""
        client_id = self._client_id or current.client_id
        client_secret = self._client_secret or current.client_secret
        tokens = await self._request_tokens(
            {
                "grant_type": "refresh_token",
                "client_id": client_id or "",
                "client_secret": client_secret or "",
                "refresh_token": current.refresh_token,
                "scope": "offline",
            },
            client_id=client_id,
            client_secret=client_secret,
        )
        self._store.save(tokens)
        logger.info(f"WHOOP access token refreshed, expires at {tokens.expires_at.isoformat()}")
        return tokens

    def needs_refresh(self, tokens: WhoopTokens) -> bool:
        return tokens.expires_at <= self._clock.now() + REFRESH_MARGIN

    async def refresh_if_needed(self, force: bool = False) -> WhoopTokens:
        async with self._lock:
            tokens = self._store.load()
            if force or self.needs_refresh(tokens):
                logger.info("WHOOP access token expired or expiring soon, refreshing")
                tokens = await self.refresh(tokens)
            return tokens

    async def get_valid_access_token(self) -> str:
        tokens = await self.refresh_if_needed()
        return tokens.access_token

    async def close(self) -> None:
        await self._http.close()

    async def _request_tokens(
        self,
        form: Dict[str, str],
        client_id: Optional[str],
        client_secret: Optional[str],
    ) -> WhoopTokens:
        try:
            status, body = await self._http.request_json("POST", TOKEN_URL, data=form)
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise OAuthError(f"Token request failed: {e}", cause=e) from e

        if status != 200:
            logger.debug(f"WHOOP token endpoint error response: {body}")
            raise OAuthError(
                f"Token request failed: HTTP {status}",
                context={"grant_type": form.get("grant_type"), "body": str(body)[:200]},
            )

        try:
            response = TokenResponse.model_validate(body)
        except ValidationError as e:
            raise OAuthError(f"Failed to parse token response: {e}", cause=e) from e

        if not response.refresh_token:
            raise OAuthError("No refresh token received despite requesting offline scope")

        return WhoopTokens(
            access_token=response.access_token,
            refresh_token=response.refresh_token,
            expires_at=self._clock.now() + timedelta(seconds=response.expires_in),
            token_type=response.token_type,
            client_id=client_id,
            client_secret=client_secret,
        )


# ============================================================
# BACKGROUND REFRESH
# ============================================================

class TokenRefresher:
    """Periodic refresh task, decoupled from the control loop."""

    def __init__(
        self,
        oauth: WhoopOAuth,
        interval_seconds: float = DEFAULT_REFRESH_INTERVAL_SECONDS,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self._oauth = oauth
        self._interval = interval_seconds
        self._sleep = sleep
        self._task: Optional[asyncio.Task] = None

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if not self.is_running:
            self._task = asyncio.create_task(self.run(), name="whoop-token-refresher")

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None

    async def refresh_once(self) -> bool:
        try:
            await self._oauth.refresh_if_needed()
            return True
        except OAuthError as e:
            logger.error(f"Background WHOOP token refresh failed: {e.to_log_format()}")
            return False

    async def run(self, max_iterations: Optional[int] = None) -> None:
        iterations = 0
        while max_iterations is None or iterations < max_iterations:
            await self.refresh_once()
            iterations += 1
            await self._sleep(self._interval)


# ============================================================
# AUTHORIZATION FLOW
# ============================================================

def callback_url(port: int) -> str:
    return f"http://127.0.0.1:{port}{CALLBACK_PATH}"


_PAGE = "<html><head><title>{title}</title></head><body><h1>{title}</h1><p>{body}</p></body></html>"


def build_callback_app(code_future: "asyncio.Future[str]") -> web.Application:
    """aiohttp.web app that resolves code_future from the redirect."""

    async def handle_callback(request: web.Request) -> web.Response:
        error = request.query.get("error")
        if error:
            description = request.query.get("error_description", "")
            if not code_future.done():
                code_future.set_exception(OAuthError(f"Authorization failed: {error} {description}".strip()))
            return web.Response(
                status=400,
                content_type="text/html",
                text=_PAGE.format(
                    title="WHOOP Authentication Failed",
                    body=f"Error: {error}. {description} Please close this window and try again.",
                ),
            )

        code = request.query.get("code")
        if not code:
            return web.Response(
                status=400,
                content_type="text/html",
                text=_PAGE.format(
                    title="WHOOP Authentication Error",
                    body="No authorization code received. Please try again.",
                ),
            )

        if not code_future.done():
            code_future.set_result(code)
        return web.Response(
            content_type="text/html",
            text=_PAGE.format(
                title="WHOOP Authentication Successful",
                body="You can now close this window and return to the terminal.",
            ),
        )

    app = web.Application()
    app.router.add_get(CALLBACK_PATH, handle_callback)
    return app


async def run_whoop_authentication(
    client_id: str,
    client_secret: str,
    data_directory: Path,
    port: int = DEFAULT_CALLBACK_PORT,
    timeout_seconds: float = 120.0,
    output: Callable[[str], Any] = print,
) -> WhoopTokens:
    """Interactive authorization-code flow; returns the stored tokens."""
    oauth = WhoopOAuth(
        data_directory=data_directory,
        client_id=client_id,
        client_secret=client_secret,
        redirect_uri=callback_url(port),
    )
    code_future: "asyncio.Future[str]" = asyncio.get_running_loop().create_future()
    runner = web.AppRunner(build_callback_app(code_future))
    await runner.setup()
    try:
        site = web.TCPSite(runner, "127.0.0.1", port)
        try:
            await site.start()
        except OSError as e:
            raise OAuthError(f"Failed to bind callback server to port {port}: {e}", cause=e) from e
        logger.info(f"OAuth callback server listening on {callback_url(port)}")

        output("Please open the following URL in your browser to authenticate with WHOOP:")
        output(oauth.authorization_url())
        output("Waiting for authentication...")

        try:
            code = await asyncio.wait_for(code_future, timeout=timeout_seconds)
        except asyncio.TimeoutError as e:
            raise OAuthError("Timeout waiting for authentication. Please try again.") from e
    finally:
        await runner.cleanup()

    try:
        output("Exchanging authorization code for access token...")
        tokens = await oauth.exchange_code(code)
    finally:
        await oauth.close()

    output(f"Successfully authenticated with WHOOP. Tokens saved to {oauth.store.path}")
    return tokens


__all__ = [
    "AUTH_URL",
    "TOKEN_URL",
    "SCOPES",
    "TOKENS_FILE_NAME",
    "CALLBACK_PATH",
    "WhoopTokens",
    "TokenResponse",
    "TokenStore",
    "WhoopOAuth",
    "TokenRefresher",
    "build_callback_app",
    "callback_url",
    "run_whoop_authentication",
]
