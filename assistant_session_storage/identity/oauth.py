"""
OAuth2 token lifecycle for the remote sync account.

Implements the OAuth2 Authorization Code flow for an installed app:

1. Open the consent page in the user's browser
2. Receive the redirect on a short-lived loopback listener (fixed port)
3. Check the per-attempt ``state`` value, exchange the code for tokens
4. Persist access token, refresh token, expiry and account identity

Access tokens are refreshed transparently when they are within 60
seconds of expiry. Token endpoint calls use urllib from a worker thread.

Usage:

    >>> manager = OAuthTokenManager(FileSecretStore(path), config)
    >>> await manager.set_client_credentials(client_id, client_secret)
    >>> status = await manager.sign_in()
    >>> token = await manager.get_access_token()
"""

from __future__ import annotations

import asyncio
import http.server
import json
import logging
import platform
import secrets
import shutil
import subprocess
import threading
import time
import urllib.error
import urllib.parse
import urllib.request
import webbrowser
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from ..config import StorageConfig
from ..exceptions import AuthenticationError, AuthenticationRequiredError
from ..models import AuthStatus, now_ms
from .secrets import (
    ACCESS_TOKEN_KEY,
    CLIENT_ID_KEY,
    CLIENT_SECRET_KEY,
    REFRESH_TOKEN_KEY,
    SESSION_SECRET_KEYS,
    TOKEN_EXPIRY_KEY,
    USER_EMAIL_KEY,
    USER_NAME_KEY,
    SecretStore,
)

logger = logging.getLogger(__name__)

AUTHORIZE_URL = "https://accounts.google.com/o/oauth2/v2/auth"
TOKEN_URL = "https://oauth2.googleapis.com/token"
USERINFO_URL = "https://www.googleapis.com/oauth2/v2/userinfo"
SCOPES = "https://www.googleapis.com/auth/drive.appdata"

REFRESH_MARGIN_MS = 60_000
HTTP_TIMEOUT_SECONDS = 30

SETUP_INSTRUCTIONS = "\n".join(
    [
        "Remote sync needs OAuth client credentials:",
        "1. Go to console.cloud.google.com",
        "2. Create a project and enable the Drive API",
        "3. Create OAuth 2.0 credentials (Desktop app)",
        "4. Store the Client ID and Client Secret with set_client_credentials()",
    ]
)


def _is_wsl() -> bool:
    """Detect if running inside WSL."""
    try:
        return "microsoft" in platform.release().lower()
    except Exception:
        return False


def open_browser(url: str) -> None:
    """Open URL in browser, with WSL2 support."""
    if _is_wsl():
        if shutil.which("wslview"):
            subprocess.Popen(["wslview", url], stdout=subprocess.DEVNULL, stderr=subprocess.DEVNULL)
            return
        ps = shutil.which("powershell.exe")
        if ps:
            subprocess.Popen(
                [ps, "-NoProfile", "-Command", f'Start-Process "{url}"'],
                stdout=subprocess.DEVNULL,
                stderr=subprocess.DEVNULL,
            )
            return

    webbrowser.open(url)


# =============================================================================
# Token endpoint helpers (blocking; run via asyncio.to_thread)
# =============================================================================


def _post_form(url: str, params: dict[str, str]) -> dict[str, Any]:
    """POST a form to an OAuth endpoint and return the JSON body."""
    data = urllib.parse.urlencode(params).encode("utf-8")
    req = urllib.request.Request(
        url,
        data=data,
        headers={"Content-Type": "application/x-www-form-urlencoded"},
    )
    try:
        with urllib.request.urlopen(req, timeout=HTTP_TIMEOUT_SECONDS) as resp:
            return json.loads(resp.read())
    except urllib.error.HTTPError as e:
        error_body = e.read().decode("utf-8", errors="replace")
        raise AuthenticationError(url, f"HTTP {e.code}: {error_body}") from e
    except (urllib.error.URLError, TimeoutError, json.JSONDecodeError) as e:
        raise AuthenticationError(url, str(e)) from e


def _get_json(url: str, access_token: str) -> dict[str, Any]:
    req = urllib.request.Request(url, headers={"Authorization": f"Bearer {access_token}"})
    with urllib.request.urlopen(req, timeout=HTTP_TIMEOUT_SECONDS) as resp:
        return json.loads(resp.read())


# =============================================================================
# Loopback callback listener
# =============================================================================


@dataclass
class _CallbackResult:
    """What the redirect delivered for one sign-in attempt."""

    code: str | None = None
    state: str | None = None
    error: str | None = None
    received: bool = False


def _make_handler(result: _CallbackResult) -> type[http.server.BaseHTTPRequestHandler]:
    class _CallbackHandler(http.server.BaseHTTPRequestHandler):
        """Captures the OAuth2 redirect into ``result``."""

        def do_GET(self):  # noqa: N802
            parsed = urllib.parse.urlparse(self.path)
            if parsed.path != "/callback":
                self.send_response(404)
                self.end_headers()
                return

            params = urllib.parse.parse_qs(parsed.query)
            result.code = params.get("code", [None])[0]
            result.state = params.get("state", [None])[0]
            result.error = params.get("error", [None])[0]
            result.received = True

            if result.error or not result.code:
                html = f"<h2>Authorization failed</h2><p>{result.error or 'No code received'}</p>"
            else:
                html = "<h2>Authorization complete</h2><p>You can close this tab.</p>"
            self._respond(html)

        def _respond(self, html: str):
            body = (
                "<html><body style='font-family:sans-serif;text-align:center;padding:40px'>"
                f"{html}</body></html>"
            )
            self.send_response(200)
            self.send_header("Content-Type", "text/html")
            self.end_headers()
            self.wfile.write(body.encode())

        def log_message(self, format, *args):  # noqa: A002
            """Suppress default request logging."""
            pass

    return _CallbackHandler


def _serve_until_callback(
    server: http.server.HTTPServer,
    result: _CallbackResult,
    deadline: float,
    stop: threading.Event,
) -> None:
    """Handle requests until the redirect arrives, the deadline passes, or stop is set.

    Always closes the server.
    """
    try:
        while not result.received and not stop.is_set():
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return
            server.timeout = min(remaining, 0.5)
            server.handle_request()
    finally:
        server.server_close()


# =============================================================================
# Token manager
# =============================================================================


class OAuthTokenManager:
    """Owns the remote account's OAuth2 tokens.

    Secrets held: access token, refresh token, token expiry, account
    email and name, plus the OAuth client id/secret used to obtain them.
    """

    def __init__(
        self,
        secret_store: SecretStore,
        config: StorageConfig | None = None,
        browser_opener: Callable[[str], None] = open_browser,
    ) -> None:
        self.secrets = secret_store
        self.config = config or StorageConfig()
        self._open_browser = browser_opener
        self._expires_at: int | None = None
        self._refresh_lock = asyncio.Lock()

    @property
    def redirect_uri(self) -> str:
        return f"http://localhost:{self.config.oauth_callback_port}/callback"

    async def get_auth_status(self) -> AuthStatus:
        """Signed in iff an access token or a refresh token is stored."""
        access_token = await self.secrets.get(ACCESS_TOKEN_KEY)
        refresh_token = await self.secrets.get(REFRESH_TOKEN_KEY)
        return AuthStatus(
            is_signed_in=bool(access_token or refresh_token),
            user_email=await self.secrets.get(USER_EMAIL_KEY),
            user_name=await self.secrets.get(USER_NAME_KEY),
        )

    async def set_client_credentials(self, client_id: str, client_secret: str) -> None:
        await self.secrets.store(CLIENT_ID_KEY, client_id.strip())
        await self.secrets.store(CLIENT_SECRET_KEY, client_secret.strip())

    async def _client_credentials(self) -> tuple[str, str] | None:
        client_id = await self.secrets.get(CLIENT_ID_KEY)
        client_secret = await self.secrets.get(CLIENT_SECRET_KEY)
        if not client_id or not client_secret:
            return None
        return client_id, client_secret

    def build_authorize_url(self, client_id: str, state: str) -> str:
        params = urllib.parse.urlencode(
            {
                "client_id": client_id,
                "redirect_uri": self.redirect_uri,
                "response_type": "code",
                "scope": SCOPES,
                "access_type": "offline",
                "prompt": "consent",
                "state": state,
            }
        )
        return f"{AUTHORIZE_URL}?{params}"

    async def sign_in(self) -> AuthStatus:
        """Run the interactive authorization-code flow and persist tokens.

        Raises:
            AuthenticationError: Missing client credentials, port in use,
                user denial, timeout, state mismatch, or failed exchange
        """
        credentials = await self._client_credentials()
        if credentials is None:
            raise AuthenticationError("oauth", SETUP_INSTRUCTIONS)
        client_id, client_secret = credentials

        code = await self._authorize(client_id)

        tokens = await asyncio.to_thread(
            _post_form,
            TOKEN_URL,
            {
                "code": code,
                "client_id": client_id,
                "client_secret": client_secret,
                "redirect_uri": self.redirect_uri,
                "grant_type": "authorization_code",
            },
        )
        if not tokens.get("access_token"):
            raise AuthenticationError(TOKEN_URL, "Token response did not include an access token")
        await self._save_tokens(tokens)

        email, name = await self._fetch_user_info(tokens["access_token"])
        await self.secrets.store(USER_EMAIL_KEY, email)
        await self.secrets.store(USER_NAME_KEY, name)

        logger.info(f"Signed in to remote storage as {email}")
        return await self.get_auth_status()

    async def _authorize(self, client_id: str) -> str:
        """Open the consent page and wait for the redirect. Returns the code."""
        state = secrets.token_hex(16)
        result = _CallbackResult()
        port = self.config.oauth_callback_port

        try:
            server = http.server.HTTPServer(("127.0.0.1", port), _make_handler(result))
        except OSError as e:
            raise AuthenticationError(
                "oauth", f"Could not listen on callback port {port}. Make sure it is free."
            ) from e

        auth_url = self.build_authorize_url(client_id, state)
        logger.info(f"Waiting for OAuth callback on port {port}")
        try:
            self._open_browser(auth_url)
        except Exception as e:
            logger.warning(f"Could not open browser ({e}); visit {auth_url}")

        stop = threading.Event()
        deadline = time.monotonic() + self.config.oauth_timeout_seconds
        try:
            await asyncio.to_thread(_serve_until_callback, server, result, deadline, stop)
        finally:
            stop.set()

        if not result.received:
            raise AuthenticationError(
                "oauth",
                f"Timed out: no response received within {self.config.oauth_timeout_seconds:g} seconds",
            )
        if result.error:
            raise AuthenticationError("oauth", f"Authorization denied: {result.error}")
        if not result.code:
            raise AuthenticationError("oauth", "Authorization failed: no code received")
        if result.state != state:
            raise AuthenticationError("oauth", "OAuth state mismatch - possible CSRF attack")
        return result.code

    async def get_access_token(self) -> str:
        """Return a valid access token, refreshing it when close to expiry.

        Raises:
            AuthenticationRequiredError: No refresh token stored
            AuthenticationError: Refresh failed or client credentials missing
        """
        async with self._refresh_lock:
            if await self._token_expiry() > now_ms() + REFRESH_MARGIN_MS:
                token = await self.secrets.get(ACCESS_TOKEN_KEY)
                if token:
                    return token

            refresh_token = await self.secrets.get(REFRESH_TOKEN_KEY)
            if not refresh_token:
                raise AuthenticationRequiredError(
                    "Not signed in to remote storage. Sign in to enable sync."
                )
            return await self._refresh_access_token(refresh_token)

    async def _token_expiry(self) -> int:
        if self._expires_at is None:
            stored = await self.secrets.get(TOKEN_EXPIRY_KEY)
            try:
                self._expires_at = int(stored) if stored else 0
            except ValueError:
                self._expires_at = 0
        return self._expires_at

    async def _refresh_access_token(self, refresh_token: str) -> str:
        credentials = await self._client_credentials()
        if credentials is None:
            raise AuthenticationError("oauth", "OAuth client credentials not configured")
        client_id, client_secret = credentials

        try:
            tokens = await asyncio.to_thread(
                _post_form,
                TOKEN_URL,
                {
                    "refresh_token": refresh_token,
                    "client_id": client_id,
                    "client_secret": client_secret,
                    "grant_type": "refresh_token",
                },
            )
        except AuthenticationError as e:
            raise AuthenticationError(
                TOKEN_URL, "Token refresh failed - please sign in again"
            ) from e

        if not tokens.get("access_token"):
            raise AuthenticationError(TOKEN_URL, "Token refresh failed - please sign in again")

        await self._save_tokens(tokens)
        logger.debug("Access token refreshed")
        return tokens["access_token"]

    async def _save_tokens(self, tokens: dict[str, Any]) -> None:
        await self.secrets.store(ACCESS_TOKEN_KEY, tokens["access_token"])
        if tokens.get("refresh_token"):
            await self.secrets.store(REFRESH_TOKEN_KEY, tokens["refresh_token"])
        self._expires_at = now_ms() + int(tokens.get("expires_in", 3600)) * 1000
        await self.secrets.store(TOKEN_EXPIRY_KEY, str(self._expires_at))

    async def _fetch_user_info(self, access_token: str) -> tuple[str, str]:
        try:
            info = await asyncio.to_thread(_get_json, USERINFO_URL, access_token)
        except (urllib.error.URLError, TimeoutError, json.JSONDecodeError) as e:
            logger.warning(f"Could not fetch account info: {e}")
            return "unknown", "Remote User"
        return info.get("email") or "unknown", info.get("name") or "Remote User"

    async def sign_out(self) -> None:
        """Delete tokens and account identity. Client credentials are kept."""
        for key in SESSION_SECRET_KEYS:
            await self.secrets.delete(key)
        self._expires_at = None
        logger.info("Signed out of remote storage")
