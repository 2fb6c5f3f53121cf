"""OAuth2 authorization-code flow with PKCE and a one-shot loopback redirect listener."""

from __future__ import annotations

import asyncio
import logging
import os
import shutil
import socket
import subprocess
import webbrowser
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any
from urllib.parse import parse_qs, urlsplit

import requests
from google.auth.exceptions import GoogleAuthError
from google.auth.transport.requests import Request
from google.oauth2.credentials import Credentials
from google_auth_oauthlib.flow import Flow
from oauthlib.oauth2 import OAuth2Error

from inboxctl.config.store import CredentialStore, TokenPair

logger = logging.getLogger(__name__)

AUTH_URL = "https://accounts.google.com/o/oauth2/v2/auth"
TOKEN_URL = "https://oauth2.googleapis.com/token"
SCOPE = "https://www.googleapis.com/auth/gmail.modify"

_LOOPBACK_HOST = "127.0.0.1"
_MAX_REQUEST_LINE = 8192

# oauthlib raises a bare Warning when the granted scope differs from the requested one
_EXCHANGE_ERRORS = (OAuth2Error, requests.RequestException, ValueError, Warning)

_SUCCESS_PAGE = (
    b"HTTP/1.1 200 OK\r\n"
    b"Content-Type: text/html; charset=utf-8\r\n"
    b"Connection: close\r\n\r\n"
    b"<html><body><h1>Authentication successful!</h1>"
    b"<p>You can close this window.</p></body></html>"
)
_FAILURE_PAGE = (
    b"HTTP/1.1 400 Bad Request\r\n"
    b"Content-Type: text/html; charset=utf-8\r\n"
    b"Connection: close\r\n\r\n"
    b"<html><body><h1>Authentication failed</h1>"
    b"<p>Return to the terminal for details.</p></body></html>"
)


# ── Errors ─────────────────────────────────────────────────────────────────────


class AuthError(Exception):
    """Raised when login or token refresh fails."""


class CsrfMismatchError(AuthError):
    def __init__(self) -> None:
        super().__init__("CSRF token mismatch in OAuth callback")


class AuthorizationDeniedError(AuthError):
    """The provider redirected back without an authorization code."""


class ExchangeFailedError(AuthError):
    """The authorization code could not be exchanged for tokens."""


class NoRefreshTokenError(AuthError):
    def __init__(self) -> None:
        super().__init__(
            "No refresh token received. Revoke the app's access at "
            "https://myaccount.google.com/permissions and log in again"
        )


class RefreshFailedError(AuthError):
    """The refresh token could not be exchanged for a new access token."""


# ── Pending authorization ──────────────────────────────────────────────────────


@dataclass(frozen=True)
class PendingAuthorization:
    """Secrets for a single login attempt. Never persisted."""

    redirect_port: int
    csrf_state: str
    pkce_verifier: str
    authorization_url: str

    def __repr__(self) -> str:
        return f"PendingAuthorization(redirect_port={self.redirect_port})"

    @property
    def redirect_uri(self) -> str:
        return _redirect_uri(self.redirect_port)

    @classmethod
    def start(cls, flow: Flow, redirect_port: int) -> PendingAuthorization:
        """Point ``flow`` at the loopback port and draw a fresh state and verifier."""
        flow.redirect_uri = _redirect_uri(redirect_port)
        # A refresh token is only issued for offline access
        url, state = flow.authorization_url(access_type="offline", prompt="consent")
        return cls(
            redirect_port=redirect_port,
            csrf_state=state,
            pkce_verifier=flow.code_verifier,
            authorization_url=url,
        )


def _redirect_uri(port: int) -> str:
    return f"http://localhost:{port}"


# ── Loopback listener ──────────────────────────────────────────────────────────


class LoopbackListener:
    """One-shot HTTP listener on an OS-assigned loopback port.

    Accepts exactly one connection, answers it, and closes. Use as a context
    manager so the socket is released on every exit path::

        with LoopbackListener() as listener:
            port = listener.port
            code = listener.wait_for_code(expected_state)
    """

    def __init__(self, host: str = _LOOPBACK_HOST) -> None:
        self._sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        try:
            self._sock.bind((host, 0))
            self._sock.listen(1)
        except OSError:
            self._sock.close()
            raise
        self.port: int = self._sock.getsockname()[1]

    def __enter__(self) -> LoopbackListener:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def close(self) -> None:
        self._sock.close()

    def wait_for_code(self, expected_state: str) -> str:
        """Block until the browser redirect arrives; return the authorization code.

        Raises:
            CsrfMismatchError: if the callback's ``state`` is not ``expected_state``.
            AuthorizationDeniedError: if the callback carries no code or the
                connection breaks before the request line is read.
        """
        logger.info("Waiting for OAuth callback on port %d", self.port)
        conn, _ = self._sock.accept()
        with conn:
            try:
                request_line = _read_request_line(conn)
            except OSError as exc:
                raise AuthorizationDeniedError(f"OAuth callback connection failed: {exc}") from exc
            try:
                code = _parse_callback(request_line, expected_state)
            except AuthError:
                _answer(conn, _FAILURE_PAGE)
                raise
            _answer(conn, _SUCCESS_PAGE)
        self.close()
        return code


def _read_request_line(conn: socket.socket) -> str:
    buf = b""
    while b"\n" not in buf and len(buf) < _MAX_REQUEST_LINE:
        chunk = conn.recv(1024)
        if not chunk:
            break
        buf += chunk
    return buf.split(b"\n", 1)[0].decode("latin-1").strip()


def _answer(conn: socket.socket, page: bytes) -> None:
    # The callback is already parsed; a browser that hung up changes nothing.
    try:
        conn.sendall(page)
    except OSError as exc:
        logger.debug("Could not answer OAuth callback: %s", exc)


def _parse_callback(request_line: str, expected_state: str) -> str:
    """Extract the authorization code from ``GET /?code=...&state=... HTTP/1.1``."""
    parts = request_line.split()
    if len(parts) < 2:
        raise AuthorizationDeniedError(f"Invalid callback request: {request_line!r}")
    query = parse_qs(urlsplit(parts[1]).query)

    state = query.get("state", [""])[0]
    if state != expected_state:
        raise CsrfMismatchError()

    if "error" in query:
        raise AuthorizationDeniedError(f"Authorization denied: {query['error'][0]}")
    code = query.get("code", [""])[0]
    if not code:
        raise AuthorizationDeniedError("No code in OAuth callback")
    return code


# ── Browser ────────────────────────────────────────────────────────────────────


def open_in_browser(url: str) -> bool:
    """Best-effort: open ``url`` in $INBOXCTL_BROWSER, else the system default.

    Returns False if nothing could be launched; callers should print the URL.
    """
    preferred = os.environ.get("INBOXCTL_BROWSER")
    if preferred and shutil.which(preferred):
        try:
            subprocess.Popen(
                [preferred, url],
                stdout=subprocess.DEVNULL,
                stderr=subprocess.DEVNULL,
            )
            return True
        except OSError as exc:
            logger.warning("Could not launch %s: %s", preferred, exc)
    try:
        return webbrowser.open(url)
    except webbrowser.Error as exc:
        logger.warning("Could not open a browser: %s", exc)
        return False


# ── Authenticator ──────────────────────────────────────────────────────────────


class Authenticator:
    """Runs the PKCE login flow and refreshes tokens against Google's endpoints.

    The protocol side (state, verifier, authorization URL, code exchange) is
    google-auth-oauthlib's ``Flow``; refresh goes through google-auth
    ``Credentials``. Both talk to the token endpoint over a requests session
    that refuses redirects. Every token obtained is persisted through the
    CredentialStore before it is returned.

    ``adapter`` replaces the HTTPS transport (tests mount a fake token
    endpoint); ``announce`` receives the authorization URL before the
    browser is launched.

    Usage::

        auth = Authenticator(CredentialStore())
        tokens = await auth.login(client_id, client_secret)
    """

    def __init__(
        self,
        store: CredentialStore,
        *,
        adapter: requests.adapters.BaseAdapter | None = None,
        browser: Callable[[str], bool] = open_in_browser,
        announce: Callable[[str], None] | None = None,
    ) -> None:
        self._store = store
        self._adapter = adapter
        self._browser = browser
        self._announce = announce

    async def login(self, client_id: str, client_secret: str) -> TokenPair:
        """Run the full browser login and return the new token pair.

        Blocks until the browser redirect arrives; there is no timeout.
        """
        flow = self._flow(client_id, client_secret)
        with LoopbackListener() as listener:
            pending = PendingAuthorization.start(flow, listener.port)

            logger.info("Opening browser for authentication")
            if self._announce is not None:
                self._announce(pending.authorization_url)
            if not self._browser(pending.authorization_url):
                logger.warning(
                    "No browser could be launched; open this URL manually: %s",
                    pending.authorization_url,
                )

            code = listener.wait_for_code(pending.csrf_state)

        try:
            token: dict[str, Any] = await asyncio.to_thread(
                flow.fetch_token, code=code, include_client_id=True
            )
        except _EXCHANGE_ERRORS as exc:
            raise ExchangeFailedError(f"Token exchange failed: {exc}") from exc

        refresh_token = token.get("refresh_token")
        if not refresh_token:
            raise NoRefreshTokenError()

        tokens = TokenPair(access_token=str(token["access_token"]), refresh_token=str(refresh_token))
        self._store.save_tokens(tokens)
        logger.info("Login complete; tokens saved")
        return tokens

    async def refresh(self, client_id: str, client_secret: str, refresh_token: str) -> TokenPair:
        """Exchange the refresh token for a new access token.

        The provider may rotate the refresh token; if it does not, the one
        passed in is kept.
        """
        credentials = Credentials(
            None,
            refresh_token=refresh_token,
            token_uri=TOKEN_URL,
            client_id=client_id,
            client_secret=client_secret,
        )
        try:
            await asyncio.to_thread(credentials.refresh, Request(self._session()))
        except GoogleAuthError as exc:
            raise RefreshFailedError(f"Token refresh failed: {exc}") from exc

        tokens = TokenPair(
            access_token=str(credentials.token),
            refresh_token=str(credentials.refresh_token or refresh_token),
        )
        self._store.save_tokens(tokens)
        logger.info("Access token refreshed")
        return tokens

    # ── Internal helpers ───────────────────────────────────────────────────────

    def _flow(self, client_id: str, client_secret: str) -> Flow:
        flow = Flow.from_client_config(
            {
                "installed": {
                    "client_id": client_id,
                    "client_secret": client_secret,
                    "auth_uri": AUTH_URL,
                    "token_uri": TOKEN_URL,
                }
            },
            scopes=[SCOPE],
            autogenerate_code_verifier=True,
        )
        self._session(flow.oauth2session)
        return flow

    def _session(self, session: requests.Session | None = None) -> requests.Session:
        session = session if session is not None else requests.Session()
        # A redirect from the token endpoint raises TooManyRedirects instead of being followed
        session.max_redirects = 0
        if self._adapter is not None:
            session.mount("https://", self._adapter)
        return session
