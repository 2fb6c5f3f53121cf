"""Tests for the PKCE login flow and token refresh.

The loopback listener is exercised for real: a fake browser issues the OAuth
redirect from a helper thread. The token endpoint is a requests adapter
mounted on the flow's session, so no request leaves the process.
"""

import base64
import hashlib
import json
import socket
import threading
from typing import Any
from unittest.mock import MagicMock
from urllib.parse import parse_qs, parse_qsl, urlencode, urlsplit

import pytest
import requests
from google_auth_oauthlib.flow import Flow
from requests.adapters import BaseAdapter

from inboxctl.auth.oauth import (
    AUTH_URL,
    SCOPE,
    TOKEN_URL,
    AuthorizationDeniedError,
    Authenticator,
    CsrfMismatchError,
    ExchangeFailedError,
    LoopbackListener,
    NoRefreshTokenError,
    PendingAuthorization,
    RefreshFailedError,
    _parse_callback,
)
from inboxctl.config.store import CredentialStore, TokenPair


# ── Helpers ────────────────────────────────────────────────────────────────────


def _s256(verifier: str) -> str:
    digest = hashlib.sha256(verifier.encode("ascii")).digest()
    return base64.urlsafe_b64encode(digest).rstrip(b"=").decode("ascii")


def _send_redirect(port: int, target: str) -> bytes:
    with socket.create_connection(("127.0.0.1", port), timeout=5) as conn:
        conn.sendall(f"GET {target} HTTP/1.1\r\nHost: localhost:{port}\r\n\r\n".encode())
        chunks = []
        while chunk := conn.recv(4096):
            chunks.append(chunk)
    return b"".join(chunks)


class FakeBrowser:
    """Stands in for the user's browser: follows the consent redirect at once."""

    def __init__(self, *, state: str | None = None, params: dict[str, str] | None = None,
                 launched: bool = True) -> None:
        self._state = state
        self._params = params
        self._launched = launched
        self.urls: list[str] = []
        self.pages: list[bytes] = []
        self._threads: list[threading.Thread] = []

    def __call__(self, url: str) -> bool:
        self.urls.append(url)
        query = {k: v[0] for k, v in parse_qs(urlsplit(url).query).items()}
        port = urlsplit(query["redirect_uri"]).port
        params = self._params if self._params is not None else {
            "code": "auth-code-1",
            "state": self._state if self._state is not None else query["state"],
        }
        target = "/?" + urlencode(params)
        thread = threading.Thread(
            target=lambda: self.pages.append(_send_redirect(port, target)), daemon=True
        )
        thread.start()
        self._threads.append(thread)
        return self._launched

    @property
    def query(self) -> dict[str, str]:
        return {k: v[0] for k, v in parse_qs(urlsplit(self.urls[-1]).query).items()}

    def join(self) -> None:
        for t in self._threads:
            t.join(timeout=5)


class TokenEndpoint(BaseAdapter):
    """Transport adapter answering every HTTPS request as the provider's token endpoint."""

    def __init__(self, status: int = 200, payload: Any = None, *,
                 headers: dict[str, str] | None = None, error: Exception | None = None) -> None:
        super().__init__()
        self.status = status
        self.payload = payload if payload is not None else {}
        self.headers = headers or {}
        self.error = error
        self.urls: list[str] = []
        self.forms: list[dict[str, str]] = []

    def send(self, request: requests.PreparedRequest, **kwargs: Any) -> requests.Response:
        self.urls.append(request.url or "")
        body = request.body or ""
        if isinstance(body, bytes):
            body = body.decode()
        self.forms.append(dict(parse_qsl(body)))
        if self.error is not None:
            raise self.error

        response = requests.Response()
        response.status_code = self.status
        response.headers.update({"Content-Type": "application/json", **self.headers})
        response._content = json.dumps(self.payload).encode()
        response.encoding = "utf-8"
        response.url = request.url or ""
        response.request = request
        return response

    def close(self) -> None:
        pass


def _authenticator(store: CredentialStore, endpoint: TokenEndpoint,
                   browser: FakeBrowser | None = None, **kwargs: Any) -> Authenticator:
    return Authenticator(store, adapter=endpoint, browser=browser or FakeBrowser(), **kwargs)


def _flow() -> Flow:
    return Flow.from_client_config(
        {"installed": {"client_id": "cid", "client_secret": "s", "auth_uri": AUTH_URL, "token_uri": TOKEN_URL}},
        scopes=[SCOPE],
        autogenerate_code_verifier=True,
    )


# ── Pending authorization ──────────────────────────────────────────────────────


class TestPendingAuthorization:
    def test_fresh_secrets_per_attempt(self) -> None:
        a, b = PendingAuthorization.start(_flow(), 1234), PendingAuthorization.start(_flow(), 1234)
        assert a.csrf_state != b.csrf_state
        assert a.pkce_verifier != b.pkce_verifier
        assert 43 <= len(a.pkce_verifier) <= 128

    def test_authorization_url(self) -> None:
        pending = PendingAuthorization.start(_flow(), 54321)
        query = {k: v[0] for k, v in parse_qs(urlsplit(pending.authorization_url).query).items()}
        assert pending.authorization_url.startswith(AUTH_URL)
        assert query["client_id"] == "cid"
        assert query["redirect_uri"] == "http://localhost:54321" == pending.redirect_uri
        assert query["scope"] == SCOPE
        assert query["state"] == pending.csrf_state
        assert query["code_challenge_method"] == "S256"
        assert query["code_challenge"] == _s256(pending.pkce_verifier)
        assert query["access_type"] == "offline"
        assert query["prompt"] == "consent"

    def test_repr_hides_secrets(self) -> None:
        pending = PendingAuthorization.start(_flow(), 1)
        assert pending.csrf_state not in repr(pending)
        assert pending.pkce_verifier not in repr(pending)


# ── Callback parsing ───────────────────────────────────────────────────────────


class TestParseCallback:
    def test_returns_code(self) -> None:
        assert _parse_callback("GET /?code=abc&state=s1 HTTP/1.1", "s1") == "abc"

    def test_state_mismatch(self) -> None:
        with pytest.raises(CsrfMismatchError):
            _parse_callback("GET /?code=abc&state=evil HTTP/1.1", "s1")

    def test_missing_state(self) -> None:
        with pytest.raises(CsrfMismatchError):
            _parse_callback("GET /?code=abc HTTP/1.1", "s1")

    def test_provider_error(self) -> None:
        with pytest.raises(AuthorizationDeniedError, match="access_denied"):
            _parse_callback("GET /?error=access_denied&state=s1 HTTP/1.1", "s1")

    def test_missing_code(self) -> None:
        with pytest.raises(AuthorizationDeniedError):
            _parse_callback("GET /?state=s1 HTTP/1.1", "s1")

    def test_garbage_request_line(self) -> None:
        with pytest.raises(AuthorizationDeniedError):
            _parse_callback("", "s1")


# ── Loopback listener ──────────────────────────────────────────────────────────


class TestLoopbackListener:
    def test_os_assigned_port(self) -> None:
        with LoopbackListener() as a, LoopbackListener() as b:
            assert a.port > 0
            assert a.port != b.port

    def test_one_shot(self) -> None:
        with LoopbackListener() as listener:
            port = listener.port
            responses: list[bytes] = []
            t = threading.Thread(
                target=lambda: responses.append(_send_redirect(port, "/?code=c&state=s")),
            )
            t.start()
            assert listener.wait_for_code("s") == "c"
            t.join(timeout=5)
        assert b"200 OK" in responses[0]
        with pytest.raises(OSError):
            socket.create_connection(("127.0.0.1", port), timeout=1)

    def test_browser_hanging_up_keeps_the_code(self) -> None:
        listener = LoopbackListener()
        listener.close()
        conn = MagicMock()
        conn.recv.return_value = b"GET /?code=c&state=s HTTP/1.1\r\n"
        conn.sendall.side_effect = BrokenPipeError()
        listener._sock = MagicMock()
        listener._sock.accept.return_value = (conn, ("127.0.0.1", 50000))

        assert listener.wait_for_code("s") == "c"
        conn.sendall.assert_called_once()

    def test_reset_before_request_line_is_auth_error(self) -> None:
        listener = LoopbackListener()
        listener.close()
        conn = MagicMock()
        conn.recv.side_effect = ConnectionResetError()
        listener._sock = MagicMock()
        listener._sock.accept.return_value = (conn, ("127.0.0.1", 50000))

        with pytest.raises(AuthorizationDeniedError, match="connection"):
            listener.wait_for_code("s")


# ── login ──────────────────────────────────────────────────────────────────────


class TestLogin:
    async def test_full_flow_exchanges_code_and_persists(self, empty_store: CredentialStore) -> None:
        endpoint = TokenEndpoint(200, {
            "access_token": "acc-1", "refresh_token": "ref-1", "expires_in": 3599, "token_type": "Bearer",
        })
        browser = FakeBrowser()
        tokens = await _authenticator(empty_store, endpoint, browser).login("cid", "secret")
        browser.join()

        assert tokens == TokenPair("acc-1", "ref-1")
        assert empty_store.load_tokens() == tokens
        assert b"Authentication successful" in browser.pages[0]

        assert endpoint.urls == [TOKEN_URL]
        form = endpoint.forms[0]
        assert form["grant_type"] == "authorization_code"
        assert form["code"] == "auth-code-1"
        assert form["client_id"] == "cid"
        assert form["client_secret"] == "secret"
        assert form["redirect_uri"] == browser.query["redirect_uri"]
        assert _s256(form["code_verifier"]) == browser.query["code_challenge"]

    async def test_announce_receives_the_authorization_url(self, empty_store: CredentialStore) -> None:
        endpoint = TokenEndpoint(200, {"access_token": "a", "refresh_token": "r", "token_type": "Bearer"})
        browser = FakeBrowser()
        announced: list[str] = []
        await _authenticator(empty_store, endpoint, browser, announce=announced.append).login("cid", "secret")
        browser.join()
        assert announced == browser.urls

    async def test_csrf_mismatch_never_exchanges(self, store: CredentialStore) -> None:
        endpoint = TokenEndpoint(200, {"access_token": "x", "refresh_token": "y", "token_type": "Bearer"})
        browser = FakeBrowser(state="forged-state")
        with pytest.raises(CsrfMismatchError):
            await _authenticator(store, endpoint, browser).login("cid", "secret")
        browser.join()

        assert endpoint.forms == []
        assert store.load_tokens() == TokenPair("old-access", "old-refresh")
        assert b"400" in browser.pages[0]

    async def test_listener_released_after_mismatch(self, store: CredentialStore) -> None:
        endpoint = TokenEndpoint(200, {})
        browser = FakeBrowser(state="forged-state")
        with pytest.raises(CsrfMismatchError):
            await _authenticator(store, endpoint, browser).login("cid", "secret")
        browser.join()
        port = urlsplit(browser.query["redirect_uri"]).port
        with pytest.raises(OSError):
            socket.create_connection(("127.0.0.1", port), timeout=1)

    async def test_missing_refresh_token(self, empty_store: CredentialStore) -> None:
        endpoint = TokenEndpoint(200, {"access_token": "acc-only", "token_type": "Bearer"})
        browser = FakeBrowser()
        with pytest.raises(NoRefreshTokenError):
            await _authenticator(empty_store, endpoint, browser).login("cid", "secret")
        browser.join()
        assert not (empty_store.config_dir / "tokens.json").exists()

    async def test_exchange_error_response(self, empty_store: CredentialStore) -> None:
        endpoint = TokenEndpoint(400, {"error": "invalid_grant"})
        browser = FakeBrowser()
        with pytest.raises(ExchangeFailedError, match="invalid_grant"):
            await _authenticator(empty_store, endpoint, browser).login("cid", "secret")
        browser.join()

    async def test_redirect_is_not_followed(self, empty_store: CredentialStore) -> None:
        endpoint = TokenEndpoint(302, {}, headers={"Location": "https://evil.example/token"})
        browser = FakeBrowser()
        with pytest.raises(ExchangeFailedError, match="redirect"):
            await _authenticator(empty_store, endpoint, browser).login("cid", "secret")
        browser.join()
        assert endpoint.urls == [TOKEN_URL]

    async def test_browser_launch_failure_is_not_fatal(self, empty_store: CredentialStore) -> None:
        endpoint = TokenEndpoint(200, {"access_token": "a", "refresh_token": "r", "token_type": "Bearer"})
        browser = FakeBrowser(launched=False)
        tokens = await _authenticator(empty_store, endpoint, browser).login("cid", "secret")
        browser.join()
        assert tokens.access_token == "a"

    async def test_each_login_uses_fresh_state(self, empty_store: CredentialStore) -> None:
        endpoint = TokenEndpoint(200, {"access_token": "a", "refresh_token": "r", "token_type": "Bearer"})
        browser = FakeBrowser()
        auth = _authenticator(empty_store, endpoint, browser)
        await auth.login("cid", "secret")
        await auth.login("cid", "secret")
        browser.join()
        first, second = (parse_qs(urlsplit(u).query)["state"][0] for u in browser.urls)
        assert first != second
        assert endpoint.forms[0]["code_verifier"] != endpoint.forms[1]["code_verifier"]


# ── refresh ────────────────────────────────────────────────────────────────────


class TestRefresh:
    async def test_keeps_refresh_token_when_not_rotated(self, store: CredentialStore) -> None:
        endpoint = TokenEndpoint(200, {"access_token": "new-access", "expires_in": 3599})
        tokens = await _authenticator(store, endpoint).refresh("cid", "secret", "old-refresh")

        assert tokens == TokenPair("new-access", "old-refresh")
        assert store.load_tokens() == tokens
        assert endpoint.urls == [TOKEN_URL]
        form = endpoint.forms[0]
        assert form["grant_type"] == "refresh_token"
        assert form["refresh_token"] == "old-refresh"
        assert form["client_id"] == "cid"
        assert form["client_secret"] == "secret"

    async def test_rotated_refresh_token_replaces_old(self, store: CredentialStore) -> None:
        endpoint = TokenEndpoint(200, {"access_token": "a2", "refresh_token": "r2", "expires_in": 3599})
        tokens = await _authenticator(store, endpoint).refresh("cid", "secret", "old-refresh")
        assert tokens == TokenPair("a2", "r2")
        assert store.load_tokens() == tokens

    async def test_failure_raises_and_keeps_stored_tokens(self, store: CredentialStore) -> None:
        endpoint = TokenEndpoint(400, {"error": "invalid_grant", "error_description": "Token has been revoked."})
        with pytest.raises(RefreshFailedError, match="invalid_grant"):
            await _authenticator(store, endpoint).refresh("cid", "secret", "old-refresh")
        assert store.load_tokens() == TokenPair("old-access", "old-refresh")

    async def test_network_error_raises_refresh_failed(self, store: CredentialStore) -> None:
        endpoint = TokenEndpoint(error=requests.ConnectionError("offline"))
        with pytest.raises(RefreshFailedError, match="offline"):
            await _authenticator(store, endpoint).refresh("cid", "secret", "old-refresh")

    async def test_redirect_is_not_followed(self, store: CredentialStore) -> None:
        endpoint = TokenEndpoint(307, {}, headers={"Location": "https://evil.example/token"})
        with pytest.raises(RefreshFailedError):
            await _authenticator(store, endpoint).refresh("cid", "secret", "old-refresh")
        assert endpoint.urls == [TOKEN_URL]
