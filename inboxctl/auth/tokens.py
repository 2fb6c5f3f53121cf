"""Token lifecycle — probe the stored access token, refresh at most once."""

from __future__ import annotations

import logging
from collections.abc import Callable
from enum import Enum

from inboxctl.api.client import ApiError, GmailClient
from inboxctl.auth.oauth import Authenticator, RefreshFailedError
from inboxctl.config.store import CredentialStore, TokenPair

logger = logging.getLogger(__name__)

#: Builds a GmailClient from an access token (swapped out in tests).
ClientFactory = Callable[[str], GmailClient]


class TokenState(str, Enum):
    """Where a TokenManager is in its single refresh-and-retry cycle."""

    FRESH = "fresh"                # stored token not yet probed
    PROBE_FAILED = "probe_failed"  # stored token rejected; refresh pending or failed
    REFRESHED = "refreshed"        # refresh done; no further refresh allowed


class TokenManager:
    """Hands out a GmailClient backed by a working access token.

    The stored access token is probed with a one-message listing. Any probe
    failure is treated as expiry: the token is refreshed once, persisted, and
    a client for the new token is returned without probing again. A manager
    lives for one CLI invocation, so at most one refresh happens per command.

    Usage::

        manager = TokenManager(store, Authenticator(store))
        async with await manager.ensure_client() as gmail:
            ...
    """

    def __init__(
        self,
        store: CredentialStore,
        authenticator: Authenticator,
        client_factory: ClientFactory = GmailClient,
    ) -> None:
        self._store = store
        self._auth = authenticator
        self._client_factory = client_factory
        self._tokens: TokenPair | None = None
        self.state = TokenState.FRESH

    async def ensure_client(self) -> GmailClient:
        """Return a client for a usable access token.

        Raises:
            NotConfiguredError / NotLoggedInError: if credentials are missing.
            AuthError: if the refresh fails, or already failed on this manager.
        """
        client_id, client_secret = self._store.require_client()

        if self.state is TokenState.PROBE_FAILED:
            raise RefreshFailedError("Token refresh already failed. Run 'inboxctl login' again")

        if self.state is TokenState.REFRESHED:
            assert self._tokens is not None
            return self._client_factory(self._tokens.access_token)

        self._tokens = self._store.load_tokens()
        client = self._client_factory(self._tokens.access_token)
        if await self._probe(client):
            return client

        await client.aclose()
        self.state = TokenState.PROBE_FAILED
        self._tokens = await self._auth.refresh(client_id, client_secret, self._tokens.refresh_token)
        self.state = TokenState.REFRESHED
        return self._client_factory(self._tokens.access_token)

    @staticmethod
    async def _probe(client: GmailClient) -> bool:
        # Any failure counts as expiry: the API gives no dedicated signal.
        try:
            await client.list_messages(max_results=1)
        except ApiError as exc:
            logger.info("Stored access token rejected (%s); refreshing", exc)
            return False
        return True
