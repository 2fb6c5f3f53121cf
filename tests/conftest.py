"""Shared pytest fixtures."""

from pathlib import Path

import pytest

from inboxctl.config.store import Config, CredentialStore, TokenPair


@pytest.fixture(autouse=True)
def _isolated_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Keep real user config and env overrides out of every test."""
    for key in ("INBOXCTL_CONFIG_DIR", "INBOXCTL_CLIENT_ID", "INBOXCTL_CLIENT_SECRET", "INBOXCTL_BROWSER"):
        monkeypatch.delenv(key, raising=False)


@pytest.fixture
def store(tmp_path: Path) -> CredentialStore:
    """A CredentialStore with client config and tokens already saved."""
    s = CredentialStore(tmp_path / "cfg")
    s.save_config(Config(client_id="client-123", client_secret="shh"))
    s.save_tokens(TokenPair(access_token="old-access", refresh_token="old-refresh"))
    return s


@pytest.fixture
def empty_store(tmp_path: Path) -> CredentialStore:
    return CredentialStore(tmp_path / "empty")
