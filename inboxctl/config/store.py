"""Credential storage — OAuth client config and the persisted token pair."""

from __future__ import annotations

import json
import logging
import os
from dataclasses import asdict, dataclass
from pathlib import Path

logger = logging.getLogger(__name__)

_DEFAULT_CONFIG_DIR = Path("~/.config/inboxctl")
_CONFIG_FILE = "config.json"
_TOKENS_FILE = "tokens.json"


class ConfigError(Exception):
    """Raised when required credentials are missing."""


class NotConfiguredError(ConfigError):
    """No OAuth client id and secret have been stored yet."""

    def __init__(self) -> None:
        super().__init__("Not configured. Run 'inboxctl configure <client-id>' first")


class NotLoggedInError(ConfigError):
    """No token pair has been stored yet."""

    def __init__(self) -> None:
        super().__init__("Not logged in. Run 'inboxctl login' first")


@dataclass(frozen=True)
class Config:
    """OAuth client credentials from the Google Cloud Console."""

    client_id: str | None = None
    client_secret: str | None = None


@dataclass(frozen=True)
class TokenPair:
    """The current access token and the long-lived refresh token."""

    access_token: str
    refresh_token: str

    def __repr__(self) -> str:
        return "TokenPair(access_token=***, refresh_token=***)"


class CredentialStore:
    """JSON-file backed storage for client config and tokens.

    Both files live in one directory (``INBOXCTL_CONFIG_DIR`` or
    ``~/.config/inboxctl``) and are written with owner-only permissions.
    ``INBOXCTL_CLIENT_ID`` / ``INBOXCTL_CLIENT_SECRET`` override the stored
    client credentials field by field.

    Usage::

        store = CredentialStore()
        client_id, client_secret = store.require_client()
        tokens = store.load_tokens()
    """

    def __init__(self, config_dir: str | Path | None = None) -> None:
        raw = config_dir or os.environ.get("INBOXCTL_CONFIG_DIR") or _DEFAULT_CONFIG_DIR
        self._dir = Path(raw).expanduser()

    @property
    def config_dir(self) -> Path:
        return self._dir

    # ── Config ──────────────────────────────────────────────────────────────────

    def load_config(self) -> Config:
        """Return the stored client config, with env overrides applied."""
        data = self._read_json(_CONFIG_FILE) or {}
        return Config(
            client_id=os.environ.get("INBOXCTL_CLIENT_ID") or data.get("client_id"),
            client_secret=os.environ.get("INBOXCTL_CLIENT_SECRET") or data.get("client_secret"),
        )

    def save_config(self, config: Config) -> None:
        self._write_json(_CONFIG_FILE, asdict(config))
        logger.info("Saved client config to %s", self._dir / _CONFIG_FILE)

    def require_client(self) -> tuple[str, str]:
        """Return (client_id, client_secret) or raise NotConfiguredError.

        A client id without its secret counts as not configured.
        """
        config = self.load_config()
        if not config.client_id or not config.client_secret:
            raise NotConfiguredError()
        return config.client_id, config.client_secret

    # ── Tokens ──────────────────────────────────────────────────────────────────

    def load_tokens(self) -> TokenPair:
        """Return the stored token pair.

        Raises:
            NotLoggedInError: if no tokens were saved or the file is unusable.
        """
        data = self._read_json(_TOKENS_FILE)
        if not data or not data.get("access_token") or not data.get("refresh_token"):
            raise NotLoggedInError()
        return TokenPair(
            access_token=str(data["access_token"]),
            refresh_token=str(data["refresh_token"]),
        )

    def save_tokens(self, tokens: TokenPair) -> None:
        self._write_json(_TOKENS_FILE, asdict(tokens))
        logger.debug("Saved token pair to %s", self._dir / _TOKENS_FILE)

    # ── Private ─────────────────────────────────────────────────────────────────

    def _read_json(self, name: str) -> dict | None:
        path = self._dir / name
        if not path.exists():
            return None
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            logger.warning("Ignoring unreadable %s: %s", path, exc)
            return None
        return data if isinstance(data, dict) else None

    def _write_json(self, name: str, data: dict) -> None:
        self._dir.mkdir(parents=True, exist_ok=True)
        path = self._dir / name
        path.touch(mode=0o600, exist_ok=True)
        path.chmod(0o600)
        path.write_text(json.dumps(data, indent=2), encoding="utf-8")
