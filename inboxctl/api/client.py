"""Gmail REST client — bearer-authenticated httpx transport behind a typed async API."""

from __future__ import annotations

import logging
from typing import Any
from urllib.parse import quote

import httpx

from inboxctl.api.types import Label, Message

logger = logging.getLogger(__name__)

API_BASE = "https://gmail.googleapis.com/gmail/v1/users/me"

# Headers requested when only listing metadata is needed
METADATA_HEADERS: list[str] = ["From", "To", "Subject", "Date", "List-Unsubscribe"]

_INBOX = "INBOX"
_SPAM = "SPAM"
_UNREAD = "UNREAD"


class ApiError(Exception):
    """Raised when a Gmail API call fails."""


class HttpError(ApiError):
    """The API answered with a non-success status."""

    def __init__(self, status: int, body: str) -> None:
        super().__init__(f"HTTP {status} - {body}")
        self.status = status
        self.body = body


class DecodeError(ApiError):
    """The API answered with a body that is not the expected JSON."""


def _seg(value: str) -> str:
    """Percent-encode a single path segment."""
    return quote(value, safe="")


class GmailClient:
    """Thin async wrapper around the Gmail v1 REST API for one access token.

    Owns an ``httpx.AsyncClient``; close it with ``aclose()`` or use the
    client as an async context manager.

    Usage::

        async with GmailClient(tokens.access_token) as gmail:
            ids = await gmail.list_messages(label_ids=["INBOX"], max_results=10)
            msg = await gmail.get_message(ids[0])
    """

    def __init__(
        self,
        access_token: str,
        *,
        base_url: str = API_BASE,
        transport: httpx.AsyncBaseTransport | None = None,
        timeout: float = 30.0,
    ) -> None:
        self._http = httpx.AsyncClient(
            base_url=base_url,
            headers={"Authorization": f"Bearer {access_token}"},
            transport=transport,
            timeout=timeout,
        )

    async def __aenter__(self) -> GmailClient:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._http.aclose()

    # ── Labels ─────────────────────────────────────────────────────────────────

    async def list_labels(self) -> list[Label]:
        data = await self._get("/labels")
        return [Label.from_api(lbl) for lbl in data.get("labels") or [] if "id" in lbl]

    async def create_label(self, name: str) -> Label:
        """Create a user label; the first character is upper-cased for display."""
        display = name[:1].upper() + name[1:]
        data = await self._post(
            "/labels",
            {
                "name": display,
                "labelListVisibility": "labelShow",
                "messageListVisibility": "show",
            },
        )
        if "id" not in data:
            raise DecodeError(f"Label create response has no id: {data!r}")
        label = Label.from_api(data)
        logger.info("Created Gmail label: %s (id=%s)", label.name, label.id)
        return label

    # ── Messages ───────────────────────────────────────────────────────────────

    async def list_messages(
        self,
        query: str | None = None,
        label_ids: list[str] | None = None,
        max_results: int = 100,
    ) -> list[str]:
        """Return the ids of matching messages, newest first, up to max_results."""
        params: list[tuple[str, str | int]] = [("maxResults", max_results)]
        for label_id in label_ids or []:
            params.append(("labelIds", label_id))
        if query:
            params.append(("q", query))
        data = await self._get("/messages", params=params)
        return [str(m["id"]) for m in data.get("messages") or [] if "id" in m]

    async def get_message(self, message_id: str, *, metadata_only: bool = False) -> Message:
        """Fetch one message. ``metadata_only`` skips the body and limits headers."""
        params: list[tuple[str, str | int]] = []
        if metadata_only:
            params.append(("format", "metadata"))
            params.extend(("metadataHeaders", h) for h in METADATA_HEADERS)
        data = await self._get(f"/messages/{_seg(message_id)}", params=params)
        return Message.from_api(data)

    async def modify_labels(
        self,
        message_id: str,
        add: list[str] | None = None,
        remove: list[str] | None = None,
    ) -> None:
        """Add and remove label ids in a single atomic modify call."""
        await self._post(
            f"/messages/{_seg(message_id)}/modify",
            {"addLabelIds": list(add or []), "removeLabelIds": list(remove or [])},
            expect_json=False,
        )
        logger.debug("Modified labels on %s: +%s -%s", message_id, add or [], remove or [])

    async def archive(self, message_id: str) -> None:
        await self.modify_labels(message_id, remove=[_INBOX])

    async def mark_spam(self, message_id: str) -> None:
        await self.modify_labels(message_id, add=[_SPAM], remove=[_INBOX])

    async def unspam(self, message_id: str) -> None:
        await self.modify_labels(message_id, add=[_INBOX], remove=[_SPAM])

    async def mark_read(self, message_id: str) -> None:
        await self.modify_labels(message_id, remove=[_UNREAD])

    async def mark_unread(self, message_id: str) -> None:
        await self.modify_labels(message_id, add=[_UNREAD])

    async def trash(self, message_id: str) -> None:
        await self._post(f"/messages/{_seg(message_id)}/trash", expect_json=False)

    async def unsubscribe(self, message_id: str) -> None:
        """Trigger the provider's one-click unsubscribe for a message."""
        await self._post(f"/messages/{_seg(message_id)}/unsubscribe", expect_json=False)

    # ── Internal helpers ───────────────────────────────────────────────────────

    async def _get(self, path: str, params: list[tuple[str, str | int]] | None = None) -> dict[str, Any]:
        response = await self._send("GET", path, params=params)
        return self._decode(response)

    async def _post(
        self,
        path: str,
        body: dict[str, Any] | None = None,
        *,
        expect_json: bool = True,
    ) -> dict[str, Any]:
        response = await self._send("POST", path, json=body)
        return self._decode(response) if expect_json else {}

    async def _send(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        logger.debug("Gmail → %s %s", method, path)
        try:
            response = await self._http.request(method, path, **kwargs)
        except httpx.HTTPError as exc:
            raise ApiError(f"Request {method} {path} failed: {exc}") from exc
        if not response.is_success:
            raise HttpError(response.status_code, response.text)
        return response

    @staticmethod
    def _decode(response: httpx.Response) -> dict[str, Any]:
        try:
            data = response.json()
        except ValueError as exc:  # JSONDecodeError / UnicodeDecodeError
            raise DecodeError(f"Failed to parse JSON response: {exc}") from exc
        if not isinstance(data, dict):
            raise DecodeError(f"Expected a JSON object, got {type(data).__name__}")
        return data
