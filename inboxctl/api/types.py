"""Typed, immutable views over Gmail API message and label resources."""

from __future__ import annotations

import base64
import binascii
import logging
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

logger = logging.getLogger(__name__)

_PLAIN_TEXT = "text/plain"


def decode_base64url(data: str) -> str | None:
    """Decode an unpadded base64url payload to text, or None if it is not valid."""
    padded = data + "=" * (-len(data) % 4)
    try:
        raw = base64.b64decode(padded, altchars=b"-_", validate=True)
        return raw.decode("utf-8")
    except (binascii.Error, ValueError):
        # UnicodeDecodeError is a ValueError
        return None


# ── Labels ─────────────────────────────────────────────────────────────────────


class LabelKind(str, Enum):
    """Who owns a label: the provider (fixed set) or the user."""

    SYSTEM = "system"
    USER = "user"


@dataclass(frozen=True)
class Label:
    """A remote label. Identity is ``id``; ``name`` is matched case-insensitively."""

    id: str
    name: str
    kind: LabelKind = LabelKind.USER

    @classmethod
    def from_api(cls, data: dict[str, Any]) -> Label:
        kind = LabelKind.SYSTEM if data.get("type") == "system" else LabelKind.USER
        return cls(id=str(data["id"]), name=str(data.get("name", "")), kind=kind)


# ── Messages ───────────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class Header:
    name: str
    value: str


@dataclass(frozen=True)
class BodyNode:
    """One node of a message's MIME tree.

    Leaves carry ``data`` (base64url, unpadded); multipart containers carry
    ``children``. The remote store does not guarantee that only one is set.
    """

    mime_type: str = ""
    data: str | None = None
    children: tuple[BodyNode, ...] = ()

    @classmethod
    def from_api(cls, part: dict[str, Any]) -> BodyNode:
        body = part.get("body") or {}
        return cls(
            mime_type=str(part.get("mimeType", "")),
            data=body.get("data") or None,
            children=tuple(cls.from_api(p) for p in part.get("parts") or []),
        )


@dataclass(frozen=True)
class Message:
    """A fetched message: ordered headers plus an optional body tree.

    Holds no reference back to the client that fetched it.

    Usage::

        msg = await gmail.get_message("18c2...")
        subject = msg.header("subject") or "(no subject)"
        text = msg.plain_text_body() or msg.snippet
    """

    id: str
    snippet: str | None = None
    thread_id: str = ""
    label_ids: tuple[str, ...] = ()
    headers: tuple[Header, ...] = ()
    body: BodyNode | None = None

    @classmethod
    def from_api(cls, data: dict[str, Any]) -> Message:
        """Build a Message from a ``users.messages.get`` JSON resource."""
        payload = data.get("payload")
        headers: tuple[Header, ...] = ()
        body = None
        if isinstance(payload, dict):
            headers = tuple(
                Header(name=str(h.get("name", "")), value=str(h.get("value", "")))
                for h in payload.get("headers") or []
            )
            body = BodyNode.from_api(payload)
        return cls(
            id=str(data["id"]),
            snippet=data.get("snippet"),
            thread_id=str(data.get("threadId", "")),
            label_ids=tuple(data.get("labelIds") or []),
            headers=headers,
            body=body,
        )

    def header(self, name: str) -> str | None:
        """Return the value of the first header named ``name`` (case-insensitive)."""
        wanted = name.casefold()
        for h in self.headers:
            if h.name.casefold() == wanted:
                return h.value
        return None

    def plain_text_body(self) -> str | None:
        """Return the first decodable text/plain content, or None.

        A body carried directly on the top-level node wins outright, whatever
        its MIME type. Otherwise the part tree is searched depth-first in
        document order, descending into nested multiparts before moving on to
        the next sibling. Payloads that fail to decode are skipped.
        """
        if self.body is None:
            return None

        if self.body.data is not None:
            text = decode_base64url(self.body.data)
            if text is not None:
                return text
            logger.debug("Message %s: top-level body did not decode", self.id)

        # Explicit stack keeps pre-order without recursion depth limits.
        stack = list(reversed(self.body.children))
        while stack:
            node = stack.pop()
            if node.mime_type == _PLAIN_TEXT and node.data is not None:
                text = decode_base64url(node.data)
                if text is not None:
                    return text
                logger.debug("Message %s: skipping undecodable text/plain part", self.id)
            stack.extend(reversed(node.children))
        return None

    def unsubscribe_url(self) -> str | None:
        """Return the first http(s) link from the List-Unsubscribe header."""
        raw = self.header("List-Unsubscribe")
        if not raw:
            return None
        for part in raw.split(","):
            candidate = part.strip().strip("<>").strip()
            if re.match(r"https?://", candidate, re.IGNORECASE):
                return candidate
        return None
