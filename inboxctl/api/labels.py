"""Label resolution — maps user-facing label names to Gmail label ids."""

from __future__ import annotations

import logging
from enum import Enum

from inboxctl.api.client import GmailClient
from inboxctl.api.types import Label, LabelKind, Message

logger = logging.getLogger(__name__)


class SystemLabel(str, Enum):
    """Gmail's fixed system labels. Their ids equal their names."""

    INBOX = "INBOX"
    SENT = "SENT"
    DRAFT = "DRAFT"
    TRASH = "TRASH"
    SPAM = "SPAM"
    STARRED = "STARRED"
    IMPORTANT = "IMPORTANT"
    UNREAD = "UNREAD"
    CATEGORY_PERSONAL = "CATEGORY_PERSONAL"
    CATEGORY_SOCIAL = "CATEGORY_SOCIAL"
    CATEGORY_PROMOTIONS = "CATEGORY_PROMOTIONS"
    CATEGORY_UPDATES = "CATEGORY_UPDATES"
    CATEGORY_FORUMS = "CATEGORY_FORUMS"

    @classmethod
    def parse(cls, name: str) -> SystemLabel | None:
        """Return the system label called ``name`` (any case), else None."""
        return cls._value2member_map_.get(name.upper())  # type: ignore[return-value]


class LabelAction(str, Enum):
    ADD = "add"
    REMOVE = "remove"


class LabelError(Exception):
    """Raised when a label name cannot be resolved."""


class LabelNotFoundError(LabelError):
    def __init__(self, name: str) -> None:
        super().__init__(f"Label {name!r} not found")
        self.name = name


class LabelResolver:
    """Resolves label names against the remote label list, get-or-create style.

    System labels resolve locally without any API call and are never created.
    User labels are matched case-insensitively; the remote listing is fetched
    at most once per resolver and reused. When several remote labels share a
    case-insensitive name, the first one in listing order wins.

    Usage::

        resolver = LabelResolver(gmail)
        label_id = await resolver.resolve_for_mutation("work", LabelAction.ADD)
        await gmail.modify_labels(msg_id, add=[label_id])
    """

    def __init__(self, client: GmailClient) -> None:
        self._client = client
        self._by_name: dict[str, Label] | None = None  # casefolded name → label
        self._system_ids: set[str] = set()  # ids the listing marks as system labels

    async def resolve_for_mutation(self, name: str, action: LabelAction = LabelAction.ADD) -> str:
        """Return the label id for ``name``.

        Adding creates a missing user label; removing a missing one raises
        LabelNotFoundError.
        """
        system = SystemLabel.parse(name)
        if system is not None:
            return system.value

        if action is LabelAction.REMOVE:
            return await self.resolve_existing(name)

        label = await self._lookup(name)
        if label is None:
            label = await self._client.create_label(name)
            self._remember(label)
        return label.id

    async def resolve_existing(self, name: str) -> str:
        """Return the id of an existing label, never creating one."""
        system = SystemLabel.parse(name)
        if system is not None:
            return system.value
        label = await self._lookup(name)
        if label is None:
            raise LabelNotFoundError(name)
        return label.id

    @staticmethod
    def user_label_ids(message: Message) -> list[str]:
        """Return the ids of the non-system labels currently on a message."""
        return [lid for lid in message.label_ids if SystemLabel.parse(lid) is None]

    async def user_labels_on(self, message: Message) -> list[str]:
        """Like user_label_ids, but also drops ids the remote listing reports as system.

        Covers provider system labels outside SystemLabel (e.g. CHAT).
        """
        candidates = self.user_label_ids(message)
        if candidates and self._by_name is None:
            await self._refresh()
        return [lid for lid in candidates if lid not in self._system_ids]

    # ── Internal helpers ───────────────────────────────────────────────────────

    async def _lookup(self, name: str) -> Label | None:
        if self._by_name is None:
            await self._refresh()
        assert self._by_name is not None
        return self._by_name.get(name.casefold())

    async def _refresh(self) -> None:
        """Rebuild the name → label cache from the live label list."""
        self._by_name = {}
        self._system_ids = set()
        for label in await self._client.list_labels():
            self._remember(label)
            if label.kind is LabelKind.SYSTEM:
                self._system_ids.add(label.id)
        logger.debug("Label cache refreshed: %d labels", len(self._by_name))

    def _remember(self, label: Label) -> None:
        assert self._by_name is not None
        # setdefault: first label in listing order wins on a case-insensitive clash
        self._by_name.setdefault(label.name.casefold(), label)
