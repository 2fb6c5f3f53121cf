"""CLI command implementations — each command maps onto one client operation."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Awaitable, Callable, Coroutine
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING, Any

import click
from rich import box
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from inboxctl.api.client import ApiError, GmailClient, HttpError
from inboxctl.api.labels import LabelAction, LabelError, LabelResolver
from inboxctl.api.types import Message
from inboxctl.auth.oauth import AuthError, open_in_browser
from inboxctl.config.store import Config, ConfigError

if TYPE_CHECKING:
    from inboxctl.cli.main import AppContext

logger = logging.getLogger(__name__)
console = Console(width=200)

_HANDLED_ERRORS = (ConfigError, AuthError, ApiError, LabelError)

# Friendly names accepted by `list --label`
_LIST_LABEL_ALIASES: dict[str, str | None] = {
    "inbox": "INBOX",
    "sent": "SENT",
    "trash": "TRASH",
    "spam": "SPAM",
    "starred": "STARRED",
    "drafts": "DRAFT",
    "important": "IMPORTANT",
    "unread": "UNREAD",
    "all": None,
}


# ── Helpers ─────────────────────────────────────────────────────────────────────


def _run(coro: Coroutine[Any, Any, None]) -> None:
    """Run a command coroutine; known failures become a red message and exit 1."""
    try:
        asyncio.run(coro)
    except _HANDLED_ERRORS as exc:
        logger.debug("Command failed", exc_info=True)
        console.print(f"[red]Error: {escape(str(exc))}[/red]")
        raise SystemExit(1) from exc


@asynccontextmanager
async def _gmail(app: AppContext) -> AsyncIterator[GmailClient]:
    client = await app.token_manager().ensure_client()
    async with client:
        yield client


def _summary(msg: Message) -> dict[str, str]:
    return {
        "id": msg.id,
        "from": msg.header("From") or "Unknown",
        "subject": msg.header("Subject") or "(no subject)",
        "date": msg.header("Date") or "Unknown",
    }


def _report(app: AppContext, message_id: str, action: str, text: str, **extra: object) -> None:
    if app.json_output:
        console.print_json(data={"id": message_id, "action": action, **extra})
    else:
        console.print(text, markup=False, highlight=False)


def _mutation(
    name: str,
    action: str,
    done: str,
    operation: Callable[[GmailClient, str], Awaitable[None]],
    help_text: str,
) -> click.Command:
    """Build a `<name> MESSAGE_ID` command that runs one client mutation."""

    @click.command(name=name, help=help_text)
    @click.argument("message_id")
    @click.pass_obj
    def command(app: AppContext, message_id: str) -> None:
        async def _do() -> None:
            async with _gmail(app) as gmail:
                await operation(gmail, message_id)
            _report(app, message_id, action, f"{done} {message_id}")

        _run(_do())

    return command


# ── configure / login ───────────────────────────────────────────────────────────


@click.command()
@click.argument("client_id")
@click.pass_obj
def configure(app: AppContext, client_id: str) -> None:
    """Store OAuth client credentials (from Google Cloud Console)."""
    secret = click.prompt("Client Secret", hide_input=True, default="", show_default=False)
    if not secret:
        raise click.UsageError("Client secret cannot be empty")
    app.store.save_config(Config(client_id=client_id, client_secret=secret))
    console.print(f"Credentials saved to {app.store.config_dir}")


def _announce_url(url: str) -> None:
    console.print("If the browser does not open, visit this URL:")
    console.print(url, markup=False, highlight=False, soft_wrap=True)


@click.command()
@click.pass_obj
def login(app: AppContext) -> None:
    """Authenticate with Gmail (opens a browser)."""

    async def _do() -> None:
        client_id, client_secret = app.store.require_client()
        console.print("Opening browser for authentication...")
        await app.authenticator(announce=_announce_url).login(client_id, client_secret)
        console.print("[green]Login successful![/green] Tokens saved.")

    _run(_do())


# ── Queries ─────────────────────────────────────────────────────────────────────


@click.command()
@click.pass_obj
def labels(app: AppContext) -> None:
    """List all labels."""

    async def _do() -> None:
        async with _gmail(app) as gmail:
            found = await gmail.list_labels()

        if app.json_output:
            console.print_json(
                data=[{"id": lbl.id, "name": lbl.name, "kind": lbl.kind.value} for lbl in found]
            )
            return

        table = Table(box=box.ROUNDED, show_header=True, header_style="bold cyan")
        table.add_column("ID", style="dim")
        table.add_column("Name")
        table.add_column("Kind", width=8)
        for lbl in found:
            table.add_row(lbl.id, escape(lbl.name), lbl.kind.value)
        console.print(table)

    _run(_do())


@click.command(name="list")
@click.option("-n", "--max", "max_results", default=100, show_default=True, help="Maximum messages to show.")
@click.option("-q", "--query", default=None, help="Search query (Gmail search syntax).")
@click.option(
    "-l",
    "--label",
    default="inbox",
    show_default=True,
    help="Label to filter by (inbox, sent, trash, spam, starred, drafts, all, or a label name).",
)
@click.option("-u", "--unread", is_flag=True, help="Show only unread messages.")
@click.pass_obj
def list_messages(
    app: AppContext,
    max_results: int,
    query: str | None,
    label: str,
    unread: bool,
) -> None:
    """List messages."""
    if unread:
        query = f"is:unread {query}" if query else "is:unread"

    async def _do() -> None:
        async with _gmail(app) as gmail:
            key = label.lower()
            if key in _LIST_LABEL_ALIASES:
                label_id = _LIST_LABEL_ALIASES[key]
            else:
                label_id = await LabelResolver(gmail).resolve_existing(label)

            ids = await gmail.list_messages(
                query=query,
                label_ids=[label_id] if label_id else None,
                max_results=max_results,
            )
            messages = [await gmail.get_message(mid, metadata_only=True) for mid in ids]

        rows = [_summary(m) for m in messages]
        if app.json_output:
            console.print_json(data=rows)
            return
        if not rows:
            console.print("No messages found.")
            return
        for row in rows:
            console.print(
                f"{row['id']} | {escape(row['from'])} | {escape(row['subject'])}",
                highlight=False,
            )

    _run(_do())


@click.command()
@click.argument("message_id")
@click.pass_obj
def read(app: AppContext, message_id: str) -> None:
    """Read a specific message."""

    async def _do() -> None:
        async with _gmail(app) as gmail:
            msg = await gmail.get_message(message_id)

        body = msg.plain_text_body() or msg.snippet or ""
        if app.json_output:
            console.print_json(data={**_summary(msg), "to": msg.header("To") or "Unknown", "body": body})
            return

        summary = _summary(msg)
        console.print(f"From: {escape(summary['from'])}", highlight=False)
        console.print(f"To: {escape(msg.header('To') or 'Unknown')}", highlight=False)
        console.print(f"Subject: {escape(summary['subject'])}", highlight=False)
        console.print(f"Date: {escape(summary['date'])}", highlight=False)
        console.print("---")
        console.print(body, markup=False, highlight=False)

    _run(_do())


# ── Mutations ───────────────────────────────────────────────────────────────────

archive = _mutation(
    "archive", "archived", "Archived", lambda g, mid: g.archive(mid),
    "Archive a message (remove it from the inbox).",
)
spam = _mutation(
    "spam", "marked_spam", "Marked as spam", lambda g, mid: g.mark_spam(mid),
    "Mark a message as spam.",
)
unspam = _mutation(
    "unspam", "unspammed", "Moved to inbox", lambda g, mid: g.unspam(mid),
    "Remove a message from spam and move it to the inbox.",
)
trash = _mutation(
    "trash", "trashed", "Moved to trash", lambda g, mid: g.trash(mid),
    "Move a message to the trash.",
)
mark_read = _mutation(
    "mark-read", "marked_read", "Marked as read", lambda g, mid: g.mark_read(mid),
    "Mark a message as read.",
)
mark_unread = _mutation(
    "mark-unread", "marked_unread", "Marked as unread", lambda g, mid: g.mark_unread(mid),
    "Mark a message as unread.",
)


@click.command(name="label")
@click.argument("message_id")
@click.argument("label_name")
@click.pass_obj
def add_label(app: AppContext, message_id: str, label_name: str) -> None:
    """Add a label to a message, creating the label if needed."""

    async def _do() -> None:
        async with _gmail(app) as gmail:
            label_id = await LabelResolver(gmail).resolve_for_mutation(label_name, LabelAction.ADD)
            await gmail.modify_labels(message_id, add=[label_id])
        _report(app, message_id, "label_added", f"Added label {label_name} to {message_id}")

    _run(_do())


@click.command(name="unlabel")
@click.argument("message_id")
@click.argument("label_name")
@click.pass_obj
def remove_label(app: AppContext, message_id: str, label_name: str) -> None:
    """Remove a label from a message."""

    async def _do() -> None:
        async with _gmail(app) as gmail:
            label_id = await LabelResolver(gmail).resolve_for_mutation(label_name, LabelAction.REMOVE)
            await gmail.modify_labels(message_id, remove=[label_id])
        _report(app, message_id, "label_removed", f"Removed label {label_name} from {message_id}")

    _run(_do())


@click.command(name="clear-labels")
@click.argument("message_id")
@click.pass_obj
def clear_labels(app: AppContext, message_id: str) -> None:
    """Remove every user label from a message (system labels are kept)."""

    async def _do() -> None:
        async with _gmail(app) as gmail:
            msg = await gmail.get_message(message_id, metadata_only=True)
            user_ids = await LabelResolver(gmail).user_labels_on(msg)
            if user_ids:
                await gmail.modify_labels(message_id, remove=user_ids)
        _report(
            app, message_id, "labels_cleared",
            f"Removed {len(user_ids)} user label(s) from {message_id}",
        )

    _run(_do())


@click.command()
@click.argument("message_id")
@click.pass_obj
def unsubscribe(app: AppContext, message_id: str) -> None:
    """Unsubscribe from the mailing list a message came from."""

    async def _do() -> None:
        async with _gmail(app) as gmail:
            try:
                await gmail.unsubscribe(message_id)
            except HttpError:
                msg = await gmail.get_message(message_id, metadata_only=True)
                url = msg.unsubscribe_url()
                if url is None:
                    raise
                logger.info("One-click unsubscribe rejected; falling back to %s", url)
                opened = open_in_browser(url)
                text = f"Opened unsubscribe link {url}" if opened else f"Open this link to unsubscribe: {url}"
                _report(app, message_id, "unsubscribe_link_opened", text, url=url, opened=opened)
                return
        _report(app, message_id, "unsubscribed", f"Unsubscribed via {message_id}")

    _run(_do())
