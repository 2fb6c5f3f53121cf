"""CLI entry point for inboxctl."""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass

import click
from dotenv import load_dotenv

from inboxctl.auth.oauth import Authenticator
from inboxctl.auth.tokens import TokenManager
from inboxctl.config.store import CredentialStore

logger = logging.getLogger(__name__)


@dataclass
class AppContext:
    """Per-invocation state shared by every command."""

    store: CredentialStore
    json_output: bool = False

    def authenticator(self, announce: Callable[[str], None] | None = None) -> Authenticator:
        return Authenticator(self.store, announce=announce)

    def token_manager(self) -> TokenManager:
        return TokenManager(self.store, self.authenticator())


@click.group()
@click.option("--json", "json_output", is_flag=True, help="Print results as JSON.")
@click.option("-v", "--verbose", is_flag=True, help="Enable debug logging.")
@click.pass_context
def cli(ctx: click.Context, json_output: bool, verbose: bool) -> None:
    """Command-line access to Gmail messages and labels."""
    load_dotenv()
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,  # keep CLI output clean
        format="%(asctime)s %(levelname)-8s %(name)s — %(message)s",
    )
    ctx.obj = AppContext(store=CredentialStore(), json_output=json_output)


# Import and register commands after cli is defined to avoid circular imports.
from inboxctl.cli.commands import (  # noqa: E402
    add_label,
    archive,
    clear_labels,
    configure,
    labels,
    list_messages,
    login,
    mark_read,
    mark_unread,
    read,
    remove_label,
    spam,
    trash,
    unspam,
    unsubscribe,
)

for _command in (
    configure,
    login,
    labels,
    list_messages,
    read,
    archive,
    spam,
    unspam,
    add_label,
    remove_label,
    trash,
    mark_read,
    mark_unread,
    clear_labels,
    unsubscribe,
):
    cli.add_command(_command)
