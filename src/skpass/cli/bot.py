"""Bot commands: onboard a bot with its own identity and scope."""

from __future__ import annotations

from typing import Optional

import click
from rich.panel import Panel

from ..config import SKPassConfig
from ..keyring import load_recovery_key
from ._common import console, get_store, handle_errors, identity_option, store_lock, unlock


def register_bot_commands(main: click.Group) -> None:
    """Register the bot command group."""

    @main.group()
    def bot():
        """Bots: per-bot identities and credential scopes."""

    @bot.command("add")
    @click.argument("name")
    @click.option("--no-shared", is_flag=True, help="Do not grant access to shared/.")
    @identity_option
    @click.pass_obj
    @handle_errors
    def bot_add(config: SKPassConfig, name: str, no_shared: bool, identity_ref: Optional[str]):
        """Create bot-NAME: identity, private scope, shared/ access.

        Safe to rerun for an existing bot.

        Examples:

            skpass bot add giskard

            skpass bot add sandbox --no-shared
        """
        from ..bootstrap import add_bot

        store = get_store(config)
        key = unlock(store, config, identity_ref)
        recovery = None
        if config.recovery_key_path.exists():
            recovery = load_recovery_key(config.recovery_key_path).identity
        else:
            console.print(
                f"[yellow]No recovery key at {config.recovery_key_path}; no key bundle written.[/]"
            )
        with store_lock(config):
            result = add_bot(
                store,
                name,
                key,
                shared_access=not no_shared,
                expires_days=config.identity_expiry_days,
                recovery=recovery,
                bundle_dir=config.bundle_path,
            )

        def _state(created: bool) -> str:
            return "[green]created[/]" if created else "[dim]existing[/]"

        shared = "[green]added[/]" if result.shared_added else ("[dim]no[/]" if no_shared else "[dim]already[/]")
        console.print(Panel(
            f"Identity: [cyan]{result.bot.display}[/] ({_state(result.created_identity)})\n"
            f"Fingerprint: {result.bot.fingerprint}\n"
            f"Scope: {result.scope}/ ({_state(result.created_scope)})\n"
            f"shared/ access: {shared}\n"
            f"Entries re-encrypted: {result.reencrypted}\n"
            f"Key bundle: {result.bundle or '[dim]none[/]'}",
            title=f"Bot {result.bot.label}",
            border_style="green",
        ))
