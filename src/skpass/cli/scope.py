"""Scope commands: show, set, add, undo."""

from __future__ import annotations

from typing import Optional

import click
from rich.table import Table

from ..config import SKPassConfig
from ..models import IdentityKey
from ..recipients import normalize_path
from ..store import ScopedStore
from ._common import console, get_store, handle_errors, identity_option, store_lock, unlock


def _key_if_needed(
    store: ScopedStore, config: SKPassConfig, scope: str, ref: Optional[str]
) -> Optional[IdentityKey]:
    # Empty scopes can be re-scoped without any secret key on this machine.
    scope = normalize_path(scope, allow_root=True)
    if next(store.list(scope), None) is None:
        return None
    return unlock(store, config, ref)


def register_scope_commands(main: click.Group) -> None:
    """Register the scope command group."""

    @main.group()
    def scope():
        """Scopes: who may read which subtree.

        Each scope directory carries its own recipients. Entries are
        encrypted to the nearest scope above them.
        """

    @scope.command("show")
    @click.argument("path", default="")
    @click.pass_obj
    @handle_errors
    def scope_show(config: SKPassConfig, path: str):
        """Show every scope, or the scope governing PATH."""
        store = get_store(config)
        resolver = store.resolver
        if path:
            scopes = [resolver.scope_of(path)]
        else:
            scopes = list(resolver.scopes())
        if not scopes:
            console.print("[dim]No scopes defined. Run 'skpass init'.[/]")
            return

        table = Table(show_header=True, header_style="bold", box=None, padding=(0, 2))
        table.add_column("Scope", style="cyan")
        table.add_column("Entries", justify="right")
        table.add_column("Recipients")
        for name in scopes:
            recipients = resolver.read_policy(name) or []
            table.add_row(
                f"{name}/" if name else "/",
                str(len(store.entries_in_scope(name))),
                ", ".join(store.keyring.label_for(f) for f in recipients),
            )
        console.print(table)

    @scope.command("set")
    @click.argument("path")
    @click.argument("recipients", nargs=-1, required=True)
    @click.option("--force", is_flag=True, help="Allow dropping current recipients.")
    @identity_option
    @click.pass_obj
    @handle_errors
    def scope_set(
        config: SKPassConfig,
        path: str,
        recipients: tuple[str, ...],
        force: bool,
        identity_ref: Optional[str],
    ):
        """Set the recipients of PATH and re-encrypt its entries.

        Dropping a current recipient requires --force; prefer
        'skpass rotate' or 'skpass key revoke' for that.

        Examples:

            skpass scope set shared master bot-giskard
        """
        store = get_store(config)
        identities = [store.keyring.get(ref) for ref in recipients]
        key = _key_if_needed(store, config, path, identity_ref)
        with store_lock(config):
            written = store.init_scope(path, identities, identity=key, force=force)
        console.print(
            f"[green]Recipients for {path}[/]: "
            + ", ".join(store.keyring.label_for(f) for f in written)
        )

    @scope.command("add")
    @click.argument("path")
    @click.argument("recipients", nargs=-1, required=True)
    @identity_option
    @click.pass_obj
    @handle_errors
    def scope_add(
        config: SKPassConfig,
        path: str,
        recipients: tuple[str, ...],
        identity_ref: Optional[str],
    ):
        """Add recipients to PATH (keeping existing ones) and re-encrypt."""
        store = get_store(config)
        identities = [store.keyring.get(ref) for ref in recipients]
        key = _key_if_needed(store, config, path, identity_ref)
        with store_lock(config):
            written = store.resolver.add_recipients(
                path, identities, actor=key.fingerprint if key else None
            )
            count = len(store.reencrypt_scope(path, key)) if key else 0
        console.print(
            f"[green]Recipients for {path}[/]: "
            + ", ".join(store.keyring.label_for(f) for f in written)
            + (f" [dim]({count} entries re-encrypted)[/]" if count else "")
        )

    @scope.command("undo")
    @click.argument("path")
    @identity_option
    @click.pass_obj
    @handle_errors
    def scope_undo(config: SKPassConfig, path: str, identity_ref: Optional[str]):
        """Restore the previous recipients of PATH from its backup."""
        store = get_store(config)
        key = _key_if_needed(store, config, path, identity_ref)
        with store_lock(config):
            restored = store.resolver.restore_backup(
                path, actor=key.fingerprint if key else None
            )
            count = len(store.reencrypt_scope(path, key)) if key else 0
        console.print(
            f"[green]Restored recipients for {path}[/]: "
            + ", ".join(store.keyring.label_for(f) for f in restored)
            + (f" [dim]({count} entries re-encrypted)[/]" if count else "")
        )
