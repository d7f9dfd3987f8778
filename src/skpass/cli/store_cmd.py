"""Store commands: init, insert, show, rm, ls, stale."""

from __future__ import annotations

import sys
from typing import Optional

import click
from rich.panel import Panel
from rich.table import Table

from ..config import SKPassConfig
from ._common import console, fail, get_store, handle_errors, identity_option, short, store_lock, unlock


def register_store_commands(main: click.Group) -> None:
    """Register the top-level store commands."""

    @main.command("init")
    @click.option("--master", "master_label", default=None, help="Label of the master identity.")
    @click.option("--remote", default=None, help="Git remote URL for distribution.")
    @click.pass_obj
    @handle_errors
    def init_cmd(config: SKPassConfig, master_label: Optional[str], remote: Optional[str]):
        """Create the store, the master identity and the standard scopes.

        Safe to rerun; anything already in place is left alone.

        Examples:

            skpass init

            skpass init --remote git@github.com:me/credentials.git
        """
        from ..bootstrap import init_store

        config.home.mkdir(parents=True, exist_ok=True)
        with store_lock(config):
            result = init_store(config, master_label=master_label, remote_url=remote)

        scopes = ", ".join(f"{s}/" for s in result.created_scopes) or "none (already set up)"
        state = "[green]generated[/]" if result.created_identity else "[dim]existing[/]"
        console.print(Panel(
            f"Master: [cyan]{result.master.display}[/] ({state})\n"
            f"Store: {config.store_path}\n"
            f"New scopes: {scopes}\n"
            f"Remote: {result.remote or config.remote_url or '[dim]none[/]'}\n"
            f"Recovery key: {config.recovery_key_path}"
            f" ({'[green]generated[/]' if result.created_recovery else '[dim]existing[/]'})\n"
            f"Master bundle: {result.master_bundle}",
            title="SKPass Store",
            border_style="green",
        ))
        if result.created_recovery:
            console.print(
                "[yellow]Move the recovery key offline (paper or USB in a safe);"
                " key bundles open only with it.[/]"
            )

    @main.command("insert")
    @click.argument("path")
    @click.option("--value", default=None, help="Secret value (omit to be prompted).")
    @click.option("--stdin", "from_stdin", is_flag=True, help="Read the value from stdin.")
    @click.option("--force", "-f", is_flag=True, help="Overwrite an existing entry.")
    @click.pass_obj
    @handle_errors
    def insert_cmd(config: SKPassConfig, path: str, value: Optional[str], from_stdin: bool, force: bool):
        """Encrypt a secret to the recipients of its scope.

        Examples:

            skpass insert shared/openai/api-key

            echo -n "$TOKEN" | skpass insert infrastructure/hetzner/api-token --stdin
        """
        store = get_store(config)
        if store.exists(path) and not force:
            fail(f"'{path}' already exists; use --force to overwrite")
        if from_stdin:
            value = sys.stdin.read()
        elif value is None:
            value = click.prompt(
                f"Enter secret for {path}", hide_input=True, confirmation_prompt=True
            )

        with store_lock(config):
            store.put(path, value)
        scope = store.resolver.scope_of(path)
        console.print(f"[green]Stored[/] {path} [dim](scope {scope or '/'})[/]")

    @main.command("show")
    @click.argument("path")
    @identity_option
    @click.pass_obj
    @handle_errors
    def show_cmd(config: SKPassConfig, path: str, identity_ref: Optional[str]):
        """Decrypt and print a secret.

        Examples:

            skpass show shared/openai/api-key

            skpass show bot-giskard/telegram -i bot-giskard
        """
        store = get_store(config)
        key = unlock(store, config, identity_ref)
        value = store.get(path, key)
        click.echo(value.decode("utf-8", errors="replace"), nl=not value.endswith(b"\n"))

    @main.command("rm")
    @click.argument("path")
    @click.pass_obj
    @handle_errors
    def rm_cmd(config: SKPassConfig, path: str):
        """Remove a secret. Removing a missing entry is not an error."""
        store = get_store(config)
        with store_lock(config):
            removed = store.remove(path)
        if removed:
            console.print(f"[green]Removed[/] {path}")
        else:
            console.print(f"[dim]{path} was not in the store[/]")

    @main.command("ls")
    @click.argument("prefix", default="")
    @click.pass_obj
    @handle_errors
    def ls_cmd(config: SKPassConfig, prefix: str):
        """List entries, optionally under a prefix."""
        store = get_store(config)
        count = 0
        for path in store.list(prefix):
            click.echo(path)
            count += 1
        if not count:
            console.print("[dim]No entries.[/]")

    @main.command("stale")
    @click.option("--fix", is_flag=True, help="Re-encrypt every scope holding stale entries.")
    @identity_option
    @click.pass_obj
    @handle_errors
    def stale_cmd(config: SKPassConfig, fix: bool, identity_ref: Optional[str]):
        """Report entries whose ciphertext disagrees with their scope policy."""
        store = get_store(config)
        stale = store.find_stale()
        if not stale:
            console.print("[green]All entries match their scope recipients.[/]")
            return

        table = Table(show_header=True, header_style="bold", box=None, padding=(0, 2))
        table.add_column("Entry", style="cyan")
        table.add_column("Scope")
        table.add_column("Can read, not in policy", style="red")
        table.add_column("In policy, cannot read", style="yellow")
        for entry in stale:
            table.add_row(
                entry.path,
                entry.scope or "/",
                ", ".join(store.keyring.label_for(f) for f in entry.unauthorized) or "-",
                ", ".join(store.keyring.label_for(f) for f in entry.missing) or "-",
            )
        console.print(f"\n[bold]{len(stale)}[/] stale entr{'y' if len(stale) == 1 else 'ies'}:\n")
        console.print(table)

        if not fix:
            return
        key = unlock(store, config, identity_ref)
        with store_lock(config):
            for scope in sorted({entry.scope for entry in stale}):
                paths = store.reencrypt_scope(scope, key)
                console.print(
                    f"[green]Re-encrypted[/] {len(paths)} entries in {scope or '/'} "
                    f"[dim]as {short(key.fingerprint)}[/]"
                )
