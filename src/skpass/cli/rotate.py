"""Rotation command: replace one identity with another everywhere."""

from __future__ import annotations

from typing import Optional

import click
from rich.markup import escape
from rich.panel import Panel
from rich.table import Table

from ..config import SKPassConfig
from ..errors import SKPassError
from ..keyring import load_recovery_key
from ..rotation import RotationEngine, RotationReport
from ..store import ScopedStore
from ._common import console, get_store, handle_errors, identity_option, store_lock, unlock


def print_report(store: ScopedStore, report: RotationReport) -> None:
    """Render a RotationReport as a panel plus a failure table."""
    old = store.keyring.label_for(report.old_fingerprint)
    new = store.keyring.label_for(report.new_fingerprint) if report.new_fingerprint else "-"
    border = "green" if report.ok else ("red" if report.failed or report.error else "yellow")
    console.print(Panel(
        f"Old: [cyan]{old}[/]\n"
        f"New: [cyan]{new}[/]\n"
        f"Phase: {report.phase.value}\n"
        f"Scopes: {len(report.succeeded)} rotated / {len(report.scanned)} found\n"
        f"Entries re-encrypted: {report.reencrypted_entries}"
        + (f"\n[red]Error: {report.error}[/]" if report.error else ""),
        title="Rotation" if report.new_fingerprint else "Revocation",
        border_style=border,
    ))
    if not report.failed:
        return
    table = Table(show_header=True, header_style="bold", box=None, padding=(0, 2))
    table.add_column("Scope", style="cyan")
    table.add_column("Phase")
    table.add_column("Error", style="red")
    for failure in report.failed:
        table.add_row(failure.scope or "/", failure.phase.value, f"{failure.error_type}: {failure.message}")
    console.print(table)
    console.print("[yellow]Failed scopes keep their old recipients; rerun to finish them.[/]")


def register_rotate_commands(main: click.Group) -> None:
    """Register the rotate command."""

    @main.command("rotate")
    @click.argument("old")
    @click.argument("new")
    @click.option("--reason", default="", help="Recorded in the rotation log.")
    @click.option("--dry-run", is_flag=True, help="Only list the scopes that would change.")
    @identity_option
    @click.pass_obj
    @handle_errors
    def rotate_cmd(
        config: SKPassConfig,
        old: str,
        new: str,
        reason: str,
        dry_run: bool,
        identity_ref: Optional[str],
    ):
        """Replace identity OLD with NEW in every scope and re-encrypt.

        Generate NEW first with 'skpass key generate'. Running the same
        rotation again is a no-op.

        Examples:

            skpass rotate bot-giskard bot-giskard-2026
        """
        store = get_store(config)
        engine = RotationEngine(store)
        if dry_run:
            old_id = store.keyring.get(old, include_revoked=True)
            scopes = engine.scan(old_id.fingerprint)
            if not scopes:
                console.print(f"[dim]No scope lists {old_id.display}.[/]")
            for scope in scopes:
                click.echo(f"{scope}/" if scope else "/")
            return

        key = unlock(store, config, identity_ref)
        with store_lock(config):
            report = engine.rotate(old, new, key, reason=reason)
        print_report(store, report)
        if not report.ok:
            raise SystemExit(1)
        refresh_bundle(store, config, new)


def refresh_bundle(store: ScopedStore, config: SKPassConfig, ref: str) -> None:
    """Rewrite the key bundle of ``ref`` after a rotation.

    Identities whose secret is not held here (imported public records)
    have no bundle to rewrite; that is reported, not raised.
    """
    from ..bootstrap import write_bundle

    if not config.recovery_key_path.exists():
        console.print(f"[yellow]No recovery key at {config.recovery_key_path}; key bundle not updated.[/]")
        return
    recovery = load_recovery_key(config.recovery_key_path).identity
    identity = store.keyring.get(ref)
    master = store.keyring.find(config.default_identity)
    companions = [master.fingerprint] if master is not None else []
    try:
        path, _ = write_bundle(
            store.keyring, identity.fingerprint, recovery, config.bundle_path,
            companions=companions, overwrite=True,
        )
    except SKPassError as exc:
        console.print(f"[yellow]Key bundle for {identity.display} not updated: {escape(str(exc))}[/]")
        return
    console.print(f"[green]Key bundle updated:[/] {path}")
