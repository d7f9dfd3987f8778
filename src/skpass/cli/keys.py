"""Key commands: generate, list, revoke, export, import, key bundles."""

from __future__ import annotations

from pathlib import Path
from typing import Optional

import click
from rich.table import Table

from ..config import SKPassConfig, open_store
from ..keyring import load_recovery_key
from ..models import Identity
from ..rotation import RotationEngine
from ._common import console, get_store, handle_errors, identity_option, store_lock, unlock
from .rotate import print_report


def register_key_commands(main: click.Group) -> None:
    """Register the key command group."""

    @main.group()
    def key():
        """Identities: generate, list, revoke.

        An identity lives until it is explicitly revoked. Expiry
        dates are policy: they warn, they never lock you out.
        """

    @key.command("generate")
    @click.argument("label")
    @click.option("--expires-days", type=int, default=None, help="Expiry policy in days (0 for none).")
    @click.pass_obj
    @handle_errors
    def key_generate(config: SKPassConfig, label: str, expires_days: Optional[int]):
        """Generate a new identity with the configured backend."""
        store = get_store(config)
        days = config.identity_expiry_days if expires_days is None else (expires_days or None)
        try:
            identity = store.keyring.generate(label, expires_days=days)
        except ValueError as exc:
            console.print(f"[red]{exc}[/]")
            raise SystemExit(1)
        console.print(f"[green]Generated[/] {identity.label}: [cyan]{identity.fingerprint}[/]")

    @key.command("list")
    @click.option("--all", "show_all", is_flag=True, help="Include revoked identities.")
    @click.pass_obj
    @handle_errors
    def key_list(config: SKPassConfig, show_all: bool):
        """List known identities."""
        store = get_store(config)
        identities = store.keyring.list(include_revoked=show_all)
        if not identities:
            console.print("[dim]No identities. Run 'skpass init'.[/]")
            return

        table = Table(show_header=True, header_style="bold", box=None, padding=(0, 2))
        table.add_column("Label", style="cyan")
        table.add_column("Fingerprint")
        table.add_column("Backend")
        table.add_column("Expires")
        table.add_column("Status")
        for identity in identities:
            if identity.is_revoked:
                status = "[red]revoked[/]"
            elif identity.is_expired():
                status = "[yellow]expired[/]"
            else:
                status = "[green]active[/]"
            table.add_row(
                identity.label,
                identity.fingerprint,
                identity.backend,
                identity.expires_at.strftime("%Y-%m-%d") if identity.expires_at else "-",
                status,
            )
        console.print(table)

    @key.command("revoke")
    @click.argument("ref")
    @click.option("--reason", default="", help="Recorded in the rotation log.")
    @click.option("--yes", is_flag=True, help="Do not ask for confirmation.")
    @identity_option
    @click.pass_obj
    @handle_errors
    def key_revoke(config: SKPassConfig, ref: str, reason: str, yes: bool, identity_ref: Optional[str]):
        """Remove REF from every scope, re-encrypt, then revoke it.

        Examples:

            skpass key revoke bot-giskard --reason "server decommissioned"
        """
        store = get_store(config)
        target = store.keyring.get(ref, include_revoked=True)
        if not yes:
            click.confirm(f"Revoke {target.display} and re-encrypt its scopes?", abort=True)
        key = unlock(store, config, identity_ref)
        with store_lock(config):
            report = RotationEngine(store).revoke(ref, key, reason=reason)
        print_report(store, report)
        if not report.ok:
            raise SystemExit(1)

    @key.command("export")
    @click.argument("ref")
    @click.pass_obj
    @handle_errors
    def key_export(config: SKPassConfig, ref: str):
        """Print the public identity record of REF as JSON."""
        store = get_store(config)
        click.echo(store.keyring.get(ref).model_dump_json(indent=2))

    @key.command("import")
    @click.argument("file", type=click.Path(exists=True, dir_okay=False))
    @click.pass_obj
    @handle_errors
    def key_import(config: SKPassConfig, file: str):
        """Register a public identity exported on another machine."""
        store = get_store(config)
        try:
            identity = Identity.model_validate_json(Path(file).read_text(encoding="utf-8"))
        except ValueError as exc:
            console.print(f"[red]Not an identity record: {exc}[/]")
            raise SystemExit(1)
        identity = store.keyring.import_public(identity)
        console.print(f"[green]Imported[/] {identity.display}")

    @key.command("export-bundle")
    @click.argument("ref")
    @click.option(
        "--with", "companions", multiple=True,
        help="Identity whose public record travels along (repeatable). Defaults to the master.",
    )
    @click.option(
        "--output-dir", type=click.Path(file_okay=False), default=None,
        help="Directory for the bundle. Defaults to the configured bundle directory.",
    )
    @click.pass_obj
    @handle_errors
    def key_export_bundle(
        config: SKPassConfig, ref: str, companions: tuple[str, ...], output_dir: Optional[str]
    ):
        """Write the secret key of REF as a bundle for another machine.

        The bundle is encrypted to the recovery key. Copy it to the
        server, run 'skpass key import-bundle' there, then delete it.

        Examples:

            skpass key export-bundle bot-giskard
        """
        from ..bootstrap import write_bundle

        store = get_store(config)
        recovery = load_recovery_key(config.recovery_key_path).identity
        identity = store.keyring.get(ref)
        if not companions:
            master = store.keyring.find(config.default_identity)
            companions = (master.fingerprint,) if master is not None else ()
        bundle_dir = Path(output_dir).expanduser() if output_dir else config.bundle_path
        path, _ = write_bundle(
            store.keyring, identity.fingerprint, recovery, bundle_dir,
            companions=companions, overwrite=True,
        )
        console.print(f"[green]Bundle for {identity.display}:[/] {path}")

    @key.command("import-bundle")
    @click.argument("file", type=click.Path(exists=True, dir_okay=False))
    @click.option(
        "--recovery-key", type=click.Path(exists=True, dir_okay=False), default=None,
        help="Recovery key file. Defaults to the configured one.",
    )
    @click.pass_obj
    @handle_errors
    def key_import_bundle(config: SKPassConfig, file: str, recovery_key: Optional[str]):
        """Install a key bundle: the secret key it carries becomes usable here.

        Works on a fresh home, before 'skpass sync clone'.

        Examples:

            skpass key import-bundle bot-giskard.bundle --recovery-key /mnt/usb/recovery.key
        """
        config.home.mkdir(parents=True, exist_ok=True)
        store = open_store(config)
        key = load_recovery_key(Path(recovery_key) if recovery_key else config.recovery_key_path)
        identity = store.keyring.import_bundle(Path(file).read_bytes(), key)
        console.print(f"[green]Imported[/] secret key for {identity.display}")
        if recovery_key:
            console.print("[yellow]Remove the bundle and the recovery key copy from this machine.[/]")
