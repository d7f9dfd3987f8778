"""Backup commands: snapshot, prune, list, verify, run."""

from __future__ import annotations

from pathlib import Path
from typing import Optional

import click
from rich.panel import Panel
from rich.table import Table

from ..config import SKPassConfig
from ._common import console, fail, handle_errors, store_lock


def register_backup_commands(main: click.Group) -> None:
    """Register the backup command group."""

    @main.group()
    def backup():
        """Backups: daily verified snapshots of the ciphertext tree.

        Point cron at 'skpass backup run' for the full cycle:
        snapshot, push, prune, health-check ping.
        """

    @backup.command("snapshot")
    @click.option("--subtree", default=None, help="Only archive this part of the store.")
    @click.pass_obj
    @handle_errors
    def backup_snapshot(config: SKPassConfig, subtree: Optional[str]):
        """Write today's snapshot archive and its checksum."""
        from ..backup import snapshot

        try:
            with store_lock(config):
                result = snapshot(config.store_path, config.backup_path, subtree=subtree)
        except FileNotFoundError as exc:
            fail(str(exc))
        console.print(Panel(
            f"[bold green]Snapshot written[/]\n"
            f"Files: {result.file_count}\n"
            f"Size: {result.size / 1024:.1f} KB\n"
            f"SHA256: {result.sha256[:16]}...\n"
            f"Path: [cyan]{result.path}[/]",
            title="Backup",
            border_style="green",
        ))

    @backup.command("prune")
    @click.option("--days", type=int, default=None, help="Maximum age (default from config).")
    @click.pass_obj
    @handle_errors
    def backup_prune(config: SKPassConfig, days: Optional[int]):
        """Delete snapshots older than the retention period (never the newest)."""
        from ..backup import prune

        with store_lock(config):
            removed = prune(config.backup_path, days if days is not None else config.retention_days)
        if not removed:
            console.print("[dim]Nothing to prune.[/]")
        for path in removed:
            console.print(f"[yellow]Pruned[/] {path.name}")

    @backup.command("list")
    @click.pass_obj
    @handle_errors
    def backup_list(config: SKPassConfig):
        """List snapshot archives, newest first."""
        from ..backup import list_snapshots

        snapshots = list_snapshots(config.backup_path)
        if not snapshots:
            console.print("\n[dim]No snapshots found.[/]\n")
            return

        table = Table(show_header=True, header_style="bold", box=None, padding=(0, 2))
        table.add_column("Filename", style="cyan")
        table.add_column("Size", justify="right")
        table.add_column("Modified", style="dim")
        table.add_column("SHA256", style="dim")
        for snap in snapshots:
            table.add_row(
                snap.path.name,
                f"{snap.size / 1024:.1f} KB",
                snap.modified.strftime("%Y-%m-%d %H:%M"),
                (snap.sha256 or "-")[:16],
            )
        console.print(f"\n[bold]{len(snapshots)}[/] snapshot(s):\n")
        console.print(table)
        console.print()

    @backup.command("verify")
    @click.argument("archive", type=click.Path())
    @click.pass_obj
    @handle_errors
    def backup_verify(config: SKPassConfig, archive: str):
        """Check ARCHIVE against its recorded SHA-256.

        ARCHIVE may be a path or a file name inside the backup directory.
        """
        from ..backup import verify_snapshot

        path = Path(archive).expanduser()
        if not path.exists() and (config.backup_path / archive).exists():
            path = config.backup_path / archive
        try:
            ok = verify_snapshot(path)
        except FileNotFoundError as exc:
            fail(str(exc))
        if not ok:
            fail(f"Checksum mismatch: {path.name}")
        console.print(f"[green]OK[/] {path.name}")

    @backup.command("run")
    @click.option("--no-push", is_flag=True, help="Skip the git push step.")
    @click.pass_obj
    @handle_errors
    def backup_run(config: SKPassConfig, no_push: bool):
        """Full cycle: lock, snapshot, push, prune, health-check ping."""
        from ..backup import run_cycle

        result = run_cycle(config, push=not no_push)
        ping = {None: "[dim]not configured[/]", True: "[green]ok[/]", False: "[yellow]failed[/]"}
        console.print(Panel(
            f"Entries: {result.entry_count}\n"
            f"Snapshot: [cyan]{result.snapshot.path.name}[/]\n"
            f"SHA256: {result.snapshot.sha256[:16]}...\n"
            f"Pushed: {result.pushed[:12] if result.pushed else '[dim]no[/]'}\n"
            f"Pruned: {len(result.pruned)}\n"
            f"Health-check: {ping[result.healthcheck]}",
            title="Backup cycle",
            border_style="green",
        ))
