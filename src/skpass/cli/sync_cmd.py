"""Sync commands: push, pull, clone, status."""

from __future__ import annotations

from pathlib import Path
from typing import Optional

import click
from rich.panel import Panel

from ..config import SKPassConfig, open_store
from ..distribution import GitChannel
from ._common import console, handle_errors, identity_option, store_lock, unlock


def _channel(config: SKPassConfig, work_tree: Optional[Path] = None) -> GitChannel:
    return GitChannel(
        work_tree or config.store_path,
        remote=config.remote_name,
        branch=config.branch,
        author_name=config.git_author_name,
        author_email=config.git_author_email,
    )


def register_sync_commands(main: click.Group) -> None:
    """Register the sync command group."""

    @main.group()
    def sync():
        """Distribution: ciphertext over git.

        Linear history only. A push onto a moved remote and a pull
        that cannot fast-forward both stop and ask for a human.
        """

    @sync.command("push")
    @click.option("--message", "-m", default=None, help="Commit message.")
    @click.pass_obj
    @handle_errors
    def sync_push(config: SKPassConfig, message: Optional[str]):
        """Commit local changes and push them to the remote."""
        with store_lock(config):
            commit = _channel(config).push(message)
        console.print(f"[green]Pushed[/] {commit[:12]}")

    @sync.command("pull")
    @click.pass_obj
    @handle_errors
    def sync_pull(config: SKPassConfig):
        """Fast-forward the store to the remote."""
        with store_lock(config):
            commit = _channel(config).pull()
        console.print(f"[green]Up to date[/] at {commit[:12] if commit else '(empty)'}")

    @sync.command("clone")
    @click.argument("url")
    @click.argument("dest", required=False, type=click.Path())
    @click.option("--force", is_flag=True, help="Replace a non-git directory at DEST.")
    @identity_option
    @click.pass_obj
    @handle_errors
    def sync_clone(
        config: SKPassConfig,
        url: str,
        dest: Optional[str],
        force: bool,
        identity_ref: Optional[str],
    ):
        """Clone the store as a replica (a bot server).

        DEST defaults to the configured store directory. An existing
        clone is pulled instead.

        Examples:

            skpass sync clone git@github.com:me/credentials.git -i bot-giskard
        """
        work_tree = Path(dest).expanduser() if dest else config.store_path
        store = open_store(config)
        key = unlock(store, config, identity_ref)
        replica = _channel(config, work_tree).clone_scoped(url, key, force=force)

        readable = ", ".join(f"{s}/" if s else "/" for s in replica.readable_scopes) or "none"
        foreign = ", ".join(f"{s}/" if s else "/" for s in replica.foreign_scopes) or "none"
        console.print(Panel(
            f"Path: {replica.path}\n"
            f"Identity: [cyan]{key.identity.display}[/]\n"
            f"Commit: {(replica.commit or '-')[:12]}\n"
            f"Readable: [green]{readable}[/]\n"
            f"Ciphertext only: [dim]{foreign}[/]",
            title="Replica",
            border_style="green",
        ))

    @sync.command("status")
    @click.pass_obj
    @handle_errors
    def sync_status(config: SKPassConfig):
        """Show ahead/behind counts and local changes."""
        status = _channel(config).status()
        dirty = "[yellow]uncommitted changes[/]" if status.dirty else "[green]clean[/]"
        console.print(Panel(
            f"Head: {(status.head or '-')[:12]}\n"
            f"Remote: {(status.remote_head or '-')[:12]}\n"
            f"Ahead: {status.ahead}  Behind: {status.behind}\n"
            f"Work tree: {dirty}",
            title=f"Sync {config.remote_name}/{config.branch}",
            border_style="cyan",
        ))
