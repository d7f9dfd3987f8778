"""Shared utilities for all CLI command modules.

Provides the Rich console instance, logging setup, error mapping and
the store/identity helpers every command group needs.
"""

from __future__ import annotations

import functools
import logging
from pathlib import Path
from typing import Optional

import click
from rich.console import Console
from rich.markup import escape

from ..config import SKPassConfig, open_store
from ..errors import SKPassError
from ..lock import StoreLock
from ..models import IdentityKey
from ..store import ScopedStore

console = Console()
logger = logging.getLogger("skpass.cli")

LOG_FORMAT = "%(asctime)s [%(name)s] %(levelname)s: %(message)s"


def setup_logging(log_file: Path, verbose: bool = False) -> None:
    """File handler at ``log_file`` plus stderr at WARNING (DEBUG if verbose)."""
    root = logging.getLogger("skpass")
    for handler in list(root.handlers):
        if getattr(handler, "_skpass_cli", False):
            root.removeHandler(handler)
            handler.close()

    log_file.parent.mkdir(parents=True, exist_ok=True)
    file_handler = logging.FileHandler(log_file, encoding="utf-8")
    file_handler.setFormatter(logging.Formatter(LOG_FORMAT))
    stderr_handler = logging.StreamHandler()
    stderr_handler.setLevel(logging.DEBUG if verbose else logging.WARNING)
    stderr_handler.setFormatter(logging.Formatter("%(levelname)s: %(message)s"))

    for handler in (file_handler, stderr_handler):
        handler._skpass_cli = True
        root.addHandler(handler)
    root.setLevel(logging.DEBUG if verbose else logging.INFO)


def fail(message: str) -> None:
    """Print an error in red and exit with status 1."""
    console.print(f"[red]{escape(message)}[/]")
    raise SystemExit(1)


def handle_errors(func):
    """Map SKPassError to a red message and exit status 1."""

    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        try:
            return func(*args, **kwargs)
        except SKPassError as exc:
            logger.debug("Command failed", exc_info=True)
            console.print(f"[red]{type(exc).__name__}:[/] {escape(str(exc))}")
            raise SystemExit(1)

    return wrapper


def get_store(config: SKPassConfig) -> ScopedStore:
    if not config.store_path.is_dir():
        fail(f"No store at {config.store_path}. Run 'skpass init' first.")
    return open_store(config)


def unlock(store: ScopedStore, config: SKPassConfig, ref: Optional[str]) -> IdentityKey:
    """Unlock ``ref`` or the configured default identity."""
    return store.keyring.unlock(ref or config.default_identity)


def store_lock(config: SKPassConfig) -> StoreLock:
    return StoreLock(config.lock_path, stale_after=config.lock_stale_seconds)


def short(fingerprint: str) -> str:
    return fingerprint[-16:]


identity_option = click.option(
    "--identity", "-i", "identity_ref", default=None,
    help="Identity (label or fingerprint) to decrypt with. Defaults to config.",
)
