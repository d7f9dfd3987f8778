"""
SKPass CLI: the scoped credential store command line.

This package organizes the CLI into modular command groups.
Each group lives in its own module for maintainability.
The main Click group is defined here and all subcommands
are registered via register functions.

Entry point: skpass.cli:main
"""

from __future__ import annotations

from pathlib import Path

import click

from .. import SKPASS_HOME, __version__
from ..config import load_config
from ._common import setup_logging


@click.group()
@click.version_option(version=__version__, prog_name="skpass")
@click.option(
    "--home", envvar="SKPASS_HOME", default=SKPASS_HOME, type=click.Path(),
    help="SKPass home directory.",
)
@click.option("--verbose", "-v", is_flag=True, help="Debug logging on stderr.")
@click.pass_context
def main(ctx: click.Context, home: str, verbose: bool):
    """SKPass: scoped sovereign credential store.

    Every subtree encrypted to its own recipients. Rotate once,
    re-encrypt everywhere. Push ciphertext, keep plaintext home.
    """
    config = load_config(Path(home).expanduser())
    setup_logging(config.log_path, verbose)
    ctx.obj = config


# ---------------------------------------------------------------------------
# Register all command groups/commands from modular files
# ---------------------------------------------------------------------------

from .store_cmd import register_store_commands
from .scope import register_scope_commands
from .keys import register_key_commands
from .rotate import register_rotate_commands
from .bot import register_bot_commands
from .sync_cmd import register_sync_commands
from .backup import register_backup_commands
from .tokens import register_token_commands

register_store_commands(main)
register_scope_commands(main)
register_key_commands(main)
register_rotate_commands(main)
register_bot_commands(main)
register_sync_commands(main)
register_backup_commands(main)
register_token_commands(main)
