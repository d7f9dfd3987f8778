"""Token commands: resolve API tokens and write them to tfvars."""

from __future__ import annotations

from typing import Optional

import click
from rich.table import Table

from ..config import SKPassConfig, open_store
from ..errors import SKPassError
from ..tokens import TokenResolver, TokenSource, tfvars_update, write_tfvars
from ._common import console, fail, handle_errors, identity_option, logger

TFVARS_HEADER = (
    "Generated by skpass tokens resolve.\n"
    "Values can also be set via TF_VAR_<name> environment variables."
)


def _mask(value: str) -> str:
    return f"{value[:4]}…{value[-4:]}" if len(value) > 12 else "****"


def register_token_commands(main: click.Group) -> None:
    """Register the tokens command group."""

    @main.group()
    def tokens():
        """API tokens: cache, environment, store, prompt."""

    @tokens.command("resolve")
    @click.argument("names", nargs=-1)
    @click.option("--no-prompt", is_flag=True, help="Fail instead of prompting.")
    @click.option("--write-tfvars", "write_tfvars_flag", is_flag=True, help="Write resolved values to the tfvars file.")
    @identity_option
    @click.pass_obj
    @handle_errors
    def tokens_resolve(
        config: SKPassConfig,
        names: tuple[str, ...],
        no_prompt: bool,
        write_tfvars_flag: bool,
        identity_ref: Optional[str],
    ):
        """Resolve configured tokens (all, or just NAMES).

        Examples:

            skpass tokens resolve

            skpass tokens resolve hcloud_token --no-prompt --write-tfvars
        """
        specs = [s for s in config.tokens if not names or s.name in names]
        unknown = set(names) - {s.name for s in specs}
        if unknown:
            fail(f"Unknown token(s): {', '.join(sorted(unknown))}")

        store = None
        key = None
        if config.store_path.is_dir():
            store = open_store(config)
            try:
                key = store.keyring.unlock(identity_ref or config.default_identity)
            except SKPassError as exc:
                logger.info("Store lookups disabled: %s", exc)

        resolver = TokenResolver(
            tfvars_file=config.tfvars_path,
            store=store,
            identity=key,
            interactive=not no_prompt,
        )
        resolved = resolver.resolve_all(specs)

        table = Table(show_header=True, header_style="bold", box=None, padding=(0, 2))
        table.add_column("Token", style="cyan")
        table.add_column("Source")
        table.add_column("Value", style="dim")
        for token in resolved.values():
            table.add_row(token.name, token.source.value, _mask(token.value))
        console.print(table)

        if not write_tfvars_flag:
            return
        tfvars = config.tfvars_path
        if tfvars is None:
            fail("No tfvars_file configured in config.yaml")
        values = {spec.key: resolved[spec.name].value for spec in specs}
        if write_tfvars(tfvars, values, header=TFVARS_HEADER):
            console.print(f"[green]Created[/] {tfvars}")
            return
        for spec in specs:
            token = resolved[spec.name]
            if token.source == TokenSource.CACHE:
                continue
            if tfvars_update(spec.key, token.value, tfvars):
                console.print(f"[green]Updated[/] {spec.key} in {tfvars.name}")
