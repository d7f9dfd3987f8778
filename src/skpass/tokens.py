"""
Token resolution: find an API token wherever the operator left it.

Sources are tried in a fixed order and the first non-empty value wins:

    1. local cache   (the terraform.tfvars file already on disk)
    2. environment   (e.g. HCLOUD_TOKEN, TF_VAR_hcloud_token)
    3. this store    (a scoped entry, decrypted with the caller's identity)
    4. prompt        (hidden input, interactive sessions only)

Resolved values can be written back into the tfvars file. Updates only
touch keys that already exist, keep a ``.bak`` of the previous file,
and quote values so a token full of quotes or backslashes cannot break
the file.
"""

from __future__ import annotations

import logging
import os
import re
import shutil
from enum import Enum
from pathlib import Path
from typing import Mapping, Optional

import click
from pydantic import BaseModel, Field

from .errors import DecryptionFailed, EntryNotFound, ScopeNotFound, TokenUnavailable
from .models import IdentityKey
from .store import ScopedStore

logger = logging.getLogger("skpass.tokens")


class TokenSpec(BaseModel):
    """Where to look for one token."""

    name: str
    env_vars: list[str] = Field(default_factory=list)
    tfvars_key: Optional[str] = None
    store_path: Optional[str] = None
    prompt: Optional[str] = None

    @property
    def key(self) -> str:
        return self.tfvars_key or self.name


class TokenSource(str, Enum):
    CACHE = "cache"
    ENV = "env"
    STORE = "store"
    PROMPT = "prompt"


class ResolvedToken(BaseModel):
    """A token value and the source it came from."""

    name: str
    value: str = Field(repr=False)
    source: TokenSource


# ---------------------------------------------------------------------------
# tfvars helpers
# ---------------------------------------------------------------------------


def _key_pattern(key: str) -> re.Pattern:
    return re.compile(rf"^{re.escape(key)}\s*=\s*(.*)$")


def _quote(value: str) -> str:
    escaped = value.replace("\\", "\\\\").replace('"', '\\"')
    escaped = escaped.replace("\n", "\\n").replace("${", "$${")
    return f'"{escaped}"'


def _unquote(raw: str) -> Optional[str]:
    raw = raw.strip()
    if not raw.startswith('"'):
        return None
    out: list[str] = []
    i = 1
    while i < len(raw):
        ch = raw[i]
        if ch == "\\" and i + 1 < len(raw):
            nxt = raw[i + 1]
            out.append({"n": "\n", "t": "\t"}.get(nxt, nxt))
            i += 2
            continue
        if ch == '"':
            return "".join(out).replace("$${", "${")
        out.append(ch)
        i += 1
    return None


def tfvars_get(key: str, path: Path) -> Optional[str]:
    """Read a quoted string value from a tfvars file.

    Returns:
        The value, or None when the file or key is absent (an empty
        string value is returned as ``""``).
    """
    if not path.is_file():
        return None
    pattern = _key_pattern(key)
    for line in path.read_text(encoding="utf-8").splitlines():
        match = pattern.match(line)
        if match:
            return _unquote(match.group(1))
    return None


def tfvars_update(key: str, value: str, path: Path) -> bool:
    """Replace the value of an existing key in place.

    Keys are never added or deleted. The previous file is kept as
    ``<file>.bak``.

    Returns:
        True if the key was found and rewritten.
    """
    if not path.is_file():
        logger.warning("tfvars file not found: %s", path)
        return False

    pattern = _key_pattern(key)
    lines = path.read_text(encoding="utf-8").splitlines(keepends=True)
    if not any(pattern.match(line.rstrip("\n")) for line in lines):
        return False

    shutil.copy2(path, path.with_name(path.name + ".bak"))
    updated = []
    for line in lines:
        if pattern.match(line.rstrip("\n")):
            line = f"{key} = {_quote(value)}\n"
        updated.append(line)
    path.write_text("".join(updated), encoding="utf-8")
    logger.info("Updated '%s' in %s", key, path)
    return True


def write_tfvars(path: Path, values: Mapping[str, str], header: str = "") -> bool:
    """Create a new tfvars file. An existing file is left untouched.

    Returns:
        True if the file was created.
    """
    if path.exists():
        logger.info("Using existing %s", path)
        return False
    path.parent.mkdir(parents=True, exist_ok=True)
    width = max((len(k) for k in values), default=0)
    lines = [f"# {line}\n" for line in header.splitlines()]
    lines += [f"{k.ljust(width)} = {_quote(v)}\n" for k, v in values.items()]
    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
    with os.fdopen(fd, "w", encoding="utf-8") as f:
        f.write("".join(lines))
    logger.info("Created %s", path)
    return True


# ---------------------------------------------------------------------------
# Resolver
# ---------------------------------------------------------------------------


class TokenResolver:
    """Resolve tokens through cache, environment, store and prompt.

    Args:
        tfvars_file: Local cache file; None skips the cache.
        store: Store to read entries from; None skips the store.
        identity: Key used to decrypt store entries.
        interactive: Whether to fall back to a hidden prompt.
        environ: Environment mapping (defaults to ``os.environ``).
    """

    def __init__(
        self,
        tfvars_file: Optional[Path] = None,
        store: Optional[ScopedStore] = None,
        identity: Optional[IdentityKey] = None,
        interactive: bool = True,
        environ: Optional[Mapping[str, str]] = None,
    ) -> None:
        self.tfvars_file = tfvars_file
        self.store = store
        self.identity = identity
        self.interactive = interactive
        self.environ = os.environ if environ is None else environ

    def resolve(self, spec: TokenSpec) -> ResolvedToken:
        """First non-empty value for ``spec``.

        Raises:
            TokenUnavailable: If no source yields a value.
        """
        if self.tfvars_file is not None:
            value = tfvars_get(spec.key, self.tfvars_file)
            if value:
                logger.info("Using %s from %s", spec.name, self.tfvars_file)
                return ResolvedToken(name=spec.name, value=value, source=TokenSource.CACHE)

        for var in spec.env_vars:
            value = self.environ.get(var, "")
            if value:
                logger.info("Using %s from $%s", spec.name, var)
                return ResolvedToken(name=spec.name, value=value, source=TokenSource.ENV)

        value = self._from_store(spec)
        if value:
            return ResolvedToken(name=spec.name, value=value, source=TokenSource.STORE)

        if self.interactive:
            value = click.prompt(
                spec.prompt or f"Enter {spec.name}",
                hide_input=True,
                default="",
                show_default=False,
            ).strip()
            if value:
                return ResolvedToken(name=spec.name, value=value, source=TokenSource.PROMPT)

        sources = ["tfvars"] if self.tfvars_file else []
        sources += [f"${v}" for v in spec.env_vars]
        if spec.store_path and self.store:
            sources.append(spec.store_path)
        raise TokenUnavailable(
            f"No value for {spec.name} (tried {', '.join(sources) or 'nothing'}"
            f"{', prompt' if self.interactive else ''})"
        )

    def resolve_all(self, specs: list[TokenSpec]) -> dict[str, ResolvedToken]:
        return {spec.name: self.resolve(spec) for spec in specs}

    def _from_store(self, spec: TokenSpec) -> Optional[str]:
        if not spec.store_path or self.store is None or self.identity is None:
            return None
        try:
            raw = self.store.get(spec.store_path, self.identity)
        except EntryNotFound:
            return None
        except (DecryptionFailed, ScopeNotFound) as exc:
            logger.warning("Cannot read %s from the store: %s", spec.store_path, exc)
            return None
        try:
            text = raw.decode("utf-8")
        except UnicodeDecodeError:
            logger.warning("Store entry %s is not UTF-8 text; skipping it", spec.store_path)
            return None
        # pass convention: the secret is the first line
        value = text.splitlines()[0].strip() if text.strip() else ""
        if value:
            logger.info("Using %s from store entry %s", spec.name, spec.store_path)
        return value or None
