"""
Bootstrap: first-run setup and per-bot onboarding.

``init_store`` creates the master identity and the standard scope
layout. ``add_bot`` gives a bot its own identity and private scope and
(optionally) a seat in ``shared/``. Both are safe to rerun: anything
already in place is reported and left alone.

    store/
    ├── .recipients              {master}
    ├── shared/.recipients       {master, bot-a, bot-b}
    ├── infrastructure/.recipients {master}
    └── bot-a/.recipients        {bot-a, master}

Secret keys are written as bundles encrypted to the recovery key:

    recovery.key                 offline recovery identity, mode 0400
    bundles/
    ├── master.bundle            master secret key (recovery backup)
    ├── bot-a.bundle             bot secret key + master public record
    └── bot-a.bundle.sha256
"""

from __future__ import annotations

import hashlib
import logging
import os
from pathlib import Path
from typing import Optional, Sequence

from pydantic import BaseModel, Field

from .config import SKPassConfig, open_store, save_config
from .distribution import GitChannel
from .errors import InvalidPath, ScopeNotFound
from .keyring import Keyring, ensure_recovery_key
from .models import Identity, IdentityKey
from .recipients import normalize_path
from .store import ScopedStore

logger = logging.getLogger("skpass.bootstrap")

STANDARD_SCOPES = ("shared", "infrastructure")


class InitResult(BaseModel):
    """What ``init_store`` created versus found in place."""

    master: Identity
    created_identity: bool = False
    created_scopes: list[str] = Field(default_factory=list)
    remote: Optional[str] = None
    recovery: Optional[Identity] = None
    created_recovery: bool = False
    master_bundle: Optional[Path] = None


class BotResult(BaseModel):
    """What ``add_bot`` created versus found in place."""

    bot: Identity
    scope: str
    created_identity: bool = False
    created_scope: bool = False
    shared_added: bool = False
    reencrypted: int = 0
    bundle: Optional[Path] = None


def bundle_file(bundle_dir: Path, identity: Identity) -> Path:
    return bundle_dir / f"{identity.label or identity.fingerprint}.bundle"


def write_bundle(
    keyring: Keyring,
    ref: str,
    recovery: Identity,
    bundle_dir: Path,
    companions: Sequence[str] = (),
    overwrite: bool = False,
) -> tuple[Path, bool]:
    """Write the key bundle of ``ref``, encrypted to ``recovery``.

    An existing bundle is left alone unless ``overwrite``. A ``.sha256``
    sidecar is written next to every new bundle.

    Returns:
        The bundle path and whether it was written by this call.
    """
    identity = keyring.get(ref)
    path = bundle_file(bundle_dir, identity)
    if path.exists() and not overwrite:
        logger.info("Key bundle %s already exists", path)
        return path, False

    data = keyring.export_bundle(identity.fingerprint, recovery, companions)
    bundle_dir.mkdir(parents=True, exist_ok=True)
    tmp = path.with_name(f".{path.name}.tmp")
    fd = os.open(tmp, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    with os.fdopen(fd, "wb") as f:
        f.write(data)
    os.replace(tmp, path)

    digest = hashlib.sha256(data).hexdigest()
    path.with_name(path.name + ".sha256").write_text(f"{digest}  {path.name}\n", encoding="utf-8")
    logger.info("Wrote key bundle %s (sha256 %s...)", path, digest[:16])
    return path, True


def init_store(
    config: SKPassConfig,
    master_label: Optional[str] = None,
    remote_url: Optional[str] = None,
) -> InitResult:
    """Create home, master identity, root and standard scopes, git remote.

    Args:
        config: Loaded configuration (its home is created if missing).
        master_label: Label of the master identity (default from config).
        remote_url: Git remote for distribution; falls back to config.

    Returns:
        InitResult describing what was created.
    """
    label = master_label or config.default_identity
    if not (config.home / "config.yaml").exists():
        save_config(config)
        logger.info("Wrote default config to %s", config.home / "config.yaml")
    config.store_path.mkdir(parents=True, exist_ok=True)
    config.backup_path.mkdir(parents=True, exist_ok=True)

    store = open_store(config)
    keyring = store.keyring
    master = keyring.find(label)
    created_identity = master is None
    if master is None:
        master = keyring.generate(label, expires_days=config.identity_expiry_days)

    result = InitResult(master=master, created_identity=created_identity)

    recovery, result.created_recovery = ensure_recovery_key(config.recovery_key_path)
    result.recovery = recovery.identity
    result.master_bundle, _ = write_bundle(
        keyring, master.fingerprint, recovery.identity, config.bundle_path
    )
    resolver = store.resolver

    if resolver.read_policy("") is None:
        resolver.set_recipients("", [master], actor=master.fingerprint)
        result.created_scopes.append("")
    elif master.fingerprint not in resolver.read_policy(""):
        logger.warning(
            "Root recipients do not include %s; leaving them as they are", master.display
        )

    key: Optional[IdentityKey] = None
    for scope in STANDARD_SCOPES:
        if resolver.read_policy(scope) is not None:
            continue
        if key is None and next(store.list(scope), None) is not None:
            key = keyring.unlock(master.fingerprint)
        store.init_scope(scope, [master], identity=key)
        result.created_scopes.append(scope)

    url = remote_url or config.remote_url
    channel = GitChannel(
        config.store_path,
        remote=config.remote_name,
        branch=config.branch,
        author_name=config.git_author_name,
        author_email=config.git_author_email,
    )
    if url or channel.is_repo():
        channel.init_remote(url)
        result.remote = url
        if url and url != config.remote_url:
            config.remote_url = url
            save_config(config)

    logger.info(
        "Store ready at %s (master %s, %d new scopes)",
        config.store_path, master.display, len(result.created_scopes),
    )
    return result


def bot_label(name: str) -> str:
    """``giskard`` -> ``bot-giskard``; the name must be one path segment."""
    name = normalize_path(name)
    if "/" in name:
        raise InvalidPath(f"Bot name must be a single segment, got '{name}'")
    return name if name.startswith("bot-") else f"bot-{name}"


def add_bot(
    store: ScopedStore,
    name: str,
    identity: IdentityKey,
    shared_access: bool = True,
    expires_days: Optional[int] = 730,
    recovery: Optional[Identity] = None,
    bundle_dir: Optional[Path] = None,
) -> BotResult:
    """Onboard a bot: identity, private scope, optional ``shared/`` access.

    Args:
        store: Store handle.
        name: Bot name (``giskard`` or ``bot-giskard``).
        identity: The acting master key; co-recipient of the bot scope
            and used to re-encrypt ``shared/``.
        shared_access: Add the bot to ``shared/`` recipients.
        expires_days: Expiry policy for a newly generated bot identity.
        recovery: Recovery identity; with ``bundle_dir``, the bot's key
            bundle (bot secret plus master public record) is written
            there for its server.
        bundle_dir: Directory for key bundles.

    Returns:
        BotResult describing what changed.
    """
    label = bot_label(name)
    keyring = store.keyring
    resolver = store.resolver

    bot = keyring.find(label)
    created_identity = bot is None
    if bot is None:
        bot = keyring.generate(label, expires_days=expires_days)
    result = BotResult(bot=bot, scope=label, created_identity=created_identity)

    current = resolver.read_policy(label)
    if current is None:
        store.init_scope(label, [bot, identity.identity], identity=identity)
        result.created_scope = True
        logger.info("Bot scope %s/ created", label)
    elif bot.fingerprint not in current:
        resolver.add_recipients(label, [bot], actor=identity.fingerprint)
        result.reencrypted += len(store.reencrypt_scope(label, identity))
    else:
        logger.info("Bot scope %s/ already exists", label)

    if shared_access:
        try:
            shared = resolver.resolve("shared")
        except ScopeNotFound:
            shared = None
        if shared is not None and bot.fingerprint in shared:
            logger.info("%s already in shared/ recipients", label)
        else:
            resolver.add_recipients("shared", [bot], actor=identity.fingerprint)
            result.shared_added = True
            result.reencrypted += len(store.reencrypt_scope("shared", identity))
            logger.info("%s added to shared/ recipients", label)

    if recovery is not None and bundle_dir is not None:
        result.bundle, _ = write_bundle(
            keyring, bot.fingerprint, recovery, bundle_dir, companions=[identity.fingerprint]
        )

    store.audit.record(
        "BOT_ADD",
        f"Bot {label} onboarded",
        actor=identity.fingerprint,
        metadata=result.model_dump(mode="json", include={"scope", "created_identity", "shared_added"}),
    )
    return result
