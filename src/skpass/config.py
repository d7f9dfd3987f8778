"""
Configuration: ``<home>/config.yaml``.

Relative paths in the file are resolved against the home directory, so
a home can be moved (or pointed at with ``SKPASS_HOME``) as one unit.
A missing or unreadable file falls back to defaults with a warning.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Optional

import yaml
from pydantic import BaseModel, Field

from . import SKPASS_HOME
from .audit import AUDIT_LOG_NAME, AuditLog
from .crypto import create_backend
from .keyring import Keyring
from .store import ScopedStore
from .tokens import TokenSpec

logger = logging.getLogger("skpass.config")

CONFIG_FILE = "config.yaml"


def default_tokens() -> list[TokenSpec]:
    """The tokens a fresh home knows how to resolve."""
    return [
        TokenSpec(
            name="hcloud_token",
            env_vars=["HCLOUD_TOKEN", "TF_VAR_hcloud_token"],
            store_path="infrastructure/hetzner/api-token",
            prompt="Enter your Hetzner Cloud API token",
        ),
        TokenSpec(
            name="telegram_bot_token",
            env_vars=["TELEGRAM_BOT_TOKEN", "TF_VAR_telegram_bot_token"],
            store_path="shared/telegram/bot-token",
        ),
        TokenSpec(
            name="anthropic_api_key",
            env_vars=["ANTHROPIC_API_KEY", "TF_VAR_anthropic_api_key"],
            store_path="shared/anthropic/api-key",
        ),
    ]


class SKPassConfig(BaseModel):
    """Everything a command needs to find and operate a store."""

    home: Path = Field(default=Path(SKPASS_HOME), exclude=True)
    backend: str = "native"
    gpg_binary: str = "gpg"
    store_dir: Path = Path("store")
    keyring_dir: Path = Path("keyring")
    backup_dir: Path = Path("backups")
    bundle_dir: Path = Path("bundles")
    recovery_key_file: Path = Path("recovery.key")
    tfvars_file: Optional[Path] = None
    remote_url: Optional[str] = None
    remote_name: str = "origin"
    branch: str = "main"
    retention_days: int = 90
    lock_stale_seconds: int = 3600
    healthcheck_url: Optional[str] = None
    default_identity: str = "master"
    identity_expiry_days: Optional[int] = 730
    git_author_name: str = "skpass"
    git_author_email: str = "skpass@localhost"
    tokens: list[TokenSpec] = Field(default_factory=default_tokens)

    def _under_home(self, path: Path) -> Path:
        path = path.expanduser()
        return path if path.is_absolute() else self.home / path

    @property
    def store_path(self) -> Path:
        return self._under_home(self.store_dir)

    @property
    def keyring_path(self) -> Path:
        return self._under_home(self.keyring_dir)

    @property
    def backup_path(self) -> Path:
        return self._under_home(self.backup_dir)

    @property
    def bundle_path(self) -> Path:
        return self._under_home(self.bundle_dir)

    @property
    def recovery_key_path(self) -> Path:
        return self._under_home(self.recovery_key_file)

    @property
    def tfvars_path(self) -> Optional[Path]:
        return self._under_home(self.tfvars_file) if self.tfvars_file else None

    @property
    def lock_path(self) -> Path:
        return self.home / "skpass.lock"

    @property
    def audit_path(self) -> Path:
        return self.home / AUDIT_LOG_NAME

    @property
    def log_path(self) -> Path:
        return self.home / "logs" / "skpass.log"


def load_config(home: Optional[Path] = None) -> SKPassConfig:
    """Load ``<home>/config.yaml``; defaults when absent or invalid.

    ``SKPASS_HEALTHCHECK_URL`` overrides ``healthcheck_url``.
    """
    home_path = (home or Path(os.environ.get("SKPASS_HOME", SKPASS_HOME))).expanduser()
    config_file = home_path / CONFIG_FILE

    data: dict = {}
    if config_file.exists():
        try:
            data = yaml.safe_load(config_file.read_text(encoding="utf-8")) or {}
            if not isinstance(data, dict):
                raise ValueError("top level must be a mapping")
            config = SKPassConfig(**{**data, "home": home_path})
        except (yaml.YAMLError, ValueError) as exc:
            logger.warning("Failed to load %s, using defaults: %s", config_file, exc)
            config = SKPassConfig(home=home_path)
    else:
        config = SKPassConfig(home=home_path)

    env_url = os.environ.get("SKPASS_HEALTHCHECK_URL")
    if env_url:
        config.healthcheck_url = env_url
    return config


def save_config(config: SKPassConfig) -> Path:
    """Write ``config`` to ``<home>/config.yaml``."""
    config.home.mkdir(parents=True, exist_ok=True)
    config_file = config.home / CONFIG_FILE
    data = config.model_dump(mode="json", exclude_none=True)
    config_file.write_text(
        yaml.dump(data, default_flow_style=False, sort_keys=False), encoding="utf-8"
    )
    return config_file


def open_store(config: SKPassConfig) -> ScopedStore:
    """Build a store handle (backend, keyring, audit) from ``config``."""
    kwargs = {"gpg_binary": config.gpg_binary} if config.backend == "gpg" else {}
    backend = create_backend(config.backend, **kwargs)
    keyring = Keyring(config.keyring_path, backend)
    return ScopedStore(
        config.store_path, backend, keyring, audit=AuditLog(config.audit_path)
    )
