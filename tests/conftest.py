"""Shared test fixtures for skpass."""

from __future__ import annotations

import logging
from pathlib import Path

import pytest

from skpass.audit import AuditLog
from skpass.crypto import NativeBackend
from skpass.keyring import Keyring
from skpass.models import Identity, IdentityKey
from skpass.store import ScopedStore


@pytest.fixture(autouse=True)
def _drop_cli_log_handlers():
    """CLI invocations attach handlers to CliRunner streams; detach them afterwards."""
    yield
    root = logging.getLogger("skpass")
    for handler in list(root.handlers):
        if getattr(handler, "_skpass_cli", False):
            root.removeHandler(handler)
            handler.close()


@pytest.fixture
def tmp_home(tmp_path: Path) -> Path:
    """Provide a temporary skpass home directory for testing."""
    home = tmp_path / ".skpass"
    home.mkdir()
    return home


@pytest.fixture
def backend() -> NativeBackend:
    return NativeBackend()


@pytest.fixture
def keyring(tmp_home: Path, backend: NativeBackend) -> Keyring:
    return Keyring(tmp_home / "keyring", backend)


@pytest.fixture
def master(keyring: Keyring) -> Identity:
    return keyring.generate("master")


@pytest.fixture
def master_key(keyring: Keyring, master: Identity) -> IdentityKey:
    return keyring.unlock("master")


@pytest.fixture
def bot_a(keyring: Keyring) -> Identity:
    return keyring.generate("bot-a")


@pytest.fixture
def bot_a_key(keyring: Keyring, bot_a: Identity) -> IdentityKey:
    return keyring.unlock("bot-a")


@pytest.fixture
def store(tmp_home: Path, backend: NativeBackend, keyring: Keyring, master: Identity) -> ScopedStore:
    """A store whose root scope is readable by the master identity only."""
    s = ScopedStore(
        tmp_home / "store", backend, keyring, audit=AuditLog(tmp_home / "audit.log")
    )
    s.resolver.set_recipients("", [master])
    return s
