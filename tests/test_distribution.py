"""Tests for the git distribution channel.

Runs real git against a bare repository in tmp_path; skipped when git
is not installed.
"""

from __future__ import annotations

import shutil
import subprocess
from pathlib import Path

import pytest

from skpass.crypto import NativeBackend
from skpass.distribution import GitChannel
from skpass.errors import ConflictError, DecryptionFailed, DistributionError, DivergedError
from skpass.keyring import Keyring, create_recovery_key
from skpass.models import Identity, IdentityKey
from skpass.store import ScopedStore

pytestmark = pytest.mark.skipif(shutil.which("git") is None, reason="git not installed")


@pytest.fixture
def remote(tmp_path: Path) -> str:
    bare = tmp_path / "remote.git"
    subprocess.run(["git", "init", "--bare", "-q", str(bare)], check=True)
    subprocess.run(
        ["git", "--git-dir", str(bare), "symbolic-ref", "HEAD", "refs/heads/main"],
        check=True,
    )
    return str(bare)


@pytest.fixture
def authored(store: ScopedStore, master: Identity, bot_a: Identity, remote: str) -> ScopedStore:
    """A store with a few scopes, pushed once."""
    store.resolver.set_recipients("shared", [master, bot_a])
    store.resolver.set_recipients("bot-a", [master, bot_a])
    store.resolver.set_recipients("infrastructure", [master])
    store.put("shared/x", b"shared-secret")
    store.put("infrastructure/hetzner/api-token", b"root-only")

    channel = GitChannel(store.root)
    channel.init_remote(remote)
    channel.push("initial")
    return store


def _replica(tmp_path: Path, name: str, remote: str, key: IdentityKey) -> GitChannel:
    channel = GitChannel(tmp_path / name)
    channel.clone_scoped(remote, key)
    return channel


class TestPush:
    """Authoring side."""

    def test_push_then_idempotent(self, authored: ScopedStore) -> None:
        channel = GitChannel(authored.root)
        head = channel.head()
        assert head is not None
        assert channel.push() == head
        assert channel.status().ahead == 0

    def test_push_without_repo(self, tmp_path: Path) -> None:
        with pytest.raises(DistributionError, match="not a git work tree"):
            GitChannel(tmp_path / "plain").push()

    def test_init_remote_keeps_existing_url(self, authored: ScopedStore, remote: str, caplog) -> None:
        channel = GitChannel(authored.root)
        channel.init_remote("https://example.invalid/other.git")
        url = subprocess.run(
            ["git", "remote", "get-url", "origin"],
            cwd=authored.root, capture_output=True, text=True, check=True,
        ).stdout.strip()
        assert url == remote
        assert "leaving as-is" in caplog.text

    def test_status_counts_local_commits(self, authored: ScopedStore) -> None:
        channel = GitChannel(authored.root)
        authored.put("shared/y", b"new")
        assert channel.status().dirty

        channel.commit_all("add y")
        status = channel.status()
        assert status.ahead == 1
        assert status.behind == 0
        assert not status.dirty


class TestReplica:
    """Bot-side clones."""

    def test_clone_splits_scopes(
        self,
        tmp_path: Path,
        authored: ScopedStore,
        remote: str,
        backend,
        keyring: Keyring,
        bot_a_key: IdentityKey,
    ) -> None:
        channel = GitChannel(tmp_path / "replica")
        replica = channel.clone_scoped(remote, bot_a_key)

        assert replica.readable_scopes == ["bot-a", "shared"]
        assert replica.foreign_scopes == ["", "infrastructure"]
        assert replica.commit == GitChannel(authored.root).head()
        assert (tmp_path / "replica" / "infrastructure" / "hetzner" / "api-token.enc").exists()

        local = ScopedStore(tmp_path / "replica", backend, keyring)
        assert local.get("shared/x", bot_a_key) == b"shared-secret"

    def test_server_reads_own_scope_after_bundle_import(
        self,
        tmp_path: Path,
        authored: ScopedStore,
        remote: str,
        keyring: Keyring,
        bot_a: Identity,
    ) -> None:
        authored.put("bot-a/telegram", b"tg-token")
        GitChannel(authored.root).push("bot secret")
        recovery = create_recovery_key(tmp_path / "recovery.key")
        bundle = keyring.export_bundle("bot-a", recovery.identity, companions=["master"])

        # a fresh machine: nothing but the bundle and the recovery key
        server = Keyring(tmp_path / "server" / "keyring", NativeBackend())
        assert server.import_bundle(bundle, recovery).fingerprint == bot_a.fingerprint
        key = server.unlock("bot-a")

        replica = GitChannel(tmp_path / "server" / "store").clone_scoped(remote, key)
        assert replica.readable_scopes == ["bot-a", "shared"]

        local = ScopedStore(replica.path, server.backend, server)
        assert local.get("bot-a/telegram", key) == b"tg-token"
        assert local.get("shared/x", key) == b"shared-secret"
        with pytest.raises(DecryptionFailed):
            local.get("infrastructure/hetzner/api-token", key)
        assert server.find("master") is not None

    def test_clone_refuses_foreign_directory(
        self, tmp_path: Path, authored: ScopedStore, remote: str, bot_a_key: IdentityKey
    ) -> None:
        dest = tmp_path / "replica"
        dest.mkdir()
        (dest / "leftover").write_text("x")

        with pytest.raises(DistributionError, match="--force"):
            GitChannel(dest).clone_scoped(remote, bot_a_key)

        replica = GitChannel(dest).clone_scoped(remote, bot_a_key, force=True)
        assert "shared" in replica.readable_scopes
        assert not (dest / "leftover").exists()

    def test_pull_fast_forwards(
        self,
        tmp_path: Path,
        authored: ScopedStore,
        remote: str,
        bot_a_key: IdentityKey,
    ) -> None:
        replica = _replica(tmp_path, "replica", remote, bot_a_key)

        authored.put("shared/rotated", b"v2")
        pushed = GitChannel(authored.root).push("rotate")

        assert replica.pull() == pushed
        assert (replica.work_tree / "shared" / "rotated.enc").exists()

    def test_second_clone_call_pulls(
        self, tmp_path: Path, authored: ScopedStore, remote: str, bot_a_key: IdentityKey
    ) -> None:
        replica = _replica(tmp_path, "replica", remote, bot_a_key)
        authored.put("shared/later", b"x")
        GitChannel(authored.root).push()

        again = replica.clone_scoped(remote, bot_a_key)
        assert again.commit == GitChannel(authored.root).head()


class TestConflicts:
    """Linear history is enforced, never merged."""

    def test_divergent_push_rejected(
        self,
        tmp_path: Path,
        authored: ScopedStore,
        remote: str,
        backend,
        keyring: Keyring,
        master_key: IdentityKey,
    ) -> None:
        other = _replica(tmp_path, "other", remote, master_key)

        authored.put("shared/first", b"1")
        GitChannel(authored.root).push("first writer")

        ScopedStore(other.work_tree, backend, keyring).put("shared/second", b"2")
        with pytest.raises(ConflictError, match="diverged"):
            other.push("second writer")

    def test_divergent_pull_refused(
        self,
        tmp_path: Path,
        authored: ScopedStore,
        remote: str,
        backend,
        keyring: Keyring,
        master_key: IdentityKey,
    ) -> None:
        other = _replica(tmp_path, "other", remote, master_key)
        local_head = other.head()

        authored.put("shared/first", b"1")
        GitChannel(authored.root).push()

        ScopedStore(other.work_tree, backend, keyring).put("shared/second", b"2")
        other.commit_all("local change")

        with pytest.raises(DivergedError):
            other.pull()
        assert other.head() != local_head
        assert not (other.work_tree / "shared" / "first.enc").exists()
