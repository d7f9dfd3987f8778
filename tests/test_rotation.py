"""Tests for the rotation engine."""

from __future__ import annotations

import pytest

from skpass.errors import DecryptionFailed, UnknownIdentity
from skpass.keyring import Keyring
from skpass.models import Identity, IdentityKey
from skpass.recipients import RecipientSet
from skpass.rotation import RotationEngine, RotationPhase
from skpass.store import ScopedStore


@pytest.fixture
def engine(store: ScopedStore) -> RotationEngine:
    return RotationEngine(store)


@pytest.fixture
def bot_b(keyring: Keyring) -> Identity:
    return keyring.generate("bot-b")


@pytest.fixture
def shared(store: ScopedStore, master: Identity, bot_a: Identity) -> ScopedStore:
    """``shared`` readable by master and bot-a, with one entry."""
    store.resolver.set_recipients("shared", [master, bot_a])
    store.put("shared/x", b"shared-secret")
    return store


class TestRotate:
    """Replacing one identity with another."""

    def test_scan_has_no_side_effects(self, shared: ScopedStore, engine: RotationEngine, bot_a) -> None:
        before = shared.entry_file("shared/x").read_bytes()
        assert engine.scan(bot_a.fingerprint) == ["shared"]
        assert shared.entry_file("shared/x").read_bytes() == before

    def test_rotation_moves_access(
        self,
        shared: ScopedStore,
        engine: RotationEngine,
        keyring: Keyring,
        master: Identity,
        master_key: IdentityKey,
        bot_a_key: IdentityKey,
        bot_b: Identity,
    ) -> None:
        report = engine.rotate("bot-a", "bot-b", master_key, reason="scheduled")

        assert report.ok
        assert report.phase == RotationPhase.DONE
        assert report.succeeded == ["shared"]
        assert report.reencrypted_entries == 1
        assert shared.resolver.read_policy("shared") == RecipientSet([master, bot_b])

        assert shared.get("shared/x", keyring.unlock("bot-b")) == b"shared-secret"
        with pytest.raises(DecryptionFailed):
            shared.get("shared/x", bot_a_key)

    def test_second_run_is_noop(
        self, shared: ScopedStore, engine: RotationEngine, master_key: IdentityKey, bot_b
    ) -> None:
        engine.rotate("bot-a", "bot-b", master_key)
        after_first = shared.entry_file("shared/x").read_bytes()

        again = engine.rotate("bot-a", "bot-b", master_key)

        assert again.ok
        assert again.scanned == []
        assert shared.entry_file("shared/x").read_bytes() == after_first

    def test_rotation_logged(
        self,
        shared: ScopedStore,
        engine: RotationEngine,
        keyring: Keyring,
        master_key: IdentityKey,
        bot_a: Identity,
        bot_b: Identity,
    ) -> None:
        engine.rotate("bot-a", "bot-b", master_key, reason="leaked")

        entry = keyring.rotation_history()[-1]
        assert entry.old_fingerprint == bot_a.fingerprint
        assert entry.new_fingerprint == bot_b.fingerprint
        assert entry.scopes == ["shared"]
        assert entry.reason == "leaked"
        assert shared.audit.read()[-1].event_type == "ROTATE"

    def test_into_itself_refused(self, engine: RotationEngine, master_key: IdentityKey, bot_a) -> None:
        with pytest.raises(UnknownIdentity, match="into itself"):
            engine.rotate("bot-a", "bot-a", master_key)

    def test_unknown_new_identity(self, engine: RotationEngine, master_key: IdentityKey, bot_a) -> None:
        with pytest.raises(UnknownIdentity):
            engine.rotate("bot-a", "nobody", master_key)

    def test_partial_failure_keeps_old_policy(
        self,
        shared: ScopedStore,
        engine: RotationEngine,
        backend,
        master: Identity,
        master_key: IdentityKey,
        bot_a: Identity,
        bot_b: Identity,
    ) -> None:
        shared.resolver.set_recipients("bot-a", [master, bot_a])
        # written by bot-a alone, so the master cannot re-encrypt it
        shared.entry_file("bot-a/diary").write_bytes(backend.encrypt(b"private", [bot_a]))

        report = engine.rotate("bot-a", "bot-b", master_key)

        assert report.phase == RotationPhase.DONE
        assert not report.ok
        assert report.succeeded == ["shared"]
        assert [f.scope for f in report.failed] == ["bot-a"]
        assert report.failed[0].phase == RotationPhase.REENCRYPTING
        assert report.failed[0].error_type == "DecryptionFailed"
        assert shared.resolver.read_policy("bot-a") == RecipientSet([master, bot_a])

        # repair the entry and rerun: only the failed scope is left
        shared.put("bot-a/diary", b"private")
        retry = engine.rotate("bot-a", "bot-b", master_key)

        assert retry.ok
        assert retry.scanned == ["bot-a"]
        assert shared.resolver.read_policy("bot-a") == RecipientSet([master, bot_b])


class TestRevoke:
    """Removing an identity everywhere."""

    def test_revoke_removes_and_revokes(
        self,
        shared: ScopedStore,
        engine: RotationEngine,
        keyring: Keyring,
        master: Identity,
        master_key: IdentityKey,
        bot_a_key: IdentityKey,
    ) -> None:
        report = engine.revoke("bot-a", master_key, reason="decommissioned")

        assert report.ok
        assert report.new_fingerprint is None
        assert shared.resolver.read_policy("shared") == RecipientSet([master])
        assert keyring.find("bot-a") is None
        with pytest.raises(DecryptionFailed):
            shared.get("shared/x", bot_a_key)
        assert shared.audit.read()[-1].event_type == "REVOKE"

    def test_cannot_revoke_own_key(self, engine: RotationEngine, master_key: IdentityKey) -> None:
        with pytest.raises(UnknownIdentity, match="while using it"):
            engine.revoke("master", master_key)

    def test_sole_recipient_scope_blocks_revocation(
        self,
        store: ScopedStore,
        engine: RotationEngine,
        keyring: Keyring,
        master_key: IdentityKey,
        bot_a: Identity,
    ) -> None:
        store.resolver.set_recipients("solo", [bot_a])

        report = engine.revoke("bot-a", master_key)

        assert not report.ok
        assert report.failed[0].scope == "solo"
        assert report.failed[0].error_type == "RecipientRemovalError"
        assert keyring.find("bot-a") is not None
        assert store.resolver.read_policy("solo") == RecipientSet([bot_a])
