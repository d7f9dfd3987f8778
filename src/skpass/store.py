"""
Scoped Store: CRUD over encrypted entries.

Layout mirrors ``pass``: one ciphertext file per entry, named after its
logical key plus the backend suffix, inside a directory tree where
each scope directory carries a ``.recipients`` policy.

    store/
    ├── .recipients                  {master}
    ├── shared/.recipients           {master, bot-a}
    ├── shared/openai/api-key.enc
    └── bot-a/.recipients            {master, bot-a}

Writes are atomic (temp file in the same directory, fsync, rename), so
a crash mid-write never leaves a torn entry behind.
"""

from __future__ import annotations

import logging
import os
import tempfile
from pathlib import Path
from typing import Iterable, Iterator, Optional, Union

from pydantic import BaseModel, Field

from .audit import AuditLog
from .crypto import CipherBackend
from .errors import BackendError, EntryNotFound, InvalidPath
from .keyring import Keyring
from .models import IdentityKey
from .recipients import (
    POLICY_FILE,
    IdentityRef,
    RecipientResolver,
    RecipientSet,
    normalize_path,
    parent_scope,
)

logger = logging.getLogger("skpass.store")


class StaleEntry(BaseModel):
    """An entry whose ciphertext recipients disagree with its scope policy."""

    path: str
    scope: str
    unauthorized: list[str] = Field(
        default_factory=list, description="Can decrypt but no longer in policy"
    )
    missing: list[str] = Field(
        default_factory=list, description="In policy but cannot decrypt"
    )


def _atomic_write(target: Path, data: bytes) -> None:
    """Write ``data`` to ``target`` via temp file + fsync + rename."""
    target.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp = tempfile.mkstemp(dir=target.parent, prefix=f".{target.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(data)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp, target)
    except BaseException:
        Path(tmp).unlink(missing_ok=True)
        raise


class ScopedStore:
    """Handle on one scoped credential store.

    Every operation takes its inputs explicitly; there is no module-level
    store. Two handles on the same root behave like two processes.

    Args:
        root: Store directory (a git work tree when distributed).
        backend: Cipher backend for entries.
        keyring: Identity registry resolving recipient fingerprints.
        audit: Audit log for mutations.
    """

    def __init__(
        self,
        root: Path,
        backend: CipherBackend,
        keyring: Keyring,
        audit: Optional[AuditLog] = None,
    ) -> None:
        self.root = root
        self.backend = backend
        self.keyring = keyring
        self.audit = audit or AuditLog(None)
        self.resolver = RecipientResolver(root, self.audit)

    # -------------------------------------------------------------------
    # Entry CRUD
    # -------------------------------------------------------------------

    def entry_file(self, path: str) -> Path:
        """On-disk location of an entry."""
        path = normalize_path(path)
        if path.endswith(self.backend.suffix):
            raise InvalidPath(f"Give the logical name, not the file name: '{path}'")
        return self.root / f"{path}{self.backend.suffix}"

    def exists(self, path: str) -> bool:
        return self.entry_file(path).is_file()

    def put(
        self,
        path: str,
        value: Union[bytes, str],
        actor: Optional[IdentityKey] = None,
    ) -> Path:
        """Encrypt ``value`` to the recipients governing ``path``.

        Overwrites an existing entry atomically.

        Args:
            path: Logical entry path (``shared/openai/api-key``).
            value: Plaintext; str is encoded as UTF-8.
            actor: Identity recorded as the writer in the audit log.

        Returns:
            Path of the ciphertext file.

        Raises:
            ScopeNotFound: If no ancestor defines recipients.
            UnknownIdentity: If a recipient is unknown or revoked.
        """
        path = normalize_path(path)
        target = self.entry_file(path)
        if (self.root / path / POLICY_FILE).exists():
            raise InvalidPath(f"'{path}' is a scope, not an entry")

        data = value.encode("utf-8") if isinstance(value, str) else value
        scope = self.resolver.scope_of(path)
        recipients = self.resolver.resolve(scope)
        identities = self.keyring.public_identities(list(recipients))
        ciphertext = self.backend.encrypt(data, identities)
        _atomic_write(target, ciphertext)

        logger.info("Stored '%s' for %d recipients (scope '%s')", path, len(recipients), scope or "/")
        self.audit.record(
            "PUT",
            f"Entry '{path}' written",
            actor=actor.fingerprint if actor else None,
            metadata={"path": path, "scope": scope, "recipients": list(recipients)},
        )
        return target

    def get(self, path: str, identity: IdentityKey) -> bytes:
        """Decrypt an entry as ``identity``.

        Raises:
            EntryNotFound: If the entry does not exist.
            DecryptionFailed: If ``identity`` cannot open the ciphertext.
        """
        path = normalize_path(path)
        target = self.entry_file(path)
        try:
            ciphertext = target.read_bytes()
        except FileNotFoundError:
            raise EntryNotFound(f"No entry at '{path}'") from None
        return self.backend.decrypt(ciphertext, identity)

    def remove(self, path: str, actor: Optional[IdentityKey] = None) -> bool:
        """Delete an entry. Idempotent.

        Empty directories left behind are removed unless they carry a policy.

        Returns:
            True if something was deleted, False if it was already absent.
        """
        path = normalize_path(path)
        target = self.entry_file(path)
        if not target.is_file():
            return False

        target.unlink()
        self._prune_empty_dirs(target.parent)
        logger.info("Removed '%s'", path)
        self.audit.record(
            "REMOVE",
            f"Entry '{path}' removed",
            actor=actor.fingerprint if actor else None,
            metadata={"path": path},
        )
        return True

    def list(self, prefix: str = "") -> Iterator[str]:
        """Lazily yield entry paths under ``prefix``, lexicographically.

        Each call starts a fresh traversal, so the iterator is restartable
        by calling again. Hidden files (policies, ``.git``) are skipped.
        """
        prefix = normalize_path(prefix, allow_root=True)
        start = self.root / prefix if prefix else self.root
        if start.is_dir():
            yield from self._walk_entries(start, prefix)
        elif (self.root / f"{prefix}{self.backend.suffix}").is_file():
            yield prefix

    def _walk_entries(self, directory: Path, prefix: str) -> Iterator[str]:
        try:
            entries = sorted(os.scandir(directory), key=lambda e: e.name)
        except FileNotFoundError:
            return

        # Merge files and directories into one lexicographic stream of names.
        items: list[tuple[str, bool]] = []
        for e in entries:
            if e.name.startswith("."):
                continue
            if e.is_dir(follow_symlinks=False):
                items.append((e.name, True))
            elif e.is_file() and e.name.endswith(self.backend.suffix):
                items.append((e.name[: -len(self.backend.suffix)], False))
        items.sort()

        for name, is_dir in items:
            logical = f"{prefix}/{name}" if prefix else name
            if is_dir:
                yield from self._walk_entries(directory / name, logical)
            else:
                yield logical

    def _prune_empty_dirs(self, directory: Path) -> None:
        while directory != self.root and self.root in directory.parents:
            if (directory / POLICY_FILE).exists() or any(directory.iterdir()):
                return
            directory.rmdir()
            directory = directory.parent

    # -------------------------------------------------------------------
    # Scope management
    # -------------------------------------------------------------------

    def scopes(self) -> Iterator[str]:
        """Every ScopeNode, lexicographic."""
        return self.resolver.scopes()

    def entries_in_scope(self, scope: str) -> list[str]:
        """Entries whose nearest ScopeNode is exactly ``scope``."""
        scope = normalize_path(scope, allow_root=True)
        return [p for p in self.list(scope) if self.resolver.scope_of(p) == scope]

    def init_scope(
        self,
        scope: str,
        identities: Iterable[IdentityRef],
        identity: Optional[IdentityKey] = None,
        force: bool = False,
    ) -> RecipientSet:
        """Write a scope policy and re-encrypt its entries to it.

        The ``pass init -p`` equivalent.

        Args:
            scope: Scope directory to (re)initialize.
            identities: Recipients for the scope.
            identity: Key able to decrypt the scope's existing entries.
                Required when entries exist.
            force: Allow the new policy to drop current members.

        Returns:
            The RecipientSet written.
        """
        scope = normalize_path(scope, allow_root=True)
        entries = [p for p in self.list(scope) if self._nearest_own_scope(p, scope)]
        if entries and identity is None:
            raise BackendError(
                f"Scope '{scope or '/'}' has {len(entries)} entries; "
                "an identity that can decrypt them is required to re-encrypt"
            )

        written = self.resolver.set_recipients(
            scope,
            identities,
            allow_removal=force,
            actor=identity.fingerprint if identity else None,
        )
        if entries:
            self._reencrypt_paths(entries, written, identity)
            logger.info("Re-encrypted %d entries under new scope '%s'", len(entries), scope or "/")
        return written

    def reencrypt_scope(
        self,
        scope: str,
        identity: IdentityKey,
        recipients: Optional[RecipientSet] = None,
    ) -> list[str]:
        """Re-encrypt every entry of ``scope`` to ``recipients``.

        Defaults to the scope's current policy. All entries are decrypted
        and staged before any file is replaced, so a decryption failure
        leaves the scope exactly as it was.

        Returns:
            The entry paths re-encrypted.

        Raises:
            DecryptionFailed: If ``identity`` cannot open one of the entries.
        """
        scope = normalize_path(scope, allow_root=True)
        target = recipients if recipients is not None else self.resolver.resolve(scope)
        entries = self.entries_in_scope(scope)
        self._reencrypt_paths(entries, target, identity)
        if entries:
            logger.info(
                "Re-encrypted %d entries in '%s' for %s",
                len(entries), scope or "/", list(target),
            )
            self.audit.record(
                "REENCRYPT",
                f"Scope '{scope or '/'}' re-encrypted ({len(entries)} entries)",
                actor=identity.fingerprint,
                metadata={"scope": scope, "recipients": list(target)},
            )
        return entries

    def _reencrypt_paths(
        self,
        paths: list[str],
        recipients: RecipientSet,
        identity: IdentityKey,
    ) -> None:
        identities = self.keyring.public_identities(list(recipients))

        staged: list[tuple[str, Path]] = []
        try:
            for path in paths:
                plaintext = self.get(path, identity)
                ciphertext = self.backend.encrypt(plaintext, identities)
                target = self.entry_file(path)
                fd, tmp = tempfile.mkstemp(
                    dir=target.parent, prefix=f".{target.name}.", suffix=".tmp"
                )
                with os.fdopen(fd, "wb") as f:
                    f.write(ciphertext)
                    f.flush()
                    os.fsync(f.fileno())
                staged.append((tmp, target))
        except BaseException:
            for tmp, _ in staged:
                Path(tmp).unlink(missing_ok=True)
            raise

        for tmp, target in staged:
            os.replace(tmp, target)

    def _nearest_own_scope(self, path: str, scope: str) -> bool:
        # Before a scope has a policy, its entries are those not claimed by
        # a deeper scope.
        current = parent_scope(path)
        while current != scope and current:
            if self.resolver.policy_file(current).exists():
                return False
            current = parent_scope(current)
        return current == scope

    # -------------------------------------------------------------------
    # Policy drift
    # -------------------------------------------------------------------

    def find_stale(self) -> list[StaleEntry]:
        """Entries whose ciphertext recipients disagree with their scope policy.

        Only backends that expose recipients (native) can be checked;
        others report nothing.
        """
        stale: list[StaleEntry] = []
        for path in self.list():
            scope = self.resolver.scope_of(path)
            policy = self.resolver.resolve(scope)
            actual = self.backend.recipients_of(self.entry_file(path).read_bytes())
            if actual is None:
                continue
            actual_set = RecipientSet(actual)
            if actual_set == policy:
                continue
            stale.append(StaleEntry(
                path=path,
                scope=scope,
                unauthorized=actual_set.missing_from(policy),
                missing=policy.missing_from(actual_set),
            ))
        return stale
