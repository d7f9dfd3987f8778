"""
Recipient Set Resolver: who may read what.

Each scope directory carries a ``.recipients`` policy file, one
fingerprint per line (the ``.gpg-id`` convention of ``pass``). An entry
belongs to the nearest ancestor directory that has one.

Writing a policy never touches entries. Re-encryption is always a
separate, explicit step (see ``ScopedStore.reencrypt_scope`` and the
rotation engine).
"""

from __future__ import annotations

import logging
import os
import shutil
import tempfile
from pathlib import Path
from typing import Iterable, Iterator, Optional, Union

from .audit import AuditLog
from .errors import InvalidPath, RecipientRemovalError, ScopeNotFound
from .models import Identity

logger = logging.getLogger("skpass.recipients")

POLICY_FILE = ".recipients"
POLICY_BACKUP = ".recipients.bak"

IdentityRef = Union[str, Identity]


def normalize_path(path: str, allow_root: bool = False) -> str:
    """Validate and canonicalize a logical store path.

    Trailing slashes are accepted (``shared/`` names the scope ``shared``).

    Args:
        path: Slash-separated logical path.
        allow_root: Whether the empty path (store root) is acceptable.

    Returns:
        The canonical path, ``""`` for the root.

    Raises:
        InvalidPath: On absolute paths, empty/dot segments, or hidden names.
    """
    if path.startswith("/"):
        raise InvalidPath(f"Store paths are relative, got '{path}'")
    stripped = path.rstrip("/")
    if not stripped:
        if allow_root:
            return ""
        raise InvalidPath("Empty store path")

    segments = stripped.split("/")
    for segment in segments:
        if segment in ("", ".", ".."):
            raise InvalidPath(f"Invalid segment in store path '{path}'")
        if segment.startswith("."):
            raise InvalidPath(f"Hidden names are reserved, got '{path}'")
    return "/".join(segments)


def parent_scope(path: str) -> str:
    """Logical parent of ``path`` (``""`` for top-level names)."""
    return path.rpartition("/")[0]


class RecipientSet:
    """Ordered set of recipient fingerprints.

    Membership is unique and case-insensitive; equality ignores order.
    """

    __slots__ = ("_fingerprints",)

    def __init__(self, fingerprints: Iterable[IdentityRef] = ()) -> None:
        seen: list[str] = []
        for item in fingerprints:
            fpr = item.fingerprint if isinstance(item, Identity) else item
            fpr = fpr.strip().upper()
            if fpr and fpr not in seen:
                seen.append(fpr)
        self._fingerprints = tuple(seen)

    @property
    def fingerprints(self) -> tuple[str, ...]:
        return self._fingerprints

    def __contains__(self, item: object) -> bool:
        if isinstance(item, Identity):
            item = item.fingerprint
        return isinstance(item, str) and item.upper() in self._fingerprints

    def __iter__(self) -> Iterator[str]:
        return iter(self._fingerprints)

    def __len__(self) -> int:
        return len(self._fingerprints)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, RecipientSet):
            return NotImplemented
        return frozenset(self._fingerprints) == frozenset(other._fingerprints)

    def __hash__(self) -> int:
        return hash(frozenset(self._fingerprints))

    def __repr__(self) -> str:
        return f"RecipientSet({list(self._fingerprints)!r})"

    def replace(self, old: str, new: Optional[str]) -> RecipientSet:
        """``(self - {old}) ∪ {new}``, keeping the position of ``old``."""
        old = old.upper()
        out = []
        for fpr in self._fingerprints:
            if fpr == old:
                if new:
                    out.append(new)
            else:
                out.append(fpr)
        return RecipientSet(out)

    def union(self, other: Iterable[IdentityRef]) -> RecipientSet:
        return RecipientSet([*self._fingerprints, *RecipientSet(other)])

    def missing_from(self, other: RecipientSet) -> list[str]:
        """Members of ``self`` that ``other`` lacks."""
        return [f for f in self._fingerprints if f not in other]

    def to_text(self) -> str:
        return "".join(f"{fpr}\n" for fpr in self._fingerprints)

    @classmethod
    def from_text(cls, text: str) -> RecipientSet:
        lines = []
        for line in text.splitlines():
            line = line.split("#", 1)[0].strip()
            if line:
                lines.append(line)
        return cls(lines)


class RecipientResolver:
    """Reads and writes scope policy files under a store root.

    Args:
        root: Store root directory.
        audit: Audit log for policy changes.
    """

    def __init__(self, root: Path, audit: Optional[AuditLog] = None) -> None:
        self.root = root
        self.audit = audit or AuditLog(None)

    def node_dir(self, scope: str) -> Path:
        return self.root / scope if scope else self.root

    def policy_file(self, scope: str) -> Path:
        return self.node_dir(scope) / POLICY_FILE

    def read_policy(self, scope: str) -> Optional[RecipientSet]:
        """The policy defined exactly at ``scope``, or None."""
        policy = self.policy_file(scope)
        if not policy.is_file():
            return None
        return RecipientSet.from_text(policy.read_text(encoding="utf-8"))

    def scope_of(self, path: str) -> str:
        """The ScopeNode governing ``path`` (the path itself if it is one).

        Raises:
            ScopeNotFound: If no ancestor defines recipients.
        """
        current = normalize_path(path, allow_root=True)
        while True:
            if self.policy_file(current).is_file():
                return current
            if not current:
                raise ScopeNotFound(
                    f"No recipients defined for '{path or '/'}' or any parent; "
                    "run 'skpass init' or 'skpass scope set' first"
                )
            current = parent_scope(current)

    def resolve(self, path: str) -> RecipientSet:
        """Recipients governing ``path``.

        Raises:
            ScopeNotFound: If no ancestor defines recipients.
        """
        scope = self.scope_of(path)
        policy = self.read_policy(scope)
        assert policy is not None
        return policy

    def set_recipients(
        self,
        path: str,
        identities: Iterable[IdentityRef],
        allow_removal: bool = False,
        actor: Optional[str] = None,
    ) -> RecipientSet:
        """Overwrite the policy of ``path``; entries are not re-encrypted.

        The previous policy is copied to ``.recipients.bak`` first.

        Args:
            path: Scope to write (created if missing).
            identities: New recipients.
            allow_removal: Permit dropping current members. Routine updates
                must leave this False; rotation and revocation set it.
            actor: Identity recorded in the audit log.

        Returns:
            The RecipientSet written.

        Raises:
            RecipientRemovalError: If members would be dropped without
                ``allow_removal``.
        """
        scope = normalize_path(path, allow_root=True)
        new_set = RecipientSet(identities)
        if not new_set:
            raise RecipientRemovalError(
                f"Refusing to write an empty recipient set for '{scope or '/'}'"
            )

        current = self.read_policy(scope)
        if current is not None:
            dropped = current.missing_from(new_set)
            if dropped and not allow_removal:
                raise RecipientRemovalError(
                    f"Updating '{scope or '/'}' would drop {', '.join(dropped)}; "
                    "removal requires an explicit rotation or revocation"
                )
            if current.fingerprints == new_set.fingerprints:
                return current

        node = self.node_dir(scope)
        node.mkdir(parents=True, exist_ok=True)
        policy = node / POLICY_FILE
        if policy.exists():
            shutil.copy2(policy, node / POLICY_BACKUP)

        fd, tmp = tempfile.mkstemp(dir=node, prefix=".recipients.", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(new_set.to_text())
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp, policy)
        except BaseException:
            Path(tmp).unlink(missing_ok=True)
            raise

        logger.info("Recipients for '%s' set to %s", scope or "/", list(new_set))
        self.audit.record(
            "RECIPIENTS_SET",
            f"Recipients for '{scope or '/'}' set ({len(new_set)} identities)",
            actor=actor,
            metadata={
                "scope": scope,
                "recipients": list(new_set),
                "previous": list(current) if current else [],
            },
        )
        return new_set

    def add_recipients(
        self,
        path: str,
        identities: Iterable[IdentityRef],
        actor: Optional[str] = None,
    ) -> RecipientSet:
        """Monotonic merge into the policy of ``path``.

        A node without its own policy starts from the inherited recipients,
        so adding a member never narrows who could read it before.
        """
        scope = normalize_path(path, allow_root=True)
        base = self.read_policy(scope)
        if base is None:
            try:
                base = self.resolve(scope)
            except ScopeNotFound:
                base = RecipientSet()
        return self.set_recipients(scope, base.union(identities), actor=actor)

    def restore_backup(self, path: str, actor: Optional[str] = None) -> RecipientSet:
        """Swap ``.recipients.bak`` back into place (undo the last write).

        Raises:
            ScopeNotFound: If the node has no backup to restore.
        """
        scope = normalize_path(path, allow_root=True)
        backup = self.node_dir(scope) / POLICY_BACKUP
        if not backup.is_file():
            raise ScopeNotFound(f"No policy backup for '{scope or '/'}'")
        previous = RecipientSet.from_text(backup.read_text(encoding="utf-8"))
        return self.set_recipients(scope, previous, allow_removal=True, actor=actor)

    def scopes(self) -> Iterator[str]:
        """Every ScopeNode, lexicographic, root first."""
        yield from self._walk_scopes(self.root, "")

    def _walk_scopes(self, directory: Path, prefix: str) -> Iterator[str]:
        if (directory / POLICY_FILE).is_file():
            yield prefix
        try:
            children = sorted(
                e.name for e in os.scandir(directory)
                if e.is_dir(follow_symlinks=False) and not e.name.startswith(".")
            )
        except FileNotFoundError:
            return
        for name in children:
            child = f"{prefix}/{name}" if prefix else name
            yield from self._walk_scopes(directory / name, child)
