"""
Keyring: the identities this store knows about.

Identities are created by explicit generation (or import of a public
key made elsewhere) and destroyed only by explicit revocation. Nothing
here expires on its own: ``expires_at`` is policy, surfaced as warnings.

Storage layout:
    <keyring>/
    ├── identities.json        # Identity records (public material only)
    ├── private/               # Local secret keys, native backend
    │   └── <fingerprint>.key  # base64 raw X25519 key, mode 0600
    └── rotation-log.json      # Rotation / revocation history

Secret keys leave a machine only inside a key bundle encrypted to the
offline recovery identity (``<home>/recovery.key``).
"""

from __future__ import annotations

import base64
import json
import logging
import os
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Optional, Sequence

from pydantic import BaseModel, Field

from .crypto import CipherBackend, GPGBackend, NativeBackend
from .errors import BackendError, UnknownIdentity
from .models import Identity, IdentityKey

logger = logging.getLogger("skpass.keyring")

MIN_SUFFIX_LEN = 8


class KeyBundle(BaseModel):
    """A secret key in transit, with the public records it travels with.

    ``secret`` is the base64 raw key for native identities or the
    ASCII-armored secret key for gpg ones. ``companion_keys`` holds the
    armored gpg public keys of ``companions``.
    """

    identity: Identity
    secret: str
    companions: list[Identity] = Field(default_factory=list)
    companion_keys: str = ""
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class RecoveryKey(BaseModel):
    """Offline recovery identity. Always native, whatever the store backend."""

    identity: Identity
    secret: str


def create_recovery_key(path: Path, label: str = "recovery") -> IdentityKey:
    """Generate a recovery identity and write it to ``path`` with mode 0400.

    Raises:
        FileExistsError: If ``path`` already exists.
    """
    identity, secret = NativeBackend().generate(label)
    record = RecoveryKey(identity=identity, secret=base64.b64encode(secret).decode("ascii"))
    path.parent.mkdir(parents=True, exist_ok=True)
    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o400)
    with os.fdopen(fd, "w", encoding="utf-8") as f:
        f.write(record.model_dump_json(indent=2) + "\n")
    logger.info("Generated recovery key %s at %s", identity.display, path)
    return IdentityKey(identity=identity, secret=secret)


def load_recovery_key(path: Path) -> IdentityKey:
    """Read a recovery key file.

    Raises:
        UnknownIdentity: If there is no file at ``path``.
        BackendError: If the file is not a recovery key.
    """
    if not path.exists():
        raise UnknownIdentity(f"No recovery key at {path}")
    try:
        record = RecoveryKey.model_validate_json(path.read_text(encoding="utf-8"))
        secret = base64.b64decode(record.secret, validate=True)
    except ValueError as exc:
        raise BackendError(f"{path} is not a recovery key: {exc}") from exc
    return IdentityKey(identity=record.identity, secret=secret)


def ensure_recovery_key(path: Path) -> tuple[IdentityKey, bool]:
    """Load the recovery key at ``path``, creating it first if missing."""
    if path.exists():
        return load_recovery_key(path), False
    return create_recovery_key(path), True


class RotationEntry(BaseModel):
    """Audit record for a rotation or revocation."""

    old_fingerprint: str
    new_fingerprint: Optional[str] = None
    scopes: list[str] = Field(default_factory=list)
    failed: list[str] = Field(default_factory=list)
    rotated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    reason: str = ""


class Keyring:
    """Identity registry plus local secret key storage.

    Args:
        root: Keyring directory (``~/.skpass/keyring``).
        backend: Cipher backend used to generate new identities.
    """

    def __init__(self, root: Path, backend: CipherBackend) -> None:
        self.root = root
        self.backend = backend
        self._identities_file = root / "identities.json"
        self._private_dir = root / "private"
        self._rotation_log = root / "rotation-log.json"

    def generate(
        self,
        label: str,
        expires_days: Optional[int] = 730,
    ) -> Identity:
        """Generate a new identity with the configured backend.

        Args:
            label: Human-readable label, unique among live identities.
            expires_days: Policy expiry in days; None for no expiry.

        Returns:
            The new Identity.

        Raises:
            ValueError: If a live identity already carries ``label``.
        """
        if self.find(label) is not None:
            raise ValueError(f"An identity labelled '{label}' already exists")

        expires = None
        if expires_days:
            expires = datetime.now(timezone.utc) + timedelta(days=expires_days)

        identity, secret = self.backend.generate(label, expires)
        if secret is not None:
            self._save_secret(identity.fingerprint, secret)
        self._append(identity)
        logger.info("Generated identity %s", identity.display)
        return identity

    def import_public(self, identity: Identity) -> Identity:
        """Register an identity whose secret lives elsewhere (e.g. a bot server)."""
        existing = self._by_fingerprint(identity.fingerprint)
        if existing is not None:
            return existing
        self._append(identity)
        logger.info("Imported public identity %s", identity.display)
        return identity

    def find(self, ref: str, include_revoked: bool = False) -> Optional[Identity]:
        """Look up an identity by fingerprint, label, or fingerprint suffix.

        Returns:
            The Identity, or None if nothing matches.

        Raises:
            UnknownIdentity: If ``ref`` is ambiguous.
        """
        records = self._load()
        if not include_revoked:
            records = [r for r in records if not r.is_revoked]

        upper = ref.upper()
        exact = [r for r in records if r.fingerprint.upper() == upper]
        if exact:
            return exact[-1]

        labelled = [r for r in records if r.label == ref]
        if len(labelled) == 1:
            return labelled[0]
        if len(labelled) > 1:
            # Only possible with include_revoked; the live one wins.
            live = [r for r in labelled if not r.is_revoked]
            return live[0] if live else labelled[-1]

        if len(ref) >= MIN_SUFFIX_LEN:
            suffixed = [r for r in records if r.fingerprint.upper().endswith(upper)]
            if len(suffixed) > 1:
                raise UnknownIdentity(f"Identity reference '{ref}' is ambiguous")
            if suffixed:
                return suffixed[0]
        return None

    def get(self, ref: str, include_revoked: bool = False) -> Identity:
        """Like :meth:`find` but raises UnknownIdentity when missing."""
        identity = self.find(ref, include_revoked=include_revoked)
        if identity is None:
            raise UnknownIdentity(f"No identity matches '{ref}'")
        return identity

    def unlock(self, ref: str) -> IdentityKey:
        """Load the secret material for a local identity.

        Raises:
            UnknownIdentity: If the identity is unknown, revoked, or has no
                local secret (for backends that keep secrets here).
        """
        identity = self.get(ref)
        if identity.backend != "native":
            return IdentityKey(identity=identity)
        return IdentityKey(identity=identity, secret=self._read_secret(identity))

    def list(self, include_revoked: bool = False) -> list[Identity]:
        """All identities, oldest first."""
        records = self._load()
        if not include_revoked:
            records = [r for r in records if not r.is_revoked]
        return records

    def revoke(self, ref: str) -> Identity:
        """Mark an identity revoked and destroy its local secret.

        Idempotent: revoking an already revoked identity returns it unchanged.
        """
        identity = self.get(ref, include_revoked=True)
        if identity.is_revoked:
            return identity

        identity.revoked_at = datetime.now(timezone.utc)
        self._update(identity)
        key_file = self._private_dir / f"{identity.fingerprint}.key"
        key_file.unlink(missing_ok=True)
        logger.info("Revoked identity %s", identity.display)
        return identity

    def public_identities(self, fingerprints: list[str]) -> list[Identity]:
        """Resolve recipient fingerprints to encryptable identities.

        Raises:
            UnknownIdentity: If any fingerprint is unknown or revoked.
        """
        resolved = []
        for fpr in fingerprints:
            identity = self._by_fingerprint(fpr)
            if identity is None:
                raise UnknownIdentity(f"Recipient {fpr} is not in the keyring")
            if identity.is_revoked:
                raise UnknownIdentity(f"Recipient {identity.display} is revoked")
            if identity.is_expired():
                logger.warning("Encrypting to expired identity %s", identity.display)
            resolved.append(identity)
        return resolved

    def label_for(self, fingerprint: str) -> str:
        """Display name for a fingerprint, falling back to the raw value."""
        identity = self._by_fingerprint(fingerprint)
        return identity.display if identity else fingerprint

    def append_rotation(self, entry: RotationEntry) -> None:
        """Append a rotation event to the rotation log."""
        log: list[dict] = []
        if self._rotation_log.exists():
            try:
                log = json.loads(self._rotation_log.read_text(encoding="utf-8"))
            except (json.JSONDecodeError, OSError) as exc:
                logger.warning("Rotation log unreadable, starting fresh: %s", exc)
        log.append(entry.model_dump(mode="json"))
        self.root.mkdir(parents=True, exist_ok=True)
        self._rotation_log.write_text(json.dumps(log, indent=2), encoding="utf-8")

    def rotation_history(self) -> list[RotationEntry]:
        if not self._rotation_log.exists():
            return []
        data = json.loads(self._rotation_log.read_text(encoding="utf-8"))
        return [RotationEntry.model_validate(e) for e in data]

    def export_bundle(
        self,
        ref: str,
        recipient: Identity,
        companions: Sequence[str] = (),
    ) -> bytes:
        """Package the secret key of ``ref`` for another machine.

        The bundle also carries the public records of ``companions``
        (usually the master identity) and is encrypted to ``recipient``
        alone, normally the offline recovery identity.

        Raises:
            UnknownIdentity: If ``ref`` has no secret key on this machine.
            BackendError: If the backend cannot export the key.
        """
        identity = self.get(ref)
        mates = [
            m for m in (self.get(c) for c in companions)
            if m.fingerprint != identity.fingerprint
        ]
        if identity.backend == "native":
            secret = base64.b64encode(self._read_secret(identity)).decode("ascii")
            mate_keys = ""
        else:
            gpg = self._gpg()
            secret = gpg.export_secret_key(identity.fingerprint).decode("ascii")
            mate_keys = "".join(
                gpg.export_public_key(m.fingerprint).decode("ascii")
                for m in mates
                if m.backend == "gpg"
            )

        bundle = KeyBundle(
            identity=identity, secret=secret, companions=mates, companion_keys=mate_keys
        )
        data = self._cipher_for(recipient).encrypt(
            bundle.model_dump_json().encode("utf-8"), [recipient]
        )
        logger.info("Exported key bundle for %s to %s", identity.display, recipient.display)
        return data

    def import_bundle(self, data: bytes, key: IdentityKey) -> Identity:
        """Install a bundle written by :meth:`export_bundle`.

        Returns:
            The identity whose secret key is now held on this machine.

        Raises:
            DecryptionFailed: If ``key`` cannot open the bundle.
            BackendError: If the bundle is malformed or its secret does not
                belong to its identity.
        """
        plaintext = self._cipher_for(key.identity).decrypt(data, key)
        try:
            bundle = KeyBundle.model_validate_json(plaintext)
        except ValueError as exc:
            raise BackendError(f"Not a key bundle: {exc}") from exc

        identity = bundle.identity
        if identity.backend == "native":
            try:
                secret = base64.b64decode(bundle.secret, validate=True)
            except ValueError as exc:
                raise BackendError(f"Corrupt secret in bundle for {identity.display}") from exc
            if NativeBackend.public_key_for(secret) != identity.public_key:
                raise BackendError(f"Bundle secret does not belong to {identity.display}")
            self._save_secret(identity.fingerprint, secret)
        else:
            self._gpg().import_keys((bundle.secret + bundle.companion_keys).encode("ascii"))

        for mate in bundle.companions:
            self.import_public(mate)
        identity = self.import_public(identity)
        logger.info("Imported key bundle for %s", identity.display)
        return identity

    # -------------------------------------------------------------------
    # Internal helpers
    # -------------------------------------------------------------------

    def _read_secret(self, identity: Identity) -> bytes:
        key_file = self._private_dir / f"{identity.fingerprint}.key"
        if not key_file.exists():
            raise UnknownIdentity(
                f"No local secret key for {identity.display}; this machine cannot decrypt as it"
            )
        return base64.b64decode(key_file.read_text(encoding="ascii").strip())

    def _gpg(self) -> GPGBackend:
        if not isinstance(self.backend, GPGBackend):
            raise BackendError(
                f"gpg identities need the gpg backend; this keyring uses {self.backend.name}"
            )
        return self.backend

    def _cipher_for(self, identity: Identity) -> CipherBackend:
        if identity.backend == self.backend.name:
            return self.backend
        if identity.backend == "native":
            return NativeBackend()
        return self._gpg()

    def _by_fingerprint(self, fingerprint: str) -> Optional[Identity]:
        upper = fingerprint.upper()
        return next(
            (r for r in self._load() if r.fingerprint.upper() == upper), None
        )

    def _load(self) -> list[Identity]:
        if not self._identities_file.exists():
            return []
        data = json.loads(self._identities_file.read_text(encoding="utf-8"))
        return [Identity.model_validate(r) for r in data]

    def _save(self, records: list[Identity]) -> None:
        self.root.mkdir(parents=True, exist_ok=True)
        data = [r.model_dump(mode="json") for r in records]
        tmp = self._identities_file.with_suffix(".json.tmp")
        tmp.write_text(json.dumps(data, indent=2), encoding="utf-8")
        os.replace(tmp, self._identities_file)

    def _append(self, identity: Identity) -> None:
        records = self._load()
        records.append(identity)
        self._save(records)

    def _update(self, updated: Identity) -> None:
        records = self._load()
        for i, r in enumerate(records):
            if r.fingerprint == updated.fingerprint:
                records[i] = updated
                break
        self._save(records)

    def _save_secret(self, fingerprint: str, secret: bytes) -> None:
        self._private_dir.mkdir(parents=True, exist_ok=True)
        os.chmod(self._private_dir, 0o700)
        key_file = self._private_dir / f"{fingerprint}.key"
        fd = os.open(key_file, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        with os.fdopen(fd, "w", encoding="ascii") as f:
            f.write(base64.b64encode(secret).decode("ascii") + "\n")
