"""
Cipher backends: where the actual cryptography happens.

The store never implements a cipher. It hands plaintext and a list of
recipient identities to a backend and gets ciphertext back.

Native: X25519 + HKDF-SHA256 + AES-256-GCM via ``cryptography``.
    One random file key per entry, wrapped once per recipient with an
    ephemeral X25519 exchange (the age construction).
GPG: the system ``gpg`` binary, exactly how a ``pass`` store encrypts.
"""

from __future__ import annotations

import base64
import hashlib
import json
import logging
import os
import subprocess
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Optional, Sequence

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.asymmetric import x25519
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.hashes import SHA256
from cryptography.hazmat.primitives.kdf.hkdf import HKDF

from .errors import BackendError, DecryptionFailed
from .models import Identity, IdentityKey

logger = logging.getLogger("skpass.crypto")

NATIVE_MAGIC = b"SKPASS-X25519-v1\n"
WRAP_INFO = b"skpass:native:wrap:v1"
# gpg --throw-keyids writes an all-zero key id
HIDDEN_KEY_ID = "0000000000000000"


def _b64e(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


def _b64d(data: str) -> bytes:
    return base64.b64decode(data.encode("ascii"))


def _derive_wrap_key(shared: bytes, salt: bytes) -> bytes:
    """Derive a 256-bit key-wrapping key from an X25519 shared secret.

    Args:
        shared: Raw X25519 exchange output.
        salt: Ephemeral public key followed by recipient public key.

    Returns:
        32-byte wrapping key.
    """
    hkdf = HKDF(algorithm=SHA256(), length=32, salt=salt, info=WRAP_INFO)
    return hkdf.derive(shared)


def native_fingerprint(public_raw: bytes) -> str:
    """40 hex chars of SHA-256 over the raw public key."""
    return hashlib.sha256(public_raw).hexdigest()[:40].upper()


class CipherBackend(ABC):
    """Abstract multi-recipient encryption backend."""

    @property
    @abstractmethod
    def name(self) -> str:
        """Backend identifier stored on every Identity it creates."""

    @property
    @abstractmethod
    def suffix(self) -> str:
        """File suffix for entries encrypted by this backend."""

    @abstractmethod
    def generate(
        self, label: str, expires_at: Optional[datetime] = None
    ) -> tuple[Identity, Optional[bytes]]:
        """Create a new keypair.

        Returns:
            The public Identity and the secret material to keep locally
            (None when the backend stores secrets itself).
        """

    @abstractmethod
    def encrypt(self, plaintext: bytes, recipients: Sequence[Identity]) -> bytes:
        """Encrypt to every identity in ``recipients``."""

    @abstractmethod
    def decrypt(self, ciphertext: bytes, key: IdentityKey) -> bytes:
        """Decrypt with ``key``.

        Raises:
            DecryptionFailed: If ``key`` is not a recipient of the ciphertext.
        """

    def recipients_of(self, ciphertext: bytes) -> Optional[list[str]]:
        """Fingerprints the ciphertext was encrypted to, if the format exposes them."""
        return None


class NativeBackend(CipherBackend):
    """X25519/AES-256-GCM envelope encryption.

    Ciphertext layout::

        SKPASS-X25519-v1\\n
        {"nonce": ..., "recipients": [{"fpr", "epk", "nonce", "key"}, ...]}\\n
        <AES-256-GCM body, header bytes as associated data>
    """

    @property
    def name(self) -> str:
        return "native"

    @property
    def suffix(self) -> str:
        return ".enc"

    def generate(
        self, label: str, expires_at: Optional[datetime] = None
    ) -> tuple[Identity, Optional[bytes]]:
        sk = x25519.X25519PrivateKey.generate()
        public_raw = sk.public_key().public_bytes_raw()
        identity = Identity(
            fingerprint=native_fingerprint(public_raw),
            label=label or None,
            backend=self.name,
            public_key=_b64e(public_raw),
            expires_at=expires_at,
        )
        return identity, sk.private_bytes_raw()

    @staticmethod
    def public_key_for(secret: bytes) -> str:
        """Base64 public key belonging to a raw X25519 secret."""
        try:
            sk = x25519.X25519PrivateKey.from_private_bytes(secret)
        except ValueError as exc:
            raise BackendError(f"Not an X25519 secret key: {exc}") from exc
        return _b64e(sk.public_key().public_bytes_raw())

    def encrypt(self, plaintext: bytes, recipients: Sequence[Identity]) -> bytes:
        if not recipients:
            raise BackendError("Refusing to encrypt to an empty recipient set")

        file_key = AESGCM.generate_key(bit_length=256)
        stanzas = []
        for recipient in recipients:
            if not recipient.public_key:
                raise BackendError(
                    f"No public key material for {recipient.display}"
                )
            public_raw = _b64d(recipient.public_key)
            ephemeral = x25519.X25519PrivateKey.generate()
            ephemeral_raw = ephemeral.public_key().public_bytes_raw()
            shared = ephemeral.exchange(
                x25519.X25519PublicKey.from_public_bytes(public_raw)
            )
            wrap_key = _derive_wrap_key(shared, ephemeral_raw + public_raw)
            wrap_nonce = os.urandom(12)
            wrapped = AESGCM(wrap_key).encrypt(
                wrap_nonce, file_key, recipient.fingerprint.encode()
            )
            stanzas.append({
                "fpr": recipient.fingerprint,
                "epk": _b64e(ephemeral_raw),
                "nonce": _b64e(wrap_nonce),
                "key": _b64e(wrapped),
            })

        nonce = os.urandom(12)
        header = json.dumps(
            {"nonce": _b64e(nonce), "recipients": stanzas}, sort_keys=True
        ).encode()
        body = AESGCM(file_key).encrypt(nonce, plaintext, header)
        return NATIVE_MAGIC + header + b"\n" + body

    def decrypt(self, ciphertext: bytes, key: IdentityKey) -> bytes:
        if key.secret is None:
            raise BackendError(
                f"No secret key material unlocked for {key.identity.display}"
            )
        header_bytes, header, body = self._parse(ciphertext)

        stanza = next(
            (s for s in header["recipients"] if s["fpr"] == key.fingerprint),
            None,
        )
        if stanza is None:
            raise DecryptionFailed(
                f"{key.identity.display} is not a recipient of this entry"
            )

        sk = x25519.X25519PrivateKey.from_private_bytes(key.secret)
        own_public = sk.public_key().public_bytes_raw()
        ephemeral_raw = _b64d(stanza["epk"])
        shared = sk.exchange(x25519.X25519PublicKey.from_public_bytes(ephemeral_raw))
        wrap_key = _derive_wrap_key(shared, ephemeral_raw + own_public)
        try:
            file_key = AESGCM(wrap_key).decrypt(
                _b64d(stanza["nonce"]), _b64d(stanza["key"]), key.fingerprint.encode()
            )
            return AESGCM(file_key).decrypt(_b64d(header["nonce"]), body, header_bytes)
        except InvalidTag as exc:
            raise DecryptionFailed(
                f"Secret key for {key.identity.display} does not open this entry"
            ) from exc

    def recipients_of(self, ciphertext: bytes) -> Optional[list[str]]:
        _, header, _ = self._parse(ciphertext)
        return [s["fpr"] for s in header["recipients"]]

    @staticmethod
    def _parse(ciphertext: bytes) -> tuple[bytes, dict, bytes]:
        if not ciphertext.startswith(NATIVE_MAGIC):
            raise BackendError("Not a native skpass ciphertext")
        rest = ciphertext[len(NATIVE_MAGIC):]
        header_bytes, sep, body = rest.partition(b"\n")
        if not sep:
            raise BackendError("Truncated native ciphertext header")
        try:
            header = json.loads(header_bytes)
        except json.JSONDecodeError as exc:
            raise BackendError(f"Corrupt native ciphertext header: {exc}") from exc
        return header_bytes, header, body


class GPGBackend(CipherBackend):
    """System ``gpg`` backend.

    Secrets stay in the user's GnuPG keyring and gpg-agent; the store
    only ever sees fingerprints.
    """

    def __init__(self, gpg_binary: str = "gpg", homedir: Optional[str] = None):
        self.gpg_binary = gpg_binary
        self.homedir = homedir

    @property
    def name(self) -> str:
        return "gpg"

    @property
    def suffix(self) -> str:
        return ".gpg"

    def _run(
        self, args: list[str], input_data: Optional[bytes] = None
    ) -> subprocess.CompletedProcess:
        cmd = [self.gpg_binary, "--batch", "--yes"]
        if self.homedir:
            cmd.extend(["--homedir", self.homedir])
        cmd.extend(args)
        try:
            return subprocess.run(
                cmd, input=input_data, capture_output=True, check=False
            )
        except FileNotFoundError as exc:
            raise BackendError(
                f"'{self.gpg_binary}' not found. Install GnuPG (apt install gnupg)."
            ) from exc

    def generate(
        self, label: str, expires_at: Optional[datetime] = None
    ) -> tuple[Identity, Optional[bytes]]:
        email = f"{label}@skpass.local"
        expire = "0"
        if expires_at is not None:
            days = max(1, (expires_at - datetime.now(timezone.utc)).days)
            expire = f"{days}d"

        batch = (
            "Key-Type: RSA\n"
            "Key-Length: 4096\n"
            "Subkey-Type: RSA\n"
            "Subkey-Length: 4096\n"
            f"Name-Real: {label}\n"
            f"Name-Email: {email}\n"
            f"Expire-Date: {expire}\n"
            "%no-protection\n"
            "%commit\n"
        )
        result = self._run(["--gen-key"], input_data=batch.encode())
        if result.returncode != 0:
            raise BackendError(
                f"gpg key generation for {label} failed: {result.stderr.decode(errors='replace')}"
            )

        fingerprint = self.fingerprint_for(email)
        if not fingerprint:
            raise BackendError(f"gpg generated a key for {email} but it cannot be listed")
        logger.info("Generated gpg key %s for %s", fingerprint, label)
        return (
            Identity(
                fingerprint=fingerprint,
                label=label,
                backend=self.name,
                expires_at=expires_at,
            ),
            None,
        )

    def fingerprint_for(self, user_id: str) -> Optional[str]:
        """Primary key fingerprint for a user id, parsed from ``--with-colons``."""
        result = self._run(["--with-colons", "--fingerprint", user_id])
        if result.returncode != 0:
            return None
        seen_pub = False
        for line in result.stdout.decode(errors="replace").splitlines():
            fields = line.split(":")
            if fields[0] == "pub":
                seen_pub = True
            elif fields[0] == "fpr" and seen_pub:
                return fields[9]
        return None

    def encrypt(self, plaintext: bytes, recipients: Sequence[Identity]) -> bytes:
        if not recipients:
            raise BackendError("Refusing to encrypt to an empty recipient set")
        args = ["--encrypt", "--trust-model", "always", "--output", "-"]
        for recipient in recipients:
            args.extend(["--recipient", recipient.fingerprint])
        result = self._run(args, input_data=plaintext)
        if result.returncode != 0:
            raise BackendError(
                f"gpg encryption failed: {result.stderr.decode(errors='replace').strip()}"
            )
        return result.stdout

    def encryption_key_ids(self, fingerprint: str) -> set[str]:
        """Long key ids of the encryption-capable (sub)keys of ``fingerprint``."""
        result = self._run(["--with-colons", "--list-keys", fingerprint])
        if result.returncode != 0:
            return set()
        capable, every = set(), set()
        for line in result.stdout.decode(errors="replace").splitlines():
            fields = line.split(":")
            if fields[0] not in ("pub", "sub") or len(fields) < 12:
                continue
            every.add(fields[4].upper())
            # lowercase letters are this key's own usage flags
            if "e" in fields[11]:
                capable.add(fields[4].upper())
        return capable or every

    def message_key_ids(self, ciphertext: bytes) -> list[str]:
        """Long key ids a message is encrypted to, without decrypting it.

        Raises:
            DecryptionFailed: If gpg finds no public-key packets at all.
        """
        result = self._run(
            ["--list-only", "--status-fd", "2", "--decrypt"], input_data=ciphertext
        )
        stderr = result.stderr.decode(errors="replace")
        key_ids = []
        for line in stderr.splitlines():
            if line.startswith("[GNUPG:] ENC_TO "):
                key_ids.append(line.split()[2].upper())
        if not key_ids and result.returncode != 0:
            raise DecryptionFailed(
                f"Not a gpg message: {stderr.strip().splitlines()[-1] if stderr.strip() else 'unknown error'}"
            )
        return key_ids

    def decrypt(self, ciphertext: bytes, key: IdentityKey) -> bytes:
        """Decrypt for ``key`` if and only if ``key`` is a recipient.

        gpg opens a message with whichever local secret key it tries
        first, so authorization is decided from the message's recipient
        list rather than from the key that happened to open it.
        """
        own = self.encryption_key_ids(key.fingerprint)
        if not own:
            raise DecryptionFailed(
                f"{key.identity.display} is not in the local gpg keyring"
            )
        targets = self.message_key_ids(ciphertext)
        if HIDDEN_KEY_ID not in targets and own.isdisjoint(targets):
            raise DecryptionFailed(
                f"{key.identity.display} is not a recipient of this entry "
                f"(encrypted to {', '.join(targets) or 'nobody'})"
            )

        result = self._run(["--decrypt", "--output", "-"], input_data=ciphertext)
        if result.returncode != 0:
            stderr = result.stderr.decode(errors="replace").strip()
            raise DecryptionFailed(
                f"gpg could not decrypt for {key.identity.display}: "
                f"{stderr.splitlines()[-1] if stderr else 'unknown error'}"
            )
        return result.stdout

    def export_secret_key(self, fingerprint: str) -> bytes:
        """ASCII-armored secret key, as ``gpg --export-secret-keys`` writes it."""
        result = self._run(["--armor", "--export-secret-keys", fingerprint])
        if result.returncode != 0 or not result.stdout:
            raise BackendError(
                f"gpg holds no secret key for {fingerprint}: "
                f"{result.stderr.decode(errors='replace').strip() or 'nothing exported'}"
            )
        return result.stdout

    def export_public_key(self, fingerprint: str) -> bytes:
        result = self._run(["--armor", "--export", fingerprint])
        if result.returncode != 0 or not result.stdout:
            raise BackendError(f"gpg holds no public key for {fingerprint}")
        return result.stdout

    def import_keys(self, armored: bytes) -> None:
        """Import armored public or secret keys into the gpg keyring."""
        result = self._run(["--import"], input_data=armored)
        if result.returncode != 0:
            raise BackendError(
                f"gpg key import failed: {result.stderr.decode(errors='replace').strip()}"
            )


def create_backend(name: str, **kwargs) -> CipherBackend:
    """Factory: instantiate a backend by name.

    Args:
        name: ``native`` or ``gpg``.
        **kwargs: Backend-specific options (``gpg_binary``, ``homedir``).

    Returns:
        A configured CipherBackend.
    """
    backends = {"native": NativeBackend, "gpg": GPGBackend}
    cls = backends.get(name)
    if cls is None:
        raise ValueError(f"Unknown cipher backend: {name!r} (expected native or gpg)")
    return cls(**kwargs)
