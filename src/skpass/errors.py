"""Exception taxonomy for the scoped credential store.

Every error names the path, identity, or step involved so the operator
can re-run the same command once the cause is fixed.
"""

from __future__ import annotations


class SKPassError(Exception):
    """Base class for all skpass failures."""


class InvalidPath(SKPassError, ValueError):
    """Raised when a logical store path is malformed."""


class ScopeNotFound(SKPassError):
    """Raised when no ancestor of a path defines recipients."""


class EntryNotFound(SKPassError, KeyError):
    """Raised when a requested entry does not exist."""

    def __str__(self) -> str:
        return str(self.args[0]) if self.args else ""


class DecryptionFailed(SKPassError):
    """Raised when the caller's identity cannot decrypt an entry.

    Signals a policy/ciphertext mismatch: the identity is either not in
    the scope's recipients or the entry was never re-encrypted for it.
    """


class UnknownIdentity(SKPassError):
    """Raised when a fingerprint or label is not in the keyring, or is revoked."""


class RecipientRemovalError(SKPassError):
    """Raised when a routine recipient update would silently drop members."""


class BackendError(SKPassError):
    """Raised when the underlying crypto backend (gpg, cryptography) fails."""


class DistributionError(SKPassError):
    """Raised when a git distribution step fails."""


class ConflictError(DistributionError):
    """Raised by push when the remote has diverged from the local history."""


class DivergedError(DistributionError):
    """Raised by pull when a fast-forward is impossible."""


class CorruptArchive(SKPassError):
    """Raised when a freshly written snapshot fails its read-back check."""


class LockHeld(SKPassError):
    """Raised when another live process holds the store lock."""


class TokenUnavailable(SKPassError):
    """Raised when no source in the resolution chain yields a token."""
