"""
Pydantic models shared across the credential store.

An Identity is only ever a reference: fingerprint, label, public
material. Secret material travels separately, in an IdentityKey, and
only for the duration of one operation.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional

from pydantic import BaseModel, Field


class Identity(BaseModel):
    """A recipient keypair reference.

    Expiry is recorded for policy; the store never refuses to encrypt to
    an expired identity, it only warns. Revocation is the only way an
    identity stops being usable.
    """

    fingerprint: str
    label: Optional[str] = None
    backend: str = "native"
    public_key: str = Field(default="", description="Base64 raw key (native) or empty (gpg keyring)")
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    expires_at: Optional[datetime] = None
    revoked_at: Optional[datetime] = None

    @property
    def is_revoked(self) -> bool:
        return self.revoked_at is not None

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        """Whether the policy expiry has passed."""
        if self.expires_at is None:
            return False
        return (now or datetime.now(timezone.utc)) >= self.expires_at

    @property
    def display(self) -> str:
        """Label plus short fingerprint, for messages."""
        short = self.fingerprint[-16:]
        return f"{self.label} ({short})" if self.label else short


class IdentityKey(BaseModel):
    """An identity together with its unlocked secret material.

    Passed explicitly to every operation that decrypts, so authorization
    never depends on ambient process state. ``secret`` is None for
    backends whose secrets live in an agent (gpg).
    """

    identity: Identity
    secret: Optional[bytes] = Field(default=None, repr=False)

    @property
    def fingerprint(self) -> str:
        return self.identity.fingerprint
