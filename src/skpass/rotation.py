"""
Rotation Engine: replace one identity with another everywhere.

    SCANNING -> REENCRYPTING -> COMMITTING -> DONE
         \\            \\              \\
          +------------+--------------+--> FAILED

Scanning has no side effects. Re-encryption is atomic per scope: a
scope either has all of its entries re-encrypted to the new set or
none. A scope that fails is reported and skipped; the batch carries on.
Policy files are committed only for scopes that re-encrypted cleanly,
so a failed scope keeps the old identity listed until the next run.

Running the same rotation twice is a no-op the second time: no scope
lists the old identity any more.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field

from .errors import RecipientRemovalError, SKPassError, UnknownIdentity
from .keyring import RotationEntry
from .models import IdentityKey
from .recipients import RecipientSet
from .store import ScopedStore

logger = logging.getLogger("skpass.rotation")


class RotationPhase(str, Enum):
    """Where a rotation is (or stopped)."""

    SCANNING = "scanning"
    REENCRYPTING = "reencrypting"
    COMMITTING = "committing"
    DONE = "done"
    FAILED = "failed"


class ScopeFailure(BaseModel):
    """One scope that could not be rotated, and why."""

    scope: str
    phase: RotationPhase
    error_type: str
    message: str


class RotationReport(BaseModel):
    """Outcome of a rotation or revocation.

    ``failed`` is non-empty on partial failure; the call itself does not
    raise for per-scope problems.
    """

    old_fingerprint: str
    new_fingerprint: Optional[str] = None
    phase: RotationPhase = RotationPhase.SCANNING
    scanned: list[str] = Field(default_factory=list)
    succeeded: list[str] = Field(default_factory=list)
    failed: list[ScopeFailure] = Field(default_factory=list)
    reencrypted_entries: int = 0
    error: Optional[str] = None
    started_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    finished_at: Optional[datetime] = None

    @property
    def ok(self) -> bool:
        return self.phase == RotationPhase.DONE and not self.failed


class RotationEngine:
    """Drives rotations and revocations over one ScopedStore.

    Args:
        store: The store handle to rotate.
    """

    def __init__(self, store: ScopedStore) -> None:
        self.store = store

    def scan(self, fingerprint: str) -> list[str]:
        """Scopes whose recipients include ``fingerprint``. No side effects."""
        resolver = self.store.resolver
        return [
            scope for scope in resolver.scopes()
            if fingerprint in (resolver.read_policy(scope) or RecipientSet())
        ]

    def rotate(
        self,
        old: str,
        new: str,
        identity: IdentityKey,
        reason: str = "",
    ) -> RotationReport:
        """Replace ``old`` with ``new`` in every scope and re-encrypt.

        Args:
            old: Fingerprint or label of the identity being replaced.
            new: Fingerprint or label of its replacement (must be live).
            identity: Key used to decrypt affected entries; must be a
                recipient of every affected scope (usually the master key).
            reason: Free text for the rotation log.

        Returns:
            RotationReport with succeeded and failed scopes.

        Raises:
            UnknownIdentity: If ``old`` or ``new`` cannot be resolved.
        """
        keyring = self.store.keyring
        old_id = keyring.get(old, include_revoked=True)
        new_id = keyring.get(new)
        if old_id.fingerprint == new_id.fingerprint:
            raise UnknownIdentity(f"Cannot rotate {old_id.display} into itself")

        report = RotationReport(
            old_fingerprint=old_id.fingerprint, new_fingerprint=new_id.fingerprint
        )
        logger.info("Rotating %s -> %s", old_id.display, new_id.display)
        self._run(report, identity, new_id.fingerprint)
        self._log(report, reason or "rotation")
        return report

    def revoke(
        self,
        old: str,
        identity: IdentityKey,
        reason: str = "",
    ) -> RotationReport:
        """Remove ``old`` from every scope, re-encrypt, then revoke it.

        The keyring revocation happens only when every scope succeeded, so
        a partial run can be retried with the identity still resolvable.

        Raises:
            UnknownIdentity: If ``old`` cannot be resolved.
        """
        old_id = self.store.keyring.get(old, include_revoked=True)
        if old_id.fingerprint == identity.fingerprint:
            raise UnknownIdentity(
                f"Cannot revoke {old_id.display} while using it to re-encrypt"
            )

        report = RotationReport(old_fingerprint=old_id.fingerprint)
        logger.info("Revoking %s", old_id.display)
        self._run(report, identity, None)
        if report.ok:
            self.store.keyring.revoke(old_id.fingerprint)
        self._log(report, reason or "revocation")
        return report

    # -------------------------------------------------------------------
    # State machine
    # -------------------------------------------------------------------

    def _run(
        self,
        report: RotationReport,
        identity: IdentityKey,
        new_fpr: Optional[str],
    ) -> None:
        store = self.store
        resolver = store.resolver

        report.phase = RotationPhase.SCANNING
        try:
            plan: list[tuple[str, RecipientSet]] = []
            for scope in self.scan(report.old_fingerprint):
                current = resolver.read_policy(scope) or RecipientSet()
                plan.append((scope, current.replace(report.old_fingerprint, new_fpr)))
            report.scanned = [scope for scope, _ in plan]
        except (SKPassError, OSError) as exc:
            self._fail(report, exc)
            return

        report.phase = RotationPhase.REENCRYPTING
        ready: list[tuple[str, RecipientSet, int]] = []
        for scope, new_set in plan:
            if not new_set:
                report.failed.append(self._failure(
                    scope,
                    RotationPhase.REENCRYPTING,
                    RecipientRemovalError(
                        f"Scope '{scope or '/'}' would be left without recipients"
                    ),
                ))
                continue
            try:
                entries = store.reencrypt_scope(scope, identity, recipients=new_set)
            except (SKPassError, OSError) as exc:
                logger.error("Re-encryption of '%s' failed: %s", scope or "/", exc)
                report.failed.append(self._failure(scope, RotationPhase.REENCRYPTING, exc))
                continue
            ready.append((scope, new_set, len(entries)))

        report.phase = RotationPhase.COMMITTING
        for scope, new_set, count in ready:
            try:
                resolver.set_recipients(
                    scope, new_set, allow_removal=True, actor=identity.fingerprint
                )
            except (SKPassError, OSError) as exc:
                logger.error("Committing policy for '%s' failed: %s", scope or "/", exc)
                report.failed.append(self._failure(scope, RotationPhase.COMMITTING, exc))
                continue
            report.succeeded.append(scope)
            report.reencrypted_entries += count
            logger.info("Rotated scope '%s' (%d entries)", scope or "/", count)

        report.phase = RotationPhase.DONE
        report.finished_at = datetime.now(timezone.utc)

    @staticmethod
    def _failure(scope: str, phase: RotationPhase, exc: Exception) -> ScopeFailure:
        return ScopeFailure(
            scope=scope, phase=phase, error_type=type(exc).__name__, message=str(exc)
        )

    @staticmethod
    def _fail(report: RotationReport, exc: Exception) -> None:
        logger.error("Rotation aborted during %s: %s", report.phase.value, exc)
        report.error = f"{type(exc).__name__}: {exc}"
        report.phase = RotationPhase.FAILED
        report.finished_at = datetime.now(timezone.utc)

    def _log(self, report: RotationReport, reason: str) -> None:
        if not report.scanned and report.phase == RotationPhase.DONE:
            logger.info("Nothing to rotate for %s", report.old_fingerprint)
            return
        self.store.keyring.append_rotation(RotationEntry(
            old_fingerprint=report.old_fingerprint,
            new_fingerprint=report.new_fingerprint,
            scopes=report.succeeded,
            failed=[f.scope for f in report.failed],
            reason=reason,
        ))
        self.store.audit.record(
            "ROTATE" if report.new_fingerprint else "REVOKE",
            f"{reason}: {len(report.succeeded)} scopes rotated, {len(report.failed)} failed",
            metadata={
                "old": report.old_fingerprint,
                "new": report.new_fingerprint,
                "succeeded": report.succeeded,
                "failed": [f.scope for f in report.failed],
            },
        )
