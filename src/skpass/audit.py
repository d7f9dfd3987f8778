"""
Audit trail: every mutation of the store, one JSON line each.

The log is append-only JSONL so it stays machine-parseable and safe
to tail while a rotation or backup cycle is writing to it.
"""

from __future__ import annotations

import json
import logging
import socket
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, Field

logger = logging.getLogger("skpass.audit")

AUDIT_LOG_NAME = "audit.log"


class AuditEntry(BaseModel):
    """A single structured audit log entry."""

    timestamp: str = Field(
        default_factory=lambda: datetime.now(timezone.utc).isoformat()
    )
    event_type: str
    detail: str
    host: str = Field(default_factory=socket.gethostname)
    actor: Optional[str] = None
    metadata: Optional[dict] = None


class AuditLog:
    """Append-only JSONL audit log.

    Args:
        path: Log file location (``<home>/audit.log``). None disables auditing.
    """

    def __init__(self, path: Optional[Path]) -> None:
        self.path = path

    def record(
        self,
        event_type: str,
        detail: str,
        actor: Optional[str] = None,
        metadata: Optional[dict] = None,
    ) -> AuditEntry:
        """Append an event.

        Args:
            event_type: Category (PUT, REMOVE, RECIPIENTS_SET, ROTATE, ...).
            detail: Human-readable description.
            actor: Fingerprint or label of the identity that acted, if any.
            metadata: Extra structured data.

        Returns:
            AuditEntry: The entry written (or that would have been).
        """
        entry = AuditEntry(
            event_type=event_type, detail=detail, actor=actor, metadata=metadata
        )
        if self.path is None:
            return entry
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with self.path.open("a", encoding="utf-8") as f:
            f.write(entry.model_dump_json() + "\n")
        return entry

    def read(self, limit: int = 0) -> list[AuditEntry]:
        """Read entries, oldest first; ``limit`` keeps only the newest N."""
        if self.path is None or not self.path.exists():
            return []
        entries: list[AuditEntry] = []
        for line in self.path.read_text(encoding="utf-8").splitlines():
            if not line.strip():
                continue
            try:
                entries.append(AuditEntry.model_validate(json.loads(line)))
            except (json.JSONDecodeError, ValueError) as exc:
                logger.warning("Skipping malformed audit line: %s", exc)
        return entries[-limit:] if limit else entries
