"""
Backup/Prune cycle: daily snapshots of the ciphertext tree.

Archives hold exactly what git distributes (ciphertext, policies and
the ``.git`` history), never keyring secrets.

    backups/
    ├── credentials-2026-10-17.tar.gz
    ├── credentials-2026-10-17.tar.gz.sha256
    └── checksums.txt            # append-only "<sha256>  <name>" ledger

A snapshot is written under a temporary name and read back in full
before it is published; a corrupt archive is never renamed into place.
Pruning always keeps the newest archive, whatever its age.

``run_cycle`` is the cron entry point: lock, snapshot, push, prune,
then a fire-and-forget health-check ping.
"""

from __future__ import annotations

import hashlib
import logging
import os
import tarfile
import tempfile
import time
import zlib
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Optional

import requests
from pydantic import BaseModel, Field

from .config import SKPassConfig
from .crypto import create_backend
from .distribution import GitChannel
from .errors import CorruptArchive, SKPassError
from .lock import StoreLock
from .recipients import normalize_path

logger = logging.getLogger("skpass.backup")

ARCHIVE_PREFIX = "credentials-"
ARCHIVE_SUFFIX = ".tar.gz"
CHECKSUMS_FILE = "checksums.txt"
HEALTHCHECK_TIMEOUT = 10
HEALTHCHECK_ATTEMPTS = 3


class SnapshotResult(BaseModel):
    """A published snapshot archive."""

    path: Path
    sha256: str
    size: int
    file_count: int
    created: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class SnapshotInfo(BaseModel):
    """An archive found on disk."""

    path: Path
    size: int
    modified: datetime
    sha256: Optional[str] = None


class CycleResult(BaseModel):
    """What one backup cycle did."""

    snapshot: SnapshotResult
    entry_count: int = 0
    pushed: Optional[str] = None
    pruned: list[Path] = Field(default_factory=list)
    healthcheck: Optional[bool] = None


def _sha256_file(filepath: Path) -> str:
    """Hex SHA-256 of a file, read in chunks."""
    h = hashlib.sha256()
    with open(filepath, "rb") as f:
        for chunk in iter(lambda: f.read(8192), b""):
            h.update(chunk)
    return h.hexdigest()


def _sidecar(archive: Path) -> Path:
    return archive.with_name(archive.name + ".sha256")


def _read_back(archive: Path) -> int:
    """Open ``archive`` and read every member to the end.

    Returns:
        Number of regular files in the archive.

    Raises:
        CorruptArchive: If the archive cannot be fully read.
    """
    files = 0
    try:
        with tarfile.open(archive, "r:gz") as tar:
            for member in tar:
                if not member.isfile():
                    continue
                f = tar.extractfile(member)
                if f is None:
                    raise CorruptArchive(f"Cannot read {member.name} in {archive.name}")
                while f.read(65536):
                    pass
                files += 1
    except (tarfile.TarError, EOFError, zlib.error, OSError) as exc:
        raise CorruptArchive(f"Snapshot {archive.name} failed read-back: {exc}") from exc
    return files


def snapshot(
    store_dir: Path,
    backup_dir: Path,
    subtree: Optional[str] = None,
    now: Optional[datetime] = None,
) -> SnapshotResult:
    """Archive the store (or one subtree of it) for today.

    A second run on the same day replaces that day's archive.

    Args:
        store_dir: Store root.
        backup_dir: Directory receiving archives.
        subtree: Logical path to restrict the archive to.
        now: Timestamp used for the archive name.

    Returns:
        SnapshotResult for the published archive.

    Raises:
        FileNotFoundError: If the store (or subtree) does not exist.
        CorruptArchive: If the written archive fails read-back.
    """
    source = store_dir
    arcname = "store"
    if subtree:
        subtree = normalize_path(subtree)
        source = store_dir / subtree
        arcname = f"store/{subtree}"
    if not source.is_dir():
        raise FileNotFoundError(f"Nothing to snapshot at {source}")

    stamp = (now or datetime.now(timezone.utc)).strftime("%Y-%m-%d")
    backup_dir.mkdir(parents=True, exist_ok=True)
    archive = backup_dir / f"{ARCHIVE_PREFIX}{stamp}{ARCHIVE_SUFFIX}"

    fd, tmp_name = tempfile.mkstemp(dir=backup_dir, prefix=f".{archive.name}.", suffix=".tmp")
    os.close(fd)
    tmp = Path(tmp_name)
    try:
        with tarfile.open(tmp, "w:gz") as tar:
            tar.add(source, arcname=arcname)
        file_count = _read_back(tmp)
        digest = _sha256_file(tmp)
        os.replace(tmp, archive)
    except BaseException:
        tmp.unlink(missing_ok=True)
        raise

    _sidecar(archive).write_text(f"{digest}  {archive.name}\n", encoding="utf-8")
    with (backup_dir / CHECKSUMS_FILE).open("a", encoding="utf-8") as f:
        f.write(f"{digest}  {archive.name}\n")

    result = SnapshotResult(
        path=archive, sha256=digest, size=archive.stat().st_size, file_count=file_count
    )
    logger.info(
        "Snapshot %s (%d files, %d bytes, sha256 %s...)",
        archive.name, file_count, result.size, digest[:16],
    )
    return result


def list_snapshots(backup_dir: Path) -> list[SnapshotInfo]:
    """Archives in ``backup_dir``, newest first."""
    if not backup_dir.is_dir():
        return []
    found = []
    for path in backup_dir.glob(f"{ARCHIVE_PREFIX}*{ARCHIVE_SUFFIX}"):
        stat = path.stat()
        sidecar = _sidecar(path)
        digest = None
        if sidecar.is_file():
            digest = sidecar.read_text(encoding="utf-8").split()[0]
        found.append(SnapshotInfo(
            path=path,
            size=stat.st_size,
            modified=datetime.fromtimestamp(stat.st_mtime, tz=timezone.utc),
            sha256=digest,
        ))
    found.sort(key=lambda s: (s.modified, s.path.name), reverse=True)
    return found


def verify_snapshot(archive: Path) -> bool:
    """Compare an archive's digest with its recorded checksum.

    The ``.sha256`` sidecar is preferred; the newest matching line of
    ``checksums.txt`` is the fallback.

    Raises:
        FileNotFoundError: If the archive does not exist.
        CorruptArchive: If no checksum was ever recorded for it.
    """
    if not archive.is_file():
        raise FileNotFoundError(f"Snapshot not found: {archive}")

    expected = None
    sidecar = _sidecar(archive)
    if sidecar.is_file():
        expected = sidecar.read_text(encoding="utf-8").split()[0]
    else:
        ledger = archive.parent / CHECKSUMS_FILE
        if ledger.is_file():
            for line in ledger.read_text(encoding="utf-8").splitlines():
                parts = line.split()
                if len(parts) == 2 and parts[1] == archive.name:
                    expected = parts[0]
    if expected is None:
        raise CorruptArchive(f"No recorded checksum for {archive.name}")

    actual = _sha256_file(archive)
    if actual != expected:
        logger.error("Checksum mismatch for %s", archive.name)
        return False
    return True


def prune(
    backup_dir: Path,
    max_age_days: int,
    now: Optional[datetime] = None,
) -> list[Path]:
    """Delete archives older than ``max_age_days`` by mtime.

    The newest archive is always kept, so pruning never empties the
    backup directory. Sidecars go with their archive; ``checksums.txt``
    is left as a history.

    Returns:
        The archives removed.
    """
    snapshots = list_snapshots(backup_dir)
    if not snapshots:
        return []

    cutoff = (now or datetime.now(timezone.utc)) - timedelta(days=max_age_days)
    removed: list[Path] = []
    for snap in snapshots[1:]:
        if snap.modified >= cutoff:
            continue
        snap.path.unlink(missing_ok=True)
        _sidecar(snap.path).unlink(missing_ok=True)
        removed.append(snap.path)
        logger.info("Pruned %s", snap.path.name)
    return removed


def ping_healthcheck(
    url: str,
    attempts: int = HEALTHCHECK_ATTEMPTS,
    timeout: int = HEALTHCHECK_TIMEOUT,
    backoff: float = 1.0,
) -> bool:
    """Fire-and-forget liveness ping. Never raises.

    Returns:
        True if the endpoint answered with a success status.
    """
    for attempt in range(1, attempts + 1):
        try:
            resp = requests.get(url, timeout=timeout)
            resp.raise_for_status()
            logger.debug("Health-check ping ok (%s)", resp.status_code)
            return True
        except requests.RequestException as exc:
            logger.warning("Health-check ping %d/%d failed: %s", attempt, attempts, exc)
            if attempt < attempts and backoff:
                time.sleep(backoff * attempt)
    return False


def run_cycle(config: SKPassConfig, push: bool = True) -> CycleResult:
    """Lock, snapshot, push, prune, ping. Safe to rerun.

    A push failure aborts the cycle before pruning and before the
    health-check ping, so a monitor notices the missed run.

    Raises:
        LockHeld: If another cycle (or writer) holds the store lock.
        DistributionError: If the push fails.
    """
    store_dir = config.store_path
    if not store_dir.is_dir():
        raise SKPassError(f"Store not found at {store_dir}; run 'skpass init' first")

    logger.info("Starting backup cycle for %s", store_dir)
    with StoreLock(config.lock_path, stale_after=config.lock_stale_seconds):
        suffix = create_backend(config.backend).suffix
        entry_count = sum(
            1 for p in store_dir.rglob(f"*{suffix}")
            if ".git" not in p.relative_to(store_dir).parts
        )
        snap = snapshot(store_dir, config.backup_path)
        result = CycleResult(snapshot=snap, entry_count=entry_count)

        if push:
            channel = GitChannel(
                store_dir,
                remote=config.remote_name,
                branch=config.branch,
                author_name=config.git_author_name,
                author_email=config.git_author_email,
            )
            if channel.is_repo() and channel.has_remote():
                stamp = datetime.now(timezone.utc).strftime("%Y%m%d")
                result.pushed = channel.push(f"Backup {stamp}")
            else:
                logger.info("Store has no git remote; skipping push")

        result.pruned = prune(config.backup_path, config.retention_days)

        if config.healthcheck_url:
            result.healthcheck = ping_healthcheck(config.healthcheck_url)

    logger.info(
        "Done. %d entries, SHA256: %s...", entry_count, snap.sha256[:16]
    )
    return result
