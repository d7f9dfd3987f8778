"""Tests for the advisory store lock."""

from __future__ import annotations

import os
import time
from pathlib import Path

import pytest

from skpass.errors import LockHeld
from skpass.lock import StoreLock


def test_acquire_and_release(tmp_path: Path) -> None:
    lock = StoreLock(tmp_path / "skpass.lock")
    lock.acquire()
    assert lock.held
    assert lock.path.exists()
    assert lock.holder().startswith(f"{os.getpid()}@")

    lock.release()
    assert not lock.held
    assert not lock.path.exists()


def test_second_holder_refused(tmp_path: Path) -> None:
    path = tmp_path / "skpass.lock"
    with StoreLock(path):
        with pytest.raises(LockHeld, match="locked by"):
            StoreLock(path).acquire()
    assert not path.exists()


def test_stale_lock_reclaimed(tmp_path: Path) -> None:
    path = tmp_path / "skpass.lock"
    path.write_text('{"pid": 1, "host": "elsewhere"}')
    old = time.time() - 7200
    os.utime(path, (old, old))

    with StoreLock(path, stale_after=3600) as lock:
        assert lock.held
        assert lock.holder() != "1@elsewhere"


def test_fresh_foreign_lock_survives(tmp_path: Path) -> None:
    path = tmp_path / "skpass.lock"
    path.write_text('{"pid": 1, "host": "elsewhere"}')

    with pytest.raises(LockHeld, match="1@elsewhere"):
        StoreLock(path).acquire()
    assert path.exists()


def test_release_without_acquire_keeps_file(tmp_path: Path) -> None:
    path = tmp_path / "skpass.lock"
    path.write_text("{}")
    StoreLock(path).release()
    assert path.exists()


def test_age(tmp_path: Path) -> None:
    lock = StoreLock(tmp_path / "skpass.lock")
    assert lock.age() is None
    with lock:
        assert lock.age() is not None and lock.age() < 60
