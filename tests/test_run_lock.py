from __future__ import annotations

import json
import os
from pathlib import Path
import time

import pytest

from storesync import run_lock as run_lock_module
from storesync.run_lock import RunLock, RunLockBusy, run_lock


def _lock_path(tmp_path: Path) -> Path:
    return tmp_path / "state" / "com.example.app--acme-ios-app.lock"


def _age(path: Path, seconds: float) -> None:
    past = time.time() - seconds
    os.utime(path, (past, past))


def test_acquire_writes_owner_record_and_release_removes_it(tmp_path: Path) -> None:
    lock = RunLock(_lock_path(tmp_path))

    assert lock.acquire() is True
    assert lock.held is True
    payload = json.loads(_lock_path(tmp_path).read_text(encoding="utf-8"))
    assert payload["pid"] == os.getpid()
    assert isinstance(payload["started_at"], str)
    assert len(payload["token"]) == 32

    lock.release()
    assert lock.held is False
    assert not _lock_path(tmp_path).exists()


def test_second_acquire_while_lock_is_fresh_returns_false(tmp_path: Path) -> None:
    first = RunLock(_lock_path(tmp_path))
    second = RunLock(_lock_path(tmp_path))

    assert first.acquire() is True
    assert second.acquire() is False
    assert second.held is False

    second.release()
    assert _lock_path(tmp_path).exists()
    first.release()
    assert not _lock_path(tmp_path).exists()


def test_stale_lock_is_reclaimed(tmp_path: Path) -> None:
    path = _lock_path(tmp_path)
    path.parent.mkdir(parents=True)
    path.write_text(json.dumps({"pid": 424242, "token": "old"}), encoding="utf-8")
    _age(path, 31 * 60)

    lock = RunLock(path)

    assert lock.acquire() is True
    payload = json.loads(path.read_text(encoding="utf-8"))
    assert payload["pid"] == os.getpid()
    assert payload["token"] != "old"
    lock.release()


def test_lock_younger_than_threshold_is_kept(tmp_path: Path) -> None:
    path = _lock_path(tmp_path)
    path.parent.mkdir(parents=True)
    path.write_text(json.dumps({"pid": 424242, "token": "old"}), encoding="utf-8")
    _age(path, 29 * 60)

    assert RunLock(path).acquire() is False
    assert json.loads(path.read_text(encoding="utf-8"))["token"] == "old"


def test_release_does_not_delete_lock_owned_by_someone_else(tmp_path: Path) -> None:
    path = _lock_path(tmp_path)
    lock = RunLock(path)
    assert lock.acquire() is True

    # Another process reclaimed the lock as stale and now owns it.
    path.write_text(json.dumps({"pid": 424242, "token": "theirs"}), encoding="utf-8")
    lock.release()

    assert path.exists()
    assert json.loads(path.read_text(encoding="utf-8"))["token"] == "theirs"


def test_acquire_cleans_up_after_write_failure(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    def failing_write(fd: int, data: bytes) -> int:
        _ = fd, data
        raise OSError("disk full")

    monkeypatch.setattr(run_lock_module.os, "write", failing_write)
    lock = RunLock(_lock_path(tmp_path))

    with pytest.raises(OSError, match="disk full"):
        lock.acquire()
    assert not _lock_path(tmp_path).exists()
    assert lock.held is False


def test_run_lock_context_manager(tmp_path: Path) -> None:
    path = _lock_path(tmp_path)

    with run_lock(path) as lock:
        assert lock.held is True
        with pytest.raises(RunLockBusy):
            with run_lock(path):
                pass
        assert path.exists()

    assert not path.exists()


def test_run_lock_releases_on_system_exit(tmp_path: Path) -> None:
    path = _lock_path(tmp_path)

    with pytest.raises(SystemExit):
        with run_lock(path):
            raise SystemExit(143)

    assert not path.exists()


def test_stale_lock_reclaimed_by_another_run_first_is_left_alone(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    path = _lock_path(tmp_path)
    path.parent.mkdir(parents=True)
    path.write_text(json.dumps({"pid": 424242, "token": "old"}), encoding="utf-8")
    _age(path, 31 * 60)

    first = RunLock(path)
    second = RunLock(path)
    real_flock = run_lock_module.fcntl.flock
    interleaved = {"done": False}

    def flock(fd: int, operation: int) -> None:
        # The other run wins the reclaim while this one waits for the guard.
        if not interleaved["done"]:
            interleaved["done"] = True
            assert first.acquire() is True
        real_flock(fd, operation)

    monkeypatch.setattr(run_lock_module.fcntl, "flock", flock)

    assert second.acquire() is False
    assert first.held is True
    assert path.exists()
    assert json.loads(path.read_text(encoding="utf-8"))["token"] != "old"

    second.release()
    first.release()
    assert not path.exists()


def test_release_and_reclaim_share_a_guard_file(tmp_path: Path) -> None:
    path = _lock_path(tmp_path)
    lock = RunLock(path)

    assert lock.acquire() is True
    lock.release()

    assert path.with_name(f"{path.name}.guard").exists()
