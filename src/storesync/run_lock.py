from __future__ import annotations

from collections.abc import Callable
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
import fcntl
import json
import logging
import os
from pathlib import Path
import secrets
import time
from typing import Iterator

from storesync.observability import log_event


LOGGER = logging.getLogger("storesync.run_lock")
DEFAULT_STALE_AFTER_SECONDS = 30 * 60


class RunLockBusy(RuntimeError):
    """Raised by ``run_lock`` when another run holds the lock."""


@dataclass(frozen=True)
class _LockOwner:
    pid: int | None
    started_at: str | None
    token: str | None


@contextmanager
def run_lock(
    lock_path: Path,
    *,
    stale_after_seconds: int = DEFAULT_STALE_AFTER_SECONDS,
) -> Iterator[RunLock]:
    lock = RunLock(lock_path, stale_after_seconds=stale_after_seconds)
    if not lock.acquire():
        raise RunLockBusy(f"Another storesync run holds {lock_path}")
    try:
        yield lock
    finally:
        lock.release()


class RunLock:
    """Cross-process exclusive lock materialized as a JSON file.

    Holders that crash leave the file behind; a lock whose file is older than
    ``stale_after_seconds`` is treated as abandoned and reclaimed.
    """

    def __init__(
        self,
        lock_path: Path,
        *,
        stale_after_seconds: int = DEFAULT_STALE_AFTER_SECONDS,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._lock_path = lock_path
        self._stale_after_seconds = stale_after_seconds
        self._clock = clock
        self._token: str | None = None

    @property
    def path(self) -> Path:
        return self._lock_path

    @property
    def held(self) -> bool:
        return self._token is not None

    def acquire(self) -> bool:
        self._lock_path.parent.mkdir(parents=True, exist_ok=True)
        self._token = None
        for _ in range(2):
            try:
                fd = os.open(self._lock_path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o644)
            except FileExistsError:
                if self._remove_if_stale():
                    continue
                owner = _read_lock_owner(self._lock_path)
                log_event(
                    LOGGER,
                    "run_lock_busy",
                    lock_path=str(self._lock_path),
                    owner_pid=owner.pid,
                    owner_started_at=owner.started_at,
                )
                return False

            token = secrets.token_hex(16)
            try:
                payload = {"pid": os.getpid(), "started_at": _utc_now_iso8601(), "token": token}
                os.write(fd, (json.dumps(payload, sort_keys=True) + "\n").encode("utf-8"))
                os.fsync(fd)
            except Exception:
                os.close(fd)
                try:
                    os.unlink(self._lock_path)
                except FileNotFoundError:
                    pass
                raise
            os.close(fd)
            self._token = token
            log_event(LOGGER, "run_lock_acquired", lock_path=str(self._lock_path))
            return True

        # Another process reclaimed the stale lock between our two attempts.
        return False

    def release(self) -> None:
        if self._token is None:
            return
        token = self._token
        self._token = None
        with self._guard():
            owner = _read_lock_owner(self._lock_path)
            if owner.pid != os.getpid() or owner.token != token:
                log_event(
                    LOGGER,
                    "run_lock_release_skipped",
                    lock_path=str(self._lock_path),
                    owner_pid=owner.pid,
                )
                return
            try:
                os.unlink(self._lock_path)
            except FileNotFoundError:
                return
        log_event(LOGGER, "run_lock_released", lock_path=str(self._lock_path))

    def __enter__(self) -> RunLock:
        return self

    def __exit__(self, *_exc_info: object) -> None:
        self.release()

    @contextmanager
    def _guard(self) -> Iterator[None]:
        # Every delete of the lock file happens while holding this flock.
        guard_path = self._lock_path.with_name(f"{self._lock_path.name}.guard")
        with open(guard_path, "a", encoding="utf-8") as guard:
            fcntl.flock(guard.fileno(), fcntl.LOCK_EX)
            yield

    def _remove_if_stale(self) -> bool:
        with self._guard():
            try:
                modified_at = self._lock_path.stat().st_mtime
            except FileNotFoundError:
                return True
            age_seconds = self._clock() - modified_at
            if age_seconds <= self._stale_after_seconds:
                return False
            try:
                os.unlink(self._lock_path)
            except FileNotFoundError:
                pass
        log_event(
            LOGGER,
            "run_lock_stale_removed",
            lock_path=str(self._lock_path),
            age_seconds=int(age_seconds),
        )
        return True


def _read_lock_owner(lock_path: Path) -> _LockOwner:
    try:
        payload = json.loads(lock_path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError):
        return _LockOwner(pid=None, started_at=None, token=None)
    if not isinstance(payload, dict):
        return _LockOwner(pid=None, started_at=None, token=None)
    raw_pid = payload.get("pid")
    raw_started_at = payload.get("started_at")
    raw_token = payload.get("token")
    return _LockOwner(
        pid=raw_pid if isinstance(raw_pid, int) and not isinstance(raw_pid, bool) else None,
        started_at=raw_started_at if isinstance(raw_started_at, str) else None,
        token=raw_token if isinstance(raw_token, str) else None,
    )


def _utc_now_iso8601() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ")
