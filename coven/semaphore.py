"""Counted file-lock semaphores for per-agent concurrency control.

For an agent with `max_concurrency: N`, the files `<agent>.0.lock` .. `<agent>.<N-1>.lock`
under `<git-common-dir>/coven/semaphores/` are the slots. A permit is an open file holding
an exclusive `flock` on one slot. The files never hold content.

`acquire()` waits without a timeout: a bounded wait would let a caller proceed while the
slot is still held by someone else. The OS drops the lock when a crashed holder's file
descriptor closes, so a dead worker never leaks a slot. Each call opens its own descriptor,
and `flock` locks are per open file description, so two permits in one process conflict
exactly like permits in two processes.
"""

from __future__ import annotations

import errno
import fcntl
import os
import threading
import time
from pathlib import Path
from types import TracebackType

from .errors import LockError, WorkerInterrupted


class Permit:
    def __init__(self, *, path: Path, fd: int) -> None:
        self.path = path
        self._fd: int | None = fd

    @property
    def held(self) -> bool:
        return self._fd is not None

    def release(self) -> None:
        if self._fd is None:
            return
        fd, self._fd = self._fd, None
        # Closing the descriptor drops the flock.
        os.close(fd)

    def __enter__(self) -> "Permit":
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.release()

    def __del__(self) -> None:
        self.release()


def slot_path(sem_dir: Path, name: str, slot: int) -> Path:
    return sem_dir / f"{name}.{slot}.lock"


def try_acquire(sem_dir: Path, name: str, limit: int) -> Permit | None:
    """Try every slot once; return a permit for the first free one, else None."""
    if limit < 1:
        raise ValueError(f"semaphore limit must be positive, got {limit}")
    try:
        sem_dir.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        raise LockError(f"failed to create {sem_dir}: {e}") from e

    for slot in range(limit):
        path = slot_path(sem_dir, name, slot)
        try:
            fd = os.open(str(path), os.O_RDWR | os.O_CREAT, 0o644)
        except OSError as e:
            raise LockError(f"failed to open {path}: {e}") from e
        try:
            fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
        except OSError as e:
            os.close(fd)
            if e.errno in (errno.EWOULDBLOCK, errno.EAGAIN):
                continue
            raise LockError(f"failed to lock {path}: {e}") from e
        return Permit(path=path, fd=fd)
    return None


def acquire(
    sem_dir: Path,
    name: str,
    limit: int,
    *,
    poll_interval: float = 0.1,
    interrupt: threading.Event | None = None,
) -> Permit:
    """Block until a slot for `name` is free and return its permit.

    Retries forever at `poll_interval`; raises `WorkerInterrupted` once `interrupt` is set.
    """
    while True:
        if interrupt is not None and interrupt.is_set():
            raise WorkerInterrupted(f"interrupted while waiting for a {name!r} slot")
        permit = try_acquire(sem_dir, name, limit)
        if permit is not None:
            return permit
        if interrupt is not None:
            interrupt.wait(poll_interval)
        else:
            time.sleep(poll_interval)
