"""Wake sleeping workers when the trunk ref moves.

`watch()` starts a daemon thread that polls the files git uses to store the trunk ref (the
loose ref `refs/heads/<trunk>` under the common git dir and `packed-refs`) and puts a
notification on a queue whenever their stat signature changes. `wait_for_change()` blocks on
that queue and re-reads the trunk tip for every notification; it only returns `CHANGED`
when the tip differs from the caller's baseline.

Call order matters. Start the watcher first, then read the baseline:

    handle, _ = watch(manager)
    baseline = manager.trunk_head()
    outcome = wait_for_change(handle, baseline, interrupt=stop)

A commit landing between the two calls is then either part of the baseline or produces a
notification. A notification for a commit already in the baseline is spurious and is
absorbed by the comparison against the baseline.
"""

from __future__ import annotations

import os
import queue
import threading
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Callable

from .git_ops import WorktreeManager

_Signature = tuple[tuple[int, int, int] | None, ...]


class WaitOutcome(str, Enum):
    CHANGED = "changed"
    INTERRUPTED = "interrupted"


@dataclass
class WatchHandle:
    paths: list[Path]
    read_head: Callable[[], str]
    notifications: "queue.Queue[None]"
    poll_interval: float
    _stop: threading.Event = field(default_factory=threading.Event)
    _thread: threading.Thread | None = None

    def stop(self) -> None:
        self._stop.set()
        if self._thread is not None and self._thread is not threading.current_thread():
            self._thread.join(timeout=self.poll_interval * 4)

    def __enter__(self) -> "WatchHandle":
        return self

    def __exit__(self, *exc: object) -> None:
        self.stop()


def _stat_signature(paths: list[Path]) -> _Signature:
    sig: list[tuple[int, int, int] | None] = []
    for p in paths:
        try:
            st = os.stat(p)
        except FileNotFoundError:
            sig.append(None)
            continue
        sig.append((st.st_ino, st.st_mtime_ns, st.st_size))
    return tuple(sig)


def _poll(handle: WatchHandle, last: _Signature) -> None:
    while not handle._stop.wait(handle.poll_interval):
        current = _stat_signature(handle.paths)
        if current != last:
            last = current
            handle.notifications.put(None)


def trunk_ref_paths(manager: WorktreeManager) -> list[Path]:
    common = manager.git_common_dir()
    return [common / "refs" / "heads" / manager.trunk_branch(), common / "packed-refs"]


def watch(manager: WorktreeManager, *, poll_interval: float = 0.25) -> tuple[WatchHandle, "queue.Queue[None]"]:
    """Start watching the trunk ref. Returns the handle and its notification queue."""
    notifications: "queue.Queue[None]" = queue.Queue()
    handle = WatchHandle(
        paths=trunk_ref_paths(manager),
        read_head=manager.trunk_head,
        notifications=notifications,
        poll_interval=poll_interval,
    )
    # Snapshot before returning: any change after watch() must notify.
    initial = _stat_signature(handle.paths)
    thread = threading.Thread(target=_poll, args=(handle, initial), name="coven-ref-watcher", daemon=True)
    handle._thread = thread
    thread.start()
    return handle, notifications


def wait_for_change(
    handle: WatchHandle,
    baseline: str,
    *,
    interrupt: threading.Event,
    check_interval: float = 0.1,
) -> WaitOutcome:
    """Block until the trunk tip differs from `baseline`, or `interrupt` is set."""
    while True:
        if interrupt.is_set():
            return WaitOutcome.INTERRUPTED
        try:
            handle.notifications.get(timeout=check_interval)
        except queue.Empty:
            continue
        if interrupt.is_set():
            return WaitOutcome.INTERRUPTED
        if handle.read_head() != baseline:
            return WaitOutcome.CHANGED
