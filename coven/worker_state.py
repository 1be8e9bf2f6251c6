"""Worker state registry.

One JSON record per live worker at `<git-common-dir>/coven/workers/<branch>.json`:

    {"pid": 4242, "branch": "swift-fox-12", "agent": "implement", "args": {"issue": "issues/7.md"}}

`agent` is null while the worker is idle (starting up or sleeping). Records are keyed by
branch, never by pid: several logical workers may share one process (tests run them as
threads), and a branch name is unique by construction.

Writes go to a temporary file in the same directory followed by `os.replace`, so a reader
sees either the old record or the new one. Readers clean up after dead workers: a record
whose pid is gone is removed silently, and a record that cannot be parsed is removed with a
warning returned to the caller.
"""

from __future__ import annotations

import json
import os
import tempfile
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Iterable, Mapping
from urllib.parse import quote

from .errors import CorruptState

_TMP_SUFFIX = ".tmp"


@dataclass(frozen=True)
class WorkerState:
    pid: int
    branch: str
    agent: str | None = None
    args: dict[str, str] = field(default_factory=dict)

    def to_json(self) -> str:
        return json.dumps({"pid": self.pid, "branch": self.branch, "agent": self.agent, "args": self.args})


class StatusStyle(str, Enum):
    CLI = "cli"
    DISPATCH = "dispatch"


def state_path(workers_dir: Path, branch: str) -> Path:
    # Branch names may contain `/`; keep one flat file per branch.
    return workers_dir / f"{quote(branch, safe='')}.json"


def register(workers_dir: Path, branch: str, *, pid: int | None = None) -> None:
    write_state(workers_dir, WorkerState(pid=os.getpid() if pid is None else pid, branch=branch))


def update(
    workers_dir: Path,
    branch: str,
    agent: str | None,
    args: Mapping[str, str],
    *,
    pid: int | None = None,
) -> None:
    write_state(
        workers_dir,
        WorkerState(
            pid=os.getpid() if pid is None else pid,
            branch=branch,
            agent=agent,
            args={str(k): str(v) for k, v in args.items()},
        ),
    )


def deregister(workers_dir: Path, branch: str) -> None:
    state_path(workers_dir, branch).unlink(missing_ok=True)


def write_state(workers_dir: Path, state: WorkerState) -> None:
    workers_dir.mkdir(parents=True, exist_ok=True)
    path = state_path(workers_dir, state.branch)
    fd, tmp_name = tempfile.mkstemp(prefix=path.name + ".", suffix=_TMP_SUFFIX, dir=workers_dir)
    tmp_path = Path(tmp_name)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(state.to_json())
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_path, path)
    except BaseException:
        tmp_path.unlink(missing_ok=True)
        raise


def parse_state(path: Path, text: str) -> WorkerState:
    try:
        data = json.loads(text)
    except json.JSONDecodeError as e:
        raise CorruptState(path, f"invalid JSON: {e}") from e
    if not isinstance(data, dict):
        raise CorruptState(path, "record must be a JSON object")

    pid = data.get("pid")
    branch = data.get("branch")
    agent = data.get("agent")
    args = data.get("args", {})
    if isinstance(pid, bool) or not isinstance(pid, int) or pid <= 0:
        raise CorruptState(path, f"invalid pid: {pid!r}")
    if not isinstance(branch, str) or not branch:
        raise CorruptState(path, f"invalid branch: {branch!r}")
    if agent is not None and not isinstance(agent, str):
        raise CorruptState(path, f"invalid agent: {agent!r}")
    if not isinstance(args, dict) or any(not isinstance(v, str) for v in args.values()):
        raise CorruptState(path, "args must be an object of strings")
    return WorkerState(pid=pid, branch=branch, agent=agent, args=dict(args))


def is_pid_alive(pid: int) -> bool:
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        # Exists, but owned by another user.
        return True
    return True


def read_all(workers_dir: Path) -> tuple[list[WorkerState], list[str]]:
    """Return (live worker records sorted by branch, warnings about corrupt records)."""
    if not workers_dir.is_dir():
        return [], []

    states: list[WorkerState] = []
    warnings: list[str] = []
    for path in sorted(workers_dir.glob("*.json")):
        try:
            text = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            # Deregistered between listing and reading.
            continue
        try:
            state = parse_state(path, text)
        except CorruptState as e:
            path.unlink(missing_ok=True)
            warnings.append(f"{e}; removed")
            continue

        if is_pid_alive(state.pid):
            states.append(state)
        else:
            path.unlink(missing_ok=True)

    states.sort(key=lambda s: s.branch)
    return states, warnings


def format_args(args: Mapping[str, str]) -> str:
    return ", ".join(sorted(f"{k}={v}" for k, v in args.items()))


def format_workers(states: Iterable[WorkerState], style: StatusStyle) -> str:
    if style is StatusStyle.CLI:
        line_prefix, separator, agent_prefix = "  ", " — ", ""
    else:
        line_prefix, separator, agent_prefix = "- ", ": ", "running "

    lines: list[str] = []
    for s in states:
        head = f"{line_prefix}{s.branch} (PID {s.pid}){separator}"
        if s.agent is None:
            lines.append(f"{head}idle")
        elif s.args:
            lines.append(f"{head}{agent_prefix}{s.agent} ({format_args(s.args)})")
        else:
            lines.append(f"{head}{agent_prefix}{s.agent}")
    return "".join(line + "\n" for line in lines)


def format_status(states: Iterable[WorkerState], own_branch: str) -> str:
    """Summarize every worker except `own_branch`, for the entry agent's prompt."""
    others = [s for s in states if s.branch != own_branch]
    if not others:
        return "No other workers active."
    return format_workers(others, StatusStyle.DISPATCH)
