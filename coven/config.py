"""Project configuration and resolved worker settings.

Two layers:

- `ProjectConfig` is read from `.coven/config.toml` inside a worktree. It is checked in, so
  every worker sees the same settings after syncing to trunk. Today it holds a single key,
  `entry_agent`, naming the agent a worker runs when it starts or wakes up.
- `WorkerConfig` holds the runtime settings of one worker process (paths from the CLI, the
  session runner, the interrupt event and poll intervals). It is built by `coven.cli` and
  passed to `coven.worker.Worker`.

Shared cross-worker state does not live in any worktree (worktrees come and go). It lives
under the repository's common git directory, `<git-common-dir>/coven/`, which every
worktree resolves to the same place.
"""

from __future__ import annotations

import os
import threading
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING

from .errors import CovenError

if TYPE_CHECKING:
    from .claude_cli import SessionRunner

CONFIG_PATH = Path(".coven") / "config.toml"
AGENTS_DIR = Path(".coven") / "agents"
SYSTEM_DOC_PATH = Path(".coven") / "system.md"
DEFAULT_ENTRY_AGENT = "dispatch"


@dataclass(frozen=True)
class ProjectConfig:
    entry_agent: str = DEFAULT_ENTRY_AGENT


def load_project_config(worktree_path: Path) -> ProjectConfig:
    """Load `.coven/config.toml` under `worktree_path`, falling back to defaults if missing."""
    path = worktree_path / CONFIG_PATH
    if not path.exists():
        return ProjectConfig()
    try:
        data = tomllib.loads(path.read_text(encoding="utf-8"))
    except tomllib.TOMLDecodeError as e:
        raise CovenError(f"invalid {CONFIG_PATH}: {e}") from e

    entry = data.get("entry_agent", DEFAULT_ENTRY_AGENT)
    if not isinstance(entry, str) or not entry.strip():
        raise CovenError(f"{CONFIG_PATH}: entry_agent must be a non-empty string")
    return ProjectConfig(entry_agent=entry.strip())


def default_worktree_base() -> Path:
    env = os.environ.get("COVEN_WORKTREE_BASE")
    if env:
        return Path(env).expanduser()
    return Path.home() / "worktrees"


def coven_dir(git_common_dir: Path) -> Path:
    return git_common_dir / "coven"


def workers_dir(git_common_dir: Path) -> Path:
    return coven_dir(git_common_dir) / "workers"


def semaphores_dir(git_common_dir: Path) -> Path:
    return coven_dir(git_common_dir) / "semaphores"


@dataclass
class WorkerConfig:
    repo_path: Path
    worktree_base: Path
    session_runner: "SessionRunner"
    branch: str | None = None
    extra_args: list[str] = field(default_factory=list)
    interrupt: threading.Event = field(default_factory=threading.Event)
    semaphore_poll_interval: float = 0.1
    watch_poll_interval: float = 0.25
    max_land_attempts: int = 3

    def __post_init__(self) -> None:
        # Unattended workers default to acceptEdits unless the caller picked a mode.
        if "--permission-mode" not in self.extra_args:
            self.extra_args = [*self.extra_args, "--permission-mode", "acceptEdits"]
