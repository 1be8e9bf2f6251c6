"""coven: a git-coordinated pool of autonomous coding-agent workers.

Each worker is an independent process (`coven worker`) that owns a git worktree on its own
branch and runs agent sessions through the Claude Code CLI. Agents are Markdown prompt
templates under `.coven/agents/`; every session ends with a `<next>` block that either hands
off to another agent or puts the worker to sleep. Workers coordinate only through the shared
repository: commits land on the trunk branch by rebase and fast-forward, per-agent
concurrency is bounded with file locks, and peers see each other through small status
records. There is no central server.

What coven provides
- The worker loop (`coven.worker.Worker`): sync to trunk, chain agents, land commits,
  sleep until trunk moves.
- Worktree management (`coven.git_ops.WorktreeManager`): spawn/remove worktrees, sync,
  land with explicit conflict reporting.
- Shared state under `<git-common-dir>/coven/`: worker records (`coven.worker_state`) and
  semaphore lock files (`coven.semaphore`).
- CLI commands (`coven.cli:main`, `python -m coven`): `worker`, `status`, `gc`, `init`.

What coven does not do
- Decide what to work on. Scheduling policy lives in the agent prompts (`dispatch` in the
  default scaffold); the engine renders prompts and routes transitions.
- Force anything onto trunk. Landing fails closed on a dirty worktree, a detached HEAD or a
  diverged trunk.

Key exports from this module
- `__version__`: the package version string. (`__all__` is intentionally limited to this.)
"""

from __future__ import annotations

__all__ = ["__version__"]

__version__ = "0.1.0"
