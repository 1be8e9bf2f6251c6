"""coven.cli

Command-line entrypoint for coven.

Entry points
- `coven.cli:main` (the `coven` console script)
- `python -m coven ...` (delegates to this module)

Subcommands
- `coven worker [--branch NAME] [--worktree-base DIR] [-- CLAUDE_ARGS...]`
  Spawns a worktree at `<worktree-base>/<project>/<branch>` (random `adjective-noun-N`
  branch unless `--branch` is given), registers the worker and runs the worker loop until
  interrupted. Everything after `--` is passed to every `claude` session, after the agent's
  own `claude_args`. `--permission-mode acceptEdits` is added unless a permission mode is
  passed explicitly.
- `coven status`: lists live workers and what they are running.
- `coven gc`: removes worktrees left behind by workers that are no longer alive.
- `coven init`: scaffolds `.coven/` (default agents and config), `issues/` and `review/`.

All commands operate on the repository containing the current directory.

Environment
- `COVEN_WORKTREE_BASE`: default for `--worktree-base` (otherwise `~/worktrees`).
- `COVEN_CLAUDE`: the session executable (default `claude`).

Interrupts
The first Ctrl-C (or SIGTERM) asks the worker to stop: the running session is terminated,
the worker deregisters and its worktree is removed. A second Ctrl-C raises
`KeyboardInterrupt` immediately.
"""

from __future__ import annotations

import argparse
import signal
import sys
import threading
from pathlib import Path
from types import FrameType

from . import commands
from .claude_cli import ClaudeSessionRunner
from .config import WorkerConfig, default_worktree_base
from .errors import CovenError, WorkerInterrupted
from .worker import Worker


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="coven", description="Git-coordinated pool of coding-agent workers.")
    sub = p.add_subparsers(dest="command", required=True)

    w = sub.add_parser("worker", help="Start a worker in a fresh worktree.")
    w.add_argument(
        "--branch",
        default=None,
        help="Branch name for the worker's worktree (default: random adjective-noun-N).",
    )
    w.add_argument(
        "--worktree-base",
        default=None,
        help="Directory worktrees are created under (default: $COVEN_WORKTREE_BASE or ~/worktrees).",
    )

    sub.add_parser("status", help="Show live workers.")
    sub.add_parser("gc", help="Remove worktrees no live worker owns.")
    sub.add_parser("init", help="Scaffold .coven/ with default agents and config.")
    return p


def _split_passthrough(argv: list[str]) -> tuple[list[str], list[str]]:
    if "--" not in argv:
        return argv, []
    idx = argv.index("--")
    return argv[:idx], argv[idx + 1 :]


def _install_interrupt_handlers(event: threading.Event) -> dict[int, object]:
    def handler(signum: int, frame: FrameType | None) -> None:
        if event.is_set():
            raise KeyboardInterrupt
        print("[coven] interrupt received; shutting down (Ctrl-C again to force)", file=sys.stderr)
        event.set()

    previous: dict[int, object] = {}
    for sig in (signal.SIGINT, signal.SIGTERM):
        previous[sig] = signal.signal(sig, handler)
    return previous


def _run_worker(args: argparse.Namespace, *, root: Path, passthrough: list[str]) -> int:
    worktree_base = Path(args.worktree_base).expanduser() if args.worktree_base else default_worktree_base()
    cfg = WorkerConfig(
        repo_path=root,
        worktree_base=worktree_base.resolve(),
        session_runner=ClaudeSessionRunner(),
        branch=args.branch,
        extra_args=passthrough,
    )
    worker = Worker(cfg)

    previous = _install_interrupt_handlers(cfg.interrupt)
    try:
        worker.run()
    finally:
        for sig, h in previous.items():
            signal.signal(sig, h)  # type: ignore[arg-type]
    return 0


def main(argv: list[str] | None = None) -> int:
    raw_argv = list(sys.argv[1:] if argv is None else argv)
    raw_argv, passthrough = _split_passthrough(raw_argv)
    parser = build_parser()
    args = parser.parse_args(raw_argv)
    if passthrough and args.command != "worker":
        parser.error(f"arguments after `--` are only accepted by `worker`: {' '.join(passthrough)}")

    root = Path.cwd().resolve()
    try:
        if args.command == "worker":
            return _run_worker(args, root=root, passthrough=passthrough)
        if args.command == "status":
            return commands.status(root)
        if args.command == "gc":
            return commands.gc(root)
        if args.command == "init":
            return commands.init(root)
    except WorkerInterrupted as e:
        print(f"[coven] {e}", file=sys.stderr)
        return 130
    except CovenError as e:
        print(f"[coven] error: {e}", file=sys.stderr)
        return 1
    parser.error(f"unknown command: {args.command}")
    return 2
