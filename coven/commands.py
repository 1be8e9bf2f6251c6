"""Non-worker subcommands: `init`, `status` and `gc`.

Each command takes the project root and an output stream and returns an exit status;
`coven.cli` wires them to argparse.
"""

from __future__ import annotations

import sys
from dataclasses import dataclass
from pathlib import Path
from typing import TextIO

from . import worker_state
from .config import AGENTS_DIR, CONFIG_PATH, workers_dir
from .errors import GitError
from .git_ops import Worktree, WorktreeManager

DISPATCH_TEMPLATE = """---
description: "Picks the next task for this worker"
args:
  - name: agent_catalog
    description: "Available agents and the transition syntax"
    required: true
  - name: worker_status
    description: "What the other workers are doing right now"
    required: true
---

You are the dispatch agent. Decide what this worker should work on next.

## Issues

Issues are Markdown files with YAML frontmatter (`priority`, `state`):
- `issues/` holds open work in states `new`, `approved`, `changes-requested` and `needs-replan`.
- `review/` holds plans waiting for a human (state `review`).

List both directories, then read the issues that look relevant.

| State | Route to |
|-------|----------|
| `new`, `changes-requested`, `needs-replan` | `plan` |
| `approved` | `implement` |
| `review` | nobody, a human owns it |

- Higher priority first: `P0` before `P1` before `P2`.
- At equal priority, prefer implementing approved work over planning new work.
- Never pick an issue another worker is already on, and avoid files they are likely touching.
- If nothing is actionable, sleep.

## Other Workers

{{worker_status}}

{{agent_catalog}}

Explain your choice in a sentence or two, then output your decision.
"""

PLAN_TEMPLATE = """---
description: "Writes an implementation plan for an issue"
args:
  - name: issue
    description: "Path to the issue file"
    required: true
title: "{{issue}}"
---

You are the plan agent. Write an implementation plan for `{{issue}}`.

1. Read the issue and explore as much of the codebase as the plan needs.
2. Add a `## Plan` section to the issue. Put open points in a `## Questions` section.
3. Set `state: review` in the frontmatter and move the file from `issues/` to `review/`.
4. Commit.

When revising (`changes-requested` or `needs-replan`), read the existing plan and the
feedback first and update the plan in place.

If the issue is too big for one implementation session, narrow it to the first piece and
file the rest as new issues in `issues/` with the same priority.
"""

IMPLEMENT_TEMPLATE = """---
description: "Implements the approved plan of an issue"
args:
  - name: issue
    description: "Path to the issue file"
    required: true
max_concurrency: 2
title: "{{issue}}"
---

You are the implement agent. Implement the plan in `{{issue}}`.

1. Read the issue and its plan.
2. Make the change, then run the tests and the linter and fix what you broke.
3. On success, delete the issue file and commit everything with a descriptive message.

If the plan does not work out, do not commit broken code. Set `state: needs-replan`, add an
`## Implementation Notes` section explaining what went wrong, and commit only the issue file.

File unrelated problems you notice as new issues (`state: new`, `priority: P2`) instead of
fixing them.
"""

AUDIT_TEMPLATE = """---
description: "Reviews the codebase and files issues for what it finds"
max_concurrency: 1
no_commit: sleep-if-clean
---

You are the audit agent. Review the codebase for bugs, missing tests, error-handling gaps
and code that does not follow the project's conventions.

Check `issues/` and `review/` first so you do not file duplicates. For each finding, create
`issues/<kebab-case-name>.md` with `priority` (P0 bugs, P1 quality, P2 nice-to-have) and
`state: new` in the frontmatter, and a specific description naming files and functions.
Commit the new issues. Do not fix anything yourself.
"""

CONFIG_TEMPLATE = """# Agent a worker runs when it starts and whenever it wakes up.
entry_agent = "dispatch"
"""


@dataclass(frozen=True)
class ScaffoldFile:
    path: Path
    content: str


def scaffold_files() -> list[ScaffoldFile]:
    return [
        ScaffoldFile(AGENTS_DIR / "dispatch.md", DISPATCH_TEMPLATE),
        ScaffoldFile(AGENTS_DIR / "plan.md", PLAN_TEMPLATE),
        ScaffoldFile(AGENTS_DIR / "implement.md", IMPLEMENT_TEMPLATE),
        ScaffoldFile(AGENTS_DIR / "audit.md", AUDIT_TEMPLATE),
        ScaffoldFile(CONFIG_PATH, CONFIG_TEMPLATE),
        ScaffoldFile(Path("issues") / ".gitkeep", ""),
        ScaffoldFile(Path("review") / ".gitkeep", ""),
    ]


def init(root: Path, *, out: TextIO | None = None) -> int:
    out = out or sys.stdout
    created: list[Path] = []
    skipped: list[Path] = []
    for f in scaffold_files():
        target = root / f.path
        if target.exists():
            skipped.append(f.path)
            continue
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(f.content, encoding="utf-8")
        created.append(f.path)

    if not created:
        print("Nothing to do — all files already exist.", file=out)
        return 0
    print("Created:", file=out)
    for p in created:
        print(f"  {p}", file=out)
    if skipped:
        print("\nSkipped (already exist):", file=out)
        for p in skipped:
            print(f"  {p}", file=out)
    print("\nCommit these files, then start workers with `coven worker`.", file=out)
    return 0


def status(root: Path, *, out: TextIO | None = None) -> int:
    out = out or sys.stdout
    manager = WorktreeManager(repo_path=root, worktree_base=root)
    states, warnings = worker_state.read_all(workers_dir(manager.git_common_dir()))
    for w in warnings:
        print(f"[coven] warning: {w}", file=sys.stderr)

    if not states:
        print("No active workers.", file=out)
        return 0
    print(f"{len(states)} active worker(s):\n", file=out)
    out.write(worker_state.format_workers(states, worker_state.StatusStyle.CLI))
    return 0


def gc(root: Path, *, out: TextIO | None = None) -> int:
    """Remove non-main worktrees that no live worker owns."""
    out = out or sys.stdout
    manager = WorktreeManager(repo_path=root, worktree_base=root)
    states, warnings = worker_state.read_all(workers_dir(manager.git_common_dir()))
    for w in warnings:
        print(f"[coven] warning: {w}", file=sys.stderr)
    live = {s.branch for s in states}

    orphaned = [wt for wt in manager.list_worktrees() if not wt.is_main and wt.branch not in live]
    if not orphaned:
        print("No orphaned worktrees.", file=out)
        return 0

    print(f"Removing {len(orphaned)} orphaned worktree(s):\n", file=out)
    removed = 0
    for entry in orphaned:
        label = entry.branch or "(detached)"
        try:
            if entry.branch is None:
                manager.remove(Worktree(branch="", path=entry.path), delete_branch=False)
            else:
                manager.remove(Worktree(branch=entry.branch, path=entry.path))
        except GitError as e:
            print(f"  {label} ({entry.path}) — failed: {e}", file=out)
            continue
        print(f"  {label} ({entry.path}) — removed", file=out)
        removed += 1

    if removed:
        print(f"\nRemoved {removed} worktree(s).", file=out)
    return 0 if removed == len(orphaned) else 1
