'''Prompt and display text built by the worker loop.

Agent prompts themselves come from agent templates (`coven.agents`). This module builds the
text around them:

- The system prompt appended to every session, in this order:
  1) `.coven/system.md`, when the project has one;
  2) the transition protocol (`coven.transition.format_protocol_description`);
  3) a "## Worker Status" section listing peers, or "No other workers active.";
  4) "Main worktree branch: <trunk>".
- Engine-issued follow-up messages sent into a live session: asking it to commit leftover
  changes, and asking it to resolve a rebase conflict found while landing.
- Terminal titles (`cv <agent>: <title> — <branch>`), written with an OSC escape.
'''

from __future__ import annotations

import sys
from pathlib import Path
from typing import Iterable, Mapping, TextIO

from .agents import AgentDef
from .config import SYSTEM_DOC_PATH
from .worker_state import StatusStyle, WorkerState, format_workers


def load_system_doc(worktree_path: Path) -> str:
    path = worktree_path / SYSTEM_DOC_PATH
    try:
        return path.read_text(encoding="utf-8")
    except FileNotFoundError:
        return ""


def worker_status_section(states: Iterable[WorkerState], own_branch: str) -> str:
    others = [s for s in states if s.branch != own_branch]
    if not others:
        return "No other workers active."
    return "## Worker Status\n\n" + format_workers(others, StatusStyle.DISPATCH).rstrip("\n")


def build_system_prompt(
    *,
    system_doc: str,
    transition_prompt: str,
    status_section: str,
    trunk_branch: str,
) -> str:
    parts: list[str] = []
    if system_doc.strip():
        parts.append(system_doc.strip())
    parts.append(transition_prompt.rstrip("\n"))
    parts.append(status_section)
    parts.append(f"Main worktree branch: {trunk_branch}")
    return "\n\n".join(parts)


def format_args_display(args: Mapping[str, str]) -> str:
    return " ".join(sorted(f"{k}={v}" for k, v in args.items()))


def agent_title(agent: AgentDef, args: Mapping[str, str], *, branch: str) -> str:
    title = agent.render_title(args)
    if title:
        suffix = f"{agent.name}: {title}"
    else:
        display = format_args_display(args)
        suffix = f"{agent.name} {display}" if display else agent.name
    return f"cv {suffix} — {branch}"


def set_terminal_title(title: str, *, stream: TextIO | None = None) -> None:
    out = stream if stream is not None else sys.stderr
    if not out.isatty():
        return
    out.write(f"\x1b]0;{title}\x07")
    out.flush()


def commit_prompt(*, dirty: str | None) -> str:
    """Ask a session to commit; `dirty` names what is left in the worktree, None when it is clean."""
    if dirty is None:
        return (
            "You have not committed anything this session. If your work changed any files, "
            "commit them now with a descriptive message. If there was nothing to change, say so "
            "briefly and leave the worktree as it is.\n\n"
            "Then output your <next> decision again."
        )
    return (
        f"Your worktree still has {dirty}. Commit the work that belongs to this task with a "
        "descriptive message, and remove or `.gitignore` anything that should not be committed. "
        "The worktree must be clean when you finish.\n\n"
        "Then output your <next> decision again."
    )


def conflict_prompt(files: list[str], *, trunk: str) -> str:
    listing = "\n".join(f"- `{f}`" for f in files)
    return (
        f"Landing your commits onto `{trunk}` stopped with a rebase conflict. Another worker "
        f"changed the same lines. Conflicting files:\n\n{listing}\n\n"
        "Resolve each conflict so that both your change and theirs are preserved, remove all "
        "conflict markers, `git add` the files, then run `git rebase --continue` until the "
        "rebase finishes. Do not abort the rebase and do not create new unrelated commits.\n\n"
        "When the rebase is complete, output your <next> decision again."
    )
