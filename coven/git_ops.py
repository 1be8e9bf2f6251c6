"""Git operations and worktree management for coven.

Every worker owns one git worktree bound 1:1 to a branch. `WorktreeManager` creates and
removes those worktrees and moves commits between them and the trunk branch.

The core data model is:

- `Worktree`: an immutable `(branch, path)` pair describing where a worker's branch is
  checked out on disk.
- `WorktreeEntry`: one entry of `git worktree list --porcelain`.
- `Landed` / `Conflict` / `Failure`: the outcome of `land()`.

Trunk
Trunk is whatever branch is checked out in the main worktree, i.e. the first entry in
`git worktree list --porcelain`. Workers never commit on trunk directly; they only move it
forward with `land()`.

WorktreeManager API (public methods)
Most methods map to one or two git commands, so callers can reason about side effects.

- `spawn(branch=None) -> Worktree`
  Creates `<base>/<project>/<branch>` on a new branch from the current trunk tip and copies
  gitignored files (build caches, `.env`, ...) over from the main worktree. Without a
  branch hint a random `adjective-noun-N` name is picked.
- `sync_to_trunk(worktree)`
  Rebases the worktree branch onto trunk. Refuses a dirty worktree or one with a rebase
  already in progress; a failed rebase is aborted before the `GitError` is raised.
- `land(worktree) -> LandResult`
  Rebases onto trunk, then fast-forwards trunk in the main worktree. If trunk moved in
  between, the rebase and fast-forward are repeated (up to `FF_ATTEMPTS` times). Never
  raises for conflicts or git failures inside that sequence:
  - `Landed` when trunk now contains the branch tip (or there was nothing to land).
  - `Conflict(files)` when the rebase stopped on unmerged paths. The rebase is left in
    progress so the caller can resolve and `continue_rebase()`.
  - `Failure(message)` for anything else, including a failure to list the conflicting
    paths after a failed rebase. A failed rebase is aborted before `Failure` is returned,
    and is never reported as `Landed` or as a conflict with no files.
- `is_clean(worktree)`, `dirty_state(worktree)`
  Staged, unstaged and untracked (non-ignored) changes.
- `remove(worktree, force=False, delete_branch=True)`
  `git worktree remove` followed by a best-effort branch delete.

Side effects and safety notes
- Git invocations go through `_git(...)`, which raises `GitError` carrying the argv, exit
  code and stderr. `_git_ok(...)` is used for queries where a non-zero exit is an answer
  (`diff --quiet`, `show-ref --verify`).
- `reset_to_trunk()` and `clean()` discard work; they are only used when recovering a
  worktree whose land attempts have been exhausted.
"""

from __future__ import annotations

import os
import shutil
import subprocess
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Union

from .errors import GitError
from .phrases import generate_unique_branch_name

# Fast-forward retries when another worker lands between our rebase and the merge.
FF_ATTEMPTS = 3


@dataclass(frozen=True)
class Worktree:
    branch: str
    path: Path


@dataclass(frozen=True)
class WorktreeEntry:
    path: Path
    branch: str | None
    is_main: bool


@dataclass(frozen=True)
class Landed:
    branch: str
    trunk: str


@dataclass(frozen=True)
class Conflict:
    files: list[str]


@dataclass(frozen=True)
class Failure:
    message: str


LandResult = Union[Landed, Conflict, Failure]


class DirtyState(str, Enum):
    CLEAN = "clean"
    UNCOMMITTED_CHANGES = "uncommitted changes"
    UNTRACKED_FILES = "untracked files"


class WorktreeManager:
    def __init__(self, *, repo_path: Path, worktree_base: Path) -> None:
        self.repo_path = repo_path
        self.worktree_base = worktree_base

    # -- queries -----------------------------------------------------------------

    def list_worktrees(self, *, cwd: Path | None = None) -> list[WorktreeEntry]:
        out = self._git(["worktree", "list", "--porcelain"], cwd=cwd or self.repo_path)
        entries: list[WorktreeEntry] = []
        current_path: Path | None = None
        branch: str | None = None

        def flush() -> None:
            nonlocal current_path, branch
            if current_path is not None:
                entries.append(WorktreeEntry(path=current_path, branch=branch, is_main=not entries))
            current_path = None
            branch = None

        for line in out.splitlines():
            if not line.strip():
                flush()
            elif line.startswith("worktree "):
                flush()
                current_path = Path(line.split(" ", 1)[1])
            elif line.startswith("branch refs/heads/"):
                branch = line.removeprefix("branch refs/heads/").strip()

        flush()
        return entries

    def main_worktree(self, *, cwd: Path | None = None) -> WorktreeEntry:
        entries = self.list_worktrees(cwd=cwd)
        if not entries or entries[0].branch is None:
            raise GitError("could not determine the main worktree and its branch")
        return entries[0]

    def trunk_branch(self, *, cwd: Path | None = None) -> str:
        branch = self.main_worktree(cwd=cwd).branch
        if branch is None:
            raise GitError("main worktree has no branch checked out")
        return branch

    def trunk_head(self) -> str:
        return self._git(["rev-parse", f"refs/heads/{self.trunk_branch()}"], cwd=self.repo_path).strip()

    def git_common_dir(self) -> Path:
        raw = Path(self._git(["rev-parse", "--git-common-dir"], cwd=self.repo_path).strip())
        return raw if raw.is_absolute() else (self.repo_path / raw).resolve()

    def branch_exists(self, branch: str) -> bool:
        return self._git_ok(["show-ref", "--verify", "--quiet", f"refs/heads/{branch}"], cwd=self.repo_path)

    def current_branch(self, *, cwd: Path) -> str | None:
        out = self._git(["rev-parse", "--abbrev-ref", "HEAD"], cwd=cwd).strip()
        return None if out == "HEAD" else out

    def head(self, worktree: Worktree) -> str:
        return self._git(["rev-parse", "HEAD"], cwd=worktree.path).strip()

    def has_unique_commits(self, worktree: Worktree) -> bool:
        trunk = self.trunk_branch(cwd=worktree.path)
        out = self._git(["rev-list", "--count", f"{trunk}..HEAD"], cwd=worktree.path).strip()
        try:
            return int(out) > 0
        except ValueError as e:
            raise GitError(f"unexpected rev-list count output: {out!r}") from e

    def dirty_state(self, worktree: Worktree) -> DirtyState:
        # Uncommitted changes take priority over untracked files.
        if not self._git_ok(["diff", "--quiet"], cwd=worktree.path):
            return DirtyState.UNCOMMITTED_CHANGES
        if not self._git_ok(["diff", "--cached", "--quiet"], cwd=worktree.path):
            return DirtyState.UNCOMMITTED_CHANGES
        untracked = self._git(["ls-files", "--others", "--exclude-standard"], cwd=worktree.path)
        if untracked.strip():
            return DirtyState.UNTRACKED_FILES
        return DirtyState.CLEAN

    def is_clean(self, worktree: Worktree) -> bool:
        return self.dirty_state(worktree) is DirtyState.CLEAN

    def is_rebase_in_progress(self, worktree: Worktree) -> bool:
        git_dir = Path(self._git(["rev-parse", "--git-dir"], cwd=worktree.path).strip())
        if not git_dir.is_absolute():
            git_dir = worktree.path / git_dir
        return (git_dir / "rebase-merge").exists() or (git_dir / "rebase-apply").exists()

    # -- lifecycle ---------------------------------------------------------------

    def spawn(self, branch: str | None = None) -> Worktree:
        if not self._git_ok(["rev-parse", "--git-dir"], cwd=self.repo_path):
            raise GitError(f"not a git repository: {self.repo_path}")

        if branch is None:
            branch = generate_unique_branch_name(taken=self.branch_exists)
        elif self.branch_exists(branch):
            raise GitError(f"branch {branch!r} already exists")

        main = self.main_worktree()
        project_dir = self.worktree_base / main.path.name
        project_dir.mkdir(parents=True, exist_ok=True)
        wt_path = project_dir / branch

        self._git(["worktree", "add", "-b", branch, str(wt_path)], cwd=main.path)
        self._copy_ignored(main.path, wt_path)
        return Worktree(branch=branch, path=wt_path)

    def remove(self, worktree: Worktree, *, force: bool = False, delete_branch: bool = True) -> None:
        main = self.main_worktree()
        args = ["worktree", "remove", *(["--force"] if force else []), str(worktree.path)]
        self._git(args, cwd=main.path)
        if delete_branch:
            # The branch may already be gone or unmerged; the worktree itself is what matters.
            self._git_ok(["branch", "-D" if force else "-d", worktree.branch], cwd=main.path)

    # -- trunk synchronization ---------------------------------------------------

    def sync_to_trunk(self, worktree: Worktree) -> None:
        if self.is_rebase_in_progress(worktree):
            raise GitError(f"rebase already in progress in {worktree.path}")
        state = self.dirty_state(worktree)
        if state is DirtyState.UNCOMMITTED_CHANGES:
            raise GitError(f"cannot sync {worktree.branch}: worktree has {state.value}")

        trunk = self.trunk_branch(cwd=worktree.path)
        try:
            self._git(["rebase", trunk], cwd=worktree.path)
        except GitError:
            if self.is_rebase_in_progress(worktree):
                self.abort_rebase(worktree)
            raise

    def land(self, worktree: Worktree) -> LandResult:
        try:
            main = self.main_worktree(cwd=worktree.path)
            toplevel = Path(self._git(["rev-parse", "--show-toplevel"], cwd=worktree.path).strip())
            if toplevel.resolve() == main.path.resolve():
                return Failure("cannot land from the main worktree")

            branch = self.current_branch(cwd=worktree.path)
            if branch is None:
                return Failure("detached HEAD state")

            state = self.dirty_state(worktree)
            if state is not DirtyState.CLEAN:
                return Failure(f"worktree has {state.value}")

            trunk = main.branch
            if trunk is None:
                raise GitError("main worktree has no branch checked out")
            if not self.has_unique_commits(worktree):
                return Landed(branch=branch, trunk=trunk)
        except GitError as e:
            return Failure(str(e))

        ff_error = ""
        for _ in range(FF_ATTEMPTS):
            rebase = self._run(["rebase", trunk], cwd=worktree.path)
            if rebase.returncode != 0:
                return self._rebase_failed(worktree, rebase.stderr.strip())

            ff = self._run(["merge", "--ff-only", branch], cwd=main.path)
            if ff.returncode == 0:
                return Landed(branch=branch, trunk=trunk)
            # Trunk moved between our rebase and the fast-forward; rebase onto the new tip.
            ff_error = ff.stderr.strip()
        return Failure(f"fast-forward of {trunk} failed {FF_ATTEMPTS} times, trunk keeps moving: {ff_error}")

    def _rebase_failed(self, worktree: Worktree, stderr: str) -> LandResult:
        try:
            out = self._git(["diff", "--name-only", "--diff-filter=U"], cwd=worktree.path)
        except GitError as e:
            return self._abort_failed_rebase(worktree, f"rebase failed: {stderr} (and failed to list conflicts: {e})")
        files = [line for line in out.splitlines() if line.strip()]
        if not files:
            return self._abort_failed_rebase(worktree, f"rebase failed: {stderr}")
        return Conflict(files=files)

    def _abort_failed_rebase(self, worktree: Worktree, message: str) -> Failure:
        try:
            if self.is_rebase_in_progress(worktree):
                self.abort_rebase(worktree)
        except GitError as e:
            return Failure(f"{message} (and failed to abort the rebase: {e})")
        return Failure(message)

    def continue_rebase(self, worktree: Worktree) -> None:
        # Keep the picked commit messages; never open an editor.
        self._git(["rebase", "--continue"], cwd=worktree.path, env={"GIT_EDITOR": "true"})

    def abort_rebase(self, worktree: Worktree) -> None:
        self._git(["rebase", "--abort"], cwd=worktree.path)

    def reset_to_trunk(self, worktree: Worktree) -> None:
        trunk = self.trunk_branch(cwd=worktree.path)
        self._git(["reset", "--hard", trunk], cwd=worktree.path)

    def clean(self, worktree: Worktree) -> None:
        self._git(["clean", "-fd"], cwd=worktree.path)

    # -- helpers -----------------------------------------------------------------

    def _copy_ignored(self, src_root: Path, dst_root: Path) -> None:
        out = self._git(
            ["ls-files", "--others", "--ignored", "--exclude-standard", "--directory"],
            cwd=src_root,
        )
        for rel in (line.strip() for line in out.splitlines()):
            if not rel:
                continue
            src = src_root / rel
            dst = dst_root / rel
            # Best-effort: ignored files may vanish or be unreadable while we copy.
            try:
                if src.is_dir():
                    shutil.copytree(src, dst, symlinks=True, dirs_exist_ok=True)
                elif src.exists():
                    dst.parent.mkdir(parents=True, exist_ok=True)
                    shutil.copy2(src, dst, follow_symlinks=False)
            except OSError:
                continue

    def _run(self, args: list[str], *, cwd: Path, env: dict[str, str] | None = None) -> subprocess.CompletedProcess[str]:
        return subprocess.run(
            ["git", *args],
            cwd=cwd,
            env={**os.environ, **env} if env else None,
            text=True,
            check=False,
            capture_output=True,
        )

    def _git_ok(self, args: list[str], *, cwd: Path) -> bool:
        return self._run(args, cwd=cwd).returncode == 0

    def _git(self, args: list[str], *, cwd: Path, env: dict[str, str] | None = None) -> str:
        p = self._run(args, cwd=cwd, env=env)
        if p.returncode != 0:
            stderr = p.stderr.strip()
            raise GitError(
                f"git {' '.join(args)} failed: {stderr}",
                argv=["git", *args],
                returncode=p.returncode,
                stderr=stderr,
            )
        return p.stdout
