from __future__ import annotations

import re
import subprocess
from collections.abc import Callable
from pathlib import Path

import pytest

from coven import git_ops
from coven.errors import GitError
from coven.git_ops import Conflict, DirtyState, Failure, Landed, Worktree, WorktreeManager


def _commit_file(git: Callable[..., str], wt: Worktree, name: str, content: str, message: str) -> None:
    (wt.path / name).write_text(content, encoding="utf-8")
    git(wt.path, "add", name)
    git(wt.path, "commit", "-m", message)


def test_list_worktrees_parses_porcelain_and_marks_main(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    manager = WorktreeManager(repo_path=tmp_path, worktree_base=tmp_path / "wt")
    porcelain = "\n".join(
        [
            f"worktree {tmp_path}",
            "HEAD 1111111",
            "branch refs/heads/main",
            "",
            f"worktree {tmp_path / 'wt' / 'feature'}",
            "HEAD 2222222",
            "branch refs/heads/feature/test",
            "",
            f"worktree {tmp_path / 'wt' / 'detached'}",
            "HEAD 3333333",
            "detached",
            "",
        ]
    )
    monkeypatch.setattr(manager, "_git", lambda args, *, cwd, env=None: porcelain)

    entries = manager.list_worktrees()

    assert entries == [
        git_ops.WorktreeEntry(path=tmp_path, branch="main", is_main=True),
        git_ops.WorktreeEntry(path=tmp_path / "wt" / "feature", branch="feature/test", is_main=False),
        git_ops.WorktreeEntry(path=tmp_path / "wt" / "detached", branch=None, is_main=False),
    ]
    assert manager.trunk_branch() == "main"


def test_git_raises_git_error_with_details(manager: WorktreeManager, repo: Path) -> None:
    with pytest.raises(GitError) as exc:
        manager._git(["rev-parse", "refs/heads/does-not-exist"], cwd=repo)

    assert exc.value.argv[:2] == ["git", "rev-parse"]
    assert exc.value.returncode != 0


def test_spawn_creates_branch_worktree_and_copies_ignored_files(manager: WorktreeManager, repo: Path, git: Callable[..., str]) -> None:
    (repo / ".gitignore").write_text(".env\ncache/\n", encoding="utf-8")
    git(repo, "add", ".gitignore")
    git(repo, "commit", "-m", "ignore env")
    (repo / ".env").write_text("SECRET=1\n", encoding="utf-8")
    (repo / "cache").mkdir()
    (repo / "cache" / "blob.bin").write_text("cached", encoding="utf-8")

    wt = manager.spawn("feature-x")

    assert wt.branch == "feature-x"
    assert wt.path == manager.worktree_base / repo.name / "feature-x"
    assert manager.current_branch(cwd=wt.path) == "feature-x"
    assert (wt.path / "README.md").read_text(encoding="utf-8") == "hello\n"
    assert (wt.path / ".env").read_text(encoding="utf-8") == "SECRET=1\n"
    assert (wt.path / "cache" / "blob.bin").read_text(encoding="utf-8") == "cached"
    assert manager.is_clean(wt)


def test_spawn_without_branch_generates_adjective_noun_number(manager: WorktreeManager) -> None:
    wt = manager.spawn()

    assert re.fullmatch(r"[a-z]+-[a-z]+-\d{1,2}", wt.branch)
    assert manager.branch_exists(wt.branch)


def test_spawn_rejects_existing_branch(manager: WorktreeManager, repo: Path, git: Callable[..., str]) -> None:
    git(repo, "branch", "taken")

    with pytest.raises(GitError, match="already exists"):
        manager.spawn("taken")


def test_spawn_outside_a_repository_raises(tmp_path: Path) -> None:
    plain = tmp_path / "plain"
    plain.mkdir()
    manager = WorktreeManager(repo_path=plain, worktree_base=tmp_path / "wt")

    with pytest.raises(GitError, match="not a git repository"):
        manager.spawn("x")


def test_remove_deletes_worktree_and_merged_branch(manager: WorktreeManager) -> None:
    wt = manager.spawn("short-lived")

    manager.remove(wt)

    assert not wt.path.exists()
    assert not manager.branch_exists("short-lived")
    assert [e.branch for e in manager.list_worktrees()] == ["main"]


def test_remove_without_force_refuses_dirty_worktree(manager: WorktreeManager) -> None:
    wt = manager.spawn("dirty")
    (wt.path / "README.md").write_text("changed\n", encoding="utf-8")

    with pytest.raises(GitError):
        manager.remove(wt)
    assert wt.path.exists()

    manager.remove(wt, force=True)
    assert not wt.path.exists()


def test_dirty_state_reports_uncommitted_before_untracked(manager: WorktreeManager) -> None:
    wt = manager.spawn("states")
    assert manager.dirty_state(wt) is DirtyState.CLEAN

    (wt.path / "new.txt").write_text("x", encoding="utf-8")
    assert manager.dirty_state(wt) is DirtyState.UNTRACKED_FILES

    (wt.path / "README.md").write_text("edited\n", encoding="utf-8")
    assert manager.dirty_state(wt) is DirtyState.UNCOMMITTED_CHANGES
    assert not manager.is_clean(wt)


def test_git_common_dir_is_shared_by_all_worktrees(manager: WorktreeManager, repo: Path) -> None:
    wt = manager.spawn("shared")
    other = WorktreeManager(repo_path=wt.path, worktree_base=manager.worktree_base)

    assert manager.git_common_dir() == (repo / ".git").resolve()
    assert other.git_common_dir() == manager.git_common_dir()


def test_land_fast_forwards_trunk(manager: WorktreeManager, repo: Path, git: Callable[..., str]) -> None:
    wt = manager.spawn("feature")
    _commit_file(git, wt, "feature.txt", "feature\n", "add feature")

    result = manager.land(wt)

    assert result == Landed(branch="feature", trunk="main")
    assert manager.trunk_head() == manager.head(wt)
    assert (repo / "feature.txt").read_text(encoding="utf-8") == "feature\n"


def test_land_without_unique_commits_is_a_no_op(manager: WorktreeManager) -> None:
    wt = manager.spawn("idle")
    before = manager.trunk_head()

    assert manager.land(wt) == Landed(branch="idle", trunk="main")
    assert manager.trunk_head() == before


def test_land_rebases_onto_moved_trunk(manager: WorktreeManager, repo: Path, git: Callable[..., str]) -> None:
    wt = manager.spawn("feature")
    _commit_file(git, wt, "feature.txt", "feature\n", "add feature")
    (repo / "other.txt").write_text("other\n", encoding="utf-8")
    git(repo, "add", "other.txt")
    git(repo, "commit", "-m", "trunk moves")

    assert isinstance(manager.land(wt), Landed)
    assert (repo / "feature.txt").exists()
    assert (repo / "other.txt").exists()
    assert git(repo, "rev-list", "--count", "HEAD").strip() == "3"


@pytest.mark.parametrize(
    ("filename", "fragment"),
    [
        ("README.md", "uncommitted changes"),
        ("untracked.txt", "untracked files"),
    ],
)
def test_land_refuses_dirty_worktree(manager: WorktreeManager, git: Callable[..., str], filename: str, fragment: str) -> None:
    wt = manager.spawn("dirty")
    _commit_file(git, wt, "feature.txt", "feature\n", "add feature")
    (wt.path / filename).write_text("dirty\n", encoding="utf-8")
    before = manager.trunk_head()

    result = manager.land(wt)

    assert isinstance(result, Failure)
    assert fragment in result.message
    assert manager.trunk_head() == before


def test_land_from_main_worktree_fails(manager: WorktreeManager, repo: Path) -> None:
    result = manager.land(Worktree(branch="main", path=repo))

    assert isinstance(result, Failure)
    assert "main worktree" in result.message


def test_land_detached_head_fails(manager: WorktreeManager, git: Callable[..., str]) -> None:
    wt = manager.spawn("detach-me")
    git(wt.path, "checkout", "--detach")

    result = manager.land(wt)

    assert result == Failure("detached HEAD state")


def test_land_reports_conflicting_files_and_leaves_rebase_in_progress(manager: WorktreeManager, git: Callable[..., str]) -> None:
    first = manager.spawn("first")
    second = manager.spawn("second")
    _commit_file(git, first, "README.md", "from first\n", "first edit")
    _commit_file(git, second, "README.md", "from second\n", "second edit")

    assert isinstance(manager.land(first), Landed)
    result = manager.land(second)

    assert result == Conflict(files=["README.md"])
    assert manager.is_rebase_in_progress(second)

    manager.abort_rebase(second)
    assert not manager.is_rebase_in_progress(second)


def test_land_conflict_listing_failure_is_a_failure(
    manager: WorktreeManager, git: Callable[..., str], monkeypatch: pytest.MonkeyPatch
) -> None:
    first = manager.spawn("first")
    second = manager.spawn("second")
    _commit_file(git, first, "README.md", "from first\n", "first edit")
    _commit_file(git, second, "README.md", "from second\n", "second edit")
    assert isinstance(manager.land(first), Landed)

    real_git = manager._git

    def flaky_git(args: list[str], *, cwd: Path, env: dict[str, str] | None = None) -> str:
        if args[:1] == ["diff"] and "--diff-filter=U" in args:
            raise GitError("index is locked")
        return real_git(args, cwd=cwd, env=env)

    monkeypatch.setattr(manager, "_git", flaky_git)

    result = manager.land(second)

    assert isinstance(result, Failure)
    assert "failed to list conflicts" in result.message
    assert "index is locked" in result.message
    assert not manager.is_rebase_in_progress(second)
    assert (second.path / "README.md").read_text(encoding="utf-8") == "from second\n"


def test_land_aborts_a_failed_rebase_without_unmerged_paths(
    manager: WorktreeManager, git: Callable[..., str], monkeypatch: pytest.MonkeyPatch
) -> None:
    first = manager.spawn("first")
    second = manager.spawn("second")
    _commit_file(git, first, "README.md", "from first\n", "first edit")
    _commit_file(git, second, "README.md", "from second\n", "second edit")
    assert isinstance(manager.land(first), Landed)

    real_git = manager._git

    def no_unmerged_git(args: list[str], *, cwd: Path, env: dict[str, str] | None = None) -> str:
        if args[:1] == ["diff"] and "--diff-filter=U" in args:
            return ""
        return real_git(args, cwd=cwd, env=env)

    monkeypatch.setattr(manager, "_git", no_unmerged_git)

    result = manager.land(second)

    assert isinstance(result, Failure)
    assert result.message.startswith("rebase failed:")
    assert not manager.is_rebase_in_progress(second)


def test_land_rebases_again_when_trunk_moves_before_fast_forward(
    manager: WorktreeManager, repo: Path, git: Callable[..., str], monkeypatch: pytest.MonkeyPatch
) -> None:
    wt = manager.spawn("feature")
    _commit_file(git, wt, "feature.txt", "feature\n", "add feature")
    real_run = manager._run
    landed_by_peer: list[str] = []

    def racing_run(args: list[str], *, cwd: Path, env: dict[str, str] | None = None) -> subprocess.CompletedProcess[str]:
        if args[:2] == ["merge", "--ff-only"] and not landed_by_peer:
            (repo / "other.txt").write_text("other\n", encoding="utf-8")
            git(repo, "add", "other.txt")
            git(repo, "commit", "-m", "another worker landed")
            landed_by_peer.append(git(repo, "rev-parse", "HEAD").strip())
        return real_run(args, cwd=cwd, env=env)

    monkeypatch.setattr(manager, "_run", racing_run)

    result = manager.land(wt)

    assert isinstance(result, Landed)
    assert (repo / "feature.txt").read_text(encoding="utf-8") == "feature\n"
    assert (repo / "other.txt").read_text(encoding="utf-8") == "other\n"
    assert manager.trunk_head() == manager.head(wt)
    git(repo, "merge-base", "--is-ancestor", landed_by_peer[0], "HEAD")


def test_land_gives_up_when_trunk_keeps_moving(
    manager: WorktreeManager, repo: Path, git: Callable[..., str], monkeypatch: pytest.MonkeyPatch
) -> None:
    wt = manager.spawn("feature")
    _commit_file(git, wt, "feature.txt", "feature\n", "add feature")
    real_run = manager._run
    peers: list[int] = []

    def busy_trunk_run(args: list[str], *, cwd: Path, env: dict[str, str] | None = None) -> subprocess.CompletedProcess[str]:
        if args[:2] == ["merge", "--ff-only"]:
            peers.append(len(peers))
            (repo / f"peer-{len(peers)}.txt").write_text("peer\n", encoding="utf-8")
            git(repo, "add", "-A")
            git(repo, "commit", "-m", f"peer {len(peers)}")
        return real_run(args, cwd=cwd, env=env)

    monkeypatch.setattr(manager, "_run", busy_trunk_run)

    result = manager.land(wt)

    assert isinstance(result, Failure)
    assert "trunk keeps moving" in result.message
    assert len(peers) == git_ops.FF_ATTEMPTS
    assert not manager.is_rebase_in_progress(wt)
    assert not (repo / "feature.txt").exists()


def test_resolved_conflict_continues_and_lands(manager: WorktreeManager, repo: Path, git: Callable[..., str]) -> None:
    first = manager.spawn("first")
    second = manager.spawn("second")
    _commit_file(git, first, "README.md", "A\n", "first edit")
    _commit_file(git, second, "README.md", "B\n", "second edit")
    assert isinstance(manager.land(first), Landed)
    assert isinstance(manager.land(second), Conflict)

    (second.path / "README.md").write_text("A\nB\n", encoding="utf-8")
    git(second.path, "add", "README.md")
    manager.continue_rebase(second)

    assert manager.land(second) == Landed(branch="second", trunk="main")
    assert (repo / "README.md").read_text(encoding="utf-8") == "A\nB\n"


def test_sync_to_trunk_picks_up_trunk_commits(manager: WorktreeManager, repo: Path, git: Callable[..., str]) -> None:
    wt = manager.spawn("follower")
    (repo / "news.txt").write_text("news\n", encoding="utf-8")
    git(repo, "add", "news.txt")
    git(repo, "commit", "-m", "news")

    manager.sync_to_trunk(wt)

    assert (wt.path / "news.txt").read_text(encoding="utf-8") == "news\n"
    assert manager.head(wt) == manager.trunk_head()


def test_sync_to_trunk_refuses_uncommitted_changes(manager: WorktreeManager) -> None:
    wt = manager.spawn("busy")
    (wt.path / "README.md").write_text("local edit\n", encoding="utf-8")

    with pytest.raises(GitError, match="uncommitted changes"):
        manager.sync_to_trunk(wt)


def test_sync_to_trunk_aborts_failed_rebase(manager: WorktreeManager, repo: Path, git: Callable[..., str]) -> None:
    wt = manager.spawn("diverged")
    _commit_file(git, wt, "README.md", "mine\n", "mine")
    (repo / "README.md").write_text("theirs\n", encoding="utf-8")
    git(repo, "commit", "-am", "theirs")

    with pytest.raises(GitError):
        manager.sync_to_trunk(wt)

    assert not manager.is_rebase_in_progress(wt)
    assert (wt.path / "README.md").read_text(encoding="utf-8") == "mine\n"


def test_reset_to_trunk_discards_branch_commits(manager: WorktreeManager, git: Callable[..., str]) -> None:
    wt = manager.spawn("throwaway")
    _commit_file(git, wt, "junk.txt", "junk\n", "junk")

    manager.reset_to_trunk(wt)

    assert manager.head(wt) == manager.trunk_head()
    assert not manager.has_unique_commits(wt)


def test_trunk_without_a_branch_is_a_git_error(
    manager: WorktreeManager, repo: Path, git: Callable[..., str], monkeypatch: pytest.MonkeyPatch
) -> None:
    wt = manager.spawn("feature")
    _commit_file(git, wt, "feature.txt", "feature\n", "add feature")
    monkeypatch.setattr(
        manager, "main_worktree", lambda *, cwd=None: git_ops.WorktreeEntry(path=repo, branch=None, is_main=True)
    )

    with pytest.raises(GitError, match="no branch checked out"):
        manager.trunk_branch()
    assert manager.land(wt) == Failure("main worktree has no branch checked out")
