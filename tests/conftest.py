from __future__ import annotations

import subprocess
from collections.abc import Callable
from pathlib import Path

import pytest

from coven.git_ops import WorktreeManager

GitRunner = Callable[..., str]


def _run_git(cwd: Path, *args: str) -> str:
    p = subprocess.run(["git", *args], cwd=cwd, text=True, check=True, capture_output=True)
    return p.stdout


@pytest.fixture
def git() -> GitRunner:
    return _run_git


@pytest.fixture
def repo(tmp_path: Path) -> Path:
    root = tmp_path / "project"
    root.mkdir()
    _run_git(root, "init", "-b", "main")
    _run_git(root, "config", "user.email", "coven@example.com")
    _run_git(root, "config", "user.name", "Coven Test")
    _run_git(root, "config", "commit.gpgsign", "false")
    (root / "README.md").write_text("hello\n", encoding="utf-8")
    _run_git(root, "add", "README.md")
    _run_git(root, "commit", "-m", "initial")
    return root.resolve()


@pytest.fixture
def manager(repo: Path, tmp_path: Path) -> WorktreeManager:
    return WorktreeManager(repo_path=repo, worktree_base=(tmp_path / "worktrees").resolve())
