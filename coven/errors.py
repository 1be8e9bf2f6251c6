"""Error taxonomy for the coven engine.

Expected races (semaphore contention, rebase conflicts, stale registry entries) are handled
where they occur and never reach these types. Everything here is a genuine failure that the
caller must see: a git command that failed, an agent file that cannot be used, a transition
that cannot be parsed, or a shared-state record that is corrupt.
"""

from __future__ import annotations


class CovenError(RuntimeError):
    """Base class for all engine failures surfaced to the CLI."""


class GitError(CovenError):
    def __init__(self, message: str, *, argv: list[str] | None = None, returncode: int | None = None, stderr: str = "") -> None:
        super().__init__(message)
        self.argv = list(argv or [])
        self.returncode = returncode
        self.stderr = stderr


class MalformedAgent(CovenError):
    def __init__(self, name: str, reason: str) -> None:
        super().__init__(f"malformed agent {name!r}: {reason}")
        self.name = name
        self.reason = reason


class UnknownAgent(CovenError):
    def __init__(self, name: str, known: list[str]) -> None:
        super().__init__(f"unknown agent: {name!r} (available: {', '.join(known) or 'none'})")
        self.name = name


class MissingArgument(CovenError):
    def __init__(self, agent: str, names: list[str]) -> None:
        super().__init__(f"agent {agent!r} is missing required argument(s): {', '.join(names)}")
        self.agent = agent
        self.names = list(names)

    @property
    def name(self) -> str:
        return self.names[0]


class MalformedTransition(CovenError):
    def __init__(self, reason: str) -> None:
        super().__init__(reason)
        self.reason = reason


class NoTransitionFound(MalformedTransition):
    def __init__(self, tag: str = "next") -> None:
        super().__init__(f"no <{tag}>...</{tag}> found in agent output")


class LockError(CovenError):
    """Unexpected failure opening or locking a semaphore file (not contention)."""


class CorruptState(CovenError):
    def __init__(self, path: object, reason: str) -> None:
        super().__init__(f"corrupt worker state {path}: {reason}")
        self.path = path
        self.reason = reason


class WorkerInterrupted(CovenError):
    """Raised from any wait point once the worker's interrupt event is set."""
