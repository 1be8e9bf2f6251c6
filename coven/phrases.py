from __future__ import annotations

import secrets
from collections.abc import Callable

ADJECTIVES = [
    "swift", "quick", "bright", "calm", "clever", "cool", "crisp", "eager", "fast", "fresh",
    "keen", "light", "neat", "prime", "sharp", "silent", "smooth", "steady", "warm", "bold",
    "brave", "clear", "fleet", "golden", "agile", "nimble", "rapid", "blazing", "cosmic",
]

NOUNS = [
    "fox", "wolf", "bear", "hawk", "lion", "tiger", "raven", "eagle", "falcon", "otter", "cedar",
    "maple", "oak", "pine", "willow", "river", "stream", "brook", "delta", "canyon", "spark",
    "flame", "ember", "comet", "meteor", "nova", "pulse", "wave", "drift", "glow",
]


def generate_branch_name() -> str:
    """Return a random `adjective-noun-N` branch name."""
    return f"{secrets.choice(ADJECTIVES)}-{secrets.choice(NOUNS)}-{secrets.randbelow(100)}"


def generate_unique_branch_name(*, taken: Callable[[str], bool], attempts: int = 1_000) -> str:
    """Return a generated name for which `taken(name)` is false.

    Uniqueness is checked against the caller's view only; `git worktree add -b` is the final
    arbiter if two workers race for the same name.
    """
    for _ in range(attempts):
        name = generate_branch_name()
        if not taken(name):
            return name
    raise RuntimeError(f"Failed to generate an unused branch name after {attempts} attempts.")
