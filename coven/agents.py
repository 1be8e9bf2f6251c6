"""coven.agents

Agent definitions: loading, validation and prompt rendering.

An agent is a Markdown file under `.coven/agents/`. The file stem is the agent name; the
file starts with YAML frontmatter between `---` lines, followed by the prompt template:

    ---
    description: "Implements code changes for a planned issue"
    args:
      - name: issue
        description: "Path to the issue file"
        required: true
    max_concurrency: 2
    no_commit: prompt-to-commit
    ---

    You are the implement agent. Implement the plan in `{{issue}}`.

Frontmatter keys
- `description` (required): one line shown to other agents in the transition catalog.
- `args`: ordered list of `{name, description, required}`; `required` defaults to false.
- `max_concurrency`: positive integer; absent means unlimited.
- `no_commit`: what to do when a session produced no commits, `prompt-to-commit` (default)
  or `sleep-if-clean`.
- `claude_args`: extra command-line arguments for this agent's sessions.
- `title`: optional template for the terminal title, rendered with the same arguments.

Templates
Placeholders are `{{name}}`; a block `{{#if name}}...{{/if}}` is kept only when `name` has a
non-empty value. Only declared argument names are visible to a template: arguments a
transition supplies beyond the declared set are dropped before rendering, so an agent cannot
push new keys into another agent's prompt. A placeholder without a value renders as an empty
string. Substituted values are inserted verbatim and never re-scanned for placeholders.

Definitions are immutable and cheap to load; the worker reloads the whole directory at the
start of every agent turn so edits land without restarting workers.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Mapping

import yaml

from .errors import MalformedAgent, MissingArgument


class NoCommitPolicy(str, Enum):
    PROMPT_TO_COMMIT = "prompt-to-commit"
    SLEEP_IF_CLEAN = "sleep-if-clean"


@dataclass(frozen=True)
class AgentArg:
    name: str
    description: str = ""
    required: bool = False


@dataclass(frozen=True)
class AgentDef:
    name: str
    description: str
    prompt_template: str
    args: tuple[AgentArg, ...] = ()
    max_concurrency: int | None = None
    no_commit: NoCommitPolicy = NoCommitPolicy.PROMPT_TO_COMMIT
    claude_args: tuple[str, ...] = ()
    title: str | None = None

    @property
    def arg_names(self) -> list[str]:
        return [a.name for a in self.args]

    def missing_args(self, args: Mapping[str, str]) -> list[str]:
        return [a.name for a in self.args if a.required and a.name not in args]

    def render(self, args: Mapping[str, str]) -> str:
        """Render the prompt template, failing with `MissingArgument` if a required arg is absent."""
        missing = self.missing_args(args)
        if missing:
            raise MissingArgument(self.name, missing)
        return render_template(self.prompt_template, self._declared(args))

    def render_title(self, args: Mapping[str, str]) -> str | None:
        if self.title is None:
            return None
        return render_template(self.title, self._declared(args)).strip()

    def _declared(self, args: Mapping[str, str]) -> dict[str, str]:
        names = set(self.arg_names)
        return {k: str(v) for k, v in args.items() if k in names}


_IF_BLOCK = re.compile(r"\{\{#if\s+([A-Za-z0-9_.-]+)\s*\}\}(.*?)\{\{/if\}\}", re.DOTALL)
_PLACEHOLDER = re.compile(r"\{\{\s*([A-Za-z0-9_.-]+)\s*\}\}")


def render_template(template: str, values: Mapping[str, str]) -> str:
    def keep_block(m: re.Match[str]) -> str:
        return m.group(2) if values.get(m.group(1)) else ""

    def substitute(m: re.Match[str]) -> str:
        return values.get(m.group(1), "")

    # Conditionals first, then a single substitution pass over the remaining text.
    text = _IF_BLOCK.sub(keep_block, template)
    return _PLACEHOLDER.sub(substitute, text)


def split_frontmatter(contents: str) -> tuple[str, str]:
    """Split `contents` into (yaml text, template body)."""
    trimmed = contents.lstrip()
    if not trimmed.startswith("---"):
        raise ValueError("agent file must start with `---` frontmatter delimiter")
    after_first = trimmed[3:]
    after_first = after_first[1:] if after_first.startswith("\n") else after_first

    end = after_first.find("\n---")
    if end < 0:
        raise ValueError("agent file missing closing `---` frontmatter delimiter")
    yaml_text = after_first[:end]
    rest = after_first[end + len("\n---") :]
    return yaml_text, rest.strip()


def parse_agent(name: str, contents: str) -> AgentDef:
    try:
        yaml_text, body = split_frontmatter(contents)
    except ValueError as e:
        raise MalformedAgent(name, str(e)) from e

    try:
        meta = yaml.safe_load(yaml_text)
    except yaml.YAMLError as e:
        raise MalformedAgent(name, f"invalid frontmatter YAML: {e}") from e
    if not isinstance(meta, dict):
        raise MalformedAgent(name, "frontmatter must be a YAML mapping")

    description = meta.get("description")
    if not isinstance(description, str) or not description.strip():
        raise MalformedAgent(name, "missing required string: description")

    return AgentDef(
        name=name,
        description=description.strip(),
        prompt_template=body,
        args=_parse_args(name, meta.get("args")),
        max_concurrency=_parse_max_concurrency(name, meta.get("max_concurrency")),
        no_commit=_parse_no_commit(name, meta.get("no_commit")),
        claude_args=_parse_claude_args(name, meta.get("claude_args")),
        title=_parse_title(name, meta.get("title")),
    )


def load_agent(path: Path) -> AgentDef:
    return parse_agent(path.stem, path.read_text(encoding="utf-8"))


def load_agents(directory: Path) -> dict[str, AgentDef]:
    """Load every `*.md` agent under `directory`, keyed by name in sorted order.

    A missing directory yields an empty catalog; one malformed file fails the whole load.
    """
    if not directory.is_dir():
        return {}
    out: dict[str, AgentDef] = {}
    for path in sorted(directory.glob("*.md")):
        agent = load_agent(path)
        out[agent.name] = agent
    return out


def _parse_args(name: str, raw: Any) -> tuple[AgentArg, ...]:
    if raw is None:
        return ()
    if not isinstance(raw, list):
        raise MalformedAgent(name, "args must be a list")
    out: list[AgentArg] = []
    seen: set[str] = set()
    for idx, it in enumerate(raw):
        if not isinstance(it, dict):
            raise MalformedAgent(name, f"args[{idx}] must be a mapping")
        arg_name = it.get("name")
        if not isinstance(arg_name, str) or not arg_name.strip():
            raise MalformedAgent(name, f"args[{idx}] missing required string: name")
        arg_name = arg_name.strip()
        if arg_name in seen:
            raise MalformedAgent(name, f"duplicate argument: {arg_name}")
        seen.add(arg_name)
        desc = it.get("description", "")
        if desc is None:
            desc = ""
        if not isinstance(desc, str):
            raise MalformedAgent(name, f"args[{idx}].description must be a string")
        required = it.get("required", False)
        if not isinstance(required, bool):
            raise MalformedAgent(name, f"args[{idx}].required must be a boolean")
        out.append(AgentArg(name=arg_name, description=desc.strip(), required=required))
    return tuple(out)


def _parse_max_concurrency(name: str, raw: Any) -> int | None:
    if raw is None:
        return None
    # bool is an int subclass; `max_concurrency: true` is a typo, not a limit of 1.
    if isinstance(raw, bool) or not isinstance(raw, int) or raw < 1:
        raise MalformedAgent(name, f"max_concurrency must be a positive integer, got {raw!r}")
    return raw


def _parse_no_commit(name: str, raw: Any) -> NoCommitPolicy:
    if raw is None:
        return NoCommitPolicy.PROMPT_TO_COMMIT
    try:
        return NoCommitPolicy(raw)
    except ValueError as e:
        allowed = ", ".join(p.value for p in NoCommitPolicy)
        raise MalformedAgent(name, f"no_commit must be one of {allowed}, got {raw!r}") from e


def _parse_claude_args(name: str, raw: Any) -> tuple[str, ...]:
    if raw is None:
        return ()
    if not isinstance(raw, list) or any(not isinstance(x, str) for x in raw):
        raise MalformedAgent(name, "claude_args must be a list of strings")
    return tuple(raw)


def _parse_title(name: str, raw: Any) -> str | None:
    if raw is None:
        return None
    if not isinstance(raw, str):
        raise MalformedAgent(name, "title must be a string")
    return raw

