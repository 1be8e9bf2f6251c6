"""The `<next>` transition protocol.

An agent ends its turn with a `<next>` block of `key: value` lines:

    <next>
    agent: implement
    issue: issues/dark-mode.md
    </next>

or, when there is nothing to do:

    <next>
    sleep: true
    </next>

Only the first `: ` (or bare `:`) on a line separates key from value, so values may contain
colons. Everything outside the block is free-form reasoning for the human and is ignored.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Collection, Iterable, Union

from .agents import AgentArg, AgentDef
from .errors import MalformedTransition, NoTransitionFound

TAG = "next"


@dataclass(frozen=True)
class Next:
    agent: str
    args: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class Sleep:
    pass


Transition = Union[Next, Sleep]


def extract_tag(text: str, tag: str) -> str | None:
    """Return the inner text of the last top-level `<tag>...</tag>` span in `text`.

    Opening and closing tags are matched by depth, so a tag quoted inside the block does not
    end it early: `<t><t>x</t></t>` yields `<t>x</t>`. An opening tag that never closes is
    skipped, so a mention such as "ends with a <t> block" does not hide a later span. Returns
    None when no span closes.
    """
    open_tag, close_tag = f"<{tag}>", f"</{tag}>"
    found: str | None = None
    pos = 0
    while True:
        start = text.find(open_tag, pos)
        if start < 0:
            return found
        inner_start = start + len(open_tag)
        depth = 1
        cursor = inner_start
        while depth:
            next_open = text.find(open_tag, cursor)
            next_close = text.find(close_tag, cursor)
            if next_close < 0:
                break
            if 0 <= next_open < next_close:
                depth += 1
                cursor = next_open + len(open_tag)
            else:
                depth -= 1
                cursor = next_close + len(close_tag)
        if depth:
            # An opening tag that never closes is prose; keep looking after it.
            pos = inner_start
            continue
        found = text[inner_start : cursor - len(close_tag)]
        pos = cursor


def parse_transition(text: str) -> Transition:
    content = extract_tag(text, TAG)
    if content is None:
        raise NoTransitionFound(TAG)

    fields: dict[str, str] = {}
    for raw in content.strip().splitlines():
        line = raw.strip()
        if not line:
            continue
        sep = ": " if ": " in line else ":"
        if sep not in line:
            raise MalformedTransition(f"invalid line in transition block (expected `key: value`): {line}")
        key, value = line.split(sep, 1)
        fields[key.strip()] = value.strip()

    if fields.get("sleep") == "true":
        return Sleep()

    agent = fields.pop("agent", None)
    if not agent:
        raise MalformedTransition("transition must contain 'agent' or 'sleep: true'")
    return Next(agent=agent, args=fields)


def _visible_args(agent: AgentDef, supplied: Collection[str]) -> list[AgentArg]:
    return [a for a in agent.args if a.name not in supplied]


def _example_block(agent: AgentDef, supplied: Collection[str] = ()) -> str:
    lines = [f"<{TAG}>", f"agent: {agent.name}"]
    lines += [f"{a.name}: <{a.description}>" for a in _visible_args(agent, supplied)]
    lines.append(f"</{TAG}>")
    return "\n".join(lines) + "\n"


_SLEEP_BLOCK = f"<{TAG}>\nsleep: true\n</{TAG}>\n"


def format_protocol_description(agents: Iterable[AgentDef], *, supplied: Collection[str] = ()) -> str:
    """System-prompt section teaching the `<next>` syntax and listing every agent.

    Args named in `supplied` are filled in by the worker itself, so they are left out of the
    catalog and the examples.
    """
    agents = list(agents)
    parts: list[str] = [
        "# Transition Protocol\n\n",
        f"When you finish your session, output a <{TAG}> tag containing one `key: value` pair per\n"
        "line to declare what should happen next. This is how the orchestration system routes\n"
        "between agents.\n\n",
        "## Hand off to another agent\n\n",
        f"<{TAG}>\nagent: <agent-name>\n<arg>: <value>\n</{TAG}>\n\n",
        "## Sleep (no actionable work)\n\n",
        _SLEEP_BLOCK + "\n",
        "## Available Agents\n\n",
    ]

    if not agents:
        parts.append("No agents configured.\n\n")
    for agent in agents:
        parts.append(f"### {agent.name}\n{agent.description}\n")
        visible = _visible_args(agent, supplied)
        if not visible:
            parts.append("No arguments.\n")
        else:
            parts.append("Arguments:\n")
            for a in visible:
                req = " (required)" if a.required else ""
                parts.append(f"- `{a.name}`: {a.description}{req}\n")
        parts.append("\n")

    parts.append("## Examples\n\n")
    for agent in agents:
        if _visible_args(agent, supplied):
            parts.append(_example_block(agent, supplied) + "\n")
    no_args = next((a for a in agents if not _visible_args(a, supplied)), None)
    if no_args is not None:
        parts.append(_example_block(no_args, supplied) + "\n")
    parts.append(_SLEEP_BLOCK)
    return "".join(parts)


def corrective_prompt(
    error: Exception,
    agents: Iterable[AgentDef],
    *,
    final_attempt: bool,
    supplied: Collection[str] = (),
) -> str:
    """Follow-up message sent to the same session after its output failed to parse."""
    agents = list(agents)
    out = [f"Your previous output could not be parsed: {error}\n\n"]
    if final_attempt:
        out.append(
            f"This is your final automatic retry. You must produce a valid <{TAG}> tag. "
            "If you cannot determine the right transition, use `sleep: true`.\n\n"
        )
    out.append(
        f"Please output your decision inside a <{TAG}> tag with one key: value pair per line. "
        "For example:\n\n"
    )

    with_args = next((a for a in agents if _visible_args(a, supplied)), None)
    if with_args is not None:
        out.append(_example_block(with_args, supplied) + "\n")
    elif agents:
        out.append(_example_block(agents[0], supplied) + "\n")
    else:
        out.append(f"<{TAG}>\nagent: <agent-name>\n</{TAG}>\n\n")

    out.append(f"Or to sleep:\n\n{_SLEEP_BLOCK.rstrip()}")
    if agents:
        out.append("\n\nAvailable agents: " + ", ".join(a.name for a in agents))
    return "".join(out)
