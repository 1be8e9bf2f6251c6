"""Running agent sessions through the Claude Code CLI ("claude").

The worker loop only depends on the `SessionRunner` protocol: given a prompt, a working
directory and an optional session to resume, run to completion and return the final text
and the session id. `ClaudeSessionRunner` is the real implementation.

Invocation
    claude -p <prompt> [--resume <session-id>] [--append-system-prompt <text>] \\
        [extra args...] --output-format json

`--output-format json` is kept last, as the CLI can be sensitive to flag ordering. Extra
args are the agent's `claude_args` followed by the worker's own pass-through args.

Output collection and envelope parsing
- stdout and stderr are read concurrently using `selectors`. stderr is streamed through to
  the parent's stderr as it arrives; stdout is buffered to completion because
  `--output-format json` can emit a large event envelope.
- stdout is parsed as a single JSON value (usually an array of events), falling back to
  JSONL. The last event with `type == "result"` supplies `result`, `session_id` and
  `total_cost_usd`.
- The normalized result text (not the raw envelope) is echoed to stdout.

Interrupts
The select loop wakes every 100ms. When the caller's interrupt event is set the child is
terminated (then killed if it lingers) and `WorkerInterrupted` is raised.

A non-zero exit with no result text raises `CovenError`; a non-zero exit that still produced
a result is returned with its exit code so the caller can decide.
"""

from __future__ import annotations

import json
import os
import selectors
import subprocess
import sys
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Protocol, Sequence

from .errors import CovenError, WorkerInterrupted


@dataclass(frozen=True)
class SessionResult:
    result_text: str
    session_id: str | None
    cost_usd: float | None = None
    exit_code: int = 0


class SessionRunner(Protocol):
    def run(
        self,
        prompt: str,
        *,
        cwd: Path,
        system_prompt: str | None = None,
        resume: str | None = None,
        extra_args: Sequence[str] = (),
        interrupt: threading.Event | None = None,
    ) -> SessionResult: ...


def default_executable() -> str:
    return os.environ.get("COVEN_CLAUDE") or "claude"


def build_command(
    executable: str,
    prompt: str,
    *,
    system_prompt: str | None,
    resume: str | None,
    extra_args: Sequence[str],
) -> list[str]:
    cmd = [executable, "-p", prompt]
    if resume:
        cmd += ["--resume", resume]
    if system_prompt:
        cmd += ["--append-system-prompt", system_prompt]
    cmd += list(extra_args)
    cmd += ["--output-format", "json"]
    return cmd


class ClaudeSessionRunner:
    def __init__(self, *, executable: str | None = None, terminate_timeout: float = 5.0) -> None:
        self.executable = executable or default_executable()
        self.terminate_timeout = terminate_timeout

    def run(
        self,
        prompt: str,
        *,
        cwd: Path,
        system_prompt: str | None = None,
        resume: str | None = None,
        extra_args: Sequence[str] = (),
        interrupt: threading.Event | None = None,
    ) -> SessionResult:
        cmd = build_command(
            self.executable,
            prompt,
            system_prompt=system_prompt,
            resume=resume,
            extra_args=extra_args,
        )
        try:
            p = subprocess.Popen(
                cmd,
                cwd=str(cwd),
                text=True,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                bufsize=1,
            )
        except FileNotFoundError as e:
            raise CovenError(f"session executable not found: {self.executable}") from e
        assert p.stdout is not None
        assert p.stderr is not None

        sel = selectors.DefaultSelector()
        sel.register(p.stdout, selectors.EVENT_READ)
        sel.register(p.stderr, selectors.EVENT_READ)

        out_chunks: list[str] = []

        while sel.get_map():
            if interrupt is not None and interrupt.is_set():
                self._stop(p)
                raise WorkerInterrupted("interrupted while an agent session was running")
            for key, _ in sel.select(timeout=0.1):
                stream = key.fileobj
                if not hasattr(stream, "readline"):
                    sel.unregister(stream)
                    continue
                line = stream.readline()
                if line == "":
                    sel.unregister(stream)
                    continue

                if stream is p.stdout:
                    out_chunks.append(line)
                else:
                    sys.stderr.write(line)
                    sys.stderr.flush()

            if p.poll() is not None and not sel.get_map():
                break

        code = p.wait()
        raw_stdout = "".join(out_chunks).strip()
        result = extract_session_result(raw_stdout, exit_code=code)

        if result.result_text:
            sys.stdout.write(result.result_text + "\n")
            sys.stdout.flush()
        elif code != 0:
            raise CovenError(f"{self.executable} exited with status {code} and produced no result")
        return result

    def _stop(self, p: Any) -> None:
        p.terminate()
        try:
            p.wait(timeout=self.terminate_timeout)
        except subprocess.TimeoutExpired:
            p.kill()
            p.wait()


def _parse_envelope(raw_stdout: str) -> Any | None:
    """Parse `claude --output-format json` stdout as one JSON value, else as JSONL."""
    if not raw_stdout.strip():
        return None
    try:
        return json.loads(raw_stdout)
    except json.JSONDecodeError:
        pass

    items: list[Any] = []
    for ln in raw_stdout.splitlines():
        ln = ln.strip()
        if not ln:
            continue
        try:
            items.append(json.loads(ln))
        except json.JSONDecodeError:
            continue
    return items if items else None


def _find_result_event(env: Any) -> dict | None:
    if isinstance(env, dict):
        return env
    if isinstance(env, list):
        for it in reversed(env):
            if isinstance(it, dict) and it.get("type") == "result":
                return it
    return None


def extract_session_result(raw_stdout: str, *, exit_code: int = 0) -> SessionResult:
    result_ev = _find_result_event(_parse_envelope(raw_stdout))
    if result_ev is None:
        return SessionResult(result_text=raw_stdout.strip(), session_id=None, exit_code=exit_code)

    text = result_ev.get("result")
    session_id = result_ev.get("session_id")
    cost = result_ev.get("total_cost_usd")
    return SessionResult(
        result_text=text.strip() if isinstance(text, str) else "",
        session_id=session_id if isinstance(session_id, str) and session_id else None,
        cost_usd=float(cost) if isinstance(cost, (int, float)) and not isinstance(cost, bool) else None,
        exit_code=exit_code,
    )
