"""The worker loop: sync, run agents, land, sleep.

A worker owns one worktree for its lifetime and runs one agent session at a time:

    spawn + register
    loop:
        sync worktree to trunk
        chain: entry agent -> <next> -> agent -> <next> -> ... -> sleep
        wait until trunk moves
    deregister + remove worktree

Per agent turn
1. Reload `.coven/agents/` (edits land without restarting) and resolve the agent.
2. Acquire a semaphore permit when the agent declares `max_concurrency`. The permit is held
   for this turn only, including landing.
3. Record the agent and its args in the worker state registry, render the prompt, run the
   session with the system prompt (system doc + transition protocol + peer status + trunk).
4. No commits and a clean worktree under `sleep-if-clean` ends the chain as a sleep without
   reading the transition. Otherwise a session that made no commits (`prompt-to-commit`) or
   left uncommitted or untracked changes is resumed once with a request to commit.
5. Parse the `<next>` transition. A missing or malformed block (including a handoff to an
   unknown agent or without its required args) gets one corrective resume of the same
   session; a second failure raises `MalformedTransition`.
6. Land commits ahead of trunk. A conflict resumes the same session with the conflicting
   files until the rebase completes, up to `max_land_attempts`; after that the rebase is
   aborted, the worktree is reset and cleaned to trunk and `GitError` is raised.

Chained agents run without a resync; only waking up (or starting) syncs to trunk.

Engine-supplied template args
Any agent that declares them receives `worker_status` (what the other workers are doing)
and `agent_catalog` (the transition protocol text). They override values a transition
might pass under the same names and are not required from transitions.

Interrupts
`WorkerConfig.interrupt` is checked by the semaphore wait, the session runner and the
trunk wait. Each raises or returns promptly once it is set; the loop surfaces that as
`WorkerInterrupted`, and `run()` still deregisters and removes the worktree.
"""

from __future__ import annotations

import sys
from dataclasses import dataclass
from typing import Mapping

from . import render, semaphore, worker_state
from .agents import AgentDef, NoCommitPolicy, load_agents
from .config import AGENTS_DIR, WorkerConfig, load_project_config, semaphores_dir, workers_dir
from .errors import CovenError, GitError, MalformedTransition, UnknownAgent, WorkerInterrupted
from .git_ops import DirtyState, Failure, Landed, Worktree, WorktreeManager
from .ref_watcher import WaitOutcome, wait_for_change, watch
from .transition import Next, Sleep, Transition, corrective_prompt, format_protocol_description, parse_transition

ENGINE_ARGS = ("worker_status", "agent_catalog")


@dataclass(frozen=True)
class Turn:
    """The latest reply of a session and the id to resume it with."""

    text: str
    session_id: str | None


class Worker:
    def __init__(self, cfg: WorkerConfig, *, manager: WorktreeManager | None = None) -> None:
        self.cfg = cfg
        self.manager = manager or WorktreeManager(repo_path=cfg.repo_path, worktree_base=cfg.worktree_base)
        common = self.manager.git_common_dir()
        self.workers_dir = workers_dir(common)
        self.semaphores_dir = semaphores_dir(common)
        self.total_cost = 0.0
        self._synced_trunk: str | None = None

    # -- lifecycle ---------------------------------------------------------------

    def run(self) -> None:
        wt = self.start()
        try:
            self.loop(wt)
        finally:
            self.shutdown(wt)

    def start(self) -> Worktree:
        wt = self.manager.spawn(self.cfg.branch)
        try:
            worker_state.register(self.workers_dir, wt.branch)
        except OSError:
            self.manager.remove(wt, force=True)
            raise
        print(f"[coven] worker start branch={wt.branch} path={wt.path}", file=sys.stderr)
        return wt

    def shutdown(self, wt: Worktree) -> None:
        worker_state.deregister(self.workers_dir, wt.branch)
        try:
            self.manager.remove(wt)
        except GitError as e:
            print(f"[coven] warning: failed to remove worktree: {e}", file=sys.stderr)
            print(f"[coven] hint: git worktree remove --force {wt.path}", file=sys.stderr)
            return
        print(f"[coven] worker stop branch={wt.branch} (worktree removed)", file=sys.stderr)

    def loop(self, wt: Worktree) -> None:
        while True:
            self.sync(wt)
            project = load_project_config(wt.path)
            self.run_chain(wt, project.entry_agent)

            render.set_terminal_title(f"cv sleeping — {wt.branch}")
            print("[coven] transition: sleep; waiting for new commits on trunk", file=sys.stderr)
            if self.wait_for_new_commits() is WaitOutcome.INTERRUPTED:
                raise WorkerInterrupted("interrupted while sleeping")
            print("[coven] trunk moved; waking up", file=sys.stderr)

    def sync(self, wt: Worktree) -> None:
        self.manager.sync_to_trunk(wt)
        self._synced_trunk = self.manager.trunk_head()

    def wait_for_new_commits(self) -> WaitOutcome:
        # Watch before reading the baseline, so a commit in between is never missed.
        handle, _ = watch(self.manager, poll_interval=self.cfg.watch_poll_interval)
        with handle:
            baseline = self.manager.trunk_head()
            if self._synced_trunk is not None and baseline != self._synced_trunk:
                return WaitOutcome.CHANGED
            return wait_for_change(handle, baseline, interrupt=self.cfg.interrupt)

    # -- agent chain -------------------------------------------------------------

    def run_chain(self, wt: Worktree, entry_agent: str) -> None:
        """Run agents from `entry_agent` until one transitions to sleep."""
        system_doc = render.load_system_doc(wt.path)
        trunk = self.manager.trunk_branch(cwd=wt.path)
        agent_name = entry_agent
        args: dict[str, str] = {}

        while True:
            agents = load_agents(wt.path / AGENTS_DIR)
            if not agents:
                raise CovenError(f"no agents found in {wt.path / AGENTS_DIR}")
            agent = agents.get(agent_name)
            if agent is None:
                raise UnknownAgent(agent_name, sorted(agents))

            states, warnings = worker_state.read_all(self.workers_dir)
            for w in warnings:
                print(f"[coven] warning: {w}", file=sys.stderr)
            transition_prompt = format_protocol_description(agents.values(), supplied=ENGINE_ARGS)
            system_prompt = render.build_system_prompt(
                system_doc=system_doc,
                transition_prompt=transition_prompt,
                status_section=render.worker_status_section(states, wt.branch),
                trunk_branch=trunk,
            )
            prompt_args = {
                **args,
                "worker_status": worker_state.format_status(states, wt.branch),
                "agent_catalog": transition_prompt,
            }

            permit = None
            if agent.max_concurrency is not None:
                print(f"[coven] semaphore wait agent={agent.name} limit={agent.max_concurrency}", file=sys.stderr)
                permit = semaphore.acquire(
                    self.semaphores_dir,
                    agent.name,
                    agent.max_concurrency,
                    poll_interval=self.cfg.semaphore_poll_interval,
                    interrupt=self.cfg.interrupt,
                )
            try:
                worker_state.update(self.workers_dir, wt.branch, agent.name, args)
                transition = self.run_turn(
                    wt,
                    agent,
                    args,
                    prompt_args=prompt_args,
                    agents=agents,
                    system_prompt=system_prompt,
                )
            finally:
                if permit is not None:
                    permit.release()

            if isinstance(transition, Sleep):
                worker_state.update(self.workers_dir, wt.branch, None, {})
                return
            print(f"[coven] transition: {transition.agent} {render.format_args_display(transition.args)}".rstrip(), file=sys.stderr)
            agent_name, args = transition.agent, dict(transition.args)

    def run_turn(
        self,
        wt: Worktree,
        agent: AgentDef,
        args: Mapping[str, str],
        *,
        prompt_args: Mapping[str, str],
        agents: Mapping[str, AgentDef],
        system_prompt: str,
    ) -> Transition:
        prompt = agent.render(prompt_args)
        extra = [*agent.claude_args, *self.cfg.extra_args]

        print(f"[coven] agent start name={agent.name} branch={wt.branch} {render.format_args_display(args)}".rstrip(), file=sys.stderr)
        render.set_terminal_title(render.agent_title(agent, args, branch=wt.branch))

        head_before = self.manager.head(wt)
        turn = self._session(prompt, wt, system_prompt=system_prompt, resume=None, extra=extra)
        committed = self.manager.head(wt) != head_before

        state = self.manager.dirty_state(wt)
        if not committed and state is DirtyState.CLEAN and agent.no_commit is NoCommitPolicy.SLEEP_IF_CLEAN:
            print(f"[coven] agent end name={agent.name}: no commits and nothing to commit", file=sys.stderr)
            return Sleep()
        wants_commit = state is not DirtyState.CLEAN or (not committed and agent.no_commit is NoCommitPolicy.PROMPT_TO_COMMIT)
        if wants_commit and turn.session_id is not None:
            dirty = None if state is DirtyState.CLEAN else state.value
            reason = f"worktree has {dirty}" if dirty else "no commits"
            print(f"[coven] {reason}; asking {agent.name} to commit", file=sys.stderr)
            turn = self._session(
                render.commit_prompt(dirty=dirty),
                wt,
                system_prompt=system_prompt,
                resume=turn.session_id,
                extra=extra,
            )

        transition, turn = self.parse_with_retry(turn, wt, agents=agents, system_prompt=system_prompt, extra=extra)
        self.land(wt, turn, system_prompt=system_prompt, extra=extra)
        print(f"[coven] agent end name={agent.name}", file=sys.stderr)
        return transition

    # -- transitions -------------------------------------------------------------

    def parse_with_retry(
        self,
        turn: Turn,
        wt: Worktree,
        *,
        agents: Mapping[str, AgentDef],
        system_prompt: str,
        extra: list[str],
    ) -> tuple[Transition, Turn]:
        try:
            return check_transition(parse_transition(turn.text), agents), turn
        except MalformedTransition as e:
            if turn.session_id is None:
                raise
            err = e

        print(f"[coven] transition could not be parsed: {err}; retrying once", file=sys.stderr)
        retry = self._session(
            corrective_prompt(err, agents.values(), final_attempt=True, supplied=ENGINE_ARGS),
            wt,
            system_prompt=system_prompt,
            resume=turn.session_id,
            extra=extra,
        )
        return check_transition(parse_transition(retry.text), agents), retry

    # -- landing -----------------------------------------------------------------

    def land(self, wt: Worktree, turn: Turn, *, system_prompt: str, extra: list[str]) -> Turn:
        """Land commits ahead of trunk, letting the session resolve conflicts."""
        if not self.manager.has_unique_commits(wt):
            return turn

        trunk = self.manager.trunk_branch(cwd=wt.path)
        files: list[str] = []
        for attempt in range(1, self.cfg.max_land_attempts + 1):
            result = self.manager.land(wt)
            if isinstance(result, Landed):
                print(f"[coven] landed {result.branch} -> {result.trunk}", file=sys.stderr)
                # Trunk now points at our own tip; only later commits should wake this worker.
                self._synced_trunk = self.manager.head(wt)
                return turn
            if isinstance(result, Failure):
                raise GitError(f"failed to land {wt.branch}: {result.message}")

            files = result.files
            print(f"[coven] land conflict attempt={attempt} files={','.join(files)}", file=sys.stderr)
            if attempt == self.cfg.max_land_attempts or turn.session_id is None:
                break
            turn = self._session(
                render.conflict_prompt(files, trunk=trunk),
                wt,
                system_prompt=system_prompt,
                resume=turn.session_id,
                extra=extra,
            )
            self._finish_rebase(wt)

        if self.manager.is_rebase_in_progress(wt):
            self.manager.abort_rebase(wt)
        self.manager.reset_to_trunk(wt)
        self.manager.clean(wt)
        raise GitError(f"could not land {wt.branch}: unresolved conflicts in {', '.join(files)}; reset to {trunk}")

    def _finish_rebase(self, wt: Worktree) -> None:
        if not self.manager.is_rebase_in_progress(wt):
            return
        try:
            self.manager.continue_rebase(wt)
        except GitError as e:
            # Start over from the original commits; the next land() rebases again.
            print(f"[coven] rebase still unresolved ({e}); aborting it", file=sys.stderr)
            self.manager.abort_rebase(wt)

    # -- sessions ----------------------------------------------------------------

    def _session(
        self,
        prompt: str,
        wt: Worktree,
        *,
        system_prompt: str,
        resume: str | None,
        extra: list[str],
    ) -> Turn:
        result = self.cfg.session_runner.run(
            prompt,
            cwd=wt.path,
            system_prompt=system_prompt,
            resume=resume,
            extra_args=extra,
            interrupt=self.cfg.interrupt,
        )
        if result.cost_usd:
            self.total_cost += result.cost_usd
            print(f"[coven] total cost ${self.total_cost:.2f}", file=sys.stderr)
        return Turn(text=result.result_text, session_id=result.session_id or resume)


def check_transition(transition: Transition, agents: Mapping[str, AgentDef]) -> Transition:
    """Reject handoffs the next turn could not run: unknown agents and missing required args."""
    if isinstance(transition, Next):
        target = agents.get(transition.agent)
        if target is None:
            raise MalformedTransition(
                f"unknown agent {transition.agent!r} (available: {', '.join(sorted(agents))})"
            )
        missing = [n for n in target.missing_args(transition.args) if n not in ENGINE_ARGS]
        if missing:
            raise MalformedTransition(
                f"agent {transition.agent!r} is missing required argument(s): {', '.join(missing)}"
            )
    return transition
