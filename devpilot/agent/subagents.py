"""Subagent orchestration: isolated child loops run concurrently.

Flow for one spawn request:

    prepare(tool_input)           -> SubagentBatch with proposed tasks
    batch.run(confirm)            -> confirmation gate, then merged child events
    batch.output                  -> the aggregate summary returned to the parent

Each child starts from a single seeded user message and never sees the
parent conversation. Only the child's final summary re-enters the parent's
context; full histories travel on the events for the UI.
"""

from __future__ import annotations

import asyncio
import enum
import logging
import time
import uuid
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import AsyncIterator, Awaitable, Callable

from devpilot.agent.cancellation import CancelToken
from devpilot.agent.constants import (
    AGGREGATE_SEPARATOR,
    CONTINUE_MESSAGE,
    SPAWN_TOOL_NAME,
    SUBAGENT_CANCELLED_MESSAGE,
    SUMMARY_MAX_CHARS,
)
from devpilot.agent.errors import OperationCancelled
from devpilot.agent.events import (
    AgentEvent,
    ErrorEvent,
    StoppedEvent,
    SubagentCancelledEvent,
    SubagentCompleteEvent,
    SubagentConfirmedEvent,
    SubagentErrorEvent,
    SubagentMaxIterationsEvent,
    SubagentProgressEvent,
    SubagentRequestEvent,
    SubagentStartEvent,
    TurnCompleteEvent,
)
from devpilot.agent.loop import AgentLoop, LoopStatus
from devpilot.agent.messages import Message, history_to_dicts
from devpilot.agent.project_config import (
    ROLES,
    SubagentConfig,
    get_role_config,
    needs_confirmation,
)
from devpilot.agent.prompts import build_subagent_task_message, get_subagent_system_prompt
from devpilot.agent.providers.registry import ProviderRegistry
from devpilot.agent.tool_registry import ToolRegistry

logger = logging.getLogger(__name__)


# ── Tasks and results ───────────────────────────────────────────


@dataclass(frozen=True)
class SubagentTask:
    id: str
    description: str
    role: str  # simple, complex, researcher
    context: str | None = None
    provider: str | None = None
    model: str | None = None

    def to_dict(self) -> dict:
        d = {"id": self.id, "description": self.description, "role": self.role}
        for key in ("context", "provider", "model"):
            value = getattr(self, key)
            if value is not None:
                d[key] = value
        return d

    @classmethod
    def from_dict(cls, d: dict) -> SubagentTask:
        return cls(
            id=d["id"],
            description=d.get("description", ""),
            role=d.get("role", "simple"),
            context=d.get("context"),
            provider=d.get("provider"),
            model=d.get("model"),
        )


class SubagentStatus(str, enum.Enum):
    COMPLETED = "completed"
    ERROR = "error"
    CANCELLED = "cancelled"
    MAX_ITERATIONS = "max_iterations"


@dataclass
class SubagentResult:
    task_id: str
    summary: str
    full_history: list[Message] = field(default_factory=list)
    status: SubagentStatus = SubagentStatus.COMPLETED
    error: str | None = None
    iterations: int = 0

    def to_dict(self) -> dict:
        return {
            "task_id": self.task_id,
            "summary": self.summary,
            "full_history": history_to_dicts(self.full_history),
            "status": self.status.value,
            "error": self.error,
            "iterations": self.iterations,
        }


ConfirmCallback = Callable[[list[SubagentTask], str], Awaitable["list[SubagentTask] | None"]]


def truncate_summary(text: str, limit: int = SUMMARY_MAX_CHARS) -> str:
    text = text.strip()
    if len(text) <= limit:
        return text
    return text[: limit - 3].rstrip() + "..."


def aggregate_summaries(tasks: list[SubagentTask], results: dict[str, SubagentResult]) -> str:
    """One block per task, in the original order, for the parent's tool result."""
    sections = []
    for i, task in enumerate(tasks):
        result = results.get(task.id)
        if result is None:
            body = "(no result)"
        elif result.status == SubagentStatus.ERROR:
            body = f"Error: {result.error}"
        elif result.status == SubagentStatus.MAX_ITERATIONS:
            body = (
                f"Stopped after reaching max iterations ({result.iterations}). "
                "The task can be continued."
            )
            if result.summary:
                body += f"\n\n{result.summary}"
        elif result.status == SubagentStatus.CANCELLED:
            body = "Cancelled."
        else:
            body = result.summary or "(no result)"
        sections.append(f"## Task {i + 1}: {task.description}\n\n{body}")
    return AGGREGATE_SEPARATOR.join(sections)


# ── Child runs ──────────────────────────────────────────────────


_DONE = object()
_TIMED_OUT = object()


@dataclass
class _ChildRun:
    task: SubagentTask
    deadline: float | None
    cancel_token: CancelToken
    events: AsyncIterator[AgentEvent] | None = None
    loop: AgentLoop | None = None


async def _next_event(events: AsyncIterator[AgentEvent]):
    try:
        return await events.__anext__()
    except StopAsyncIteration:
        return _DONE


class SubagentOrchestrator:
    def __init__(
        self,
        providers: ProviderRegistry,
        tools: ToolRegistry,
        config: SubagentConfig,
        working_dir: str | Path,
        *,
        parent_provider: str | None = None,
        parent_model: str | None = None,
        cancel_token: CancelToken | None = None,
        sleep: Callable[[float], Awaitable[object]] | None = None,
    ) -> None:
        self.providers = providers
        self.tools = tools.without(SPAWN_TOOL_NAME)
        self.config = config
        self.working_dir = Path(working_dir)
        self.parent_provider = parent_provider
        self.parent_model = parent_model
        self.cancel_token = cancel_token or CancelToken()
        self._sleep = sleep

    # ------------------------------------------------------------------
    # Task construction
    # ------------------------------------------------------------------

    def create_tasks(self, tool_input: dict) -> list[SubagentTask]:
        raw_tasks = tool_input.get("tasks") if isinstance(tool_input, dict) else None
        if not isinstance(raw_tasks, list) or not raw_tasks:
            raise ValueError("task requires a non-empty 'tasks' array")

        batch_id = uuid.uuid4().hex[:12]
        tasks = []
        for i, raw in enumerate(raw_tasks):
            if not isinstance(raw, dict) or not raw.get("description"):
                raise ValueError(f"tasks[{i}] requires a description")
            role = raw.get("role") or "simple"
            if role not in ROLES:
                raise ValueError(f"tasks[{i}] has unknown role '{role}'")
            tasks.append(
                SubagentTask(
                    id=f"subagent_{batch_id}_{i}",
                    description=str(raw["description"]),
                    role=role,
                    context=raw.get("context") or None,
                )
            )
        return tasks

    def prepare(self, tool_input: dict) -> SubagentBatch:
        return SubagentBatch(self, self.create_tasks(tool_input))

    def resolve(self, task: SubagentTask) -> tuple[str, str, int]:
        """Provider, model and iteration cap for a task.

        The first of task override, parent override and role config that names
        a provider wins. Its model goes with it; a model is never borrowed
        from a source that named a different provider.
        """
        role = get_role_config(self.config, task.role)
        for provider, model in (
            (task.provider, task.model),
            (self.parent_provider, self.parent_model),
        ):
            if provider:
                if not model and role.provider == provider:
                    model = role.model
                elif not model:
                    model = self.providers.default_model(provider)
                return provider, model, role.max_iterations
        return role.provider, task.model or role.model, role.max_iterations

    def create_child(
        self,
        task: SubagentTask,
        history: list[Message] | None = None,
        max_iterations: int | None = None,
        cancel_token: CancelToken | None = None,
    ) -> AgentLoop:
        provider_name, model, role_cap = self.resolve(task)
        provider = self.providers.get_provider(provider=provider_name, model=model)
        if history is None:
            # Only the seeded task message; never the parent's conversation
            history = [
                Message(
                    role="user",
                    content=build_subagent_task_message(task.description, task.role, task.context),
                )
            ]
        return AgentLoop(
            provider,
            self.tools,
            get_subagent_system_prompt(self.working_dir, self.tools.list_tools()),
            history,
            self.working_dir,
            max_iterations=max_iterations or role_cap,
            cancel_token=cancel_token or self.cancel_token.child(),
            sleep=self._sleep,
            name=task.id,
        )

    # ------------------------------------------------------------------
    # Running
    # ------------------------------------------------------------------

    async def _drive(
        self,
        run: _ChildRun,
        results: dict[str, SubagentResult],
        history: list[Message] | None = None,
        max_iterations: int | None = None,
    ) -> AsyncIterator[AgentEvent]:
        task = run.task
        try:
            provider_name, model, _ = self.resolve(task)
        except Exception as e:
            logger.warning("subagent %s could not be configured: %s", task.id, e)
            yield self._record_error(run, results, str(e))
            return

        yield SubagentStartEvent(
            task_id=task.id,
            description=task.description,
            role=task.role,
            provider=provider_name,
            model=model,
        )
        logger.info("subagent %s started (%s %s:%s)", task.id, task.role, provider_name, model)

        try:
            run.loop = self.create_child(task, history, max_iterations, run.cancel_token)
            async for event in run.loop.run():
                # Terminal loop events are replaced by subagent_* outcomes
                if isinstance(event, (TurnCompleteEvent, ErrorEvent, StoppedEvent)):
                    continue
                yield SubagentProgressEvent(task_id=task.id, event=event)
        except Exception as e:
            error = str(e) or type(e).__name__
            logger.warning("subagent %s failed: %s", task.id, error)
            yield self._record_error(run, results, error)
            return

        loop = run.loop
        history_dicts = history_to_dicts(loop.messages)
        if loop.status == LoopStatus.DONE:
            summary = truncate_summary(loop.final_text)
            results[task.id] = SubagentResult(
                task_id=task.id,
                summary=summary,
                full_history=loop.messages,
                status=SubagentStatus.COMPLETED,
                iterations=loop.iterations,
            )
            logger.info("subagent %s completed in %d iterations", task.id, loop.iterations)
            yield SubagentCompleteEvent(task_id=task.id, summary=summary, full_history=history_dicts)
        elif loop.status == LoopStatus.MAX_ITERATIONS:
            results[task.id] = SubagentResult(
                task_id=task.id,
                summary=truncate_summary(loop.last_text),
                full_history=loop.messages,
                status=SubagentStatus.MAX_ITERATIONS,
                iterations=loop.iterations,
            )
            yield SubagentMaxIterationsEvent(
                task_id=task.id, iterations=loop.iterations, full_history=history_dicts
            )
        else:
            results[task.id] = SubagentResult(
                task_id=task.id,
                summary="",
                full_history=loop.messages,
                status=SubagentStatus.CANCELLED,
                iterations=loop.iterations,
            )
            yield SubagentCancelledEvent(task_ids=[task.id])

    @staticmethod
    def _record_error(
        run: _ChildRun, results: dict[str, SubagentResult], error: str
    ) -> SubagentErrorEvent:
        history = run.loop.messages if run.loop is not None else []
        results[run.task.id] = SubagentResult(
            task_id=run.task.id,
            summary=f"Error: {error}",
            full_history=history,
            status=SubagentStatus.ERROR,
            error=error,
            iterations=run.loop.iterations if run.loop is not None else 0,
        )
        return SubagentErrorEvent(
            task_id=run.task.id, error=error, full_history=history_to_dicts(history)
        )

    def _start(
        self,
        task: SubagentTask,
        results: dict[str, SubagentResult],
        history: list[Message] | None = None,
        max_iterations: int | None = None,
    ) -> _ChildRun:
        timeout = self.config.timeout
        run = _ChildRun(
            task=task,
            deadline=time.monotonic() + timeout if timeout and timeout > 0 else None,
            cancel_token=self.cancel_token.child(),
        )
        run.events = self._drive(run, results, history, max_iterations)
        return run

    @staticmethod
    async def _step(run: _ChildRun):
        timeout = None
        if run.deadline is not None:
            timeout = max(0.0, run.deadline - time.monotonic())
        try:
            return await asyncio.wait_for(_next_event(run.events), timeout=timeout)
        except asyncio.TimeoutError:
            return _TIMED_OUT

    async def run_tasks(
        self,
        tasks: list[SubagentTask],
        results: dict[str, SubagentResult],
    ) -> AsyncIterator[AgentEvent]:
        """Run tasks concurrently and merge their events round-robin.

        Each round advances every active child by one event concurrently and
        re-emits what they produced in child order. At most
        ``config.max_concurrent`` children are active; the rest start as
        slots free up.
        """
        queue = list(tasks)
        limit = max(1, self.config.max_concurrent)
        active: list[_ChildRun] = []

        while queue or active:
            while queue and len(active) < limit:
                active.append(self._start(queue.pop(0), results))

            outcomes = await asyncio.gather(*(self._step(run) for run in active))

            still_active = []
            for run, outcome in zip(active, outcomes):
                if outcome is _DONE:
                    continue
                if outcome is _TIMED_OUT:
                    run.cancel_token.cancel("timeout")
                    logger.warning(
                        "subagent %s timed out after %s seconds", run.task.id, self.config.timeout
                    )
                    yield self._record_error(
                        run, results, f"Timed out after {self.config.timeout:g} seconds"
                    )
                    continue
                yield outcome
                still_active.append(run)
            active = still_active

    async def continue_task(
        self,
        task: SubagentTask,
        history: list[Message],
        extra_iterations: int | None = None,
        results: dict[str, SubagentResult] | None = None,
    ) -> AsyncIterator[AgentEvent]:
        """Resume a child from its accumulated history with a fresh budget."""
        resumed = list(history) + [Message(role="user", content=CONTINUE_MESSAGE)]
        results = results if results is not None else {}
        run = self._start(task, results, history=resumed, max_iterations=extra_iterations)
        while True:
            outcome = await self._step(run)
            if outcome is _DONE:
                return
            if outcome is _TIMED_OUT:
                run.cancel_token.cancel("timeout")
                yield self._record_error(
                    run, results, f"Timed out after {self.config.timeout:g} seconds"
                )
                return
            yield outcome


# ── Batches ─────────────────────────────────────────────────────


class SubagentBatch:
    """One spawn request: confirmation, execution and the aggregate result."""

    def __init__(self, orchestrator: SubagentOrchestrator, tasks: list[SubagentTask]) -> None:
        self.orchestrator = orchestrator
        self.tasks = tasks
        self.request_id = f"req_{uuid.uuid4().hex}"
        self.confirmed: list[SubagentTask] = []
        self.results: dict[str, SubagentResult] = {}
        self.cancelled = False
        self.output = ""

    def _apply_edits(self, answer: list[SubagentTask]) -> list[SubagentTask]:
        """Keep proposed tasks the user kept; only provider/model may change."""
        edits = {t.id: t for t in answer}
        confirmed = []
        for task in self.tasks:
            edited = edits.get(task.id)
            if edited is None:
                continue
            confirmed.append(replace(task, provider=edited.provider, model=edited.model))
        return confirmed

    async def run(self, confirm: ConfirmCallback | None) -> AsyncIterator[AgentEvent]:
        config = self.orchestrator.config
        confirmed = self.tasks

        if needs_confirmation(config, len(self.tasks)):
            yield SubagentRequestEvent(request_id=self.request_id, tasks=self.tasks)
            answer = None
            if confirm is not None:
                try:
                    answer = await self.orchestrator.cancel_token.guard(
                        confirm(self.tasks, self.request_id)
                    )
                except OperationCancelled:
                    logger.info("subagent request %s abandoned: run cancelled", self.request_id)
            confirmed = self._apply_edits(answer) if answer else []
            if not confirmed:
                logger.info("subagent request %s declined", self.request_id)
                self.cancelled = True
                self.output = SUBAGENT_CANCELLED_MESSAGE
                yield SubagentCancelledEvent(task_ids=[t.id for t in self.tasks])
                return
            yield SubagentConfirmedEvent(tasks=confirmed)

        self.confirmed = confirmed
        async for event in self.orchestrator.run_tasks(confirmed, self.results):
            yield event
        self.output = aggregate_summaries(confirmed, self.results)

    @property
    def details(self) -> dict | None:
        if self.cancelled:
            return None
        return {
            "type": "subagent",
            "data": {
                "tasks": [t.to_dict() for t in self.confirmed],
                "results": [
                    self.results[t.id].to_dict() for t in self.confirmed if t.id in self.results
                ],
            },
        }
