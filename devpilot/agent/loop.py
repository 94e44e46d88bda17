"""AgentLoop: the bounded inference / tool-execution cycle.

One loop owns one conversation. Each iteration streams a model turn through a
provider adapter, re-emits the normalized events as AgentEvents, and, when the
model asked for tools, executes them in call order and folds the results back
as a single user message before the next iteration.

The same class drives the top-level chat and every subagent. Only the
top-level loop gets a subagent orchestrator, which is what exposes the spawn
tool; children never see it, fixing the nesting depth at one.
"""

from __future__ import annotations

import enum
import logging
from contextlib import aclosing
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, AsyncIterator, Awaitable, Callable

from devpilot.agent.cancellation import CancelToken
from devpilot.agent.constants import (
    BACKOFF_BASE_SECONDS,
    ERROR_EVENT_MAX_CHARS,
    MAX_BACKOFF_SECONDS,
    MAX_ITERATIONS,
    RATE_LIMIT_REASON,
    RATE_LIMIT_STATUS_CODE,
    SPAWN_TOOL_NAME,
    TOOL_RESULT_LOG_PREVIEW_CHARS,
)
from devpilot.agent.doom_loop import DoomLoopDetector, doom_loop_error, doom_loop_result
from devpilot.agent.errors import OperationCancelled
from devpilot.agent.events import (
    AgentEvent,
    DoomLoopEvent,
    ErrorEvent,
    RetryCountdownEvent,
    StoppedEvent,
    TextDeltaEvent,
    ToolInputDeltaEvent,
    ToolResultEvent,
    ToolRunningEvent,
    ToolStartEvent,
    TurnCompleteEvent,
    Usage,
)
from devpilot.agent.messages import Message, TextBlock, ToolResultBlock, ToolUseBlock
from devpilot.agent.providers.base import (
    LLMProvider,
    MessageComplete,
    TextDelta,
    ToolComplete,
    ToolInputDelta,
    ToolStart,
)
from devpilot.agent.tool_registry import (
    ToolContext,
    ToolDefinition,
    ToolRegistry,
    spawn_tool_definition,
)

if TYPE_CHECKING:
    from devpilot.agent.subagents import ConfirmCallback, SubagentOrchestrator

logger = logging.getLogger(__name__)

CANCELLED_TOOL_RESULT = "Cancelled before execution"
_STREAM_END = object()


class LoopStatus(str, enum.Enum):
    RUNNING = "running"
    DONE = "done"
    MAX_ITERATIONS = "max_iterations"
    FATAL = "fatal"
    CANCELLED = "cancelled"


def is_rate_limit_error(exc: BaseException) -> bool:
    if getattr(exc, "status_code", None) == RATE_LIMIT_STATUS_CODE:
        return True
    return "rate limit" in str(exc).lower()


def backoff_seconds(iteration: int) -> int:
    return min(MAX_BACKOFF_SECONDS, (2 ** iteration) * BACKOFF_BASE_SECONDS)


async def _next_provider_event(stream):
    try:
        return await stream.__anext__()
    except StopAsyncIteration:
        return _STREAM_END


@dataclass
class _PendingTool:
    id: str
    name: str
    input: dict = field(default_factory=dict)


@dataclass
class _Turn:
    text_parts: list[str] = field(default_factory=list)
    tools: dict[str, _PendingTool] = field(default_factory=dict)

    @property
    def text(self) -> str:
        return "".join(self.text_parts)


class AgentLoop:
    """Drives one conversation until the model stops calling tools.

    ``messages`` is the loop's own history and is appended to in place.
    After ``run()`` finishes, ``status`` tells how it ended, ``final_text``
    holds the last assistant text and ``usage`` the accumulated tokens.
    """

    def __init__(
        self,
        provider: LLMProvider,
        tools: ToolRegistry,
        system_prompt: str,
        messages: list[Message],
        working_dir: str | Path,
        *,
        max_iterations: int = MAX_ITERATIONS,
        subagents: SubagentOrchestrator | None = None,
        confirm: ConfirmCallback | None = None,
        cancel_token: CancelToken | None = None,
        sleep: Callable[[float], Awaitable[object]] | None = None,
        name: str = "agent",
    ) -> None:
        self.provider = provider
        self.tools = tools
        self.system_prompt = system_prompt
        self.messages = messages
        self.working_dir = Path(working_dir)
        self.max_iterations = max_iterations
        self.subagents = subagents
        self.confirm = confirm
        self.cancel_token = cancel_token or CancelToken()
        self._sleep = sleep or self.cancel_token.sleep
        self.name = name

        self.status = LoopStatus.RUNNING
        self.iterations = 0
        self.final_text = ""
        self.last_text = ""
        self.error: str | None = None
        self.usage = Usage()
        self.doom_loop = DoomLoopDetector()

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def tool_definitions(self) -> list[ToolDefinition]:
        """Current tool set. Re-read every iteration; sources may change."""
        tools = [t for t in self.tools.definitions() if t.name != SPAWN_TOOL_NAME]
        if self.subagents is not None:
            tools.append(spawn_tool_definition())
        return tools

    @property
    def cancelled(self) -> bool:
        return self.cancel_token.is_cancelled

    def _stop(self) -> StoppedEvent:
        self.status = LoopStatus.CANCELLED
        logger.info("%s: stopped after %d iterations", self.name, self.iterations)
        return StoppedEvent()

    # ------------------------------------------------------------------
    # Main loop
    # ------------------------------------------------------------------

    async def run(self) -> AsyncIterator[AgentEvent]:
        self.status = LoopStatus.RUNNING

        while self.iterations < self.max_iterations:
            if self.cancelled:
                yield self._stop()
                return

            self.iterations += 1
            turn = _Turn()

            # --- Model call ---
            try:
                async for event in self._stream_turn(turn):
                    yield event
            except Exception as e:
                if is_rate_limit_error(e):
                    seconds = backoff_seconds(self.iterations)
                    logger.warning(
                        "%s: rate limited on iteration %d, retrying in %ds",
                        self.name, self.iterations, seconds,
                    )
                    # Retries do not count against the cap
                    self.iterations -= 1
                    yield RetryCountdownEvent(seconds=seconds, reason=RATE_LIMIT_REASON)
                    await self._sleep(seconds)
                    continue

                self.status = LoopStatus.FATAL
                self.error = str(e) or type(e).__name__
                logger.error("%s: provider call failed: %s", self.name, self.error)
                yield ErrorEvent(error=self.error[:ERROR_EVENT_MAX_CHARS])
                raise

            if turn.text:
                self.last_text = turn.text

            if self.cancelled:
                yield self._stop()
                return

            # --- No tools: the turn is done ---
            if not turn.tools:
                self.final_text = turn.text
                if self.final_text:
                    self.messages.append(Message(role="assistant", content=self.final_text))
                self.status = LoopStatus.DONE
                yield TurnCompleteEvent(
                    usage=Usage(self.usage.input_tokens, self.usage.output_tokens)
                )
                return

            # --- Tool execution ---
            content: list = []
            if turn.text:
                content.append(TextBlock(text=turn.text))
            content.extend(
                ToolUseBlock(id=t.id, name=t.name, input=t.input) for t in turn.tools.values()
            )
            self.messages.append(Message(role="assistant", content=content))

            results: list[ToolResultBlock] = []
            for tool in turn.tools.values():
                if self.cancelled:
                    results.append(
                        ToolResultBlock(tool_use_id=tool.id, content=CANCELLED_TOOL_RESULT, is_error=True)
                    )
                    continue
                async for event in self._run_tool(tool, results):
                    yield event

            self.messages.append(Message(role="user", content=results))

            if self.cancelled:
                yield self._stop()
                return

        self.status = LoopStatus.MAX_ITERATIONS
        logger.warning("%s: max iterations (%d) reached", self.name, self.max_iterations)
        yield ErrorEvent(error=f"Max iterations ({self.max_iterations}) reached")

    async def _stream_turn(self, turn: _Turn) -> AsyncIterator[AgentEvent]:
        stream = self.provider.stream(self.messages, self.system_prompt, self.tool_definitions())
        async with aclosing(stream):
            while True:
                try:
                    event = await self.cancel_token.guard(_next_provider_event(stream))
                except OperationCancelled:
                    break
                if event is _STREAM_END:
                    break

                if isinstance(event, TextDelta):
                    turn.text_parts.append(event.text)
                    yield TextDeltaEvent(text=event.text)

                elif isinstance(event, ToolStart):
                    turn.tools[event.id] = _PendingTool(id=event.id, name=event.name)
                    yield ToolStartEvent(id=event.id, name=event.name)

                elif isinstance(event, ToolInputDelta):
                    yield ToolInputDeltaEvent(id=event.id, partial_json=event.fragment)

                elif isinstance(event, ToolComplete):
                    pending = turn.tools.get(event.id)
                    if pending is None:
                        pending = _PendingTool(id=event.id, name=event.name)
                        turn.tools[event.id] = pending
                    pending.input = event.input

                elif isinstance(event, MessageComplete):
                    self.usage.add(event.usage)

                if self.cancelled:
                    break

    async def _run_tool(
        self, tool: _PendingTool, results: list[ToolResultBlock]
    ) -> AsyncIterator[AgentEvent]:
        if self.doom_loop.check(tool.name, tool.input):
            error = doom_loop_error(tool.name)
            yield ToolResultEvent(id=tool.id, output="", error=error)
            yield DoomLoopEvent(id=tool.id, name=tool.name, error=error)
            results.append(
                ToolResultBlock(tool_use_id=tool.id, content=doom_loop_result(tool.name), is_error=True)
            )
            return

        yield ToolRunningEvent(id=tool.id, name=tool.name, input=tool.input)

        if tool.name == SPAWN_TOOL_NAME and self.subagents is not None:
            async for event in self._run_subagents(tool, results):
                yield event
            return

        try:
            result = await self.cancel_token.guard(
                self.tools.execute(
                    tool.name,
                    tool.input,
                    ToolContext(working_dir=self.working_dir, cancel_token=self.cancel_token),
                )
            )
        except OperationCancelled:
            logger.info("%s: tool %s cancelled while running", self.name, tool.name)
            yield ToolResultEvent(id=tool.id, output="", error=CANCELLED_TOOL_RESULT)
            results.append(
                ToolResultBlock(tool_use_id=tool.id, content=CANCELLED_TOOL_RESULT, is_error=True)
            )
            return
        except Exception as exc:
            message = str(exc) or type(exc).__name__
            logger.exception("%s: tool %s failed", self.name, tool.name)
            yield ToolResultEvent(id=tool.id, output="", error=message)
            results.append(
                ToolResultBlock(tool_use_id=tool.id, content=f"Error: {message}", is_error=True)
            )
            return

        logger.debug(
            "%s: %s returned %s", self.name, tool.name, result.output[:TOOL_RESULT_LOG_PREVIEW_CHARS]
        )
        yield ToolResultEvent(id=tool.id, output=result.output, details=result.details)
        results.append(ToolResultBlock(tool_use_id=tool.id, content=result.output))

    async def _run_subagents(
        self, tool: _PendingTool, results: list[ToolResultBlock]
    ) -> AsyncIterator[AgentEvent]:
        try:
            batch = self.subagents.prepare(tool.input)
        except ValueError as exc:
            logger.warning("%s: invalid %s input: %s", self.name, SPAWN_TOOL_NAME, exc)
            yield ToolResultEvent(id=tool.id, output="", error=str(exc))
            results.append(
                ToolResultBlock(tool_use_id=tool.id, content=f"Error: {exc}", is_error=True)
            )
            return

        async for event in batch.run(self.confirm):
            yield event

        yield ToolResultEvent(id=tool.id, output=batch.output, details=batch.details)
        results.append(ToolResultBlock(tool_use_id=tool.id, content=batch.output))
