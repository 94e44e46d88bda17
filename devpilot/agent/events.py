"""AgentEvent variants yielded by the agent loop and the subagent orchestrator.

Every variant carries a ``type`` tag and serializes itself with ``to_dict()``
for the SSE layer. Known types:
    text_delta               streamed model text: text
    tool_start               model began a tool call: id, name
    tool_input_delta         raw argument JSON fragment: id, partial_json
    tool_running             about to execute: id, name, input
    tool_result              execution done: id, output, details, error
    doom_loop                repeated identical call suppressed: id, name, error
    retry_countdown          rate limited, sleeping: seconds, reason
    turn_complete            final event of a successful turn: usage
    error                    terminal failure: error
    stopped                  run cancelled
    subagent_*               orchestrator lifecycle, see below
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Any, ClassVar, Union


@dataclass
class Usage:
    input_tokens: int = 0
    output_tokens: int = 0

    def add(self, other: Usage) -> None:
        self.input_tokens += other.input_tokens
        self.output_tokens += other.output_tokens

    def to_dict(self) -> dict:
        return {"input_tokens": self.input_tokens, "output_tokens": self.output_tokens}


class _Event:
    type: ClassVar[str]

    def to_dict(self) -> dict:
        return {"type": self.type, **asdict(self)}


# ── Loop events ─────────────────────────────────────────────────


@dataclass
class TextDeltaEvent(_Event):
    type: ClassVar[str] = "text_delta"
    text: str


@dataclass
class ToolStartEvent(_Event):
    type: ClassVar[str] = "tool_start"
    id: str
    name: str


@dataclass
class ToolInputDeltaEvent(_Event):
    type: ClassVar[str] = "tool_input_delta"
    id: str
    partial_json: str


@dataclass
class ToolRunningEvent(_Event):
    type: ClassVar[str] = "tool_running"
    id: str
    name: str
    input: dict = field(default_factory=dict)


@dataclass
class ToolResultEvent(_Event):
    type: ClassVar[str] = "tool_result"
    id: str
    output: str
    details: dict | None = None
    error: str | None = None


@dataclass
class DoomLoopEvent(_Event):
    type: ClassVar[str] = "doom_loop"
    id: str
    name: str
    error: str


@dataclass
class RetryCountdownEvent(_Event):
    type: ClassVar[str] = "retry_countdown"
    seconds: int
    reason: str


@dataclass
class TurnCompleteEvent(_Event):
    type: ClassVar[str] = "turn_complete"
    usage: Usage = field(default_factory=Usage)


@dataclass
class ErrorEvent(_Event):
    type: ClassVar[str] = "error"
    error: str


@dataclass
class StoppedEvent(_Event):
    type: ClassVar[str] = "stopped"
    message: str = "Agent stopped by user"


# ── Subagent events ─────────────────────────────────────────────


@dataclass
class SubagentRequestEvent(_Event):
    type: ClassVar[str] = "subagent_request"
    request_id: str
    tasks: list[Any] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "type": self.type,
            "request_id": self.request_id,
            "tasks": [t.to_dict() for t in self.tasks],
        }


@dataclass
class SubagentConfirmedEvent(_Event):
    type: ClassVar[str] = "subagent_confirmed"
    tasks: list[Any] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {"type": self.type, "tasks": [t.to_dict() for t in self.tasks]}


@dataclass
class SubagentCancelledEvent(_Event):
    type: ClassVar[str] = "subagent_cancelled"
    task_ids: list[str] = field(default_factory=list)


@dataclass
class SubagentStartEvent(_Event):
    type: ClassVar[str] = "subagent_start"
    task_id: str
    description: str
    role: str
    provider: str
    model: str


@dataclass
class SubagentProgressEvent(_Event):
    type: ClassVar[str] = "subagent_progress"
    task_id: str
    event: AgentEvent

    def to_dict(self) -> dict:
        return {"type": self.type, "task_id": self.task_id, "event": self.event.to_dict()}


@dataclass
class SubagentCompleteEvent(_Event):
    type: ClassVar[str] = "subagent_complete"
    task_id: str
    summary: str
    full_history: list[dict] = field(default_factory=list)


@dataclass
class SubagentErrorEvent(_Event):
    type: ClassVar[str] = "subagent_error"
    task_id: str
    error: str
    full_history: list[dict] = field(default_factory=list)


@dataclass
class SubagentMaxIterationsEvent(_Event):
    type: ClassVar[str] = "subagent_max_iterations"
    task_id: str
    iterations: int
    full_history: list[dict] = field(default_factory=list)


AgentEvent = Union[
    TextDeltaEvent,
    ToolStartEvent,
    ToolInputDeltaEvent,
    ToolRunningEvent,
    ToolResultEvent,
    DoomLoopEvent,
    RetryCountdownEvent,
    TurnCompleteEvent,
    ErrorEvent,
    StoppedEvent,
    SubagentRequestEvent,
    SubagentConfirmedEvent,
    SubagentCancelledEvent,
    SubagentStartEvent,
    SubagentProgressEvent,
    SubagentCompleteEvent,
    SubagentErrorEvent,
    SubagentMaxIterationsEvent,
]

TERMINAL_EVENT_TYPES = frozenset({"turn_complete", "error", "stopped"})
