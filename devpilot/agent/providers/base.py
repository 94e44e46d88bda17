"""Common provider interface and the normalized streaming event protocol.

Every backend adapter turns its own wire format into the same sequence of
``ProviderEvent``s for one model turn:

    TextDelta*  (ToolStart ToolInputDelta* ToolComplete)*  MessageComplete

For any tool id, ToolStart precedes its deltas and ToolComplete fires exactly
once. MessageComplete is always last and carries the turn's token usage.
"""

from __future__ import annotations

import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import AsyncIterator, Literal, Union

from devpilot.agent.events import Usage
from devpilot.agent.messages import Message
from devpilot.agent.tool_registry import ToolDefinition

logger = logging.getLogger(__name__)

ProviderName = Literal["anthropic", "xai", "openai"]
PROVIDER_NAMES: tuple[str, ...] = ("anthropic", "xai", "openai")


# ── Provider events ─────────────────────────────────────────────


@dataclass
class TextDelta:
    text: str


@dataclass
class ToolStart:
    id: str
    name: str


@dataclass
class ToolInputDelta:
    id: str
    fragment: str


@dataclass
class ToolComplete:
    id: str
    name: str
    input: dict = field(default_factory=dict)


@dataclass
class MessageComplete:
    usage: Usage = field(default_factory=Usage)


ProviderEvent = Union[TextDelta, ToolStart, ToolInputDelta, ToolComplete, MessageComplete]


@dataclass
class ModelInfo:
    id: str
    name: str
    provider: str

    def to_dict(self) -> dict:
        return {"id": self.id, "name": self.name, "provider": self.provider}


def parse_tool_input(raw: str, tool_name: str = "") -> dict:
    """Parse accumulated argument JSON, falling back to an empty map."""
    if not raw:
        return {}
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError:
        logger.warning("invalid JSON arguments for tool %s: %.200s", tool_name, raw)
        return {}
    return parsed if isinstance(parsed, dict) else {}


class LLMProvider(ABC):
    """One configured backend (provider + model)."""

    name: str

    def __init__(self, model: str) -> None:
        self.model = model

    @abstractmethod
    def stream(
        self,
        messages: list[Message],
        system_prompt: str,
        tools: list[ToolDefinition],
    ) -> AsyncIterator[ProviderEvent]:
        """Stream one model turn. Transport errors propagate; no retries here."""
        ...

    @abstractmethod
    async def list_models(self) -> list[ModelInfo]:
        """Best-effort model discovery. Never raises."""
        ...

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.name}:{self.model}>"
