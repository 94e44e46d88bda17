"""Anthropic Messages API adapter.

Streams raw message events and normalizes them:

    message_start        -> input token usage
    content_block_start  -> ToolStart for tool_use blocks (keyed by block index)
    content_block_delta  -> TextDelta / ToolInputDelta
    content_block_stop   -> ToolComplete with the parsed accumulated JSON
    message_delta        -> output token usage
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import AsyncIterator

import httpx
from anthropic import AsyncAnthropic

from devpilot.agent.constants import DEFAULT_MAX_TOKENS
from devpilot.agent.events import Usage
from devpilot.agent.messages import Message
from devpilot.agent.providers.base import (
    LLMProvider,
    MessageComplete,
    ModelInfo,
    ProviderEvent,
    TextDelta,
    ToolComplete,
    ToolInputDelta,
    ToolStart,
    parse_tool_input,
)
from devpilot.agent.tool_registry import ToolDefinition

logger = logging.getLogger(__name__)

FALLBACK_MODELS = [
    ("claude-opus-4-5-20251101", "Claude Opus 4.5"),
    ("claude-opus-4-20250514", "Claude Opus 4"),
    ("claude-sonnet-4-5-20250514", "Claude Sonnet 4.5"),
    ("claude-sonnet-4-20250514", "Claude Sonnet 4"),
    ("claude-3-5-haiku-20241022", "Claude 3.5 Haiku"),
]


@dataclass
class _PendingTool:
    id: str
    name: str
    json: str = ""
    done: bool = False


class AnthropicProvider(LLMProvider):
    name = "anthropic"

    def __init__(
        self,
        model: str,
        api_key: str | None = None,
        *,
        max_tokens: int = DEFAULT_MAX_TOKENS,
        timeout: float = 120.0,
        client: AsyncAnthropic | None = None,
    ) -> None:
        super().__init__(model)
        self.max_tokens = max_tokens
        self.client = client or AsyncAnthropic(
            api_key=api_key,
            timeout=httpx.Timeout(timeout, connect=10.0),
        )

    @staticmethod
    def convert_messages(messages: list[Message]) -> list[dict]:
        # Tool results for one turn travel together in a single user message.
        return [m.to_dict() for m in messages]

    @staticmethod
    def convert_tools(tools: list[ToolDefinition]) -> list[dict]:
        return [
            {
                "name": t.name,
                "description": t.description,
                "input_schema": t.parameters,
            }
            for t in tools
        ]

    async def stream(
        self,
        messages: list[Message],
        system_prompt: str,
        tools: list[ToolDefinition],
    ) -> AsyncIterator[ProviderEvent]:
        kwargs: dict = {
            "model": self.model,
            "max_tokens": self.max_tokens,
            "system": system_prompt,
            "messages": self.convert_messages(messages),
            "stream": True,
        }
        if tools:
            kwargs["tools"] = self.convert_tools(tools)

        stream = await self.client.messages.create(**kwargs)

        usage = Usage()
        pending: dict[int, _PendingTool] = {}

        async for event in stream:
            etype = getattr(event, "type", None)

            if etype == "message_start":
                msg_usage = getattr(event.message, "usage", None)
                if msg_usage is not None:
                    usage.input_tokens = getattr(msg_usage, "input_tokens", 0) or 0

            elif etype == "content_block_start":
                block = event.content_block
                if block.type == "tool_use":
                    pending[event.index] = _PendingTool(id=block.id, name=block.name)
                    yield ToolStart(id=block.id, name=block.name)

            elif etype == "content_block_delta":
                delta = event.delta
                if delta.type == "text_delta":
                    yield TextDelta(text=delta.text)
                elif delta.type == "input_json_delta":
                    tool = pending.get(event.index)
                    if tool is not None and delta.partial_json:
                        tool.json += delta.partial_json
                        yield ToolInputDelta(id=tool.id, fragment=delta.partial_json)

            elif etype == "content_block_stop":
                tool = pending.get(event.index)
                if tool is not None and not tool.done:
                    tool.done = True
                    yield ToolComplete(
                        id=tool.id,
                        name=tool.name,
                        input=parse_tool_input(tool.json, tool.name),
                    )

            elif etype == "message_delta":
                delta_usage = getattr(event, "usage", None)
                if delta_usage is not None:
                    usage.output_tokens = getattr(delta_usage, "output_tokens", 0) or 0

        # A truncated stream may end without content_block_stop.
        for tool in pending.values():
            if not tool.done:
                tool.done = True
                yield ToolComplete(
                    id=tool.id, name=tool.name, input=parse_tool_input(tool.json, tool.name)
                )

        yield MessageComplete(usage=usage)

    async def list_models(self) -> list[ModelInfo]:
        try:
            page = await self.client.models.list()
            return [
                ModelInfo(
                    id=m.id,
                    name=getattr(m, "display_name", None) or m.id,
                    provider=self.name,
                )
                for m in page.data
            ]
        except Exception as e:
            logger.warning("Failed to list Anthropic models, using fallback: %s", e)
            return [ModelInfo(id=i, name=n, provider=self.name) for i, n in FALLBACK_MODELS]
