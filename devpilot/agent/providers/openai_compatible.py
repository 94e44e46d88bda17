"""Chat-completions adapter shared by OpenAI and xAI.

Wraps ``AsyncOpenAI`` pointed at the backend's base URL. Tool calls arrive as
index-keyed fragments spread over many chunks: the name may come after the
first argument fragment and the backend may end the stream without a
``finish_reason``. The adapter buffers accordingly so the normalized event
order always holds.
"""

from __future__ import annotations

import json
import logging
import uuid
from dataclasses import dataclass
from typing import AsyncIterator

import httpx
from openai import AsyncOpenAI

from devpilot.agent.constants import DEFAULT_MAX_TOKENS, THINKING_PREFIX
from devpilot.agent.events import Usage
from devpilot.agent.messages import Message, TextBlock, ToolResultBlock, ToolUseBlock
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

XAI_BASE_URL = "https://api.x.ai/v1"

FALLBACK_MODELS: dict[str, list[tuple[str, str]]] = {
    "xai": [
        ("grok-4-1-fast-reasoning", "Grok 4.1 Fast Reasoning"),
        ("grok-4-1-fast", "Grok 4.1 Fast"),
        ("grok-4-0125", "Grok 4"),
        ("grok-3-beta", "Grok 3 Beta"),
    ],
    "openai": [
        ("gpt-5.1", "GPT-5.1"),
        ("gpt-4.1", "GPT-4.1"),
        ("o3", "o3"),
    ],
}


@dataclass
class _PendingCall:
    id: str
    name: str = ""
    arguments: str = ""
    started: bool = False
    completed: bool = False


class OpenAICompatibleProvider(LLMProvider):
    def __init__(
        self,
        name: str,
        model: str,
        api_key: str | None = None,
        base_url: str | None = None,
        *,
        max_tokens: int = DEFAULT_MAX_TOKENS,
        timeout: float = 120.0,
        client: AsyncOpenAI | None = None,
    ) -> None:
        super().__init__(model)
        self.name = name
        self.max_tokens = max_tokens
        self.client = client or AsyncOpenAI(
            api_key=api_key,
            base_url=base_url,
            timeout=httpx.Timeout(timeout, connect=10.0),
        )

    # ------------------------------------------------------------------
    # Wire conversion
    # ------------------------------------------------------------------

    @staticmethod
    def convert_messages(messages: list[Message], system_prompt: str) -> list[dict]:
        result: list[dict] = [{"role": "system", "content": system_prompt}]

        for msg in messages:
            if isinstance(msg.content, str):
                result.append({"role": msg.role, "content": msg.content})
                continue

            if msg.role == "assistant":
                text = "\n".join(b.text for b in msg.content if isinstance(b, TextBlock))
                tool_uses = [b for b in msg.content if isinstance(b, ToolUseBlock)]
                entry: dict = {"role": "assistant", "content": text or None}
                if tool_uses:
                    entry["tool_calls"] = [
                        {
                            "id": tu.id,
                            "type": "function",
                            "function": {
                                "name": tu.name,
                                "arguments": json.dumps(tu.input),
                            },
                        }
                        for tu in tool_uses
                    ]
                result.append(entry)
                continue

            tool_results = [b for b in msg.content if isinstance(b, ToolResultBlock)]
            for tr in tool_results:
                result.append(
                    {"role": "tool", "tool_call_id": tr.tool_use_id, "content": tr.content}
                )
            # Text travelling with tool results follows them as a user message
            texts = [b.text for b in msg.content if isinstance(b, TextBlock)]
            if texts or not tool_results:
                result.append({"role": "user", "content": "\n".join(texts)})

        return result

    @staticmethod
    def convert_tools(tools: list[ToolDefinition]) -> list[dict]:
        return [
            {
                "type": "function",
                "function": {
                    "name": t.name,
                    "description": t.description,
                    "parameters": t.parameters,
                },
            }
            for t in tools
        ]

    # ------------------------------------------------------------------
    # Streaming
    # ------------------------------------------------------------------

    async def stream(
        self,
        messages: list[Message],
        system_prompt: str,
        tools: list[ToolDefinition],
    ) -> AsyncIterator[ProviderEvent]:
        kwargs: dict = {
            "model": self.model,
            "max_tokens": self.max_tokens,
            "messages": self.convert_messages(messages, system_prompt),
            "stream": True,
            "stream_options": {"include_usage": True},
        }
        if tools:
            kwargs["tools"] = self.convert_tools(tools)

        stream = await self.client.chat.completions.create(**kwargs)

        usage = Usage()
        calls: dict[int, _PendingCall] = {}

        async for chunk in stream:
            # The usage chunk arrives last and has no choices.
            chunk_usage = getattr(chunk, "usage", None)
            if chunk_usage is not None:
                usage.input_tokens = getattr(chunk_usage, "prompt_tokens", 0) or 0
                usage.output_tokens = getattr(chunk_usage, "completion_tokens", 0) or 0

            if not chunk.choices:
                continue
            choice = chunk.choices[0]
            delta = choice.delta

            if delta is not None:
                if delta.content:
                    yield TextDelta(text=delta.content)

                reasoning = getattr(delta, "reasoning_content", None)
                if reasoning:
                    yield TextDelta(text=f"{THINKING_PREFIX}{reasoning}")

                for tc in delta.tool_calls or []:
                    call = calls.get(tc.index)
                    if call is None:
                        call = _PendingCall(id=tc.id or f"tool_{tc.index}_{uuid.uuid4().hex[:8]}")
                        calls[tc.index] = call
                    elif tc.id and not call.started:
                        call.id = tc.id

                    fn = tc.function
                    fragment = (fn.arguments if fn else None) or ""
                    if fn and fn.name and not call.name:
                        call.name = fn.name

                    if call.name and not call.started:
                        call.started = True
                        yield ToolStart(id=call.id, name=call.name)
                        # Fragments that arrived before the name
                        if call.arguments:
                            yield ToolInputDelta(id=call.id, fragment=call.arguments)

                    if fragment:
                        call.arguments += fragment
                        if call.started:
                            yield ToolInputDelta(id=call.id, fragment=fragment)

            if choice.finish_reason:
                for event in self._complete_calls(calls):
                    yield event

        for event in self._complete_calls(calls):
            yield event

        yield MessageComplete(usage=usage)

    @staticmethod
    def _complete_calls(calls: dict[int, _PendingCall]) -> list[ToolComplete]:
        completed = []
        for index in sorted(calls):
            call = calls[index]
            if call.started and not call.completed:
                call.completed = True
                completed.append(
                    ToolComplete(
                        id=call.id,
                        name=call.name,
                        input=parse_tool_input(call.arguments, call.name),
                    )
                )
        return completed

    async def list_models(self) -> list[ModelInfo]:
        try:
            page = await self.client.models.list()
            models = sorted(page.data, key=lambda m: getattr(m, "created", 0) or 0, reverse=True)
            return [ModelInfo(id=m.id, name=m.id, provider=self.name) for m in models]
        except Exception as e:
            logger.warning("Failed to list %s models, using fallback: %s", self.name, e)
            fallback = FALLBACK_MODELS.get(self.name) or [(self.model, self.model)]
            return [ModelInfo(id=i, name=n, provider=self.name) for i, n in fallback]


def create_xai_provider(
    model: str, api_key: str | None = None, base_url: str | None = None, **kwargs
) -> OpenAICompatibleProvider:
    return OpenAICompatibleProvider(
        "xai", model, api_key=api_key, base_url=base_url or XAI_BASE_URL, **kwargs
    )


def create_openai_provider(
    model: str, api_key: str | None = None, base_url: str | None = None, **kwargs
) -> OpenAICompatibleProvider:
    return OpenAICompatibleProvider("openai", model, api_key=api_key, base_url=base_url, **kwargs)
