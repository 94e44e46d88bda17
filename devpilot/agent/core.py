"""Entry points used by the HTTP layer and embedding applications."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import AsyncIterator, Awaitable, Callable

from devpilot.agent.cancellation import CancelToken
from devpilot.agent.constants import SPAWN_TOOL_NAME
from devpilot.agent.errors import AgentError
from devpilot.agent.events import AgentEvent, ErrorEvent
from devpilot.agent.loop import AgentLoop
from devpilot.agent.messages import Message
from devpilot.agent.project_config import AgentConfig, load_full_config
from devpilot.agent.prompts import get_system_prompt
from devpilot.agent.providers.registry import ProviderRegistry
from devpilot.agent.subagents import (
    ConfirmCallback,
    SubagentOrchestrator,
    SubagentResult,
    SubagentTask,
)
from devpilot.agent.tool_registry import ToolRegistry

logger = logging.getLogger(__name__)


@dataclass
class ProviderConfig:
    provider: str | None = None
    model: str | None = None
    api_key: str | None = None


def _main_chat_config(full_config: AgentConfig, provider_config: ProviderConfig | None) -> ProviderConfig:
    """Request override first, then the project's mainChat setting."""
    if provider_config and (provider_config.provider or provider_config.model):
        return provider_config
    main_chat = full_config.main_chat
    if main_chat is not None:
        api_key = provider_config.api_key if provider_config else None
        return ProviderConfig(provider=main_chat.provider, model=main_chat.model, api_key=api_key)
    return provider_config or ProviderConfig()


async def run_agent_loop(
    user_message: str,
    prior_history: list[Message],
    working_dir: str | Path,
    provider_config: ProviderConfig | None = None,
    confirm: ConfirmCallback | None = None,
    *,
    tools: ToolRegistry,
    providers: ProviderRegistry,
    cancel_token: CancelToken | None = None,
    sleep: Callable[[float], Awaitable[object]] | None = None,
) -> AsyncIterator[AgentEvent]:
    """Run one user turn of the top-level conversation.

    Yields AgentEvents until ``turn_complete``, ``error`` or ``stopped``.
    Non rate-limit provider failures re-raise after their ``error`` event.
    """
    cancel_token = cancel_token or CancelToken()
    full_config = load_full_config(working_dir)
    config = _main_chat_config(full_config, provider_config)

    try:
        provider = providers.get_provider(config.provider, config.model, config.api_key)
    except AgentError as e:
        yield ErrorEvent(error=str(e))
        raise

    subagents = SubagentOrchestrator(
        providers,
        tools,
        full_config.subagents,
        working_dir,
        parent_provider=config.provider,
        parent_model=config.model,
        cancel_token=cancel_token,
        sleep=sleep,
    )

    messages = list(prior_history)
    messages.append(Message(role="user", content=user_message))

    tool_names = [t.name for t in tools.definitions() if t.name != SPAWN_TOOL_NAME]
    loop = AgentLoop(
        provider,
        tools,
        get_system_prompt(working_dir, tool_names + [SPAWN_TOOL_NAME]),
        messages,
        working_dir,
        subagents=subagents,
        confirm=confirm,
        cancel_token=cancel_token,
        sleep=sleep,
        name="main",
    )
    logger.info("agent turn started with %r (%d prior messages)", provider, len(prior_history))
    async for event in loop.run():
        yield event


async def continue_subagent(
    task: SubagentTask,
    history: list[Message],
    working_dir: str | Path,
    *,
    tools: ToolRegistry,
    providers: ProviderRegistry,
    extra_iterations: int | None = None,
    cancel_token: CancelToken | None = None,
    results: dict[str, SubagentResult] | None = None,
    sleep: Callable[[float], Awaitable[object]] | None = None,
) -> AsyncIterator[AgentEvent]:
    """Resume a subagent that stopped at its iteration cap."""
    orchestrator = SubagentOrchestrator(
        providers,
        tools,
        load_full_config(working_dir).subagents,
        working_dir,
        cancel_token=cancel_token,
        sleep=sleep,
    )
    async for event in orchestrator.continue_task(task, history, extra_iterations, results):
        yield event
