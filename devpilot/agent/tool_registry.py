from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Coroutine, Iterable, Union

from devpilot.agent.cancellation import CancelToken
from devpilot.agent.constants import SPAWN_TOOL_NAME
from devpilot.agent.errors import ToolNotFoundError

logger = logging.getLogger(__name__)


@dataclass
class ToolContext:
    working_dir: Path
    cancel_token: CancelToken | None = None


@dataclass
class ToolResult:
    output: str
    details: dict | None = None


ToolHandler = Callable[[dict, ToolContext], Coroutine[Any, Any, Union[ToolResult, str]]]


@dataclass
class ToolDefinition:
    name: str
    description: str
    parameters: dict
    handler: ToolHandler | None = None

    def schema(self) -> dict:
        """Provider-neutral schema exposed to the model."""
        return {
            "name": self.name,
            "description": self.description,
            "parameters": self.parameters,
        }


ToolSource = Callable[[], Iterable[ToolDefinition]]


class ToolRegistry:
    """Registry for agent tools. Each tool is a coroutine the model can call.

    Static tools are added with ``register``. Dynamic sources (for example an
    external protocol client whose server list changes) are re-queried on
    every ``definitions()`` call, so the set may change between iterations.
    """

    def __init__(self) -> None:
        self._tools: dict[str, ToolDefinition] = {}
        self._sources: list[ToolSource] = []

    def register(
        self,
        name: str,
        description: str,
        parameters: dict,
        handler: ToolHandler,
    ) -> None:
        self._tools[name] = ToolDefinition(
            name=name,
            description=description,
            parameters=parameters,
            handler=handler,
        )

    def add_source(self, source: ToolSource) -> None:
        self._sources.append(source)

    def definitions(self) -> list[ToolDefinition]:
        tools = dict(self._tools)
        for source in self._sources:
            for tool in source():
                tools.setdefault(tool.name, tool)
        return list(tools.values())

    def get(self, name: str) -> ToolDefinition | None:
        for tool in self.definitions():
            if tool.name == name:
                return tool
        return None

    def without(self, *names: str) -> ToolRegistry:
        """A view of this registry with the given tools hidden."""
        return _FilteredRegistry(self, set(names))

    async def execute(self, name: str, arguments: dict, context: ToolContext) -> ToolResult:
        """Execute a tool by name. Failures propagate to the caller."""
        tool = self.get(name)
        if tool is None or tool.handler is None:
            raise ToolNotFoundError(name)
        result = await tool.handler(arguments, context)
        if isinstance(result, ToolResult):
            return result
        return ToolResult(output=str(result))

    def list_tools(self) -> list[str]:
        return [t.name for t in self.definitions()]


class _FilteredRegistry(ToolRegistry):
    def __init__(self, parent: ToolRegistry, hidden: set[str]) -> None:
        super().__init__()
        self._parent = parent
        self._hidden = hidden

    def definitions(self) -> list[ToolDefinition]:
        return [t for t in self._parent.definitions() if t.name not in self._hidden]


# ── Spawn tool ──────────────────────────────────────────────────


SPAWN_TOOL_DESCRIPTION = """\
Delegate independent pieces of work to subagents that run concurrently with \
their own isolated context. Each subagent only returns a short summary, so \
give it everything it needs in the description and context.

Roles:
- simple: quick, well-defined tasks (small edits, lookups)
- complex: multi-step work that needs careful reasoning
- researcher: exploring the codebase or gathering information"""


def spawn_tool_definition() -> ToolDefinition:
    return ToolDefinition(
        name=SPAWN_TOOL_NAME,
        description=SPAWN_TOOL_DESCRIPTION,
        parameters={
            "type": "object",
            "properties": {
                "tasks": {
                    "type": "array",
                    "description": "Tasks to run in parallel",
                    "items": {
                        "type": "object",
                        "properties": {
                            "description": {
                                "type": "string",
                                "description": "What the subagent should do",
                            },
                            "role": {
                                "type": "string",
                                "enum": ["simple", "complex", "researcher"],
                                "description": "Which kind of subagent to use",
                            },
                            "context": {
                                "type": "string",
                                "description": "Optional extra context for the subagent",
                            },
                        },
                        "required": ["description", "role"],
                    },
                },
            },
            "required": ["tasks"],
        },
    )
