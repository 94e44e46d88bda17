"""Exception types raised by the agent core."""

from __future__ import annotations


class AgentError(Exception):
    """Base class for errors raised by devpilot."""


class ProviderNotConfiguredError(AgentError):
    """No API key is available for the requested (or any) provider."""


class UnknownProviderError(AgentError):
    def __init__(self, name: str) -> None:
        super().__init__(f"Unknown provider: {name}")
        self.name = name


class ToolNotFoundError(AgentError):
    def __init__(self, name: str) -> None:
        super().__init__(f"Unknown tool: {name}")
        self.name = name


class ToolExecutionError(AgentError):
    """Raised by tool handlers for expected failures (bad path, non-zero exit)."""


class OperationCancelled(AgentError):
    """A guarded await was abandoned because its cancel token fired."""
