"""Pending subagent confirmations resolved out of band.

The chat stream announces a ``subagent_request`` and the orchestrator then
awaits ``ConfirmationRegistry.wait``. A separate HTTP call resolves the
request by id. Requests expire after ``timeout_seconds`` and the registry
holds at most ``max_pending`` of them; an expired or evicted request reads
as declined.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Callable

from devpilot.agent.constants import CONFIRMATION_TIMEOUT_SECONDS, MAX_PENDING_CONFIRMATIONS
from devpilot.agent.subagents import SubagentTask

logger = logging.getLogger(__name__)


@dataclass
class PendingConfirmation:
    request_id: str
    tasks: list[SubagentTask]
    created_at: float
    future: asyncio.Future

    def settle(self, tasks: list[SubagentTask] | None) -> bool:
        if self.future.done():
            return False
        self.future.set_result(tasks)
        return True


class ConfirmationRegistry:
    def __init__(
        self,
        timeout_seconds: float = CONFIRMATION_TIMEOUT_SECONDS,
        max_pending: int = MAX_PENDING_CONFIRMATIONS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.timeout_seconds = timeout_seconds
        self.max_pending = max_pending
        self._clock = clock
        self._pending: dict[str, PendingConfirmation] = {}

    def __len__(self) -> int:
        return len(self._pending)

    def __contains__(self, request_id: str) -> bool:
        return request_id in self._pending

    def get(self, request_id: str) -> PendingConfirmation | None:
        return self._pending.get(request_id)

    def open(self, request_id: str, tasks: list[SubagentTask]) -> PendingConfirmation:
        existing = self._pending.get(request_id)
        if existing is not None:
            return existing

        self.sweep()
        while len(self._pending) >= self.max_pending:
            oldest_id = next(iter(self._pending))
            logger.warning("evicting pending confirmation %s (registry full)", oldest_id)
            self._pending.pop(oldest_id).settle(None)

        pending = PendingConfirmation(
            request_id=request_id,
            tasks=list(tasks),
            created_at=self._clock(),
            future=asyncio.get_running_loop().create_future(),
        )
        self._pending[request_id] = pending
        return pending

    async def wait(
        self, tasks: list[SubagentTask], request_id: str
    ) -> list[SubagentTask] | None:
        """Block until the request is resolved or expires. Usable as a confirm callback."""
        pending = self.open(request_id, tasks)
        remaining = self.timeout_seconds - (self._clock() - pending.created_at)
        try:
            return await asyncio.wait_for(pending.future, timeout=max(0.0, remaining))
        except asyncio.TimeoutError:
            logger.warning("confirmation %s timed out", request_id)
            return None
        finally:
            if self._pending.get(request_id) is pending:
                del self._pending[request_id]

    def resolve(self, request_id: str, tasks: list[SubagentTask] | None) -> bool:
        """Answer a pending request. Returns False if it is unknown or already settled."""
        pending = self._pending.get(request_id)
        if pending is None:
            return False
        return pending.settle(tasks)

    def sweep(self) -> int:
        """Expire requests older than the timeout. Returns how many were dropped."""
        now = self._clock()
        expired = [
            rid for rid, p in self._pending.items()
            if now - p.created_at >= self.timeout_seconds
        ]
        for rid in expired:
            self._pending.pop(rid).settle(None)
        if expired:
            logger.info("expired %d pending confirmations", len(expired))
        return len(expired)
