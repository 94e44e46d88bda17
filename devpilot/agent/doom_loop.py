"""Detection of repeated identical tool calls within one agent loop run."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass

from devpilot.agent.constants import DOOM_LOOP_THRESHOLD

logger = logging.getLogger(__name__)


@dataclass
class ToolCallTracker:
    name: str
    args_hash: str
    count: int = 0


def hash_args(args: dict) -> str:
    """Canonical form of a tool's arguments.

    Key order is kept as given, so two equal maps serialized in a different
    order count as different calls.
    """
    return json.dumps(args, ensure_ascii=False, default=str)


class DoomLoopDetector:
    def __init__(self, threshold: int = DOOM_LOOP_THRESHOLD) -> None:
        self.threshold = threshold
        self._trackers: list[ToolCallTracker] = []

    def check(self, name: str, args: dict) -> bool:
        """Record one call and return True once it has been seen ``threshold`` times."""
        args_hash = hash_args(args)
        tracker = next(
            (t for t in self._trackers if t.name == name and t.args_hash == args_hash),
            None,
        )
        if tracker is None:
            tracker = ToolCallTracker(name=name, args_hash=args_hash)
            self._trackers.append(tracker)
        tracker.count += 1

        if tracker.count >= self.threshold:
            logger.warning(
                "doom loop: %s called %d times with identical arguments",
                name, tracker.count,
            )
            return True
        return False

    def count(self, name: str, args: dict) -> int:
        args_hash = hash_args(args)
        for t in self._trackers:
            if t.name == name and t.args_hash == args_hash:
                return t.count
        return 0

    def reset(self) -> None:
        self._trackers.clear()


def doom_loop_error(name: str) -> str:
    return (
        f"Doom loop detected: {name} called {DOOM_LOOP_THRESHOLD}+ times "
        "with identical arguments. Breaking loop."
    )


def doom_loop_result(name: str) -> str:
    return (
        f"Error: Detected repeated identical calls to {name}. "
        "Please try a different approach."
    )
