"""Tests for AgentLoop: event folding, tool execution, doom loops, backoff and cancellation.

All providers are scripted (see fakes.py), so no network access is needed.

Usage:
  python -m pytest tests/test_agent_loop.py
"""

from __future__ import annotations

import asyncio
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))
sys.path.insert(0, str(Path(__file__).resolve().parent))

from fakes import FakeProvider, RateLimitError, collect, make_tools, run, text_turn, tool_turn

from devpilot.agent.events import (
    DoomLoopEvent,
    ErrorEvent,
    RetryCountdownEvent,
    StoppedEvent,
    ToolResultEvent,
    TurnCompleteEvent,
)
from devpilot.agent.loop import (
    CANCELLED_TOOL_RESULT,
    AgentLoop,
    LoopStatus,
    backoff_seconds,
    is_rate_limit_error,
)
from devpilot.agent.messages import Message, ToolResultBlock, ToolUseBlock
from devpilot.agent.providers.base import TextDelta
from devpilot.agent.tool_registry import ToolDefinition, ToolResult


def make_loop(provider, tools=None, **kwargs) -> AgentLoop:
    return AgentLoop(
        provider,
        tools if tools is not None else make_tools(),
        "You are a test assistant.",
        [Message(role="user", content="hi")],
        ".",
        **kwargs,
    )


async def _run_until_raise(loop):
    seen = []
    try:
        async for event in loop.run():
            seen.append(event)
    except Exception as exc:
        return seen, exc
    return seen, None


# ---------------------------------------------------------------------------
# Plain turns
# ---------------------------------------------------------------------------


def test_text_only_turn_completes():
    provider = FakeProvider([text_turn("Hello there", 12, 3)])
    loop = make_loop(provider)
    events = run(collect(loop.run()))

    assert [e.type for e in events] == ["text_delta", "turn_complete"]
    assert events[0].text == "Hello there"
    assert events[-1].usage.input_tokens == 12
    assert events[-1].usage.output_tokens == 3
    assert loop.status == LoopStatus.DONE
    assert loop.final_text == "Hello there"
    assert loop.messages[-1].role == "assistant"
    assert loop.messages[-1].content == "Hello there"
    print("  PASS: text-only turn")


def test_tool_round_trip_keeps_call_order():
    calls = []
    provider = FakeProvider([
        tool_turn(
            ("t1", "bash", {"command": "ls"}),
            ("t2", "read_file", {"path": "a.py"}),
            text="Let me look.",
        ),
        text_turn("All done"),
    ])
    loop = make_loop(provider, make_tools(calls))
    events = run(collect(loop.run()))

    types = [e.type for e in events]
    assert types[0] == "text_delta"
    assert types[-1] == "turn_complete"
    assert types.count("tool_start") == 2
    assert types.count("tool_input_delta") == 4
    assert types.index("tool_running") > types.index("tool_start")

    results = [e for e in events if isinstance(e, ToolResultEvent)]
    assert [r.id for r in results] == ["t1", "t2"]
    assert results[0].output == "ran: ls"
    assert results[0].details == {"exit_code": 0}
    assert results[1].output == "contents of a.py"
    assert calls == [("bash", {"command": "ls"}), ("read_file", {"path": "a.py"})]

    # user, assistant(tool uses), user(results), assistant(final)
    assert [m.role for m in loop.messages] == ["user", "assistant", "user", "assistant"]
    assistant = loop.messages[1]
    assert assistant.text == "Let me look."
    uses = assistant.tool_uses()
    answers = loop.messages[2].tool_results()
    assert [u.id for u in uses] == [a.tool_use_id for a in answers] == ["t1", "t2"]
    assert uses[0].input == {"command": "ls"}

    # The second model call saw the tool results
    assert len(provider.calls) == 2
    assert provider.calls[1].messages[2]["content"][0]["tool_use_id"] == "t1"
    assert events[-1].usage.input_tokens == 20
    print("  PASS: tool round trip")


def test_spawn_tool_hidden_without_orchestrator():
    provider = FakeProvider([text_turn("ok")])
    run(collect(make_loop(provider).run()))
    assert provider.calls[0].tool_names == ["bash", "read_file"]


# ---------------------------------------------------------------------------
# Tool failures
# ---------------------------------------------------------------------------


def test_tool_failure_becomes_error_result():
    provider = FakeProvider([
        tool_turn(("t1", "bash", {"command": "fail"})),
        text_turn("recovered"),
    ])
    loop = make_loop(provider)
    events = run(collect(loop.run()))

    result = next(e for e in events if isinstance(e, ToolResultEvent))
    assert result.error == "command exited with status 1"
    assert result.output == ""
    block = loop.messages[2].tool_results()[0]
    assert block.content == "Error: command exited with status 1"
    assert block.is_error is True
    assert loop.status == LoopStatus.DONE
    print("  PASS: tool failure is non-fatal")


def test_unknown_tool_reports_error():
    provider = FakeProvider([tool_turn(("t1", "nope", {})), text_turn("ok")])
    loop = make_loop(provider)
    run(collect(loop.run()))
    block = loop.messages[2].tool_results()[0]
    assert block.is_error
    assert block.content == "Error: Unknown tool: nope"


# ---------------------------------------------------------------------------
# Doom loop
# ---------------------------------------------------------------------------


def test_third_identical_call_is_suppressed():
    calls = []
    provider = FakeProvider([
        tool_turn(("t1", "bash", {"command": "ls"})),
        tool_turn(("t2", "bash", {"command": "ls"})),
        tool_turn(("t3", "bash", {"command": "ls"})),
        text_turn("giving up"),
    ])
    loop = make_loop(provider, make_tools(calls))
    events = run(collect(loop.run()))

    assert len(calls) == 2
    doom = [e for e in events if isinstance(e, DoomLoopEvent)]
    assert len(doom) == 1
    assert doom[0].id == "t3"
    assert doom[0].name == "bash"

    t3_result = next(e for e in events if isinstance(e, ToolResultEvent) and e.id == "t3")
    assert t3_result.error.startswith("Doom loop detected: bash called 3+ times")
    assert events.index(t3_result) < events.index(doom[0])

    block = loop.messages[6].tool_results()[0]
    assert block.tool_use_id == "t3"
    assert block.is_error
    assert "Detected repeated identical calls to bash" in block.content
    assert loop.status == LoopStatus.DONE
    print("  PASS: doom loop suppressed on third call")


# ---------------------------------------------------------------------------
# Rate limits and fatal errors
# ---------------------------------------------------------------------------


def test_backoff_schedule():
    assert backoff_seconds(1) == 4
    assert backoff_seconds(2) == 8
    assert backoff_seconds(4) == 32
    assert backoff_seconds(5) == 60
    assert backoff_seconds(10) == 60


def test_rate_limit_detection():
    assert is_rate_limit_error(RateLimitError())
    assert is_rate_limit_error(Exception("Rate Limit reached for requests"))
    assert not is_rate_limit_error(Exception("connection reset by peer"))


def test_rate_limit_on_second_iteration_retries_same_iteration():
    sleeps = []

    async def fake_sleep(seconds):
        sleeps.append(seconds)
        return True

    provider = FakeProvider([
        tool_turn(("t1", "bash", {"command": "ls"})),
        RateLimitError(),
        text_turn("done"),
    ])
    loop = make_loop(provider, sleep=fake_sleep)
    events = run(collect(loop.run()))

    countdowns = [e for e in events if isinstance(e, RetryCountdownEvent)]
    assert len(countdowns) == 1
    assert countdowns[0].seconds == 8
    assert countdowns[0].reason == "Rate limit exceeded"
    assert sleeps == [8]
    assert loop.iterations == 2
    assert len(provider.calls) == 3
    assert isinstance(events[-1], TurnCompleteEvent)
    print("  PASS: rate limit backoff")


def test_rate_limit_mid_stream_is_retried():
    sleeps = []

    async def fake_sleep(seconds):
        sleeps.append(seconds)

    provider = FakeProvider([
        text_turn("partial")[:1] + [Exception("429: rate limit exceeded")],
        text_turn("complete"),
    ])
    loop = make_loop(provider, sleep=fake_sleep)
    run(collect(loop.run()))
    assert sleeps == [4]
    assert loop.final_text == "complete"
    assert loop.iterations == 1


def test_other_provider_errors_are_fatal():
    provider = FakeProvider([RuntimeError("connection reset")])
    loop = make_loop(provider)
    seen, exc = run(_run_until_raise(loop))

    assert isinstance(exc, RuntimeError)
    assert isinstance(seen[-1], ErrorEvent)
    assert seen[-1].error == "connection reset"
    assert loop.status == LoopStatus.FATAL
    print("  PASS: fatal provider error")


def test_iteration_cap():
    provider = FakeProvider([
        tool_turn((f"t{i}", "bash", {"command": f"echo {i}"})) for i in range(5)
    ])
    loop = make_loop(provider, max_iterations=3)
    events = run(collect(loop.run()))

    assert isinstance(events[-1], ErrorEvent)
    assert events[-1].error == "Max iterations (3) reached"
    assert not any(isinstance(e, TurnCompleteEvent) for e in events)
    assert loop.status == LoopStatus.MAX_ITERATIONS
    assert len(provider.calls) == 3
    # Every tool use is still answered
    for assistant, answer in zip(loop.messages[1::2], loop.messages[2::2]):
        assert [u.id for u in assistant.tool_uses()] == [r.tool_use_id for r in answer.tool_results()]
    print("  PASS: iteration cap")


# ---------------------------------------------------------------------------
# Cancellation
# ---------------------------------------------------------------------------


def test_cancel_during_tools_answers_remaining_calls():
    calls = []
    tools = make_tools(calls)

    async def stop(args, context):
        context.cancel_token.cancel("user pressed stop")
        return "stopping"

    tools.register("stop", "Stop", {"type": "object", "properties": {}}, stop)

    provider = FakeProvider([
        tool_turn(("t1", "stop", {}), ("t2", "bash", {"command": "ls"})),
        text_turn("never reached"),
    ])
    loop = make_loop(provider, tools)
    events = run(collect(loop.run()))

    assert isinstance(events[-1], StoppedEvent)
    assert loop.status == LoopStatus.CANCELLED
    assert calls == []
    assert len(provider.calls) == 1
    answers = loop.messages[-1].tool_results()
    assert [a.tool_use_id for a in answers] == ["t1", "t2"]
    assert answers[0].content == "stopping"
    assert answers[1] == ToolResultBlock(tool_use_id="t2", content=CANCELLED_TOOL_RESULT, is_error=True)
    print("  PASS: cancellation mid-tools")


def test_cancel_before_start():
    provider = FakeProvider([text_turn("unused")])
    loop = make_loop(provider)
    loop.cancel_token.cancel()
    events = run(collect(loop.run()))
    assert [e.type for e in events] == ["stopped"]
    assert provider.calls == []



class StalledProvider(FakeProvider):
    """Starts a turn, then never sends another event."""

    async def stream(self, messages, system_prompt, tools):
        self.calls.append(None)
        yield TextDelta(text="thinking")
        await asyncio.sleep(3600)


async def _run_and_cancel_after(loop, delay):
    asyncio.get_running_loop().call_later(delay, loop.cancel_token.cancel, "user pressed stop")
    return await asyncio.wait_for(collect(loop.run()), timeout=2)


def test_cancel_interrupts_waiting_provider():
    provider = StalledProvider()
    loop = make_loop(provider)
    events = run(_run_and_cancel_after(loop, 0.05))

    assert [e.type for e in events] == ["text_delta", "stopped"]
    assert loop.status == LoopStatus.CANCELLED
    # Nothing half-finished is added to the history
    assert [m.role for m in loop.messages] == ["user"]
    print("  PASS: cancellation during provider wait")


def test_cancel_interrupts_running_tool():
    calls = []
    tools = make_tools(calls)
    finished = []

    async def hang(args, context):
        await asyncio.sleep(3600)
        finished.append(True)
        return "never"

    tools.register("hang", "Hang", {"type": "object", "properties": {}}, hang)
    provider = FakeProvider([
        tool_turn(("h1", "hang", {}), ("h2", "bash", {"command": "ls"})),
        text_turn("never reached"),
    ])
    loop = make_loop(provider, tools)
    events = run(_run_and_cancel_after(loop, 0.05))

    assert isinstance(events[-1], StoppedEvent)
    assert loop.status == LoopStatus.CANCELLED
    assert finished == []
    assert calls == []
    hung = next(e for e in events if isinstance(e, ToolResultEvent) and e.id == "h1")
    assert hung.error == CANCELLED_TOOL_RESULT
    answers = loop.messages[-1].tool_results()
    assert [a.tool_use_id for a in answers] == ["h1", "h2"]
    assert all(a.is_error and a.content == CANCELLED_TOOL_RESULT for a in answers)
    assert len(provider.calls) == 1
    print("  PASS: cancellation during tool wait")

# ---------------------------------------------------------------------------
# Dynamic tool sources
# ---------------------------------------------------------------------------


def test_tool_set_is_refetched_every_iteration():
    servers = ["alpha"]
    tools = make_tools()

    async def remote(args, context):
        return ToolResult(output="remote ok")

    def source():
        return [
            ToolDefinition(
                name=f"mcp_{server}_search",
                description=f"Search via {server}",
                parameters={"type": "object", "properties": {}},
                handler=remote,
            )
            for server in servers
        ]

    tools.add_source(source)

    async def connect(args, context):
        servers.append("beta")
        return "connected"

    tools.register("connect", "Connect a server", {"type": "object", "properties": {}}, connect)

    provider = FakeProvider([
        tool_turn(("t1", "connect", {})),
        tool_turn(("t2", "mcp_beta_search", {})),
        text_turn("done"),
    ])
    loop = make_loop(provider, tools)
    run(collect(loop.run()))

    assert "mcp_beta_search" not in provider.calls[0].tool_names
    assert "mcp_beta_search" in provider.calls[1].tool_names
    assert loop.messages[4].tool_results()[0].content == "remote ok"
    print("  PASS: dynamic tool set")


def test_history_blocks_are_typed():
    provider = FakeProvider([tool_turn(("t1", "bash", {"command": "pwd"})), text_turn("ok")])
    loop = make_loop(provider)
    run(collect(loop.run()))
    assert isinstance(loop.messages[1].content[0], ToolUseBlock)
    assert loop.messages[1].to_dict()["content"][0] == {
        "type": "tool_use", "id": "t1", "name": "bash", "input": {"command": "pwd"},
    }


def main():
    print("\n=== AgentLoop ===")
    test_text_only_turn_completes()
    test_tool_round_trip_keeps_call_order()
    test_spawn_tool_hidden_without_orchestrator()
    test_tool_failure_becomes_error_result()
    test_unknown_tool_reports_error()
    test_third_identical_call_is_suppressed()
    test_backoff_schedule()
    test_rate_limit_detection()
    test_rate_limit_on_second_iteration_retries_same_iteration()
    test_rate_limit_mid_stream_is_retried()
    test_other_provider_errors_are_fatal()
    test_iteration_cap()
    test_cancel_during_tools_answers_remaining_calls()
    test_cancel_before_start()
    test_cancel_interrupts_waiting_provider()
    test_cancel_interrupts_running_tool()
    test_tool_set_is_refetched_every_iteration()
    test_history_blocks_are_typed()
    print("\nAll AgentLoop tests passed.")


if __name__ == "__main__":
    main()
