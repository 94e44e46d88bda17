"""HTTP-level tests using FastAPI's TestClient with scripted providers.

Usage:
  python -m pytest tests/test_api.py
"""

from __future__ import annotations

import json
import sys
import tempfile
import time
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))
sys.path.insert(0, str(Path(__file__).resolve().parent))

from fastapi.testclient import TestClient

from fakes import FakeProvider, FakeProviders, make_tools, text_turn, tool_turn

from devpilot.agent.confirmation import ConfirmationRegistry
from devpilot.main import create_app

DEFAULT_MODEL = "claude-sonnet-4-5-20250514"


def make_client(fakes: FakeProviders, confirmations: ConfirmationRegistry | None = None, **settings):
    app = create_app(
        tools=make_tools(),
        provider_registry=fakes.registry(**settings),
        confirmations=confirmations,
    )
    return TestClient(app)


def sse_events(body: str) -> list[dict]:
    events = []
    for block in body.strip().split("\n\n"):
        for line in block.splitlines():
            if line.startswith("data: "):
                events.append(json.loads(line[len("data: "):]))
    return events


# ---------------------------------------------------------------------------
# Health, providers and config
# ---------------------------------------------------------------------------


def test_health():
    with make_client(FakeProviders()) as client:
        r = client.get("/api/health")
    assert r.status_code == 200
    assert r.json() == {"status": "ok", "service": "devpilot"}
    print("  PASS: health")


def test_provider_routes():
    with make_client(FakeProviders()) as client:
        listed = client.get("/api/providers").json()
        assert listed == {"providers": [{"provider": "anthropic", "default_model": DEFAULT_MODEL}]}

        assert client.get("/api/providers/gemini/models").status_code == 400

        models = client.get("/api/providers/anthropic/models").json()["models"]
        assert models == [{"id": DEFAULT_MODEL, "name": DEFAULT_MODEL, "provider": "anthropic"}]
    print("  PASS: provider routes")


def test_config_round_trip():
    with tempfile.TemporaryDirectory() as workdir, make_client(FakeProviders()) as client:
        defaults = client.get("/api/config/defaults").json()["config"]
        assert defaults["subagents"]["confirmMode"] == "always"
        assert defaults["subagents"]["roles"]["simple"]["maxIterations"] == 10

        r = client.put("/api/config", json={
            "workingDir": workdir,
            "config": {"subagents": {"confirmMode": "never", "roles": {"simple": {"model": "haiku-x"}}}},
        })
        assert r.status_code == 200
        saved = r.json()["config"]["subagents"]
        assert saved["confirmMode"] == "never"
        assert saved["roles"]["simple"] == {"provider": "anthropic", "model": "haiku-x", "maxIterations": 10}
        assert (Path(workdir) / ".agent" / "config.json").is_file()

        loaded = client.get("/api/config", params={"workingDir": workdir}).json()["config"]
        assert loaded["subagents"]["confirmMode"] == "never"

        assert client.put("/api/config", json={"workingDir": workdir}).status_code == 400
        bad = client.put("/api/config", json={
            "workingDir": workdir, "config": {"subagents": {"confirmMode": "sometimes"}},
        })
        assert bad.status_code == 400
    print("  PASS: config round trip")


# ---------------------------------------------------------------------------
# Chat
# ---------------------------------------------------------------------------


def test_chat_streams_events():
    fakes = FakeProviders(by_model={DEFAULT_MODEL: FakeProvider([text_turn("Hi!")])})
    with tempfile.TemporaryDirectory() as workdir, make_client(fakes) as client:
        r = client.post("/api/chat", json={"message": "hello", "workingDir": workdir})
    assert r.status_code == 200
    assert r.headers["content-type"].startswith("text/event-stream")
    events = sse_events(r.text)
    assert [e["type"] for e in events] == ["text_delta", "turn_complete"]
    assert events[1]["usage"] == {"input_tokens": 10, "output_tokens": 5}
    assert "event: text_delta\n" in r.text
    print("  PASS: chat SSE")


def test_chat_sends_history():
    provider = FakeProvider([text_turn("again")])
    fakes = FakeProviders(by_model={DEFAULT_MODEL: provider})
    history = [{"role": "user", "content": "first"}, {"role": "assistant", "content": "reply"}]
    with tempfile.TemporaryDirectory() as workdir, make_client(fakes) as client:
        client.post("/api/chat", json={"message": "second", "history": history, "workingDir": workdir})
    assert provider.calls[0].messages == history + [{"role": "user", "content": "second"}]


def test_chat_rejects_bad_history():
    with make_client(FakeProviders()) as client:
        r = client.post("/api/chat", json={
            "message": "x", "history": [{"role": "user", "content": [{"type": "image"}]}],
        })
    assert r.status_code == 400


def test_chat_fatal_error_is_reported_once():
    fakes = FakeProviders(by_model={DEFAULT_MODEL: FakeProvider([RuntimeError("upstream exploded")])})
    with tempfile.TemporaryDirectory() as workdir, make_client(fakes) as client:
        events = sse_events(client.post("/api/chat", json={"message": "hi", "workingDir": workdir}).text)
    assert events == [{"type": "error", "error": "upstream exploded"}]


def test_chat_without_provider_reports_error():
    with tempfile.TemporaryDirectory() as workdir, make_client(
        FakeProviders(), ANTHROPIC_API_KEY=None
    ) as client:
        events = sse_events(client.post("/api/chat", json={"message": "hi", "workingDir": workdir}).text)
    assert len(events) == 1
    assert events[0]["type"] == "error"
    assert "No LLM provider configured" in events[0]["error"]


def test_unanswered_confirmation_expires_as_declined():
    parent = FakeProvider([
        tool_turn(("c1", "task", {"tasks": [{"description": "scan repo", "role": "simple"}]})),
        text_turn("Okay, skipping that."),
    ])
    fakes = FakeProviders(by_model={DEFAULT_MODEL: parent})
    confirmations = ConfirmationRegistry(timeout_seconds=0.1)
    started = time.monotonic()
    with tempfile.TemporaryDirectory() as workdir, make_client(fakes, confirmations) as client:
        assert client.app.state.confirmations is confirmations
        events = sse_events(client.post("/api/chat", json={"message": "scan", "workingDir": workdir}).text)
    assert time.monotonic() - started < 5

    types = [e["type"] for e in events]
    assert types.index("subagent_request") < types.index("subagent_cancelled") < types.index("tool_result")
    request = events[types.index("subagent_request")]
    assert request["tasks"][0]["description"] == "scan repo"
    result = events[types.index("tool_result")]
    assert result["output"] == "Subagent execution cancelled by user."
    assert types[-1] == "turn_complete"
    assert len(confirmations) == 0
    print("  PASS: confirmation expiry")


def test_app_keeps_supplied_collaborators():
    tools = make_tools()
    registry = FakeProviders().registry()
    # An empty registry is falsy; it must still be used as given
    confirmations = ConfirmationRegistry(timeout_seconds=0.1)
    assert len(confirmations) == 0
    app = create_app(tools=tools, provider_registry=registry, confirmations=confirmations)
    assert app.state.tools is tools
    assert app.state.providers is registry
    assert app.state.confirmations is confirmations
    assert app.state.confirmations.timeout_seconds == 0.1


def test_confirm_unknown_request():
    with make_client(FakeProviders()) as client:
        r = client.post("/api/subagents/confirm", json={"requestId": "req_missing", "confirmed": True})
    assert r.status_code == 404


def test_continue_subagent_stream():
    fakes = FakeProviders(by_model={"m-c": FakeProvider([text_turn("Wrapped up.")])})
    task = {"id": "subagent_abc_0", "description": "finish it", "role": "simple",
            "provider": "anthropic", "model": "m-c"}
    history = [{"role": "user", "content": "Task: finish it"}]
    with tempfile.TemporaryDirectory() as workdir, make_client(fakes) as client:
        r = client.post("/api/subagents/continue", json={
            "task": task, "history": history, "workingDir": workdir, "extraIterations": 5,
        })
        bad = client.post("/api/subagents/continue", json={"task": {"role": "simple"}})

    events = sse_events(r.text)
    assert [e["type"] for e in events] == ["subagent_start", "subagent_progress", "subagent_complete"]
    assert events[-1]["summary"] == "Wrapped up."
    assert events[-1]["task_id"] == "subagent_abc_0"
    assert bad.status_code == 400
    print("  PASS: continue stream")


def main():
    print("\n=== HTTP API ===")
    test_health()
    test_provider_routes()
    test_config_round_trip()
    test_chat_streams_events()
    test_chat_sends_history()
    test_chat_rejects_bad_history()
    test_chat_fatal_error_is_reported_once()
    test_chat_without_provider_reports_error()
    test_unanswered_confirmation_expires_as_declined()
    test_app_keeps_supplied_collaborators()
    test_confirm_unknown_request()
    test_continue_subagent_stream()
    print("\nAll HTTP API tests passed.")


if __name__ == "__main__":
    main()
