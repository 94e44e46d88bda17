from __future__ import annotations

import json
import logging
import os
import traceback

from fastapi import APIRouter, HTTPException, Request
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

from devpilot.agent.cancellation import CancelToken
from devpilot.agent.core import ProviderConfig, continue_subagent, run_agent_loop
from devpilot.agent.events import (
    AgentEvent,
    ErrorEvent,
    SubagentErrorEvent,
    SubagentRequestEvent,
)
from devpilot.agent.messages import history_from_dicts
from devpilot.agent.subagents import SubagentTask

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["chat"])

SSE_HEADERS = {"Cache-Control": "no-cache", "X-Accel-Buffering": "no"}


class _Body(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ChatRequest(_Body):
    message: str
    history: list[dict] = []
    working_dir: str | None = None
    provider: str | None = None
    model: str | None = None


class ConfirmRequest(_Body):
    request_id: str
    confirmed: bool
    tasks: list[dict] | None = None


class ContinueRequest(_Body):
    task: dict
    history: list[dict] = []
    working_dir: str | None = None
    extra_iterations: int | None = None


def _sse(event: AgentEvent) -> str:
    data = event.to_dict()
    return f"event: {data['type']}\ndata: {json.dumps(data)}\n\n"


def _parse_history(raw: list[dict]):
    try:
        return history_from_dicts(raw)
    except (KeyError, TypeError, ValueError) as e:
        raise HTTPException(400, f"Invalid history: {e}")


@router.post("/chat")
async def chat(body: ChatRequest, request: Request):
    state = request.app.state
    history = _parse_history(body.history)
    working_dir = body.working_dir or os.getcwd()
    cancel_token = CancelToken()

    async def stream():
        last_type = None
        finished = False
        try:
            async for event in run_agent_loop(
                body.message,
                history,
                working_dir,
                ProviderConfig(provider=body.provider, model=body.model),
                state.confirmations.wait,
                tools=state.tools,
                providers=state.providers,
                cancel_token=cancel_token,
            ):
                # Register before the client can see the id and answer it
                if isinstance(event, SubagentRequestEvent):
                    state.confirmations.open(event.request_id, event.tasks)
                last_type = event.type
                yield _sse(event)
            finished = True
        except Exception:
            finished = True
            logger.exception("chat stream failed")
            if last_type != "error":
                yield _sse(ErrorEvent(error=traceback.format_exc()[-1000:]))
        finally:
            if not finished:
                # Client went away mid-stream
                cancel_token.cancel("client disconnected")

    return StreamingResponse(stream(), media_type="text/event-stream", headers=SSE_HEADERS)


@router.post("/subagents/confirm")
async def confirm_subagents(body: ConfirmRequest, request: Request):
    registry = request.app.state.confirmations
    pending = registry.get(body.request_id)
    if pending is None:
        raise HTTPException(404, "No pending confirmation found")

    tasks = None
    if body.confirmed:
        try:
            tasks = (
                [SubagentTask.from_dict(t) for t in body.tasks]
                if body.tasks is not None
                else pending.tasks
            )
        except (KeyError, TypeError) as e:
            raise HTTPException(400, f"Invalid tasks: {e}")

    if not registry.resolve(body.request_id, tasks):
        raise HTTPException(404, "No pending confirmation found")
    return {"success": True}


@router.post("/subagents/continue")
async def continue_subagent_route(body: ContinueRequest, request: Request):
    state = request.app.state
    try:
        task = SubagentTask.from_dict(body.task)
    except (KeyError, TypeError) as e:
        raise HTTPException(400, f"Missing or invalid task: {e}")
    history = _parse_history(body.history)
    working_dir = body.working_dir or os.getcwd()
    cancel_token = CancelToken()

    async def stream():
        finished = False
        try:
            async for event in continue_subagent(
                task,
                history,
                working_dir,
                tools=state.tools,
                providers=state.providers,
                extra_iterations=body.extra_iterations,
                cancel_token=cancel_token,
            ):
                yield _sse(event)
            finished = True
        except Exception as e:
            finished = True
            logger.exception("continue stream for %s failed", task.id)
            yield _sse(SubagentErrorEvent(task_id=task.id, error=str(e), full_history=body.history))
        finally:
            if not finished:
                cancel_token.cancel("client disconnected")

    return StreamingResponse(stream(), media_type="text/event-stream", headers=SSE_HEADERS)
