from __future__ import annotations

import asyncio
import contextlib
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from devpilot import __version__
from devpilot.agent.confirmation import ConfirmationRegistry
from devpilot.agent.providers.registry import ProviderRegistry, get_registry
from devpilot.agent.tool_registry import ToolRegistry
from devpilot.config import settings
from devpilot.routers import chat, config, providers

logger = logging.getLogger(__name__)

CONFIRMATION_SWEEP_INTERVAL_SECONDS = 60


async def _sweep_confirmations(registry: ConfirmationRegistry) -> None:
    while True:
        await asyncio.sleep(CONFIRMATION_SWEEP_INTERVAL_SECONDS)
        registry.sweep()


def create_app(
    tools: ToolRegistry | None = None,
    provider_registry: ProviderRegistry | None = None,
    confirmations: ConfirmationRegistry | None = None,
) -> FastAPI:
    """Build the HTTP app around a tool registry supplied by the embedder."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        # Startup
        sweeper = asyncio.create_task(_sweep_confirmations(app.state.confirmations))
        logger.info("devpilot %s ready with tools: %s", __version__, app.state.tools.list_tools())
        yield
        # Shutdown
        sweeper.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await sweeper

    app = FastAPI(title="devpilot", version=__version__, lifespan=lifespan)

    app.state.tools = tools if tools is not None else ToolRegistry()
    app.state.providers = provider_registry if provider_registry is not None else get_registry()
    if confirmations is None:
        confirmations = ConfirmationRegistry(
            timeout_seconds=settings.CONFIRMATION_TIMEOUT_SECONDS,
            max_pending=settings.MAX_PENDING_CONFIRMATIONS,
        )
    app.state.confirmations = confirmations

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(chat.router)
    app.include_router(providers.router)
    app.include_router(config.router)

    @app.get("/api/health")
    async def health_check():
        return {"status": "ok", "service": "devpilot"}

    return app


app = create_app()
