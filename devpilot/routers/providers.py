from __future__ import annotations

import logging

from fastapi import APIRouter, HTTPException, Request

from devpilot.agent.providers.base import PROVIDER_NAMES

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/providers", tags=["providers"])


@router.get("")
async def list_providers(request: Request):
    return {"providers": request.app.state.providers.list_available_providers()}


@router.get("/{provider}/models")
async def list_models(provider: str, request: Request):
    if provider not in PROVIDER_NAMES:
        raise HTTPException(400, "Invalid provider")
    try:
        models = await request.app.state.providers.list_models_for_provider(provider)
    except Exception as e:
        logger.warning("model listing for %s failed: %s", provider, e)
        raise HTTPException(500, f"Failed to list models: {e}")
    return {"models": [m.to_dict() for m in models]}
