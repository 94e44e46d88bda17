from __future__ import annotations

import os

from fastapi import APIRouter, HTTPException, Query
from pydantic import BaseModel, ConfigDict, ValidationError
from pydantic.alias_generators import to_camel

from devpilot.agent.project_config import (
    default_config,
    load_full_config,
    merge_config_update,
    save_full_config,
)

router = APIRouter(prefix="/api/config", tags=["config"])


class UpdateConfigRequest(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    working_dir: str | None = None
    config: dict | None = None


@router.get("")
async def get_config(working_dir: str | None = Query(None, alias="workingDir")):
    config = load_full_config(working_dir or os.getcwd())
    return {"config": config.to_json_dict()}


@router.put("")
async def update_config(body: UpdateConfigRequest):
    if body.config is None:
        raise HTTPException(400, "Missing config in request body")
    working_dir = body.working_dir or os.getcwd()
    try:
        merged = merge_config_update(load_full_config(working_dir), body.config)
    except ValidationError as e:
        raise HTTPException(400, f"Invalid config: {e}")
    try:
        save_full_config(working_dir, merged)
    except OSError as e:
        raise HTTPException(500, f"Failed to save config: {e}")
    return {"config": merged.to_json_dict()}


@router.get("/defaults")
async def get_defaults():
    return {"config": default_config().to_json_dict()}
