"""Per-project agent configuration stored at ``<working_dir>/.agent/config.json``.

The file uses camelCase keys. Loading deep-merges whatever is on disk over
the defaults and also accepts the older flat layout where the subagent
settings sit at the root of the file.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, ValidationError
from pydantic.alias_generators import to_camel

from devpilot.agent.constants import DEFAULT_MAX_CONCURRENT, DEFAULT_SUBAGENT_TIMEOUT_SECONDS

logger = logging.getLogger(__name__)

CONFIG_PATH = Path(".agent") / "config.json"

Role = Literal["simple", "complex", "researcher"]
ConfirmMode = Literal["always", "never", "multiple"]
ROLES: tuple[str, ...] = ("simple", "complex", "researcher")


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_json_dict(self) -> dict:
        return self.model_dump(by_alias=True, exclude_none=True)


class MainChatConfig(_CamelModel):
    provider: str
    model: str


class RoleConfig(_CamelModel):
    provider: str
    model: str
    max_iterations: int


class RolesConfig(_CamelModel):
    simple: RoleConfig = Field(
        default_factory=lambda: RoleConfig(
            provider="anthropic", model="claude-3-5-haiku-20241022", max_iterations=10
        )
    )
    complex: RoleConfig = Field(
        default_factory=lambda: RoleConfig(
            provider="anthropic", model="claude-opus-4-5-20251101", max_iterations=25
        )
    )
    researcher: RoleConfig = Field(
        default_factory=lambda: RoleConfig(
            provider="anthropic", model="claude-sonnet-4-5-20250514", max_iterations=15
        )
    )


class SubagentConfig(_CamelModel):
    confirm_mode: ConfirmMode = "always"
    timeout: float = DEFAULT_SUBAGENT_TIMEOUT_SECONDS
    max_concurrent: int = DEFAULT_MAX_CONCURRENT
    roles: RolesConfig = Field(default_factory=RolesConfig)


class AgentConfig(_CamelModel):
    main_chat: MainChatConfig | None = None
    subagents: SubagentConfig = Field(default_factory=SubagentConfig)


def default_config() -> AgentConfig:
    return AgentConfig()


# ── Merging ─────────────────────────────────────────────────────


def _deep_merge(base: dict, override: dict) -> dict:
    merged = dict(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        elif value is not None:
            merged[key] = value
    return merged


def merge_config_update(config: AgentConfig, update: dict) -> AgentConfig:
    """Deep-merge a partial camelCase (or snake_case) update into ``config``."""
    base = config.to_json_dict()
    normalized = AgentConfig.model_validate(_deep_merge(base, _camelize(update)))
    return normalized


def _camelize(data: dict) -> dict:
    out = {}
    for key, value in data.items():
        camel = to_camel(key) if "_" in key else key
        out[camel] = _camelize(value) if isinstance(value, dict) else value
    return out


# ── Load / save ─────────────────────────────────────────────────


def config_path(working_dir: str | Path) -> Path:
    return Path(working_dir) / CONFIG_PATH


def load_full_config(working_dir: str | Path) -> AgentConfig:
    path = config_path(working_dir)
    if not path.exists():
        return default_config()

    try:
        loaded = json.loads(path.read_text(encoding="utf-8"))
        if not isinstance(loaded, dict):
            raise ValueError("config root must be an object")

        defaults = default_config().to_json_dict()
        if "roles" in loaded and "subagents" not in loaded:
            # Legacy layout: subagent config at the root
            merged = _deep_merge(defaults["subagents"], loaded)
            return AgentConfig(subagents=SubagentConfig.model_validate(merged))
        return AgentConfig.model_validate(_deep_merge(defaults, loaded))
    except (OSError, ValueError, ValidationError) as e:
        logger.warning("Failed to load config from %s: %s", path, e)

    return default_config()


def load_config(working_dir: str | Path) -> SubagentConfig:
    return load_full_config(working_dir).subagents


def save_full_config(working_dir: str | Path, config: AgentConfig) -> None:
    path = config_path(working_dir)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(config.to_json_dict(), indent=2), encoding="utf-8")


def save_config(working_dir: str | Path, config: SubagentConfig) -> None:
    existing = load_full_config(working_dir)
    existing.subagents = config
    save_full_config(working_dir, existing)


# ── Queries ─────────────────────────────────────────────────────


def get_role_config(config: SubagentConfig, role: str) -> RoleConfig:
    if role not in ROLES:
        raise ValueError(f"Unknown subagent role: {role}")
    return getattr(config.roles, role)


def needs_confirmation(config: SubagentConfig, task_count: int) -> bool:
    if config.confirm_mode == "always":
        return True
    if config.confirm_mode == "never":
        return False
    return task_count > 1
