from pydantic_settings import BaseSettings
from pathlib import Path

from devpilot.agent.constants import (
    CONFIRMATION_TIMEOUT_SECONDS,
    DEFAULT_MAX_TOKENS,
    MAX_PENDING_CONFIRMATIONS,
)


class Settings(BaseSettings):
    # Provider credentials. Any subset may be set; detection picks the first.
    ANTHROPIC_API_KEY: str | None = None
    ANTHROPIC_MODEL: str = "claude-sonnet-4-5-20250514"

    XAI_API_KEY: str | None = None
    XAI_MODEL: str = "grok-4-0125"
    XAI_BASE_URL: str = "https://api.x.ai/v1"

    OPENAI_API_KEY: str | None = None
    OPENAI_MODEL: str = "gpt-4.1"
    OPENAI_BASE_URL: str | None = None

    LLM_PROVIDER: str | None = None
    LLM_MAX_TOKENS: int = DEFAULT_MAX_TOKENS
    LLM_TIMEOUT_SECONDS: float = 120.0

    CONFIRMATION_TIMEOUT_SECONDS: float = CONFIRMATION_TIMEOUT_SECONDS
    MAX_PENDING_CONFIRMATIONS: int = MAX_PENDING_CONFIRMATIONS

    HOST: str = "0.0.0.0"
    PORT: int = 3001
    CORS_ORIGINS: list[str] = ["http://localhost:3000", "http://localhost:5173"]
    LOG_LEVEL: str = "INFO"

    ROOT_DIR: Path = Path(__file__).resolve().parent.parent

    model_config = {
        "env_file": str(Path(__file__).resolve().parent.parent / ".env"),
        "env_file_encoding": "utf-8",
        "extra": "ignore",
    }

    def api_key_for(self, provider: str) -> str | None:
        return {
            "anthropic": self.ANTHROPIC_API_KEY,
            "xai": self.XAI_API_KEY,
            "openai": self.OPENAI_API_KEY,
        }.get(provider)

    def model_for(self, provider: str) -> str | None:
        return {
            "anthropic": self.ANTHROPIC_MODEL,
            "xai": self.XAI_MODEL,
            "openai": self.OPENAI_MODEL,
        }.get(provider)


settings = Settings()
