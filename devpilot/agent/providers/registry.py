"""Provider selection and the process-wide provider cache.

Providers are cached per ``(provider, model)``. Lookup-and-create is one
step under a lock so concurrent callers never build two instances for the
same key.
"""

from __future__ import annotations

import logging
import threading
from typing import Callable

from devpilot.agent.errors import ProviderNotConfiguredError, UnknownProviderError
from devpilot.agent.providers.anthropic_provider import AnthropicProvider
from devpilot.agent.providers.base import PROVIDER_NAMES, LLMProvider, ModelInfo
from devpilot.agent.providers.openai_compatible import (
    create_openai_provider,
    create_xai_provider,
)
from devpilot.config import Settings, settings as default_settings

logger = logging.getLogger(__name__)

ProviderFactory = Callable[..., LLMProvider]


class ProviderRegistry:
    def __init__(
        self,
        settings: Settings | None = None,
        factory: ProviderFactory | None = None,
    ) -> None:
        self.settings = settings or default_settings
        self._factory = factory or self._create_provider
        self._providers: dict[str, LLMProvider] = {}
        self._lock = threading.Lock()

    # ------------------------------------------------------------------
    # Cache
    # ------------------------------------------------------------------

    def get_or_create(self, key: str, factory: Callable[[], LLMProvider]) -> LLMProvider:
        with self._lock:
            provider = self._providers.get(key)
            if provider is None:
                provider = factory()
                self._providers[key] = provider
                logger.info("created provider %r", provider)
            return provider

    def clear(self) -> None:
        with self._lock:
            self._providers.clear()

    # ------------------------------------------------------------------
    # Selection
    # ------------------------------------------------------------------

    def detect_provider(self) -> str:
        preferred = (self.settings.LLM_PROVIDER or "").lower()
        if preferred in PROVIDER_NAMES:
            return preferred
        for name in PROVIDER_NAMES:
            if self.settings.api_key_for(name):
                return name
        raise ProviderNotConfiguredError(
            "No LLM provider configured. Set one of: "
            "ANTHROPIC_API_KEY, XAI_API_KEY, or OPENAI_API_KEY"
        )

    def default_model(self, provider: str) -> str:
        if provider not in PROVIDER_NAMES:
            raise UnknownProviderError(provider)
        return self.settings.model_for(provider)

    def get_provider(
        self,
        provider: str | None = None,
        model: str | None = None,
        api_key: str | None = None,
    ) -> LLMProvider:
        name = provider or self.detect_provider()
        if name not in PROVIDER_NAMES:
            raise UnknownProviderError(name)
        model = model or self.default_model(name)
        return self.get_or_create(
            f"{name}:{model}", lambda: self._factory(name, model, api_key)
        )

    def _create_provider(self, name: str, model: str, api_key: str | None) -> LLMProvider:
        s = self.settings
        key = api_key or s.api_key_for(name)
        common = {"max_tokens": s.LLM_MAX_TOKENS, "timeout": s.LLM_TIMEOUT_SECONDS}
        if name == "anthropic":
            return AnthropicProvider(model, api_key=key, **common)
        if name == "xai":
            return create_xai_provider(model, api_key=key, base_url=s.XAI_BASE_URL, **common)
        if name == "openai":
            return create_openai_provider(model, api_key=key, base_url=s.OPENAI_BASE_URL, **common)
        raise UnknownProviderError(name)

    # ------------------------------------------------------------------
    # Discovery
    # ------------------------------------------------------------------

    def list_available_providers(self) -> list[dict]:
        return [
            {"provider": name, "default_model": self.default_model(name)}
            for name in PROVIDER_NAMES
            if self.settings.api_key_for(name)
        ]

    async def list_models_for_provider(self, provider: str) -> list[ModelInfo]:
        return await self.get_provider(provider=provider).list_models()


_registry: ProviderRegistry | None = None


def get_registry() -> ProviderRegistry:
    global _registry
    if _registry is None:
        _registry = ProviderRegistry()
    return _registry
