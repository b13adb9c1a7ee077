from __future__ import annotations

from typing import Iterable, Optional

from llmgate._logging import get_logger
from llmgate.catalog import CONCRETE_MODELS, ModelCatalog, ModelId, ModelSpec, parse_model
from llmgate.errors import ConfigError
from llmgate.providers.base import StreamingProvider, ToolCallAccumulator, split_system
from llmgate.providers.claude import ClaudeProvider
from llmgate.providers.gamma import GammaProvider
from llmgate.providers.google import GoogleProvider
from llmgate.providers.openai_compat import OpenAICompatibleProvider

logger = get_logger("LlmGate.Providers")

PROVIDER_TYPES: dict[str, type[StreamingProvider]] = {
    "claude": ClaudeProvider,
    "openai": OpenAICompatibleProvider,
    "google": GoogleProvider,
    "gamma": GammaProvider,
}


def get_provider(provider_type: str, provider_config: dict) -> StreamingProvider:
    """Look up a provider class by type and return an instance."""
    cls = PROVIDER_TYPES.get(provider_type)
    if cls is None:
        raise ValueError(
            f"Unknown provider type: '{provider_type}'. "
            f"Available: {', '.join(PROVIDER_TYPES)}"
        )
    return cls(provider_config)


class ProviderRegistry:
    """Maps each concrete model to the provider instance that serves it.

    Built once at startup; the router asks it for availability and for the
    adapter to stream from, never re-dispatching by model name itself.
    """

    def __init__(
        self,
        providers: dict[str, StreamingProvider],
        catalog: Optional[ModelCatalog] = None,
    ):
        self.catalog = catalog or ModelCatalog()
        self._providers = dict(providers)
        self._by_model: dict[ModelId, StreamingProvider] = {}
        for model_id in CONCRETE_MODELS:
            spec = self.catalog.get(model_id)
            provider = self._providers.get(spec.provider)
            if provider is not None:
                self._by_model[model_id] = provider

    def spec(self, model: "str | ModelId") -> ModelSpec:
        return self.catalog.get(model)

    def get(self, model: "str | ModelId") -> StreamingProvider:
        model_id = parse_model(model)
        provider = self._by_model.get(model_id)
        if provider is None:
            raise KeyError(f"No provider registered for model '{model_id}'")
        return provider

    def is_model_available(self, model: "str | ModelId") -> bool:
        """True when the model has a registered provider with credentials."""
        try:
            model_id = parse_model(model)
        except ValueError:
            return False
        provider = self._by_model.get(model_id)
        return provider is not None and provider.is_available()

    def available_models(self) -> list[ModelId]:
        return [m for m in CONCRETE_MODELS if self.is_model_available(m)]

    @property
    def providers(self) -> dict[str, StreamingProvider]:
        return dict(self._providers)

    async def aclose(self) -> None:
        """Release HTTP clients held by providers that own one."""
        for provider in self._providers.values():
            closer = getattr(provider, "aclose", None)
            if closer is not None:
                await closer()


def build_registry(config, only: Optional[Iterable[str]] = None) -> ProviderRegistry:
    """Construct every configured provider once from a ``ConfigLoader``."""
    providers: dict[str, StreamingProvider] = {}
    for name, provider_cfg in config.get_providers_config().items():
        if only is not None and name not in only:
            continue
        provider_type = provider_cfg.get("type", name)
        try:
            provider = get_provider(provider_type, {"name": name, **provider_cfg})
        except ValueError as exc:
            raise ConfigError(f"providers.{name}: {exc}") from exc
        providers[name] = provider
        logger.info(
            "Provider %s (%s): %s",
            name,
            provider_type,
            "configured" if provider.is_available() else "no credentials",
        )
    catalog = ModelCatalog(config.get_model_overrides())
    return ProviderRegistry(providers, catalog)


__all__ = [
    "PROVIDER_TYPES",
    "ClaudeProvider",
    "GammaProvider",
    "GoogleProvider",
    "OpenAICompatibleProvider",
    "ProviderRegistry",
    "StreamingProvider",
    "ToolCallAccumulator",
    "build_registry",
    "get_provider",
    "split_system",
]
