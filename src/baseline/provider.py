"""Baseline provider interface and per-source routing."""

from __future__ import annotations

import logging
from typing import Optional, Protocol, Union

from src.models.baseline import BaselineResult, FetchBaselineOptions
from src.models.config import BaselineSource, VisualTestConfig

from .figma_mcp_provider import FigmaMcpProvider
from .local_provider import LocalProvider

logger = logging.getLogger(__name__)


class BaselineProvider(Protocol):
    name: str

    async def fetch(self, options: FetchBaselineOptions) -> BaselineResult: ...


def create_provider(provider_type: str, config: VisualTestConfig) -> BaselineProvider:
    if provider_type == "local":
        return LocalProvider(config.directories.baselines)
    if provider_type == "figma-mcp":
        return FigmaMcpProvider(config.baseline.figma)
    raise ValueError(f"Unknown baseline provider type: {provider_type}")


class RoutingBaselineProvider:
    """Dispatches each fetch to the provider matching its source type.

    Plain string sources use ``baseline.provider``; structured sources carry
    their own type. Providers are created on first use and cached.
    """

    name = "routing"

    def __init__(self, config: VisualTestConfig):
        self.config = config
        self.default_type = config.baseline.provider
        self._providers: dict[str, BaselineProvider] = {}

    async def fetch(self, options: FetchBaselineOptions) -> BaselineResult:
        return await self._provider_for(options.source).fetch(options)

    async def exists(self, source: Union[str, BaselineSource]) -> bool:
        provider = self._provider_for(source)
        exists = getattr(provider, "exists", None)
        return await exists(source) if exists else False

    async def dispose(self) -> None:
        providers = list(self._providers.values())
        self._providers.clear()
        for provider in providers:
            dispose = getattr(provider, "dispose", None)
            if dispose is not None:
                await dispose()

    def resolve_type(self, source: Union[str, BaselineSource]) -> str:
        if isinstance(source, BaselineSource):
            return source.type
        return self.default_type

    def _provider_for(self, source: Union[str, BaselineSource]) -> BaselineProvider:
        provider_type = self.resolve_type(source)
        provider: Optional[BaselineProvider] = self._providers.get(provider_type)
        if provider is None:
            provider = create_provider(provider_type, self.config)
            self._providers[provider_type] = provider
            logger.debug("Created %s baseline provider", provider_type)
        return provider


def create_baseline_provider(config: VisualTestConfig) -> RoutingBaselineProvider:
    return RoutingBaselineProvider(config)
