"""Vendor adapters behind one streaming interface."""

from __future__ import annotations

from typing import TYPE_CHECKING

import httpx

from conduit.providers.anthropic import AnthropicProvider
from conduit.providers.base import AbortSignal, LLMProvider, ProviderConfig, StreamOptions
from conduit.providers.deepseek import DeepSeekProvider
from conduit.providers.lmstudio import LMStudioProvider

if TYPE_CHECKING:
    from conduit.config import ProviderType, Settings

__all__ = [
    "AbortSignal",
    "AnthropicProvider",
    "DeepSeekProvider",
    "LLMProvider",
    "LMStudioProvider",
    "ProviderConfig",
    "StreamOptions",
    "create_provider",
]


def create_provider(
    kind: ProviderType | None,
    settings: Settings,
    transport: httpx.AsyncBaseTransport | None = None,
) -> LLMProvider:
    """Build the adapter for `kind` (settings.provider when None).

    The caller owns the instance and must aclose() it.
    """
    kind = kind or settings.provider
    if kind != settings.provider:
        # Credentials and base URL follow the requested provider
        settings = settings.model_copy(update={"provider": kind})
    config = settings.provider_config()
    if kind == "anthropic":
        return AnthropicProvider(config, transport=transport)
    if kind == "deepseek":
        return DeepSeekProvider(config, transport=transport)
    if kind == "lmstudio":
        return LMStudioProvider(
            config,
            transport=transport,
            connect_retries=settings.lmstudio_retries,
            connect_retry_delay=settings.lmstudio_retry_delay,
        )
    raise ValueError(f"Unknown provider: {kind}")
