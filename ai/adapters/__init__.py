"""Adapters layer: provider clients, provider registry, response cache and the
request coordinator that ties them together.
"""

from __future__ import annotations

from .cache import CacheEntry, ResponseCache, make_fingerprint
from .providers import (
    AnthropicProvider,
    BaseProvider,
    BridgeProvider,
    OllamaProvider,
    OpenAIProvider,
    create_provider,
)
from .registry import ProviderDescriptor, ProviderHealth, ProviderRegistry
from .router import ExecutionResult, ProviderFailure, RequestCoordinator, backoff_delay

__all__ = [
    "CacheEntry",
    "ResponseCache",
    "make_fingerprint",
    "BaseProvider",
    "OpenAIProvider",
    "AnthropicProvider",
    "OllamaProvider",
    "BridgeProvider",
    "create_provider",
    "ProviderDescriptor",
    "ProviderHealth",
    "ProviderRegistry",
    "RequestCoordinator",
    "ExecutionResult",
    "ProviderFailure",
    "backoff_delay",
]
