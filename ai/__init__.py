"""AI request layer for codebridge."""

from ai.adapters import RequestCoordinator, ResponseCache, ProviderRegistry

__all__ = ["RequestCoordinator", "ResponseCache", "ProviderRegistry"]
