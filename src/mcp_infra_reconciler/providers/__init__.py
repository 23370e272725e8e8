"""Resource providers for different cloud APIs."""
from typing import Optional

from .base import (
    ResourceProvider,
    ProviderConfig,
    ProviderError,
    TransientProviderError,
    PermanentProviderError,
    ResourceNotFoundError,
)
from .http import HTTPProvider
from .memory import InMemoryProvider

__all__ = [
    "ResourceProvider",
    "ProviderConfig",
    "ProviderError",
    "TransientProviderError",
    "PermanentProviderError",
    "ResourceNotFoundError",
    "HTTPProvider",
    "InMemoryProvider",
    "ProviderRegistry",
    "UnknownResourceTypeError",
    "create_provider",
    "PROVIDER_TYPES",
]

# Provider type registry
PROVIDER_TYPES = {
    "http": HTTPProvider,
    "memory": InMemoryProvider,
}


def create_provider(provider_id: str, config: dict) -> ResourceProvider:
    """Factory function to create provider instances."""
    provider_type = config.get("type", "").lower()
    if provider_type not in PROVIDER_TYPES:
        raise ValueError(f"Unknown provider type: {provider_type}")

    provider_class = PROVIDER_TYPES[provider_type]
    return provider_class(provider_id, ProviderConfig(**config))


class UnknownResourceTypeError(KeyError):
    """No registered provider handles a resource type."""

    def __str__(self) -> str:
        return str(self.args[0]) if self.args else "unknown resource type"


class ProviderRegistry:
    """Maps resource types to providers by longest matching prefix.

    ``aws_`` matches ``aws_vpc`` and ``aws_subnet``; an exact type name
    wins over any prefix.
    """

    def __init__(self):
        self._by_prefix: dict[str, ResourceProvider] = {}

    def register(self, prefix: str, provider: ResourceProvider) -> None:
        if prefix in self._by_prefix and self._by_prefix[prefix] is not provider:
            raise ValueError(f"Prefix '{prefix}' is already registered")
        self._by_prefix[prefix] = provider

    def find(self, resource_type: str) -> Optional[ResourceProvider]:
        best: Optional[str] = None
        for prefix in self._by_prefix:
            if resource_type.startswith(prefix):
                if best is None or len(prefix) > len(best):
                    best = prefix
        return self._by_prefix[best] if best is not None else None

    def get(self, resource_type: str) -> ResourceProvider:
        provider = self.find(resource_type)
        if provider is None:
            raise UnknownResourceTypeError(
                f"No provider registered for resource type '{resource_type}'"
            )
        return provider

    def handles(self, resource_type: str) -> bool:
        return self.find(resource_type) is not None

    def replace_fields(self, resource_type: str) -> set[str]:
        provider = self.find(resource_type)
        return provider.replace_fields(resource_type) if provider else set()

    @property
    def providers(self) -> list[ResourceProvider]:
        seen: list[ResourceProvider] = []
        for provider in self._by_prefix.values():
            if provider not in seen:
                seen.append(provider)
        return seen

    async def close_all(self) -> None:
        for provider in self.providers:
            await provider.close()
