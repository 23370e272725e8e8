"""Base provider abstraction for cloud resource APIs."""
import os
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Optional

logger = logging.getLogger(__name__)


class ProviderError(Exception):
    """Base class for errors returned by a provider API."""

    def __init__(self, message: str, resource_type: str = "", status: Optional[int] = None):
        self.message = message
        self.resource_type = resource_type
        self.status = status
        super().__init__(message)


class TransientProviderError(ProviderError):
    """Rate limiting, throttling or network failure. Safe to retry."""
    pass


class PermanentProviderError(ProviderError):
    """Validation, permission or conflict error. Never retried."""
    pass


class ResourceNotFoundError(PermanentProviderError):
    """The provider has no resource with the requested id."""
    pass


@dataclass
class ProviderConfig:
    """Configuration for one provider instance."""
    type: str
    name: str = ""
    prefixes: list[str] = field(default_factory=list)
    endpoint: str = ""
    token: Optional[str] = None
    token_env: str = "STACKCRAFT_PROVIDER_TOKEN"
    timeout: float = 30
    verify_ssl: bool = True
    replace_on_change: dict[str, list[str]] = field(default_factory=dict)
    headers: dict[str, str] = field(default_factory=dict)

    def get_token(self) -> str:
        """Get API token from config or environment variable."""
        if self.token:
            return self.token
        return os.environ.get(self.token_env, "")


class ResourceProvider(ABC):
    """Abstract base class for resource providers.

    A provider exposes CRUD for the resource types it owns. Returned
    attribute mappings always carry the provider-assigned ``id``.
    """

    # Extra replace-only fields, keyed by resource type
    replace_on_change: dict[str, list[str]] = {}

    def __init__(self, provider_id: str, config: ProviderConfig):
        self.provider_id = provider_id
        self.config = config

    @property
    def name(self) -> str:
        return self.config.name or self.provider_id

    def replace_fields(self, resource_type: str) -> set[str]:
        """Replace-only fields this provider declares for a resource type."""
        fields = set(self.replace_on_change.get(resource_type, []))
        fields.update(self.config.replace_on_change.get(resource_type, []))
        return fields

    @abstractmethod
    async def create(self, resource_type: str, attributes: dict[str, Any]) -> dict[str, Any]:
        """Create a resource and return its full attributes."""
        pass

    @abstractmethod
    async def update(
        self, resource_type: str, resource_id: str, attributes: dict[str, Any]
    ) -> dict[str, Any]:
        """Update a resource in place and return its full attributes."""
        pass

    @abstractmethod
    async def delete(self, resource_type: str, resource_id: str) -> None:
        """Delete a resource."""
        pass

    @abstractmethod
    async def read(self, resource_type: str, resource_id: str) -> dict[str, Any]:
        """Read a resource.

        Raises:
            ResourceNotFoundError: If the resource no longer exists
        """
        pass

    async def close(self) -> None:
        """Release any client resources."""
        return None

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()
        return False
