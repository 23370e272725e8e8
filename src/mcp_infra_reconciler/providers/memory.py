"""In-memory provider: a local simulated cloud.

Useful for dry runs, demos and tests. Resources live in a dict keyed by
``(resource_type, id)``; ids are generated as ``<prefix>-<counter>``.
Failures can be injected per address-like key to exercise retry and
partial-failure paths.
"""
import asyncio
import itertools
import logging
from typing import Any, Callable, Optional

from .base import (
    ProviderConfig,
    ResourceProvider,
    ResourceNotFoundError,
)

logger = logging.getLogger(__name__)

# (operation, resource_type, attributes-or-id) -> None, may raise
FaultHook = Callable[[str, str, Any], None]


class InMemoryProvider(ResourceProvider):
    """Provider that keeps resources in process memory."""

    def __init__(
        self,
        provider_id: str = "memory",
        config: Optional[ProviderConfig] = None,
        latency: float = 0.0,
    ):
        super().__init__(provider_id, config or ProviderConfig(type="memory"))
        self.latency = latency
        self.resources: dict[tuple[str, str], dict[str, Any]] = {}
        self.calls: list[tuple[str, str, str]] = []
        self.fault_hook: Optional[FaultHook] = None
        self._counter = itertools.count(1)
        self._lock = asyncio.Lock()

    def _new_id(self, resource_type: str) -> str:
        prefix = resource_type.split("_", 1)[-1].replace("_", "-")
        return f"{prefix}-{next(self._counter):04d}"

    async def _simulate(self, operation: str, resource_type: str, subject: Any) -> None:
        if self.latency:
            await asyncio.sleep(self.latency)
        if self.fault_hook is not None:
            self.fault_hook(operation, resource_type, subject)

    async def create(self, resource_type: str, attributes: dict[str, Any]) -> dict[str, Any]:
        await self._simulate("create", resource_type, attributes)
        async with self._lock:
            resource_id = self._new_id(resource_type)
            stored = {**attributes, "id": resource_id}
            self.resources[(resource_type, resource_id)] = stored
            self.calls.append(("create", resource_type, resource_id))
        logger.debug(f"Created {resource_type} {resource_id}")
        return dict(stored)

    async def update(
        self, resource_type: str, resource_id: str, attributes: dict[str, Any]
    ) -> dict[str, Any]:
        await self._simulate("update", resource_type, resource_id)
        async with self._lock:
            key = (resource_type, resource_id)
            if key not in self.resources:
                raise ResourceNotFoundError(
                    f"{resource_type} {resource_id} not found", resource_type, 404
                )
            stored = {**attributes, "id": resource_id}
            self.resources[key] = stored
            self.calls.append(("update", resource_type, resource_id))
        return dict(stored)

    async def delete(self, resource_type: str, resource_id: str) -> None:
        await self._simulate("delete", resource_type, resource_id)
        async with self._lock:
            key = (resource_type, resource_id)
            if key not in self.resources:
                raise ResourceNotFoundError(
                    f"{resource_type} {resource_id} not found", resource_type, 404
                )
            del self.resources[key]
            self.calls.append(("delete", resource_type, resource_id))

    async def read(self, resource_type: str, resource_id: str) -> dict[str, Any]:
        key = (resource_type, resource_id)
        if key not in self.resources:
            raise ResourceNotFoundError(
                f"{resource_type} {resource_id} not found", resource_type, 404
            )
        return dict(self.resources[key])
