"""HTTP provider for REST-style resource APIs.

Resource routes:
    POST   {endpoint}/{resource_type}          -> create, returns attributes
    GET    {endpoint}/{resource_type}/{id}     -> read
    PUT    {endpoint}/{resource_type}/{id}     -> update in place
    DELETE {endpoint}/{resource_type}/{id}     -> delete

Status mapping:
    2xx          success
    404          ResourceNotFoundError
    408/429/5xx  TransientProviderError (retried by the executor)
    other 4xx    PermanentProviderError
    transport    TransientProviderError
"""
import logging
from typing import Any, Optional

import httpx

from .base import (
    ProviderConfig,
    ResourceProvider,
    ProviderError,
    TransientProviderError,
    PermanentProviderError,
    ResourceNotFoundError,
)

logger = logging.getLogger(__name__)

TRANSIENT_STATUS = {408, 425, 429, 500, 502, 503, 504}


class HTTPProvider(ResourceProvider):
    """Provider backed by a REST API over httpx."""

    def __init__(
        self,
        provider_id: str,
        config: ProviderConfig,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        super().__init__(provider_id, config)
        if not config.endpoint:
            raise ValueError(f"Provider {provider_id} requires an endpoint")
        self._base_url = config.endpoint.rstrip("/")
        self._transport = transport
        self._http: Optional[httpx.AsyncClient] = None

    def _client(self) -> httpx.AsyncClient:
        if self._http is None:
            headers = {"Accept": "application/json", **self.config.headers}
            token = self.config.get_token()
            if token:
                headers["Authorization"] = f"Bearer {token}"
            self._http = httpx.AsyncClient(
                base_url=self._base_url,
                timeout=httpx.Timeout(self.config.timeout),
                verify=self.config.verify_ssl,
                headers=headers,
                transport=self._transport,
            )
        return self._http

    async def _request(
        self,
        method: str,
        resource_type: str,
        path: str,
        payload: Optional[dict[str, Any]] = None,
    ) -> Optional[dict[str, Any]]:
        """Send a request and translate failures into provider errors."""
        try:
            resp = await self._client().request(method, path, json=payload)
        except httpx.TransportError as e:
            raise TransientProviderError(
                f"{method} {path} failed: {e}", resource_type
            ) from e

        if resp.status_code == 404:
            raise ResourceNotFoundError(
                f"{method} {path}: not found", resource_type, 404
            )
        if resp.status_code in TRANSIENT_STATUS:
            raise TransientProviderError(
                f"{method} {path}: HTTP {resp.status_code} {_error_detail(resp)}",
                resource_type,
                resp.status_code,
            )
        if resp.status_code >= 400:
            raise PermanentProviderError(
                f"{method} {path}: HTTP {resp.status_code} {_error_detail(resp)}",
                resource_type,
                resp.status_code,
            )

        if resp.status_code == 204 or not resp.content:
            return None
        try:
            return resp.json()
        except ValueError as e:
            raise ProviderError(
                f"{method} {path}: invalid JSON response", resource_type, resp.status_code
            ) from e

    async def create(self, resource_type: str, attributes: dict[str, Any]) -> dict[str, Any]:
        body = await self._request("POST", resource_type, f"/{resource_type}", attributes)
        if not body or "id" not in body:
            raise PermanentProviderError(
                f"create {resource_type}: response has no id", resource_type
            )
        logger.info(f"{self.provider_id}: created {resource_type} {body['id']}")
        return body

    async def update(
        self, resource_type: str, resource_id: str, attributes: dict[str, Any]
    ) -> dict[str, Any]:
        body = await self._request(
            "PUT", resource_type, f"/{resource_type}/{resource_id}", attributes
        )
        result = dict(body or attributes)
        result.setdefault("id", resource_id)
        return result

    async def delete(self, resource_type: str, resource_id: str) -> None:
        await self._request("DELETE", resource_type, f"/{resource_type}/{resource_id}")
        logger.info(f"{self.provider_id}: deleted {resource_type} {resource_id}")

    async def read(self, resource_type: str, resource_id: str) -> dict[str, Any]:
        body = await self._request("GET", resource_type, f"/{resource_type}/{resource_id}")
        return body or {"id": resource_id}

    async def close(self) -> None:
        if self._http is not None:
            await self._http.aclose()
            self._http = None


def _error_detail(resp: httpx.Response) -> str:
    """Short error message from a response body."""
    try:
        data = resp.json()
    except ValueError:
        return resp.text[:200]
    if isinstance(data, dict):
        return str(data.get("message") or data.get("error") or data)[:200]
    return str(data)[:200]
