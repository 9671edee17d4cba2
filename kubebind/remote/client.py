"""
Sources of remote endpoint records.

``ApiRemoteEndpointSource`` reads the paged
``GET /kubernetes_operators/{id}/bound_endpoints`` listing over httpx;
``StaticRemoteEndpointSource`` serves a mutable in-memory list.
"""

from __future__ import annotations

from collections.abc import Iterable
from typing import Protocol

import httpx
from loguru import logger
from pydantic import ValidationError
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from kubebind.core.errors import RemoteAPIError, sanitize_error_message
from kubebind.remote.models import RemoteEndpoint, RemoteEndpointPage

remote_log = logger

API_VERSION_HEADER = "Ngrok-Version"
API_VERSION = "2"


class RemoteEndpointSource(Protocol):
    async def list_bound_endpoints(self, operator_id: str) -> list[RemoteEndpoint]: ...


class StaticRemoteEndpointSource:
    """Serves whatever ``endpoints`` currently holds."""

    def __init__(self, endpoints: Iterable[RemoteEndpoint] = ()) -> None:
        self.endpoints = list(endpoints)
        self.calls = 0
        self.error: Exception | None = None

    def set_endpoints(self, endpoints: Iterable[RemoteEndpoint]) -> None:
        self.endpoints = list(endpoints)

    async def list_bound_endpoints(self, operator_id: str) -> list[RemoteEndpoint]:
        self.calls += 1
        if self.error is not None:
            raise self.error
        return list(self.endpoints)


class ApiRemoteEndpointSource:
    """Remote endpoint API client following ``next_page_uri`` paging."""

    def __init__(
        self,
        base_url: str,
        api_key: str | None = None,
        *,
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        headers = {API_VERSION_HEADER: API_VERSION}
        if api_key:
            headers["Authorization"] = f"Bearer {api_key}"
        self._client = httpx.AsyncClient(
            base_url=base_url, headers=headers, timeout=timeout, transport=transport
        )

    @retry(
        retry=retry_if_exception_type(httpx.TransportError),
        wait=wait_exponential(multiplier=0.5, min=0.5, max=4),
        stop=stop_after_attempt(3),
        reraise=True,
    )
    async def _get(self, url: str) -> httpx.Response:
        return await self._client.get(url)

    async def _fetch_page(self, url: str) -> RemoteEndpointPage:
        try:
            response = await self._get(url)
            response.raise_for_status()
            return RemoteEndpointPage.model_validate_json(response.content)
        except httpx.HTTPStatusError as e:
            raise RemoteAPIError(
                sanitize_error_message(
                    f"GET {url} returned {e.response.status_code}: {e.response.text}"
                )
            ) from e
        except httpx.HTTPError as e:
            raise RemoteAPIError(sanitize_error_message(f"GET {url} failed: {e}")) from e
        except ValidationError as e:
            raise RemoteAPIError(sanitize_error_message(f"GET {url} returned bad data: {e}")) from e

    async def list_bound_endpoints(self, operator_id: str) -> list[RemoteEndpoint]:
        endpoints: list[RemoteEndpoint] = []
        url: str | None = f"/kubernetes_operators/{operator_id}/bound_endpoints"
        pages = 0
        while url:
            page = await self._fetch_page(url)
            endpoints.extend(page.endpoints)
            pages += 1
            url = page.next_page_uri
        remote_log.debug(
            "Fetched {} remote endpoints in {} pages for operator {}",
            len(endpoints),
            pages,
            operator_id,
        )
        return endpoints

    async def close(self) -> None:
        await self._client.aclose()

    async def __aenter__(self) -> ApiRemoteEndpointSource:
        return self

    async def __aexit__(self, *exc: object) -> None:
        await self.close()
