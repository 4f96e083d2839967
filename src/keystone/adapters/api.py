"""External metrics API adapter.

Executes ApiPayload entries as GET requests against the configured metrics API.
Responses may be a bare list of rows or an object with a "data" (or
"results") list, which covers the providers we integrate with.

Usage:
    from keystone.adapters.api import ApiSourceAdapter

    async with ApiSourceAdapter(base_url="https://metrics.example.com", api_key="...") as api:
        rows = await api.execute(ApiPayload(endpoint="/surveys/participation"), timeout=2.0)
"""

import logging
from typing import Any

from keystone.adapters.base import SourceAdapter
from keystone.adapters.http import BaseAsyncClient, UnavailableAPIError
from keystone.engine.payloads import ApiPayload
from keystone.models import SourceKind

logger = logging.getLogger(__name__)


class ApiSourceAdapter(BaseAsyncClient, SourceAdapter):
    """Async adapter for the external metrics API.

    Args:
        base_url: API base URL
        api_key: Bearer token (optional)
        rate_limit: Max requests per second (default: 10)
    """

    kind = SourceKind.API

    def __init__(self, base_url: str, api_key: str | None = None, rate_limit: int = 10) -> None:
        headers = {"Accept": "application/json"}
        if api_key:
            headers["Authorization"] = f"Bearer {api_key}"
        super().__init__(base_url=base_url, headers=headers, rate_limit=rate_limit)

    async def start(self) -> None:
        await self.open()

    async def close(self) -> None:
        await self.aclose()

    async def execute(self, payload: ApiPayload, timeout: float) -> list[dict[str, Any]]:
        """GET the payload's endpoint and return its rows.

        Raises:
            SourceTimeout / TransientAPIError / UnavailableAPIError
        """
        if self._client is None:
            await self.open()
        body = await self._request(
            payload.method,
            payload.path(),
            params=payload.request_params(),
            timeout=timeout,
        )
        return _extract_rows(body)


def _extract_rows(body: Any) -> list[dict[str, Any]]:
    if isinstance(body, dict):
        for key in ("data", "results"):
            if isinstance(body.get(key), list):
                body = body[key]
                break
        else:
            raise UnavailableAPIError(f"Unexpected response shape: keys={sorted(body)[:10]}")
    if not isinstance(body, list):
        raise UnavailableAPIError(f"Unexpected response type: {type(body).__name__}")
    rows = [row for row in body if isinstance(row, dict)]
    if len(rows) != len(body):
        logger.warning("Dropped %d non-object rows from API response", len(body) - len(rows))
    return rows
