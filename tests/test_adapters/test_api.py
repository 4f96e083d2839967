"""Tests for the external metrics API adapter."""

from types import MappingProxyType

import httpx
import pytest

from keystone.adapters.api import ApiSourceAdapter
from keystone.adapters.http import UnavailableAPIError
from keystone.engine.payloads import ApiPayload
from keystone.models import SourceKind

BASE_URL = "https://metrics.example.com"


class TestApiSourceAdapter:
    """Tests for ApiSourceAdapter.execute()."""

    def test_kind_and_auth_header(self):
        """Adapter reports the API kind and sends a bearer token when given."""
        adapter = ApiSourceAdapter(base_url=BASE_URL, api_key="secret")
        assert adapter.kind is SourceKind.API
        assert adapter.headers["Authorization"] == "Bearer secret"

    def test_no_auth_header_without_key(self):
        adapter = ApiSourceAdapter(base_url=BASE_URL)
        assert "Authorization" not in adapter.headers

    @pytest.mark.asyncio
    async def test_renders_path_and_query(self, respx_mock):
        """Path params fill the endpoint template; query and limit go to params."""
        route = respx_mock.get(f"{BASE_URL}/benchmarks/industry_burnout_benchmark").mock(
            return_value=httpx.Response(200, json=[{"department": "Eng", "value": 0.4}])
        )
        payload = ApiPayload(
            endpoint="/benchmarks/{metric}",
            path_params=MappingProxyType({"metric": "industry_burnout_benchmark"}),
            query=MappingProxyType({"dimension": "department"}),
            limit=10,
        )

        async with ApiSourceAdapter(base_url=BASE_URL) as adapter:
            rows = await adapter.execute(payload, timeout=2.0)

        assert rows == [{"department": "Eng", "value": 0.4}]
        params = route.calls.last.request.url.params
        assert params["dimension"] == "department"
        assert params["limit"] == "10"

    @pytest.mark.asyncio
    async def test_opens_client_lazily(self, respx_mock):
        """execute() works without an explicit start()."""
        respx_mock.get(f"{BASE_URL}/surveys/participation").mock(
            return_value=httpx.Response(200, json=[])
        )
        adapter = ApiSourceAdapter(base_url=BASE_URL)
        try:
            rows = await adapter.execute(ApiPayload(endpoint="/surveys/participation"), timeout=2.0)
        finally:
            await adapter.close()

        assert rows == []
        assert adapter._client is None

    @pytest.mark.asyncio
    @pytest.mark.parametrize("key", ["data", "results"])
    async def test_unwraps_enveloped_rows(self, respx_mock, key):
        """Rows wrapped in a data/results object are unwrapped."""
        respx_mock.get(f"{BASE_URL}/surveys/participation").mock(
            return_value=httpx.Response(200, json={key: [{"department": "Ops", "participation": 0.8}]})
        )

        async with ApiSourceAdapter(base_url=BASE_URL) as adapter:
            rows = await adapter.execute(ApiPayload(endpoint="/surveys/participation"), timeout=2.0)

        assert rows == [{"department": "Ops", "participation": 0.8}]

    @pytest.mark.asyncio
    async def test_drops_non_object_rows(self, respx_mock):
        respx_mock.get(f"{BASE_URL}/surveys/participation").mock(
            return_value=httpx.Response(200, json=[{"department": "Ops"}, 3, "x"])
        )

        async with ApiSourceAdapter(base_url=BASE_URL) as adapter:
            rows = await adapter.execute(ApiPayload(endpoint="/surveys/participation"), timeout=2.0)

        assert rows == [{"department": "Ops"}]

    @pytest.mark.asyncio
    async def test_unexpected_shape_is_unavailable(self, respx_mock):
        """An object without a row list means the provider changed its format."""
        respx_mock.get(f"{BASE_URL}/surveys/participation").mock(
            return_value=httpx.Response(200, json={"status": "ok"})
        )

        async with ApiSourceAdapter(base_url=BASE_URL) as adapter:
            with pytest.raises(UnavailableAPIError, match="Unexpected response shape"):
                await adapter.execute(ApiPayload(endpoint="/surveys/participation"), timeout=2.0)
