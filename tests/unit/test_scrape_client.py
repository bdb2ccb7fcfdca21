"""Tests for the vendor scrape client (HTTP mocked with httpx.MockTransport)."""

import json
from unittest.mock import patch

import httpx
import pytest

from leadpipe.core.config import VendorConfig
from leadpipe.core.errors import (
    ConfigurationError,
    VendorRejectedError,
    VendorUnavailableError,
)
from leadpipe.vendor.scrape_client import ScrapeClient, delivery_key

URLS = ["https://www.linkedin.com/in/jane-doe", "https://www.linkedin.com/in/john-roe"]


def _client(handler, **config: object) -> ScrapeClient:  # type: ignore[no-untyped-def]
    http = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return ScrapeClient(VendorConfig(**config), client=http)  # type: ignore[arg-type]


@pytest.fixture(autouse=True)
def _api_key():  # type: ignore[no-untyped-def]
    with patch.dict("os.environ", {"BRIGHTDATA_API_KEY": "test-key"}):
        yield


class TestDeliveryKey:
    def test_no_directory(self) -> None:
        assert delivery_key("s_1") == "snapshot_s_1.json.gz"

    def test_directory_slashes_trimmed(self) -> None:
        assert delivery_key("s_1", "/brightdata/") == "brightdata/snapshot_s_1.json.gz"


class TestTrigger:
    async def test_returns_snapshot_id(self) -> None:
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json={"snapshot_id": "s_abc"})

        client = _client(handler, bucket="deliveries", directory="bd")
        assert await client.trigger(URLS) == "s_abc"

        request = seen[0]
        assert request.method == "POST"
        assert request.url.path == "/datasets/v3/trigger"
        assert request.url.params["dataset_id"] == "gd_l1viktl72bvl7bjuj0"
        assert request.url.params["include_errors"] == "true"
        assert request.headers["Authorization"] == "Bearer test-key"

        body = json.loads(request.content)
        assert body["input"] == [{"url": u} for u in URLS]
        assert body["deliver"]["bucket"] == "deliveries"
        assert body["deliver"]["directory"] == "bd"
        assert body["deliver"]["compress"] is True

    async def test_delivery_key_uses_directory(self) -> None:
        client = _client(lambda r: httpx.Response(200), directory="bd")
        assert client.delivery_key("s_1") == "bd/snapshot_s_1.json.gz"

    async def test_401_is_rejection_with_body(self) -> None:
        client = _client(lambda r: httpx.Response(401, text="invalid token"))
        with pytest.raises(VendorRejectedError) as exc_info:
            await client.trigger(URLS)
        assert exc_info.value.status_code == 401
        assert exc_info.value.body == "invalid token"
        assert str(exc_info.value) == "Vendor scrape trigger failed: 401 - invalid token"
        assert exc_info.value.retryable is False

    async def test_missing_snapshot_id_is_rejection(self) -> None:
        client = _client(lambda r: httpx.Response(200, json={"status": "ok"}))
        with pytest.raises(VendorRejectedError):
            await client.trigger(URLS)

    async def test_non_json_success_is_rejection(self) -> None:
        client = _client(lambda r: httpx.Response(200, text="<html>"))
        with pytest.raises(VendorRejectedError):
            await client.trigger(URLS)

    async def test_connection_error_is_retryable(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("refused", request=request)

        client = _client(handler)
        with pytest.raises(VendorUnavailableError) as exc_info:
            await client.trigger(URLS)
        assert exc_info.value.retryable is True

    async def test_missing_api_key(self) -> None:
        client = _client(lambda r: httpx.Response(200, json={"snapshot_id": "s"}))
        with (
            patch.dict("os.environ", {}, clear=True),
            pytest.raises(ConfigurationError, match="BRIGHTDATA_API_KEY"),
        ):
            await client.trigger(URLS)

    async def test_empty_urls(self) -> None:
        client = _client(lambda r: httpx.Response(200))
        with pytest.raises(ValueError, match="no URLs"):
            await client.trigger([])
