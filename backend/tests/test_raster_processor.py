"""
Unit tests for NDVI raster generation through the Process API.
"""

import base64
import json
from datetime import datetime, timezone

import httpx
import pytest

from crophealth.config import Settings
from crophealth.raster_processor import EVALSCRIPT_NDVI, generate_ndvi_raster, utc_day_range
from crophealth.sample_data import DEFAULT_DEMO_AOI, FALLBACK_SCENES

PNG_BYTES = b"\x89PNG\r\n\x1a\nfake-png-body"


class ProcessEndpoint:
    def __init__(self, status=200, content=PNG_BYTES, content_type="image/png", exc=None):
        self.status = status
        self.content = content
        self.content_type = content_type
        self.exc = exc
        self.requests = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.exc:
            raise self.exc
        if self.status >= 400:
            return httpx.Response(self.status, text="process error")
        return httpx.Response(200, content=self.content, headers={"content-type": self.content_type})

    @property
    def last_body(self):
        return json.loads(self.requests[-1].content)


async def render(endpoint, settings, broker, scene=None, **kwargs):
    return await generate_ndvi_raster(
        aoi=DEFAULT_DEMO_AOI,
        scene=scene or FALLBACK_SCENES[0],
        broker=broker,
        config=settings,
        transport=httpx.MockTransport(endpoint),
        **kwargs,
    )


class TestEvalscript:
    """Tests for the static evalscript and time window."""

    def test_evalscript_computes_ndvi(self):
        assert EVALSCRIPT_NDVI.startswith("//VERSION=3")
        assert "(sample.B08 - sample.B04)" in EVALSCRIPT_NDVI
        assert '"B04", "B08", "dataMask"' in EVALSCRIPT_NDVI
        assert "return [0, 0, 0, 0];" in EVALSCRIPT_NDVI

    def test_evalscript_classes(self):
        assert "ndvi < 0.2" in EVALSCRIPT_NDVI
        assert "ndvi < 0.4" in EVALSCRIPT_NDVI
        assert "ndvi < 0.6" in EVALSCRIPT_NDVI
        assert "r = 34; g = 197; b = 94;" in EVALSCRIPT_NDVI
        assert "return [r, g, b, 170];" in EVALSCRIPT_NDVI

    def test_utc_day_range(self):
        captured = datetime(2026, 2, 5, 5, 2, 58, tzinfo=timezone.utc)
        assert utc_day_range(captured) == ("2026-02-05T00:00:00Z", "2026-02-05T23:59:59Z")


class TestGenerateRaster:
    """Tests for the Process API call."""

    @pytest.mark.asyncio
    async def test_success_returns_data_url(self, cdse_settings, stub_broker):
        endpoint = ProcessEndpoint()
        result = await render(endpoint, cdse_settings, stub_broker)

        assert result.success is True
        assert result.error is None
        assert result.image_bbox == DEFAULT_DEMO_AOI.bbox
        assert result.image_data_url == "data:image/png;base64," + base64.b64encode(PNG_BYTES).decode()

    @pytest.mark.asyncio
    async def test_request_shape(self, cdse_settings, stub_broker):
        endpoint = ProcessEndpoint()
        await render(endpoint, cdse_settings, stub_broker, max_cloud_cover=35)

        request = endpoint.requests[0]
        body = endpoint.last_body
        data_filter = body["input"]["data"][0]["dataFilter"]

        assert str(request.url) == cdse_settings.cdse_process_url
        assert request.headers["Authorization"] == "Bearer test-token"
        assert body["input"]["bounds"]["bbox"] == [85.2, 20.1, 85.45, 20.35]
        assert body["input"]["data"][0]["type"] == "sentinel-2-l2a"
        assert data_filter["timeRange"] == {"from": "2026-02-05T00:00:00Z", "to": "2026-02-05T23:59:59Z"}
        assert data_filter["maxCloudCoverage"] == 35
        assert data_filter["mosaickingOrder"] == "mostRecent"
        assert body["output"]["responses"][0]["format"]["type"] == "image/png"
        assert body["evalscript"] == EVALSCRIPT_NDVI

    @pytest.mark.asyncio
    async def test_default_size(self, cdse_settings, stub_broker):
        endpoint = ProcessEndpoint()
        await render(endpoint, cdse_settings, stub_broker)

        output = endpoint.last_body["output"]
        assert (output["width"], output["height"]) == (384, 384)

    @pytest.mark.asyncio
    async def test_size_and_cloud_clamped(self, cdse_settings, stub_broker):
        endpoint = ProcessEndpoint()
        await render(endpoint, cdse_settings, stub_broker, width=50, height=5000, max_cloud_cover=150)

        body = endpoint.last_body
        assert body["output"]["width"] == 128
        assert body["output"]["height"] == 1024
        assert body["input"]["data"][0]["dataFilter"]["maxCloudCoverage"] == 100

    @pytest.mark.asyncio
    async def test_provider_error(self, cdse_settings, stub_broker):
        result = await render(ProcessEndpoint(status=500), cdse_settings, stub_broker)

        assert result.success is False
        assert result.image_data_url is None
        assert result.image_bbox == DEFAULT_DEMO_AOI.bbox
        assert "500" in result.error

    @pytest.mark.asyncio
    async def test_unauthorized_invalidates_token(self, cdse_settings, stub_broker):
        result = await render(ProcessEndpoint(status=401), cdse_settings, stub_broker)
        assert result.success is False
        assert stub_broker.invalidated == 1

    @pytest.mark.asyncio
    async def test_timeout(self, cdse_settings, stub_broker):
        result = await render(ProcessEndpoint(exc=httpx.ReadTimeout("slow")), cdse_settings, stub_broker)
        assert result.success is False
        assert "timed out" in result.error

    @pytest.mark.asyncio
    async def test_empty_body(self, cdse_settings, stub_broker):
        result = await render(ProcessEndpoint(content=b""), cdse_settings, stub_broker)
        assert result.success is False
        assert "empty image" in result.error

    @pytest.mark.asyncio
    async def test_missing_credentials(self, stub_broker):
        endpoint = ProcessEndpoint()
        result = await render(endpoint, Settings(cdse_client_id="", cdse_client_secret=""), stub_broker)

        assert result.success is False
        assert result.error == "CDSE_CLIENT_ID is missing in environment."
        assert endpoint.requests == []
