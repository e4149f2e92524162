# tests/test_detector_client.py
"""Detector client: threshold filtering and error mapping."""

import sys
import os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from unittest.mock import AsyncMock, patch

import httpx
import pytest
from eli_ingest.errors import EnrichmentError
from eli_ingest.services.detector_client import DetectorClient

URL = "http://detector:9000"


def response(status=200, body=None):
    return httpx.Response(status, json=body, request=httpx.Request("POST", f"{URL}/detect"))


class TestDetectorClient:
    @pytest.mark.asyncio
    async def test_not_configured_returns_nothing(self):
        assert await DetectorClient(None).detect("https://img/1.jpg") == []

    @pytest.mark.asyncio
    async def test_filters_by_threshold_and_score_range(self):
        body = {"detections": [
            {"type": "object", "label": "car", "score": 0.9, "bbox": [1, 2, 3, 4]},
            {"type": "object", "label": "dog", "score": 0.2},
            {"type": "face", "class": "face", "confidence": 0.5},
            {"type": "object", "label": "bad", "score": 1.7},
            "garbage",
        ]}
        with patch("httpx.AsyncClient.post", new_callable=AsyncMock, return_value=response(body=body)) as post:
            detections = await DetectorClient(URL).detect("https://img/1.jpg")

        assert [d["label"] for d in detections] == ["car", "face"]
        assert post.call_args.kwargs["json"] == {"image_url": "https://img/1.jpg", "confidence_threshold": 0.35}

    @pytest.mark.asyncio
    async def test_http_error(self):
        with patch("httpx.AsyncClient.post", new_callable=AsyncMock, return_value=response(503, {"detail": "x"})):
            with pytest.raises(EnrichmentError):
                await DetectorClient(URL).detect("https://img/1.jpg")

    @pytest.mark.asyncio
    async def test_connection_error(self):
        with patch("httpx.AsyncClient.post", new_callable=AsyncMock, side_effect=httpx.ConnectError("refused")):
            with pytest.raises(EnrichmentError):
                await DetectorClient(URL).detect("https://img/1.jpg")

    @pytest.mark.asyncio
    async def test_malformed_response(self):
        with patch("httpx.AsyncClient.post", new_callable=AsyncMock, return_value=response(body={"boxes": []})):
            with pytest.raises(EnrichmentError):
                await DetectorClient(URL).detect("https://img/1.jpg")
