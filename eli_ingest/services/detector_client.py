# eli_ingest/services/detector_client.py
"""
HTTP client for the object/face/plate detection model service.

POST {DETECTOR_URL}/detect  {"image_url": ..., "confidence_threshold": ...}
→ {"detections": [{"type", "label", "score" | "confidence", "bbox", "meta"}]}

Detections below the confidence threshold, or with a score outside [0, 1],
are dropped. Transport and response errors raise EnrichmentError.
"""

from typing import Optional

import httpx

from eli_ingest.errors import EnrichmentError
from eli_ingest.utils.logger import get_logger

logger = get_logger(__name__)


class DetectorClient:
    def __init__(self, base_url: Optional[str], api_key: Optional[str] = None,
                 timeout: float = 30.0, confidence_threshold: float = 0.35):
        self.base_url = base_url.rstrip("/") if base_url else None
        self.api_key = api_key
        self.confidence_threshold = confidence_threshold
        self._timeout = httpx.Timeout(timeout, connect=5.0)

    @classmethod
    def from_settings(cls, settings) -> "DetectorClient":
        return cls(
            base_url=None if settings.MOCK_MODE else settings.DETECTOR_URL,
            api_key=settings.DETECTOR_API_KEY,
            timeout=settings.DETECTOR_TIMEOUT_SECONDS,
            confidence_threshold=settings.DETECTION_CONFIDENCE_THRESHOLD,
        )

    @property
    def enabled(self) -> bool:
        return bool(self.base_url)

    def _headers(self) -> dict:
        return {"X-API-Key": self.api_key} if self.api_key else {}

    async def detect(self, image_url: str, confidence_threshold: Optional[float] = None) -> list[dict]:
        if not self.enabled:
            logger.debug("[DETECT] Detector not configured - no detections")
            return []
        threshold = self.confidence_threshold if confidence_threshold is None else confidence_threshold

        try:
            async with httpx.AsyncClient(timeout=self._timeout) as client:
                response = await client.post(
                    f"{self.base_url}/detect",
                    json={"image_url": image_url, "confidence_threshold": threshold},
                    headers=self._headers(),
                )
                response.raise_for_status()
                result = response.json()
        except httpx.HTTPStatusError as e:
            raise EnrichmentError(f"Detector returned HTTP {e.response.status_code}") from e
        except (httpx.HTTPError, ValueError) as e:
            raise EnrichmentError(f"Detector request failed: {e}") from e

        if not isinstance(result, dict) or not isinstance(result.get("detections"), list):
            raise EnrichmentError("Malformed detector response (missing 'detections')")

        detections = []
        for raw in result["detections"]:
            if not isinstance(raw, dict):
                continue
            score = raw.get("score", raw.get("confidence"))
            if not isinstance(score, (int, float)) or not 0.0 <= score <= 1.0:
                logger.debug(f"[DETECT] Dropping detection with invalid score: {raw}")
                continue
            if score < threshold:
                continue
            detections.append({
                "type": raw.get("type"),
                "label": raw.get("label") or raw.get("class"),
                "score": float(score),
                "bbox": raw.get("bbox"),
                "meta": raw.get("meta"),
            })

        logger.info(f"[DETECT] {len(detections)} detections ≥ {threshold} for {image_url}")
        return detections
