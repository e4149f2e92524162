# eli_ingest/services/enrichment_worker.py
"""
Enrichment worker - one job per queue delivery.

Delivery is push-style and at-least-once, so the worker keeps no state
between invocations and every write tolerates redelivery:
  - detections carry a dedup_key and already-stored keys are skipped
  - graph writes are MERGEs
  - the baseline update is NOT idempotent (a redelivered job counts again)

Per job:
  1. run the detector on the first image          (failure → zero detections)
  2. insert all new detections in one batch
  3. link detections to the event in the graph    (failure → logged only)
  4. channel present → baseline/anomaly update, then insight generation

Job status rows (queued → processing → done | error) are observability only.
"""

import base64
import binascii
import hashlib
import json
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Optional

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from eli_ingest.errors import EnrichmentError
from eli_ingest.models.detection import Detection
from eli_ingest.models.enrichment_job import EnrichmentJob
from eli_ingest.services.baseline_service import BaselineEngine
from eli_ingest.services.detector_client import DetectorClient
from eli_ingest.services.graph_store import GraphStore
from eli_ingest.services.insight_service import InsightGenerator
from eli_ingest.services.side_channel import SideChannel
from eli_ingest.utils.logger import get_logger

logger = get_logger(__name__)

JOB_QUEUED = "queued"
JOB_PROCESSING = "processing"
JOB_DONE = "done"
JOB_ERROR = "error"


@dataclass
class EnrichmentResult:
    event_id: Optional[str]
    channel_id: Optional[str]
    image_url: Optional[str]
    detections: int = 0
    inserted: int = 0
    z: Optional[float] = None
    anomaly: bool = False
    insight_id: Optional[int] = None


def decode_envelope(body: Any) -> Optional[dict]:
    """Push envelope {"message": {"data": <base64 JSON>}} → job message, or None if unusable."""
    if not isinstance(body, dict):
        return None
    message = body.get("message")
    data = message.get("data") if isinstance(message, dict) else None
    if not data:
        return None
    try:
        decoded = json.loads(base64.b64decode(data).decode("utf-8"))
    except (binascii.Error, UnicodeDecodeError, ValueError) as e:
        logger.warning(f"[WORKER] Undecodable push message: {e}")
        return None
    return decoded if isinstance(decoded, dict) else None


def unwrap_payload(message: Any) -> dict:
    """Full queue job rows carry the job under "payload"; light messages are the job itself."""
    if not isinstance(message, dict):
        return {}
    payload = message.get("payload")
    return payload if isinstance(payload, dict) else message


def select_image(payload: dict) -> Optional[str]:
    images = payload.get("images")
    if isinstance(images, list) and images and images[0]:
        return images[0]
    image = payload.get("image")
    if isinstance(image, dict) and image.get("url"):
        return image["url"]
    event = payload.get("event")
    return (event.get("image_url") or None) if isinstance(event, dict) else None


def detection_dedup_key(event_id: Optional[str], image_ref: Optional[str], det: dict) -> str:
    raw = "|".join([
        event_id or "",
        image_ref or "",
        str(det.get("type") or ""),
        str(det.get("label") or ""),
        json.dumps(det.get("bbox"), sort_keys=True),
    ])
    return hashlib.sha1(raw.encode("utf-8")).hexdigest()


def save_detections(
    db: Session,
    event_id: Optional[str],
    channel_id: Optional[str],
    image_ref: Optional[str],
    detections: list[dict],
    ts: int,
) -> tuple[list[dict], int]:
    """
    Insert every detection not already stored, in one commit.
    Returns (all detections with their dedup_key, number inserted).
    """
    keyed = {}
    for det in detections:
        key = detection_dedup_key(event_id, image_ref, det)
        keyed.setdefault(key, {**det, "dedup_key": key, "ts": ts})
    if not keyed:
        return [], 0

    existing = {
        k for (k,) in db.query(Detection.dedup_key).filter(Detection.dedup_key.in_(list(keyed))).all()
    }
    rows = [
        Detection(
            dedup_key=key,
            event_id=event_id,
            channel_id=channel_id,
            type=det.get("type"),
            label=det.get("label"),
            score=det.get("score"),
            bbox=det.get("bbox"),
            meta=det.get("meta"),
            ts=ts,
        )
        for key, det in keyed.items()
        if key not in existing
    ]
    if rows:
        db.add_all(rows)
        try:
            db.commit()
        except IntegrityError:
            # A concurrent redelivery stored the same keys first
            db.rollback()
            logger.info(f"[WORKER] Detections for event {event_id} already stored by a concurrent delivery")
            return list(keyed.values()), 0
    return list(keyed.values()), len(rows)


class EnrichmentWorker:
    def __init__(
        self,
        detector: DetectorClient,
        graph: GraphStore,
        baselines: BaselineEngine,
        insights: InsightGenerator,
    ):
        self.detector = detector
        self.graph = graph
        self.baselines = baselines
        self.insights = insights
        self.graph_channel = SideChannel("detection_linking")
        self.status_channel = SideChannel("job_status")

    # ── Entry point ──────────────────────────────────────────────────────

    async def handle_message(self, db: Session, message: dict) -> Optional[EnrichmentResult]:
        """
        Process one decoded job message. Never raises: the push endpoint must
        acknowledge every delivery so a bad job cannot loop forever.
        """
        if "id" in message and "event" not in message and "payload" not in message:
            return await self._process_job_row(db, message["id"])

        payload = unwrap_payload(message)
        event = payload.get("event")
        event_id = event.get("id") if isinstance(event, dict) else None
        job_id = str(event_id) if event_id else None

        if job_id:
            await self.status_channel.run(self._mark_job(db, job_id, JOB_PROCESSING, payload=payload))
        try:
            result = await self.process_payload(db, payload)
        except Exception as e:  # the delivery is acknowledged regardless; the error goes to the job row
            db.rollback()
            logger.error(f"[WORKER] Job for event {event_id} failed: {e}", exc_info=True)
            if job_id:
                await self.status_channel.run(self._mark_job(db, job_id, JOB_ERROR, error=str(e)))
            return None
        if job_id:
            await self.status_channel.run(self._mark_job(db, job_id, JOB_DONE))
        return result

    async def _process_job_row(self, db: Session, job_id: str) -> Optional[EnrichmentResult]:
        row = db.query(EnrichmentJob).filter(EnrichmentJob.id == str(job_id)).first()
        if row is None:
            logger.warning(f"[WORKER] Job {job_id} not found - acknowledging")
            return None
        payload = unwrap_payload(row.payload or {})
        await self.status_channel.run(self._mark_job(db, row.id, JOB_PROCESSING))
        try:
            result = await self.process_payload(db, payload)
        except Exception as e:  # recorded on the job row, delivery still acknowledged
            db.rollback()
            logger.error(f"[WORKER] Job {job_id} failed: {e}", exc_info=True)
            await self.status_channel.run(self._mark_job(db, row.id, JOB_ERROR, error=str(e)))
            return None
        await self.status_channel.run(self._mark_job(db, row.id, JOB_DONE))
        return result

    # ── Processing ───────────────────────────────────────────────────────

    async def process_payload(self, db: Session, payload: dict) -> EnrichmentResult:
        event = payload.get("event") or {}
        event_id = event.get("id")
        event_id = str(event_id) if event_id else None
        channel_id = event.get("channel_id")
        channel_id = str(channel_id) if channel_id else None
        ts = event.get("start_time") or int(time.time() * 1000)
        ts = int(ts)

        image_url = select_image(payload)
        result = EnrichmentResult(event_id=event_id, channel_id=channel_id, image_url=image_url)

        # 1. Detection model
        detections: list[dict] = []
        if image_url:
            try:
                detections = await self.detector.detect(image_url)
            except EnrichmentError as e:
                logger.warning(f"[WORKER] Detection failed for event {event_id}, continuing with none: {e}")
        result.detections = len(detections)

        # 2. Persist detections
        keyed, result.inserted = save_detections(db, event_id, channel_id, image_url, detections, ts)

        # 3. Graph links
        if keyed and event_id:
            if self.graph.enabled:
                await self.graph_channel.run(self.graph.link_detections(event_id, keyed))
            else:
                self.graph_channel.record_skip("disabled")

        # 4. Baseline, anomaly, insight
        if channel_id:
            update = self.baselines.update_channel(db, channel_id, ts)
            result.z = update.z
            result.anomaly = update.is_anomalous
            insight = await self.insights.maybe_generate(db, channel_id, ts)
            if insight is not None:
                result.insight_id = insight.id

        logger.info(
            f"[WORKER] Event {event_id}: {result.detections} detections "
            f"({result.inserted} new), anomaly={result.anomaly}, insight={result.insight_id}"
        )
        return result

    # ── Job status ───────────────────────────────────────────────────────

    async def _mark_job(
        self,
        db: Session,
        job_id: str,
        status: str,
        error: Optional[str] = None,
        payload: Optional[dict] = None,
    ):
        now = datetime.utcnow()
        try:
            row = db.query(EnrichmentJob).filter(EnrichmentJob.id == job_id).first()
            if row is None:
                row = EnrichmentJob(id=job_id, status=JOB_QUEUED, payload=payload, created_at=now)
                db.add(row)
            row.status = status
            row.error = error
            row.updated_at = now
            db.commit()
        except SQLAlchemyError:
            db.rollback()
            raise
        logger.debug(f"[WORKER] Job {job_id} → {status}")
