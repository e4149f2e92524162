# tests/test_enrichment_worker.py
"""Enrichment worker: envelope decoding, detection dedup, job status and degradation."""

import sys
import os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

import base64
import json
from datetime import datetime
from unittest.mock import MagicMock, AsyncMock, patch

import pytest
from eli_ingest.errors import EnrichmentError, SecondaryStoreError
from eli_ingest.models.baseline import Baseline
from eli_ingest.models.detection import Detection
from eli_ingest.models.enrichment_job import EnrichmentJob
from eli_ingest.services.baseline_service import BaselineEngine
from eli_ingest.services.enrichment_worker import (
    EnrichmentWorker,
    decode_envelope,
    detection_dedup_key,
    select_image,
)
from eli_ingest.services.insight_service import InsightGenerator
from eli_ingest.services.llm_client import LLMClient

TS = 1_700_000_000_000

DETECTIONS = [
    {"type": "object", "label": "car", "score": 0.91, "bbox": [1, 2, 3, 4], "meta": None},
    {"type": "face", "label": "face", "score": 0.77, "bbox": [5, 6, 7, 8], "meta": {"q": 1}},
]


def job(event_id="evt-1", channel_id="cam-1", images=("https://img.example/1.jpg",)):
    return {"event": {"id": event_id, "channel_id": channel_id, "start_time": TS}, "images": list(images)}


def envelope(message):
    return {"message": {"data": base64.b64encode(json.dumps(message).encode()).decode()}}


def make_worker(detections=None, detect_error=None, graph_enabled=True, graph_error=None):
    detector = MagicMock()
    detector.detect = AsyncMock(return_value=detections if detections is not None else DETECTIONS,
                                side_effect=detect_error)
    graph = MagicMock()
    graph.enabled = graph_enabled
    graph.link_detections = AsyncMock(return_value=4, side_effect=graph_error)
    return EnrichmentWorker(detector, graph, BaselineEngine(), InsightGenerator(LLMClient(model=None)))


class TestEnvelope:
    def test_decode(self):
        assert decode_envelope(envelope({"id": "j-1"})) == {"id": "j-1"}

    def test_missing_data(self):
        assert decode_envelope({"message": {}}) is None
        assert decode_envelope({}) is None
        assert decode_envelope(["not", "a", "dict"]) is None

    def test_garbage_data(self):
        assert decode_envelope({"message": {"data": "!!!not base64!!!"}}) is None
        assert decode_envelope({"message": {"data": base64.b64encode(b"[1, 2]").decode()}}) is None


class TestImageSelection:
    def test_first_image_wins(self):
        assert select_image({"images": ["a", "b"], "image": {"url": "c"}}) == "a"

    def test_fallbacks(self):
        assert select_image({"images": [], "image": {"url": "c"}}) == "c"
        assert select_image({"event": {"image_url": "d"}}) == "d"
        assert select_image({"event": {}}) is None


class TestProcessing:
    @pytest.mark.asyncio
    async def test_light_payload(self, db):
        worker = make_worker()

        result = await worker.handle_message(db, job())

        assert result.detections == 2 and result.inserted == 2
        rows = db.query(Detection).order_by(Detection.label).all()
        assert [r.label for r in rows] == ["car", "face"]
        assert all(r.event_id == "evt-1" and r.channel_id == "cam-1" and r.ts == TS for r in rows)
        worker.detector.detect.assert_awaited_once_with("https://img.example/1.jpg")

        linked = worker.graph.link_detections.call_args[0]
        assert linked[0] == "evt-1"
        assert {d["dedup_key"] for d in linked[1]} == {r.dedup_key for r in rows}

        assert db.query(Baseline).filter(Baseline.entity_id == "cam-1").count() == 1
        assert db.query(EnrichmentJob).filter(EnrichmentJob.id == "evt-1").one().status == "done"

    @pytest.mark.asyncio
    async def test_redelivery_does_not_duplicate_detections(self, db):
        worker = make_worker()
        await worker.handle_message(db, job())
        result = await worker.handle_message(db, job())

        assert result.inserted == 0
        assert db.query(Detection).count() == 2

    @pytest.mark.asyncio
    async def test_model_failure_means_no_detections(self, db):
        worker = make_worker(detect_error=EnrichmentError("model down"))

        result = await worker.handle_message(db, job())

        assert result.detections == 0
        assert db.query(Detection).count() == 0
        worker.graph.link_detections.assert_not_called()
        assert db.query(Baseline).count() == 1

    @pytest.mark.asyncio
    async def test_graph_failure_is_logged_only(self, db):
        worker = make_worker(graph_error=SecondaryStoreError("down"))
        result = await worker.handle_message(db, job())
        assert result.inserted == 2
        assert worker.graph_channel.stats.failed == 1

    @pytest.mark.asyncio
    async def test_no_image_skips_detector(self, db):
        worker = make_worker()
        await worker.handle_message(db, job(images=()))
        worker.detector.detect.assert_not_called()

    @pytest.mark.asyncio
    async def test_no_channel_skips_baseline(self, db):
        worker = make_worker()
        result = await worker.handle_message(db, job(channel_id=None))
        assert result.z is None
        assert db.query(Baseline).count() == 0

    @pytest.mark.asyncio
    async def test_wrapped_payload(self, db):
        result = await make_worker().handle_message(db, {"payload": job("evt-9")})
        assert result.event_id == "evt-9"


class TestJobRows:
    @pytest.mark.asyncio
    async def test_id_message_processes_stored_job(self, db):
        now = datetime.utcnow()
        db.add(EnrichmentJob(id="evt-5", status="queued", payload=job("evt-5"), created_at=now, updated_at=now))
        db.commit()

        result = await make_worker().handle_message(db, {"id": "evt-5"})

        assert result.event_id == "evt-5"
        assert db.query(EnrichmentJob).filter(EnrichmentJob.id == "evt-5").one().status == "done"

    @pytest.mark.asyncio
    async def test_unknown_job_id_is_acknowledged(self, db):
        worker = make_worker()
        assert await worker.handle_message(db, {"id": "missing"}) is None
        worker.detector.detect.assert_not_called()

    @pytest.mark.asyncio
    async def test_processing_error_marks_job(self, db):
        worker = make_worker()
        with patch.object(worker.baselines, "update_channel", side_effect=RuntimeError("boom")):
            result = await worker.handle_message(db, job("evt-err"))

        assert result is None
        row = db.query(EnrichmentJob).filter(EnrichmentJob.id == "evt-err").one()
        assert row.status == "error"
        assert row.error == "boom"

    @pytest.mark.asyncio
    async def test_non_object_event_is_acknowledged(self, db):
        worker = make_worker()
        result = await worker.handle_message(db, {"event": "evt-1", "images": ["https://img.example/1.jpg"]})
        assert result is None
        assert db.query(EnrichmentJob).count() == 0

    @pytest.mark.asyncio
    async def test_stored_job_with_non_object_payload(self, db):
        now = datetime.utcnow()
        db.add(EnrichmentJob(id="evt-6", status="queued", payload=["not", "a", "job"], created_at=now, updated_at=now))
        db.commit()

        result = await make_worker().handle_message(db, {"id": "evt-6"})

        assert result.event_id is None and result.detections == 0
        assert db.query(EnrichmentJob).filter(EnrichmentJob.id == "evt-6").one().status == "done"


class TestDedupKey:
    def test_stable_and_content_sensitive(self):
        det = DETECTIONS[0]
        key = detection_dedup_key("evt-1", "img", det)
        assert key == detection_dedup_key("evt-1", "img", dict(det))
        assert key != detection_dedup_key("evt-1", "img2", det)
        assert key != detection_dedup_key("evt-1", "img", {**det, "bbox": [0, 0, 0, 0]})
        assert len(key) == 40
