# tests/test_routers.py
"""HTTP contracts of the ingestion, enrichment, read and health endpoints."""

import sys
import os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

import base64
import json
from unittest.mock import MagicMock, AsyncMock

import pytest
from fastapi.testclient import TestClient

from eli_ingest.config import Settings
from eli_ingest.database import create_tables
from eli_ingest.dependencies import build_container
from eli_ingest.errors import AuthoritativeStoreError, ImageUploadError, ValidationError
from eli_ingest.main import app
from eli_ingest.models.baseline import Baseline
from eli_ingest.models.detection import Detection
from eli_ingest.models.event import Event
from eli_ingest.models.snapshot import Snapshot
from eli_ingest.models.webhook_request import WebhookRequest
from eli_ingest.routers.webhook import parse_snapshot_upload
from eli_ingest.services.image_archiver import PurgeReport

TS = 1_700_000_000_000


@pytest.fixture
def container():
    container = build_container(Settings(DATABASE_URL="sqlite://", MOCK_MODE=True, API_KEY=None))
    create_tables(container.engine)
    app.state.container = container
    yield container
    container.engine.dispose()


@pytest.fixture
def client(container):
    return TestClient(app)


@pytest.fixture
def db(container):
    session = container.session_factory()
    yield session
    session.close()


def nested(event_id, channel_id="cam-1", **extra):
    item = {"id": event_id, "start_time": TS, "channel": {"id": channel_id, "name": "Gate"}}
    item.update(extra)
    return item


class TestWebhook:
    def test_single_event(self, client, db):
        resp = client.post("/webhook/irex", json=nested("w-1"))
        assert resp.status_code == 200
        assert resp.json() == {"status": "success", "processed": 1, "failed": 0,
                               "results": [{"id": "w-1", "snapshots": 0}]}
        assert db.query(Event).filter(Event.id == "w-1").count() == 1

    def test_partial_batch(self, client):
        resp = client.post("/webhook/irex", json=[nested("a"), {"id": "b", "start_time": "x"}, nested("c")])
        body = resp.json()
        assert resp.status_code == 200
        assert body["processed"] == 2 and body["failed"] == 1
        assert body["errors"][0]["index"] == 1
        assert body["errors"][0]["issues"][0]["path"] == ["start_time"]

    def test_all_invalid_batch(self, client):
        resp = client.post("/webhook/irex", json=[{"start_time": 1}, {"id": "x"}])
        assert resp.status_code == 400
        body = resp.json()
        assert body["error"] == "Invalid payload"
        assert len(body["details"]) == 2

    def test_malformed_json(self, client):
        resp = client.post("/webhook/irex", content=b"{not json", headers={"Content-Type": "application/json"})
        assert resp.status_code == 400
        assert resp.json()["details"][0]["issues"][0]["code"] == "invalid_json"

    def test_non_finite_number_fails_only_its_item(self, client, db):
        raw = (b'[{"id": "ok-1", "start_time": 1700000000000, "channel": {"id": "cam-1"}},'
               b' {"id": "bad", "start_time": NaN}]')
        resp = client.post("/webhook/irex", content=raw, headers={"Content-Type": "application/json"})
        body = resp.json()
        assert resp.status_code == 200
        assert body["processed"] == 1 and body["failed"] == 1
        assert body["errors"][0]["index"] == 1
        assert body["errors"][0]["issues"][0]["code"] == "finite_number"
        assert db.query(Event).filter(Event.id == "ok-1").count() == 1

    def test_store_failure_is_500(self, client, container):
        container.fanout.process_batch = AsyncMock(side_effect=AuthoritativeStoreError("db down"))
        resp = client.post("/webhook/irex", json=nested("w-2"))
        assert resp.status_code == 500
        assert resp.json() == {"error": "Failed to process webhook event"}

    def test_legacy_endpoint(self, client, db):
        legacy = {"id": "l-1", "start_time": TS, "channel_id": "cam-3", "latitude": 1.0, "longitude": 2.0}
        resp = client.post("/ingest/event", json=legacy)
        assert resp.status_code == 200
        assert db.query(Event).filter(Event.id == "l-1").one().channel_id == "cam-3"

    def test_request_is_audited_without_image_bytes(self, client, db):
        item = nested("w-3", snapshots=[{"type": "THUMBNAIL", "image": "aGVsbG8gd29ybGQ="}])
        client.post("/webhook/irex", json=item)
        row = db.query(WebhookRequest).one()
        assert row.status_code == 200
        assert row.path == "/webhook/irex"
        assert row.request_body["snapshots"][0]["image"] == "<16 chars>"


class TestSnapshotUpload:
    def test_completes_referenced_snapshot(self, client, db):
        legacy = {"id": "l-2", "start_time": TS, "channel_id": "cam-3", "snapshots": [{"id": "s-1", "type": "FULLSCREEN"}]}
        client.post("/ingest/event", json=legacy)

        resp = client.post("/ingest/snapshot", json={"id": "s-1", "snapshot": "aGVsbG8="})

        assert resp.status_code == 200
        assert resp.json()["event_id"] == "l-2"

    def test_unknown_id_creates_unlinked_row(self, client, db):
        resp = client.post("/ingest/snapshot", json={"id": "s-new", "snapshot": "aGVsbG8="})
        assert resp.status_code == 200
        assert db.query(Snapshot).filter(Snapshot.id == "s-new").one().event_id is None

    def test_missing_snapshot_is_400(self, client):
        resp = client.post("/ingest/snapshot", json={"id": "s-2"})
        assert resp.status_code == 400
        assert resp.json()["details"][0]["issues"][0]["path"] == ["snapshot"]

    def test_archived_snapshot_keeps_its_url(self, client, container, db):
        container.archiver.archive = AsyncMock(side_effect=["https://res/first.png", "https://res/second.png"])
        client.post("/ingest/snapshot", json={"id": "s-3", "snapshot": "aGVsbG8="})

        resp = client.post("/ingest/snapshot", json={"id": "s-3", "snapshot": "d29ybGQ="})

        assert resp.status_code == 200
        assert resp.json()["image_url"] == "https://res/first.png"
        assert container.archiver.archive.await_count == 1
        assert db.query(Snapshot).filter(Snapshot.id == "s-3").one().image_url == "https://res/first.png"

    def test_bad_image_is_400(self, client, container):
        container.archiver.archive = AsyncMock(side_effect=ImageUploadError("Invalid image file"))
        resp = client.post("/ingest/snapshot", json={"id": "s-4", "snapshot": "garbage"})
        assert resp.status_code == 400
        assert resp.json()["details"][0]["issues"][0]["code"] == "invalid_image"

    def test_parse_errors_carry_issues(self):
        with pytest.raises(ValidationError) as exc:
            parse_snapshot_upload({"snapshot": "aGVsbG8="})
        assert exc.value.issues[0]["path"] == ["id"]


class TestEnrichment:
    def envelope(self, message):
        return {"message": {"data": base64.b64encode(json.dumps(message).encode()).decode()}}

    def test_push_processes_job(self, client, container, db):
        container.worker.detector = MagicMock()
        container.worker.detector.detect = AsyncMock(return_value=[
            {"type": "object", "label": "car", "score": 0.9, "bbox": [1, 2, 3, 4], "meta": None},
        ])
        job = {"event": {"id": "e-1", "channel_id": "cam-1", "start_time": TS}, "images": ["https://img/1.jpg"]}

        resp = client.post("/enrichment/pubsub", json=self.envelope(job))

        assert resp.status_code == 204
        assert db.query(Detection).count() == 1
        assert db.query(Baseline).filter(Baseline.entity_id == "cam-1").count() == 1

    def test_push_garbage_still_204(self, client):
        assert client.post("/enrichment/pubsub", json={"message": {"data": "@@@"}}).status_code == 204
        assert client.post("/enrichment/pubsub", json={}).status_code == 204

    def test_push_internal_failure_still_204(self, client, container):
        container.worker.handle_message = AsyncMock(side_effect=RuntimeError("boom"))
        resp = client.post("/enrichment/pubsub", json=self.envelope({"event": {"id": "e-2"}}))
        assert resp.status_code == 204

    def test_direct_process(self, client):
        resp = client.post("/enrichment/process", json={"event": {"id": "e-3", "channel_id": "cam-9", "start_time": TS}})
        assert resp.status_code == 200
        assert resp.json()["ok"] is True
        assert resp.json()["detections"] == 0

    def test_direct_process_non_object_event(self, client):
        resp = client.post("/enrichment/process", json={"event": "e-4", "images": []})
        assert resp.status_code == 200
        assert resp.json() == {"ok": False, "detections": 0}


class TestReadApis:
    def test_events_listing(self, client):
        client.post("/webhook/irex", json=[nested("r-1", "cam-a"), nested("r-2", "cam-b")])
        resp = client.get("/api/v1/events", params={"channel_id": "cam-a"})
        assert resp.status_code == 200
        assert [e["id"] for e in resp.json()] == ["r-1"]

    def test_event_not_found(self, client):
        assert client.get("/api/v1/events/missing").status_code == 404

    def test_anomalies_and_insights_empty(self, client):
        assert client.get("/api/v1/anomalies").json() == []
        assert client.get("/api/v1/insights").json() == []

    def test_health(self, client):
        body = client.get("/api/v1/health").json()
        assert body["status"] == "ok"
        assert body["database"] == "ok"
        assert body["graph"] == "disabled"
        assert "graph_projection" in body["side_channels"]
        assert "job_publish" in body["side_channels"]

    def test_purge_needs_archive(self, client):
        resp = client.post("/api/v1/maintenance/images/purge", json={"days": 7, "dry_run": True})
        assert resp.status_code == 503

    def test_purge_resumes_from_cursor(self, client, container):
        container.archiver.enabled = True
        container.archiver.purge_old_images = AsyncMock(
            return_value=PurgeReport(deleted=1, total=1, has_more=True, next_cursor="c3"))
        resp = client.post("/api/v1/maintenance/images/purge", json={"days": 7, "cursor": "c2"})
        assert resp.status_code == 200
        assert resp.json()["next_cursor"] == "c3"
        assert container.archiver.purge_old_images.call_args.kwargs["cursor"] == "c2"
