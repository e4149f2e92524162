# tests/test_graph_store.py
"""Graph projection batches and transactional apply."""

import sys
import os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from unittest.mock import MagicMock, AsyncMock

import pytest
from neo4j.exceptions import ServiceUnavailable

from eli_ingest.errors import SecondaryStoreError
from eli_ingest.services.event_normalizer import normalize_item
from eli_ingest.services.graph_store import GraphBatch, GraphStore, build_event_batch


def full_event():
    return normalize_item(0, {
        "id": "evt-1",
        "start_time": 1000,
        "topic": "Face",
        "params": {
            "attributes": {"gender": "male"},
            "identities": [{"faces": [{"id": "f-1"}], "list": {"id": "wl-1", "name": "VIP"}}],
        },
        "channel": {"id": "cam-1", "name": "Gate", "address": {"city": "Dubai"}, "tags": [{"name": "entrance"}]},
    }).event


def queries(batch):
    return [q for q, _ in batch.statements]


class TestGraphBatch:
    def test_unknown_key_rejected(self):
        with pytest.raises(ValueError):
            GraphBatch().merge_node("Tag", "id", "x")

    def test_unknown_relationship_rejected(self):
        batch = GraphBatch()
        a = batch.merge_node("Event", "id", "e")
        b = batch.merge_node("Tag", "name", "t")
        with pytest.raises(ValueError):
            batch.merge_edge(a, "LIKES", b)

    def test_none_props_dropped(self):
        batch = GraphBatch()
        batch.merge_node("Camera", "id", "c", {"name": None, "type": "cam"})
        assert batch.statements[0][1] == {"value": "c", "props": {"type": "cam"}}


class TestEventProjection:
    def test_full_event(self):
        batch = build_event_batch(full_event(), [{"type": "THUMBNAIL", "path": "/a.png", "image_url": "https://img/a"}])
        text = "\n".join(queries(batch))
        for fragment in (
            "MERGE (n:Event {id: $value})",
            "MERGE (n:Camera {id: $value})",
            "MERGE (a)-[:GENERATED]->(b)",
            "MERGE (n:Tag {name: $value})",
            "MERGE (n:FaceIdentity {id: $value})",
            "MERGE (a)-[:MATCHED_FACE]->(b)",
            "MERGE (n:Watchlist {id: $value})",
            "MERGE (a)-[:IN_LIST]->(b)",
            "MERGE (n:Image {url: $value})",
            "MERGE (a)-[:HAS_SNAPSHOT]->(b)",
        ):
            assert fragment in text

        event_props = batch.statements[0][1]["props"]
        assert event_props["person_gender"] == "male"
        camera_props = batch.statements[1][1]["props"]
        assert camera_props["city"] == "Dubai"
        assert camera_props["address_json"] == '{"city":"Dubai"}'

    def test_watchlist_linked_from_identity_and_event(self):
        batch = build_event_batch(full_event(), [])
        in_list = [params for q, params in batch.statements if "[:IN_LIST]" in q]
        assert {p["a"] for p in in_list} == {"f-1", "evt-1"}

    def test_image_falls_back_to_path_or_is_skipped(self):
        event = normalize_item(0, {"id": "e", "start_time": 1}).event
        batch = build_event_batch(event, [{"path": "/p.png", "image_url": None}, {"type": "THUMBNAIL"}])
        assert sum("MERGE (n:Image {path: $value})" in q for q in queries(batch)) == 1
        assert sum("HAS_SNAPSHOT" in q for q in queries(batch)) == 1


def make_driver(error=None):
    session = MagicMock()
    session.execute_write = AsyncMock(side_effect=error)
    session.__aenter__ = AsyncMock(return_value=session)
    session.__aexit__ = AsyncMock(return_value=False)
    driver = MagicMock()
    driver.session.return_value = session
    return driver, session


class TestGraphStore:
    @pytest.mark.asyncio
    async def test_one_transaction_per_event(self):
        driver, session = make_driver()
        written = await GraphStore(driver).project_event(full_event(), [])
        session.execute_write.assert_awaited_once()
        assert written == len(build_event_batch(full_event(), []))

    @pytest.mark.asyncio
    async def test_outage_becomes_secondary_error(self):
        driver, _ = make_driver(error=ServiceUnavailable("down"))
        with pytest.raises(SecondaryStoreError):
            await GraphStore(driver).project_event(full_event(), [])

    @pytest.mark.asyncio
    async def test_disabled_store_writes_nothing(self):
        assert await GraphStore(None).project_event(full_event(), []) == 0

    @pytest.mark.asyncio
    async def test_link_detections(self):
        driver, session = make_driver()
        await GraphStore(driver).link_detections("evt-1", [{"dedup_key": "k1", "type": "object", "label": "car", "score": 0.9, "ts": 1}])
        statements = session.execute_write.call_args[0][1]
        assert statements[0][0] == "MERGE (n:Detection {id: $value}) SET n += $props"
        assert "HAS_DETECTION" in statements[1][0]
        assert statements[1][1] == {"a": "evt-1", "b": "k1"}
