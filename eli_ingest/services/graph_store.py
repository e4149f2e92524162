# eli_ingest/services/graph_store.py
"""
Graph store (Neo4j) - secondary, eventually-consistent index of events.

Every node kind declares its natural key(s) once in NODE_KINDS, every edge
kind in EDGE_KINDS. Writers build a GraphBatch of idempotent MERGE upserts
and the store applies the whole batch in one write transaction. Labels and
property keys only ever come from these registries, never from payloads.

Graph failures are wrapped in SecondaryStoreError; callers log them and move on.
"""

from dataclasses import dataclass, field
from typing import Any, Optional

from neo4j import AsyncGraphDatabase
from neo4j.exceptions import Neo4jError, DriverError

from eli_ingest.errors import SecondaryStoreError
from eli_ingest.services.event_normalizer import NormalizedEvent
from eli_ingest.utils.logger import get_logger

logger = get_logger(__name__)

# label → allowed natural keys
NODE_KINDS = {
    "Camera": ("id",),
    "Event": ("id",),
    "Tag": ("name",),
    "FaceIdentity": ("id",),
    "PlateIdentity": ("id",),
    "Watchlist": ("id",),
    "Image": ("url", "path"),
    "Detection": ("id",),
}

EDGE_KINDS = {
    "GENERATED",        # Camera → Event
    "HAS_SNAPSHOT",     # Event → Image
    "TAGGED",           # Event → Tag
    "MATCHED_FACE",     # Event → FaceIdentity
    "MATCHED_PLATE",    # Event → PlateIdentity
    "IN_LIST",          # FaceIdentity|PlateIdentity|Event → Watchlist
    "HAS_DETECTION",    # Event → Detection
}


@dataclass(frozen=True)
class NodeRef:
    label: str
    key: str
    value: Any


@dataclass
class GraphBatch:
    """Ordered MERGE statements for one logical write."""

    statements: list[tuple[str, dict]] = field(default_factory=list)

    def merge_node(self, label: str, key: str, value: Any, props: Optional[dict] = None) -> NodeRef:
        if key not in NODE_KINDS.get(label, ()):
            raise ValueError(f"{label} cannot be keyed by {key!r}")
        props = {k: v for k, v in (props or {}).items() if v is not None and k != key}
        query = f"MERGE (n:{label} {{{key}: $value}}) SET n += $props"
        self.statements.append((query, {"value": value, "props": props}))
        return NodeRef(label, key, value)

    def merge_edge(self, source: NodeRef, rel: str, target: NodeRef) -> None:
        if rel not in EDGE_KINDS:
            raise ValueError(f"Unknown relationship {rel!r}")
        query = (
            f"MATCH (a:{source.label} {{{source.key}: $a}}) "
            f"MATCH (b:{target.label} {{{target.key}: $b}}) "
            f"MERGE (a)-[:{rel}]->(b)"
        )
        self.statements.append((query, {"a": source.value, "b": target.value}))

    def __len__(self):
        return len(self.statements)


def build_event_batch(event: NormalizedEvent, images: list[dict]) -> GraphBatch:
    """
    Camera, Event, Tags, identities + watchlists and Images for one event.
    `images` are archived snapshot dicts with type/path/image_url.
    """
    batch = GraphBatch()

    event_node = batch.merge_node("Event", "id", event.id, {
        "topic": event.topic,
        "module": event.module,
        "level": event.level,
        "start_time": event.start_time,
        "end_time": event.end_time,
        "monitor_id": event.monitor_id,
        "event_id_ext": event.event_id_ext,
        **event.attributes,
    })

    ch = event.channel
    if ch and ch.id:
        camera = batch.merge_node("Camera", "id", ch.id, {
            "name": ch.name,
            "type": ch.channel_type,
            "latitude": ch.latitude,
            "longitude": ch.longitude,
            **ch.flat_address(),
        })
        batch.merge_edge(camera, "GENERATED", event_node)

    for name in event.tags:
        tag = batch.merge_node("Tag", "name", name)
        batch.merge_edge(event_node, "TAGGED", tag)

    for match in event.identities:
        label, rel = ("FaceIdentity", "MATCHED_FACE") if match.kind == "face" else ("PlateIdentity", "MATCHED_PLATE")
        identity = batch.merge_node(label, "id", match.id, match.properties)
        batch.merge_edge(event_node, rel, identity)
        if match.watchlist:
            wl = match.watchlist
            watchlist = batch.merge_node("Watchlist", "id", wl.id, {"name": wl.name, "level": wl.level})
            batch.merge_edge(identity, "IN_LIST", watchlist)
            batch.merge_edge(event_node, "IN_LIST", watchlist)

    for snap in images:
        url, path = snap.get("image_url"), snap.get("path")
        if url:
            image = batch.merge_node("Image", "url", url, {"type": snap.get("type"), "path": path})
        elif path:
            image = batch.merge_node("Image", "path", path, {"type": snap.get("type")})
        else:
            # No natural identity for this image
            continue
        batch.merge_edge(event_node, "HAS_SNAPSHOT", image)

    return batch


class GraphStore:
    def __init__(self, driver=None, database: str = "neo4j"):
        self._driver = driver
        self.database = database

    @classmethod
    def from_settings(cls, settings) -> "GraphStore":
        if not settings.graph_enabled:
            logger.warning("[GRAPH] Graph store disabled (no NEO4J_URI or MOCK_MODE)")
            return cls(driver=None, database=settings.NEO4J_DATABASE)
        driver = AsyncGraphDatabase.driver(
            settings.NEO4J_URI,
            auth=(settings.NEO4J_USERNAME, settings.NEO4J_PASSWORD),
        )
        return cls(driver=driver, database=settings.NEO4J_DATABASE)

    @property
    def enabled(self) -> bool:
        return self._driver is not None

    async def apply(self, batch: GraphBatch) -> int:
        """Run every statement of the batch in one write transaction. Returns statement count."""
        if not self.enabled or not batch.statements:
            return 0
        try:
            async with self._driver.session(database=self.database) as session:
                await session.execute_write(_run_statements, batch.statements)
        except (Neo4jError, DriverError, OSError) as e:
            raise SecondaryStoreError(f"Graph write failed: {e}") from e
        return len(batch)

    async def project_event(self, event: NormalizedEvent, images: list[dict]) -> int:
        written = await self.apply(build_event_batch(event, images))
        logger.debug(f"[GRAPH] Event {event.id}: {written} upserts")
        return written

    async def link_image(self, image_url: Optional[str], snapshot_type: Optional[str], event_id: Optional[str]) -> int:
        """Image node for an out-of-band snapshot upload, linked to its event when known."""
        if not image_url:
            return 0
        batch = GraphBatch()
        image = batch.merge_node("Image", "url", image_url, {"type": snapshot_type})
        if event_id:
            event_node = batch.merge_node("Event", "id", event_id)
            batch.merge_edge(event_node, "HAS_SNAPSHOT", image)
        return await self.apply(batch)

    async def link_detections(self, event_id: str, detections: list[dict]) -> int:
        batch = GraphBatch()
        event_node = NodeRef("Event", "id", event_id)
        for det in detections:
            node = batch.merge_node("Detection", "id", det["dedup_key"], {
                "type": det.get("type"),
                "label": det.get("label"),
                "score": det.get("score"),
                "ts": det.get("ts"),
            })
            batch.merge_edge(event_node, "HAS_DETECTION", node)
        return await self.apply(batch)

    async def ping(self) -> bool:
        if not self.enabled:
            return False
        try:
            await self._driver.verify_connectivity()
            return True
        except (Neo4jError, DriverError, OSError) as e:
            logger.warning(f"[GRAPH] Connectivity check failed: {e}")
            return False

    async def close(self):
        if self._driver is not None:
            await self._driver.close()


async def _run_statements(tx, statements: list[tuple[str, dict]]):
    for query, params in statements:
        result = await tx.run(query, params)
        await result.consume()
