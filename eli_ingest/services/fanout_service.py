# eli_ingest/services/fanout_service.py
"""
Fan-out coordinator - writes one normalized event to every store.

Per event, in order:
  1. archive inline snapshot images       (failure → this item rejected)
  2. upsert event + channel, insert snapshots in the relational store
                                           (failure → whole request fails)
  3. project into the graph store          (failure → logged only)
  4. publish the enrichment job            (failure → logged only)

Batch items run sequentially in array order and the report keeps that order.
"""

from dataclasses import dataclass, field
from typing import Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from eli_ingest.errors import AuthoritativeStoreError, ImageUploadError
from eli_ingest.services.event_normalizer import NormalizationResult, NormalizedEvent
from eli_ingest.services.event_service import insert_snapshots, upsert_channel, upsert_event
from eli_ingest.services.graph_store import GraphStore
from eli_ingest.services.image_archiver import ImageArchiver, storage_key
from eli_ingest.services.job_publisher import JobPublisher, build_job_payload
from eli_ingest.services.side_channel import SideChannel
from eli_ingest.utils.logger import get_logger

logger = get_logger(__name__)


@dataclass
class ItemOutcome:
    index: int
    event_id: Optional[str] = None
    snapshots: int = 0
    issues: list[dict] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.issues


@dataclass
class BatchReport:
    outcomes: list[ItemOutcome] = field(default_factory=list)

    @property
    def results(self) -> list[dict]:
        return [{"id": o.event_id, "snapshots": o.snapshots} for o in self.outcomes if o.ok]

    @property
    def errors(self) -> list[dict]:
        return [{"index": o.index, "issues": o.issues} for o in self.outcomes if not o.ok]

    @property
    def processed(self) -> int:
        return sum(1 for o in self.outcomes if o.ok)

    @property
    def failed(self) -> int:
        return sum(1 for o in self.outcomes if not o.ok)

    @property
    def all_failed(self) -> bool:
        return self.processed == 0 and self.failed > 0

    @property
    def status_code(self) -> int:
        return 400 if self.all_failed else 200

    def to_response(self) -> dict:
        if self.all_failed:
            return {"error": "Invalid payload", "details": self.errors}
        body = {
            "status": "success",
            "processed": self.processed,
            "failed": self.failed,
            "results": self.results,
        }
        if self.errors:
            body["errors"] = self.errors
        return body


class FanoutCoordinator:
    def __init__(self, archiver: ImageArchiver, graph: GraphStore, publisher: JobPublisher):
        self.archiver = archiver
        self.graph = graph
        self.publisher = publisher
        self.graph_channel = SideChannel("graph_projection")

    async def process_batch(self, items: list[NormalizationResult], db: Session) -> BatchReport:
        report = BatchReport()
        for item in items:
            if not item.ok:
                report.outcomes.append(ItemOutcome(index=item.index, issues=item.issues))
                continue
            report.outcomes.append(await self.process_event(item.index, item.event, db))
        logger.info(f"[FANOUT] Batch done: processed={report.processed} failed={report.failed}")
        return report

    async def process_event(self, index: int, event: NormalizedEvent, db: Session) -> ItemOutcome:
        # 1. Archive inline images
        archived = []
        for i, snap in enumerate(event.snapshots):
            try:
                url = await self.archiver.archive(snap.image, storage_key(event.id, snap.type))
            except ImageUploadError as e:
                logger.warning(f"[FANOUT] Event {event.id} snapshot {i} rejected: {e}")
                issue = {"path": ["snapshots", i, "image"], "message": str(e), "code": "invalid_image"}
                return ItemOutcome(index=index, event_id=event.id, issues=[issue])
            archived.append({"type": snap.type, "path": snap.path, "image_url": url, "ref_id": snap.ref_id})

        # 2. Authoritative write
        try:
            created = upsert_event(db, event)
            upsert_channel(db, event)
            insert_snapshots(db, event.id, archived)
            db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            logger.error(f"[FANOUT] Relational write failed for event {event.id}: {e}", exc_info=True)
            raise AuthoritativeStoreError(f"Failed to persist event {event.id}") from e
        logger.info(f"[FANOUT] Event {event.id} {'created' if created else 'updated'} ({len(archived)} snapshots)")

        # 3. Graph projection (secondary index, never rolls back step 2)
        if self.graph.enabled:
            await self.graph_channel.run(self.graph.project_event(event, archived))
        else:
            self.graph_channel.record_skip("disabled")

        # 4. Enrichment job
        payload = build_job_payload(event.id, event.channel_id, event.start_time, [a["image_url"] for a in archived])
        published = await self.publisher.publish(payload)
        if not published.ok:
            logger.debug(f"[FANOUT] Job for {event.id} not enqueued: {published.reason}")

        return ItemOutcome(index=index, event_id=event.id, snapshots=len(archived))
