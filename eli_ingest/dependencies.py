# eli_ingest/dependencies.py
"""
Service container - every external client is built once at startup, stored on
app.state and handed to routers through FastAPI dependencies. Shutdown closes
them in reverse construction order.
"""

from dataclasses import dataclass

from fastapi import Request
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker

from eli_ingest.config import Settings
from eli_ingest.database import create_db_engine, create_session_factory
from eli_ingest.services.audit_service import AuditLog
from eli_ingest.services.baseline_service import BaselineEngine
from eli_ingest.services.detector_client import DetectorClient
from eli_ingest.services.enrichment_worker import EnrichmentWorker
from eli_ingest.services.fanout_service import FanoutCoordinator
from eli_ingest.services.graph_store import GraphStore
from eli_ingest.services.image_archiver import ImageArchiver
from eli_ingest.services.insight_service import InsightGenerator
from eli_ingest.services.job_publisher import JobPublisher
from eli_ingest.services.llm_client import LLMClient
from eli_ingest.utils.logger import get_logger

logger = get_logger(__name__)


@dataclass
class ServiceContainer:
    settings: Settings
    engine: Engine
    session_factory: sessionmaker
    graph: GraphStore
    archiver: ImageArchiver
    publisher: JobPublisher
    detector: DetectorClient
    llm: LLMClient
    fanout: FanoutCoordinator
    worker: EnrichmentWorker
    audit: AuditLog

    def side_channels(self) -> dict:
        channels = [
            self.fanout.graph_channel,
            self.publisher.channel,
            self.archiver.purge_channel,
            self.worker.graph_channel,
            self.worker.status_channel,
            self.worker.insights.channel,
            self.audit.channel,
        ]
        return {c.name: c.snapshot() for c in channels}


def build_container(settings: Settings) -> ServiceContainer:
    engine = create_db_engine(settings.DATABASE_URL)
    session_factory = create_session_factory(engine)
    graph = GraphStore.from_settings(settings)
    archiver = ImageArchiver.from_settings(settings)
    publisher = JobPublisher.from_settings(settings)
    detector = DetectorClient.from_settings(settings)
    llm = LLMClient.from_settings(settings)

    if settings.MOCK_MODE:
        logger.warning("[STARTUP] MOCK_MODE on - graph, archive, queue, detector and LLM calls are skipped")

    return ServiceContainer(
        settings=settings,
        engine=engine,
        session_factory=session_factory,
        graph=graph,
        archiver=archiver,
        publisher=publisher,
        detector=detector,
        llm=llm,
        fanout=FanoutCoordinator(archiver, graph, publisher),
        worker=EnrichmentWorker(detector, graph, BaselineEngine(), InsightGenerator(llm)),
        audit=AuditLog(session_factory),
    )


async def close_container(container: ServiceContainer):
    for name, closer in (
        ("publisher", container.publisher.close),
        ("archiver", container.archiver.close),
        ("graph", container.graph.close),
    ):
        try:
            await closer()
        except Exception as e:  # keep tearing down the rest
            logger.warning(f"[SHUTDOWN] Closing {name} failed: {e}")
    container.engine.dispose()
    logger.info("[SHUTDOWN] All clients closed")


def get_container(request: Request) -> ServiceContainer:
    return request.app.state.container
