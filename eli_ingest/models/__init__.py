# ELI Ingestion - Database Models
# Import all models here for SQLAlchemy discovery

from eli_ingest.models.event import Event                         # noqa
from eli_ingest.models.snapshot import Snapshot                   # noqa
from eli_ingest.models.channel import Channel                     # noqa
from eli_ingest.models.detection import Detection                 # noqa
from eli_ingest.models.baseline import Baseline                   # noqa
from eli_ingest.models.anomaly import Anomaly                     # noqa
from eli_ingest.models.insight import Insight                     # noqa
from eli_ingest.models.enrichment_job import EnrichmentJob        # noqa
from eli_ingest.models.webhook_request import WebhookRequest      # noqa
