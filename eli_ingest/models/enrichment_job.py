# eli_ingest/models/enrichment_job.py
"""
Enrichment job status rows (queued → processing → done | error).
Observability only: nothing retries from this table.
"""

from sqlalchemy import Column, String, Text, DateTime, JSON
from eli_ingest.database import Base


class EnrichmentJob(Base):
    __tablename__ = "enrichment_jobs"

    id = Column(String(255), primary_key=True)     # referencing event id
    status = Column(String(20), nullable=False, index=True)
    payload = Column(JSON)
    error = Column(Text)
    created_at = Column(DateTime, nullable=False)
    updated_at = Column(DateTime, nullable=False)

    def __repr__(self):
        return f"<EnrichmentJob {self.id} status={self.status}>"
