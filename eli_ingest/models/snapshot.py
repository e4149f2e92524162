# eli_ingest/models/snapshot.py
"""
Snapshots table - image references attached to an event.
event_id is null for snapshots uploaded before their event is known.
"""

from sqlalchemy import Column, String, DateTime, ForeignKey
from eli_ingest.database import Base


class Snapshot(Base):
    __tablename__ = "snapshots"

    id = Column(String(255), primary_key=True)
    event_id = Column(String(255), ForeignKey("events.id"), index=True)
    type = Column(String(20))             # FULLSCREEN | THUMBNAIL
    path = Column(String(1024))
    image_url = Column(String(1024))      # null until archival completes
    created_at = Column(DateTime, nullable=False)

    def __repr__(self):
        return f"<Snapshot {self.id} event={self.event_id} type={self.type}>"
