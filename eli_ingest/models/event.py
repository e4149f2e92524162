# eli_ingest/models/event.py
"""
Events table - the system of record for every ingested detection event.
Keyed by the external event id. Re-ingesting an id only overwrites the
mutable columns (end_time, params); identity columns never change.
"""

from sqlalchemy import Column, String, BigInteger, Float, DateTime, JSON
from eli_ingest.database import Base


class Event(Base):
    __tablename__ = "events"

    id = Column(String(255), primary_key=True)
    event_id_ext = Column(String(100))
    monitor_id = Column(String(100))
    topic = Column(String(100), index=True)
    module = Column(String(100))
    level = Column(String(50))
    start_time = Column(BigInteger, nullable=False, index=True)   # epoch ms
    end_time = Column(BigInteger)                                 # epoch ms, mutable
    latitude = Column(Float)
    longitude = Column(Float)
    channel_id = Column(String(100), index=True)
    channel_type = Column(String(50))
    channel_name = Column(String(255))
    channel_address = Column(JSON)
    params = Column(JSON)                                         # mutable
    tags = Column(JSON)
    created_at = Column(DateTime, nullable=False)
    updated_at = Column(DateTime, nullable=False)

    def __repr__(self):
        return f"<Event {self.id} topic={self.topic} channel={self.channel_id}>"
