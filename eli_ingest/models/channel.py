# eli_ingest/models/channel.py
"""Channels (cameras) - merged by channel id whenever an event references one."""

from sqlalchemy import Column, String, Float, DateTime, JSON
from eli_ingest.database import Base


class Channel(Base):
    __tablename__ = "channels"

    id = Column(String(100), primary_key=True)
    name = Column(String(255))
    channel_type = Column(String(50))
    latitude = Column(Float)
    longitude = Column(Float)
    address = Column(JSON)
    tags = Column(JSON)
    updated_at = Column(DateTime, nullable=False)

    def __repr__(self):
        return f"<Channel {self.id} name={self.name}>"
