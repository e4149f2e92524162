# eli_ingest/models/detection.py
"""
Detections produced by the enrichment worker.
dedup_key is derived from event id + image reference + detection content so a
redelivered job cannot insert the same detection twice.
"""

from sqlalchemy import Column, Integer, String, Float, BigInteger, JSON
from eli_ingest.database import Base


class Detection(Base):
    __tablename__ = "detections"

    id = Column(Integer, primary_key=True, autoincrement=True)
    dedup_key = Column(String(64), unique=True, index=True)
    event_id = Column(String(255), index=True)
    channel_id = Column(String(100), index=True)
    type = Column(String(50))
    label = Column(String(100))
    score = Column(Float)                 # confidence in [0, 1]
    bbox = Column(JSON)
    meta = Column(JSON)
    ts = Column(BigInteger, nullable=False, index=True)   # epoch ms

    def __repr__(self):
        return f"<Detection {self.id} {self.type}/{self.label} score={self.score}>"
