# eli_ingest/models/anomaly.py
"""Anomalies - append-only records of baseline deviations above threshold."""

from sqlalchemy import Column, Integer, String, Float, BigInteger, JSON
from eli_ingest.database import Base


class Anomaly(Base):
    __tablename__ = "anomalies"

    id = Column(Integer, primary_key=True, autoincrement=True)
    metric = Column(String(100), nullable=False)
    entity_type = Column(String(50), nullable=False, index=True)
    entity_id = Column(String(100), nullable=False, index=True)
    value = Column(Float, nullable=False)
    score = Column(Float, nullable=False)
    threshold = Column(Float, nullable=False)
    window = Column("time_window", JSON)    # {"start": ms, "end": ms}
    context = Column(JSON)
    ts = Column(BigInteger, nullable=False, index=True)

    def __repr__(self):
        return f"<Anomaly {self.id} {self.metric} {self.entity_type}:{self.entity_id} score={self.score:.2f}>"
