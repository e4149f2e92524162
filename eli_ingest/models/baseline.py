# eli_ingest/models/baseline.py
"""
Online activity baselines, one row per (entity_type, entity_id).
Updated in place on every enrichment cycle for the entity.
"""

from sqlalchemy import Column, Integer, String, Float, DateTime, UniqueConstraint
from eli_ingest.database import Base


class Baseline(Base):
    __tablename__ = "baselines"
    __table_args__ = (UniqueConstraint("entity_type", "entity_id", name="uq_baselines_entity"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    entity_type = Column(String(50), nullable=False)
    entity_id = Column(String(100), nullable=False)
    mean = Column(Float, nullable=False)
    var = Column(Float, nullable=False)
    std = Column(Float, nullable=False)
    updated_at = Column(DateTime, nullable=False)

    def features(self) -> dict:
        return {"mean": self.mean, "var": self.var, "std": self.std}

    def __repr__(self):
        return f"<Baseline {self.entity_type}:{self.entity_id} mean={self.mean:.3f} var={self.var:.3f}>"
