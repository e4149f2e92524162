# eli_ingest/models/insight.py
"""
Insights - generated natural-language summaries per scope.
Append-only; the context column keeps the exact input used for generation.
"""

from sqlalchemy import Column, Integer, String, Text, BigInteger, DateTime, JSON
from eli_ingest.database import Base


class Insight(Base):
    __tablename__ = "insights"

    id = Column(Integer, primary_key=True, autoincrement=True)
    scope = Column(String(50), nullable=False, index=True)
    scope_id = Column(String(100), nullable=False, index=True)
    summary = Column(Text, nullable=False)
    recommendations = Column(JSON)
    context = Column(JSON)
    ts = Column(BigInteger, nullable=False, index=True)
    created_at = Column(DateTime, nullable=False)

    def __repr__(self):
        return f"<Insight {self.id} {self.scope}:{self.scope_id} ts={self.ts}>"
