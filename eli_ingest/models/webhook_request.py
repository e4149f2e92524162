# eli_ingest/models/webhook_request.py
"""
Webhook request audit log.
One row per ingestion call, written best-effort after the response is built.
"""

from sqlalchemy import Column, Integer, String, Text, DateTime, JSON
from eli_ingest.database import Base


class WebhookRequest(Base):
    __tablename__ = "webhook_requests"

    id = Column(Integer, primary_key=True, autoincrement=True)
    method = Column(String(10), nullable=False)
    path = Column(String(255), nullable=False)
    status_code = Column(Integer, nullable=False, index=True)
    source_ip = Column(String(100))
    user_agent = Column(String(512))
    content_type = Column(String(255))
    request_body = Column(JSON)
    response_body = Column(JSON)
    error_message = Column(Text)
    validation_errors = Column(JSON)
    processing_time_ms = Column(Integer)
    created_at = Column(DateTime, nullable=False, index=True)

    def __repr__(self):
        return f"<WebhookRequest {self.id} {self.method} {self.path} → {self.status_code}>"
