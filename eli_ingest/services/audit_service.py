# eli_ingest/services/audit_service.py
"""
Webhook request audit log - one webhook_requests row per ingestion call.

Written with its own session so a failed request transaction cannot take the
audit row down with it. Inline image payloads are replaced by a size marker.
"""

from datetime import datetime
from typing import Any, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from eli_ingest.models.webhook_request import WebhookRequest
from eli_ingest.services.side_channel import SideChannel
from eli_ingest.utils.logger import get_logger

logger = get_logger(__name__)

IMAGE_KEYS = {"image", "snapshot"}


def redact_images(body: Any) -> Any:
    if isinstance(body, dict):
        return {
            k: f"<{len(v)} chars>" if k in IMAGE_KEYS and isinstance(v, str) else redact_images(v)
            for k, v in body.items()
        }
    if isinstance(body, list):
        return [redact_images(v) for v in body]
    return body


class AuditLog:
    def __init__(self, session_factory: sessionmaker):
        self.session_factory = session_factory
        self.channel = SideChannel("audit_log")

    async def record(
        self,
        method: str,
        path: str,
        status_code: int,
        source_ip: Optional[str] = None,
        user_agent: Optional[str] = None,
        content_type: Optional[str] = None,
        request_body: Any = None,
        response_body: Any = None,
        error_message: Optional[str] = None,
        validation_errors: Optional[list] = None,
        processing_time_ms: Optional[int] = None,
    ):
        row = WebhookRequest(
            method=method,
            path=path,
            status_code=status_code,
            source_ip=source_ip,
            user_agent=(user_agent or "")[:512] or None,
            content_type=content_type,
            request_body=redact_images(request_body),
            response_body=response_body,
            error_message=error_message,
            validation_errors=validation_errors,
            processing_time_ms=processing_time_ms,
            created_at=datetime.utcnow(),
        )
        await self.channel.run(self._write(row))

    async def _write(self, row: WebhookRequest):
        db = self.session_factory()
        try:
            db.add(row)
            db.commit()
        except SQLAlchemyError:
            db.rollback()
            raise
        finally:
            db.close()
