# eli_ingest/routers/webhook.py
"""
Event ingestion endpoints.
POST /webhook/irex     - one event object or an array (nested or legacy shape).
POST /ingest/event     - same pipeline, kept for legacy senders.
POST /ingest/snapshot  - legacy out-of-band image upload for a snapshot id.

Response contract:
  200 {"status": "success", "processed", "failed", "results", "errors"?}
  400 {"error": "Invalid payload", "details": [{"index", "issues"}]}   (every item failed)
  500 {"error": "Failed to process webhook event"}
"""

import time
from typing import Any, Optional

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from eli_ingest.database import get_db
from eli_ingest.dependencies import ServiceContainer, get_container
from eli_ingest.errors import AuthoritativeStoreError, ImageUploadError, ValidationError
from eli_ingest.schemas.webhook import SnapshotUploadIn
from eli_ingest.services.event_normalizer import issues_from, normalize_batch
from eli_ingest.services.event_service import archived_snapshot_url, attach_snapshot_upload
from eli_ingest.services.image_archiver import storage_key
from eli_ingest.utils.logger import get_logger

router = APIRouter()
logger = get_logger(__name__)

INTERNAL_ERROR = {"error": "Failed to process webhook event"}


def invalid_payload(issues: list[dict], index: int = 0) -> dict:
    return {"error": "Invalid payload", "details": [{"index": index, "issues": issues}]}


async def _read_json(request: Request) -> Any:
    try:
        return await request.json()
    except ValueError as e:
        issue = {"path": [], "message": "Request body is not valid JSON", "code": "invalid_json"}
        raise ValidationError("Request body is not valid JSON", [issue]) from e


def parse_snapshot_upload(body: Any) -> SnapshotUploadIn:
    try:
        return SnapshotUploadIn.model_validate(body)
    except PydanticValidationError as e:
        raise ValidationError("Invalid snapshot upload", issues_from(e)) from e


async def _audit(container: ServiceContainer, request: Request, started: float, status_code: int,
                 body: Any, content: dict, error: Optional[str] = None):
    await container.audit.record(
        method=request.method,
        path=request.url.path,
        status_code=status_code,
        source_ip=request.client.host if request.client else None,
        user_agent=request.headers.get("user-agent"),
        content_type=request.headers.get("content-type"),
        request_body=body,
        response_body=content,
        error_message=error,
        validation_errors=content.get("errors") or content.get("details"),
        processing_time_ms=int((time.time() - started) * 1000),
    )


@router.post("/webhook/irex", summary="Analytics feed webhook - single event or batch")
@router.post("/ingest/event", summary="Legacy event ingestion - same contract as the webhook")
async def receive_events(
    request: Request,
    db: Session = Depends(get_db),
    container: ServiceContainer = Depends(get_container),
):
    started = time.time()
    body = None
    error = None

    try:
        body = await _read_json(request)
        items = normalize_batch(body)
        report = await container.fanout.process_batch(items, db)
        status_code, content = report.status_code, report.to_response()
    except ValidationError as e:
        error = str(e)
        status_code, content = 400, invalid_payload(e.issues)
    except AuthoritativeStoreError as e:
        error = str(e)
        status_code, content = 500, INTERNAL_ERROR
    except Exception as e:  # anything unexpected still gets the documented 500 body
        logger.error(f"[WEBHOOK] Unexpected failure: {e}", exc_info=True)
        error = f"{type(e).__name__}: {e}"
        status_code, content = 500, INTERNAL_ERROR

    logger.info(f"[WEBHOOK] {request.url.path} → {status_code}")
    await _audit(container, request, started, status_code, body, content, error)
    return JSONResponse(status_code=status_code, content=content)


@router.post("/ingest/snapshot", summary="Legacy snapshot upload by reference id")
async def upload_snapshot(
    request: Request,
    db: Session = Depends(get_db),
    container: ServiceContainer = Depends(get_container),
):
    """
    Archives the image for a snapshot id referenced by an earlier legacy event.
    Unknown ids are stored as unlinked snapshots. A snapshot that is already
    archived keeps its URL and is not uploaded again.
    """
    started = time.time()
    body = None

    try:
        body = await _read_json(request)
        upload = parse_snapshot_upload(body)
        status_code, content, error = await _store_snapshot(upload, db, container)
    except ValidationError as e:
        status_code, content, error = 400, invalid_payload(e.issues), str(e)

    await _audit(container, request, started, status_code, body, content, error)
    return JSONResponse(status_code=status_code, content=content)


async def _store_snapshot(upload: SnapshotUploadIn, db: Session, container: ServiceContainer):
    existing_url = archived_snapshot_url(db, upload.id)
    if existing_url:
        logger.info(f"[WEBHOOK] Snapshot {upload.id} already archived, keeping {existing_url}")
        url = existing_url
    else:
        try:
            url = await container.archiver.archive(upload.snapshot, storage_key(upload.id, "snap"))
        except ImageUploadError as e:
            issue = {"path": ["snapshot"], "message": str(e), "code": "invalid_image"}
            raise ValidationError(str(e), [issue]) from e

    try:
        row = attach_snapshot_upload(db, upload.id, url)
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"[WEBHOOK] Snapshot {upload.id} write failed: {e}", exc_info=True)
        return 500, INTERNAL_ERROR, str(e)

    if container.graph.enabled and existing_url is None:
        await container.fanout.graph_channel.run(container.graph.link_image(url, row.type, row.event_id))

    logger.info(f"[WEBHOOK] Snapshot {upload.id} stored (event={row.event_id}, url={row.image_url})")
    return 200, {"status": "success", "id": upload.id, "event_id": row.event_id, "image_url": row.image_url}, None
