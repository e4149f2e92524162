# eli_ingest/routers/enrichment.py
"""
Enrichment worker endpoints.
POST /enrichment/pubsub   - Pub/Sub push subscription target. Always 204.
POST /enrichment/process  - run a job payload directly (local testing).
"""

from fastapi import APIRouter, Depends, Request, Response, status
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from eli_ingest.database import get_db
from eli_ingest.dependencies import ServiceContainer, get_container
from eli_ingest.services.enrichment_worker import decode_envelope
from eli_ingest.utils.logger import get_logger

router = APIRouter()
logger = get_logger(__name__)


@router.post("/enrichment/pubsub", status_code=204, summary="Pub/Sub push endpoint")
async def receive_push(
    request: Request,
    db: Session = Depends(get_db),
    container: ServiceContainer = Depends(get_container),
):
    """
    Acknowledges every delivery, even when processing fails, so a poison
    message is not redelivered forever. Failures are only visible in logs,
    job rows and /health counters.
    """
    try:
        message = decode_envelope(await request.json())
    except ValueError:
        message = None
    if message is None:
        logger.warning("[WORKER] Push delivery without a usable message - acknowledged")
        return Response(status_code=status.HTTP_204_NO_CONTENT)

    try:
        await container.worker.handle_message(db, message)
    except Exception as e:  # never let a delivery fail
        logger.error(f"[WORKER] Push handling error: {e}", exc_info=True)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/enrichment/process", summary="Run one enrichment job synchronously")
async def process_job(
    request: Request,
    db: Session = Depends(get_db),
    container: ServiceContainer = Depends(get_container),
):
    try:
        payload = await request.json()
    except ValueError:
        payload = None
    if not isinstance(payload, dict):
        return JSONResponse(status_code=400, content={"error": "Expected a job payload object"})

    result = await container.worker.handle_message(db, payload)
    if result is None:
        return {"ok": False, "detections": 0}
    return {
        "ok": True,
        "event_id": result.event_id,
        "detections": result.detections,
        "inserted": result.inserted,
        "anomaly": result.anomaly,
        "insight_id": result.insight_id,
    }
