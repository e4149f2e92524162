# eli_ingest/routers/maintenance.py
"""
Image archive maintenance (API-key protected).
POST /maintenance/images/purge       - one bounded purge call, dry-run capable.
POST /maintenance/images/auto-purge  - time-boxed multi-round purge; call again to resume.
"""

from dataclasses import asdict

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse

from eli_ingest.dependencies import ServiceContainer, get_container
from eli_ingest.schemas.maintenance import AutoPurgeRequest, PurgeRequest
from eli_ingest.utils.logger import get_logger

router = APIRouter()
logger = get_logger(__name__)

ARCHIVE_DISABLED = {"error": "Image archive is not configured"}


@router.post("/maintenance/images/purge", summary="Purge archived images older than N days")
async def purge_images(body: PurgeRequest, container: ServiceContainer = Depends(get_container)):
    if not container.archiver.enabled:
        return JSONResponse(status_code=503, content=ARCHIVE_DISABLED)
    report = await container.archiver.purge_old_images(
        body.days, dry_run=body.dry_run, max_batches=body.max_batches, cursor=body.cursor,
    )
    logger.info(f"[ARCHIVE] Manual purge days={body.days} dry_run={body.dry_run}: {report.deleted}/{report.total}")
    return {"status": "success", "days": body.days, **asdict(report)}


@router.post("/maintenance/images/auto-purge", summary="Time-boxed purge of archived images")
async def auto_purge_images(body: AutoPurgeRequest, container: ServiceContainer = Depends(get_container)):
    if not container.archiver.enabled:
        return JSONResponse(status_code=503, content=ARCHIVE_DISABLED)
    summary = await container.archiver.auto_purge_old_images(
        body.days,
        max_time_seconds=body.max_time_seconds,
        cursor=body.cursor,
        progress=lambda p: logger.info(f"[ARCHIVE] Auto-purge round {p['round']}: {p['total_deleted']} deleted so far"),
    )
    message = (
        f"Purge completed: {summary.total_deleted} images deleted"
        if summary.completed
        else f"Partial purge: {summary.total_deleted} images deleted, call again with next_cursor to continue"
    )
    return {"status": "success", "message": message, **asdict(summary)}
