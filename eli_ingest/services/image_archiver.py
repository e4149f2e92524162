# eli_ingest/services/image_archiver.py
"""
Image archiver - stores inline snapshot bytes in Cloudinary and returns the
canonical (secure) URL.

Archival is skipped (None) when disabled or when there are no bytes.
Malformed bytes raise ImageUploadError so the caller can reject that item only.

Retention: after a successful upload, a small background purge removes
images older than IMAGE_RETENTION_DAYS. Manual purges support dry runs and a
bounded number of listing rounds per call, reporting has_more and next_cursor
so the caller can invoke again to continue where the listing stopped.
"""

import asyncio
import base64
import binascii
import re
import secrets
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

import cloudinary
import cloudinary.api
import cloudinary.exceptions
import cloudinary.uploader

from eli_ingest.errors import ImageUploadError
from eli_ingest.services.side_channel import SideChannel
from eli_ingest.utils.logger import get_logger

logger = get_logger(__name__)

DATA_URI_RE = re.compile(r"^data:(?P<mime>[\w/+.-]+);base64,(?P<data>.*)$", re.DOTALL)

LIST_PAGE_SIZE = 100          # listing page size
DELETE_BATCH_SIZE = 100       # Cloudinary delete_resources limit
SAMPLE_SIZE = 10
AUTO_PURGE_ROUNDS = 1         # background purge: one listing round per upload
MANUAL_PURGE_ROUNDS = 2
AUTO_PURGE_SAFETY_SECONDS = 20
AUTO_PURGE_PAUSE_SECONDS = 0.5


@dataclass
class PurgeReport:
    deleted: int
    total: int
    sample: list[str] = field(default_factory=list)
    dry_run: bool = False
    has_more: bool = False
    next_cursor: Optional[str] = None


@dataclass
class AutoPurgeSummary:
    total_deleted: int
    rounds: int
    time_elapsed: int
    completed: bool
    next_cursor: Optional[str] = None


def to_data_uri(image: str) -> str:
    """Accepts raw base64 or a data URI; raw base64 is assumed PNG."""
    image = image.strip()
    if image.startswith("data:"):
        return image
    return f"data:image/png;base64,{image}"


def validate_image_payload(image: str) -> str:
    """Returns the data URI for the payload, or raises ImageUploadError."""
    data_uri = to_data_uri(image)
    match = DATA_URI_RE.match(data_uri)
    if not match:
        raise ImageUploadError("Invalid image file: not a base64 data URI")
    if not match.group("mime").startswith("image/"):
        raise ImageUploadError(f"Invalid image file: unsupported type {match.group('mime')}")
    data = match.group("data")
    try:
        decoded = base64.b64decode(data + "=" * (-len(data) % 4), validate=True)
    except (binascii.Error, ValueError) as e:
        raise ImageUploadError(f"Invalid image file: {e}") from e
    if not decoded:
        raise ImageUploadError("Invalid image file: empty payload")
    return data_uri


def storage_key(event_id: str, snapshot_type: Optional[str]) -> str:
    """event id + snapshot type + random suffix, unique within a batch."""
    return f"{event_id}_{snapshot_type or 'snap'}_{secrets.token_hex(3)}"


class ImageArchiver:
    def __init__(
        self,
        enabled: bool,
        folder: str = "",
        retention_days: int = 0,
        cloud_name: Optional[str] = None,
        api_key: Optional[str] = None,
        api_secret: Optional[str] = None,
    ):
        self.enabled = enabled
        self.folder = folder
        self.retention_days = retention_days
        self.purge_channel = SideChannel("image_auto_purge")
        self._auto_purge_cursor: Optional[str] = None
        if enabled:
            cloudinary.config(cloud_name=cloud_name, api_key=api_key, api_secret=api_secret, secure=True)

    @classmethod
    def from_settings(cls, settings) -> "ImageArchiver":
        return cls(
            enabled=settings.archive_enabled,
            folder=settings.CLOUDINARY_FOLDER,
            retention_days=settings.IMAGE_RETENTION_DAYS,
            cloud_name=settings.CLOUDINARY_CLOUD_NAME,
            api_key=settings.CLOUDINARY_API_KEY,
            api_secret=settings.CLOUDINARY_API_SECRET,
        )

    @property
    def prefix(self) -> str:
        if not self.folder:
            return ""
        return self.folder if self.folder.endswith("/") else self.folder + "/"

    async def archive(self, image: Optional[str], key: str) -> Optional[str]:
        """Upload inline image bytes. Returns the secure URL, or None when skipped."""
        if not image or not self.enabled:
            return None

        data_uri = validate_image_payload(image)
        try:
            result = await asyncio.to_thread(
                cloudinary.uploader.upload,
                data_uri,
                folder=self.folder,
                public_id=key,
                overwrite=True,
            )
        except cloudinary.exceptions.Error as e:
            raise ImageUploadError(str(e) or "Invalid image file") from e

        url = result.get("secure_url") or result.get("url")
        logger.info(f"[ARCHIVE] Uploaded {key} → {url}")

        if self.retention_days > 0 and self.purge_channel.in_flight == 0:
            self.purge_channel.spawn(self._auto_purge_background())
        return url

    async def _auto_purge_background(self) -> int:
        report = await self.purge_old_images(
            self.retention_days, dry_run=False, max_batches=AUTO_PURGE_ROUNDS, cursor=self._auto_purge_cursor,
        )
        # next upload continues the listing from here; wraps to the start when exhausted
        self._auto_purge_cursor = report.next_cursor
        if report.deleted:
            logger.info(f"[ARCHIVE] Auto-purge deleted {report.deleted} images older than {self.retention_days} days")
        return report.deleted

    async def purge_old_images(
        self,
        days: int = 7,
        dry_run: bool = False,
        max_batches: int = MANUAL_PURGE_ROUNDS,
        cursor: Optional[str] = None,
    ) -> PurgeReport:
        """
        Delete archived images older than `days`.
        Lists at most `max_batches` pages per call, starting at `cursor`.
        The report's next_cursor resumes the listing on the next call;
        has_more is False once the listing is exhausted.
        """
        cutoff = datetime.now(timezone.utc) - timedelta(days=days)
        to_delete: list[str] = []
        rounds = 0

        while True:
            page = await asyncio.to_thread(self._list_page, cursor)
            for resource in page.get("resources") or []:
                created_at = _parse_created_at(resource.get("created_at"))
                if created_at and created_at < cutoff:
                    to_delete.append(resource["public_id"])
            cursor = page.get("next_cursor") or None
            rounds += 1
            if not cursor or rounds >= max(1, max_batches):
                break

        total = len(to_delete)
        sample = to_delete[:SAMPLE_SIZE]
        has_more = cursor is not None

        if dry_run or total == 0:
            return PurgeReport(
                deleted=0, total=total, sample=sample, dry_run=dry_run, has_more=has_more, next_cursor=cursor,
            )

        deleted = 0
        for i in range(0, total, DELETE_BATCH_SIZE):
            batch = to_delete[i:i + DELETE_BATCH_SIZE]
            try:
                result = await asyncio.to_thread(
                    cloudinary.api.delete_resources,
                    batch,
                    type="upload",
                    resource_type="image",
                    invalidate=True,
                )
            except cloudinary.exceptions.Error as e:
                logger.error(f"[ARCHIVE] Failed deleting batch of {len(batch)}: {e}")
                continue
            statuses = (result or {}).get("deleted") or {}
            deleted += sum(1 for v in statuses.values() if v in ("deleted", "queued"))

        logger.info(f"[ARCHIVE] Purged {deleted}/{total} images older than {days} days (has_more={has_more})")
        return PurgeReport(
            deleted=deleted, total=total, sample=sample, dry_run=False, has_more=has_more, next_cursor=cursor,
        )

    async def auto_purge_old_images(
        self,
        days: int = 7,
        max_time_seconds: int = 240,
        progress: Optional[Callable[[dict], None]] = None,
        cursor: Optional[str] = None,
    ) -> AutoPurgeSummary:
        """
        Repeated purges, each continuing the listing where the previous one
        stopped, until the listing is exhausted or the time box (minus a
        safety margin) runs out. A partial summary carries next_cursor.
        """
        started = time.monotonic()
        total_deleted = 0
        rounds = 0
        has_more = True

        while has_more:
            elapsed = time.monotonic() - started
            if elapsed > max_time_seconds - AUTO_PURGE_SAFETY_SECONDS:
                logger.info(f"[ARCHIVE] Auto-purge stopping near time limit ({elapsed:.1f}s elapsed)")
                break

            report = await self.purge_old_images(days, dry_run=False, max_batches=MANUAL_PURGE_ROUNDS, cursor=cursor)
            total_deleted += report.deleted
            rounds += 1
            has_more = report.has_more
            cursor = report.next_cursor
            if progress:
                progress({
                    "round": rounds,
                    "deleted": report.deleted,
                    "total_deleted": total_deleted,
                    "has_more": has_more,
                    "time_elapsed": round(elapsed),
                })

            if has_more:
                await asyncio.sleep(AUTO_PURGE_PAUSE_SECONDS)

        return AutoPurgeSummary(
            total_deleted=total_deleted,
            rounds=rounds,
            time_elapsed=round(time.monotonic() - started),
            completed=not has_more,
            next_cursor=cursor if has_more else None,
        )

    def _list_page(self, cursor: Optional[str]) -> dict:
        kwargs = {"type": "upload", "resource_type": "image", "prefix": self.prefix, "max_results": LIST_PAGE_SIZE}
        if cursor:
            kwargs["next_cursor"] = cursor
        return cloudinary.api.resources(**kwargs)

    async def close(self):
        await self.purge_channel.drain()


def _parse_created_at(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed
