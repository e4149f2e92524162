# eli_ingest/services/side_channel.py
"""
Best-effort side channels.

A SideChannel runs an operation whose failure must never reach the primary
response (graph projection, job publishing, image purge, insight generation,
job status marking). It logs the failure and keeps counters that /health
exposes, so silent degradation is still visible.
"""

import asyncio
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Optional

from eli_ingest.utils.logger import get_logger

logger = get_logger(__name__)


@dataclass
class SideChannelOutcome:
    ok: bool
    value: Any = None
    error: Optional[str] = None


@dataclass
class SideChannelStats:
    succeeded: int = 0
    failed: int = 0
    skipped: int = 0
    last_error: Optional[str] = None
    last_failure_at: Optional[datetime] = None


class SideChannel:
    def __init__(self, name: str):
        self.name = name
        self.stats = SideChannelStats()
        self._background: set[asyncio.Task] = set()

    async def run(self, operation: Awaitable) -> SideChannelOutcome:
        """Await the operation, recording the outcome. Never raises (except on cancellation)."""
        try:
            value = await operation
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self.record_failure(e)
            return SideChannelOutcome(ok=False, error=str(e))
        self.stats.succeeded += 1
        return SideChannelOutcome(ok=True, value=value)

    def spawn(self, operation: Awaitable) -> asyncio.Task:
        """Fire-and-forget: schedule the operation without blocking the caller."""
        task = asyncio.ensure_future(self.run(operation))
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    async def drain(self):
        """Wait for background operations still running."""
        if self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    @property
    def in_flight(self) -> int:
        return len(self._background)

    def record_failure(self, exc: BaseException):
        self.stats.failed += 1
        self.stats.last_error = f"{type(exc).__name__}: {exc}"
        self.stats.last_failure_at = datetime.utcnow()
        logger.warning(f"[SIDE:{self.name}] failed: {exc}", exc_info=True)

    def record_skip(self, reason: str):
        self.stats.skipped += 1
        logger.debug(f"[SIDE:{self.name}] skipped: {reason}")

    def snapshot(self) -> dict:
        return {
            "succeeded": self.stats.succeeded,
            "failed": self.stats.failed,
            "skipped": self.stats.skipped,
            "in_flight": self.in_flight,
            "last_error": self.stats.last_error,
            "last_failure_at": self.stats.last_failure_at.isoformat() if self.stats.last_failure_at else None,
        }
