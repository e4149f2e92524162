# eli_ingest/schemas/maintenance.py
from typing import Optional

from pydantic import BaseModel, Field


class PurgeRequest(BaseModel):
    days: int = Field(default=7, ge=0)
    dry_run: bool = False
    max_batches: int = Field(default=2, ge=1, le=50)
    cursor: Optional[str] = None   # next_cursor from a previous report


class AutoPurgeRequest(BaseModel):
    days: int = Field(default=7, ge=0)
    max_time_seconds: int = Field(default=240, ge=30, le=900)
    cursor: Optional[str] = None
