# eli_ingest/schemas/records.py
from pydantic import BaseModel
from datetime import datetime
from typing import Any, Optional


class EventOut(BaseModel):
    id: str
    topic: Optional[str]
    module: Optional[str]
    level: Optional[str]
    start_time: int
    end_time: Optional[int]
    channel_id: Optional[str]
    channel_name: Optional[str]
    latitude: Optional[float]
    longitude: Optional[float]
    tags: Optional[Any]
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True


class DetectionOut(BaseModel):
    id: int
    event_id: Optional[str]
    channel_id: Optional[str]
    type: Optional[str]
    label: Optional[str]
    score: Optional[float]
    bbox: Optional[Any]
    ts: int

    class Config:
        from_attributes = True


class AnomalyOut(BaseModel):
    id: int
    metric: str
    entity_type: str
    entity_id: str
    value: float
    score: float
    threshold: float
    window: Optional[dict]
    context: Optional[dict]
    ts: int

    class Config:
        from_attributes = True


class InsightOut(BaseModel):
    id: int
    scope: str
    scope_id: str
    summary: str
    recommendations: Optional[list[str]]
    ts: int
    created_at: datetime

    class Config:
        from_attributes = True
