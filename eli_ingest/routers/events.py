# eli_ingest/routers/events.py
"""
Read APIs over the authoritative store.
GET /events     - ingested events, newest first.
GET /detections - enrichment detections.
GET /anomalies  - baseline deviations.
GET /insights   - generated channel summaries.
"""

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import Session

from eli_ingest.database import get_db
from eli_ingest.models.anomaly import Anomaly
from eli_ingest.models.detection import Detection
from eli_ingest.models.event import Event
from eli_ingest.models.insight import Insight
from eli_ingest.schemas.records import AnomalyOut, DetectionOut, EventOut, InsightOut

router = APIRouter()


@router.get("/events", response_model=list[EventOut], summary="List ingested events")
def list_events(
    limit: int = Query(50, ge=1, le=500),
    channel_id: Optional[str] = None,
    topic: Optional[str] = None,
    since: Optional[int] = None,
    db: Session = Depends(get_db),
):
    """Events filterable by channel, topic and start_time ≥ since (epoch ms)."""
    q = db.query(Event)
    if channel_id:
        q = q.filter(Event.channel_id == channel_id)
    if topic:
        q = q.filter(Event.topic == topic)
    if since is not None:
        q = q.filter(Event.start_time >= since)
    return q.order_by(Event.start_time.desc()).limit(limit).all()


@router.get("/events/{event_id}", response_model=EventOut, summary="Single event")
def get_event(event_id: str, db: Session = Depends(get_db)):
    event = db.query(Event).filter(Event.id == event_id).first()
    if not event:
        raise HTTPException(status_code=404, detail=f"Event {event_id} not found")
    return event


@router.get("/detections", response_model=list[DetectionOut], summary="List detections")
def list_detections(
    limit: int = Query(100, ge=1, le=1000),
    event_id: Optional[str] = None,
    channel_id: Optional[str] = None,
    db: Session = Depends(get_db),
):
    q = db.query(Detection)
    if event_id:
        q = q.filter(Detection.event_id == event_id)
    if channel_id:
        q = q.filter(Detection.channel_id == channel_id)
    return q.order_by(Detection.ts.desc()).limit(limit).all()


@router.get("/anomalies", response_model=list[AnomalyOut], summary="List anomalies")
def list_anomalies(
    limit: int = Query(50, ge=1, le=500),
    channel_id: Optional[str] = None,
    db: Session = Depends(get_db),
):
    q = db.query(Anomaly)
    if channel_id:
        q = q.filter(Anomaly.entity_type == "channel", Anomaly.entity_id == channel_id)
    return q.order_by(Anomaly.ts.desc()).limit(limit).all()


@router.get("/insights", response_model=list[InsightOut], summary="List insights")
def list_insights(
    limit: int = Query(20, ge=1, le=200),
    channel_id: Optional[str] = None,
    db: Session = Depends(get_db),
):
    q = db.query(Insight)
    if channel_id:
        q = q.filter(Insight.scope == "channel", Insight.scope_id == channel_id)
    return q.order_by(Insight.ts.desc()).limit(limit).all()
