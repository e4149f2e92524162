# eli_ingest/services/event_service.py
"""
Authoritative (relational) writes for ingested events.

Restricted upsert: the first ingestion of an id creates the row; later ones
only overwrite end_time and params. id, channel and start_time are immutable.
Callers own the transaction (commit / rollback).
"""

import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from eli_ingest.models.channel import Channel
from eli_ingest.models.event import Event
from eli_ingest.models.snapshot import Snapshot
from eli_ingest.services.event_normalizer import NormalizedEvent
from eli_ingest.utils.logger import get_logger

logger = get_logger(__name__)


def _new_event_row(event: NormalizedEvent, now: datetime) -> Event:
    ch = event.channel
    return Event(
        id=event.id,
        event_id_ext=event.event_id_ext,
        monitor_id=event.monitor_id,
        topic=event.topic,
        module=event.module,
        level=event.level,
        start_time=event.start_time,
        end_time=event.end_time,
        latitude=ch.latitude if ch else None,
        longitude=ch.longitude if ch else None,
        channel_id=ch.id if ch else None,
        channel_type=ch.channel_type if ch else None,
        channel_name=ch.name if ch else None,
        channel_address=ch.address if ch else None,
        params=event.params,
        tags=ch.tags if ch and ch.tags else None,
        created_at=now,
        updated_at=now,
    )


def _apply_mutable(row: Event, event: NormalizedEvent, now: datetime):
    row.end_time = event.end_time
    row.params = event.params
    row.updated_at = now


def upsert_event(db: Session, event: NormalizedEvent) -> bool:
    """Returns True when the event row was created, False when it already existed."""
    now = datetime.utcnow()
    existing = db.query(Event).filter(Event.id == event.id).first()
    if existing:
        _apply_mutable(existing, event, now)
        db.flush()
        return False

    try:
        db.add(_new_event_row(event, now))
        db.flush()
    except IntegrityError:
        # Concurrent request created it first; fall back to the update path.
        # Must be the first write of the transaction, so rollback loses nothing.
        db.rollback()
        existing = db.query(Event).filter(Event.id == event.id).one()
        _apply_mutable(existing, event, now)
        db.flush()
        return False
    return True


def upsert_channel(db: Session, event: NormalizedEvent) -> Optional[Channel]:
    """Merge-by-key: fields present in this event overwrite, absent ones are kept."""
    ch = event.channel
    if not ch or not ch.id:
        return None
    row = db.query(Channel).filter(Channel.id == ch.id).first()
    if row is None:
        row = Channel(id=ch.id)
        db.add(row)
    for attr, value in (
        ("name", ch.name),
        ("channel_type", ch.channel_type),
        ("latitude", ch.latitude),
        ("longitude", ch.longitude),
        ("address", ch.address),
        ("tags", ch.tags or None),
    ):
        if value is not None:
            setattr(row, attr, value)
    row.updated_at = datetime.utcnow()
    return row


def insert_snapshots(db: Session, event_id: str, snapshots: list[dict]) -> int:
    """
    One row per snapshot. Legacy references keep their id and are skipped
    if already stored; nested snapshots get a fresh UUID.
    """
    now = datetime.utcnow()
    inserted = 0
    for snap in snapshots:
        snap_id = snap.get("ref_id")
        if snap_id and db.query(Snapshot.id).filter(Snapshot.id == snap_id).first():
            continue
        db.add(Snapshot(
            id=snap_id or str(uuid.uuid4()),
            event_id=event_id,
            type=snap.get("type"),
            path=snap.get("path"),
            image_url=snap.get("image_url"),
            created_at=now,
        ))
        inserted += 1
    return inserted


def archived_snapshot_url(db: Session, snapshot_id: str) -> Optional[str]:
    row = db.query(Snapshot.image_url).filter(Snapshot.id == snapshot_id).first()
    return row.image_url if row else None


def attach_snapshot_upload(db: Session, snapshot_id: str, image_url: Optional[str]) -> Snapshot:
    """
    Out-of-band legacy upload: completes archival of a previously referenced
    snapshot, or records an unlinked snapshot when the id is unknown.
    """
    row = db.query(Snapshot).filter(Snapshot.id == snapshot_id).first()
    if row is None:
        row = Snapshot(id=snapshot_id, event_id=None, image_url=image_url, created_at=datetime.utcnow())
        db.add(row)
    elif row.image_url is None and image_url:
        row.image_url = image_url
    return row
