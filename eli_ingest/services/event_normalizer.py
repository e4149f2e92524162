# eli_ingest/services/event_normalizer.py
"""
Parses nested and legacy flat webhook payloads (single object or array).
Returns one NormalizationResult per item, carrying either a unified
NormalizedEvent or the item's field-level issues. A failing item never
stops the rest of the batch.
"""

import json
from dataclasses import dataclass, field
from typing import Any, Optional

from pydantic import ValidationError as PydanticValidationError

from eli_ingest.schemas.webhook import LegacyEventIn, NestedEventIn, inbound_event_adapter
from eli_ingest.utils.logger import get_logger

logger = get_logger(__name__)

ADDRESS_FIELDS = ("country", "region", "county", "city", "district", "street", "place_info")

# params.attributes key → Event node property
PERSON_ATTRIBUTES = {
    "age": "person_age",
    "gender": "person_gender",
    "race": "person_race",
    "glasses": "person_glasses",
    "beard": "person_beard",
    "hat": "person_hat",
    "has": "person_hat",      # feed sometimes truncates "hat"
    "mask": "person_mask",
}

FACE_FIELDS = ("similarity", "first_name", "last_name")
PLATE_FIELDS = ("number", "state", "owner_first_name", "owner_last_name")


@dataclass
class WatchlistRef:
    id: str
    name: Optional[str] = None
    level: Optional[Any] = None


@dataclass
class IdentityMatch:
    kind: str                      # face | plate
    id: str
    properties: dict = field(default_factory=dict)
    watchlist: Optional[WatchlistRef] = None


@dataclass
class ChannelInfo:
    id: Optional[str]
    channel_type: Optional[str] = None
    name: Optional[str] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    address: Optional[Any] = None
    tags: list[dict] = field(default_factory=list)

    @property
    def tag_names(self) -> list[str]:
        return [t["name"] for t in self.tags if t.get("name")]

    def flat_address(self) -> dict:
        """Address split into scalar node properties plus the raw JSON string."""
        if not self.address:
            return {}
        if not isinstance(self.address, dict):
            return {"address_json": json.dumps(self.address)}
        flat = {k: self.address[k] for k in ADDRESS_FIELDS if self.address.get(k) is not None}
        flat["address_json"] = json.dumps(self.address, separators=(",", ":"))
        return flat


@dataclass
class SnapshotData:
    type: Optional[str] = None
    path: Optional[str] = None
    image: Optional[str] = None    # inline bytes, base64 or data URI
    ref_id: Optional[str] = None   # legacy snapshot reference id


@dataclass
class NormalizedEvent:
    id: str
    start_time: int                # epoch ms
    shape: str                     # nested | legacy
    end_time: Optional[int] = None
    topic: Optional[str] = None
    module: Optional[str] = None
    level: Optional[str] = None
    monitor_id: Optional[str] = None
    event_id_ext: Optional[str] = None
    params: Optional[Any] = None
    channel: Optional[ChannelInfo] = None
    snapshots: list[SnapshotData] = field(default_factory=list)
    identities: list[IdentityMatch] = field(default_factory=list)
    attributes: dict = field(default_factory=dict)

    @property
    def channel_id(self) -> Optional[str]:
        return self.channel.id if self.channel else None

    @property
    def tags(self) -> list[str]:
        return self.channel.tag_names if self.channel else []


@dataclass
class NormalizationResult:
    index: int
    event: Optional[NormalizedEvent] = None
    issues: list[dict] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.event is not None


def _str_or_none(value: Any) -> Optional[str]:
    return None if value is None else str(value)


def issues_from(exc: PydanticValidationError, tags: tuple = ("nested", "legacy")) -> list[dict]:
    issues = []
    for err in exc.errors(include_url=False):
        loc = list(err.get("loc", ()))
        if loc and loc[0] in tags:
            loc = loc[1:]
        issues.append({"path": loc, "message": err.get("msg", "Invalid value"), "code": err.get("type", "invalid")})
    return issues


def _extract_identities(params: Any) -> list[IdentityMatch]:
    if not isinstance(params, dict):
        return []
    matches = []
    for entry in params.get("identities") or []:
        if not isinstance(entry, dict):
            continue
        watchlist = None
        lst = entry.get("list")
        if isinstance(lst, dict) and lst.get("id") is not None:
            watchlist = WatchlistRef(id=str(lst["id"]), name=lst.get("name"), level=lst.get("level"))

        for kind, key, fields in (("face", "faces", FACE_FIELDS), ("plate", "plates", PLATE_FIELDS)):
            for item in entry.get(key) or []:
                if not isinstance(item, dict) or item.get("id") is None:
                    continue
                props = {f: item[f] for f in fields if item.get(f) is not None}
                matches.append(IdentityMatch(kind=kind, id=str(item["id"]), properties=props, watchlist=watchlist))
    return matches


def _extract_attributes(params: Any) -> dict:
    """Scalar person / vehicle analytics flattened into Event node properties."""
    if not isinstance(params, dict):
        return {}
    attrs = {}

    person = params.get("attributes")
    if isinstance(person, dict):
        for src, dst in PERSON_ATTRIBUTES.items():
            value = person.get(src)
            if isinstance(value, (str, int, float, bool)):
                attrs.setdefault(dst, value)

    obj = params.get("object")
    if isinstance(obj, dict):
        for src, dst in (("color", "vehicle_color"), ("object_type", "vehicle_type")):
            value = obj.get(src)
            if isinstance(value, dict):
                value = value.get("value")
            if isinstance(value, str):
                attrs[dst] = value

    reliability = params.get("reliability")
    if isinstance(reliability, (int, float)) and not isinstance(reliability, bool):
        attrs["reliability"] = reliability
    return attrs


def _from_nested(item: NestedEventIn) -> NormalizedEvent:
    ch = item.channel
    channel = None
    if ch.id is not None or ch.name or ch.channel_type:
        channel = ChannelInfo(
            id=_str_or_none(ch.id),
            channel_type=ch.channel_type,
            name=ch.name,
            latitude=ch.latitude,
            longitude=ch.longitude,
            address=ch.address,
            tags=[t.model_dump(exclude_none=True) for t in ch.tags],
        )
    return NormalizedEvent(
        id=item.id,
        start_time=int(item.start_time),
        shape="nested",
        end_time=int(item.end_time) if item.end_time is not None else None,
        topic=item.topic,
        module=item.module,
        level=_str_or_none(item.level),
        monitor_id=_str_or_none(item.monitor_id),
        event_id_ext=_str_or_none(item.event_id),
        params=item.params,
        channel=channel,
        snapshots=[SnapshotData(type=s.type, path=s.path, image=s.image) for s in item.snapshots],
        identities=_extract_identities(item.params),
        attributes=_extract_attributes(item.params),
    )


def _from_legacy(item: LegacyEventIn) -> NormalizedEvent:
    channel = None
    if item.channel_id is not None:
        channel = ChannelInfo(
            id=str(item.channel_id),
            latitude=item.latitude,
            longitude=item.longitude,
            address=item.address,
        )
    return NormalizedEvent(
        id=item.id,
        start_time=int(item.start_time),
        shape="legacy",
        channel=channel,
        snapshots=[SnapshotData(type=s.type, ref_id=s.id) for s in item.snapshots],
    )


def normalize_item(index: int, raw: Any) -> NormalizationResult:
    if not isinstance(raw, dict):
        issue = {"path": [], "message": "Expected an event object", "code": "invalid_type"}
        return NormalizationResult(index=index, issues=[issue])
    try:
        parsed = inbound_event_adapter.validate_python(raw)
    except PydanticValidationError as e:
        return NormalizationResult(index=index, issues=issues_from(e))

    if isinstance(parsed, LegacyEventIn):
        event = _from_legacy(parsed)
    else:
        event = _from_nested(parsed)
    return NormalizationResult(index=index, event=event)


def normalize_batch(body: Any) -> list[NormalizationResult]:
    """Accepts one event object or an array of them; results keep array order."""
    items = body if isinstance(body, list) else [body]
    results = [normalize_item(i, raw) for i, raw in enumerate(items)]
    failed = sum(1 for r in results if not r.ok)
    if failed:
        logger.info(f"[NORMALIZE] {len(results) - failed}/{len(results)} items valid, {failed} rejected")
    return results
