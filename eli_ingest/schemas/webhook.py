# eli_ingest/schemas/webhook.py
"""
Inbound event shapes pushed by the analytics feed.

Two shapes share one endpoint:
  - nested: channel, tags, identities and inline images embedded in the item
  - legacy: flat channel_id / latitude / longitude / address and snapshot refs

InboundEvent is a tagged union; detect_shape() picks the tag from the keys
present in the raw item, then the matching model validates every field.
"""

from typing import Annotated, Any, Literal, Optional, Union

from pydantic import (
    BaseModel,
    ConfigDict,
    Discriminator,
    Field,
    StrictFloat,
    StrictInt,
    StrictStr,
    Tag,
    TypeAdapter,
)

EventId = Annotated[StrictStr, Field(min_length=1)]
# strict float still accepts ints, rejects str and bool; NaN and Infinity literals are rejected
EpochMillis = Annotated[StrictFloat, Field(allow_inf_nan=False)]
Coordinate = Annotated[StrictFloat, Field(allow_inf_nan=False)]
LooseId = Union[StrictInt, StrictStr]
SnapshotType = Literal["FULLSCREEN", "THUMBNAIL"]

LEGACY_KEYS = ("channel_id", "latitude", "longitude", "address")


class TagIn(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: Optional[LooseId] = None
    name: Optional[StrictStr] = None


class SnapshotIn(BaseModel):
    model_config = ConfigDict(extra="ignore")

    type: Optional[SnapshotType] = None
    path: Optional[StrictStr] = None
    image: Optional[StrictStr] = None     # base64 or data URI


class ChannelIn(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: Optional[LooseId] = None
    channel_type: Optional[StrictStr] = None
    name: Optional[StrictStr] = None
    latitude: Optional[Coordinate] = None
    longitude: Optional[Coordinate] = None
    address: Optional[Any] = None
    tags: list[TagIn] = []


class NestedEventIn(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: EventId
    start_time: EpochMillis
    end_time: Optional[EpochMillis] = None
    monitor_id: Optional[LooseId] = None
    event_id: Optional[LooseId] = None
    topic: Optional[StrictStr] = None
    module: Optional[StrictStr] = None
    level: Optional[LooseId] = None
    params: Optional[Any] = None
    snapshots: list[SnapshotIn] = []
    channel: ChannelIn = Field(default_factory=ChannelIn)


class SnapshotRefIn(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: Optional[StrictStr] = None
    type: Optional[SnapshotType] = None


class LegacyEventIn(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: EventId
    start_time: EpochMillis
    latitude: Optional[Coordinate] = None
    longitude: Optional[Coordinate] = None
    channel_id: Optional[LooseId] = None
    address: Optional[dict[str, Any]] = None
    snapshots: list[SnapshotRefIn] = []


class SnapshotUploadIn(BaseModel):
    """Legacy out-of-band snapshot upload: image bytes for a previously referenced snapshot id."""

    id: EventId
    snapshot: StrictStr


def detect_shape(item: Any) -> str:
    if isinstance(item, dict):
        if isinstance(item.get("channel"), dict):
            return "nested"
        if any(key in item for key in LEGACY_KEYS):
            return "legacy"
    return "nested"


InboundEvent = Annotated[
    Union[
        Annotated[NestedEventIn, Tag("nested")],
        Annotated[LegacyEventIn, Tag("legacy")],
    ],
    Discriminator(detect_shape),
]

inbound_event_adapter = TypeAdapter(InboundEvent)
