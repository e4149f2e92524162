# eli_ingest/services/insight_service.py
"""
Insight generator - throttled natural-language summaries per channel.

At most one insight per channel every 15 minutes (by event time). The
context covers the trailing 24 hours: top detection (type, label) counts,
the latest anomalies and the current baseline. Any failure leaves the
enrichment cycle without an insight.
"""

import json
from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field, ValidationError as PydanticValidationError
from sqlalchemy import func
from sqlalchemy.orm import Session

from eli_ingest.errors import EnrichmentError
from eli_ingest.models.anomaly import Anomaly
from eli_ingest.models.baseline import Baseline
from eli_ingest.models.detection import Detection
from eli_ingest.models.insight import Insight
from eli_ingest.services.llm_client import LLMClient
from eli_ingest.services.side_channel import SideChannel
from eli_ingest.utils.logger import get_logger

logger = get_logger(__name__)

THROTTLE_MS = 15 * 60 * 1000
CONTEXT_WINDOW_MS = 24 * 60 * 60 * 1000
MAX_DETECTION_GROUPS = 200
MAX_ANOMALIES = 100
MAX_PROMPT_CONTEXT_CHARS = 12000
SCOPE_CHANNEL = "channel"
DEFAULT_SUMMARY = "Behavioral summary generated."

SYSTEM_INSTRUCTION = (
    "You are an analytics assistant. Return strictly JSON matching the provided schema. "
    "Do not include extra fields."
)


class InsightOutput(BaseModel):
    summary: str = DEFAULT_SUMMARY
    recommendations: list[str] = Field(default_factory=list)


INSIGHT_SCHEMA = {
    "type": "object",
    "properties": {
        "summary": {"type": "string"},
        "recommendations": {"type": "array", "items": {"type": "string"}},
    },
    "required": ["summary"],
}


def build_prompt(context: dict) -> str:
    return (
        "Analyze the following telemetry context and summarize behavior baselines and deviations. "
        "Return JSON only.\n\nContext:\n" + json.dumps(context)[:MAX_PROMPT_CONTEXT_CHARS]
    )


def is_throttled(db: Session, scope_id: str, ts: int, scope: str = SCOPE_CHANNEL) -> bool:
    last_ts = db.query(func.max(Insight.ts)).filter(
        Insight.scope == scope,
        Insight.scope_id == scope_id,
    ).scalar()
    return bool(last_ts) and last_ts > ts - THROTTLE_MS


def build_context(db: Session, channel_id: str, ts: int) -> dict:
    since = ts - CONTEXT_WINDOW_MS

    count_col = func.count(Detection.id).label("c")
    det_rows = (
        db.query(Detection.type, Detection.label, count_col)
        .filter(Detection.channel_id == channel_id, Detection.ts >= since, Detection.ts <= ts)
        .group_by(Detection.type, Detection.label)
        .order_by(count_col.desc())
        .limit(MAX_DETECTION_GROUPS)
        .all()
    )

    anomaly_rows = (
        db.query(Anomaly)
        .filter(
            Anomaly.entity_type == SCOPE_CHANNEL,
            Anomaly.entity_id == channel_id,
            Anomaly.ts >= since,
            Anomaly.ts <= ts,
        )
        .order_by(Anomaly.ts.desc())
        .limit(MAX_ANOMALIES)
        .all()
    )

    baseline = db.query(Baseline).filter(
        Baseline.entity_type == SCOPE_CHANNEL,
        Baseline.entity_id == channel_id,
    ).first()

    return {
        "channel_id": channel_id,
        "window": {"start": since, "end": ts},
        "baseline": baseline.features() if baseline else None,
        "detections_top": [{"type": t, "label": l, "c": c} for t, l, c in det_rows],
        "anomalies": [
            {"metric": a.metric, "value": a.value, "score": a.score, "ts": a.ts}
            for a in anomaly_rows
        ],
    }


class InsightGenerator:
    def __init__(self, llm: LLMClient):
        self.llm = llm
        self.channel = SideChannel("insight_generation")

    async def maybe_generate(self, db: Session, channel_id: Optional[str], ts: int) -> Optional[Insight]:
        """Generate and persist an insight unless disabled or throttled. Never raises."""
        if not channel_id:
            return None
        if not self.llm.enabled:
            self.channel.record_skip("llm_not_configured")
            return None
        if is_throttled(db, channel_id, ts):
            self.channel.record_skip("throttled")
            return None

        outcome = await self.channel.run(self._generate(db, channel_id, ts))
        if not outcome.ok:
            db.rollback()
            return None
        return outcome.value

    async def _generate(self, db: Session, channel_id: str, ts: int) -> Insight:
        context = build_context(db, channel_id, ts)
        raw = await self.llm.generate_json(build_prompt(context), INSIGHT_SCHEMA, SYSTEM_INSTRUCTION)
        try:
            output = InsightOutput.model_validate(raw)
        except PydanticValidationError as e:
            raise EnrichmentError(f"Invalid insight output: {e.error_count()} issues") from e

        insight = Insight(
            scope=SCOPE_CHANNEL,
            scope_id=channel_id,
            summary=output.summary,
            recommendations=output.recommendations,
            context=context,
            ts=ts,
            created_at=datetime.utcnow(),
        )
        db.add(insight)
        db.commit()
        logger.info(f"[INSIGHT] Channel {channel_id}: insight {insight.id} ({len(output.recommendations)} recommendations)")
        return insight
