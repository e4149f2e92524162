# eli_ingest/services/job_publisher.py
"""
Enrichment job publisher - best-effort enqueue onto Google Cloud Pub/Sub.

publish() never raises: an unreachable, unconfigured or offline queue yields
a "skipped" or failed PublishResult that the caller only logs. No retries;
consumers treat delivery as at-least-once.
"""

import asyncio
import json
from dataclasses import dataclass
from typing import Optional

from google.api_core import exceptions as gapi_exceptions
from google.cloud import pubsub_v1

from eli_ingest.errors import EnqueueError
from eli_ingest.services.side_channel import SideChannel
from eli_ingest.utils.logger import get_logger

logger = get_logger(__name__)


@dataclass
class PublishResult:
    ok: bool
    skipped: bool = False
    reason: Optional[str] = None
    message_id: Optional[str] = None


def build_job_payload(event_id: str, channel_id: Optional[str], start_time: int, images: list[str]) -> dict:
    return {
        "event": {"id": event_id, "channel_id": channel_id, "start_time": start_time},
        "images": [url for url in images if url],
    }


class JobPublisher:
    def __init__(
        self,
        topic: Optional[str],
        project_id: Optional[str] = None,
        offline: bool = False,
        timeout: float = 5.0,
        client=None,
    ):
        self.topic = topic
        self.project_id = project_id
        self.offline = offline
        self.timeout = timeout
        self._client = client
        self.channel = SideChannel("job_publish")

    @classmethod
    def from_settings(cls, settings) -> "JobPublisher":
        return cls(
            topic=settings.AI_PUBSUB_TOPIC,
            project_id=settings.PUBSUB_PROJECT_ID,
            offline=settings.MOCK_MODE,
            timeout=settings.PUBSUB_PUBLISH_TIMEOUT_SECONDS,
        )

    def _get_client(self):
        # Created on first use so startup never blocks on credential discovery
        if self._client is None:
            self._client = pubsub_v1.PublisherClient()
        return self._client

    def _topic_path(self, client) -> str:
        if self.topic.startswith("projects/"):
            return self.topic
        if not self.project_id:
            raise EnqueueError("PUBSUB_PROJECT_ID is required for a short topic name")
        return client.topic_path(self.project_id, self.topic)

    async def _send(self, payload: dict) -> str:
        try:
            client = self._get_client()
            future = client.publish(self._topic_path(client), json.dumps(payload).encode("utf-8"))
            return await asyncio.wait_for(asyncio.wrap_future(future), timeout=self.timeout)
        except (gapi_exceptions.GoogleAPIError, asyncio.TimeoutError, OSError) as e:
            raise EnqueueError(f"Publish failed: {e}") from e

    async def publish(self, payload: dict) -> PublishResult:
        if self.offline:
            self.channel.record_skip("offline")
            return PublishResult(ok=False, skipped=True, reason="offline")
        if not self.topic:
            self.channel.record_skip("no_topic")
            return PublishResult(ok=False, skipped=True, reason="no_topic")

        outcome = await self.channel.run(self._send(payload))
        if not outcome.ok:
            return PublishResult(ok=False, reason=outcome.error)
        logger.debug(f"[PUBSUB] Job for event {payload.get('event', {}).get('id')} → message {outcome.value}")
        return PublishResult(ok=True, message_id=outcome.value)

    async def close(self):
        if self._client is not None:
            await asyncio.to_thread(self._client.stop)
