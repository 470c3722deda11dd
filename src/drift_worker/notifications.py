"""Progress and completion notifications.

The orchestrator never awaits a notification. It pushes events onto a
ProgressChannel, and a separate task drains the channel and publishes each
event to the requesting tenant's group on the pub/sub hub. Publishing is
best-effort: failures are logged and the event is dropped.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Protocol

from azure.core.credentials_async import AsyncTokenCredential
from azure.messaging.webpubsubservice.aio import WebPubSubServiceClient

from .config import PROGRESS_QUEUE_MAX_SIZE
from .models import AnalysisCompletedEvent, AnalysisFailedEvent, ProgressEvent

logger = logging.getLogger(__name__)

AnalysisEvent = ProgressEvent | AnalysisCompletedEvent | AnalysisFailedEvent

# Hub event names by event type
EVENT_NAMES: dict[str, str] = {
    "analysis_progress": "analysisProgress",
    "analysis_completed": "analysisCompleted",
    "analysis_failed": "analysisFailed",
}


def tenant_group(tenant_id: str) -> str:
    return f"tenant-{tenant_id}"


class Notifier(Protocol):
    """Pub/sub fan-out scoped to a tenant."""

    async def publish_to_tenant(
        self, tenant_id: str, event_name: str, payload: dict[str, Any]
    ) -> None: ...


class ProgressSink(Protocol):
    """Where the orchestrator reports events. Must not block."""

    def report(self, event: AnalysisEvent) -> None: ...


class WebPubSubNotifier:
    """Notifier backed by Azure Web PubSub groups (``tenant-{id}``)."""

    def __init__(self, endpoint: str, hub: str, credential: AsyncTokenCredential) -> None:
        self._client = WebPubSubServiceClient(endpoint=endpoint, hub=hub, credential=credential)

    async def publish_to_tenant(
        self, tenant_id: str, event_name: str, payload: dict[str, Any]
    ) -> None:
        await self._client.send_to_group(
            tenant_group(tenant_id),
            message={"event": event_name, "data": payload},
            content_type="application/json",
        )

    async def close(self) -> None:
        await self._client.close()


class LoggingNotifier:
    """Notifier used when no hub is configured: events only reach the log."""

    async def publish_to_tenant(
        self, tenant_id: str, event_name: str, payload: dict[str, Any]
    ) -> None:
        logger.info(
            "Notification",
            extra={
                "group": tenant_group(tenant_id),
                "event_name": event_name,
                "correlation_id": payload.get("correlationId"),
            },
        )


class ProgressChannel:
    """Bounded event queue between analysis and notification publishing."""

    def __init__(self, notifier: Notifier, max_size: int = PROGRESS_QUEUE_MAX_SIZE) -> None:
        self._notifier = notifier
        self._queue: asyncio.Queue[AnalysisEvent] = asyncio.Queue(maxsize=max_size)
        self._dropped = 0

    @property
    def dropped(self) -> int:
        """Events dropped because the queue was full."""
        return self._dropped

    @property
    def pending(self) -> int:
        """Number of queued, unpublished events."""
        return self._queue.qsize()

    def report(self, event: AnalysisEvent) -> None:
        """Enqueue an event without waiting. A full queue drops the event."""
        try:
            self._queue.put_nowait(event)
        except asyncio.QueueFull:
            self._dropped += 1
            logger.warning(
                "Progress queue full, dropping event",
                extra={"correlation_id": event.correlation_id, "event_type": event.type},
            )

    async def run(self) -> None:
        """Publish events until cancelled."""
        while True:
            event = await self._queue.get()
            try:
                await self._publish(event)
            finally:
                self._queue.task_done()

    async def drain(self) -> None:
        """Publish whatever is still queued (used at shutdown)."""
        while not self._queue.empty():
            event = self._queue.get_nowait()
            try:
                await self._publish(event)
            finally:
                self._queue.task_done()

    async def _publish(self, event: AnalysisEvent) -> None:
        event_name = EVENT_NAMES[event.type]
        if not event.tenant_id:
            # Tenant-wide scheduled runs have no audience
            logger.debug(
                "Skipping notification without tenant",
                extra={"correlation_id": event.correlation_id, "event_name": event_name},
            )
            return
        try:
            await self._notifier.publish_to_tenant(event.tenant_id, event_name, event.to_wire())
        except Exception as e:
            # Best-effort: a lost notification never affects the analysis
            logger.warning(
                "Failed to publish notification",
                extra={
                    "correlation_id": event.correlation_id,
                    "event_name": event_name,
                    "error": str(e),
                    "error_type": type(e).__name__,
                },
            )
