"""Tests for progress publishing."""

from __future__ import annotations

import asyncio
import contextlib
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from azure_mock import RecordingNotifier

from drift_worker.models import AnalysisCompletedEvent, AnalysisFailedEvent, ProgressEvent
from drift_worker.notifications import ProgressChannel, WebPubSubNotifier, tenant_group


def progress_event(tenant_id: str = "tenant-a", percent: int = 10) -> ProgressEvent:
    return ProgressEvent(
        correlation_id="c-1",
        tenant_id=tenant_id,
        pipeline_id="42",
        stage="scanning_pipeline",
        percent=percent,
    )


class TestProgressChannel:
    """Tests for ProgressChannel."""

    @pytest.mark.asyncio
    async def test_events_published_to_tenant_group(self) -> None:
        """Test that events reach the notifier with hub event names."""
        notifier = RecordingNotifier()
        channel = ProgressChannel(notifier)

        channel.report(progress_event())
        channel.report(AnalysisCompletedEvent(correlation_id="c-1", tenant_id="tenant-a"))
        channel.report(AnalysisFailedEvent(correlation_id="c-2", tenant_id="tenant-a", error="x"))
        await channel.drain()

        assert [m.event_name for m in notifier.published] == [
            "analysisProgress",
            "analysisCompleted",
            "analysisFailed",
        ]
        assert notifier.published[0].tenant_id == "tenant-a"
        assert notifier.published[0].payload["correlationId"] == "c-1"
        assert notifier.published[0].payload["percent"] == 10

    @pytest.mark.asyncio
    async def test_report_never_blocks(self) -> None:
        """Test that a full queue drops events instead of waiting."""
        channel = ProgressChannel(RecordingNotifier(), max_size=2)

        for _ in range(5):
            channel.report(progress_event())

        assert channel.pending == 2
        assert channel.dropped == 3

    @pytest.mark.asyncio
    async def test_publish_failure_is_swallowed(self) -> None:
        """Test that a hub outage never propagates."""
        notifier = RecordingNotifier()
        notifier.set_should_fail(True)
        channel = ProgressChannel(notifier)

        channel.report(progress_event())
        await channel.drain()

        assert notifier.published == []
        assert channel.pending == 0

    @pytest.mark.asyncio
    async def test_event_without_tenant_skipped(self) -> None:
        """Test that tenant-less events have no audience."""
        notifier = RecordingNotifier()
        channel = ProgressChannel(notifier)

        channel.report(progress_event(tenant_id=""))
        await channel.drain()

        assert notifier.published == []

    @pytest.mark.asyncio
    async def test_run_publishes_in_background(self) -> None:
        """Test the background publisher loop."""
        notifier = RecordingNotifier()
        channel = ProgressChannel(notifier)
        task = asyncio.create_task(channel.run())

        channel.report(progress_event(percent=10))
        channel.report(progress_event(percent=40))
        for _ in range(20):
            if len(notifier.published) == 2:
                break
            await asyncio.sleep(0.01)

        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task

        assert [m.payload["percent"] for m in notifier.published] == [10, 40]


class TestWebPubSubNotifier:
    """Tests for the Web PubSub notifier."""

    @pytest.mark.asyncio
    async def test_send_to_group(self) -> None:
        """Test that events go to the tenant's group as JSON."""
        client = MagicMock()
        client.send_to_group = AsyncMock()
        client.close = AsyncMock()

        with patch("drift_worker.notifications.WebPubSubServiceClient", return_value=client):
            notifier = WebPubSubNotifier("https://drift.webpubsub.azure.com", "drift", MagicMock())
            await notifier.publish_to_tenant("tenant-a", "analysisProgress", {"percent": 10})
            await notifier.close()

        client.send_to_group.assert_awaited_once_with(
            "tenant-tenant-a",
            message={"event": "analysisProgress", "data": {"percent": 10}},
            content_type="application/json",
        )
        client.close.assert_awaited_once()

    def test_tenant_group_name(self) -> None:
        """Test group naming."""
        assert tenant_group("abc") == "tenant-abc"
