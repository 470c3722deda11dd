"""Tests for analysis status transitions."""

from __future__ import annotations

import pytest
from azure_mock import MockStatusTracker

from drift_worker.models import NO_RISK, AnalysisState, AnalysisStatus
from drift_worker.status import advance_status


class TestAdvanceStatus:
    """Tests for advance_status."""

    @pytest.mark.asyncio
    async def test_creates_record_when_missing(self) -> None:
        """Test that a missing queued record is created on first touch."""
        tracker = MockStatusTracker()

        status = await advance_status(
            tracker, "c-1", "tenant-a", AnalysisState.PROCESSING, pipeline_id="42"
        )

        assert status is not None
        assert status.status == AnalysisState.PROCESSING
        assert status.started_at is not None
        assert status.pipeline_id == "42"
        assert tracker.records["c-1"] == status

    @pytest.mark.asyncio
    async def test_completed_sets_terminal_fields(self) -> None:
        """Test that completion records counts, risk and duration."""
        tracker = MockStatusTracker()
        await advance_status(tracker, "c-1", "tenant-a", AnalysisState.PROCESSING)

        status = await advance_status(
            tracker,
            "c-1",
            "tenant-a",
            AnalysisState.COMPLETED,
            finding_count=4,
            overall_risk="High",
        )

        assert status is not None
        assert status.completed_at is not None
        assert status.duration_seconds is not None
        assert status.finding_count == 4
        assert status.overall_risk == "High"
        assert status.started_at == tracker.history[0].started_at

    @pytest.mark.asyncio
    async def test_failed_records_error(self) -> None:
        """Test that failure records the error message."""
        tracker = MockStatusTracker()

        status = await advance_status(
            tracker, "c-1", "tenant-a", AnalysisState.FAILED, error_message="boom"
        )

        assert status is not None
        assert status.status == AnalysisState.FAILED
        assert status.error_message == "boom"
        assert status.overall_risk == NO_RISK

    @pytest.mark.asyncio
    async def test_backwards_transition_refused(self) -> None:
        """Test that a completed request is never reopened."""
        tracker = MockStatusTracker()
        await advance_status(tracker, "c-1", "t", AnalysisState.COMPLETED)

        result = await advance_status(tracker, "c-1", "t", AnalysisState.PROCESSING)

        assert result is None
        assert tracker.records["c-1"].status == AnalysisState.COMPLETED
        assert len(tracker.history) == 1

    @pytest.mark.asyncio
    async def test_retry_after_failure_clears_error(self) -> None:
        """Test that a retried delivery moves failed back to processing."""
        tracker = MockStatusTracker()
        await advance_status(tracker, "c-1", "t", AnalysisState.FAILED, error_message="boom")

        status = await advance_status(tracker, "c-1", "t", AnalysisState.PROCESSING)

        assert status is not None
        assert status.status == AnalysisState.PROCESSING
        assert status.error_message is None

    @pytest.mark.asyncio
    async def test_existing_queued_record_kept(self) -> None:
        """Test that the enqueuer's record fields are preserved."""
        tracker = MockStatusTracker()
        await tracker.save(
            AnalysisStatus(correlation_id="c-1", tenant_id="t", initiated_by="alice")
        )

        status = await advance_status(tracker, "c-1", "t", AnalysisState.PROCESSING)

        assert status is not None
        assert status.initiated_by == "alice"
        assert status.created_at == tracker.history[0].created_at
