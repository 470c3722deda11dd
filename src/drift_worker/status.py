"""Worker-side analysis status transitions.

The status record is created as ``queued`` by whoever enqueued the request
and moved by the worker to ``processing`` and then to ``completed`` or
``failed``. Transitions never go backwards; a redelivered message that finds
a terminal record leaves it alone.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime

from .models import NO_RISK, AnalysisState, AnalysisStatus
from .storage import StatusTracker

logger = logging.getLogger(__name__)


async def advance_status(
    tracker: StatusTracker,
    correlation_id: str,
    tenant_id: str,
    state: AnalysisState,
    *,
    pipeline_id: str | None = None,
    initiated_by: str | None = None,
    finding_count: int = 0,
    overall_risk: str = NO_RISK,
    error_message: str | None = None,
) -> AnalysisStatus | None:
    """Move a request's status forward.

    Args:
        tracker: Status store.
        correlation_id: Request identifier.
        tenant_id: Requesting tenant.
        state: Target state.
        pipeline_id: Pipeline targeted by the request, if any.
        initiated_by: Requesting user, if any.
        finding_count: Total findings (terminal states).
        overall_risk: Highest severity or NONE (terminal states).
        error_message: Failure reason (failed state).

    Returns:
        The saved record, or None when the transition was refused.
    """
    now = datetime.now(UTC)
    current = await tracker.get(correlation_id)
    if current is None:
        # Enqueuer did not create a record; start one so clients can poll
        current = AnalysisStatus(
            correlation_id=correlation_id,
            tenant_id=tenant_id,
            pipeline_id=pipeline_id,
            initiated_by=initiated_by,
            created_at=now,
        )

    if not current.status.can_transition_to(state):
        logger.warning(
            "Refusing backwards status transition",
            extra={
                "correlation_id": correlation_id,
                "current_status": current.status.value,
                "requested_status": state.value,
            },
        )
        return None

    update: dict[str, object] = {"status": state}
    match state:
        case AnalysisState.PROCESSING:
            update.update(started_at=current.started_at or now, error_message=None)
        case AnalysisState.COMPLETED | AnalysisState.FAILED:
            started_at = current.started_at or now
            update.update(
                started_at=started_at,
                completed_at=now,
                duration_seconds=round((now - started_at).total_seconds(), 3),
                finding_count=finding_count,
                overall_risk=overall_risk,
                error_message=error_message,
            )
        case _:
            pass

    status = current.model_copy(update=update)
    await tracker.save(status)

    logger.info(
        "Analysis status updated",
        extra={"correlation_id": correlation_id, "status": state.value},
    )
    return status
