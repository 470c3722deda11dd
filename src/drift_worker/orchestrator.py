"""Drift analysis orchestration for one request.

For each resolved pipeline, strictly in order:
1. Resolve source-control and cloud credentials (skip pipeline if missing)
2. Scan the pipeline definition for declared resources
3. Read the live inventory of the pipeline's resource group
4. Diff expected against actual and persist the findings
5. Record the scan run and the pipeline's last-scan metadata

One pipeline's failure never aborts the batch. The request-level status is
always left terminal (completed or failed) unless the run is cancelled, in
which case the message is left for redelivery.

Cancellation is checked between pipelines and around every external call.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Protocol, TypeVar

from .diff_engine import DiffStrategy
from .models import (
    NO_RISK,
    ActualResource,
    AnalysisCompletedEvent,
    AnalysisFailedEvent,
    AnalysisRequest,
    AnalysisState,
    AnalysisSummary,
    CloudCredentials,
    DriftFinding,
    PipelineRecord,
    PipelineScanResult,
    ProgressEvent,
    ScanRun,
    ScanStatus,
    max_severity,
)
from .notifications import ProgressSink
from .secret_store import SecretStore, resolve_pipeline_credentials
from .status import advance_status
from .storage import FindingStore, PipelineStore, ScanRunStore, StatusTracker

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Progress stages and their percentages
STAGE_SCANNING = ("scanning_pipeline", 10)
STAGE_FETCHING = ("fetching_resources", 40)
STAGE_ANALYZING = ("analyzing", 70)
STAGE_COMPLETED = ("completed", 100)

CANCELLED_MESSAGE = "cancelled"


class PipelineScanner(Protocol):
    async def scan_pipeline(
        self, organization_url: str, project: str, definition_id: str, token: str
    ) -> PipelineScanResult: ...


class ResourceReader(Protocol):
    async def get_resources(
        self,
        subscription_id: str | None,
        resource_group: str | None,
        credentials: CloudCredentials,
    ) -> list[ActualResource]: ...


@dataclass
class AnalysisOutcome:
    """Result of one handled request.

    Attributes:
        correlation_id: Request identifier
        finding_count: Findings across all pipelines
        overall_risk: Highest severity seen, or NONE
        pipelines_analyzed: Pipelines that finished successfully
        pipelines_skipped: Pipelines skipped for missing credentials
        pipelines_failed: Pipelines whose ScanRun was finalized Failed
        duration_seconds: Wall-clock time for the request
    """

    correlation_id: str
    finding_count: int = 0
    overall_risk: str = NO_RISK
    pipelines_analyzed: int = 0
    pipelines_skipped: int = 0
    pipelines_failed: int = 0
    duration_seconds: float = 0.0


def _raise_if_cancelled(cancel: asyncio.Event) -> None:
    if cancel.is_set():
        raise asyncio.CancelledError(CANCELLED_MESSAGE)


async def guarded(cancel: asyncio.Event, awaitable: Awaitable[T]) -> T:
    """Await an external call, abandoning it as soon as ``cancel`` is set.

    Raises:
        asyncio.CancelledError: If cancellation was requested before, during
            or right after the call.
    """
    if cancel.is_set():
        if asyncio.iscoroutine(awaitable):
            awaitable.close()
        raise asyncio.CancelledError(CANCELLED_MESSAGE)
    task = asyncio.ensure_future(awaitable)
    waiter = asyncio.ensure_future(cancel.wait())
    try:
        await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
    except asyncio.CancelledError:
        task.cancel()
        raise
    finally:
        waiter.cancel()

    if not task.done():
        task.cancel()
        raise asyncio.CancelledError(CANCELLED_MESSAGE)
    result = task.result()
    _raise_if_cancelled(cancel)
    return result


class AnalysisOrchestrator:
    """Runs one AnalysisRequest end to end."""

    def __init__(
        self,
        *,
        pipelines: PipelineStore,
        findings: FindingStore,
        scan_runs: ScanRunStore,
        status: StatusTracker,
        secrets: SecretStore,
        scanner: PipelineScanner,
        reader: ResourceReader,
        diff: DiffStrategy,
    ) -> None:
        self._pipelines = pipelines
        self._findings = findings
        self._scan_runs = scan_runs
        self._status = status
        self._secrets = secrets
        self._scanner = scanner
        self._reader = reader
        self._diff = diff

    async def handle(
        self,
        request: AnalysisRequest,
        progress: ProgressSink,
        cancel: asyncio.Event,
    ) -> AnalysisOutcome:
        """Analyse every pipeline targeted by ``request``.

        Args:
            request: The analysis request.
            progress: Non-blocking sink for progress and terminal events.
            cancel: Set when the host is shutting down.

        Returns:
            Aggregated outcome.

        Raises:
            asyncio.CancelledError: If cancelled; status is left as is.
            Exception: Any infrastructure failure, after the status has been
                marked failed and a failure event reported.
        """
        start_time = time.monotonic()
        outcome = AnalysisOutcome(correlation_id=request.correlation_id)

        logger.info(
            "Starting drift analysis",
            extra={
                "correlation_id": request.correlation_id,
                "tenant_id": request.tenant_id,
                "trigger_type": request.trigger_type.value,
                "pipeline_id": request.pipeline_id,
            },
        )

        try:
            await guarded(
                cancel,
                advance_status(
                    self._status,
                    request.correlation_id,
                    request.tenant_id,
                    AnalysisState.PROCESSING,
                    pipeline_id=request.pipeline_id,
                    initiated_by=request.initiated_by,
                ),
            )

            targets = await guarded(cancel, self.resolve_pipelines(request))
            if not targets:
                logger.info(
                    "No pipelines to analyse",
                    extra={"correlation_id": request.correlation_id, "tenant_id": request.tenant_id},
                )

            all_findings: list[DriftFinding] = []
            for pipeline in targets:
                _raise_if_cancelled(cancel)
                findings = await self._analyze_pipeline(request, pipeline, progress, cancel, outcome)
                if findings is not None:
                    all_findings.extend(findings)

            outcome.finding_count = len(all_findings)
            outcome.overall_risk = max_severity(all_findings)
            outcome.duration_seconds = round(time.monotonic() - start_time, 3)

            await guarded(
                cancel,
                advance_status(
                    self._status,
                    request.correlation_id,
                    request.tenant_id,
                    AnalysisState.COMPLETED,
                    finding_count=outcome.finding_count,
                    overall_risk=outcome.overall_risk,
                ),
            )
            progress.report(
                AnalysisCompletedEvent(
                    correlation_id=request.correlation_id,
                    tenant_id=request.tenant_id,
                    summary=AnalysisSummary.from_findings(
                        all_findings,
                        pipelines_analyzed=outcome.pipelines_analyzed,
                        duration_seconds=outcome.duration_seconds,
                    ),
                    send_notification=request.send_notification,
                )
            )

        except asyncio.CancelledError:
            logger.warning(
                "Drift analysis cancelled",
                extra={"correlation_id": request.correlation_id},
            )
            raise

        except Exception as e:
            logger.exception(
                "Drift analysis failed",
                extra={"correlation_id": request.correlation_id, "error": str(e)},
            )
            await self._record_failure(request, str(e) or type(e).__name__)
            progress.report(
                AnalysisFailedEvent(
                    correlation_id=request.correlation_id,
                    tenant_id=request.tenant_id,
                    pipeline_id=request.pipeline_id or "",
                    error=str(e) or type(e).__name__,
                )
            )
            raise

        logger.info(
            "Drift analysis completed",
            extra={
                "correlation_id": request.correlation_id,
                "finding_count": outcome.finding_count,
                "overall_risk": outcome.overall_risk,
                "pipelines_analyzed": outcome.pipelines_analyzed,
                "pipelines_skipped": outcome.pipelines_skipped,
                "pipelines_failed": outcome.pipelines_failed,
                "duration_seconds": outcome.duration_seconds,
            },
        )
        return outcome

    async def resolve_pipelines(self, request: AnalysisRequest) -> list[PipelineRecord]:
        """Resolve the pipelines a request targets.

        - pipeline and organization given: exactly that pipeline
        - pipeline only: looked up by id across tenants
        - neither: all active pipelines, filtered to the tenant if given
        """
        if request.pipeline_id and request.organization_id:
            pipeline = await self._pipelines.get(request.organization_id, request.pipeline_id)
            return [pipeline] if pipeline else []
        if request.pipeline_id:
            pipeline = await self._pipelines.get_by_id(request.pipeline_id)
            return [pipeline] if pipeline else []
        return await self._pipelines.list_active(request.tenant_id or None)

    async def _analyze_pipeline(
        self,
        request: AnalysisRequest,
        pipeline: PipelineRecord,
        progress: ProgressSink,
        cancel: asyncio.Event,
        outcome: AnalysisOutcome,
    ) -> list[DriftFinding] | None:
        """Analyse one pipeline. Returns None when skipped or failed."""
        tenant_id = pipeline.tenant_id or request.tenant_id
        context = {
            "correlation_id": request.correlation_id,
            "pipeline_id": pipeline.pipeline_id,
            "tenant_id": tenant_id,
        }

        def report(stage: tuple[str, int], message: str) -> None:
            name, percent = stage
            progress.report(
                ProgressEvent(
                    correlation_id=request.correlation_id,
                    tenant_id=request.tenant_id or pipeline.tenant_id,
                    pipeline_id=pipeline.pipeline_id,
                    pipeline_name=pipeline.pipeline_name,
                    stage=name,
                    percent=percent,
                    message=message,
                )
            )

        report(STAGE_SCANNING, f"Scanning pipeline {pipeline.pipeline_name}")

        # Only set once the Running row has been written
        run: ScanRun | None = None
        try:
            credentials = await guarded(
                cancel, resolve_pipeline_credentials(self._secrets, tenant_id)
            )
            if credentials is None:
                logger.warning("Skipping pipeline: credentials not configured", extra=context)
                outcome.pipelines_skipped += 1
                return None

            started = ScanRun(
                pipeline_id=pipeline.pipeline_id,
                pipeline_name=pipeline.pipeline_name,
                tenant_id=tenant_id,
                correlation_id=request.correlation_id,
            )
            await guarded(cancel, self._scan_runs.save_scan_run(started))
            run = started

            scan = await guarded(
                cancel,
                self._scanner.scan_pipeline(
                    pipeline.organization_url,
                    pipeline.project_name,
                    pipeline.definition_id,
                    credentials.devops_token,
                ),
            )
            if not scan.success:
                logger.warning(
                    "Pipeline scan failed",
                    extra={**context, "error": scan.error_message},
                )
                await self._scan_runs.save_scan_run(
                    started.finalize(ScanStatus.FAILED, error_message=scan.error_message)
                )
                outcome.pipelines_failed += 1
                return None

            expected = scan.expected_resources
            report(STAGE_FETCHING, f"Found {len(expected)} declared resources")

            actual = await guarded(
                cancel,
                self._reader.get_resources(
                    pipeline.subscription_id, pipeline.resource_group, credentials.cloud
                ),
            )
            report(STAGE_ANALYZING, f"Comparing {len(expected)} declared with {len(actual)} live resources")

            findings = await guarded(cancel, self._diff.compare(expected, actual))

            for finding in findings:
                await guarded(
                    cancel,
                    self._findings.save_finding(
                        finding,
                        correlation_id=request.correlation_id,
                        pipeline_id=pipeline.pipeline_id,
                        tenant_id=tenant_id,
                    ),
                )

            await guarded(
                cancel,
                self._pipelines.save(
                    pipeline.model_copy(
                        update={
                            "pipeline_name": scan.pipeline_name or pipeline.pipeline_name,
                            "last_scan_at": datetime.now(UTC),
                            "drift_count": len(findings),
                        }
                    )
                ),
            )
            await guarded(
                cancel,
                self._scan_runs.save_scan_run(
                    started.finalize(
                        ScanStatus.SUCCESS,
                        finding_count=len(findings),
                        resources_scanned=len(actual),
                    )
                ),
            )

        except asyncio.CancelledError:
            if run is not None:
                await self._finalize_cancelled(run)
            raise

        except Exception as e:
            logger.exception("Pipeline analysis failed", extra={**context, "error": str(e)})
            if run is not None:
                await self._scan_runs.save_scan_run(
                    run.finalize(ScanStatus.FAILED, error_message=str(e) or type(e).__name__)
                )
            outcome.pipelines_failed += 1
            return None

        report(STAGE_COMPLETED, f"Found {len(findings)} drift items")
        outcome.pipelines_analyzed += 1
        logger.info(
            "Pipeline analysed",
            extra={**context, "finding_count": len(findings), "resources_scanned": len(actual)},
        )
        return findings

    async def _finalize_cancelled(self, run: ScanRun) -> None:
        """Best-effort close of an in-flight scan run on cancellation."""
        try:
            await self._scan_runs.save_scan_run(
                run.finalize(ScanStatus.FAILED, error_message=CANCELLED_MESSAGE)
            )
        except Exception as e:
            logger.warning(
                "Could not finalize cancelled scan run",
                extra={"run_id": run.run_id, "error": str(e)},
            )

    async def _record_failure(self, request: AnalysisRequest, message: str) -> None:
        """Mark the request failed before the consumer decides retry vs dead-letter."""
        try:
            await advance_status(
                self._status,
                request.correlation_id,
                request.tenant_id,
                AnalysisState.FAILED,
                error_message=message,
            )
        except Exception as e:
            logger.error(
                "Could not record failed status",
                extra={"correlation_id": request.correlation_id, "error": str(e)},
            )
