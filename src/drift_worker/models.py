"""Pydantic models for analysis requests, resources and findings.

These models provide:
1. Type-safe parsing of queue messages (camelCase wire format)
2. Validation at the boundary (fail fast, fail loudly)
3. Stable shapes for persistence and notification payloads
"""

from __future__ import annotations

import uuid
from collections.abc import Iterable
from datetime import UTC, datetime
from enum import Enum
from typing import Annotated, Any, Literal

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

# Risk value used when a batch produced no findings
NO_RISK = "NONE"


def _utcnow() -> datetime:
    return datetime.now(UTC)


class MessageDecodeError(Exception):
    """Raised when a queue message body is not a valid analysis request."""

    pass


class WireModel(BaseModel):
    """Base for models exchanged with other services (camelCase on the wire)."""

    model_config = ConfigDict(
        extra="ignore",
        populate_by_name=True,
        alias_generator=lambda name: "".join(
            part if i == 0 else part.capitalize() for i, part in enumerate(name.split("_"))
        ),
    )

    def to_wire(self) -> dict[str, Any]:
        """Serialize with camelCase keys and ISO timestamps."""
        return self.model_dump(mode="json", by_alias=True)


# =============================================================================
# Classification
# =============================================================================


class Severity(str, Enum):
    """Drift finding severity, ordered by weight."""

    LOW = "Low"
    MEDIUM = "Medium"
    HIGH = "High"
    CRITICAL = "Critical"

    @property
    def weight(self) -> int:
        return _SEVERITY_WEIGHTS[self]

    @classmethod
    def parse(cls, value: str | None, default: Severity | None = None) -> Severity:
        """Parse a severity leniently ("CRITICAL", "critical", "Info")."""
        normalized = (value or "").strip().lower()
        if normalized == "info":
            return cls.LOW
        for member in cls:
            if member.value.lower() == normalized:
                return member
        return default or cls.MEDIUM


_SEVERITY_WEIGHTS: dict[Severity, int] = {
    Severity.LOW: 1,
    Severity.MEDIUM: 2,
    Severity.HIGH: 3,
    Severity.CRITICAL: 4,
}


class Category(str, Enum):
    """Drift finding category."""

    SECURITY = "security"
    COST = "cost"
    PERFORMANCE = "performance"
    COMPLIANCE = "compliance"
    CONFIGURATION = "configuration"

    @classmethod
    def parse(cls, value: str | None) -> Category:
        normalized = (value or "").strip().lower()
        for member in cls:
            if member.value == normalized:
                return member
        return cls.CONFIGURATION


# =============================================================================
# Analysis Request (queue message)
# =============================================================================


class TriggerType(str, Enum):
    """What caused an analysis request."""

    SCHEDULED = "Scheduled"
    AD_HOC = "AdHoc"
    RETRY = "Retry"


class Priority(str, Enum):
    """Request priority."""

    HIGH = "High"
    NORMAL = "Normal"


class AnalysisRequest(WireModel):
    """A drift analysis request as delivered on the queue.

    Immutable. Delivery may repeat, so everything downstream keyed by
    ``correlation_id`` must tolerate being processed more than once.
    """

    model_config = ConfigDict(frozen=True)

    correlation_id: Annotated[str, Field(min_length=1, max_length=128)]
    trigger_type: TriggerType = TriggerType.SCHEDULED
    pipeline_id: str | None = None
    organization_id: str | None = None
    tenant_id: str = ""
    initiated_by: str | None = None
    priority: Priority = Priority.NORMAL
    send_notification: bool = True
    created_at: datetime = Field(default_factory=_utcnow)
    callback_url: str | None = None

    @field_validator("pipeline_id", "organization_id", "initiated_by", "callback_url")
    @classmethod
    def empty_to_none(cls, v: str | None) -> str | None:
        return v or None

    @field_validator("trigger_type", mode="before")
    @classmethod
    def parse_trigger_type(cls, v: Any) -> Any:
        if isinstance(v, str):
            for member in TriggerType:
                if member.value.lower() == v.lower():
                    return member
        return v

    @field_validator("priority", mode="before")
    @classmethod
    def parse_priority(cls, v: Any) -> Any:
        if isinstance(v, str):
            return Priority.HIGH if v.lower() == "high" else Priority.NORMAL
        return v

    @classmethod
    def from_message(cls, body: str | bytes) -> AnalysisRequest:
        """Parse a queue message body.

        Raises:
            MessageDecodeError: If the body is not valid JSON or fails validation.
        """
        try:
            return cls.model_validate_json(body)
        except ValidationError as e:
            raise MessageDecodeError(f"Invalid analysis request: {e.error_count()} error(s)") from e


# =============================================================================
# Resources
# =============================================================================


class ExpectedResource(BaseModel):
    """A resource declared by infrastructure-as-code. Ephemeral, never persisted."""

    model_config = ConfigDict(frozen=True)

    type: str
    name: str
    declared_properties: dict[str, str] = Field(default_factory=dict)


class ActualResource(BaseModel):
    """A live cloud resource as read from the inventory."""

    model_config = ConfigDict(frozen=True)

    resource_id: str
    type: str
    name: str
    resource_group: str = ""
    subscription_id: str = ""
    location: str = ""
    tags: dict[str, str] = Field(default_factory=dict)
    properties: dict[str, str] = Field(default_factory=dict)


class InfrastructureKind(str, Enum):
    """Infrastructure-as-code flavours referenced by pipelines."""

    ARM = "ARM"
    BICEP = "Bicep"
    TERRAFORM = "Terraform"


class InfrastructureDefinition(BaseModel):
    """An IaC file referenced by a pipeline definition."""

    kind: InfrastructureKind
    file_path: str
    content: str = ""
    resources: list[ExpectedResource] = Field(default_factory=list)


class PipelineScanResult(BaseModel):
    """Outcome of scanning one pipeline definition."""

    success: bool = False
    pipeline_id: str = ""
    pipeline_name: str = ""
    yaml_content: str = ""
    definitions: list[InfrastructureDefinition] = Field(default_factory=list)
    error_message: str | None = None

    @property
    def expected_resources(self) -> list[ExpectedResource]:
        return [r for d in self.definitions for r in d.resources]


class CloudCredentials(BaseModel):
    """Delegated credentials for reading a tenant's cloud inventory."""

    model_config = ConfigDict(frozen=True)

    tenant_id: str
    client_id: str
    client_secret: str = Field(repr=False)


# =============================================================================
# Findings
# =============================================================================


class DriftFinding(WireModel):
    """A single discrepancy between declared and live state."""

    model_config = ConfigDict(frozen=True)

    resource_id: str
    resource_type: str
    resource_name: str
    property: str
    expected_value: str = ""
    actual_value: str = ""
    severity: Severity = Severity.MEDIUM
    category: Category = Category.CONFIGURATION
    description: str = ""
    recommendation: str = ""
    detected_at: datetime = Field(default_factory=_utcnow)


def max_severity(findings: Iterable[DriftFinding]) -> str:
    """Highest severity present in ``findings``, or ``NO_RISK``."""
    highest: Severity | None = None
    for finding in findings:
        if highest is None or finding.severity.weight > highest.weight:
            highest = finding.severity
    return highest.value if highest else NO_RISK


# =============================================================================
# Pipelines and Scan Runs
# =============================================================================


class PipelineRecord(WireModel):
    """A registered pipeline, as read from the pipeline registry."""

    organization_id: str
    pipeline_id: str
    organization_url: str
    project_name: str
    pipeline_name: str = ""
    definition_id: str
    tenant_id: str = ""
    is_active: bool = True
    subscription_id: str | None = None
    resource_group: str | None = None
    last_scan_at: datetime | None = None
    drift_count: int = 0


class ScanStatus(str, Enum):
    """Lifecycle of one pipeline scan."""

    RUNNING = "Running"
    SUCCESS = "Success"
    FAILED = "Failed"


class ScanRun(WireModel):
    """One pipeline analysed for one request. Never left Running once finalized."""

    run_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    pipeline_id: str
    pipeline_name: str = ""
    tenant_id: str = ""
    correlation_id: str
    status: ScanStatus = ScanStatus.RUNNING
    started_at: datetime = Field(default_factory=_utcnow)
    completed_at: datetime | None = None
    finding_count: int = 0
    resources_scanned: int = 0
    duration_seconds: float = 0.0
    triggered_by: str = "worker"
    error_message: str | None = None

    def finalize(
        self,
        status: ScanStatus,
        *,
        finding_count: int = 0,
        resources_scanned: int = 0,
        error_message: str | None = None,
    ) -> ScanRun:
        """Return a terminal copy of this run with counts and duration."""
        if status == ScanStatus.RUNNING:
            raise ValueError("A scan run cannot be finalized as Running")
        completed_at = _utcnow()
        return self.model_copy(
            update={
                "status": status,
                "completed_at": completed_at,
                "finding_count": finding_count,
                "resources_scanned": resources_scanned,
                "duration_seconds": round((completed_at - self.started_at).total_seconds(), 3),
                "error_message": error_message,
            }
        )


# =============================================================================
# Analysis Status
# =============================================================================


class AnalysisState(str, Enum):
    """Request-level state seen by polling clients."""

    QUEUED = "queued"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (AnalysisState.COMPLETED, AnalysisState.FAILED)

    def can_transition_to(self, target: AnalysisState) -> bool:
        """Transitions are monotonic: queued -> processing -> {completed|failed}.

        Re-entering the same state is allowed (redelivery), as is a terminal
        write straight from queued. A failed attempt may be picked up again
        by a retry delivery; completed is final.
        """
        if self == target:
            return True
        if self == AnalysisState.FAILED and target == AnalysisState.PROCESSING:
            return True
        return _STATE_ORDER[target] > _STATE_ORDER[self] and not self.is_terminal


_STATE_ORDER: dict[AnalysisState, int] = {
    AnalysisState.QUEUED: 0,
    AnalysisState.PROCESSING: 1,
    AnalysisState.COMPLETED: 2,
    AnalysisState.FAILED: 2,
}


class AnalysisStatus(WireModel):
    """Per-request status record keyed by correlation id."""

    correlation_id: str
    tenant_id: str = ""
    status: AnalysisState = AnalysisState.QUEUED
    pipeline_id: str | None = None
    initiated_by: str | None = None
    created_at: datetime = Field(default_factory=_utcnow)
    started_at: datetime | None = None
    completed_at: datetime | None = None
    duration_seconds: float | None = None
    finding_count: int = 0
    overall_risk: str = NO_RISK
    error_message: str | None = None


# =============================================================================
# Notification Events
# =============================================================================


class ProgressEvent(WireModel):
    """Per-pipeline progress update streamed to the requesting tenant."""

    type: Literal["analysis_progress"] = "analysis_progress"
    correlation_id: str
    tenant_id: str
    pipeline_id: str = ""
    pipeline_name: str = ""
    stage: str
    percent: Annotated[int, Field(ge=0, le=100)]
    message: str = ""
    timestamp: datetime = Field(default_factory=_utcnow)


class AnalysisSummary(WireModel):
    """Totals included in the completion event."""

    total_findings: int = 0
    critical: int = 0
    high: int = 0
    medium: int = 0
    low: int = 0
    overall_risk: str = NO_RISK
    pipelines_analyzed: int = 0
    duration_seconds: int = 0

    @classmethod
    def from_findings(
        cls,
        findings: Iterable[DriftFinding],
        *,
        pipelines_analyzed: int = 0,
        duration_seconds: float = 0.0,
    ) -> AnalysisSummary:
        counts = {s: 0 for s in Severity}
        items = list(findings)
        for finding in items:
            counts[finding.severity] += 1
        return cls(
            total_findings=len(items),
            critical=counts[Severity.CRITICAL],
            high=counts[Severity.HIGH],
            medium=counts[Severity.MEDIUM],
            low=counts[Severity.LOW],
            overall_risk=max_severity(items),
            pipelines_analyzed=pipelines_analyzed,
            duration_seconds=int(duration_seconds),
        )


class AnalysisCompletedEvent(WireModel):
    """Terminal success event."""

    type: Literal["analysis_completed"] = "analysis_completed"
    correlation_id: str
    tenant_id: str
    summary: AnalysisSummary = Field(default_factory=AnalysisSummary)
    send_notification: bool = True
    timestamp: datetime = Field(default_factory=_utcnow)


class AnalysisFailedEvent(WireModel):
    """Terminal failure event."""

    type: Literal["analysis_failed"] = "analysis_failed"
    correlation_id: str
    tenant_id: str
    pipeline_id: str = ""
    pipeline_name: str = ""
    error: str = "Unknown error"
    timestamp: datetime = Field(default_factory=_utcnow)
