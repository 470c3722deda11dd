"""Persistence for pipelines, findings, scan runs and analysis status.

All records live in Azure Table Storage:

| Table          | PartitionKey         | RowKey                        |
|----------------|----------------------|-------------------------------|
| Pipelines      | organization id      | pipeline id                   |
| DriftRecords   | detected date (Ymd)  | hash of the finding identity  |
| ScanLogs       | started date (Ymd)   | run id                        |
| AnalysisStatus | "analysis"           | correlation id                |

Finding row keys are derived from correlation, pipeline, resource and
property, so a redelivered request overwrites its earlier findings instead of
duplicating them.
"""

from __future__ import annotations

import hashlib
import logging
from datetime import datetime
from enum import Enum
from typing import Any, Protocol

from azure.core.credentials_async import AsyncTokenCredential
from azure.core.exceptions import ResourceExistsError, ResourceNotFoundError
from azure.data.tables import UpdateMode
from azure.data.tables.aio import TableServiceClient

from .models import AnalysisStatus, DriftFinding, PipelineRecord, ScanRun

logger = logging.getLogger(__name__)

PIPELINES_TABLE = "Pipelines"
FINDINGS_TABLE = "DriftRecords"
SCAN_LOGS_TABLE = "ScanLogs"
STATUS_TABLE = "AnalysisStatus"

STATUS_PARTITION = "analysis"
FINDING_STATUS_NEW = "new"

# Entity fields that belong to the table, not the model
_SYSTEM_FIELDS = frozenset({"PartitionKey", "RowKey", "Timestamp", "etag"})


class PipelineStore(Protocol):
    async def get(self, organization_id: str, pipeline_id: str) -> PipelineRecord | None: ...

    async def get_by_id(self, pipeline_id: str) -> PipelineRecord | None: ...

    async def list_active(self, tenant_id: str | None = None) -> list[PipelineRecord]: ...

    async def save(self, pipeline: PipelineRecord) -> None: ...


class FindingStore(Protocol):
    async def save_finding(
        self,
        finding: DriftFinding,
        *,
        correlation_id: str,
        pipeline_id: str,
        tenant_id: str,
    ) -> None: ...


class ScanRunStore(Protocol):
    async def save_scan_run(self, run: ScanRun) -> None: ...


class StatusTracker(Protocol):
    """Per-request status records keyed by correlation id."""

    async def get(self, correlation_id: str) -> AnalysisStatus | None: ...

    async def save(self, status: AnalysisStatus) -> None: ...


# =============================================================================
# Entity mapping
# =============================================================================


def _pascal(name: str) -> str:
    return "".join(part.capitalize() for part in name.split("_"))


def _snake(name: str) -> str:
    chars = []
    for i, ch in enumerate(name):
        if ch.isupper() and i:
            chars.append("_")
        chars.append(ch.lower())
    return "".join(chars)


def to_entity(data: dict[str, Any], partition_key: str, row_key: str) -> dict[str, Any]:
    """Convert model fields to a table entity (PascalCase, no None values)."""
    entity: dict[str, Any] = {"PartitionKey": partition_key, "RowKey": row_key}
    for key, value in data.items():
        if value is None:
            continue
        if isinstance(value, Enum):
            value = value.value
        entity[_pascal(key)] = value
    return entity


def from_entity(entity: dict[str, Any]) -> dict[str, Any]:
    """Convert a table entity back to model field names."""
    return {_snake(k): v for k, v in entity.items() if k not in _SYSTEM_FIELDS}


def date_partition(moment: datetime) -> str:
    return moment.strftime("%Y%m%d")


def finding_row_key(
    correlation_id: str, pipeline_id: str, resource_id: str, property_name: str
) -> str:
    """Stable row key for a finding within one analysis request."""
    identity = "|".join((correlation_id, pipeline_id, resource_id.lower(), property_name.lower()))
    return hashlib.sha256(identity.encode("utf-8")).hexdigest()


# =============================================================================
# Azure Table Storage
# =============================================================================


class TableStorage:
    """PipelineStore, FindingStore, ScanRunStore and StatusTracker over Table Storage."""

    def __init__(self, account_url: str, credential: AsyncTokenCredential) -> None:
        self._service = TableServiceClient(endpoint=account_url, credential=credential)
        self._pipelines = self._service.get_table_client(PIPELINES_TABLE)
        self._findings = self._service.get_table_client(FINDINGS_TABLE)
        self._scan_logs = self._service.get_table_client(SCAN_LOGS_TABLE)
        self._status = self._service.get_table_client(STATUS_TABLE)

    async def ensure_tables(self) -> None:
        """Create the worker's tables if they do not exist yet."""
        for name in (PIPELINES_TABLE, FINDINGS_TABLE, SCAN_LOGS_TABLE, STATUS_TABLE):
            try:
                await self._service.create_table(name)
                logger.info("Created table", extra={"table": name})
            except ResourceExistsError:
                pass

    async def close(self) -> None:
        for table in (self._pipelines, self._findings, self._scan_logs, self._status):
            await table.close()
        await self._service.close()

    # -- pipelines ------------------------------------------------------------

    @staticmethod
    def _to_pipeline(entity: dict[str, Any]) -> PipelineRecord:
        fields = from_entity(entity)
        # Older rows keep the build definition id in a PipelineId column
        fields["definition_id"] = str(
            fields.get("definition_id") or fields.get("pipeline_id") or entity["RowKey"]
        )
        fields["organization_id"] = entity["PartitionKey"]
        fields["pipeline_id"] = entity["RowKey"]
        return PipelineRecord.model_validate(fields)

    async def get(self, organization_id: str, pipeline_id: str) -> PipelineRecord | None:
        try:
            entity = await self._pipelines.get_entity(organization_id, pipeline_id)
        except ResourceNotFoundError:
            return None
        return self._to_pipeline(entity)

    async def get_by_id(self, pipeline_id: str) -> PipelineRecord | None:
        """Look a pipeline up by id across organizations and tenants."""
        async for entity in self._pipelines.query_entities(
            "RowKey eq @pipeline_id", parameters={"pipeline_id": pipeline_id}
        ):
            return self._to_pipeline(entity)
        return None

    async def list_active(self, tenant_id: str | None = None) -> list[PipelineRecord]:
        query = "IsActive eq true"
        parameters: dict[str, Any] = {}
        if tenant_id:
            query += " and TenantId eq @tenant_id"
            parameters["tenant_id"] = tenant_id

        pipelines = [
            self._to_pipeline(entity)
            async for entity in self._pipelines.query_entities(query, parameters=parameters)
        ]
        pipelines.sort(key=lambda p: (p.organization_id, p.pipeline_id))
        return pipelines

    async def save(self, pipeline: PipelineRecord) -> None:
        data = pipeline.model_dump(exclude={"organization_id", "pipeline_id"})
        await self._pipelines.upsert_entity(
            to_entity(data, pipeline.organization_id, pipeline.pipeline_id),
            mode=UpdateMode.MERGE,
        )

    # -- findings and scan runs ----------------------------------------------

    async def save_finding(
        self,
        finding: DriftFinding,
        *,
        correlation_id: str,
        pipeline_id: str,
        tenant_id: str,
    ) -> None:
        entity = to_entity(
            {
                **finding.model_dump(),
                "correlation_id": correlation_id,
                "pipeline_id": pipeline_id,
                "tenant_id": tenant_id,
                "status": FINDING_STATUS_NEW,
            },
            date_partition(finding.detected_at),
            finding_row_key(correlation_id, pipeline_id, finding.resource_id, finding.property),
        )
        await self._findings.upsert_entity(entity, mode=UpdateMode.REPLACE)

    async def save_scan_run(self, run: ScanRun) -> None:
        await self._scan_logs.upsert_entity(
            to_entity(run.model_dump(), date_partition(run.started_at), run.run_id),
            mode=UpdateMode.REPLACE,
        )

    # -- analysis status ------------------------------------------------------

    async def get_status(self, correlation_id: str) -> AnalysisStatus | None:
        try:
            entity = await self._status.get_entity(STATUS_PARTITION, correlation_id)
        except ResourceNotFoundError:
            return None
        fields = from_entity(entity)
        fields["correlation_id"] = entity["RowKey"]
        return AnalysisStatus.model_validate(fields)

    async def save_status(self, status: AnalysisStatus) -> None:
        await self._status.upsert_entity(
            to_entity(status.model_dump(), STATUS_PARTITION, status.correlation_id),
            mode=UpdateMode.REPLACE,
        )

    @property
    def status_tracker(self) -> StatusTracker:
        return _TableStatusTracker(self)


class _TableStatusTracker:
    """StatusTracker view of TableStorage (``get``/``save`` clash with pipelines)."""

    def __init__(self, storage: TableStorage) -> None:
        self._storage = storage

    async def get(self, correlation_id: str) -> AnalysisStatus | None:
        return await self._storage.get_status(correlation_id)

    async def save(self, status: AnalysisStatus) -> None:
        await self._storage.save_status(status)
