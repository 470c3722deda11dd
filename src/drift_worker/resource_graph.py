"""Azure Resource Graph reader for live resource state.

Fetches the current inventory of a subscription/resource-group pair using a
tenant's delegated credentials, and reduces each resource to an
ActualResource with a flattened property bag.

SECURITY:
- Subscription and resource group are validated before being placed in KQL
- Query results are bounded to prevent OOM
- All queries have timeouts enforced
"""

from __future__ import annotations

import asyncio
import logging
import re
import time
from typing import Any

from azure.core.exceptions import AzureError
from azure.mgmt.resourcegraph import ResourceGraphClient
from azure.mgmt.resourcegraph.models import (
    QueryRequest,
    QueryRequestOptions,
    ResultFormat,
)

from .config import DEFAULT_RESOURCE_QUERY_TIMEOUT_SECONDS, MAX_GRAPH_QUERY_RESULTS
from .models import ActualResource, CloudCredentials
from .property_bag import flatten_properties
from .security import get_tenant_credential

logger = logging.getLogger(__name__)

# Resource Graph caps a single page at 1000 rows
MAX_PAGE_SIZE = 1000

SUBSCRIPTION_ID_PATTERN = re.compile(
    r"^[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{12}$"
)
RESOURCE_GROUP_PATTERN = re.compile(r"^[-\w.()]{0,89}[-\w()]$")

# Top-level resource sections merged into the property bag next to `properties`
MERGED_SECTIONS: tuple[str, ...] = ("sku", "kind", "identity")


class ResourceQueryError(Exception):
    """Raised when the inventory query fails or times out."""

    pass


class ResourceStateReader:
    """Reads live resource state from Azure Resource Graph.

    One Resource Graph client is created per call because every pipeline
    may belong to a different tenant.
    """

    def __init__(self, timeout_seconds: int = DEFAULT_RESOURCE_QUERY_TIMEOUT_SECONDS) -> None:
        self._timeout_seconds = timeout_seconds

    async def get_resources(
        self,
        subscription_id: str | None,
        resource_group: str | None,
        credentials: CloudCredentials,
    ) -> list[ActualResource]:
        """Fetch all resources in a resource group.

        Args:
            subscription_id: Target subscription GUID.
            resource_group: Target resource group name.
            credentials: Delegated tenant credentials.

        Returns:
            Resources in the group, bounded by MAX_GRAPH_QUERY_RESULTS. Empty
            when the pipeline has no subscription or resource group assigned.

        Raises:
            ValueError: If the subscription or resource group is malformed.
            ResourceQueryError: If the query fails or times out.
        """
        if not subscription_id or not resource_group:
            logger.info(
                "Pipeline has no target scope, skipping inventory",
                extra={"subscription_id": subscription_id, "resource_group": resource_group},
            )
            return []

        if not SUBSCRIPTION_ID_PATTERN.match(subscription_id):
            raise ValueError(f"Invalid subscription id: {subscription_id}")
        if not RESOURCE_GROUP_PATTERN.match(resource_group):
            raise ValueError(f"Invalid resource group name: {resource_group}")

        start_time = time.monotonic()
        credential = get_tenant_credential(credentials)
        client = ResourceGraphClient(credential=credential)
        try:
            rows = await self._query_all(client, subscription_id, resource_group)
        finally:
            client.close()
            credential.close()

        resources = [self._to_resource(row) for row in rows]

        logger.info(
            "Resource inventory fetched",
            extra={
                "subscription_id": subscription_id,
                "resource_group": resource_group,
                "resources_found": len(resources),
                "query_time_seconds": round(time.monotonic() - start_time, 2),
            },
        )
        return resources

    @staticmethod
    def build_query(subscription_id: str, resource_group: str) -> str:
        """Build the KQL inventory query for a validated scope."""
        query = f"""
        Resources
        | where subscriptionId == '{subscription_id}' and resourceGroup =~ '{resource_group}'
        | project
            id,
            name,
            type,
            location,
            resourceGroup,
            subscriptionId,
            tags,
            properties,
            sku,
            kind,
            identity
        | order by id asc
        """
        return query.strip()

    async def _query_all(
        self,
        client: ResourceGraphClient,
        subscription_id: str,
        resource_group: str,
    ) -> list[dict[str, Any]]:
        """Page through query results until exhausted or the bound is reached."""
        query = self.build_query(subscription_id, resource_group)
        rows: list[dict[str, Any]] = []
        skip_token: str | None = None

        while len(rows) < MAX_GRAPH_QUERY_RESULTS:
            request = QueryRequest(
                subscriptions=[subscription_id],
                query=query,
                options=QueryRequestOptions(
                    result_format=ResultFormat.OBJECT_ARRAY,
                    top=min(MAX_PAGE_SIZE, MAX_GRAPH_QUERY_RESULTS - len(rows)),
                    skip_token=skip_token,
                ),
            )
            response = await self._execute(client, request)

            page = response.data if isinstance(response.data, list) else []
            rows.extend(page)

            skip_token = response.skip_token if isinstance(response.skip_token, str) else None
            if not skip_token or not page:
                break

        if len(rows) >= MAX_GRAPH_QUERY_RESULTS:
            logger.warning(
                "Resource inventory truncated",
                extra={"limit": MAX_GRAPH_QUERY_RESULTS, "resource_group": resource_group},
            )
        return rows[:MAX_GRAPH_QUERY_RESULTS]

    async def _execute(self, client: ResourceGraphClient, request: QueryRequest) -> Any:
        """Run one query page with a timeout.

        Raises:
            ResourceQueryError: If the query fails or times out.
        """
        try:
            # Resource Graph client is synchronous, wrap in executor
            loop = asyncio.get_running_loop()
            return await asyncio.wait_for(
                loop.run_in_executor(None, lambda: client.resources(request)),
                timeout=self._timeout_seconds,
            )
        except TimeoutError as e:
            logger.error(
                "Resource Graph query timed out",
                extra={"timeout_seconds": self._timeout_seconds},
            )
            raise ResourceQueryError("Resource Graph query timed out") from e
        except AzureError as e:
            logger.error("Resource Graph query failed", extra={"error": str(e)})
            raise ResourceQueryError(f"Resource Graph query failed: {e}") from e

    @staticmethod
    def _to_resource(row: dict[str, Any]) -> ActualResource:
        properties = flatten_properties(row.get("properties") or {})
        for section in MERGED_SECTIONS:
            value = row.get(section)
            if value:
                properties.update(flatten_properties(value, section))

        tags = row.get("tags") or {}
        return ActualResource(
            resource_id=row.get("id", ""),
            type=row.get("type", ""),
            name=row.get("name", ""),
            resource_group=row.get("resourceGroup", ""),
            subscription_id=row.get("subscriptionId", ""),
            location=row.get("location", ""),
            tags={str(k): str(v) for k, v in tags.items()},
            properties=properties,
        )
