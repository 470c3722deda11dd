"""Mock Resource Graph client for testing."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any
from unittest.mock import MagicMock

from azure.mgmt.resourcegraph.models import QueryResponse


@dataclass
class MockGraphResource:
    """Mock inventory row."""

    resource_id: str
    name: str
    type: str
    location: str = "westeurope"
    resource_group: str = "rg-test"
    subscription_id: str = "00000000-0000-0000-0000-000000000000"
    tags: dict[str, str] | None = None
    properties: dict[str, Any] = field(default_factory=dict)
    sku: dict[str, Any] | None = None
    kind: str | None = None
    identity: dict[str, Any] | None = None

    def to_row(self) -> dict[str, Any]:
        return {
            "id": self.resource_id,
            "name": self.name,
            "type": self.type,
            "location": self.location,
            "resourceGroup": self.resource_group,
            "subscriptionId": self.subscription_id,
            "tags": self.tags,
            "properties": self.properties,
            "sku": self.sku,
            "kind": self.kind,
            "identity": self.identity,
        }


class MockResourceGraphClient:
    """Mock Resource Graph client.

    Serves the registered resources in pages of ``page_size`` using skip
    tokens, like the real service.
    """

    def __init__(self, page_size: int = 1000) -> None:
        self._resources: list[MockGraphResource] = []
        self._page_size = page_size
        self._requests: list[Any] = []
        self._should_fail = False
        self._fail_message = "Mock failure"
        self.closed = False

    def add_resource(self, resource: MockGraphResource) -> None:
        self._resources.append(resource)

    def set_should_fail(self, should_fail: bool, message: str = "Mock failure") -> None:
        self._should_fail = should_fail
        self._fail_message = message

    @property
    def query_count(self) -> int:
        return len(self._requests)

    @property
    def requests(self) -> list[Any]:
        return list(self._requests)

    def resources(self, request: Any) -> QueryResponse:
        """Mock query execution.

        Raises:
            HttpResponseError: If configured to fail.
        """
        self._requests.append(request)

        if self._should_fail:
            from azure.core.exceptions import HttpResponseError

            raise HttpResponseError(message=self._fail_message)

        options = request.options
        start = int(options.skip_token) if options and options.skip_token else 0
        limit = min(self._page_size, options.top if options and options.top else self._page_size)
        page = [r.to_row() for r in self._resources[start : start + limit]]
        next_start = start + len(page)

        response = MagicMock(spec=QueryResponse)
        response.data = page
        response.count = len(page)
        response.total_records = len(self._resources)
        response.skip_token = str(next_start) if next_start < len(self._resources) else None
        return response

    def close(self) -> None:
        self.closed = True


def create_mock_graph_client(page_size: int = 1000) -> MockResourceGraphClient:
    """Create a mock Resource Graph client for testing."""
    return MockResourceGraphClient(page_size=page_size)
