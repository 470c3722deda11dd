"""Azure Mocks for Worker Testing.

In-memory stand-ins for the services the drift worker talks to, so
orchestration and delivery can be tested without Azure connectivity.

Key Features:
- Resource Graph simulation with skip-token paging
- Tenant and managed identity credential simulation
- Secret store, table persistence and status tracking in memory
- Recording notifier and progress sink
- Peek-lock style message transport with redelivery
- Error injection for testing failure scenarios

Usage:
    from azure_mock import InMemoryStorage, create_mock_secret_store, make_pipeline

    storage = InMemoryStorage()
    storage.add_pipeline(make_pipeline("42"))
    orchestrator = AnalysisOrchestrator(pipelines=storage, ...)
"""

from .credential import MockAsyncManagedIdentityCredential, MockTenantCredential
from .graph import MockGraphResource, MockResourceGraphClient, create_mock_graph_client
from .notifier import PublishedMessage, RecordingNotifier, RecordingProgress
from .secrets import MockSecretStore, create_mock_secret_store, default_tenant_secrets
from .storage import InMemoryStorage, MockStatusTracker, StoredFinding, make_pipeline
from .transport import DeadLetter, InMemoryConsumer

__all__ = [
    "DeadLetter",
    "InMemoryConsumer",
    "InMemoryStorage",
    "MockAsyncManagedIdentityCredential",
    "MockGraphResource",
    "MockResourceGraphClient",
    "MockSecretStore",
    "MockStatusTracker",
    "MockTenantCredential",
    "PublishedMessage",
    "RecordingNotifier",
    "RecordingProgress",
    "StoredFinding",
    "create_mock_graph_client",
    "create_mock_secret_store",
    "default_tenant_secrets",
    "make_pipeline",
]
