"""Secret store access for tenant credentials.

The worker only needs get/set of named secrets. Tenant-scoped names are tried
first and fall back to a tenant-agnostic default, so a single-tenant install
can keep one set of secrets.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Protocol

from azure.core.credentials_async import AsyncTokenCredential
from azure.core.exceptions import ResourceNotFoundError
from azure.keyvault.secrets.aio import SecretClient

from .models import CloudCredentials
from .security import log_security_audit_event

logger = logging.getLogger(__name__)

# (tenant-scoped prefix, default name)
DEVOPS_TOKEN_SECRET = ("ado-pat", "ado-pat")
TENANT_ID_SECRET = ("azure-tenant", "azure-tenant-id")
CLIENT_ID_SECRET = ("azure-client", "azure-client-id")
CLIENT_SECRET_SECRET = ("azure-secret", "azure-client-secret")


class SecretStore(Protocol):
    """Named secret access."""

    async def get_secret(self, name: str) -> str | None: ...

    async def set_secret(
        self, name: str, value: str, expires_at: datetime | None = None
    ) -> None: ...


class KeyVaultSecretStore:
    """SecretStore backed by Azure Key Vault.

    SECURITY: Secret values are never logged; only names and hit/miss.
    """

    def __init__(self, vault_url: str, credential: AsyncTokenCredential) -> None:
        self._client = SecretClient(vault_url=vault_url, credential=credential)

    async def get_secret(self, name: str) -> str | None:
        """Get a secret value, or None when it does not exist."""
        try:
            secret = await self._client.get_secret(name)
        except ResourceNotFoundError:
            logger.debug("Secret not found", extra={"secret_name": name})
            return None
        return secret.value

    async def set_secret(self, name: str, value: str, expires_at: datetime | None = None) -> None:
        await self._client.set_secret(name, value, expires_on=expires_at)
        log_security_audit_event(
            event_type="secret_write",
            actor="drift-worker",
            target_resource=f"secret/{name}",
            action="set",
            result="success",
        )

    async def close(self) -> None:
        await self._client.close()


async def resolve_secret(store: SecretStore, tenant_scoped: str, default: str) -> str | None:
    """Return the tenant-scoped secret if present, otherwise the default one."""
    value = await store.get_secret(tenant_scoped)
    if value:
        return value
    if default == tenant_scoped:
        return None
    return await store.get_secret(default) or None


def _names(secret: tuple[str, str], tenant_id: str) -> tuple[str, str]:
    prefix, default = secret
    if not tenant_id:
        return default, default
    return f"{prefix}-{tenant_id}", default


@dataclass(frozen=True)
class PipelineCredentials:
    """Everything needed to scan one pipeline: source token and cloud credentials."""

    devops_token: str
    cloud: CloudCredentials

    def __repr__(self) -> str:
        return f"PipelineCredentials(tenant_id={self.cloud.tenant_id!r})"


async def resolve_pipeline_credentials(
    store: SecretStore, tenant_id: str
) -> PipelineCredentials | None:
    """Resolve the source-control token and cloud credentials for a tenant.

    Returns:
        The credentials, or None when any of them is missing.
    """
    devops_token = await resolve_secret(store, *_names(DEVOPS_TOKEN_SECRET, tenant_id))
    if not devops_token:
        logger.warning("Source control token not configured", extra={"tenant_id": tenant_id})
        return None

    cloud_tenant = await resolve_secret(store, *_names(TENANT_ID_SECRET, tenant_id))
    client_id = await resolve_secret(store, *_names(CLIENT_ID_SECRET, tenant_id))
    client_secret = await resolve_secret(store, *_names(CLIENT_SECRET_SECRET, tenant_id))
    if not (cloud_tenant and client_id and client_secret):
        logger.warning("Cloud credentials not configured", extra={"tenant_id": tenant_id})
        return None

    log_security_audit_event(
        event_type="credential_resolution",
        actor="drift-worker",
        target_resource=f"tenant/{tenant_id or 'default'}",
        action="read",
        result="success",
    )
    return PipelineCredentials(
        devops_token=devops_token,
        cloud=CloudCredentials(
            tenant_id=cloud_tenant, client_id=client_id, client_secret=client_secret
        ),
    )
