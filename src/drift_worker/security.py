"""Security enforcement for the secretless worker identity.

The worker authenticates to its own infrastructure (queue, tables, secret
store, pub/sub hub) exclusively with a managed identity:

SECURITY INVARIANTS:
1. AZURE_CLIENT_SECRET and friends must never be present in the environment
2. ManagedIdentityCredential is the ONLY credential used for worker resources
3. Tenant credentials are read at runtime from the secret store, held in
   memory for a single pipeline scan and never logged

Delegated tenant credentials are a separate concern: they authorize reads of
a customer's inventory and are materialized here as a short-lived
ClientSecretCredential, never taken from the process environment.
"""

from __future__ import annotations

import logging
import os

from azure.identity import ClientSecretCredential
from azure.identity.aio import ManagedIdentityCredential

from .models import CloudCredentials

logger = logging.getLogger(__name__)

# Environment variables that indicate credential leakage
FORBIDDEN_CREDENTIAL_ENV_VARS: tuple[str, ...] = (
    "AZURE_CLIENT_SECRET",
    "AZURE_CLIENT_CERTIFICATE_PATH",
    "AZURE_CLIENT_CERTIFICATE_PASSWORD",
    "AZURE_USERNAME",
    "AZURE_PASSWORD",
    "AZURE_STORAGE_CONNECTION_STRING",
    "SERVICE_BUS_CONNECTION_STRING",
)

SECRETLESS_VIOLATION_MESSAGE = """
SECURITY VIOLATION DETECTED

This worker runs with a SECRETLESS identity using Managed Identity.

Detected: {env_var}

This environment variable indicates service principal, password or
connection-string authentication, which is NOT ALLOWED.

RESOLUTION:
  1. Remove all credential environment variables
  2. Assign a User-Assigned Managed Identity (UAMI) to this container
  3. Grant the UAMI data-plane roles on the queue, tables, vault and hub

See: https://learn.microsoft.com/azure/active-directory/managed-identities
"""


class SecretlessViolationError(Exception):
    """Raised when secretless architecture is violated.

    This is a fatal security error that prevents worker startup.
    """

    pass


def enforce_secretless_architecture() -> None:
    """Enforce that no credential secrets are present in the environment.

    This MUST be called at startup before any Azure SDK usage.

    Raises:
        SecretlessViolationError: If any credential environment variables detected.
    """
    for env_var in FORBIDDEN_CREDENTIAL_ENV_VARS:
        if os.environ.get(env_var):
            logger.critical(
                "Secretless architecture violation",
                extra={
                    "security_event": "credential_detected",
                    "env_var": env_var,
                    "action": "startup_blocked",
                },
            )
            raise SecretlessViolationError(SECRETLESS_VIOLATION_MESSAGE.format(env_var=env_var))

    logger.info(
        "Secretless architecture verified",
        extra={
            "security_event": "secretless_verified",
            "credential_type": "ManagedIdentity",
        },
    )


def get_managed_identity_credential(
    client_id: str | None = None,
) -> ManagedIdentityCredential:
    """Get the worker's async ManagedIdentityCredential after verifying secretless mode.

    Args:
        client_id: Optional client ID for user-assigned managed identity.
                   If None, uses system-assigned managed identity.

    Raises:
        SecretlessViolationError: If credential environment variables detected.
    """
    enforce_secretless_architecture()

    if client_id:
        logger.info(
            "Using user-assigned managed identity",
            extra={"client_id": client_id[:8] + "..." if len(client_id) > 8 else client_id},
        )
        return ManagedIdentityCredential(client_id=client_id)

    logger.info("Using system-assigned managed identity")
    return ManagedIdentityCredential()


def get_tenant_credential(credentials: CloudCredentials) -> ClientSecretCredential:
    """Build a credential for reading a tenant's inventory.

    SECURITY: The secret is passed straight to the SDK and never logged.
    """
    log_security_audit_event(
        event_type="tenant_credential",
        actor="drift-worker",
        target_resource=f"tenant/{credentials.tenant_id}",
        action="materialize",
        result="success",
    )
    return ClientSecretCredential(
        tenant_id=credentials.tenant_id,
        client_id=credentials.client_id,
        client_secret=credentials.client_secret,
    )


def log_security_audit_event(
    event_type: str,
    actor: str,
    target_resource: str | None = None,
    action: str | None = None,
    result: str | None = None,
) -> None:
    """Log a security-relevant audit event.

    All security events are logged with structured data for SIEM ingestion.

    Args:
        event_type: Type of security event (credential, dead_letter, etc.)
        actor: Component generating the event.
        target_resource: Resource or tenant being accessed.
        action: Action being performed.
        result: Result of the action (success, failure, denied).
    """
    logger.info(
        f"Security audit: {event_type}",
        extra={
            "security_audit": True,
            "event_type": event_type,
            "actor": actor,
            "target_resource": target_resource,
            "action": action,
            "result": result,
        },
    )
