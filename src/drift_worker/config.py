"""Configuration management with validation.

Security constraints are enforced at configuration load time to ensure
the worker runs in a secure mode by default.
"""

from __future__ import annotations

import os
import re
from dataclasses import dataclass
from enum import Enum


class QueueTransport(str, Enum):
    """Supported message transports."""

    SERVICE_BUS = "service_bus"
    STORAGE_QUEUE = "storage_queue"


class DiffStrategyKind(str, Enum):
    """Supported diff strategies."""

    RULE_BASED = "rule_based"
    AI_ASSISTED = "ai_assisted"


class ConfigurationError(Exception):
    """Raised when configuration validation fails."""

    pass


# Configuration constants with documented bounds
DEFAULT_QUEUE_NAME = "drift-analysis-requests"
DEFAULT_WEB_PUBSUB_HUB = "drift"
DEFAULT_AI_API_KEY_SECRET_NAME = "ai-api-key"

DEFAULT_MAX_CONCURRENT_MESSAGES = 2
MIN_CONCURRENT_MESSAGES = 1
MAX_CONCURRENT_MESSAGES = 16

DEFAULT_MAX_DELIVERY_ATTEMPTS = 3
MAX_DELIVERY_ATTEMPTS = 10

DEFAULT_LOCK_RENEWAL_CEILING_SECONDS = 1800
DEFAULT_VISIBILITY_TIMEOUT_SECONDS = 1800
MAX_VISIBILITY_TIMEOUT_SECONDS = 7 * 24 * 3600  # Storage queue limit

DEFAULT_POLLING_INTERVAL_SECONDS = 5
TRANSPORT_ERROR_BACKOFF_SECONDS = 10
DEFAULT_SHUTDOWN_GRACE_PERIOD_SECONDS = 30

DEFAULT_DEVOPS_TIMEOUT_SECONDS = 60
DEFAULT_RESOURCE_QUERY_TIMEOUT_SECONDS = 60

# Security constraints - enforced limits to prevent abuse
MAX_TEMPLATE_FILE_SIZE_BYTES = 10 * 1024 * 1024  # 10MB max ARM template
MAX_PIPELINE_YAML_SIZE_BYTES = 1024 * 1024  # 1MB max pipeline definition
MAX_GRAPH_QUERY_RESULTS = 1000
MAX_TEMPLATES_PER_PIPELINE = 50
PROGRESS_QUEUE_MAX_SIZE = 1000

# Input validation patterns
VALID_QUEUE_NAME_PATTERN = r"^[a-z0-9][a-z0-9-]{1,61}[a-z0-9]$"
VALID_URL_PATTERN = r"^https?://[^\s/$.?#].[^\s]*$"
VALID_NAMESPACE_PATTERN = r"^[a-zA-Z][a-zA-Z0-9-]{4,48}[a-zA-Z0-9]\.servicebus\.windows\.net$"


@dataclass(frozen=True)
class Config:
    """Worker configuration loaded from environment variables.

    All fields are validated at construction time. Invalid configurations
    raise ConfigurationError immediately rather than failing at runtime.
    """

    # Required fields
    table_account_url: str
    key_vault_url: str

    # Transport
    service_bus_namespace: str | None = None
    queue_account_url: str | None = None
    queue_name: str = DEFAULT_QUEUE_NAME

    # Notifications
    web_pubsub_endpoint: str | None = None
    web_pubsub_hub: str = DEFAULT_WEB_PUBSUB_HUB

    # Delivery
    max_concurrent_messages: int = DEFAULT_MAX_CONCURRENT_MESSAGES
    max_delivery_attempts: int = DEFAULT_MAX_DELIVERY_ATTEMPTS
    lock_renewal_ceiling_seconds: int = DEFAULT_LOCK_RENEWAL_CEILING_SECONDS
    visibility_timeout_seconds: int = DEFAULT_VISIBILITY_TIMEOUT_SECONDS
    polling_interval_seconds: int = DEFAULT_POLLING_INTERVAL_SECONDS
    shutdown_grace_period_seconds: int = DEFAULT_SHUTDOWN_GRACE_PERIOD_SECONDS

    # Diff strategy
    diff_strategy: DiffStrategyKind = DiffStrategyKind.RULE_BASED
    ai_endpoint: str | None = None
    ai_deployment: str | None = None
    ai_api_key_secret_name: str = DEFAULT_AI_API_KEY_SECRET_NAME

    # Timeouts for external calls
    devops_timeout_seconds: int = DEFAULT_DEVOPS_TIMEOUT_SECONDS
    resource_query_timeout_seconds: int = DEFAULT_RESOURCE_QUERY_TIMEOUT_SECONDS

    # Worker identity (user-assigned managed identity)
    managed_identity_client_id: str | None = None

    @property
    def transport(self) -> QueueTransport:
        """Broker mode when a namespace is configured, polling mode otherwise."""
        if self.service_bus_namespace:
            return QueueTransport.SERVICE_BUS
        return QueueTransport.STORAGE_QUEUE

    def __post_init__(self) -> None:
        """Validate configuration after initialization.

        SECURITY: All inputs are validated at the boundary (fail-fast).
        """
        errors: list[str] = []

        if not self.table_account_url:
            errors.append("STORAGE_TABLE_URL is required")
        elif not re.match(VALID_URL_PATTERN, self.table_account_url):
            errors.append(f"STORAGE_TABLE_URL must be a URL: {self.table_account_url}")

        if not self.key_vault_url:
            errors.append("KEY_VAULT_URL is required")
        elif not self.key_vault_url.startswith("https://"):
            errors.append(f"KEY_VAULT_URL must use https: {self.key_vault_url}")

        # Transport validation
        if self.service_bus_namespace:
            if not re.match(VALID_NAMESPACE_PATTERN, self.service_bus_namespace):
                errors.append(
                    "SERVICE_BUS_NAMESPACE must be a fully-qualified namespace "
                    f"(<name>.servicebus.windows.net): {self.service_bus_namespace}"
                )
        elif not self.queue_account_url:
            errors.append("Either SERVICE_BUS_NAMESPACE or STORAGE_QUEUE_URL is required")
        elif not re.match(VALID_URL_PATTERN, self.queue_account_url):
            errors.append(f"STORAGE_QUEUE_URL must be a URL: {self.queue_account_url}")

        if not re.match(VALID_QUEUE_NAME_PATTERN, self.queue_name):
            errors.append(f"ANALYSIS_QUEUE_NAME must match {VALID_QUEUE_NAME_PATTERN}")

        if self.web_pubsub_endpoint and not self.web_pubsub_endpoint.startswith("https://"):
            errors.append(f"WEB_PUBSUB_ENDPOINT must use https: {self.web_pubsub_endpoint}")

        # Delivery validation
        if not (
            MIN_CONCURRENT_MESSAGES <= self.max_concurrent_messages <= MAX_CONCURRENT_MESSAGES
        ):
            errors.append(
                f"MAX_CONCURRENT_MESSAGES must be between {MIN_CONCURRENT_MESSAGES} "
                f"and {MAX_CONCURRENT_MESSAGES}"
            )

        if not (1 <= self.max_delivery_attempts <= MAX_DELIVERY_ATTEMPTS):
            errors.append(f"MAX_DELIVERY_ATTEMPTS must be between 1 and {MAX_DELIVERY_ATTEMPTS}")

        if self.lock_renewal_ceiling_seconds < 60:
            errors.append("LOCK_RENEWAL_CEILING must be at least 60 seconds")

        if not (60 <= self.visibility_timeout_seconds <= MAX_VISIBILITY_TIMEOUT_SECONDS):
            errors.append(
                f"VISIBILITY_TIMEOUT must be between 60 and {MAX_VISIBILITY_TIMEOUT_SECONDS} seconds"
            )

        if self.polling_interval_seconds < 1:
            errors.append("POLLING_INTERVAL must be at least 1 second")

        if self.shutdown_grace_period_seconds < 0:
            errors.append("SHUTDOWN_GRACE_PERIOD cannot be negative")

        # Diff strategy validation
        if self.diff_strategy == DiffStrategyKind.AI_ASSISTED:
            if not self.ai_endpoint:
                errors.append("AI_ENDPOINT is required when DIFF_STRATEGY is ai_assisted")
            elif not self.ai_endpoint.startswith("https://"):
                errors.append(f"AI_ENDPOINT must use https: {self.ai_endpoint}")
            if not self.ai_deployment:
                errors.append("AI_DEPLOYMENT is required when DIFF_STRATEGY is ai_assisted")

        if self.devops_timeout_seconds < 1 or self.resource_query_timeout_seconds < 1:
            errors.append("DEVOPS_TIMEOUT and RESOURCE_QUERY_TIMEOUT must be positive")

        if errors:
            error_msg = "Configuration validation failed:\n  - " + "\n  - ".join(errors)
            raise ConfigurationError(error_msg)

    @classmethod
    def from_env(cls) -> Config:
        """Load configuration from environment variables.

        Environment Variables:
            STORAGE_TABLE_URL: Table service URL for findings, scan runs and status
            KEY_VAULT_URL: Key Vault holding tenant credentials
            SERVICE_BUS_NAMESPACE: Fully-qualified namespace (enables broker mode)
            STORAGE_QUEUE_URL: Queue service URL (polling mode)
            ANALYSIS_QUEUE_NAME: Queue or entity name (default: drift-analysis-requests)
            WEB_PUBSUB_ENDPOINT: Pub/sub hub endpoint (default: log-only notifications)
            WEB_PUBSUB_HUB: Hub name (default: drift)
            MAX_CONCURRENT_MESSAGES: Worker slots (default: 2)
            MAX_DELIVERY_ATTEMPTS: Dead-letter threshold (default: 3)
            LOCK_RENEWAL_CEILING: Broker lease renewal ceiling in seconds (default: 1800)
            VISIBILITY_TIMEOUT: Polling visibility timeout in seconds (default: 1800)
            POLLING_INTERVAL: Empty-queue sleep in seconds (default: 5)
            SHUTDOWN_GRACE_PERIOD: Seconds to wait for in-flight work (default: 30)
            DIFF_STRATEGY: rule_based or ai_assisted (default: rule_based)
            AI_ENDPOINT, AI_DEPLOYMENT: Completion service (required for ai_assisted)
            AI_API_KEY_SECRET_NAME: Secret holding the completion key (default: ai-api-key)
            DEVOPS_TIMEOUT: Source control timeout in seconds (default: 60)
            RESOURCE_QUERY_TIMEOUT: Inventory query timeout in seconds (default: 60)
            MANAGED_IDENTITY_CLIENT_ID: Client ID of the worker's user-assigned identity
        """

        def get_int(key: str, default: int) -> int:
            value = os.environ.get(key)
            if value is None:
                return default
            try:
                return int(value)
            except ValueError as e:
                raise ConfigurationError(f"{key} must be an integer: {value}") from e

        def get_optional(key: str) -> str | None:
            value = os.environ.get(key, "").strip()
            return value or None

        def get_strategy(value: str | None) -> DiffStrategyKind:
            if not value:
                return DiffStrategyKind.RULE_BASED
            try:
                return DiffStrategyKind(value.lower())
            except ValueError as e:
                valid = [s.value for s in DiffStrategyKind]
                raise ConfigurationError(f"DIFF_STRATEGY must be one of {valid}: {value}") from e

        return cls(
            table_account_url=os.environ.get("STORAGE_TABLE_URL", ""),
            key_vault_url=os.environ.get("KEY_VAULT_URL", ""),
            service_bus_namespace=get_optional("SERVICE_BUS_NAMESPACE"),
            queue_account_url=get_optional("STORAGE_QUEUE_URL"),
            queue_name=os.environ.get("ANALYSIS_QUEUE_NAME", DEFAULT_QUEUE_NAME),
            web_pubsub_endpoint=get_optional("WEB_PUBSUB_ENDPOINT"),
            web_pubsub_hub=os.environ.get("WEB_PUBSUB_HUB", DEFAULT_WEB_PUBSUB_HUB),
            max_concurrent_messages=get_int(
                "MAX_CONCURRENT_MESSAGES", DEFAULT_MAX_CONCURRENT_MESSAGES
            ),
            max_delivery_attempts=get_int("MAX_DELIVERY_ATTEMPTS", DEFAULT_MAX_DELIVERY_ATTEMPTS),
            lock_renewal_ceiling_seconds=get_int(
                "LOCK_RENEWAL_CEILING", DEFAULT_LOCK_RENEWAL_CEILING_SECONDS
            ),
            visibility_timeout_seconds=get_int(
                "VISIBILITY_TIMEOUT", DEFAULT_VISIBILITY_TIMEOUT_SECONDS
            ),
            polling_interval_seconds=get_int("POLLING_INTERVAL", DEFAULT_POLLING_INTERVAL_SECONDS),
            shutdown_grace_period_seconds=get_int(
                "SHUTDOWN_GRACE_PERIOD", DEFAULT_SHUTDOWN_GRACE_PERIOD_SECONDS
            ),
            diff_strategy=get_strategy(os.environ.get("DIFF_STRATEGY")),
            ai_endpoint=get_optional("AI_ENDPOINT"),
            ai_deployment=get_optional("AI_DEPLOYMENT"),
            ai_api_key_secret_name=os.environ.get(
                "AI_API_KEY_SECRET_NAME", DEFAULT_AI_API_KEY_SECRET_NAME
            ),
            devops_timeout_seconds=get_int("DEVOPS_TIMEOUT", DEFAULT_DEVOPS_TIMEOUT_SECONDS),
            resource_query_timeout_seconds=get_int(
                "RESOURCE_QUERY_TIMEOUT", DEFAULT_RESOURCE_QUERY_TIMEOUT_SECONDS
            ),
            managed_identity_client_id=get_optional("MANAGED_IDENTITY_CLIENT_ID"),
        )
