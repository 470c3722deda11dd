"""Tests for configuration loading."""

import os
from unittest.mock import patch

import pytest

from drift_worker.config import Config, ConfigurationError, DiffStrategyKind, QueueTransport

TABLE_URL = "https://driftstore.table.core.windows.net"
QUEUE_URL = "https://driftstore.queue.core.windows.net"
VAULT_URL = "https://drift-kv.vault.azure.net"
NAMESPACE = "drift-bus.servicebus.windows.net"


def make_config(**overrides: object) -> Config:
    values: dict[str, object] = {
        "table_account_url": TABLE_URL,
        "key_vault_url": VAULT_URL,
        "queue_account_url": QUEUE_URL,
    }
    values.update(overrides)
    return Config(**values)  # type: ignore[arg-type]


class TestConfig:
    """Tests for Config class."""

    def test_valid_config(self) -> None:
        """Test creating a valid polling-mode configuration."""
        config = make_config()

        assert config.transport == QueueTransport.STORAGE_QUEUE
        assert config.queue_name == "drift-analysis-requests"
        assert config.max_concurrent_messages == 2
        assert config.max_delivery_attempts == 3
        assert config.diff_strategy == DiffStrategyKind.RULE_BASED

    def test_namespace_selects_service_bus(self) -> None:
        """Test that a Service Bus namespace switches to broker mode."""
        config = make_config(queue_account_url=None, service_bus_namespace=NAMESPACE)

        assert config.transport == QueueTransport.SERVICE_BUS

    def test_missing_table_url(self) -> None:
        """Test that missing table URL raises error."""
        with pytest.raises(ConfigurationError) as exc_info:
            make_config(table_account_url="")

        assert "STORAGE_TABLE_URL is required" in str(exc_info.value)

    def test_key_vault_requires_https(self) -> None:
        """Test that a plain-http vault URL is rejected."""
        with pytest.raises(ConfigurationError) as exc_info:
            make_config(key_vault_url="http://drift-kv.vault.azure.net")

        assert "KEY_VAULT_URL must use https" in str(exc_info.value)

    def test_transport_required(self) -> None:
        """Test that one of the two transports must be configured."""
        with pytest.raises(ConfigurationError) as exc_info:
            make_config(queue_account_url=None)

        assert "Either SERVICE_BUS_NAMESPACE or STORAGE_QUEUE_URL is required" in str(
            exc_info.value
        )

    def test_invalid_namespace(self) -> None:
        """Test that a namespace without the service bus suffix is rejected."""
        with pytest.raises(ConfigurationError) as exc_info:
            make_config(service_bus_namespace="drift-bus")

        assert "SERVICE_BUS_NAMESPACE" in str(exc_info.value)

    @pytest.mark.parametrize("value", [0, 17])
    def test_concurrency_bounds(self, value: int) -> None:
        """Test worker slot bounds."""
        with pytest.raises(ConfigurationError) as exc_info:
            make_config(max_concurrent_messages=value)

        assert "MAX_CONCURRENT_MESSAGES must be between 1 and 16" in str(exc_info.value)

    def test_invalid_queue_name(self) -> None:
        """Test that queue names follow storage naming rules."""
        with pytest.raises(ConfigurationError) as exc_info:
            make_config(queue_name="Drift_Requests")

        assert "ANALYSIS_QUEUE_NAME" in str(exc_info.value)

    def test_ai_strategy_requires_endpoint(self) -> None:
        """Test that the AI strategy needs an endpoint and deployment."""
        with pytest.raises(ConfigurationError) as exc_info:
            make_config(diff_strategy=DiffStrategyKind.AI_ASSISTED)

        message = str(exc_info.value)
        assert "AI_ENDPOINT is required when DIFF_STRATEGY is ai_assisted" in message
        assert "AI_DEPLOYMENT is required" in message

    def test_errors_are_collected(self) -> None:
        """Test that every problem is reported at once."""
        with pytest.raises(ConfigurationError) as exc_info:
            make_config(table_account_url="", key_vault_url="", max_delivery_attempts=0)

        message = str(exc_info.value)
        assert "STORAGE_TABLE_URL" in message
        assert "KEY_VAULT_URL" in message
        assert "MAX_DELIVERY_ATTEMPTS" in message

    def test_config_is_frozen(self) -> None:
        """Test that configuration cannot be mutated after load."""
        config = make_config()

        with pytest.raises(AttributeError):
            config.queue_name = "other"  # type: ignore[misc]


class TestConfigFromEnv:
    """Tests for Config.from_env()."""

    def test_from_env_minimal(self) -> None:
        """Test loading the minimal polling-mode environment."""
        env = {
            "STORAGE_TABLE_URL": TABLE_URL,
            "KEY_VAULT_URL": VAULT_URL,
            "STORAGE_QUEUE_URL": QUEUE_URL,
        }

        with patch.dict(os.environ, env, clear=True):
            config = Config.from_env()

        assert config.table_account_url == TABLE_URL
        assert config.transport == QueueTransport.STORAGE_QUEUE
        assert config.web_pubsub_endpoint is None
        assert config.managed_identity_client_id is None

    def test_from_env_full(self) -> None:
        """Test loading every supported variable."""
        env = {
            "STORAGE_TABLE_URL": TABLE_URL,
            "KEY_VAULT_URL": VAULT_URL,
            "SERVICE_BUS_NAMESPACE": NAMESPACE,
            "ANALYSIS_QUEUE_NAME": "drift-requests",
            "WEB_PUBSUB_ENDPOINT": "https://drift.webpubsub.azure.com",
            "WEB_PUBSUB_HUB": "analysis",
            "MAX_CONCURRENT_MESSAGES": "4",
            "MAX_DELIVERY_ATTEMPTS": "5",
            "LOCK_RENEWAL_CEILING": "600",
            "POLLING_INTERVAL": "2",
            "SHUTDOWN_GRACE_PERIOD": "10",
            "DIFF_STRATEGY": "AI_ASSISTED",
            "AI_ENDPOINT": "https://contoso.openai.azure.com",
            "AI_DEPLOYMENT": "gpt-4o",
            "MANAGED_IDENTITY_CLIENT_ID": "33333333-3333-3333-3333-333333333333",
        }

        with patch.dict(os.environ, env, clear=True):
            config = Config.from_env()

        assert config.transport == QueueTransport.SERVICE_BUS
        assert config.queue_name == "drift-requests"
        assert config.web_pubsub_hub == "analysis"
        assert config.max_concurrent_messages == 4
        assert config.max_delivery_attempts == 5
        assert config.lock_renewal_ceiling_seconds == 600
        assert config.diff_strategy == DiffStrategyKind.AI_ASSISTED
        assert config.ai_deployment == "gpt-4o"

    def test_from_env_invalid_integer(self) -> None:
        """Test that non-numeric integers are reported by name."""
        env = {
            "STORAGE_TABLE_URL": TABLE_URL,
            "KEY_VAULT_URL": VAULT_URL,
            "STORAGE_QUEUE_URL": QUEUE_URL,
            "MAX_CONCURRENT_MESSAGES": "many",
        }

        with patch.dict(os.environ, env, clear=True):
            with pytest.raises(ConfigurationError) as exc_info:
                Config.from_env()

        assert "MAX_CONCURRENT_MESSAGES must be an integer" in str(exc_info.value)

    def test_from_env_unknown_strategy(self) -> None:
        """Test that unknown diff strategies are rejected."""
        env = {
            "STORAGE_TABLE_URL": TABLE_URL,
            "KEY_VAULT_URL": VAULT_URL,
            "STORAGE_QUEUE_URL": QUEUE_URL,
            "DIFF_STRATEGY": "magic",
        }

        with patch.dict(os.environ, env, clear=True):
            with pytest.raises(ConfigurationError) as exc_info:
                Config.from_env()

        assert "DIFF_STRATEGY must be one of" in str(exc_info.value)

    def test_blank_optional_values_are_ignored(self) -> None:
        """Test that whitespace-only optional variables count as unset."""
        env = {
            "STORAGE_TABLE_URL": TABLE_URL,
            "KEY_VAULT_URL": VAULT_URL,
            "STORAGE_QUEUE_URL": QUEUE_URL,
            "SERVICE_BUS_NAMESPACE": "  ",
        }

        with patch.dict(os.environ, env, clear=True):
            config = Config.from_env()

        assert config.service_bus_namespace is None
        assert config.transport == QueueTransport.STORAGE_QUEUE
