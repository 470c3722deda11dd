"""Tests for worker wiring and the process entry point."""

from __future__ import annotations

import json
import logging
import os
import sys
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from azure_mock import MockAsyncManagedIdentityCredential

from drift_worker.config import Config
from drift_worker.consumer import ServiceBusConsumer, StorageQueueConsumer
from drift_worker.main import JsonFormatter, Worker, build_worker, main
from drift_worker.notifications import LoggingNotifier, WebPubSubNotifier

VALID_ENV = {
    "STORAGE_TABLE_URL": "https://driftstore.table.core.windows.net",
    "STORAGE_QUEUE_URL": "https://driftstore.queue.core.windows.net",
    "KEY_VAULT_URL": "https://drift-kv.vault.azure.net",
}


def make_record(**extra: object) -> logging.LogRecord:
    record = logging.LogRecord(
        name="drift_worker.consumer",
        level=logging.INFO,
        pathname=__file__,
        lineno=1,
        msg="Processing %s",
        args=("request",),
        exc_info=None,
    )
    for key, value in extra.items():
        setattr(record, key, value)
    return record


class TestJsonFormatter:
    """Tests for structured log output."""

    def test_standard_fields(self) -> None:
        """Test the fixed fields of every log line."""
        data = json.loads(JsonFormatter().format(make_record()))

        assert data["level"] == "INFO"
        assert data["message"] == "Processing request"
        assert data["logger"] == "drift_worker.consumer"
        assert data["timestamp"].endswith("Z")
        assert "msg" not in data
        assert "args" not in data

    def test_extra_fields_included(self) -> None:
        """Test that extra fields appear at the top level."""
        data = json.loads(
            JsonFormatter().format(make_record(correlation_id="c-1", delivery_count=2))
        )

        assert data["correlation_id"] == "c-1"
        assert data["delivery_count"] == 2

    def test_unserialisable_values_stringified(self) -> None:
        """Test that arbitrary objects do not break logging."""
        data = json.loads(JsonFormatter().format(make_record(target=object())))

        assert data["target"].startswith("<object object")

    def test_exception_included(self) -> None:
        """Test exception formatting."""
        try:
            raise ValueError("boom")
        except ValueError:
            record = make_record()
            record.exc_info = sys.exc_info()

        data = json.loads(JsonFormatter().format(record))

        assert "ValueError: boom" in data["exception"]


class TestBuildWorker:
    """Tests for component wiring."""

    @pytest.fixture
    def service(self) -> MagicMock:
        service = MagicMock()
        service.create_table = AsyncMock()
        service.close = AsyncMock()
        return service

    @pytest.mark.asyncio
    async def test_polling_mode_without_hub(self, service: MagicMock) -> None:
        """Test the storage queue transport and log-only notifications."""
        config = Config(
            table_account_url=VALID_ENV["STORAGE_TABLE_URL"],
            key_vault_url=VALID_ENV["KEY_VAULT_URL"],
            queue_account_url=VALID_ENV["STORAGE_QUEUE_URL"],
            max_concurrent_messages=4,
        )

        with (
            patch("drift_worker.storage.TableServiceClient", return_value=service),
            patch("drift_worker.secret_store.SecretClient"),
            patch("drift_worker.consumer.QueueClient"),
        ):
            worker = await build_worker(config, MockAsyncManagedIdentityCredential())

        assert isinstance(worker, Worker)
        assert isinstance(worker.consumer, StorageQueueConsumer)
        assert worker.consumer._concurrency == 4
        assert isinstance(worker.progress._notifier, LoggingNotifier)
        assert service.create_table.await_count == 4

    @pytest.mark.asyncio
    async def test_broker_mode_with_hub(self, service: MagicMock) -> None:
        """Test the Service Bus transport and Web PubSub notifications."""
        config = Config(
            table_account_url=VALID_ENV["STORAGE_TABLE_URL"],
            key_vault_url=VALID_ENV["KEY_VAULT_URL"],
            service_bus_namespace="drift-bus.servicebus.windows.net",
            web_pubsub_endpoint="https://drift.webpubsub.azure.com",
        )

        with (
            patch("drift_worker.storage.TableServiceClient", return_value=service),
            patch("drift_worker.secret_store.SecretClient"),
            patch("drift_worker.notifications.WebPubSubServiceClient"),
        ):
            worker = await build_worker(config, MockAsyncManagedIdentityCredential())

        assert isinstance(worker.consumer, ServiceBusConsumer)
        assert isinstance(worker.progress._notifier, WebPubSubNotifier)

    @pytest.mark.asyncio
    async def test_close_continues_after_errors(self) -> None:
        """Test that one failing close does not skip the rest."""
        first = MagicMock()
        first.close = AsyncMock()
        second = MagicMock()
        second.close = AsyncMock(side_effect=ConnectionError("gone"))
        worker = Worker(
            consumer=MagicMock(),
            orchestrator=MagicMock(),
            progress=MagicMock(),
            closers=[first, second],
        )

        await worker.close()

        second.close.assert_awaited_once()
        first.close.assert_awaited_once()


class TestMain:
    """Tests for the main entry point exit codes."""

    @pytest.mark.asyncio
    async def test_configuration_error(self) -> None:
        """Test that invalid configuration exits with 1."""
        with patch.dict(os.environ, {}, clear=True):
            assert await main() == 1

    @pytest.mark.asyncio
    async def test_secretless_violation(self) -> None:
        """Test that credentials in the environment exit with 2."""
        env = {**VALID_ENV, "AZURE_CLIENT_SECRET": "should-not-be-here"}

        with patch.dict(os.environ, env, clear=True):
            assert await main() == 2

    @pytest.mark.asyncio
    async def test_startup_failure_closes_credential(self) -> None:
        """Test that a failed build exits with 1 and releases the credential."""
        credential = MockAsyncManagedIdentityCredential()

        with (
            patch.dict(os.environ, VALID_ENV, clear=True),
            patch("drift_worker.main.get_managed_identity_credential", return_value=credential),
            patch("drift_worker.main.build_worker", side_effect=RuntimeError("no tables")),
        ):
            assert await main() == 1

        assert credential.closed is True
