"""Main entry point for the drift analysis worker.

SECRETLESS ARCHITECTURE:
The worker reaches its queue, tables, secret store and pub/sub hub with a
managed identity only. Tenant credentials are read from the secret store
per pipeline and never come from the environment.

Exit codes:
    0: clean shutdown
    1: configuration or unexpected error
    2: security violation (credentials found in the environment)
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import signal
import sys
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from azure.identity.aio import ManagedIdentityCredential

from .config import Config, ConfigurationError, QueueTransport
from .consumer import MessageConsumer, ServiceBusConsumer, StorageQueueConsumer
from .diff_engine import create_diff_strategy
from .notifications import LoggingNotifier, Notifier, ProgressChannel, WebPubSubNotifier
from .orchestrator import AnalysisOrchestrator
from .resource_graph import ResourceStateReader
from .secret_store import KeyVaultSecretStore
from .security import SecretlessViolationError, get_managed_identity_credential
from .source_scanner import SourceScanner
from .storage import TableStorage

# LogRecord attributes that are not user-supplied `extra` fields
_RESERVED_LOG_ATTRS = frozenset(
    {
        "name",
        "msg",
        "args",
        "created",
        "filename",
        "funcName",
        "levelname",
        "levelno",
        "lineno",
        "module",
        "msecs",
        "pathname",
        "process",
        "processName",
        "relativeCreated",
        "stack_info",
        "exc_info",
        "exc_text",
        "thread",
        "threadName",
        "taskName",
        "message",
    }
)


class JsonFormatter(logging.Formatter):
    """Format logs as JSON for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        log_data: dict[str, Any] = {
            "timestamp": datetime.now(UTC).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "message": record.getMessage(),
            "logger": record.name,
        }

        for key, value in record.__dict__.items():
            if key not in _RESERVED_LOG_ATTRS:
                log_data[key] = value

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


def setup_logging() -> None:
    """Configure structured logging with JSON output for production."""
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JsonFormatter())

    root_logger = logging.getLogger()
    root_logger.addHandler(handler)
    root_logger.setLevel(logging.INFO)

    # Reduce noise from Azure SDK and HTTP clients
    logging.getLogger("azure").setLevel(logging.WARNING)
    logging.getLogger("urllib3").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)


@dataclass
class Worker:
    """Wired components of a running worker."""

    consumer: MessageConsumer
    orchestrator: AnalysisOrchestrator
    progress: ProgressChannel
    closers: list[Any] = field(default_factory=list)

    async def close(self) -> None:
        for resource in reversed(self.closers):
            try:
                await resource.close()
            except Exception as e:
                logging.getLogger(__name__).warning(
                    "Error closing resource",
                    extra={"resource": type(resource).__name__, "error": str(e)},
                )


async def build_worker(config: Config, credential: ManagedIdentityCredential) -> Worker:
    """Construct every component from configuration.

    Raises:
        RuntimeError: If the diff strategy cannot be initialised.
    """
    closers: list[Any] = [credential]

    secrets = KeyVaultSecretStore(config.key_vault_url, credential)
    closers.append(secrets)

    storage = TableStorage(config.table_account_url, credential)
    closers.append(storage)
    await storage.ensure_tables()

    notifier: Notifier
    if config.web_pubsub_endpoint:
        notifier = WebPubSubNotifier(config.web_pubsub_endpoint, config.web_pubsub_hub, credential)
        closers.append(notifier)
    else:
        notifier = LoggingNotifier()
    progress = ProgressChannel(notifier)

    orchestrator = AnalysisOrchestrator(
        pipelines=storage,
        findings=storage,
        scan_runs=storage,
        status=storage.status_tracker,
        secrets=secrets,
        scanner=SourceScanner(timeout_seconds=config.devops_timeout_seconds),
        reader=ResourceStateReader(timeout_seconds=config.resource_query_timeout_seconds),
        diff=await create_diff_strategy(config, secrets),
    )

    common: dict[str, Any] = {
        "progress": progress,
        "concurrency": config.max_concurrent_messages,
        "max_delivery_attempts": config.max_delivery_attempts,
        "polling_interval_seconds": config.polling_interval_seconds,
        "shutdown_grace_period_seconds": config.shutdown_grace_period_seconds,
    }
    consumer: MessageConsumer
    match config.transport:
        case QueueTransport.SERVICE_BUS:
            consumer = ServiceBusConsumer(
                fully_qualified_namespace=config.service_bus_namespace or "",
                queue_name=config.queue_name,
                credential=credential,
                lock_renewal_ceiling_seconds=config.lock_renewal_ceiling_seconds,
                **common,
            )
        case _:
            consumer = StorageQueueConsumer(
                account_url=config.queue_account_url or "",
                queue_name=config.queue_name,
                credential=credential,
                visibility_timeout_seconds=config.visibility_timeout_seconds,
                **common,
            )

    return Worker(consumer=consumer, orchestrator=orchestrator, progress=progress, closers=closers)


async def run_worker(worker: Worker, logger: logging.Logger) -> None:
    """Consume messages until SIGTERM/SIGINT, then shut down gracefully."""
    stop_requested = asyncio.Event()
    loop = asyncio.get_running_loop()

    def signal_handler(sig: signal.Signals) -> None:
        logger.info("Received signal", extra={"signal": sig.name})
        stop_requested.set()

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, lambda s=sig: signal_handler(s))

    publisher = asyncio.create_task(worker.progress.run(), name="progress-publisher")
    try:
        await worker.consumer.start(worker.orchestrator.handle)
        await stop_requested.wait()
        await worker.consumer.stop()
        await worker.progress.drain()
    finally:
        publisher.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await publisher


async def main() -> int:
    """Run the worker.

    Returns:
        Exit code (0 for success, non-zero for failure).
    """
    setup_logging()
    logger = logging.getLogger(__name__)

    try:
        config = Config.from_env()
    except ConfigurationError as e:
        logger.error("Configuration error", extra={"error": str(e)})
        return 1

    logger.info(
        "Starting drift analysis worker",
        extra={
            "transport": config.transport.value,
            "queue_name": config.queue_name,
            "diff_strategy": config.diff_strategy.value,
            "max_concurrent_messages": config.max_concurrent_messages,
        },
    )

    try:
        credential = get_managed_identity_credential(config.managed_identity_client_id)
    except SecretlessViolationError as e:
        # SECURITY: Credential detected in environment - fatal security error
        logger.critical(
            "Security violation: credentials detected in environment",
            extra={"error": str(e)},
        )
        return 2

    worker: Worker | None = None
    try:
        worker = await build_worker(config, credential)
        await run_worker(worker, logger)
    except Exception as e:
        logger.exception("Worker failed", extra={"error": str(e), "error_type": type(e).__name__})
        return 1
    finally:
        if worker is not None:
            await worker.close()
        else:
            await credential.close()

    logger.info("Worker stopped")
    return 0


def run() -> None:
    """Entry point for the worker process."""
    sys.exit(asyncio.run(main()))


if __name__ == "__main__":
    run()
