"""Message consumers delivering analysis requests to the orchestrator.

Two interchangeable transports share the MessageConsumer contract:
- ServiceBusConsumer: broker mode with a per-message lock that is renewed
  automatically while the handler runs (up to a ceiling)
- StorageQueueConsumer: polling mode with a fixed visibility timeout and no
  renewal

Delivery is at-least-once:
- handler success: message completed/deleted
- handler failure: abandoned for retry until the delivery count reaches the
  threshold, then dead-lettered
- undecodable body: dead-lettered immediately
- cancellation (shutdown): neither completed nor dead-lettered; the lease
  expires and another worker picks the message up
"""

from __future__ import annotations

import asyncio
import base64
import binascii
import contextlib
import logging
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator, Awaitable, Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from azure.core.credentials_async import AsyncTokenCredential
from azure.core.exceptions import ResourceExistsError
from azure.servicebus import ServiceBusReceiveMode
from azure.servicebus.aio import AutoLockRenewer, ServiceBusClient, ServiceBusReceiver
from azure.storage.queue.aio import QueueClient

from .config import (
    DEFAULT_LOCK_RENEWAL_CEILING_SECONDS,
    DEFAULT_MAX_CONCURRENT_MESSAGES,
    DEFAULT_MAX_DELIVERY_ATTEMPTS,
    DEFAULT_POLLING_INTERVAL_SECONDS,
    DEFAULT_SHUTDOWN_GRACE_PERIOD_SECONDS,
    DEFAULT_VISIBILITY_TIMEOUT_SECONDS,
    TRANSPORT_ERROR_BACKOFF_SECONDS,
)
from .models import AnalysisRequest, MessageDecodeError
from .notifications import ProgressSink
from .security import log_security_audit_event

logger = logging.getLogger(__name__)

Handler = Callable[[AnalysisRequest, ProgressSink, asyncio.Event], Awaitable[Any]]

DEAD_LETTER_REASON_INVALID = "InvalidMessage"
DEAD_LETTER_REASON_RETRIES = "MaxRetriesExceeded"
MAX_DEAD_LETTER_DESCRIPTION_CHARS = 1024
POISON_QUEUE_SUFFIX = "-poison"


class Disposition(str, Enum):
    """What happens to a message whose handler failed."""

    RETRY = "retry"
    DEAD_LETTER = "dead_letter"


def failure_disposition(delivery_count: int, max_attempts: int) -> Disposition:
    """Decide retry vs dead-letter for a failed delivery.

    Args:
        delivery_count: 1-based number of this delivery attempt.
        max_attempts: Dead-letter threshold.
    """
    if delivery_count >= max_attempts:
        return Disposition.DEAD_LETTER
    return Disposition.RETRY


@dataclass
class ReceivedMessage:
    """A transport message awaiting settlement.

    Attributes:
        body: Decoded message text
        message_id: Transport message id
        delivery_count: 1-based delivery attempt number
        raw: Transport-specific message object used for settlement
    """

    body: str
    message_id: str
    delivery_count: int
    raw: Any = field(default=None, repr=False)


class MessageConsumer(ABC):
    """Bounded-concurrency consumer loop with transport hooks.

    Each slot receives and processes one message at a time; a failure in one
    slot never affects the others.
    """

    # Whether an empty receive should be followed by a polling sleep
    sleep_when_idle = True

    def __init__(
        self,
        *,
        progress: ProgressSink,
        concurrency: int = DEFAULT_MAX_CONCURRENT_MESSAGES,
        max_delivery_attempts: int = DEFAULT_MAX_DELIVERY_ATTEMPTS,
        polling_interval_seconds: float = DEFAULT_POLLING_INTERVAL_SECONDS,
        shutdown_grace_period_seconds: float = DEFAULT_SHUTDOWN_GRACE_PERIOD_SECONDS,
        error_backoff_seconds: float = TRANSPORT_ERROR_BACKOFF_SECONDS,
    ) -> None:
        self._progress = progress
        self._concurrency = concurrency
        self._max_delivery_attempts = max_delivery_attempts
        self._polling_interval_seconds = polling_interval_seconds
        self._shutdown_grace_period_seconds = shutdown_grace_period_seconds
        self._error_backoff_seconds = error_backoff_seconds
        self._cancel = asyncio.Event()
        self._slots: list[asyncio.Task[None]] = []

    @property
    def cancel_event(self) -> asyncio.Event:
        """Set when shutdown has been requested."""
        return self._cancel

    async def start(self, handler: Handler) -> None:
        """Open the transport and start the worker slots."""
        await self._open()
        self._slots = [
            asyncio.create_task(self._slot_loop(slot, handler), name=f"consumer-slot-{slot}")
            for slot in range(self._concurrency)
        ]
        logger.info(
            "Message consumer started",
            extra={"transport": type(self).__name__, "concurrency": self._concurrency},
        )

    async def wait(self) -> None:
        """Wait until every slot has exited."""
        if self._slots:
            await asyncio.gather(*self._slots, return_exceptions=True)

    async def stop(self) -> None:
        """Request shutdown, wait the grace period, then cancel remaining slots."""
        logger.info("Stopping message consumer")
        self._cancel.set()

        if self._slots:
            _, pending = await asyncio.wait(
                self._slots, timeout=self._shutdown_grace_period_seconds
            )
            for task in pending:
                task.cancel()
            if pending:
                logger.warning(
                    "Cancelled slots still running after grace period",
                    extra={"slots": len(pending)},
                )
                await asyncio.gather(*pending, return_exceptions=True)

        await self._close()
        logger.info("Message consumer stopped")

    async def _slot_loop(self, slot: int, handler: Handler) -> None:
        while not self._cancel.is_set():
            try:
                message = await self._receive()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(
                    "Error receiving message",
                    extra={"slot": slot, "error": str(e), "error_type": type(e).__name__},
                )
                await self._sleep(self._error_backoff_seconds)
                continue

            if message is None:
                if self.sleep_when_idle:
                    await self._sleep(self._polling_interval_seconds)
                continue

            await self.process(message, handler)

    async def _sleep(self, seconds: float) -> None:
        """Sleep, waking early on shutdown."""
        with contextlib.suppress(TimeoutError):
            await asyncio.wait_for(self._cancel.wait(), timeout=seconds)

    async def process(self, message: ReceivedMessage, handler: Handler) -> None:
        """Run the handler for one message and settle it."""
        context = {
            "message_id": message.message_id,
            "delivery_count": message.delivery_count,
        }

        try:
            request = AnalysisRequest.from_message(message.body)
        except MessageDecodeError as e:
            logger.error("Undecodable message", extra={**context, "error": str(e)})
            await self._settle_dead_letter(message, DEAD_LETTER_REASON_INVALID, str(e))
            return

        context["correlation_id"] = request.correlation_id
        logger.info("Processing analysis request", extra=context)

        try:
            async with self._lease(message):
                await handler(request, self._progress, self._cancel)

        except asyncio.CancelledError:
            # Leave the message for redelivery once its lease expires
            logger.warning("Processing cancelled, message left for redelivery", extra=context)
            task = asyncio.current_task()
            if task is not None and task.cancelling():
                raise
            return

        except Exception as e:
            disposition = failure_disposition(message.delivery_count, self._max_delivery_attempts)
            logger.error(
                "Analysis request failed",
                extra={**context, "error": str(e), "disposition": disposition.value},
            )
            if disposition == Disposition.DEAD_LETTER:
                await self._settle_dead_letter(message, DEAD_LETTER_REASON_RETRIES, str(e))
            else:
                await self._settle("abandon", self._abandon, message)
            return

        await self._settle("complete", self._complete, message)
        logger.info("Analysis request completed", extra=context)

    async def _settle(
        self,
        action: str,
        operation: Callable[[ReceivedMessage], Awaitable[None]],
        message: ReceivedMessage,
    ) -> None:
        """Settle a message; a failed settlement only means redelivery."""
        try:
            await operation(message)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning(
                "Message settlement failed",
                extra={
                    "message_id": message.message_id,
                    "action": action,
                    "error": str(e),
                    "error_type": type(e).__name__,
                },
            )

    async def _settle_dead_letter(
        self, message: ReceivedMessage, reason: str, description: str
    ) -> None:
        description = description[:MAX_DEAD_LETTER_DESCRIPTION_CHARS]
        await self._settle(
            "dead_letter",
            lambda m: self._dead_letter(m, reason, description),
            message,
        )
        log_security_audit_event(
            event_type="dead_letter",
            actor="drift-worker",
            target_resource=f"message/{message.message_id}",
            action=reason,
            result="dead_lettered",
        )

    @contextlib.asynccontextmanager
    async def _lease(self, message: ReceivedMessage) -> AsyncIterator[None]:
        """Keep the message leased while the handler runs. No-op by default."""
        yield

    async def _open(self) -> None:
        """Prepare the transport."""

    async def _close(self) -> None:
        """Release transport resources."""

    @abstractmethod
    async def _receive(self) -> ReceivedMessage | None:
        """Receive one message, or None when the queue is empty."""

    @abstractmethod
    async def _complete(self, message: ReceivedMessage) -> None: ...

    @abstractmethod
    async def _abandon(self, message: ReceivedMessage) -> None: ...

    @abstractmethod
    async def _dead_letter(
        self, message: ReceivedMessage, reason: str, description: str
    ) -> None: ...


# =============================================================================
# Broker mode
# =============================================================================


class ServiceBusConsumer(MessageConsumer):
    """Azure Service Bus queue receiver in peek-lock mode."""

    sleep_when_idle = False

    def __init__(
        self,
        *,
        fully_qualified_namespace: str,
        queue_name: str,
        credential: AsyncTokenCredential,
        lock_renewal_ceiling_seconds: int = DEFAULT_LOCK_RENEWAL_CEILING_SECONDS,
        **kwargs: Any,
    ) -> None:
        super().__init__(**kwargs)
        self._namespace = fully_qualified_namespace
        self._queue_name = queue_name
        self._credential = credential
        self._lock_renewal_ceiling_seconds = lock_renewal_ceiling_seconds
        self._client: ServiceBusClient | None = None
        self._receiver: ServiceBusReceiver | None = None
        self._renewer: AutoLockRenewer | None = None
        self._receive_lock = asyncio.Lock()

    async def _open(self) -> None:
        self._client = ServiceBusClient(
            fully_qualified_namespace=self._namespace, credential=self._credential
        )
        self._receiver = self._client.get_queue_receiver(
            queue_name=self._queue_name,
            receive_mode=ServiceBusReceiveMode.PEEK_LOCK,
            prefetch_count=0,
        )
        self._renewer = AutoLockRenewer()

    async def _close(self) -> None:
        if self._renewer is not None:
            await self._renewer.close()
        if self._receiver is not None:
            await self._receiver.close()
        if self._client is not None:
            await self._client.close()

    def _require_receiver(self) -> ServiceBusReceiver:
        if self._receiver is None:
            raise RuntimeError("ServiceBusConsumer has not been started")
        return self._receiver

    async def _receive(self) -> ReceivedMessage | None:
        receiver = self._require_receiver()
        # One receive at a time on the shared link
        async with self._receive_lock:
            messages = await receiver.receive_messages(
                max_message_count=1, max_wait_time=self._polling_interval_seconds
            )
        if not messages:
            return None
        message = messages[0]
        return ReceivedMessage(
            body=str(message),
            message_id=str(message.message_id),
            # AMQP delivery-count counts prior attempts
            delivery_count=(message.delivery_count or 0) + 1,
            raw=message,
        )

    @contextlib.asynccontextmanager
    async def _lease(self, message: ReceivedMessage) -> AsyncIterator[None]:
        if self._renewer is not None:
            self._renewer.register(
                self._require_receiver(),
                message.raw,
                max_lock_renewal_duration=self._lock_renewal_ceiling_seconds,
            )
        yield

    async def _complete(self, message: ReceivedMessage) -> None:
        await self._require_receiver().complete_message(message.raw)

    async def _abandon(self, message: ReceivedMessage) -> None:
        await self._require_receiver().abandon_message(message.raw)

    async def _dead_letter(self, message: ReceivedMessage, reason: str, description: str) -> None:
        await self._require_receiver().dead_letter_message(
            message.raw, reason=reason, error_description=description
        )


# =============================================================================
# Polling mode
# =============================================================================


def decode_queue_body(content: str) -> str:
    """Storage queue bodies are usually base64 text; plain text is accepted too."""
    try:
        return base64.b64decode(content, validate=True).decode("utf-8")
    except (binascii.Error, UnicodeDecodeError, ValueError):
        return content


class StorageQueueConsumer(MessageConsumer):
    """Azure Storage queue poller with a poison queue for dead letters.

    There is no lease renewal: the visibility timeout must cover the longest
    expected analysis. A retry simply leaves the message invisible until the
    timeout expires.
    """

    def __init__(
        self,
        *,
        account_url: str,
        queue_name: str,
        credential: AsyncTokenCredential,
        visibility_timeout_seconds: int = DEFAULT_VISIBILITY_TIMEOUT_SECONDS,
        **kwargs: Any,
    ) -> None:
        super().__init__(**kwargs)
        self._visibility_timeout_seconds = visibility_timeout_seconds
        self._queue = QueueClient(account_url, queue_name, credential=credential)
        self._poison = QueueClient(
            account_url, f"{queue_name}{POISON_QUEUE_SUFFIX}", credential=credential
        )

    async def _open(self) -> None:
        for queue in (self._queue, self._poison):
            try:
                await queue.create_queue()
                logger.info("Created queue", extra={"queue": queue.queue_name})
            except ResourceExistsError:
                pass

    async def _close(self) -> None:
        await self._queue.close()
        await self._poison.close()

    async def _receive(self) -> ReceivedMessage | None:
        message = await self._queue.receive_message(
            visibility_timeout=self._visibility_timeout_seconds
        )
        if message is None:
            return None
        return ReceivedMessage(
            body=decode_queue_body(message.content or ""),
            message_id=message.id,
            delivery_count=message.dequeue_count or 1,
            raw=message,
        )

    async def _complete(self, message: ReceivedMessage) -> None:
        await self._queue.delete_message(message.raw)

    async def _abandon(self, message: ReceivedMessage) -> None:
        logger.info(
            "Message will reappear after its visibility timeout",
            extra={
                "message_id": message.message_id,
                "visibility_timeout_seconds": self._visibility_timeout_seconds,
            },
        )

    async def _dead_letter(self, message: ReceivedMessage, reason: str, description: str) -> None:
        await self._poison.send_message(message.raw.content)
        await self._queue.delete_message(message.raw)
        logger.warning(
            "Message moved to poison queue",
            extra={
                "message_id": message.message_id,
                "reason": reason,
                "description": description,
                "poison_queue": self._poison.queue_name,
            },
        )
