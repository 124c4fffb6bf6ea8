"""Usage metering buffer.

Metered features call the ``track_*`` methods on the hot path; events are
queued in memory and written to the usage store in batches. Delivery is
at-least-once: a failed batch goes back to the front of the queue and is
retried on the next flush, so the store may see an event twice (each event
keeps its id across retries and aggregation counts it once).

The buffer is an explicit object owned by the process. Nothing here is a
module-level singleton, so tests can run independent buffers side by side.
"""

import asyncio
import contextlib
import time
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from types import TracebackType
from typing import Any, Literal

import structlog

from botflow_billing.models.billing import UsageRecord, UsageRecordCreate, UsageType
from botflow_billing.usage import UsageStore

logger = structlog.get_logger()

# Queue length at which a warning is logged while the store keeps failing
BACKLOG_WARNING_SIZE = 10_000


@dataclass(frozen=True)
class FlushPolicy:
    """When to flush: queue full or last flush too long ago, whichever first."""

    max_size: int = 100
    flush_interval: float = 5.0  # seconds

    def should_flush(self, queue_size: int, last_flush_at: float, now: float) -> bool:
        if queue_size <= 0:
            return False
        return queue_size >= self.max_size or now - last_flush_at >= self.flush_interval


class UsageBuffer:
    """Buffers usage events and flushes them to the usage store in batches."""

    def __init__(
        self,
        usage_store: UsageStore,
        policy: FlushPolicy | None = None,
        clock: Callable[[], datetime] | None = None,
        monotonic: Callable[[], float] = time.monotonic,
    ) -> None:
        """Initialize the buffer.

        Args:
            usage_store: Destination for flushed batches
            policy: Size/age flush thresholds
            clock: Wall clock used to timestamp events (UTC)
            monotonic: Clock used for flush timing
        """
        self.usage_store = usage_store
        self.policy = policy or FlushPolicy()
        self._clock = clock or (lambda: datetime.now(UTC))
        self._monotonic = monotonic

        self._queue: list[UsageRecordCreate] = []
        self._queue_lock = asyncio.Lock()
        self._flush_lock = asyncio.Lock()
        self._last_flush = monotonic()
        self._flush_task: asyncio.Task[None] | None = None
        self._running = False

    @property
    def size(self) -> int:
        """Number of events waiting to be flushed."""
        return len(self._queue)

    async def start(self) -> None:
        """Start the periodic background flush."""
        if self._running:
            return
        self._running = True
        self._flush_task = asyncio.create_task(self._periodic_flush())
        logger.info("Usage buffer started", flush_interval=self.policy.flush_interval)

    async def stop(self) -> None:
        """Stop the background flush and flush whatever is left."""
        self._running = False

        if self._flush_task:
            self._flush_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._flush_task
            self._flush_task = None

        await self.flush()
        logger.info("Usage buffer stopped", remaining=self.size)

    async def __aenter__(self) -> "UsageBuffer":
        await self.start()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        await self.stop()

    async def _periodic_flush(self) -> None:
        while self._running:
            try:
                await asyncio.sleep(self.policy.flush_interval)
                await self.flush()
            except asyncio.CancelledError:
                break
            except Exception:
                logger.exception("Error in periodic usage flush")

    async def flush(self) -> int:
        """Write all queued events to the store.

        Failures are logged and the batch is put back ahead of anything
        queued since; callers never see the error.

        Returns:
            Number of events written
        """
        async with self._flush_lock:
            async with self._queue_lock:
                self._last_flush = self._monotonic()
                if not self._queue:
                    return 0
                batch = self._queue
                self._queue = []

            try:
                await self.usage_store.insert_batch(batch)
            except Exception:
                logger.exception("Failed to flush usage buffer", count=len(batch))
                async with self._queue_lock:
                    self._queue = batch + self._queue
                    if len(self._queue) >= BACKLOG_WARNING_SIZE:
                        logger.warning("Usage buffer backlog growing", size=len(self._queue))
                return 0

            logger.debug("Flushed usage buffer", count=len(batch))
            return len(batch)

    async def track(
        self,
        usage_type: UsageType,
        organization_id: str,
        quantity: int = 1,
        user_id: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> UsageRecordCreate:
        """Queue a usage event; flushes inline only when the policy says so.

        Raises:
            ValueError: If quantity is negative
        """
        now = self._clock()
        event = UsageRecordCreate(
            organization_id=organization_id,
            user_id=user_id,
            usage_type=usage_type,
            quantity=quantity,
            metadata={**(metadata or {}), "tracked_at": now.isoformat()},
            occurred_at=now,
        )

        async with self._queue_lock:
            self._queue.append(event)
            flush_now = self.policy.should_flush(
                len(self._queue), self._last_flush, self._monotonic()
            )

        if flush_now:
            await self.flush()
        return event

    async def track_immediate(self, event: UsageRecordCreate) -> UsageRecord:
        """Write one event straight to the store, bypassing the buffer.

        Unlike ``track`` this raises on store failure.
        """
        return await self.usage_store.insert(event)

    # Convenience trackers for the metered services

    async def track_ai_conversation(
        self,
        organization_id: str,
        user_id: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        await self.track(UsageType.AI_CONVERSATION, organization_id, 1, user_id, metadata)

    async def track_ai_message(
        self,
        organization_id: str,
        user_id: str | None = None,
        token_count: int | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        """Track an AI message, plus its tokens when a count is given."""
        await self.track(UsageType.AI_MESSAGE, organization_id, 1, user_id, metadata)
        if token_count and token_count > 0:
            await self.track(UsageType.AI_TOKEN, organization_id, token_count, user_id, metadata)

    async def track_ai_tokens(
        self,
        organization_id: str,
        token_count: int,
        user_id: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        await self.track(UsageType.AI_TOKEN, organization_id, token_count, user_id, metadata)

    async def track_whatsapp_message_sent(
        self,
        organization_id: str,
        recipient_phone: str | None = None,
        message_type: str | None = None,
        user_id: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        await self.track(
            UsageType.WHATSAPP_MESSAGE_SENT,
            organization_id,
            1,
            user_id,
            {"recipient_phone": recipient_phone, "message_type": message_type, **(metadata or {})},
        )

    async def track_whatsapp_message_received(
        self,
        organization_id: str,
        sender_phone: str | None = None,
        message_type: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        await self.track(
            UsageType.WHATSAPP_MESSAGE_RECEIVED,
            organization_id,
            1,
            None,
            {"sender_phone": sender_phone, "message_type": message_type, **(metadata or {})},
        )

    async def track_whatsapp_message_batch(
        self,
        organization_id: str,
        message_count: int,
        direction: Literal["sent", "received"],
        user_id: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        usage_type = (
            UsageType.WHATSAPP_MESSAGE_SENT
            if direction == "sent"
            else UsageType.WHATSAPP_MESSAGE_RECEIVED
        )
        await self.track(
            usage_type, organization_id, message_count, user_id, {"batch": True, **(metadata or {})}
        )

    async def track_receipt_processed(
        self,
        organization_id: str,
        receipt_id: str,
        user_id: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        await self.track(
            UsageType.RECEIPT_PROCESSED,
            organization_id,
            1,
            user_id,
            {"receipt_id": receipt_id, **(metadata or {})},
        )

    async def track_receipt_export(
        self,
        organization_id: str,
        export_format: Literal["csv", "pdf"],
        receipt_count: int,
        user_id: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        await self.track(
            UsageType.RECEIPT_EXPORT,
            organization_id,
            1,
            user_id,
            {"format": export_format, "receipt_count": receipt_count, **(metadata or {})},
        )
