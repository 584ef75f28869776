"""
Matching Stream Consumer
Reads FindMatchesRequested triggers from Redis Streams and runs each one
as its own asyncio task, up to max_concurrent_runs at a time.

Run as a standalone worker:
    python -m agents.orchestrator.consumer
"""

import asyncio
import os
import signal
import socket
from typing import Optional

import structlog

from backend.core.config import settings
from backend.core.events import FindMatchesRequestedEvent
from backend.core.exceptions import RunRetryable
from backend.core.logging import configure_logging
from backend.core.sentry import capture_exception, init_sentry
from backend.events import (
    ConsumerGroups,
    EventBus,
    StreamNames,
    close_event_bus,
    get_event_bus,
)

from .coordinator import MatchingOrchestrator, create_orchestrator

logger = structlog.get_logger().bind(agent="matching_consumer")


class MatchingConsumer:
    """
    Consumer-group worker for the matching:requested stream.

    Delivery is at-least-once: a failed trigger is republished with a
    retry count and dead-lettered after stream_max_retries attempts.
    Duplicate deliveries are harmless because runs are claimed per
    (need, approval).
    """

    STREAM = StreamNames.MATCHING_REQUESTED
    GROUP = ConsumerGroups.MATCHING_WORKERS

    # Messages idle this long in another consumer's pending list are claimed
    PENDING_IDLE_MS = 60_000

    def __init__(
        self,
        orchestrator: MatchingOrchestrator,
        event_bus: EventBus,
        max_concurrent_runs: Optional[int] = None,
        consumer_name: Optional[str] = None,
    ):
        self.orchestrator = orchestrator
        self.event_bus = event_bus
        self.max_concurrent_runs = max_concurrent_runs or settings.max_concurrent_runs
        self.consumer_name = consumer_name or f"{socket.gethostname()}-{os.getpid()}"
        self._tasks: set[asyncio.Task] = set()
        self._running = False

    @property
    def in_flight(self) -> int:
        return len(self._tasks)

    async def _handle_payload(self, data: dict[str, str]) -> None:
        """
        Run one trigger.

        Raises:
            RunRetryable: If the run ended retryable; the bus then requeues
                the trigger, or dead-letters it after the last attempt.
        """
        event = self.event_bus.deserialize_event(data, FindMatchesRequestedEvent)
        try:
            outcome = await self.orchestrator.handle(event)
        except Exception as e:
            capture_exception(e, need_id=str(event.need_id))
            raise

        if outcome is not None and outcome.retryable:
            raise RunRetryable(
                event.need_id,
                outcome.reason.value if outcome.reason else None,
            )

    async def process_message(self, message_id: str, data: dict[str, str]) -> bool:
        """Process one stream message; True if it was handled and acknowledged."""
        return await self.event_bus.process_with_retry(
            self.STREAM,
            self.GROUP,
            message_id,
            data,
            self._handle_payload,
        )

    def _spawn(self, message_id: str, data: dict[str, str]) -> None:
        task = asyncio.create_task(self.process_message(message_id, data))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def poll_once(self, block_ms: int = 5000) -> int:
        """
        Start runs for newly delivered messages, up to the free run slots.

        Returns:
            Number of runs started.
        """
        free = self.max_concurrent_runs - self.in_flight
        if free <= 0:
            await asyncio.wait(self._tasks, return_when=asyncio.FIRST_COMPLETED)
            return 0

        messages = await self.event_bus.consume(
            self.STREAM,
            self.GROUP,
            self.consumer_name,
            count=free,
            block_ms=block_ms,
        )
        for message_id, data in messages:
            self._spawn(message_id, data)
        return len(messages)

    async def reclaim_pending(self) -> int:
        """Pick up triggers left unacknowledged by crashed workers."""
        free = self.max_concurrent_runs - self.in_flight
        if free <= 0:
            return 0

        messages = await self.event_bus.consume_pending(
            self.STREAM,
            self.GROUP,
            self.consumer_name,
            min_idle_time_ms=self.PENDING_IDLE_MS,
            count=free,
        )
        for message_id, data in messages:
            self._spawn(message_id, data)
        return len(messages)

    async def drain(self) -> None:
        """Wait for in-flight runs to finish."""
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)

    def stop(self) -> None:
        self._running = False

    async def run(self) -> None:
        """Main loop: reclaim stale pending messages, then read new ones."""
        await self.event_bus.create_consumer_group(self.STREAM, self.GROUP)
        self._running = True

        logger.info(
            "consumer_starting",
            stream=self.STREAM,
            group=self.GROUP,
            consumer=self.consumer_name,
            max_concurrent_runs=self.max_concurrent_runs,
        )

        await self.reclaim_pending()

        while self._running:
            try:
                await self.poll_once()
            except Exception as e:
                logger.error("stream_read_error", error=str(e))
                await asyncio.sleep(1)

        await self.drain()
        logger.info("consumer_stopped", consumer=self.consumer_name)


async def main() -> None:
    from backend.database import AsyncSessionLocal, close_db

    configure_logging(json_logs=settings.json_logs)
    init_sentry("worker")

    event_bus = await get_event_bus()
    consumer = MatchingConsumer(create_orchestrator(AsyncSessionLocal, event_bus), event_bus)

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, consumer.stop)

    try:
        await consumer.run()
    finally:
        await close_event_bus()
        await close_db()


if __name__ == "__main__":
    asyncio.run(main())
