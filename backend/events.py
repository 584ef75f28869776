"""
Matching Redis Streams Event Bus
Wrapper for Redis Streams with consumer groups, retries, and dead letter queues
"""
import json
import time
from typing import Any, Awaitable, Callable, Optional, TypeVar
from uuid import uuid4

import redis.asyncio as redis
import structlog
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from backend.core.config import settings
from backend.core.events import (
    BaseEvent,
    DeadLetterEvent,
    FindMatchesRequestedEvent,
    MatchesFoundEvent,
    NoMatchesFoundEvent,
    utcnow,
)

logger = structlog.get_logger(__name__)

T = TypeVar("T", bound=BaseEvent)


class StreamNames:
    """Redis Stream names for the matching event bus."""

    MATCHING_REQUESTED = "matching:requested"
    MATCHING_COMPLETED = "matching:completed"

    # Dead letter queues
    DLQ_MATCHING_REQUESTED = "dlq:matching:requested"

    @classmethod
    def get_dlq_for_stream(cls, stream: str) -> str:
        """Get the dead letter queue name for a given stream."""
        return f"dlq:{stream}"

    @classmethod
    def all_streams(cls) -> list[str]:
        """Get all main stream names."""
        return [
            cls.MATCHING_REQUESTED,
            cls.MATCHING_COMPLETED,
        ]


class ConsumerGroups:
    """Consumer group names for parallel processing."""

    MATCHING_WORKERS = "matching-workers"
    DLQ_HANDLERS = "dlq-handlers"


class EventBus:
    """
    Redis Streams event bus for the matching pipeline.

    Provides:
    - Event publishing with JSON serialization
    - Consumer groups for parallel processing
    - Retry with republish, then dead letter queue
    - Health monitoring
    """

    def __init__(
        self,
        redis_url: Optional[str] = None,
        max_retries: Optional[int] = None,
        client: Optional[redis.Redis] = None,
    ):
        """
        Initialize the event bus.

        Args:
            redis_url: Redis connection URL. Defaults to settings.redis_url.
            max_retries: Processing attempts before moving to DLQ.
            client: Pre-built Redis client (tests inject a fake here).
        """
        self._redis_url = redis_url or settings.redis_url
        self._redis: Optional[redis.Redis] = client
        self._max_retries = max_retries or settings.stream_max_retries
        self._connected = client is not None

    async def connect(self) -> None:
        """
        Establish connection to Redis.

        Raises:
            redis.ConnectionError: If unable to connect to Redis.
        """
        if self._redis is not None:
            return

        logger.info("connecting_to_redis", redis_url=self._redis_url.split("@")[-1])

        self._redis = redis.from_url(
            self._redis_url,
            encoding="utf-8",
            decode_responses=True,
        )

        await self._redis.ping()
        self._connected = True
        logger.info("redis_connected")

    async def disconnect(self) -> None:
        """Close Redis connection."""
        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None
            self._connected = False
            logger.info("redis_disconnected")

    async def _ensure_connected(self) -> redis.Redis:
        if self._redis is None:
            await self.connect()
        return self._redis  # type: ignore

    async def health_check(self) -> dict[str, Any]:
        """
        Check Redis connection health.

        Returns:
            Dictionary with health status, latency and stream lengths.
        """
        try:
            r = await self._ensure_connected()
            start = time.perf_counter()
            await r.ping()
            latency_ms = (time.perf_counter() - start) * 1000

            stream_lengths = {}
            for stream in StreamNames.all_streams():
                try:
                    stream_lengths[stream] = await r.xlen(stream)
                except redis.ResponseError:
                    stream_lengths[stream] = 0

            return {
                "status": "healthy",
                "connected": True,
                "latency_ms": round(latency_ms, 2),
                "stream_lengths": stream_lengths,
                "timestamp": utcnow().isoformat(),
            }
        except Exception as e:
            logger.error("health_check_failed", error=str(e))
            return {
                "status": "unhealthy",
                "connected": False,
                "error": str(e),
                "timestamp": utcnow().isoformat(),
            }

    async def create_consumer_group(
        self,
        stream: str,
        group: str,
        start_id: str = "0",
    ) -> bool:
        """
        Create a consumer group for a stream.

        Returns:
            True if created, False if already exists.
        """
        r = await self._ensure_connected()

        try:
            await r.xgroup_create(
                stream,
                group,
                id=start_id,
                mkstream=True,
            )
            logger.info(
                "consumer_group_created",
                stream=stream,
                group=group,
                start_id=start_id,
            )
            return True
        except redis.ResponseError as e:
            if "BUSYGROUP" in str(e):
                logger.debug("consumer_group_exists", stream=stream, group=group)
                return False
            raise

    async def setup_consumer_groups(self) -> None:
        """Set up all consumer groups for the event bus."""
        stream_group_mapping = [
            (StreamNames.MATCHING_REQUESTED, ConsumerGroups.MATCHING_WORKERS),
            (StreamNames.DLQ_MATCHING_REQUESTED, ConsumerGroups.DLQ_HANDLERS),
        ]

        for stream, group in stream_group_mapping:
            await self.create_consumer_group(stream, group)

    def _serialize_event(self, event: BaseEvent) -> dict[str, str]:
        json_str = event.model_dump_json()
        return {
            "payload": json_str,
            "event_type": event.__class__.__name__,
            "published_at": utcnow().isoformat(),
        }

    def deserialize_event(
        self,
        data: dict[str, str],
        event_class: type[T],
    ) -> T:
        """
        Deserialize Redis data to an event model.

        Raises:
            pydantic.ValidationError: If the payload does not fit event_class.
        """
        payload = data.get("payload", "{}")
        return event_class.model_validate_json(payload)

    @retry(
        retry=retry_if_exception_type(redis.ConnectionError),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=10),
    )
    async def publish(
        self,
        stream: str,
        event: BaseEvent,
        maxlen: Optional[int] = 10000,
    ) -> str:
        """
        Publish an event to a stream.

        Args:
            stream: Target stream name.
            event: Event to publish.
            maxlen: Maximum stream length (approximate, for memory management).

        Returns:
            Message ID assigned by Redis.
        """
        r = await self._ensure_connected()

        data = self._serialize_event(event)
        start = time.perf_counter()

        message_id = await r.xadd(
            stream,
            data,
            maxlen=maxlen,
            approximate=True,
        )

        latency_ms = (time.perf_counter() - start) * 1000

        logger.info(
            "event_published",
            stream=stream,
            message_id=message_id,
            event_type=data["event_type"],
            event_id=str(event.event_id),
            latency_ms=round(latency_ms, 2),
        )

        return message_id

    async def publish_find_matches_requested(self, event: FindMatchesRequestedEvent) -> str:
        """Publish a matching trigger for an approved need."""
        return await self.publish(StreamNames.MATCHING_REQUESTED, event)

    async def publish_matches_found(self, event: MatchesFoundEvent) -> str:
        """Publish a run that notified at least one member."""
        return await self.publish(StreamNames.MATCHING_COMPLETED, event)

    async def publish_no_matches_found(self, event: NoMatchesFoundEvent) -> str:
        """Publish a run that notified nobody."""
        return await self.publish(StreamNames.MATCHING_COMPLETED, event)

    async def consume(
        self,
        stream: str,
        group: str,
        consumer: str,
        count: int = 10,
        block_ms: int = 5000,
    ) -> list[tuple[str, dict[str, str]]]:
        """
        Consume new messages from a stream using consumer groups.

        Returns:
            List of (message_id, data) tuples.
        """
        r = await self._ensure_connected()
        start = time.perf_counter()

        try:
            response = await r.xreadgroup(
                groupname=group,
                consumername=consumer,
                streams={stream: ">"},
                count=count,
                block=block_ms,
            )

            latency_ms = (time.perf_counter() - start) * 1000

            if not response:
                return []

            # Response format: [[stream_name, [(msg_id, data), ...]]]
            messages = []
            for _stream_name, stream_messages in response:
                for msg_id, data in stream_messages:
                    messages.append((msg_id, data))

            if messages:
                logger.debug(
                    "messages_consumed",
                    stream=stream,
                    group=group,
                    consumer=consumer,
                    count=len(messages),
                    latency_ms=round(latency_ms, 2),
                )

            return messages

        except redis.ResponseError as e:
            if "NOGROUP" in str(e):
                logger.warning(
                    "consumer_group_not_found",
                    stream=stream,
                    group=group,
                )
                await self.create_consumer_group(stream, group)
                return []
            raise

    async def consume_pending(
        self,
        stream: str,
        group: str,
        consumer: str,
        min_idle_time_ms: int = 60000,
        count: int = 10,
    ) -> list[tuple[str, dict[str, str]]]:
        """
        Claim pending messages left behind by crashed consumers.

        Returns:
            List of (message_id, data) tuples.
        """
        r = await self._ensure_connected()

        try:
            pending = await r.xpending_range(
                stream,
                group,
                min="-",
                max="+",
                count=count,
            )

            if not pending:
                return []

            message_ids = [
                msg["message_id"]
                for msg in pending
                if msg["time_since_delivered"] >= min_idle_time_ms
            ]

            if not message_ids:
                return []

            claimed = await r.xclaim(
                stream,
                group,
                consumer,
                min_idle_time=min_idle_time_ms,
                message_ids=message_ids,
            )

            logger.info(
                "pending_messages_claimed",
                stream=stream,
                group=group,
                consumer=consumer,
                claimed_count=len(claimed),
            )

            return [(msg_id, data) for msg_id, data in claimed if data]

        except redis.ResponseError as e:
            logger.error("claim_pending_failed", error=str(e))
            return []

    async def acknowledge(
        self,
        stream: str,
        group: str,
        message_id: str,
    ) -> bool:
        """Acknowledge successful message processing."""
        r = await self._ensure_connected()

        ack_count = await r.xack(stream, group, message_id)

        if ack_count > 0:
            logger.debug(
                "message_acknowledged",
                stream=stream,
                group=group,
                message_id=message_id,
            )
            return True

        return False

    async def move_to_dlq(
        self,
        stream: str,
        group: str,
        message_id: str,
        original_data: dict[str, str],
        error: Exception,
        failure_count: int,
    ) -> str:
        """
        Move a failed message to the dead letter queue.

        Returns:
            Message ID in the DLQ.
        """
        try:
            original_payload = json.loads(original_data.get("payload", "{}"))
        except json.JSONDecodeError:
            original_payload = {"raw": original_data.get("payload")}

        dlq_event = DeadLetterEvent(
            event_id=uuid4(),
            original_stream=stream,
            original_message_id=message_id,
            original_payload=original_payload,
            error_message=str(error),
            error_type=error.__class__.__name__,
            failure_count=failure_count,
        )

        dlq_stream = StreamNames.get_dlq_for_stream(stream)
        dlq_message_id = await self.publish(dlq_stream, dlq_event)

        # Remove the original from the pending list
        await self.acknowledge(stream, group, message_id)

        logger.warning(
            "message_moved_to_dlq",
            original_stream=stream,
            original_message_id=message_id,
            dlq_stream=dlq_stream,
            dlq_message_id=dlq_message_id,
            error_type=error.__class__.__name__,
            failure_count=failure_count,
        )

        return dlq_message_id

    async def process_with_retry(
        self,
        stream: str,
        group: str,
        message_id: str,
        data: dict[str, str],
        processor: Callable[[dict[str, str]], Awaitable[Any]],
    ) -> bool:
        """
        Process a message with republish-on-failure and DLQ handling.

        Args:
            stream: Stream name.
            group: Consumer group name.
            message_id: Message ID.
            data: Message data.
            processor: Async function to process the message.

        Returns:
            True if processed successfully, False if requeued or moved to DLQ.
        """
        retry_count = int(data.get("_retry_count", "0"))

        try:
            await processor(data)
            await self.acknowledge(stream, group, message_id)
            return True

        except Exception as e:
            retry_count += 1
            logger.error(
                "message_processing_failed",
                stream=stream,
                message_id=message_id,
                error=str(e),
                retry_count=retry_count,
                max_retries=self._max_retries,
            )

            if retry_count >= self._max_retries:
                await self.move_to_dlq(
                    stream,
                    group,
                    message_id,
                    data,
                    e,
                    retry_count,
                )
                return False

            r = await self._ensure_connected()
            retried = dict(data)
            retried["_retry_count"] = str(retry_count)
            retried["_last_error"] = str(e)
            retried["_last_retry_at"] = utcnow().isoformat()

            await r.xadd(stream, retried)
            await self.acknowledge(stream, group, message_id)

            logger.info(
                "message_requeued_for_retry",
                stream=stream,
                message_id=message_id,
                retry_count=retry_count,
            )

            return False

    async def get_pending_count(
        self,
        stream: str,
        group: str,
    ) -> int:
        """Get count of pending (unacknowledged) messages."""
        r = await self._ensure_connected()

        try:
            pending = await r.xpending(stream, group)
            return pending.get("pending", 0) if pending else 0
        except redis.ResponseError:
            return 0


# Global event bus instance
_event_bus: Optional[EventBus] = None


async def get_event_bus() -> EventBus:
    """
    Get the global event bus instance.

    Returns:
        EventBus instance.
    """
    global _event_bus

    if _event_bus is None:
        _event_bus = EventBus()
        await _event_bus.connect()
        await _event_bus.setup_consumer_groups()

    return _event_bus


async def close_event_bus() -> None:
    """Close the global event bus connection."""
    global _event_bus

    if _event_bus is not None:
        await _event_bus.disconnect()
        _event_bus = None
