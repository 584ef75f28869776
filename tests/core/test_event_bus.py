"""
Tests for the Redis Streams event bus.
"""
import json
import uuid

import pytest
import redis.asyncio as redis

from backend.core.events import (
    FindMatchesRequestedEvent,
    MatchesFoundEvent,
    NoMatchesFoundEvent,
    NoMatchReason,
)
from backend.events import ConsumerGroups, EventBus, StreamNames

STREAM = StreamNames.MATCHING_REQUESTED
GROUP = ConsumerGroups.MATCHING_WORKERS


class TestStreamNames:
    def test_dlq_name(self):
        assert StreamNames.get_dlq_for_stream(STREAM) == StreamNames.DLQ_MATCHING_REQUESTED

    def test_all_streams(self):
        assert StreamNames.all_streams() == ["matching:requested", "matching:completed"]


class TestPublishing:
    """Event serialization and publishing."""

    @pytest.mark.asyncio
    async def test_publish_serializes_event(self, event_bus, fake_redis):
        event = FindMatchesRequestedEvent(need_id=uuid.uuid4())

        message_id = await event_bus.publish_find_matches_requested(event)

        assert message_id == "1-0"
        data = fake_redis.messages(STREAM)[0]
        assert data["event_type"] == "FindMatchesRequestedEvent"
        assert json.loads(data["payload"])["need_id"] == str(event.need_id)
        assert "published_at" in data

    @pytest.mark.asyncio
    async def test_terminal_events_share_stream(self, event_bus, fake_redis):
        need_id = uuid.uuid4()
        await event_bus.publish_matches_found(
            MatchesFoundEvent(need_id=need_id, notified_member_ids=[uuid.uuid4()], notified_count=1)
        )
        await event_bus.publish_no_matches_found(
            NoMatchesFoundEvent(need_id=need_id, reason=NoMatchReason.NO_CANDIDATES)
        )

        types = [m["event_type"] for m in fake_redis.messages(StreamNames.MATCHING_COMPLETED)]
        assert types == ["MatchesFoundEvent", "NoMatchesFoundEvent"]

    def test_deserialize_event(self, event_bus):
        event = FindMatchesRequestedEvent(need_id=uuid.uuid4(), retrigger=True)
        data = {"payload": event.model_dump_json()}

        restored = event_bus.deserialize_event(data, FindMatchesRequestedEvent)

        assert restored == event


class TestConsumerGroups:
    """Group creation and consumption."""

    @pytest.mark.asyncio
    async def test_create_group_is_idempotent(self, event_bus):
        assert await event_bus.create_consumer_group(STREAM, GROUP) is True
        assert await event_bus.create_consumer_group(STREAM, GROUP) is False

    @pytest.mark.asyncio
    async def test_consume_and_acknowledge(self, event_bus):
        await event_bus.create_consumer_group(STREAM, GROUP)
        await event_bus.publish_find_matches_requested(FindMatchesRequestedEvent(need_id=uuid.uuid4()))

        messages = await event_bus.consume(STREAM, GROUP, "worker-1", block_ms=0)

        assert len(messages) == 1
        assert await event_bus.get_pending_count(STREAM, GROUP) == 1

        message_id, _data = messages[0]
        assert await event_bus.acknowledge(STREAM, GROUP, message_id) is True
        assert await event_bus.acknowledge(STREAM, GROUP, message_id) is False
        assert await event_bus.get_pending_count(STREAM, GROUP) == 0

    @pytest.mark.asyncio
    async def test_consume_creates_missing_group(self, event_bus, fake_redis):
        messages = await event_bus.consume(STREAM, GROUP, "worker-1", block_ms=0)

        assert messages == []
        assert (STREAM, GROUP) in fake_redis.groups

    @pytest.mark.asyncio
    async def test_pending_count_without_group(self, event_bus):
        assert await event_bus.get_pending_count(STREAM, GROUP) == 0


class TestProcessWithRetry:
    """Retry and dead letter handling."""

    @pytest.mark.asyncio
    async def test_success_acknowledges(self, event_bus):
        await event_bus.create_consumer_group(STREAM, GROUP)
        await event_bus.publish_find_matches_requested(FindMatchesRequestedEvent(need_id=uuid.uuid4()))
        [(message_id, data)] = await event_bus.consume(STREAM, GROUP, "worker-1", block_ms=0)
        seen = []

        async def processor(payload):
            seen.append(payload)

        assert await event_bus.process_with_retry(STREAM, GROUP, message_id, data, processor)
        assert seen == [data]
        assert await event_bus.get_pending_count(STREAM, GROUP) == 0

    @pytest.mark.asyncio
    async def test_last_attempt_goes_to_dlq(self, event_bus, fake_redis):
        await event_bus.create_consumer_group(STREAM, GROUP)
        await event_bus.publish_find_matches_requested(FindMatchesRequestedEvent(need_id=uuid.uuid4()))
        [(message_id, data)] = await event_bus.consume(STREAM, GROUP, "worker-1", block_ms=0)
        data = dict(data, _retry_count="2")

        async def processor(payload):
            raise ValueError("bad payload")

        handled = await event_bus.process_with_retry(STREAM, GROUP, message_id, data, processor)

        assert handled is False
        dead = fake_redis.messages(StreamNames.DLQ_MATCHING_REQUESTED)
        assert len(dead) == 1
        assert json.loads(dead[0]["payload"])["error_message"] == "bad payload"
        assert len(fake_redis.messages(STREAM)) == 1

    @pytest.mark.asyncio
    async def test_unparseable_payload_is_kept_raw(self, event_bus, fake_redis):
        await event_bus.create_consumer_group(STREAM, GROUP)

        await event_bus.move_to_dlq(
            STREAM, GROUP, "9-0", {"payload": "not json"}, RuntimeError("x"), 3
        )

        payload = json.loads(fake_redis.messages(StreamNames.DLQ_MATCHING_REQUESTED)[0]["payload"])
        assert payload["original_payload"] == {"raw": "not json"}


class TestHealth:
    """Health reporting."""

    @pytest.mark.asyncio
    async def test_healthy(self, event_bus):
        await event_bus.publish_find_matches_requested(FindMatchesRequestedEvent(need_id=uuid.uuid4()))

        health = await event_bus.health_check()

        assert health["status"] == "healthy"
        assert health["stream_lengths"][STREAM] == 1
        assert health["stream_lengths"][StreamNames.MATCHING_COMPLETED] == 0

    @pytest.mark.asyncio
    async def test_unhealthy_when_ping_fails(self, fake_redis):
        async def refuse():
            raise redis.ConnectionError("connection refused")

        fake_redis.ping = refuse
        bus = EventBus(client=fake_redis)

        health = await bus.health_check()

        assert health["status"] == "unhealthy"
        assert "connection refused" in health["error"]

    @pytest.mark.asyncio
    async def test_disconnect_closes_client(self, event_bus, fake_redis):
        await event_bus.disconnect()

        assert fake_redis.closed is True
