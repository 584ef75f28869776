"""
Test factories and fakes.

Embedding helpers produce exact cosine similarities, record factories
insert needs and members, and the fakes stand in for Redis and Expo.
"""
import math
import time
import uuid
from datetime import datetime, timezone
from typing import Any, Optional

import redis.asyncio as redis
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from agents.delivery.channels import BaseChannel
from agents.delivery.models import PushMessage, PushReceipt
from backend.core.exceptions import PushDeliveryError
from backend.models import Member, Need

__all__ = [
    "EMBEDDING_DIMENSIONS",
    "MINNEAPOLIS",
    "ST_PAUL",
    "DULUTH",
    "need_vector",
    "vector_with_similarity",
    "create_need",
    "create_member",
    "FakeRedis",
    "FakePushChannel",
]

EMBEDDING_DIMENSIONS = 1536


# =============================================================================
# Embedding Helpers
# =============================================================================


def need_vector() -> list[float]:
    """Unit vector every need embedding in the tests points along."""
    vec = [0.0] * EMBEDDING_DIMENSIONS
    vec[0] = 1.0
    return vec


def vector_with_similarity(similarity: float) -> list[float]:
    """Unit vector whose cosine similarity to need_vector() is exactly `similarity`."""
    vec = [0.0] * EMBEDDING_DIMENSIONS
    vec[0] = similarity
    vec[1] = math.sqrt(max(0.0, 1.0 - similarity * similarity))
    return vec


# Minneapolis and nearby points, already coarsened
MINNEAPOLIS = (44.98, -93.27)
ST_PAUL = (44.95, -93.09)  # ~14 km
DULUTH = (46.79, -92.1)  # ~220 km


# =============================================================================
# Record Factories
# =============================================================================


async def create_need(
    session_factory: async_sessionmaker[AsyncSession],
    location: Optional[tuple[float, float]] = MINNEAPOLIS,
    region: Optional[str] = "MN",
    embedding: Optional[list[float]] = None,
    with_embedding: bool = True,
    **overrides: Any,
) -> Need:
    """Insert an approved need. Embeds along need_vector() unless told otherwise."""
    values: dict[str, Any] = {
        "organization_id": uuid.uuid4(),
        "organization_name": "Northside Food Shelf",
        "title": "Sort donated groceries",
        "description": "Help sort and shelve weekend grocery donations.",
        "latitude": location[0] if location else None,
        "longitude": location[1] if location else None,
        "location_name": "Minneapolis, MN" if location else None,
        "region": region,
        "embedding": embedding if embedding is not None else (need_vector() if with_embedding else None),
        "approved_at": datetime(2026, 10, 12, 15, 30, tzinfo=timezone.utc),
    }
    values.update(overrides)

    need = Need(**values)
    async with session_factory() as session:
        session.add(need)
        await session.commit()
    return need


async def create_member(
    session_factory: async_sessionmaker[AsyncSession],
    similarity: float = 0.9,
    location: Optional[tuple[float, float]] = MINNEAPOLIS,
    region: Optional[str] = "MN",
    **overrides: Any,
) -> Member:
    """Insert an active member whose embedding has the given similarity to needs."""
    values: dict[str, Any] = {
        "push_token": f"ExponentPushToken[{uuid.uuid4().hex[:22]}]",
        "searchable_text": "food shelf, sorting, weekend mornings",
        "embedding": vector_with_similarity(similarity),
        "latitude": location[0] if location else None,
        "longitude": location[1] if location else None,
        "location_name": "Minneapolis, MN" if location else None,
        "region": region,
        "active": True,
        "notification_count_this_week": 0,
    }
    values.update(overrides)

    member = Member(**values)
    async with session_factory() as session:
        session.add(member)
        await session.commit()
    return member


# =============================================================================
# Redis Fakes
# =============================================================================


class FakeRedis:
    """
    In-memory Redis Streams with consumer groups.

    Supports the subset of commands the event bus uses: xadd, xgroup_create,
    xreadgroup, xack, xpending, xpending_range, xclaim, xlen and ping.
    """

    def __init__(self):
        self.streams: dict[str, list[tuple[str, dict[str, str]]]] = {}
        # (stream, group) -> {"next": index, "pending": {msg_id: [consumer, delivered_ms, count]}}
        self.groups: dict[tuple[str, str], dict[str, Any]] = {}
        self._counter = 0
        self.closed = False

    @staticmethod
    def _now_ms() -> int:
        return int(time.monotonic() * 1000)

    def _group(self, stream: str, group: str) -> dict[str, Any]:
        key = (stream, group)
        if key not in self.groups:
            raise redis.ResponseError(
                f"NOGROUP No such key '{stream}' or consumer group '{group}'"
            )
        return self.groups[key]

    def _lookup(self, stream: str, msg_id: str) -> Optional[dict[str, str]]:
        for existing_id, data in self.streams.get(stream, []):
            if existing_id == msg_id:
                return data
        return None

    def age_pending(self, stream: str, group: str, ms: int) -> None:
        """Pretend pending messages were delivered `ms` milliseconds earlier."""
        for entry in self._group(stream, group)["pending"].values():
            entry[1] -= ms

    async def xadd(
        self,
        stream: str,
        data: dict,
        maxlen: Optional[int] = None,
        approximate: bool = True,
    ) -> str:
        self._counter += 1
        msg_id = f"{self._counter}-0"
        self.streams.setdefault(stream, []).append(
            (msg_id, {str(k): str(v) for k, v in data.items()})
        )
        return msg_id

    async def xgroup_create(
        self,
        stream: str,
        group: str,
        id: str = "0",
        mkstream: bool = False,
    ) -> bool:
        if stream not in self.streams:
            if not mkstream:
                raise redis.ResponseError("ERR The XGROUP subcommand requires the key to exist")
            self.streams[stream] = []
        if (stream, group) in self.groups:
            raise redis.ResponseError("BUSYGROUP Consumer Group name already exists")

        start = len(self.streams[stream]) if id == "$" else 0
        self.groups[(stream, group)] = {"next": start, "pending": {}}
        return True

    async def xreadgroup(
        self,
        groupname: str,
        consumername: str,
        streams: dict,
        count: Optional[int] = None,
        block: Optional[int] = None,
    ) -> list:
        result = []
        for stream in streams:
            state = self._group(stream, groupname)
            entries = self.streams.get(stream, [])
            end = len(entries) if count is None else min(len(entries), state["next"] + count)
            delivered = entries[state["next"]:end]
            state["next"] = end

            for msg_id, _data in delivered:
                state["pending"][msg_id] = [consumername, self._now_ms(), 1]

            if delivered:
                result.append([stream, [(msg_id, dict(data)) for msg_id, data in delivered]])
        return result

    async def xack(self, stream: str, group: str, *message_ids: str) -> int:
        state = self._group(stream, group)
        acked = 0
        for msg_id in message_ids:
            if state["pending"].pop(msg_id, None) is not None:
                acked += 1
        return acked

    async def xpending(self, stream: str, group: str) -> dict[str, Any]:
        state = self._group(stream, group)
        return {"pending": len(state["pending"])}

    async def xpending_range(
        self,
        stream: str,
        group: str,
        min: str,
        max: str,
        count: int,
        consumername: Optional[str] = None,
    ) -> list[dict[str, Any]]:
        state = self._group(stream, group)
        now = self._now_ms()
        rows = [
            {
                "message_id": msg_id,
                "consumer": consumer,
                "time_since_delivered": now - delivered_ms,
                "times_delivered": times,
            }
            for msg_id, (consumer, delivered_ms, times) in state["pending"].items()
            if consumername is None or consumer == consumername
        ]
        return rows[:count]

    async def xclaim(
        self,
        stream: str,
        group: str,
        consumername: str,
        min_idle_time: int,
        message_ids: list[str],
    ) -> list[tuple[str, dict[str, str]]]:
        state = self._group(stream, group)
        now = self._now_ms()
        claimed = []
        for msg_id in message_ids:
            entry = state["pending"].get(msg_id)
            if entry is None or now - entry[1] < min_idle_time:
                continue
            state["pending"][msg_id] = [consumername, now, entry[2] + 1]
            data = self._lookup(stream, msg_id)
            claimed.append((msg_id, dict(data) if data else {}))
        return claimed

    async def xlen(self, stream: str) -> int:
        return len(self.streams.get(stream, []))

    async def ping(self) -> bool:
        return True

    async def aclose(self) -> None:
        self.closed = True

    def messages(self, stream: str) -> list[dict[str, str]]:
        """All payload dicts ever added to a stream."""
        return [data for _id, data in self.streams.get(stream, [])]


# =============================================================================
# Push Fakes
# =============================================================================


class FakePushChannel(BaseChannel):
    """Records pushes; tokens listed in `rejected_tokens` fail delivery."""

    def __init__(self, rejected_tokens: Optional[set[str]] = None):
        self.sent: list[PushMessage] = []
        self.rejected_tokens = rejected_tokens or set()

    async def send(self, message: PushMessage) -> PushReceipt:
        if message.to in self.rejected_tokens:
            raise PushDeliveryError("DeviceNotRegistered", provider_error="DeviceNotRegistered")
        self.sent.append(message)
        return PushReceipt(
            provider_message_id=f"ticket-{len(self.sent)}",
            accepted_at=datetime.now(timezone.utc),
        )

    def is_configured(self) -> bool:
        return True

    async def close(self) -> None:
        pass

    @property
    def recipients(self) -> list[str]:
        return [m.to for m in self.sent]


