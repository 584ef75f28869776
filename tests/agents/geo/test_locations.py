"""
Tests for privacy-preserving location updates on members and needs.
"""
import uuid

import httpx
import pytest

from agents.geo.locations import update_member_location, update_need_location
from agents.geo.resolver import GeoResolver
from backend.models import Member, Need
from tests.fixtures.factories import create_member, create_need


def resolver_returning(payload, status_code: int = 200) -> GeoResolver:
    transport = httpx.MockTransport(lambda request: httpx.Response(status_code, json=payload))
    return GeoResolver(http_client=httpx.AsyncClient(transport=transport))


class TestUpdateMemberLocation:
    """Tests for update_member_location."""

    @pytest.mark.asyncio
    async def test_stores_coarsened_coordinates(self, session_factory):
        member = await create_member(session_factory, location=None, region=None)
        resolver = resolver_returning([{"lat": "44.953703", "lon": "-93.089958"}])

        async with session_factory() as session:
            location = await update_member_location(session, member.id, "St Paul", "mn", resolver)
            await session.commit()

        assert location is not None
        async with session_factory() as session:
            stored = await session.get(Member, member.id)
            assert (stored.latitude, stored.longitude) == (44.95, -93.09)
            assert stored.location_name == "St Paul, MN"
            assert stored.region == "MN"

    @pytest.mark.asyncio
    async def test_failure_clears_location(self, session_factory):
        member = await create_member(session_factory)
        resolver = resolver_returning([])

        async with session_factory() as session:
            location = await update_member_location(session, member.id, "Atlantis", "MN", resolver)
            await session.commit()

        assert location is None
        async with session_factory() as session:
            stored = await session.get(Member, member.id)
            assert stored.latitude is None
            assert stored.longitude is None
            assert stored.location_name is None
            # Region survives so the member stays on the statewide fallback
            assert stored.region == "MN"

    @pytest.mark.asyncio
    async def test_unknown_member(self, session_factory):
        resolver = resolver_returning([{"lat": "44.95", "lon": "-93.09"}])

        async with session_factory() as session:
            location = await update_member_location(session, uuid.uuid4(), "St Paul", "MN", resolver)

        assert location is None


class TestUpdateNeedLocation:
    """Tests for update_need_location."""

    @pytest.mark.asyncio
    async def test_stores_coarsened_coordinates(self, session_factory):
        need = await create_need(session_factory, location=None)
        resolver = resolver_returning([{"lat": "46.786672", "lon": "-92.100485"}])

        async with session_factory() as session:
            await update_need_location(session, need.id, "Duluth", "MN", resolver)
            await session.commit()

        async with session_factory() as session:
            stored = await session.get(Need, need.id)
            assert (stored.latitude, stored.longitude) == (46.79, -92.1)
            assert stored.has_location

    @pytest.mark.asyncio
    async def test_http_error_clears_location(self, session_factory):
        need = await create_need(session_factory)
        resolver = resolver_returning({"error": "rate limited"}, status_code=429)

        async with session_factory() as session:
            location = await update_need_location(session, need.id, "Minneapolis", "MN", resolver)
            await session.commit()

        assert location is None
        async with session_factory() as session:
            stored = await session.get(Need, need.id)
            assert not stored.has_location
