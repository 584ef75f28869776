"""
Location updates for members and needs.

Only coarsened coordinates are written. When geocoding fails the stored
coordinates are cleared, which puts the record on the statewide fallback.
"""
from typing import Optional, Union
from uuid import UUID

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from agents.geo.resolver import GeocodedLocation, GeoResolver
from backend.core.exceptions import GeoResolutionFailed
from backend.models import Member, Need

logger = structlog.get_logger().bind(agent="geo")


async def _apply_location(
    record: Union[Member, Need],
    city: str,
    region: str,
    resolver: GeoResolver,
) -> Optional[GeocodedLocation]:
    record.region = region.upper()

    try:
        location = await resolver.resolve(city, region)
    except GeoResolutionFailed as e:
        logger.warning(
            "location_cleared",
            record_type=type(record).__name__,
            record_id=str(record.id),
            reason=e.reason,
        )
        record.latitude = None
        record.longitude = None
        record.location_name = None
        return None

    record.latitude = location.latitude
    record.longitude = location.longitude
    record.location_name = f"{city}, {region.upper()}"
    return location


async def update_member_location(
    session: AsyncSession,
    member_id: UUID,
    city: str,
    region: str,
    resolver: GeoResolver,
) -> Optional[GeocodedLocation]:
    """
    Geocode and store a member's city-level location.

    The caller owns the transaction; changes are flushed, not committed.

    Returns:
        The stored location, or None if the member is unknown or the
        lookup failed (coordinates are cleared in that case).
    """
    member = await session.get(Member, member_id)
    if member is None:
        logger.warning("member_not_found", member_id=str(member_id))
        return None

    location = await _apply_location(member, city, region, resolver)
    await session.flush()
    return location


async def update_need_location(
    session: AsyncSession,
    need_id: UUID,
    city: str,
    region: str,
    resolver: GeoResolver,
) -> Optional[GeocodedLocation]:
    """Geocode and store a need's city-level location. See update_member_location."""
    need = await session.get(Need, need_id)
    if need is None:
        logger.warning("need_not_found", need_id=str(need_id))
        return None

    location = await _apply_location(need, city, region, resolver)
    await session.flush()
    return location
