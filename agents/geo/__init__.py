"""
Geo Agent
Geocoding, location coarsening and distance math for privacy-preserving matching.
"""
from agents.geo.locations import update_member_location, update_need_location
from agents.geo.resolver import (
    EARTH_RADIUS_KM,
    GeocodedLocation,
    GeoResolver,
    bounding_box,
    calculate_distance_km,
    coarsen_coords,
)

__all__ = [
    "EARTH_RADIUS_KM",
    "GeocodedLocation",
    "GeoResolver",
    "bounding_box",
    "calculate_distance_km",
    "coarsen_coords",
    "update_member_location",
    "update_need_location",
]
