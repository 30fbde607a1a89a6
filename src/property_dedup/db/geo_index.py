"""Proximity search over geocoded listings."""

from __future__ import annotations

import math
from collections.abc import Callable, Coroutine
from dataclasses import dataclass
from typing import Any, Final

import aiosqlite

from property_dedup.db.row_mappers import row_to_listing
from property_dedup.dedup.scoring import EARTH_RADIUS_METERS, haversine_distance
from property_dedup.models import Listing

DEFAULT_LIMIT: Final = 10

# Widen the SQL prefilter box slightly so float rounding never drops an edge point
_BOX_MARGIN: Final = 1.01


@dataclass(frozen=True)
class NearbyListing:
    """A listing found within the search radius."""

    listing: Listing
    distance_meters: float


@dataclass(frozen=True)
class BoundingBox:
    """Latitude/longitude bounds enclosing a search circle.

    Longitude bounds are None when the circle covers a pole or crosses the
    antimeridian; only latitude is prefiltered then.
    """

    min_lat: float
    max_lat: float
    min_lng: float | None
    max_lng: float | None


def bounding_box(latitude: float, longitude: float, radius_meters: float) -> BoundingBox:
    """Compute the lat/lng box enclosing a spherical cap of the given radius."""
    angular = radius_meters * _BOX_MARGIN / EARTH_RADIUS_METERS
    delta_lat = math.degrees(angular)
    min_lat = max(-90.0, latitude - delta_lat)
    max_lat = min(90.0, latitude + delta_lat)

    cos_lat = math.cos(math.radians(latitude))
    sin_angular = math.sin(min(angular, math.pi / 2))
    if cos_lat <= sin_angular:
        return BoundingBox(min_lat, max_lat, None, None)

    delta_lng = math.degrees(math.asin(sin_angular / cos_lat))
    min_lng = longitude - delta_lng
    max_lng = longitude + delta_lng
    if min_lng < -180.0 or max_lng > 180.0:
        return BoundingBox(min_lat, max_lat, None, None)
    return BoundingBox(min_lat, max_lat, min_lng, max_lng)


class GeoIndex:
    """Radius queries over listing coordinates.

    A bounding-box prefilter runs in SQL against the coordinate index; exact
    Haversine distances are computed for the survivors.
    """

    def __init__(
        self,
        get_connection: Callable[[], Coroutine[Any, Any, aiosqlite.Connection]],
    ) -> None:
        self._get_connection = get_connection

    async def find_nearby(
        self,
        latitude: float,
        longitude: float,
        radius_meters: float,
        *,
        exclude_id: int | None = None,
        limit: int = DEFAULT_LIMIT,
    ) -> list[NearbyListing]:
        """Find geocoded listings within a radius, nearest first.

        Args:
            latitude: Search centre latitude.
            longitude: Search centre longitude.
            radius_meters: Inclusive search radius.
            exclude_id: Listing id to leave out (usually the listing being processed).
            limit: Maximum number of results.

        Returns:
            Listings within the radius ordered by distance, then id.
        """
        box = bounding_box(latitude, longitude, radius_meters)
        sql = [
            "SELECT * FROM listings",
            "WHERE latitude IS NOT NULL AND longitude IS NOT NULL",
            "AND latitude BETWEEN ? AND ?",
        ]
        params: list[Any] = [box.min_lat, box.max_lat]
        if box.min_lng is not None and box.max_lng is not None:
            sql.append("AND longitude BETWEEN ? AND ?")
            params.extend([box.min_lng, box.max_lng])
        if exclude_id is not None:
            sql.append("AND id != ?")
            params.append(exclude_id)

        conn = await self._get_connection()
        cursor = await conn.execute(" ".join(sql), params)
        rows = await cursor.fetchall()

        nearby: list[NearbyListing] = []
        for row in rows:
            distance = haversine_distance(latitude, longitude, row["latitude"], row["longitude"])
            if distance <= radius_meters:
                nearby.append(NearbyListing(row_to_listing(row), round(distance, 2)))

        nearby.sort(key=lambda n: (n.distance_meters, n.listing.id or 0))
        return nearby[:limit]
