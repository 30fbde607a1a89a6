"""Shared row-mapping utilities for database modules."""

from __future__ import annotations

import json
from datetime import datetime
from enum import Enum
from typing import Any, Final

import aiosqlite

from property_dedup.models import (
    Candidate,
    CandidateStatus,
    Conflict,
    DedupStatus,
    Listing,
    Operation,
    Property,
    PropertyStatus,
    PropertyType,
)

# Scraped facts written on ingest (dedup columns are owned by the dedup pipeline)
LISTING_FACT_COLUMNS: Final = (
    "platform",
    "external_id",
    "latitude",
    "longitude",
    "address",
    "interior_number",
    "colonia",
    "city",
    "state",
    "postal_code",
    "property_type",
    "property_subtype",
    "bedrooms",
    "bathrooms",
    "half_bathrooms",
    "parking_spots",
    "lot_size_m2",
    "built_size_m2",
    "age_years",
    "amenities",
    "operations",
)

PROPERTY_COLUMNS: Final = (
    "address",
    "interior_number",
    "colonia",
    "city",
    "state",
    "postal_code",
    "latitude",
    "longitude",
    "property_type",
    "property_subtype",
    "bedrooms",
    "bathrooms",
    "half_bathrooms",
    "parking_spots",
    "lot_size_m2",
    "built_size_m2",
    "age_years",
    "amenities",
    "listings_count",
    "confidence_score",
    "status",
)


def encode_value(value: Any) -> Any:
    """Convert a model value to its SQLite column representation."""
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, tuple | list):
        return json.dumps(
            [
                item.model_dump(mode="json") if isinstance(item, Operation) else item
                for item in value
            ],
            ensure_ascii=False,
        )
    return value


def _parse_datetime(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


def _parse_json_list(value: str | None) -> list[Any]:
    return json.loads(value) if value else []


def listing_insert_values(listing: Listing) -> list[Any]:
    """Column values for LISTING_FACT_COLUMNS, in order."""
    return [encode_value(getattr(listing, column)) for column in LISTING_FACT_COLUMNS]


def property_insert_values(prop: Property) -> list[Any]:
    """Column values for PROPERTY_COLUMNS, in order."""
    return [encode_value(getattr(prop, column)) for column in PROPERTY_COLUMNS]


def row_to_listing(row: aiosqlite.Row) -> Listing:
    """Convert a database row to a Listing.

    Args:
        row: Database row from the listings table.

    Returns:
        Listing instance.
    """
    return Listing(
        id=row["id"],
        platform=row["platform"],
        external_id=row["external_id"],
        latitude=row["latitude"],
        longitude=row["longitude"],
        address=row["address"],
        interior_number=row["interior_number"],
        colonia=row["colonia"],
        city=row["city"],
        state=row["state"],
        postal_code=row["postal_code"],
        property_type=PropertyType(row["property_type"]) if row["property_type"] else None,
        property_subtype=row["property_subtype"],
        bedrooms=row["bedrooms"],
        bathrooms=row["bathrooms"],
        half_bathrooms=row["half_bathrooms"],
        parking_spots=row["parking_spots"],
        lot_size_m2=row["lot_size_m2"],
        built_size_m2=row["built_size_m2"],
        age_years=row["age_years"],
        amenities=tuple(_parse_json_list(row["amenities"])),
        operations=tuple(Operation.model_validate(op) for op in _parse_json_list(row["operations"])),
        dedup_status=DedupStatus(row["dedup_status"]),
        property_id=row["property_id"],
        dedup_checked_at=_parse_datetime(row["dedup_checked_at"]),
        created_at=datetime.fromisoformat(row["created_at"]),
    )


def row_to_property(row: aiosqlite.Row) -> Property:
    """Convert a database row to a Property."""
    return Property(
        id=row["id"],
        address=row["address"],
        interior_number=row["interior_number"],
        colonia=row["colonia"],
        city=row["city"],
        state=row["state"],
        postal_code=row["postal_code"],
        latitude=row["latitude"],
        longitude=row["longitude"],
        property_type=PropertyType(row["property_type"]),
        property_subtype=row["property_subtype"],
        bedrooms=row["bedrooms"],
        bathrooms=row["bathrooms"],
        half_bathrooms=row["half_bathrooms"],
        parking_spots=row["parking_spots"],
        lot_size_m2=row["lot_size_m2"],
        built_size_m2=row["built_size_m2"],
        age_years=row["age_years"],
        amenities=tuple(_parse_json_list(row["amenities"])),
        listings_count=row["listings_count"],
        confidence_score=row["confidence_score"],
        status=PropertyStatus(row["status"]),
        created_at=datetime.fromisoformat(row["created_at"]),
        updated_at=datetime.fromisoformat(row["updated_at"]),
    )


def row_to_candidate(row: aiosqlite.Row) -> Candidate:
    """Convert a database row to a Candidate."""
    return Candidate(
        id=row["id"],
        listing_a_id=row["listing_a_id"],
        listing_b_id=row["listing_b_id"],
        distance_meters=row["distance_meters"],
        coordinate_score=row["coordinate_score"],
        address_score=row["address_score"],
        features_score=row["features_score"],
        overall_score=row["overall_score"],
        status=CandidateStatus(row["status"]),
        resolved_property_id=row["resolved_property_id"],
        resolved_at=_parse_datetime(row["resolved_at"]),
    )


def row_to_conflict(row: aiosqlite.Row) -> Conflict:
    """Convert a database row to a Conflict."""
    return Conflict(
        id=row["id"],
        property_id=row["property_id"],
        listing_id=row["listing_id"],
        field=row["field"],
        canonical_value=row["canonical_value"],
        source_value=row["source_value"],
        resolved=bool(row["resolved"]),
        resolution=json.loads(row["resolution"]) if row["resolution"] else None,
        resolved_at=_parse_datetime(row["resolved_at"]),
    )
