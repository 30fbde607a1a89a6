"""Pydantic models for listings, canonical properties, and dedup records."""

from dataclasses import dataclass
from datetime import UTC, datetime
from decimal import Decimal
from enum import StrEnum
from typing import Any, Final, Self

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

# Stored coordinate precision (decimal degrees)
COORDINATE_DECIMALS: Final = 7


class PropertyType(StrEnum):
    """Structural type of a property."""

    HOUSE = "house"
    APARTMENT = "apartment"
    LAND = "land"
    COMMERCIAL = "commercial"
    OFFICE = "office"
    WAREHOUSE = "warehouse"
    ROOM = "room"
    OTHER = "other"  # Fallback for properties seeded from untyped listings


class OperationType(StrEnum):
    """Commercial operation offered by a listing."""

    RENT = "rent"
    SALE = "sale"


class DedupStatus(StrEnum):
    """Lifecycle stage of a listing's deduplication."""

    PENDING = "pending"
    NEW = "new"
    MATCHED = "matched"
    NEEDS_REVIEW = "needs_review"


class CandidateStatus(StrEnum):
    """Whether a scored listing pair is believed to describe the same property."""

    PENDING = "pending"
    CONFIRMED_MATCH = "confirmed_match"
    CONFIRMED_DIFFERENT = "confirmed_different"
    NEEDS_REVIEW = "needs_review"


class PropertyStatus(StrEnum):
    """Status of a canonical property."""

    ACTIVE = "active"
    INACTIVE = "inactive"


class Operation(BaseModel):
    """A price offered for one operation type."""

    model_config = ConfigDict(frozen=True)

    type: OperationType
    price: Decimal = Field(ge=0)
    currency: str = "MXN"

    @field_validator("currency")
    @classmethod
    def normalize_currency(cls, v: str) -> str:
        return v.strip().upper()


def _round_coordinate(v: float | None) -> float | None:
    if v is None:
        return None
    return round(v, COORDINATE_DECIMALS)


class Listing(BaseModel):
    """One scraped posting of a property on one platform.

    Scraped facts are immutable; the dedup fields are only written by the
    dedup pipeline.
    """

    model_config = ConfigDict(frozen=True)

    id: int | None = None
    platform: str = Field(description="Source platform slug")
    external_id: str = Field(description="Unique ID on the source platform")

    # Location
    latitude: float | None = Field(default=None, ge=-90, le=90)
    longitude: float | None = Field(default=None, ge=-180, le=180)
    address: str | None = None
    interior_number: str | None = None
    colonia: str | None = None
    city: str | None = None
    state: str | None = None
    postal_code: str | None = None

    # Structural features
    property_type: PropertyType | None = None
    property_subtype: str | None = None
    bedrooms: int | None = Field(default=None, ge=0)
    bathrooms: int | None = Field(default=None, ge=0)
    half_bathrooms: int | None = Field(default=None, ge=0)
    parking_spots: int | None = Field(default=None, ge=0)
    lot_size_m2: float | None = Field(default=None, ge=0)
    built_size_m2: float | None = Field(default=None, ge=0)
    age_years: int | None = Field(default=None, ge=0)
    amenities: tuple[str, ...] = ()

    operations: tuple[Operation, ...] = ()

    # Dedup state
    dedup_status: DedupStatus = DedupStatus.PENDING
    property_id: int | None = None
    dedup_checked_at: datetime | None = None

    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))

    @field_validator("latitude", "longitude")
    @classmethod
    def round_coordinates(cls, v: float | None) -> float | None:
        return _round_coordinate(v)

    @model_validator(mode="after")
    def check_coordinates(self) -> Self:
        """Ensure both lat and lng are present or both are absent."""
        if (self.latitude is None) != (self.longitude is None):
            raise ValueError("Both latitude and longitude must be provided, or neither")
        return self

    @property
    def unique_id(self) -> str:
        """Unique identifier across all platforms."""
        return f"{self.platform}:{self.external_id}"

    @property
    def has_coordinates(self) -> bool:
        return self.latitude is not None and self.longitude is not None

    @property
    def operation_types(self) -> frozenset[OperationType]:
        return frozenset(op.type for op in self.operations)


class Property(BaseModel):
    """Canonical record for one physical unit, merged from one or more listings."""

    model_config = ConfigDict(frozen=True)

    id: int | None = None
    address: str
    interior_number: str | None = None
    colonia: str
    city: str
    state: str
    postal_code: str | None = None
    latitude: float | None = Field(default=None, ge=-90, le=90)
    longitude: float | None = Field(default=None, ge=-180, le=180)

    property_type: PropertyType
    property_subtype: str | None = None
    bedrooms: int | None = Field(default=None, ge=0)
    bathrooms: int | None = Field(default=None, ge=0)
    half_bathrooms: int | None = Field(default=None, ge=0)
    parking_spots: int | None = Field(default=None, ge=0)
    lot_size_m2: float | None = Field(default=None, ge=0)
    built_size_m2: float | None = Field(default=None, ge=0)
    age_years: int | None = Field(default=None, ge=0)
    amenities: tuple[str, ...] = ()

    listings_count: int = Field(default=1, ge=0)
    confidence_score: int = Field(default=50, ge=0, le=100)
    status: PropertyStatus = PropertyStatus.ACTIVE

    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(UTC))


class Candidate(BaseModel):
    """Scored comparison between two listings, stored once per unordered pair."""

    model_config = ConfigDict(frozen=True)

    id: int | None = None
    listing_a_id: int
    listing_b_id: int
    distance_meters: float | None = Field(default=None, ge=0)
    coordinate_score: float = Field(ge=0, le=1)
    address_score: float = Field(ge=0, le=1)
    features_score: float = Field(ge=0, le=1)
    overall_score: float = Field(ge=0, le=1)
    status: CandidateStatus = CandidateStatus.PENDING
    resolved_property_id: int | None = None
    resolved_at: datetime | None = None

    @model_validator(mode="after")
    def check_canonical_order(self) -> Self:
        """The lower listing id is always listing_a."""
        if self.listing_a_id >= self.listing_b_id:
            raise ValueError("listing_a_id must be lower than listing_b_id")
        return self

    def other_listing_id(self, listing_id: int) -> int:
        """Return the id of the pair member that is not ``listing_id``."""
        if listing_id == self.listing_a_id:
            return self.listing_b_id
        if listing_id == self.listing_b_id:
            return self.listing_a_id
        raise ValueError(f"Listing {listing_id} is not part of candidate {self.id}")


class Conflict(BaseModel):
    """A field disagreement recorded while merging a listing into a property."""

    model_config = ConfigDict(frozen=True)

    id: int | None = None
    property_id: int
    listing_id: int
    field: str
    canonical_value: str
    source_value: str
    resolved: bool = False
    resolution: dict[str, Any] | None = None
    resolved_at: datetime | None = None


class DedupConfig(BaseModel):
    """Thresholds handed to the scorer and decision engine."""

    model_config = ConfigDict(frozen=True)

    distance_threshold_meters: float = Field(default=100.0, gt=0)
    max_nearby: int = Field(default=10, ge=1)
    auto_match_threshold: float = Field(default=0.90, ge=0, le=1)
    review_threshold: float = Field(default=0.60, ge=0, le=1)

    @model_validator(mode="after")
    def validate_thresholds(self) -> Self:
        """Ensure review_threshold <= auto_match_threshold."""
        if self.review_threshold > self.auto_match_threshold:
            raise ValueError("review_threshold must be <= auto_match_threshold")
        return self


@dataclass(frozen=True)
class DedupStats:
    """Read-only counters for the stats/reporting surface."""

    pending: int = 0
    new: int = 0
    matched: int = 0
    needs_review: int = 0
    candidates_awaiting_review: int = 0
    unresolved_conflicts: int = 0

    def to_dict(self) -> dict[str, int]:
        return {
            "pending": self.pending,
            "new": self.new,
            "matched": self.matched,
            "needs_review": self.needs_review,
            "candidates_awaiting_review": self.candidates_awaiting_review,
            "unresolved_conflicts": self.unresolved_conflicts,
        }
