"""Property creation and field-level listing merges."""

from __future__ import annotations

import json
from collections.abc import Callable
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum, StrEnum
from typing import TYPE_CHECKING, Any, Final

from property_dedup.logging import get_logger
from property_dedup.models import Conflict, Listing, Property, PropertyStatus, PropertyType
from property_dedup.utils.address import is_blank

if TYPE_CHECKING:
    from property_dedup.db.storage import DedupStorage

logger = get_logger(__name__)

# Placeholders that keep Property's required columns non-null for sparse listings
NO_ADDRESS: Final = "Sin dirección"
UNKNOWN_COLONIA: Final = "Desconocida"
UNKNOWN_CITY: Final = "Desconocida"
UNKNOWN_STATE: Final = "Desconocido"

PLACEHOLDER_VALUES: Final[dict[str, object]] = {
    "address": NO_ADDRESS,
    "colonia": UNKNOWN_COLONIA,
    "city": UNKNOWN_CITY,
    "state": UNKNOWN_STATE,
    "property_type": PropertyType.OTHER,
}

INITIAL_CONFIDENCE: Final = 50
CONFIDENCE_STEP: Final = 10
MAX_CONFIDENCE: Final = 100

# Merge tolerances
SIZE_MATCH_TOLERANCE: Final = 0.05
COORDINATE_MATCH_TOLERANCE: Final = 0.0001


class FieldKind(StrEnum):
    """How a mergeable field is compared and how conflicts are resolved."""

    COUNT = "count"
    SIZE = "size"
    TEXT = "text"
    COORDINATE = "coordinate"
    DEFAULT = "default"


MERGEABLE_FIELDS: Final[dict[str, FieldKind]] = {
    "address": FieldKind.TEXT,
    "interior_number": FieldKind.DEFAULT,
    "colonia": FieldKind.TEXT,
    "city": FieldKind.TEXT,
    "state": FieldKind.TEXT,
    "postal_code": FieldKind.DEFAULT,
    "latitude": FieldKind.COORDINATE,
    "longitude": FieldKind.COORDINATE,
    "property_type": FieldKind.DEFAULT,
    "property_subtype": FieldKind.DEFAULT,
    "bedrooms": FieldKind.COUNT,
    "bathrooms": FieldKind.COUNT,
    "half_bathrooms": FieldKind.COUNT,
    "parking_spots": FieldKind.COUNT,
    "lot_size_m2": FieldKind.SIZE,
    "built_size_m2": FieldKind.SIZE,
    "age_years": FieldKind.COUNT,
}


def _default_match(current: Any, new: Any) -> bool:
    if isinstance(current, str) and isinstance(new, str):
        return current.strip().casefold() == new.strip().casefold()
    return bool(current == new)


def _size_match(current: float, new: float) -> bool:
    if current == 0 or new == 0:
        return current == new
    return abs(current - new) / max(current, new) <= SIZE_MATCH_TOLERANCE


def _coordinate_match(current: float, new: float) -> bool:
    # Epsilon absorbs float representation error at the tolerance boundary
    return abs(current - new) <= COORDINATE_MATCH_TOLERANCE + 1e-12


def _resolve_count(current: int, new: int) -> int:
    """Prefer the non-zero value; otherwise keep the already-merged one."""
    if current == 0 and new > 0:
        return new
    return current


def _resolve_size(current: float, new: float) -> float:
    """Prefer the larger size; under-reporting is more common than over-reporting."""
    return max(current, new)


def _resolve_text(current: str, new: str) -> str:
    """Prefer the longer string as the more complete one."""
    return new if len(new) > len(current) else current


def decimal_places(value: float) -> int:
    """Count the decimal places in a coordinate's shortest representation."""
    exponent = Decimal(repr(value)).normalize().as_tuple().exponent
    return -exponent if isinstance(exponent, int) and exponent < 0 else 0


def _resolve_coordinate(current: float, new: float) -> float:
    """Prefer the coordinate with more decimal precision."""
    return new if decimal_places(new) > decimal_places(current) else current


def _keep_current(current: Any, new: Any) -> Any:
    return current


@dataclass(frozen=True)
class MergePolicy:
    """Comparison and conflict resolution for one kind of field."""

    matches: Callable[[Any, Any], bool]
    resolve: Callable[[Any, Any], Any]


MERGE_POLICIES: Final[dict[FieldKind, MergePolicy]] = {
    FieldKind.COUNT: MergePolicy(matches=_default_match, resolve=_resolve_count),
    FieldKind.SIZE: MergePolicy(matches=_size_match, resolve=_resolve_size),
    FieldKind.TEXT: MergePolicy(matches=_default_match, resolve=_resolve_text),
    FieldKind.COORDINATE: MergePolicy(matches=_coordinate_match, resolve=_resolve_coordinate),
    FieldKind.DEFAULT: MergePolicy(matches=_default_match, resolve=_keep_current),
}


def stringify_value(value: Any) -> str:
    """Render a field value as a display snapshot for the conflict audit trail.

    Enums render as their value, sequences as JSON arrays, None as "".
    """
    match value:
        case None:
            return ""
        case Enum():
            return str(value.value)
        case bool():
            return "true" if value else "false"
        case list() | tuple() | set() | frozenset():
            items = sorted(value) if isinstance(value, set | frozenset) else list(value)
            return json.dumps(items, ensure_ascii=False, default=str)
        case float() if value.is_integer():
            return str(int(value))
        case _:
            return str(value)


@dataclass(frozen=True)
class FieldConflict:
    """A mismatched field detected while planning a merge."""

    field: str
    canonical_value: str
    source_value: str
    resolved_value: Any


@dataclass
class MergePlan:
    """Field updates and conflicts for merging one listing into a property."""

    updates: dict[str, Any] = field(default_factory=dict)
    conflicts: list[FieldConflict] = field(default_factory=list)


def _is_missing(field_name: str, value: Any) -> bool:
    if value is None or (isinstance(value, str) and is_blank(value)):
        return True
    placeholder = PLACEHOLDER_VALUES.get(field_name)
    return placeholder is not None and value == placeholder


def merge_amenities(current: tuple[str, ...], new: tuple[str, ...]) -> tuple[str, ...]:
    """Union of amenity tags, first spelling wins, order of first appearance kept."""
    seen: dict[str, str] = {}
    for tag in (*current, *new):
        key = tag.strip().casefold()
        if key and key not in seen:
            seen[key] = tag.strip()
    return tuple(seen.values())


def plan_merge(listing: Listing, prop: Property) -> MergePlan:
    """Compare a listing against a property field by field.

    Rules per mergeable field:
    - listing value missing or blank: skip
    - property value missing, blank, or a creation placeholder: adopt the listing value
    - values match under the field's policy: nothing to do
    - otherwise: resolve via the field's policy and record a conflict

    Args:
        listing: Incoming listing.
        prop: Current canonical property.

    Returns:
        MergePlan with the field updates and conflicts. Counters are not included.
    """
    plan = MergePlan()

    for field_name, kind in MERGEABLE_FIELDS.items():
        new_value = getattr(listing, field_name)
        current_value = getattr(prop, field_name)

        if new_value is None or (isinstance(new_value, str) and is_blank(new_value)):
            continue

        if _is_missing(field_name, current_value):
            if new_value != current_value:
                plan.updates[field_name] = new_value
            continue

        policy = MERGE_POLICIES[kind]
        if policy.matches(current_value, new_value):
            continue

        resolved = policy.resolve(current_value, new_value)
        if resolved != current_value:
            plan.updates[field_name] = resolved

        plan.conflicts.append(
            FieldConflict(
                field=field_name,
                canonical_value=stringify_value(current_value),
                source_value=stringify_value(new_value),
                resolved_value=resolved,
            )
        )

    if listing.amenities:
        merged = merge_amenities(prop.amenities, listing.amenities)
        if merged != prop.amenities:
            plan.updates["amenities"] = merged

    return plan


def property_from_listing(listing: Listing) -> Property:
    """Build an unsaved Property seeded from a listing, filling required fields."""
    return Property(
        address=listing.address or listing.colonia or listing.city or NO_ADDRESS,
        interior_number=listing.interior_number,
        colonia=listing.colonia or UNKNOWN_COLONIA,
        city=listing.city or UNKNOWN_CITY,
        state=listing.state or UNKNOWN_STATE,
        postal_code=listing.postal_code,
        latitude=listing.latitude,
        longitude=listing.longitude,
        property_type=listing.property_type or PropertyType.OTHER,
        property_subtype=listing.property_subtype,
        bedrooms=listing.bedrooms,
        bathrooms=listing.bathrooms,
        half_bathrooms=listing.half_bathrooms,
        parking_spots=listing.parking_spots,
        lot_size_m2=listing.lot_size_m2,
        built_size_m2=listing.built_size_m2,
        age_years=listing.age_years,
        amenities=merge_amenities((), listing.amenities),
        listings_count=1,
        confidence_score=INITIAL_CONFIDENCE,
        status=PropertyStatus.ACTIVE,
    )


class PropertyMerger:
    """Create canonical properties from listings and merge listings into them.

    Callers wrap each call in ``storage.transaction()`` so the property write,
    the listing link and the conflict rows commit together.
    """

    def __init__(self, storage: DedupStorage) -> None:
        self._storage = storage

    async def create_property_from_listing(self, listing: Listing) -> Property:
        """Create a new Property seeded from a listing and link the listing to it.

        Args:
            listing: Persisted listing with no property yet.

        Returns:
            The saved Property.
        """
        if listing.id is None:
            raise ValueError("Listing must be persisted before creating a property")

        async with self._storage.transaction():
            prop = await self._storage.properties.create(property_from_listing(listing))
            assert prop.id is not None
            await self._storage.link_listing(listing.id, prop.id)

        logger.info("property_created", property_id=prop.id, listing_id=listing.id)
        return prop

    async def merge_listing_into_property(self, listing: Listing, prop: Property) -> Property:
        """Merge a listing's fields into an existing property.

        Conflicting fields are resolved per MERGE_POLICIES and every mismatch
        is recorded as a Conflict, whichever value wins.

        Args:
            listing: Persisted listing being linked.
            prop: Persisted target property.

        Returns:
            The property as stored after the merge.
        """
        if listing.id is None or prop.id is None:
            raise ValueError("Listing and property must be persisted before merging")

        plan = plan_merge(listing, prop)

        async with self._storage.transaction():
            linked = await self._storage.properties.count_listings(prop.id)
            if listing.property_id == prop.id:
                linked -= 1
            updates = dict(plan.updates)
            updates["listings_count"] = linked + 1
            updates["confidence_score"] = min(
                MAX_CONFIDENCE, prop.confidence_score + CONFIDENCE_STEP
            )

            merged = await self._storage.properties.update(prop.id, updates)
            await self._storage.link_listing(listing.id, prop.id)
            await self._storage.properties.add_conflicts(
                [
                    Conflict(
                        property_id=prop.id,
                        listing_id=listing.id,
                        field=c.field,
                        canonical_value=c.canonical_value,
                        source_value=c.source_value,
                    )
                    for c in plan.conflicts
                ]
            )

        for conflict in plan.conflicts:
            logger.info(
                "merge_conflict_recorded",
                property_id=prop.id,
                listing_id=listing.id,
                field=conflict.field,
                canonical_value=conflict.canonical_value,
                source_value=conflict.source_value,
            )

        logger.info(
            "listing_merged",
            property_id=prop.id,
            listing_id=listing.id,
            fields_updated=sorted(plan.updates),
            conflicts_count=len(plan.conflicts),
            listings_count=merged.listings_count,
        )
        return merged
