"""Tests for property creation and listing merges."""

from collections.abc import Awaitable, Callable

import pytest

from property_dedup.db import DedupStorage
from property_dedup.dedup.merging import (
    NO_ADDRESS,
    UNKNOWN_COLONIA,
    UNKNOWN_STATE,
    PropertyMerger,
    decimal_places,
    merge_amenities,
    plan_merge,
    property_from_listing,
    stringify_value,
)
from property_dedup.models import Listing, PropertyType

SaveListing = Callable[..., Awaitable[Listing]]


class TestStringifyValue:
    @pytest.mark.parametrize(
        ("value", "expected"),
        [
            (None, ""),
            (PropertyType.HOUSE, "house"),
            (3, "3"),
            (80.0, "80"),
            (80.5, "80.5"),
            (True, "true"),
            ("Americana", "Americana"),
            (("alberca", "gym"), '["alberca", "gym"]'),
            (["terraza"], '["terraza"]'),
        ],
    )
    def test_snapshot(self, value: object, expected: str) -> None:
        assert stringify_value(value) == expected


class TestDecimalPlaces:
    @pytest.mark.parametrize(
        ("value", "expected"),
        [(20.0, 0), (20.6, 1), (20.6597, 4), (-103.34961, 5), (20.6597123, 7)],
    )
    def test_counts_significant_decimals(self, value: float, expected: int) -> None:
        assert decimal_places(value) == expected


class TestMergeAmenities:
    def test_union_keeps_first_spelling(self) -> None:
        merged = merge_amenities(("Alberca", "Gym"), ("alberca", "Terraza"))
        assert merged == ("Alberca", "Gym", "Terraza")

    def test_blank_tags_dropped(self) -> None:
        assert merge_amenities((), ("  ", "Gym ")) == ("Gym",)


class TestPropertyFromListing:
    def test_copies_listing_fields(self, make_listing: Callable[..., Listing]) -> None:
        prop = property_from_listing(make_listing(id=1, bedrooms=3))
        assert prop.id is None
        assert prop.address == "Av. Chapultepec 100"
        assert prop.bedrooms == 3
        assert prop.property_type == PropertyType.APARTMENT
        assert prop.listings_count == 1
        assert prop.confidence_score == 50

    def test_address_falls_back_to_colonia(self, make_listing: Callable[..., Listing]) -> None:
        prop = property_from_listing(make_listing(address=None, colonia="Americana"))
        assert prop.address == "Americana"

    def test_address_falls_back_to_city(self, make_listing: Callable[..., Listing]) -> None:
        prop = property_from_listing(make_listing(address=None, colonia=None))
        assert prop.address == "Guadalajara"
        assert prop.colonia == UNKNOWN_COLONIA

    def test_placeholders_for_sparse_listing(self, make_listing: Callable[..., Listing]) -> None:
        prop = property_from_listing(
            make_listing(address=None, colonia=None, city=None, state=None, property_type=None)
        )
        assert prop.address == NO_ADDRESS
        assert prop.state == UNKNOWN_STATE
        assert prop.property_type == PropertyType.OTHER


class TestPlanMerge:
    def test_identical_listing_changes_nothing(
        self, make_listing: Callable[..., Listing]
    ) -> None:
        prop = property_from_listing(make_listing())
        plan = plan_merge(make_listing(), prop)
        assert plan.updates == {}
        assert plan.conflicts == []

    def test_bedroom_conflict_keeps_current(self, make_listing: Callable[..., Listing]) -> None:
        prop = property_from_listing(make_listing(bedrooms=3))
        plan = plan_merge(make_listing(bedrooms=2), prop)
        assert "bedrooms" not in plan.updates
        [conflict] = plan.conflicts
        assert conflict.field == "bedrooms"
        assert conflict.canonical_value == "3"
        assert conflict.source_value == "2"

    def test_zero_count_replaced_by_non_zero(self, make_listing: Callable[..., Listing]) -> None:
        prop = property_from_listing(make_listing(parking_spots=0))
        plan = plan_merge(make_listing(parking_spots=2), prop)
        assert plan.updates["parking_spots"] == 2
        assert [c.field for c in plan.conflicts] == ["parking_spots"]

    def test_size_within_tolerance_matches(self, make_listing: Callable[..., Listing]) -> None:
        prop = property_from_listing(make_listing(built_size_m2=80.0))
        plan = plan_merge(make_listing(built_size_m2=82.0), prop)
        assert plan.conflicts == []

    def test_size_conflict_takes_larger(self, make_listing: Callable[..., Listing]) -> None:
        prop = property_from_listing(make_listing(built_size_m2=80.0))
        plan = plan_merge(make_listing(built_size_m2=90.0), prop)
        assert plan.updates["built_size_m2"] == 90.0
        [conflict] = plan.conflicts
        assert (conflict.canonical_value, conflict.source_value) == ("80", "90")

    def test_text_compared_case_insensitively(
        self, make_listing: Callable[..., Listing]
    ) -> None:
        prop = property_from_listing(make_listing(city="Guadalajara"))
        plan = plan_merge(make_listing(city="  GUADALAJARA "), prop)
        assert plan.conflicts == []

    def test_text_conflict_takes_longer(self, make_listing: Callable[..., Listing]) -> None:
        prop = property_from_listing(make_listing(address="Av. Chapultepec 100"))
        longer = "Av. Chapultepec 100, Col. Americana"
        plan = plan_merge(make_listing(address=longer), prop)
        assert plan.updates["address"] == longer
        assert [c.field for c in plan.conflicts] == ["address"]

    def test_coordinates_within_tolerance(self, make_listing: Callable[..., Listing]) -> None:
        prop = property_from_listing(make_listing(latitude=20.6597))
        plan = plan_merge(make_listing(latitude=20.65975), prop)
        assert plan.conflicts == []

    def test_coordinate_conflict_prefers_precision(
        self, make_listing: Callable[..., Listing]
    ) -> None:
        prop = property_from_listing(make_listing(latitude=20.6597))
        plan = plan_merge(make_listing(latitude=20.66071), prop)
        assert plan.updates["latitude"] == 20.66071
        assert [c.field for c in plan.conflicts] == ["latitude"]

    def test_coordinate_conflict_same_precision_keeps_current(
        self, make_listing: Callable[..., Listing]
    ) -> None:
        prop = property_from_listing(make_listing(latitude=20.6597))
        plan = plan_merge(make_listing(latitude=20.6607), prop)
        assert "latitude" not in plan.updates
        assert [c.field for c in plan.conflicts] == ["latitude"]

    def test_default_policy_keeps_current(self, make_listing: Callable[..., Listing]) -> None:
        prop = property_from_listing(make_listing(postal_code="44160"))
        plan = plan_merge(make_listing(postal_code="44100"), prop)
        assert "postal_code" not in plan.updates
        [conflict] = plan.conflicts
        assert (conflict.canonical_value, conflict.source_value) == ("44160", "44100")

    def test_missing_property_value_adopted(self, make_listing: Callable[..., Listing]) -> None:
        prop = property_from_listing(make_listing(age_years=None))
        plan = plan_merge(make_listing(age_years=5), prop)
        assert plan.updates == {"age_years": 5}
        assert plan.conflicts == []

    def test_placeholders_adopted_without_conflict(
        self, make_listing: Callable[..., Listing]
    ) -> None:
        prop = property_from_listing(make_listing(colonia=None, property_type=None))
        plan = plan_merge(make_listing(colonia="Col. Americana"), prop)
        assert plan.updates["colonia"] == "Col. Americana"
        assert plan.updates["property_type"] == PropertyType.APARTMENT
        assert plan.conflicts == []

    def test_missing_listing_value_skipped(self, make_listing: Callable[..., Listing]) -> None:
        prop = property_from_listing(make_listing(bedrooms=3))
        plan = plan_merge(make_listing(bedrooms=None), prop)
        assert plan.updates == {}
        assert plan.conflicts == []

    def test_blank_listing_value_skipped(self, make_listing: Callable[..., Listing]) -> None:
        prop = property_from_listing(make_listing(postal_code="44160"))
        plan = plan_merge(make_listing(postal_code="  "), prop)
        assert plan.conflicts == []

    def test_blank_property_value_adopted(self, make_listing: Callable[..., Listing]) -> None:
        prop = property_from_listing(make_listing(property_subtype=""))
        plan = plan_merge(make_listing(property_subtype="Departamento"), prop)
        assert plan.updates == {"property_subtype": "Departamento"}
        assert plan.conflicts == []

    def test_amenities_unioned(self, make_listing: Callable[..., Listing]) -> None:
        prop = property_from_listing(make_listing(amenities=("Alberca",)))
        plan = plan_merge(make_listing(amenities=("gym", "alberca")), prop)
        assert plan.updates["amenities"] == ("Alberca", "gym")
        assert plan.conflicts == []


class TestPropertyMerger:
    @pytest.fixture
    def merger(self, storage: DedupStorage) -> PropertyMerger:
        return PropertyMerger(storage)

    @pytest.mark.asyncio
    async def test_create_links_listing(
        self, storage: DedupStorage, merger: PropertyMerger, save_listing: SaveListing
    ) -> None:
        listing = await save_listing()
        prop = await merger.create_property_from_listing(listing)

        assert prop.id is not None
        assert prop.listings_count == 1
        assert prop.confidence_score == 50
        stored = await storage.get_listing(listing.id or 0)
        assert stored is not None
        assert stored.property_id == prop.id

    @pytest.mark.asyncio
    async def test_create_requires_persisted_listing(
        self, merger: PropertyMerger, make_listing: Callable[..., Listing]
    ) -> None:
        with pytest.raises(ValueError, match="persisted"):
            await merger.create_property_from_listing(make_listing())

    @pytest.mark.asyncio
    async def test_merge_records_conflict_and_bumps_counters(
        self, storage: DedupStorage, merger: PropertyMerger, save_listing: SaveListing
    ) -> None:
        first = await save_listing(bedrooms=3)
        second = await save_listing(platform="vivanuncios", bedrooms=2)
        prop = await merger.create_property_from_listing(first)

        merged = await merger.merge_listing_into_property(second, prop)

        assert merged.listings_count == 2
        assert merged.confidence_score == 60
        assert merged.bedrooms == 3
        [conflict] = await storage.properties.get_conflicts(merged.id or 0)
        assert conflict.field == "bedrooms"
        assert conflict.listing_id == second.id
        assert conflict.canonical_value == "3"
        assert conflict.source_value == "2"
        assert conflict.resolved is False
        linked = await storage.get_listings_for_property(merged.id or 0)
        assert [listing.id for listing in linked] == [first.id, second.id]

    @pytest.mark.asyncio
    async def test_confidence_capped_at_100(
        self, storage: DedupStorage, merger: PropertyMerger, save_listing: SaveListing
    ) -> None:
        first = await save_listing()
        second = await save_listing(platform="vivanuncios")
        prop = await merger.create_property_from_listing(first)
        prop = await storage.properties.update(prop.id or 0, {"confidence_score": 95})

        merged = await merger.merge_listing_into_property(second, prop)

        assert merged.confidence_score == 100

    @pytest.mark.asyncio
    async def test_remerging_linked_listing_keeps_count(
        self, storage: DedupStorage, merger: PropertyMerger, save_listing: SaveListing
    ) -> None:
        first = await save_listing()
        second = await save_listing(platform="vivanuncios")
        prop = await merger.create_property_from_listing(first)
        prop = await merger.merge_listing_into_property(second, prop)

        relinked = await storage.get_listing(second.id or 0)
        assert relinked is not None
        again = await merger.merge_listing_into_property(relinked, prop)

        assert again.listings_count == 2

    @pytest.mark.asyncio
    async def test_merge_fills_placeholders(
        self, storage: DedupStorage, merger: PropertyMerger, save_listing: SaveListing
    ) -> None:
        first = await save_listing(colonia=None, state=None)
        second = await save_listing(platform="vivanuncios")
        prop = await merger.create_property_from_listing(first)
        assert prop.colonia == UNKNOWN_COLONIA

        merged = await merger.merge_listing_into_property(second, prop)

        assert merged.colonia == "Col. Americana"
        assert merged.state == "Jalisco"
        assert await storage.properties.get_conflicts(merged.id or 0) == []
