"""Tests for dedup storage with SQLite."""

from collections.abc import Awaitable, Callable
from decimal import Decimal

import pytest

from property_dedup.db import DedupStorage
from property_dedup.models import (
    DedupStatus,
    Listing,
    Operation,
    OperationType,
    PropertyType,
)

SaveListing = Callable[..., Awaitable[Listing]]


class TestInitialize:
    @pytest.mark.asyncio
    async def test_initialize_is_idempotent(self, storage: DedupStorage) -> None:
        await storage.initialize()
        assert (await storage.get_stats()).pending == 0


class TestSaveListing:
    @pytest.mark.asyncio
    async def test_save_assigns_id(
        self, storage: DedupStorage, make_listing: Callable[..., Listing]
    ) -> None:
        saved = await storage.save_listing(make_listing(external_id="abc"))
        assert saved.id is not None
        assert saved.dedup_status == DedupStatus.PENDING
        assert saved.property_id is None

    @pytest.mark.asyncio
    async def test_round_trips_structured_fields(
        self, storage: DedupStorage, make_listing: Callable[..., Listing]
    ) -> None:
        listing = make_listing(
            amenities=("Alberca", "Gym"),
            operations=(
                Operation(type=OperationType.RENT, price=Decimal("15000.50")),
                Operation(type=OperationType.SALE, price=Decimal("3000000"), currency="usd"),
            ),
            property_type=PropertyType.HOUSE,
            lot_size_m2=120.5,
        )

        saved = await storage.save_listing(listing)
        loaded = await storage.get_listing(saved.id or 0)

        assert loaded is not None
        assert loaded.amenities == ("Alberca", "Gym")
        assert loaded.operations == listing.operations
        assert loaded.operations[1].currency == "USD"
        assert loaded.property_type == PropertyType.HOUSE
        assert loaded.lot_size_m2 == 120.5
        assert loaded.latitude == listing.latitude

    @pytest.mark.asyncio
    async def test_reingest_updates_facts_only(
        self, storage: DedupStorage, make_listing: Callable[..., Listing]
    ) -> None:
        saved = await storage.save_listing(make_listing(external_id="abc", bedrooms=2))
        await storage.update_dedup_status([saved.id or 0], DedupStatus.NEW)

        again = await storage.save_listing(make_listing(external_id="abc", bedrooms=3))

        assert again.id == saved.id
        assert again.bedrooms == 3
        assert again.dedup_status == DedupStatus.NEW

    @pytest.mark.asyncio
    async def test_same_external_id_on_other_platform_is_distinct(
        self, storage: DedupStorage, make_listing: Callable[..., Listing]
    ) -> None:
        a = await storage.save_listing(make_listing(external_id="abc"))
        b = await storage.save_listing(make_listing(external_id="abc", platform="vivanuncios"))
        assert a.id != b.id

    @pytest.mark.asyncio
    async def test_get_by_source(self, storage: DedupStorage, save_listing: SaveListing) -> None:
        saved = await save_listing(external_id="xyz")
        found = await storage.get_listing_by_source("inmuebles24", "xyz")
        assert found is not None
        assert found.id == saved.id
        assert await storage.get_listing_by_source("inmuebles24", "missing") is None

    @pytest.mark.asyncio
    async def test_get_missing_listing(self, storage: DedupStorage) -> None:
        assert await storage.get_listing(12345) is None


class TestTransaction:
    @pytest.mark.asyncio
    async def test_exception_rolls_back(
        self, storage: DedupStorage, make_listing: Callable[..., Listing]
    ) -> None:
        with pytest.raises(RuntimeError):
            async with storage.transaction():
                await storage.save_listing(make_listing(external_id="doomed"))
                raise RuntimeError("boom")

        assert await storage.get_listing_by_source("inmuebles24", "doomed") is None

    @pytest.mark.asyncio
    async def test_nested_calls_join_outer(
        self, storage: DedupStorage, make_listing: Callable[..., Listing]
    ) -> None:
        async with storage.transaction():
            first = await storage.save_listing(make_listing())
            async with storage.transaction():
                await storage.update_dedup_status([first.id or 0], DedupStatus.NEW)

        stored = await storage.get_listing(first.id or 0)
        assert stored is not None
        assert stored.dedup_status == DedupStatus.NEW

    @pytest.mark.asyncio
    async def test_usable_after_rollback(
        self, storage: DedupStorage, make_listing: Callable[..., Listing]
    ) -> None:
        with pytest.raises(ValueError):
            async with storage.transaction():
                raise ValueError("early")

        saved = await storage.save_listing(make_listing())
        assert saved.id is not None


class TestDedupStatus:
    @pytest.mark.asyncio
    async def test_update_many(self, storage: DedupStorage, save_listing: SaveListing) -> None:
        a = await save_listing()
        b = await save_listing()

        await storage.update_dedup_status([a.id or 0, b.id or 0], DedupStatus.MATCHED)

        for listing_id in (a.id, b.id):
            stored = await storage.get_listing(listing_id or 0)
            assert stored is not None
            assert stored.dedup_status == DedupStatus.MATCHED
            assert stored.dedup_checked_at is not None

    @pytest.mark.asyncio
    async def test_empty_update_is_noop(self, storage: DedupStorage) -> None:
        await storage.update_dedup_status([], DedupStatus.NEW)


class TestClaims:
    @pytest.mark.asyncio
    async def test_claim_respects_limit_and_order(
        self, storage: DedupStorage, save_listing: SaveListing
    ) -> None:
        ids = [(await save_listing()).id for _ in range(3)]

        assert await storage.claim_pending_listings(2, 300) == ids[:2]
        assert await storage.claim_pending_listings(2, 300) == ids[2:]
        assert await storage.claim_pending_listings(2, 300) == []

    @pytest.mark.asyncio
    async def test_release_makes_claimable(
        self, storage: DedupStorage, save_listing: SaveListing
    ) -> None:
        listing = await save_listing()
        claimed = await storage.claim_pending_listings(10, 300)

        await storage.release_claims(claimed)

        assert await storage.claim_pending_listings(10, 300) == [listing.id]

    @pytest.mark.asyncio
    async def test_expired_lease_is_reclaimable(
        self, storage: DedupStorage, save_listing: SaveListing
    ) -> None:
        listing = await save_listing()
        await storage.claim_pending_listings(10, -1)

        assert await storage.claim_pending_listings(10, 300) == [listing.id]

    @pytest.mark.asyncio
    async def test_only_pending_listings_claimed(
        self, storage: DedupStorage, save_listing: SaveListing
    ) -> None:
        done = await save_listing()
        review = await save_listing()
        pending = await save_listing()
        await storage.update_dedup_status([done.id or 0], DedupStatus.NEW)
        await storage.update_dedup_status([review.id or 0], DedupStatus.NEEDS_REVIEW)

        assert await storage.claim_pending_listings(10, 300) == [pending.id]


class TestStats:
    @pytest.mark.asyncio
    async def test_counts_per_status(
        self, storage: DedupStorage, save_listing: SaveListing
    ) -> None:
        listings = [await save_listing() for _ in range(4)]
        await storage.update_dedup_status([listings[0].id or 0], DedupStatus.NEW)
        await storage.update_dedup_status(
            [listings[1].id or 0, listings[2].id or 0], DedupStatus.MATCHED
        )

        stats = await storage.get_stats()

        assert stats.pending == 1
        assert stats.new == 1
        assert stats.matched == 2
        assert stats.needs_review == 0
        assert stats.to_dict()["candidates_awaiting_review"] == 0
        assert stats.unresolved_conflicts == 0
