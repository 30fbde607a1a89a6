"""SQLite storage for listings, properties, and dedup records."""

from __future__ import annotations

import asyncio
import contextlib
from collections.abc import AsyncIterator
from datetime import UTC, datetime, timedelta
from pathlib import Path

import aiosqlite

from property_dedup.db.candidate_repo import CandidateStore
from property_dedup.db.geo_index import GeoIndex
from property_dedup.db.property_repo import PropertyRepository
from property_dedup.db.row_mappers import (
    LISTING_FACT_COLUMNS,
    listing_insert_values,
    row_to_listing,
)
from property_dedup.logging import get_logger
from property_dedup.models import CandidateStatus, DedupStats, DedupStatus, Listing

__all__ = ["DedupStorage"]

logger = get_logger(__name__)

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS properties (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        address TEXT NOT NULL,
        interior_number TEXT,
        colonia TEXT NOT NULL,
        city TEXT NOT NULL,
        state TEXT NOT NULL,
        postal_code TEXT,
        latitude REAL,
        longitude REAL,
        property_type TEXT NOT NULL,
        property_subtype TEXT,
        bedrooms INTEGER,
        bathrooms INTEGER,
        half_bathrooms INTEGER,
        parking_spots INTEGER,
        lot_size_m2 REAL,
        built_size_m2 REAL,
        age_years INTEGER,
        amenities TEXT NOT NULL DEFAULT '[]',
        listings_count INTEGER NOT NULL DEFAULT 1,
        confidence_score INTEGER NOT NULL DEFAULT 50
            CHECK (confidence_score BETWEEN 0 AND 100),
        status TEXT NOT NULL DEFAULT 'active',
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS listings (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        platform TEXT NOT NULL,
        external_id TEXT NOT NULL,
        latitude REAL,
        longitude REAL,
        address TEXT,
        interior_number TEXT,
        colonia TEXT,
        city TEXT,
        state TEXT,
        postal_code TEXT,
        property_type TEXT,
        property_subtype TEXT,
        bedrooms INTEGER,
        bathrooms INTEGER,
        half_bathrooms INTEGER,
        parking_spots INTEGER,
        lot_size_m2 REAL,
        built_size_m2 REAL,
        age_years INTEGER,
        amenities TEXT NOT NULL DEFAULT '[]',
        operations TEXT NOT NULL DEFAULT '[]',
        dedup_status TEXT NOT NULL DEFAULT 'pending',
        property_id INTEGER REFERENCES properties(id),
        dedup_checked_at TEXT,
        dedup_claimed_until TEXT,
        created_at TEXT NOT NULL,
        UNIQUE(platform, external_id)
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_listings_coordinates ON listings(latitude, longitude)",
    "CREATE INDEX IF NOT EXISTS idx_listings_dedup_status ON listings(dedup_status)",
    "CREATE INDEX IF NOT EXISTS idx_listings_property ON listings(property_id)",
    """
    CREATE TABLE IF NOT EXISTS dedup_candidates (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        listing_a_id INTEGER NOT NULL REFERENCES listings(id),
        listing_b_id INTEGER NOT NULL REFERENCES listings(id),
        status TEXT NOT NULL DEFAULT 'pending',
        distance_meters REAL,
        coordinate_score REAL NOT NULL,
        address_score REAL NOT NULL,
        features_score REAL NOT NULL,
        overall_score REAL NOT NULL,
        resolved_property_id INTEGER REFERENCES properties(id),
        resolved_at TEXT,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL,
        UNIQUE(listing_a_id, listing_b_id),
        CHECK (listing_a_id < listing_b_id)
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_candidates_status_score
    ON dedup_candidates(status, overall_score)
    """,
    "CREATE INDEX IF NOT EXISTS idx_candidates_listing_b ON dedup_candidates(listing_b_id)",
    """
    CREATE TABLE IF NOT EXISTS property_conflicts (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        property_id INTEGER NOT NULL REFERENCES properties(id),
        listing_id INTEGER NOT NULL REFERENCES listings(id),
        field TEXT NOT NULL,
        canonical_value TEXT NOT NULL,
        source_value TEXT NOT NULL,
        resolved INTEGER NOT NULL DEFAULT 0,
        resolution TEXT,
        resolved_at TEXT,
        created_at TEXT NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_conflicts_property ON property_conflicts(property_id)",
)


class DedupStorage:
    """SQLite-based storage shared by all dedup workers."""

    def __init__(self, db_path: str) -> None:
        """Initialize storage with database path.

        Args:
            db_path: Path to SQLite database file, or ":memory:" for in-memory.
        """
        self.db_path = db_path
        self._conn: aiosqlite.Connection | None = None
        self._tx_lock = asyncio.Lock()
        self._tx_owner: asyncio.Task[object] | None = None
        self._ensure_directory()
        self.geo = GeoIndex(self._get_connection)
        self.candidates = CandidateStore(self._get_connection, self.transaction)
        self.properties = PropertyRepository(self._get_connection, self.transaction)

    def _ensure_directory(self) -> None:
        """Ensure the directory for the database exists."""
        if self.db_path != ":memory:":
            path = Path(self.db_path)
            path.parent.mkdir(parents=True, exist_ok=True)

    async def _get_connection(self) -> aiosqlite.Connection:
        """Get or create the database connection.

        The connection runs in autocommit mode; multi-statement writes go
        through ``transaction()``.
        """
        if self._conn is None:
            self._conn = await aiosqlite.connect(self.db_path, isolation_level=None)
            self._conn.row_factory = aiosqlite.Row
            await self._conn.execute("PRAGMA journal_mode=WAL")
            await self._conn.execute("PRAGMA busy_timeout=5000")
            await self._conn.execute("PRAGMA synchronous=NORMAL")
            await self._conn.execute("PRAGMA foreign_keys=ON")
        return self._conn

    async def close(self) -> None:
        """Close the database connection."""
        if self._conn is not None:
            await self._conn.close()
            self._conn = None

    async def initialize(self) -> None:
        """Initialize the database schema."""
        async with self.transaction() as conn:
            for statement in _SCHEMA:
                await conn.execute(statement)

    @contextlib.asynccontextmanager
    async def transaction(self) -> AsyncIterator[aiosqlite.Connection]:
        """Run a block of statements as one write transaction.

        ``BEGIN IMMEDIATE`` takes SQLite's write lock up front, so passes in
        other processes wait (up to busy_timeout) instead of interleaving.
        Tasks in this process are serialized by a lock around the shared
        connection. Nested calls from the owning task join the outer
        transaction. Any exception, cancellation included, rolls back.
        """
        conn = await self._get_connection()
        task = asyncio.current_task()
        if task is not None and self._tx_owner is task:
            yield conn
            return

        async with self._tx_lock:
            self._tx_owner = task
            try:
                await conn.execute("BEGIN IMMEDIATE")
                try:
                    yield conn
                    await conn.execute("COMMIT")
                except BaseException:
                    # COMMIT may already have run if cancellation hit mid-flight
                    with contextlib.suppress(aiosqlite.OperationalError):
                        await conn.execute("ROLLBACK")
                    raise
            finally:
                self._tx_owner = None

    # ------------------------------------------------------------------
    # Listings
    # ------------------------------------------------------------------

    async def save_listing(self, listing: Listing) -> Listing:
        """Insert or refresh a scraped listing, keyed by (platform, external_id).

        Re-ingesting updates the scraped facts only; dedup state is untouched.

        Args:
            listing: Listing to save.

        Returns:
            The stored listing, with its id.
        """
        col_list = ", ".join(LISTING_FACT_COLUMNS)
        placeholders = ", ".join("?" for _ in LISTING_FACT_COLUMNS)
        updates = ", ".join(
            f"{column} = excluded.{column}"
            for column in LISTING_FACT_COLUMNS
            if column not in ("platform", "external_id")
        )
        async with self.transaction() as conn:
            await conn.execute(
                f"""
                INSERT INTO listings ({col_list}, created_at)
                VALUES ({placeholders}, ?)
                ON CONFLICT(platform, external_id) DO UPDATE SET {updates}
                """,
                [*listing_insert_values(listing), listing.created_at.isoformat()],
            )
            saved = await self.get_listing_by_source(listing.platform, listing.external_id)

        assert saved is not None
        logger.debug("listing_saved", listing_id=saved.id, unique_id=listing.unique_id)
        return saved

    async def get_listing(self, listing_id: int) -> Listing | None:
        """Get a listing by id."""
        conn = await self._get_connection()
        cursor = await conn.execute("SELECT * FROM listings WHERE id = ?", (listing_id,))
        row = await cursor.fetchone()
        return row_to_listing(row) if row else None

    async def get_listing_by_source(self, platform: str, external_id: str) -> Listing | None:
        """Get a listing by its platform identity."""
        conn = await self._get_connection()
        cursor = await conn.execute(
            "SELECT * FROM listings WHERE platform = ? AND external_id = ?",
            (platform, external_id),
        )
        row = await cursor.fetchone()
        return row_to_listing(row) if row else None

    async def get_listings_for_property(self, property_id: int) -> list[Listing]:
        """Get all listings linked to a property."""
        conn = await self._get_connection()
        cursor = await conn.execute(
            "SELECT * FROM listings WHERE property_id = ? ORDER BY id", (property_id,)
        )
        return [row_to_listing(row) for row in await cursor.fetchall()]

    async def link_listing(self, listing_id: int, property_id: int) -> None:
        """Point a listing at its canonical property."""
        async with self.transaction() as conn:
            await conn.execute(
                "UPDATE listings SET property_id = ? WHERE id = ?",
                (property_id, listing_id),
            )

    async def update_dedup_status(
        self,
        listing_ids: list[int],
        status: DedupStatus,
        *,
        checked_at: datetime | None = None,
    ) -> None:
        """Set dedup_status and dedup_checked_at on one or more listings.

        Args:
            listing_ids: Listings to update.
            status: New dedup status.
            checked_at: Check timestamp (default: now).
        """
        if not listing_ids:
            return
        checked = (checked_at or datetime.now(UTC)).isoformat()
        async with self.transaction() as conn:
            await conn.executemany(
                "UPDATE listings SET dedup_status = ?, dedup_checked_at = ? WHERE id = ?",
                [(status.value, checked, listing_id) for listing_id in listing_ids],
            )

    async def claim_pending_listings(self, limit: int, lease_seconds: int) -> list[int]:
        """Claim pending listings for a batch run.

        Claimed listings are withheld from other batch runs until the lease
        expires or the claim is released, so a listing is not enqueued twice.
        Expired leases (crashed workers) are claimable again.

        Args:
            limit: Maximum number of listings to claim.
            lease_seconds: How long the claim holds.

        Returns:
            Claimed listing ids, oldest first.
        """
        now = datetime.now(UTC)
        until = (now + timedelta(seconds=lease_seconds)).isoformat()
        async with self.transaction() as conn:
            cursor = await conn.execute(
                """
                SELECT id FROM listings
                WHERE dedup_status = ?
                  AND property_id IS NULL
                  AND (dedup_claimed_until IS NULL OR dedup_claimed_until < ?)
                ORDER BY id
                LIMIT ?
                """,
                (DedupStatus.PENDING.value, now.isoformat(), limit),
            )
            ids = [row["id"] for row in await cursor.fetchall()]
            await conn.executemany(
                "UPDATE listings SET dedup_claimed_until = ? WHERE id = ?",
                [(until, listing_id) for listing_id in ids],
            )
        return ids

    async def release_claims(self, listing_ids: list[int]) -> None:
        """Release batch claims so the listings can be handed out again."""
        if not listing_ids:
            return
        async with self.transaction() as conn:
            await conn.executemany(
                "UPDATE listings SET dedup_claimed_until = NULL WHERE id = ?",
                [(listing_id,) for listing_id in listing_ids],
            )

    # ------------------------------------------------------------------
    # Stats
    # ------------------------------------------------------------------

    async def get_stats(self) -> DedupStats:
        """Count listings per dedup status plus open review work."""
        conn = await self._get_connection()
        cursor = await conn.execute(
            "SELECT dedup_status, COUNT(*) AS n FROM listings GROUP BY dedup_status"
        )
        by_status = {row["dedup_status"]: row["n"] for row in await cursor.fetchall()}
        candidate_counts = await self.candidates.count_by_status()
        unresolved = await self.properties.count_unresolved_conflicts()

        return DedupStats(
            pending=by_status.get(DedupStatus.PENDING.value, 0),
            new=by_status.get(DedupStatus.NEW.value, 0),
            matched=by_status.get(DedupStatus.MATCHED.value, 0),
            needs_review=by_status.get(DedupStatus.NEEDS_REVIEW.value, 0),
            candidates_awaiting_review=candidate_counts.get(CandidateStatus.NEEDS_REVIEW, 0),
            unresolved_conflicts=unresolved,
        )
