"""Candidate store: one scored record per unordered listing pair."""

from __future__ import annotations

from collections.abc import Callable, Coroutine
from contextlib import AbstractAsyncContextManager
from datetime import UTC, datetime
from typing import Any

import aiosqlite

from property_dedup.db.row_mappers import row_to_candidate
from property_dedup.logging import get_logger
from property_dedup.models import Candidate, CandidateStatus

logger = get_logger(__name__)


def canonical_pair(listing_id1: int, listing_id2: int) -> tuple[int, int]:
    """Order a listing pair so the lower id comes first."""
    if listing_id1 == listing_id2:
        raise ValueError("A candidate pair needs two distinct listings")
    return (listing_id1, listing_id2) if listing_id1 < listing_id2 else (listing_id2, listing_id1)


class CandidateStore:
    """Database operations for dedup candidates."""

    def __init__(
        self,
        get_connection: Callable[[], Coroutine[Any, Any, aiosqlite.Connection]],
        transaction: Callable[[], AbstractAsyncContextManager[aiosqlite.Connection]],
    ) -> None:
        self._get_connection = get_connection
        self._transaction = transaction

    async def get(self, candidate_id: int) -> Candidate | None:
        """Get a candidate by id."""
        conn = await self._get_connection()
        cursor = await conn.execute(
            "SELECT * FROM dedup_candidates WHERE id = ?", (candidate_id,)
        )
        row = await cursor.fetchone()
        return row_to_candidate(row) if row else None

    async def get_for_pair(self, listing_id1: int, listing_id2: int) -> Candidate | None:
        """Get the candidate for a listing pair, in either order."""
        listing_a_id, listing_b_id = canonical_pair(listing_id1, listing_id2)
        conn = await self._get_connection()
        cursor = await conn.execute(
            "SELECT * FROM dedup_candidates WHERE listing_a_id = ? AND listing_b_id = ?",
            (listing_a_id, listing_b_id),
        )
        row = await cursor.fetchone()
        return row_to_candidate(row) if row else None

    async def get_or_create(self, candidate: Candidate) -> tuple[Candidate, bool]:
        """Insert a candidate unless its pair already has one.

        A unique-constraint clash (another worker got there first) is treated
        as "already exists": the stored record is returned unchanged.

        Args:
            candidate: Unsaved, canonically ordered candidate.

        Returns:
            Tuple of (stored candidate, whether this call created it).
        """
        now = datetime.now(UTC).isoformat()
        async with self._transaction() as conn:
            cursor = await conn.execute(
                """
                INSERT INTO dedup_candidates (
                    listing_a_id, listing_b_id, status, distance_meters,
                    coordinate_score, address_score, features_score, overall_score,
                    created_at, updated_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(listing_a_id, listing_b_id) DO NOTHING
                """,
                (
                    candidate.listing_a_id,
                    candidate.listing_b_id,
                    candidate.status.value,
                    candidate.distance_meters,
                    candidate.coordinate_score,
                    candidate.address_score,
                    candidate.features_score,
                    candidate.overall_score,
                    now,
                    now,
                ),
            )
            created = cursor.rowcount == 1
            stored = await self.get_for_pair(candidate.listing_a_id, candidate.listing_b_id)

        assert stored is not None
        if created:
            logger.info(
                "candidate_created",
                candidate_id=stored.id,
                listing_a_id=stored.listing_a_id,
                listing_b_id=stored.listing_b_id,
                overall_score=stored.overall_score,
                status=stored.status.value,
            )
        return stored, created

    async def list_for_listing(self, listing_id: int) -> list[Candidate]:
        """All candidates involving a listing, best score first."""
        conn = await self._get_connection()
        cursor = await conn.execute(
            """
            SELECT * FROM dedup_candidates
            WHERE listing_a_id = ? OR listing_b_id = ?
            ORDER BY overall_score DESC, id
            """,
            (listing_id, listing_id),
        )
        return [row_to_candidate(row) for row in await cursor.fetchall()]

    async def list_for_review(self, limit: int = 50) -> list[Candidate]:
        """Candidates awaiting human or AI review, best score first."""
        conn = await self._get_connection()
        cursor = await conn.execute(
            """
            SELECT * FROM dedup_candidates
            WHERE status = ?
            ORDER BY overall_score DESC, id
            LIMIT ?
            """,
            (CandidateStatus.NEEDS_REVIEW.value, limit),
        )
        return [row_to_candidate(row) for row in await cursor.fetchall()]

    async def _set_resolution(
        self,
        candidate_id: int,
        status: CandidateStatus,
        property_id: int | None,
    ) -> Candidate:
        now = datetime.now(UTC).isoformat()
        async with self._transaction() as conn:
            await conn.execute(
                """
                UPDATE dedup_candidates
                SET status = ?, resolved_property_id = ?, resolved_at = ?, updated_at = ?
                WHERE id = ?
                """,
                (status.value, property_id, now, now, candidate_id),
            )
            updated = await self.get(candidate_id)
        if updated is None:
            raise LookupError(f"Candidate {candidate_id} does not exist")
        return updated

    async def mark_resolved(self, candidate_id: int, property_id: int) -> Candidate:
        """Record a candidate as a confirmed match resolved into a property."""
        return await self._set_resolution(
            candidate_id, CandidateStatus.CONFIRMED_MATCH, property_id
        )

    async def mark_rejected(self, candidate_id: int) -> Candidate:
        """Record a candidate as two different properties."""
        return await self._set_resolution(
            candidate_id, CandidateStatus.CONFIRMED_DIFFERENT, None
        )

    async def count_by_status(self) -> dict[CandidateStatus, int]:
        """Count candidates per status."""
        conn = await self._get_connection()
        cursor = await conn.execute(
            "SELECT status, COUNT(*) AS n FROM dedup_candidates GROUP BY status"
        )
        return {CandidateStatus(row["status"]): row["n"] for row in await cursor.fetchall()}
