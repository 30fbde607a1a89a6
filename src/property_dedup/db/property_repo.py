"""Property repository: canonical properties and their merge conflicts."""

from __future__ import annotations

import json
from collections.abc import Callable, Coroutine
from contextlib import AbstractAsyncContextManager
from datetime import UTC, datetime
from typing import Any

import aiosqlite

from property_dedup.db.row_mappers import (
    PROPERTY_COLUMNS,
    encode_value,
    property_insert_values,
    row_to_conflict,
    row_to_property,
)
from property_dedup.logging import get_logger
from property_dedup.models import Conflict, Property

logger = get_logger(__name__)


class PropertyRepository:
    """Database operations for properties and property conflicts."""

    def __init__(
        self,
        get_connection: Callable[[], Coroutine[Any, Any, aiosqlite.Connection]],
        transaction: Callable[[], AbstractAsyncContextManager[aiosqlite.Connection]],
    ) -> None:
        self._get_connection = get_connection
        self._transaction = transaction

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------

    async def create(self, prop: Property) -> Property:
        """Insert a new property.

        Returns:
            The stored property, with its id.
        """
        now = datetime.now(UTC).isoformat()
        col_list = ", ".join(PROPERTY_COLUMNS)
        placeholders = ", ".join("?" for _ in PROPERTY_COLUMNS)
        async with self._transaction() as conn:
            cursor = await conn.execute(
                f"""
                INSERT INTO properties ({col_list}, created_at, updated_at)
                VALUES ({placeholders}, ?, ?)
                """,
                [*property_insert_values(prop), now, now],
            )
            property_id = cursor.lastrowid
            assert property_id is not None
            created = await self.get(property_id)

        assert created is not None
        return created

    async def get(self, property_id: int) -> Property | None:
        """Get a property by id."""
        conn = await self._get_connection()
        cursor = await conn.execute("SELECT * FROM properties WHERE id = ?", (property_id,))
        row = await cursor.fetchone()
        return row_to_property(row) if row else None

    async def update(self, property_id: int, updates: dict[str, Any]) -> Property:
        """Apply column updates to a property.

        Args:
            property_id: Property to update.
            updates: Column name/value pairs; names must be property columns.

        Returns:
            The property as stored after the update.
        """
        unknown = set(updates) - set(PROPERTY_COLUMNS)
        if unknown:
            raise ValueError(f"Not property columns: {sorted(unknown)}")

        async with self._transaction() as conn:
            if updates:
                set_clauses = ", ".join(f"{column} = ?" for column in updates)
                values = [encode_value(v) for v in updates.values()]
                values.extend([datetime.now(UTC).isoformat(), property_id])
                await conn.execute(
                    f"UPDATE properties SET {set_clauses}, updated_at = ? WHERE id = ?",
                    values,
                )
            updated = await self.get(property_id)

        if updated is None:
            raise LookupError(f"Property {property_id} does not exist")
        return updated

    async def count_listings(self, property_id: int) -> int:
        """Number of listings currently linked to a property."""
        conn = await self._get_connection()
        cursor = await conn.execute(
            "SELECT COUNT(*) AS n FROM listings WHERE property_id = ?", (property_id,)
        )
        row = await cursor.fetchone()
        return int(row["n"]) if row else 0

    async def get_all(self) -> list[Property]:
        """Get all properties, oldest first."""
        conn = await self._get_connection()
        cursor = await conn.execute("SELECT * FROM properties ORDER BY id")
        return [row_to_property(row) for row in await cursor.fetchall()]

    # ------------------------------------------------------------------
    # Conflicts
    # ------------------------------------------------------------------

    async def add_conflicts(self, conflicts: list[Conflict]) -> None:
        """Persist merge conflicts for later review."""
        if not conflicts:
            return
        now = datetime.now(UTC).isoformat()
        async with self._transaction() as conn:
            await conn.executemany(
                """
                INSERT INTO property_conflicts
                (property_id, listing_id, field, canonical_value, source_value,
                 resolved, created_at)
                VALUES (?, ?, ?, ?, ?, 0, ?)
                """,
                [
                    (
                        c.property_id,
                        c.listing_id,
                        c.field,
                        c.canonical_value,
                        c.source_value,
                        now,
                    )
                    for c in conflicts
                ],
            )

    async def get_conflicts(
        self, property_id: int, *, unresolved_only: bool = False
    ) -> list[Conflict]:
        """Get conflicts recorded for a property, oldest first."""
        conn = await self._get_connection()
        query = "SELECT * FROM property_conflicts WHERE property_id = ?"
        if unresolved_only:
            query += " AND resolved = 0"
        cursor = await conn.execute(query + " ORDER BY id", (property_id,))
        return [row_to_conflict(row) for row in await cursor.fetchall()]

    async def resolve_conflict(
        self, conflict_id: int, resolution: dict[str, Any]
    ) -> Conflict | None:
        """Mark a conflict resolved with the reviewer's resolution payload.

        Returns:
            The updated conflict, or None if it does not exist.
        """
        async with self._transaction() as conn:
            await conn.execute(
                """
                UPDATE property_conflicts
                SET resolved = 1, resolution = ?, resolved_at = ?
                WHERE id = ?
                """,
                (json.dumps(resolution, default=str), datetime.now(UTC).isoformat(), conflict_id),
            )
            cursor = await conn.execute(
                "SELECT * FROM property_conflicts WHERE id = ?", (conflict_id,)
            )
            row = await cursor.fetchone()

        if row is None:
            return None
        logger.info("conflict_resolved", conflict_id=conflict_id, field=row["field"])
        return row_to_conflict(row)

    async def count_unresolved_conflicts(self) -> int:
        """Number of conflicts still awaiting review."""
        conn = await self._get_connection()
        cursor = await conn.execute(
            "SELECT COUNT(*) AS n FROM property_conflicts WHERE resolved = 0"
        )
        row = await cursor.fetchone()
        return int(row["n"]) if row else 0
