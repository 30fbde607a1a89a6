"""Dedup task runner: per-listing timeout, retry with backoff, batch scheduling."""

import asyncio
from dataclasses import dataclass, field

import aiosqlite

from property_dedup.config import Settings
from property_dedup.db.storage import DedupStorage
from property_dedup.dedup.matching import (
    DedupOutcome,
    ListingNotFoundError,
    MatchDecisionEngine,
)
from property_dedup.logging import get_logger

logger = get_logger(__name__)

# "database is locked" and pass timeouts are worth another attempt
_RETRYABLE_ERRORS = (aiosqlite.OperationalError, TimeoutError)


class DedupTaskFailedError(Exception):
    """Raised when a listing's dedup pass fails on every attempt."""

    def __init__(self, listing_id: int, attempts: int) -> None:
        super().__init__(f"Dedup of listing {listing_id} failed after {attempts} attempts")
        self.listing_id = listing_id
        self.attempts = attempts


@dataclass
class BatchResult:
    """Summary of one batch run."""

    claimed: int = 0
    outcomes: list[DedupOutcome] = field(default_factory=list)
    failed: list[int] = field(default_factory=list)
    dropped: list[int] = field(default_factory=list)

    @property
    def processed(self) -> int:
        return len(self.outcomes)


class DedupWorker:
    """Run dedup passes the way a queue worker would.

    Each pass is bounded by ``task_timeout_seconds``. Lock contention and
    timeouts are retried up to ``task_max_attempts`` times with exponential
    backoff; the pass's transaction rolls back on every failure, so the
    listing keeps its previous dedup_status.
    """

    def __init__(
        self,
        storage: DedupStorage,
        settings: Settings,
        engine: MatchDecisionEngine | None = None,
    ) -> None:
        self._storage = storage
        self._settings = settings
        self._engine = engine or MatchDecisionEngine(storage, settings.get_dedup_config())

    @property
    def engine(self) -> MatchDecisionEngine:
        return self._engine

    async def process(self, listing_id: int) -> DedupOutcome | None:
        """Run one listing's dedup pass with timeout and retries.

        Args:
            listing_id: Listing to process.

        Returns:
            The pass outcome, or None if the listing no longer exists.

        Raises:
            DedupTaskFailedError: If every attempt failed with a retryable error.
        """
        max_attempts = self._settings.task_max_attempts
        for attempt in range(max_attempts):
            try:
                async with asyncio.timeout(self._settings.task_timeout_seconds):
                    return await self._engine.process_listing(listing_id)
            except ListingNotFoundError:
                logger.warning("dedup_task_dropped", listing_id=listing_id, reason="not_found")
                return None
            except _RETRYABLE_ERRORS as e:
                if attempt + 1 >= max_attempts:
                    logger.error(
                        "dedup_task_failed",
                        listing_id=listing_id,
                        attempts=max_attempts,
                        error=str(e) or type(e).__name__,
                    )
                    raise DedupTaskFailedError(listing_id, max_attempts) from e
                delay = self._settings.task_retry_base_delay * (2**attempt)
                logger.warning(
                    "dedup_task_retrying",
                    listing_id=listing_id,
                    attempt=attempt + 1,
                    delay=delay,
                    error=str(e) or type(e).__name__,
                )
                await asyncio.sleep(delay)

        raise DedupTaskFailedError(listing_id, max_attempts)  # unreachable, max_attempts >= 1

    async def run_batch(self, limit: int | None = None) -> BatchResult:
        """Claim pending listings and process them one by one.

        Claims are released when the batch finishes, whatever happened, so
        failed listings are picked up again by a later run.

        Args:
            limit: Maximum listings to claim (default: settings.batch_size).

        Returns:
            BatchResult with outcomes and failed listing ids.
        """
        if not self._settings.dedup_enabled:
            logger.info("dedup_disabled")
            return BatchResult()

        listing_ids = await self._storage.claim_pending_listings(
            limit or self._settings.batch_size,
            self._settings.claim_lease_seconds,
        )
        result = BatchResult(claimed=len(listing_ids))
        logger.info("dedup_batch_started", claimed=len(listing_ids))

        try:
            for listing_id in listing_ids:
                try:
                    outcome = await self.process(listing_id)
                except DedupTaskFailedError:
                    result.failed.append(listing_id)
                    continue
                if outcome is None:
                    result.dropped.append(listing_id)
                else:
                    result.outcomes.append(outcome)
        finally:
            await self._storage.release_claims(listing_ids)

        logger.info(
            "dedup_batch_complete",
            claimed=result.claimed,
            processed=result.processed,
            failed=len(result.failed),
        )
        return result
