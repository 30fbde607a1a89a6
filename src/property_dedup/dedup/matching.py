"""Match decisions: new property, auto-merge, or human review."""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
from enum import StrEnum
from typing import assert_never

from property_dedup.db.storage import DedupStorage
from property_dedup.dedup.merging import PropertyMerger
from property_dedup.dedup.scoring import CandidateScorer
from property_dedup.logging import get_logger
from property_dedup.models import (
    Candidate,
    CandidateStatus,
    DedupConfig,
    DedupStatus,
    Listing,
    Property,
)

logger = get_logger(__name__)


class ListingNotFoundError(LookupError):
    """Raised when a dedup task references a listing that does not exist."""


class CandidateNotFoundError(LookupError):
    """Raised when a review verdict references a candidate that does not exist."""


class DecisionKind(StrEnum):
    """What to do with a listing given its candidates."""

    CREATE_PROPERTY = "create_property"
    AUTO_MERGE = "auto_merge"
    NEEDS_REVIEW = "needs_review"


class DedupAction(StrEnum):
    """What a dedup call actually did."""

    CREATED = "created"
    MERGED = "merged"
    REVIEW = "review"
    SKIPPED = "skipped"


@dataclass(frozen=True)
class MatchDecision:
    """Decision for one listing; ``candidate`` is the best match or review pair."""

    kind: DecisionKind
    candidate: Candidate | None = None


@dataclass(frozen=True)
class DedupOutcome:
    """Result of processing, resolving or rejecting for one listing."""

    listing_id: int
    action: DedupAction
    status: DedupStatus
    property_id: int | None = None
    candidate_id: int | None = None


def _best(candidates: list[Candidate]) -> Candidate:
    return min(candidates, key=lambda c: (-c.overall_score, c.id or 0))


def decide(candidates: Sequence[Candidate]) -> MatchDecision:
    """Pick the outcome for a listing from its candidates' statuses.

    - any confirmed match: auto-merge with the highest-scoring one
    - else any pair awaiting review: needs review
    - else (no candidates, or all confirmed different): new property

    Args:
        candidates: Candidates involving the listing.

    Returns:
        MatchDecision with the chosen candidate, if any.
    """
    matches: list[Candidate] = []
    reviews: list[Candidate] = []
    for candidate in candidates:
        match candidate.status:
            case CandidateStatus.CONFIRMED_MATCH:
                matches.append(candidate)
            case CandidateStatus.NEEDS_REVIEW | CandidateStatus.PENDING:
                reviews.append(candidate)
            case CandidateStatus.CONFIRMED_DIFFERENT:
                pass
            case _ as unreachable:
                assert_never(unreachable)

    if matches:
        return MatchDecision(DecisionKind.AUTO_MERGE, _best(matches))
    if reviews:
        return MatchDecision(DecisionKind.NEEDS_REVIEW, _best(reviews))
    return MatchDecision(DecisionKind.CREATE_PROPERTY)


class MatchDecisionEngine:
    """Drive a listing through the dedup state machine.

    Every entry point runs inside one storage transaction, so a pass either
    commits all of its candidate, property, conflict and status writes or
    none of them.
    """

    def __init__(
        self,
        storage: DedupStorage,
        config: DedupConfig,
        *,
        scorer: CandidateScorer | None = None,
        merger: PropertyMerger | None = None,
    ) -> None:
        """Initialize the engine.

        Args:
            storage: Shared dedup storage.
            config: Search radius and score thresholds.
            scorer: Pair scorer (default: CandidateScorer(config)).
            merger: Property merger (default: PropertyMerger(storage)).
        """
        self._storage = storage
        self.config = config
        self._scorer = scorer or CandidateScorer(config)
        self._merger = merger or PropertyMerger(storage)

    async def process_listing(self, listing_id: int) -> DedupOutcome:
        """Run one dedup pass for a listing.

        Safe to call repeatedly: a listing that already has a property, or is
        waiting for review, is left untouched.

        Args:
            listing_id: Listing to process.

        Returns:
            DedupOutcome describing the transition taken.
        """
        async with self._storage.transaction():
            listing = await self._require_listing(listing_id)

            if listing.property_id is not None:
                logger.debug(
                    "listing_already_resolved",
                    listing_id=listing_id,
                    property_id=listing.property_id,
                )
                return DedupOutcome(
                    listing_id, DedupAction.SKIPPED, listing.dedup_status, listing.property_id
                )

            match listing.dedup_status:
                case DedupStatus.NEEDS_REVIEW:
                    logger.debug("listing_awaiting_review", listing_id=listing_id)
                    return DedupOutcome(listing_id, DedupAction.SKIPPED, listing.dedup_status)
                case DedupStatus.PENDING | DedupStatus.NEW | DedupStatus.MATCHED:
                    # NEW/MATCHED without a property cannot come from this engine; re-derive
                    pass
                case _ as unreachable:
                    assert_never(unreachable)

            candidates = await self._find_candidates(listing)
            return await self._apply_decision(listing, decide(candidates))

    async def resolve_match(self, candidate_id: int) -> DedupOutcome:
        """Accept a reviewed candidate as the same property and merge the pair.

        Args:
            candidate_id: Candidate confirmed by the review workflow.

        Returns:
            DedupOutcome for the listing that was merged.
        """
        async with self._storage.transaction():
            candidate = await self._require_candidate(candidate_id)
            listing_a = await self._require_listing(candidate.listing_a_id)
            listing_b = await self._require_listing(candidate.listing_b_id)

            if listing_a.property_id is not None and listing_b.property_id is not None:
                return await self._resolve_already_linked(candidate, listing_a, listing_b)

            # Merge the unlinked listing into the other one's (possibly new) property
            if listing_b.property_id is None:
                listing, seed = listing_b, listing_a
            else:
                listing, seed = listing_a, listing_b

            prop = await self._resolve_confirmed_match(listing, seed, candidate)
            logger.info(
                "review_match_resolved",
                candidate_id=candidate_id,
                listing_id=listing.id,
                property_id=prop.id,
            )
            return DedupOutcome(
                listing.id or 0, DedupAction.MERGED, DedupStatus.MATCHED, prop.id, candidate_id
            )

    async def reject_match(self, candidate_id: int) -> list[DedupOutcome]:
        """Mark a reviewed candidate as different properties and re-decide.

        Each listing of the pair still waiting for review is re-evaluated
        against its remaining candidates; with nothing left to review it
        becomes a new property.

        Args:
            candidate_id: Candidate rejected by the review workflow.

        Returns:
            Outcomes for the re-evaluated listings.
        """
        async with self._storage.transaction():
            candidate = await self._require_candidate(candidate_id)

            if (
                candidate.status is CandidateStatus.CONFIRMED_MATCH
                and candidate.resolved_property_id is not None
            ):
                logger.warning(
                    "reject_ignored_for_merged_candidate",
                    candidate_id=candidate_id,
                    property_id=candidate.resolved_property_id,
                )
                return []

            await self._storage.candidates.mark_rejected(candidate_id)
            logger.info("review_match_rejected", candidate_id=candidate_id)

            outcomes: list[DedupOutcome] = []
            for listing_id in (candidate.listing_a_id, candidate.listing_b_id):
                listing = await self._require_listing(listing_id)
                if (
                    listing.property_id is None
                    and listing.dedup_status is DedupStatus.NEEDS_REVIEW
                ):
                    remaining = await self._storage.candidates.list_for_listing(listing_id)
                    outcomes.append(await self._apply_decision(listing, decide(remaining)))
            return outcomes

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _require_listing(self, listing_id: int) -> Listing:
        listing = await self._storage.get_listing(listing_id)
        if listing is None:
            raise ListingNotFoundError(f"Listing {listing_id} does not exist")
        return listing

    async def _require_candidate(self, candidate_id: int) -> Candidate:
        candidate = await self._storage.candidates.get(candidate_id)
        if candidate is None:
            raise CandidateNotFoundError(f"Candidate {candidate_id} does not exist")
        return candidate

    async def _find_candidates(self, listing: Listing) -> list[Candidate]:
        """Find, score and persist candidates among coordinate neighbours.

        Address-only neighbours are not searched: a shared colonia is no
        evidence of the same unit. Existing pair records are reused as-is.
        """
        if not listing.has_coordinates or listing.id is None:
            logger.debug("listing_without_coordinates", listing_id=listing.id)
            return []
        assert listing.latitude is not None and listing.longitude is not None

        nearby = await self._storage.geo.find_nearby(
            listing.latitude,
            listing.longitude,
            self.config.distance_threshold_meters,
            exclude_id=listing.id,
            limit=self.config.max_nearby,
        )

        candidates: list[Candidate] = []
        rejected = 0
        for neighbour in nearby:
            other = neighbour.listing
            assert other.id is not None
            existing = await self._storage.candidates.get_for_pair(listing.id, other.id)
            if existing is not None:
                candidates.append(existing)
                continue

            scored = self._scorer.score(listing, other)
            if scored is None:
                rejected += 1
                continue

            stored, _ = await self._storage.candidates.get_or_create(scored)
            candidates.append(stored)

        logger.debug(
            "candidates_found",
            listing_id=listing.id,
            nearby=len(nearby),
            early_rejected=rejected,
            candidates=len(candidates),
        )
        return candidates

    async def _apply_decision(self, listing: Listing, decision: MatchDecision) -> DedupOutcome:
        assert listing.id is not None
        candidate = decision.candidate

        logger.info(
            "dedup_decision",
            listing_id=listing.id,
            decision=decision.kind.value,
            candidate_id=candidate.id if candidate else None,
            overall_score=candidate.overall_score if candidate else None,
        )

        match decision.kind:
            case DecisionKind.CREATE_PROPERTY:
                prop = await self._merger.create_property_from_listing(listing)
                await self._storage.update_dedup_status([listing.id], DedupStatus.NEW)
                return DedupOutcome(listing.id, DedupAction.CREATED, DedupStatus.NEW, prop.id)
            case DecisionKind.AUTO_MERGE:
                assert candidate is not None
                seed = await self._require_listing(candidate.other_listing_id(listing.id))
                prop = await self._resolve_confirmed_match(listing, seed, candidate)
                return DedupOutcome(
                    listing.id, DedupAction.MERGED, DedupStatus.MATCHED, prop.id, candidate.id
                )
            case DecisionKind.NEEDS_REVIEW:
                assert candidate is not None
                await self._storage.update_dedup_status([listing.id], DedupStatus.NEEDS_REVIEW)
                return DedupOutcome(
                    listing.id, DedupAction.REVIEW, DedupStatus.NEEDS_REVIEW, None, candidate.id
                )
            case _ as unreachable:
                assert_never(unreachable)

    async def _resolve_confirmed_match(
        self, listing: Listing, matched: Listing, candidate: Candidate
    ) -> Property:
        """Merge ``listing`` into the property of ``matched``, seeding it if needed.

        Seed-then-merge: when the matched listing has no property yet it
        becomes the seed of a new one, so one match event yields one property.
        """
        assert listing.id is not None and matched.id is not None and candidate.id is not None

        if matched.property_id is not None:
            target = await self._storage.properties.get(matched.property_id)
            if target is None:
                raise LookupError(f"Property {matched.property_id} does not exist")
        else:
            target = await self._merger.create_property_from_listing(matched)

        merged = await self._merger.merge_listing_into_property(listing, target)
        assert merged.id is not None
        await self._storage.candidates.mark_resolved(candidate.id, merged.id)
        await self._storage.update_dedup_status([listing.id, matched.id], DedupStatus.MATCHED)
        return merged

    async def _resolve_already_linked(
        self, candidate: Candidate, listing_a: Listing, listing_b: Listing
    ) -> DedupOutcome:
        """Accept a match between two listings that both already have properties.

        Merging two existing properties is not done here; the candidate is
        resolved against listing_a's property and the split is logged.
        """
        assert candidate.id is not None and listing_a.property_id is not None
        if listing_a.property_id != listing_b.property_id:
            logger.warning(
                "candidate_links_distinct_properties",
                candidate_id=candidate.id,
                property_a_id=listing_a.property_id,
                property_b_id=listing_b.property_id,
            )
        await self._storage.candidates.mark_resolved(candidate.id, listing_a.property_id)
        await self._storage.update_dedup_status(
            [candidate.listing_a_id, candidate.listing_b_id], DedupStatus.MATCHED
        )
        return DedupOutcome(
            candidate.listing_b_id,
            DedupAction.SKIPPED,
            DedupStatus.MATCHED,
            listing_b.property_id,
            candidate.id,
        )
