"""Command-line entry point for the listing deduplication pipeline."""

import argparse
import asyncio
import logging
import sys

from property_dedup.config import Settings
from property_dedup.db import DedupStorage
from property_dedup.dedup.matching import CandidateNotFoundError, DedupOutcome
from property_dedup.logging import configure_logging, get_logger
from property_dedup.models import DedupStats
from property_dedup.worker import DedupTaskFailedError, DedupWorker

logger = get_logger(__name__)

_STAT_LABELS = (
    ("pending", "Pending"),
    ("new", "New"),
    ("matched", "Matched"),
    ("needs_review", "Needs review"),
    ("candidates_awaiting_review", "Candidates awaiting review"),
    ("unresolved_conflicts", "Unresolved conflicts"),
)


def format_stats(stats: DedupStats) -> str:
    """Render dedup counters as a two-column table."""
    values = stats.to_dict()
    width = max(len(label) for _, label in _STAT_LABELS)
    lines = [f"{'Status':<{width}}  Count", f"{'-' * width}  -----"]
    lines.extend(f"{label:<{width}}  {values[key]:>5}" for key, label in _STAT_LABELS)
    return "\n".join(lines)


def format_outcome(outcome: DedupOutcome) -> str:
    """One-line summary of what a dedup call did to a listing."""
    parts = [
        f"listing {outcome.listing_id}: {outcome.action.value}",
        f"status={outcome.status.value}",
    ]
    if outcome.property_id is not None:
        parts.append(f"property={outcome.property_id}")
    if outcome.candidate_id is not None:
        parts.append(f"candidate={outcome.candidate_id}")
    return " ".join(parts)


async def run_single(settings: Settings, listing_id: int) -> int:
    """Process one listing. Returns the process exit code."""
    storage = DedupStorage(settings.database_path)
    try:
        await storage.initialize()
        worker = DedupWorker(storage, settings)
        try:
            outcome = await worker.process(listing_id)
        except DedupTaskFailedError as e:
            print(f"Error: {e}")
            return 1
        if outcome is None:
            print(f"Listing {listing_id} not found")
            return 1
        print(format_outcome(outcome))
        return 0
    finally:
        await storage.close()


async def run_batch(settings: Settings, limit: int | None = None) -> int:
    """Process a batch of pending listings and print the resulting counters."""
    storage = DedupStorage(settings.database_path)
    try:
        await storage.initialize()
        worker = DedupWorker(storage, settings)
        result = await worker.run_batch(limit)
        stats = await storage.get_stats()
    finally:
        await storage.close()

    print(f"\n{'=' * 40}")
    print(f"Processed {result.processed} of {result.claimed} claimed listings")
    if result.failed:
        print(f"Failed: {', '.join(str(i) for i in result.failed)}")
    print(f"{'=' * 40}\n")
    print(format_stats(stats))
    return 1 if result.failed else 0


async def run_stats(settings: Settings) -> int:
    """Print dedup counters."""
    storage = DedupStorage(settings.database_path)
    try:
        await storage.initialize()
        stats = await storage.get_stats()
    finally:
        await storage.close()
    print(format_stats(stats))
    return 0


async def run_review(settings: Settings, candidate_id: int, *, accept: bool) -> int:
    """Apply a review verdict to a candidate."""
    storage = DedupStorage(settings.database_path)
    try:
        await storage.initialize()
        engine = DedupWorker(storage, settings).engine
        try:
            if accept:
                outcomes = [await engine.resolve_match(candidate_id)]
            else:
                outcomes = await engine.reject_match(candidate_id)
        except CandidateNotFoundError as e:
            print(f"Error: {e}")
            return 1
    finally:
        await storage.close()

    for outcome in outcomes:
        print(format_outcome(outcome))
    if not outcomes:
        print(f"Candidate {candidate_id}: nothing to re-evaluate")
    return 0


def main() -> None:
    """Main entry point."""
    parser = argparse.ArgumentParser(
        description="Property Dedup - merge listings of the same property across platforms"
    )
    action = parser.add_mutually_exclusive_group()
    action.add_argument(
        "--listing",
        type=int,
        metavar="ID",
        help="Run the dedup pass for a single listing",
    )
    action.add_argument(
        "--stats",
        action="store_true",
        help="Print dedup counters and exit",
    )
    action.add_argument(
        "--resolve",
        type=int,
        metavar="CANDIDATE_ID",
        help="Accept a reviewed candidate as the same property",
    )
    action.add_argument(
        "--reject",
        type=int,
        metavar="CANDIDATE_ID",
        help="Reject a reviewed candidate as different properties",
    )
    parser.add_argument(
        "--limit",
        type=int,
        default=None,
        help="Maximum pending listings to process in a batch run",
    )
    parser.add_argument(
        "--debug",
        action="store_true",
        help="Enable debug-level logging for troubleshooting",
    )
    parser.add_argument(
        "--json-logs",
        action="store_true",
        help="Emit logs as JSON lines",
    )
    args = parser.parse_args()

    configure_logging(
        json_output=args.json_logs,
        level=logging.DEBUG if args.debug else logging.INFO,
    )

    try:
        settings = Settings()
    except Exception as e:
        logger.error("failed_to_load_settings", error=str(e))
        print(f"Error: Failed to load settings. {e}")
        print("Settings are read from PROPERTY_DEDUP_* environment variables or .env")
        sys.exit(1)

    logger.info(
        "starting_property_dedup",
        database=settings.database_path,
        auto_match_threshold=settings.auto_match_threshold,
        review_threshold=settings.review_threshold,
    )

    if args.listing is not None:
        code = asyncio.run(run_single(settings, args.listing))
    elif args.stats:
        code = asyncio.run(run_stats(settings))
    elif args.resolve is not None:
        code = asyncio.run(run_review(settings, args.resolve, accept=True))
    elif args.reject is not None:
        code = asyncio.run(run_review(settings, args.reject, accept=False))
    else:
        code = asyncio.run(run_batch(settings, args.limit))
    sys.exit(code)


if __name__ == "__main__":
    main()
