"""Listing deduplication: pair scoring, match decisions, and property merges."""

import importlib
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from property_dedup.dedup.matching import (  # noqa: F401
        DedupOutcome,
        MatchDecisionEngine,
    )
    from property_dedup.dedup.merging import PropertyMerger  # noqa: F401
    from property_dedup.dedup.scoring import CandidateScorer, MatchScore  # noqa: F401

__all__ = [
    "CandidateScorer",
    "DedupOutcome",
    "MatchDecisionEngine",
    "MatchScore",
    "PropertyMerger",
]

# db.geo_index imports dedup.scoring while matching imports db.storage
_LAZY_IMPORTS: dict[str, tuple[str, str]] = {
    "CandidateScorer": (".scoring", "CandidateScorer"),
    "DedupOutcome": (".matching", "DedupOutcome"),
    "MatchDecisionEngine": (".matching", "MatchDecisionEngine"),
    "MatchScore": (".scoring", "MatchScore"),
    "PropertyMerger": (".merging", "PropertyMerger"),
}


def __getattr__(name: str) -> type:
    if name in _LAZY_IMPORTS:
        module_path, attr = _LAZY_IMPORTS[name]
        mod = importlib.import_module(module_path, __name__)
        val = getattr(mod, attr)
        globals()[name] = val  # Cache so __getattr__ is only called once
        return val  # type: ignore[no-any-return]
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")


def __dir__() -> list[str]:
    return __all__
