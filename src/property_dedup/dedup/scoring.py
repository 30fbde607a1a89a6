"""Pure scoring functions for listing deduplication matching."""

import math
from dataclasses import dataclass
from decimal import Decimal
from typing import Final

from rapidfuzz.distance import Levenshtein

from property_dedup.logging import get_logger
from property_dedup.models import Candidate, CandidateStatus, DedupConfig, Listing
from property_dedup.utils.address import normalize_address

logger = get_logger(__name__)

EARTH_RADIUS_METERS: Final = 6_371_000

# Distance under which two coordinates are treated as the same point (geocoding jitter)
SAME_POINT_METERS: Final = 10.0

# Decay constant for the coordinate score: exp(-300 / 300) ~= 0.37
COORDINATE_DECAY_METERS: Final = 300.0

# Early rejection: relative differences above this are different units
REJECT_PRICE_DIFFERENCE: Final = 0.20
REJECT_SIZE_DIFFERENCE: Final = 0.20

# Feature comparison tolerances
SIZE_TOLERANCE: Final = 0.10
PRICE_TOLERANCE: Final = 0.05
BATHROOM_TOLERANCE: Final = 1

# Score when no structural feature is comparable on both sides
NEUTRAL_FEATURES_SCORE: Final = 0.5

ADDRESS_FIELD_WEIGHTS: Final[dict[str, float]] = {
    "address": 0.40,
    "colonia": 0.30,
    "city": 0.20,
    "state": 0.10,
}

WEIGHT_COORDINATE: Final = 0.20
WEIGHT_ADDRESS: Final = 0.15
WEIGHT_FEATURES: Final = 0.65


@dataclass(frozen=True)
class MatchScore:
    """Breakdown of match score between two listings."""

    distance_meters: float | None
    coordinate: float
    address: float
    features: float

    @property
    def overall(self) -> float:
        """Weighted overall score; features dominate because they are unit-specific."""
        return round(
            WEIGHT_COORDINATE * self.coordinate
            + WEIGHT_ADDRESS * self.address
            + WEIGHT_FEATURES * self.features,
            4,
        )

    def to_dict(self) -> dict[str, float | None]:
        """Convert to dict for logging."""
        return {
            "distance_meters": self.distance_meters,
            "coordinate": self.coordinate,
            "address": self.address,
            "features": self.features,
            "overall": self.overall,
        }


def haversine_distance(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Calculate great-circle distance between two coordinates in meters.

    Args:
        lat1, lon1: First coordinate.
        lat2, lon2: Second coordinate.

    Returns:
        Distance in meters.
    """
    phi1 = math.radians(lat1)
    phi2 = math.radians(lat2)
    delta_phi = math.radians(lat2 - lat1)
    delta_lambda = math.radians(lon2 - lon1)

    a = (
        math.sin(delta_phi / 2) ** 2
        + math.cos(phi1) * math.cos(phi2) * math.sin(delta_lambda / 2) ** 2
    )
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))

    return EARTH_RADIUS_METERS * c


def listing_distance(listing1: Listing, listing2: Listing) -> float | None:
    """Distance between two listings in meters, or None if either lacks coordinates."""
    if (
        listing1.latitude is None
        or listing1.longitude is None
        or listing2.latitude is None
        or listing2.longitude is None
    ):
        return None
    distance = haversine_distance(
        listing1.latitude, listing1.longitude, listing2.latitude, listing2.longitude
    )
    return round(distance, 2)


def relative_difference(value1: float | Decimal, value2: float | Decimal) -> float:
    """Relative difference of two positive values, normalized by the larger one."""
    larger = max(value1, value2)
    if larger == 0:
        return 0.0
    return float(abs(value1 - value2) / larger)


def comparable_prices(
    listing1: Listing, listing2: Listing
) -> list[tuple[Decimal, Decimal]]:
    """Price pairs for operations sharing type and currency, positive prices only."""
    pairs: list[tuple[Decimal, Decimal]] = []
    for op1 in listing1.operations:
        if op1.price <= 0:
            continue
        for op2 in listing2.operations:
            if op2.type == op1.type and op2.currency == op1.currency and op2.price > 0:
                pairs.append((op1.price, op2.price))
    return pairs


def comparable_size(listing1: Listing, listing2: Listing) -> tuple[float, float] | None:
    """Built size pair if both have one, falling back to lot size."""
    if listing1.built_size_m2 and listing2.built_size_m2:
        return listing1.built_size_m2, listing2.built_size_m2
    if listing1.lot_size_m2 and listing2.lot_size_m2:
        return listing1.lot_size_m2, listing2.lot_size_m2
    return None


def rejection_reason(listing1: Listing, listing2: Listing) -> str | None:
    """Cheap pre-filter for pairs that cannot describe the same unit.

    Returns:
        Short reason code if the pair is rejected, None if it should be scored.
    """
    if (
        listing1.property_type is not None
        and listing2.property_type is not None
        and listing1.property_type != listing2.property_type
    ):
        return "property_type_mismatch"

    types1 = listing1.operation_types
    types2 = listing2.operation_types
    if types1 and types2 and not types1 & types2:
        return "operation_type_mismatch"

    for price1, price2 in comparable_prices(listing1, listing2):
        if relative_difference(price1, price2) > REJECT_PRICE_DIFFERENCE:
            return "price_mismatch"

    sizes = comparable_size(listing1, listing2)
    if sizes is not None and relative_difference(*sizes) > REJECT_SIZE_DIFFERENCE:
        return "size_mismatch"

    return None


def coordinate_score(distance_meters: float | None) -> float:
    """Exponential-decay proximity score.

    Returns 1.0 within SAME_POINT_METERS, then exp(-d / 300): ~0.37 at 300m,
    ~0.19 at 500m. Linear cutoffs over-penalize geocoding error.

    Args:
        distance_meters: Distance between the listings, or None if unknown.

    Returns:
        Score in [0.0, 1.0], 0.0 if the distance is unknown.
    """
    if distance_meters is None:
        return 0.0
    if distance_meters <= SAME_POINT_METERS:
        return 1.0
    return math.exp(-distance_meters / COORDINATE_DECAY_METERS)


def string_similarity(value1: str, value2: str) -> float:
    """Levenshtein similarity normalized by the longer string's length."""
    if value1 == value2:
        return 1.0
    return Levenshtein.normalized_similarity(value1, value2)


def address_score(listing1: Listing, listing2: Listing) -> float:
    """Weighted address similarity over fields present on both listings.

    Fields blank on either side are excluded from the normalizing weight, so
    a listing with only a city is compared on city alone.

    Returns:
        Score in [0.0, 1.0], 0.0 if no address field is comparable.
    """
    total = 0.0
    weight_sum = 0.0
    for field, weight in ADDRESS_FIELD_WEIGHTS.items():
        value1 = normalize_address(getattr(listing1, field))
        value2 = normalize_address(getattr(listing2, field))
        if not value1 or not value2:
            continue
        total += string_similarity(value1, value2) * weight
        weight_sum += weight

    if weight_sum == 0:
        return 0.0
    return min(1.0, total / weight_sum)


def features_score(listing1: Listing, listing2: Listing) -> float:
    """Fraction of comparable structural features that match.

    Compared: property type (exact), bedrooms (exact), bathrooms (within 1),
    built and lot size (within 10%), price for a shared operation type and
    currency (within 5%).

    Returns:
        Score in [0.0, 1.0], NEUTRAL_FEATURES_SCORE if nothing is comparable.
    """
    matches = 0
    total = 0

    if listing1.property_type is not None and listing2.property_type is not None:
        total += 1
        matches += listing1.property_type == listing2.property_type

    if listing1.bedrooms is not None and listing2.bedrooms is not None:
        total += 1
        matches += listing1.bedrooms == listing2.bedrooms

    if listing1.bathrooms is not None and listing2.bathrooms is not None:
        total += 1
        matches += abs(listing1.bathrooms - listing2.bathrooms) <= BATHROOM_TOLERANCE

    for field in ("built_size_m2", "lot_size_m2"):
        size1 = getattr(listing1, field)
        size2 = getattr(listing2, field)
        if size1 and size2:
            total += 1
            matches += relative_difference(size1, size2) <= SIZE_TOLERANCE

    prices = comparable_prices(listing1, listing2)
    if prices:
        total += 1
        matches += all(relative_difference(p1, p2) <= PRICE_TOLERANCE for p1, p2 in prices)

    if total == 0:
        return NEUTRAL_FEATURES_SCORE
    return matches / total


def calculate_match_score(listing1: Listing, listing2: Listing) -> MatchScore:
    """Calculate all sub-scores between two listings.

    Args:
        listing1: First listing.
        listing2: Second listing.

    Returns:
        MatchScore with breakdown of all signals.
    """
    distance = listing_distance(listing1, listing2)
    return MatchScore(
        distance_meters=distance,
        coordinate=coordinate_score(distance),
        address=address_score(listing1, listing2),
        features=features_score(listing1, listing2),
    )


def determine_status(overall_score: float, config: DedupConfig) -> CandidateStatus:
    """Map an overall score to a candidate status (thresholds are inclusive)."""
    if overall_score >= config.auto_match_threshold:
        return CandidateStatus.CONFIRMED_MATCH
    if overall_score >= config.review_threshold:
        return CandidateStatus.NEEDS_REVIEW
    return CandidateStatus.CONFIRMED_DIFFERENT


class CandidateScorer:
    """Score listing pairs and turn surviving pairs into Candidate records."""

    def __init__(self, config: DedupConfig) -> None:
        """Initialize the scorer.

        Args:
            config: Auto-match and review thresholds.
        """
        self.config = config

    def score(self, listing1: Listing, listing2: Listing) -> Candidate | None:
        """Score a pair of persisted listings.

        The pair is put in canonical (lower id first) order before scoring, so
        score(A, B) and score(B, A) produce the same record.

        Args:
            listing1: One listing of the pair.
            listing2: The other listing.

        Returns:
            Unsaved Candidate with scores and derived status, or None if the
            pair was early-rejected.
        """
        if listing1.id is None or listing2.id is None:
            raise ValueError("Listings must be persisted before scoring")
        if listing1.id == listing2.id:
            raise ValueError("Cannot score a listing against itself")

        first, second = sorted((listing1, listing2), key=lambda listing: listing.id or 0)

        reason = rejection_reason(first, second)
        if reason is not None:
            logger.debug(
                "listing_pair_early_rejected",
                listing_a_id=first.id,
                listing_b_id=second.id,
                reason=reason,
            )
            return None

        match_score = calculate_match_score(first, second)
        status = determine_status(match_score.overall, self.config)

        logger.debug(
            "match_score_calculated",
            listing_a_id=first.id,
            listing_b_id=second.id,
            score=match_score.to_dict(),
            status=status.value,
        )

        return Candidate(
            listing_a_id=first.id,
            listing_b_id=second.id,
            distance_meters=match_score.distance_meters,
            coordinate_score=round(match_score.coordinate, 4),
            address_score=round(match_score.address, 4),
            features_score=round(match_score.features, 4),
            overall_score=match_score.overall,
            status=status,
        )
