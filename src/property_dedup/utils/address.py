"""Address normalization utilities."""

import re
import unicodedata

# Neighbourhood designators that carry no identity ("Col. Centro" == "Centro")
NEIGHBORHOOD_PREFIXES = (
    "colonia",
    "col",
    "fraccionamiento",
    "fracc",
    "frac",
    "residencial",
    "resid",
    "barrio",
    "unidad habitacional",
    "u hab",
)

_PREFIX_PATTERN = re.compile(
    r"\b(?:" + "|".join(re.escape(p) for p in NEIGHBORHOOD_PREFIXES) + r")\b",
)
_PUNCTUATION_PATTERN = re.compile(r"[^\w\s]")


def strip_accents(value: str) -> str:
    """Remove diacritics ("Jalisco, México" -> "Jalisco, Mexico")."""
    decomposed = unicodedata.normalize("NFKD", value)
    return "".join(ch for ch in decomposed if not unicodedata.combining(ch))


def normalize_address(value: str | None) -> str:
    """Normalize an address fragment for fuzzy comparison.

    Handles:
    - "Col. Providencia" -> "providencia"
    - "Fracc. Las Águilas" -> "las aguilas"
    - "  Av.  Vallarta  " -> "av vallarta"

    Args:
        value: Address, colonia, city or state string (may be None).

    Returns:
        Lowercase, accent-free string without neighbourhood prefixes, or "" for blanks.
    """
    if not value:
        return ""

    normalized = strip_accents(value.lower())
    normalized = " ".join(_PUNCTUATION_PATTERN.sub(" ", normalized).split())
    normalized = _PREFIX_PATTERN.sub(" ", normalized)
    return " ".join(normalized.split())


def is_blank(value: str | None) -> bool:
    """Check whether a string is missing or whitespace only."""
    return value is None or not value.strip()
