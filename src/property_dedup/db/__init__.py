"""Database storage for listings, properties, and dedup records."""

from property_dedup.db.geo_index import NearbyListing
from property_dedup.db.storage import DedupStorage

__all__ = ["DedupStorage", "NearbyListing"]
