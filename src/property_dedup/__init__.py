"""Listing deduplication and property merge engine."""

__version__ = "0.1.0"
