"""Resilient, cache-aware batch enrichment of candidate locations."""

__version__ = "1.0.0"
