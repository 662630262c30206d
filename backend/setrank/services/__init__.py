"""Ranking services.

Only the pure rating helpers are re-exported here; the storage-backed
services import the ORM models and are imported from their own modules.
"""

from .rating import DEFAULT_RATING, K_FACTOR, expected_score, update_ratings

__all__ = [
    "DEFAULT_RATING",
    "K_FACTOR",
    "expected_score",
    "update_ratings",
]
