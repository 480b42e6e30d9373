"""Recipe orchestrator utilities."""

from .normalize import (
    extract_domain,
    fold_plural,
    normalize_ingredient,
    normalize_title,
    simplify_query,
    title_from_url,
    url_fingerprint,
)
from .similarity import (
    best_match,
    ingredient_key,
    ingredient_similarity,
    similarity,
    title_similarity,
)

__all__ = [
    # Normalize utilities
    "extract_domain",
    "fold_plural",
    "normalize_ingredient",
    "normalize_title",
    "simplify_query",
    "title_from_url",
    "url_fingerprint",
    # Similarity utilities
    "best_match",
    "ingredient_key",
    "ingredient_similarity",
    "similarity",
    "title_similarity",
]
