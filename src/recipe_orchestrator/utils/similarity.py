"""String similarity shared by best-match selection and deduplication.

All scores are normalized Levenshtein ratios in [0, 1]:
``1 - distance / max(len(a), len(b))``.
"""
from __future__ import annotations

from collections.abc import Iterable, Sequence
from typing import TypeVar

from rapidfuzz.distance import Levenshtein

from recipe_orchestrator.utils.normalize import normalize_ingredient, normalize_title

T = TypeVar("T")


def similarity(a: str, b: str) -> float:
    """Normalized edit-distance ratio of two already-normalized strings.

    Empty input on either side scores 0.0; there is nothing to compare.
    """
    if not a or not b:
        return 0.0
    return Levenshtein.normalized_similarity(a, b)


def title_similarity(a: str, b: str, strip_descriptors: bool = False) -> float:
    """Case, punctuation and plural insensitive title similarity."""
    return similarity(
        normalize_title(a, strip_descriptors=strip_descriptors),
        normalize_title(b, strip_descriptors=strip_descriptors),
    )


def ingredient_key(names: Iterable[str]) -> str:
    """Sorted multiset of normalized ingredient names, space separated."""
    normalized = sorted(n for n in (normalize_ingredient(x) for x in names) if n)
    return " ".join(normalized)


def ingredient_similarity(a: Iterable[str], b: Iterable[str]) -> float:
    """Similarity of two ingredient lists, order independent."""
    return similarity(ingredient_key(a), ingredient_key(b))


def best_match(
    target: str,
    items: Sequence[T],
    key,
    threshold: float = 0.5,
) -> tuple[T, float] | None:
    """Pick the item whose ``key(item)`` title is closest to ``target``.

    Ties keep the earliest item. Returns None when the best score is below
    ``threshold``.
    """
    best: T | None = None
    best_score = 0.0
    for item in items:
        score = title_similarity(target, key(item), strip_descriptors=True)
        if score > best_score:
            best, best_score = item, score
    if best is None or best_score < threshold:
        return None
    return best, best_score
