"""Fingerprint index for rejecting near-duplicate recipes."""
from __future__ import annotations

import threading
from dataclasses import dataclass

import structlog

from recipe_orchestrator.errors import DuplicateRejected
from recipe_orchestrator.models.candidate import DuplicateRejection, SourceCandidate
from recipe_orchestrator.models.recipe import Recipe
from recipe_orchestrator.utils.normalize import normalize_title, url_fingerprint
from recipe_orchestrator.utils.similarity import ingredient_key, similarity

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class DedupFingerprint:
    """Normalized identity of an accepted recipe."""
    title: str
    ingredients: str
    url_key: str | None = None
    display_title: str = ""

    @classmethod
    def from_recipe(cls, recipe: Recipe) -> DedupFingerprint:
        return cls(
            title=normalize_title(recipe.title),
            ingredients=ingredient_key(recipe.ingredient_names),
            url_key=url_fingerprint(recipe.source_url),
            display_title=recipe.title,
        )


class DedupIndex:
    """Accepted fingerprints plus an atomic check-and-insert.

    Two fingerprints are duplicates when they share a URL key, or when title
    similarity and ingredient similarity both clear their thresholds (only
    if both sides list ingredients).
    """

    def __init__(self, title_threshold: float = 0.7, ingredient_threshold: float = 0.6) -> None:
        self.title_threshold = title_threshold
        self.ingredient_threshold = ingredient_threshold
        self._fingerprints: list[DedupFingerprint] = []
        self._lock = threading.Lock()

    def __len__(self) -> int:
        return len(self._fingerprints)

    def clear(self) -> None:
        with self._lock:
            self._fingerprints.clear()

    def _compare(self, fp: DedupFingerprint, other: DedupFingerprint) -> tuple[float, str] | None:
        if fp.url_key and fp.url_key == other.url_key:
            return 1.0, "url"
        if not fp.ingredients or not other.ingredients:
            return None
        title_sim = similarity(fp.title, other.title)
        if title_sim < self.title_threshold:
            return None
        ingredient_sim = similarity(fp.ingredients, other.ingredients)
        if ingredient_sim < self.ingredient_threshold:
            return None
        return min(title_sim, ingredient_sim), "fingerprint"

    def _find(self, fp: DedupFingerprint, source_id: str) -> DuplicateRejection | None:
        for other in self._fingerprints:
            hit = self._compare(fp, other)
            if hit is not None:
                score, match_type = hit
                return DuplicateRejection(
                    source_id=source_id,
                    similarity=round(score, 4),
                    matched_title=other.display_title,
                    match_type=match_type,
                )
        return None

    def check(self, recipe: Recipe, source_id: str = "") -> DuplicateRejection | None:
        """Return the rejection ``recipe`` would get, without inserting."""
        fp = DedupFingerprint.from_recipe(recipe)
        with self._lock:
            return self._find(fp, source_id)

    def admit(self, candidate: SourceCandidate) -> DuplicateRejection | None:
        """Insert the candidate's fingerprint unless it duplicates one already held.

        Returns None when admitted, or the rejection diagnostics.
        """
        fp = DedupFingerprint.from_recipe(candidate.recipe)
        with self._lock:
            rejection = self._find(fp, candidate.source_id)
            if rejection is None:
                self._fingerprints.append(fp)
        if rejection is not None:
            logger.info(
                "dedup.rejected",
                source=candidate.source_id,
                title=candidate.recipe.title,
                matched=rejection.matched_title,
                similarity=rejection.similarity,
                match_type=rejection.match_type,
            )
        return rejection

    def add(self, candidate: SourceCandidate) -> None:
        """Like ``admit`` but raise ``DuplicateRejected`` on a duplicate."""
        rejection = self.admit(candidate)
        if rejection is not None:
            raise DuplicateRejected(rejection.source_id, rejection.similarity, rejection.matched_title)
