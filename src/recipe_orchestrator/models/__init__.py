"""Pydantic data models."""

from .block import BlockErrorType, BlockRecord
from .candidate import (
    AggregatedResult,
    AttemptOutcome,
    DuplicateRejection,
    SourceAttempt,
    SourceCandidate,
)
from .recipe import Ingredient, Recipe, completeness_of

__all__ = [
    "Recipe",
    "Ingredient",
    "completeness_of",
    "SourceCandidate",
    "SourceAttempt",
    "AttemptOutcome",
    "DuplicateRejection",
    "AggregatedResult",
    "BlockRecord",
    "BlockErrorType",
]
