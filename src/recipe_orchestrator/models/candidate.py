"""Candidate, telemetry and aggregate result models."""
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum

from pydantic import BaseModel, Field

from recipe_orchestrator.models.recipe import Recipe


class SourceCandidate(BaseModel):
    """A recipe proposed by one source for one query."""

    recipe: Recipe
    source_id: str = ""
    confidence: int = Field(default=50, ge=0, le=100)
    completeness: int = Field(default=0, ge=0, le=100)
    match_score: float = Field(default=0.0, ge=0.0, le=1.0)


class AttemptOutcome(str, Enum):
    """What happened when the cascade reached a source."""
    ACCEPTED = "accepted"
    DUPLICATE = "duplicate"
    NO_MATCH = "no_match"
    EMPTY = "empty"
    BLOCKED = "blocked"
    QUOTA_EXHAUSTED = "quota_exhausted"
    TIMEOUT = "timeout"
    RATE_LIMITED = "rate_limited"
    ACCESS_BLOCKED = "access_blocked"
    NETWORK_ERROR = "network_error"
    PARSE_ERROR = "parse_error"

    @property
    def skipped(self) -> bool:
        """True when the source was never called."""
        return self in {AttemptOutcome.BLOCKED, AttemptOutcome.QUOTA_EXHAUSTED}


@dataclass
class SourceAttempt:
    """Telemetry for a single source in a cascade."""
    source_id: str
    outcome: AttemptOutcome
    latency_ms: float = 0.0
    detail: str | None = None
    completeness: int | None = None


@dataclass
class DuplicateRejection:
    """Diagnostics for a candidate rejected as a near-duplicate."""
    source_id: str
    similarity: float
    matched_title: str
    match_type: str = "fingerprint"  # "fingerprint" or "url"


@dataclass
class AggregatedResult:
    """Merged recipe plus provenance."""
    recipe: Recipe
    sources: list[str]
    combined_confidence: float
    combined_completeness: int
    attempts: list[SourceAttempt] = field(default_factory=list)
    rejections: list[DuplicateRejection] = field(default_factory=list)
    processing_time_ms: float = 0.0
