"""Exception taxonomy for source orchestration.

Transport-level failures (``SourceError`` subclasses) are absorbed by the
aggregator and turned into "skip this source". Only ``NoCandidatesFound``
is meant to reach callers of ``SourceAggregator.aggregate``.
"""
from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from recipe_orchestrator.models.candidate import DuplicateRejection, SourceAttempt


class OrchestratorError(Exception):
    """Base exception for the orchestrator."""


class SourceError(OrchestratorError):
    """A source could not be queried (transport family)."""

    def __init__(
        self,
        message: str,
        *,
        source_id: str | None = None,
        url: str | None = None,
        status_code: int | None = None,
        retry_after: float | None = None,
    ) -> None:
        super().__init__(message)
        self.source_id = source_id
        self.url = url
        self.status_code = status_code
        self.retry_after = retry_after


class NetworkError(SourceError):
    """Connection, DNS or unexpected HTTP failure."""


class SourceTimeout(SourceError, TimeoutError):
    """The request exceeded its deadline."""


class RateLimited(SourceError):
    """The remote asked us to slow down (429/502/503)."""


class AccessBlocked(SourceError):
    """The remote refused access (403, captcha or Cloudflare challenge)."""


class ParseError(OrchestratorError):
    """A response arrived but could not be turned into candidates."""

    def __init__(self, message: str, *, source_id: str | None = None, status_code: int | None = None) -> None:
        super().__init__(message)
        self.source_id = source_id
        self.status_code = status_code


class QuotaExhausted(OrchestratorError):
    """A source's daily or monthly allowance is used up."""

    def __init__(self, source_id: str, resets_at: str | None = None) -> None:
        super().__init__(f"quota exhausted for {source_id}")
        self.source_id = source_id
        self.resets_at = resets_at


class DuplicateRejected(OrchestratorError):
    """A candidate matched an already-accepted fingerprint."""

    def __init__(self, source_id: str, similarity: float, matched_title: str) -> None:
        super().__init__(f"{source_id}: duplicate of {matched_title!r} ({similarity:.2f})")
        self.source_id = source_id
        self.similarity = similarity
        self.matched_title = matched_title


class NoCandidatesFound(OrchestratorError):
    """Every configured source was exhausted, skipped or rejected."""

    def __init__(
        self,
        query: str,
        attempts: list[SourceAttempt] | None = None,
        rejections: list[DuplicateRejection] | None = None,
    ) -> None:
        super().__init__(f"No recipes found from any source for {query!r}")
        self.query = query
        self.attempts = attempts or []
        self.rejections = rejections or []
