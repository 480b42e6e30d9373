"""Persisted block record for a failing domain."""
from __future__ import annotations

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, Field


class BlockErrorType(str, Enum):
    """Classification of the failure that led to a block."""
    CLOUDFLARE = "cloudflare"
    CAPTCHA = "captcha"
    AUTHENTICATION = "authentication"
    RATE_LIMIT = "rate_limit"
    INVALID_FORMAT = "invalid_format"
    TIMEOUT = "timeout"
    OTHER = "other"


class BlockRecord(BaseModel):
    """Failure history and block state for one domain.

    Present only while ``attempt_count >= 1``.
    """

    domain: str
    url: str = ""
    reason: str = ""
    error_type: BlockErrorType = BlockErrorType.OTHER
    first_failed_at: datetime
    last_attempt_at: datetime
    attempt_count: int = Field(default=1, ge=1)
    is_temporary: bool = True
    cooldown_until: datetime | None = None

    def is_active_block(self, now: datetime, block_threshold: int) -> bool:
        """Whether this record currently blocks its domain."""
        if not self.is_temporary:
            return True
        if self.attempt_count < block_threshold:
            return False
        return self.cooldown_until is not None and now < self.cooldown_until
