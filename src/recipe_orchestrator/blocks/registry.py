"""Failure-driven block registry for recipe source domains.

State machine per domain::

    ACTIVE --(>= block_threshold failures)--> TEMPORARY (cooldown)
    TEMPORARY --(>= permanent_threshold failures)--> PERMANENT
    TEMPORARY --(cooldown passes)--> ACTIVE (attempt_count kept)

Successes forgive ``success_decay`` failures each; a record that decays to
zero is deleted.
"""
from __future__ import annotations

import threading
from collections import Counter
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta

import structlog

from recipe_orchestrator.blocks.store import BlockStore, MemoryBlockStore
from recipe_orchestrator.config import BlockSettings
from recipe_orchestrator.models.block import BlockErrorType, BlockRecord
from recipe_orchestrator.utils.normalize import extract_domain

logger = structlog.get_logger(__name__)

# Checked in order, first hit wins
_ERROR_KEYWORDS: list[tuple[BlockErrorType, tuple[str, ...]]] = [
    (BlockErrorType.CLOUDFLARE, ("cloudflare", "cf-ray")),
    (BlockErrorType.CAPTCHA, ("captcha", "recaptcha")),
    (BlockErrorType.AUTHENTICATION, ("403", "forbidden", "unauthorized")),
    (BlockErrorType.RATE_LIMIT, ("429", "rate limit")),
    (BlockErrorType.TIMEOUT, ("timeout", "timed out")),
    (BlockErrorType.INVALID_FORMAT, ("parse", "invalid", "format")),
]


def classify_error(error_text: str) -> BlockErrorType:
    """Map free-form error text to a ``BlockErrorType``."""
    text = (error_text or "").lower()
    for error_type, keywords in _ERROR_KEYWORDS:
        if any(k in text for k in keywords):
            return error_type
    return BlockErrorType.OTHER


@dataclass
class BlockStats:
    total: int = 0
    temporary: int = 0
    permanent: int = 0
    active: int = 0
    by_error_type: dict[str, int] = field(default_factory=dict)


class BlockRegistry:
    """Tracks failing domains and decides which ones to skip.

    All mutations are routed through ``BlockStore.update`` so the read and
    the write happen as one unit, even with several processes sharing the
    same store.

    Args:
        store: Persistence backend (in-memory when omitted)
        settings: Thresholds and cooldown
        now: Wall clock returning an aware datetime
    """

    def __init__(
        self,
        store: BlockStore | None = None,
        settings: BlockSettings | None = None,
        now: Callable[[], datetime] | None = None,
    ) -> None:
        self.store = store if store is not None else MemoryBlockStore()
        self.settings = settings or BlockSettings()
        self._now = now or (lambda: datetime.now(UTC))
        self._lock = threading.RLock()

    def is_blocked(self, url: str) -> bool:
        """Whether requests to ``url``'s domain should be skipped.

        A temporary block whose cooldown has passed is cleared here; its
        failure count stays so the next failure re-blocks immediately.
        """
        domain = extract_domain(url)
        with self._lock:
            record = self.store.get(domain)
            if record is None:
                return False

            now = self._now()
            if record.is_active_block(now, self.settings.block_threshold):
                return True

            if record.is_temporary and record.cooldown_until is not None:
                def expire(current: BlockRecord | None) -> BlockRecord | None:
                    if current is None or not current.is_temporary or current.cooldown_until is None:
                        return current
                    if now < current.cooldown_until:
                        return current
                    return current.model_copy(update={"cooldown_until": None})

                self.store.update(domain, expire)
                logger.info("block.cooldown_expired", domain=domain, attempts=record.attempt_count)
            return False

    def record_failure(self, url: str, error_text: str) -> BlockRecord:
        """Register a failed attempt and re-evaluate the domain's state."""
        domain = extract_domain(url)
        error_type = classify_error(error_text)
        reason = (error_text or "")[:500]

        with self._lock:
            now = self._now()
            was_blocked = False

            def apply(current: BlockRecord | None) -> BlockRecord:
                nonlocal was_blocked
                if current is None:
                    record = BlockRecord(
                        domain=domain,
                        url=url,
                        reason=reason,
                        error_type=error_type,
                        first_failed_at=now,
                        last_attempt_at=now,
                        attempt_count=1,
                    )
                else:
                    was_blocked = current.is_active_block(now, self.settings.block_threshold)
                    record = current.model_copy(
                        update={
                            "url": url,
                            "reason": reason,
                            "error_type": error_type,
                            "last_attempt_at": now,
                            "attempt_count": current.attempt_count + 1,
                        }
                    )

                if record.attempt_count >= self.settings.permanent_threshold:
                    record.is_temporary = False
                    record.cooldown_until = None
                elif record.attempt_count >= self.settings.block_threshold and record.is_temporary:
                    record.cooldown_until = now + timedelta(seconds=self.settings.cooldown_seconds)
                return record

            record = self.store.update(domain, apply)

        if not record.is_temporary:
            if record.attempt_count == self.settings.permanent_threshold:
                logger.warning(
                    "block.permanent",
                    domain=domain,
                    attempts=record.attempt_count,
                    error_type=record.error_type.value,
                )
        elif record.cooldown_until is not None:
            logger.warning(
                "block.temporary" if not was_blocked else "block.extended",
                domain=domain,
                attempts=record.attempt_count,
                until=record.cooldown_until.isoformat(),
                error_type=record.error_type.value,
            )
        else:
            logger.debug("block.failure", domain=domain, attempts=record.attempt_count)
        return record

    def record_success(self, url: str) -> None:
        """Forgive ``success_decay`` failures; delete the record at zero."""
        domain = extract_domain(url)
        decay = self.settings.success_decay
        cleared = False

        def apply(current: BlockRecord | None) -> BlockRecord | None:
            nonlocal cleared
            if current is None:
                return None
            if not current.is_temporary:
                return current
            remaining = max(0, current.attempt_count - decay)
            if remaining == 0:
                cleared = True
                return None
            return current.model_copy(update={"attempt_count": remaining})

        with self._lock:
            self.store.update(domain, apply)
        if cleared:
            logger.info("block.cleared", domain=domain)

    def unblock(self, domain: str) -> bool:
        """Manually forget a domain. Returns False if it was unknown."""
        domain = extract_domain(domain)
        with self._lock:
            removed = self.store.delete(domain)
        logger.info("block.manual_unblock", domain=domain, removed=removed)
        return removed

    def reset(self) -> int:
        """Forget every domain. Returns how many records were dropped."""
        with self._lock:
            count = len(self.store.load())
            self.store.save({})
        logger.info("block.reset", removed=count)
        return count

    def get_blocked_info(self, url: str) -> BlockRecord | None:
        return self.store.get(extract_domain(url))

    def get_all_blocked(self, active_only: bool = False) -> list[BlockRecord]:
        """All tracked records, most recent failure first."""
        records = list(self.store.load().values())
        if active_only:
            now = self._now()
            records = [r for r in records if r.is_active_block(now, self.settings.block_threshold)]
        return sorted(records, key=lambda r: r.last_attempt_at, reverse=True)

    def get_stats(self) -> BlockStats:
        records = self.get_all_blocked()
        now = self._now()
        by_type = Counter(r.error_type.value for r in records)
        return BlockStats(
            total=len(records),
            temporary=sum(1 for r in records if r.is_temporary),
            permanent=sum(1 for r in records if not r.is_temporary),
            active=sum(1 for r in records if r.is_active_block(now, self.settings.block_threshold)),
            by_error_type=dict(by_type),
        )

    def export_report(self) -> str:
        """Markdown report of permanent and temporary blocks."""
        records = self.get_all_blocked()
        now = self._now()
        lines = [
            "# Blocked Websites Report",
            "",
            f"Generated: {now.isoformat()}",
            f"Total Tracked: {len(records)}",
            "",
            "## Permanently Blocked",
            "",
        ]
        for r in (r for r in records if not r.is_temporary):
            lines += [
                f"- **{r.domain}**",
                f"  - Reason: {r.reason}",
                f"  - Error Type: {r.error_type.value}",
                f"  - Failures: {r.attempt_count}",
                f"  - First Failed: {r.first_failed_at.isoformat()}",
                "",
            ]
        lines += ["## Temporarily Blocked", ""]
        for r in (r for r in records if r.is_active_block(now, self.settings.block_threshold) and r.is_temporary):
            lines += [
                f"- **{r.domain}**",
                f"  - Reason: {r.reason}",
                f"  - Cooldown Until: {r.cooldown_until.isoformat() if r.cooldown_until else '-'}",
                f"  - Failures: {r.attempt_count}",
                "",
            ]
        return "\n".join(lines)
