"""Per-domain adaptive rate limiting.

Each domain gets a lazily created ``DomainRateState``. Requests to the same
domain are serialized through a per-domain ``asyncio.Lock``; requests to
different domains never wait on each other. Outcome reports steer an
adaptive multiplier on the base rate and put domains into exponential
backoff when the remote pushes back.
"""
from __future__ import annotations

import asyncio
import random
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field

import structlog

from recipe_orchestrator.config import RateLimitSettings
from recipe_orchestrator.utils.normalize import extract_domain

logger = structlog.get_logger(__name__)

# Status codes that mean "slow down"
THROTTLE_TRIGGERS = frozenset({429, 503, 502, 403})

MIN_MULTIPLIER = 0.1
MAX_MULTIPLIER = 1.2
JITTER_FRACTION = 0.2


@dataclass
class DomainRateState:
    """Rate limiting state for a single domain."""
    domain: str
    base_rate: float
    burst_capacity: int
    current_burst: float
    last_request_time: float | None = None
    adaptive_multiplier: float = 1.0
    consecutive_errors: int = 0
    backoff_until: float | None = None
    last_refill: float = 0.0
    last_touched: float = 0.0

    @property
    def effective_rate(self) -> float:
        return self.base_rate * self.adaptive_multiplier

    def in_backoff(self, now: float) -> bool:
        return self.backoff_until is not None and now < self.backoff_until


@dataclass
class RateLimitStats:
    """Counters for monitoring the limiter."""
    total_requests: int = 0
    throttled_requests: int = 0
    average_wait_seconds: float = 0.0
    domains_tracked: int = 0
    adaptive_adjustments: int = 0
    backoff_events: int = 0
    evictions: int = 0


@dataclass
class AdaptiveRateLimiter:
    """Adaptive per-domain request gate.

    ``wait_for_slot`` never raises; it only delays. Use ``report_outcome``
    after each response so the limiter can adapt.

    Args:
        settings: Limiter configuration
        clock: Monotonic clock in seconds
        sleep: Coroutine used to wait
        rng: Random source for jitter
    """

    settings: RateLimitSettings = field(default_factory=RateLimitSettings)
    clock: Callable[[], float] = time.monotonic
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep
    rng: random.Random = field(default_factory=random.Random)

    def __post_init__(self) -> None:
        self._states: dict[str, DomainRateState] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self._stats = RateLimitStats()
        self._sweeper: asyncio.Task | None = None

    # ------------------------------------------------------------------ gating

    async def wait_for_slot(self, url: str, priority: int = 5) -> None:
        """Suspend until a request to ``url``'s domain is permitted.

        Args:
            url: Target URL (or bare host)
            priority: 1-10, higher shortens the required spacing
        """
        if not self.settings.enabled:
            return

        domain = extract_domain(url)
        start = self.clock()
        self._stats.total_requests += 1
        throttled = False

        async with self._lock_for(domain):
            state = self._get_state(domain)

            now = self.clock()
            if state.in_backoff(now):
                backoff_wait = state.backoff_until - now
                throttled = True
                logger.debug("rate_limit.backoff_wait", domain=domain, wait_s=round(backoff_wait, 3))
                await self.sleep(backoff_wait)

            required = self._calculate_wait(state, priority)
            if required > 0:
                throttled = True
                await self.sleep(required)

            self._record_request(state)

        if throttled:
            self._stats.throttled_requests += 1
        self._update_average_wait(self.clock() - start)

    def _calculate_wait(self, state: DomainRateState, priority: int) -> float:
        """Seconds to wait before the next request to this domain."""
        now = self.clock()
        self._refill(state, now)

        min_interval = 1.0 / state.effective_rate
        priority_multiplier = max(0.1, 1.0 - (priority - 5) * 0.1)
        interval = min_interval * priority_multiplier

        if state.last_request_time is None:
            elapsed = float("inf")
        else:
            elapsed = now - state.last_request_time

        if state.current_burst >= 1 and elapsed > interval:
            return 0.0

        required = max(0.0, interval - elapsed)

        if self.settings.simulate_human_behavior and required > 0:
            jitter = self.rng.random() * required * JITTER_FRACTION
            required = required + jitter if self.rng.random() > 0.5 else required - jitter

        # Jitter may shorten the wait but never below zero
        return max(0.0, required)

    def _refill(self, state: DomainRateState, now: float) -> None:
        if state.burst_capacity <= 0:
            state.current_burst = 0
            state.last_refill = now
            return
        elapsed = max(0.0, now - state.last_refill)
        state.current_burst = min(
            float(state.burst_capacity),
            state.current_burst + elapsed * state.effective_rate,
        )
        state.last_refill = now

    def _record_request(self, state: DomainRateState) -> None:
        now = self.clock()
        self._refill(state, now)
        if state.current_burst >= 1:
            state.current_burst -= 1
        state.last_request_time = now
        state.last_touched = now

    # ---------------------------------------------------------------- outcomes

    def report_outcome(
        self,
        url: str,
        status_code: int,
        response_time_ms: float | None = None,
        retry_after: float | None = None,
    ) -> None:
        """Adapt the domain's rate to an observed response.

        Args:
            url: URL that was requested
            status_code: HTTP status observed (408 for client-side timeouts)
            response_time_ms: Latency if known
            retry_after: Seconds from a Retry-After header, if any
        """
        if not self.settings.enabled or not self.settings.adaptive_throttling:
            return

        domain = extract_domain(url)
        state = self._get_state(domain)
        state.last_touched = self.clock()

        if status_code in THROTTLE_TRIGGERS:
            self._handle_throttle(state, status_code, retry_after)
        elif 200 <= status_code < 300:
            self._handle_success(state, response_time_ms)
        elif status_code >= 400:
            self._handle_error(state, status_code)

    def _handle_throttle(self, state: DomainRateState, status_code: int, retry_after: float | None) -> None:
        self._stats.adaptive_adjustments += 1
        state.adaptive_multiplier = max(MIN_MULTIPLIER, state.adaptive_multiplier * 0.5)
        state.consecutive_errors += 1

        if status_code == 429 or state.consecutive_errors >= 3:
            backoff = min(
                self.settings.max_backoff_seconds,
                1.0 * 2 ** (state.consecutive_errors - 1),
            )
            if retry_after is not None:
                backoff = max(backoff, min(retry_after, self.settings.max_backoff_seconds))
            state.backoff_until = self.clock() + backoff
            self._stats.backoff_events += 1
            logger.info(
                "rate_limit.backoff",
                domain=state.domain,
                backoff_s=backoff,
                errors=state.consecutive_errors,
            )

        logger.info(
            "rate_limit.throttled",
            domain=state.domain,
            status=status_code,
            rate=round(state.effective_rate, 3),
        )

    def _handle_success(self, state: DomainRateState, response_time_ms: float | None) -> None:
        state.consecutive_errors = 0
        state.backoff_until = None

        if state.adaptive_multiplier < 1.0:
            state.adaptive_multiplier = min(1.0, state.adaptive_multiplier * 1.1)

        if response_time_ms is not None:
            if response_time_ms < 1000:
                state.adaptive_multiplier = min(MAX_MULTIPLIER, state.adaptive_multiplier * 1.05)
            elif response_time_ms > 5000 and state.adaptive_multiplier > 0.5:
                state.adaptive_multiplier = max(0.5, state.adaptive_multiplier * 0.95)

    def _handle_error(self, state: DomainRateState, status_code: int) -> None:
        state.consecutive_errors += 1
        if state.consecutive_errors >= 2:
            state.adaptive_multiplier = max(MIN_MULTIPLIER, state.adaptive_multiplier * 0.8)
            self._stats.adaptive_adjustments += 1
            logger.info(
                "rate_limit.error_throttle",
                domain=state.domain,
                status=status_code,
                rate=round(state.effective_rate, 3),
            )

    # ------------------------------------------------------------------ admin

    def set_domain_limit(self, domain: str, rate: float) -> None:
        """Manually override a domain's base rate (requests per second)."""
        if rate <= 0:
            raise ValueError("rate must be positive")
        state = self._get_state(extract_domain(domain))
        state.base_rate = rate
        state.adaptive_multiplier = 1.0
        logger.info("rate_limit.manual_override", domain=state.domain, rate=rate)

    def get_domain_state(self, url: str) -> DomainRateState:
        """Current state for ``url``'s domain, created if unseen."""
        return self._get_state(extract_domain(url))

    def domains(self) -> list[DomainRateState]:
        return list(self._states.values())

    def emergency_throttle(self, multiplier: float = 0.1) -> None:
        """Immediately cap every tracked domain's multiplier."""
        logger.warning("rate_limit.emergency_throttle", multiplier=multiplier, domains=len(self._states))
        for state in self._states.values():
            state.adaptive_multiplier = min(state.adaptive_multiplier, multiplier)
        self._stats.adaptive_adjustments += 1

    def restore_normal_rates(self) -> None:
        """Undo throttling and backoff for every tracked domain."""
        logger.info("rate_limit.restore", domains=len(self._states))
        for state in self._states.values():
            state.adaptive_multiplier = 1.0
            state.consecutive_errors = 0
            state.backoff_until = None

    def get_stats(self) -> RateLimitStats:
        stats = RateLimitStats(**vars(self._stats))
        stats.domains_tracked = len(self._states)
        return stats

    def reset_stats(self) -> None:
        self._stats = RateLimitStats()

    def report(self, limit: int = 20) -> str:
        """Plain-text summary of the most recently used domains."""
        stats = self.get_stats()
        now = self.clock()
        throttled_pct = (
            stats.throttled_requests / stats.total_requests * 100 if stats.total_requests else 0.0
        )
        lines = [
            "RATE LIMITING REPORT",
            f"Total requests: {stats.total_requests}",
            f"Throttled requests: {stats.throttled_requests} ({throttled_pct:.1f}%)",
            f"Average wait: {stats.average_wait_seconds * 1000:.0f}ms",
            f"Domains tracked: {stats.domains_tracked}",
            f"Adaptive adjustments: {stats.adaptive_adjustments}",
            f"Backoff events: {stats.backoff_events}",
            "",
        ]
        recent = sorted(self._states.values(), key=lambda s: s.last_touched, reverse=True)[:limit]
        for state in recent:
            if state.in_backoff(now):
                status = "BACKOFF"
            elif state.consecutive_errors > 0:
                status = "THROTTLED"
            else:
                status = "NORMAL"
            lines.append(
                f"{state.domain:<25} | {state.effective_rate:.2f} req/s | {status} | errors: {state.consecutive_errors}"
            )
        return "\n".join(lines)

    # --------------------------------------------------------------- eviction

    def evict_stale(self, now: float | None = None) -> int:
        """Drop domains untouched for longer than the idle window."""
        now = self.clock() if now is None else now
        cutoff = now - self.settings.idle_eviction_seconds
        stale = [
            domain for domain, state in self._states.items()
            if state.last_touched < cutoff
            and not (domain in self._locks and self._locks[domain].locked())
        ]
        for domain in stale:
            del self._states[domain]
            self._locks.pop(domain, None)
        if stale:
            self._stats.evictions += len(stale)
            logger.debug("rate_limit.evicted", count=len(stale))
        return len(stale)

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self.settings.sweep_interval_seconds)
            self.evict_stale()

    def start(self) -> None:
        """Start the background eviction sweep on the running loop."""
        if self._sweeper is None or self._sweeper.done():
            self._sweeper = asyncio.get_running_loop().create_task(self._sweep_loop())

    async def close(self) -> None:
        if self._sweeper is not None:
            self._sweeper.cancel()
            try:
                await self._sweeper
            except asyncio.CancelledError:
                pass
            self._sweeper = None

    async def __aenter__(self) -> AdaptiveRateLimiter:
        self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> bool:
        await self.close()
        return False

    # ---------------------------------------------------------------- helpers

    def _lock_for(self, domain: str) -> asyncio.Lock:
        lock = self._locks.get(domain)
        if lock is None:
            lock = self._locks[domain] = asyncio.Lock()
        return lock

    def _get_state(self, domain: str) -> DomainRateState:
        state = self._states.get(domain)
        if state is None:
            now = self.clock()
            base_rate = self.settings.domain_rates.get(domain, self.settings.requests_per_second)
            state = DomainRateState(
                domain=domain,
                base_rate=base_rate,
                burst_capacity=self.settings.burst_size,
                current_burst=float(self.settings.burst_size),
                last_refill=now,
                last_touched=now,
            )
            self._states[domain] = state
        return state

    def _update_average_wait(self, waited: float) -> None:
        n = self._stats.total_requests
        self._stats.average_wait_seconds = (
            self._stats.average_wait_seconds * (n - 1) + waited
        ) / n
