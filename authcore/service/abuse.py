from __future__ import annotations

import math
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Dict, Optional, Tuple

from authcore.config import Settings
from authcore.logging import get_logger
from authcore.storage.models import utcnow
from authcore.storage.redis_cache import LOCKOUT_LEVEL_TTL_SECONDS

logger = get_logger(__name__)


@dataclass(frozen=True)
class RateLimitRule:
    name: str
    limit: int
    window_seconds: int


@dataclass
class RateLimitDecision:
    allowed: bool
    limit: int
    remaining: int
    reset_seconds: int


@dataclass
class _LockState:
    level: int
    locked_until: datetime


class AbuseControl:
    """Per-endpoint rate limiting and login lockout with exponential backoff.

    Uses the Redis scripts when a cache is configured and lock-guarded
    in-process counters otherwise. Counters are approximate by nature.
    """

    def __init__(
        self,
        settings: Settings,
        cache=None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.settings = settings
        self.cache = cache
        self._clock = clock or utcnow
        self.rules: Dict[str, RateLimitRule] = {
            "register": RateLimitRule(
                "register", settings.register_rate_limit, settings.register_rate_window_seconds
            ),
            "login": RateLimitRule(
                "login", settings.login_rate_limit, settings.login_rate_window_seconds
            ),
            "refresh": RateLimitRule(
                "refresh", settings.refresh_rate_limit, settings.refresh_rate_window_seconds
            ),
            "password": RateLimitRule(
                "password", settings.password_rate_limit, settings.password_rate_window_seconds
            ),
            "verify": RateLimitRule(
                "verify", settings.verify_rate_limit, settings.verify_rate_window_seconds
            ),
        }
        self._state_lock = threading.Lock()
        self._buckets: Dict[str, Tuple[float, datetime]] = {}
        self._failures: Dict[str, Tuple[int, datetime]] = {}
        self._lockouts: Dict[str, _LockState] = {}

    # -- rate limits ------------------------------------------------------

    async def hit(self, rule_name: str, client_key: str, *, cost: int = 1) -> RateLimitDecision:
        rule = self.rules[rule_name]
        key = f"{rule.name}:{client_key}"
        if self.cache is not None:
            allowed, remaining, reset_seconds = await self.cache.check_rate_limit(
                key, rule.limit, rule.window_seconds, return_remaining=True, cost=cost
            )
        else:
            allowed, remaining, reset_seconds = self._local_bucket(key, rule, cost)
        if not allowed:
            logger.warning("rate_limit_exceeded", rule=rule.name, reset_seconds=reset_seconds)
        return RateLimitDecision(allowed, rule.limit, remaining, reset_seconds)

    def _local_bucket(self, key: str, rule: RateLimitRule, cost: int) -> Tuple[bool, int, int]:
        now = self._clock()
        refill_rate = float(rule.limit) / float(rule.window_seconds)
        with self._state_lock:
            tokens, last_ts = self._buckets.get(key, (float(rule.limit), now))
            elapsed = max(0.0, (now - last_ts).total_seconds())
            tokens = min(float(rule.limit), tokens + elapsed * refill_rate)
            allowed = tokens >= cost
            if allowed:
                tokens -= cost
            self._buckets[key] = (tokens, now)
            reset_seconds = 0
            if not allowed:
                reset_seconds = max(1, math.ceil((cost - tokens) / refill_rate))
            return allowed, int(tokens), reset_seconds

    # -- login lockout ----------------------------------------------------

    def backoff_seconds(self, level: int) -> int:
        """Lock duration for the given lockout level, doubling up to the cap."""
        base = self.settings.login_lockout_base_seconds
        cap = self.settings.login_lockout_max_seconds
        if level <= 0:
            return 0
        # Clamp the exponent so huge levels cannot overflow the computation
        exponent = min(level - 1, 32)
        return min(base * (2**exponent), cap)

    async def lockout_remaining(self, identifier: str) -> int:
        """Seconds until ``identifier`` may attempt a login again (0 when unlocked)."""
        if self.cache is not None:
            return await self.cache.login_lockout_remaining(identifier)
        now = self._clock()
        with self._state_lock:
            state = self._lockouts.get(identifier)
            if state is None or state.locked_until <= now:
                return 0
            return max(1, int((state.locked_until - now).total_seconds()))

    async def record_login_failure(self, identifier: str) -> Tuple[bool, int]:
        """Count a failed login; returns (locked, retry_after_seconds)."""
        settings = self.settings
        if self.cache is not None:
            locked, retry_after, attempts = await self.cache.record_login_failure(
                identifier,
                threshold=settings.login_lockout_threshold,
                window_seconds=settings.login_lockout_window_seconds,
                base_seconds=settings.login_lockout_base_seconds,
                max_seconds=settings.login_lockout_max_seconds,
            )
        else:
            locked, retry_after, attempts = self._local_failure(identifier)
        if locked and attempts >= 0:
            logger.warning("login_lockout_triggered", attempts=attempts, retry_after=retry_after)
        return locked, retry_after

    def _local_failure(self, identifier: str) -> Tuple[bool, int, int]:
        settings = self.settings
        now = self._clock()
        window = timedelta(seconds=settings.login_lockout_window_seconds)
        level_memory = timedelta(seconds=LOCKOUT_LEVEL_TTL_SECONDS)
        with self._state_lock:
            state = self._lockouts.get(identifier)
            if state is not None and state.locked_until > now:
                return True, max(1, int((state.locked_until - now).total_seconds())), -1
            count, window_start = self._failures.get(identifier, (0, now))
            if now - window_start > window:
                count, window_start = 0, now
            count += 1
            if count < settings.login_lockout_threshold:
                self._failures[identifier] = (count, window_start)
                return False, 0, count
            self._failures.pop(identifier, None)
            level = 1
            if state is not None and now - state.locked_until <= level_memory:
                level = state.level + 1
            duration = self.backoff_seconds(level)
            self._lockouts[identifier] = _LockState(level, now + timedelta(seconds=duration))
            return True, duration, count

    async def clear_login_failures(self, identifier: str) -> None:
        if self.cache is not None:
            await self.cache.clear_login_failures(identifier)
            return
        with self._state_lock:
            self._failures.pop(identifier, None)
            self._lockouts.pop(identifier, None)
