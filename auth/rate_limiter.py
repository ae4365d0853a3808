"""
Login rate limiter — per-key failure counter with temporary blocks.

Each key (usually the client IP) gets a counter of failed logins inside a
sliding window. Reaching max_attempts blocks the key for block_duration.
A successful login forgets the key entirely.

    limiter = LoginRateLimiter.from_config(settings.rate_limit)
    await limiter.start()                 # periodic cleanup task
    if limiter.is_blocked(ip):
        retry_after = limiter.remaining_block_time(ip)
    limiter.record_attempt(ip, success=False)
    await limiter.stop()

Reads (is_blocked, remaining_block_time) share the lock; record_attempt and
cleanup take it exclusively. The clock is injectable for tests.
"""
from __future__ import annotations

import asyncio
import time
import structlog
from dataclasses import dataclass
from typing import Callable, Optional

from config.settings import RateLimitConfig
from utils.locks import ReadWriteLock

logger = structlog.get_logger()


@dataclass
class LoginAttempt:
    count: int = 0
    last_attempt: float = 0.0
    blocked_until: float = 0.0     # clock value; in the future ⇒ blocked


class LoginRateLimiter:
    def __init__(
        self,
        max_attempts: int = 5,
        block_duration: float = 900.0,
        window: float = 300.0,
        cleanup_interval: float = 1800.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.max_attempts = max_attempts
        self.block_duration = block_duration
        self.window = window
        self.cleanup_interval = cleanup_interval
        self._clock = clock
        self._attempts: dict[str, LoginAttempt] = {}
        self._lock = ReadWriteLock()
        self._task: Optional[asyncio.Task] = None

    @classmethod
    def from_config(cls, config: RateLimitConfig, clock: Callable[[], float] = time.monotonic) -> "LoginRateLimiter":
        return cls(
            max_attempts=config.max_attempts,
            block_duration=config.block_duration_seconds,
            window=config.window_seconds,
            cleanup_interval=config.cleanup_interval_seconds,
            clock=clock,
        )

    # ── Queries ───────────────────────────────────────────

    def is_blocked(self, key: str) -> bool:
        now = self._clock()
        with self._lock.read():
            attempt = self._attempts.get(key)
            return attempt is not None and attempt.blocked_until > now

    def remaining_block_time(self, key: str) -> float:
        """Seconds until the key is unblocked; 0 when not blocked."""
        now = self._clock()
        with self._lock.read():
            attempt = self._attempts.get(key)
            if attempt is None:
                return 0.0
            return max(0.0, attempt.blocked_until - now)

    # ── Mutations ─────────────────────────────────────────

    def record_attempt(self, key: str, success: bool) -> None:
        now = self._clock()
        with self._lock.write():
            if success:
                self._attempts.pop(key, None)
                return

            attempt = self._attempts.get(key)
            if attempt is None:
                attempt = LoginAttempt()
                self._attempts[key] = attempt
            elif now - attempt.last_attempt > self.window:
                attempt.count = 0

            attempt.count += 1
            attempt.last_attempt = now
            if attempt.count >= self.max_attempts:
                attempt.blocked_until = now + self.block_duration
                blocked = True
            else:
                blocked = False
            count = attempt.count

        if blocked:
            logger.warning("login_blocked", key=key, attempts=count,
                           block_seconds=self.block_duration)

    def cleanup(self) -> int:
        """Drop entries that are neither blocked nor inside the window."""
        now = self._clock()
        with self._lock.write():
            stale = [
                key for key, a in self._attempts.items()
                if a.blocked_until <= now and now - a.last_attempt > self.window
            ]
            for key in stale:
                del self._attempts[key]
        return len(stale)

    def __len__(self) -> int:
        with self._lock.read():
            return len(self._attempts)

    # ── Background cleanup ────────────────────────────────

    async def start(self) -> asyncio.Task:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._run())
        return self._task

    async def stop(self):
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

    async def _run(self):
        logger.info("rate_limiter_cleanup_started", interval=self.cleanup_interval)
        while True:
            await asyncio.sleep(self.cleanup_interval)
            try:
                removed = self.cleanup()
                if removed:
                    logger.debug("rate_limiter_cleanup", removed=removed)
            except Exception as e:
                logger.error("rate_limiter_cleanup_error", error=str(e))
