"""Background sweeper for expired sessions and stale refresh tokens.

Runs in-process as an asyncio task. When a Redis cache is configured the
sweep is wrapped in a short-lived lock so only one process sweeps at a time;
the sweep itself is idempotent, so the lock only saves duplicate work.
"""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING, Dict, Optional

from reportguard.logging import get_logger

if TYPE_CHECKING:
    from reportguard.service.sessions import SessionManager
    from reportguard.service.tokens import TokenService
    from reportguard.storage.redis_cache import RedisCache

logger = get_logger(__name__)

DEFAULT_INTERVAL_SECONDS = 3600
INITIAL_BACKOFF_SECONDS = 30
MAX_BACKOFF_SECONDS = 3600
LOCK_NAME = "cleanup"


class CleanupWorker:
    def __init__(
        self,
        sessions: "SessionManager",
        tokens: "TokenService",
        *,
        interval_seconds: int = DEFAULT_INTERVAL_SECONDS,
        cache: Optional["RedisCache"] = None,
    ) -> None:
        self.sessions = sessions
        self.tokens = tokens
        self.interval_seconds = interval_seconds
        self.cache = cache
        self._running = False
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._running

    async def start(self) -> None:
        """Start the background worker."""
        if self._running:
            logger.warning("cleanup_worker_already_running")
            return
        self._running = True
        self._task = asyncio.create_task(self._run_loop())
        logger.info("cleanup_worker_started", interval_seconds=self.interval_seconds)

    async def stop(self) -> None:
        """Stop the worker, cancelling any sleep or sweep in progress."""
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("cleanup_worker_stopped")

    def _backoff_delay(self, consecutive_errors: int) -> float:
        """Retry sooner than a full interval, doubling on each repeated failure."""
        return min(
            MAX_BACKOFF_SECONDS,
            self.interval_seconds,
            INITIAL_BACKOFF_SECONDS * (2 ** (consecutive_errors - 1)),
        )

    async def _run_loop(self) -> None:
        consecutive_errors = 0
        while self._running:
            delay = self.interval_seconds
            try:
                await self.run_once()
                consecutive_errors = 0
            except Exception as exc:
                consecutive_errors += 1
                logger.error(
                    "cleanup_worker_loop_error",
                    error=str(exc),
                    error_type=type(exc).__name__,
                    consecutive_errors=consecutive_errors,
                )
                delay = self._backoff_delay(consecutive_errors)
                logger.warning(
                    "cleanup_worker_backoff",
                    backoff_seconds=delay,
                    consecutive_errors=consecutive_errors,
                )
            await asyncio.sleep(delay)

    async def run_once(self) -> Dict[str, int]:
        """One sweep: revoke expired sessions, then purge old refresh tokens."""
        owner: Optional[str] = None
        if self.cache is not None:
            owner = await self.cache.acquire_lock(LOCK_NAME, ttl_seconds=max(60, self.interval_seconds // 2))
            if owner is None:
                logger.info("cleanup_worker_lock_held_elsewhere")
                return {"expired_sessions": 0, "purged_tokens": 0, "skipped": 1}
        try:
            expired = await self.sessions.cleanup_expired_sessions()
            purged = self.tokens.cleanup_expired_tokens()
        finally:
            if owner is not None:
                await self.cache.release_lock(LOCK_NAME, owner)
        logger.info("cleanup_sweep_completed", expired_sessions=expired, purged_tokens=purged)
        return {"expired_sessions": expired, "purged_tokens": purged, "skipped": 0}
