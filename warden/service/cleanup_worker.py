"""Background sweep of expired and force-logged-out sessions.

The worker calls ``cleanup_expired_sessions`` on a fixed interval. The sweep
is a delete-by-predicate, so overlapping or skipped cycles are harmless.
"""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING, Optional

from warden.logging import get_logger

if TYPE_CHECKING:
    from warden.service.sessions import SessionLedger

logger = get_logger(__name__)

DEFAULT_INTERVAL_SECONDS = 3600
MAX_BACKOFF_SECONDS = 300
MAX_BACKOFF_INTERVALS = 8


class SessionCleanupWorker:
    """Periodic expiry sweep running as an asyncio task."""

    def __init__(
        self,
        sessions: "SessionLedger",
        *,
        interval: int = DEFAULT_INTERVAL_SECONDS,
    ) -> None:
        self.sessions = sessions
        self.interval = interval
        self.last_deleted: int = 0
        self._running = False
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._running

    async def start(self) -> None:
        """Start the background sweep."""
        if self._running:
            logger.warning("session_cleanup_already_running")
            return

        self._running = True
        self._task = asyncio.create_task(self._run_loop())
        logger.info("session_cleanup_started", interval=self.interval)

    async def stop(self) -> None:
        """Stop the background sweep."""
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("session_cleanup_stopped")

    async def run_once(self) -> int:
        deleted = await self.sessions.cleanup_expired_sessions()
        self.last_deleted = deleted
        return deleted

    def _next_delay(self, consecutive_errors: int) -> float:
        """Seconds until the next sweep; repeated failures only ever lengthen it."""
        if consecutive_errors <= 3:
            return self.interval
        ceiling = max(MAX_BACKOFF_SECONDS, self.interval * MAX_BACKOFF_INTERVALS)
        return min(ceiling, self.interval * (2 ** (consecutive_errors - 3)))

    async def _run_loop(self) -> None:
        consecutive_errors = 0
        while self._running:
            try:
                await self.run_once()
                consecutive_errors = 0
            except Exception as exc:
                consecutive_errors += 1
                logger.error(
                    "session_cleanup_error",
                    error=str(exc),
                    error_type=type(exc).__name__,
                    consecutive_errors=consecutive_errors,
                )

            delay = self._next_delay(consecutive_errors)
            if delay > self.interval:
                logger.warning(
                    "session_cleanup_backoff",
                    backoff_seconds=delay,
                    consecutive_errors=consecutive_errors,
                )
            await asyncio.sleep(delay)


async def create_cleanup_worker(
    sessions: "SessionLedger",
    *,
    auto_start: bool = True,
    interval: int = DEFAULT_INTERVAL_SECONDS,
) -> SessionCleanupWorker:
    """Build a cleanup worker and optionally start it right away."""
    worker = SessionCleanupWorker(sessions, interval=interval)
    if auto_start:
        await worker.start()
    return worker


__all__ = ["SessionCleanupWorker", "create_cleanup_worker"]
