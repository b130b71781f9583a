"""
Idle Reaper: periodic sweep that terminates inactive sessions.

Runs on a fixed interval and sends every session idle past the threshold
through the same termination path as an explicit delete.
"""

import asyncio
from datetime import datetime, timedelta
from typing import Optional

from sandterm.logger import get_logger
from sandterm.session.base import utcnow
from sandterm.session.registry import SessionRegistry

logger = get_logger(__name__)


class IdleReaper:
    """Background task that reaps idle sessions from a registry."""

    def __init__(
        self,
        registry: SessionRegistry,
        idle_timeout: timedelta = timedelta(minutes=30),
        interval_seconds: float = 60.0,
    ):
        self.registry = registry
        self.idle_timeout = idle_timeout
        self.interval_seconds = interval_seconds
        self._running = False
        self._task: Optional[asyncio.Task] = None
        self._last_sweep_at: Optional[datetime] = None
        self._reaped_total = 0

    @property
    def running(self) -> bool:
        return self._running

    async def start(self):
        """Start the sweep loop."""
        if self._running:
            return
        self._running = True
        self._task = asyncio.create_task(self._run_loop())
        logger.info(
            f"IdleReaper started (every {self.interval_seconds:g}s, "
            f"idle timeout {int(self.idle_timeout.total_seconds() // 60)}m)"
        )

    async def stop(self):
        """Stop the sweep loop."""
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("IdleReaper stopped.")

    async def _run_loop(self):
        """Main loop: sleep, then sweep."""
        while self._running:
            try:
                await asyncio.sleep(self.interval_seconds)
            except asyncio.CancelledError:
                break

            try:
                await self.sweep()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"Idle sweep error: {e}")

    async def sweep(self, now: Optional[datetime] = None) -> list[str]:
        """
        Terminate every session idle for longer than the timeout.

        A failure on one session is logged and the sweep continues.

        Returns:
            Ids of the sessions this sweep terminated.
        """
        stale = self.registry.list_stale(self.idle_timeout, now)
        self._last_sweep_at = now or utcnow()

        for session_id in stale:
            logger.info(f"Cleaning up inactive session: {session_id}")

        # Concurrent, so one slow teardown does not hold up the rest
        results = await asyncio.gather(
            *(self.registry.terminate(session_id) for session_id in stale),
            return_exceptions=True,
        )

        reaped = []
        for session_id, result in zip(stale, results):
            if isinstance(result, Exception):
                logger.error(f"Failed to reap session {session_id}: {result}")
            elif isinstance(result, BaseException):
                raise result
            elif result:
                reaped.append(session_id)

        self._reaped_total += len(reaped)
        return reaped

    def get_status(self) -> dict:
        """Return current reaper status."""
        return {
            "running": self._running,
            "interval_seconds": self.interval_seconds,
            "idle_timeout_minutes": int(self.idle_timeout.total_seconds() // 60),
            "last_sweep_at": (
                self._last_sweep_at.isoformat() if self._last_sweep_at else None
            ),
            "reaped_total": self._reaped_total,
        }
