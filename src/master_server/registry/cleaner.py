"""
Registry Cleaner (reaper) for the master server.

Periodically deletes registrations that stopped heartbeating long ago.
"""

import asyncio
from datetime import datetime, timezone, timedelta
from typing import Optional, List, Dict, Any, Callable
from dataclasses import dataclass, field

from ..utils.config import RegistryConfig
from ..utils.errors import MasterServerError
from ..utils.logging import get_logger
from .storage import RegistryStorage

logger = get_logger(__name__)


@dataclass
class ReapStats:
    """Statistics from one reap."""
    started_at: datetime
    completed_at: datetime
    threshold: datetime
    entries_removed: int = 0
    errors: List[str] = field(default_factory=list)

    @property
    def duration_seconds(self) -> float:
        """Get reap duration in seconds."""
        return (self.completed_at - self.started_at).total_seconds()

    @property
    def succeeded(self) -> bool:
        return not self.errors

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            "started_at": self.started_at.isoformat(),
            "completed_at": self.completed_at.isoformat(),
            "duration_seconds": self.duration_seconds,
            "threshold": self.threshold.isoformat(),
            "entries_removed": self.entries_removed,
            "errors": self.errors
        }


class RegistryCleaner:
    """Deletes registrations whose lastSeen is past the dead-entry threshold."""

    def __init__(
        self,
        storage: RegistryStorage,
        config: Optional[RegistryConfig] = None,
        clock: Optional[Callable[[], datetime]] = None
    ):
        """
        Initialize cleaner.

        Args:
            storage: Registry storage instance
            config: Threshold and interval configuration
            clock: Source of "now" (UTC)
        """
        self.storage = storage
        self.config = config or RegistryConfig()
        self.clock = clock or (lambda: datetime.now(timezone.utc))

        self.last_stats: Optional[ReapStats] = None
        self.reap_count = 0

        self._cleanup_task: Optional[asyncio.Task] = None
        self._stop_event = asyncio.Event()

    @property
    def dead_entry_threshold(self) -> timedelta:
        return timedelta(seconds=self.config.dead_entry_threshold_seconds)

    @property
    def is_running(self) -> bool:
        return self._cleanup_task is not None and not self._cleanup_task.done()

    async def start_periodic_cleanup(
        self,
        interval_seconds: Optional[float] = None
    ) -> None:
        """
        Start the periodic reap task.

        Args:
            interval_seconds: Reap period (defaults to the dead-entry threshold)

        Raises:
            ValueError: If an explicit interval is not positive
        """
        if self.is_running:
            logger.warning("reaper_already_running")
            return

        if interval_seconds is None:
            interval = self.config.effective_reap_interval
        elif interval_seconds <= 0:
            raise ValueError(f"Reap interval must be positive: {interval_seconds}")
        else:
            interval = interval_seconds

        self._stop_event.clear()
        self._cleanup_task = asyncio.create_task(self._cleanup_loop(interval))
        logger.info("reaper_started", interval_seconds=interval,
                    threshold_seconds=self.config.dead_entry_threshold_seconds)

    async def stop_periodic_cleanup(self) -> None:
        """Stop the periodic reap task."""
        if not self._cleanup_task:
            return

        self._stop_event.set()

        try:
            await asyncio.wait_for(self._cleanup_task, timeout=5.0)
        except asyncio.TimeoutError:
            logger.warning("reaper_stop_timeout_cancelling")
            self._cleanup_task.cancel()
            try:
                await self._cleanup_task
            except asyncio.CancelledError:
                pass

        self._cleanup_task = None
        logger.info("reaper_stopped")

    async def reap_now(self) -> ReapStats:
        """
        Delete every registration with lastSeen <= now - threshold.

        Store failures are recorded in the returned stats, never raised.
        """
        started = self.clock()
        threshold = started - self.dead_entry_threshold
        stats = ReapStats(
            started_at=started,
            completed_at=started,
            threshold=threshold
        )

        try:
            stats.entries_removed = await self.storage.delete_seen_before(threshold)
        except MasterServerError as e:
            logger.error("reap_failed", error=str(e), error_code=e.code)
            stats.errors.append(str(e))

        stats.completed_at = self.clock()
        self.last_stats = stats
        self.reap_count += 1

        logger.info(
            "reap_completed",
            entries_removed=stats.entries_removed,
            threshold=threshold.isoformat(),
            errors=len(stats.errors)
        )
        return stats

    async def _cleanup_loop(self, interval: float) -> None:
        """Background task running reap_now on a fixed period."""
        if self.config.reap_on_start:
            await self._safe_reap()

        while not self._stop_event.is_set():
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=interval)
                break
            except asyncio.TimeoutError:
                await self._safe_reap()

    async def _safe_reap(self) -> None:
        # A failed tick must never end the loop; the next tick retries.
        try:
            await self.reap_now()
        except Exception as e:
            logger.error("reaper_tick_error", error=str(e), exc_info=True)


__all__ = [
    'RegistryCleaner',
    'ReapStats',
]
