"""
TM Maintenance
Eviction of low-value entries, hash rebuild and cache warm-up, plus an
asyncio scheduler that runs cleanup periodically.
"""
import asyncio
import logging
from datetime import datetime, timedelta
from typing import Optional

from .cache import TMCache
from .exceptions import TMValidationError
from .gateway import EntryFilter, TMGateway
from .models import utcnow
from .schemas import RehashReport

logger = logging.getLogger(__name__)


class TMMaintenance:
    """On-demand maintenance operations over a TM store."""

    def __init__(self, repository: TMGateway, cache: Optional[TMCache] = None):
        self.repository = repository
        self.cache = cache if cache is not None else getattr(repository, "cache", None)

    def cleanup(
        self,
        min_quality: float,
        max_age: timedelta,
        include_unrated: bool = False,
        now: Optional[datetime] = None,
    ) -> int:
        """
        Delete entries with quality < min_quality AND last use older than max_age.

        Unrated entries are kept unless include_unrated is set. Cache keys of
        deleted entries are invalidated before this returns. Running it again
        without new activity deletes nothing.

        Returns:
            Number of deleted entries
        """
        predicate = self._cleanup_filter(min_quality, max_age, include_unrated, now)
        cutoff = predicate.last_used_before
        deleted = self.repository.delete_where(predicate)
        logger.info(
            f"TM cleanup: deleted {deleted} entries "
            f"(quality < {min_quality}, last used before {cutoff:%Y-%m-%d})"
        )
        return deleted

    def preview_cleanup(
        self,
        min_quality: float,
        max_age: timedelta,
        include_unrated: bool = False,
        now: Optional[datetime] = None,
    ) -> int:
        """Number of entries cleanup() would delete right now."""
        return self.repository.count(self._cleanup_filter(min_quality, max_age, include_unrated, now))

    @staticmethod
    def _cleanup_filter(
        min_quality: float,
        max_age: timedelta,
        include_unrated: bool,
        now: Optional[datetime],
    ) -> EntryFilter:
        if not 0.0 <= min_quality <= 1.0:
            raise TMValidationError(f"min_quality must be within [0, 1]: {min_quality}")
        if max_age < timedelta(0):
            raise TMValidationError(f"max_age must not be negative: {max_age}")
        return EntryFilter(
            quality_below=min_quality,
            last_used_before=(now or utcnow()) - max_age,
            include_unrated=include_unrated,
        )

    def rebuild_hashes(self, on_progress=None) -> RehashReport:
        """Recompute every source hash with the current normalizer."""
        scanned, rehashed, merged = self.repository.rebuild_hashes(on_progress=on_progress)
        return RehashReport(scanned=scanned, rehashed=rehashed, merged=merged)

    def warm_cache(self, limit: int = 1000) -> int:
        """Preload the most used entries into the exact-match cache."""
        if self.cache is None:
            return 0
        stamp = self.cache.stamp()
        loaded = self.cache.preload(self.repository.most_used(limit), stamp=stamp)
        logger.info(f"TM cache warmed with {loaded} entries")
        return loaded


class MaintenanceScheduler:
    """
    Periodic cleanup on the running event loop.

    Cleanup itself is blocking database work and runs in a worker thread.
    """

    def __init__(
        self,
        maintenance: TMMaintenance,
        interval: timedelta,
        min_quality: float,
        max_age: timedelta,
        include_unrated: bool = False,
    ):
        self.maintenance = maintenance
        self.interval = interval
        self.min_quality = min_quality
        self.max_age = max_age
        self.include_unrated = include_unrated
        self.last_run: Optional[datetime] = None
        self.last_deleted: Optional[int] = None
        self._task: Optional[asyncio.Task] = None

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def run_once(self) -> int:
        deleted = await asyncio.to_thread(
            self.maintenance.cleanup,
            self.min_quality,
            self.max_age,
            self.include_unrated,
        )
        self.last_run = utcnow()
        self.last_deleted = deleted
        return deleted

    async def _loop(self):
        while True:
            await asyncio.sleep(self.interval.total_seconds())
            try:
                deleted = await self.run_once()
                logger.info(f"Scheduled TM cleanup: {deleted} entries deleted")
            except Exception as e:
                logger.error(f"Scheduled TM cleanup failed: {e}")

    def start(self) -> None:
        if self.is_running:
            return
        self._task = asyncio.create_task(self._loop())
        logger.info(f"TM cleanup scheduler started (every {self.interval})")

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("TM cleanup scheduler stopped")
