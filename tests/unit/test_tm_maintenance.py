"""
Unit tests for core/tm/maintenance.py — cleanup, hash rebuild, cache warm-up, scheduler.
"""
import asyncio
from datetime import timedelta

import pytest

from core.tm.cache import TMCache
from core.tm.exceptions import TMValidationError
from core.tm.gateway import EntryData
from core.tm.maintenance import MaintenanceScheduler, TMMaintenance
from core.tm.models import utcnow
from core.tm.repository import TMRepository


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def repo(tmp_path):
    repository = TMRepository(str(tmp_path / "tm.db"), cache=TMCache())
    yield repository
    repository.close()


@pytest.fixture
def maintenance(repo):
    return TMMaintenance(repo)


def _add(repo, source, quality=None, days_unused=0, **kwargs):
    entry = repo.insert_or_merge(EntryData(
        source_text=source,
        target_text=f"{source} (vi)",
        source_language="en",
        target_language="vi",
        quality_score=quality,
        **kwargs,
    ))
    if days_unused:
        entry = repo.update_entry(entry.id, last_used_at=utcnow() - timedelta(days=days_unused))
    return entry


# ---------------------------------------------------------------------------
# Cleanup
# ---------------------------------------------------------------------------

class TestCleanup:
    def test_stale_low_quality_removed(self, repo, maintenance):
        stale = _add(repo, "Stale", quality=0.65, days_unused=400)
        good = _add(repo, "Good", quality=0.92, days_unused=400)

        deleted = maintenance.cleanup(0.7, timedelta(days=365))

        assert deleted == 1
        remaining = [e.id for e in repo.iter_entries()]
        assert remaining == [good.id]
        assert stale.id not in remaining

    def test_second_run_deletes_nothing(self, repo, maintenance):
        _add(repo, "Stale", quality=0.65, days_unused=400)
        assert maintenance.cleanup(0.7, timedelta(days=365)) == 1
        assert maintenance.cleanup(0.7, timedelta(days=365)) == 0

    def test_recently_used_low_quality_kept(self, repo, maintenance):
        _add(repo, "Recent", quality=0.2, days_unused=10)
        assert maintenance.cleanup(0.7, timedelta(days=365)) == 0

    def test_unrated_kept_by_default(self, repo, maintenance):
        _add(repo, "Unrated", days_unused=400)
        assert maintenance.cleanup(0.7, timedelta(days=365)) == 0
        assert maintenance.cleanup(0.7, timedelta(days=365), include_unrated=True) == 1

    def test_usage_trace_removed_with_entry(self, repo, maintenance):
        stale = _add(repo, "Stale", quality=0.1)
        repo.increment_usage(stale.id, consumer_ref="job-1")
        repo.update_entry(stale.id, last_used_at=utcnow() - timedelta(days=400))

        maintenance.cleanup(0.7, timedelta(days=365))

        assert repo.usage_trace(stale.id) == []

    def test_cache_invalidated(self, repo, maintenance):
        stale = _add(repo, "Stale", quality=0.1, days_unused=400)
        repo.cache.put(stale.source_hash, "vi", stale)

        maintenance.cleanup(0.7, timedelta(days=365))

        assert repo.cache.get(stale.source_hash, "vi") is None

    def test_explicit_now(self, repo, maintenance):
        _add(repo, "Low", quality=0.1)
        later = utcnow() + timedelta(days=400)
        assert maintenance.cleanup(0.7, timedelta(days=365), now=later) == 1

    def test_preview_does_not_delete(self, repo, maintenance):
        _add(repo, "Stale", quality=0.65, days_unused=400)
        assert maintenance.preview_cleanup(0.7, timedelta(days=365)) == 1
        assert repo.count() == 1

    @pytest.mark.parametrize("min_quality,max_age", [
        (1.5, timedelta(days=1)),
        (-0.1, timedelta(days=1)),
        (0.5, timedelta(days=-1)),
    ])
    def test_invalid_policy(self, maintenance, min_quality, max_age):
        with pytest.raises(TMValidationError):
            maintenance.cleanup(min_quality, max_age)


# ---------------------------------------------------------------------------
# Rehash / warm-up
# ---------------------------------------------------------------------------

class TestRebuildAndWarm:
    def test_rebuild_report(self, repo, maintenance):
        _add(repo, "One")
        _add(repo, "Two")
        report = maintenance.rebuild_hashes()
        assert report.scanned == 2
        assert report.rehashed == 0
        assert report.merged == 0

    def test_warm_cache(self, repo, maintenance):
        busy = _add(repo, "Busy")
        repo.increment_usage(busy.id)
        _add(repo, "Quiet")

        assert maintenance.warm_cache(limit=1) == 1
        assert repo.cache.get(busy.source_hash, "vi") is not None

    def test_warm_without_cache(self, tmp_path):
        repository = TMRepository(str(tmp_path / "nocache.db"))
        assert TMMaintenance(repository).warm_cache() == 0
        repository.close()


# ---------------------------------------------------------------------------
# Scheduler
# ---------------------------------------------------------------------------

class TestScheduler:
    def _scheduler(self, maintenance, interval=timedelta(hours=1)):
        return MaintenanceScheduler(
            maintenance,
            interval=interval,
            min_quality=0.7,
            max_age=timedelta(days=365),
        )

    @pytest.mark.asyncio
    async def test_run_once(self, repo, maintenance):
        _add(repo, "Stale", quality=0.65, days_unused=400)
        scheduler = self._scheduler(maintenance)

        deleted = await scheduler.run_once()

        assert deleted == 1
        assert scheduler.last_deleted == 1
        assert scheduler.last_run is not None

    @pytest.mark.asyncio
    async def test_periodic_loop(self, repo, maintenance):
        _add(repo, "Stale", quality=0.65, days_unused=400)
        scheduler = self._scheduler(maintenance, interval=timedelta(milliseconds=10))

        scheduler.start()
        assert scheduler.is_running
        for _ in range(100):
            if scheduler.last_run is not None:
                break
            await asyncio.sleep(0.02)
        await scheduler.stop()

        assert not scheduler.is_running
        assert scheduler.last_run is not None
        assert repo.count() == 0

    @pytest.mark.asyncio
    async def test_stop_without_start(self, maintenance):
        scheduler = self._scheduler(maintenance)
        await scheduler.stop()
        assert not scheduler.is_running
