"""
Translation Memory Service
Orchestration-facing API for TM operations.

Lookups degrade to "no match" on store failures: TM is an optimization,
a translation request must never fail because of it.
"""
import logging
from datetime import timedelta
from typing import Dict, Iterable, List, Optional, Tuple

from .cache import TMCache
from .exceptions import TMStoreError, TMValidationError
from .gateway import EntryData, EntryFilter
from .io import CancellationToken, TMXCodec, export_csv
from .maintenance import TMMaintenance
from .matcher import LookupResult, MatchThresholds, TMMatcher
from .models import TMEntry, TMUsage
from .repository import TMRepository
from .schemas import (
    BatchAddResult, CacheStats, ConflictPolicy, EntryCreate,
    ImportReport, RehashReport, TMStats,
)
from .similarity import ScoreWeights

logger = logging.getLogger(__name__)


class TMService:
    """
    Service layer for Translation Memory operations.

    Every collaborator and default is passed in; get_tm_service() wires
    them from settings.
    """

    def __init__(
        self,
        repository: TMRepository,
        matcher: Optional[TMMatcher] = None,
        maintenance: Optional[TMMaintenance] = None,
        codec: Optional[TMXCodec] = None,
        default_machine_quality: float = 0.8,
        human_quality: float = 1.0,
        cleanup_min_quality: float = 0.7,
        cleanup_max_age_days: int = 365,
        cleanup_include_unrated: bool = False,
    ):
        """Initialize service."""
        self.repository = repository
        self.cache: Optional[TMCache] = repository.cache
        self.matcher = matcher or TMMatcher(repository)
        self.maintenance = maintenance or TMMaintenance(repository)
        self.codec = codec or TMXCodec(repository)
        self.default_machine_quality = default_machine_quality
        self.human_quality = human_quality
        self.cleanup_min_quality = cleanup_min_quality
        self.cleanup_max_age_days = cleanup_max_age_days
        self.cleanup_include_unrated = cleanup_include_unrated

    # ==================== LEARN ====================

    def add_translation(
        self,
        source_text: str,
        target_text: str,
        source_language: str,
        target_language: str,
        domain_context: Optional[str] = None,
        provider_id: Optional[str] = None,
        human_confirmed: bool = False,
        quality_score: Optional[float] = None,
    ) -> TMEntry:
        """
        Add or confirm a translation.

        Quality defaults to the human quality (1.0) for confirmed text and
        to the machine default (0.8) otherwise. Duplicates merge.
        """
        if not source_text or not source_text.strip():
            raise TMValidationError("Source text is empty")
        if not target_text or not target_text.strip():
            raise TMValidationError("Target text is empty")
        if not source_language or not target_language:
            raise TMValidationError("Source and target language are required")

        if quality_score is None:
            quality_score = self.human_quality if human_confirmed else self.default_machine_quality

        entry = self.repository.insert_or_merge(EntryData(
            source_text=source_text,
            target_text=target_text,
            source_language=source_language,
            target_language=target_language,
            domain_context=domain_context or None,
            provider_id=provider_id,
            quality_score=quality_score,
        ))
        logger.debug(f"Learned TM entry {entry.id} ({source_language}->{target_language})")
        return entry

    def add_translations_batch(self, items: Iterable[EntryCreate]) -> BatchAddResult:
        """Add many translations; a bad item is reported, not fatal."""
        result = BatchAddResult()
        for item in items:
            try:
                self.add_translation(**item.model_dump())
                result.added += 1
            except TMValidationError as e:
                result.failed += 1
                result.errors.append(f"{item.source_text[:50]}: {e}")
        logger.info(f"Batch add: {result.added} added, {result.failed} failed")
        return result

    # ==================== LOOKUP ====================

    def find_best_match(
        self,
        source_text: str,
        target_language: str,
        domain_context: Optional[str] = None,
        thresholds: Optional[MatchThresholds] = None,
    ) -> LookupResult:
        """Zero or one auto-applicable match plus suggestions."""
        try:
            return self.matcher.find_best(source_text, target_language, domain_context, thresholds)
        except TMStoreError as e:
            logger.warning(f"TM lookup failed, continuing without TM: {e}")
            return LookupResult(source_text=source_text)

    def find_matches_batch(
        self,
        source_texts: List[str],
        target_language: str,
        domain_context: Optional[str] = None,
        thresholds: Optional[MatchThresholds] = None,
    ) -> Dict[str, LookupResult]:
        try:
            return self.matcher.find_batch(source_texts, target_language, domain_context, thresholds)
        except TMStoreError as e:
            logger.warning(f"TM batch lookup failed, continuing without TM: {e}")
            return {text: LookupResult(source_text=text) for text in source_texts}

    def apply_match(
        self,
        entry_id: str,
        consumer_ref: Optional[str] = None,
        match_confidence: float = 1.0,
    ) -> Tuple[TMEntry, TMUsage]:
        """Record that the caller used an entry (usage +1 and a trace row)."""
        return self.repository.increment_usage(entry_id, consumer_ref, match_confidence)

    # ==================== ENTRIES ====================

    def get_entry(self, entry_id: str) -> TMEntry:
        return self.repository.get(entry_id)

    def correct_entry(self, entry_id: str, **changes) -> TMEntry:
        """
        Manual correction of target text and/or quality.

        Unlike a merge, quality is set as given and may go down.
        """
        allowed = {"target_text", "quality_score"}
        unknown = set(changes) - allowed
        if unknown:
            raise TMValidationError(f"Cannot correct fields: {sorted(unknown)}")
        if not changes:
            return self.repository.get(entry_id)
        return self.repository.update_entry(entry_id, **changes)

    def delete_entry(self, entry_id: str) -> None:
        self.repository.delete(entry_id)

    def list_entries(
        self,
        predicate: Optional[EntryFilter] = None,
        page: int = 1,
        limit: int = 50,
    ) -> Tuple[List[TMEntry], int]:
        return self.repository.list_entries(predicate, page, limit)

    def usage_trace(self, entry_id: str) -> List[TMUsage]:
        self.repository.get(entry_id)
        return self.repository.usage_trace(entry_id)

    # ==================== STATS ====================

    def statistics(self) -> TMStats:
        stats = self.repository.aggregate_stats()
        if self.cache is not None:
            stats.cache = CacheStats(**self.cache.statistics().to_dict())
        return stats

    # ==================== IMPORT / EXPORT ====================

    def export_tmx(
        self,
        sink,
        predicate: Optional[EntryFilter] = None,
        on_progress=None,
        cancel_token: Optional[CancellationToken] = None,
        source_language: Optional[str] = None,
    ) -> int:
        return self.codec.export(
            sink,
            predicate=predicate,
            on_progress=on_progress,
            cancel_token=cancel_token,
            source_language=source_language,
        )

    def import_tmx(
        self,
        source,
        policy: ConflictPolicy = ConflictPolicy.SKIP_EXISTING,
        on_progress=None,
        cancel_token: Optional[CancellationToken] = None,
        merge_usage_on_skip: bool = False,
    ) -> ImportReport:
        return self.codec.import_(
            source,
            policy=policy,
            on_progress=on_progress,
            cancel_token=cancel_token,
            merge_usage_on_skip=merge_usage_on_skip,
        )

    def export_csv(self, sink, predicate: Optional[EntryFilter] = None) -> int:
        return export_csv(self.repository.iter_entries(predicate), sink)

    # ==================== MAINTENANCE ====================

    def cleanup(
        self,
        min_quality: Optional[float] = None,
        max_age_days: Optional[int] = None,
        include_unrated: Optional[bool] = None,
    ) -> int:
        """Evict stale low-quality entries; unset arguments use the configured policy."""
        return self.maintenance.cleanup(
            self.cleanup_min_quality if min_quality is None else min_quality,
            timedelta(days=self.cleanup_max_age_days if max_age_days is None else max_age_days),
            self.cleanup_include_unrated if include_unrated is None else include_unrated,
        )

    def rebuild_hashes(self) -> RehashReport:
        return self.maintenance.rebuild_hashes()

    def warm_cache(self, limit: int = 1000) -> int:
        return self.maintenance.warm_cache(limit)

    def clear_cache(self) -> None:
        if self.cache is not None:
            self.cache.clear()


# Global instance
_service: Optional[TMService] = None


def build_tm_service(settings) -> TMService:
    """Wire a service from a Settings object."""
    cache = TMCache(max_size=settings.tm_cache_max_entries)
    repository = TMRepository(
        db_path=str(settings.tm_database_path),
        cache=cache,
        tokens_per_reuse=settings.tm_tokens_per_reuse,
    )
    matcher = TMMatcher(
        repository,
        cache=cache,
        weights=ScoreWeights(
            edit_distance=settings.tm_weight_edit_distance,
            prefix=settings.tm_weight_prefix,
            token_overlap=settings.tm_weight_token,
        ),
        thresholds=MatchThresholds(
            accept=settings.tm_fuzzy_threshold,
            auto_apply=settings.tm_auto_apply_threshold,
        ),
        candidate_limit=settings.tm_candidate_limit,
        max_results=settings.tm_max_results,
        parallel_threshold=settings.tm_parallel_threshold,
        workers=settings.tm_parallel_workers,
    )
    return TMService(
        repository,
        matcher=matcher,
        maintenance=TMMaintenance(repository, cache),
        codec=TMXCodec(
            repository,
            tool_name=settings.tm_tmx_tool_name,
            tool_version=settings.tm_tmx_tool_version,
        ),
        default_machine_quality=settings.tm_default_machine_quality,
        human_quality=settings.tm_human_quality,
        cleanup_min_quality=settings.tm_cleanup_min_quality,
        cleanup_max_age_days=settings.tm_cleanup_max_age_days,
        cleanup_include_unrated=settings.tm_cleanup_include_unrated,
    )


def get_tm_service() -> TMService:
    """Get or create the global service instance."""
    global _service
    if _service is None:
        from config.settings import settings
        _service = build_tm_service(settings)
    return _service


def reset_tm_service() -> None:
    """Drop the global instance (tests, settings reload)."""
    global _service
    if _service is not None:
        _service.repository.close()
    _service = None
