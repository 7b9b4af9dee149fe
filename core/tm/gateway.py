"""
TM persistence gateway: the contract the engine needs from a store.

Every write that touches an entry must invalidate the matching exact-match
cache key before it returns to the caller.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Iterator, List, Optional, Protocol, Tuple, runtime_checkable

from .models import TMEntry, TMUsage
from .normalizer import NormalizationOptions
from .schemas import TMStats


@dataclass
class EntryData:
    """Fields of an entry to insert or merge."""
    source_text: str
    target_text: str
    source_language: str
    target_language: str
    domain_context: Optional[str] = None
    provider_id: Optional[str] = None
    quality_score: Optional[float] = None
    usage_count: int = 1
    created_at: Optional[datetime] = None
    last_used_at: Optional[datetime] = None


@dataclass
class EntryFilter:
    """
    Predicate over entries, translated to SQL by the store.

    Quality bounds never match unrated entries unless include_unrated is set.
    Leave domain_context as None to ignore context; use "" for "no context".
    """
    source_language: Optional[str] = None
    target_language: Optional[str] = None
    domain_context: Optional[str] = None
    min_quality: Optional[float] = None
    quality_below: Optional[float] = None
    last_used_before: Optional[datetime] = None
    include_unrated: bool = False
    search: Optional[str] = None

    def has_quality_bound(self) -> bool:
        return self.min_quality is not None or self.quality_below is not None


@runtime_checkable
class TMGateway(Protocol):
    """Protocol every TM store implements."""

    normalization: Optional[NormalizationOptions]

    def hash_source(self, text: str) -> Tuple[str, str]: ...

    def insert_or_merge(self, data: EntryData) -> TMEntry: ...

    def update_entry(self, entry_id: str, **fields) -> TMEntry: ...

    def find_identity(
        self, source_hash: str, target_language: str, context: Optional[str] = None
    ) -> Optional[TMEntry]: ...

    def find_exact(
        self, source_hash: str, target_language: str, context: Optional[str] = None
    ) -> Optional[TMEntry]: ...

    def scan_candidates(
        self,
        target_language: str,
        context: Optional[str] = None,
        limit: int = 1000,
        query_text: Optional[str] = None,
    ) -> List[TMEntry]: ...

    def get(self, entry_id: str) -> TMEntry: ...

    def update_usage(self, entry_id: str, usage_count: int, last_used_at: datetime) -> TMEntry: ...

    def increment_usage(
        self, entry_id: str, consumer_ref: Optional[str] = None, confidence: float = 1.0
    ) -> Tuple[TMEntry, TMUsage]: ...

    def update_quality(self, entry_id: str, quality_score: Optional[float]) -> TMEntry: ...

    def delete(self, entry_id: str) -> None: ...

    def delete_where(self, predicate: EntryFilter) -> int: ...

    def iter_entries(self, predicate: Optional[EntryFilter] = None) -> Iterator[TMEntry]: ...

    def count(self, predicate: Optional[EntryFilter] = None) -> int: ...

    def list_entries(
        self, predicate: Optional[EntryFilter] = None, page: int = 1, limit: int = 50
    ) -> Tuple[List[TMEntry], int]: ...

    def most_used(self, limit: int = 1000) -> List[TMEntry]: ...

    def usage_trace(self, entry_id: str) -> List[TMUsage]: ...

    def rebuild_hashes(self, on_progress=None) -> Tuple[int, int, int]: ...

    def aggregate_stats(self) -> TMStats: ...
