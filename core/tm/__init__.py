"""
Translation Memory Module
Store and reuse previously translated segments.

Key components:
- TMService: Orchestration-facing API (learn, lookup, apply, maintenance)
- TMRepository: SQLAlchemy store, invalidates the cache on every write
- TMMatcher: Exact then fuzzy matching with thresholds
- TMCache: LRU exact-match cache
- TMXCodec: TMX import/export
- TMMaintenance: Cleanup, hash rebuild, cache warm-up
"""

from .service import TMService, get_tm_service, build_tm_service
from .repository import TMRepository
from .matcher import TMMatcher, MatchResult, MatchThresholds, LookupResult
from .cache import TMCache
from .io import TMXCodec, CancellationToken
from .maintenance import TMMaintenance, MaintenanceScheduler
from .models import TMEntry, TMUsage
from .normalizer import normalize, compute_source_hash
from .similarity import score, ScoreWeights, ScoreBreakdown
from .exceptions import (
    TMError, TMValidationError, TMNotFoundError, TMStoreError, TMFormatError,
)

__all__ = [
    "TMService",
    "get_tm_service",
    "build_tm_service",
    "TMRepository",
    "TMMatcher",
    "MatchResult",
    "MatchThresholds",
    "LookupResult",
    "TMCache",
    "TMXCodec",
    "CancellationToken",
    "TMMaintenance",
    "MaintenanceScheduler",
    "TMEntry",
    "TMUsage",
    "normalize",
    "compute_source_hash",
    "score",
    "ScoreWeights",
    "ScoreBreakdown",
    "TMError",
    "TMValidationError",
    "TMNotFoundError",
    "TMStoreError",
    "TMFormatError",
]
