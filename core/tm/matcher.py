"""
TM Matcher
Exact lookup first, then fuzzy retrieval, scoring, ranking and tiering.

Lookup flow:
    normalize -> exact (cache, then store) -> hit: done
                                           -> miss: scan candidates -> score
                                              -> drop < accept -> rank -> top N
                                              -> classify (>= auto_apply: auto)
"""
import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence

from .cache import TMCache
from .exceptions import TMValidationError
from .gateway import TMGateway
from .models import TMEntry
from .normalizer import normalize
from .schemas import MatchKind, MatchResponse, ScoreBreakdownResponse, LookupResponse
from .similarity import DEFAULT_WEIGHTS, ScoreBreakdown, ScoreWeights, score_many

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class MatchThresholds:
    """Fuzzy acceptance and auto-apply cut-offs (both inclusive)."""
    accept: float = 0.85
    auto_apply: float = 0.95

    def validate(self) -> "MatchThresholds":
        if not 0.0 <= self.accept <= self.auto_apply <= 1.0:
            raise TMValidationError(
                f"Thresholds must satisfy 0 <= accept <= auto_apply <= 1, "
                f"got accept={self.accept}, auto_apply={self.auto_apply}"
            )
        return self


DEFAULT_THRESHOLDS = MatchThresholds()


@dataclass
class MatchResult:
    """Result of a TM match."""
    entry: TMEntry
    similarity_score: float
    match_kind: MatchKind
    breakdown: ScoreBreakdown
    auto_applied: bool = False

    @property
    def entry_id(self) -> str:
        return self.entry.id

    @property
    def target_text(self) -> str:
        return self.entry.target_text

    def __repr__(self):
        return f"<Match {self.similarity_score:.1%} ({self.match_kind.value})>"

    def to_response(self) -> MatchResponse:
        return MatchResponse(
            entry_id=self.entry.id,
            source_text=self.entry.source_text,
            target_text=self.entry.target_text,
            target_language=self.entry.target_language,
            domain_context=self.entry.domain_context,
            quality_score=self.entry.quality_score,
            usage_count=self.entry.usage_count,
            similarity_score=self.similarity_score,
            match_kind=self.match_kind,
            auto_applied=self.auto_applied,
            breakdown=ScoreBreakdownResponse(**self.breakdown.to_dict()),
        )


@dataclass
class LookupResult:
    """Zero or one auto-applicable match plus suggestions."""
    source_text: str
    auto_applied: Optional[MatchResult] = None
    suggestions: List[MatchResult] = field(default_factory=list)

    @property
    def best(self) -> Optional[MatchResult]:
        if self.auto_applied is not None:
            return self.auto_applied
        return self.suggestions[0] if self.suggestions else None

    @property
    def is_empty(self) -> bool:
        return self.best is None

    def to_response(self) -> LookupResponse:
        return LookupResponse(
            source_text=self.source_text,
            auto_applied=self.auto_applied.to_response() if self.auto_applied else None,
            suggestions=[m.to_response() for m in self.suggestions],
        )


def _rank_key(match: MatchResult):
    # similarity desc, quality desc (unrated last), usage desc, id asc
    quality = match.entry.quality_score
    return (
        -match.similarity_score,
        -(quality if quality is not None else -1.0),
        -match.entry.usage_count,
        match.entry.id,
    )


class TMMatcher:
    """
    Translation Memory Matcher.

    Exact matches come from the cache or a hash lookup in the store and never
    run the scorer. Fuzzy matches score a bounded candidate set, ranked by
    relevance to the query, on several threads when the set is large.
    """

    def __init__(
        self,
        repository: TMGateway,
        cache: Optional[TMCache] = None,
        weights: ScoreWeights = DEFAULT_WEIGHTS,
        thresholds: MatchThresholds = DEFAULT_THRESHOLDS,
        candidate_limit: int = 1000,
        max_results: int = 5,
        parallel_threshold: int = 2000,
        workers: int = 0,
    ):
        """
        Initialize matcher.

        Args:
            repository: TM gateway (TMRepository)
            cache: Exact-match cache, defaults to the repository's
            weights: Scorer weights, validated here
            thresholds: Default accept/auto-apply thresholds
            candidate_limit: Max candidates pulled per fuzzy lookup
            max_results: Max fuzzy matches returned
            parallel_threshold: Candidate count from which scoring uses several threads
            workers: Thread count for parallel scoring, 0 = all cores
        """
        self.repository = repository
        self.cache = cache if cache is not None else getattr(repository, "cache", None)
        self.weights = weights.validate()
        self.thresholds = thresholds.validate()
        self.candidate_limit = candidate_limit
        self.max_results = max_results
        self.parallel_threshold = parallel_threshold
        self.workers = workers

    # ==================== EXACT ====================

    def find_exact(
        self,
        source_text: str,
        target_language: str,
        context: Optional[str] = None,
    ) -> Optional[MatchResult]:
        """Exact match on the normalized source hash, or None."""
        normalized, source_hash = self.repository.hash_source(source_text)
        if not normalized:
            return None
        return self._exact_by_hash(source_hash, target_language, context or None)

    def _exact_by_hash(
        self, source_hash: str, target_language: str, context: Optional[str]
    ) -> Optional[MatchResult]:
        entry = None
        if self.cache is not None:
            entry = self.cache.get(source_hash, target_language, context)

        if entry is None:
            stamp = self.cache.stamp() if self.cache is not None else None
            entry = self.repository.find_exact(source_hash, target_language, context)
            if entry is None:
                return None
            if self.cache is not None:
                self.cache.put(source_hash, target_language, entry, context=context, stamp=stamp)

        return MatchResult(
            entry=entry,
            similarity_score=1.0,
            match_kind=MatchKind.EXACT,
            breakdown=ScoreBreakdown.exact(),
            auto_applied=True,
        )

    # ==================== FUZZY ====================

    def find_fuzzy(
        self,
        source_text: str,
        target_language: str,
        context: Optional[str] = None,
        thresholds: Optional[MatchThresholds] = None,
        max_results: Optional[int] = None,
    ) -> List[MatchResult]:
        """
        Fuzzy matches at or above the accept threshold.

        Returns:
            Matches ranked by (similarity, quality, usage) descending
        """
        thresholds = (thresholds or self.thresholds).validate()
        normalized = normalize(source_text, self.repository.normalization)
        if not normalized:
            return []

        candidates = self.repository.scan_candidates(
            target_language, context or None, self.candidate_limit, query_text=normalized
        )
        return self._rank(normalized, candidates, context or None, thresholds, max_results)

    def _rank(
        self,
        normalized: str,
        candidates: Sequence[TMEntry],
        context: Optional[str],
        thresholds: MatchThresholds,
        max_results: Optional[int] = None,
        candidate_texts: Optional[Sequence[str]] = None,
    ) -> List[MatchResult]:
        if not candidates:
            return []

        if candidate_texts is None:
            candidate_texts = [self._candidate_text(c) for c in candidates]

        workers = 1
        if len(candidates) >= self.parallel_threshold:
            workers = self.workers
        scores = score_many(
            normalized,
            [(text, c.domain_context) for text, c in zip(candidate_texts, candidates)],
            context=context,
            weights=self.weights,
            workers=workers,
        )

        matches = []
        for entry, (composite, breakdown) in zip(candidates, scores):
            if composite < thresholds.accept:
                continue
            matches.append(MatchResult(
                entry=entry,
                similarity_score=composite,
                match_kind=MatchKind.FUZZY,
                breakdown=breakdown,
                auto_applied=composite >= thresholds.auto_apply,
            ))

        matches.sort(key=_rank_key)
        limit = max_results if max_results is not None else self.max_results
        return matches[:limit]

    def _candidate_text(self, entry: TMEntry) -> str:
        return entry.source_normalized or normalize(entry.source_text, self.repository.normalization)

    # ==================== COMBINED ====================

    def find_best(
        self,
        source_text: str,
        target_language: str,
        context: Optional[str] = None,
        thresholds: Optional[MatchThresholds] = None,
    ) -> LookupResult:
        """
        Exact match first; otherwise fuzzy matches split into at most one
        auto-applied match and suggestions.
        """
        exact = self.find_exact(source_text, target_language, context)
        if exact is not None:
            return LookupResult(source_text=source_text, auto_applied=exact)

        fuzzy = self.find_fuzzy(source_text, target_language, context, thresholds)
        return self._split(source_text, fuzzy)

    def find_batch(
        self,
        source_texts: Sequence[str],
        target_language: str,
        context: Optional[str] = None,
        thresholds: Optional[MatchThresholds] = None,
    ) -> Dict[str, LookupResult]:
        """
        Look up many segments; exact hits are resolved first, then each miss
        scans the candidates most relevant to it.
        """
        thresholds = (thresholds or self.thresholds).validate()
        context = context or None
        results: Dict[str, LookupResult] = {}
        misses: Dict[str, str] = {}

        for text in source_texts:
            if text in results or text in misses:
                continue
            normalized, source_hash = self.repository.hash_source(text)
            if not normalized:
                results[text] = LookupResult(source_text=text)
                continue
            exact = self._exact_by_hash(source_hash, target_language, context)
            if exact is not None:
                results[text] = LookupResult(source_text=text, auto_applied=exact)
            else:
                misses[text] = normalized

        texts_by_id: Dict[str, str] = {}
        for text, normalized in misses.items():
            candidates = self.repository.scan_candidates(
                target_language, context, self.candidate_limit, query_text=normalized
            )
            candidate_texts = []
            for candidate in candidates:
                if candidate.id not in texts_by_id:
                    texts_by_id[candidate.id] = self._candidate_text(candidate)
                candidate_texts.append(texts_by_id[candidate.id])
            fuzzy = self._rank(normalized, candidates, context, thresholds, None, candidate_texts)
            results[text] = self._split(text, fuzzy)

        logger.debug(
            f"Batch lookup: {len(results)} texts, {len(results) - len(misses)} exact, "
            f"{sum(1 for t in misses if not results[t].is_empty)} fuzzy"
        )
        return results

    @staticmethod
    def _split(source_text: str, matches: List[MatchResult]) -> LookupResult:
        result = LookupResult(source_text=source_text)
        for match in matches:
            if match.auto_applied and result.auto_applied is None:
                result.auto_applied = match
            else:
                match.auto_applied = False
                result.suggestions.append(match)
        return result

