"""
TM Similarity Scorer
Composite similarity between two normalized segments.

composite = w_edit * levenshtein + w_prefix * jaro_winkler + w_token * jaccard
            + context boost (clamped to 1.0)

Edit distance and Jaro matching run in rapidfuzz; batches go through
rapidfuzz.process.cdist, which spreads the work over threads.
"""
import logging
import math
from dataclasses import dataclass
from typing import List, Optional, Sequence, Tuple

import numpy as np
from rapidfuzz import process
from rapidfuzz.distance import Jaro, Levenshtein

from .exceptions import TMValidationError
from .normalizer import tokenize

logger = logging.getLogger(__name__)

EXACT_CONTEXT_BOOST = 0.05
CATEGORY_CONTEXT_BOOST = 0.03
SCORE_PRECISION = 6

JARO_WINKLER_SCALING = 0.1
JARO_WINKLER_MAX_PREFIX = 4


@dataclass(frozen=True)
class ScoreWeights:
    """Weights of the three similarity components."""
    edit_distance: float = 0.4
    prefix: float = 0.3
    token_overlap: float = 0.3

    def validate(self) -> "ScoreWeights":
        values = (self.edit_distance, self.prefix, self.token_overlap)
        if any(v < 0 for v in values):
            raise TMValidationError(f"Score weights must be non-negative: {values}")
        if not math.isclose(sum(values), 1.0, abs_tol=1e-6):
            raise TMValidationError(f"Score weights must sum to 1.0, got {sum(values):.6f}")
        return self


DEFAULT_WEIGHTS = ScoreWeights()


@dataclass(frozen=True)
class ScoreBreakdown:
    """Per-component scores of one comparison."""
    edit_distance_score: float
    prefix_similarity_score: float
    token_overlap_score: float
    context_boost: float = 0.0

    @classmethod
    def exact(cls) -> "ScoreBreakdown":
        return cls(1.0, 1.0, 1.0, 0.0)

    def to_dict(self) -> dict:
        return {
            "edit_distance_score": self.edit_distance_score,
            "prefix_similarity_score": self.prefix_similarity_score,
            "token_overlap_score": self.token_overlap_score,
            "context_boost": self.context_boost,
        }


# ==================== COMPONENTS ====================

def levenshtein_distance(a: str, b: str) -> int:
    """Single-character edit distance."""
    return Levenshtein.distance(a, b)


def levenshtein_similarity(a: str, b: str) -> float:
    """1 - distance / longest; 1.0 for two empty strings."""
    return Levenshtein.normalized_similarity(a, b)


def _common_prefix(s1: str, s2: str) -> int:
    prefix = 0
    for c1, c2 in zip(s1[:JARO_WINKLER_MAX_PREFIX], s2[:JARO_WINKLER_MAX_PREFIX]):
        if c1 != c2:
            break
        prefix += 1
    return prefix


def _winkler(s1: str, s2: str, jaro: float) -> float:
    # the prefix bonus applies at every Jaro level, not only above 0.7
    if s1 == s2:
        return 1.0
    if not s1 or not s2:
        return 0.0
    return min(1.0, jaro + _common_prefix(s1, s2) * JARO_WINKLER_SCALING * (1.0 - jaro))


def jaro_winkler_similarity(s1: str, s2: str) -> float:
    """Jaro-Winkler similarity, rewards a common prefix (up to 4 chars)."""
    return _winkler(s1, s2, Jaro.similarity(s1, s2))


def token_overlap(a: str, b: str) -> float:
    """Jaccard index over whitespace tokens; identical strings score 1, 0/0 otherwise is 0."""
    if a == b:
        return 1.0
    tokens_a = tokenize(a)
    tokens_b = tokenize(b)
    union = tokens_a | tokens_b
    if not union:
        return 0.0
    return len(tokens_a & tokens_b) / len(union)


def context_boost(context_a: Optional[str], context_b: Optional[str]) -> float:
    """+0.05 for identical contexts, +0.03 when only the first token agrees."""
    if context_a is None or context_b is None:
        return 0.0
    if context_a == context_b:
        return EXACT_CONTEXT_BOOST
    first_a = context_a.split()[:1]
    first_b = context_b.split()[:1]
    if first_a and first_a == first_b:
        return CATEGORY_CONTEXT_BOOST
    return 0.0


# ==================== COMPOSITE ====================

def _compose(
    edit: float,
    prefix: float,
    tokens: float,
    boost: float,
    weights: ScoreWeights,
) -> Tuple[float, ScoreBreakdown]:
    weighted = (
        weights.edit_distance * edit
        + weights.prefix * prefix
        + weights.token_overlap * tokens
    )
    composite = round(min(1.0, weighted + boost), SCORE_PRECISION)

    breakdown = ScoreBreakdown(
        edit_distance_score=round(edit, SCORE_PRECISION),
        prefix_similarity_score=round(prefix, SCORE_PRECISION),
        token_overlap_score=round(tokens, SCORE_PRECISION),
        context_boost=boost,
    )
    return composite, breakdown


def score(
    a: str,
    b: str,
    context_a: Optional[str] = None,
    context_b: Optional[str] = None,
    weights: ScoreWeights = DEFAULT_WEIGHTS,
) -> Tuple[float, ScoreBreakdown]:
    """
    Score two normalized strings.

    Weights are used as given; call ScoreWeights.validate() beforehand.

    Returns:
        (composite, breakdown), composite rounded to 6 decimals and <= 1.0
    """
    return _compose(
        levenshtein_similarity(a, b),
        jaro_winkler_similarity(a, b),
        token_overlap(a, b),
        context_boost(context_a, context_b),
        weights,
    )


def score_many(
    query: str,
    candidates: Sequence[Tuple[str, Optional[str]]],
    context: Optional[str] = None,
    weights: ScoreWeights = DEFAULT_WEIGHTS,
    workers: int = 1,
) -> List[Tuple[float, ScoreBreakdown]]:
    """
    Score a query against (normalized_text, context) candidates.

    Edit and Jaro similarities for the whole batch come from one cdist call
    each; workers is passed through (0 or less = all cores). Output order
    follows input order and equals calling score() per candidate.
    """
    if not candidates:
        return []

    texts = [text for text, _ in candidates]
    workers = workers if workers > 0 else -1
    if workers != 1:
        logger.debug(f"Scoring {len(texts)} candidates on {workers} workers")

    edits = process.cdist(
        [query], texts, scorer=Levenshtein.normalized_similarity, dtype=np.float64, workers=workers
    )[0]
    jaros = process.cdist(
        [query], texts, scorer=Jaro.similarity, dtype=np.float64, workers=workers
    )[0]

    return [
        _compose(
            float(edit),
            _winkler(query, text, float(jaro)),
            token_overlap(query, text),
            context_boost(context, cand_context),
            weights,
        )
        for (text, cand_context), edit, jaro in zip(candidates, edits, jaros)
    ]
