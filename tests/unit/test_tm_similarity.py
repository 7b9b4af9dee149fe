"""
Unit tests for core/tm/similarity.py — component scores and the composite.
"""
import dataclasses

import pytest

from core.tm.exceptions import TMValidationError
from core.tm.similarity import (
    ScoreWeights,
    ScoreBreakdown,
    levenshtein_distance,
    levenshtein_similarity,
    jaro_winkler_similarity,
    token_overlap,
    context_boost,
    score,
    score_many,
)


# ---------------------------------------------------------------------------
# Components
# ---------------------------------------------------------------------------

class TestLevenshtein:
    def test_classic_example(self):
        assert levenshtein_distance("kitten", "sitting") == 3

    def test_symmetric(self):
        assert levenshtein_distance("abc", "yabd") == levenshtein_distance("yabd", "abc")

    def test_empty(self):
        assert levenshtein_distance("", "abc") == 3
        assert levenshtein_similarity("", "") == 1.0
        assert levenshtein_similarity("abc", "") == 0.0

    def test_similarity_normalized_by_longest(self):
        assert levenshtein_similarity("hello worlds", "hello world") == pytest.approx(11 / 12)


class TestJaroWinkler:
    def test_reference_value(self):
        assert jaro_winkler_similarity("MARTHA", "MARHTA") == pytest.approx(0.9611, abs=1e-4)

    def test_identical(self):
        assert jaro_winkler_similarity("same", "same") == 1.0

    def test_empty_side(self):
        assert jaro_winkler_similarity("", "abc") == 0.0
        assert jaro_winkler_similarity("abc", "") == 0.0

    def test_no_common_chars(self):
        assert jaro_winkler_similarity("a", "b") == 0.0

    def test_prefix_rewarded(self):
        assert jaro_winkler_similarity("prefixab", "prefixba") > jaro_winkler_similarity("abprefix", "baprefix")

    def test_prefix_bonus_at_low_jaro(self):
        # jaro 0.5, two shared leading chars
        assert jaro_winkler_similarity("abcdefgh", "abxyzuvw") == pytest.approx(0.6)


class TestTokenOverlap:
    def test_jaccard(self):
        assert token_overlap("a b", "b c") == pytest.approx(1 / 3)

    def test_identical_strings_overlap_fully(self):
        assert token_overlap("", "") == 1.0
        assert token_overlap("a b", "a b") == 1.0

    def test_disjoint(self):
        assert token_overlap("a b", "c d") == 0.0

    def test_duplicates_ignored(self):
        assert token_overlap("a a b", "a b") == 1.0


class TestContextBoost:
    def test_identical(self):
        assert context_boost("ui menu", "ui menu") == 0.05

    def test_same_first_token(self):
        assert context_boost("ui menu", "ui tooltip") == 0.03

    def test_unrelated(self):
        assert context_boost("ui", "dialog") == 0.0

    @pytest.mark.parametrize("a,b", [(None, "ui"), ("ui", None), (None, None)])
    def test_missing_context(self, a, b):
        assert context_boost(a, b) == 0.0


# ---------------------------------------------------------------------------
# Composite
# ---------------------------------------------------------------------------

class TestScore:
    def test_empty_strings_are_identical(self):
        composite, breakdown = score("", "")
        assert composite == 1.0
        assert breakdown.token_overlap_score == 1.0

    def test_identical_strings(self):
        composite, breakdown = score("hello world", "hello world")
        assert composite == 1.0
        assert breakdown.edit_distance_score == 1.0
        assert breakdown.token_overlap_score == 1.0

    def test_boost_is_clamped(self):
        composite, breakdown = score("hello world", "hello world", "ui", "ui")
        assert composite == 1.0
        assert breakdown.context_boost == 0.05

    def test_inserted_word_stays_below_accept(self):
        composite, _ = score("hello wonderful world", "hello world")
        assert composite == pytest.approx(0.672771, abs=1e-4)
        assert composite < 0.85

    def test_plural_single_word_segment(self):
        composite, _ = score("hello worlds", "hello world")
        assert composite == pytest.approx(0.761667, abs=1e-4)

        boosted, breakdown = score("hello worlds", "hello world", "ui", "ui")
        assert boosted == pytest.approx(0.811667, abs=1e-4)
        assert breakdown.context_boost == 0.05

    def test_plural_with_context_becomes_suggestion(self):
        plain, _ = score("open the door", "open the doors")
        assert plain == pytest.approx(0.817143, abs=1e-4)

        boosted, _ = score("open the door", "open the doors", "ui menu", "ui menu")
        assert boosted == pytest.approx(0.867143, abs=1e-4)
        assert 0.85 <= boosted < 0.95

    def test_rounded_to_six_decimals(self):
        composite, breakdown = score("open the door", "open the doors")
        assert composite == round(composite, 6)
        assert breakdown.prefix_similarity_score == round(breakdown.prefix_similarity_score, 6)

    def test_deterministic(self):
        results = {score("sword of fire", "sword of ice", "item", "item") for _ in range(5)}
        assert len(results) == 1

    def test_custom_weights(self):
        weights = ScoreWeights(edit_distance=0.0, prefix=0.0, token_overlap=1.0)
        composite, _ = score("a b", "b c", weights=weights)
        assert composite == pytest.approx(0.333333, abs=1e-6)


class TestWeights:
    def test_defaults_valid(self):
        assert ScoreWeights().validate() == ScoreWeights(0.4, 0.3, 0.3)

    def test_sum_must_be_one(self):
        with pytest.raises(TMValidationError):
            ScoreWeights(0.5, 0.5, 0.5).validate()

    def test_negative_rejected(self):
        with pytest.raises(TMValidationError):
            ScoreWeights(1.2, -0.1, -0.1).validate()

    def test_breakdown_is_frozen(self):
        breakdown = ScoreBreakdown.exact()
        with pytest.raises(dataclasses.FrozenInstanceError):
            breakdown.context_boost = 0.5


# ---------------------------------------------------------------------------
# Batch scoring
# ---------------------------------------------------------------------------

class TestScoreMany:
    CANDIDATES = [
        ("open the doors", "ui menu"),
        ("close the door", None),
        ("hello world", "ui"),
        ("open the door", None),
    ]

    def test_serial_matches_single_calls(self):
        results = score_many("open the door", self.CANDIDATES, context="ui menu", workers=1)
        expected = [score("open the door", text, "ui menu", ctx) for text, ctx in self.CANDIDATES]
        assert results == expected

    def test_threaded_scoring_keeps_order(self):
        serial = score_many("open the door", self.CANDIDATES, context="ui menu", workers=1)
        parallel = score_many("open the door", self.CANDIDATES, context="ui menu", workers=2)
        assert parallel == serial
        assert score_many("open the door", self.CANDIDATES, context="ui menu", workers=0) == serial

    def test_empty_candidates(self):
        assert score_many("anything", [], workers=4) == []
