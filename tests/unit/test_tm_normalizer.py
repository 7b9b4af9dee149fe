"""
Unit tests for core/tm/normalizer.py — canonical text form and source hash.
"""
import unicodedata

import pytest

from core.tm.normalizer import (
    NormalizationOptions,
    normalize,
    compute_source_hash,
    hash_normalized,
    tokenize,
    extract_placeholders,
    significant_terms,
    strip_invalid_xml,
)


# ---------------------------------------------------------------------------
# Default pipeline
# ---------------------------------------------------------------------------

class TestNormalize:
    def test_lowercase_and_collapse(self):
        assert normalize("  Hello   World  ") == "hello world"

    def test_tabs_and_newlines(self):
        assert normalize("Hello\t\n World") == "hello world"

    @pytest.mark.parametrize("value", [None, "", "   "])
    def test_empty_input(self, value):
        assert normalize(value) == ""

    def test_nfd_applied(self):
        assert normalize("Café") == unicodedata.normalize("NFD", "café")

    def test_composed_and_decomposed_agree(self):
        assert normalize("Caf\u00e9") == normalize("Cafe\u0301")

    def test_idempotent(self):
        once = normalize("  Xin  Chào {Name}  ")
        assert normalize(once) == once


# ---------------------------------------------------------------------------
# Placeholders
# ---------------------------------------------------------------------------

class TestPlaceholders:
    def test_brace_placeholder_kept_verbatim(self):
        assert normalize("Hello {Name}") == "hello {Name}"

    def test_double_brace_and_positional_printf(self):
        assert normalize("Value: %1$s and {{PlayerName}}") == "value: %1$s and {{PlayerName}}"

    def test_dollar_and_percent_index(self):
        assert normalize("$1 Gold") == "$1 gold"
        assert normalize("%1 Items") == "%1 items"

    def test_extract_in_order(self):
        assert extract_placeholders("{0} has %d of $1") == ["{0}", "%d", "$1"]

    def test_percent_sign_is_not_placeholder(self):
        assert extract_placeholders("100% sure") == []

    def test_extract_none(self):
        assert extract_placeholders(None) == []


# ---------------------------------------------------------------------------
# Optional steps
# ---------------------------------------------------------------------------

class TestOptions:
    def test_markup_kept_by_default(self):
        assert normalize("<b>Hi</b>") == "<b>hi</b>"

    def test_remove_markup(self):
        options = NormalizationOptions(remove_markup=True)
        assert normalize("<b>Bold</b> [color=red]text[/color] {0}", options) == "bold text {0}"

    def test_remove_double_bracket_markup(self):
        options = NormalizationOptions(remove_markup=True)
        assert normalize("[[col:red]]Warning[[/col]]", options) == "warning"

    def test_normalize_punctuation(self):
        options = NormalizationOptions(normalize_punctuation=True)
        assert normalize("“Wait…”  — now!!", options) == '"wait..." - now!'

    def test_keep_case(self):
        assert normalize("Hello", NormalizationOptions(lowercase=False)) == "Hello"


# ---------------------------------------------------------------------------
# Hashing / tokens
# ---------------------------------------------------------------------------

class TestHash:
    def test_equivalent_texts_share_hash(self):
        assert compute_source_hash("Hello world") == compute_source_hash("  hello   WORLD ")

    def test_different_texts_differ(self):
        assert compute_source_hash("Hello world") != compute_source_hash("Hello worlds")

    def test_sha256_hex(self):
        digest = compute_source_hash("Hello world")
        assert len(digest) == 64
        assert digest == hash_normalized("hello world")

    def test_options_change_hash(self):
        plain = compute_source_hash("<b>Start</b>")
        stripped = compute_source_hash("<b>Start</b>", NormalizationOptions(remove_markup=True))
        assert plain != stripped
        assert stripped == compute_source_hash("Start")

    def test_tokenize_is_a_set(self):
        assert tokenize("a b a") == frozenset({"a", "b"})
        assert tokenize("") == frozenset()


# ---------------------------------------------------------------------------
# XML-safe text
# ---------------------------------------------------------------------------

class TestStripInvalidXml:
    def test_controls_removed(self):
        assert strip_invalid_xml("Lo\x00ad\x08ing\x1f") == "Loading"

    def test_vertical_tab_and_form_feed_become_spaces(self):
        assert strip_invalid_xml("Press\x0bStart\x0cNow") == "Press Start Now"

    def test_allowed_whitespace_kept(self):
        assert strip_invalid_xml("a\tb\nc\rd") == "a\tb\nc\rd"

    @pytest.mark.parametrize("value", [None, ""])
    def test_empty_passthrough(self, value):
        assert strip_invalid_xml(value) == value


# ---------------------------------------------------------------------------
# Significant terms
# ---------------------------------------------------------------------------

class TestSignificantTerms:
    def test_short_and_repeated_tokens_skipped(self):
        assert significant_terms("go to the door to the hall") == ["the", "door", "hall"]

    def test_placeholders_skipped(self):
        assert significant_terms("{name} has %1$s gold") == ["has", "gold"]

    def test_capped_at_five(self):
        assert significant_terms("one two three four five six seven") == ["one", "two", "three", "four", "five"]

    def test_nothing_significant(self):
        assert significant_terms("a b c") == []
