"""
Unit tests for core/tm/service.py — orchestration-facing TM service.
"""
import io
from types import SimpleNamespace
from unittest.mock import patch

import pytest

from core.tm.cache import TMCache
from core.tm.exceptions import TMNotFoundError, TMStoreError, TMValidationError
from core.tm.gateway import EntryFilter
from core.tm.matcher import MatchThresholds
from core.tm.repository import TMRepository
from core.tm.schemas import EntryCreate
from core.tm.service import TMService, build_tm_service


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def service(tmp_path):
    repository = TMRepository(str(tmp_path / "tm.db"), cache=TMCache())
    yield TMService(repository)
    repository.close()


@pytest.fixture
def service_with_data(service):
    service.add_translation("Hello world", "Xin chào thế giới", "en", "vi", human_confirmed=True)
    service.add_translation("Open the doors", "Mở các cửa", "en", "vi", domain_context="ui menu")
    service.add_translation("Sword", "Kiếm", "en", "vi", quality_score=0.6)
    return service


def _settings(tmp_path, **overrides):
    values = dict(
        tm_database_path=tmp_path / "wired.db",
        tm_cache_max_entries=100,
        tm_tokens_per_reuse=20,
        tm_weight_edit_distance=0.4,
        tm_weight_prefix=0.3,
        tm_weight_token=0.3,
        tm_fuzzy_threshold=0.8,
        tm_auto_apply_threshold=0.9,
        tm_candidate_limit=500,
        tm_max_results=3,
        tm_parallel_threshold=2000,
        tm_parallel_workers=1,
        tm_tmx_tool_name="Wired",
        tm_tmx_tool_version="2.0",
        tm_default_machine_quality=0.75,
        tm_human_quality=1.0,
        tm_cleanup_min_quality=0.6,
        tm_cleanup_max_age_days=90,
        tm_cleanup_include_unrated=False,
    )
    values.update(overrides)
    return SimpleNamespace(**values)


# ---------------------------------------------------------------------------
# Learn
# ---------------------------------------------------------------------------

class TestAddTranslation:
    def test_machine_default_quality(self, service):
        entry = service.add_translation("Hello", "Xin chào", "en", "vi")
        assert entry.quality_score == 0.8

    def test_human_confirmed_quality(self, service):
        entry = service.add_translation("Hello", "Xin chào", "en", "vi", human_confirmed=True)
        assert entry.quality_score == 1.0

    def test_explicit_quality_wins(self, service):
        entry = service.add_translation("Hello", "Xin chào", "en", "vi", human_confirmed=True, quality_score=0.3)
        assert entry.quality_score == 0.3

    def test_confirmation_upgrades_machine_entry(self, service):
        service.add_translation("Hello", "Chào", "en", "vi")
        entry = service.add_translation("Hello", "Xin chào", "en", "vi", human_confirmed=True)
        assert entry.quality_score == 1.0
        assert entry.target_text == "Xin chào"
        assert entry.usage_count == 2

    @pytest.mark.parametrize("source,target,src,tgt", [
        ("", "x", "en", "vi"),
        ("x", "   ", "en", "vi"),
        ("x", "y", "", "vi"),
        ("x", "y", "en", ""),
    ])
    def test_rejected_before_store(self, service, source, target, src, tgt):
        with patch.object(service.repository, "insert_or_merge") as mock_insert:
            with pytest.raises(TMValidationError):
                service.add_translation(source, target, src, tgt)
        mock_insert.assert_not_called()

    def test_batch(self, service):
        items = [
            EntryCreate(source_text="One", target_text="Một", source_language="en", target_language="vi"),
            EntryCreate(source_text="   ", target_text="Trống", source_language="en", target_language="vi"),
            EntryCreate(source_text="Two", target_text="Hai", source_language="en", target_language="vi"),
        ]
        result = service.add_translations_batch(items)
        assert result.added == 2
        assert result.failed == 1
        assert len(result.errors) == 1


# ---------------------------------------------------------------------------
# Lookup / apply
# ---------------------------------------------------------------------------

class TestLookup:
    def test_exact(self, service_with_data):
        result = service_with_data.find_best_match("hello   WORLD", "vi")
        assert result.auto_applied.target_text == "Xin chào thế giới"

    def test_fuzzy_suggestion(self, service_with_data):
        result = service_with_data.find_best_match("Open the door", "vi", "ui menu")
        assert result.auto_applied is None
        assert result.suggestions[0].target_text == "Mở các cửa"

    def test_store_failure_degrades_to_no_match(self, service_with_data):
        with patch.object(service_with_data.matcher, "find_best", side_effect=TMStoreError("find_exact", "disk I/O error")):
            result = service_with_data.find_best_match("Hello world", "vi")
        assert result.is_empty

    def test_unreadable_store_degrades_to_no_match(self, tmp_path):
        db = tmp_path / "broken.db"
        db.write_bytes(b"\x00garbage, not sqlite\x00" * 100)
        repository = TMRepository(str(db))
        service = TMService(repository)

        result = service.find_best_match("Hello world", "vi")

        assert result.is_empty
        assert result.source_text == "Hello world"
        with pytest.raises(TMStoreError):
            service.add_translation("Hello world", "Xin chào", "en", "vi")
        repository.close()

    def test_batch_store_failure(self, service_with_data):
        with patch.object(service_with_data.matcher, "find_batch", side_effect=TMStoreError("scan_candidates", "locked")):
            results = service_with_data.find_matches_batch(["a", "b"], "vi")
        assert set(results) == {"a", "b"}
        assert all(r.is_empty for r in results.values())

    def test_validation_errors_propagate(self, service_with_data):
        with pytest.raises(TMValidationError):
            service_with_data.find_best_match("Swords", "vi", thresholds=MatchThresholds(0.9, 0.5))

    def test_apply_match(self, service_with_data):
        match = service_with_data.find_best_match("Hello world", "vi").auto_applied
        entry, usage = service_with_data.apply_match(match.entry_id, "job-42", 1.0)

        assert entry.usage_count == 2
        assert usage.consumer_ref == "job-42"
        trace = service_with_data.usage_trace(match.entry_id)
        assert [u.consumer_ref for u in trace] == ["job-42"]

    def test_apply_unknown(self, service):
        with pytest.raises(TMNotFoundError):
            service.apply_match("missing-id")

    def test_usage_trace_unknown(self, service):
        with pytest.raises(TMNotFoundError):
            service.usage_trace("missing-id")


# ---------------------------------------------------------------------------
# Entries
# ---------------------------------------------------------------------------

class TestEntries:
    def test_correct_lowers_quality(self, service_with_data):
        entry = service_with_data.find_best_match("Hello world", "vi").auto_applied.entry
        corrected = service_with_data.correct_entry(entry.id, target_text="Chào thế giới", quality_score=0.5)
        assert corrected.target_text == "Chào thế giới"
        assert corrected.quality_score == 0.5

    def test_correction_visible_to_lookup(self, service_with_data):
        entry = service_with_data.find_best_match("Hello world", "vi").auto_applied.entry
        service_with_data.correct_entry(entry.id, target_text="Chào thế giới")
        assert service_with_data.find_best_match("Hello world", "vi").best.target_text == "Chào thế giới"

    def test_correct_unknown_field(self, service_with_data):
        entry = service_with_data.list_entries()[0][0]
        with pytest.raises(TMValidationError):
            service_with_data.correct_entry(entry.id, usage_count=99)

    def test_correct_nothing(self, service_with_data):
        entry = service_with_data.list_entries()[0][0]
        assert service_with_data.correct_entry(entry.id).id == entry.id

    def test_delete(self, service_with_data):
        entry = service_with_data.find_best_match("Sword", "vi").auto_applied.entry
        service_with_data.delete_entry(entry.id)
        assert service_with_data.find_best_match("Sword", "vi").is_empty
        with pytest.raises(TMNotFoundError):
            service_with_data.get_entry(entry.id)

    def test_list_filtered(self, service_with_data):
        entries, total = service_with_data.list_entries(EntryFilter(domain_context="ui menu"))
        assert total == 1
        assert entries[0].source_text == "Open the doors"


# ---------------------------------------------------------------------------
# Stats / exchange / maintenance
# ---------------------------------------------------------------------------

class TestStatsAndExchange:
    def test_statistics(self, service_with_data):
        service_with_data.find_best_match("Hello world", "vi")
        stats = service_with_data.statistics()
        assert stats.total_entries == 3
        assert stats.entries_by_language_pair == {"en→vi": 3}
        assert stats.cache is not None
        assert stats.cache.size >= 1

    def test_tmx_round_trip(self, service_with_data, tmp_path):
        buffer = io.StringIO()
        assert service_with_data.export_tmx(buffer) == 3

        other = TMService(TMRepository(str(tmp_path / "other.db")))
        report = other.import_tmx(buffer.getvalue())
        assert report.imported == 3
        assert other.find_best_match("Sword", "vi").auto_applied.entry.quality_score == 0.6
        other.repository.close()

    def test_csv(self, service_with_data):
        buffer = io.StringIO()
        assert service_with_data.export_csv(buffer, EntryFilter(min_quality=0.9)) == 1

    def test_cleanup_uses_configured_policy(self, service_with_data):
        with patch.object(service_with_data.maintenance, "cleanup", return_value=0) as mock_cleanup:
            service_with_data.cleanup()
        min_quality, max_age, include_unrated = mock_cleanup.call_args.args
        assert min_quality == 0.7
        assert max_age.days == 365
        assert include_unrated is False

    def test_clear_cache(self, service_with_data):
        service_with_data.find_best_match("Hello world", "vi")
        service_with_data.clear_cache()
        assert len(service_with_data.cache) == 0

    def test_warm_cache(self, service_with_data):
        assert service_with_data.warm_cache(limit=2) == 2


# ---------------------------------------------------------------------------
# Wiring
# ---------------------------------------------------------------------------

class TestBuildService:
    def test_settings_applied(self, tmp_path):
        service = build_tm_service(_settings(tmp_path))

        assert service.matcher.thresholds.accept == 0.8
        assert service.matcher.thresholds.auto_apply == 0.9
        assert service.matcher.max_results == 3
        assert service.codec.tool_name == "Wired"
        assert service.cache.max_size == 100
        assert service.matcher.cache is service.cache
        assert service.add_translation("Hi", "Chào", "en", "vi").quality_score == 0.75
        service.repository.close()

    def test_bad_weights_rejected(self, tmp_path):
        with pytest.raises(TMValidationError):
            build_tm_service(_settings(tmp_path, tm_weight_token=0.9))

    def test_bad_thresholds_rejected(self, tmp_path):
        with pytest.raises(TMValidationError):
            build_tm_service(_settings(tmp_path, tm_fuzzy_threshold=0.99))
