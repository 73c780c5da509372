"""
Tests for the processors module.
"""

import json
import os
from datetime import timedelta
from unittest.mock import Mock, patch

import pytest

from par_cc_ingest.enums import CacheMissReason, CostMode
from par_cc_ingest.exceptions import FileProcessingError, PricingError, SummaryStoreError
from par_cc_ingest.loader import LoadOptions
from par_cc_ingest.models import FileSummary
from par_cc_ingest.pricing import ModelPricing
from par_cc_ingest.processors import (
    MAX_LINE_LENGTH,
    calculate_entry_cost,
    process_file,
    process_file_with_cache,
)
from par_cc_ingest.summary_cache import MemorySummaryStore
from par_cc_ingest.token_calculator import extract_usage_entry


class TestProcessFile:
    """Test full parsing of a single file."""

    def test_mixed_lines(self, temp_dir, sample_jsonl_lines):
        """Test usage records are parsed and other lines skipped or counted."""
        path = temp_dir / "-Users-me-app" / "session.jsonl"
        path.parent.mkdir()
        path.write_text("\n".join(sample_jsonl_lines) + "\n")

        result = process_file(path)

        assert len(result.entries) == 2
        assert result.invalid_lines == 1
        assert result.raw_records == []
        assert [entry.model for entry in result.entries] == ["sonnet", "opus"]
        assert {entry.project for entry in result.entries} == {"me-app"}

    def test_include_raw(self, temp_dir, jsonl_writer, sample_jsonl_lines):
        """Test every decoded object record is kept when requested."""
        path = jsonl_writer(temp_dir / "p" / "s.jsonl", sample_jsonl_lines)

        result = process_file(path, include_raw=True)

        assert len(result.raw_records) == 3

    def test_cutoff_filters_old_entries(self, temp_dir, jsonl_writer, record_factory, sample_timestamp):
        """Test entries older than the cutoff are dropped."""
        path = jsonl_writer(
            temp_dir / "p" / "s.jsonl",
            [
                record_factory(sample_timestamp - timedelta(hours=2), "m1", "r1"),
                record_factory(sample_timestamp, "m2", "r2"),
            ],
        )

        result = process_file(path, cutoff=sample_timestamp - timedelta(hours=1))

        assert [entry.message_id for entry in result.entries] == ["m2"]

    def test_deduplication_within_file(self, temp_dir, jsonl_writer, record_factory, sample_timestamp):
        """Test repeated messageID:requestID pairs are dropped."""
        record = record_factory(sample_timestamp, "m1", "r1")
        path = jsonl_writer(temp_dir / "p" / "s.jsonl", [record, record, record_factory(sample_timestamp, "m1", "")])

        result = process_file(path)

        assert len(result.entries) == 2
        assert result.duplicates == 1

    def test_deduplication_disabled(self, temp_dir, jsonl_writer, record_factory, sample_timestamp):
        """Test duplicates are kept when deduplication is off."""
        record = record_factory(sample_timestamp, "m1", "r1")
        path = jsonl_writer(temp_dir / "p" / "s.jsonl", [record, record])

        assert len(process_file(path, enable_deduplication=False).entries) == 2

    def test_oversized_line_skipped(self, temp_dir, jsonl_writer, record_factory, sample_timestamp):
        """Test lines above the size limit are skipped without decoding."""
        huge = '{"padding": "' + "x" * MAX_LINE_LENGTH + '"}'
        path = jsonl_writer(temp_dir / "p" / "s.jsonl", [huge, record_factory(sample_timestamp)])

        result = process_file(path)

        assert len(result.entries) == 1
        assert result.invalid_lines == 1

    def test_line_limit_counts_bytes(self, temp_dir, jsonl_writer, record_factory, sample_timestamp):
        """Test the line limit applies to encoded bytes, not decoded characters."""
        wide = '{"padding": "' + "é" * (MAX_LINE_LENGTH // 2 + 1) + '"}'
        path = jsonl_writer(temp_dir / "p" / "s.jsonl", [wide, record_factory(sample_timestamp)])

        result = process_file(path)

        assert len(result.entries) == 1
        assert result.invalid_lines == 1

    def test_invalid_utf8_does_not_abort(self, temp_dir, record_factory, sample_timestamp):
        """Test undecodable bytes only affect their own line."""
        path = temp_dir / "p" / "s.jsonl"
        path.parent.mkdir()
        path.write_bytes(b"\xff\xfe garbage\n" + json.dumps(record_factory(sample_timestamp)).encode() + b"\n")

        result = process_file(path)

        assert len(result.entries) == 1
        assert result.invalid_lines == 1

    def test_missing_file_raises(self, temp_dir):
        """Test I/O failures are fatal for the file."""
        with pytest.raises(FileProcessingError) as exc_info:
            process_file(temp_dir / "missing.jsonl")
        assert "missing.jsonl" in exc_info.value.path

    def test_read_error_mid_file_raises(self, temp_dir, record_factory, sample_timestamp):
        """Test an error after some lines were read is still fatal."""
        line = (json.dumps(record_factory(sample_timestamp)) + "\n").encode()

        class FailingHandle:
            def __enter__(self):
                return self

            def __exit__(self, *args):
                return False

            def __iter__(self):
                yield line
                raise OSError("device error")

        with patch("par_cc_ingest.processors.open", create=True, return_value=FailingHandle()):
            with pytest.raises(FileProcessingError):
                process_file(temp_dir / "p" / "s.jsonl")


class TestCostModes:
    """Test cost calculation by cost mode."""

    @pytest.fixture
    def entry(self, record_factory, sample_timestamp):
        """Create an entry with a recorded cost of 0.5."""
        return extract_usage_entry(
            record_factory(sample_timestamp, input_tokens=1_000_000, output_tokens=0, cost_usd=0.5)
        )

    def test_auto_prefers_recorded_cost(self, entry):
        """Test AUTO mode uses costUSD when present."""
        assert calculate_entry_cost(entry, True, CostMode.AUTO) == 0.5

    def test_auto_calculates_without_recorded_cost(self, entry):
        """Test AUTO mode calculates when costUSD is absent."""
        assert calculate_entry_cost(entry, False, CostMode.AUTO) == pytest.approx(3.0)

    def test_cached_mode(self, entry):
        """Test CACHED mode never calculates."""
        assert calculate_entry_cost(entry, True, CostMode.CACHED) == 0.5
        assert calculate_entry_cost(entry, False, CostMode.CACHED) == 0.0

    def test_calculate_mode(self, entry):
        """Test CALCULATE mode ignores the recorded cost."""
        assert calculate_entry_cost(entry, True, CostMode.CALCULATE) == pytest.approx(3.0)

    def test_pricing_provider_used(self, entry):
        """Test an injected provider prices the entry."""
        provider = Mock()
        provider.get_pricing.return_value = ModelPricing(input_cost_per_token=1e-6)

        assert calculate_entry_cost(entry, False, CostMode.CALCULATE, provider) == pytest.approx(1.0)
        provider.get_pricing.assert_called_once_with("claude-3-5-sonnet-20241022")

    def test_pricing_provider_error_falls_back(self, entry):
        """Test provider errors fall back to default pricing."""
        provider = Mock()
        provider.get_pricing.side_effect = PricingError("unknown")

        assert calculate_entry_cost(entry, False, CostMode.CALCULATE, provider) == pytest.approx(3.0)


class TestProcessFileWithCache:
    """Test the summary cache aware wrapper."""

    @pytest.fixture
    def store(self):
        """Create an empty in-memory store."""
        return MemorySummaryStore()

    @pytest.fixture
    def session_file(self, temp_dir, jsonl_writer, record_factory, sample_timestamp):
        """Create a file with two usage entries."""
        return jsonl_writer(
            temp_dir / "proj" / "session.jsonl",
            [record_factory(sample_timestamp, "m1", "r1"), record_factory(sample_timestamp, "m2", "r2")],
        )

    def _options(self, temp_dir, store, **kwargs):
        return LoadOptions(data_path=temp_dir, summary_store=store, **kwargs)

    def test_new_file_builds_summary(self, temp_dir, store, session_file):
        """Test a first load parses the file and returns a summary to persist."""
        result = process_file_with_cache(session_file, self._options(temp_dir, store))

        assert result.from_cache is False
        assert result.miss_reason == CacheMissReason.NEW_FILE
        assert len(result.entries) == 2
        assert result.summary is not None
        assert result.summary.path == str(session_file.absolute())
        assert result.summary.file_size == session_file.stat().st_size
        assert result.summary.entries == result.entries

    def test_valid_summary_is_a_hit(self, temp_dir, store, session_file):
        """Test an unchanged file is served from its summary without parsing."""
        first = process_file_with_cache(session_file, self._options(temp_dir, store))
        store.set(first.summary)

        with patch("par_cc_ingest.processors.process_file") as mock_process:
            second = process_file_with_cache(session_file, self._options(temp_dir, store))

        mock_process.assert_not_called()
        assert second.from_cache is True
        assert second.miss_reason is None
        assert second.entries == first.entries
        assert second.summary is None

    def test_hit_reapplies_cutoff(self, temp_dir, store, jsonl_writer, record_factory, sample_timestamp):
        """Test cached entries older than the cutoff are not returned."""
        path = jsonl_writer(
            temp_dir / "proj" / "s.jsonl",
            [
                record_factory(sample_timestamp - timedelta(hours=3), "m1", "r1"),
                record_factory(sample_timestamp, "m2", "r2"),
            ],
        )
        store.set(process_file_with_cache(path, self._options(temp_dir, store)).summary)

        result = process_file_with_cache(path, self._options(temp_dir, store), sample_timestamp - timedelta(hours=1))

        assert result.from_cache is True
        assert [entry.message_id for entry in result.entries] == ["m2"]

    def test_summary_ignores_cutoff(self, temp_dir, store, jsonl_writer, record_factory, sample_timestamp):
        """Test summaries hold every entry even when a cutoff is applied."""
        path = jsonl_writer(
            temp_dir / "proj" / "s.jsonl",
            [
                record_factory(sample_timestamp - timedelta(hours=3), "m1", "r1"),
                record_factory(sample_timestamp, "m2", "r2"),
            ],
        )

        result = process_file_with_cache(path, self._options(temp_dir, store), sample_timestamp - timedelta(hours=1))

        assert len(result.entries) == 1
        assert result.summary.entry_count == 2

    def test_modified_file_invalidates(self, temp_dir, store, session_file, record_factory, sample_timestamp):
        """Test a changed file invalidates its summary and is re-parsed."""
        store.set(process_file_with_cache(session_file, self._options(temp_dir, store)).summary)
        with open(session_file, "a", encoding="utf-8") as f:
            f.write(json.dumps(record_factory(sample_timestamp, "m3", "r3")) + "\n")

        result = process_file_with_cache(session_file, self._options(temp_dir, store))

        assert result.from_cache is False
        assert result.miss_reason == CacheMissReason.MODIFIED_FILE
        assert len(result.entries) == 3
        assert not store.has(str(session_file.absolute()))
        assert result.summary.entry_count == 3

    def test_modified_file_read_only(self, temp_dir, store, session_file):
        """Test watch mode loads never invalidate summaries."""
        stale = FileSummary(path=str(session_file.absolute()), mod_time=1.0, file_size=1)
        store.set(stale)

        result = process_file_with_cache(session_file, self._options(temp_dir, store, write_cache=False))

        assert result.miss_reason == CacheMissReason.MODIFIED_FILE
        assert store.get(str(session_file.absolute())) is stale

    def test_invalidate_failure_is_not_fatal(self, temp_dir, session_file):
        """Test a failing invalidation still re-parses the file."""
        store = Mock()
        store.get.return_value = FileSummary(path=str(session_file), mod_time=1.0, file_size=1)
        store.invalidate.side_effect = SummaryStoreError("read-only")

        result = process_file_with_cache(session_file, self._options(temp_dir, store))

        assert result.error is None
        assert len(result.entries) == 2

    def test_lookup_failure_treated_as_miss(self, temp_dir, session_file):
        """Test store read errors fall back to parsing."""
        store = Mock()
        store.get.side_effect = SummaryStoreError("corrupt")

        result = process_file_with_cache(session_file, self._options(temp_dir, store))

        assert result.miss_reason == CacheMissReason.NEW_FILE
        assert len(result.entries) == 2

    def test_no_billable_content(self, temp_dir, store, jsonl_writer):
        """Test files without usage get an empty summary without a full parse."""
        path = jsonl_writer(temp_dir / "proj" / "chat.jsonl", [{"type": "user", "message": {"content": "hi"}}])

        with patch("par_cc_ingest.processors.process_file") as mock_process:
            result = process_file_with_cache(path, self._options(temp_dir, store))

        mock_process.assert_not_called()
        assert result.entries == []
        assert result.miss_reason == CacheMissReason.NO_ASSISTANT_MESSAGES
        assert result.summary.has_no_assistant_messages is True

    def test_no_billable_summary_hit(self, temp_dir, store, jsonl_writer):
        """Test a cached empty summary is a hit with no entries."""
        path = jsonl_writer(temp_dir / "proj" / "chat.jsonl", [{"type": "user", "message": {"content": "hi"}}])
        store.set(process_file_with_cache(path, self._options(temp_dir, store)).summary)

        result = process_file_with_cache(path, self._options(temp_dir, store))

        assert result.from_cache is True
        assert result.entries == []
        assert result.miss_reason is None

    def test_stat_failure_is_new_file(self, temp_dir, store):
        """Test a missing file is classified new_file and reported as an error."""
        result = process_file_with_cache(temp_dir / "gone.jsonl", self._options(temp_dir, store))

        assert result.miss_reason == CacheMissReason.NEW_FILE
        assert result.error is not None
        assert result.entries == []

    def test_no_store(self, temp_dir, session_file):
        """Test loading without a store parses and builds no summary."""
        result = process_file_with_cache(session_file, self._options(temp_dir, None))

        assert result.miss_reason == CacheMissReason.OTHER
        assert result.summary is None
        assert len(result.entries) == 2

    def test_zero_entry_parse_builds_empty_summary(self, temp_dir, store, jsonl_writer, sample_timestamp):
        """Test a file that mentions usage but yields no entries is cached as empty."""
        tool_record = {
            "type": "user",
            "timestamp": sample_timestamp.isoformat(),
            "message": {"content": "ran tool"},
            "toolUseResult": {"usage": {"input_tokens": 10, "output_tokens": 5}},
        }
        path = jsonl_writer(temp_dir / "proj" / "s.jsonl", [tool_record])

        result = process_file_with_cache(path, self._options(temp_dir, store))

        assert result.entries == []
        assert result.miss_reason == CacheMissReason.NO_ASSISTANT_MESSAGES
        assert result.summary.has_no_assistant_messages is True
        store.set(result.summary)

        with patch("par_cc_ingest.processors.process_file") as mock_process:
            second = process_file_with_cache(path, self._options(temp_dir, store))

        mock_process.assert_not_called()
        assert second.from_cache is True
        assert second.entries == []

    def test_modified_file_without_entries_keeps_reason(self, temp_dir, store, jsonl_writer):
        """Test an emptied file is re-summarized under the modified_file reason."""
        path = jsonl_writer(temp_dir / "proj" / "s.jsonl", ['{"usage": "not an object"}'])
        store.set(FileSummary(path=str(path.absolute()), mod_time=1.0, file_size=1))

        result = process_file_with_cache(path, self._options(temp_dir, store))

        assert result.miss_reason == CacheMissReason.MODIFIED_FILE
        assert result.summary.has_no_assistant_messages is True

    def test_summary_uses_file_stat(self, temp_dir, store, session_file):
        """Test the summary records the file's mtime and size."""
        os.utime(session_file, (1_700_000_000, 1_700_000_000))

        result = process_file_with_cache(session_file, self._options(temp_dir, store))

        assert result.summary.mod_time == 1_700_000_000
