"""
マージエンジンのテスト
"""

import os
import sys

import pytest

# テスト対象モジュールのパスを追加
sys.path.append(os.path.join(os.path.dirname(__file__), '..', '..', 'src'))

from volunteer_tracker.core.calculator import BagInput, calculate_results, convert_to_hours
from volunteer_tracker.core.models import copy_store
from volunteer_tracker.layers.interchange_layer.csv_codec import parse_csv, serialize_all
from volunteer_tracker.layers.sync_layer.merge_engine import (
    is_import_duplicate,
    is_sync_duplicate,
    merge_import,
    merge_sync,
)


def _entry(group, entry_id, timestamp="2024-01-01T10:00:00.000Z", volunteers=10, hours=2):
    return calculate_results(group, volunteers, hours, [BagInput(5, 50, "Dog")]).with_identity(
        entry_id, timestamp
    )


@pytest.fixture
def existing():
    return {
        "Paws": [
            _entry("Paws", "a1"),
            _entry("Paws", "a2", timestamp="2024-01-02T10:00:00.000Z"),
        ],
        "Whiskers": [_entry("Whiskers", "b1")],
    }


class TestDuplicateRules:
    """重複判定のテスト"""

    def test_import_duplicate_ignores_id(self):
        assert is_import_duplicate(_entry("Paws", "x"), _entry("Paws", "y"))

    def test_import_duplicate_compares_values(self):
        assert not is_import_duplicate(_entry("Paws", "x"), _entry("Paws", "x", volunteers=11))
        assert not is_import_duplicate(_entry("Paws", "x"), _entry(" Paws", "x"))

    def test_sync_duplicate_uses_id_only(self):
        assert is_sync_duplicate(_entry("Paws", "x"), _entry("Other", "x", volunteers=3))
        assert not is_sync_duplicate(_entry("Paws", "x"), _entry("Paws", "y"))


class TestMergeImport:
    """インポートマージのテスト"""

    def test_empty_import_is_noop(self, existing):
        result = merge_import(existing, {})

        assert result.merged == existing
        assert result.merged is not existing
        assert result.added_count == 0
        assert result.skipped_count == 0

    def test_reimporting_export_adds_nothing(self, existing):
        incoming = parse_csv(serialize_all([e for entries in existing.values() for e in entries])).store
        result = merge_import(existing, incoming)

        assert result.added_count == 0
        assert result.skipped_count == 3
        assert result.merged == existing

    def test_reimport_matches_at_csv_precision(self):
        """分単位・端数重量のエントリーも再インポートで重複扱い"""
        entry = calculate_results("Paws", 3, convert_to_hours(20, "minutes"), [BagInput(3, 1.333)])
        existing = {"Paws": [entry.with_identity("a1", "2024-01-01T10:00:00.000Z")]}

        incoming = parse_csv(serialize_all(existing["Paws"])).store
        result = merge_import(existing, incoming)

        assert result.added_count == 0
        assert result.skipped_count == 1
        assert result.merged == existing

    def test_new_entries_are_appended(self, existing):
        incoming = {
            "Paws": [_entry("Paws", "n1", timestamp="2024-02-01T10:00:00.000Z")],
            "Tails": [_entry("Tails", "n2")],
        }
        result = merge_import(existing, incoming)

        assert result.added_count == 2
        assert [e.id for e in result.merged["Paws"]] == ["a1", "a2", "n1"]
        assert list(result.merged.keys()) == ["Paws", "Whiskers", "Tails"]

    def test_duplicates_within_import_are_skipped(self):
        incoming = {"Paws": [_entry("Paws", "x"), _entry("Paws", "y")]}
        result = merge_import({}, incoming)

        assert result.added_count == 1
        assert result.skipped_count == 1

    def test_existing_store_is_not_mutated(self, existing):
        snapshot = copy_store(existing)
        merge_import(existing, {"Paws": [_entry("Paws", "n1", volunteers=99)]})

        assert existing == snapshot

    def test_no_empty_buckets(self):
        result = merge_import({}, {"Ghost": []})
        assert result.merged == {}


class TestMergeSync:
    """同期マージのテスト"""

    def test_idempotent(self, existing):
        assert merge_sync(existing, existing) == existing

    def test_union_by_id(self, existing):
        remote = {
            "Paws": [_entry("Paws", "a1"), _entry("Paws", "r1", volunteers=3)],
            "Tails": [_entry("Tails", "r2")],
        }
        merged = merge_sync(existing, remote)

        assert [e.id for e in merged["Paws"]] == ["a1", "a2", "r1"]
        assert list(merged.keys()) == ["Paws", "Whiskers", "Tails"]

    def test_same_ids_either_direction(self, existing):
        remote = {"Paws": [_entry("Paws", "r1")], "Tails": [_entry("Tails", "r2")]}

        forward = merge_sync(existing, remote)
        backward = merge_sync(remote, existing)

        assert set(forward.keys()) == set(backward.keys())
        for group in forward:
            assert {e.id for e in forward[group]} == {e.id for e in backward[group]}

    def test_local_wins_for_same_id(self, existing):
        remote = {"Paws": [_entry("Paws", "a1", volunteers=42)]}
        merged = merge_sync(existing, remote)

        assert merged["Paws"][0].num_volunteers == 10

    def test_never_removes_entries(self, existing):
        merged = merge_sync(existing, {})
        assert merged == existing

    def test_no_empty_buckets(self):
        assert merge_sync({"Empty": []}, {"Also": []}) == {}
