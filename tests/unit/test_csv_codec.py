"""
CSV/TSVコーデックのテスト
"""

import os
import sys

import pytest

# テスト対象モジュールのパスを追加
sys.path.append(os.path.join(os.path.dirname(__file__), '..', '..', 'src'))

from volunteer_tracker.core.calculator import BagInput, calculate_results
from volunteer_tracker.core.models import BagResult, parse_iso_timestamp
from volunteer_tracker.layers.interchange_layer.csv_codec import (
    CSV_HEADER,
    EmptyInput,
    HeaderMismatch,
    RowValidationError,
    import_all,
    parse_csv,
    parse_line,
    serialize_all,
    serialize_row,
    serialize_tsv_all,
    serialize_tsv_row,
    split_records,
)

TIMESTAMP = "2024-01-01T10:00:00.000Z"


def _entry(group="Paws", volunteers=10, hours=2, bags=None, timestamp=TIMESTAMP):
    bags = bags if bags is not None else [BagInput(5, 50, "Dog"), BagInput(3, 0, "Cat")]
    return calculate_results(group, volunteers, hours, bags).with_identity("id-1", timestamp)


class TestParseLine:
    """クォート対応スキャナーのテスト"""

    def test_embedded_commas(self):
        fields = parse_line('"Group, Inc.",1/1/2024,10,2.00,"Dog (5), Cat (3)",250.00,25.00,12.50')

        assert len(fields) == 8
        assert fields[0] == "Group, Inc."
        assert fields[4] == "Dog (5), Cat (3)"

    def test_escaped_quotes(self):
        assert parse_line('"say ""hi""",x') == ['say "hi"', 'x']

    def test_empty_fields(self):
        assert parse_line(',,') == ['', '', '']


class TestSerialize:
    """エクスポートのテスト"""

    def test_row_round_trip_through_parse_line(self):
        entry = _entry(group='Paws, "The Best"')
        fields = parse_line(serialize_row(entry))

        assert fields == [
            'Paws, "The Best"',
            TIMESTAMP,
            "10",
            "2.00",
            "Dog (5), Cat (3)",
            "250.00",
            "25.00",
            "12.50",
        ]

    def test_plain_fields_are_not_quoted(self):
        row = serialize_row(_entry(bags=[BagInput(5, 50, "Dog")]))
        assert row == f"Paws,{TIMESTAMP},10,2.00,Dog (5),250.00,25.00,12.50"

    def test_fractional_volunteers(self):
        fields = parse_line(serialize_row(_entry(volunteers=2.5)))
        assert fields[2] == "2.50"

    def test_serialize_all(self):
        text = serialize_all([_entry(), _entry(group="Other")])
        lines = text.split("\n")

        assert lines[0] == CSV_HEADER
        assert len(lines) == 3
        assert lines[2].startswith("Other,")

    def test_tsv_replaces_tabs_and_newlines(self):
        row = serialize_tsv_row(_entry(group="Paws\tTeam\nNorth"))
        fields = row.split("\t")

        assert len(fields) == 8
        assert fields[0] == "Paws Team North"

    def test_tsv_header_optional(self):
        with_header = serialize_tsv_all([_entry()])
        without_header = serialize_tsv_all([_entry()], include_header=False)

        assert with_header.split("\n")[0] == CSV_HEADER.replace(",", "\t")
        assert len(without_header.split("\n")) == 1


class TestParseCsv:
    """インポートのテスト"""

    def test_empty_input(self):
        with pytest.raises(EmptyInput):
            parse_csv("")
        with pytest.raises(EmptyInput):
            parse_csv("  \n\n")

    def test_header_mismatch_commits_nothing(self):
        result = import_all("Name,Date\nPaws,2024-01-01")

        assert not result.success
        assert result.error_type == "HeaderMismatch"
        assert result.store == {}
        assert result.entry_count == 0
        with pytest.raises(HeaderMismatch):
            parse_csv("Name,Date\nPaws,2024-01-01")

    def test_two_rows_same_group(self):
        text = "\n".join([
            CSV_HEADER,
            f"Paws,{TIMESTAMP},10,2.00,Dog (5),250.00,25.00,12.50",
            " Paws ,2024-01-02T10:00:00.000Z,5,1.00,,100.00,20.00,20.00",
        ])
        parsed = parse_csv(text)

        assert list(parsed.store.keys()) == ["Paws"]
        entries = parsed.store["Paws"]
        assert [e.timestamp for e in entries] == [TIMESTAMP, "2024-01-02T10:00:00.000Z"]
        assert entries[1].group_name == " Paws "
        assert entries[0].id != entries[1].id

    def test_row_errors_are_collected(self):
        text = "\n".join([
            CSV_HEADER,
            f"Paws,{TIMESTAMP},10,2.00,Dog (5),250.00,25.00,12.50",
            f",{TIMESTAMP},0,2.00,,250.00,,",
            f"Paws,{TIMESTAMP},10,-1,,abc,,",
            "too,few,fields",
        ])

        with pytest.raises(RowValidationError) as excinfo:
            parse_csv(text)

        errors = excinfo.value.row_errors
        assert [error.line_number for error in errors] == [3, 4, 5]
        assert any("Group name" in message for message in errors[0].messages)
        assert any("Volunteers" in message for message in errors[0].messages)
        assert any("Hours" in message for message in errors[1].messages)
        assert any("Total pounds" in message for message in errors[1].messages)
        assert "Expected 8 fields" in errors[2].messages[0]

    def test_row_errors_void_whole_import(self):
        text = "\n".join([
            CSV_HEADER,
            f"Paws,{TIMESTAMP},10,2.00,Dog (5),250.00,25.00,12.50",
            f"Paws,{TIMESTAMP},10,2.00,Dog (5),-5,25.00,12.50",
        ])
        result = import_all(text)

        assert not result.success
        assert result.error_type == "RowValidationError"
        assert result.store == {}
        assert "Line 3" in result.error

    def test_unparseable_date_falls_back_with_warning(self):
        text = f"{CSV_HEADER}\nPaws,sometime,10,2.00,,250.00,25.00,12.50"
        result = import_all(text)

        assert result.success
        assert len(result.warnings) == 1
        assert "Line 2" in result.warnings[0]
        assert parse_iso_timestamp(result.store["Paws"][0].timestamp) is not None

    def test_other_date_formats_are_normalized(self):
        text = f"{CSV_HEADER}\nPaws,1/1/2024,10,2.00,,250.00,25.00,12.50"
        parsed = parse_csv(text)

        assert parsed.store["Paws"][0].timestamp == "2024-01-01T00:00:00.000Z"
        assert parsed.warnings == []

    def test_blank_derived_columns_are_recomputed(self):
        text = f"{CSV_HEADER}\nPaws,{TIMESTAMP},10,2.00,,250.00,,n/a"
        entry = parse_csv(text).store["Paws"][0]

        assert entry.pounds_per_volunteer == 25
        assert entry.pounds_per_volunteer_per_hour == 12.5

    def test_bag_types_are_restored_without_weight(self):
        text = f'{CSV_HEADER}\nPaws,{TIMESTAMP},10,2.00,"Dog (5), Large (XL) (2.50)",250.00,25.00,12.50'
        entry = parse_csv(text).store["Paws"][0]

        assert entry.bag_results == (
            BagResult(type="Dog", count=5),
            BagResult(type="Large (XL)", count=2.5),
        )

    def test_unparseable_bag_types_warn(self):
        text = f"{CSV_HEADER}\nPaws,{TIMESTAMP},10,2.00,lots of bags,250.00,25.00,12.50"
        result = import_all(text)

        assert result.success
        assert result.store["Paws"][0].bag_results == ()
        assert any("bag types" in warning for warning in result.warnings)

    def test_quoted_newline_stays_in_record(self):
        text = f'{CSV_HEADER}\n"Paws\nNorth",{TIMESTAMP},10,2.00,,250.00,25.00,12.50\n'
        parsed = parse_csv(text)

        assert list(parsed.store.keys()) == ["Paws\nNorth"]

    def test_crlf_and_bom(self):
        text = f"\ufeff{CSV_HEADER}\r\nPaws,{TIMESTAMP},10,2.00,,250.00,25.00,12.50\r\n"
        assert parse_csv(text).entry_count == 1

    def test_export_then_import_preserves_values(self):
        original = _entry()
        parsed = parse_csv(serialize_all([original]))
        restored = parsed.store["Paws"][0]

        assert restored.timestamp == original.timestamp
        assert restored.num_volunteers == original.num_volunteers
        assert restored.duration_hours == original.duration_hours
        assert restored.total_pounds == original.total_pounds
        assert restored.id != original.id


class TestSplitRecords:
    """論理行分割のテスト"""

    def test_line_numbers(self):
        records = split_records('a\n"b\nc"\nd')
        assert records == [(1, 'a'), (2, '"b\nc"'), (4, 'd')]
