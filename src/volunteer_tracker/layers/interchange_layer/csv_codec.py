"""
CSV/TSVコーデック - エントリーのエクスポートと検証付きインポート

CSVはクォート付きの8列固定スキーマ、TSVはクリップボード共有用の簡易形式。
インポートは全行検証後にまとめて確定する(1行でも不正なら全体が失敗)。
"""

import logging
import math
import re
from dataclasses import dataclass, field
from datetime import timezone
from typing import Iterable, List, Optional, Tuple

from dateutil import parser as date_parser

from ...core.models import (
    BagResult,
    Entry,
    Store,
    count_entries,
    format_count,
    new_entry_id,
    parse_iso_timestamp,
    utc_now_iso,
)

logger = logging.getLogger(__name__)

CSV_COLUMNS = [
    "Group Name",
    "Date",
    "Volunteers",
    "Hours",
    "Bag Types",
    "Total Pounds",
    "Pounds per Volunteer",
    "Pounds per Volunteer per Hour",
]
CSV_HEADER = ",".join(CSV_COLUMNS)
FIELD_COUNT = len(CSV_COLUMNS)

_NEEDS_QUOTING = re.compile(r'[",\r\n]')
_TSV_UNSAFE = re.compile(r'\r\n|[\t\r\n]')
_BAG_TOKEN = re.compile(r'\s*(.*?)\s*\(\s*([-+]?\d+(?:\.\d+)?)\s*\)\s*(?:,|$)')


class CsvImportError(Exception):
    """CSVインポートエラーの基底クラス"""
    pass


class EmptyInput(CsvImportError):
    """空のCSV"""

    def __init__(self):
        super().__init__("CSV file is empty")


class HeaderMismatch(CsvImportError):
    """ヘッダー行が期待値と一致しない"""

    def __init__(self, actual: str):
        self.expected = CSV_HEADER
        self.actual = actual
        super().__init__(f"Invalid CSV header. Expected: {CSV_HEADER}")


@dataclass
class RowError:
    """1行分の検証エラー"""
    line_number: int
    messages: List[str]

    def __str__(self) -> str:
        return f"Line {self.line_number}: {'; '.join(self.messages)}"


class RowValidationError(CsvImportError):
    """行検証エラーの集約"""

    def __init__(self, row_errors: List[RowError]):
        self.row_errors = row_errors
        details = "\n".join(str(error) for error in row_errors)
        super().__init__(f"CSV import failed with {len(row_errors)} invalid row(s):\n{details}")


@dataclass
class CsvImport:
    """parse_csv の結果"""
    store: Store
    warnings: List[str] = field(default_factory=list)

    @property
    def entry_count(self) -> int:
        return count_entries(self.store)


@dataclass
class CsvImportResult:
    """import_all の結果"""
    success: bool
    store: Store = field(default_factory=dict)
    entry_count: int = 0
    warnings: List[str] = field(default_factory=list)
    error: Optional[str] = None
    error_type: Optional[str] = None


# ----------------------------------------------------------------------
# エクスポート
# ----------------------------------------------------------------------

def escape_field(value: str) -> str:
    """カンマ・ダブルクォート・改行を含む値をクォートする"""
    if _NEEDS_QUOTING.search(value):
        return '"' + value.replace('"', '""') + '"'
    return value


def _format_decimal(value: Optional[float]) -> str:
    if value is None:
        return ""
    return f"{value:.2f}"


def format_bag_types(bag_results: Iterable[BagResult]) -> str:
    return ", ".join(bag.format_label() for bag in bag_results)


def _row_values(entry: Entry) -> List[str]:
    return [
        entry.group_name,
        entry.timestamp,
        format_count(entry.num_volunteers),
        _format_decimal(entry.duration_hours),
        format_bag_types(entry.bag_results),
        _format_decimal(entry.total_pounds),
        _format_decimal(entry.pounds_per_volunteer),
        _format_decimal(entry.pounds_per_volunteer_per_hour),
    ]


def serialize_row(entry: Entry) -> str:
    return ",".join(escape_field(value) for value in _row_values(entry))


def serialize_all(entries: Iterable[Entry]) -> str:
    """ヘッダー + エントリー順の行"""
    lines = [CSV_HEADER]
    lines.extend(serialize_row(entry) for entry in entries)
    return "\n".join(lines)


def _tsv_clean(value: str) -> str:
    return _TSV_UNSAFE.sub(" ", value)


def serialize_tsv_row(entry: Entry) -> str:
    return "\t".join(_tsv_clean(value) for value in _row_values(entry))


def serialize_tsv_all(entries: Iterable[Entry], include_header: bool = True) -> str:
    lines = ["\t".join(CSV_COLUMNS)] if include_header else []
    lines.extend(serialize_tsv_row(entry) for entry in entries)
    return "\n".join(lines)


# ----------------------------------------------------------------------
# パース
# ----------------------------------------------------------------------

def parse_line(line: str) -> List[str]:
    """クォート対応の1行スキャナー"""
    fields = []
    current = []
    in_quotes = False
    index = 0
    length = len(line)

    while index < length:
        char = line[index]
        if char == '"':
            if in_quotes and index + 1 < length and line[index + 1] == '"':
                current.append('"')
                index += 1
            else:
                in_quotes = not in_quotes
        elif char == ',' and not in_quotes:
            fields.append("".join(current))
            current = []
        else:
            current.append(char)
        index += 1

    fields.append("".join(current))
    return fields


def split_records(text: str) -> List[Tuple[int, str]]:
    """論理行に分割する。クォート内の改行は同じレコードに残す

    戻り値は (開始物理行番号, レコード文字列) のリスト。
    """
    records = []
    current = []
    in_quotes = False
    line_number = 1
    start_line = 1

    for char in text:
        if char == '"':
            in_quotes = not in_quotes
        if char == '\n' and not in_quotes:
            records.append((start_line, "".join(current).rstrip('\r')))
            current = []
            line_number += 1
            start_line = line_number
            continue
        if char == '\n':
            line_number += 1
        current.append(char)

    if current:
        records.append((start_line, "".join(current).rstrip('\r')))
    return records


def _parse_number(text: str) -> Optional[float]:
    try:
        value = float(text.strip())
    except ValueError:
        return None
    if not math.isfinite(value):
        return None
    return value


def _normalize_count(value: float):
    return int(value) if value.is_integer() else value


def parse_date(text: str) -> Optional[str]:
    """日付列をISO-8601文字列に変換。解釈できなければNone"""
    candidate = text.strip()
    if not candidate:
        return None
    if parse_iso_timestamp(candidate) is not None:
        return candidate

    try:
        parsed = date_parser.parse(candidate)
    except (ValueError, OverflowError):
        return None

    # タイムゾーン無しはUTCとして扱う
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    parsed = parsed.astimezone(timezone.utc)
    return parsed.isoformat(timespec='milliseconds').replace('+00:00', 'Z')


def parse_bag_types(text: str) -> Optional[List[BagResult]]:
    """Bag Types 列 (例: Dog (5), Cat (3)) を復元する。解釈できなければNone"""
    candidate = text.strip()
    if not candidate:
        return []

    bags = []
    position = 0
    while position < len(candidate):
        match = _BAG_TOKEN.match(candidate, position)
        if not match or match.end() == position:
            return None
        bag_type, count = match.group(1), float(match.group(2))
        bags.append(BagResult(type=bag_type, count=_normalize_count(count)))
        position = match.end()
    return bags


def _parse_row(line_number: int, fields: List[str], warnings: List[str]) -> Tuple[Optional[Entry], List[str]]:
    """1行を検証してEntryに変換。エラーがあれば (None, messages)"""
    if len(fields) != FIELD_COUNT:
        return None, [f"Expected {FIELD_COUNT} fields, found {len(fields)}"]

    (group_name, date_text, volunteers_text, hours_text, bag_text,
     total_text, per_volunteer_text, per_hour_text) = fields
    messages = []

    if not group_name.strip():
        messages.append("Group name is required")

    num_volunteers = _parse_number(volunteers_text)
    if num_volunteers is None or num_volunteers <= 0:
        messages.append(f"Volunteers must be a positive number (got '{volunteers_text}')")

    duration_hours = _parse_number(hours_text)
    if duration_hours is None or duration_hours <= 0:
        messages.append(f"Hours must be a positive number (got '{hours_text}')")

    total_pounds = _parse_number(total_text)
    if total_pounds is None or total_pounds < 0:
        messages.append(f"Total pounds must be a non-negative number (got '{total_text}')")

    if messages:
        return None, messages

    timestamp = parse_date(date_text)
    if timestamp is None:
        timestamp = utc_now_iso()
        warnings.append(f"Line {line_number}: could not parse date '{date_text}', using current time")

    bag_results = parse_bag_types(bag_text)
    if bag_results is None:
        bag_results = []
        warnings.append(f"Line {line_number}: could not parse bag types '{bag_text}'")

    pounds_per_volunteer = _parse_number(per_volunteer_text)
    if pounds_per_volunteer is None:
        pounds_per_volunteer = total_pounds / num_volunteers

    pounds_per_volunteer_per_hour = _parse_number(per_hour_text)
    if pounds_per_volunteer_per_hour is None:
        pounds_per_volunteer_per_hour = pounds_per_volunteer / duration_hours

    entry = Entry(
        id=new_entry_id(),
        group_name=group_name,
        timestamp=timestamp,
        num_volunteers=_normalize_count(num_volunteers),
        duration_hours=duration_hours,
        bag_results=tuple(bag_results),
        total_pounds=total_pounds,
        pounds_per_volunteer=pounds_per_volunteer,
        pounds_per_volunteer_per_hour=pounds_per_volunteer_per_hour,
    )
    return entry, []


def parse_csv(text: str) -> CsvImport:
    """CSV全体をパース・検証してStoreを構築する

    Raises:
        EmptyInput: 空白以外の行が無い
        HeaderMismatch: 1行目がヘッダーと一致しない
        RowValidationError: 1行以上の検証エラー
    """
    records = [(number, line) for number, line in split_records(text.lstrip('\ufeff')) if line.strip()]
    if not records:
        raise EmptyInput()

    _, header = records[0]
    if header != CSV_HEADER:
        raise HeaderMismatch(header)

    store: Store = {}
    warnings: List[str] = []
    row_errors: List[RowError] = []

    for line_number, line in records[1:]:
        entry, messages = _parse_row(line_number, parse_line(line), warnings)
        if messages:
            row_errors.append(RowError(line_number, messages))
            continue
        store.setdefault(entry.bucket_key, []).append(entry)

    if row_errors:
        raise RowValidationError(row_errors)

    for warning in warnings:
        logger.warning(warning)

    return CsvImport(store=store, warnings=warnings)


def import_all(text: str) -> CsvImportResult:
    """例外を投げないインポート"""
    try:
        parsed = parse_csv(text)
    except CsvImportError as e:
        logger.error(f"CSV import failed: {e}")
        return CsvImportResult(
            success=False,
            error=str(e),
            error_type=e.__class__.__name__,
        )

    logger.info(f"CSV parsed: {parsed.entry_count} entries in {len(parsed.store)} groups")
    return CsvImportResult(
        success=True,
        store=parsed.store,
        entry_count=parsed.entry_count,
        warnings=parsed.warnings,
    )
