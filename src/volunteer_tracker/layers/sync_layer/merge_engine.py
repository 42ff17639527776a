"""
マージエンジン - インポート時・クラウド同期時の重複判定と和集合マージ

重複判定は2種類あり用途ごとに使い分ける:
  インポート判定: グループ名・日時・人数・時間・総重量が一致(idは見ない)
  同期判定: idが一致
"""

import logging
from dataclasses import dataclass
from typing import Iterable, List

from ...core.models import Entry, Store, copy_store, format_count

logger = logging.getLogger(__name__)


@dataclass
class MergeResult:
    """merge_import の結果"""
    merged: Store
    added_count: int = 0
    skipped_count: int = 0


def _at_csv_precision(value: float) -> str:
    """CSVの数値列と同じ小数2桁表記"""
    return f"{value:.2f}"


def is_import_duplicate(a: Entry, b: Entry) -> bool:
    """インポート時の重複判定

    人数・時間・総重量はCSVに書き出される精度で比較する。
    """
    return (
        a.group_name == b.group_name
        and a.timestamp == b.timestamp
        and format_count(a.num_volunteers) == format_count(b.num_volunteers)
        and _at_csv_precision(a.duration_hours) == _at_csv_precision(b.duration_hours)
        and _at_csv_precision(a.total_pounds) == _at_csv_precision(b.total_pounds)
    )


def is_sync_duplicate(a: Entry, b: Entry) -> bool:
    """同期時の重複判定"""
    return a.id == b.id


def _iter_entries(store: Store) -> Iterable[Entry]:
    for entries in store.values():
        yield from entries


def merge_import(existing: Store, incoming: Store) -> MergeResult:
    """インポートデータを既存Storeに追加する。呼び出し元のStoreは変更しない"""
    merged = copy_store(existing)
    result = MergeResult(merged=merged)

    for entry in _iter_entries(incoming):
        bucket = merged.setdefault(entry.bucket_key, [])
        if any(is_import_duplicate(current, entry) for current in bucket):
            result.skipped_count += 1
        else:
            bucket.append(entry)
            result.added_count += 1

    # 追加が無かった新規グループの空バケットを残さない
    result.merged = {group: entries for group, entries in merged.items() if entries}

    logger.debug(f"Import merge: added={result.added_count}, skipped={result.skipped_count}")
    return result


def merge_sync(local: Store, remote: Store) -> Store:
    """ローカルを基準にリモートの未知idを追加する和集合マージ

    削除・更新は行わない。ローカルのグループ順、続いてリモートのみのグループ順。
    """
    merged: Store = {}

    for group_name in list(local.keys()) + [name for name in remote.keys() if name not in local]:
        bucket: List[Entry] = list(local.get(group_name, []))

        for entry in remote.get(group_name, []):
            if not any(is_sync_duplicate(current, entry) for current in bucket):
                bucket.append(entry)

        if bucket:
            merged[group_name] = bucket

    return merged
