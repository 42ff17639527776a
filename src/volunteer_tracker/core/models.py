"""データモデル定義"""

import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple


# グループ名(トリム済み) → 保存順のEntryリスト
Store = Dict[str, List["Entry"]]


def _require_number(data: Dict[str, Any], key: str) -> float:
    value = data.get(key)
    # boolはintのサブクラスなので明示的に除外
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValueError(f"Field '{key}' must be a number, got {value!r}")
    return value


def _optional_number(data: Dict[str, Any], key: str) -> Optional[float]:
    if data.get(key) is None:
        return None
    return _require_number(data, key)


def _require_str(data: Dict[str, Any], key: str) -> str:
    value = data.get(key)
    if not isinstance(value, str):
        raise ValueError(f"Field '{key}' must be a string, got {value!r}")
    return value


@dataclass(frozen=True)
class BagResult:
    """袋タイプ別の集計結果"""
    type: str
    count: float
    weight: Optional[float] = None  # CSV経由では復元不可
    total: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'type': self.type,
            'count': self.count,
            'weight': self.weight,
            'total': self.total,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "BagResult":
        if not isinstance(data, dict):
            raise ValueError(f"Bag result must be an object, got {data!r}")
        # 旧形式は bagType に連番を持っている
        bag_type = data.get('type', data.get('bagType'))
        if bag_type is None:
            raise ValueError("Bag result is missing 'type'")
        return cls(
            type=str(bag_type),
            count=_require_number(data, 'count'),
            weight=_optional_number(data, 'weight'),
            total=_optional_number(data, 'total'),
        )

    def format_label(self) -> str:
        """CSVの Bag Types 列で使う "<type> (<count>)" 表記"""
        return f"{self.type} ({format_count(self.count)})"


@dataclass(frozen=True)
class Entry:
    """1グループ・1時点の計測セッション

    作成後は不変。変更は削除のみで、idは一生同じ値を保つ。
    """
    group_name: str
    num_volunteers: float
    duration_hours: float
    bag_results: Tuple[BagResult, ...] = field(default_factory=tuple)
    total_pounds: float = 0.0
    pounds_per_volunteer: float = 0.0
    pounds_per_volunteer_per_hour: float = 0.0
    id: str = ""
    timestamp: str = ""

    @property
    def bucket_key(self) -> str:
        """保存先バケットのキー(トリム済みグループ名)"""
        return self.group_name.strip()

    def with_identity(self, entry_id: str, timestamp: str) -> "Entry":
        return replace(self, id=entry_id, timestamp=timestamp)

    def to_dict(self) -> Dict[str, Any]:
        """ローカルblob・リモート文書共通のcamelCase形式に変換"""
        return {
            'id': self.id,
            'groupName': self.group_name,
            'timestamp': self.timestamp,
            'numVolunteers': self.num_volunteers,
            'durationHours': self.duration_hours,
            'bagResults': [bag.to_dict() for bag in self.bag_results],
            'totalPounds': self.total_pounds,
            'poundsPerVolunteer': self.pounds_per_volunteer,
            'poundsPerVolunteerPerHour': self.pounds_per_volunteer_per_hour,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Entry":
        """スキーマチェック付きの復元。不正な形はValueError"""
        if not isinstance(data, dict):
            raise ValueError(f"Entry must be an object, got {type(data).__name__}")

        bag_results = data.get('bagResults', [])
        if not isinstance(bag_results, list):
            raise ValueError("Field 'bagResults' must be a list")

        return cls(
            id=_require_str(data, 'id'),
            group_name=_require_str(data, 'groupName'),
            timestamp=_require_str(data, 'timestamp'),
            num_volunteers=_require_number(data, 'numVolunteers'),
            duration_hours=_require_number(data, 'durationHours'),
            bag_results=tuple(BagResult.from_dict(bag) for bag in bag_results),
            total_pounds=_require_number(data, 'totalPounds'),
            pounds_per_volunteer=_require_number(data, 'poundsPerVolunteer'),
            pounds_per_volunteer_per_hour=_require_number(data, 'poundsPerVolunteerPerHour'),
        )


def new_entry_id() -> str:
    return uuid.uuid4().hex


def utc_now_iso() -> str:
    """ミリ秒精度・Z終端のUTCタイムスタンプ"""
    return datetime.now(timezone.utc).isoformat(timespec='milliseconds').replace('+00:00', 'Z')


def parse_iso_timestamp(text: str) -> Optional[datetime]:
    """ISO-8601文字列をdatetimeに変換。解釈できなければNone"""
    candidate = text.strip()
    if candidate.endswith(('Z', 'z')):
        candidate = candidate[:-1] + '+00:00'
    try:
        return datetime.fromisoformat(candidate)
    except ValueError:
        return None


def format_count(value: float) -> str:
    """整数値なら小数点なし、それ以外は小数2桁"""
    if isinstance(value, float) and not value.is_integer():
        return f"{value:.2f}"
    return str(int(value))


def store_to_dict(store: Store) -> Dict[str, List[Dict[str, Any]]]:
    return {group: [entry.to_dict() for entry in entries] for group, entries in store.items()}


def store_from_dict(data: Any) -> Store:
    """{groupName: Entry[]} 形式の辞書をStoreに変換。空バケットは落とす"""
    if not isinstance(data, dict):
        raise ValueError(f"Store must be an object, got {type(data).__name__}")

    store: Store = {}
    for group_name, entries in data.items():
        if not isinstance(entries, list):
            raise ValueError(f"Group '{group_name}' must map to a list")
        if entries:
            store[str(group_name)] = [Entry.from_dict(entry) for entry in entries]
    return store


def copy_store(store: Store) -> Store:
    """バケットリストを複製したStore。Entry自体は不変なので共有する"""
    return {group: list(entries) for group, entries in store.items()}


def count_entries(store: Store) -> int:
    return sum(len(entries) for entries in store.values())
