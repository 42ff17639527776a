"""
ローカルストア - 単一キーのJSON blobとしてグループ別エントリーを永続化する
SQLiteの1行を丸ごと置き換えることで書き込みの原子性を保つ
"""

import json
import logging
import sqlite3
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Union

from ...core.models import (
    Entry,
    Store,
    copy_store,
    new_entry_id,
    store_from_dict,
    store_to_dict,
    utc_now_iso,
)

logger = logging.getLogger(__name__)

DEFAULT_STORAGE_KEY = "volunteerCalculatorData"
STORAGE_FORMAT_VERSION = 1


class LoadStatus(Enum):
    """読み込み結果の状態"""
    OK = "ok"
    EMPTY = "empty"
    CORRUPT = "corrupt"


@dataclass
class LoadResult:
    """load() の結果。CORRUPTとEMPTYを区別する"""
    status: LoadStatus
    store: Store
    error: Optional[str] = None

    @property
    def is_corrupt(self) -> bool:
        return self.status == LoadStatus.CORRUPT


class StorageWriteFailure(Exception):
    """ローカルblobの書き込み失敗"""
    pass


class LocalStore:
    """グループ名 → エントリーリストのローカル永続化"""

    def __init__(self,
                 database_path: Union[str, Path] = "data/volunteer_tracker.db",
                 storage_key: str = DEFAULT_STORAGE_KEY):
        self.database_path = Path(database_path)
        self.database_path.parent.mkdir(parents=True, exist_ok=True)
        self.storage_key = storage_key

        self._create_table()

    def _connect(self) -> sqlite3.Connection:
        return sqlite3.connect(str(self.database_path))

    def _create_table(self):
        """テーブル作成"""
        sql = """
        CREATE TABLE IF NOT EXISTS local_storage (
            storage_key TEXT PRIMARY KEY,
            value TEXT NOT NULL,
            updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
        )
        """
        conn = self._connect()
        try:
            with conn:
                conn.execute(sql)
        finally:
            conn.close()

    @staticmethod
    def _select_value(conn: sqlite3.Connection, key: str) -> Optional[str]:
        row = conn.execute(
            "SELECT value FROM local_storage WHERE storage_key = ?", (key,)
        ).fetchone()
        return row[0] if row else None

    def _read_raw(self, key: str) -> Optional[str]:
        conn = self._connect()
        try:
            return self._select_value(conn, key)
        finally:
            conn.close()

    # ------------------------------------------------------------------
    # 読み込み
    # ------------------------------------------------------------------

    def load(self) -> LoadResult:
        """永続化済みblobを読み込み、状態付きで返す"""
        try:
            raw = self._read_raw(self.storage_key)
        except sqlite3.Error as e:
            logger.error(f"Failed to read local storage: {e}")
            return LoadResult(LoadStatus.CORRUPT, {}, str(e))

        if raw is None:
            return LoadResult(LoadStatus.EMPTY, {})

        try:
            return LoadResult(LoadStatus.OK, self._decode(raw))
        except ValueError as e:
            # json.JSONDecodeError は ValueError のサブクラス
            logger.warning(f"Local storage blob is corrupt: {e}")
            return LoadResult(LoadStatus.CORRUPT, {}, str(e))

    @staticmethod
    def _decode(raw: str) -> Store:
        data = json.loads(raw)
        if isinstance(data, dict) and 'version' in data:
            if data['version'] != STORAGE_FORMAT_VERSION:
                raise ValueError(f"Unsupported storage version: {data['version']!r}")
            return store_from_dict(data.get('groups', {}))
        # バージョン無しの旧形式 {groupName: Entry[]}
        return store_from_dict(data)

    @staticmethod
    def _encode(store: Store) -> str:
        envelope = {
            'version': STORAGE_FORMAT_VERSION,
            'groups': store_to_dict(store),
        }
        return json.dumps(envelope, ensure_ascii=False, allow_nan=False)

    def get_all(self) -> Store:
        """全データ取得。未保存・破損時は空"""
        return self.load().store

    def get_group(self, group_name: str) -> List[Entry]:
        return list(self.get_all().get(group_name.strip(), []))

    def get_group_names(self) -> List[str]:
        return sorted(self.get_all().keys())

    def get_corrupt_backups(self) -> List[str]:
        """破損blobの退避キー一覧"""
        try:
            conn = self._connect()
            try:
                rows = conn.execute(
                    "SELECT storage_key FROM local_storage WHERE storage_key LIKE ? ORDER BY storage_key",
                    (f"{self.storage_key}.corrupt.%",)
                ).fetchall()
            finally:
                conn.close()
        except sqlite3.Error as e:
            logger.error(f"Failed to list corrupt backups: {e}")
            return []
        return [row[0] for row in rows]

    def read_backup(self, backup_key: str) -> Optional[str]:
        """退避した生データを取得"""
        try:
            return self._read_raw(backup_key)
        except sqlite3.Error as e:
            logger.error(f"Failed to read backup {backup_key}: {e}")
            return None

    # ------------------------------------------------------------------
    # 書き込み
    # ------------------------------------------------------------------

    def _update(self, mutate: Callable[[Store], Optional[Store]]) -> Optional[Store]:
        """読み込み・変更・書き込みを1トランザクションで行う

        mutate は現在のStoreのコピーを受け取り、書き込むStoreを返す。None なら何も書かない。
        現在の値が読めない場合は書き込まずに StorageWriteFailure。
        破損blobは上書き前に退避キーへ複製する。
        """
        try:
            conn = self._connect()
            try:
                with conn:
                    conn.execute("BEGIN IMMEDIATE")
                    raw = self._select_value(conn, self.storage_key)
                    try:
                        current = self._decode(raw) if raw is not None else {}
                        corrupt = False
                    except ValueError:
                        current, corrupt = {}, True

                    updated = mutate(copy_store(current))
                    if updated is None:
                        return None
                    updated = {group: list(entries) for group, entries in updated.items() if entries}

                    try:
                        payload = self._encode(updated)
                    except (TypeError, ValueError) as e:
                        raise StorageWriteFailure(f"Failed to serialize store: {e}") from e

                    if corrupt:
                        self._backup_corrupt(conn, raw)
                    conn.execute(
                        """
                        INSERT INTO local_storage (storage_key, value, updated_at)
                        VALUES (?, ?, ?)
                        ON CONFLICT(storage_key) DO UPDATE SET
                            value = excluded.value, updated_at = excluded.updated_at
                        """,
                        (self.storage_key, payload, datetime.now(timezone.utc).isoformat())
                    )
            finally:
                conn.close()
        except sqlite3.Error as e:
            raise StorageWriteFailure(f"Failed to update local storage: {e}") from e
        return updated

    def _backup_corrupt(self, conn: sqlite3.Connection, raw: str):
        """破損blobを退避キーへ複製"""
        stamp = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%S%fZ")
        backup_key = f"{self.storage_key}.corrupt.{stamp}"
        conn.execute(
            "INSERT OR REPLACE INTO local_storage (storage_key, value, updated_at) VALUES (?, ?, ?)",
            (backup_key, raw, datetime.now(timezone.utc).isoformat())
        )
        logger.warning(f"Corrupt local storage preserved as {backup_key}")

    def update(self, mutate: Callable[[Store], Optional[Store]]) -> Optional[Store]:
        """現在のStoreを元に書き換える。書き込んだStoreを返し、変更なし・失敗時はNone"""
        try:
            return self._update(mutate)
        except StorageWriteFailure as e:
            logger.error(f"Failed to update local storage: {e}")
            return None

    def save(self, entry: Entry) -> bool:
        """エントリーにidとtimestampを付与して保存"""
        stored = entry.with_identity(new_entry_id(), utc_now_iso())

        def append(store: Store) -> Store:
            store.setdefault(stored.bucket_key, []).append(stored)
            return store

        try:
            self._update(append)
            logger.debug(f"Entry saved: {stored.id} ({stored.bucket_key})")
            return True
        except StorageWriteFailure as e:
            logger.error(f"Failed to save entry: {e}")
            return False

    def delete_entry(self, group_name: str, entry_id: str) -> bool:
        """エントリー削除。空になったグループはキーごと削除"""
        key = group_name.strip()

        def remove(store: Store) -> Optional[Store]:
            bucket = store.get(key, [])
            remaining = [entry for entry in bucket if entry.id != entry_id]
            if len(remaining) == len(bucket):
                return None
            store[key] = remaining
            return store

        try:
            if self._update(remove) is None:
                return False
            logger.debug(f"Entry deleted: {entry_id} ({key})")
            return True
        except StorageWriteFailure as e:
            logger.error(f"Failed to delete entry: {e}")
            return False

    def import_all(self, store: Store) -> bool:
        """永続化済みデータを無条件に置き換える"""
        try:
            replaced = self._update(lambda _current: store)
            logger.info(f"Local storage replaced: {len(replaced)} groups")
            return True
        except StorageWriteFailure as e:
            logger.error(f"Failed to import data: {e}")
            return False

    def clear(self) -> bool:
        """永続化データを削除(退避済みの破損blobは残す)"""
        try:
            conn = self._connect()
            try:
                with conn:
                    conn.execute("DELETE FROM local_storage WHERE storage_key = ?", (self.storage_key,))
            finally:
                conn.close()
            logger.info("Local storage cleared")
            return True
        except sqlite3.Error as e:
            logger.error(f"Failed to clear local storage: {e}")
            return False

    def get_statistics(self) -> Dict[str, Any]:
        """保存状況の統計"""
        result = self.load()
        return {
            'status': result.status.value,
            'group_count': len(result.store),
            'entry_count': sum(len(entries) for entries in result.store.values()),
            'corrupt_backups': len(self.get_corrupt_backups()),
        }
