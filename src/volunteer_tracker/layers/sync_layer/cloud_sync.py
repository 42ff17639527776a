"""
クラウド同期オーケストレーター - 認証・アップロード・ダウンロード・変更購読を調整する

ローカルストアを唯一の正とし、リモートとの差分は merge_sync による和集合で取り込む。
ローカルの変更は自動送信しない(sync_to_cloud を明示的に呼ぶ)。
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Awaitable, Callable, List, Optional

import aiohttp

from ...core.models import Store, count_entries, utc_now_iso
from ...utils.enhanced_logger import EnhancedLogger, get_logger
from ..storage_layer.local_store import LocalStore
from .error_handler import RemoteError, describe_error
from .merge_engine import merge_sync
from .remote_store import (
    RemoteDocument,
    RemoteDocumentStore,
    RemoteSession,
    RemoteSnapshot,
    Unsubscribe,
    document_path_for,
)

logger = logging.getLogger(__name__)

DEFAULT_WRITER = "volunteer-tracker"

# オーケストレーター境界で捕捉するリモート起因の例外
REMOTE_FAILURES = (RemoteError, aiohttp.ClientError, asyncio.TimeoutError, ValueError, TypeError)


class SyncState(Enum):
    """接続・同期状態"""
    DISCONNECTED = "disconnected"
    AUTHENTICATING = "authenticating"
    SYNCING = "syncing"
    IDLE = "idle"


class SyncStatus(Enum):
    """同期結果ステータス"""
    SUCCESS = "success"
    FAILED = "failed"
    SKIPPED = "skipped"


@dataclass
class SyncResult:
    """同期結果"""
    status: SyncStatus
    operation: str
    entries_uploaded: int = 0
    entries_added: int = 0
    total_entries: int = 0
    errors: List[str] = field(default_factory=list)
    sync_time: datetime = field(default_factory=datetime.now)

    def is_successful(self) -> bool:
        return self.status == SyncStatus.SUCCESS

    def summary(self) -> str:
        if self.errors:
            return f"Sync {self.status.value} ({self.operation}): {'; '.join(self.errors)}"
        return (f"Sync {self.status.value} ({self.operation}): "
                f"{self.total_entries} entries, "
                f"{self.entries_added} added from cloud, "
                f"{self.entries_uploaded} uploaded")


class CloudSyncOrchestrator:
    """クラウド同期の状態機械

    DISCONNECTED → AUTHENTICATING → (SYNCING ⇄ IDLE) → DISCONNECTED
    失敗は last_error に記録するだけで、次の操作は妨げない。
    """

    def __init__(self,
                 local_store: LocalStore,
                 remote: Optional[RemoteDocumentStore] = None,
                 on_refresh: Optional[Callable[[], None]] = None,
                 on_state_change: Optional[Callable[[SyncState], None]] = None,
                 writer: str = DEFAULT_WRITER,
                 enhanced_logger: Optional[EnhancedLogger] = None):
        self.local_store = local_store
        self.remote = remote
        self.on_refresh = on_refresh
        self.on_state_change = on_state_change
        self.writer = writer
        self.enhanced_logger = enhanced_logger or get_logger()

        self.state = SyncState.DISCONNECTED
        self.last_error: Optional[str] = None
        self.session: Optional[RemoteSession] = None
        self.is_uploading = False
        self._unsubscribe: Optional[Unsubscribe] = None

    # ------------------------------------------------------------------
    # 状態
    # ------------------------------------------------------------------

    @property
    def is_configured(self) -> bool:
        """リモートストアが設定されているか(未設定ならローカルのみで動作)"""
        return self.remote is not None

    @property
    def is_logged_in(self) -> bool:
        return self.session is not None

    @property
    def is_listening(self) -> bool:
        return self._unsubscribe is not None

    @property
    def document_path(self) -> Optional[str]:
        return document_path_for(self.session.uid) if self.session else None

    def _set_state(self, state: SyncState):
        if state == self.state:
            return
        logger.debug(f"Sync state: {self.state.value} -> {state.value}")
        self.state = state
        if self.on_state_change:
            self.on_state_change(state)

    def _refresh(self):
        if self.on_refresh:
            self.on_refresh()

    def _fail(self, operation: str, error: BaseException, context: Optional[dict] = None) -> SyncResult:
        """リモート失敗を SyncResult に変換"""
        message = describe_error(error)
        self.last_error = message
        if context is not None:
            self.enhanced_logger.log_operation_end(
                context, success=False, error_type=error.__class__.__name__, error_message=str(error)
            )
        else:
            logger.error(f"{operation} failed: {error}")
        return SyncResult(status=SyncStatus.FAILED, operation=operation, errors=[message])

    def _skipped(self, operation: str, reason: str) -> SyncResult:
        return SyncResult(status=SyncStatus.SKIPPED, operation=operation, errors=[reason])

    # ------------------------------------------------------------------
    # 認証
    # ------------------------------------------------------------------

    async def sign_in(self, email: str, password: str) -> SyncResult:
        """サインインして初回同期・購読を開始"""
        return await self._authenticate('sign_in', self.remote.authenticate if self.remote else None,
                                        email, password)

    async def sign_up(self, email: str, password: str) -> SyncResult:
        """アカウント作成後、サインインと同じ流れで同期"""
        return await self._authenticate('sign_up', self.remote.create_account if self.remote else None,
                                        email, password)

    async def _authenticate(self,
                            operation: str,
                            method: Optional[Callable[[str, str], Awaitable[RemoteSession]]],
                            email: str,
                            password: str) -> SyncResult:
        if method is None:
            return self._skipped(operation, "Cloud sync is not configured")

        self._set_state(SyncState.AUTHENTICATING)
        context = self.enhanced_logger.log_operation_start(operation, email=email)

        try:
            self.session = await method(email, password)
        except REMOTE_FAILURES as e:
            self.session = None
            self._set_state(SyncState.DISCONNECTED)
            return self._fail(operation, e, context)

        self.last_error = None
        self.enhanced_logger.log_operation_end(context, success=True, uid=self.session.uid)

        result = await self.sync_from_cloud()
        self.start_listener()
        return result

    async def sign_out(self):
        """購読を止めてセッションを破棄。ローカルストアは残す"""
        self.stop_listener()
        if self.remote:
            try:
                await self.remote.sign_out()
            except REMOTE_FAILURES as e:
                logger.warning(f"Remote sign-out failed: {e}")
        self.session = None
        self.is_uploading = False
        self._set_state(SyncState.DISCONNECTED)
        logger.info("Signed out of cloud sync")

    # ------------------------------------------------------------------
    # アップロード・ダウンロード
    # ------------------------------------------------------------------

    async def sync_to_cloud(self) -> SyncResult:
        """ローカルストア全体でリモート文書を上書き"""
        operation = 'sync_to_cloud'
        if not self.is_logged_in:
            return self._skipped(operation, "Not signed in")

        self._set_state(SyncState.SYNCING)
        context = self.enhanced_logger.log_operation_start(operation)
        store = self.local_store.get_all()

        self.is_uploading = True
        try:
            await self.remote.write_document(
                self.document_path,
                RemoteDocument(entries=store, timestamp=utc_now_iso(), writer=self.writer),
            )
        except REMOTE_FAILURES as e:
            self._set_state(SyncState.IDLE)
            return self._fail(operation, e, context)
        finally:
            self.is_uploading = False

        total = count_entries(store)
        self.last_error = None
        self._set_state(SyncState.IDLE)
        self.enhanced_logger.log_operation_end(context, success=True, entries_uploaded=total)
        return SyncResult(
            status=SyncStatus.SUCCESS,
            operation=operation,
            entries_uploaded=total,
            total_entries=total,
        )

    async def sync_from_cloud(self) -> SyncResult:
        """リモート文書を取り込む。文書が無ければローカルをアップロード"""
        operation = 'sync_from_cloud'
        if not self.is_logged_in:
            return self._skipped(operation, "Not signed in")

        self._set_state(SyncState.SYNCING)
        context = self.enhanced_logger.log_operation_start(operation)

        try:
            snapshot = await self.remote.read_document(self.document_path)
        except REMOTE_FAILURES as e:
            self._set_state(SyncState.IDLE)
            return self._fail(operation, e, context)

        if snapshot is None or not snapshot.exists:
            self.enhanced_logger.log_operation_end(context, success=True, remote_document=False)
            logger.info("No cloud data yet, uploading local data")
            return await self.sync_to_cloud()

        result = self._merge_into_local(operation, snapshot.entries)
        self._set_state(SyncState.IDLE)
        self.enhanced_logger.log_operation_end(
            context, success=result.is_successful(),
            entries_added=result.entries_added, total_entries=result.total_entries
        )
        return result

    def _merge_into_local(self, operation: str, remote_entries: Store) -> SyncResult:
        """リモートの未知エントリーをローカルに取り込み、画面を更新"""
        local_count = 0

        def merge(local: Store) -> Store:
            nonlocal local_count
            local_count = count_entries(local)
            return merge_sync(local, remote_entries)

        merged = self.local_store.update(merge)
        if merged is None:
            message = "Failed to write merged data to local storage"
            self.last_error = message
            return SyncResult(status=SyncStatus.FAILED, operation=operation, errors=[message])

        self.last_error = None
        self._refresh()

        total = count_entries(merged)
        return SyncResult(
            status=SyncStatus.SUCCESS,
            operation=operation,
            entries_added=total - local_count,
            total_entries=total,
        )

    # ------------------------------------------------------------------
    # 変更購読
    # ------------------------------------------------------------------

    def start_listener(self) -> bool:
        """リモート文書の変更購読を開始(既存の購読は張り替える)"""
        if not self.is_configured or not self.is_logged_in:
            return False

        self.stop_listener()
        try:
            self._unsubscribe = self.remote.subscribe(
                self.document_path, self._handle_snapshot, self._handle_listener_error
            )
        except REMOTE_FAILURES as e:
            self._fail('start_listener', e)
            return False

        logger.info(f"Listening for cloud changes: {self.document_path}")
        return True

    def stop_listener(self):
        if self._unsubscribe:
            self._unsubscribe()
            self._unsubscribe = None
            logger.debug("Cloud listener stopped")

    def _handle_snapshot(self, snapshot: RemoteSnapshot):
        """購読スナップショットの取り込み

        自分の未確定書き込みのエコーとアップロード中の配信は無視する。
        """
        if snapshot.has_pending_writes or self.is_uploading:
            logger.debug("Ignoring snapshot from pending local write")
            return
        if not snapshot.exists:
            return

        context = self.enhanced_logger.log_operation_start('apply_snapshot', writer=snapshot.writer)
        self._set_state(SyncState.SYNCING)
        result = self._merge_into_local('apply_snapshot', snapshot.entries)
        self._set_state(SyncState.IDLE)
        self.enhanced_logger.log_operation_end(
            context, success=result.is_successful(), entries_added=result.entries_added
        )

    def _handle_listener_error(self, error: Exception):
        self.last_error = describe_error(error)
        logger.error(f"Cloud listener error: {error}")
