"""
リモート文書ストア - クラウド同期の接続先

RemoteDocumentStore を実装するクライアントは2つ:
  FirestoreRemoteStore: Firebase Auth REST + Firestore REST (aiohttp)
  InMemoryRemoteStore: プロセス内の文書ストア(テスト・オフライン検証用)
"""

import asyncio
import logging
import math
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple

import aiohttp

from ...core.models import Store, store_from_dict, store_to_dict
from .error_handler import (
    NETWORK_REQUEST_FAILED,
    AuthenticationError,
    PermissionDenied,
    RemoteError,
    RemoteUnavailable,
    Unauthenticated,
)

logger = logging.getLogger(__name__)

DATA_COLLECTION = "userData"
DATA_DOCUMENT = "entries"


def document_path_for(uid: str) -> str:
    """ユーザーごとの同期文書パス"""
    return f"users/{uid}/{DATA_COLLECTION}/{DATA_DOCUMENT}"


@dataclass
class RemoteSession:
    """認証済みセッション"""
    uid: str
    email: str
    id_token: str = ""
    refresh_token: str = ""


@dataclass
class RemoteDocument:
    """書き込む文書の内容"""
    entries: Store
    timestamp: str
    writer: str


@dataclass
class RemoteSnapshot:
    """リモート文書の1回分の読み取り結果"""
    exists: bool
    entries: Store = field(default_factory=dict)
    server_timestamp: Optional[str] = None
    writer: Optional[str] = None
    has_pending_writes: bool = False


SnapshotCallback = Callable[[RemoteSnapshot], None]
ErrorCallback = Callable[[Exception], None]
Unsubscribe = Callable[[], None]


class RemoteDocumentStore(ABC):
    """リモート文書ストアのインターフェース"""

    def __init__(self):
        self.session: Optional[RemoteSession] = None

    @abstractmethod
    async def authenticate(self, email: str, password: str) -> RemoteSession:
        """サインイン。失敗時は AuthenticationError"""
        pass

    @abstractmethod
    async def create_account(self, email: str, password: str) -> RemoteSession:
        """アカウント作成してサインイン"""
        pass

    @abstractmethod
    async def sign_out(self):
        pass

    @abstractmethod
    async def read_document(self, path: str) -> Optional[RemoteSnapshot]:
        """文書取得。存在しなければNone"""
        pass

    @abstractmethod
    async def write_document(self, path: str, document: RemoteDocument):
        """文書全体を上書き"""
        pass

    @abstractmethod
    def subscribe(self, path: str,
                  on_snapshot: SnapshotCallback,
                  on_error: ErrorCallback) -> Unsubscribe:
        """文書の変更を購読する。戻り値を呼ぶと購読解除"""
        pass


# ----------------------------------------------------------------------
# Firestore 値エンコード
# ----------------------------------------------------------------------

def encode_value(value: Any) -> Dict[str, Any]:
    """Python値をFirestore REST の型付き値に変換"""
    if value is None:
        return {'nullValue': None}
    if isinstance(value, bool):
        return {'booleanValue': value}
    if isinstance(value, int):
        return {'integerValue': str(value)}
    if isinstance(value, float):
        if math.isnan(value):
            return {'doubleValue': 'NaN'}
        if math.isinf(value):
            return {'doubleValue': 'Infinity' if value > 0 else '-Infinity'}
        return {'doubleValue': value}
    if isinstance(value, str):
        return {'stringValue': value}
    if isinstance(value, dict):
        return {'mapValue': {'fields': {str(k): encode_value(v) for k, v in value.items()}}}
    if isinstance(value, (list, tuple)):
        return {'arrayValue': {'values': [encode_value(v) for v in value]}}
    raise TypeError(f"Unsupported value type for Firestore: {type(value).__name__}")


def decode_value(value: Dict[str, Any]) -> Any:
    """Firestore REST の型付き値をPython値に変換"""
    if 'nullValue' in value:
        return None
    if 'booleanValue' in value:
        return bool(value['booleanValue'])
    if 'integerValue' in value:
        return int(value['integerValue'])
    if 'doubleValue' in value:
        return float(value['doubleValue'])
    if 'stringValue' in value:
        return value['stringValue']
    if 'timestampValue' in value:
        return value['timestampValue']
    if 'mapValue' in value:
        return decode_fields(value['mapValue'].get('fields', {}))
    if 'arrayValue' in value:
        return [decode_value(v) for v in value['arrayValue'].get('values', [])]
    raise ValueError(f"Unsupported Firestore value: {sorted(value.keys())}")


def decode_fields(fields: Dict[str, Any]) -> Dict[str, Any]:
    return {key: decode_value(raw) for key, raw in fields.items()}


# ----------------------------------------------------------------------
# Firestore REST クライアント
# ----------------------------------------------------------------------

class FirestoreRemoteStore(RemoteDocumentStore):
    """Firebase Auth + Firestore REST API クライアント"""

    AUTH_BASE_URL = "https://identitytoolkit.googleapis.com/v1"
    FIRESTORE_BASE_URL = "https://firestore.googleapis.com/v1"

    def __init__(self,
                 api_key: str,
                 project_id: str,
                 poll_interval: float = 5.0,
                 request_timeout: float = 30.0):
        super().__init__()
        if not api_key or not project_id:
            raise ValueError("Firebase api_key and project_id are required")

        self.api_key = api_key
        self.project_id = project_id
        self.poll_interval = poll_interval
        self.request_timeout = request_timeout

        # 自分の書き込みで発生した更新時刻は購読に流さない
        self._own_update_times: Dict[str, str] = {}
        self._poll_tasks: List[asyncio.Task] = []

    def _document_url(self, path: str) -> str:
        return (f"{self.FIRESTORE_BASE_URL}/projects/{self.project_id}"
                f"/databases/(default)/documents/{path}")

    async def _send(self, method: str, url: str, **kwargs) -> Tuple[int, Dict[str, Any]]:
        """HTTPリクエスト送信。通信エラーは RemoteUnavailable"""
        try:
            timeout = aiohttp.ClientTimeout(total=self.request_timeout)
            async with aiohttp.ClientSession(timeout=timeout) as session:
                async with session.request(method, url, **kwargs) as response:
                    try:
                        body = await response.json(content_type=None)
                    except ValueError:
                        body = {}
                    return response.status, body if isinstance(body, dict) else {}
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise RemoteUnavailable(f"Request to {url} failed: {e}") from e

    # ---- 認証 ----

    async def _auth_request(self, endpoint: str, email: str, password: str) -> RemoteSession:
        url = f"{self.AUTH_BASE_URL}/accounts:{endpoint}"
        payload = {'email': email, 'password': password, 'returnSecureToken': True}

        try:
            status, body = await self._send('POST', url, params={'key': self.api_key}, json=payload)
        except RemoteUnavailable as e:
            raise AuthenticationError(NETWORK_REQUEST_FAILED, str(e)) from e

        if status != 200:
            code = body.get('error', {}).get('message', 'UNKNOWN')
            logger.warning(f"Firebase auth rejected ({endpoint}): {code}")
            raise AuthenticationError(code)

        if not body.get('localId') or not body.get('idToken'):
            logger.error(f"Malformed Firebase auth response ({endpoint}): keys={sorted(body.keys())}")
            raise AuthenticationError("UNKNOWN")

        self.session = RemoteSession(
            uid=body['localId'],
            email=body.get('email', email),
            id_token=body['idToken'],
            refresh_token=body.get('refreshToken', ''),
        )
        logger.info(f"Signed in to Firebase: {self.session.email}")
        return self.session

    async def authenticate(self, email: str, password: str) -> RemoteSession:
        return await self._auth_request('signInWithPassword', email, password)

    async def create_account(self, email: str, password: str) -> RemoteSession:
        return await self._auth_request('signUp', email, password)

    async def sign_out(self):
        tasks = list(self._poll_tasks)
        self._poll_tasks.clear()
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._own_update_times.clear()
        self.session = None

    # ---- 文書 ----

    def _auth_headers(self) -> Dict[str, str]:
        if not self.session:
            raise Unauthenticated("Not signed in")
        return {'Authorization': f"Bearer {self.session.id_token}"}

    @staticmethod
    def _raise_for_status(status: int, body: Dict[str, Any]):
        if 200 <= status < 300:
            return
        message = body.get('error', {}).get('message', f"HTTP {status}")
        if status == 401:
            raise Unauthenticated(message)
        if status == 403:
            raise PermissionDenied(message)
        if status == 429 or status >= 500:
            raise RemoteUnavailable(message)
        raise RemoteError(f"Firestore request failed ({status}): {message}")

    async def read_document(self, path: str) -> Optional[RemoteSnapshot]:
        status, body = await self._send('GET', self._document_url(path), headers=self._auth_headers())
        if status == 404:
            return None
        self._raise_for_status(status, body)
        return self._to_snapshot(body)

    @staticmethod
    def _to_snapshot(body: Dict[str, Any]) -> RemoteSnapshot:
        data = decode_fields(body.get('fields', {}))
        return RemoteSnapshot(
            exists=True,
            entries=store_from_dict(data.get('entries') or {}),
            server_timestamp=body.get('updateTime'),
            writer=data.get('lastUpdatedBy'),
        )

    async def write_document(self, path: str, document: RemoteDocument):
        payload = {
            'fields': {
                'entries': encode_value(store_to_dict(document.entries)),
                'lastUpdated': {'timestampValue': document.timestamp},
                'lastUpdatedBy': {'stringValue': document.writer},
            }
        }
        status, body = await self._send('PATCH', self._document_url(path),
                                        headers=self._auth_headers(), json=payload)
        self._raise_for_status(status, body)

        if body.get('updateTime'):
            self._own_update_times[path] = body['updateTime']
        logger.debug(f"Firestore document written: {path}")

    # ---- 購読 ----

    def subscribe(self, path: str,
                  on_snapshot: SnapshotCallback,
                  on_error: ErrorCallback) -> Unsubscribe:
        task = asyncio.get_running_loop().create_task(self._poll(path, on_snapshot, on_error))
        self._poll_tasks.append(task)

        def unsubscribe():
            task.cancel()
            if task in self._poll_tasks:
                self._poll_tasks.remove(task)

        return unsubscribe

    async def _poll(self, path: str, on_snapshot: SnapshotCallback, on_error: ErrorCallback):
        """updateTime の変化を検知してスナップショットを配信する"""
        last_seen: Optional[str] = None
        first = True

        while True:
            try:
                snapshot = await self.read_document(path)
            except (RemoteError, ValueError) as e:
                logger.error(f"Firestore listener stopped: {e}")
                on_error(e)
                return

            current = snapshot.server_timestamp if snapshot else None
            if first or current != last_seen:
                first = False
                last_seen = current
                if current is None or current != self._own_update_times.get(path):
                    on_snapshot(snapshot or RemoteSnapshot(exists=False))

            await asyncio.sleep(self.poll_interval)


# ----------------------------------------------------------------------
# インメモリ実装
# ----------------------------------------------------------------------

@dataclass
class _Account:
    uid: str
    password: str


class InMemoryRemoteStore(RemoteDocumentStore):
    """プロセス内のリモートストア

    書き込みごとに「未確定(pending)」のエコーと確定後のスナップショットを購読者へ配信する。
    """

    def __init__(self):
        super().__init__()
        self.accounts: Dict[str, _Account] = {}
        self.documents: Dict[str, Tuple[Dict[str, Any], str, str]] = {}
        self.listeners: Dict[str, List[Tuple[SnapshotCallback, ErrorCallback]]] = {}
        self.available = True
        self.write_count = 0

    def _check_available(self):
        if not self.available:
            raise RemoteUnavailable("Remote store is unavailable")

    def _check_access(self, path: str):
        if not self.session:
            raise Unauthenticated("Not signed in")
        if not path.startswith(f"users/{self.session.uid}/"):
            raise PermissionDenied(f"Access to {path} denied")

    async def authenticate(self, email: str, password: str) -> RemoteSession:
        if not self.available:
            raise AuthenticationError(NETWORK_REQUEST_FAILED)
        account = self.accounts.get(email.lower())
        if account is None:
            raise AuthenticationError("EMAIL_NOT_FOUND")
        if account.password != password:
            raise AuthenticationError("INVALID_PASSWORD")
        self.session = RemoteSession(uid=account.uid, email=email, id_token=uuid.uuid4().hex)
        return self.session

    async def create_account(self, email: str, password: str) -> RemoteSession:
        if not self.available:
            raise AuthenticationError(NETWORK_REQUEST_FAILED)
        if '@' not in email:
            raise AuthenticationError("INVALID_EMAIL")
        if email.lower() in self.accounts:
            raise AuthenticationError("EMAIL_EXISTS")
        if len(password) < 6:
            raise AuthenticationError("WEAK_PASSWORD : Password should be at least 6 characters")
        self.accounts[email.lower()] = _Account(uid=uuid.uuid4().hex, password=password)
        return await self.authenticate(email, password)

    async def sign_out(self):
        self.session = None

    def _snapshot(self, path: str, has_pending_writes: bool = False) -> RemoteSnapshot:
        stored = self.documents.get(path)
        if stored is None:
            return RemoteSnapshot(exists=False)
        entries, update_time, writer = stored
        return RemoteSnapshot(
            exists=True,
            entries=store_from_dict(entries),
            server_timestamp=update_time,
            writer=writer,
            has_pending_writes=has_pending_writes,
        )

    async def read_document(self, path: str) -> Optional[RemoteSnapshot]:
        self._check_available()
        self._check_access(path)
        if path not in self.documents:
            return None
        return self._snapshot(path)

    def _store_document(self, path: str, entries: Store, writer: str):
        update_time = datetime.now(timezone.utc).isoformat()
        # シリアライズ形で保持して呼び出し元との共有を避ける
        self.documents[path] = (store_to_dict(entries), update_time, writer)
        self.write_count += 1

    def _notify(self, path: str, snapshot: RemoteSnapshot):
        for on_snapshot, _ in list(self.listeners.get(path, [])):
            on_snapshot(snapshot)

    async def write_document(self, path: str, document: RemoteDocument):
        self._check_available()
        self._check_access(path)

        self._store_document(path, document.entries, document.writer)

        self._notify(path, self._snapshot(path, has_pending_writes=True))
        self._notify(path, self._snapshot(path))

    def push_from_other_device(self, path: str, entries: Store, writer: str = "other-device"):
        """別端末からの書き込みを再現する"""
        self._store_document(path, entries, writer)
        self._notify(path, self._snapshot(path))

    def fail_listeners(self, path: str, error: Exception):
        """購読中のリスナーにエラーを配信"""
        for _, on_error in list(self.listeners.get(path, [])):
            on_error(error)

    def subscribe(self, path: str,
                  on_snapshot: SnapshotCallback,
                  on_error: ErrorCallback) -> Unsubscribe:
        self._check_access(path)
        listener = (on_snapshot, on_error)
        self.listeners.setdefault(path, []).append(listener)

        # 購読開始時に現在の状態を1回配信する
        on_snapshot(self._snapshot(path))

        def unsubscribe():
            listeners = self.listeners.get(path, [])
            if listener in listeners:
                listeners.remove(listener)

        return unsubscribe
