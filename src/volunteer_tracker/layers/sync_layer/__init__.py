"""
同期層 - ローカルストアとクラウド文書ストアの重複判定・マージ・同期を管理
"""

from .cloud_sync import CloudSyncOrchestrator, SyncResult, SyncState, SyncStatus
from .error_handler import (
    AuthenticationError,
    ErrorType,
    PermissionDenied,
    RemoteError,
    RemoteUnavailable,
    Unauthenticated,
    classify_error,
    describe_error,
)
from .merge_engine import MergeResult, is_import_duplicate, is_sync_duplicate, merge_import, merge_sync
from .remote_store import (
    FirestoreRemoteStore,
    InMemoryRemoteStore,
    RemoteDocument,
    RemoteDocumentStore,
    RemoteSession,
    RemoteSnapshot,
    document_path_for,
)

__all__ = [
    'CloudSyncOrchestrator', 'SyncResult', 'SyncState', 'SyncStatus',
    'AuthenticationError', 'ErrorType', 'PermissionDenied', 'RemoteError',
    'RemoteUnavailable', 'Unauthenticated', 'classify_error', 'describe_error',
    'MergeResult', 'is_import_duplicate', 'is_sync_duplicate', 'merge_import', 'merge_sync',
    'FirestoreRemoteStore', 'InMemoryRemoteStore', 'RemoteDocument', 'RemoteDocumentStore',
    'RemoteSession', 'RemoteSnapshot', 'document_path_for',
]
