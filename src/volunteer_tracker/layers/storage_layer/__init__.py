"""
ストレージ層 - ローカルblobの永続化を管理
"""

from .local_store import LocalStore, LoadResult, LoadStatus, StorageWriteFailure

__all__ = ['LocalStore', 'LoadResult', 'LoadStatus', 'StorageWriteFailure']
