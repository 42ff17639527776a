"""
リモートエラー分類 - クラウド同期で発生する例外を分類し利用者向けメッセージに変換
"""

import asyncio
import logging
from enum import Enum
from typing import Dict, Optional

import aiohttp

logger = logging.getLogger(__name__)


class ErrorType(Enum):
    """エラータイプ分類"""
    NETWORK_ERROR = "network_error"
    AUTHENTICATION_ERROR = "authentication_error"
    UNAUTHENTICATED = "unauthenticated"
    PERMISSION_DENIED = "permission_denied"
    DATA_PARSING_ERROR = "data_parsing_error"
    UNKNOWN_ERROR = "unknown_error"


class RemoteError(Exception):
    """リモートストアエラーの基底クラス"""
    pass


class RemoteUnavailable(RemoteError):
    """ネットワーク断・タイムアウト・サーバーエラー"""
    pass


class PermissionDenied(RemoteError):
    """セキュリティルールによる拒否"""
    pass


class Unauthenticated(RemoteError):
    """未ログインまたはトークン失効"""
    pass


class AuthenticationError(RemoteError):
    """サインイン・アカウント作成の失敗"""

    def __init__(self, code: str, detail: Optional[str] = None):
        self.code = code
        self.detail = detail
        super().__init__(get_auth_error_message(code))


NETWORK_REQUEST_FAILED = "NETWORK_REQUEST_FAILED"

# Firebase Auth REST のエラーコード → 表示メッセージ
AUTH_ERROR_MESSAGES: Dict[str, str] = {
    "INVALID_EMAIL": "Invalid email address.",
    "USER_DISABLED": "This account has been disabled.",
    "EMAIL_NOT_FOUND": "No account found with this email.",
    "INVALID_PASSWORD": "Incorrect password.",
    "EMAIL_EXISTS": "An account with this email already exists.",
    "WEAK_PASSWORD": "Password must be at least 6 characters.",
    "TOO_MANY_ATTEMPTS_TRY_LATER": "Too many failed attempts. Please try again later.",
    NETWORK_REQUEST_FAILED: "Network error. Please check your connection.",
    "INVALID_LOGIN_CREDENTIALS": "Invalid email or password.",
}
DEFAULT_AUTH_ERROR_MESSAGE = "Authentication error. Please try again."


def normalize_auth_code(raw: str) -> str:
    """詳細付きコード (例: WEAK_PASSWORD : Password should be ...) からコード部分を取り出す"""
    return raw.split(":", 1)[0].strip().upper()


def get_auth_error_message(code: str) -> str:
    return AUTH_ERROR_MESSAGES.get(normalize_auth_code(code), DEFAULT_AUTH_ERROR_MESSAGE)


def classify_error(error: BaseException) -> ErrorType:
    """エラーを分類してタイプを返す"""
    if isinstance(error, AuthenticationError):
        if normalize_auth_code(error.code) == NETWORK_REQUEST_FAILED:
            return ErrorType.NETWORK_ERROR
        return ErrorType.AUTHENTICATION_ERROR
    if isinstance(error, Unauthenticated):
        return ErrorType.UNAUTHENTICATED
    if isinstance(error, PermissionDenied):
        return ErrorType.PERMISSION_DENIED
    if isinstance(error, (RemoteUnavailable, aiohttp.ClientError, asyncio.TimeoutError, ConnectionError)):
        return ErrorType.NETWORK_ERROR
    if isinstance(error, (ValueError, KeyError, TypeError)):
        return ErrorType.DATA_PARSING_ERROR
    return ErrorType.UNKNOWN_ERROR


ERROR_MESSAGES: Dict[ErrorType, str] = {
    ErrorType.NETWORK_ERROR: "Network error. Please check your connection.",
    ErrorType.UNAUTHENTICATED: "Your session has expired. Please sign in again.",
    ErrorType.PERMISSION_DENIED: "Permission denied. Check the cloud database rules.",
    ErrorType.DATA_PARSING_ERROR: "Cloud data could not be read.",
    ErrorType.UNKNOWN_ERROR: "Cloud sync failed. Please try again.",
}


def describe_error(error: BaseException) -> str:
    """利用者向けの1行メッセージ"""
    error_type = classify_error(error)
    if isinstance(error, AuthenticationError):
        message = str(error)
    else:
        message = ERROR_MESSAGES.get(error_type, ERROR_MESSAGES[ErrorType.UNKNOWN_ERROR])

    logger.debug(f"Error classified as {error_type.value}: {error!r}")
    return message
