"""
設定管理 - 階層化YAML設定・環境変数オーバーライド・暗号化された秘密情報
"""

import json
import logging
import os
from dataclasses import asdict, dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, Optional, Union

import yaml
from cryptography.fernet import Fernet, InvalidToken

logger = logging.getLogger(__name__)

ENCRYPTED_PREFIX = "encrypted:"
ENCRYPTION_KEY_NAME = "VOLUNTEER_TRACKER_ENCRYPTION_KEY"


@dataclass
class StorageConfig:
    """ローカルストア設定"""
    database_path: str = "data/volunteer_tracker.db"
    storage_key: str = "volunteerCalculatorData"


@dataclass
class CloudSyncConfig:
    """クラウド同期設定。api_key が空ならローカルのみで動作"""
    enabled: bool = True
    api_key: str = ""
    project_id: str = ""
    poll_interval_seconds: float = 5.0
    request_timeout_seconds: float = 30.0
    writer: str = "volunteer-tracker"

    def is_configured(self) -> bool:
        return bool(self.enabled and self.api_key and self.project_id)


@dataclass
class LoggingConfig:
    """ログ設定"""
    level: str = "INFO"
    file_path: Optional[str] = None
    structured: bool = True
    metrics_enabled: bool = True

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class AppConfig:
    """設定メインクラス"""
    storage: StorageConfig = field(default_factory=StorageConfig)
    cloud_sync: CloudSyncConfig = field(default_factory=CloudSyncConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    debug: bool = False
    environment: str = "development"  # development, production


class SecurityManager:
    """秘密情報の暗号化・復号化"""

    def __init__(self, encryption_key: Optional[str] = None):
        self.encryption_key = encryption_key or os.getenv(ENCRYPTION_KEY_NAME)
        self.cipher = Fernet(self.encryption_key.encode()) if self.encryption_key else None

    @staticmethod
    def generate_key() -> str:
        return Fernet.generate_key().decode()

    def encrypt_value(self, value: str) -> str:
        """値の暗号化"""
        if not self.cipher:
            raise ValueError(f"{ENCRYPTION_KEY_NAME} is not set")
        return self.cipher.encrypt(value.encode()).decode()

    def decrypt_value(self, encrypted_value: str) -> str:
        """値の復号化。復号できない場合は元の値を返す"""
        if not self.cipher:
            logger.warning("Encrypted secret found but no encryption key is configured")
            return encrypted_value

        try:
            return self.cipher.decrypt(encrypted_value.encode()).decode()
        except InvalidToken:
            logger.error("Decryption failed: invalid token or wrong key")
            return encrypted_value


class ConfigManager:
    """設定管理メインクラス"""

    SECRET_KEYS = ['FIREBASE_API_KEY', 'FIREBASE_PROJECT_ID', ENCRYPTION_KEY_NAME]

    # firebase_config.json のWebアプリ設定キー → 秘密情報キー
    FIREBASE_JSON_KEYS = {
        'apiKey': 'FIREBASE_API_KEY',
        'projectId': 'FIREBASE_PROJECT_ID',
    }

    def __init__(self,
                 config_dir: Union[str, Path] = "config",
                 secrets_dir: Optional[Union[str, Path]] = None):
        self.config_dir = Path(config_dir)
        self.secrets_dir = Path(secrets_dir) if secrets_dir else self.config_dir / "secrets"

        self._config_cache: Optional[AppConfig] = None
        self._secrets_cache: Dict[str, Any] = {}

    def load_config(self, reload: bool = False) -> AppConfig:
        """設定の読み込み"""
        if self._config_cache and not reload:
            return self._config_cache

        main_config = self._load_yaml_file(self.config_dir / "main.yaml")
        merged_config = dict(main_config)
        for section in ('storage', 'cloud_sync'):
            section_config = self._load_yaml_file(self.config_dir / f"{section}.yaml")
            if section_config:
                merged_config[section] = section_config

        merged_config = self._apply_env_overrides(merged_config)
        merged_config = self._apply_secrets(merged_config, self.load_secrets(reload))

        self._config_cache = self._create_config_object(merged_config)
        logger.info(
            f"Configuration loaded: environment={self._config_cache.environment}, "
            f"cloud_sync={'on' if self._config_cache.cloud_sync.is_configured() else 'off'}"
        )
        return self._config_cache

    def load_secrets(self, reload: bool = False) -> Dict[str, Any]:
        """秘密情報の読み込み(優先順位: 環境変数 > .env > JSON)"""
        if self._secrets_cache and not reload:
            return self._secrets_cache

        self._secrets_cache = {
            **self._load_json_secrets(),
            **self._load_env_file(),
            **self._load_env_secrets(),
        }
        self._decrypt_secrets()

        logger.debug(f"Secrets loaded: {len(self._secrets_cache)} items")
        return self._secrets_cache

    def _load_yaml_file(self, file_path: Path) -> Dict[str, Any]:
        """YAMLファイルの読み込み"""
        if not file_path.exists():
            logger.debug(f"Config file not found: {file_path}")
            return {}

        try:
            with open(file_path, 'r', encoding='utf-8') as f:
                data = yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError) as e:
            logger.error(f"Failed to load YAML file: {file_path}: {e}")
            return {}

        if not isinstance(data, dict):
            logger.error(f"Config file must contain a mapping: {file_path}")
            return {}
        return data

    def _load_env_secrets(self) -> Dict[str, str]:
        return {key: os.getenv(key) for key in self.SECRET_KEYS if os.getenv(key)}

    def _load_env_file(self) -> Dict[str, str]:
        """.envファイルからの読み込み"""
        env_file = self.secrets_dir / ".env"
        if not env_file.exists():
            return {}

        secrets = {}
        try:
            with open(env_file, 'r', encoding='utf-8') as f:
                for line in f:
                    line = line.strip()
                    if line and not line.startswith('#') and '=' in line:
                        key, value = line.split('=', 1)
                        secrets[key.strip()] = value.strip().strip('"\'')
        except OSError as e:
            logger.error(f"Failed to load .env file: {e}")

        return secrets

    def _load_json_secrets(self) -> Dict[str, Any]:
        """firebase_config.json からの読み込み"""
        file_path = self.secrets_dir / "firebase_config.json"
        if not file_path.exists():
            return {}

        try:
            with open(file_path, 'r', encoding='utf-8') as f:
                data = json.load(f)
        except (OSError, ValueError) as e:
            logger.error(f"Failed to load JSON file: {file_path}: {e}")
            return {}

        if not isinstance(data, dict):
            return {}
        return {
            self.FIREBASE_JSON_KEYS.get(key, key): value
            for key, value in data.items()
            if value
        }

    def _decrypt_secrets(self):
        """encrypted: で始まる値を復号化"""
        encrypted = {
            key: value for key, value in self._secrets_cache.items()
            if isinstance(value, str) and value.startswith(ENCRYPTED_PREFIX)
        }
        if not encrypted:
            return

        try:
            security_manager = SecurityManager(self._secrets_cache.get(ENCRYPTION_KEY_NAME))
        except ValueError as e:
            logger.error(f"Invalid encryption key, encrypted secrets left as-is: {e}")
            return

        for key, value in encrypted.items():
            self._secrets_cache[key] = security_manager.decrypt_value(value[len(ENCRYPTED_PREFIX):])

    def _apply_env_overrides(self, config: Dict) -> Dict:
        """環境変数によるオーバーライド"""
        env_overrides = {
            'VOLUNTEER_TRACKER_DEBUG': ('debug', lambda x: x.lower() in ['true', '1', 'yes']),
            'VOLUNTEER_TRACKER_ENVIRONMENT': ('environment', str),
            'VOLUNTEER_TRACKER_LOG_LEVEL': ('logging.level', str.upper),
            'VOLUNTEER_TRACKER_DB_PATH': ('storage.database_path', str),
        }

        for env_key, (config_path, converter) in env_overrides.items():
            env_value = os.getenv(env_key)
            if env_value:
                self._set_nested_value(config, config_path, converter(env_value))

        return config

    def _apply_secrets(self, config: Dict, secrets: Dict[str, Any]) -> Dict:
        if secrets.get('FIREBASE_API_KEY'):
            self._set_nested_value(config, 'cloud_sync.api_key', secrets['FIREBASE_API_KEY'])
        if secrets.get('FIREBASE_PROJECT_ID'):
            self._set_nested_value(config, 'cloud_sync.project_id', secrets['FIREBASE_PROJECT_ID'])
        return config

    def _set_nested_value(self, config: Dict, path: str, value: Any):
        """ネストされた設定値の設定"""
        keys = path.split('.')
        current = config

        for key in keys[:-1]:
            if not isinstance(current.get(key), dict):
                current[key] = {}
            current = current[key]

        current[keys[-1]] = value

    @staticmethod
    def _build_section(cls, data: Any):
        if not isinstance(data, dict):
            return cls()
        known = {f.name for f in fields(cls)}
        unknown = set(data) - known
        if unknown:
            logger.warning(f"Ignoring unknown {cls.__name__} keys: {sorted(unknown)}")
        return cls(**{key: value for key, value in data.items() if key in known})

    def _create_config_object(self, config_dict: Dict) -> AppConfig:
        """設定辞書から設定オブジェクトを作成"""
        try:
            return AppConfig(
                storage=self._build_section(StorageConfig, config_dict.get('storage')),
                cloud_sync=self._build_section(CloudSyncConfig, config_dict.get('cloud_sync')),
                logging=self._build_section(LoggingConfig, config_dict.get('logging')),
                debug=bool(config_dict.get('debug', False)),
                environment=str(config_dict.get('environment', 'development')),
            )
        except TypeError as e:
            logger.warning(f"Failed to create config object, using defaults: {e}")
            return AppConfig()

    def save_config_template(self):
        """設定ファイルテンプレートの作成(既存ファイルは上書きしない)"""
        templates = {
            "main.yaml": {
                "environment": "development",
                "debug": False,
                "logging": {
                    "level": "INFO",
                    "file_path": "logs/volunteer_tracker.log"
                }
            },
            "storage.yaml": asdict(StorageConfig()),
            "cloud_sync.yaml": {
                "enabled": True,
                "api_key": "",
                "project_id": "",
                "poll_interval_seconds": 5.0,
            },
        }

        self.config_dir.mkdir(parents=True, exist_ok=True)
        created = []
        for filename, template in templates.items():
            file_path = self.config_dir / filename
            if file_path.exists():
                continue
            with open(file_path, 'w', encoding='utf-8') as f:
                yaml.dump(template, f, default_flow_style=False, allow_unicode=True)
            created.append(filename)
            logger.info(f"Created config template: {filename}")

        return created
