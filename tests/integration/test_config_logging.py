"""
設定管理・ログシステム 統合テスト
"""

import json
import logging
import os
import sys

import pytest
import yaml

# テスト対象モジュールのパスを追加
sys.path.append(os.path.join(os.path.dirname(__file__), '..', '..', 'src'))

from volunteer_tracker.config.app_config import ConfigManager, SecurityManager
from volunteer_tracker.utils import enhanced_logger
from volunteer_tracker.utils.enhanced_logger import EnhancedLogger, LogLevel, setup_logging

ENV_KEYS = [
    'VOLUNTEER_TRACKER_DEBUG',
    'VOLUNTEER_TRACKER_ENVIRONMENT',
    'VOLUNTEER_TRACKER_LOG_LEVEL',
    'VOLUNTEER_TRACKER_DB_PATH',
    'VOLUNTEER_TRACKER_ENCRYPTION_KEY',
    'FIREBASE_API_KEY',
    'FIREBASE_PROJECT_ID',
]


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for key in ENV_KEYS:
        monkeypatch.delenv(key, raising=False)


@pytest.fixture(autouse=True)
def reset_logging():
    yield
    logger = logging.getLogger('volunteer_tracker')
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()
    enhanced_logger._global_logger = None


class TestConfigManager:
    """設定管理のテスト"""

    def test_defaults_without_files(self, tmp_path):
        config = ConfigManager(tmp_path / "config").load_config()

        assert config.environment == "development"
        assert config.storage.database_path == "data/volunteer_tracker.db"
        assert config.storage.storage_key == "volunteerCalculatorData"
        assert not config.cloud_sync.is_configured()

    def test_templates_are_created_once(self, tmp_path):
        manager = ConfigManager(tmp_path / "config")

        assert manager.save_config_template() == ["main.yaml", "storage.yaml", "cloud_sync.yaml"]
        assert manager.save_config_template() == []
        assert (tmp_path / "config" / "storage.yaml").exists()

    def test_yaml_values(self, tmp_path):
        config_dir = tmp_path / "config"
        config_dir.mkdir()
        (config_dir / "main.yaml").write_text(yaml.dump({
            "environment": "production",
            "logging": {"level": "WARNING"},
        }))
        (config_dir / "storage.yaml").write_text(yaml.dump({
            "database_path": "/var/lib/tracker.db",
            "unknown_option": 1,
        }))
        (config_dir / "cloud_sync.yaml").write_text(yaml.dump({
            "api_key": "key",
            "project_id": "project",
            "poll_interval_seconds": 2.0,
        }))

        config = ConfigManager(config_dir).load_config()

        assert config.environment == "production"
        assert config.logging.level == "WARNING"
        assert config.storage.database_path == "/var/lib/tracker.db"
        assert config.cloud_sync.is_configured()
        assert config.cloud_sync.poll_interval_seconds == 2.0

    def test_env_overrides(self, tmp_path, monkeypatch):
        monkeypatch.setenv('VOLUNTEER_TRACKER_DEBUG', 'true')
        monkeypatch.setenv('VOLUNTEER_TRACKER_LOG_LEVEL', 'debug')
        monkeypatch.setenv('VOLUNTEER_TRACKER_DB_PATH', '/tmp/override.db')
        monkeypatch.setenv('FIREBASE_API_KEY', 'env-key')
        monkeypatch.setenv('FIREBASE_PROJECT_ID', 'env-project')

        config = ConfigManager(tmp_path).load_config()

        assert config.debug is True
        assert config.logging.level == "DEBUG"
        assert config.storage.database_path == "/tmp/override.db"
        assert config.cloud_sync.api_key == "env-key"
        assert config.cloud_sync.is_configured()

    def test_encrypted_secret_in_env_file(self, tmp_path):
        key = SecurityManager.generate_key()
        token = SecurityManager(key).encrypt_value("real-api-key")
        secrets_dir = tmp_path / "secrets"
        secrets_dir.mkdir()
        (secrets_dir / ".env").write_text(
            f"# Firebase\nVOLUNTEER_TRACKER_ENCRYPTION_KEY={key}\n"
            f"FIREBASE_API_KEY=encrypted:{token}\n"
            f"FIREBASE_PROJECT_ID='my-project'\n"
        )

        config = ConfigManager(tmp_path).load_config()

        assert config.cloud_sync.api_key == "real-api-key"
        assert config.cloud_sync.project_id == "my-project"

    def test_firebase_json_keys_are_mapped(self, tmp_path):
        secrets_dir = tmp_path / "secrets"
        secrets_dir.mkdir()
        (secrets_dir / "firebase_config.json").write_text(json.dumps({
            "apiKey": "json-key",
            "projectId": "json-project",
            "authDomain": "json-project.firebaseapp.com",
        }))

        config = ConfigManager(tmp_path).load_config()

        assert config.cloud_sync.api_key == "json-key"
        assert config.cloud_sync.project_id == "json-project"

    def test_invalid_yaml_falls_back_to_defaults(self, tmp_path):
        (tmp_path / "main.yaml").write_text("environment: [unclosed")

        config = ConfigManager(tmp_path).load_config()

        assert config.environment == "development"

    def test_config_is_cached(self, tmp_path):
        manager = ConfigManager(tmp_path)

        assert manager.load_config() is manager.load_config()
        assert manager.load_config(reload=True) is not None

    def test_managers_are_independent(self, tmp_path):
        """設定ディレクトリごとに別々の設定を読む"""
        for name in ("first", "second"):
            config_dir = tmp_path / name
            config_dir.mkdir()
            (config_dir / "storage.yaml").write_text(yaml.dump({"database_path": f"{name}.db"}))

        first = ConfigManager(tmp_path / "first").load_config()
        second = ConfigManager(tmp_path / "second").load_config()

        assert first.storage.database_path == "first.db"
        assert second.storage.database_path == "second.db"
        assert first is not second

    def test_encrypt_requires_key(self):
        with pytest.raises(ValueError):
            SecurityManager().encrypt_value("x")


class TestEnhancedLogger:
    """ログシステムのテスト"""

    def test_setup_logging_levels(self, tmp_path):
        log_file = tmp_path / "logs" / "tracker.log"
        logger = setup_logging({'level': 'debug', 'file_path': str(log_file), 'structured': False})

        assert logger.log_level == LogLevel.DEBUG
        assert logging.getLogger('volunteer_tracker').level == logging.DEBUG

        logging.getLogger('volunteer_tracker.layers.storage_layer').info("module message")
        for handler in logging.getLogger('volunteer_tracker').handlers:
            handler.flush()

        assert "module message" in log_file.read_text(encoding='utf-8')

    def test_setup_twice_does_not_duplicate_handlers(self):
        setup_logging({'structured': False})
        setup_logging({'structured': False})

        assert len(logging.getLogger('volunteer_tracker').handlers) == 1

    def test_operation_metrics(self):
        logger = EnhancedLogger(structured=False)

        context = logger.log_operation_start('sync_to_cloud', entries=3)
        logger.log_operation_end(context, success=True)
        failed = logger.log_operation_start('sync_from_cloud')
        logger.log_operation_end(failed, success=False, error_type='RemoteUnavailable')

        summary = logger.metrics.get_health_summary()
        assert summary['counters']['sync_to_cloud_success'] == 1
        assert summary['counters']['sync_from_cloud_error_RemoteUnavailable'] == 1
        assert summary['total_operations'] == 2
        assert logger.get_health_status()['overall_status'] == "critical"

    def test_metrics_disabled(self):
        logger = EnhancedLogger(metrics_enabled=False, structured=False)
        logger.log_operation_end(logger.log_operation_start('op'))

        assert logger.get_health_status() == {"status": "metrics_disabled"}
