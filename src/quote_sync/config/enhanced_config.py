"""
設定管理システム - 階層化YAML設定ファイルとセキュアな秘密情報管理
"""

import base64
import json
import os
from dataclasses import asdict, dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, Optional, Union

import yaml
from cryptography.fernet import Fernet, InvalidToken

from ..utils.enhanced_logger import get_logger

logger = get_logger()

ENCRYPTED_PREFIX = "encrypted:"


@dataclass
class RemoteConfig:
    """リモート（JSONPlaceholder互換）設定"""
    base_url: str = "https://jsonplaceholder.typicode.com"
    resource: str = "/posts"
    user_id: int = 9
    page_size: int = 5
    start_spread: int = 5
    timeout_seconds: float = 10.0


@dataclass
class SyncConfig:
    """同期設定"""
    interval_seconds: float = 30.0
    auto_sync: bool = True
    sync_on_start: bool = True


@dataclass
class StorageConfig:
    """ローカルストレージ設定"""
    database_path: str = "data/quotes.db"
    export_dir: str = "exports"
    sync_log_retention_days: int = 30


@dataclass
class LoggingConfig:
    """ログ設定"""
    level: str = "INFO"
    file_path: Optional[str] = None
    metrics_enabled: bool = True
    structured: bool = True


@dataclass
class QuoteSyncConfig:
    """設定メインクラス"""
    remote: RemoteConfig = field(default_factory=RemoteConfig)
    sync: SyncConfig = field(default_factory=SyncConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    debug: bool = False
    version: str = "1.0.0"
    environment: str = "development"  # development, staging, production

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


_SECTION_TYPES = {
    'remote': RemoteConfig,
    'sync': SyncConfig,
    'storage': StorageConfig,
    'logging': LoggingConfig,
}


class SecurityManager:
    """秘密情報の暗号化・復号化"""

    def __init__(self, encryption_key: Optional[str] = None):
        self.encryption_key = encryption_key or os.getenv('QUOTE_SYNC_ENCRYPTION_KEY')
        self.cipher = Fernet(self.encryption_key.encode()) if self.encryption_key else None

    @staticmethod
    def generate_key() -> str:
        return Fernet.generate_key().decode()

    def encrypt_value(self, value: str) -> str:
        """値の暗号化（キー未設定時はそのまま）"""
        if not self.cipher:
            return value

        encrypted = self.cipher.encrypt(value.encode())
        return base64.urlsafe_b64encode(encrypted).decode()

    def decrypt_value(self, encrypted_value: str) -> str:
        """値の復号化（失敗時は元の値）"""
        if not self.cipher:
            logger.warning("Encrypted secret found but no encryption key configured")
            return encrypted_value

        try:
            decoded = base64.urlsafe_b64decode(encrypted_value.encode())
            return self.cipher.decrypt(decoded).decode()
        except (InvalidToken, ValueError) as e:
            logger.error("Decryption failed", error=e, operation="secret_decrypt")
            return encrypted_value


class ConfigManager:
    """設定管理メインクラス"""

    LAYER_FILES = ('remote', 'sync', 'storage')

    def __init__(self,
                 config_dir: Union[str, Path] = "config",
                 secrets_dir: Union[str, Path] = "config/secrets",
                 security_manager: Optional[SecurityManager] = None):

        self.config_dir = Path(config_dir)
        self.secrets_dir = Path(secrets_dir)
        self.security_manager = security_manager or SecurityManager()

        self._config_cache: Optional[QuoteSyncConfig] = None
        self._secrets_cache: Dict[str, Any] = {}

    def load_config(self, reload: bool = False) -> QuoteSyncConfig:
        """設定の読み込み（失敗時はデフォルト設定）"""
        if self._config_cache and not reload:
            return self._config_cache

        main_config = self._load_yaml_file(self.config_dir / "main.yaml")
        layer_configs = {
            name: self._load_yaml_file(self.config_dir / f"{name}.yaml")
            for name in self.LAYER_FILES
        }

        merged_config = self._merge_configs(main_config, layer_configs)
        merged_config = self._apply_env_overrides(merged_config)
        self._config_cache = self._create_config_object(merged_config)

        logger.info(
            "Configuration loaded",
            environment=self._config_cache.environment,
            version=self._config_cache.version,
            operation="config_load"
        )
        return self._config_cache

    def load_secrets(self, reload: bool = False) -> Dict[str, Any]:
        """秘密情報の読み込み（優先順位: 環境変数 > .env > JSON）"""
        if self._secrets_cache and not reload:
            return self._secrets_cache

        self._secrets_cache = {
            **self._load_json_secrets(),
            **self._load_env_file(),
            **self._load_env_secrets(),
        }
        self._decrypt_secrets()

        logger.info(
            "Secrets loaded",
            secret_count=len(self._secrets_cache),
            operation="secrets_load"
        )
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
            logger.error(f"Failed to load YAML file: {file_path}", error=e)
            return {}

        if not isinstance(data, dict):
            logger.warning(f"Ignoring non-mapping config file: {file_path}")
            return {}
        return data

    def _load_env_secrets(self) -> Dict[str, str]:
        secret_keys = [
            'QUOTE_SYNC_REMOTE_TOKEN',
            'QUOTE_SYNC_ENCRYPTION_KEY',
        ]
        return {key: os.getenv(key) for key in secret_keys if os.getenv(key)}

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
            logger.error("Failed to load .env file", error=e)

        return secrets

    def _load_json_secrets(self) -> Dict[str, Any]:
        file_path = self.secrets_dir / "secrets.json"
        if not file_path.exists():
            return {}

        try:
            with open(file_path, 'r', encoding='utf-8') as f:
                data = json.load(f)
        except (OSError, ValueError) as e:
            logger.error("Failed to load JSON secrets", error=e)
            return {}

        return data if isinstance(data, dict) else {}

    def _decrypt_secrets(self):
        """暗号化された秘密情報の復号化"""
        key_from_secrets = self._secrets_cache.get('QUOTE_SYNC_ENCRYPTION_KEY')
        if self.security_manager.cipher is None and key_from_secrets:
            self.security_manager = SecurityManager(key_from_secrets)

        for key, value in self._secrets_cache.items():
            if isinstance(value, str) and value.startswith(ENCRYPTED_PREFIX):
                self._secrets_cache[key] = self.security_manager.decrypt_value(value[len(ENCRYPTED_PREFIX):])

    def _merge_configs(self, main_config: Dict, layer_configs: Dict) -> Dict:
        """設定の統合（レイヤーファイルがmain.yamlの同名セクションを上書き）"""
        merged = dict(main_config)

        for layer_name, layer_config in layer_configs.items():
            if layer_config:
                section = dict(merged.get(layer_name) or {})
                section.update(layer_config)
                merged[layer_name] = section

        return merged

    def _apply_env_overrides(self, config: Dict) -> Dict:
        """環境変数によるオーバーライド"""
        env_overrides = {
            'QUOTE_SYNC_DEBUG': ('debug', lambda x: x.lower() in ['true', '1', 'yes']),
            'QUOTE_SYNC_ENVIRONMENT': ('environment', str),
            'QUOTE_SYNC_LOG_LEVEL': ('logging.level', str.upper),
            'QUOTE_SYNC_INTERVAL': ('sync.interval_seconds', float),
            'QUOTE_SYNC_REMOTE_URL': ('remote.base_url', str),
            'QUOTE_SYNC_DB_PATH': ('storage.database_path', str),
        }

        for env_key, (config_path, converter) in env_overrides.items():
            env_value = os.getenv(env_key)
            if env_value:
                try:
                    self._set_nested_value(config, config_path, converter(env_value))
                except ValueError as e:
                    logger.warning(f"Failed to apply env override {env_key}", error=e)

        return config

    def _set_nested_value(self, config: Dict, path: str, value: Any):
        keys = path.split('.')
        current = config

        for key in keys[:-1]:
            if not isinstance(current.get(key), dict):
                current[key] = {}
            current = current[key]

        current[keys[-1]] = value

    def _create_config_object(self, config_dict: Dict) -> QuoteSyncConfig:
        """設定辞書から設定オブジェクトを作成（未知のキーは無視）"""
        sections = {}
        for name, section_type in _SECTION_TYPES.items():
            raw = config_dict.get(name) or {}
            allowed = {f.name for f in fields(section_type)}
            unknown = set(raw) - allowed
            if unknown:
                logger.warning(f"Unknown {name} config keys ignored: {', '.join(sorted(unknown))}")
            try:
                sections[name] = section_type(**{k: v for k, v in raw.items() if k in allowed})
            except TypeError as e:
                logger.warning(f"Invalid {name} config, using defaults", error=e)
                sections[name] = section_type()

        top_level = {
            key: config_dict[key]
            for key in ('debug', 'version', 'environment')
            if key in config_dict
        }
        return QuoteSyncConfig(**sections, **top_level)

    def save_config_template(self):
        """設定ファイルテンプレートの作成（既存ファイルは上書きしない）"""
        defaults = QuoteSyncConfig()
        templates = {
            "main.yaml": {
                "version": defaults.version,
                "environment": defaults.environment,
                "debug": defaults.debug,
                "logging": asdict(defaults.logging),
            },
            "remote.yaml": asdict(defaults.remote),
            "sync.yaml": asdict(defaults.sync),
            "storage.yaml": asdict(defaults.storage),
        }

        self.config_dir.mkdir(parents=True, exist_ok=True)
        for filename, template in templates.items():
            file_path = self.config_dir / filename
            if file_path.exists():
                continue
            try:
                with open(file_path, 'w', encoding='utf-8') as f:
                    yaml.dump(template, f, default_flow_style=False, allow_unicode=True)
                logger.info(f"Created config template: {filename}")
            except OSError as e:
                logger.error(f"Failed to create template: {filename}", error=e)

