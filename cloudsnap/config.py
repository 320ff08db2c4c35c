"""
Configuration loading for cloudsnap.

Reads a YAML file (default ~/.config/cloudsnap/config.yml) into typed
settings objects. Credentials can also be supplied through the environment:
- B2_APPLICATION_KEY_ID
- B2_APPLICATION_KEY
- CLOUDSNAP_CONFIG (alternate config path)
"""

import os
from dataclasses import dataclass, field
from typing import Optional, List, Dict, Any

import yaml


DEFAULT_CONFIG_PATH = os.path.join('~', '.config', 'cloudsnap', 'config.yml')
DEFAULT_KEY_FILE = os.path.join('~', '.config', 'cloudsnap', 'key.bin')
DEFAULT_KEYCHAIN_ACCOUNT = 'cloudsnap-encryption-key'
KEY_SOURCES = ('keychain', 'file', 'passphrase')


class ConfigError(Exception):
    """Raised when configuration is missing or invalid."""
    pass


@dataclass
class B2Config:
    key_id: str
    application_key: str
    bucket_name: str
    bucket_id: Optional[str] = None
    part_size_mb: Optional[int] = None
    max_retries: int = 3
    upload_concurrency: int = 1


@dataclass
class TimeoutsConfig:
    materialize_seconds: int = 1800
    network_seconds: int = 300


@dataclass
class IncludeConfig:
    folders: List[str] = field(default_factory=list)
    files: List[str] = field(default_factory=list)


@dataclass
class FiltersConfig:
    exclude_hidden: bool = True
    min_size_bytes: Optional[int] = None
    max_size_bytes: Optional[int] = None
    exclude_globs: List[str] = field(default_factory=list)


@dataclass
class RetentionConfig:
    """Retention limits; a missing limit means the bucket keeps nothing."""
    hourly: Optional[int] = None
    daily: Optional[int] = None
    weekly: Optional[int] = None
    monthly: Optional[int] = None

    @property
    def is_configured(self) -> bool:
        return any(v is not None for v in (self.hourly, self.daily, self.weekly, self.monthly))

    def describe(self) -> str:
        parts = []
        for name in ('hourly', 'daily', 'weekly', 'monthly'):
            value = getattr(self, name)
            if value is not None:
                parts.append(f"{name}={value}")
        return ', '.join(parts) if parts else 'not configured'


@dataclass
class BackupSettings:
    remote_prefix: str = 'backup'
    manifest_update_interval: int = 50
    retention: RetentionConfig = field(default_factory=RetentionConfig)


@dataclass
class EncryptionConfig:
    enabled: bool = False
    key_source: str = 'keychain'
    key_file: str = DEFAULT_KEY_FILE
    keychain_account: str = DEFAULT_KEYCHAIN_ACCOUNT
    encrypt_filenames: bool = False


@dataclass
class NotificationsConfig:
    enabled: bool = True


@dataclass
class LoggingConfig:
    level: str = 'INFO'
    directory: Optional[str] = None


@dataclass
class AppConfig:
    b2: B2Config
    timeouts: TimeoutsConfig = field(default_factory=TimeoutsConfig)
    include: IncludeConfig = field(default_factory=IncludeConfig)
    filters: FiltersConfig = field(default_factory=FiltersConfig)
    backup: BackupSettings = field(default_factory=BackupSettings)
    encryption: EncryptionConfig = field(default_factory=EncryptionConfig)
    notifications: NotificationsConfig = field(default_factory=NotificationsConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    @property
    def remote_prefix(self) -> str:
        return self.backup.remote_prefix.strip('/') or 'backup'


def _section(data: Dict[str, Any], name: str) -> Dict[str, Any]:
    value = data.get(name) or {}
    if not isinstance(value, dict):
        raise ConfigError(f"Section '{name}' must be a mapping")
    return value


def _optional_int(section: Dict[str, Any], key: str, name: str) -> Optional[int]:
    value = section.get(key)
    if value is None:
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ConfigError(f"{name}.{key} must be an integer, got {value!r}")


def _string_list(section: Dict[str, Any], key: str, name: str) -> List[str]:
    value = section.get(key) or []
    if isinstance(value, str):
        value = [value]
    if not isinstance(value, list):
        raise ConfigError(f"{name}.{key} must be a list")
    return [str(v) for v in value]


def parse_config(data: Dict[str, Any]) -> AppConfig:
    """
    Build an AppConfig from already-parsed YAML data.

    Args:
        data: Mapping loaded from the config file

    Returns:
        AppConfig instance

    Raises:
        ConfigError: If required values are missing or invalid
    """
    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise ConfigError("Config root must be a mapping")

    b2 = _section(data, 'b2')
    key_id = b2.get('key_id') or os.environ.get('B2_APPLICATION_KEY_ID')
    application_key = b2.get('application_key') or os.environ.get('B2_APPLICATION_KEY')
    bucket_name = b2.get('bucket_name')

    missing = [name for name, value in (
        ('b2.key_id', key_id),
        ('b2.application_key', application_key),
        ('b2.bucket_name', bucket_name),
    ) if not value]
    if missing:
        raise ConfigError(f"Missing required settings: {', '.join(missing)}")

    b2_config = B2Config(
        key_id=str(key_id),
        application_key=str(application_key),
        bucket_name=str(bucket_name),
        bucket_id=b2.get('bucket_id'),
        part_size_mb=_optional_int(b2, 'part_size_mb', 'b2'),
        max_retries=_optional_int(b2, 'max_retries', 'b2') if b2.get('max_retries') is not None else 3,
        upload_concurrency=_optional_int(b2, 'upload_concurrency', 'b2') or 1,
    )
    if b2_config.max_retries < 0:
        raise ConfigError("b2.max_retries must not be negative")

    timeouts = _section(data, 'timeouts')
    timeouts_config = TimeoutsConfig(
        materialize_seconds=_optional_int(timeouts, 'materialize_seconds', 'timeouts') or 1800,
        network_seconds=_optional_int(timeouts, 'network_seconds', 'timeouts') or 300,
    )

    include = _section(data, 'include')
    include_config = IncludeConfig(
        folders=_string_list(include, 'folders', 'include'),
        files=_string_list(include, 'files', 'include'),
    )

    filters = _section(data, 'filters')
    filters_config = FiltersConfig(
        exclude_hidden=bool(filters.get('exclude_hidden', True)),
        min_size_bytes=_optional_int(filters, 'min_size_bytes', 'filters'),
        max_size_bytes=_optional_int(filters, 'max_size_bytes', 'filters'),
        exclude_globs=_string_list(filters, 'exclude_globs', 'filters'),
    )

    backup = _section(data, 'backup')
    retention = _section(backup, 'retention')
    backup_config = BackupSettings(
        remote_prefix=str(backup.get('remote_prefix') or 'backup'),
        manifest_update_interval=_optional_int(backup, 'manifest_update_interval', 'backup') or 50,
        retention=RetentionConfig(
            hourly=_optional_int(retention, 'hourly', 'backup.retention'),
            daily=_optional_int(retention, 'daily', 'backup.retention'),
            weekly=_optional_int(retention, 'weekly', 'backup.retention'),
            monthly=_optional_int(retention, 'monthly', 'backup.retention'),
        ),
    )

    encryption = _section(data, 'encryption')
    encryption_config = EncryptionConfig(
        enabled=bool(encryption.get('enabled', False)),
        key_source=str(encryption.get('key_source') or 'keychain'),
        key_file=str(encryption.get('key_file') or DEFAULT_KEY_FILE),
        keychain_account=str(encryption.get('keychain_account') or DEFAULT_KEYCHAIN_ACCOUNT),
        encrypt_filenames=bool(encryption.get('encrypt_filenames', False)),
    )
    if encryption_config.key_source not in KEY_SOURCES:
        raise ConfigError(
            f"encryption.key_source must be one of {', '.join(KEY_SOURCES)}, "
            f"got {encryption_config.key_source!r}"
        )

    notifications = _section(data, 'notifications')
    logging_section = _section(data, 'logging')

    return AppConfig(
        b2=b2_config,
        timeouts=timeouts_config,
        include=include_config,
        filters=filters_config,
        backup=backup_config,
        encryption=encryption_config,
        notifications=NotificationsConfig(enabled=bool(notifications.get('enabled', True))),
        logging=LoggingConfig(
            level=str(logging_section.get('level') or 'INFO'),
            directory=logging_section.get('directory'),
        ),
    )


def default_config_path() -> str:
    return os.path.expanduser(os.environ.get('CLOUDSNAP_CONFIG') or DEFAULT_CONFIG_PATH)


def load_config(path: Optional[str] = None) -> AppConfig:
    """
    Load configuration from a YAML file.

    Args:
        path: Config file path (default: $CLOUDSNAP_CONFIG or ~/.config/cloudsnap/config.yml)

    Returns:
        AppConfig instance

    Raises:
        ConfigError: If the file is missing, unreadable or invalid
    """
    config_path = os.path.expanduser(path) if path else default_config_path()

    if not os.path.exists(config_path):
        raise ConfigError(f"Config file not found: {config_path}")

    try:
        with open(config_path, 'r', encoding='utf-8') as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {config_path}: {e}")
    except OSError as e:
        raise ConfigError(f"Failed to read config {config_path}: {e}")

    return parse_config(data)
