"""
Configuration management and loading.

Reads ledger settings from a YAML file with strict validation.
"""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from usage_ledger.core.access import DEFAULT_PROJECTS_DIR
from usage_ledger.core.cache import DEFAULT_EXPIRY_SECONDS
from usage_ledger.core.ingestion import DEFAULT_MAX_CONCURRENT_FILES
from usage_ledger.core.parser import DEFAULT_BATCH_SIZE, DEFAULT_CHUNK_SIZE
from usage_ledger.storage.db import DEFAULT_DB_PATH

DEFAULT_SYNC_INTERVAL_SECONDS = 3600.0
DEFAULT_MAX_CONSECUTIVE_FAILURES = 5
DEFAULT_DRIFT_WARNING_SECONDS = 5.0


@dataclass(frozen=True)
class StorageConfig:
    """Location of the SQLite ledger."""
    db_path: str = DEFAULT_DB_PATH

    def __post_init__(self):
        """Validate the database path is not empty."""
        if not self.db_path:
            raise ValueError("db_path must not be empty")


@dataclass(frozen=True)
class IngestionConfig:
    """Parser and worker pool settings."""
    projects_dir: str = str(DEFAULT_PROJECTS_DIR)
    chunk_size: int = DEFAULT_CHUNK_SIZE
    batch_size: int = DEFAULT_BATCH_SIZE
    max_concurrent_files: int = DEFAULT_MAX_CONCURRENT_FILES
    cache_expiry_seconds: float = DEFAULT_EXPIRY_SECONDS

    def __post_init__(self):
        """Validate sizes and limits are positive."""
        if not self.projects_dir:
            raise ValueError("projects_dir must not be empty")
        if self.chunk_size <= 0:
            raise ValueError("chunk_size must be > 0")
        if self.batch_size <= 0:
            raise ValueError("batch_size must be > 0")
        if self.max_concurrent_files <= 0:
            raise ValueError("max_concurrent_files must be > 0")
        if self.cache_expiry_seconds <= 0:
            raise ValueError("cache_expiry_seconds must be > 0")


@dataclass(frozen=True)
class SyncConfig:
    """Background sync settings.

    The interval and enabled flag are checked when the scheduler starts, so
    a disabled configuration still loads.
    """
    enabled: bool = True
    interval_seconds: float = DEFAULT_SYNC_INTERVAL_SECONDS
    max_consecutive_failures: int = DEFAULT_MAX_CONSECUTIVE_FAILURES
    drift_warning_seconds: float = DEFAULT_DRIFT_WARNING_SECONDS

    def __post_init__(self):
        """Validate failure and drift thresholds."""
        if self.max_consecutive_failures < 1:
            raise ValueError("max_consecutive_failures must be >= 1")
        if self.drift_warning_seconds < 0:
            raise ValueError("drift_warning_seconds must be >= 0")

    @property
    def timer_tolerance(self) -> float:
        """Allowed timer slack: 10% of the interval, at most 30 seconds."""
        return max(0.0, min(self.interval_seconds * 0.1, 30.0))


@dataclass(frozen=True)
class LedgerConfig:
    """Complete ledger configuration."""
    storage: StorageConfig = field(default_factory=StorageConfig)
    ingestion: IngestionConfig = field(default_factory=IngestionConfig)
    sync: SyncConfig = field(default_factory=SyncConfig)


def default_config(projects_dir: Optional[str] = None, db_path: Optional[str] = None) -> LedgerConfig:
    """Build a configuration from defaults with optional path overrides."""
    return LedgerConfig(
        storage=StorageConfig(db_path=db_path or DEFAULT_DB_PATH),
        ingestion=IngestionConfig(projects_dir=projects_dir or str(DEFAULT_PROJECTS_DIR)),
    )


def load_config(path: str) -> LedgerConfig:
    """Load and validate ledger configuration from a YAML file.

    Every section is optional; unknown keys are rejected so that a typo never
    silently falls back to a default.

    Args:
        path: Path to YAML configuration file

    Returns:
        Validated LedgerConfig object

    Raises:
        FileNotFoundError: If config file doesn't exist
        yaml.YAMLError: If YAML is invalid
        ValueError: If configuration is invalid
    """
    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")

    with open(config_path, 'r', encoding='utf-8') as f:
        try:
            raw_config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise yaml.YAMLError(f"Invalid YAML in config file {path}: {e}")

    if raw_config is None:
        raw_config = {}
    if not isinstance(raw_config, dict):
        raise ValueError("Configuration must be a mapping")

    allowed_top_keys = {'storage', 'ingestion', 'sync'}
    unknown_keys = set(raw_config.keys()) - allowed_top_keys
    if unknown_keys:
        raise ValueError(f"Unknown configuration keys: {unknown_keys}")

    storage_data = _section(raw_config, 'storage', {'db_path'})
    ingestion_data = _section(
        raw_config,
        'ingestion',
        {'projects_dir', 'chunk_size', 'batch_size', 'max_concurrent_files', 'cache_expiry_seconds'},
    )
    sync_data = _section(
        raw_config,
        'sync',
        {'enabled', 'interval_seconds', 'max_consecutive_failures', 'drift_warning_seconds'},
    )

    storage = StorageConfig(
        db_path=_string(storage_data, 'db_path', 'storage', DEFAULT_DB_PATH),
    )
    ingestion = IngestionConfig(
        projects_dir=_string(ingestion_data, 'projects_dir', 'ingestion', str(DEFAULT_PROJECTS_DIR)),
        chunk_size=_integer(ingestion_data, 'chunk_size', 'ingestion', DEFAULT_CHUNK_SIZE),
        batch_size=_integer(ingestion_data, 'batch_size', 'ingestion', DEFAULT_BATCH_SIZE),
        max_concurrent_files=_integer(
            ingestion_data, 'max_concurrent_files', 'ingestion', DEFAULT_MAX_CONCURRENT_FILES
        ),
        cache_expiry_seconds=_number(
            ingestion_data, 'cache_expiry_seconds', 'ingestion', DEFAULT_EXPIRY_SECONDS
        ),
    )

    enabled = sync_data.get('enabled', True)
    if not isinstance(enabled, bool):
        raise ValueError("'enabled' in sync must be a boolean")
    sync = SyncConfig(
        enabled=enabled,
        interval_seconds=_number(sync_data, 'interval_seconds', 'sync', DEFAULT_SYNC_INTERVAL_SECONDS),
        max_consecutive_failures=_integer(
            sync_data, 'max_consecutive_failures', 'sync', DEFAULT_MAX_CONSECUTIVE_FAILURES
        ),
        drift_warning_seconds=_number(
            sync_data, 'drift_warning_seconds', 'sync', DEFAULT_DRIFT_WARNING_SECONDS
        ),
    )

    return LedgerConfig(storage=storage, ingestion=ingestion, sync=sync)


def _section(raw_config: Dict[str, Any], name: str, allowed_keys: set) -> Dict[str, Any]:
    """Return a validated config section, empty when absent.

    Raises:
        ValueError: If the section is not a mapping or has unknown keys
    """
    data = raw_config.get(name)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValueError(f"'{name}' must be a dictionary")
    unknown_keys = set(data.keys()) - allowed_keys
    if unknown_keys:
        raise ValueError(f"Unknown keys in {name}: {unknown_keys}")
    return data


def _string(data: Dict[str, Any], key: str, section: str, default: str) -> str:
    value = data.get(key, default)
    if not isinstance(value, str):
        raise ValueError(f"'{key}' in {section} must be a string")
    return value


def _integer(data: Dict[str, Any], key: str, section: str, default: int) -> int:
    value = data.get(key, default)
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValueError(f"'{key}' in {section} must be an integer")
    return value


def _number(data: Dict[str, Any], key: str, section: str, default: float) -> float:
    value = data.get(key, default)
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValueError(f"'{key}' in {section} must be a number")
    return float(value)
