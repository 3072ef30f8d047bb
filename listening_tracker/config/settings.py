"""Configuration management for the listening tracker."""

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

import yaml

from ..utils.platform import get_config_dir


@dataclass
class StorageConfig:
    """Key-value storage configuration."""

    path: Optional[Path] = None
    quota_mb: float = 10
    write_delay_seconds: float = 1.0

    def __post_init__(self):
        """Set default database path and validate."""
        if self.path is None:
            self.path = get_config_dir() / 'listening.db'
        elif isinstance(self.path, str):
            self.path = Path(self.path).expanduser()

        if self.quota_mb <= 0:
            raise ValueError("quota_mb must be > 0")
        if self.write_delay_seconds < 0:
            raise ValueError("write_delay_seconds must be >= 0")

    @property
    def quota_bytes(self) -> int:
        return int(self.quota_mb * 1024 * 1024)


@dataclass
class TrackerConfig:
    """Session tracking configuration."""

    tick_interval_seconds: float = 1.0
    max_tick_seconds: float = 2.0
    play_count_threshold_seconds: float = 30.0
    min_session_seconds: float = 1.0
    completion_ratio: float = 0.9
    snapshot_interval_seconds: float = 5.0
    settings_refresh_seconds: float = 5.0

    def __post_init__(self):
        if self.tick_interval_seconds <= 0:
            raise ValueError("tick_interval_seconds must be > 0")
        if self.max_tick_seconds < self.tick_interval_seconds:
            raise ValueError("max_tick_seconds must be >= tick_interval_seconds")
        if self.play_count_threshold_seconds <= 0:
            raise ValueError("play_count_threshold_seconds must be > 0")
        if not (0 < self.completion_ratio <= 1):
            raise ValueError("completion_ratio must be between 0 and 1")
        if self.snapshot_interval_seconds <= 0:
            raise ValueError("snapshot_interval_seconds must be > 0")
        if self.settings_refresh_seconds <= 0:
            raise ValueError("settings_refresh_seconds must be > 0")


@dataclass
class StatsConfig:
    """Aggregation configuration."""

    persist_delay_seconds: float = 5.0
    metadata_cache_size: int = 500
    flush_interval_minutes: int = 5

    def __post_init__(self):
        if self.persist_delay_seconds < 0:
            raise ValueError("persist_delay_seconds must be >= 0")
        if self.metadata_cache_size < 1:
            raise ValueError("metadata_cache_size must be >= 1")
        if self.flush_interval_minutes < 1:
            raise ValueError("flush_interval_minutes must be >= 1")


@dataclass
class EnrichmentConfig:
    """SoundCloud metadata lookups."""

    enabled: bool = True
    client_id: Optional[str] = None
    api_url: str = "https://api-v2.soundcloud.com"
    site_url: str = "https://soundcloud.com"
    timeout_seconds: float = 5.0
    cache_ttl_hours: float = 24

    def __post_init__(self):
        if self.timeout_seconds <= 0:
            raise ValueError("timeout_seconds must be > 0")
        if self.cache_ttl_hours < 0:
            raise ValueError("cache_ttl_hours must be >= 0")


@dataclass
class LoggingConfig:
    """Logging configuration."""

    path: Optional[Path] = None
    level: str = "INFO"
    max_size_mb: int = 10
    backup_count: int = 5

    def __post_init__(self):
        """Validate configuration and set defaults."""
        if self.path is None:
            self.path = get_config_dir() / 'tracker.log'
        elif isinstance(self.path, str):
            self.path = Path(self.path).expanduser()

        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if self.level.upper() not in valid_levels:
            raise ValueError(f"level must be one of {valid_levels}")


@dataclass
class Settings:
    """Main settings container."""

    storage: StorageConfig = field(default_factory=StorageConfig)
    tracker: TrackerConfig = field(default_factory=TrackerConfig)
    stats: StatsConfig = field(default_factory=StatsConfig)
    enrichment: EnrichmentConfig = field(default_factory=EnrichmentConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    @classmethod
    def from_file(cls, config_path: Path) -> 'Settings':
        """Load settings from YAML file.

        Args:
            config_path: Path to configuration file

        Returns:
            Settings instance

        Raises:
            FileNotFoundError: If config file doesn't exist
            ValueError: If config is invalid
        """
        if not config_path.exists():
            raise FileNotFoundError(f"Configuration file not found: {config_path}")

        with open(config_path, 'r', encoding='utf-8') as f:
            data = yaml.safe_load(f) or {}

        return cls(
            storage=StorageConfig(**(data.get('storage') or {})),
            tracker=TrackerConfig(**(data.get('tracker') or {})),
            stats=StatsConfig(**(data.get('stats') or {})),
            enrichment=EnrichmentConfig(**(data.get('enrichment') or {})),
            logging=LoggingConfig(**(data.get('logging') or {})),
        )

    @classmethod
    def from_file_or_default(cls, config_path: Optional[Path] = None) -> 'Settings':
        """Load settings from file or return defaults.

        Args:
            config_path: Path to configuration file (optional)

        Returns:
            Settings instance
        """
        if config_path is None:
            config_path = get_config_dir() / 'config.yaml'

        if config_path.exists():
            try:
                return cls.from_file(config_path)
            except (TypeError, ValueError, yaml.YAMLError) as e:
                logging.warning(f"Failed to load config from {config_path}: {e}")
                logging.warning("Using default configuration")
                return cls()
        else:
            logging.info(f"Config file not found at {config_path}, using defaults")
            return cls()

    def save(self, config_path: Optional[Path] = None) -> None:
        """Save settings to YAML file.

        Args:
            config_path: Path to save configuration (default: config.yaml in config dir)
        """
        if config_path is None:
            config_path = get_config_dir() / 'config.yaml'

        config_path.parent.mkdir(parents=True, exist_ok=True)

        data = {
            'storage': {
                'path': str(self.storage.path) if self.storage.path else None,
                'quota_mb': self.storage.quota_mb,
                'write_delay_seconds': self.storage.write_delay_seconds
            },
            'tracker': {
                'tick_interval_seconds': self.tracker.tick_interval_seconds,
                'max_tick_seconds': self.tracker.max_tick_seconds,
                'play_count_threshold_seconds': self.tracker.play_count_threshold_seconds,
                'min_session_seconds': self.tracker.min_session_seconds,
                'completion_ratio': self.tracker.completion_ratio,
                'snapshot_interval_seconds': self.tracker.snapshot_interval_seconds,
                'settings_refresh_seconds': self.tracker.settings_refresh_seconds
            },
            'stats': {
                'persist_delay_seconds': self.stats.persist_delay_seconds,
                'metadata_cache_size': self.stats.metadata_cache_size,
                'flush_interval_minutes': self.stats.flush_interval_minutes
            },
            'enrichment': {
                'enabled': self.enrichment.enabled,
                'client_id': self.enrichment.client_id,
                'api_url': self.enrichment.api_url,
                'site_url': self.enrichment.site_url,
                'timeout_seconds': self.enrichment.timeout_seconds,
                'cache_ttl_hours': self.enrichment.cache_ttl_hours
            },
            'logging': {
                'path': str(self.logging.path) if self.logging.path else None,
                'level': self.logging.level,
                'max_size_mb': self.logging.max_size_mb,
                'backup_count': self.logging.backup_count
            }
        }

        with open(config_path, 'w', encoding='utf-8') as f:
            yaml.dump(data, f, default_flow_style=False, sort_keys=False, indent=2)
