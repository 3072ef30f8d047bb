"""Tests for YAML settings."""

import pytest
import yaml

from listening_tracker.config.settings import (
    EnrichmentConfig,
    LoggingConfig,
    Settings,
    StatsConfig,
    StorageConfig,
    TrackerConfig,
)


@pytest.fixture(autouse=True)
def config_home(tmp_path, monkeypatch):
    monkeypatch.setenv("XDG_CONFIG_HOME", str(tmp_path / "config"))
    monkeypatch.setenv("APPDATA", str(tmp_path / "config"))
    return tmp_path


def test_defaults():
    settings = Settings()

    assert settings.storage.quota_bytes == 10 * 1024 * 1024
    assert settings.storage.path.name == "listening.db"
    assert settings.tracker.play_count_threshold_seconds == 30
    assert settings.stats.metadata_cache_size == 500
    assert settings.enrichment.client_id is None
    assert settings.logging.level == "INFO"


def test_save_and_load_round_trip(tmp_path):
    path = tmp_path / "config.yaml"
    settings = Settings(
        storage=StorageConfig(path=str(tmp_path / "db.sqlite"), quota_mb=5),
        enrichment=EnrichmentConfig(client_id="abc", timeout_seconds=2.5),
        logging=LoggingConfig(level="DEBUG"),
    )

    settings.save(path)
    loaded = Settings.from_file(path)

    assert loaded.storage.path == tmp_path / "db.sqlite"
    assert loaded.storage.quota_mb == 5
    assert loaded.enrichment.client_id == "abc"
    assert loaded.enrichment.timeout_seconds == 2.5
    assert loaded.logging.level == "DEBUG"


def test_partial_file_keeps_defaults(tmp_path):
    path = tmp_path / "config.yaml"
    path.write_text(yaml.dump({"tracker": {"completion_ratio": 0.8}}), encoding="utf-8")

    loaded = Settings.from_file(path)

    assert loaded.tracker.completion_ratio == 0.8
    assert loaded.tracker.tick_interval_seconds == 1.0
    assert loaded.stats.persist_delay_seconds == 5.0


def test_missing_file_raises(tmp_path):
    with pytest.raises(FileNotFoundError):
        Settings.from_file(tmp_path / "absent.yaml")


def test_invalid_file_falls_back_to_defaults(tmp_path):
    path = tmp_path / "config.yaml"
    path.write_text(yaml.dump({"stats": {"metadata_cache_size": 0}}), encoding="utf-8")

    settings = Settings.from_file_or_default(path)

    assert settings.stats.metadata_cache_size == 500


def test_unknown_key_falls_back_to_defaults(tmp_path):
    path = tmp_path / "config.yaml"
    path.write_text(yaml.dump({"storage": {"colour": "blue"}}), encoding="utf-8")

    assert Settings.from_file_or_default(path).storage.quota_mb == 10


@pytest.mark.parametrize("factory", [
    lambda: StorageConfig(quota_mb=0),
    lambda: TrackerConfig(tick_interval_seconds=0),
    lambda: TrackerConfig(max_tick_seconds=0.5),
    lambda: TrackerConfig(completion_ratio=1.5),
    lambda: TrackerConfig(settings_refresh_seconds=0),
    lambda: StatsConfig(flush_interval_minutes=0),
    lambda: EnrichmentConfig(timeout_seconds=0),
    lambda: LoggingConfig(level="LOUD"),
])
def test_validation(factory):
    with pytest.raises(ValueError):
        factory()
