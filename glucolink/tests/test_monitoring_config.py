"""Tests for monitoring_config.yaml loading and validation."""

from __future__ import annotations

import textwrap
from datetime import timedelta
from pathlib import Path

import pytest

from glucolink.config import Settings
from glucolink.config_loader import (
    ConfigValidationError,
    MonitoringConfig,
    _validate_and_build,
    get_monitoring_config,
    load_monitoring_config,
    reload_monitoring_config,
)
from glucolink.libreview.base import GlucoseUnit


class TestConfigLoading:
    """Tests for loading the bundled monitoring_config.yaml."""

    def test_load_default_config(self, monitoring_config: MonitoringConfig) -> None:
        assert monitoring_config.version == "1.0"
        assert monitoring_config.display.unit == GlucoseUnit.MG_DL
        assert monitoring_config.display.granularity_minutes == 0

    def test_thresholds(self, monitoring_config: MonitoringConfig) -> None:
        assert monitoring_config.thresholds.low == 70.0
        assert monitoring_config.thresholds.high == 180.0

    def test_sync_cadence(self, monitoring_config: MonitoringConfig) -> None:
        sync = monitoring_config.sync
        assert sync.poll_interval == timedelta(minutes=5)
        assert sync.retry_backoff == timedelta(minutes=1)
        assert sync.token_lifetime == timedelta(minutes=50)
        assert sync.window_days == 7

    def test_trend_and_store(self, monitoring_config: MonitoringConfig) -> None:
        assert monitoring_config.trend.lookback_minutes == 30
        assert monitoring_config.trend.stable_rate_mgdl_per_min == 0.5
        assert monitoring_config.store.dedupe_threshold == 10000

    def test_singleton_is_cached(self) -> None:
        assert get_monitoring_config() is get_monitoring_config()


class TestValidation:
    def test_empty_mapping_uses_defaults(self) -> None:
        config = _validate_and_build({})
        assert config.thresholds.low == 70.0
        assert config.sync.poll_interval_seconds == 300

    def test_mmol_display(self) -> None:
        config = _validate_and_build({"display": {"unit": "mmol/L"}, "thresholds": {"low": 3.9, "high": 10}})
        assert config.display.unit == GlucoseUnit.MMOL_L
        assert config.thresholds.high == 10.0

    def test_unknown_unit(self) -> None:
        with pytest.raises(ConfigValidationError, match="display.unit"):
            _validate_and_build({"display": {"unit": "g/L"}})

    def test_low_must_be_below_high(self) -> None:
        with pytest.raises(ConfigValidationError, match="must be below"):
            _validate_and_build({"thresholds": {"low": 180, "high": 70}})

    def test_backoff_floor(self) -> None:
        with pytest.raises(ConfigValidationError, match="retry_backoff_seconds"):
            _validate_and_build({"sync": {"retry_backoff_seconds": 10}})

    def test_granularity_range(self) -> None:
        with pytest.raises(ConfigValidationError, match="granularity_minutes"):
            _validate_and_build({"display": {"granularity_minutes": 2000}})

    def test_all_errors_reported_together(self) -> None:
        with pytest.raises(ConfigValidationError) as exc_info:
            _validate_and_build({
                "thresholds": {"low": "low"},
                "sync": {"window_days": 0, "poll_interval_seconds": -5},
                "trend": {"stable_rate_mgdl_per_min": 0},
            })
        message = str(exc_info.value)
        assert "4 validation error(s)" in message
        assert "thresholds.low" in message
        assert "window_days" in message

    def test_boolean_is_not_an_integer(self) -> None:
        with pytest.raises(ConfigValidationError, match="window_days"):
            _validate_and_build({"sync": {"window_days": True}})

    def test_section_must_be_mapping(self) -> None:
        with pytest.raises(ConfigValidationError, match="'sync' must be a mapping"):
            _validate_and_build({"sync": [1, 2]})


class TestFileLoading:
    def test_load_from_path(self, tmp_path: Path) -> None:
        path = tmp_path / "monitoring.yaml"
        path.write_text(textwrap.dedent("""
            version: "2.0"
            display:
              unit: mmol/L
              granularity_minutes: 15
            thresholds:
              low: 4.0
              high: 10.0
        """))
        config = load_monitoring_config(path)
        assert config.version == "2.0"
        assert config.display.granularity_minutes == 15
        assert config.thresholds.low == 4.0

    def test_missing_file(self, tmp_path: Path) -> None:
        with pytest.raises(FileNotFoundError):
            load_monitoring_config(tmp_path / "absent.yaml")

    def test_malformed_yaml(self, tmp_path: Path) -> None:
        path = tmp_path / "bad.yaml"
        path.write_text("display: [unclosed\n")
        with pytest.raises(ConfigValidationError, match="YAML parse error"):
            load_monitoring_config(path)

    def test_top_level_must_be_mapping(self, tmp_path: Path) -> None:
        path = tmp_path / "list.yaml"
        path.write_text("- 1\n- 2\n")
        with pytest.raises(ConfigValidationError):
            load_monitoring_config(path)

    def test_reload_keeps_old_config_on_error(self, tmp_path: Path) -> None:
        before = get_monitoring_config()
        path = tmp_path / "invalid.yaml"
        path.write_text("thresholds:\n  low: 200\n  high: 100\n")

        with pytest.raises(ConfigValidationError):
            reload_monitoring_config(path)

        assert get_monitoring_config() is before

    def test_reload_replaces_singleton(self, tmp_path: Path) -> None:
        path = tmp_path / "reload.yaml"
        path.write_text("version: \"9.9\"\n")
        try:
            assert reload_monitoring_config(path).version == "9.9"
            assert get_monitoring_config().version == "9.9"
        finally:
            reload_monitoring_config()


class TestSettings:
    def test_defaults(self) -> None:
        settings = Settings(_env_file=None)
        assert settings.libreview_product == "llu.android"
        assert settings.libreview_version == "4.7.0"
        assert settings.poll_on_startup is True

    def test_env_prefix(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("GLUCOLINK_LOCAL_TIMEZONE", "Europe/Berlin")
        monkeypatch.setenv("GLUCOLINK_REQUEST_TIMEOUT_SECONDS", "12.5")
        settings = Settings(_env_file=None)
        assert settings.local_timezone == "Europe/Berlin"
        assert settings.request_timeout_seconds == 12.5

    def test_paths_expand_home(self) -> None:
        settings = Settings(_env_file=None, database_path=Path("~/g.sqlite3"))
        assert "~" not in str(settings.resolved_database_path)
