"""Load, validate, and hot-reload the Glucolink monitoring configuration.

The config lives in ``monitoring_config.yaml`` alongside this module.  At
startup it is loaded once and cached.  Call ``reload_monitoring_config()`` to
re-read from disk after an edit; no restart required.

Usage::

    from glucolink.config_loader import get_monitoring_config

    config = get_monitoring_config()
    config.thresholds.low            # 70.0
    config.sync.poll_interval        # timedelta(minutes=5)
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from datetime import timedelta
from pathlib import Path

import yaml

from glucolink.libreview.base import GlucoseUnit

logger = logging.getLogger("glucolink.config")

# Path to the YAML file sitting next to this module
_CONFIG_PATH = Path(__file__).parent / "monitoring_config.yaml"

# Upstream throttling requires at least this much wait between retries
MIN_RETRY_BACKOFF_SECONDS = 60


# ---------------------------------------------------------------------------
# Typed config sections
# ---------------------------------------------------------------------------


@dataclass
class DisplayConfig:
    unit: GlucoseUnit
    granularity_minutes: int  # 0 = raw readings


@dataclass
class ThresholdConfig:
    """Range thresholds, expressed in the display unit."""

    low: float
    high: float


@dataclass
class SyncConfig:
    """Refresh cadence and upstream window."""

    poll_interval_seconds: int
    retry_backoff_seconds: int
    window_days: int
    token_lifetime_minutes: int

    @property
    def poll_interval(self) -> timedelta:
        return timedelta(seconds=self.poll_interval_seconds)

    @property
    def retry_backoff(self) -> timedelta:
        return timedelta(seconds=self.retry_backoff_seconds)

    @property
    def token_lifetime(self) -> timedelta:
        return timedelta(minutes=self.token_lifetime_minutes)


@dataclass
class TrendConfig:
    lookback_minutes: int
    stable_rate_mgdl_per_min: float


@dataclass
class StoreConfig:
    dedupe_threshold: int


@dataclass
class MonitoringConfig:
    """Complete, validated monitoring configuration.

    This is the single in-memory representation of monitoring_config.yaml.

    Attributes:
        version:    Config schema version string.
        display:    Display unit and history granularity.
        thresholds: Low/high range thresholds in the display unit.
        sync:       Poll interval, retry backoff, window and token lifetime.
        trend:      Trend lookback and stable-rate band.
        store:      Startup dedup threshold.
    """

    version: str
    display: DisplayConfig
    thresholds: ThresholdConfig
    sync: SyncConfig
    trend: TrendConfig
    store: StoreConfig
    _raw: dict = field(default_factory=dict, repr=False)


# ---------------------------------------------------------------------------
# Loader / validation
# ---------------------------------------------------------------------------


class ConfigValidationError(ValueError):
    """Raised when monitoring_config.yaml fails validation."""


def _load_yaml(path: Path) -> dict:
    """Read and parse a YAML file.

    Args:
        path: Path to the YAML file.

    Returns:
        Parsed dict.

    Raises:
        FileNotFoundError: If the file does not exist.
        ConfigValidationError: If the YAML is malformed.
    """
    if not path.exists():
        raise FileNotFoundError(f"Monitoring config not found: {path}")

    with path.open("r", encoding="utf-8") as fh:
        try:
            raw = yaml.safe_load(fh) or {}
        except yaml.YAMLError as exc:
            raise ConfigValidationError(f"YAML parse error in {path}: {exc}") from exc
    if not isinstance(raw, dict):
        raise ConfigValidationError(f"{path} must contain a mapping at the top level")
    return raw


def _validate_and_build(raw: dict) -> MonitoringConfig:
    """Validate the raw YAML dict and construct a MonitoringConfig.

    Applies defaults for missing keys and collects every problem before
    raising, so one run reports all of them.

    Args:
        raw: Parsed YAML dict.

    Returns:
        Validated MonitoringConfig instance.

    Raises:
        ConfigValidationError: If any value is missing a sane type or range.
    """
    errors: list[str] = []

    def _section(name: str) -> dict:
        value = raw.get(name) or {}
        if not isinstance(value, dict):
            errors.append(f"'{name}' must be a mapping")
            return {}
        return value

    def _number(section: dict, key: str, default: float, where: str) -> float:
        value = section.get(key, default)
        try:
            return float(value)
        except (TypeError, ValueError):
            errors.append(f"{where}.{key} must be a number, got {value!r}")
            return default

    def _integer(section: dict, key: str, default: int, where: str) -> int:
        value = section.get(key, default)
        if isinstance(value, bool):
            errors.append(f"{where}.{key} must be an integer, got {value!r}")
            return default
        try:
            return int(value)
        except (TypeError, ValueError):
            errors.append(f"{where}.{key} must be an integer, got {value!r}")
            return default

    version = str(raw.get("version", "1.0"))

    # ── Display ──
    disp_raw = _section("display")
    unit_raw = disp_raw.get("unit", GlucoseUnit.MG_DL.value)
    try:
        unit = GlucoseUnit(unit_raw)
    except ValueError:
        errors.append(f"display.unit must be 'mg/dL' or 'mmol/L', got {unit_raw!r}")
        unit = GlucoseUnit.MG_DL
    granularity = _integer(disp_raw, "granularity_minutes", 0, "display")
    if not (0 <= granularity <= 1440):
        errors.append(f"display.granularity_minutes = {granularity} is out of range [0, 1440]")
    display = DisplayConfig(unit=unit, granularity_minutes=granularity)

    # ── Thresholds ──
    th_raw = _section("thresholds")
    thresholds = ThresholdConfig(
        low=_number(th_raw, "low", 70.0, "thresholds"),
        high=_number(th_raw, "high", 180.0, "thresholds"),
    )
    if thresholds.low < 0:
        errors.append(f"thresholds.low = {thresholds.low} must not be negative")
    if thresholds.low >= thresholds.high:
        errors.append(
            f"thresholds.low ({thresholds.low}) must be below thresholds.high ({thresholds.high})"
        )

    # ── Sync ──
    sync_raw = _section("sync")
    sync = SyncConfig(
        poll_interval_seconds=_integer(sync_raw, "poll_interval_seconds", 300, "sync"),
        retry_backoff_seconds=_integer(sync_raw, "retry_backoff_seconds", 60, "sync"),
        window_days=_integer(sync_raw, "window_days", 7, "sync"),
        token_lifetime_minutes=_integer(sync_raw, "token_lifetime_minutes", 50, "sync"),
    )
    if sync.poll_interval_seconds <= 0:
        errors.append("sync.poll_interval_seconds must be positive")
    if sync.retry_backoff_seconds < MIN_RETRY_BACKOFF_SECONDS:
        errors.append(
            f"sync.retry_backoff_seconds must be at least {MIN_RETRY_BACKOFF_SECONDS}"
        )
    if sync.window_days <= 0:
        errors.append("sync.window_days must be positive")
    if sync.token_lifetime_minutes <= 0:
        errors.append("sync.token_lifetime_minutes must be positive")

    # ── Trend ──
    tr_raw = _section("trend")
    trend = TrendConfig(
        lookback_minutes=_integer(tr_raw, "lookback_minutes", 30, "trend"),
        stable_rate_mgdl_per_min=_number(tr_raw, "stable_rate_mgdl_per_min", 0.5, "trend"),
    )
    if trend.lookback_minutes <= 0:
        errors.append("trend.lookback_minutes must be positive")
    if trend.stable_rate_mgdl_per_min <= 0:
        errors.append("trend.stable_rate_mgdl_per_min must be positive")

    # ── Store ──
    st_raw = _section("store")
    store = StoreConfig(dedupe_threshold=_integer(st_raw, "dedupe_threshold", 10000, "store"))
    if store.dedupe_threshold < 0:
        errors.append("store.dedupe_threshold must not be negative")

    if errors:
        raise ConfigValidationError(
            f"monitoring_config.yaml has {len(errors)} validation error(s):\n"
            + "\n".join(f"  • {e}" for e in errors)
        )

    return MonitoringConfig(
        version=version,
        display=display,
        thresholds=thresholds,
        sync=sync,
        trend=trend,
        store=store,
        _raw=raw,
    )


def load_monitoring_config(path: Path | None = None) -> MonitoringConfig:
    """Load and validate the monitoring config from disk.

    Args:
        path: Override path to YAML. Uses the bundled monitoring_config.yaml by default.

    Returns:
        Validated MonitoringConfig instance.
    """
    target = path or _CONFIG_PATH
    raw = _load_yaml(target)
    config = _validate_and_build(raw)
    logger.info("Loaded monitoring config v%s from %s", config.version, target)
    return config


# ---------------------------------------------------------------------------
# Global singleton with hot-reload support
# ---------------------------------------------------------------------------

_config: MonitoringConfig | None = None
_config_lock = threading.Lock()


def get_monitoring_config() -> MonitoringConfig:
    """Return the global MonitoringConfig singleton, loading it on first call.

    Thread-safe.  Use ``reload_monitoring_config()`` to refresh after YAML changes.
    """
    global _config
    if _config is None:
        with _config_lock:
            if _config is None:  # double-checked locking
                _config = load_monitoring_config()
    return _config


def reload_monitoring_config(path: Path | None = None) -> MonitoringConfig:
    """Reload the monitoring config from disk and replace the global singleton.

    If validation fails, the old config is retained and the error is re-raised.

    Args:
        path: Override path to YAML. Defaults to bundled monitoring_config.yaml.

    Returns:
        The newly loaded MonitoringConfig.

    Raises:
        ConfigValidationError: If the new config is invalid.
        FileNotFoundError:     If the config file is missing.
    """
    global _config
    new_config = load_monitoring_config(path)  # validate before acquiring lock
    with _config_lock:
        old_version = _config.version if _config else "none"
        _config = new_config
    logger.info("Reloaded monitoring config: %s → %s", old_version, new_config.version)
    return new_config
