from __future__ import annotations

import math
import os
from dataclasses import dataclass, field
from functools import lru_cache
from typing import Dict, Mapping, Optional, Tuple

from models.errors import ConfigurationError


_WEIGHTS_ENV = "SEVERITY_WEIGHTS"
_QUEUE_CAPACITY_ENV = "QUEUE_CAPACITY"
_QUEUE_CAPACITY_PER_STATION_ENV = "QUEUE_CAPACITY_PER_STATION"
_TIER_THRESHOLDS_ENV = "IMPACT_TIER_THRESHOLDS"
_NOISE_FLOOR_ENV = "NOISE_FLOOR"
_DOWNTIME_THRESHOLD_ENV = "DOWNTIME_THRESHOLD"
_NEAR_ZERO_DOWNTIME_ENV = "NEAR_ZERO_DOWNTIME"
_ALPHA_ENV = "SMOOTHING_ALPHA"
_BETA_ENV = "SMOOTHING_BETA"
_CONFIDENCE_ENV = "FORECAST_CONFIDENCE"
_HORIZON_ENV = "FORECAST_HORIZON"
_RETENTION_ENV = "RETENTION_HORIZON_SECONDS"
_WINDOW_ENV = "ANALYSIS_WINDOW_SECONDS"
_HISTORY_LIMIT_ENV = "SNAPSHOT_HISTORY_LIMIT"
_BUCKET_SECONDS_ENV = "STORE_BUCKET_SECONDS"
_WORKER_COUNT_ENV = "ANALYSIS_WORKER_COUNT"
_RUN_LOCK_TIMEOUT_ENV = "RUN_LOCK_TIMEOUT_SECONDS"
_TABLE_NAME_ENV = "RUN_TABLE_NAME"
_TABLE_PATH_ENV = "RUN_TABLE_PERSISTENCE_PATH"
_LOG_LEVEL_ENV = "LOG_LEVEL"

_WEIGHT_TOLERANCE = 1e-6


@dataclass(frozen=True)
class SeverityWeights:
    throughput: float = 0.4
    queue: float = 0.35
    downtime: float = 0.25


@dataclass(frozen=True)
class EngineConfig:
    """Tunable parameters of the scoring, classification and forecasting models."""

    severity_weights: SeverityWeights = field(default_factory=SeverityWeights)
    queue_capacity: float = 20.0
    queue_capacity_per_station: Mapping[str, float] = field(default_factory=dict)
    impact_tier_thresholds: Tuple[float, float, float] = (40.0, 70.0, 90.0)
    noise_floor: float = 10.0
    downtime_threshold: float = 0.2
    near_zero_downtime: float = 0.05
    smoothing_alpha: float = 0.5
    smoothing_beta: float = 0.3
    forecast_confidence: float = 0.95
    forecast_horizon: int = 4
    retention_horizon_seconds: float = 86400.0
    analysis_window_seconds: float = 3600.0
    snapshot_history_limit: int = 52
    store_bucket_seconds: float = 60.0

    def __post_init__(self) -> None:
        self.validate()

    def validate(self) -> None:
        numbers = {
            name: getattr(self, name)
            for name in (
                "queue_capacity",
                "noise_floor",
                "downtime_threshold",
                "near_zero_downtime",
                "smoothing_alpha",
                "smoothing_beta",
                "forecast_confidence",
                "retention_horizon_seconds",
                "analysis_window_seconds",
                "store_bucket_seconds",
            )
        }
        numbers.update(
            (f"impact_tier_thresholds[{index}]", value)
            for index, value in enumerate(self.impact_tier_thresholds)
        )
        numbers.update(
            (f"queue_capacity_per_station[{station_id!r}]", value)
            for station_id, value in self.queue_capacity_per_station.items()
        )
        for name, value in numbers.items():
            if not math.isfinite(value):
                raise ConfigurationError(f"{name} must be a finite number, got {value!r}.")

        weights = self.severity_weights
        values = (weights.throughput, weights.queue, weights.downtime)
        if any(value < 0 or not math.isfinite(value) for value in values):
            raise ConfigurationError("Severity weights must be non-negative numbers.")
        if abs(sum(values) - 1.0) > _WEIGHT_TOLERANCE:
            raise ConfigurationError(
                f"Severity weights must sum to 1.0, got {sum(values):.6f}."
            )

        thresholds = self.impact_tier_thresholds
        if len(thresholds) != 3:
            raise ConfigurationError("Impact tier thresholds need exactly three boundaries.")
        bounds = (0.0, *thresholds)
        if any(upper <= lower for lower, upper in zip(bounds, bounds[1:])) or thresholds[-1] > 100:
            raise ConfigurationError(
                "Impact tier thresholds must be strictly increasing within (0, 100]."
            )

        if self.queue_capacity <= 0:
            raise ConfigurationError("Queue capacity must be positive.")
        for station_id, capacity in self.queue_capacity_per_station.items():
            if capacity <= 0:
                raise ConfigurationError(
                    f"Queue capacity for station {station_id!r} must be positive."
                )

        if not 0 <= self.noise_floor <= 100:
            raise ConfigurationError("Noise floor must lie within [0, 100].")
        for name in ("downtime_threshold", "near_zero_downtime"):
            if not 0 <= getattr(self, name) <= 1:
                raise ConfigurationError(f"{name} must lie within [0, 1].")
        for name in ("smoothing_alpha", "smoothing_beta", "forecast_confidence"):
            if not 0 < getattr(self, name) < 1:
                raise ConfigurationError(f"{name} must lie strictly between 0 and 1.")

        if self.forecast_horizon < 1 or self.snapshot_history_limit < 2:
            raise ConfigurationError(
                "Forecast horizon must be positive and history must hold two periods."
            )
        if self.analysis_window_seconds <= 0 or self.store_bucket_seconds <= 0:
            raise ConfigurationError("Window and bucket lengths must be positive.")
        if self.retention_horizon_seconds < self.analysis_window_seconds:
            raise ConfigurationError(
                "Retention horizon must cover at least one analysis window."
            )

    def capacity_for(self, station_id: str) -> float:
        return self.queue_capacity_per_station.get(station_id, self.queue_capacity)


@dataclass(frozen=True)
class Settings:
    engine: EngineConfig
    analysis_workers: int
    run_lock_timeout_seconds: float
    run_table_name: str
    run_table_persistence_path: Optional[str]
    log_level: str

    def __post_init__(self) -> None:
        if self.analysis_workers < 1:
            raise ConfigurationError("Analysis worker count must be at least 1.")
        timeout = self.run_lock_timeout_seconds
        if not math.isfinite(timeout) or timeout <= 0:
            raise ConfigurationError("Run lock timeout must be a positive number of seconds.")


def _read_str_env(name: str, default: str) -> str:
    value = os.getenv(name)
    if value is None:
        return default
    candidate = value.strip()
    return candidate or default


def _read_optional_env(name: str, default: Optional[str]) -> Optional[str]:
    value = os.getenv(name)
    if value is None:
        return default
    candidate = value.strip()
    return candidate or None


def _read_int_env(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None:
        return default
    candidate = value.strip()
    if not candidate:
        return default
    try:
        return int(candidate)
    except ValueError:
        return default


def _read_float_env(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None:
        return default
    candidate = value.strip()
    if not candidate:
        return default
    try:
        return float(candidate)
    except ValueError:
        return default


def _read_float_list_env(name: str, default: Tuple[float, ...]) -> Tuple[float, ...]:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    try:
        return tuple(float(part) for part in value.split(","))
    except ValueError:
        return default


def _read_capacity_map_env(name: str) -> Dict[str, float]:
    value = os.getenv(name)
    if value is None:
        return {}
    capacities: Dict[str, float] = {}
    for entry in value.split(","):
        station_id, sep, raw_capacity = entry.partition("=")
        if not sep or not station_id.strip():
            continue
        try:
            capacities[station_id.strip()] = float(raw_capacity)
        except ValueError:
            continue
    return capacities


def _read_log_level(default: str) -> str:
    value = os.getenv(_LOG_LEVEL_ENV)
    if value is None:
        return default
    candidate = value.strip()
    if not candidate:
        return default
    return candidate.upper()


def load_engine_config() -> EngineConfig:
    """Build the engine configuration from the environment, validating it."""
    defaults = EngineConfig()
    weights = _read_float_list_env(
        _WEIGHTS_ENV,
        (
            defaults.severity_weights.throughput,
            defaults.severity_weights.queue,
            defaults.severity_weights.downtime,
        ),
    )
    if len(weights) != 3:
        raise ConfigurationError(
            f"{_WEIGHTS_ENV} needs three comma-separated weights (throughput, queue, downtime)."
        )
    thresholds = _read_float_list_env(_TIER_THRESHOLDS_ENV, defaults.impact_tier_thresholds)

    return EngineConfig(
        severity_weights=SeverityWeights(*weights),
        queue_capacity=_read_float_env(_QUEUE_CAPACITY_ENV, defaults.queue_capacity),
        queue_capacity_per_station=_read_capacity_map_env(_QUEUE_CAPACITY_PER_STATION_ENV),
        impact_tier_thresholds=thresholds,  # type: ignore[arg-type]
        noise_floor=_read_float_env(_NOISE_FLOOR_ENV, defaults.noise_floor),
        downtime_threshold=_read_float_env(_DOWNTIME_THRESHOLD_ENV, defaults.downtime_threshold),
        near_zero_downtime=_read_float_env(_NEAR_ZERO_DOWNTIME_ENV, defaults.near_zero_downtime),
        smoothing_alpha=_read_float_env(_ALPHA_ENV, defaults.smoothing_alpha),
        smoothing_beta=_read_float_env(_BETA_ENV, defaults.smoothing_beta),
        forecast_confidence=_read_float_env(_CONFIDENCE_ENV, defaults.forecast_confidence),
        forecast_horizon=_read_int_env(_HORIZON_ENV, defaults.forecast_horizon),
        retention_horizon_seconds=_read_float_env(
            _RETENTION_ENV, defaults.retention_horizon_seconds
        ),
        analysis_window_seconds=_read_float_env(_WINDOW_ENV, defaults.analysis_window_seconds),
        snapshot_history_limit=_read_int_env(_HISTORY_LIMIT_ENV, defaults.snapshot_history_limit),
        store_bucket_seconds=_read_float_env(_BUCKET_SECONDS_ENV, defaults.store_bucket_seconds),
    )


@lru_cache
def get_settings() -> Settings:
    return Settings(
        engine=load_engine_config(),
        analysis_workers=_read_int_env(_WORKER_COUNT_ENV, 1),
        run_lock_timeout_seconds=_read_float_env(_RUN_LOCK_TIMEOUT_ENV, 5.0),
        run_table_name=_read_str_env(_TABLE_NAME_ENV, "analysis_runs"),
        run_table_persistence_path=_read_optional_env(_TABLE_PATH_ENV, None),
        log_level=_read_log_level("INFO"),
    )
