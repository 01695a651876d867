"""Domain models shared across services."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Dict, Optional, Tuple

from models.taxonomy import CauseType, ImpactTier


def ensure_utc(value: datetime) -> datetime:
    """Interpret naive datetimes as UTC and normalise aware ones to UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


@dataclass(frozen=True, slots=True)
class StationMetricSample:
    """A single telemetry observation reported by a station."""

    station_id: str
    timestamp: datetime
    throughput: float
    target_throughput: float
    queue_depth: int
    downtime_seconds: float
    utilization: float


@dataclass(frozen=True, slots=True)
class AnalysisWindow:
    """Half-open time range ``[start, end)`` covered by one scoring pass."""

    start: datetime
    end: datetime

    def __post_init__(self) -> None:
        if self.end <= self.start:
            raise ValueError("Analysis window end must be after its start.")

    @property
    def duration_seconds(self) -> float:
        return (self.end - self.start).total_seconds()

    def contains(self, timestamp: datetime) -> bool:
        return self.start <= timestamp < self.end

    def shifted(self, periods: int) -> "AnalysisWindow":
        """Return the window ``periods`` lengths later (or earlier if negative)."""
        offset = timedelta(seconds=self.duration_seconds * periods)
        return AnalysisWindow(start=self.start + offset, end=self.end + offset)


@dataclass(frozen=True, slots=True)
class SubScores:
    throughput_deficit: float
    queue_pressure: float
    downtime_ratio: float


@dataclass(frozen=True, slots=True)
class ContributingMetrics:
    """Window aggregates that produced a severity score."""

    sample_count: int
    mean_throughput: float
    mean_target_throughput: float
    mean_queue_depth: float
    total_downtime_seconds: float
    mean_utilization: float
    queue_capacity: float
    window_seconds: float
    sub_scores: SubScores


@dataclass(frozen=True, slots=True)
class StationAssessment:
    """Scored and classified result for one station in one window."""

    station_id: str
    window_start: datetime
    window_end: datetime
    severity: int
    impact_tier: ImpactTier
    cause_type: CauseType
    metrics: ContributingMetrics


@dataclass(frozen=True, slots=True)
class BottleneckEvent:
    station_id: str
    window_start: datetime
    window_end: datetime
    severity: int
    impact_tier: ImpactTier
    cause_type: CauseType
    contributing_metrics: ContributingMetrics


@dataclass(frozen=True)
class AnalysisSnapshot:
    """Ranked output of a single analysis run."""

    run_id: str
    run_timestamp: datetime
    window_start: datetime
    window_end: datetime
    events: Tuple[BottleneckEvent, ...]
    efficiency_estimate: float
    scored_station_count: int
    recommendations: Tuple[str, ...] = field(default_factory=tuple)

    @property
    def bottleneck_count(self) -> int:
        return len(self.events)

    @property
    def critical_issues(self) -> int:
        return sum(1 for event in self.events if event.impact_tier is ImpactTier.critical)

    @property
    def tier_counts(self) -> Dict[str, int]:
        counts = {tier.value: 0 for tier in ImpactTier}
        for event in self.events:
            counts[event.impact_tier.value] += 1
        return counts

    @property
    def cause_breakdown(self) -> Dict[str, int]:
        counts = {cause.value: 0 for cause in CauseType}
        for event in self.events:
            counts[event.cause_type.value] += 1
        return counts

    @property
    def window(self) -> AnalysisWindow:
        return AnalysisWindow(start=self.window_start, end=self.window_end)


@dataclass(frozen=True, slots=True)
class ForecastPoint:
    step: int
    period_label: str
    predicted_count: float
    lower_bound: float
    upper_bound: float
    basis_periods: int


@dataclass(frozen=True, slots=True)
class StationSkip:
    """A station excluded from a run, with the reason it was skipped."""

    station_id: str
    reason: str


@dataclass(frozen=True)
class AnalysisOutcome:
    run_id: str
    snapshot: AnalysisSnapshot
    skipped: Tuple[StationSkip, ...] = ()
    forecast: Tuple[ForecastPoint, ...] = ()
    efficiency_change: Optional[float] = None


@dataclass(frozen=True, slots=True)
class ForecastAccuracy:
    """Predicted versus actual bottleneck count for a completed period."""

    period_label: str
    predicted_count: float
    lower_bound: float
    upper_bound: float
    actual_count: int

    @property
    def absolute_error(self) -> float:
        return abs(self.actual_count - self.predicted_count)

    @property
    def within_interval(self) -> bool:
        return self.lower_bound <= self.actual_count <= self.upper_bound
