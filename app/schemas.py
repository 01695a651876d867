"""Pydantic schemas for the HTTP API layer."""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from models.taxonomy import CauseType, ImpactTier


class RunStatus(str, Enum):
    """Analysis run lifecycle states exposed via the API."""

    queued = "queued"
    running = "running"
    completed = "completed"
    failed = "failed"
    cancelled = "cancelled"


class SampleIn(BaseModel):
    """Telemetry sample as delivered by an upstream connector.

    Range checks are left to the sample store so every ingestion path rejects
    malformed records the same way.
    """

    station_id: str
    timestamp: datetime
    throughput: float
    target_throughput: float
    queue_depth: int
    downtime_seconds: float = 0.0
    utilization: float


class SampleAccepted(BaseModel):
    station_id: str
    timestamp: datetime


class RowErrorOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    row_number: int = Field(..., ge=1)
    reason: str
    station_id: Optional[str] = None


class IngestionReportOut(BaseModel):
    """Outcome of a batch or CSV ingestion."""

    model_config = ConfigDict(from_attributes=True)

    accepted: int = Field(..., ge=0)
    rejected: List[RowErrorOut] = Field(default_factory=list)


class StationsOut(BaseModel):
    stations: List[str]


class AnalysisRequest(BaseModel):
    window_start: Optional[datetime] = Field(
        default=None, description="Inclusive window start; defaults to the last full window."
    )
    window_end: Optional[datetime] = Field(
        default=None, description="Exclusive window end."
    )
    noise_floor: Optional[float] = Field(
        default=None,
        ge=0,
        le=100,
        description="Minimum severity reported as an event for this run only.",
    )


class AnalysisAccepted(BaseModel):
    run_id: str = Field(..., description="Generated identifier for the queued run.")


class SubScoresOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    throughput_deficit: float
    queue_pressure: float
    downtime_ratio: float


class ContributingMetricsOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    sample_count: int
    mean_throughput: float
    mean_target_throughput: float
    mean_queue_depth: float
    total_downtime_seconds: float
    mean_utilization: float
    queue_capacity: float
    window_seconds: float
    sub_scores: SubScoresOut


class BottleneckEventOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    station_id: str
    window_start: datetime
    window_end: datetime
    severity: int = Field(..., ge=0, le=100)
    impact_tier: ImpactTier
    cause_type: CauseType
    contributing_metrics: ContributingMetricsOut


class AnalysisSnapshotOut(BaseModel):
    """Ranked bottleneck events for one analysis run."""

    model_config = ConfigDict(from_attributes=True)

    run_id: str
    run_timestamp: datetime
    window_start: datetime
    window_end: datetime
    events: List[BottleneckEventOut] = Field(default_factory=list)
    efficiency_estimate: float = Field(..., ge=0.0, le=1.0)
    scored_station_count: int = Field(..., ge=0)
    bottleneck_count: int = Field(..., ge=0)
    critical_issues: int = Field(..., ge=0)
    tier_counts: Dict[str, int] = Field(default_factory=dict)
    cause_breakdown: Dict[str, int] = Field(default_factory=dict)
    recommendations: List[str] = Field(default_factory=list)


class ForecastPointOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    step: int = Field(..., ge=1)
    period_label: str
    predicted_count: float = Field(..., ge=0.0)
    lower_bound: float
    upper_bound: float
    basis_periods: int


class ForecastOut(BaseModel):
    horizon: int
    points: List[ForecastPointOut]


class ForecastAccuracyOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    period_label: str
    predicted_count: float
    lower_bound: float
    upper_bound: float
    actual_count: int
    absolute_error: float
    within_interval: bool


class StationSkipOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    station_id: str
    reason: str


class AnalysisRunRecord(BaseModel):
    """Full record representing an analysis run."""

    run_id: str
    status: RunStatus
    requested_at: datetime
    window_start: Optional[datetime] = None
    window_end: Optional[datetime] = None
    noise_floor: Optional[float] = None
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    duration_ms: Optional[int] = Field(
        default=None, description="Duration in milliseconds from start to finish."
    )
    snapshot: Optional[AnalysisSnapshotOut] = None
    skipped: List[StationSkipOut] = Field(default_factory=list)
    forecast: List[ForecastPointOut] = Field(default_factory=list)
    efficiency_change: Optional[float] = None
    error: Optional[str] = None
