"""Severity scoring for a station's windowed telemetry."""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Iterable

import numpy as np

from models.errors import InsufficientData, InvalidSample
from models.records import ContributingMetrics, StationMetricSample, SubScores
from settings import EngineConfig, SeverityWeights


@dataclass(frozen=True, slots=True)
class ScoreBreakdown:
    station_id: str
    severity: int
    sub_scores: SubScores
    metrics: ContributingMetrics


def _clamp_unit(value: float) -> float:
    return float(np.clip(value, 0.0, 1.0))


def round_half_up(value: float) -> int:
    """Round to the nearest integer with halves going up, ignoring float noise."""
    return int(math.floor(round(value, 9) + 0.5))


class SeverityScorer:
    """Pure scorer mapping windowed samples to a severity in [0, 100].

    The score is a weighted blend of three normalised sub-scores:
    throughput deficit against target, queue pressure against the station's
    queue capacity, and the share of the window spent down.
    """

    def __init__(self, config: EngineConfig) -> None:
        self.config = config

    @property
    def weights(self) -> SeverityWeights:
        return self.config.severity_weights

    def score(self, samples: Iterable[StationMetricSample], window_seconds: float) -> int:
        return self.evaluate(samples, window_seconds).severity

    def evaluate(
        self, samples: Iterable[StationMetricSample], window_seconds: float
    ) -> ScoreBreakdown:
        if window_seconds <= 0:
            raise ValueError("window_seconds must be positive.")

        batch = tuple(samples)
        if not batch:
            raise InsufficientData("No samples available in the analysis window.")

        station_ids = {sample.station_id for sample in batch}
        if len(station_ids) > 1:
            raise InvalidSample(
                f"Cannot score samples from several stations: {sorted(station_ids)}."
            )
        station_id = batch[0].station_id

        throughput = np.array([sample.throughput for sample in batch], dtype=float)
        target = np.array([sample.target_throughput for sample in batch], dtype=float)
        queue = np.array([sample.queue_depth for sample in batch], dtype=float)
        downtime = np.array([sample.downtime_seconds for sample in batch], dtype=float)
        utilization = np.array([sample.utilization for sample in batch], dtype=float)

        capacity = self.config.capacity_for(station_id)
        mean_target = float(target.mean())
        sub_scores = SubScores(
            throughput_deficit=_clamp_unit(1.0 - float(throughput.mean()) / mean_target),
            queue_pressure=_clamp_unit(float(queue.mean()) / capacity),
            downtime_ratio=_clamp_unit(float(downtime.sum()) / window_seconds),
        )

        weights = self.weights
        blended = (
            weights.throughput * sub_scores.throughput_deficit
            + weights.queue * sub_scores.queue_pressure
            + weights.downtime * sub_scores.downtime_ratio
        )
        severity = min(100, max(0, round_half_up(100.0 * blended)))

        metrics = ContributingMetrics(
            sample_count=len(batch),
            mean_throughput=float(throughput.mean()),
            mean_target_throughput=mean_target,
            mean_queue_depth=float(queue.mean()),
            total_downtime_seconds=float(downtime.sum()),
            mean_utilization=float(utilization.mean()),
            queue_capacity=capacity,
            window_seconds=window_seconds,
            sub_scores=sub_scores,
        )
        return ScoreBreakdown(
            station_id=station_id,
            severity=severity,
            sub_scores=sub_scores,
            metrics=metrics,
        )
