"""Aggregation of per-station assessments into ranked snapshots."""

from __future__ import annotations

from datetime import datetime
from typing import Dict, Iterable, List, Mapping, Optional, Tuple, Union

from models.errors import EmptyInput
from models.records import (
    AnalysisSnapshot,
    AnalysisWindow,
    BottleneckEvent,
    StationAssessment,
)
from models.taxonomy import RECOMMENDATIONS

StationResults = Union[Mapping[str, StationAssessment], Iterable[StationAssessment]]


def _rank_key(item: Union[StationAssessment, BottleneckEvent]) -> Tuple[int, str]:
    return (-item.severity, item.station_id)


def merge_assessments(assessments: Iterable[StationAssessment]) -> Dict[str, StationAssessment]:
    """Collapse overlapping assessments so each station keeps one.

    The higher severity wins; on equal severity the later window end wins.
    """
    merged: Dict[str, StationAssessment] = {}
    for assessment in assessments:
        current = merged.get(assessment.station_id)
        if current is None or (assessment.severity, assessment.window_end) > (
            current.severity,
            current.window_end,
        ):
            merged[assessment.station_id] = assessment
    return merged


class Aggregator:
    """Pure aggregation component that can be unit tested in isolation."""

    def __init__(self, noise_floor: float = 10.0) -> None:
        self.noise_floor = noise_floor

    def aggregate(
        self,
        station_results: StationResults,
        window: AnalysisWindow,
        run_id: str,
        run_timestamp: datetime,
        noise_floor: Optional[float] = None,
    ) -> AnalysisSnapshot:
        """Rank events at or above the noise floor; efficiency counts every station.

        ``noise_floor`` overrides the configured floor for this call only.
        """
        floor = self.noise_floor if noise_floor is None else noise_floor
        if isinstance(station_results, Mapping):
            results = dict(station_results)
        else:
            results = merge_assessments(station_results)

        if not results:
            raise EmptyInput("No stations were scored; nothing to aggregate.")

        severities = [assessment.severity for assessment in results.values()]
        efficiency = 1.0 - (sum(severities) / len(severities)) / 100.0

        events: List[BottleneckEvent] = [
            BottleneckEvent(
                station_id=station_id,
                window_start=assessment.window_start,
                window_end=assessment.window_end,
                severity=assessment.severity,
                impact_tier=assessment.impact_tier,
                cause_type=assessment.cause_type,
                contributing_metrics=assessment.metrics,
            )
            for station_id, assessment in results.items()
            if assessment.severity >= floor
        ]
        events.sort(key=_rank_key)

        return AnalysisSnapshot(
            run_id=run_id,
            run_timestamp=run_timestamp,
            window_start=window.start,
            window_end=window.end,
            events=tuple(events),
            efficiency_estimate=min(1.0, max(0.0, efficiency)),
            scored_station_count=len(results),
            recommendations=self.recommend(events),
        )

    def recommend(self, events: Iterable[BottleneckEvent]) -> Tuple[str, ...]:
        """One playbook line per cause present, most severe cause first."""
        seen: List[str] = []
        for event in sorted(events, key=_rank_key):
            line = RECOMMENDATIONS[event.cause_type]
            if line not in seen:
                seen.append(line)
        return tuple(seen)
