"""Impact tier and cause classification for scored stations."""

from __future__ import annotations

from dataclasses import dataclass

from models.records import SubScores
from models.taxonomy import CauseType, ImpactTier
from services.scoring import ScoreBreakdown
from settings import EngineConfig

_TIERS_ABOVE_LOW = (ImpactTier.medium, ImpactTier.high, ImpactTier.critical)


@dataclass(frozen=True, slots=True)
class Classification:
    cause_type: CauseType
    impact_tier: ImpactTier


class Classifier:
    """Deterministic rule-based classifier.

    Cause rules are evaluated in a fixed order and the first match wins:

    1. downtime ratio above ``downtime_threshold`` -> equipment issue
    2. queue pressure is the dominant sub-score -> resource constraint
    3. throughput deficit is dominant and downtime is near zero -> process delay
    4. anything else -> scheduling

    A sub-score is dominant when it is positive and no smaller than the other
    two, so queue pressure wins a tie with throughput deficit.
    """

    def __init__(self, config: EngineConfig) -> None:
        self.config = config

    def classify(self, breakdown: ScoreBreakdown) -> Classification:
        return Classification(
            cause_type=self.cause_for(breakdown.sub_scores),
            impact_tier=self.tier_for(breakdown.severity),
        )

    def tier_for(self, severity: float) -> ImpactTier:
        if not 0 <= severity <= 100:
            raise ValueError(f"Severity {severity!r} is outside [0, 100].")
        tier = ImpactTier.low
        for threshold, candidate in zip(self.config.impact_tier_thresholds, _TIERS_ABOVE_LOW):
            if severity >= threshold:
                tier = candidate
        return tier

    def cause_for(self, sub_scores: SubScores) -> CauseType:
        deficit = sub_scores.throughput_deficit
        pressure = sub_scores.queue_pressure
        downtime = sub_scores.downtime_ratio

        if downtime > self.config.downtime_threshold:
            return CauseType.equipment_issue
        if pressure > 0 and pressure >= deficit and pressure >= downtime:
            return CauseType.resource_constraint
        if (
            deficit > 0
            and deficit >= pressure
            and deficit >= downtime
            and downtime <= self.config.near_zero_downtime
        ):
            return CauseType.process_delay
        return CauseType.scheduling
