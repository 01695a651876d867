"""Closed classification vocabularies for bottleneck events."""

from __future__ import annotations

from enum import Enum


class ImpactTier(str, Enum):
    """Impact bands derived from severity, ordered low to critical."""

    low = "low"
    medium = "medium"
    high = "high"
    critical = "critical"

    @property
    def rank(self) -> int:
        return _TIER_ORDER.index(self)


_TIER_ORDER = (ImpactTier.low, ImpactTier.medium, ImpactTier.high, ImpactTier.critical)


class CauseType(str, Enum):
    """Fixed taxonomy of bottleneck causes."""

    equipment_issue = "equipment_issue"
    resource_constraint = "resource_constraint"
    process_delay = "process_delay"
    scheduling = "scheduling"


RECOMMENDATIONS: dict[CauseType, str] = {
    CauseType.equipment_issue: "Schedule maintenance and inspect equipment with recurring downtime.",
    CauseType.resource_constraint: "Add capacity or rebalance staffing where queues are saturated.",
    CauseType.process_delay: "Review work instructions and cycle times at under-performing stations.",
    CauseType.scheduling: "Revisit job sequencing and shift plans to smooth upstream flow.",
}
