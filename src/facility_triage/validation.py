from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

import structlog
from prometheus_client import Counter

from facility_triage.db.models import (
    POPULATION_TYPES,
    Condition,
    FacilityRecord,
    Importance,
    Level,
    UserReportInput,
)
from facility_triage.scoring import CONDITION_MULTIPLIERS, POPULATION_WEIGHTS, SUPPLY_MULTIPLIERS

logger = structlog.get_logger(__name__)

REPORT_VALIDATION_TOTAL = Counter("report_validation_total", "用户上报校验结果", ["result"])

# 严重度序数：数值越大代表情况越糟
CONDITION_SEVERITY: dict[Condition, int] = {
    Condition.BAD: 5,
    Condition.POOR: 4,
    Condition.FAIR: 2,
    Condition.GOOD: 1,
    Condition.EXCELLENT: 0,
}
SUPPLY_SEVERITY: dict[Level, int] = {
    Level.VERY_LOW: 5,
    Level.LOW: 4,
    Level.MEDIUM: 2,
    Level.HIGH: 1,
    Level.VERY_HIGH: 0,
}
POPULATION_SEVERITY: dict[Level, int] = {
    Level.VERY_HIGH: 5,
    Level.HIGH: 4,
    Level.MEDIUM: 2,
    Level.LOW: 1,
    Level.VERY_LOW: 0,
}
IMPORTANCE_SEVERITY: dict[Importance, int] = {
    Importance.VERY_IMPORTANT: 4,
    Importance.IMPORTANT: 3,
    Importance.MODERATE: 2,
    Importance.NOT_IMPORTANT: 1,
}

CONDITION_WEIGHT = 3.0
SUPPLY_WEIGHT = 2.0
POPULATION_WEIGHT = 2.0
IMPORTANCE_WEIGHT = 1.5

DEFAULT_SEVERITY_THRESHOLD = 3.0
DEFAULT_ADJUSTMENT_CAP = 50.0

REASON_APPLIED = "Report validated - conditions worse than current data"
REASON_REJECTED = "Report does not significantly increase urgency or may be invalid"
REASON_INVALID = "Invalid report or facility data"


@dataclass(slots=True, frozen=True)
class ReportValidation:
    should_apply: bool
    point_adjustment: float
    severity_score: float
    reason: str


def _worse_by(reported: Optional[int], current: int, weight: float) -> float:
    if reported is None or reported <= current:
        return 0.0
    return (reported - current) * weight


def severity_score(report: UserReportInput, facility: FacilityRecord) -> float:
    """累加每个“比现状更糟”的维度的加权差值；相同或更好的维度贡献 0。"""
    score = 0.0

    reported_condition = CONDITION_SEVERITY[report.condition] if report.condition else None
    score += _worse_by(reported_condition, CONDITION_SEVERITY.get(facility.condition, 2), CONDITION_WEIGHT)

    if report.supply is not None and facility.supply is not None:
        score += _worse_by(SUPPLY_SEVERITY[report.supply], SUPPLY_SEVERITY[facility.supply], SUPPLY_WEIGHT)

    if report.population is not None and facility.population is not None and facility.type in POPULATION_TYPES:
        score += _worse_by(
            POPULATION_SEVERITY[report.population],
            POPULATION_SEVERITY[facility.population],
            POPULATION_WEIGHT,
        )

    reported_importance = IMPORTANCE_SEVERITY[report.importance] if report.importance else None
    score += _worse_by(reported_importance, IMPORTANCE_SEVERITY.get(facility.importance, 2), IMPORTANCE_WEIGHT)
    return score


def point_adjustment(
    report: UserReportInput,
    facility: FacilityRecord,
    severity: float,
    *,
    cap: float = DEFAULT_ADJUSTMENT_CAP,
) -> float:
    """严重度 ×2，再叠加各维度评分系数的恶化差值，最终封顶。"""
    adjustment = severity * 2

    if report.condition is not None:
        diff = CONDITION_MULTIPLIERS[report.condition] - CONDITION_MULTIPLIERS.get(facility.condition, 1.0)
        if diff > 0:
            adjustment += diff * 5

    if report.supply is not None and facility.supply is not None:
        diff = SUPPLY_MULTIPLIERS[report.supply] - SUPPLY_MULTIPLIERS[facility.supply]
        if diff > 0:
            adjustment += diff * 3

    if report.population is not None and facility.population is not None and facility.type in POPULATION_TYPES:
        diff = POPULATION_WEIGHTS[report.population] - POPULATION_WEIGHTS[facility.population]
        if diff > 0:
            adjustment += diff * 0.3

    return min(adjustment, cap)


def validate_report(
    report: Optional[UserReportInput],
    facility: Optional[FacilityRecord],
    *,
    threshold: float = DEFAULT_SEVERITY_THRESHOLD,
    cap: float = DEFAULT_ADJUSTMENT_CAP,
) -> ReportValidation:
    """判断用户上报是否可信到足以影响排名。

    只有严重度达到阈值且调整分为正时才生效；结果仅由入参决定，重复调用一致。
    """
    if report is None or facility is None:
        REPORT_VALIDATION_TOTAL.labels("invalid").inc()
        return ReportValidation(False, 0.0, 0.0, REASON_INVALID)

    severity = severity_score(report, facility)
    adjustment = point_adjustment(report, facility, severity, cap=cap) if severity >= threshold else 0.0
    should_apply = severity >= threshold and adjustment > 0

    REPORT_VALIDATION_TOTAL.labels("applied" if should_apply else "rejected").inc()
    logger.info(
        "report_validated",
        facility_id=facility.id,
        severity=severity,
        adjustment=adjustment if should_apply else 0.0,
        applied=should_apply,
    )
    return ReportValidation(
        should_apply=should_apply,
        point_adjustment=adjustment if should_apply else 0.0,
        severity_score=severity,
        reason=REASON_APPLIED if should_apply else REASON_REJECTED,
    )


def explain_validation(result: ReportValidation) -> str:
    if result.should_apply:
        return f"Report validated. Points increased by {result.point_adjustment:.1f} based on severity."
    return f"Report received but did not significantly change priority. {result.reason}"
