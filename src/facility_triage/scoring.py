"""
干预优先级评分

计分顺序固定：先累加重要度、人口影响、紧迫度，再依次乘以状况、供给、
维修难度系数，随后叠加级联预防、状态倍率与保底分、类型加分和下游依赖数。
后面的乘法阶段会放大前面的加法项，调整顺序会改变排名。
"""

from __future__ import annotations

import math
from typing import Iterable, Optional

import structlog

from facility_triage.db.models import (
    POPULATION_TYPES,
    Condition,
    FacilityRecord,
    FacilityStatus,
    FacilityType,
    Importance,
    Level,
)
from facility_triage.db.store import FacilityStore

logger = structlog.get_logger(__name__)

IMPORTANCE_WEIGHTS: dict[Importance, float] = {
    Importance.VERY_IMPORTANT: 5.0,
    Importance.IMPORTANT: 3.0,
    Importance.MODERATE: 1.5,
    Importance.NOT_IMPORTANT: 0.5,
}

POPULATION_WEIGHTS: dict[Level, float] = {
    Level.VERY_HIGH: 50.0,
    Level.HIGH: 30.0,
    Level.MEDIUM: 15.0,
    Level.LOW: 5.0,
    Level.VERY_LOW: 1.0,
}

CONDITION_MULTIPLIERS: dict[Condition, float] = {
    Condition.BAD: 3.0,
    Condition.POOR: 2.0,
    Condition.FAIR: 1.0,
    Condition.GOOD: 0.5,
    Condition.EXCELLENT: 0.2,
}

SUPPLY_MULTIPLIERS: dict[Level, float] = {
    Level.VERY_LOW: 2.5,
    Level.LOW: 2.0,
    Level.MEDIUM: 1.0,
    Level.HIGH: 0.7,
    Level.VERY_HIGH: 0.5,
}

STATUS_MULTIPLIERS: dict[FacilityStatus, float] = {
    FacilityStatus.FAILED: 10.0,
    FacilityStatus.AT_RISK: 5.0,
    FacilityStatus.OPERATIONAL: 1.0,
}

# 保底分：保证失效/风险设施始终排在所有正常设施之前
STATUS_FLOOR_BOOST: dict[FacilityStatus, float] = {
    FacilityStatus.FAILED: 1000.0,
    FacilityStatus.AT_RISK: 500.0,
}

TYPE_BONUS: dict[FacilityType, float] = {
    FacilityType.HOSPITAL: 25.0,
    FacilityType.SHELTER: 20.0,
    FacilityType.WATER: 15.0,
    FacilityType.POWER: 12.0,
    FacilityType.FOOD: 10.0,
}

URGENCY_HORIZON_HOURS = 100.0
URGENCY_WEIGHT = 0.5
POPULATION_SERVED_WEIGHT = 0.1
CASCADE_PREVENTION_WEIGHT = 10.0
DEPENDENT_WEIGHT = 5.0


def _finite(value: float) -> bool:
    return not (math.isnan(value) or math.isinf(value))


def compute_score(facility: FacilityRecord, dependent_count: int = 0) -> float:
    """计算设施的干预分，结果恒为非负数。

    Args:
        facility: 设施记录（枚举字段已规整）
        dependent_count: 以该设施为 provider 的依赖边数量

    Returns:
        干预分；输入含 NaN/inf 时返回 0 并记录告警
    """
    numeric_inputs = (
        float(facility.population_served),
        float(facility.urgency_hours),
        float(facility.effort_penalty),
        float(facility.cascade_prevention_count),
        float(dependent_count),
    )
    if not all(_finite(value) for value in numeric_inputs):
        logger.warning("score_invalid_input", facility_id=facility.id, name=facility.name)
        return 0.0

    points = IMPORTANCE_WEIGHTS.get(facility.importance, 1.5)

    if facility.type in POPULATION_TYPES:
        points += POPULATION_WEIGHTS.get(facility.population or Level.MEDIUM, 15.0)
    else:
        points += max(0, facility.population_served) * POPULATION_SERVED_WEIGHT

    if facility.urgency_hours > 0:
        points += max(0.0, URGENCY_HORIZON_HOURS - facility.urgency_hours) * URGENCY_WEIGHT

    points *= CONDITION_MULTIPLIERS.get(facility.condition, 1.0)

    if facility.supply is not None:
        points *= SUPPLY_MULTIPLIERS.get(facility.supply, 1.0)

    effort = facility.effort_penalty if facility.effort_penalty > 0 else 1.0
    points *= 1.0 / effort

    points += max(0, facility.cascade_prevention_count) * CASCADE_PREVENTION_WEIGHT

    points *= STATUS_MULTIPLIERS.get(facility.status, 1.0)
    points += STATUS_FLOOR_BOOST.get(facility.status, 0.0)

    points += TYPE_BONUS.get(facility.type, 0.0)
    points += max(0, dependent_count) * DEPENDENT_WEIGHT

    if not _finite(points):
        logger.warning("score_invalid_result", facility_id=facility.id, name=facility.name)
        return 0.0
    return max(0.0, points)


async def score_facility(store: FacilityStore, facility: FacilityRecord) -> float:
    """查询下游依赖数后计分；依赖数查询失败按 0 处理。"""
    try:
        dependent_count = await store.count_dependents(facility.id)
    except Exception as exc:
        logger.error("score_dependent_count_failed", facility_id=facility.id, error=str(exc))
        dependent_count = 0
    return compute_score(facility, dependent_count)


def rank_facilities(facilities: Iterable[FacilityRecord], limit: Optional[int] = None) -> list[FacilityRecord]:
    """按干预分降序排列，分数相同时 id 小者在前。"""
    ranked = sorted(facilities, key=lambda item: (-item.intervention_score, item.id))
    if limit is not None:
        if limit <= 0:
            raise ValueError("limit 必须大于 0")
        ranked = ranked[:limit]
    return ranked
