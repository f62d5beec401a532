# Copyright 2025 msq
"""
设施连接关系（依赖边）构建

规则：医院、收容点、食物点各需要一条供电与一条供水连接，
电力与供水设施本身是源头，不需要连接。每项需求连接到
最大距离内最近的对应类型设施，距离相同保留先出现者。
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Iterable, Optional, Sequence

import structlog

from facility_triage.db.models import (
    Connection,
    ConnectionEndpoint,
    DependencyRecord,
    DependencyType,
    FacilityRecord,
    FacilityStatus,
    FacilityType,
)
from facility_triage.db.store import FacilityStore
from facility_triage.geo.distance import facility_distance

logger = structlog.get_logger(__name__)

DEFAULT_MAX_DISTANCE_M = 200_000.0

_REQUIRED: dict[FacilityType, tuple[FacilityType, ...]] = {
    FacilityType.HOSPITAL: (FacilityType.POWER, FacilityType.WATER),
    FacilityType.SHELTER: (FacilityType.POWER, FacilityType.WATER),
    FacilityType.FOOD: (FacilityType.POWER, FacilityType.WATER),
    FacilityType.POWER: (),
    FacilityType.WATER: (),
}

_DEPENDENCY_FOR: dict[FacilityType, DependencyType] = {
    FacilityType.POWER: DependencyType.POWER,
    FacilityType.WATER: DependencyType.WATER,
}


class ConnectionColor(str, Enum):
    RED = "red"
    YELLOW = "yellow"
    GREEN = "green"


@dataclass(slots=True, frozen=True)
class PlannedEdge:
    dependent_id: int
    provider_id: int
    dependency_type: DependencyType
    distance_m: float

    def to_record(self) -> DependencyRecord:
        return DependencyRecord(
            dependent_id=self.dependent_id,
            provider_id=self.provider_id,
            dependency_type=self.dependency_type,
        )


def required_connections(facility_type: FacilityType) -> tuple[FacilityType, ...]:
    return _REQUIRED.get(facility_type, ())


def find_nearest_of_type(
    facility: FacilityRecord,
    facilities: Sequence[FacilityRecord],
    required_type: FacilityType,
    max_distance_m: Optional[float] = DEFAULT_MAX_DISTANCE_M,
) -> Optional[tuple[FacilityRecord, float]]:
    nearest: Optional[tuple[FacilityRecord, float]] = None
    for candidate in facilities:
        if candidate.type is not required_type or candidate.id == facility.id:
            continue
        distance = facility_distance(facility, candidate)
        if max_distance_m is not None and distance > max_distance_m:
            continue
        # 严格小于：距离相同保留先出现者
        if nearest is None or distance < nearest[1]:
            nearest = (candidate, distance)
    return nearest


def build_connections(
    facilities: Sequence[FacilityRecord],
    max_distance_m: float = DEFAULT_MAX_DISTANCE_M,
) -> list[PlannedEdge]:
    """纯计算：生成去重后的依赖边，正反方向只保留一条。"""
    edges: list[PlannedEdge] = []
    seen: set[tuple[int, int]] = set()
    for facility in facilities:
        for required_type in required_connections(facility.type):
            nearest = find_nearest_of_type(facility, facilities, required_type, max_distance_m)
            if nearest is None:
                logger.debug(
                    "connection_provider_missing",
                    facility_id=facility.id,
                    required_type=required_type.value,
                    max_distance_m=max_distance_m,
                )
                continue
            provider, distance = nearest
            key = (facility.id, provider.id)
            if key in seen or (provider.id, facility.id) in seen:
                continue
            seen.add(key)
            edges.append(
                PlannedEdge(
                    dependent_id=facility.id,
                    provider_id=provider.id,
                    dependency_type=_DEPENDENCY_FOR[required_type],
                    distance_m=distance,
                )
            )
    return edges


async def rebuild_connections(
    store: FacilityStore,
    facilities: Sequence[FacilityRecord],
    *,
    max_distance_m: float = DEFAULT_MAX_DISTANCE_M,
) -> list[PlannedEdge]:
    """先清空全部依赖边，再按当前设施集合重新写入。"""
    removed = await store.delete_dependencies()
    planned = build_connections(facilities, max_distance_m)
    stored: list[PlannedEdge] = []
    for edge in planned:
        try:
            await store.insert_dependency(edge.to_record())
        except Exception as exc:
            logger.warning(
                "connection_store_failed",
                dependent_id=edge.dependent_id,
                provider_id=edge.provider_id,
                error=str(exc),
            )
            continue
        stored.append(edge)
    logger.info(
        "connections_rebuilt",
        store=store.role.value,
        removed=removed,
        planned=len(planned),
        stored=len(stored),
    )
    return stored


async def resolve_connections(store: FacilityStore) -> list[Connection]:
    """依赖边关联两端设施；端点缺失或坐标无效的边被丢弃。"""
    dependencies = await store.list_dependencies()
    if not dependencies:
        return []
    facilities = {facility.id: facility for facility in await store.list_facilities(order_by_score=False)}
    connections: list[Connection] = []
    for edge in dependencies:
        source = facilities.get(edge.dependent_id)
        target = facilities.get(edge.provider_id)
        if source is None or target is None:
            continue
        if not (source.has_coordinates and target.has_coordinates):
            continue
        connections.append(
            Connection(
                id=edge.id,
                source=ConnectionEndpoint.from_facility(source),
                target=ConnectionEndpoint.from_facility(target),
                connection_type=edge.dependency_type,
                distance_m=facility_distance(source, target),
            )
        )
    logger.info("connections_resolved", total=len(dependencies), valid=len(connections))
    return connections


def connection_color(connection: Connection, top_priority: Iterable[FacilityRecord]) -> ConnectionColor:
    """任一端失效为红色；任一端位于优先级前三为黄色；其余为绿色。"""
    top_ids = {facility.id for facility in list(top_priority)[:3]}
    if FacilityStatus.FAILED in (connection.source.status, connection.target.status):
        return ConnectionColor.RED
    if connection.source.id in top_ids or connection.target.id in top_ids:
        return ConnectionColor.YELLOW
    return ConnectionColor.GREEN
