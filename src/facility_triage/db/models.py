from __future__ import annotations

import math
from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Any, Mapping, Optional, TypeVar

import structlog

logger = structlog.get_logger(__name__)


class FacilityType(str, Enum):
    WATER = "water"
    POWER = "power"
    SHELTER = "shelter"
    FOOD = "food"
    HOSPITAL = "hospital"


class FacilityStatus(str, Enum):
    OPERATIONAL = "operational"
    AT_RISK = "at_risk"
    FAILED = "failed"


class Condition(str, Enum):
    EXCELLENT = "excellent"
    GOOD = "good"
    FAIR = "fair"
    POOR = "poor"
    BAD = "bad"


class Level(str, Enum):
    """供给量与人口量共用的五级序数。"""

    VERY_HIGH = "very_high"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"
    VERY_LOW = "very_low"


class Importance(str, Enum):
    VERY_IMPORTANT = "very_important"
    IMPORTANT = "important"
    MODERATE = "moderate"
    NOT_IMPORTANT = "not_important"


class DependencyType(str, Enum):
    POWER = "power"
    WATER = "water"
    CRITICAL = "critical"


class StoreRole(str, Enum):
    ONLINE = "online"
    OFFLINE = "offline"


# 人口量只对收容点与医院有意义
POPULATION_TYPES = frozenset({FacilityType.SHELTER, FacilityType.HOSPITAL})

_E = TypeVar("_E", bound=Enum)


def coerce_enum(enum_cls: type[_E], value: Any, default: Optional[_E]) -> Optional[_E]:
    """把任意输入规整为枚举值，未知值回退到默认值并记录告警。"""
    if value is None:
        return default
    if isinstance(value, enum_cls):
        return value
    text = str(value).strip().lower()
    if not text:
        return default
    try:
        return enum_cls(text)
    except ValueError:
        logger.warning("enum_value_coerced", enum=enum_cls.__name__, raw=str(value), fallback=getattr(default, "value", None))
        return default


def coerce_float(value: Any, default: float, *, minimum: Optional[float] = None, exclusive: bool = False) -> float:
    """数值规整：非数字、NaN、越界统一回退默认值。"""
    if value is None or isinstance(value, bool):
        return default
    try:
        number = float(value)
    except (TypeError, ValueError):
        return default
    if math.isnan(number) or math.isinf(number):
        return default
    if minimum is not None:
        if exclusive and number <= minimum:
            return default
        if not exclusive and number < minimum:
            return default
    return number


def coerce_int(value: Any, default: int = 0) -> int:
    number = coerce_float(value, float(default), minimum=0.0)
    return int(number)


@dataclass(slots=True)
class FacilityRecord:
    """受追踪的基础设施。"""

    id: int
    name: str
    type: FacilityType
    lat: float
    lng: float
    status: FacilityStatus = FacilityStatus.OPERATIONAL
    condition: Condition = Condition.FAIR
    supply: Optional[Level] = None
    population: Optional[Level] = None
    importance: Importance = Importance.MODERATE
    population_served: int = 0
    urgency_hours: float = 0.0
    effort_penalty: float = 1.0
    cascade_prevention_count: int = 0
    intervention_score: float = 0.0
    water_level_forecast: Optional[float] = None
    power_outage_detected: bool = False

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "FacilityRecord":
        """由数据库行构造记录，所有枚举与数值都做安全回退。

        未知设施类型无法回退（没有中性类型），直接抛出 ValueError。
        """
        facility_type = FacilityType(str(row["type"]).strip().lower())
        forecast = row.get("water_level_forecast")
        return cls(
            id=int(row["id"]),
            name=str(row.get("name") or ""),
            type=facility_type,
            lat=coerce_float(row.get("lat"), 0.0),
            lng=coerce_float(row.get("lng"), 0.0),
            status=coerce_enum(FacilityStatus, row.get("status"), FacilityStatus.OPERATIONAL),
            condition=coerce_enum(Condition, row.get("facility_condition"), Condition.FAIR),
            supply=coerce_enum(Level, row.get("supply_level"), None),
            population=coerce_enum(Level, row.get("population_level"), None),
            importance=coerce_enum(Importance, row.get("importance"), Importance.MODERATE),
            population_served=coerce_int(row.get("population_served")),
            urgency_hours=coerce_float(row.get("urgency_hours"), 0.0, minimum=0.0),
            effort_penalty=coerce_float(row.get("effort_penalty"), 1.0, minimum=0.0, exclusive=True),
            cascade_prevention_count=coerce_int(row.get("cascade_prevention_count")),
            intervention_score=coerce_float(row.get("intervention_score"), 0.0, minimum=0.0),
            water_level_forecast=None if forecast is None else coerce_float(forecast, 0.0),
            power_outage_detected=bool(row.get("power_outage_detected") or False),
        )

    def to_row(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "type": self.type.value,
            "lat": self.lat,
            "lng": self.lng,
            "status": self.status.value,
            "facility_condition": self.condition.value,
            "supply_level": self.supply.value if self.supply else None,
            "population_level": self.population.value if self.population else None,
            "importance": self.importance.value,
            "population_served": self.population_served,
            "urgency_hours": self.urgency_hours,
            "effort_penalty": self.effort_penalty,
            "cascade_prevention_count": self.cascade_prevention_count,
            "intervention_score": self.intervention_score,
            "water_level_forecast": self.water_level_forecast,
            "power_outage_detected": self.power_outage_detected,
        }

    def with_status(self, status: FacilityStatus) -> "FacilityRecord":
        return replace(self, status=status)

    def with_score(self, score: float) -> "FacilityRecord":
        return replace(self, intervention_score=score)

    @property
    def has_coordinates(self) -> bool:
        return not (math.isnan(self.lat) or math.isnan(self.lng)) and (self.lat != 0.0 or self.lng != 0.0)


@dataclass(slots=True)
class DependencyRecord:
    """依赖边：dependent 依赖 provider 提供的电/水。"""

    dependent_id: int
    provider_id: int
    dependency_type: DependencyType
    id: Optional[int] = None

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "DependencyRecord":
        return cls(
            id=int(row["id"]) if row.get("id") is not None else None,
            dependent_id=int(row["dependent_id"]),
            provider_id=int(row["provider_id"]),
            dependency_type=coerce_enum(DependencyType, row.get("dependency_type"), DependencyType.CRITICAL),
        )


@dataclass(slots=True)
class ConnectionEndpoint:
    id: int
    name: str
    type: FacilityType
    lat: float
    lng: float
    status: FacilityStatus
    score: float

    @classmethod
    def from_facility(cls, facility: FacilityRecord) -> "ConnectionEndpoint":
        return cls(
            id=facility.id,
            name=facility.name,
            type=facility.type,
            lat=facility.lat,
            lng=facility.lng,
            status=facility.status,
            score=facility.intervention_score,
        )


@dataclass(slots=True)
class Connection:
    """已解析两端设施信息的依赖边，供地图连线展示。"""

    source: ConnectionEndpoint
    target: ConnectionEndpoint
    connection_type: DependencyType
    distance_m: float
    id: Optional[int] = None


@dataclass(slots=True)
class UserReportInput:
    """用户提交的设施状况上报。"""

    facility_id: int
    condition: Optional[Condition] = None
    supply: Optional[Level] = None
    population: Optional[Level] = None
    importance: Optional[Importance] = None
    reported_by: str = "user"

    @classmethod
    def from_mapping(cls, facility_id: int, data: Mapping[str, Any]) -> "UserReportInput":
        """兼容前端 camelCase 与数据库 snake_case 两种字段名。"""

        def pick(*keys: str) -> Any:
            for key in keys:
                if key in data and data[key] not in (None, ""):
                    return data[key]
            return None

        return cls(
            facility_id=facility_id,
            condition=coerce_enum(Condition, pick("facilityCondition", "facility_condition", "condition"), None),
            supply=coerce_enum(Level, pick("supplyAmount", "supply_amount", "supply_level", "supply"), None),
            population=coerce_enum(
                Level, pick("populationAmount", "population_amount", "population_level", "population"), None
            ),
            importance=coerce_enum(Importance, pick("facilityImportance", "facility_importance", "importance"), None),
            reported_by=str(pick("reportedBy", "reported_by") or "user"),
        )


@dataclass(slots=True)
class UserReportRecord:
    id: int
    facility_id: int
    condition: Optional[Condition]
    supply: Optional[Level]
    population: Optional[Level]
    importance: Optional[Importance]
    reported_by: str
    synced: bool
    reported_at: Optional[datetime] = None

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "UserReportRecord":
        return cls(
            id=int(row["id"]),
            facility_id=int(row["facility_id"]),
            condition=coerce_enum(Condition, row.get("facility_condition"), None),
            supply=coerce_enum(Level, row.get("supply_level"), None),
            population=coerce_enum(Level, row.get("population_level"), None),
            importance=coerce_enum(Importance, row.get("importance"), None),
            reported_by=str(row.get("reported_by") or "user"),
            synced=bool(row.get("synced")),
            reported_at=row.get("reported_at"),
        )


@dataclass(slots=True)
class SyncStatusRecord:
    table_name: str
    last_synced_at: Optional[datetime]
    pending_changes: int = 0


@dataclass(slots=True)
class StoreSnapshot:
    """一个存储的完整内容，用于在线/离线库之间整体复制。"""

    facilities: list[FacilityRecord] = field(default_factory=list)
    dependencies: list[DependencyRecord] = field(default_factory=list)
    reports: list[UserReportRecord] = field(default_factory=list)
