"""
公共设施数据接入（模拟）

真实外部 API 不在范围内；``PublicFacilityFeed`` 返回一份静态的苏丹设施数据，
``ingest_facilities`` 负责字段规整、按坐标与类型插入或更新、逐条重新计分。
"""

from __future__ import annotations

import asyncio
import math
from dataclasses import dataclass, replace
from typing import Any, Mapping, Optional, Sequence

import structlog

from facility_triage.db.models import (
    Condition,
    FacilityRecord,
    FacilityStatus,
    FacilityType,
    Importance,
    Level,
    coerce_enum,
    coerce_float,
    coerce_int,
)
from facility_triage.db.store import FacilityStore
from facility_triage.scoring import score_facility

logger = structlog.get_logger(__name__)


def _facility(
    name: str,
    type_: str,
    lat: float,
    lng: float,
    *,
    importance: str,
    condition: str,
    urgency_hours: float,
    effort_penalty: float,
    cascade_prevention_count: int,
    supply: Optional[str] = None,
    population: Optional[str] = None,
    population_served: int = 0,
) -> dict[str, Any]:
    return {
        "name": name,
        "type": type_,
        "location_lat": lat,
        "location_lng": lng,
        "status": "operational",
        "facility_importance": importance,
        "facility_condition": condition,
        "supply_amount": supply,
        "population_amount": population,
        "population_served": population_served,
        "urgency_hours": urgency_hours,
        "effort_penalty": effort_penalty,
        "cascade_prevention_count": cascade_prevention_count,
    }


SIMULATED_FACILITIES: tuple[dict[str, Any], ...] = (
    _facility("Khartoum Central Emergency Shelter", "shelter", 15.5007, 32.5599, importance="very_important",
              condition="poor", population="very_high", urgency_hours=12, effort_penalty=1.2,
              cascade_prevention_count=3),
    _facility("Port Sudan Refugee Camp", "shelter", 19.6158, 37.2164, importance="very_important",
              condition="bad", population="very_high", urgency_hours=0, effort_penalty=1.5,
              cascade_prevention_count=5),
    _facility("Khartoum Main Water Treatment Plant", "water", 15.55, 32.60, importance="very_important",
              condition="poor", supply="very_low", population_served=50000, urgency_hours=18,
              effort_penalty=1.3, cascade_prevention_count=8),
    _facility("Omdurman Water Distribution Center", "water", 15.65, 32.48, importance="important",
              condition="fair", supply="low", population_served=30000, urgency_hours=36,
              effort_penalty=1.1, cascade_prevention_count=4),
    _facility("Khartoum North Well Station", "water", 15.60, 32.55, importance="moderate",
              condition="good", supply="medium", population_served=15000, urgency_hours=72,
              effort_penalty=1.0, cascade_prevention_count=2),
    _facility("Khartoum Power Station Alpha", "power", 15.52, 32.58, importance="very_important",
              condition="bad", supply="very_low", population_served=75000, urgency_hours=0,
              effort_penalty=2.0, cascade_prevention_count=12),
    _facility("Omdurman Substation", "power", 15.64, 32.47, importance="important",
              condition="poor", supply="low", population_served=40000, urgency_hours=24,
              effort_penalty=1.4, cascade_prevention_count=6),
    _facility("Bahri Power Distribution Hub", "power", 15.63, 32.62, importance="moderate",
              condition="good", supply="high", population_served=25000, urgency_hours=96,
              effort_penalty=1.0, cascade_prevention_count=3),
    _facility("Khartoum Central Food Distribution", "food", 15.51, 32.57, importance="important",
              condition="fair", supply="low", population_served=20000, urgency_hours=48,
              effort_penalty=1.2, cascade_prevention_count=2),
    _facility("Omdurman Food Warehouse", "food", 15.66, 32.49, importance="moderate",
              condition="good", supply="medium", population_served=12000, urgency_hours=120,
              effort_penalty=1.0, cascade_prevention_count=1),
    _facility("Bahri Temporary Shelter", "shelter", 15.62, 32.61, importance="important",
              condition="fair", population="high", urgency_hours=30, effort_penalty=1.1,
              cascade_prevention_count=1),
    _facility("Khartoum South Emergency Camp", "shelter", 15.48, 32.54, importance="moderate",
              condition="good", population="medium", urgency_hours=84, effort_penalty=1.0,
              cascade_prevention_count=0),
    _facility("Khartoum South Well", "water", 15.47, 32.53, importance="moderate",
              condition="excellent", supply="very_high", population_served=8000, urgency_hours=200,
              effort_penalty=0.8, cascade_prevention_count=1),
    _facility("Khartoum South Substation", "power", 15.49, 32.55, importance="not_important",
              condition="excellent", supply="very_high", population_served=5000, urgency_hours=300,
              effort_penalty=0.9, cascade_prevention_count=0),
    _facility("Khartoum North Food Market", "food", 15.58, 32.56, importance="not_important",
              condition="good", supply="high", population_served=6000, urgency_hours=180,
              effort_penalty=1.0, cascade_prevention_count=0),
    _facility("Khartoum Teaching Hospital", "hospital", 15.5007, 32.5599, importance="very_important",
              condition="poor", population="very_high", urgency_hours=8, effort_penalty=1.3,
              cascade_prevention_count=4),
    _facility("Port Sudan General Hospital", "hospital", 19.6158, 37.2164, importance="very_important",
              condition="bad", population="very_high", urgency_hours=0, effort_penalty=1.6,
              cascade_prevention_count=6),
    _facility("Nyala Regional Medical Center", "hospital", 12.05, 24.88, importance="very_important",
              condition="fair", population="high", urgency_hours=24, effort_penalty=1.2,
              cascade_prevention_count=3),
    _facility("El Obeid Central Hospital", "hospital", 13.1833, 30.2167, importance="important",
              condition="good", population="medium", urgency_hours=72, effort_penalty=1.0,
              cascade_prevention_count=2),
    _facility("Kassala Emergency Hospital", "hospital", 15.45, 36.40, importance="very_important",
              condition="poor", population="high", urgency_hours=18, effort_penalty=1.4,
              cascade_prevention_count=4),
)


@dataclass(slots=True, frozen=True)
class IngestResult:
    inserted: int = 0
    updated: int = 0
    skipped: int = 0

    @property
    def total(self) -> int:
        return self.inserted + self.updated


def normalize_facility(raw: Mapping[str, Any]) -> Optional[FacilityRecord]:
    """把外部数据规整为设施记录；类型未知或缺坐标时返回 None。

    接入数据从不带入 failed 状态，失效只能由管理员模拟产生。
    """
    try:
        facility_type = FacilityType(str(raw.get("type") or "").strip().lower())
    except ValueError:
        logger.warning("ingest_unknown_type", name=raw.get("name"), type=raw.get("type"))
        return None

    lat = coerce_float(raw.get("location_lat", raw.get("lat")), float("nan"))
    lng = coerce_float(raw.get("location_lng", raw.get("lng")), float("nan"))
    if math.isnan(lat) or math.isnan(lng):
        logger.warning("ingest_missing_coordinates", name=raw.get("name"))
        return None

    status = coerce_enum(FacilityStatus, raw.get("status"), FacilityStatus.OPERATIONAL)
    if status is FacilityStatus.FAILED:
        status = FacilityStatus.OPERATIONAL

    forecast = raw.get("water_level_forecast")
    return FacilityRecord(
        id=0,
        name=str(raw.get("name") or "").strip() or f"Unnamed {facility_type.value}",
        type=facility_type,
        lat=lat,
        lng=lng,
        status=status,
        condition=coerce_enum(Condition, raw.get("facility_condition"), Condition.FAIR),
        supply=coerce_enum(Level, raw.get("supply_amount"), None),
        population=coerce_enum(Level, raw.get("population_amount"), None),
        importance=coerce_enum(Importance, raw.get("facility_importance"), Importance.MODERATE),
        population_served=coerce_int(raw.get("population_served")),
        urgency_hours=coerce_float(raw.get("urgency_hours"), 0.0, minimum=0.0),
        effort_penalty=coerce_float(raw.get("effort_penalty"), 1.0, minimum=0.0, exclusive=True),
        cascade_prevention_count=coerce_int(raw.get("cascade_prevention_count")),
        water_level_forecast=None if forecast is None else coerce_float(forecast, 0.0),
        power_outage_detected=False,
    )


class PublicFacilityFeed:
    """模拟的公共设施数据源。"""

    def __init__(
        self,
        records: Sequence[Mapping[str, Any]] = SIMULATED_FACILITIES,
        *,
        delay_seconds: float = 0.1,
    ) -> None:
        if delay_seconds < 0:
            raise ValueError("delay_seconds 不能为负数")
        self._records = [dict(item) for item in records]
        self._delay = delay_seconds

    async def fetch(
        self,
        facility_type: Optional[FacilityType] = None,
        status: Optional[FacilityStatus] = None,
    ) -> list[dict[str, Any]]:
        await asyncio.sleep(self._delay)
        items = self._records
        if facility_type is not None:
            items = [item for item in items if item.get("type") == facility_type.value]
        if status is not None:
            items = [item for item in items if item.get("status") == status.value]
        return [dict(item) for item in items]


async def _upsert(store: FacilityStore, record: FacilityRecord) -> bool:
    """按坐标与类型插入或更新，返回是否为新插入。"""
    existing = await store.find_facility_at(record.lat, record.lng, facility_type=record.type)
    if existing is None:
        facility_id = await store.insert_facility(record)
        inserted = True
    else:
        facility_id = existing.id
        await store.update_facility(replace(record, id=facility_id, intervention_score=existing.intervention_score))
        inserted = False
    stored = await store.get_facility(facility_id)
    if stored is not None:
        await store.update_score(facility_id, await score_facility(store, stored))
    return inserted


async def ingest_facilities(store: FacilityStore, feed: PublicFacilityFeed) -> IngestResult:
    raw_items = await feed.fetch()
    inserted = updated = skipped = 0
    for raw in raw_items:
        record = normalize_facility(raw)
        if record is None:
            skipped += 1
            continue
        if await _upsert(store, record):
            inserted += 1
        else:
            updated += 1
    await store.stamp_synced("facilities")
    result = IngestResult(inserted=inserted, updated=updated, skipped=skipped)
    logger.info(
        "ingest_completed",
        store=store.role.value,
        inserted=inserted,
        updated=updated,
        skipped=skipped,
    )
    return result


async def seed_sample_data(
    store: FacilityStore,
    records: Sequence[Mapping[str, Any]] = SIMULATED_FACILITIES,
) -> int:
    """仅在存储为空时写入示例设施，返回写入数量。"""
    if await store.count_facilities() > 0:
        logger.info("seed_sample_data_skipped", store=store.role.value)
        return 0
    count = 0
    for raw in records:
        record = normalize_facility(raw)
        if record is None:
            continue
        facility_id = await store.insert_facility(record)
        await store.update_score(facility_id, await score_facility(store, replace(record, id=facility_id)))
        count += 1
    logger.info("seed_sample_data_inserted", store=store.role.value, count=count)
    return count
