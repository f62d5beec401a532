from __future__ import annotations

from datetime import datetime
from typing import List, Optional

import structlog
from fastapi import APIRouter, Depends, HTTPException, Query, Request
from pydantic import BaseModel, Field

from facility_triage.db.models import FacilityRecord, UserReportInput
from facility_triage.errors import FacilityNotFoundError
from facility_triage.service import FacilityService, ConnectionView
from facility_triage.sync import SyncOutcome

router = APIRouter(prefix="/facilities", tags=["facilities"])
logger = structlog.get_logger(__name__)


class FacilityResponse(BaseModel):
    id: int = Field(..., description="设施ID")
    name: str = Field(..., description="设施名称")
    type: str = Field(..., description="设施类型")
    lat: float = Field(..., description="纬度")
    lng: float = Field(..., description="经度")
    status: str = Field(..., description="运行状态")
    facility_condition: str = Field(..., description="设施状况")
    supply_amount: Optional[str] = Field(None, description="供给水平")
    population_amount: Optional[str] = Field(None, description="人口水平")
    facility_importance: str = Field(..., description="重要性")
    population_served: int = Field(0, description="服务人口")
    urgency_hours: float = Field(0.0, description="距失效小时数")
    effort_penalty: float = Field(1.0, description="修复难度系数")
    cascade_prevention_count: int = Field(0, description="可避免的级联失效数")
    intervention_score: float = Field(0.0, description="干预优先分")

    @classmethod
    def from_record(cls, record: FacilityRecord) -> "FacilityResponse":
        return cls(
            id=record.id,
            name=record.name,
            type=record.type.value,
            lat=record.lat,
            lng=record.lng,
            status=record.status.value,
            facility_condition=record.condition.value,
            supply_amount=record.supply.value if record.supply else None,
            population_amount=record.population.value if record.population else None,
            facility_importance=record.importance.value,
            population_served=record.population_served,
            urgency_hours=record.urgency_hours,
            effort_penalty=record.effort_penalty,
            cascade_prevention_count=record.cascade_prevention_count,
            intervention_score=round(record.intervention_score, 2),
        )


class ReportRequest(BaseModel):
    facilityCondition: Optional[str] = Field(None, description="上报的设施状况")
    supplyAmount: Optional[str] = Field(None, description="上报的供给水平")
    populationAmount: Optional[str] = Field(None, description="上报的人口水平")
    facilityImportance: Optional[str] = Field(None, description="上报的重要性")
    reportedBy: str = Field("user", min_length=1, description="上报人")


class ReportResponse(BaseModel):
    report_id: int
    applied: bool
    point_adjustment: float
    severity_score: float
    reason: str
    explanation: str
    facilities: List[FacilityResponse]


class FailureResponse(BaseModel):
    failed: FacilityResponse
    at_risk: List[FacilityResponse]
    consistent: bool
    suggestions: List[str]
    facilities: List[FacilityResponse]


class ResolutionResponse(BaseModel):
    resolved: FacilityResponse
    reverted: List[FacilityResponse]
    consistent: bool
    facilities: List[FacilityResponse]


class ConnectivityRequest(BaseModel):
    online: bool = Field(..., description="目标连通状态")


class SyncResponse(BaseModel):
    skipped: bool
    reason: Optional[str] = None
    reports_merged: int = 0
    reports_marked: int = 0
    ingested: int = 0
    synced_at: Optional[datetime] = None

    @classmethod
    def from_outcome(cls, outcome: SyncOutcome) -> "SyncResponse":
        return cls(
            skipped=outcome.skipped,
            reason=outcome.reason,
            reports_merged=outcome.reports_merged,
            reports_marked=outcome.reports_marked,
            ingested=outcome.ingest.total if outcome.ingest else 0,
            synced_at=outcome.synced_at,
        )


class ConnectivityResponse(BaseModel):
    online: bool
    sync: Optional[SyncResponse] = None
    facilities: List[FacilityResponse]


class ConnectionResponse(BaseModel):
    source_id: int
    source_name: str
    target_id: int
    target_name: str
    connection_type: str
    distance_m: float
    color: str

    @classmethod
    def from_view(cls, view: ConnectionView) -> "ConnectionResponse":
        item = view.connection
        return cls(
            source_id=item.source.id,
            source_name=item.source.name,
            target_id=item.target.id,
            target_name=item.target.name,
            connection_type=item.connection_type.value,
            distance_m=round(item.distance_m, 1),
            color=view.color.value,
        )


class RebuildResponse(BaseModel):
    edges: int


class LedgerStatsResponse(BaseModel):
    facility_count: int
    total_adjustment: float
    average_adjustment: float


def _require_service(request: Request) -> FacilityService:
    service = getattr(request.app.state, "facility_service", None)
    if service is None:
        raise HTTPException(status_code=503, detail="设施分诊服务未初始化")
    return service


def _facilities(records: List[FacilityRecord]) -> List[FacilityResponse]:
    return [FacilityResponse.from_record(item) for item in records]


@router.get("", response_model=List[FacilityResponse])
async def list_facilities(service: FacilityService = Depends(_require_service)) -> List[FacilityResponse]:
    return _facilities(await service.load_facilities())


@router.get("/top", response_model=List[FacilityResponse])
async def top_facilities(
    limit: int = Query(10, ge=1, le=100),
    service: FacilityService = Depends(_require_service),
) -> List[FacilityResponse]:
    return _facilities(await service.top_facilities(limit))


@router.get("/connections", response_model=List[ConnectionResponse])
async def list_connections(service: FacilityService = Depends(_require_service)) -> List[ConnectionResponse]:
    return [ConnectionResponse.from_view(view) for view in await service.connections()]


@router.post("/connections/rebuild", response_model=RebuildResponse)
async def rebuild_connections(service: FacilityService = Depends(_require_service)) -> RebuildResponse:
    edges = await service.rebuild_connections()
    return RebuildResponse(edges=len(edges))


@router.post("/connectivity", response_model=ConnectivityResponse)
async def set_connectivity(
    payload: ConnectivityRequest,
    service: FacilityService = Depends(_require_service),
) -> ConnectivityResponse:
    outcome = await service.set_connectivity(payload.online)
    return ConnectivityResponse(
        online=outcome.online,
        sync=SyncResponse.from_outcome(outcome.sync) if outcome.sync else None,
        facilities=_facilities(outcome.facilities),
    )


@router.post("/failures/clear", response_model=List[FacilityResponse])
async def clear_failures(service: FacilityService = Depends(_require_service)) -> List[FacilityResponse]:
    return _facilities(await service.clear_all_failures())


@router.get("/ledger", response_model=LedgerStatsResponse)
async def ledger_stats(service: FacilityService = Depends(_require_service)) -> LedgerStatsResponse:
    stats = service.ledger_stats()
    return LedgerStatsResponse(
        facility_count=stats.facility_count,
        total_adjustment=stats.total_adjustment,
        average_adjustment=stats.average_adjustment,
    )


@router.post("/{facility_id}/reports", response_model=ReportResponse)
async def report_problem(
    facility_id: int,
    payload: ReportRequest,
    service: FacilityService = Depends(_require_service),
) -> ReportResponse:
    report = UserReportInput.from_mapping(facility_id, payload.model_dump())
    try:
        outcome = await service.report_problem(facility_id, report)
    except FacilityNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc))
    return ReportResponse(
        report_id=outcome.report_id,
        applied=outcome.validation.should_apply,
        point_adjustment=outcome.validation.point_adjustment,
        severity_score=outcome.validation.severity_score,
        reason=outcome.validation.reason,
        explanation=outcome.explanation,
        facilities=_facilities(outcome.facilities),
    )


@router.post("/{facility_id}/failure", response_model=FailureResponse)
async def simulate_failure(
    facility_id: int,
    service: FacilityService = Depends(_require_service),
) -> FailureResponse:
    try:
        outcome = await service.simulate_failure(facility_id)
    except FacilityNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc))
    if not outcome.result.consistent:
        logger.warning("api_failure_inconsistent", facility_id=facility_id)
    return FailureResponse(
        failed=FacilityResponse.from_record(outcome.result.failed),
        at_risk=_facilities(outcome.result.at_risk),
        consistent=outcome.result.consistent,
        suggestions=outcome.suggestions,
        facilities=_facilities(outcome.facilities),
    )


@router.post("/{facility_id}/resolve", response_model=ResolutionResponse)
async def resolve_failure(
    facility_id: int,
    service: FacilityService = Depends(_require_service),
) -> ResolutionResponse:
    try:
        outcome = await service.resolve_failure(facility_id)
    except FacilityNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc))
    return ResolutionResponse(
        resolved=FacilityResponse.from_record(outcome.result.resolved),
        reverted=_facilities(outcome.result.reverted),
        consistent=outcome.result.consistent,
        facilities=_facilities(outcome.facilities),
    )


@router.get("/{facility_id}/suggestions", response_model=List[str])
async def failure_suggestions(
    facility_id: int,
    service: FacilityService = Depends(_require_service),
) -> List[str]:
    try:
        return await service.failure_suggestions(facility_id)
    except FacilityNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc))
