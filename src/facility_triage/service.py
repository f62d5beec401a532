from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Mapping, Optional, Sequence, Union

import structlog

from facility_triage.cascade import (
    CascadeSimulator,
    FailureResult,
    ResolutionResult,
    failure_suggestions,
)
from facility_triage.config import AppConfig
from facility_triage.connections import (
    DEFAULT_MAX_DISTANCE_M,
    ConnectionColor,
    PlannedEdge,
    connection_color,
    rebuild_connections,
    resolve_connections,
)
from facility_triage.db.models import Connection, FacilityRecord, UserReportInput
from facility_triage.db.store import FacilityStore, StorePair
from facility_triage.errors import FacilityNotFoundError
from facility_triage.ingest import PublicFacilityFeed
from facility_triage.ledger import AdjustmentLedger, LedgerStats
from facility_triage.scoring import rank_facilities, score_facility
from facility_triage.sync import SyncManager, SyncOutcome
from facility_triage.validation import (
    DEFAULT_ADJUSTMENT_CAP,
    DEFAULT_SEVERITY_THRESHOLD,
    ReportValidation,
    explain_validation,
    validate_report,
)

logger = structlog.get_logger(__name__)

# 分数漂移超过该值才回写，避免每次加载都写库
SCORE_DRIFT_TOLERANCE = 0.1


@dataclass(slots=True)
class ReportOutcome:
    report_id: int
    validation: ReportValidation
    explanation: str
    facilities: list[FacilityRecord] = field(default_factory=list)


@dataclass(slots=True)
class FailureOutcome:
    result: FailureResult
    suggestions: list[str]
    facilities: list[FacilityRecord] = field(default_factory=list)


@dataclass(slots=True)
class ResolutionOutcome:
    result: ResolutionResult
    facilities: list[FacilityRecord] = field(default_factory=list)


@dataclass(slots=True)
class ConnectivityOutcome:
    online: bool
    sync: Optional[SyncOutcome]
    facilities: list[FacilityRecord] = field(default_factory=list)


@dataclass(slots=True)
class ConnectionView:
    connection: Connection
    color: ConnectionColor


class FacilityService:
    """设施分诊服务入口：加载、上报、失效模拟与解除、连接重建、连通性切换。

    调整分账本与级联状态都归本实例所有；管理员操作在同步锁内针对在线库执行。
    """

    def __init__(
        self,
        sync: SyncManager,
        *,
        ledger: Optional[AdjustmentLedger] = None,
        radius_m: float = 50_000.0,
        verify_attempts: int = 5,
        verify_delay: float = 0.2,
        at_risk_delay: float = 0.1,
        connection_max_m: float = DEFAULT_MAX_DISTANCE_M,
        severity_threshold: float = DEFAULT_SEVERITY_THRESHOLD,
        adjustment_cap: float = DEFAULT_ADJUSTMENT_CAP,
    ) -> None:
        if connection_max_m <= 0:
            raise ValueError("connection_max_m 必须大于 0")
        self._sync = sync
        self._ledger = ledger or AdjustmentLedger()
        self._simulator = CascadeSimulator(
            sync.admin_store,
            radius_m=radius_m,
            verify_attempts=verify_attempts,
            verify_delay=verify_delay,
            at_risk_delay=at_risk_delay,
        )
        self._connection_max_m = connection_max_m
        self._severity_threshold = severity_threshold
        self._adjustment_cap = adjustment_cap

    @classmethod
    def from_config(
        cls,
        cfg: AppConfig,
        stores: StorePair,
        *,
        feed: Optional[PublicFacilityFeed] = None,
    ) -> "FacilityService":
        sync = SyncManager(stores, online=cfg.start_online, feed=feed)
        return cls(
            sync,
            radius_m=cfg.cascade_radius_m,
            verify_attempts=cfg.status_verify_attempts,
            verify_delay=cfg.status_verify_delay_seconds,
            at_risk_delay=cfg.at_risk_verify_delay_seconds,
            connection_max_m=cfg.connection_max_m,
            severity_threshold=cfg.report_severity_threshold,
            adjustment_cap=cfg.report_adjustment_cap,
        )

    @property
    def sync(self) -> SyncManager:
        return self._sync

    @property
    def ledger(self) -> AdjustmentLedger:
        return self._ledger

    @property
    def simulator(self) -> CascadeSimulator:
        return self._simulator

    async def start(self) -> None:
        """服务启动：清空调整分账本，从在线库恢复失效/风险集合。"""
        cleared = self._ledger.clear_all()
        failed, at_risk = await self._simulator.load_from_store()
        logger.info("facility_service_started", ledger_cleared=cleared, failed=failed, at_risk=at_risk)

    async def _score_with_adjustment(self, store: FacilityStore, facility: FacilityRecord) -> float:
        return await score_facility(store, facility) + self._ledger.get(facility.id)

    async def _refresh_scores(self, store: FacilityStore, facilities: Sequence[FacilityRecord]) -> list[FacilityRecord]:
        refreshed: list[FacilityRecord] = []
        persisted = 0
        for facility in facilities:
            score = await self._score_with_adjustment(store, facility)
            if abs(score - facility.intervention_score) > SCORE_DRIFT_TOLERANCE:
                await store.update_score(facility.id, score)
                persisted += 1
            refreshed.append(facility.with_score(score))
        logger.debug("facility_scores_refreshed", store=store.role.value, total=len(refreshed), persisted=persisted)
        return refreshed

    async def load_facilities(self) -> list[FacilityRecord]:
        """读取当前连通性对应的存储，重建连接后重新计分，按分数降序返回。"""
        async with self._sync.store_writes() as store:
            facilities = await store.list_facilities(order_by_score=False)
            await rebuild_connections(store, facilities, max_distance_m=self._connection_max_m)
            refreshed = await self._refresh_scores(store, facilities)
        logger.info("facilities_loaded", store=store.role.value, count=len(refreshed))
        return rank_facilities(refreshed)

    async def report_problem(
        self,
        facility_id: int,
        data: Union[Mapping[str, Any], UserReportInput],
    ) -> ReportOutcome:
        """保存用户上报；校验通过时把加分记入账本并更新该设施分数。"""
        if isinstance(data, UserReportInput):
            report = data
        else:
            report = UserReportInput.from_mapping(facility_id, data)

        async with self._sync.store_writes() as store:
            facility = await store.get_facility(facility_id)
            if facility is None:
                raise FacilityNotFoundError(facility_id)
            report_id = await store.insert_report(report, synced=False)

            validation = validate_report(
                report,
                facility,
                threshold=self._severity_threshold,
                cap=self._adjustment_cap,
            )
            if validation.should_apply and self._ledger.add(facility_id, validation.point_adjustment, report):
                await store.update_score(facility_id, await self._score_with_adjustment(store, facility))

        logger.info(
            "facility_problem_reported",
            facility_id=facility_id,
            report_id=report_id,
            store=store.role.value,
            applied=validation.should_apply,
            adjustment=validation.point_adjustment,
        )
        return ReportOutcome(
            report_id=report_id,
            validation=validation,
            explanation=explain_validation(validation),
            facilities=await self.load_facilities(),
        )

    async def _apply_ledger(self, store: FacilityStore, records: Sequence[FacilityRecord]) -> None:
        for record in records:
            adjustment = self._ledger.get(record.id)
            if adjustment > 0:
                await store.update_score(record.id, record.intervention_score + adjustment)

    async def simulate_failure(self, facility_id: int) -> FailureOutcome:
        async with self._sync.admin_operation("simulate_failure") as store:
            facilities = await store.list_facilities(order_by_score=False)
            result = await self._simulator.simulate_failure(facility_id, facilities)
            await self._apply_ledger(store, [result.failed, *result.at_risk])
        return FailureOutcome(
            result=result,
            suggestions=failure_suggestions(result.failed),
            facilities=await self.load_facilities(),
        )

    async def resolve_failure(self, facility_id: int) -> ResolutionOutcome:
        async with self._sync.admin_operation("resolve_failure") as store:
            facilities = await store.list_facilities(order_by_score=False)
            result = await self._simulator.resolve_failure(facility_id, facilities)
            await self._apply_ledger(store, [result.resolved, *result.reverted])
        return ResolutionOutcome(result=result, facilities=await self.load_facilities())

    async def clear_all_failures(self) -> list[FacilityRecord]:
        async with self._sync.admin_operation("clear_all_failures"):
            await self._simulator.clear_all_failures()
        return await self.load_facilities()

    async def rebuild_connections(self) -> list[PlannedEdge]:
        async with self._sync.store_writes() as store:
            facilities = await store.list_facilities(order_by_score=False)
            return await rebuild_connections(store, facilities, max_distance_m=self._connection_max_m)

    async def set_connectivity(self, online: bool) -> ConnectivityOutcome:
        outcome = await self._sync.set_connectivity(online)
        return ConnectivityOutcome(online=self._sync.is_online, sync=outcome, facilities=await self.load_facilities())

    async def top_facilities(self, limit: int = 10) -> list[FacilityRecord]:
        facilities = await self._sync.read_store.list_facilities()
        return rank_facilities(facilities, limit)

    async def connections(self) -> list[ConnectionView]:
        store = self._sync.read_store
        resolved = await resolve_connections(store)
        top = rank_facilities(await store.list_facilities(), 3)
        return [ConnectionView(connection=item, color=connection_color(item, top)) for item in resolved]

    async def failure_suggestions(self, facility_id: int) -> list[str]:
        facility = await self._sync.read_store.get_facility(facility_id)
        if facility is None:
            raise FacilityNotFoundError(facility_id)
        return failure_suggestions(facility)

    def ledger_stats(self) -> LedgerStats:
        return self._ledger.stats()
