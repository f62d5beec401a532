# Copyright 2025 msq
"""
级联失效模拟

状态机：
- operational -> failed：管理员显式操作
- operational -> at_risk：半径内有设施失效
- at_risk -> operational：半径内已无失效设施
- failed -> operational：管理员显式解除
failed 永远不会被直接改写为 at_risk。

存储写入不保证原子可见，状态写入后统一“等待-回读-重试”，
重试耗尽记为不一致但不向调用方抛出，模拟照常完成。
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from typing import Optional, Sequence

import structlog
from prometheus_client import Counter, Histogram

from facility_triage.db.models import FacilityRecord, FacilityStatus, FacilityType
from facility_triage.db.store import FacilityStore
from facility_triage.errors import FacilityNotFoundError, InconsistentWriteError
from facility_triage.geo.distance import facility_distance
from facility_triage.scoring import score_facility

logger = structlog.get_logger(__name__)

CASCADE_OPERATION_TOTAL = Counter("cascade_operation_total", "级联模拟操作次数", ["operation", "result"])
CASCADE_OPERATION_LATENCY = Histogram("cascade_operation_duration_seconds", "级联模拟操作耗时（秒）", ["operation"])
STATUS_WRITE_RETRY_TOTAL = Counter("status_write_retry_total", "状态写入回读不一致后的重试次数", ["status"])

DEFAULT_RADIUS_M = 50_000.0

_TYPE_SUGGESTIONS: dict[FacilityType, tuple[str, ...]] = {
    FacilityType.WATER: (
        "Dispatch water truck to affected areas",
        "Set up temporary water distribution points",
        "Contact nearest water treatment facility for backup supply",
        "Notify hospitals and shelters to activate emergency water reserves",
    ),
    FacilityType.POWER: (
        "Deploy backup generator to critical facilities",
        "Contact power grid operator for emergency restoration",
        "Prioritize power restoration to hospitals and shelters",
        "Check for downed power lines or transformer failures",
    ),
    FacilityType.HOSPITAL: (
        "Evacuate critical patients to nearest operational hospital",
        "Deploy mobile medical unit to area",
        "Ensure backup power and water supplies are available",
        "Coordinate with emergency services for patient transport",
    ),
    FacilityType.SHELTER: (
        "Relocate residents to nearest operational shelter",
        "Set up temporary shelter with emergency supplies",
        "Ensure food and water distribution to displaced persons",
        "Coordinate with relief organizations for support",
    ),
    FacilityType.FOOD: (
        "Redirect food distribution from nearest operational center",
        "Set up temporary food distribution point",
        "Contact food aid organizations for emergency supplies",
        "Ensure food reaches affected hospitals and shelters",
    ),
}
_GENERAL_SUGGESTIONS = (
    "Assess damage and determine repair timeline",
    "Coordinate with local authorities and emergency services",
)


@dataclass(slots=True)
class FailureResult:
    failed: FacilityRecord
    at_risk: list[FacilityRecord] = field(default_factory=list)
    at_risk_ids: list[int] = field(default_factory=list)
    consistent: bool = True


@dataclass(slots=True)
class ResolutionResult:
    resolved: FacilityRecord
    reverted: list[FacilityRecord] = field(default_factory=list)
    consistent: bool = True


def compute_at_risk(
    failed: FacilityRecord,
    facilities: Sequence[FacilityRecord],
    radius_m: float = DEFAULT_RADIUS_M,
) -> list[int]:
    """失效设施半径内、自身未失效且坐标有效的其他设施 id，按出现顺序。"""
    if not failed.has_coordinates:
        logger.warning("cascade_failed_facility_without_coordinates", facility_id=failed.id, name=failed.name)
        return []
    at_risk: list[int] = []
    for facility in facilities:
        if facility.id == failed.id or facility.status is FacilityStatus.FAILED:
            continue
        if not facility.has_coordinates:
            continue
        if facility_distance(failed, facility) <= radius_m and facility.id not in at_risk:
            at_risk.append(facility.id)
    return at_risk


def failure_suggestions(facility: FacilityRecord) -> list[str]:
    return [*_TYPE_SUGGESTIONS.get(facility.type, ()), *_GENERAL_SUGGESTIONS]


class CascadeSimulator:
    """持有失效/风险设施集合，对单个存储执行模拟与解除。"""

    def __init__(
        self,
        store: FacilityStore,
        *,
        radius_m: float = DEFAULT_RADIUS_M,
        verify_attempts: int = 5,
        verify_delay: float = 0.2,
        at_risk_delay: float = 0.1,
    ) -> None:
        if radius_m <= 0:
            raise ValueError("radius_m 必须大于 0")
        if verify_attempts < 1:
            raise ValueError("verify_attempts 必须大于等于 1")
        if verify_delay < 0 or at_risk_delay < 0:
            raise ValueError("verify_delay/at_risk_delay 不能为负数")
        self._store = store
        self._radius_m = radius_m
        self._verify_attempts = verify_attempts
        self._verify_delay = verify_delay
        self._at_risk_delay = at_risk_delay
        self._failed: set[int] = set()
        self._at_risk: set[int] = set()

    @property
    def store(self) -> FacilityStore:
        return self._store

    @property
    def radius_m(self) -> float:
        return self._radius_m

    @property
    def failed_ids(self) -> frozenset[int]:
        return frozenset(self._failed)

    @property
    def at_risk_ids(self) -> frozenset[int]:
        return frozenset(self._at_risk)

    def is_failed(self, facility_id: int) -> bool:
        return facility_id in self._failed

    def is_at_risk(self, facility_id: int) -> bool:
        return facility_id in self._at_risk

    async def write_status_verified(
        self,
        facility_id: int,
        status: FacilityStatus,
        *,
        unless_status: Optional[FacilityStatus] = None,
        retries: Optional[int] = None,
        delay: Optional[float] = None,
    ) -> FacilityRecord:
        """写入状态后等待、回读，不一致则重写，最多重试 ``retries`` 次。

        带 ``unless_status`` 时，回读到该状态视为受保护跳过，直接返回。
        重试耗尽仍不一致时抛出 InconsistentWriteError。
        """
        retries = self._verify_attempts if retries is None else retries
        delay = self._verify_delay if delay is None else delay

        await self._store.update_status(facility_id, status, unless_status=unless_status)
        await asyncio.sleep(delay)
        current = await self._store.get_facility(facility_id)
        attempt = 0
        while current is not None and current.status is not status and attempt < retries:
            if unless_status is not None and current.status is unless_status:
                break
            attempt += 1
            STATUS_WRITE_RETRY_TOTAL.labels(status.value).inc()
            logger.warning(
                "status_write_retry",
                facility_id=facility_id,
                expected=status.value,
                observed=current.status.value,
                attempt=attempt,
            )
            await self._store.update_status(facility_id, status, unless_status=unless_status)
            await asyncio.sleep(delay)
            current = await self._store.get_facility(facility_id)

        if current is None:
            raise FacilityNotFoundError(facility_id)
        if current.status is status or (unless_status is not None and current.status is unless_status):
            return current
        raise InconsistentWriteError(facility_id, status.value, current.status.value, attempt + 1)

    async def _resolve_target(self, facility_id: int, facilities: Sequence[FacilityRecord]) -> FacilityRecord:
        for facility in facilities:
            if facility.id == facility_id:
                return facility
        record = await self._store.get_facility(facility_id)
        if record is None:
            raise FacilityNotFoundError(facility_id)
        return record

    async def _persist_score(self, facility: FacilityRecord) -> FacilityRecord:
        score = await score_facility(self._store, facility)
        await self._store.update_score(facility.id, score)
        return facility.with_score(score)

    async def simulate_failure(
        self,
        facility_id: int,
        facilities: Optional[Sequence[FacilityRecord]] = None,
    ) -> FailureResult:
        """将目标设施置为失效，并把半径内的其他设施标记为风险。

        顺序固定：先写入并校验失效状态，再逐个写入风险状态，最后重新计分。
        """
        start = time.perf_counter()
        if facilities is None:
            facilities = await self._store.list_facilities(order_by_score=False)
        target = await self._resolve_target(facility_id, facilities)
        consistent = True

        self._failed.add(facility_id)
        self._at_risk.discard(facility_id)
        try:
            await self.write_status_verified(facility_id, FacilityStatus.FAILED)
        except InconsistentWriteError as exc:
            consistent = False
            logger.error("cascade_failed_write_inconsistent", facility_id=facility_id, attempts=exc.attempts)

        candidate_ids = compute_at_risk(target, facilities, self._radius_m)
        marked_ids: list[int] = []
        for candidate_id in candidate_ids:
            try:
                observed = await self.write_status_verified(
                    candidate_id,
                    FacilityStatus.AT_RISK,
                    unless_status=FacilityStatus.FAILED,
                    retries=1,
                    delay=self._at_risk_delay,
                )
            except InconsistentWriteError as exc:
                consistent = False
                logger.error("cascade_at_risk_write_inconsistent", facility_id=candidate_id, observed=exc.observed)
                continue
            except FacilityNotFoundError:
                logger.warning("cascade_at_risk_facility_missing", facility_id=candidate_id)
                continue
            if observed.status is FacilityStatus.AT_RISK:
                self._at_risk.add(candidate_id)
                marked_ids.append(candidate_id)

        failed_record = await self._persist_score(target.with_status(FacilityStatus.FAILED))

        by_id = {facility.id: facility for facility in facilities}
        at_risk_records: list[FacilityRecord] = []
        for marked_id in marked_ids:
            base = by_id.get(marked_id) or await self._store.get_facility(marked_id)
            if base is None:
                continue
            at_risk_records.append(await self._persist_score(base.with_status(FacilityStatus.AT_RISK)))

        duration = time.perf_counter() - start
        CASCADE_OPERATION_LATENCY.labels("simulate").observe(duration)
        CASCADE_OPERATION_TOTAL.labels("simulate", "consistent" if consistent else "inconsistent").inc()
        logger.info(
            "cascade_failure_simulated",
            facility_id=facility_id,
            name=target.name,
            at_risk_count=len(marked_ids),
            at_risk_ids=marked_ids,
            consistent=consistent,
            duration_ms=duration * 1000,
        )
        return FailureResult(
            failed=failed_record,
            at_risk=at_risk_records,
            at_risk_ids=marked_ids,
            consistent=consistent,
        )

    async def resolve_failure(
        self,
        facility_id: int,
        facilities: Optional[Sequence[FacilityRecord]] = None,
    ) -> ResolutionResult:
        """解除失效，然后全局复查所有风险设施，半径内已无失效设施的恢复正常。"""
        start = time.perf_counter()
        if facilities is None:
            facilities = await self._store.list_facilities(order_by_score=False)
        target = await self._resolve_target(facility_id, facilities)
        if target.status is not FacilityStatus.FAILED and facility_id not in self._failed:
            logger.warning("resolve_target_not_failed", facility_id=facility_id, status=target.status.value)
        consistent = True

        self._failed.discard(facility_id)
        try:
            await self.write_status_verified(facility_id, FacilityStatus.OPERATIONAL)
        except InconsistentWriteError as exc:
            consistent = False
            logger.error("cascade_resolve_write_inconsistent", facility_id=facility_id, attempts=exc.attempts)

        resolved = await self._persist_score(target.with_status(FacilityStatus.OPERATIONAL))

        remaining_failed = [
            item
            for item in await self._store.list_facilities(FacilityStatus.FAILED, order_by_score=False)
            if item.has_coordinates and item.id != facility_id
        ]
        at_risk_now = await self._store.list_facilities(FacilityStatus.AT_RISK, order_by_score=False)

        reverted: list[FacilityRecord] = []
        for candidate in at_risk_now:
            if not candidate.has_coordinates:
                continue
            if any(facility_distance(candidate, failed) <= self._radius_m for failed in remaining_failed):
                continue
            try:
                observed = await self.write_status_verified(
                    candidate.id,
                    FacilityStatus.OPERATIONAL,
                    unless_status=FacilityStatus.FAILED,
                    retries=1,
                    delay=self._at_risk_delay,
                )
            except InconsistentWriteError as exc:
                consistent = False
                logger.error("cascade_revert_write_inconsistent", facility_id=candidate.id, observed=exc.observed)
                continue
            if observed.status is not FacilityStatus.OPERATIONAL:
                continue
            self._at_risk.discard(candidate.id)
            reverted.append(await self._persist_score(candidate.with_status(FacilityStatus.OPERATIONAL)))

        duration = time.perf_counter() - start
        CASCADE_OPERATION_LATENCY.labels("resolve").observe(duration)
        CASCADE_OPERATION_TOTAL.labels("resolve", "consistent" if consistent else "inconsistent").inc()
        logger.info(
            "cascade_failure_resolved",
            facility_id=facility_id,
            name=target.name,
            reverted_ids=[item.id for item in reverted],
            remaining_failed=len(remaining_failed),
            consistent=consistent,
            duration_ms=duration * 1000,
        )
        return ResolutionResult(resolved=resolved, reverted=reverted, consistent=consistent)

    async def load_from_store(self) -> tuple[int, int]:
        """按存储中的状态重建内存集合，返回 (失效数, 风险数)。"""
        failed = await self._store.list_facilities(FacilityStatus.FAILED, order_by_score=False)
        at_risk = await self._store.list_facilities(FacilityStatus.AT_RISK, order_by_score=False)
        self._failed = {item.id for item in failed}
        self._at_risk = {item.id for item in at_risk}
        logger.info("cascade_state_loaded", failed=len(self._failed), at_risk=len(self._at_risk))
        return len(self._failed), len(self._at_risk)

    async def clear_all_failures(self) -> int:
        """所有失效/风险设施恢复正常并全量重新计分，返回恢复数量。"""
        self._failed.clear()
        self._at_risk.clear()
        restored = 0
        for status in (FacilityStatus.FAILED, FacilityStatus.AT_RISK):
            for facility in await self._store.list_facilities(status, order_by_score=False):
                if await self._store.update_status(facility.id, FacilityStatus.OPERATIONAL):
                    restored += 1
        for facility in await self._store.list_facilities(order_by_score=False):
            await self._persist_score(facility)
        CASCADE_OPERATION_TOTAL.labels("clear_all", "consistent").inc()
        logger.info("cascade_failures_cleared", restored=restored)
        return restored
