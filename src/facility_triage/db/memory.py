from __future__ import annotations

from dataclasses import replace
from datetime import datetime, timezone
from typing import Optional, Sequence

import structlog

from facility_triage.db.models import (
    DependencyRecord,
    FacilityRecord,
    FacilityStatus,
    FacilityType,
    StoreRole,
    StoreSnapshot,
    SyncStatusRecord,
    UserReportInput,
    UserReportRecord,
)
from facility_triage.db.schema import SYNC_TABLES

logger = structlog.get_logger(__name__)


class MemoryFacilityStore:
    """进程内存储：字典 + 手工索引，语义与 Postgres 实现一致。

    索引：
    - ``_by_status``：状态 -> 设施 id 集合
    - ``_by_provider``：provider id -> 依赖边数量
    - ``_edge_keys``：(dependent, provider) 唯一键
    """

    def __init__(self, role: StoreRole) -> None:
        self.role = role
        self._facilities: dict[int, FacilityRecord] = {}
        self._by_status: dict[FacilityStatus, set[int]] = {status: set() for status in FacilityStatus}
        self._dependencies: list[DependencyRecord] = []
        self._edge_keys: set[tuple[int, int]] = set()
        self._by_provider: dict[int, int] = {}
        self._reports: dict[int, UserReportRecord] = {}
        self._sync_status: dict[str, SyncStatusRecord] = {}
        self._next_facility_id = 1
        self._next_dependency_id = 1
        self._next_report_id = 1
        self._seed_sync_status()

    def _seed_sync_status(self) -> None:
        for table in SYNC_TABLES:
            self._sync_status.setdefault(table, SyncStatusRecord(table_name=table, last_synced_at=None))

    def _index_status(self, facility_id: int, old: Optional[FacilityStatus], new: FacilityStatus) -> None:
        if old is not None:
            self._by_status[old].discard(facility_id)
        self._by_status[new].add(facility_id)

    # ---- facilities ----

    async def list_facilities(
        self,
        status: Optional[FacilityStatus] = None,
        *,
        order_by_score: bool = True,
    ) -> list[FacilityRecord]:
        if status is None:
            ids = list(self._facilities)
        else:
            ids = list(self._by_status[status])
        records = [replace(self._facilities[fid]) for fid in sorted(ids)]
        if order_by_score:
            records.sort(key=lambda item: (-item.intervention_score, item.id))
        return records

    async def get_facility(self, facility_id: int) -> Optional[FacilityRecord]:
        record = self._facilities.get(facility_id)
        return replace(record) if record is not None else None

    async def count_facilities(self, status: Optional[FacilityStatus] = None) -> int:
        if status is None:
            return len(self._facilities)
        return len(self._by_status[status])

    async def insert_facility(self, record: FacilityRecord) -> int:
        facility_id = record.id if record.id and record.id not in self._facilities else self._next_facility_id
        self._next_facility_id = max(self._next_facility_id, facility_id) + 1
        stored = replace(record, id=facility_id)
        self._facilities[facility_id] = stored
        self._index_status(facility_id, None, stored.status)
        await self.mark_pending("facilities")
        return facility_id

    async def update_facility(self, record: FacilityRecord) -> bool:
        current = self._facilities.get(record.id)
        if current is None:
            return False
        self._facilities[record.id] = replace(record)
        self._index_status(record.id, current.status, record.status)
        await self.mark_pending("facilities")
        return True

    async def update_status(
        self,
        facility_id: int,
        status: FacilityStatus,
        *,
        unless_status: Optional[FacilityStatus] = None,
    ) -> bool:
        current = self._facilities.get(facility_id)
        if current is None:
            return False
        if unless_status is not None and current.status is unless_status:
            return False
        self._facilities[facility_id] = current.with_status(status)
        self._index_status(facility_id, current.status, status)
        await self.mark_pending("facilities")
        return True

    async def update_score(self, facility_id: int, score: float) -> None:
        current = self._facilities.get(facility_id)
        if current is None:
            return
        self._facilities[facility_id] = current.with_score(score)
        await self.mark_pending("facilities")

    async def find_facility_at(
        self,
        lat: float,
        lng: float,
        *,
        facility_type: Optional[FacilityType] = None,
    ) -> Optional[FacilityRecord]:
        for facility_id in sorted(self._facilities):
            record = self._facilities[facility_id]
            if facility_type is not None and record.type is not facility_type:
                continue
            if record.lat == lat and record.lng == lng:
                return replace(record)
        return None

    # ---- dependencies ----

    async def list_dependencies(self) -> list[DependencyRecord]:
        return [replace(edge) for edge in self._dependencies]

    async def count_dependents(self, provider_id: int) -> int:
        return self._by_provider.get(provider_id, 0)

    async def insert_dependency(self, edge: DependencyRecord) -> bool:
        key = (edge.dependent_id, edge.provider_id)
        if key in self._edge_keys:
            return False
        stored = replace(edge, id=self._next_dependency_id)
        self._next_dependency_id += 1
        self._dependencies.append(stored)
        self._edge_keys.add(key)
        self._by_provider[edge.provider_id] = self._by_provider.get(edge.provider_id, 0) + 1
        await self.mark_pending("dependencies")
        return True

    async def delete_dependencies(self) -> int:
        removed = len(self._dependencies)
        self._dependencies.clear()
        self._edge_keys.clear()
        self._by_provider.clear()
        await self.mark_pending("dependencies")
        return removed

    # ---- user reports ----

    async def insert_report(self, report: UserReportInput, *, synced: bool = False) -> int:
        report_id = self._next_report_id
        self._next_report_id += 1
        self._reports[report_id] = UserReportRecord(
            id=report_id,
            facility_id=report.facility_id,
            condition=report.condition,
            supply=report.supply,
            population=report.population,
            importance=report.importance,
            reported_by=report.reported_by,
            synced=synced,
            reported_at=datetime.now(timezone.utc),
        )
        await self.mark_pending("user_reports")
        return report_id

    async def append_report(self, report: UserReportRecord, *, synced: bool) -> int:
        report_id = self._next_report_id
        self._next_report_id += 1
        self._reports[report_id] = replace(
            report,
            id=report_id,
            synced=synced,
            reported_at=report.reported_at or datetime.now(timezone.utc),
        )
        await self.mark_pending("user_reports")
        return report_id

    async def list_reports(
        self,
        *,
        facility_id: Optional[int] = None,
        synced: Optional[bool] = None,
    ) -> list[UserReportRecord]:
        items = []
        for report_id in sorted(self._reports):
            report = self._reports[report_id]
            if facility_id is not None and report.facility_id != facility_id:
                continue
            if synced is not None and report.synced is not synced:
                continue
            items.append(replace(report))
        return items

    async def mark_reports_synced(self, ids: Optional[Sequence[int]] = None) -> int:
        targets = list(self._reports) if ids is None else [rid for rid in ids if rid in self._reports]
        changed = 0
        for report_id in targets:
            report = self._reports[report_id]
            if not report.synced:
                self._reports[report_id] = replace(report, synced=True)
                changed += 1
        return changed

    # ---- sync status ----

    async def get_sync_status(self, table_name: str) -> Optional[SyncStatusRecord]:
        status = self._sync_status.get(table_name)
        return replace(status) if status is not None else None

    async def mark_pending(self, table_name: str) -> None:
        status = self._sync_status.get(table_name)
        if status is None:
            logger.warning("sync_status_missing", store=self.role.value, table=table_name)
            return
        status.pending_changes += 1

    async def stamp_synced(self, table_name: str) -> None:
        status = self._sync_status.setdefault(table_name, SyncStatusRecord(table_name=table_name, last_synced_at=None))
        status.last_synced_at = datetime.now(timezone.utc)
        status.pending_changes = 0

    # ---- whole-store operations ----

    async def export_snapshot(self) -> StoreSnapshot:
        return StoreSnapshot(
            facilities=[replace(self._facilities[fid]) for fid in sorted(self._facilities)],
            dependencies=[replace(edge) for edge in self._dependencies],
            reports=[replace(self._reports[rid]) for rid in sorted(self._reports)],
        )

    async def import_snapshot(self, snapshot: StoreSnapshot) -> None:
        """整体替换内容，保留原 id。"""
        self._clear()
        for record in snapshot.facilities:
            self._facilities[record.id] = replace(record)
            self._index_status(record.id, None, record.status)
        for edge in snapshot.dependencies:
            stored = replace(edge)
            if stored.id is None:
                stored.id = self._next_dependency_id
            self._dependencies.append(stored)
            self._edge_keys.add((stored.dependent_id, stored.provider_id))
            self._by_provider[stored.provider_id] = self._by_provider.get(stored.provider_id, 0) + 1
            self._next_dependency_id = max(self._next_dependency_id, stored.id + 1)
        for report in snapshot.reports:
            self._reports[report.id] = replace(report)
        self._next_facility_id = max(self._facilities, default=0) + 1
        self._next_report_id = max(self._reports, default=0) + 1
        logger.info(
            "store_snapshot_imported",
            store=self.role.value,
            facilities=len(self._facilities),
            dependencies=len(self._dependencies),
            reports=len(self._reports),
        )

    def _clear(self) -> None:
        self._facilities.clear()
        for ids in self._by_status.values():
            ids.clear()
        self._dependencies.clear()
        self._edge_keys.clear()
        self._by_provider.clear()
        self._reports.clear()
        self._next_dependency_id = 1

    async def reset(self) -> None:
        self._clear()
        self._sync_status.clear()
        self._seed_sync_status()
        self._next_facility_id = 1
        self._next_report_id = 1
        logger.info("store_reset", store=self.role.value)
