from __future__ import annotations

import time
from typing import Any, Mapping, Optional, Sequence

import psycopg
import structlog
from prometheus_client import Counter, Histogram
from psycopg.rows import dict_row
from psycopg_pool import AsyncConnectionPool
from typing_extensions import Self

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
from facility_triage.db.schema import SYNC_TABLES, schema_name, sync_status_seed_sql

logger = structlog.get_logger(__name__)

STORE_CALL_TOTAL = Counter("store_call_total", "存储调用次数", ["store", "method", "result"])
STORE_CALL_LATENCY = Histogram("store_call_duration_seconds", "存储调用耗时（秒）", ["store", "method"])

_FACILITY_COLUMNS = (
    "id, name, type, lat, lng, status, facility_condition, supply_level, population_level, importance, "
    "population_served, urgency_hours, effort_penalty, cascade_prevention_count, intervention_score, "
    "water_level_forecast, power_outage_detected"
)
_REPORT_COLUMNS = (
    "id, facility_id, facility_condition, supply_level, population_level, importance, reported_by, synced, reported_at"
)


def _report_params(report: UserReportRecord) -> dict[str, Any]:
    return {
        "id": report.id,
        "facility_id": report.facility_id,
        "facility_condition": report.condition.value if report.condition else None,
        "supply_level": report.supply.value if report.supply else None,
        "population_level": report.population.value if report.population else None,
        "importance": report.importance.value if report.importance else None,
        "reported_by": report.reported_by,
        "synced": report.synced,
        "reported_at": report.reported_at,
    }


class PostgresFacilityStore:
    """基于 psycopg 异步连接池的设施仓储，在线/离线两库由 schema 区分。"""

    def __init__(self, pool: AsyncConnectionPool[Any], role: StoreRole) -> None:
        self._pool = pool
        self.role = role
        self._schema = schema_name(role)

    @classmethod
    def create(cls, pool: AsyncConnectionPool[Any], role: StoreRole) -> Self:
        if pool is None:
            raise ValueError("pool 不能为空")
        return cls(pool, role)

    def _table(self, name: str) -> str:
        return f"{self._schema}.{name}"

    def _observe(self, method: str, result: str, start: float) -> float:
        duration = time.perf_counter() - start
        STORE_CALL_LATENCY.labels(self.role.value, method).observe(duration)
        STORE_CALL_TOTAL.labels(self.role.value, method, result).inc()
        return duration

    async def _fetch(
        self,
        query: str,
        params: Mapping[str, Any],
        *,
        method: str,
        retry: bool = True,
    ) -> list[dict[str, Any]]:
        """读路径：瞬时连接错误自动重试一次，第二次失败向上抛出。

        带 RETURNING 的写入传 retry=False，避免重复插入。
        """
        start = time.perf_counter()
        for attempt in (1, 2) if retry else (2,):
            try:
                async with self._pool.connection() as conn:
                    async with conn.cursor(row_factory=dict_row) as cur:
                        await cur.execute(query, params)
                        rows = await cur.fetchall()
            except psycopg.OperationalError as exc:
                if attempt == 2:
                    self._observe(method, "error", start)
                    logger.error("store_read_failed", store=self.role.value, method=method, error=str(exc))
                    raise
                logger.warning("store_read_retry", store=self.role.value, method=method, error=str(exc))
                continue
            duration = self._observe(method, "ok", start)
            logger.debug(
                f"store_{method}",
                store=self.role.value,
                rows=len(rows),
                attempt=attempt,
                duration_ms=duration * 1000,
            )
            return list(rows)
        raise AssertionError("unreachable")

    async def _execute(self, query: str, params: Mapping[str, Any], *, method: str) -> int:
        start = time.perf_counter()
        try:
            async with self._pool.connection() as conn:
                async with conn.cursor() as cur:
                    await cur.execute(query, params)
                    rowcount = cur.rowcount
        except psycopg.Error:
            self._observe(method, "error", start)
            raise
        duration = self._observe(method, "ok", start)
        logger.debug(f"store_{method}", store=self.role.value, rowcount=rowcount, duration_ms=duration * 1000)
        return rowcount

    # ---- facilities ----

    async def list_facilities(
        self,
        status: Optional[FacilityStatus] = None,
        *,
        order_by_score: bool = True,
    ) -> list[FacilityRecord]:
        query = f"SELECT {_FACILITY_COLUMNS} FROM {self._table('facilities')}"
        params: dict[str, Any] = {}
        if status is not None:
            query += " WHERE status = %(status)s"
            params["status"] = status.value
        query += " ORDER BY intervention_score DESC, id ASC" if order_by_score else " ORDER BY id ASC"
        rows = await self._fetch(query, params, method="list_facilities")
        return [FacilityRecord.from_row(row) for row in rows]

    async def get_facility(self, facility_id: int) -> Optional[FacilityRecord]:
        query = f"SELECT {_FACILITY_COLUMNS} FROM {self._table('facilities')} WHERE id = %(id)s"
        rows = await self._fetch(query, {"id": facility_id}, method="get_facility")
        return FacilityRecord.from_row(rows[0]) if rows else None

    async def count_facilities(self, status: Optional[FacilityStatus] = None) -> int:
        query = f"SELECT COUNT(*) AS total FROM {self._table('facilities')}"
        params: dict[str, Any] = {}
        if status is not None:
            query += " WHERE status = %(status)s"
            params["status"] = status.value
        rows = await self._fetch(query, params, method="count_facilities")
        return int(rows[0]["total"]) if rows else 0

    async def insert_facility(self, record: FacilityRecord) -> int:
        row = record.to_row()
        columns = [key for key in row if key != "id"]
        if record.id:
            columns.insert(0, "id")
        query = (
            f"INSERT INTO {self._table('facilities')} ({', '.join(columns)}) "
            f"VALUES ({', '.join(f'%({col})s' for col in columns)}) RETURNING id"
        )
        rows = await self._fetch(query, row, method="insert_facility", retry=False)
        facility_id = int(rows[0]["id"])
        await self.mark_pending("facilities")
        logger.info("store_facility_inserted", store=self.role.value, facility_id=facility_id, type=record.type.value)
        return facility_id

    async def update_facility(self, record: FacilityRecord) -> bool:
        row = record.to_row()
        assignments = ", ".join(f"{key} = %({key})s" for key in row if key != "id")
        query = f"UPDATE {self._table('facilities')} SET {assignments}, updated_at = now() WHERE id = %(id)s"
        changed = await self._execute(query, row, method="update_facility")
        if changed:
            await self.mark_pending("facilities")
        return changed > 0

    async def update_status(
        self,
        facility_id: int,
        status: FacilityStatus,
        *,
        unless_status: Optional[FacilityStatus] = None,
    ) -> bool:
        query = f"UPDATE {self._table('facilities')} SET status = %(status)s, updated_at = now() WHERE id = %(id)s"
        params: dict[str, Any] = {"id": facility_id, "status": status.value}
        if unless_status is not None:
            query += " AND status != %(unless_status)s"
            params["unless_status"] = unless_status.value
        changed = await self._execute(query, params, method="update_status")
        if changed:
            await self.mark_pending("facilities")
        return changed > 0

    async def update_score(self, facility_id: int, score: float) -> None:
        query = (
            f"UPDATE {self._table('facilities')} SET intervention_score = %(score)s, updated_at = now() "
            "WHERE id = %(id)s"
        )
        changed = await self._execute(query, {"id": facility_id, "score": score}, method="update_score")
        if changed:
            await self.mark_pending("facilities")

    async def find_facility_at(
        self,
        lat: float,
        lng: float,
        *,
        facility_type: Optional[FacilityType] = None,
    ) -> Optional[FacilityRecord]:
        query = f"SELECT {_FACILITY_COLUMNS} FROM {self._table('facilities')} WHERE lat = %(lat)s AND lng = %(lng)s"
        params: dict[str, Any] = {"lat": lat, "lng": lng}
        if facility_type is not None:
            query += " AND type = %(type)s"
            params["type"] = facility_type.value
        query += " ORDER BY id ASC LIMIT 1"
        rows = await self._fetch(query, params, method="find_facility_at")
        return FacilityRecord.from_row(rows[0]) if rows else None

    # ---- dependencies ----

    async def list_dependencies(self) -> list[DependencyRecord]:
        query = (
            f"SELECT id, dependent_id, provider_id, dependency_type FROM {self._table('dependencies')} ORDER BY id ASC"
        )
        rows = await self._fetch(query, {}, method="list_dependencies")
        return [DependencyRecord.from_row(row) for row in rows]

    async def count_dependents(self, provider_id: int) -> int:
        query = f"SELECT COUNT(*) AS total FROM {self._table('dependencies')} WHERE provider_id = %(provider_id)s"
        rows = await self._fetch(query, {"provider_id": provider_id}, method="count_dependents")
        return int(rows[0]["total"]) if rows else 0

    async def insert_dependency(self, edge: DependencyRecord) -> bool:
        query = (
            f"INSERT INTO {self._table('dependencies')} (dependent_id, provider_id, dependency_type) "
            "VALUES (%(dependent_id)s, %(provider_id)s, %(dependency_type)s) "
            "ON CONFLICT (dependent_id, provider_id) DO NOTHING"
        )
        params = {
            "dependent_id": edge.dependent_id,
            "provider_id": edge.provider_id,
            "dependency_type": edge.dependency_type.value,
        }
        inserted = await self._execute(query, params, method="insert_dependency")
        if inserted:
            await self.mark_pending("dependencies")
        return inserted > 0

    async def delete_dependencies(self) -> int:
        removed = await self._execute(f"DELETE FROM {self._table('dependencies')}", {}, method="delete_dependencies")
        await self.mark_pending("dependencies")
        return removed

    # ---- user reports ----

    async def insert_report(self, report: UserReportInput, *, synced: bool = False) -> int:
        query = (
            f"INSERT INTO {self._table('user_reports')} "
            "(facility_id, facility_condition, supply_level, population_level, importance, reported_by, synced) "
            "VALUES (%(facility_id)s, %(facility_condition)s, %(supply_level)s, %(population_level)s, "
            "%(importance)s, %(reported_by)s, %(synced)s) RETURNING id"
        )
        params = {
            "facility_id": report.facility_id,
            "facility_condition": report.condition.value if report.condition else None,
            "supply_level": report.supply.value if report.supply else None,
            "population_level": report.population.value if report.population else None,
            "importance": report.importance.value if report.importance else None,
            "reported_by": report.reported_by,
            "synced": synced,
        }
        rows = await self._fetch(query, params, method="insert_report", retry=False)
        report_id = int(rows[0]["id"])
        await self.mark_pending("user_reports")
        return report_id

    async def append_report(self, report: UserReportRecord, *, synced: bool) -> int:
        query = (
            f"INSERT INTO {self._table('user_reports')} "
            "(facility_id, facility_condition, supply_level, population_level, importance, reported_by, synced, "
            "reported_at) "
            "VALUES (%(facility_id)s, %(facility_condition)s, %(supply_level)s, %(population_level)s, "
            "%(importance)s, %(reported_by)s, %(synced)s, COALESCE(%(reported_at)s, now())) RETURNING id"
        )
        params = _report_params(report)
        params["synced"] = synced
        rows = await self._fetch(query, params, method="append_report", retry=False)
        report_id = int(rows[0]["id"])
        await self.mark_pending("user_reports")
        return report_id

    async def list_reports(
        self,
        *,
        facility_id: Optional[int] = None,
        synced: Optional[bool] = None,
    ) -> list[UserReportRecord]:
        conditions: list[str] = []
        params: dict[str, Any] = {}
        if facility_id is not None:
            conditions.append("facility_id = %(facility_id)s")
            params["facility_id"] = facility_id
        if synced is not None:
            conditions.append("synced = %(synced)s")
            params["synced"] = synced
        query = f"SELECT {_REPORT_COLUMNS} FROM {self._table('user_reports')}"
        if conditions:
            query += f" WHERE {' AND '.join(conditions)}"
        query += " ORDER BY id ASC"
        rows = await self._fetch(query, params, method="list_reports")
        return [UserReportRecord.from_row(row) for row in rows]

    async def mark_reports_synced(self, ids: Optional[Sequence[int]] = None) -> int:
        query = f"UPDATE {self._table('user_reports')} SET synced = TRUE WHERE synced = FALSE"
        params: dict[str, Any] = {}
        if ids is not None:
            if not ids:
                return 0
            query += " AND id = ANY(%(ids)s)"
            params["ids"] = list(ids)
        return await self._execute(query, params, method="mark_reports_synced")

    # ---- sync status ----

    async def get_sync_status(self, table_name: str) -> Optional[SyncStatusRecord]:
        query = (
            f"SELECT table_name, last_synced_at, pending_changes FROM {self._table('sync_status')} "
            "WHERE table_name = %(table_name)s"
        )
        rows = await self._fetch(query, {"table_name": table_name}, method="get_sync_status")
        if not rows:
            return None
        row = rows[0]
        return SyncStatusRecord(
            table_name=row["table_name"],
            last_synced_at=row["last_synced_at"],
            pending_changes=int(row["pending_changes"] or 0),
        )

    async def mark_pending(self, table_name: str) -> None:
        """待同步计数 +1；记账失败只记录日志，不阻断主流程。"""
        query = (
            f"UPDATE {self._table('sync_status')} SET pending_changes = pending_changes + 1 "
            "WHERE table_name = %(table_name)s"
        )
        try:
            await self._execute(query, {"table_name": table_name}, method="mark_pending")
        except psycopg.Error as exc:
            logger.warning("sync_status_mark_pending_failed", store=self.role.value, table=table_name, error=str(exc))

    async def stamp_synced(self, table_name: str) -> None:
        query = (
            f"INSERT INTO {self._table('sync_status')} (table_name, last_synced_at, pending_changes) "
            "VALUES (%(table_name)s, now(), 0) "
            "ON CONFLICT (table_name) DO UPDATE SET last_synced_at = now(), pending_changes = 0"
        )
        await self._execute(query, {"table_name": table_name}, method="stamp_synced")

    # ---- whole-store operations ----

    async def export_snapshot(self) -> StoreSnapshot:
        return StoreSnapshot(
            facilities=await self.list_facilities(order_by_score=False),
            dependencies=await self.list_dependencies(),
            reports=await self.list_reports(),
        )

    async def import_snapshot(self, snapshot: StoreSnapshot) -> None:
        """在单个事务内整体替换内容，保留原 id 并校正自增序列。"""
        start = time.perf_counter()
        facilities_table = self._table("facilities")
        facility_columns = [col.strip() for col in _FACILITY_COLUMNS.split(",")]
        facility_insert = (
            f"INSERT INTO {facilities_table} ({', '.join(facility_columns)}) "
            f"VALUES ({', '.join(f'%({col})s' for col in facility_columns)})"
        )
        dependency_insert = (
            f"INSERT INTO {self._table('dependencies')} (dependent_id, provider_id, dependency_type) "
            "VALUES (%(dependent_id)s, %(provider_id)s, %(dependency_type)s) ON CONFLICT DO NOTHING"
        )
        report_insert = (
            f"INSERT INTO {self._table('user_reports')} ({_REPORT_COLUMNS}) "
            "VALUES (%(id)s, %(facility_id)s, %(facility_condition)s, %(supply_level)s, %(population_level)s, "
            "%(importance)s, %(reported_by)s, %(synced)s, COALESCE(%(reported_at)s, now()))"
        )
        async with self._pool.connection() as conn:
            async with conn.transaction():
                async with conn.cursor() as cur:
                    await cur.execute(f"DELETE FROM {self._table('user_reports')}")
                    await cur.execute(f"DELETE FROM {self._table('dependencies')}")
                    await cur.execute(f"DELETE FROM {facilities_table}")
                    for record in snapshot.facilities:
                        await cur.execute(facility_insert, record.to_row())
                    for edge in snapshot.dependencies:
                        await cur.execute(
                            dependency_insert,
                            {
                                "dependent_id": edge.dependent_id,
                                "provider_id": edge.provider_id,
                                "dependency_type": edge.dependency_type.value,
                            },
                        )
                    for report in snapshot.reports:
                        await cur.execute(report_insert, _report_params(report))
                    for table in ("facilities", "user_reports"):
                        await cur.execute(
                            f"SELECT setval(pg_get_serial_sequence('{self._table(table)}', 'id'), "
                            f"COALESCE((SELECT MAX(id) FROM {self._table(table)}), 0) + 1, false)"
                        )
        duration = self._observe("import_snapshot", "ok", start)
        logger.info(
            "store_snapshot_imported",
            store=self.role.value,
            facilities=len(snapshot.facilities),
            dependencies=len(snapshot.dependencies),
            reports=len(snapshot.reports),
            duration_ms=duration * 1000,
        )

    async def reset(self) -> None:
        async with self._pool.connection() as conn:
            async with conn.transaction():
                async with conn.cursor() as cur:
                    await cur.execute(
                        f"TRUNCATE {self._table('user_reports')}, {self._table('dependencies')}, "
                        f"{self._table('failure_events')}, {self._table('interventions')}, "
                        f"{self._table('facility_timers')}, {self._table('facilities')} RESTART IDENTITY"
                    )
                    await cur.execute(f"DELETE FROM {self._table('sync_status')}")
                    for table in SYNC_TABLES:
                        await cur.execute(sync_status_seed_sql(self.role), {"table_name": table})
        STORE_CALL_TOTAL.labels(self.role.value, "reset", "ok").inc()
        logger.info("store_reset", store=self.role.value)
