from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Iterable, Optional

import psycopg
import pytest

from facility_triage.db.dao import PostgresFacilityStore
from facility_triage.db.models import (
    Condition,
    FacilityRecord,
    FacilityStatus,
    FacilityType,
    StoreRole,
    StoreSnapshot,
    UserReportRecord,
)
from facility_triage.db.schema import SYNC_TABLES, init_schema, render_schema


class _FakeCursor:
    def __init__(self, rows: Iterable[Any] = (), *, rowcount: int = 1, errors: Iterable[Exception] = ()) -> None:
        self._rows = list(rows)
        self.rowcount = rowcount
        self._errors = list(errors)
        self.calls: list[tuple[str, Optional[Any]]] = []

    async def __aenter__(self) -> "_FakeCursor":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        return None

    async def execute(self, sql: str, params: Optional[Any] = None) -> None:
        self.calls.append((sql, params))
        if self._errors:
            raise self._errors.pop(0)

    async def fetchall(self) -> list[Any]:
        return list(self._rows)


class _FakeTransaction:
    def __init__(self, connection: "_FakeConnection") -> None:
        self._connection = connection

    async def __aenter__(self) -> "_FakeTransaction":
        self._connection.transactions += 1
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        return None


class _FakeConnection:
    def __init__(self, cursor: _FakeCursor) -> None:
        self._cursor = cursor
        self.transactions = 0

    async def __aenter__(self) -> "_FakeConnection":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        return None

    def cursor(self, *args: Any, **kwargs: Any) -> _FakeCursor:
        return self._cursor

    def transaction(self) -> _FakeTransaction:
        return _FakeTransaction(self)


class _FakePool:
    def __init__(self, cursor: _FakeCursor) -> None:
        self._cursor = cursor
        self.last_connection: Optional[_FakeConnection] = None

    def connection(self) -> _FakeConnection:
        self.last_connection = _FakeConnection(self._cursor)
        return self.last_connection


def _facility_row(**overrides: Any) -> dict[str, Any]:
    row = {
        "id": 1,
        "name": "Khartoum Main Water Treatment Plant",
        "type": "water",
        "lat": 15.55,
        "lng": 32.60,
        "status": "operational",
        "facility_condition": "poor",
        "supply_level": "very_low",
        "population_level": None,
        "importance": "very_important",
        "population_served": 50000,
        "urgency_hours": 18,
        "effort_penalty": 1.3,
        "cascade_prevention_count": 8,
        "intervention_score": 120.5,
        "water_level_forecast": None,
        "power_outage_detected": False,
    }
    row.update(overrides)
    return row


@pytest.mark.asyncio
async def test_list_facilities_filters_by_status_in_role_schema() -> None:
    cursor = _FakeCursor([_facility_row(status="at_risk", facility_condition="unknown")])
    store = PostgresFacilityStore.create(_FakePool(cursor), StoreRole.OFFLINE)

    records = await store.list_facilities(FacilityStatus.AT_RISK)

    sql, params = cursor.calls[0]
    assert "FROM offline.facilities" in sql
    assert "WHERE status = %(status)s" in sql
    assert "ORDER BY intervention_score DESC, id ASC" in sql
    assert params == {"status": "at_risk"}
    assert len(records) == 1
    assert records[0].type is FacilityType.WATER
    assert records[0].status is FacilityStatus.AT_RISK
    # 未知枚举值回退到中性值
    assert records[0].condition.value == "fair"


@pytest.mark.asyncio
async def test_insert_facility_returns_id_and_marks_pending() -> None:
    cursor = _FakeCursor([{"id": 7}])
    store = PostgresFacilityStore.create(_FakePool(cursor), StoreRole.ONLINE)

    facility_id = await store.insert_facility(
        FacilityRecord(id=0, name="Bahri Shelter", type=FacilityType.SHELTER, lat=15.62, lng=32.61)
    )

    assert facility_id == 7
    insert_sql, insert_params = cursor.calls[0]
    assert insert_sql.startswith("INSERT INTO online.facilities (name, type")
    assert "RETURNING id" in insert_sql
    assert insert_params["type"] == "shelter"
    pending_sql, pending_params = cursor.calls[1]
    assert "online.sync_status" in pending_sql
    assert pending_params == {"table_name": "facilities"}


@pytest.mark.asyncio
async def test_update_status_guard_and_rowcount() -> None:
    cursor = _FakeCursor(rowcount=0)
    store = PostgresFacilityStore.create(_FakePool(cursor), StoreRole.ONLINE)

    changed = await store.update_status(3, FacilityStatus.AT_RISK, unless_status=FacilityStatus.FAILED)

    assert changed is False
    sql, params = cursor.calls[0]
    assert "AND status != %(unless_status)s" in sql
    assert params == {"id": 3, "status": "at_risk", "unless_status": "failed"}
    # 未改动任何行时不记待同步
    assert len(cursor.calls) == 1


@pytest.mark.asyncio
async def test_read_path_retries_once_on_operational_error() -> None:
    cursor = _FakeCursor([{"total": 4}], errors=[psycopg.OperationalError("connection reset")])
    store = PostgresFacilityStore.create(_FakePool(cursor), StoreRole.ONLINE)

    assert await store.count_facilities() == 4
    assert len(cursor.calls) == 2


@pytest.mark.asyncio
async def test_read_path_raises_after_second_failure() -> None:
    cursor = _FakeCursor(
        [{"total": 4}],
        errors=[psycopg.OperationalError("down"), psycopg.OperationalError("still down")],
    )
    store = PostgresFacilityStore.create(_FakePool(cursor), StoreRole.ONLINE)

    with pytest.raises(psycopg.OperationalError):
        await store.count_dependents(1)


@pytest.mark.asyncio
async def test_mark_pending_failure_is_swallowed() -> None:
    cursor = _FakeCursor(errors=[psycopg.errors.UndefinedTable("missing sync_status")])
    store = PostgresFacilityStore.create(_FakePool(cursor), StoreRole.ONLINE)

    await store.mark_pending("facilities")

    assert len(cursor.calls) == 1


@pytest.mark.asyncio
async def test_mark_reports_synced_with_empty_ids_is_noop() -> None:
    cursor = _FakeCursor(rowcount=2)
    store = PostgresFacilityStore.create(_FakePool(cursor), StoreRole.ONLINE)

    assert await store.mark_reports_synced([]) == 0
    assert cursor.calls == []
    assert await store.mark_reports_synced([1, 2]) == 2
    assert cursor.calls[0][1] == {"ids": [1, 2]}


@pytest.mark.asyncio
async def test_import_snapshot_runs_in_transaction() -> None:
    cursor = _FakeCursor()
    pool = _FakePool(cursor)
    store = PostgresFacilityStore.create(pool, StoreRole.OFFLINE)
    snapshot = StoreSnapshot(
        facilities=[FacilityRecord(id=5, name="Omdurman Substation", type=FacilityType.POWER, lat=15.64, lng=32.47)],
        dependencies=[],
        reports=[],
    )

    await store.import_snapshot(snapshot)

    assert pool.last_connection is not None
    assert pool.last_connection.transactions == 1
    statements = [sql for sql, _ in cursor.calls]
    assert statements[0] == "DELETE FROM offline.user_reports"
    assert any(sql.startswith("INSERT INTO offline.facilities (id, name") for sql in statements)
    assert sum("setval" in sql for sql in statements) == 2


@pytest.mark.asyncio
async def test_init_schema_executes_ddl_and_seeds_sync_status() -> None:
    cursor = _FakeCursor()

    await init_schema(_FakePool(cursor), StoreRole.ONLINE)

    statements = [sql for sql, _ in cursor.calls]
    assert statements[0] == "CREATE SCHEMA IF NOT EXISTS online"
    seeded = [params["table_name"] for _, params in cursor.calls if params]
    assert seeded == list(SYNC_TABLES)


@pytest.mark.unit
def test_render_schema_uses_role_prefix() -> None:
    ddl = render_schema(StoreRole.OFFLINE)

    assert "{schema}" not in ddl
    assert "offline.facilities" in ddl
    assert "UNIQUE (dependent_id, provider_id)" in ddl


@pytest.mark.asyncio
async def test_append_report_keeps_original_timestamp() -> None:
    cursor = _FakeCursor([{"id": 11}])
    store = PostgresFacilityStore.create(_FakePool(cursor), StoreRole.ONLINE)
    reported_at = datetime(2025, 3, 1, 8, 30, tzinfo=timezone.utc)
    report = UserReportRecord(
        id=4,
        facility_id=2,
        condition=Condition.BAD,
        supply=None,
        population=None,
        importance=None,
        reported_by="nurse",
        synced=False,
        reported_at=reported_at,
    )

    assert await store.append_report(report, synced=True) == 11

    sql, params = cursor.calls[0]
    assert "reported_at" in sql
    assert "RETURNING id" in sql
    assert params["reported_at"] == reported_at
    assert params["synced"] is True
    assert params["facility_condition"] == "bad"
