from __future__ import annotations

from dataclasses import replace
from typing import Optional

import pytest

from facility_triage.cascade import CascadeSimulator, compute_at_risk, failure_suggestions
from facility_triage.db.memory import MemoryFacilityStore
from facility_triage.db.models import FacilityStatus, FacilityType, StoreRole
from facility_triage.errors import FacilityNotFoundError, InconsistentWriteError


class _LaggingStore(MemoryFacilityStore):
    """前 ``lag`` 次写入目标状态时假装成功但不落盘，模拟写后不可见。"""

    def __init__(self, lagging_status: FacilityStatus, lag: int) -> None:
        super().__init__(StoreRole.ONLINE)
        self.lagging_status = lagging_status
        self.lag = lag
        self.status_writes: list[tuple[int, FacilityStatus]] = []

    async def update_status(
        self,
        facility_id: int,
        status: FacilityStatus,
        *,
        unless_status: Optional[FacilityStatus] = None,
    ) -> bool:
        self.status_writes.append((facility_id, status))
        if status is self.lagging_status and self.lag > 0:
            self.lag -= 1
            return True
        return await super().update_status(facility_id, status, unless_status=unless_status)


def _simulator(store: MemoryFacilityStore, **kwargs) -> CascadeSimulator:
    return CascadeSimulator(store, verify_delay=0.0, at_risk_delay=0.0, **kwargs)


async def _statuses(store: MemoryFacilityStore) -> dict[str, FacilityStatus]:
    return {item.name: item.status for item in await store.list_facilities(order_by_score=False)}


@pytest.fixture
def spread_facilities(make_facility):
    """A 与 B 相距约 77km；D 只靠近 A，C 只靠近 B，E 同时在两者 50km 内，F 远离所有设施。"""
    return [
        make_facility(name="A", type_=FacilityType.POWER, lat=15.50, lng=32.50),
        make_facility(name="B", type_=FacilityType.WATER, lat=16.00, lng=33.00),
        make_facility(name="C", type_=FacilityType.SHELTER, lat=15.90, lng=32.90),
        make_facility(name="D", type_=FacilityType.FOOD, lat=15.55, lng=32.55),
        make_facility(name="E", type_=FacilityType.HOSPITAL, lat=15.75, lng=32.75),
        make_facility(name="F", type_=FacilityType.HOSPITAL, lat=12.05, lng=24.88),
    ]


async def _seed(store: MemoryFacilityStore, records) -> dict[str, int]:
    return {record.name: await store.insert_facility(record) for record in records}


@pytest.mark.unit
def test_compute_at_risk_respects_radius(spread_facilities) -> None:
    records = [replace(record, id=idx) for idx, record in enumerate(spread_facilities, 1)]

    assert compute_at_risk(records[0], records) == [4, 5]
    assert compute_at_risk(records[1], records) == [3, 5]
    assert compute_at_risk(records[0], records, radius_m=10_000) == [4]


@pytest.mark.asyncio
async def test_failure_marks_neighbours_within_radius(spread_facilities) -> None:
    store = MemoryFacilityStore(StoreRole.ONLINE)
    ids = await _seed(store, spread_facilities)
    simulator = _simulator(store)

    result = await simulator.simulate_failure(ids["A"])

    assert result.consistent is True
    assert result.failed.status is FacilityStatus.FAILED
    assert result.failed.intervention_score >= 1000
    assert sorted(item.name for item in result.at_risk) == ["D", "E"]
    assert all(item.status is FacilityStatus.AT_RISK for item in result.at_risk)
    statuses = await _statuses(store)
    assert statuses["B"] is FacilityStatus.OPERATIONAL
    assert statuses["C"] is FacilityStatus.OPERATIONAL
    assert statuses["F"] is FacilityStatus.OPERATIONAL
    assert simulator.is_failed(ids["A"])
    assert simulator.at_risk_ids == {ids["D"], ids["E"]}


@pytest.mark.asyncio
async def test_resolve_keeps_at_risk_near_other_failure(spread_facilities) -> None:
    store = MemoryFacilityStore(StoreRole.ONLINE)
    ids = await _seed(store, spread_facilities)
    simulator = _simulator(store)
    await simulator.simulate_failure(ids["A"])
    await simulator.simulate_failure(ids["B"])

    result = await simulator.resolve_failure(ids["A"])

    assert result.resolved.status is FacilityStatus.OPERATIONAL
    assert [item.name for item in result.reverted] == ["D"]
    statuses = await _statuses(store)
    assert statuses["A"] is FacilityStatus.OPERATIONAL
    assert statuses["B"] is FacilityStatus.FAILED
    assert statuses["C"] is FacilityStatus.AT_RISK
    assert statuses["E"] is FacilityStatus.AT_RISK

    final = await simulator.resolve_failure(ids["B"])

    assert sorted(item.name for item in final.reverted) == ["C", "E"]
    assert set((await _statuses(store)).values()) == {FacilityStatus.OPERATIONAL}
    assert simulator.failed_ids == frozenset()
    assert simulator.at_risk_ids == frozenset()


@pytest.mark.asyncio
async def test_failed_facility_is_never_downgraded(wps_facilities) -> None:
    store = MemoryFacilityStore(StoreRole.ONLINE)
    ids = await _seed(store, wps_facilities)
    simulator = _simulator(store)
    stale = await store.list_facilities(order_by_score=False)

    await simulator.simulate_failure(ids["P"])
    # 使用失效前的快照，P 在快照中仍是 operational
    result = await simulator.simulate_failure(ids["W"], stale)

    assert ids["P"] not in result.at_risk_ids
    statuses = await _statuses(store)
    assert statuses["P"] is FacilityStatus.FAILED
    assert statuses["W"] is FacilityStatus.FAILED
    assert statuses["S"] is FacilityStatus.AT_RISK


@pytest.mark.asyncio
async def test_wps_scenario_round_trip(wps_facilities) -> None:
    store = MemoryFacilityStore(StoreRole.ONLINE)
    ids = await _seed(store, wps_facilities)
    simulator = _simulator(store)

    failure = await simulator.simulate_failure(ids["P"])

    assert ids["S"] in failure.at_risk_ids
    # W 与 P 相距约 3km，按半径规则同样进入风险
    assert ids["W"] in failure.at_risk_ids

    resolution = await simulator.resolve_failure(ids["P"])

    assert {item.name for item in resolution.reverted} == {"S", "W"}
    assert set((await _statuses(store)).values()) == {FacilityStatus.OPERATIONAL}


@pytest.mark.asyncio
async def test_lagging_write_is_retried_until_visible(wps_facilities) -> None:
    store = _LaggingStore(FacilityStatus.FAILED, lag=2)
    ids = await _seed(store, wps_facilities)
    simulator = _simulator(store, verify_attempts=5)

    result = await simulator.simulate_failure(ids["P"])

    assert result.consistent is True
    assert (await store.get_facility(ids["P"])).status is FacilityStatus.FAILED
    assert store.status_writes[:3] == [(ids["P"], FacilityStatus.FAILED)] * 3


@pytest.mark.asyncio
async def test_exhausted_retries_are_reported_not_raised(wps_facilities) -> None:
    store = _LaggingStore(FacilityStatus.FAILED, lag=100)
    ids = await _seed(store, wps_facilities)
    simulator = _simulator(store, verify_attempts=3)

    result = await simulator.simulate_failure(ids["P"])

    assert result.consistent is False
    assert len([write for write in store.status_writes if write[1] is FacilityStatus.FAILED]) == 4
    # 风险写入照常进行
    assert {item.name for item in result.at_risk} == {"W", "S"}


@pytest.mark.asyncio
async def test_write_status_verified_raises_typed_errors(wps_facilities) -> None:
    store = _LaggingStore(FacilityStatus.AT_RISK, lag=100)
    ids = await _seed(store, wps_facilities)
    simulator = _simulator(store, verify_attempts=2)

    with pytest.raises(InconsistentWriteError) as exc_info:
        await simulator.write_status_verified(ids["S"], FacilityStatus.AT_RISK)
    assert exc_info.value.attempts == 3
    assert exc_info.value.observed == FacilityStatus.OPERATIONAL.value

    with pytest.raises(FacilityNotFoundError):
        await simulator.write_status_verified(999, FacilityStatus.FAILED)


@pytest.mark.asyncio
async def test_unknown_facility_cannot_fail(online_store) -> None:
    simulator = _simulator(online_store)

    with pytest.raises(FacilityNotFoundError):
        await simulator.simulate_failure(404)


@pytest.mark.asyncio
async def test_state_reload_and_clear_all(wps_facilities) -> None:
    store = MemoryFacilityStore(StoreRole.ONLINE)
    ids = await _seed(store, wps_facilities)
    await _simulator(store).simulate_failure(ids["P"])

    fresh = _simulator(store)
    assert await fresh.load_from_store() == (1, 2)
    assert fresh.is_failed(ids["P"])

    restored = await fresh.clear_all_failures()

    assert restored == 3
    assert set((await _statuses(store)).values()) == {FacilityStatus.OPERATIONAL}
    assert fresh.failed_ids == frozenset()


@pytest.mark.unit
def test_simulator_rejects_bad_arguments(online_store) -> None:
    with pytest.raises(ValueError):
        CascadeSimulator(online_store, radius_m=0)
    with pytest.raises(ValueError):
        CascadeSimulator(online_store, verify_attempts=0)
    with pytest.raises(ValueError):
        CascadeSimulator(online_store, verify_delay=-1)


@pytest.mark.unit
def test_failure_suggestions_are_type_specific(make_facility) -> None:
    suggestions = failure_suggestions(make_facility(1, type_=FacilityType.WATER))

    assert len(suggestions) == 6
    assert suggestions[0] == "Dispatch water truck to affected areas"
    assert suggestions[-1] == "Coordinate with local authorities and emergency services"
