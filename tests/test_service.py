from __future__ import annotations

import asyncio

import pytest
import pytest_asyncio

from facility_triage.config import AppConfig
from facility_triage.connections import ConnectionColor
from facility_triage.db.memory import MemoryFacilityStore
from facility_triage.db.models import FacilityStatus, StoreRole
from facility_triage.db.store import StorePair
from facility_triage.errors import FacilityNotFoundError
from facility_triage.scoring import score_facility
from facility_triage.service import FacilityService
from facility_triage.sync import SyncManager


@pytest_asyncio.fixture
async def seeded(store_pair, wps_facilities):
    for record in wps_facilities:
        await store_pair.online.insert_facility(record)
    manager = SyncManager(store_pair)
    await manager.copy_online_to_offline()
    service = FacilityService(manager, verify_delay=0.0, at_risk_delay=0.0)
    await service.start()
    return service


def _by_name(facilities):
    return {item.name: item for item in facilities}


@pytest.mark.asyncio
async def test_load_facilities_rebuilds_connections_and_ranks(seeded) -> None:
    facilities = await seeded.load_facilities()

    assert [item.name for item in facilities] == ["S", "W", "P"]
    scores = {item.name: item.intervention_score for item in facilities}
    # 每个供给设施各有一个下游依赖：+5
    assert scores["S"] == pytest.approx(51.5)
    assert scores["W"] == pytest.approx(1.5 + 15 + 5)
    assert scores["P"] == pytest.approx(1.5 + 12 + 5)
    stored = await seeded.sync.read_store.get_facility(facilities[1].id)
    assert stored.intervention_score == pytest.approx(scores["W"])


@pytest.mark.asyncio
async def test_report_problem_applies_validated_adjustment(seeded) -> None:
    facilities = _by_name(await seeded.load_facilities())
    shelter = facilities["S"]

    outcome = await seeded.report_problem(shelter.id, {"facilityCondition": "bad", "reportedBy": "nurse"})

    assert outcome.validation.should_apply is True
    assert outcome.validation.point_adjustment == pytest.approx(28.0)
    assert seeded.ledger.get(shelter.id) == pytest.approx(28.0)
    assert _by_name(outcome.facilities)["S"].intervention_score == pytest.approx(51.5 + 28.0)
    reports = await seeded.sync.write_store.list_reports(facility_id=shelter.id)
    assert [report.reported_by for report in reports] == ["nurse"]
    assert reports[0].synced is False


@pytest.mark.asyncio
async def test_rejected_report_is_stored_without_adjustment(seeded) -> None:
    shelter = _by_name(await seeded.load_facilities())["S"]

    outcome = await seeded.report_problem(shelter.id, {"facilityCondition": "excellent"})

    assert outcome.validation.should_apply is False
    assert seeded.ledger.get(shelter.id) == 0.0
    assert len(await seeded.sync.write_store.list_reports()) == 1
    assert "did not significantly change priority" in outcome.explanation


@pytest.mark.asyncio
async def test_report_for_unknown_facility_raises(seeded) -> None:
    with pytest.raises(FacilityNotFoundError):
        await seeded.report_problem(404, {"facilityCondition": "bad"})


@pytest.mark.asyncio
async def test_failure_always_targets_online_store(seeded, store_pair) -> None:
    power = _by_name(await seeded.load_facilities())["P"]
    await seeded.set_connectivity(False)

    outcome = await seeded.simulate_failure(power.id)

    assert outcome.result.failed.status is FacilityStatus.FAILED
    assert outcome.suggestions[0] == "Deploy backup generator to critical facilities"
    assert (await store_pair.online.get_facility(power.id)).status is FacilityStatus.FAILED
    # 离线客户端在重新联网前看不到管理员操作
    assert (await store_pair.offline.get_facility(power.id)).status is FacilityStatus.OPERATIONAL
    assert _by_name(outcome.facilities)["P"].status is FacilityStatus.OPERATIONAL

    reconnect = await seeded.set_connectivity(True)

    assert reconnect.online is True
    assert reconnect.sync is not None
    assert reconnect.sync.reason == "failure_simulation_active"
    assert _by_name(reconnect.facilities)["P"].status is FacilityStatus.FAILED


@pytest.mark.asyncio
async def test_failure_then_resolution_restores_ranking(seeded) -> None:
    power = _by_name(await seeded.load_facilities())["P"]

    failure = await seeded.simulate_failure(power.id)
    ranked = failure.facilities

    assert ranked[0].name == "P"
    assert {item.name for item in failure.result.at_risk} == {"S", "W"}

    resolution = await seeded.resolve_failure(power.id)

    assert resolution.result.consistent is True
    assert {item.status for item in resolution.facilities} == {FacilityStatus.OPERATIONAL}
    assert [item.name for item in resolution.facilities] == ["S", "W", "P"]


@pytest.mark.asyncio
async def test_ledger_adjustment_survives_cascade(seeded) -> None:
    shelter = _by_name(await seeded.load_facilities())["S"]
    await seeded.report_problem(shelter.id, {"facilityCondition": "bad"})
    power = _by_name(await seeded.load_facilities())["P"]

    outcome = await seeded.simulate_failure(power.id)

    at_risk_shelter = _by_name(outcome.facilities)["S"]
    assert at_risk_shelter.status is FacilityStatus.AT_RISK
    assert seeded.ledger.get(shelter.id) == pytest.approx(28.0)
    assert at_risk_shelter.intervention_score > 500 + 28.0


@pytest.mark.asyncio
async def test_connections_are_coloured(seeded) -> None:
    power = _by_name(await seeded.load_facilities())["P"]
    await seeded.simulate_failure(power.id)

    views = await seeded.connections()

    colours = {(view.connection.target.name, view.color) for view in views}
    assert colours == {("P", ConnectionColor.RED), ("W", ConnectionColor.YELLOW)}


@pytest.mark.asyncio
async def test_clear_all_failures_and_helpers(seeded) -> None:
    facilities = _by_name(await seeded.load_facilities())
    await seeded.simulate_failure(facilities["W"].id)

    cleared = await seeded.clear_all_failures()

    assert {item.status for item in cleared} == {FacilityStatus.OPERATIONAL}
    assert len(await seeded.top_facilities(2)) == 2
    assert len(await seeded.rebuild_connections()) == 2
    assert len(await seeded.failure_suggestions(facilities["S"].id)) == 6
    with pytest.raises(FacilityNotFoundError):
        await seeded.failure_suggestions(404)
    assert seeded.ledger_stats().facility_count == 0


@pytest.mark.asyncio
async def test_start_clears_ledger(seeded) -> None:
    seeded.ledger.add(1, 10.0)

    await seeded.start()

    assert seeded.ledger.get(1) == 0.0


@pytest.mark.unit
def test_from_config_uses_configured_values(store_pair, monkeypatch) -> None:
    monkeypatch.setenv("STORE_BACKEND", "memory")
    monkeypatch.setenv("CASCADE_RADIUS_KM", "10")
    monkeypatch.setenv("START_ONLINE", "false")
    cfg = AppConfig.load_from_env()

    service = FacilityService.from_config(cfg, store_pair)

    assert service.simulator.radius_m == pytest.approx(10_000.0)
    assert service.sync.is_online is False
    with pytest.raises(ValueError):
        FacilityService(SyncManager(store_pair), connection_max_m=0)


class _YieldingStore(MemoryFacilityStore):
    """每次调用都让出事件循环，并记录调用发生时正在进行的管理员操作。"""

    def __init__(self, role: StoreRole) -> None:
        super().__init__(role)
        self.manager: SyncManager | None = None
        self.calls: list[tuple[str, str | None]] = []

    async def _yield(self, method: str) -> None:
        self.calls.append((method, self.manager.current_operation if self.manager else None))
        await asyncio.sleep(0)

    async def list_facilities(self, *args, **kwargs):
        await self._yield("list_facilities")
        return await super().list_facilities(*args, **kwargs)

    async def delete_dependencies(self) -> int:
        await self._yield("delete_dependencies")
        return await super().delete_dependencies()

    async def insert_dependency(self, edge) -> bool:
        await self._yield("insert_dependency")
        return await super().insert_dependency(edge)

    async def count_dependents(self, provider_id: int) -> int:
        await self._yield("count_dependents")
        return await super().count_dependents(provider_id)

    async def update_score(self, facility_id: int, score: float) -> None:
        await self._yield("update_score")
        await super().update_score(facility_id, score)


@pytest.mark.asyncio
async def test_load_does_not_interleave_with_failure_simulation(wps_facilities) -> None:
    online = _YieldingStore(StoreRole.ONLINE)
    pair = StorePair(online=online, offline=MemoryFacilityStore(StoreRole.OFFLINE))
    for record in wps_facilities:
        await online.insert_facility(record)
    manager = SyncManager(pair)
    online.manager = manager
    service = FacilityService(manager, verify_delay=0.001, at_risk_delay=0.001)
    await service.start()
    power = _by_name(await service.load_facilities())["P"]
    online.calls.clear()

    await asyncio.gather(service.simulate_failure(power.id), service.load_facilities(), service.load_facilities())

    rebuild_during_failure = [
        method
        for method, operation in online.calls
        if operation == "simulate_failure" and method in {"delete_dependencies", "insert_dependency"}
    ]
    assert rebuild_during_failure == []
    stored = await online.get_facility(power.id)
    assert stored.status is FacilityStatus.FAILED
    assert stored.intervention_score == pytest.approx(await score_facility(online, stored))
