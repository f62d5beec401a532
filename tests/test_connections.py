from __future__ import annotations

import pytest

from facility_triage.connections import (
    ConnectionColor,
    build_connections,
    connection_color,
    find_nearest_of_type,
    rebuild_connections,
    resolve_connections,
    required_connections,
)
from facility_triage.db.models import (
    Connection,
    ConnectionEndpoint,
    DependencyRecord,
    DependencyType,
    FacilityStatus,
    FacilityType,
)


@pytest.mark.unit
def test_required_connections_by_type() -> None:
    assert required_connections(FacilityType.SHELTER) == (FacilityType.POWER, FacilityType.WATER)
    assert required_connections(FacilityType.HOSPITAL) == (FacilityType.POWER, FacilityType.WATER)
    assert required_connections(FacilityType.FOOD) == (FacilityType.POWER, FacilityType.WATER)
    assert required_connections(FacilityType.POWER) == ()
    assert required_connections(FacilityType.WATER) == ()


@pytest.mark.unit
def test_shelter_connects_to_nearest_power_and_water(make_facility) -> None:
    facilities = [
        make_facility(1, name="W", type_=FacilityType.WATER, lat=15.50, lng=32.50),
        make_facility(2, name="P", type_=FacilityType.POWER, lat=15.52, lng=32.52),
        make_facility(3, name="S", type_=FacilityType.SHELTER, lat=15.49, lng=32.49),
        make_facility(4, name="far power", type_=FacilityType.POWER, lat=16.50, lng=33.50),
    ]

    edges = build_connections(facilities)

    assert [(edge.dependent_id, edge.provider_id, edge.dependency_type) for edge in edges] == [
        (3, 2, DependencyType.POWER),
        (3, 1, DependencyType.WATER),
    ]


@pytest.mark.unit
def test_no_edge_beyond_max_distance(make_facility) -> None:
    facilities = [
        make_facility(1, type_=FacilityType.SHELTER, lat=15.50, lng=32.50),
        make_facility(2, type_=FacilityType.POWER, lat=15.60, lng=32.60),
        make_facility(3, type_=FacilityType.WATER, lat=19.6158, lng=37.2164),
    ]

    edges = build_connections(facilities)

    assert [(edge.provider_id, edge.dependency_type) for edge in edges] == [(2, DependencyType.POWER)]
    assert build_connections(facilities, max_distance_m=1_000) == []


@pytest.mark.unit
def test_equidistant_providers_keep_first(make_facility) -> None:
    shelter = make_facility(1, type_=FacilityType.SHELTER, lat=0.0, lng=0.0)
    first = make_facility(2, type_=FacilityType.POWER, lat=0.0, lng=0.5)
    second = make_facility(3, type_=FacilityType.POWER, lat=0.0, lng=-0.5)

    nearest = find_nearest_of_type(shelter, [shelter, first, second], FacilityType.POWER)

    assert nearest is not None
    assert nearest[0].id == 2


@pytest.mark.asyncio
async def test_rebuild_connections_replaces_edges(online_store, wps_facilities) -> None:
    for record in wps_facilities:
        await online_store.insert_facility(record)
    facilities = await online_store.list_facilities(order_by_score=False)

    first = await rebuild_connections(online_store, facilities)
    second = await rebuild_connections(online_store, facilities)

    assert len(first) == len(second) == 2
    dependencies = await online_store.list_dependencies()
    assert {(edge.dependent_id, edge.provider_id) for edge in dependencies} == {(3, 1), (3, 2)}
    assert await online_store.count_dependents(2) == 1
    assert await online_store.count_dependents(3) == 0


@pytest.mark.asyncio
async def test_resolve_connections_drops_dangling_edges(online_store, wps_facilities) -> None:
    for record in wps_facilities:
        await online_store.insert_facility(record)
    await rebuild_connections(online_store, await online_store.list_facilities(order_by_score=False))
    # 直接写入一条指向不存在设施的边
    await online_store.insert_dependency(DependencyRecord(dependent_id=3, provider_id=99, dependency_type=DependencyType.POWER))

    connections = await resolve_connections(online_store)

    assert len(connections) == 2
    assert {item.target.name for item in connections} == {"W", "P"}
    assert all(item.source.name == "S" for item in connections)
    assert all(item.distance_m > 0 for item in connections)


def _endpoint(facility_id: int, status: FacilityStatus = FacilityStatus.OPERATIONAL) -> ConnectionEndpoint:
    return ConnectionEndpoint(
        id=facility_id,
        name=f"F{facility_id}",
        type=FacilityType.SHELTER,
        lat=15.5,
        lng=32.5,
        status=status,
        score=0.0,
    )


@pytest.mark.unit
def test_connection_color_priority(make_facility) -> None:
    top = [make_facility(7), make_facility(8), make_facility(9), make_facility(1)]
    failed_edge = Connection(_endpoint(1, FacilityStatus.FAILED), _endpoint(2), DependencyType.POWER, 10.0)
    top_edge = Connection(_endpoint(2), _endpoint(8), DependencyType.WATER, 10.0)
    plain_edge = Connection(_endpoint(1), _endpoint(2), DependencyType.WATER, 10.0)

    assert connection_color(failed_edge, top) is ConnectionColor.RED
    assert connection_color(top_edge, top) is ConnectionColor.YELLOW
    assert connection_color(plain_edge, top) is ConnectionColor.GREEN
