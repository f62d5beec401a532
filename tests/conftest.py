from __future__ import annotations

import asyncio
import inspect
import os
import sys
from pathlib import Path
from typing import Any, Optional

import pytest

ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, os.fspath(ROOT / "src"))

from facility_triage.db.models import (  # noqa: E402
    Condition,
    FacilityRecord,
    FacilityStatus,
    FacilityType,
    Importance,
    Level,
    StoreRole,
)
from facility_triage.db.memory import MemoryFacilityStore  # noqa: E402
from facility_triage.db.store import StorePair, build_memory_store_pair  # noqa: E402


# 配置pytest-anyio只使用asyncio后端（避免trio依赖）
@pytest.fixture(scope="session")
def anyio_backend():
    """配置pytest-anyio只使用asyncio后端"""
    return "asyncio"


@pytest.hookimpl(tryfirst=True)
def pytest_pyfunc_call(pyfuncitem: pytest.Function) -> Optional[bool]:
    """异步测试执行钩子（避免与 pytest-anyio 冲突）。

    若用例标注了 anyio/asyncio 等异步标记，则交由对应插件管理事件循环；
    仅在无任何异步插件接管时，才启用手动事件循环。
    """

    function = pyfuncitem.obj
    if not asyncio.iscoroutinefunction(function):
        return None

    if "anyio" in pyfuncitem.keywords or "asyncio" in pyfuncitem.keywords:
        return None

    signature = inspect.signature(function)
    accepted = {
        name: value
        for name, value in pyfuncitem.funcargs.items()
        if name in signature.parameters
    }

    loop = asyncio.new_event_loop()
    try:
        loop.run_until_complete(function(**accepted))
    finally:
        loop.close()
    return True


def _build_facility(
    facility_id: int = 0,
    *,
    name: str = "测试设施",
    type_: FacilityType = FacilityType.SHELTER,
    lat: float = 15.50,
    lng: float = 32.50,
    status: FacilityStatus = FacilityStatus.OPERATIONAL,
    condition: Condition = Condition.FAIR,
    supply: Optional[Level] = None,
    population: Optional[Level] = None,
    importance: Importance = Importance.MODERATE,
    **extra: Any,
) -> FacilityRecord:
    """测试用设施构造器，未给出的字段取中性默认值。"""
    return FacilityRecord(
        id=facility_id,
        name=name,
        type=type_,
        lat=lat,
        lng=lng,
        status=status,
        condition=condition,
        supply=supply,
        population=population,
        importance=importance,
        **extra,
    )


@pytest.fixture
def make_facility():
    return _build_facility


@pytest.fixture
def online_store() -> MemoryFacilityStore:
    return MemoryFacilityStore(StoreRole.ONLINE)


@pytest.fixture
def store_pair() -> StorePair:
    return build_memory_store_pair()


@pytest.fixture
def wps_facilities() -> list[FacilityRecord]:
    """水厂 W、电站 P、收容点 S 三设施场景。"""
    return [
        _build_facility(name="W", type_=FacilityType.WATER, lat=15.50, lng=32.50, supply=Level.MEDIUM),
        _build_facility(name="P", type_=FacilityType.POWER, lat=15.52, lng=32.52, supply=Level.MEDIUM),
        _build_facility(name="S", type_=FacilityType.SHELTER, lat=15.49, lng=32.49, population=Level.HIGH),
    ]


