from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional, Protocol, Sequence

import structlog
from psycopg.rows import DictRow
from psycopg_pool import AsyncConnectionPool

from facility_triage.config import AppConfig
from facility_triage.errors import StoreUnavailableError
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

logger = structlog.get_logger(__name__)


class FacilityStore(Protocol):
    """在线库与离线库共同实现的仓储接口。"""

    role: StoreRole

    async def list_facilities(
        self,
        status: Optional[FacilityStatus] = None,
        *,
        order_by_score: bool = True,
    ) -> list[FacilityRecord]:
        ...

    async def get_facility(self, facility_id: int) -> Optional[FacilityRecord]:
        ...

    async def count_facilities(self, status: Optional[FacilityStatus] = None) -> int:
        ...

    async def insert_facility(self, record: FacilityRecord) -> int:
        ...

    async def update_facility(self, record: FacilityRecord) -> bool:
        ...

    async def update_status(
        self,
        facility_id: int,
        status: FacilityStatus,
        *,
        unless_status: Optional[FacilityStatus] = None,
    ) -> bool:
        ...

    async def update_score(self, facility_id: int, score: float) -> None:
        ...

    async def find_facility_at(
        self,
        lat: float,
        lng: float,
        *,
        facility_type: Optional[FacilityType] = None,
    ) -> Optional[FacilityRecord]:
        ...

    async def list_dependencies(self) -> list[DependencyRecord]:
        ...

    async def count_dependents(self, provider_id: int) -> int:
        ...

    async def insert_dependency(self, edge: DependencyRecord) -> bool:
        ...

    async def delete_dependencies(self) -> int:
        ...

    async def insert_report(self, report: UserReportInput, *, synced: bool = False) -> int:
        ...

    async def append_report(self, report: UserReportRecord, *, synced: bool) -> int:
        """转存已有上报：分配本库新 id，保留原始 reported_at。"""
        ...

    async def list_reports(
        self,
        *,
        facility_id: Optional[int] = None,
        synced: Optional[bool] = None,
    ) -> list[UserReportRecord]:
        ...

    async def mark_reports_synced(self, ids: Optional[Sequence[int]] = None) -> int:
        ...

    async def get_sync_status(self, table_name: str) -> Optional[SyncStatusRecord]:
        ...

    async def mark_pending(self, table_name: str) -> None:
        ...

    async def stamp_synced(self, table_name: str) -> None:
        ...

    async def export_snapshot(self) -> StoreSnapshot:
        ...

    async def import_snapshot(self, snapshot: StoreSnapshot) -> None:
        ...

    async def reset(self) -> None:
        ...


@dataclass(slots=True)
class StorePair:
    """在线/离线两套同构存储。"""

    online: FacilityStore
    offline: FacilityStore
    _closers: list[Callable[[], Awaitable[None]]] = field(default_factory=list)

    def get(self, role: StoreRole) -> FacilityStore:
        if role is StoreRole.ONLINE:
            return self.online
        return self.offline

    def add_closer(self, closer: Callable[[], Awaitable[None]]) -> None:
        self._closers.append(closer)

    async def close(self) -> None:
        closers = list(self._closers)
        self._closers.clear()
        for closer in closers:
            await closer()
        logger.info("store_pair_closed", closers=len(closers))


def build_memory_store_pair() -> StorePair:
    from facility_triage.db.memory import MemoryFacilityStore

    return StorePair(
        online=MemoryFacilityStore(StoreRole.ONLINE),
        offline=MemoryFacilityStore(StoreRole.OFFLINE),
    )


async def build_store_pair(cfg: AppConfig) -> StorePair:
    """按 STORE_BACKEND 创建存储对；Postgres 模式下打开连接池并初始化 schema。"""
    if cfg.store_backend == "memory":
        logger.info("store_pair_built", backend="memory")
        return build_memory_store_pair()

    if not cfg.postgres_online_dsn:
        raise StoreUnavailableError("必须配置POSTGRES_ONLINE_DSN以启用Postgres存储")

    from facility_triage.db.dao import PostgresFacilityStore
    from facility_triage.db.schema import init_schema

    pools: dict[StoreRole, AsyncConnectionPool[DictRow]] = {}
    dsns = {
        StoreRole.ONLINE: cfg.postgres_online_dsn,
        StoreRole.OFFLINE: cfg.postgres_offline_dsn or cfg.postgres_online_dsn,
    }
    pair_args: dict[str, Any] = {}
    closers: list[Callable[[], Awaitable[None]]] = []
    for role, dsn in dsns.items():
        # 两个角色共用同一 DSN 时复用连接池，靠 schema 隔离
        shared = next((p for r, p in pools.items() if dsns[r] == dsn), None)
        if shared is None:
            pool: AsyncConnectionPool[DictRow] = AsyncConnectionPool(conninfo=dsn, min_size=1, max_size=cfg.pool_max_size, open=False)
            await pool.open()
            closers.append(pool.close)
        else:
            pool = shared
        pools[role] = pool
        await init_schema(pool, role)
        pair_args[role.value] = PostgresFacilityStore.create(pool, role)

    pair = StorePair(online=pair_args["online"], offline=pair_args["offline"])
    for closer in closers:
        pair.add_closer(closer)
    logger.info("store_pair_built", backend="postgres", pools=len(closers))
    return pair
