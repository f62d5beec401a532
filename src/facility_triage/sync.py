# Copyright 2025 msq
"""
在线/离线存储选择与同步

- 普通读写跟随当前连通性选择在线或离线库
- 管理员操作（失效模拟/解除）始终写在线库
- 管理员操作与同步共用一把锁：操作进行中时同步直接跳过
"""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import AsyncIterator, Optional

import structlog
from prometheus_client import Counter

from facility_triage.db.models import FacilityStatus, StoreRole
from facility_triage.db.store import FacilityStore, StorePair
from facility_triage.ingest import IngestResult, PublicFacilityFeed, ingest_facilities

logger = structlog.get_logger(__name__)

SYNC_RUN_TOTAL = Counter("sync_run_total", "同步执行次数", ["result"])

# 同步完成后打时间戳的表
STAMPED_TABLES = ("facilities", "user_reports")


@dataclass(slots=True)
class SyncOutcome:
    skipped: bool
    reason: Optional[str] = None
    reports_merged: int = 0
    reports_marked: int = 0
    ingest: Optional[IngestResult] = None
    synced_at: Optional[datetime] = None


class SyncManager:
    def __init__(
        self,
        stores: StorePair,
        *,
        online: bool = True,
        feed: Optional[PublicFacilityFeed] = None,
    ) -> None:
        self._stores = stores
        self._online = online
        self._feed = feed
        self._admin_lock = asyncio.Lock()
        self._admin_operation: Optional[str] = None

    @property
    def is_online(self) -> bool:
        return self._online

    @property
    def stores(self) -> StorePair:
        return self._stores

    @property
    def read_store(self) -> FacilityStore:
        """普通读流量使用的存储。"""
        return self._stores.get(StoreRole.ONLINE if self._online else StoreRole.OFFLINE)

    @property
    def write_store(self) -> FacilityStore:
        return self.read_store

    @property
    def admin_store(self) -> FacilityStore:
        return self._stores.online

    @property
    def simulation_in_flight(self) -> bool:
        return self._admin_operation is not None

    @property
    def current_operation(self) -> Optional[str]:
        return self._admin_operation

    @asynccontextmanager
    async def admin_operation(self, name: str = "admin") -> AsyncIterator[FacilityStore]:
        """管理员操作令牌：持有期间同步不会执行，返回在线库。"""
        async with self._admin_lock:
            self._admin_operation = name
            logger.info("admin_operation_started", operation=name)
            try:
                yield self._stores.online
            finally:
                self._admin_operation = None
                logger.info("admin_operation_finished", operation=name)

    @asynccontextmanager
    async def store_writes(self) -> AsyncIterator[FacilityStore]:
        """普通写路径（连接重建、回写分数、保存上报）的令牌。

        与管理员操作共用同一把锁，同一存储上的写入不会与失效模拟交错；
        进入时按当前连通性选定存储。
        """
        async with self._admin_lock:
            yield self.write_store

    async def set_connectivity(self, online: bool) -> Optional[SyncOutcome]:
        """切换连通性：离线转在线触发同步，在线转离线把在线库复制到离线库。"""
        if online == self._online:
            return None
        self._online = online
        logger.info("connectivity_changed", online=online)
        if online:
            return await self.sync()
        async with self._admin_lock:
            await self.copy_online_to_offline()
        return None

    async def sync(self) -> SyncOutcome:
        if self._admin_lock.locked():
            if self._admin_operation is None:
                return self._skip("store_write_in_flight")
            return self._skip("admin_operation_in_flight", operation=self._admin_operation)
        if not self._online:
            return self._skip("offline")

        async with self._admin_lock:
            online = self._stores.online
            failed = await online.count_facilities(FacilityStatus.FAILED)
            at_risk = await online.count_facilities(FacilityStatus.AT_RISK)
            if failed or at_risk:
                return self._skip("failure_simulation_active", failed=failed, at_risk=at_risk)

            merged = await self._merge_offline_reports()
            marked = await online.mark_reports_synced()
            ingest = await ingest_facilities(online, self._feed) if self._feed is not None else None
            for table in STAMPED_TABLES:
                try:
                    await online.stamp_synced(table)
                except Exception as exc:
                    logger.warning("sync_status_stamp_failed", table=table, error=str(exc))
            await self.copy_online_to_offline()

        synced_at = datetime.now(timezone.utc)
        SYNC_RUN_TOTAL.labels("completed").inc()
        logger.info(
            "sync_completed",
            reports_merged=merged,
            reports_marked=marked,
            ingested=ingest.total if ingest else 0,
        )
        return SyncOutcome(
            skipped=False,
            reports_merged=merged,
            reports_marked=marked,
            ingest=ingest,
            synced_at=synced_at,
        )

    def _skip(self, reason: str, **fields: object) -> SyncOutcome:
        SYNC_RUN_TOTAL.labels("skipped").inc()
        logger.info("sync_skipped", reason=reason, **fields)
        return SyncOutcome(skipped=True, reason=reason)

    async def _merge_offline_reports(self) -> int:
        """离线库中未同步的上报写入在线库（标记已同步），再在离线库标记已同步。"""
        offline = self._stores.offline
        pending = await offline.list_reports(synced=False)
        if not pending:
            return 0
        online = self._stores.online
        for report in pending:
            await online.append_report(report, synced=True)
        await offline.mark_reports_synced([report.id for report in pending])
        logger.info("sync_offline_reports_merged", count=len(pending))
        return len(pending)

    async def copy_online_to_offline(self) -> None:
        """用在线库整体覆盖离线库，离线库中尚未同步的上报保留。"""
        offline = self._stores.offline
        pending = await offline.list_reports(synced=False)
        snapshot = await self._stores.online.export_snapshot()
        await offline.import_snapshot(snapshot)
        for report in pending:
            await offline.append_report(report, synced=False)
        logger.info(
            "sync_online_copied_to_offline",
            facilities=len(snapshot.facilities),
            kept_pending_reports=len(pending),
        )

    async def run_periodic(self, interval_seconds: float) -> None:
        """后台周期同步，可在 FastAPI 启动时调度。"""
        if interval_seconds <= 0:
            raise ValueError("interval_seconds 必须大于 0")
        logger.info("sync_periodic_started", interval_seconds=interval_seconds)
        try:
            while True:
                await asyncio.sleep(interval_seconds)
                if not self._online:
                    continue
                try:
                    await self.sync()
                except Exception as exc:
                    # 同步失败不终止后台循环，下个周期重试
                    logger.exception("sync_periodic_failed", error=str(exc))
        except asyncio.CancelledError:
            logger.info("sync_periodic_cancelled")
            raise
