from __future__ import annotations

import math
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional

import structlog

from facility_triage.db.models import UserReportInput


@dataclass(slots=True)
class AdjustmentEntry:
    """单条已生效上报带来的加分。"""

    delta: float
    recorded_at: datetime
    report: Optional[UserReportInput] = None


@dataclass(slots=True)
class FacilityAdjustment:
    total: float = 0.0
    entries: list[AdjustmentEntry] = field(default_factory=list)

    @property
    def first_recorded_at(self) -> Optional[datetime]:
        return self.entries[0].recorded_at if self.entries else None

    @property
    def last_recorded_at(self) -> Optional[datetime]:
        return self.entries[-1].recorded_at if self.entries else None


@dataclass(slots=True, frozen=True)
class LedgerStats:
    facility_count: int
    total_adjustment: float
    average_adjustment: float


class AdjustmentLedger:
    """按设施累计用户上报加分，只存在于进程内。

    由服务实例持有，服务启动时清空；只接受非负增量，
    因此同一进程内每个设施的累计值单调不减。
    """

    def __init__(self) -> None:
        self._adjustments: dict[int, FacilityAdjustment] = {}
        self._logger = structlog.get_logger(__name__)

    def add(self, facility_id: int, delta: float, report: Optional[UserReportInput] = None) -> bool:
        if isinstance(delta, bool) or not isinstance(delta, (int, float)) or not math.isfinite(delta) or delta < 0:
            self._logger.warning("ledger_delta_rejected", facility_id=facility_id, delta=repr(delta))
            return False
        bucket = self._adjustments.setdefault(facility_id, FacilityAdjustment())
        bucket.total += float(delta)
        bucket.entries.append(AdjustmentEntry(float(delta), datetime.now(timezone.utc), report))
        self._logger.info(
            "ledger_adjustment_added",
            facility_id=facility_id,
            delta=round(float(delta), 1),
            total=round(bucket.total, 1),
            report_count=len(bucket.entries),
        )
        return True

    def get(self, facility_id: int) -> float:
        bucket = self._adjustments.get(facility_id)
        return bucket.total if bucket is not None else 0.0

    def entries(self, facility_id: int) -> list[AdjustmentEntry]:
        bucket = self._adjustments.get(facility_id)
        return list(bucket.entries) if bucket is not None else []

    def clear(self, facility_id: int) -> bool:
        return self._adjustments.pop(facility_id, None) is not None

    def clear_all(self) -> int:
        count = len(self._adjustments)
        self._adjustments.clear()
        self._logger.info("ledger_cleared", facility_count=count)
        return count

    def stats(self) -> LedgerStats:
        count = len(self._adjustments)
        total = sum(bucket.total for bucket in self._adjustments.values())
        return LedgerStats(count, total, total / count if count else 0.0)
