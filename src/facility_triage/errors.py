from __future__ import annotations


class FacilityTriageError(Exception):
    """本包所有业务异常的基类。"""


class FacilityNotFoundError(FacilityTriageError):
    """指定的设施在存储中不存在。"""

    def __init__(self, facility_id: int) -> None:
        super().__init__(f"Facility {facility_id} not found")
        self.facility_id = facility_id


class InconsistentWriteError(FacilityTriageError):
    """状态写入后回读校验在重试耗尽后仍不一致。"""

    def __init__(self, facility_id: int, expected: str, observed: str | None, attempts: int) -> None:
        super().__init__(
            f"Facility {facility_id} status verification failed after {attempts} attempts: "
            f"expected {expected!r}, got {observed!r}"
        )
        self.facility_id = facility_id
        self.expected = expected
        self.observed = observed
        self.attempts = attempts


class StoreUnavailableError(FacilityTriageError):
    """存储后端未初始化或不可用。"""
