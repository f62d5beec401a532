from __future__ import annotations

import math
from typing import Iterable, Optional, Tuple

from facility_triage.db.models import FacilityRecord

EARTH_RADIUS_M = 6_371_000.0


def haversine_meters(lat1: float, lng1: float, lat2: float, lng2: float) -> float:
    """两点间大圆距离（米）。"""
    d_lat = math.radians(lat2 - lat1)
    d_lng = math.radians(lng2 - lng1)
    a = (
        math.sin(d_lat / 2) ** 2
        + math.cos(math.radians(lat1)) * math.cos(math.radians(lat2)) * math.sin(d_lng / 2) ** 2
    )
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))
    return EARTH_RADIUS_M * c


def bearing_degrees(lat1: float, lng1: float, lat2: float, lng2: float) -> float:
    """起点指向终点的方位角，范围 [0, 360)。"""
    d_lng = math.radians(lng2 - lng1)
    lat1_rad = math.radians(lat1)
    lat2_rad = math.radians(lat2)
    y = math.sin(d_lng) * math.cos(lat2_rad)
    x = math.cos(lat1_rad) * math.sin(lat2_rad) - math.sin(lat1_rad) * math.cos(lat2_rad) * math.cos(d_lng)
    return (math.degrees(math.atan2(y, x)) + 360.0) % 360.0


def facility_distance(a: FacilityRecord, b: FacilityRecord) -> float:
    return haversine_meters(a.lat, a.lng, b.lat, b.lng)


def find_nearest(
    lat: float,
    lng: float,
    facilities: Iterable[FacilityRecord],
) -> Optional[Tuple[FacilityRecord, float]]:
    """返回距离最近的设施及距离；距离相同时保留先出现者。"""
    nearest: Optional[Tuple[FacilityRecord, float]] = None
    for facility in facilities:
        distance = haversine_meters(lat, lng, facility.lat, facility.lng)
        if nearest is None or distance < nearest[1]:
            nearest = (facility, distance)
    return nearest


def format_distance(meters: float) -> str:
    if meters < 1000:
        return f"{int(math.floor(meters + 0.5))}m"
    return f"{meters / 1000:.1f}km"
