"""
Route corridor construction.

A corridor is the polygon of acceptable deviation around a planned route,
built by offsetting each segment's start point perpendicular to the segment
bearing on both sides.
"""
import logging
import math
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Protocol, Sequence

from .config import config

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class GeoPoint:
    lat: float
    lon: float


@dataclass(frozen=True)
class Corridor:
    points: List[GeoPoint] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not self.points

    def to_geojson(self) -> dict:
        """GeoJSON polygon (lon, lat order). The ring is closed once it has three points."""
        ring = [[p.lon, p.lat] for p in self.points]
        if len(ring) >= 3 and ring[0] != ring[-1]:
            ring.append(ring[0])
        return {"type": "Polygon", "coordinates": [ring] if ring else []}


@dataclass(frozen=True)
class RouteGeometry:
    path: List[GeoPoint]
    distance_m: float
    expected_duration_s: float


class RouteProvider(Protocol):
    def route(self, start_address: str, end_address: str) -> RouteGeometry:
        ...


def initial_bearing(start: GeoPoint, end: GeoPoint) -> float:
    """Great-circle initial bearing from ``start`` to ``end`` in degrees (-180, 180]."""
    lat1 = math.radians(start.lat)
    lat2 = math.radians(end.lat)
    d_lon = math.radians(end.lon - start.lon)

    y = math.sin(d_lon) * math.cos(lat2)
    x = math.cos(lat1) * math.sin(lat2) - math.sin(lat1) * math.cos(lat2) * math.cos(d_lon)
    return math.degrees(math.atan2(y, x))


def destination_point(origin: GeoPoint, bearing_deg: float, angular_distance: float) -> GeoPoint:
    """Point reached from ``origin`` along ``bearing_deg`` after ``angular_distance`` radians."""
    bearing = math.radians(bearing_deg)
    lat1 = math.radians(origin.lat)
    lon1 = math.radians(origin.lon)

    lat2 = math.asin(
        math.sin(lat1) * math.cos(angular_distance) +
        math.cos(lat1) * math.sin(angular_distance) * math.cos(bearing)
    )
    lon2 = lon1 + math.atan2(
        math.sin(bearing) * math.sin(angular_distance) * math.cos(lat1),
        math.cos(angular_distance) - math.sin(lat1) * math.sin(lat2)
    )
    return GeoPoint(lat=math.degrees(lat2), lon=math.degrees(lon2))


def haversine_m(p1: GeoPoint, p2: GeoPoint, radius_m: Optional[float] = None) -> float:
    """Calculate distance between two points in meters using Haversine formula."""
    R = radius_m or config.earth_radius_m

    lat1_rad = math.radians(p1.lat)
    lat2_rad = math.radians(p2.lat)
    dlat = lat2_rad - lat1_rad
    dlon = math.radians(p2.lon - p1.lon)

    a = math.sin(dlat/2)**2 + math.cos(lat1_rad) * math.cos(lat2_rad) * math.sin(dlon/2)**2
    c = 2 * math.asin(math.sqrt(a))

    return R * c


def build_corridor(
    path: Sequence[GeoPoint],
    tolerance_m: Optional[float] = None,
    earth_radius_m: Optional[float] = None,
    close_final_point: Optional[bool] = None
) -> Corridor:
    """
    Build the deviation corridor around ``path``.

    For each segment (p[i], p[i+1]) the left (bearing - 90) and then the right
    (bearing + 90) offset of p[i] are appended. The last path point gets no
    offsets unless ``close_final_point`` is set, in which case it is offset
    with the final segment's bearing. Fewer than two points give an empty
    corridor.
    """
    tolerance_m = config.corridor_tolerance_m if tolerance_m is None else tolerance_m
    earth_radius_m = earth_radius_m or config.earth_radius_m
    if close_final_point is None:
        close_final_point = config.corridor_close_final_point

    if len(path) < 2:
        return Corridor()

    angular_distance = tolerance_m / earth_radius_m
    points = []
    bearing = 0.0
    for current, following in zip(path, path[1:]):
        bearing = initial_bearing(current, following)
        points.append(destination_point(current, bearing - 90, angular_distance))
        points.append(destination_point(current, bearing + 90, angular_distance))

    if close_final_point:
        last = path[-1]
        points.append(destination_point(last, bearing - 90, angular_distance))
        points.append(destination_point(last, bearing + 90, angular_distance))

    return Corridor(points=points)


def build_trip_corridors(
    trips: Iterable,
    provider: RouteProvider,
    tolerance_m: Optional[float] = None
) -> Dict[str, Optional[Corridor]]:
    """Route each trip and build its corridor. A failing trip maps to None."""
    corridors = {}
    for trip in trips:
        try:
            route = provider.route(trip.start_location, trip.end_location)
            corridors[trip.id] = build_corridor(route.path, tolerance_m)
        except Exception as e:
            logger.warning("Could not build corridor for trip %s: %s", trip.id, e)
            corridors[trip.id] = None
    return corridors
