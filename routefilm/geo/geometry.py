"""Great-circle helpers over ordered (longitude, latitude) paths.

Distances use the haversine formula on a sphere of radius ``EARTH_RADIUS_KM``.
Within a segment, positions are interpolated linearly in lng/lat by the
fraction of the segment's arc length, so vertices are always hit exactly.
"""

from collections.abc import Sequence
import math

import numpy as np

EARTH_RADIUS_KM = 6371.0088

Coordinate = tuple[float, float]


def haversine_km(a: Coordinate, b: Coordinate) -> float:
    """Great-circle distance between two (lng, lat) points in kilometres."""
    a_lng, a_lat = a
    b_lng, b_lat = b
    phi1 = math.radians(a_lat)
    phi2 = math.radians(b_lat)
    dphi = math.radians(b_lat - a_lat)
    dlmb = math.radians(b_lng - a_lng)

    s = math.sin(dphi / 2) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(dlmb / 2) ** 2
    return 2 * EARTH_RADIUS_KM * math.asin(min(1.0, math.sqrt(s)))


def segment_lengths(path: Sequence[Coordinate]) -> np.ndarray:
    """Length of every consecutive segment, ``len(path) - 1`` entries."""
    return np.array([haversine_km(path[i - 1], path[i]) for i in range(1, len(path))], dtype=float)


def cumulative_distances(path: Sequence[Coordinate]) -> np.ndarray:
    """Arc length from the first point to every vertex; starts at 0."""
    if len(path) == 0:
        return np.zeros(0, dtype=float)
    return np.concatenate(([0.0], np.cumsum(segment_lengths(path))))


def path_length(path: Sequence[Coordinate]) -> float:
    """Total great-circle length in km. Single-point and empty paths have length 0."""
    if len(path) < 2:
        return 0.0
    return float(cumulative_distances(path)[-1])


def _interpolate(a: Coordinate, b: Coordinate, t: float) -> Coordinate:
    return (float(a[0] + t * (b[0] - a[0])), float(a[1] + t * (b[1] - a[1])))


def _point_on_cumulative(path: Sequence[Coordinate], cumulative: np.ndarray, distance_km: float) -> Coordinate:
    total = float(cumulative[-1])
    if total == 0:
        return (float(path[0][0]), float(path[0][1]))

    d = min(max(distance_km, 0.0), total)
    # Last vertex whose cumulative distance is <= d; skips zero-length segments
    idx = int(np.searchsorted(cumulative, d, side="right")) - 1
    if idx >= len(path) - 1:
        return (float(path[-1][0]), float(path[-1][1]))
    if cumulative[idx] == d:
        return (float(path[idx][0]), float(path[idx][1]))

    seg = float(cumulative[idx + 1] - cumulative[idx])
    return _interpolate(path[idx], path[idx + 1], (d - float(cumulative[idx])) / seg)


def point_at_distance(path: Sequence[Coordinate], distance_km: float) -> Coordinate:
    """Point ``distance_km`` along the path, clamped to ``[0, path_length]``.

    Raises:
        ValueError: If the path is empty
    """
    if len(path) == 0:
        raise ValueError("Cannot locate a point on an empty path")
    if len(path) == 1:
        return (float(path[0][0]), float(path[0][1]))
    return _point_on_cumulative(path, cumulative_distances(path), distance_km)


def bearing(p1: Coordinate, p2: Coordinate) -> float:
    """Initial compass bearing from p1 to p2 in degrees, normalized to [0, 360)."""
    phi1 = math.radians(p1[1])
    phi2 = math.radians(p2[1])
    dlmb = math.radians(p2[0] - p1[0])

    y = math.sin(dlmb) * math.cos(phi2)
    x = math.cos(phi1) * math.sin(phi2) - math.sin(phi1) * math.cos(phi2) * math.cos(dlmb)
    return (math.degrees(math.atan2(y, x)) + 360.0) % 360.0


def final_heading(path: Sequence[Coordinate]) -> float:
    """Bearing of the last non-degenerate segment; 0 when the path has no length."""
    end = path[-1]
    for point in reversed(path[:-1]):
        if haversine_km(point, end) > 0:
            return bearing(point, end)
    return 0.0


def slice_along(path: Sequence[Coordinate], start_km: float, stop_km: float) -> list[Coordinate]:
    """Contiguous part of the path between two arc-length positions.

    Both endpoints are interpolated and included; vertices strictly between
    them are kept. Positions are clamped to the path and ordered, so the
    result always has at least two points (identical when start == stop).
    """
    if len(path) == 0:
        raise ValueError("Cannot slice an empty path")
    cumulative = cumulative_distances(path)
    total = float(cumulative[-1])
    start = min(max(min(start_km, stop_km), 0.0), total)
    stop = min(max(max(start_km, stop_km), 0.0), total)

    first = _point_on_cumulative(path, cumulative, start) if len(path) > 1 else tuple(path[0])
    last = _point_on_cumulative(path, cumulative, stop) if len(path) > 1 else tuple(path[0])

    sliced: list[Coordinate] = [first]
    for i in range(len(path)):
        if start < cumulative[i] < stop:
            sliced.append((float(path[i][0]), float(path[i][1])))
    sliced.append(last)
    return sliced


def locate_point(path: Sequence[Coordinate], point: Coordinate) -> float:
    """Arc-length position (km) of the path location nearest to ``point``.

    Projection onto each segment is done in a locally scaled lng/lat plane;
    the nearest candidate is chosen by great-circle distance. Ties resolve to
    the earliest segment.
    """
    if len(path) < 2:
        return 0.0
    cumulative = cumulative_distances(path)
    best_distance = math.inf
    best_position = 0.0
    for i in range(len(path) - 1):
        a, b = path[i], path[i + 1]
        scale = math.cos(math.radians((a[1] + b[1]) / 2))
        dx, dy = (b[0] - a[0]) * scale, b[1] - a[1]
        denom = dx * dx + dy * dy
        if denom == 0:
            t = 0.0
        else:
            t = ((point[0] - a[0]) * scale * dx + (point[1] - a[1]) * dy) / denom
            t = min(max(t, 0.0), 1.0)
        candidate = _interpolate(a, b, t)
        distance = haversine_km(point, candidate)
        if distance < best_distance:
            best_distance = distance
            best_position = float(cumulative[i] + t * (cumulative[i + 1] - cumulative[i]))
    return best_position


def sub_path(path: Sequence[Coordinate], from_point: Coordinate, to_point: Coordinate) -> list[Coordinate]:
    """Slice of the path between the locations nearest to two points, endpoints included."""
    return slice_along(path, locate_point(path, from_point), locate_point(path, to_point))


def bounds(path: Sequence[Coordinate]) -> tuple[float, float, float, float]:
    """(min_lng, min_lat, max_lng, max_lat) of the path."""
    lngs = [p[0] for p in path]
    lats = [p[1] for p in path]
    return (min(lngs), min(lats), max(lngs), max(lats))
