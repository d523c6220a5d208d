"""Camera pose planning per camera mode.

Every mode centres on the current position. Non-overhead modes aim the
camera at a look-ahead point further along the path; a wider look-ahead
window gives a steadier heading through curves.
"""

from dataclasses import dataclass
from enum import Enum

from routefilm.geo.geometry import Coordinate, bearing, final_heading, point_at_distance
from routefilm.route.model import Route

# Look-ahead shorter than this counts as "already at the end of the path"
_END_EPSILON_KM = 1e-9


class CameraMode(str, Enum):
    LOCKED = "locked"
    FREE = "free"
    CINEMATIC = "cinematic"
    OVERHEAD = "overhead"


@dataclass(frozen=True)
class CameraPose:
    center: Coordinate
    bearing: float
    pitch: float
    zoom: float


@dataclass(frozen=True)
class CameraOverride:
    """Externally supplied values that replace the free-mode defaults."""

    bearing: float | None = None
    pitch: float | None = None
    zoom: float | None = None


@dataclass(frozen=True)
class CameraPolicy:
    look_ahead_km: float | None
    pitch: float
    zoom: float


CAMERA_POLICIES: dict[CameraMode, CameraPolicy] = {
    CameraMode.OVERHEAD: CameraPolicy(look_ahead_km=None, pitch=0.0, zoom=13.0),
    CameraMode.LOCKED: CameraPolicy(look_ahead_km=0.1, pitch=60.0, zoom=14.0),
    # TODO: decide whether free should stop following the heading instead of matching locked
    CameraMode.FREE: CameraPolicy(look_ahead_km=0.1, pitch=60.0, zoom=14.0),
    CameraMode.CINEMATIC: CameraPolicy(look_ahead_km=0.3, pitch=60.0, zoom=14.0),
}


def look_ahead_bearing(route: Route, distance_km: float, look_ahead_km: float) -> float:
    """Bearing from the point at ``distance_km`` to a point ``look_ahead_km`` further on.

    The look-ahead point is clamped to the path end. Once the current point
    reaches the end, the path's final heading is held.
    """
    total = route.path_length_km
    current = min(max(distance_km, 0.0), total)
    ahead = min(current + look_ahead_km, total)
    if ahead - current <= _END_EPSILON_KM:
        return final_heading(route.path)
    return bearing(point_at_distance(route.path, current), point_at_distance(route.path, ahead))


def plan_camera(
    route: Route,
    progress_fraction: float,
    mode: CameraMode,
    override: CameraOverride | None = None,
) -> CameraPose:
    """Camera pose for a progress fraction in [0, 1]."""
    mode = CameraMode(mode)
    policy = CAMERA_POLICIES[mode]
    distance = route.path_length_km * min(max(progress_fraction, 0.0), 1.0)
    center = point_at_distance(route.path, distance)

    if policy.look_ahead_km is None:
        pose = CameraPose(center=center, bearing=0.0, pitch=policy.pitch, zoom=policy.zoom)
    else:
        pose = CameraPose(
            center=center,
            bearing=look_ahead_bearing(route, distance, policy.look_ahead_km),
            pitch=policy.pitch,
            zoom=policy.zoom,
        )

    if mode is CameraMode.FREE and override is not None:
        pose = CameraPose(
            center=center,
            bearing=pose.bearing if override.bearing is None else override.bearing % 360.0,
            pitch=pose.pitch if override.pitch is None else override.pitch,
            zoom=pose.zoom if override.zoom is None else override.zoom,
        )
    return pose

