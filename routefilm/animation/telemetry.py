"""Progress, distance and remaining-time telemetry for a given frame."""

from dataclasses import dataclass
import math

from routefilm.route.model import Route

DEFAULT_NOMINAL_SPEED_KMH = 40.0


@dataclass(frozen=True)
class Telemetry:
    progress_fraction: float
    traveled_km: float
    remaining_minutes: float
    total_km: float


@dataclass(frozen=True)
class HudProps:
    """What the HUD overlay draws: formatted distance and time, progress 0-100."""

    distance: str
    time: str
    progress: float


def progress_fraction(frame_index: int, total_frames: int) -> float:
    """``frame_index / (total_frames - 1)`` capped at 1; a single-frame animation is complete at once.

    Raises:
        ValueError: For a negative frame index
    """
    if frame_index < 0:
        raise ValueError(f"frame_index must be >= 0, got {frame_index}")
    if total_frames <= 1:
        return 1.0
    return min(frame_index / (total_frames - 1), 1.0)


def compute_telemetry(
    route: Route,
    frame_index: int,
    total_frames: int,
    nominal_speed_kmh: float = DEFAULT_NOMINAL_SPEED_KMH,
) -> Telemetry:
    """Telemetry for one frame. Pure: identical inputs give identical outputs."""
    progress = progress_fraction(frame_index, total_frames)
    total_km = route.distance_km

    if route.total_duration_min is not None:
        total_minutes = route.total_duration_min
    else:
        total_minutes = total_km / nominal_speed_kmh * 60.0

    return Telemetry(
        progress_fraction=progress,
        traveled_km=total_km * progress,
        remaining_minutes=total_minutes * (1.0 - progress),
        total_km=total_km,
    )


def format_duration(minutes: float) -> str:
    """90 -> ``"1h 30m"``, 45.7 -> ``"45m"``."""
    minutes = max(minutes, 0.0)
    hours = math.floor(minutes / 60)
    rest = math.floor(minutes % 60)
    return f"{hours}h {rest}m" if hours > 0 else f"{rest}m"


def format_distance(km: float) -> str:
    return f"{km:.1f}"


def hud_props(telemetry: Telemetry) -> HudProps:
    return HudProps(
        distance=format_distance(telemetry.traveled_km),
        time=format_duration(telemetry.remaining_minutes),
        progress=telemetry.progress_fraction * 100.0,
    )
