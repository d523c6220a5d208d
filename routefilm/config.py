"""Animation parameters, composition settings and credentials."""

from collections.abc import Mapping
from dataclasses import dataclass, field
import os
from pathlib import Path
from typing import Any

from routefilm.animation.camera import CameraMode, CameraOverride
from routefilm.animation.telemetry import DEFAULT_NOMINAL_SPEED_KMH

WATCHDOG_TIMEOUT_SECONDS = 30.0
DEFAULT_ROUTE_COLLECTION = "published_routes"
DEFAULT_MAP_STYLE = "streets-v11"
DEFAULT_STATIC_ROUTE_PATH = Path("assets/route.json")

MAPBOX_PUBLIC_TOKEN_ENVS = ("MAPBOX_PUBLIC_TOKEN", "MAPBOX_ACCESS_TOKEN")
MAPBOX_SECRET_TOKEN_ENV = "MAPBOX_SECRET_TOKEN"


@dataclass(frozen=True)
class CompositionSettings:
    """Output video geometry and the composition's frame clock."""

    fps: int = 30
    width: int = 1280
    height: int = 720
    duration_in_frames: int = 300


@dataclass(frozen=True)
class AnimationParameters:
    """Per-render animation toggles. All optional, defaults match the stock composition."""

    show_waypoints: bool = True
    map_style: str = DEFAULT_MAP_STYLE
    camera_mode: CameraMode = CameraMode.CINEMATIC
    reveal_path: bool = False
    animation_duration: int | None = None
    nominal_speed_kmh: float = DEFAULT_NOMINAL_SPEED_KMH
    marker_icon: Path | None = None
    camera_override: CameraOverride | None = field(default=None)

    def __post_init__(self) -> None:
        if self.animation_duration is not None and self.animation_duration < 1:
            raise ValueError(f"animation_duration must be >= 1, got {self.animation_duration}")
        if self.nominal_speed_kmh <= 0:
            raise ValueError(f"nominal_speed_kmh must be positive, got {self.nominal_speed_kmh}")

    def effective_duration(self, composition_frames: int) -> int:
        """Frame count the animation is spread over."""
        return self.animation_duration or composition_frames

    @classmethod
    def from_props(cls, props: Mapping[str, Any]) -> "AnimationParameters":
        """Build parameters from camelCase render props (as passed on the command line).

        Raises:
            ValueError: For an unknown camera mode or invalid numeric values
        """
        kwargs: dict[str, Any] = {}
        if "showWaypoints" in props:
            kwargs["show_waypoints"] = bool(props["showWaypoints"])
        if props.get("mapStyle"):
            kwargs["map_style"] = str(props["mapStyle"])
        if props.get("cameraMode"):
            kwargs["camera_mode"] = CameraMode(props["cameraMode"])
        if "revealPath" in props:
            kwargs["reveal_path"] = bool(props["revealPath"])
        if props.get("animationDuration") is not None:
            kwargs["animation_duration"] = int(props["animationDuration"])
        if props.get("nominalSpeedKmh") is not None:
            kwargs["nominal_speed_kmh"] = float(props["nominalSpeedKmh"])
        if props.get("markerIcon"):
            kwargs["marker_icon"] = Path(props["markerIcon"])
        override = props.get("cameraOverride")
        if override:
            kwargs["camera_override"] = CameraOverride(
                bearing=override.get("bearing"),
                pitch=override.get("pitch"),
                zoom=override.get("zoom"),
            )
        return cls(**kwargs)


def mapbox_public_token(env: Mapping[str, str] | None = None) -> str | None:
    """Token used by the map surface to fetch style tiles."""
    env = os.environ if env is None else env
    for name in MAPBOX_PUBLIC_TOKEN_ENVS:
        token = env.get(name)
        if token:
            return token
    return None


def mapbox_directions_token(env: Mapping[str, str] | None = None) -> str | None:
    """Token for the directions and geocoding APIs; prefers the secret token."""
    env = os.environ if env is None else env
    return env.get(MAPBOX_SECRET_TOKEN_ENV) or mapbox_public_token(env)
