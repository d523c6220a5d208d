"""Declarative commands the animation driver sends to a map render surface."""

import asyncio
from collections import deque
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Protocol

from routefilm.animation.camera import CameraPose
from routefilm.animation.telemetry import HudProps
from routefilm.errors import AssetLoadError, SurfaceInitError
from routefilm.geo.geometry import Coordinate
from routefilm.logging import get_logger


@dataclass(frozen=True)
class AddSource:
    source_id: str
    data: Mapping[str, Any]


@dataclass(frozen=True)
class AddLayer:
    layer_id: str
    source_id: str
    kind: str  # "line", "circle" or "symbol"
    paint: Mapping[str, Any] = field(default_factory=dict)
    visible: bool = True


@dataclass(frozen=True)
class SetSourceData:
    source_id: str
    data: Mapping[str, Any]


@dataclass(frozen=True)
class JumpTo:
    pose: CameraPose


SurfaceCommand = AddSource | AddLayer | SetSourceData | JumpTo


def geojson_features(data: Mapping[str, Any]) -> list[Mapping[str, Any]]:
    """Source data as a list of Features; a bare geometry becomes one Feature."""
    kind = data.get("type")
    if kind == "FeatureCollection":
        return list(data.get("features") or [])
    if kind == "Feature":
        return [data]
    return [{"type": "Feature", "properties": {}, "geometry": data}]


def geometry_coordinates(geometry: Mapping[str, Any]) -> list[Coordinate]:
    coords = geometry.get("coordinates")
    if not coords:
        return []
    if geometry.get("type") == "Point":
        return [tuple(coords)]
    return [tuple(c) for c in coords]


@dataclass(frozen=True)
class Diagnostic:
    """Static error output shown instead of a frame."""

    title: str
    message: str
    route_id: str | None = None


class MapSurface(Protocol):
    async def initialize(self, map_style: str, center: Coordinate) -> None:
        """Load the map style. Raises SurfaceInitError or AssetLoadError."""

    async def load_image(self, name: str, path: Path) -> None:
        """Register an icon image. Raises AssetLoadError."""

    def apply(self, commands: Sequence[SurfaceCommand]) -> None: ...

    def render_diagnostic(self, diagnostic: Diagnostic) -> None: ...

    def close(self) -> None: ...


class HudOverlay(Protocol):
    def update(self, props: HudProps) -> None: ...


class RecordingSurface:
    """In-memory surface that keeps the latest state of every source, layer and the camera.

    Used for dry runs and tests. Failures and slow style loads can be injected.
    Only the last ``history`` commands are kept in ``commands``; ``None`` keeps all.
    """

    def __init__(
        self,
        *,
        init_error: SurfaceInitError | None = None,
        image_error: AssetLoadError | None = None,
        style_delay: float = 0.0,
        history: int | None = 1000,
    ) -> None:
        self.init_error = init_error
        self.image_error = image_error
        self.style_delay = style_delay

        self.map_style: str | None = None
        self.images: dict[str, Path] = {}
        self.commands: deque[SurfaceCommand] = deque(maxlen=history)
        self.sources: dict[str, Mapping[str, Any]] = {}
        self.layers: dict[str, AddLayer] = {}
        self.camera: CameraPose | None = None
        self.hud: HudProps | None = None
        self.diagnostic: Diagnostic | None = None
        self.closed = False
        self.logger = get_logger(f"{__name__}.RecordingSurface")

    async def initialize(self, map_style: str, center: Coordinate) -> None:
        if self.style_delay:
            await asyncio.sleep(self.style_delay)
        if self.init_error is not None:
            raise self.init_error
        self.map_style = map_style
        self.logger.debug("Surface initialized", map_style=map_style, center=center)

    async def load_image(self, name: str, path: Path) -> None:
        if self.image_error is not None:
            raise self.image_error
        self.images[name] = path

    def apply(self, commands: Sequence[SurfaceCommand]) -> None:
        for command in commands:
            self.commands.append(command)
            if isinstance(command, AddSource | SetSourceData):
                self.sources[command.source_id] = command.data
            elif isinstance(command, AddLayer):
                self.layers[command.layer_id] = command
            elif isinstance(command, JumpTo):
                self.camera = command.pose

    def update(self, props: HudProps) -> None:
        self.hud = props

    def render_diagnostic(self, diagnostic: Diagnostic) -> None:
        self.diagnostic = diagnostic

    def close(self) -> None:
        self.closed = True
