"""Frame-driven route animation driver.

The driver owns one render session::

    Idle -> Loading -> Ready -> Rendering -> Disposed
               \\-> Error <-/

``load()`` picks a route source, resolves chain-form routes through a
directions resolver, initializes the render surface and emits layer setup
commands. A watchdog bounds the whole Loading phase. After that,
``render_frame(n)`` is a pure function of ``n`` and the route: seeking to a
frame gives exactly the output sequential playback would.
"""

import asyncio
from collections.abc import Sequence
from dataclasses import dataclass
from enum import Enum
from typing import Any, Protocol

from shapely.geometry import LineString, Point, mapping

from routefilm.animation.camera import CameraPose, plan_camera
from routefilm.animation.telemetry import HudProps, Telemetry, compute_telemetry, hud_props
from routefilm.config import WATCHDOG_TIMEOUT_SECONDS, AnimationParameters
from routefilm.errors import (
    AssetLoadError,
    InvalidRouteError,
    RouteFilmError,
    RouteResolutionError,
    RouteSourceError,
    SurfaceInitError,
)
from routefilm.geo.geometry import Coordinate, point_at_distance, slice_along
from routefilm.logging import get_logger
from routefilm.render.commands import (
    AddLayer,
    AddSource,
    Diagnostic,
    HudOverlay,
    JumpTo,
    MapSurface,
    SetSourceData,
    SurfaceCommand,
)
from routefilm.route.model import ExternalRouteRequest, Route, parse_route_document
from routefilm.route.sources import RouteSource, select_source

MARKER_IMAGE = "custom-marker"
ROUTE_COLOR = "#3b9ddd"


class DriverState(str, Enum):
    IDLE = "idle"
    LOADING = "loading"
    READY = "ready"
    RENDERING = "rendering"
    ERROR = "error"
    DISPOSED = "disposed"


class DirectionsResolver(Protocol):
    async def directions(self, request: ExternalRouteRequest) -> Route: ...


@dataclass(frozen=True)
class AnimationState:
    """Everything derived for one frame. Recomputed from scratch every frame."""

    frame_index: int
    total_frames: int
    progress: float
    traveled_km: float
    current_position: Coordinate
    camera_pose: CameraPose
    telemetry: Telemetry


@dataclass(frozen=True)
class FrameOutput:
    frame_index: int
    state: DriverState
    commands: tuple[SurfaceCommand, ...] = ()
    hud: HudProps | None = None
    diagnostic: Diagnostic | None = None


def compute_animation_state(
    route: Route,
    frame_index: int,
    total_frames: int,
    params: AnimationParameters,
) -> AnimationState:
    telemetry = compute_telemetry(route, frame_index, total_frames, params.nominal_speed_kmh)
    position = point_at_distance(route.path, route.path_length_km * telemetry.progress_fraction)
    pose = plan_camera(route, telemetry.progress_fraction, params.camera_mode, params.camera_override)
    return AnimationState(
        frame_index=frame_index,
        total_frames=total_frames,
        progress=telemetry.progress_fraction,
        traveled_km=telemetry.traveled_km,
        current_position=position,
        camera_pose=pose,
        telemetry=telemetry,
    )


def _feature(geometry: dict[str, Any], **properties: Any) -> dict[str, Any]:  # noqa: ANN401
    return {"type": "Feature", "properties": properties, "geometry": geometry}


def point_collection(position: Coordinate) -> dict[str, Any]:
    return {"type": "FeatureCollection", "features": [_feature(mapping(Point(position)))]}


def setup_commands(route: Route, params: AnimationParameters, *, marker_icon_loaded: bool) -> list[SurfaceCommand]:
    """Sources and layers added once the surface is up, drawn in list order."""
    line_paint = {"line-color": ROUTE_COLOR, "line-width": 8}
    commands: list[SurfaceCommand] = [AddSource("route", route.line_feature())]

    if params.reveal_path:
        commands.append(
            AddLayer("route-bg", "route", "line", {"line-color": "#cccccc", "line-width": 8, "line-opacity": 0.5})
        )

    commands += [
        AddSource("progress", _feature({"type": "LineString", "coordinates": []})),
        AddLayer("progress-line", "progress", "line", line_paint),
        AddLayer("route", "route", "line", line_paint, visible=not params.reveal_path),
        AddSource("point", point_collection(route.start)),
    ]

    if marker_icon_loaded:
        commands.append(AddLayer("point", "point", "symbol", {"icon-image": MARKER_IMAGE, "icon-size": 0.2}))
    else:
        commands.append(
            AddLayer(
                "point",
                "point",
                "circle",
                {"circle-radius": 8, "circle-color": "#e53935", "circle-stroke-width": 2, "circle-stroke-color": "#ffffff"},
            )
        )

    if route.waypoints:
        features = [_feature(mapping(Point(wp.position)), title=wp.label) for wp in route.waypoints]
        commands += [
            AddSource("waypoints", {"type": "FeatureCollection", "features": features}),
            AddLayer(
                "waypoints-layer",
                "waypoints",
                "circle",
                {"circle-radius": 6, "circle-color": "#ffffff", "circle-stroke-width": 2, "circle-stroke-color": ROUTE_COLOR},
                visible=params.show_waypoints,
            ),
            AddLayer(
                "waypoints-labels",
                "waypoints",
                "symbol",
                {"text-field": "title", "text-size": 12, "text-color": "#333333", "text-halo-color": "#ffffff"},
                visible=params.show_waypoints,
            ),
        ]
    return commands


def frame_commands(route: Route, state: AnimationState, params: AnimationParameters) -> list[SurfaceCommand]:
    commands: list[SurfaceCommand] = [SetSourceData("point", point_collection(state.current_position))]
    if params.reveal_path:
        revealed = slice_along(route.path, 0.0, route.path_length_km * state.progress)
        commands.append(SetSourceData("progress", _feature(mapping(LineString(revealed)))))
    commands.append(JumpTo(state.camera_pose))
    return commands


class AnimationDriver:
    """Per-session orchestrator between a route, a render surface and a HUD.

    Args:
        surface: Render surface receiving setup, per-frame and diagnostic output
        sources: Route sources in priority order; the first available one is used
        params: Animation parameters
        total_frames: Frames the animation is spread over (>= 1)
        resolver: Directions resolver for chain-form route documents
        hud: HUD overlay receiving telemetry props each frame
        watchdog_timeout: Upper bound in seconds for the Loading phase
    """

    def __init__(
        self,
        surface: MapSurface,
        sources: Sequence[RouteSource],
        params: AnimationParameters | None = None,
        *,
        total_frames: int,
        resolver: DirectionsResolver | None = None,
        hud: HudOverlay | None = None,
        watchdog_timeout: float = WATCHDOG_TIMEOUT_SECONDS,
    ) -> None:
        if total_frames < 1:
            raise ValueError(f"total_frames must be >= 1, got {total_frames}")
        self.surface = surface
        self.sources = list(sources)
        self.params = params or AnimationParameters()
        self.total_frames = total_frames
        self.resolver = resolver
        self.hud = hud
        self.watchdog_timeout = watchdog_timeout

        self.route_id: str | None = None
        self.degraded = False
        self._state = DriverState.IDLE
        self._route: Route | None = None
        self._surface_ready = False
        self._diagnostic: Diagnostic | None = None
        self._pending: asyncio.Future[None] | None = None
        self.logger = get_logger(f"{__name__}.AnimationDriver")

    @property
    def state(self) -> DriverState:
        return self._state

    @property
    def route(self) -> Route | None:
        return self._route

    @property
    def diagnostic(self) -> Diagnostic | None:
        return self._diagnostic

    def _transition(self, new_state: DriverState) -> None:
        self.logger.info(
            "Driver state transition",
            from_state=self._state.value,
            to_state=new_state.value,
            route_id=self.route_id,
        )
        self._state = new_state

    def _fail(self, error: RouteFilmError) -> None:
        route_id = error.route_id or self.route_id
        title = "Render surface unavailable" if isinstance(error, SurfaceInitError) else "Render Error"
        self._diagnostic = Diagnostic(title=title, message=error.message, route_id=route_id)
        self.logger.error(
            "Animation session failed",
            route_id=route_id,
            error=error.message,
            error_type=type(error).__name__,
        )
        self._transition(DriverState.ERROR)
        self.surface.render_diagnostic(self._diagnostic)

    async def load(self) -> DriverState:
        """Run the Loading phase and return the resulting state.

        Never raises for data or surface faults: those end in ``DriverState.ERROR``
        with a diagnostic. Disposal during loading returns ``DriverState.DISPOSED``.
        """
        if self._state is not DriverState.IDLE:
            raise RuntimeError(f"load() is only valid from the idle state, not {self._state.value}")
        self._transition(DriverState.LOADING)

        self._pending = asyncio.ensure_future(self._acquire())
        try:
            await asyncio.wait_for(self._pending, timeout=self.watchdog_timeout)
        except TimeoutError:
            self._on_watchdog_expired()
        except asyncio.CancelledError:
            if self._state is not DriverState.DISPOSED:
                raise
        except (InvalidRouteError, RouteResolutionError, RouteSourceError, SurfaceInitError) as e:
            if self._state is not DriverState.DISPOSED:
                self._fail(e)
        finally:
            self._pending = None

        if self._state is DriverState.LOADING:
            self._transition(DriverState.READY)
        return self._state

    async def _acquire(self) -> None:
        source = select_source(self.sources)
        self.route_id = source.route_id
        self.logger.info("Loading route", source=source.name, route_id=self.route_id)

        document = await source.fetch()
        if self._state is DriverState.DISPOSED:
            return

        parsed = parse_route_document(document, route_id=self.route_id)
        if isinstance(parsed, ExternalRouteRequest):
            if self.resolver is None:
                raise RouteResolutionError("Route geometry missing and no directions resolver configured", self.route_id)
            self.logger.info(
                "Route geometry missing, calculating via directions",
                route_id=self.route_id,
                points=len(parsed.coordinates),
            )
            route = await self.resolver.directions(parsed)
            if self._state is DriverState.DISPOSED:
                return
        else:
            route = parsed
        self._route = route

        try:
            await self.surface.initialize(self.params.map_style, route.start)
        except AssetLoadError as e:
            self.logger.warning("Map style failed to load, continuing", asset="style", error=e.message)
        if self._state is DriverState.DISPOSED:
            return

        marker_loaded = False
        if self.params.marker_icon is not None:
            try:
                await self.surface.load_image(MARKER_IMAGE, self.params.marker_icon)
                marker_loaded = True
            except AssetLoadError as e:
                self.logger.warning("Marker icon failed to load, using plain marker", asset=MARKER_IMAGE, error=e.message)
            if self._state is DriverState.DISPOSED:
                return

        self.surface.apply(setup_commands(route, self.params, marker_icon_loaded=marker_loaded))
        self._surface_ready = True

    def _on_watchdog_expired(self) -> None:
        self.logger.warning(
            "Loading timed out, force unblocking render",
            timeout_seconds=self.watchdog_timeout,
            route_loaded=self._route is not None,
            route_id=self.route_id,
        )
        if self._route is None:
            self._fail(
                RouteSourceError(f"Timed out after {self.watchdog_timeout:g}s waiting for route data", self.route_id)
            )
            return
        # Surface never confirmed readiness; render best-effort
        self.degraded = True
        if not self._surface_ready:
            self.surface.apply(setup_commands(self._route, self.params, marker_icon_loaded=False))
            self._surface_ready = True

    def compute_state(self, frame_index: int) -> AnimationState:
        if self._route is None:
            raise RuntimeError("No route loaded")
        return compute_animation_state(self._route, frame_index, self.total_frames, self.params)

    def render_frame(self, frame_index: int) -> FrameOutput:
        """Produce and apply the output for one frame.

        In the Error state the diagnostic is returned instead of frame commands.

        Raises:
            RuntimeError: Before loading finished or after disposal
            ValueError: For a negative frame index
        """
        if self._state is DriverState.DISPOSED:
            raise RuntimeError("Driver has been disposed")
        if self._state is DriverState.ERROR:
            return FrameOutput(frame_index, DriverState.ERROR, diagnostic=self._diagnostic)
        if self._state in (DriverState.IDLE, DriverState.LOADING) or self._route is None:
            raise RuntimeError(f"Cannot render in state {self._state.value}")

        try:
            state = self.compute_state(frame_index)
        except RouteFilmError as e:
            self._fail(e)
            return FrameOutput(frame_index, DriverState.ERROR, diagnostic=self._diagnostic)

        commands = tuple(frame_commands(self._route, state, self.params))
        hud = hud_props(state.telemetry)
        self.surface.apply(commands)
        if self.hud is not None:
            self.hud.update(hud)

        if self._state is DriverState.READY:
            self._transition(DriverState.RENDERING)
        return FrameOutput(frame_index, self._state, commands, hud)

    def dispose(self) -> None:
        """Release the surface and cancel pending loading. Safe in any state, idempotent."""
        if self._state is DriverState.DISPOSED:
            return
        self._transition(DriverState.DISPOSED)
        if self._pending is not None and not self._pending.done():
            self._pending.cancel()
        self.surface.close()
