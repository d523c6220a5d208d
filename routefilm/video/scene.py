"""Manim route animation scene.

The scene drives an ``AnimationDriver`` from Manim's frame clock: a
``ValueTracker`` runs from frame 0 to the last frame and an updater asks the
driver for exactly that frame. Map layers live in one group whose transform
tracks the camera pose, so the camera frame itself stays centred on the
origin and only its width changes with zoom.

Render with::

    ROUTEFILM_ROUTE_FILE=assets/route.json manim -pql animate_route.py RouteAnimationScene
"""

import asyncio
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
import json
import math
import os
from pathlib import Path
from typing import Any

import contextily as ctx
from manim import (
    DL,
    DOWN,
    LEFT,
    ORIGIN,
    RIGHT,
    UP,
    Dot,
    Group,
    ImageMobject,
    MovingCameraScene,
    Rectangle,
    Text,
    ValueTracker,
    VGroup,
    VMobject,
    config,
    linear,
)
import numpy as np

from routefilm.animation.camera import CameraPose
from routefilm.animation.driver import AnimationDriver, DriverState
from routefilm.animation.telemetry import HudProps
from routefilm.config import (
    DEFAULT_ROUTE_COLLECTION,
    DEFAULT_STATIC_ROUTE_PATH,
    AnimationParameters,
    CompositionSettings,
    mapbox_directions_token,
    mapbox_public_token,
)
from routefilm.errors import AssetLoadError
from routefilm.geo.geometry import Coordinate, bounds
from routefilm.logging import get_logger
from routefilm.render.commands import AddLayer, AddSource, Diagnostic, JumpTo, SetSourceData, SurfaceCommand
from routefilm.render.matplotlib_surface import (
    EARTH_CIRCUMFERENCE_M,
    MAPBOX_TILE_SIZE,
    project,
    project_features,
    tile_provider,
)
from routefilm.route.directions import MapboxClient
from routefilm.route.sources import HttpDocumentStore, JsonDirectoryStore, default_sources


@dataclass(frozen=True)
class SceneSettings:
    """Scene inputs read from the environment, since ``manim`` owns the command line."""

    route_file: Path | None = None
    route_id: str | None = None
    store: str | None = None
    collection: str = DEFAULT_ROUTE_COLLECTION
    props: Mapping[str, Any] | None = None
    basemap: bool = True

    @classmethod
    def from_env(cls, env: Mapping[str, str] | None = None) -> "SceneSettings":
        env = os.environ if env is None else env
        route_file = env.get("ROUTEFILM_ROUTE_FILE")
        props = env.get("ROUTEFILM_PROPS")
        return cls(
            route_file=Path(route_file) if route_file else None,
            route_id=env.get("ROUTEFILM_ROUTE_ID") or None,
            store=env.get("ROUTEFILM_STORE") or None,
            collection=env.get("ROUTEFILM_COLLECTION", DEFAULT_ROUTE_COLLECTION),
            props=json.loads(props) if props else None,
            basemap=env.get("ROUTEFILM_BASEMAP", "1").lower() not in {"0", "false", "no"},
        )


class CoordinateConverter:
    """Converts Web Mercator metres to Manim scene units around a fixed origin."""

    def __init__(self, origin: Coordinate, reference_zoom: float = 14.0, viewport_px: int = 1280):
        self.origin = project([origin])[0]
        # At the reference zoom the default frame spans what a Mapbox viewport of viewport_px would
        self.viewport_px = viewport_px
        span_m = viewport_px * EARTH_CIRCUMFERENCE_M / (MAPBOX_TILE_SIZE * 2**reference_zoom)
        self.units_per_metre = config.frame_width / span_m
        self.logger = get_logger(f"{__name__}.CoordinateConverter")
        self.logger.info("Initialized coordinate converter", origin=origin, units_per_metre=self.units_per_metre)

    def to_manim(self, xy: np.ndarray) -> np.ndarray:
        """(n, 2) mercator metres to (n, 3) scene points."""
        scene = (np.asarray(xy, dtype=float).reshape(-1, 2) - self.origin) * self.units_per_metre
        return np.column_stack([scene, np.zeros(len(scene))])

    def lng_lat_to_manim(self, coords: Sequence[Coordinate]) -> np.ndarray:
        return self.to_manim(project(coords))

    def frame_width(self, zoom: float) -> float:
        span_m = self.viewport_px * EARTH_CIRCUMFERENCE_M / (MAPBOX_TILE_SIZE * 2**zoom)
        return span_m * self.units_per_metre


def _rgba(image: np.ndarray) -> np.ndarray:
    if image.dtype != np.uint8:
        image = (np.clip(image, 0.0, 1.0) * 255).astype(np.uint8)
    if image.shape[2] == 3:
        alpha = np.full(image.shape[:2] + (1,), 255, dtype=np.uint8)
        image = np.concatenate([image, alpha], axis=2)
    return image


class ManimMapSurface:
    """Render surface and HUD overlay backed by Manim mobjects."""

    def __init__(self, scene: MovingCameraScene, access_token: str | None = None, basemap: bool = True) -> None:
        self.scene = scene
        self.access_token = access_token
        self.basemap = basemap
        self.map_layer = Group()
        self.hud_layer = Group()
        self.root = Group(self.map_layer, self.hud_layer)
        self.converter: CoordinateConverter | None = None
        self.closed = False

        self._provider: Any = None
        self._images: dict[str, Path] = {}
        self._sources: dict[str, list[tuple[Mapping[str, Any], np.ndarray]]] = {}
        self._layers: dict[str, tuple[AddLayer, Group]] = {}
        # Scene-space centre and bearing currently applied to map_layer
        self._center = np.zeros(3)
        self._bearing = 0.0
        self._hud_scale = 1.0
        self.logger = get_logger(f"{__name__}.ManimMapSurface")

    async def initialize(self, map_style: str, center: Coordinate) -> None:
        self._provider = tile_provider(map_style, self.access_token) if self.basemap else None
        self.converter = CoordinateConverter(center)
        self.logger.info("Manim surface initialized", map_style=map_style)

    async def load_image(self, name: str, path: Path) -> None:
        if not Path(path).is_file():
            raise AssetLoadError(f"Error loading {name} image from {path}: file not found")
        self._images[name] = Path(path)

    def add_basemap(self, bbox: tuple[float, float, float, float]) -> None:
        """Place a static tile image under the map layers for a lng/lat bounding box."""
        if self._provider is None or self.converter is None:
            return
        west, south, east, north = bbox
        pad_lng, pad_lat = max((east - west) * 0.25, 0.01), max((north - south) * 0.25, 0.01)
        try:
            img, extent = ctx.bounds2img(
                west - pad_lng, south - pad_lat, east + pad_lng, north + pad_lat, source=self._provider, ll=True
            )
        except (OSError, ValueError) as e:
            self.logger.warning("Basemap tiles unavailable, rendering without basemap", error=str(e))
            return

        corners = self.converter.to_manim(np.array([[extent[0], extent[2]], [extent[1], extent[3]]]))
        image = ImageMobject(_rgba(img))
        image.stretch_to_fit_width(corners[1][0] - corners[0][0])
        image.stretch_to_fit_height(corners[1][1] - corners[0][1])
        image.move_to((corners[0] + corners[1]) / 2)
        self._to_current_view(image)
        self.map_layer.add_to_back(image)
        self.logger.info("Basemap added", extent=extent, shape=img.shape)

    def _require_converter(self) -> CoordinateConverter:
        if self.converter is None:
            raise RuntimeError("Surface not initialized")
        return self.converter

    def _to_current_view(self, mobject: Any) -> None:  # noqa: ANN401
        mobject.shift(-self._center)
        mobject.rotate(math.radians(self._bearing), about_point=ORIGIN)

    def _screen_points(self, xy: np.ndarray) -> np.ndarray:
        converter = self._require_converter()
        points = converter.to_manim(xy) - self._center
        angle = math.radians(self._bearing)
        cos, sin = math.cos(angle), math.sin(angle)
        rotation = np.array([[cos, -sin, 0.0], [sin, cos, 0.0], [0.0, 0.0, 1.0]])
        return points @ rotation.T

    def _build_layer(self, layer: AddLayer) -> Group:
        paint = layer.paint
        pixel = config.frame_width / config.pixel_width
        group = Group()
        for feature, xy in self._sources.get(layer.source_id, []):
            if len(xy) == 0:
                continue
            points = self._screen_points(xy)
            if layer.kind == "line" and len(points) >= 2:
                line = VMobject(
                    stroke_color=paint.get("line-color", "#3b9ddd"),
                    stroke_width=float(paint.get("line-width", 2)),
                    stroke_opacity=float(paint.get("line-opacity", 1.0)),
                )
                line.set_points_as_corners(points)
                group.add(line)
            elif layer.kind == "circle":
                for point in points:
                    dot = Dot(point, radius=float(paint.get("circle-radius", 5)) * pixel)
                    dot.set_fill(paint.get("circle-color", "#ffffff"), opacity=1)
                    dot.set_stroke(
                        paint.get("circle-stroke-color", "#ffffff"),
                        width=float(paint.get("circle-stroke-width", 0)),
                    )
                    group.add(dot)
            elif layer.kind == "symbol" and paint.get("icon-image") in self._images:
                for point in points:
                    icon = ImageMobject(str(self._images[paint["icon-image"]]))
                    icon.scale(float(paint.get("icon-size", 1.0)))
                    group.add(icon.move_to(point))
            elif layer.kind == "symbol" and "text-field" in paint:
                text = str((feature.get("properties") or {}).get(paint["text-field"], ""))
                for point in points:
                    label = Text(
                        text,
                        font_size=float(paint.get("text-size", 12)) * 2,
                        color=paint.get("text-color", "#333333"),
                    )
                    group.add(label.next_to(point, DOWN, buff=0.1))
        return group

    def _refresh_layers(self, source_id: str) -> None:
        for layer, group in self._layers.values():
            if layer.source_id != source_id:
                continue
            rebuilt = self._build_layer(layer) if layer.visible else Group()
            group.remove(*group.submobjects)
            group.add(*rebuilt.submobjects)

    def _jump_to(self, pose: CameraPose) -> None:
        converter = self._require_converter()
        center = converter.lng_lat_to_manim([pose.center])[0]
        # Undo the current view, then apply the new one
        self.map_layer.rotate(-math.radians(self._bearing), about_point=ORIGIN)
        self.map_layer.shift(self._center - center)
        self.map_layer.rotate(math.radians(pose.bearing), about_point=ORIGIN)
        self._center, self._bearing = center, pose.bearing

        frame = self.scene.camera.frame
        width = converter.frame_width(pose.zoom)
        frame.scale_to_fit_width(width)
        frame.move_to(ORIGIN)
        scale = width / config.frame_width
        self.hud_layer.scale(scale / self._hud_scale, about_point=ORIGIN)
        self._hud_scale = scale

    def apply(self, commands: Sequence[SurfaceCommand]) -> None:
        for command in commands:
            if isinstance(command, AddSource | SetSourceData):
                self._sources[command.source_id] = project_features(command.data)
                self._refresh_layers(command.source_id)
            elif isinstance(command, AddLayer):
                group = self._build_layer(command) if command.visible else Group()
                self._layers[command.layer_id] = (command, group)
                self.map_layer.add(group)
            elif isinstance(command, JumpTo):
                self._jump_to(command.pose)

    def update(self, props: HudProps) -> None:
        width, height = config.frame_width, config.frame_height
        bar = Rectangle(width=width * 0.6, height=0.04, stroke_width=0).set_fill("#ffffff", opacity=0.1)
        bar.move_to(UP * (height / 2 - 0.45))
        fill = Rectangle(width=max(width * 0.6 * props.progress / 100, 1e-3), height=0.04, stroke_width=0)
        fill.set_fill("#00f2ff", opacity=1).align_to(bar, LEFT).align_to(bar, UP)

        stats = VGroup(
            VGroup(Text("DIST", font_size=14, color="#8899a6"), Text(f"{props.distance} KM", font_size=28)),
            VGroup(Text("ETE", font_size=14, color="#8899a6"), Text(props.time, font_size=28)),
        )
        for column in stats:
            column[1].set_color("#00f2ff")
            column.arrange(DOWN, aligned_edge=LEFT, buff=0.08)
        stats.arrange(RIGHT, aligned_edge=UP, buff=0.6)
        panel = Rectangle(width=stats.width + 0.6, height=stats.height + 0.5, stroke_color="#00f2ff", stroke_width=1)
        panel.set_fill("#101418", opacity=0.75)
        card = VGroup(panel, stats.move_to(panel))
        card.to_corner(DL, buff=0.4)

        hud = Group(bar, fill, card).scale(self._hud_scale, about_point=ORIGIN)
        self.hud_layer.remove(*self.hud_layer.submobjects)
        self.hud_layer.add(*hud.submobjects)

    def render_diagnostic(self, diagnostic: Diagnostic) -> None:
        self.map_layer.remove(*self.map_layer.submobjects)
        self.hud_layer.remove(*self.hud_layer.submobjects)
        background = Rectangle(width=config.frame_width, height=config.frame_height, stroke_width=0)
        background.set_fill("#ffebee", opacity=1)
        lines = [
            Text(f"⚠ {diagnostic.title}", font_size=44, color="#c62828", weight="BOLD"),
            Text(diagnostic.message, font_size=24, color="#c62828"),
        ]
        if diagnostic.route_id:
            lines.append(Text(f"Route ID: {diagnostic.route_id}", font_size=20, color="#c62828"))
        card = VGroup(*lines).arrange(DOWN, buff=0.3)
        if card.width > config.frame_width * 0.9:
            card.scale_to_fit_width(config.frame_width * 0.9)
        self.hud_layer.add(background, card.move_to(ORIGIN))
        self.scene.camera.frame.scale_to_fit_width(config.frame_width).move_to(ORIGIN)
        self._hud_scale = 1.0

    def close(self) -> None:
        self.scene.remove(self.root)
        self.closed = True


class RouteAnimationScene(MovingCameraScene):
    """Renders one route animation session as a video."""

    def __init__(self, settings: SceneSettings | None = None, **kwargs: Any) -> None:
        super().__init__(**kwargs)
        self.settings = settings or SceneSettings.from_env()
        self.logger = get_logger(f"{__name__}.RouteAnimationScene")

    def _build_driver(self, surface: ManimMapSurface, composition: CompositionSettings) -> AnimationDriver:
        settings = self.settings
        params = AnimationParameters.from_props(settings.props or {})
        store = None
        if settings.store:
            if settings.store.startswith(("http://", "https://")):
                store = HttpDocumentStore(settings.store)
            else:
                store = JsonDirectoryStore(Path(settings.store))

        sources = default_sources(
            route_id=settings.route_id,
            store=store,
            static_path=settings.route_file or DEFAULT_STATIC_ROUTE_PATH,
            collection=settings.collection,
        )
        token = mapbox_directions_token()
        return AnimationDriver(
            surface,
            sources,
            params,
            total_frames=params.effective_duration(composition.duration_in_frames),
            resolver=MapboxClient(token) if token else None,
            hud=surface,
        )

    def construct(self) -> None:
        self.logger.info("Starting route animation construction")
        composition = CompositionSettings(
            fps=int(config.frame_rate),
            width=config.pixel_width,
            height=config.pixel_height,
        )
        surface = ManimMapSurface(self, access_token=mapbox_public_token(), basemap=self.settings.basemap)
        driver = self._build_driver(surface, composition)
        self.add(surface.root)

        state = asyncio.run(driver.load())
        if state is DriverState.ERROR or driver.route is None:
            # Hold the diagnostic card for the single frame a failed render produces
            self.wait(1 / composition.fps)
            driver.dispose()
            return

        surface.add_basemap(bounds(driver.route.path))
        clock = ValueTracker(0)
        surface.root.add_updater(lambda _: driver.render_frame(round(clock.get_value())))
        driver.render_frame(0)

        last_frame = driver.total_frames - 1
        self.play(
            clock.animate.set_value(last_frame),
            run_time=max(driver.total_frames, 1) / composition.fps,
            rate_func=linear,
        )
        surface.root.clear_updaters()
        driver.dispose()
        self.logger.info("Animation construction completed", frames=driver.total_frames, degraded=driver.degraded)
