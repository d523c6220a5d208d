"""Map render surface that draws frames with matplotlib and contextily basemap tiles.

Geometry is projected to Web Mercator with geopandas. The camera pose maps
to the viewport: ``center`` is the viewport centre, ``zoom`` follows Mapbox's
512px-tile scale and ``bearing`` rotates the map about the centre so the
heading points up. Pitch has no 2D equivalent and is ignored.
"""

from collections.abc import Mapping, Sequence
import io
import math
from pathlib import Path
from typing import Any

import contextily as ctx
import geopandas as gpd
import matplotlib.image as mpimg
from matplotlib.offsetbox import AnnotationBbox, OffsetImage
import matplotlib.patheffects as path_effects
from matplotlib.figure import Figure
from matplotlib.transforms import Affine2D, Transform
import numpy as np

from routefilm.animation.camera import CameraPose
from routefilm.animation.telemetry import HudProps
from routefilm.errors import AssetLoadError, SurfaceInitError
from routefilm.geo.geometry import Coordinate
from routefilm.logging import get_logger
from routefilm.render.commands import (
    AddLayer,
    AddSource,
    Diagnostic,
    JumpTo,
    SetSourceData,
    SurfaceCommand,
    geojson_features,
    geometry_coordinates,
)
from routefilm.render.hud import draw_diagnostic, draw_hud

EARTH_CIRCUMFERENCE_M = 40_075_016.686
MAPBOX_TILE_SIZE = 512
MAX_MERCATOR_LAT = 85.0511


def tile_provider(map_style: str, access_token: str | None) -> Any:  # noqa: ANN401
    """Resolve a map style to an xyzservices tile provider.

    Dotted names (``CartoDB.Positron``) are looked up among contextily's
    providers and need no credential. Anything else is a Mapbox style id
    (``streets-v11`` or ``user/style``) and requires an access token.

    Raises:
        SurfaceInitError: Unknown provider name or missing Mapbox token
    """
    if "." in map_style and "/" not in map_style:
        try:
            return ctx.providers.query_name(map_style)
        except ValueError as e:
            raise SurfaceInitError(f"Unknown tile provider: {map_style}") from e

    if not access_token:
        raise SurfaceInitError("Missing MAPBOX_PUBLIC_TOKEN: set it to render Mapbox styles")
    style_id = map_style if "/" in map_style else f"mapbox/{map_style}"
    return ctx.providers.MapBox(id=style_id, accessToken=access_token)


def project(coords: Sequence[Coordinate]) -> np.ndarray:
    """(lng, lat) pairs to Web Mercator metres, shape (n, 2)."""
    if len(coords) == 0:
        return np.zeros((0, 2))
    lngs = [c[0] for c in coords]
    lats = [min(max(c[1], -MAX_MERCATOR_LAT), MAX_MERCATOR_LAT) for c in coords]
    series = gpd.GeoSeries(gpd.points_from_xy(lngs, lats), crs="EPSG:4326").to_crs(epsg=3857)
    return np.column_stack([series.x.to_numpy(), series.y.to_numpy()])


def project_features(data: Mapping[str, Any]) -> list[tuple[Mapping[str, Any], np.ndarray]]:
    """Every feature of a GeoJSON source paired with its projected (n, 2) coordinates."""
    return [
        (feature, project(geometry_coordinates(feature.get("geometry") or {})))
        for feature in geojson_features(data)
    ]


class MatplotlibMapSurface:
    """Headless frame renderer implementing the map surface and HUD overlay protocols.

    Args:
        width: Output width in pixels
        height: Output height in pixels
        dpi: Figure resolution
        access_token: Mapbox token for Mapbox styles
        basemap: Fetch basemap tiles; disable for offline rendering
    """

    def __init__(
        self,
        width: int = 1280,
        height: int = 720,
        dpi: int = 100,
        access_token: str | None = None,
        basemap: bool = True,
    ) -> None:
        self.width = width
        self.height = height
        self.dpi = dpi
        self.access_token = access_token
        self.basemap = basemap
        self.figure = Figure(figsize=(width / dpi, height / dpi), dpi=dpi)
        self.closed = False

        self._provider: Any = None
        self._images: dict[str, np.ndarray] = {}
        self._sources: dict[str, list[tuple[Mapping[str, Any], np.ndarray]]] = {}
        self._layers: dict[str, AddLayer] = {}
        self._camera: CameraPose | None = None
        self._hud: HudProps | None = None
        self._diagnostic: Diagnostic | None = None
        self._basemap_failed = False
        self.logger = get_logger(f"{__name__}.MatplotlibMapSurface")

    async def initialize(self, map_style: str, center: Coordinate) -> None:
        self._provider = tile_provider(map_style, self.access_token) if self.basemap else None
        self._camera = CameraPose(center=center, bearing=0.0, pitch=45.0, zoom=13.0)
        self.logger.info("Map surface initialized", map_style=map_style, basemap=self.basemap)

    async def load_image(self, name: str, path: Path) -> None:
        try:
            self._images[name] = mpimg.imread(path)
        except (OSError, ValueError) as e:
            raise AssetLoadError(f"Error loading {name} image from {path}: {e}") from e

    def apply(self, commands: Sequence[SurfaceCommand]) -> None:
        for command in commands:
            if isinstance(command, AddSource | SetSourceData):
                self._sources[command.source_id] = project_features(command.data)
            elif isinstance(command, AddLayer):
                self._layers[command.layer_id] = command
            elif isinstance(command, JumpTo):
                self._camera = command.pose

    def update(self, props: HudProps) -> None:
        self._hud = props

    def render_diagnostic(self, diagnostic: Diagnostic) -> None:
        self._diagnostic = diagnostic

    def close(self) -> None:
        self.figure.clear()
        self.closed = True

    def _draw_basemap(self, ax: Any, center: np.ndarray, radius: float, zoom: float, rotation: Transform) -> None:  # noqa: ANN401
        if self._provider is None or self._basemap_failed:
            return
        max_zoom = int(self._provider.get("max_zoom", 19))
        tile_zoom = int(min(max(round(zoom), 0), max_zoom))
        try:
            img, extent = ctx.bounds2img(
                center[0] - radius,
                center[1] - radius,
                center[0] + radius,
                center[1] + radius,
                zoom=tile_zoom,
                source=self._provider,
            )
        except (OSError, ValueError) as e:
            # Tiles are best-effort: keep rendering the route without a basemap
            self._basemap_failed = True
            self.logger.warning("Basemap tiles unavailable, rendering without basemap", error=str(e))
            return
        ax.imshow(img, extent=extent, transform=rotation, zorder=0, interpolation="bilinear")

    def _draw_layer(self, ax: Any, layer: AddLayer, zorder: int, rotation: Transform) -> None:  # noqa: ANN401
        paint = layer.paint
        for feature, xy in self._sources.get(layer.source_id, []):
            if len(xy) == 0:
                continue
            if layer.kind == "line":
                ax.plot(
                    xy[:, 0],
                    xy[:, 1],
                    color=paint.get("line-color", "#3b9ddd"),
                    linewidth=float(paint.get("line-width", 2)) * 0.75,
                    alpha=float(paint.get("line-opacity", 1.0)),
                    solid_capstyle="round",
                    solid_joinstyle="round",
                    transform=rotation,
                    zorder=zorder,
                )
            elif layer.kind == "circle":
                radius = float(paint.get("circle-radius", 5))
                ax.scatter(
                    xy[:, 0],
                    xy[:, 1],
                    s=(radius * 1.5) ** 2,
                    c=paint.get("circle-color", "#ffffff"),
                    edgecolors=paint.get("circle-stroke-color", "none"),
                    linewidths=float(paint.get("circle-stroke-width", 0)),
                    transform=rotation,
                    zorder=zorder,
                )
            elif layer.kind == "symbol" and "icon-image" in paint:
                image = self._images.get(paint["icon-image"])
                if image is None:
                    continue
                for x, y in xy:
                    box = AnnotationBbox(
                        OffsetImage(image, zoom=float(paint.get("icon-size", 1.0))),
                        (x, y),
                        xycoords=rotation,
                        frameon=False,
                        zorder=zorder,
                    )
                    ax.add_artist(box)
            elif layer.kind == "symbol" and "text-field" in paint:
                text = str((feature.get("properties") or {}).get(paint["text-field"], ""))
                halo = [path_effects.withStroke(linewidth=2, foreground=paint.get("text-halo-color", "#ffffff"))]
                for x, y in xy:
                    ax.annotate(
                        text,
                        (x, y),
                        xycoords=rotation,
                        xytext=(0, -10),
                        textcoords="offset points",
                        ha="center",
                        va="top",
                        fontsize=float(paint.get("text-size", 12)) * 0.75,
                        color=paint.get("text-color", "#333333"),
                        path_effects=halo,
                        zorder=zorder,
                    )

    def _draw_map(self) -> None:
        fig = self.figure
        fig.clear()
        fig.set_facecolor("#f2efe9")
        ax = fig.add_axes((0, 0, 1, 1))
        ax.set_axis_off()
        ax.set_autoscale_on(False)
        if self._camera is None:
            return

        pose = self._camera
        center = project([pose.center])[0]
        span_x = self.width * EARTH_CIRCUMFERENCE_M / (MAPBOX_TILE_SIZE * 2**pose.zoom)
        span_y = span_x * self.height / self.width
        ax.set_xlim(center[0] - span_x / 2, center[0] + span_x / 2)
        ax.set_ylim(center[1] - span_y / 2, center[1] + span_y / 2)

        # Rotating the map counter-clockwise by the bearing puts the heading at the top
        rotation = Affine2D().rotate_deg_around(center[0], center[1], pose.bearing) + ax.transData

        self._draw_basemap(ax, center, math.hypot(span_x, span_y) / 2, pose.zoom, rotation)
        for zorder, layer in enumerate(self._layers.values(), start=1):
            if layer.visible:
                self._draw_layer(ax, layer, zorder, rotation)

    def snapshot(self) -> bytes:
        """Render the current state to PNG bytes."""
        if self._diagnostic is not None:
            draw_diagnostic(self.figure, self._diagnostic)
        else:
            self._draw_map()
            if self._hud is not None:
                draw_hud(self.figure, self._hud)

        buf = io.BytesIO()
        self.figure.savefig(buf, format="png", dpi=self.dpi, facecolor=self.figure.get_facecolor())
        return buf.getvalue()

    def save(self, path: Path) -> Path:
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(self.snapshot())
        return path
