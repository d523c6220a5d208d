"""Normalized in-memory route representation and route document (de)serialization.

Two document shapes are accepted:

* geometry form: ``{"geometry": {"type": "LineString", "coordinates": [[lng, lat], ...]},
  "waypoints": [{"lat", "lng", "label"}], "totalDistance", "totalDuration", "name"}``
* chain form: ``{"startLocation": {"location": {"lat", "lng"}, "address"},
  "waypoints": [{"position": {"lat", "lng"}, "notes" | "address"}]}`` which
  has no path yet and must be resolved by a directions service.
"""

from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime
from functools import cached_property
from typing import Any

from shapely.geometry import LineString, mapping

from routefilm.errors import InvalidRouteError, RouteResolutionError
from routefilm.geo.geometry import Coordinate, path_length
from routefilm.logging import get_logger

logger = get_logger(__name__)


def _validate_coordinate(value: Any, route_id: str | None = None) -> Coordinate:  # noqa: ANN401
    try:
        lng, lat = float(value[0]), float(value[1])
    except (TypeError, ValueError, IndexError) as e:
        raise InvalidRouteError(f"Malformed coordinate: {value!r}", route_id) from e
    if not -180.0 <= lng <= 180.0:
        raise InvalidRouteError(f"Longitude out of range [-180, 180]: {lng}", route_id)
    if not -90.0 <= lat <= 90.0:
        raise InvalidRouteError(f"Latitude out of range [-90, 90]: {lat}", route_id)
    return (lng, lat)


@dataclass(frozen=True)
class Waypoint:
    """A labelled map annotation. Not used for animation timing."""

    position: Coordinate
    label: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {"lat": self.position[1], "lng": self.position[0], "label": self.label}


@dataclass(frozen=True)
class ExternalRouteRequest:
    """Ordered coordinates that a directions resolver must turn into a path."""

    coordinates: tuple[Coordinate, ...]
    waypoints: tuple[Waypoint, ...] = ()
    name: str | None = None
    profile: str = "driving"
    route_id: str | None = None

    @property
    def coordinates_param(self) -> str:
        """Coordinates as the ``lng,lat;lng,lat`` path segment directions APIs expect."""
        return ";".join(f"{lng},{lat}" for lng, lat in self.coordinates)


@dataclass(frozen=True)
class Route:
    """An immutable route: path, annotations and optional precomputed totals."""

    path: tuple[Coordinate, ...]
    waypoints: tuple[Waypoint, ...] = ()
    total_distance_km: float | None = None
    total_duration_min: float | None = None
    name: str | None = None
    route_id: str | None = field(default=None, compare=False)

    @cached_property
    def path_length_km(self) -> float:
        return path_length(self.path)

    @property
    def distance_km(self) -> float:
        """Precomputed total distance when the source supplied one, else the path length."""
        if self.total_distance_km is not None:
            return self.total_distance_km
        return self.path_length_km

    @property
    def start(self) -> Coordinate:
        return self.path[0]

    @property
    def end(self) -> Coordinate:
        return self.path[-1]

    def line_feature(self) -> dict[str, Any]:
        """The path as a GeoJSON Feature."""
        return {"type": "Feature", "properties": {}, "geometry": mapping(LineString(self.path))}

    @classmethod
    def from_geometry(
        cls,
        path: Iterable[Sequence[float]],
        waypoints: Iterable[Waypoint] = (),
        *,
        total_distance_km: float | None = None,
        total_duration_min: float | None = None,
        name: str | None = None,
        route_id: str | None = None,
    ) -> "Route":
        """Build a route from an explicit path.

        Raises:
            InvalidRouteError: If the path has fewer than 2 points or any
                coordinate is malformed or out of bounds
        """
        coordinates = tuple(_validate_coordinate(point, route_id) for point in path)
        if len(coordinates) < 2:
            raise InvalidRouteError(f"Route path needs at least 2 points, got {len(coordinates)}", route_id)
        for value, label in ((total_distance_km, "totalDistance"), (total_duration_min, "totalDuration")):
            if value is not None and value < 0:
                raise InvalidRouteError(f"{label} must not be negative: {value}", route_id)
        return cls(
            path=coordinates,
            waypoints=tuple(waypoints),
            total_distance_km=total_distance_km,
            total_duration_min=total_duration_min,
            name=name,
            route_id=route_id,
        )

    @staticmethod
    def from_waypoint_chain(
        points: Iterable[Sequence[float]],
        waypoints: Iterable[Waypoint] = (),
        *,
        name: str | None = None,
        route_id: str | None = None,
    ) -> ExternalRouteRequest:
        """Emit a directions request for a route that has no precomputed path.

        Raises:
            InvalidRouteError: If a coordinate is malformed or out of bounds
            RouteResolutionError: If fewer than 2 usable points remain
        """
        coordinates = tuple(_validate_coordinate(point, route_id) for point in points)
        if len(coordinates) < 2:
            raise RouteResolutionError(
                f"Not enough points to calculate a route (need at least 2, got {len(coordinates)})", route_id
            )
        return ExternalRouteRequest(coordinates=coordinates, waypoints=tuple(waypoints), name=name, route_id=route_id)


def _lat_lng(value: Mapping[str, Any] | None) -> Coordinate | None:
    if not isinstance(value, Mapping):
        return None
    if value.get("lat") is None or value.get("lng") is None:
        return None
    return (value["lng"], value["lat"])


def _object(value: Any, label: str, route_id: str | None) -> Mapping[str, Any]:  # noqa: ANN401
    """A JSON object node; missing nodes read as empty."""
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise InvalidRouteError(f"{label} must be an object, got {type(value).__name__}", route_id)
    return value


def _array(value: Any, label: str, route_id: str | None) -> list[Any]:  # noqa: ANN401
    if value is None:
        return []
    if not isinstance(value, list | tuple):
        raise InvalidRouteError(f"{label} must be a list, got {type(value).__name__}", route_id)
    return list(value)


def _annotation_waypoints(document: Mapping[str, Any], route_id: str | None) -> list[Waypoint]:
    waypoints: list[Waypoint] = []
    for index, raw in enumerate(_array(document.get("waypoints"), "waypoints", route_id)):
        raw = _object(raw, f"waypoints[{index}]", route_id)
        position = _lat_lng(raw.get("position")) or _lat_lng(raw)
        if position is None:
            logger.debug("Skipping waypoint without position", route_id=route_id, index=index)
            continue
        label = raw.get("label") or raw.get("notes") or raw.get("address") or f"Stop {index + 1}"
        waypoints.append(Waypoint(position=_validate_coordinate(position, route_id), label=str(label)))
    return waypoints


def _number(value: Any, label: str, route_id: str | None, scale: float = 1.0) -> float | None:  # noqa: ANN401
    if value is None:
        return None
    if isinstance(value, bool):
        raise InvalidRouteError(f"{label} must be a number, got {value!r}", route_id)
    try:
        return float(value) / scale
    except (TypeError, ValueError) as e:
        raise InvalidRouteError(f"{label} must be a number, got {value!r}", route_id) from e


def _totals(document: Mapping[str, Any], route_id: str | None) -> tuple[float | None, float | None]:
    """Totals in km / minutes.

    Top-level ``totalDistance``/``totalDuration`` are already km/minutes;
    ``metadata`` values come straight from the directions API in metres/seconds.
    """
    metadata = _object(document.get("metadata"), "metadata", route_id)
    distance = _number(document.get("totalDistance"), "totalDistance", route_id)
    duration = _number(document.get("totalDuration"), "totalDuration", route_id)
    if distance is None:
        distance = _number(metadata.get("totalDistance"), "metadata.totalDistance", route_id, scale=1000.0)
    if duration is None:
        duration = _number(metadata.get("totalDuration"), "metadata.totalDuration", route_id, scale=60.0)
    return distance, duration


def _document_name(document: Mapping[str, Any], route_id: str | None) -> str | None:
    metadata = _object(document.get("metadata"), "metadata", route_id)
    name = document.get("name") or metadata.get("name") or document.get("label")
    return str(name) if name else None


def parse_route_document(document: Mapping[str, Any], route_id: str | None = None) -> Route | ExternalRouteRequest:
    """Normalize a route document into a Route, or a directions request for chain-form documents.

    Raises:
        InvalidRouteError: Bad geometry, or neither geometry nor waypoints present
        RouteResolutionError: Chain form with fewer than 2 usable points
    """
    if not isinstance(document, Mapping):
        raise InvalidRouteError(f"Route document must be an object, got {type(document).__name__}", route_id)
    name = _document_name(document, route_id)
    geometry = _object(document.get("geometry"), "geometry", route_id)
    coordinates = geometry.get("coordinates")

    if coordinates:
        geometry_type = geometry.get("type", "LineString")
        if geometry_type != "LineString":
            raise InvalidRouteError(f"Route geometry must be a LineString, got {geometry_type}", route_id)
        total_distance_km, total_duration_min = _totals(document, route_id)
        return Route.from_geometry(
            _array(coordinates, "geometry.coordinates", route_id),
            _annotation_waypoints(document, route_id),
            total_distance_km=total_distance_km,
            total_duration_min=total_duration_min,
            name=name,
            route_id=route_id,
        )

    start = _object(document.get("startLocation"), "startLocation", route_id)
    start_position = _lat_lng(start.get("location"))
    waypoints = _annotation_waypoints(document, route_id)
    if start_position is None and not waypoints:
        raise InvalidRouteError("Geometry missing and no waypoints to calculate a route from", route_id)

    chain: list[Waypoint] = []
    if start_position is not None:
        chain.append(Waypoint(position=start_position, label=str(start.get("address") or "Start")))
    else:
        logger.warning("No startLocation found, using waypoints only", route_id=route_id)
    chain.extend(waypoints)

    return Route.from_waypoint_chain(
        [wp.position for wp in chain],
        chain,
        name=name,
        route_id=route_id,
    )


def route_to_document(route: Route, metadata: Mapping[str, Any] | None = None) -> dict[str, Any]:
    """Serialize a route into the geometry-form document."""
    document: dict[str, Any] = {
        "name": route.name,
        "geometry": {"type": "LineString", "coordinates": [list(point) for point in route.path]},
        "waypoints": [wp.to_dict() for wp in route.waypoints],
        "totalDistance": route.distance_km,
        "totalDuration": route.total_duration_min,
        "metadata": {"generatedAt": datetime.now(UTC).isoformat(), **(metadata or {})},
    }
    return document
