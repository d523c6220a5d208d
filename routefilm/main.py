"""Command-line entry point: route preparation tools and frame rendering."""

import argparse
import asyncio
from collections.abc import Sequence
from dataclasses import asdict
import json
from pathlib import Path
import re
import sys
from typing import Any

from routefilm.animation.driver import AnimationDriver, DriverState
from routefilm.config import (
    DEFAULT_ROUTE_COLLECTION,
    DEFAULT_STATIC_ROUTE_PATH,
    AnimationParameters,
    CompositionSettings,
    mapbox_directions_token,
    mapbox_public_token,
)
from routefilm.errors import RouteFilmError, RouteResolutionError, RouteSourceError
from routefilm.geo.geometry import Coordinate
from routefilm.logging import configure_logging, get_logger
from routefilm.render.commands import RecordingSurface
from routefilm.render.matplotlib_surface import MatplotlibMapSurface
from routefilm.route.audit import RouteStatus, audit_frame, audit_route_documents
from routefilm.route.directions import MapboxClient
from routefilm.route.model import ExternalRouteRequest, Route, Waypoint, parse_route_document, route_to_document
from routefilm.route.sources import DocumentStore, HttpDocumentStore, JsonDirectoryStore, default_sources

_COORDINATE_RE = re.compile(r"^\s*(-?\d+(?:\.\d+)?)\s*,\s*(-?\d+(?:\.\d+)?)\s*$")


def open_store(location: str) -> DocumentStore:
    """A document store for a directory path or an http(s) base URL."""
    if location.startswith(("http://", "https://")):
        return HttpDocumentStore(location)
    return JsonDirectoryStore(Path(location))


def parse_frame_range(value: str) -> tuple[int, int]:
    """``"a:b"`` (inclusive) or a single frame ``"a"``."""
    start, sep, stop = value.partition(":")
    try:
        first = int(start)
        last = int(stop) if sep else first
    except ValueError as e:
        raise argparse.ArgumentTypeError(f"Invalid frame range: {value!r}") from e
    if first < 0 or last < first:
        raise argparse.ArgumentTypeError(f"Invalid frame range: {value!r}")
    return first, last


def load_props(value: str | None) -> dict[str, Any]:
    """Render props given inline as JSON or as a path to a JSON file."""
    if not value:
        return {}
    path = Path(value)
    if path.is_file():
        with path.open(encoding="utf-8") as f:
            return json.load(f)
    return json.loads(value)


def write_json(document: Any, output: Path) -> Path:  # noqa: ANN401
    output.parent.mkdir(parents=True, exist_ok=True)
    with output.open("w", encoding="utf-8") as f:
        json.dump(document, f, indent=2)
    return output


def _client() -> MapboxClient:
    token = mapbox_directions_token()
    if not token:
        raise RouteResolutionError("MAPBOX_SECRET_TOKEN (or MAPBOX_PUBLIC_TOKEN) is not set")
    return MapboxClient(token)


async def _resolve_place(client: MapboxClient, value: str) -> Coordinate:
    match = _COORDINATE_RE.match(value)
    if match:
        return (float(match.group(1)), float(match.group(2)))
    return await client.geocode(value)


async def fetch_route(args: argparse.Namespace) -> int:
    """Resolve start, via and end places into a geometry-form route file."""
    logger = get_logger(__name__)
    client = _client()
    places = [args.start, *args.via, args.end]
    coordinates = [await _resolve_place(client, place) for place in places]
    request = ExternalRouteRequest(
        coordinates=tuple(coordinates),
        waypoints=tuple(Waypoint(position, label) for position, label in zip(coordinates, places, strict=True)),
        name=args.name,
        profile=args.profile,
    )
    route = await client.directions(request)
    output = write_json(route_to_document(route, {"profile": args.profile}), args.output)
    logger.info(
        "Route saved",
        path=str(output),
        distance_km=round(route.distance_km, 2),
        first=route.start,
        last=route.end,
    )
    return 0


async def snap_route(args: argparse.Namespace) -> int:
    """Resolve a stored chain-form document and save its geometry back."""
    logger = get_logger(__name__)
    store = open_store(args.store)
    document = store.get(args.collection, args.route_id)
    if document is None:
        raise RouteSourceError(f"No such route document: {args.route_id}", args.route_id)

    parsed = parse_route_document(document, route_id=args.route_id)
    if isinstance(parsed, Route) and not args.force:
        logger.info("Route already has geometry, nothing to do", route_id=args.route_id)
        return 0
    if isinstance(parsed, Route):
        stops = tuple(wp.position for wp in parsed.waypoints)
        parsed = ExternalRouteRequest(
            coordinates=stops if len(stops) >= 2 else (parsed.start, parsed.end),
            waypoints=parsed.waypoints,
            name=parsed.name,
            route_id=args.route_id,
        )

    route = await _client().directions(parsed)
    metadata = {
        "totalDistance": route.distance_km * 1000.0,
        "totalDuration": (route.total_duration_min or 0.0) * 60.0,
    }
    snapped = {**document, **route_to_document(route, metadata)}
    if args.output:
        write_json(snapped, args.output)
    else:
        store.put(args.collection, args.route_id, snapped)
    logger.info(
        "Route snapped",
        route_id=args.route_id,
        points=len(route.path),
        distance_km=round(route.distance_km, 2),
        destination=str(args.output or args.store),
    )
    return 0


def check_routes(args: argparse.Namespace) -> int:
    """Report which documents in a collection are ready to render."""
    logger = get_logger(__name__)
    entries = audit_route_documents(open_store(args.store), args.collection)
    for entry in entries:
        log = logger.warning if entry.status is RouteStatus.INVALID else logger.info
        log("Route checked", route_id=entry.route_id, name=entry.name, status=entry.status.value, reason=entry.reason)

    frame = audit_frame(entries)
    if args.csv:
        args.csv.parent.mkdir(parents=True, exist_ok=True)
        frame.to_csv(args.csv, index=False)
        logger.info("Wrote audit report", path=str(args.csv), rows=len(frame))
    summary = frame["status"].value_counts().to_dict() if len(frame) else {}
    logger.info("Route audit summary", collection=args.collection, total=len(frame), **summary)
    return 1 if args.strict and any(e.status is RouteStatus.INVALID for e in entries) else 0


def dump_route(args: argparse.Namespace) -> int:
    """Write one stored document verbatim as pretty JSON."""
    logger = get_logger(__name__)
    document = open_store(args.store).get(args.collection, args.route_id)
    if document is None:
        raise RouteSourceError(f"No such route document: {args.route_id}", args.route_id)
    if args.output:
        write_json(document, args.output)
        logger.info("Route document dumped", route_id=args.route_id, path=str(args.output))
    else:
        json.dump(document, sys.stdout, indent=2)
        sys.stdout.write("\n")
    return 0


async def render_frames(args: argparse.Namespace) -> int:
    """Render a frame range to PNG files, or log frame output on a dry run."""
    logger = get_logger(__name__)
    composition = CompositionSettings(width=args.width, height=args.height)
    params = AnimationParameters.from_props(load_props(args.props))
    route_data = None
    if args.route_file:
        with args.route_file.open(encoding="utf-8") as f:
            route_data = json.load(f)

    surface: RecordingSurface | MatplotlibMapSurface
    if args.dry_run:
        surface = RecordingSurface()
    else:
        surface = MatplotlibMapSurface(
            composition.width,
            composition.height,
            access_token=mapbox_public_token(),
            basemap=not args.no_basemap,
        )

    token = mapbox_directions_token()
    driver = AnimationDriver(
        surface,
        default_sources(
            route_data=route_data,
            route_id=args.route_id,
            store=open_store(args.store) if args.store else None,
            static_path=DEFAULT_STATIC_ROUTE_PATH,
            collection=args.collection,
        ),
        params,
        total_frames=params.effective_duration(composition.duration_in_frames),
        resolver=MapboxClient(token) if token else None,
        hud=surface,
    )

    try:
        state = await driver.load()
        if state is DriverState.ERROR:
            if isinstance(surface, MatplotlibMapSurface):
                path = surface.save(args.output_dir / "frame_error.png")
                logger.error("Rendered diagnostic frame", path=str(path), route_id=driver.route_id)
            return 1

        first, last = args.frames
        last = min(last, driver.total_frames - 1)
        for frame_index in range(first, last + 1):
            output = driver.render_frame(frame_index)
            if isinstance(surface, MatplotlibMapSurface):
                surface.save(args.output_dir / f"frame_{frame_index:05d}.png")
            else:
                logger.info(
                    "Frame rendered",
                    frame=frame_index,
                    state=output.state.value,
                    commands=[type(command).__name__ for command in output.commands],
                    hud=asdict(output.hud) if output.hud else None,
                    camera=asdict(surface.camera) if surface.camera else None,
                )
        logger.info(
            "Frames rendered",
            first=first,
            last=last,
            degraded=driver.degraded,
            output_dir=None if args.dry_run else str(args.output_dir),
        )
        return 0
    finally:
        driver.dispose()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="routefilm", description="Route animation tools.")
    parser.add_argument("--log-level", default="INFO", help="Logging level (default: INFO)")
    parser.add_argument("--json-logs", action="store_true", help="Emit JSON log lines")
    commands = parser.add_subparsers(dest="command", required=True)

    def add_store_args(command: argparse.ArgumentParser, required: bool = True) -> None:
        command.add_argument("--store", required=required, help="Document store directory or http(s) base URL")
        command.add_argument("--collection", default=DEFAULT_ROUTE_COLLECTION, help="Document collection")

    fetch = commands.add_parser("fetch-route", help="Fetch a route between places into a route file")
    fetch.add_argument("--start", required=True, help="'lng,lat' or a place name")
    fetch.add_argument("--end", required=True, help="'lng,lat' or a place name")
    fetch.add_argument("--via", action="append", default=[], help="Intermediate stop (repeatable)")
    fetch.add_argument("--name", default=None, help="Route name")
    fetch.add_argument("--profile", default="driving", help="Directions profile (default: driving)")
    fetch.add_argument("--output", type=Path, default=DEFAULT_STATIC_ROUTE_PATH, help="Output route file")
    fetch.set_defaults(handler=fetch_route)

    snap = commands.add_parser("snap-route", help="Resolve a stored route's geometry and save it")
    snap.add_argument("route_id", help="Document id")
    add_store_args(snap)
    snap.add_argument("--output", type=Path, default=None, help="Write here instead of back to the store")
    snap.add_argument("--force", action="store_true", help="Re-resolve routes that already have geometry")
    snap.set_defaults(handler=snap_route)

    check = commands.add_parser("check-routes", help="Audit every route document in a collection")
    add_store_args(check)
    check.add_argument("--csv", type=Path, default=None, help="Write the audit table to a CSV file")
    check.add_argument("--strict", action="store_true", help="Exit 1 when any route is invalid")
    check.set_defaults(handler=check_routes)

    dump = commands.add_parser("dump-route", help="Print one stored route document")
    dump.add_argument("route_id", help="Document id")
    add_store_args(dump)
    dump.add_argument("--output", type=Path, default=None, help="Write to a file instead of stdout")
    dump.set_defaults(handler=dump_route)

    render = commands.add_parser("render-frames", help="Render animation frames to PNG")
    render.add_argument("--route-file", type=Path, default=None, help="Route document to render")
    render.add_argument("--route-id", default=None, help="Document id to fetch from --store")
    add_store_args(render, required=False)
    render.add_argument("--props", default=None, help="Render props as JSON or a path to a JSON file")
    render.add_argument("--frames", type=parse_frame_range, default=(0, 0), help="Inclusive range 'a:b' (default 0:0)")
    render.add_argument("--output-dir", type=Path, default=Path("output/frames"), help="PNG output directory")
    render.add_argument("--width", type=int, default=CompositionSettings.width)
    render.add_argument("--height", type=int, default=CompositionSettings.height)
    render.add_argument("--no-basemap", action="store_true", help="Skip basemap tiles")
    render.add_argument("--dry-run", action="store_true", help="Log frame output instead of drawing")
    render.set_defaults(handler=render_frames)

    return parser


def run(argv: Sequence[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    configure_logging(level=args.log_level, format_json=args.json_logs)
    logger = get_logger(__name__)
    logger.info("Starting command", command=args.command)

    try:
        result = args.handler(args)
        if asyncio.iscoroutine(result):
            result = asyncio.run(result)
    except RouteFilmError as e:
        logger.exception("Command failed", command=args.command, error=e.message, route_id=e.route_id)
        return 1
    except (OSError, ValueError) as e:
        logger.exception("Command failed", command=args.command, error=str(e), error_type=type(e).__name__)
        return 1
    return result


def main() -> None:
    sys.exit(run())


if __name__ == "__main__":
    main()
