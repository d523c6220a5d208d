"""Behavior-driven tests for the animation driver state machine."""

import asyncio
from pathlib import Path
import time
from typing import Any

import pytest
from structlog.testing import capture_logs

from routefilm.animation.camera import CameraMode
from routefilm.animation.driver import AnimationDriver, DriverState, compute_animation_state
from routefilm.config import AnimationParameters
from routefilm.errors import AssetLoadError, RouteResolutionError, SurfaceInitError
from routefilm.render.commands import AddLayer, JumpTo, RecordingSurface, SetSourceData
from routefilm.route.model import ExternalRouteRequest, Route
from routefilm.route.sources import DocumentStoreSource, InlineSource, JsonDirectoryStore

DIAGONAL = {"geometry": {"type": "LineString", "coordinates": [[0, 0], [10, 10]]}}


class FakeResolver:
    """Directions resolver returning a fixed route or raising."""

    def __init__(self, route: Route | None = None, error: Exception | None = None, delay: float = 0.0) -> None:
        self.route = route
        self.error = error
        self.delay = delay
        self.requests: list[ExternalRouteRequest] = []

    async def directions(self, request: ExternalRouteRequest) -> Route:
        self.requests.append(request)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return self.route


class SlowSource:
    """Route source whose fetch never finishes in time."""

    name = "slow"
    route_id = "slow-route"

    def __init__(self, delay: float = 10.0) -> None:
        self.delay = delay
        self.cancelled = False

    def is_available(self) -> bool:
        return True

    async def fetch(self) -> dict[str, Any]:
        try:
            await asyncio.sleep(self.delay)
        except asyncio.CancelledError:
            self.cancelled = True
            raise
        return DIAGONAL


class BlockingStore:
    """Document store whose reads block the calling thread."""

    def __init__(self, delay: float = 0.5) -> None:
        self.delay = delay

    def get(self, collection: str, doc_id: str) -> dict[str, Any] | None:
        time.sleep(self.delay)
        return DIAGONAL


def _driver(document: dict[str, Any] | None = DIAGONAL, surface: RecordingSurface | None = None, **kwargs: Any) -> AnimationDriver:
    kwargs.setdefault("total_frames", 300)
    sources = kwargs.pop("sources", [InlineSource(document)])
    surface = surface or RecordingSurface()
    return AnimationDriver(surface, sources, kwargs.pop("params", None), hud=surface, **kwargs)


class TestLoading:
    """Test the Idle -> Loading -> Ready path."""

    def test_loads_inline_route_and_sets_up_layers(self):
        """Should become ready with the route drawn and the default style loaded."""
        driver = _driver()

        assert driver.state is DriverState.IDLE
        assert asyncio.run(driver.load()) is DriverState.READY

        surface = driver.surface
        assert surface.map_style == "streets-v11"
        assert set(surface.layers) == {"progress-line", "route", "point"}
        assert surface.layers["route"].visible
        assert surface.layers["point"].kind == "circle"
        assert list(surface.sources["route"]["geometry"]["coordinates"]) == [(0.0, 0.0), (10.0, 10.0)]

    def test_reveal_path_hides_full_route_behind_faded_background(self):
        """Should add a faded background line and hide the full route."""
        driver = _driver(params=AnimationParameters(reveal_path=True))

        asyncio.run(driver.load())

        layers = driver.surface.layers
        assert layers["route-bg"].paint["line-opacity"] == 0.5
        assert not layers["route"].visible

    def test_waypoint_layers_follow_show_waypoints(self, geometry_document):
        """Should add waypoint layers whose visibility follows the parameter."""
        driver = _driver(geometry_document, params=AnimationParameters(show_waypoints=False))

        asyncio.run(driver.load())

        layers = driver.surface.layers
        assert not layers["waypoints-layer"].visible
        assert not layers["waypoints-labels"].visible
        labels = [f["properties"]["title"] for f in driver.surface.sources["waypoints"]["features"]]
        assert labels == ["Start", "Finish"]

    def test_marker_icon_is_used_when_it_loads(self):
        """Should draw the marker as an icon when the image loaded."""
        driver = _driver(params=AnimationParameters(marker_icon=Path("marker.png")))

        asyncio.run(driver.load())

        assert driver.surface.images == {"custom-marker": Path("marker.png")}
        assert driver.surface.layers["point"].kind == "symbol"

    def test_marker_icon_failure_degrades_to_plain_marker(self):
        """Should log the asset failure and keep rendering with a circle marker."""
        surface = RecordingSurface(image_error=AssetLoadError("cannot decode marker.png"))
        driver = _driver(surface=surface, params=AnimationParameters(marker_icon=Path("marker.png")))

        with capture_logs() as logs:
            state = asyncio.run(driver.load())

        assert state is DriverState.READY
        assert surface.layers["point"].kind == "circle"
        assert any(log.get("asset") == "custom-marker" and log["log_level"] == "warning" for log in logs)

    def test_load_twice_is_rejected(self):
        """Should only load from the idle state."""
        driver = _driver()
        asyncio.run(driver.load())

        with pytest.raises(RuntimeError, match="idle"):
            asyncio.run(driver.load())

    def test_logs_every_transition(self):
        """Should log state transitions with from/to states."""
        driver = _driver()

        with capture_logs() as logs:
            asyncio.run(driver.load())
            driver.render_frame(0)
            driver.dispose()

        transitions = [(log["from_state"], log["to_state"]) for log in logs if "to_state" in log]
        assert transitions == [
            ("idle", "loading"),
            ("loading", "ready"),
            ("ready", "rendering"),
            ("rendering", "disposed"),
        ]


class TestChainResolution:
    """Test routes stored without geometry."""

    def test_resolves_chain_through_directions(self, route_store, city_route):
        """Should resolve the waypoint chain and render the resolved route."""
        resolver = FakeResolver(route=city_route)
        driver = _driver(sources=[DocumentStoreSource(route_store, "coast")], resolver=resolver)

        assert asyncio.run(driver.load()) is DriverState.READY
        assert driver.route == city_route
        assert len(driver.route.path) > 0
        assert resolver.requests[0].route_id == "coast"
        assert len(resolver.requests[0].coordinates) == 2

    def test_failed_resolution_is_terminal(self, route_store):
        """Should end in the error state with a diagnostic naming the route."""
        resolver = FakeResolver(error=RouteResolutionError("No route found.", "coast"))
        driver = _driver(sources=[DocumentStoreSource(route_store, "coast")], resolver=resolver)

        assert asyncio.run(driver.load()) is DriverState.ERROR
        assert driver.route is None
        assert driver.surface.diagnostic.title == "Render Error"
        assert driver.surface.diagnostic.message == "No route found."
        assert driver.surface.diagnostic.route_id == "coast"
        assert len(resolver.requests) == 1

    def test_chain_without_resolver_is_an_error(self, chain_document):
        """Should not render a chain-form route it cannot resolve."""
        driver = _driver(chain_document)

        assert asyncio.run(driver.load()) is DriverState.ERROR
        assert "no directions resolver" in driver.diagnostic.message

    def test_missing_document_is_an_error(self, route_store):
        """Should show the requested id when the document does not exist."""
        driver = _driver(sources=[DocumentStoreSource(route_store, "missing")])

        assert asyncio.run(driver.load()) is DriverState.ERROR
        assert driver.diagnostic.route_id == "missing"

    def test_invalid_geometry_is_an_error(self):
        """Should reject a one-point route rather than clamp it."""
        driver = _driver({"geometry": {"type": "LineString", "coordinates": [[11.5, 48.1]]}})

        assert asyncio.run(driver.load()) is DriverState.ERROR
        assert "at least 2 points" in driver.diagnostic.message

    @pytest.mark.parametrize(
        ("document", "message"),
        [
            ({"geometry": {"type": "LineString", "coordinates": [[0, 0], [1, 1]]}, "waypoints": [["a", "b"]]}, "waypoints[0]"),
            ({"startLocation": "Munich", "waypoints": [{"lat": 48.1, "lng": 11.5}]}, "startLocation"),
            ({"geometry": None, "waypoints": [7, 8]}, "waypoints[0]"),
        ],
    )
    def test_malformed_document_is_an_error(self, document, message):
        """Should end in the error state with a diagnostic instead of raising."""
        driver = _driver(document)

        assert asyncio.run(driver.load()) is DriverState.ERROR
        assert message in driver.diagnostic.message
        assert driver.surface.diagnostic == driver.diagnostic

    def test_non_object_store_document_is_an_error(self, tmp_path):
        """Should reject a stored document that is not a JSON object."""
        (tmp_path / "published_routes").mkdir()
        (tmp_path / "published_routes" / "listed.json").write_text("[[0, 0], [1, 1]]")
        driver = _driver(sources=[DocumentStoreSource(JsonDirectoryStore(tmp_path), "listed")])

        assert asyncio.run(driver.load()) is DriverState.ERROR
        assert "must be an object" in driver.diagnostic.message
        assert driver.diagnostic.route_id == "listed"


class TestSurfaceFailures:
    """Test render surface errors."""

    def test_surface_init_failure_is_terminal(self):
        """Should show a diagnostic when the surface cannot start, e.g. a missing credential."""
        surface = RecordingSurface(init_error=SurfaceInitError("Missing MAPBOX_PUBLIC_TOKEN"))
        driver = _driver(surface=surface)

        assert asyncio.run(driver.load()) is DriverState.ERROR
        assert surface.diagnostic.title == "Render surface unavailable"
        assert "MAPBOX_PUBLIC_TOKEN" in surface.diagnostic.message

    def test_error_state_renders_the_diagnostic(self):
        """Should return the diagnostic instead of frame commands."""
        driver = _driver(surface=RecordingSurface(init_error=SurfaceInitError("bad token")))
        asyncio.run(driver.load())

        output = driver.render_frame(10)

        assert output.state is DriverState.ERROR
        assert output.commands == ()
        assert output.diagnostic.message == "bad token"


class TestWatchdog:
    """Test the bounded Loading phase."""

    def test_stalled_route_fetch_ends_in_error(self):
        """Should give up on a fetch that never finishes and report the timeout."""
        source = SlowSource()
        driver = _driver(sources=[source], watchdog_timeout=0.05)

        with capture_logs() as logs:
            state = asyncio.run(driver.load())

        assert state is DriverState.ERROR
        assert source.cancelled
        assert "Timed out" in driver.diagnostic.message
        assert driver.diagnostic.route_id == "slow-route"
        assert any(log["event"] == "Loading timed out, force unblocking render" for log in logs)

    def test_blocking_store_read_still_times_out(self):
        """Should fire the watchdog while a store read blocks its thread."""
        driver = _driver(sources=[DocumentStoreSource(BlockingStore(), "blocked")], watchdog_timeout=0.05)

        async def scenario() -> tuple[DriverState, float]:
            started = time.monotonic()
            state = await driver.load()
            return state, time.monotonic() - started

        state, elapsed = asyncio.run(scenario())

        assert state is DriverState.ERROR
        assert elapsed < 0.4
        assert "Timed out" in driver.diagnostic.message
        assert driver.diagnostic.route_id == "blocked"

    def test_stalled_style_load_unblocks_best_effort(self):
        """Should move on to ready in degraded mode when only the surface is slow."""
        surface = RecordingSurface(style_delay=10.0)
        driver = _driver(surface=surface, watchdog_timeout=0.05)

        assert asyncio.run(driver.load()) is DriverState.READY
        assert driver.degraded
        assert "route" in surface.layers
        assert driver.render_frame(0).state is DriverState.RENDERING

    def test_stalled_resolution_is_cancelled(self, chain_document, city_route):
        """Should cancel a slow directions call once the watchdog fires."""
        resolver = FakeResolver(route=city_route, delay=10.0)
        driver = _driver(chain_document, resolver=resolver, watchdog_timeout=0.05)

        assert asyncio.run(driver.load()) is DriverState.ERROR
        assert driver.route is None


class TestDisposal:
    """Test teardown in any state."""

    def test_dispose_mid_load_cancels_pending_work(self):
        """Should cancel the in-flight fetch and never apply its result."""
        source = SlowSource(delay=0.2)
        driver = _driver(sources=[source])

        async def scenario() -> DriverState:
            loading = asyncio.ensure_future(driver.load())
            await asyncio.sleep(0.01)
            driver.dispose()
            state = await loading
            await asyncio.sleep(0.3)
            return state

        assert asyncio.run(scenario()) is DriverState.DISPOSED
        assert source.cancelled
        assert driver.route is None
        assert driver.surface.closed
        assert not driver.surface.commands

    def test_dispose_is_idempotent(self):
        """Should be safe to call repeatedly and from idle."""
        driver = _driver()

        driver.dispose()
        driver.dispose()

        assert driver.state is DriverState.DISPOSED
        assert driver.surface.closed

    def test_render_after_dispose_is_rejected(self):
        """Should refuse to render once disposed."""
        driver = _driver()
        asyncio.run(driver.load())
        driver.dispose()

        with pytest.raises(RuntimeError, match="disposed"):
            driver.render_frame(0)

    def test_render_before_load_is_rejected(self):
        """Should refuse to render before loading finished."""
        with pytest.raises(RuntimeError, match="idle"):
            _driver().render_frame(0)


class TestRendering:
    """Test per-frame output."""

    def test_scenario_first_frame(self):
        """Should start at the first point with nothing travelled."""
        driver = _driver()
        asyncio.run(driver.load())

        state = driver.compute_state(0)

        assert state.progress == 0.0
        assert state.traveled_km == pytest.approx(0.0)
        assert state.current_position == (0.0, 0.0)

    def test_scenario_last_frame(self):
        """Should reach the last point on the final frame."""
        driver = _driver()
        asyncio.run(driver.load())

        state = driver.compute_state(299)

        assert state.progress == 1.0
        assert state.current_position == pytest.approx((10.0, 10.0), abs=1e-4)

    def test_frame_commands_and_hud(self):
        """Should move the marker, aim the camera and update the HUD."""
        driver = _driver(params=AnimationParameters(camera_mode=CameraMode.OVERHEAD))
        asyncio.run(driver.load())

        output = driver.render_frame(150)

        assert output.state is DriverState.RENDERING
        assert [type(command) for command in output.commands] == [SetSourceData, JumpTo]
        pose = output.commands[-1].pose
        assert (pose.bearing, pose.pitch, pose.zoom) == (0.0, 0.0, 13.0)
        assert driver.surface.camera == pose
        assert driver.surface.hud == output.hud
        assert output.hud.progress == pytest.approx(150 / 299 * 100)

    def test_reveal_path_updates_progress_line(self):
        """Should draw the travelled part of the route when revealing the path."""
        driver = _driver(params=AnimationParameters(reveal_path=True))
        asyncio.run(driver.load())

        driver.render_frame(299)

        revealed = driver.surface.sources["progress"]["geometry"]["coordinates"]
        assert revealed[0] == pytest.approx((0.0, 0.0))
        assert revealed[-1] == pytest.approx((10.0, 10.0))

    def test_seek_matches_sequential_playback(self, geometry_document):
        """Should produce identical output for a frame whether reached by seeking or playing."""
        params = AnimationParameters(reveal_path=True, camera_mode=CameraMode.CINEMATIC)
        sequential = _driver(geometry_document, params=params, total_frames=120)
        seeking = _driver(geometry_document, params=params, total_frames=120)
        asyncio.run(sequential.load())
        asyncio.run(seeking.load())

        for frame in range(0, 90):
            played = sequential.render_frame(frame)
        sought = seeking.render_frame(89)

        assert played.commands == sought.commands
        assert played.hud == sought.hud

    def test_rendering_same_frame_twice_is_identical(self):
        """Should keep no hidden state between frames."""
        driver = _driver()
        asyncio.run(driver.load())

        first = driver.render_frame(42)
        driver.render_frame(250)
        again = driver.render_frame(42)

        assert first.commands == again.commands
        assert first.hud == again.hud

    def test_single_frame_animation_is_complete(self):
        """Should show the finished route when there is only one frame."""
        driver = _driver(total_frames=1)
        asyncio.run(driver.load())

        assert driver.render_frame(0).hud.progress == 100.0

    def test_total_frames_must_be_positive(self):
        """Should reject a zero-frame animation."""
        with pytest.raises(ValueError, match="total_frames"):
            _driver(total_frames=0)


class TestComputeAnimationState:
    """Test the pure per-frame state computation."""

    def test_uses_route_totals_for_telemetry(self, city_route):
        """Should combine telemetry and camera for one frame."""
        route = Route.from_geometry(city_route.path, total_distance_km=10.0)

        state = compute_animation_state(route, 60, 121, AnimationParameters())

        assert state.telemetry.traveled_km == pytest.approx(5.0)
        assert state.camera_pose.center == state.current_position

    def test_setup_layers_are_declarative(self):
        """Should describe layers as plain data."""
        driver = _driver()
        asyncio.run(driver.load())

        layer_commands = [command for command in driver.surface.commands if isinstance(command, AddLayer)]

        assert [layer.layer_id for layer in layer_commands] == ["progress-line", "route", "point"]
