"""Error taxonomy for route loading and rendering."""


class RouteFilmError(Exception):
    """Base class for every routefilm error.

    Args:
        message: Human-readable description
        route_id: Identifier of the route being processed, when known
    """

    def __init__(self, message: str, route_id: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.route_id = route_id


class InvalidRouteError(RouteFilmError):
    """Malformed or out-of-bounds route data. Never silently clamped."""


class RouteResolutionError(RouteFilmError):
    """The directions service could not turn a waypoint chain into a path."""


class RouteSourceError(RouteFilmError):
    """No route source was available or the requested document does not exist."""


class AssetLoadError(RouteFilmError):
    """A visual asset (marker icon, style) failed to load. Rendering continues without it."""


class SurfaceInitError(RouteFilmError):
    """The render surface could not be initialized, e.g. missing map credential."""
