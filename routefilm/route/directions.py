"""Mapbox directions and geocoding client.

The client turns an ``ExternalRouteRequest`` into a ``Route``. It never
retries and never substitutes a default route or location: every failure is
raised as ``RouteResolutionError``.
"""

from typing import Any
from urllib.parse import quote

import httpx

from routefilm.errors import InvalidRouteError, RouteResolutionError
from routefilm.geo.geometry import Coordinate
from routefilm.logging import get_logger
from routefilm.route.model import ExternalRouteRequest, Route

MAPBOX_API_URL = "https://api.mapbox.com"
DIRECTIONS_PATH = "/directions/v5/mapbox/{profile}/{coordinates}"
GEOCODING_PATH = "/geocoding/v5/mapbox.places/{query}.json"
USER_AGENT = "routefilm/0.1.0"


class MapboxClient:
    """Thin async wrapper over the Mapbox directions and geocoding endpoints.

    Args:
        access_token: Mapbox token; required for every call
        client: Optional shared ``httpx.AsyncClient``. When omitted a client
            is opened and closed around each request.
        timeout: Request timeout in seconds
        base_url: API root, overridable for tests and proxies
    """

    def __init__(
        self,
        access_token: str | None,
        *,
        client: httpx.AsyncClient | None = None,
        timeout: float = 30.0,
        base_url: str = MAPBOX_API_URL,
    ) -> None:
        self.access_token = access_token
        self.timeout = timeout
        self.base_url = base_url.rstrip("/")
        self._client = client
        self.logger = get_logger(f"{__name__}.MapboxClient")

    async def _get_json(self, url: str, params: dict[str, Any], route_id: str | None) -> dict[str, Any]:
        if not self.access_token:
            raise RouteResolutionError("Mapbox access token is not configured", route_id)
        params = {**params, "access_token": self.access_token}
        headers = {"User-Agent": USER_AGENT}

        try:
            if self._client is not None:
                response = await self._client.get(url, params=params, headers=headers, timeout=self.timeout)
            else:
                async with httpx.AsyncClient() as client:
                    response = await client.get(url, params=params, headers=headers, timeout=self.timeout)
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            self.logger.error(
                "Mapbox API returned an error status",
                status_code=e.response.status_code,
                route_id=route_id,
            )
            raise RouteResolutionError(
                f"Mapbox API error: {e.response.status_code} - {e.response.text}", route_id
            ) from e
        except httpx.RequestError as e:
            self.logger.error("Network error calling Mapbox", error=str(e), error_type=type(e).__name__)
            raise RouteResolutionError(f"Network error calling Mapbox: {e}", route_id) from e

        try:
            return response.json()
        except ValueError as e:
            raise RouteResolutionError("Mapbox API returned invalid JSON", route_id) from e

    async def directions(self, request: ExternalRouteRequest) -> Route:
        """Resolve a waypoint chain into a routed path.

        Raises:
            RouteResolutionError: No route found, fewer than 2 usable points,
                or any transport/HTTP failure
        """
        url = self.base_url + DIRECTIONS_PATH.format(profile=request.profile, coordinates=request.coordinates_param)
        self.logger.info(
            "Requesting directions",
            points=len(request.coordinates),
            profile=request.profile,
            route_id=request.route_id,
        )
        payload = await self._get_json(url, {"geometries": "geojson", "overview": "full"}, request.route_id)

        routes = payload.get("routes") or []
        if not routes:
            raise RouteResolutionError(payload.get("message") or "No route found.", request.route_id)

        best = routes[0]
        geometry = best.get("geometry") or {}
        try:
            route = Route.from_geometry(
                geometry.get("coordinates") or [],
                request.waypoints,
                total_distance_km=float(best["distance"]) / 1000.0 if best.get("distance") is not None else None,
                total_duration_min=float(best["duration"]) / 60.0 if best.get("duration") is not None else None,
                name=request.name,
                route_id=request.route_id,
            )
        except InvalidRouteError as e:
            raise RouteResolutionError(f"Directions returned an unusable geometry: {e.message}", request.route_id) from e

        self.logger.info(
            "Directions calculated",
            distance_km=round(route.distance_km, 2),
            points=len(route.path),
            route_id=request.route_id,
        )
        return route

    async def geocode(self, query: str) -> Coordinate:
        """Resolve a place name to its best-match (lng, lat).

        Raises:
            RouteResolutionError: When nothing matches the query
        """
        url = self.base_url + GEOCODING_PATH.format(query=quote(query, safe=""))
        payload = await self._get_json(url, {"limit": 1}, None)
        features = payload.get("features") or []
        if not features or not features[0].get("center"):
            raise RouteResolutionError(f"No geocoding result for {query!r}")
        lng, lat = features[0]["center"][:2]
        self.logger.info("Geocoded place", query=query, lng=lng, lat=lat)
        return (float(lng), float(lat))
