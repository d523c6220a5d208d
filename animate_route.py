#!/usr/bin/env python3
"""
Route Animation

Renders a route animation video with Manim. The route is a stored document
(ROUTEFILM_STORE + ROUTEFILM_ROUTE_ID) when both are set, otherwise the route
file (ROUTEFILM_ROUTE_FILE, default assets/route.json).

Optional settings:
- ROUTEFILM_PROPS: render props as JSON, e.g. '{"cameraMode": "overhead", "revealPath": true}'
- ROUTEFILM_BASEMAP=0: skip basemap tiles
- MAPBOX_PUBLIC_TOKEN: needed for Mapbox map styles
- MAPBOX_SECRET_TOKEN: needed to resolve routes stored without geometry
"""

from routefilm.logging import get_logger
from routefilm.video.scene import RouteAnimationScene

logger = get_logger(__name__)

__all__ = ["RouteAnimationScene"]


if __name__ == "__main__":
    logger.info("Route Animation Script")
    logger.info("Run with: manim -pql animate_route.py RouteAnimationScene")
