import json
import logging
import os
from pathlib import Path
from typing import Any

import pytest
from rich.console import Console
from rich.traceback import Traceback
import structlog

from routefilm.logging import configure_logging
from routefilm.route.model import Route, Waypoint
from routefilm.route.sources import JsonDirectoryStore


def _configure_pytest_loggers() -> None:
    """Send pytest's internal loggers through the structlog handler."""
    root_logger = logging.getLogger()
    structlog_handler = next(
        (
            handler
            for handler in root_logger.handlers
            if isinstance(handler.formatter, structlog.stdlib.ProcessorFormatter)
        ),
        None,
    )
    if structlog_handler is None:
        return

    for logger_name in ("pytest", "_pytest", "_pytest.logging", "_pytest.main", "_pytest.runner"):
        logger = logging.getLogger(logger_name)
        for handler in logger.handlers[:]:
            logger.removeHandler(handler)
        logger.addHandler(structlog_handler)
        logger.setLevel(logging.INFO)
        logger.propagate = False


def pytest_configure(config: pytest.Config) -> None:
    configure_logging(level="INFO", format_json=False)
    config.option.log_cli = True
    config.option.log_cli_level = "INFO"
    config.option.log_cli_format = "%(message)s"
    _configure_pytest_loggers()


def pytest_sessionstart(session: pytest.Session) -> None:  # noqa: ARG001
    configure_logging(level="INFO", format_json=False)
    _configure_pytest_loggers()


def pytest_exception_interact(node: pytest.Item, call: pytest.CallInfo) -> None:  # pyright: ignore[reportMissingTypeArgument]
    """Render failing test tracebacks with Rich."""
    if call.excinfo is None:
        return
    structlog.get_logger("pytest").error(
        "Test exception occurred",
        test_name=node.nodeid,
        exception_type=call.excinfo.typename,
        exception_message=str(call.excinfo.value),
    )
    Console().print(
        Traceback.from_exception(call.excinfo.type, call.excinfo.value, call.excinfo.tb, show_locals=True, max_frames=5)
    )


def pytest_runtest_makereport(item: pytest.Item, call: pytest.CallInfo) -> pytest.TestReport:  # pyright: ignore[reportMissingTypeArgument]
    """Drop pytest's own traceback locally; Rich already printed it."""
    report = pytest.TestReport.from_item_and_call(item, call)
    is_ci = os.getenv("GITHUB_ACTIONS") == "true"
    if report.outcome == "failed" and call.excinfo is not None and not is_ci:
        report.longrepr = None
    return report


@pytest.fixture()
def diagonal_route() -> Route:
    """Two-point route from (0, 0) to (10, 10) without precomputed totals."""
    return Route.from_geometry([[0.0, 0.0], [10.0, 10.0]])


@pytest.fixture()
def city_route() -> Route:
    """A short route heading east, then north, with two labelled stops."""
    return Route.from_geometry(
        [[11.5600, 48.1400], [11.5700, 48.1400], [11.5800, 48.1400], [11.5800, 48.1500]],
        [Waypoint((11.5600, 48.1400), "Start"), Waypoint((11.5800, 48.1500), "Finish")],
        name="Altstadt loop",
        route_id="altstadt",
    )


@pytest.fixture()
def geometry_document() -> dict[str, Any]:
    return {
        "name": "Altstadt loop",
        "geometry": {
            "type": "LineString",
            "coordinates": [[11.56, 48.14], [11.57, 48.14], [11.58, 48.14], [11.58, 48.15]],
        },
        "waypoints": [{"lat": 48.14, "lng": 11.56, "label": "Start"}, {"lat": 48.15, "lng": 11.58, "label": "Finish"}],
        "totalDistance": 3.6,
        "totalDuration": 12,
    }


@pytest.fixture()
def chain_document() -> dict[str, Any]:
    """A stored route without geometry: start location plus stops."""
    return {
        "name": "Coast run",
        "startLocation": {"location": {"lat": 40.97778, "lng": 27.51528}, "address": "Tekirdag"},
        "waypoints": [{"position": {"lat": 40.799734, "lng": 27.363385}, "notes": "Ucmakdere"}],
    }


@pytest.fixture()
def route_store(tmp_path: Path, geometry_document: dict[str, Any], chain_document: dict[str, Any]) -> JsonDirectoryStore:
    """Directory store with one ready, one chain-form and one broken document."""
    collection = tmp_path / "published_routes"
    collection.mkdir()
    documents = {
        "altstadt": geometry_document,
        "coast": chain_document,
        "broken": {"name": "Broken", "geometry": {"type": "LineString", "coordinates": [[11.56, 48.14]]}},
    }
    for doc_id, document in documents.items():
        (collection / f"{doc_id}.json").write_text(json.dumps(document), encoding="utf-8")
    return JsonDirectoryStore(tmp_path)
