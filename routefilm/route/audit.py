"""Classify stored route documents by whether they can be rendered as-is."""

from collections.abc import Mapping
from dataclasses import asdict, dataclass
from enum import Enum

import pandas as pd  # pyright: ignore[reportMissingTypeStubs]

from routefilm.errors import InvalidRouteError, RouteResolutionError
from routefilm.logging import get_logger
from routefilm.route.model import ExternalRouteRequest, parse_route_document
from routefilm.route.sources import DocumentStore


class RouteStatus(str, Enum):
    READY = "ready"
    NEEDS_RESOLUTION = "needs-resolution"
    INVALID = "invalid"


@dataclass(frozen=True)
class RouteAuditEntry:
    route_id: str
    name: str
    status: RouteStatus
    points: int
    reason: str = ""


def audit_route_documents(store: DocumentStore, collection: str) -> list[RouteAuditEntry]:
    """Parse every document in a collection and record its render readiness."""
    logger = get_logger(__name__)
    entries: list[RouteAuditEntry] = []

    for doc_id, document in store.list(collection):
        name = "Untitled"
        if isinstance(document, Mapping):
            name = str(document.get("name") or document.get("label") or "Untitled")
        try:
            parsed = parse_route_document(document, route_id=doc_id)
        except (InvalidRouteError, RouteResolutionError) as e:
            entries.append(RouteAuditEntry(doc_id, name, RouteStatus.INVALID, 0, e.message))
            continue

        if isinstance(parsed, ExternalRouteRequest):
            entries.append(
                RouteAuditEntry(doc_id, name, RouteStatus.NEEDS_RESOLUTION, len(parsed.coordinates), "Geometry missing")
            )
        else:
            entries.append(RouteAuditEntry(doc_id, name, RouteStatus.READY, len(parsed.path)))

    logger.info(
        "Audited route collection",
        collection=collection,
        total=len(entries),
        ready=sum(1 for e in entries if e.status is RouteStatus.READY),
        invalid=sum(1 for e in entries if e.status is RouteStatus.INVALID),
    )
    return entries


def audit_frame(entries: list[RouteAuditEntry]) -> pd.DataFrame:
    """Audit entries as a DataFrame ready for CSV export."""
    columns = ["route_id", "name", "status", "points", "reason"]
    if not entries:
        return pd.DataFrame(columns=columns)
    frame = pd.DataFrame([asdict(entry) for entry in entries], columns=columns)
    frame["status"] = frame["status"].map(lambda status: status.value)
    return frame
