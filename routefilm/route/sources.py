"""Priority-ordered route sources and the document stores behind them.

A render honours exactly one source: the first one that is available in
priority order (inline data, then fetch-by-id, then the static fallback file).
"""

import asyncio
from collections.abc import Iterator, Mapping, Sequence
from dataclasses import dataclass
import json
from pathlib import Path
from typing import Any, Protocol

import httpx

from routefilm.config import DEFAULT_ROUTE_COLLECTION, DEFAULT_STATIC_ROUTE_PATH
from routefilm.errors import RouteSourceError
from routefilm.logging import get_logger

logger = get_logger(__name__)


class DocumentStore(Protocol):
    """Route documents keyed by collection and id."""

    def get(self, collection: str, doc_id: str) -> dict[str, Any] | None: ...

    def list(self, collection: str) -> Iterator[tuple[str, dict[str, Any]]]: ...

    def put(self, collection: str, doc_id: str, document: Mapping[str, Any]) -> None: ...


class JsonDirectoryStore:
    """Documents stored as ``<root>/<collection>/<doc_id>.json``."""

    def __init__(self, root: Path) -> None:
        self.root = Path(root)

    def _path(self, collection: str, doc_id: str) -> Path:
        if "/" in doc_id or doc_id in {"", ".", ".."}:
            raise RouteSourceError(f"Invalid document id: {doc_id!r}", doc_id)
        return self.root / collection / f"{doc_id}.json"

    def get(self, collection: str, doc_id: str) -> dict[str, Any] | None:
        path = self._path(collection, doc_id)
        if not path.exists():
            return None
        with path.open(encoding="utf-8") as f:
            return json.load(f)

    def list(self, collection: str) -> Iterator[tuple[str, dict[str, Any]]]:
        directory = self.root / collection
        if not directory.is_dir():
            return
        for path in sorted(directory.glob("*.json")):
            with path.open(encoding="utf-8") as f:
                yield path.stem, json.load(f)

    def put(self, collection: str, doc_id: str, document: Mapping[str, Any]) -> None:
        path = self._path(collection, doc_id)
        path.parent.mkdir(parents=True, exist_ok=True)
        with path.open("w", encoding="utf-8") as f:
            json.dump(document, f, indent=2)


class HttpDocumentStore:
    """Documents served as JSON over HTTP at ``<base_url>/<collection>/<doc_id>.json``.

    ``<base_url>/<collection>/index.json`` lists the document ids of a collection.
    Transport and decoding failures are raised as ``RouteSourceError``.
    """

    def __init__(self, base_url: str, timeout: float = 30.0, transport: httpx.BaseTransport | None = None) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.transport = transport

    def _fetch(self, url: str, doc_id: str | None = None) -> Any | None:  # noqa: ANN401
        try:
            with httpx.Client(transport=self.transport) as client:
                response = client.get(url, timeout=self.timeout)
                if response.status_code == 404:
                    return None
                response.raise_for_status()
                return response.json()
        except httpx.HTTPError as e:
            raise RouteSourceError(f"Error fetching {url}: {e}", doc_id) from e
        except ValueError as e:
            raise RouteSourceError(f"Invalid JSON from {url}: {e}", doc_id) from e

    def get(self, collection: str, doc_id: str) -> dict[str, Any] | None:
        return self._fetch(f"{self.base_url}/{collection}/{doc_id}.json", doc_id)

    def list(self, collection: str) -> Iterator[tuple[str, dict[str, Any]]]:
        for doc_id in self._fetch(f"{self.base_url}/{collection}/index.json") or []:
            document = self.get(collection, doc_id)
            if document is not None:
                yield doc_id, document

    def put(self, collection: str, doc_id: str, document: Mapping[str, Any]) -> None:
        url = f"{self.base_url}/{collection}/{doc_id}.json"
        try:
            with httpx.Client(transport=self.transport) as client:
                response = client.put(url, json=document, timeout=self.timeout)
                response.raise_for_status()
        except httpx.HTTPError as e:
            raise RouteSourceError(f"Error saving {url}: {e}", doc_id) from e


class RouteSource(Protocol):
    """One strategy for obtaining a route document."""

    name: str

    @property
    def route_id(self) -> str | None: ...

    def is_available(self) -> bool: ...

    async def fetch(self) -> Mapping[str, Any]: ...


@dataclass
class InlineSource:
    """Route data handed over directly, e.g. from a preview UI."""

    document: Mapping[str, Any] | None
    name: str = "inline"

    @property
    def route_id(self) -> str | None:
        return None

    def is_available(self) -> bool:
        return bool(self.document)

    async def fetch(self) -> Mapping[str, Any]:
        if not self.document:
            raise RouteSourceError("No inline route data")
        return self.document


@dataclass
class DocumentStoreSource:
    """Route document fetched by id from a document store."""

    store: DocumentStore | None
    doc_id: str | None
    collection: str = DEFAULT_ROUTE_COLLECTION
    name: str = "document-store"

    @property
    def route_id(self) -> str | None:
        return self.doc_id

    def is_available(self) -> bool:
        return self.store is not None and bool(self.doc_id)

    async def fetch(self) -> Mapping[str, Any]:
        if self.store is None or not self.doc_id:
            raise RouteSourceError("No document store or route id configured", self.doc_id)
        logger.info("Fetching route document", route_id=self.doc_id, collection=self.collection)
        # Stores are blocking; keep the event loop free for the loading watchdog
        try:
            document = await asyncio.to_thread(self.store.get, self.collection, self.doc_id)
        except (OSError, ValueError, httpx.HTTPError) as e:
            raise RouteSourceError(f"Error fetching route {self.doc_id}: {e}", self.doc_id) from e
        if document is None:
            raise RouteSourceError(f"No such route document: {self.doc_id}", self.doc_id)
        logger.info(
            "Fetched route document",
            route_id=self.doc_id,
            keys=sorted(document) if isinstance(document, Mapping) else None,
        )
        return document


@dataclass
class StaticFileSource:
    """Bundled route file used when nothing else is supplied."""

    path: Path = DEFAULT_STATIC_ROUTE_PATH
    name: str = "static-file"

    @property
    def route_id(self) -> str | None:
        return None

    def is_available(self) -> bool:
        return True

    async def fetch(self) -> Mapping[str, Any]:
        try:
            with Path(self.path).open(encoding="utf-8") as f:
                return json.load(f)
        except (OSError, ValueError) as e:
            raise RouteSourceError(f"Failed to load default route from {self.path}: {e}") from e


def default_sources(
    route_data: Mapping[str, Any] | None = None,
    route_id: str | None = None,
    store: DocumentStore | None = None,
    static_path: Path = DEFAULT_STATIC_ROUTE_PATH,
    collection: str = DEFAULT_ROUTE_COLLECTION,
) -> list[RouteSource]:
    """The standard priority chain: inline data, fetch-by-id, static file."""
    return [
        InlineSource(route_data),
        DocumentStoreSource(store, route_id, collection=collection),
        StaticFileSource(static_path),
    ]


def select_source(sources: Sequence[RouteSource]) -> RouteSource:
    """First available source in priority order.

    Raises:
        RouteSourceError: When none of the sources is available
    """
    for source in sources:
        if source.is_available():
            logger.debug("Selected route source", source=source.name, route_id=source.route_id)
            return source
    raise RouteSourceError("No route source available")
