"""
Catalog sources and the loader that keeps an in-process snapshot fresh.

The hot path only ever reads the current snapshot; refreshes happen in a
background task so evaluations do not wait on catalog I/O.
"""

import asyncio
import json
import time
from pathlib import Path
from typing import Any, Dict, Optional, Union

import httpx
import yaml

from shared.circuit_breaker import CircuitBreaker, CircuitBreakerOpenException
from shared.errors import CatalogError, CatalogUnavailableError, ExternalServiceError
from shared.logging import get_logger
from shared.metrics import MetricsCollector
from .snapshot import CatalogSnapshot


DEFAULT_CATALOG_FILE = Path(__file__).resolve().parent / "data" / "default_catalog.yaml"


class CatalogSource:
    """Where catalog documents come from."""

    name = "catalog"

    async def fetch(self) -> Dict[str, Any]:
        raise NotImplementedError


class StaticCatalogSource(CatalogSource):
    """In-memory catalog document."""

    name = "static"

    def __init__(self, document: Dict[str, Any]):
        self.document = document

    async def fetch(self) -> Dict[str, Any]:
        return self.document


class FileCatalogSource(CatalogSource):
    """Catalog document stored as YAML or JSON on disk."""

    name = "file"

    def __init__(self, path: Union[str, Path] = DEFAULT_CATALOG_FILE):
        self.path = Path(path)

    async def fetch(self) -> Dict[str, Any]:
        return await asyncio.to_thread(self._read)

    def _read(self) -> Dict[str, Any]:
        try:
            with self.path.open("r", encoding="utf-8") as f:
                if self.path.suffix == ".json":
                    return json.load(f)
                return yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError, json.JSONDecodeError) as e:
            raise CatalogError(f"Cannot read catalog file {self.path}", details={"error": str(e)}) from e


class HttpCatalogSource(CatalogSource):
    """Catalog served by the role/permission service."""

    name = "http"

    def __init__(self, url: str, token: Optional[str] = None, timeout: float = 5.0,
                 circuit_breaker: Optional[CircuitBreaker] = None):
        self.url = url
        self.token = token
        self.timeout = timeout
        self.circuit_breaker = circuit_breaker or CircuitBreaker(
            failure_threshold=3,
            recovery_timeout=30.0,
            name="catalog-service"
        )

    async def fetch(self) -> Dict[str, Any]:
        async def _fetch() -> Dict[str, Any]:
            headers = {"Accept": "application/json"}
            if self.token:
                headers["Authorization"] = f"Bearer {self.token}"
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.get(self.url, headers=headers)
                response.raise_for_status()
                payload = response.json()
            # The catalog service wraps documents in {"data": ...}
            if isinstance(payload, dict) and "data" in payload and "roles" not in payload:
                payload = payload["data"]
            return payload

        try:
            return await self.circuit_breaker.call(_fetch)
        except (httpx.HTTPError, CircuitBreakerOpenException) as e:
            raise ExternalServiceError("catalog", str(e)) from e


class CatalogLoader:
    """Holds the current catalog snapshot and refreshes it out-of-band."""

    def __init__(self, source: CatalogSource, refresh_interval: float = 300.0,
                 metrics: Optional[MetricsCollector] = None):
        self.source = source
        self.refresh_interval = refresh_interval
        self.metrics = metrics
        self.logger = get_logger("policy.catalog")

        self._snapshot: Optional[CatalogSnapshot] = None
        self._loaded_at = 0.0
        self._refresh_lock = asyncio.Lock()
        self._refresh_task: Optional[asyncio.Task] = None
        self._last_error: Optional[str] = None

    @property
    def version(self) -> str:
        """Version of the current snapshot, ``unloaded`` before the first load."""
        return self._snapshot.version if self._snapshot else "unloaded"

    @property
    def is_stale(self) -> bool:
        return time.monotonic() - self._loaded_at >= self.refresh_interval

    async def get_snapshot(self) -> CatalogSnapshot:
        """Current snapshot; loads synchronously only before the first load."""
        if self._snapshot is None:
            return await self.refresh()

        if self.is_stale:
            self._schedule_refresh()
        return self._snapshot

    async def refresh(self) -> CatalogSnapshot:
        """Fetch and validate a new snapshot.

        On failure the previous snapshot stays in service; without one,
        ``CatalogUnavailableError`` is raised.
        """
        async with self._refresh_lock:
            try:
                document = await self.source.fetch()
                snapshot = CatalogSnapshot.from_dict(document)
            except Exception as e:
                self._last_error = str(e)
                self._record_refresh("error")
                if self._snapshot is not None:
                    self.logger.warning(
                        "Catalog refresh failed, keeping stale snapshot",
                        source=self.source.name,
                        version=self._snapshot.version,
                        error=str(e)
                    )
                    # Back off a full interval before retrying
                    self._loaded_at = time.monotonic()
                    return self._snapshot
                self.logger.error("Catalog load failed", source=self.source.name, error=str(e))
                raise CatalogUnavailableError(
                    "No catalog snapshot available",
                    details={"source": self.source.name, "error": str(e)}
                ) from e

            previous = self.version
            self._snapshot = snapshot
            self._loaded_at = time.monotonic()
            self._last_error = None
            self._record_refresh("ok")
            if snapshot.version != previous:
                self.logger.info(
                    "Catalog snapshot loaded",
                    source=self.source.name,
                    version=snapshot.version,
                    previous_version=previous,
                    roles=len(snapshot.roles.levels),
                    resources=len(snapshot.permissions.resources)
                )
            return snapshot

    def _schedule_refresh(self) -> None:
        if self._refresh_task is not None and not self._refresh_task.done():
            return
        self._refresh_task = asyncio.create_task(self._background_refresh())

    async def _background_refresh(self) -> None:
        try:
            await self.refresh()
        except CatalogUnavailableError:
            pass

    async def start(self) -> None:
        """Initial load. A failure is logged; evaluations deny until a load succeeds."""
        try:
            await self.refresh()
        except CatalogUnavailableError as e:
            self.logger.error("Catalog unavailable at startup", error=e.message)

    async def stop(self) -> None:
        if self._refresh_task is not None and not self._refresh_task.done():
            self._refresh_task.cancel()
            try:
                await self._refresh_task
            except asyncio.CancelledError:
                pass
        self._refresh_task = None

    def get_status(self) -> Dict[str, Any]:
        return {
            "source": self.source.name,
            "version": self.version,
            "loaded": self._snapshot is not None,
            "stale": self._snapshot is not None and self.is_stale,
            "last_error": self._last_error,
        }

    def _record_refresh(self, status: str) -> None:
        if self.metrics:
            self.metrics.increment_counter("catalog_refresh_total", status=status)


def build_catalog_source(catalog_url: Optional[str] = None, catalog_path: Optional[str] = None,
                         catalog_token: Optional[str] = None) -> CatalogSource:
    """Pick the configured catalog source, falling back to the built-in file."""
    if catalog_url:
        return HttpCatalogSource(catalog_url, token=catalog_token)
    if catalog_path:
        return FileCatalogSource(catalog_path)
    return FileCatalogSource(DEFAULT_CATALOG_FILE)
