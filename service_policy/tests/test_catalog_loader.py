"""
Unit tests for catalog sources and the catalog loader.
"""

import asyncio
import json

import httpx
import pytest
import yaml
from unittest.mock import AsyncMock, patch

from shared.errors import CatalogError, CatalogUnavailableError, ExternalServiceError
from shared.metrics import MetricsCollector
from service_policy.app.catalog.loader import (
    CatalogLoader, CatalogSource, FileCatalogSource, HttpCatalogSource,
    StaticCatalogSource, build_catalog_source, DEFAULT_CATALOG_FILE
)

from shared.test_helpers import test_data_factory

catalog_document = test_data_factory.create_catalog_document


class FlakySource(CatalogSource):
    """Serves the test catalog until told to fail."""

    name = "flaky"

    def __init__(self):
        self.fail = False
        self.calls = 0

    async def fetch(self):
        self.calls += 1
        if self.fail:
            raise ConnectionError("catalog service down")
        return catalog_document()


class TestCatalogSources:
    """Test cases for catalog sources."""

    @pytest.mark.asyncio
    async def test_file_source_yaml(self, tmp_path):
        path = tmp_path / "catalog.yaml"
        path.write_text(yaml.safe_dump(catalog_document()))

        document = await FileCatalogSource(path).fetch()

        assert document["superUserRole"] == "SU"

    @pytest.mark.asyncio
    async def test_file_source_json(self, tmp_path):
        path = tmp_path / "catalog.json"
        path.write_text(json.dumps(catalog_document()))

        document = await FileCatalogSource(path).fetch()

        assert "portal" in document["resources"]

    @pytest.mark.asyncio
    async def test_file_source_missing(self, tmp_path):
        with pytest.raises(CatalogError):
            await FileCatalogSource(tmp_path / "missing.yaml").fetch()

    @pytest.mark.asyncio
    async def test_default_catalog_loads(self):
        loader = CatalogLoader(FileCatalogSource(DEFAULT_CATALOG_FILE))

        snapshot = await loader.refresh()

        assert snapshot.roles.level_of("GS") == 90
        assert snapshot.tenant_admin_resource == "tenant"
        assert snapshot.permissions.permission_for("crm", "delete") == "CRM_MEMBER_DELETE"

    @pytest.mark.asyncio
    async def test_http_source_unwraps_data(self):
        source = HttpCatalogSource("http://catalog.local/catalog", token="svc-token")
        response = httpx.Response(
            200,
            json={"success": True, "data": catalog_document()},
            request=httpx.Request("GET", "http://catalog.local/catalog")
        )

        with patch("httpx.AsyncClient.get", new_callable=AsyncMock) as mock_get:
            mock_get.return_value = response
            document = await source.fetch()

        assert document["superUserRole"] == "SU"
        headers = mock_get.call_args.kwargs["headers"]
        assert headers["Authorization"] == "Bearer svc-token"

    @pytest.mark.asyncio
    async def test_http_source_error(self):
        source = HttpCatalogSource("http://catalog.local/catalog")

        with patch("httpx.AsyncClient.get", new_callable=AsyncMock) as mock_get:
            mock_get.side_effect = httpx.ConnectError("refused")
            with pytest.raises(ExternalServiceError):
                await source.fetch()

    def test_build_catalog_source(self, tmp_path):
        assert isinstance(build_catalog_source(catalog_url="http://catalog.local"), HttpCatalogSource)
        assert build_catalog_source(catalog_path=str(tmp_path / "c.yaml")).path == tmp_path / "c.yaml"
        assert build_catalog_source().path == DEFAULT_CATALOG_FILE


class TestCatalogLoader:
    """Test cases for CatalogLoader."""

    @pytest.mark.asyncio
    async def test_version_before_load(self):
        loader = CatalogLoader(StaticCatalogSource(catalog_document()))
        assert loader.version == "unloaded"
        assert loader.get_status()["loaded"] is False

    @pytest.mark.asyncio
    async def test_first_get_snapshot_loads(self):
        loader = CatalogLoader(StaticCatalogSource(catalog_document()))

        snapshot = await loader.get_snapshot()

        assert loader.version == snapshot.version

    @pytest.mark.asyncio
    async def test_failed_first_load(self):
        source = FlakySource()
        source.fail = True
        loader = CatalogLoader(source)

        with pytest.raises(CatalogUnavailableError):
            await loader.get_snapshot()

    @pytest.mark.asyncio
    async def test_start_logs_instead_of_raising(self):
        source = FlakySource()
        source.fail = True
        loader = CatalogLoader(source)

        await loader.start()

        assert loader.get_status()["last_error"] == "catalog service down"

    @pytest.mark.asyncio
    async def test_refresh_failure_keeps_stale_snapshot(self):
        source = FlakySource()
        metrics = MetricsCollector("policy")
        loader = CatalogLoader(source, metrics=metrics)
        original = await loader.refresh()

        source.fail = True
        snapshot = await loader.refresh()

        assert snapshot is original
        assert loader.get_status()["last_error"] == "catalog service down"
        assert metrics.registry.get_sample_value("catalog_refresh_total", {"status": "error"}) == 1.0

    @pytest.mark.asyncio
    async def test_stale_snapshot_refreshes_in_background(self):
        source = FlakySource()
        loader = CatalogLoader(source, refresh_interval=0)
        await loader.refresh()
        assert source.calls == 1

        snapshot = await loader.get_snapshot()
        await asyncio.sleep(0)
        await loader.stop()

        assert snapshot is not None
        assert source.calls >= 2
