"""
Shared fixtures for Policy service tests.
"""

import pytest
import pytest_asyncio

from shared.metrics import MetricsCollector
from shared.test_helpers import test_data_factory
from service_policy.app.cache.policy_cache import PolicyCache
from service_policy.app.catalog.loader import CatalogLoader, StaticCatalogSource
from service_policy.app.catalog.snapshot import CatalogSnapshot
from service_policy.app.evaluation.evaluator import PolicyEvaluator
from service_policy.app.identity.resolver import IdentityResolver
from service_policy.app.rules.engine import PolicyEngine


@pytest.fixture
def snapshot():
    """Validated snapshot of the test catalog."""
    return CatalogSnapshot.from_dict(test_data_factory.create_catalog_document())


@pytest.fixture
def metrics():
    return MetricsCollector("policy")


@pytest_asyncio.fixture
async def loader():
    """Catalog loader with the test catalog already loaded."""
    catalog_loader = CatalogLoader(
        StaticCatalogSource(test_data_factory.create_catalog_document()),
        refresh_interval=300
    )
    await catalog_loader.refresh()
    yield catalog_loader
    await catalog_loader.stop()


@pytest.fixture
def local_cache(metrics):
    """Decision cache running on the local map only."""
    return PolicyCache("redis://localhost:6379/15", metrics=metrics)


@pytest_asyncio.fixture
async def evaluator(loader, local_cache, metrics):
    policy_evaluator = PolicyEvaluator(
        loader=loader,
        cache=local_cache,
        resolver=IdentityResolver(),
        engine=PolicyEngine(),
        metrics=metrics,
        timeout_seconds=0.5,
        batch_max_size=50,
    )
    yield policy_evaluator
    await policy_evaluator.drain()
