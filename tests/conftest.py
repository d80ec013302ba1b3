"""
Pytest configuration and shared fixtures.

Registers the integration marker/option and builds engines wired to an
in-memory org chart:

    ceo-1 (CEO)
    └── rm-1 (REGIONAL_MANAGER)
        ├── bm-1 (BRANCH_MANAGER, BR-01)
        │   └── emp-1 (BR-01)
        └── bm-2 (BRANCH_MANAGER, BR-02)
    hr-1 (HR_MANAGER), acc-1 (ACCOUNTANT)
"""

import os
import tempfile

import pytest

from approval_engine.services.engine import ApprovalEngine
from approval_engine.services.events import InMemoryEventSink
from approval_engine.services.flows import FlowRegistry, seed_default_flows
from approval_engine.services.org import InMemoryOrgDirectory
from approval_engine.services.resolver import ApproverResolver
from approval_engine.services.storage import InMemoryApprovalStore, SQLiteApprovalStore


def pytest_addoption(parser):
    """Add custom command-line options"""
    parser.addoption(
        "--run-integration",
        action="store_true",
        default=False,
        help="Run integration tests against real Azure resources"
    )


def pytest_configure(config):
    """Register custom markers"""
    config.addinivalue_line(
        "markers",
        "integration: mark test as integration test requiring real Azure resources"
    )


def pytest_collection_modifyitems(config, items):
    """Skip integration tests unless --run-integration is specified"""
    if config.getoption("--run-integration"):
        return

    skip_integration = pytest.mark.skip(reason="need --run-integration option to run")
    for item in items:
        if "integration" in item.keywords:
            item.add_marker(skip_integration)


@pytest.fixture
def db_path():
    """Create a temporary database file for testing"""
    fd, path = tempfile.mkstemp(suffix=".db")
    os.close(fd)
    yield path
    # Cleanup
    if os.path.exists(path):
        os.remove(path)


@pytest.fixture
def org():
    directory = InMemoryOrgDirectory()
    directory.add_user("ceo-1", roles=["CEO"])
    directory.add_user("rm-1", manager_id="ceo-1", roles=["REGIONAL_MANAGER"], region_id="R-1")
    directory.add_user("bm-1", manager_id="rm-1", roles=["BRANCH_MANAGER"], branch_id="BR-01",
                       region_id="R-1", position_id="BRANCH_MANAGER")
    directory.add_user("bm-2", manager_id="rm-1", roles=["BRANCH_MANAGER"], branch_id="BR-02",
                       region_id="R-1", position_id="BRANCH_MANAGER")
    directory.add_user("emp-1", manager_id="bm-1", branch_id="BR-01", region_id="R-1")
    directory.add_user("hr-1", roles=["HR_MANAGER"])
    directory.add_user("acc-1", roles=["ACCOUNTANT"])
    return directory


@pytest.fixture
def memory_store():
    return InMemoryApprovalStore()


@pytest.fixture
def sqlite_store(db_path):
    return SQLiteApprovalStore(db_path)


@pytest.fixture
def sink():
    return InMemoryEventSink()


@pytest.fixture
def build_engine(org, sink):
    """Factory: engine over the given store, seeded with the default flows"""
    def _build(store, seed=True, **kwargs):
        registry = FlowRegistry(store, priority_order="highest")
        if seed:
            seed_default_flows(registry)
        kwargs.setdefault("admin_roles", {"CEO", "HR_MANAGER"})
        kwargs.setdefault("require_rejection_comment", True)
        return ApprovalEngine(store, registry, ApproverResolver(org), sink, org, **kwargs)
    return _build


@pytest.fixture
def engine(build_engine, memory_store):
    return build_engine(memory_store)


@pytest.fixture
def sqlite_engine(build_engine, sqlite_store):
    return build_engine(sqlite_store)
