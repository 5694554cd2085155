"""Pytest configuration and fixtures."""

import copy
from typing import Any, Dict

import pytest

from components.registry import reset_registry
from config import reset_config
from drivers import reset_drivers
from events import EventRecorder
from fakes import FakeDriver, FakeObjectStore, load_testdata
from models import StorageCluster


@pytest.fixture(autouse=True)
def reset_singletons():
    """Forget global registries and config between tests."""
    yield
    reset_registry()
    reset_drivers()
    reset_config()


@pytest.fixture
def store():
    """Create an empty in-memory object store."""
    return FakeObjectStore()


@pytest.fixture
def recorder(store):
    """Create an event recorder writing to the fake store."""
    return EventRecorder(store)


@pytest.fixture
def driver():
    """Create a fake storage driver."""
    return FakeDriver()


@pytest.fixture
def cluster_dict() -> Dict[str, Any]:
    """Sample StorageCluster manifest with Stork enabled."""
    return copy.deepcopy(load_testdata("storagecluster.yaml"))


@pytest.fixture
def cluster(cluster_dict):
    """Sample StorageCluster."""
    return StorageCluster.from_dict(cluster_dict)


@pytest.fixture
def make_cluster(cluster_dict):
    """Factory for StorageClusters built from the sample with overrides."""

    def _make(spec: Dict[str, Any] = None, annotations: Dict[str, str] = None, **meta):
        obj = copy.deepcopy(cluster_dict)
        obj["spec"].update(spec or {})
        if annotations:
            obj["metadata"].setdefault("annotations", {}).update(annotations)
        obj["metadata"].update(meta)
        return StorageCluster.from_dict(obj)

    return _make
