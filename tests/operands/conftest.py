"""Pytest fixtures for the operand controller tests."""

from __future__ import annotations

import pytest

from tests.operands.fakes import NAMESPACE, FakeObjectStore, gpu_node, make_context, make_policy

OS_RELEASE = """NAME="Ubuntu"
VERSION_ID="22.04"
ID=ubuntu
"""


def pytest_configure(config: pytest.Config) -> None:
    """Register custom markers."""
    config.addinivalue_line("markers", "operands: GPU operand controller tests")


# ---------------------------------------------------------------------------
# Object store fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def store() -> FakeObjectStore:
    """Return an empty in-memory object store."""
    return FakeObjectStore()


@pytest.fixture
def gpu_store(store: FakeObjectStore) -> FakeObjectStore:
    """Return a store holding one Ubuntu GPU node running containerd."""
    store.add(gpu_node("gpu-node-1"))
    return store


@pytest.fixture
def os_release_file(tmp_path):
    """Write a host os-release file and return its path."""
    path = tmp_path / "os-release"
    path.write_text(OS_RELEASE)
    return path


# ---------------------------------------------------------------------------
# Configuration fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def policy():
    """Return a ClusterPolicy with every image configured."""
    return make_policy()


@pytest.fixture
def ctx(policy):
    """Return a render context for a single Ubuntu 22.04 containerd node."""
    return make_context(policy)


@pytest.fixture
def namespace() -> str:
    return NAMESPACE
