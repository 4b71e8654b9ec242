"""Test configuration and fixtures."""

import os

import pytest
import pytest_asyncio
from aiohttp.test_utils import TestServer

from oci2rootfs.core.config import Settings
from tests.helpers import FakeRegistry, OciLayoutBuilder


@pytest.fixture
def cache_root(tmp_path):
    """Isolated blob cache root."""
    path = tmp_path / "cache"
    path.mkdir()
    return path


@pytest.fixture
def settings(cache_root):
    """Settings that never touch the user cache."""
    return Settings(cache_root=cache_root, timeout=10)


@pytest.fixture
def layout(tmp_path):
    """Empty OCI layout builder."""
    return OciLayoutBuilder(tmp_path / "layout")


@pytest.fixture
def rootfs(tmp_path):
    """Empty rootfs directory for layer application."""
    path = tmp_path / "rootfs"
    path.mkdir()
    return path


@pytest_asyncio.fixture
async def registry():
    """In-process registry reachable over plain http."""
    fake = FakeRegistry()
    server = TestServer(fake.app())
    await server.start_server()
    fake.host = f"{server.host}:{server.port}"
    try:
        yield fake
    finally:
        await server.close()


@pytest.fixture
def registry_settings(registry, cache_root):
    """Settings that reach the in-process registry over http."""
    return Settings(
        cache_root=cache_root,
        insecure_registries=frozenset({registry.host}),
        timeout=10,
    )


def running_as_root() -> bool:
    return hasattr(os, "geteuid") and os.geteuid() == 0


# Pytest configuration
def pytest_configure(config):
    """Configure pytest markers and settings."""
    config.addinivalue_line(
        "markers", "unix_permissions: needs permission checks that root bypasses"
    )


def pytest_collection_modifyitems(config, items):
    """Skip permission-enforcement tests when running as root."""
    skip_root = pytest.mark.skip(reason="root bypasses directory permissions")

    for item in items:
        if "unix_permissions" in item.keywords and running_as_root():
            item.add_marker(skip_root)
