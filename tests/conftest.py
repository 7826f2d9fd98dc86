"""
Pytest configuration and shared fixtures for master server tests.
"""

import pytest
import tempfile
import shutil
from pathlib import Path
from typing import AsyncGenerator, Generator

from aiohttp.test_utils import TestClient, TestServer

from master_server.registry.storage import RegistryStorage
from master_server.registry.service import RegistryService
from master_server.registry.cleaner import RegistryCleaner
from master_server.server import create_app
from master_server.utils.config import MasterServerConfig, RegistryConfig

from tests.fixtures.registry_fixtures import FakeClock


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Create a temporary directory for tests."""
    temp_path = Path(tempfile.mkdtemp())
    yield temp_path
    shutil.rmtree(temp_path)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def registry_config() -> RegistryConfig:
    """Five minute liveness window, 24 hour dead-entry threshold."""
    return RegistryConfig(
        liveness_window_seconds=300,
        dead_entry_threshold_seconds=86400,
    )


@pytest.fixture
async def registry_storage(temp_dir: Path) -> AsyncGenerator[RegistryStorage, None]:
    """Create test registry storage."""
    db_path = temp_dir / "registry.db"
    storage = RegistryStorage(db_path)
    await storage.initialize()
    yield storage
    await storage.close()


@pytest.fixture
def registry_service(
    registry_storage: RegistryStorage,
    registry_config: RegistryConfig,
    clock: FakeClock
) -> RegistryService:
    return RegistryService(registry_storage, registry_config, clock=clock)


@pytest.fixture
def registry_cleaner(
    registry_storage: RegistryStorage,
    registry_config: RegistryConfig,
    clock: FakeClock
) -> RegistryCleaner:
    return RegistryCleaner(registry_storage, registry_config, clock=clock)


@pytest.fixture
def server_config(temp_dir: Path) -> MasterServerConfig:
    """Configuration that trusts X-Forwarded-For so tests can pick the caller address."""
    return MasterServerConfig(
        server={"host": "127.0.0.1", "port": 0, "trust_forwarded_for": True},
        database={"path": temp_dir / "registry.db"},
    )


@pytest.fixture
async def api_client(
    server_config: MasterServerConfig,
    registry_service: RegistryService
) -> AsyncGenerator[TestClient, None]:
    """HTTP client bound to an in-process master server."""
    app = create_app(server_config, registry_service)
    async with TestClient(TestServer(app)) as client:
        yield client
