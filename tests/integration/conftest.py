"""Fixtures for tests against a running PostgreSQL server.

Connection settings come from ``TEST_DB_HOST``, ``TEST_DB_PORT``, ``TEST_DB_NAME``,
``TEST_DB_USER`` and ``TEST_DB_PASSWORD``; the tests are skipped when the
server cannot be reached.
"""

import os
from collections.abc import AsyncGenerator

import pytest
import pytest_asyncio

from archival.config import DatabaseConfig, EngineConfig
from archival.database import DatabaseManager
from archival.exceptions import DatabaseError


@pytest.fixture(scope="session")
def db_config() -> DatabaseConfig:
    """Create test database configuration."""
    os.environ.setdefault("TEST_DB_PASSWORD", "archival")
    return DatabaseConfig(
        name=os.getenv("TEST_DB_NAME", "archival_test"),
        host=os.getenv("TEST_DB_HOST", "localhost"),
        port=int(os.getenv("TEST_DB_PORT", "5432")),
        user=os.getenv("TEST_DB_USER", "archival"),
        password_env="TEST_DB_PASSWORD",
        connection_pool_size=4,
    )


@pytest.fixture
def engine_config(db_config: DatabaseConfig) -> EngineConfig:
    return EngineConfig(
        version="1.0",
        repository=db_config,
        datasources=[{"name": "main", "database": db_config.model_dump()}],
    )


@pytest_asyncio.fixture
async def db_manager(db_config: DatabaseConfig) -> AsyncGenerator[DatabaseManager, None]:
    """Connected database manager, skipping the test when PostgreSQL is unavailable."""
    manager = DatabaseManager(db_config)
    try:
        await manager.connect()
    except DatabaseError as e:
        pytest.skip(f"PostgreSQL not available: {e.message}")
    try:
        yield manager
    finally:
        await manager.disconnect()
