"""Fixtures for tests against a live MySQL server and S3-compatible store (MinIO)."""

import os
import uuid
from collections.abc import AsyncGenerator

import pytest
import pytest_asyncio

from porter.config import DatabaseConfig, StorageConfig
from porter.database import DatabaseManager
from porter.storage import ObjectStore


@pytest.fixture
def mysql_config() -> DatabaseConfig:
    host = os.getenv("PORTER_TEST_MYSQL_HOST")
    if not host:
        pytest.skip("PORTER_TEST_MYSQL_HOST not set")
    return DatabaseConfig(
        name=os.getenv("PORTER_TEST_MYSQL_DB", "porter_test"),
        host=host,
        port=int(os.getenv("PORTER_TEST_MYSQL_PORT", "3306")),
        user=os.getenv("PORTER_TEST_MYSQL_USER", "root"),
        password=os.getenv("PORTER_TEST_MYSQL_PASSWORD", ""),
    )


@pytest_asyncio.fixture
async def db_manager(mysql_config: DatabaseConfig) -> AsyncGenerator[DatabaseManager, None]:
    manager = DatabaseManager(mysql_config)
    await manager.connect()
    try:
        yield manager
    finally:
        await manager.disconnect()


@pytest.fixture
def minio_store() -> ObjectStore:
    endpoint = os.getenv("PORTER_TEST_S3_ENDPOINT")
    if not endpoint:
        pytest.skip("PORTER_TEST_S3_ENDPOINT not set")
    store = ObjectStore(
        StorageConfig(
            bucket=os.getenv("PORTER_TEST_S3_BUCKET", "porter-test"),
            endpoint=endpoint,
            use_path_style=True,
            access_key_id=os.getenv("PORTER_TEST_S3_ACCESS_KEY", "minioadmin"),
            secret_access_key=os.getenv("PORTER_TEST_S3_SECRET_KEY", "minioadmin"),
            prefix=f"it-{uuid.uuid4().hex[:8]}",
        )
    )
    store.check_access()
    return store
