"""Pytest configuration and shared fixtures."""

from unittest.mock import MagicMock

import pytest
from prometheus_client import CollectorRegistry

from porter.config import StorageConfig
from porter.metrics import PorterMetrics
from porter.storage import ObjectStore


@pytest.fixture
def metrics() -> PorterMetrics:
    """Metrics bound to a private registry."""
    return PorterMetrics(registry=CollectorRegistry())


@pytest.fixture
def storage_config() -> StorageConfig:
    return StorageConfig(
        bucket="dumps",
        region="eu-west-1",
        access_key_id="minioadmin",
        secret_access_key="minioadmin",
    )


@pytest.fixture
def mock_store(storage_config: StorageConfig) -> ObjectStore:
    """ObjectStore whose boto3 client is a MagicMock."""
    store = ObjectStore(storage_config)
    client = MagicMock()
    client.create_multipart_upload.return_value = {"UploadId": "upload-1"}
    client.upload_part.side_effect = lambda **kwargs: {"ETag": f'"etag-{kwargs["PartNumber"]}"'}
    client.complete_multipart_upload.return_value = {"Location": "dumps/key"}
    client.generate_presigned_url.return_value = "https://signed.example/dump"
    store._client = client
    return store
