"""Shared fixtures for the storegate test suite."""

from __future__ import annotations

import pytest

from storegate.ingest import FileBlob, UrlUploadPolicy
from storegate.storage import StorageConfig
from tests.fakes import GATEWAY, FakeBackend


@pytest.fixture()
def backend() -> FakeBackend:
    return FakeBackend()


@pytest.fixture()
def storage_config() -> StorageConfig:
    return StorageConfig(signer="test-key", delegation="test-delegation", gateway_url=GATEWAY)


@pytest.fixture()
def policy() -> UrlUploadPolicy:
    """Policy matching the documented scenarios: 1000 bytes, https only, example.com."""
    return UrlUploadPolicy.build(
        max_bytes=1000,
        allowed_schemes=["https"],
        allowed_domains=["example.com"],
        fetch_timeout_ms=0,
    )


@pytest.fixture()
def sample_blob() -> FileBlob:
    return FileBlob(name="readme.txt", data=b"hello storage network\n" * 10, mime_type="text/plain")
