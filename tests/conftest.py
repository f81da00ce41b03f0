"""Pytest configuration and fixtures."""

import sys
from pathlib import Path

import pytest

# Add src to path for imports
src_path = Path(__file__).parent.parent / "src"
sys.path.insert(0, str(src_path))

# Add tests to path for vultr_mock imports
tests_path = Path(__file__).parent
sys.path.insert(0, str(tests_path))

from vlb_controller.metadata import MetadataClient  # noqa: E402
from vlb_controller.secret_watcher import SecretSubscriptionRegistry  # noqa: E402
from vultr_mock import MockKubeStore, MockVultrAPI, create_mock_metadata_client  # noqa: E402


@pytest.fixture
def vultr_api() -> MockVultrAPI:
    return MockVultrAPI()


@pytest.fixture
def kube_store() -> MockKubeStore:
    return MockKubeStore()


@pytest.fixture
def registry() -> SecretSubscriptionRegistry:
    return SecretSubscriptionRegistry()


@pytest.fixture
def metadata_client() -> MetadataClient:
    return create_mock_metadata_client()
