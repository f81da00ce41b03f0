"""Vultr and Kubernetes mocks for integration testing.

This package provides in-memory implementations of the two systems the
controller talks to, so reconciliation can be tested end to end.

Key Features:
- Provider API served through httpx.MockTransport (real client code runs)
- Request log for asserting exactly which remote calls were made
- Error injection for provider failures
- Object store with resourceVersion checks and injectable write conflicts
- Queued secret events for the watcher

Usage:
    from vultr_mock import MockKubeStore, MockVultrAPI, make_service

    api = MockVultrAPI()
    store = MockKubeStore()
    store.add_service(make_service())

    client = api.client()
    # Controller code under test here

    assert api.count("POST", r"/forwarding-rules$") == 1
"""

from .api import MockVultrAPI, RecordedRequest
from .kube import MockKubeStore, make_service
from .metadata import METADATA_DOCUMENT, VPC_NETWORK_ID, create_mock_metadata_client

__all__ = [
    "METADATA_DOCUMENT",
    "VPC_NETWORK_ID",
    "create_mock_metadata_client",
    "MockKubeStore",
    "MockVultrAPI",
    "RecordedRequest",
    "make_service",
]
