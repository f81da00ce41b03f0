"""Tests for building the desired load balancer configuration."""

from unittest.mock import MagicMock

import pytest

from vlb_controller.annotations import (
    ANNO_LABEL,
    ANNO_NODE_COUNT,
    ANNO_PRIVATE_NETWORK,
    ANNO_SSL,
    ANNO_VPC,
)
from vlb_controller.builder import DesiredStateBuilder
from vlb_controller.errors import AnnotationValidationError, ObjectStoreError, ProviderIDError
from vlb_controller.metadata import MetadataClient
from vlb_controller.models import BackendNode
from vlb_controller.secret_watcher import SecretSubscriptionRegistry
from vultr_mock import VPC_NETWORK_ID, MockKubeStore, make_service

NODES = [
    BackendNode(name="node-1", provider_id="vultr://i-1"),
    BackendNode(name="node-2", provider_id="vultr://i-2"),
]


@pytest.fixture
def builder(
    kube_store: MockKubeStore,
    registry: SecretSubscriptionRegistry,
    metadata_client: MetadataClient,
) -> DesiredStateBuilder:
    return DesiredStateBuilder(kube_store, registry, metadata_client)


class TestBuild:
    """Tests for DesiredStateBuilder.build."""

    def test_defaults(self, builder: DesiredStateBuilder) -> None:
        """Test a service without annotations."""
        desired = builder.build(make_service(annotations={ANNO_LABEL: "web"}), NODES)

        assert desired.label == "web"
        assert desired.instances == ["i-1", "i-2"]
        assert [r.key for r in desired.forwarding_rules] == [("tcp", 80, "tcp", 30080)]
        assert desired.ssl is None
        assert desired.vpc is None
        assert desired.nodes == 1
        assert desired.region is None

    def test_idempotent(self, builder: DesiredStateBuilder) -> None:
        """Test that building twice from the same inputs is identical."""
        service = make_service(annotations={ANNO_NODE_COUNT: "3"})

        first = builder.build(service, NODES)
        second = builder.build(service, NODES)

        assert first == second
        assert first.model_dump_json() == second.model_dump_json()

    def test_bad_provider_id_aborts(self, builder: DesiredStateBuilder) -> None:
        """Test that one unparseable node aborts the whole build."""
        nodes = [*NODES, BackendNode(name="node-3", provider_id="aws://i-3")]

        with pytest.raises(ProviderIDError):
            builder.build(make_service(), nodes)

    def test_invalid_annotation_aborts(self, builder: DesiredStateBuilder) -> None:
        """Test that a malformed annotation fails the build."""
        with pytest.raises(AnnotationValidationError):
            builder.build(make_service(annotations={ANNO_NODE_COUNT: "4"}), NODES)


class TestSSL:
    """Tests for TLS secret handling."""

    def test_ssl_loaded_and_registered(
        self,
        builder: DesiredStateBuilder,
        kube_store: MockKubeStore,
        registry: SecretSubscriptionRegistry,
    ) -> None:
        """Test that the secret is read and the service subscribed to it."""
        kube_store.add_secret("ns", "prod-cert", certificate="CERT", private_key="KEY")
        service = make_service("web", "ns", annotations={ANNO_SSL: "prod-cert"})

        desired = builder.build(service, NODES)

        assert desired.ssl is not None
        assert desired.ssl.certificate == "CERT"
        assert desired.ssl.private_key == "KEY"
        assert registry.services_for("ns", "prod-cert") == ["web"]

    def test_missing_secret_fails(self, builder: DesiredStateBuilder) -> None:
        """Test that an unreadable secret fails the build."""
        service = make_service(annotations={ANNO_SSL: "missing"})

        with pytest.raises(ObjectStoreError):
            builder.build(service, NODES)

    def test_registration_failure_suppressed(
        self, kube_store: MockKubeStore, metadata_client: MetadataClient
    ) -> None:
        """Test that a failing watcher registration does not fail the build."""
        kube_store.add_secret("default", "prod-cert", certificate="CERT", private_key="KEY")
        registry = MagicMock()
        registry.add.side_effect = RuntimeError("watcher unavailable")
        builder = DesiredStateBuilder(kube_store, registry, metadata_client)

        desired = builder.build(make_service(annotations={ANNO_SSL: "prod-cert"}), NODES)

        assert desired.ssl is not None
        registry.add.assert_called_once_with("default", "web", "prod-cert")


class TestVPC:
    """Tests for VPC resolution."""

    def test_private_network_uses_metadata(self, builder: DesiredStateBuilder) -> None:
        """Test that "true" selects the local instance's VPC."""
        desired = builder.build(make_service(annotations={ANNO_PRIVATE_NETWORK: "true"}), NODES)
        assert desired.vpc == VPC_NETWORK_ID

    def test_explicit_vpc_id(self, builder: DesiredStateBuilder) -> None:
        """Test that an explicit VPC ID is used as is."""
        vpc_id = "11111111-2222-4333-8444-555555555555"
        desired = builder.build(make_service(annotations={ANNO_VPC: vpc_id}), NODES)
        assert desired.vpc == vpc_id

    def test_vpc_false(self, builder: DesiredStateBuilder) -> None:
        """Test that "false" means no VPC."""
        desired = builder.build(make_service(annotations={ANNO_VPC: "false"}), NODES)
        assert desired.vpc is None
