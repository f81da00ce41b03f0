"""Tests for the Kubernetes object store wrapper."""

import base64
from types import SimpleNamespace
from unittest.mock import MagicMock, patch

import pytest
from kubernetes.client import ApiException

from vlb_controller.errors import ConcurrencyConflictError, ObjectStoreError
from vlb_controller.kube import (
    LABEL_EXCLUDE_FROM_LB,
    WATCH_TIMEOUT_SECONDS,
    EventType,
    KubeStore,
    node_from_kube,
    service_from_kube,
)


def kube_service(
    name: str = "web",
    namespace: str = "default",
    *,
    service_type: str = "LoadBalancer",
    annotations: dict[str, str] | None = None,
) -> SimpleNamespace:
    return SimpleNamespace(
        metadata=SimpleNamespace(
            name=name,
            namespace=namespace,
            uid="2f1c8e4a-7b3d-4c5e-9a1f-0d2e3c4b5a69",
            annotations=annotations,
            resource_version="42",
        ),
        spec=SimpleNamespace(
            type=service_type,
            ports=[SimpleNamespace(name="http", protocol="TCP", port=80, node_port=30080)],
            ip_families=["IPv4"],
            ip_family_policy="SingleStack",
        ),
    )


def kube_node(
    name: str,
    *,
    ready: bool = True,
    labels: dict[str, str] | None = None,
    provider_id: str | None = "",
):
    if provider_id == "":
        provider_id = f"vultr://{name}-id"
    return SimpleNamespace(
        metadata=SimpleNamespace(name=name, labels=labels),
        spec=SimpleNamespace(provider_id=provider_id),
        status=SimpleNamespace(
            conditions=[SimpleNamespace(type="Ready", status="True" if ready else "False")]
        ),
    )


class TestConversion:
    """Tests for converting API objects."""

    def test_service_from_kube(self) -> None:
        """Test converting a V1Service."""
        service = service_from_kube(kube_service(annotations={"a": "b"}))

        assert service.key == "default/web"
        assert service.annotations == {"a": "b"}
        assert service.resource_version == "42"
        assert service.ports[0].node_port == 30080

    def test_service_without_annotations(self) -> None:
        """Test that missing annotations become an empty mapping."""
        assert service_from_kube(kube_service()).annotations == {}

    def test_node_from_kube(self) -> None:
        """Test converting a V1Node."""
        node = node_from_kube(kube_node("node-1"))
        assert node.instance_id == "node-1-id"


class TestKubeStore:
    """Tests for KubeStore."""

    def test_patch_carries_resource_version(self) -> None:
        """Test that annotation patches are conditional on resourceVersion."""
        api = MagicMock()
        api.patch_namespaced_service.return_value = kube_service(annotations={"k": "v"})
        store = KubeStore(api)
        service = service_from_kube(kube_service())

        updated = store.patch_service_annotations(service, {"k": "v", "gone": None})

        api.patch_namespaced_service.assert_called_once_with(
            "web",
            "default",
            {"metadata": {"resourceVersion": "42", "annotations": {"k": "v", "gone": None}}},
        )
        assert updated.annotations == {"k": "v"}

    def test_conflict_mapped(self) -> None:
        """Test that a 409 becomes ConcurrencyConflictError."""
        api = MagicMock()
        api.patch_namespaced_service.side_effect = ApiException(status=409, reason="Conflict")
        store = KubeStore(api)

        with pytest.raises(ConcurrencyConflictError):
            store.patch_service_annotations(service_from_kube(kube_service()), {"k": "v"})

    def test_other_errors_mapped(self) -> None:
        """Test that other failures become ObjectStoreError, not conflicts."""
        api = MagicMock()
        api.read_namespaced_service.side_effect = ApiException(status=404, reason="Not Found")
        store = KubeStore(api)

        with pytest.raises(ObjectStoreError) as exc_info:
            store.get_service("default", "web")

        assert not isinstance(exc_info.value, ConcurrencyConflictError)
        assert exc_info.value.status == 404

    def test_list_load_balancer_services(self) -> None:
        """Test that only LoadBalancer services are listed."""
        api = MagicMock()
        api.list_service_for_all_namespaces.return_value = SimpleNamespace(
            items=[kube_service("web"), kube_service("internal", service_type="ClusterIP")]
        )

        services = KubeStore(api).list_load_balancer_services()

        assert [s.name for s in services] == ["web"]

    def test_list_backend_nodes(self) -> None:
        """Test that unready, excluded and uninitialized nodes are skipped."""
        api = MagicMock()
        api.list_node.return_value = SimpleNamespace(
            items=[
                kube_node("node-1"),
                kube_node("node-2", ready=False),
                kube_node("node-3", labels={LABEL_EXCLUDE_FROM_LB: ""}),
                kube_node("node-new", provider_id=None),
            ]
        )

        nodes = KubeStore(api).list_backend_nodes()

        assert [n.name for n in nodes] == ["node-1"]

    def test_get_tls_secret(self) -> None:
        """Test decoding the certificate and key."""
        api = MagicMock()
        api.read_namespaced_secret.return_value = SimpleNamespace(
            data={
                "tls.crt": base64.b64encode(b"CERT\n").decode(),
                "tls.key": base64.b64encode(b"KEY\n").decode(),
            }
        )

        ssl = KubeStore(api).get_tls_secret("default", "prod-cert")

        assert ssl.certificate == "CERT"
        assert ssl.private_key == "KEY"



def secret_event(event_type: str, name: str, resource_version: str) -> dict:
    return {
        "type": event_type,
        "object": SimpleNamespace(
            metadata=SimpleNamespace(
                namespace="ns", name=name, resource_version=resource_version
            )
        ),
    }


def secret_api(resource_version: str = "100") -> MagicMock:
    api = MagicMock()
    api.list_secret_for_all_namespaces.return_value = SimpleNamespace(
        metadata=SimpleNamespace(resource_version=resource_version)
    )
    return api


class TestWatchSecrets:
    """Tests for KubeStore.watch_secrets."""

    def test_events_converted(self) -> None:
        """Test that watch events are converted and start after the current state."""
        api = secret_api("100")
        with patch("vlb_controller.kube.watch.Watch") as watch_cls:
            watch_cls.return_value.stream.return_value = iter(
                [secret_event("MODIFIED", "prod-cert", "101")]
            )

            received = list(KubeStore(api).watch_secrets())

        assert len(received) == 1
        assert received[0].type == EventType.MODIFIED
        assert (received[0].namespace, received[0].name) == ("ns", "prod-cert")
        stream_kwargs = watch_cls.return_value.stream.call_args.kwargs
        assert stream_kwargs["resource_version"] == "100"
        assert stream_kwargs["timeout_seconds"] == WATCH_TIMEOUT_SECONDS

    def test_resubscribe_resumes_from_last_event(self) -> None:
        """Test that a new subscription continues where the last stream ended."""
        api = secret_api("100")
        store = KubeStore(api)
        with patch("vlb_controller.kube.watch.Watch") as watch_cls:
            stream = watch_cls.return_value.stream
            stream.side_effect = [
                iter([secret_event("MODIFIED", "prod-cert", "105")]),
                iter([]),
            ]

            list(store.watch_secrets())
            list(store.watch_secrets())

        api.list_secret_for_all_namespaces.assert_called_once_with(limit=1)
        versions = [c.kwargs["resource_version"] for c in stream.call_args_list]
        assert versions == ["100", "105"]

    def test_expired_version_relisted(self) -> None:
        """Test that 410 Gone drops the stored version and the next subscription re-lists."""
        api = secret_api("100")
        store = KubeStore(api)
        with patch("vlb_controller.kube.watch.Watch") as watch_cls:
            stream = watch_cls.return_value.stream
            stream.side_effect = [ApiException(status=410, reason="Gone"), iter([])]

            with pytest.raises(ObjectStoreError) as exc_info:
                list(store.watch_secrets())
            api.list_secret_for_all_namespaces.return_value = SimpleNamespace(
                metadata=SimpleNamespace(resource_version="200")
            )
            list(store.watch_secrets())

        assert exc_info.value.status == 410
        assert api.list_secret_for_all_namespaces.call_count == 2
        assert stream.call_args.kwargs["resource_version"] == "200"
