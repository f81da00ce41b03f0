"""Kubernetes object store access.

Wraps CoreV1Api for the handful of calls the controller makes: read and
annotate services, read TLS secrets, and stream secret events. Objects
are converted to the controller's own models at this boundary.

Annotation writes carry the service's resourceVersion, so a write based
on a stale read fails with ConcurrencyConflictError instead of silently
overwriting a concurrent writer.
"""

from __future__ import annotations

import base64
import logging
import threading
from collections.abc import Iterator
from dataclasses import dataclass
from typing import Any

from kubernetes import client, config, watch
from kubernetes.client import ApiException, CoreV1Api

from .errors import ConcurrencyConflictError, ObjectStoreError
from .models import BackendNode, LogicalService, ServicePort, SSLMaterial

logger = logging.getLogger(__name__)

SERVICE_TYPE_LOAD_BALANCER = "LoadBalancer"

TLS_CERT_KEY = "tls.crt"
TLS_PRIVATE_KEY_KEY = "tls.key"

# Nodes carrying this label never receive load balancer traffic
LABEL_EXCLUDE_FROM_LB = "node.kubernetes.io/exclude-from-external-load-balancers"

# Server-side timeout of one watch request; the watcher re-subscribes after it
WATCH_TIMEOUT_SECONDS = 300

HTTP_CONFLICT = 409
HTTP_GONE = 410


class EventType:
    """Watch event types."""

    ADDED = "ADDED"
    MODIFIED = "MODIFIED"
    DELETED = "DELETED"


@dataclass(frozen=True)
class SecretEvent:
    """One secret change observed on the watch stream."""

    type: str
    namespace: str
    name: str


def load_core_api(kubeconfig: str = "") -> CoreV1Api:
    """Build the CoreV1Api client once at startup.

    An empty kubeconfig path selects the in-cluster service account.
    """
    if kubeconfig:
        config.load_kube_config(config_file=kubeconfig)
    else:
        config.load_incluster_config()
    return client.CoreV1Api()


def _store_error(operation: str, e: ApiException) -> ObjectStoreError:
    if e.status == HTTP_CONFLICT:
        return ConcurrencyConflictError(operation, e.reason or "conflict", status=e.status)
    return ObjectStoreError(operation, f"{e.status} {e.reason}", status=e.status)


def service_from_kube(svc: Any) -> LogicalService:
    """Convert a V1Service into a LogicalService."""
    spec = svc.spec
    return LogicalService(
        name=svc.metadata.name,
        namespace=svc.metadata.namespace or "default",
        uid=svc.metadata.uid or "",
        annotations=dict(svc.metadata.annotations or {}),
        resource_version=svc.metadata.resource_version,
        ports=[
            ServicePort(
                name=p.name or "",
                protocol=p.protocol or "TCP",
                port=p.port,
                node_port=p.node_port or 0,
            )
            for p in (spec.ports or [])
        ],
        ip_families=list(spec.ip_families or []),
        ip_family_policy=spec.ip_family_policy,
    )


def node_from_kube(node: Any) -> BackendNode:
    """Convert a V1Node into a BackendNode."""
    return BackendNode(name=node.metadata.name, provider_id=node.spec.provider_id or "")


def _node_is_ready(node: Any) -> bool:
    for condition in (node.status.conditions if node.status else None) or []:
        if condition.type == "Ready":
            return condition.status == "True"
    return False


class KubeStore:
    """Object store operations backed by the Kubernetes API."""

    def __init__(self, api: CoreV1Api) -> None:
        self._api = api
        self._active_watch: watch.Watch | None = None
        self._watch_lock = threading.Lock()
        # Last secret resourceVersion seen; a new subscription resumes from it
        self._secret_version: str | None = None

    def get_service(self, namespace: str, name: str) -> LogicalService:
        try:
            svc = self._api.read_namespaced_service(name, namespace)
        except ApiException as e:
            raise _store_error(f"get service {namespace}/{name}", e) from e
        return service_from_kube(svc)

    def patch_service_annotations(
        self, service: LogicalService, changes: dict[str, str | None]
    ) -> LogicalService:
        """Set (or, for None values, remove) annotations on a service.

        The write is conditional on the resourceVersion the service was
        read at.

        Raises:
            ConcurrencyConflictError: If the service changed since it was read.
            ObjectStoreError: On any other API failure.
        """
        body = {
            "metadata": {
                "resourceVersion": service.resource_version,
                "annotations": changes,
            }
        }
        try:
            svc = self._api.patch_namespaced_service(service.name, service.namespace, body)
        except ApiException as e:
            raise _store_error(f"update service {service.key}", e) from e
        return service_from_kube(svc)

    def list_load_balancer_services(self) -> list[LogicalService]:
        try:
            result = self._api.list_service_for_all_namespaces()
        except ApiException as e:
            raise _store_error("list services", e) from e
        return [
            service_from_kube(svc)
            for svc in result.items
            if svc.spec and svc.spec.type == SERVICE_TYPE_LOAD_BALANCER
        ]

    def list_backend_nodes(self) -> list[BackendNode]:
        """Ready nodes with a provider ID that are eligible for load balancer traffic.

        Nodes the cloud provider has not initialized yet carry no provider ID
        and are left out until it is set.
        """
        try:
            result = self._api.list_node()
        except ApiException as e:
            raise _store_error("list nodes", e) from e
        return [
            node_from_kube(node)
            for node in result.items
            if LABEL_EXCLUDE_FROM_LB not in (node.metadata.labels or {})
            and node.spec is not None
            and node.spec.provider_id
            and _node_is_ready(node)
        ]

    def get_tls_secret(self, namespace: str, name: str) -> SSLMaterial:
        """Read the certificate and key of a TLS secret."""
        try:
            secret = self._api.read_namespaced_secret(name, namespace)
        except ApiException as e:
            raise _store_error(f"get secret {namespace}/{name}", e) from e

        data = secret.data or {}
        certificate = base64.b64decode(data.get(TLS_CERT_KEY, "")).decode().strip()
        private_key = base64.b64decode(data.get(TLS_PRIVATE_KEY_KEY, "")).decode().strip()
        return SSLMaterial(private_key=private_key, certificate=certificate)

    def watch_secrets(self) -> Iterator[SecretEvent]:
        """Stream secret events across all namespaces.

        The stream ends when the server closes it or stop_watch() is called.
        Each subscription resumes after the last resourceVersion seen, so
        existing secrets are not replayed as ADDED when re-subscribing. The
        first subscription, and the first one after the server expired the
        version (410 Gone), starts from a fresh list and yields only changes
        made after it.
        """
        if self._secret_version is None:
            self._secret_version = self._current_secret_version()

        w = watch.Watch()
        with self._watch_lock:
            self._active_watch = w
        try:
            for event in w.stream(
                self._api.list_secret_for_all_namespaces,
                resource_version=self._secret_version,
                timeout_seconds=WATCH_TIMEOUT_SECONDS,
            ):
                obj = event["object"]
                if obj.metadata.resource_version:
                    self._secret_version = obj.metadata.resource_version
                yield SecretEvent(
                    type=event["type"],
                    namespace=obj.metadata.namespace,
                    name=obj.metadata.name,
                )
        except ApiException as e:
            if e.status == HTTP_GONE:
                self._secret_version = None
            raise _store_error("watch secrets", e) from e
        finally:
            with self._watch_lock:
                self._active_watch = None

    def _current_secret_version(self) -> str:
        """resourceVersion of the secret collection as of now."""
        try:
            result = self._api.list_secret_for_all_namespaces(limit=1)
        except ApiException as e:
            raise _store_error("list secrets", e) from e
        return result.metadata.resource_version

    def stop_watch(self) -> None:
        """Interrupt an open secret watch stream."""
        with self._watch_lock:
            active = self._active_watch
        if active is not None:
            active.stop()
