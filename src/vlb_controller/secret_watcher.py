"""TLS secret change watcher.

Services that terminate TLS on the load balancer reference a Kubernetes
secret by name. When that secret is rotated, nothing about the Service
changes, so the load balancer would keep serving the old certificate.
The watcher closes that gap: it follows secret events across all
namespaces and, for every service registered against a changed secret,
bumps a timestamp annotation. The resulting service update makes the
scheduler reconcile the service again, which uploads the new certificate.

Resync is best effort. A failed annotation write is logged and dropped;
the next secret event or the next periodic reconciliation recovers.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime

from .annotations import ANNO_SSL_LAST_UPDATED
from .errors import ObjectStoreError
from .kube import EventType, KubeStore, SecretEvent

logger = logging.getLogger(__name__)

# Pause before re-subscribing after the watch stream fails
WATCH_RETRY_SECONDS = 5.0


def utc_now_rfc3339() -> str:
    """Current UTC time, e.g. ``2024-01-15T08:30:00.123456Z``."""
    return datetime.now(UTC).isoformat().replace("+00:00", "Z")


@dataclass(frozen=True)
class SecretSubscription:
    """A service that depends on a TLS secret in its namespace."""

    secret_name: str
    service_name: str


class SecretSubscriptionRegistry:
    """Thread-safe map of namespace to secret subscriptions.

    Written from reconciliation calls and read from the watcher thread.
    A service has at most one subscription; registering it again is a
    no-op, even with a different secret name.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._subscriptions: dict[str, list[SecretSubscription]] = {}

    def add(self, namespace: str, service_name: str, secret_name: str) -> bool:
        """Register a service against a secret.

        Returns:
            True if a new subscription was added.
        """
        with self._lock:
            entries = self._subscriptions.setdefault(namespace, [])
            if any(entry.service_name == service_name for entry in entries):
                return False
            entries.append(SecretSubscription(secret_name=secret_name, service_name=service_name))

        logger.info(
            "Added secret to watcher",
            extra={"namespace": namespace, "service": service_name, "secret": secret_name},
        )
        return True

    def services_for(self, namespace: str, secret_name: str) -> list[str]:
        """Names of services in a namespace that depend on a secret."""
        with self._lock:
            return [
                entry.service_name
                for entry in self._subscriptions.get(namespace, [])
                if entry.secret_name == secret_name
            ]

    def __len__(self) -> int:
        with self._lock:
            return sum(len(entries) for entries in self._subscriptions.values())


class SecretWatcher:
    """Forces a resync of services whose TLS secret changed.

    Args:
        store: Object store used to watch secrets and annotate services.
        registry: Subscriptions shared with the desired-state builder.
        now_fn: Timestamp source for the resync annotation.
    """

    def __init__(
        self,
        store: KubeStore,
        registry: SecretSubscriptionRegistry,
        *,
        now_fn: Callable[[], str] = utc_now_rfc3339,
        retry_seconds: float = WATCH_RETRY_SECONDS,
    ) -> None:
        self._store = store
        self._registry = registry
        self._now_fn = now_fn
        self._retry_seconds = retry_seconds
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None

    @property
    def registry(self) -> SecretSubscriptionRegistry:
        return self._registry

    def handle_event(self, event: SecretEvent) -> list[str]:
        """Process one secret event.

        Returns:
            Names of the services whose resync annotation was written.
        """
        if event.type not in (EventType.ADDED, EventType.MODIFIED):
            return []

        updated: list[str] = []
        for service_name in self._registry.services_for(event.namespace, event.name):
            logger.info(
                "Secret changed, forcing service resync",
                extra={
                    "namespace": event.namespace,
                    "secret": event.name,
                    "event_type": event.type,
                    "service": service_name,
                },
            )
            if self._touch_service(event.namespace, service_name):
                updated.append(service_name)
        return updated

    def _touch_service(self, namespace: str, service_name: str) -> bool:
        try:
            service = self._store.get_service(namespace, service_name)
            self._store.patch_service_annotations(
                service, {ANNO_SSL_LAST_UPDATED: self._now_fn()}
            )
        except ObjectStoreError as e:
            logger.warning(
                "Failed to update service after secret change",
                extra={"namespace": namespace, "service": service_name, "error": str(e)},
            )
            return False

        logger.info(
            "Service updated after secret change",
            extra={"namespace": namespace, "service": service_name},
        )
        return True

    def run(self) -> None:
        """Consume secret events until stop() is called.

        The server closes watch streams periodically; the loop simply
        re-subscribes, resuming after the last event the store saw. A
        failing subscription is retried after a pause.
        """
        logger.info("Starting secret watcher")
        while not self._stop_event.is_set():
            try:
                for event in self._store.watch_secrets():
                    if self._stop_event.is_set():
                        break
                    self.handle_event(event)
            except ObjectStoreError as e:
                logger.warning("Secret watch failed", extra={"error": str(e)})
                self._stop_event.wait(self._retry_seconds)
            except Exception as e:
                # Stream transport errors (e.g. dropped connections) end up here
                logger.exception("Secret watch stream broke", extra={"error": str(e)})
                self._stop_event.wait(self._retry_seconds)
        logger.info("Secret watcher stopped")

    def start(self) -> threading.Thread:
        """Run the watcher on a daemon thread."""
        self._stop_event.clear()
        self._thread = threading.Thread(target=self.run, name="secret-watcher", daemon=True)
        self._thread.start()
        return self._thread

    def stop(self, timeout: float | None = None) -> None:
        self._stop_event.set()
        self._store.stop_watch()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
