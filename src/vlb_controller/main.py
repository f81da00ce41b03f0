"""Main entry point for the Vultr load balancer controller.

Startup builds every client exactly once, before any work begins:
1. Configuration from the environment (fail fast on bad values)
2. Kubernetes API client and object store
3. Provider API and instance metadata clients
4. Secret watcher thread, sharing the subscription registry with the builder
5. Periodic drift correction over every LoadBalancer service
"""

from __future__ import annotations

import json
import logging
import signal
import sys
import threading
import time
from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime

from .binding import IdentifierBindingManager
from .builder import DesiredStateBuilder
from .config import Config, ConfigurationError
from .errors import LoadBalancerError, NotActiveError, ObjectStoreError, RemoteAPIError
from .kube import KubeStore, load_core_api
from .locator import LoadBalancerLocator
from .metadata import MetadataClient
from .models import BackendNode, LogicalService
from .reconciler import LoadBalancerReconciler
from .secret_watcher import SecretSubscriptionRegistry, SecretWatcher
from .vultr import VultrClient

logger = logging.getLogger(__name__)

# LogRecord attributes that are not structured context
_RESERVED_RECORD_KEYS = frozenset(
    {
        "name",
        "msg",
        "args",
        "created",
        "filename",
        "funcName",
        "levelname",
        "levelno",
        "lineno",
        "module",
        "msecs",
        "pathname",
        "process",
        "processName",
        "relativeCreated",
        "stack_info",
        "exc_info",
        "exc_text",
        "thread",
        "threadName",
        "taskName",
        "message",
    }
)


class JsonFormatter(logging.Formatter):
    """One JSON object per record, with ``extra`` fields merged in."""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.now(UTC).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "message": record.getMessage(),
            "logger": record.name,
        }
        for key, value in record.__dict__.items():
            if key not in _RESERVED_RECORD_KEYS:
                log_data[key] = value

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


def setup_logging(json_output: bool = True) -> None:
    """Configure root logging on stdout."""
    handler = logging.StreamHandler(sys.stdout)
    if json_output:
        handler.setFormatter(JsonFormatter())
    else:
        handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s"))

    root_logger = logging.getLogger()
    root_logger.addHandler(handler)
    root_logger.setLevel(logging.INFO)

    # Client libraries log every request at INFO/DEBUG
    for noisy in ("urllib3", "kubernetes", "httpx"):
        logging.getLogger(noisy).setLevel(logging.WARNING)


# =============================================================================
# Component wiring
# =============================================================================


@dataclass
class Controller:
    """Every long-lived component of a running controller."""

    config: Config
    store: KubeStore
    client: VultrClient
    metadata: MetadataClient
    registry: SecretSubscriptionRegistry
    locator: LoadBalancerLocator
    builder: DesiredStateBuilder
    reconciler: LoadBalancerReconciler
    watcher: SecretWatcher
    region: str

    def close(self) -> None:
        self.watcher.stop(timeout=5.0)
        self.client.close()
        self.metadata.close()


def build_controller(config: Config) -> Controller:
    """Construct and connect all components.

    Raises:
        ConfigurationError: If the region can be neither configured nor discovered.
        RemoteAPIError: If the metadata endpoint cannot be reached.
    """
    store = KubeStore(load_core_api(config.kubeconfig))
    client = VultrClient.from_config(config)
    metadata = MetadataClient(config.metadata_url)

    region = config.region or metadata.region()
    if not region:
        raise ConfigurationError("region is not configured and metadata reported none")

    registry = SecretSubscriptionRegistry()
    locator = LoadBalancerLocator(client)
    builder = DesiredStateBuilder(store, registry, metadata)
    reconciler = LoadBalancerReconciler(
        client,
        locator,
        builder,
        IdentifierBindingManager(
            store,
            locator,
            max_attempts=config.binding_max_attempts,
            backoff_base=config.binding_backoff_base_seconds,
        ),
        region=region,
    )
    return Controller(
        config=config,
        store=store,
        client=client,
        metadata=metadata,
        registry=registry,
        locator=locator,
        builder=builder,
        reconciler=reconciler,
        watcher=SecretWatcher(store, registry),
        region=region,
    )


# =============================================================================
# Drift correction
# =============================================================================


@dataclass
class ResyncResult:
    """Outcome of one pass over all LoadBalancer services."""

    started_at: datetime
    completed_at: datetime | None = None
    reconciled: list[str] = field(default_factory=list)
    pending: list[str] = field(default_factory=list)
    failed: dict[str, str] = field(default_factory=dict)

    @property
    def duration_seconds(self) -> float:
        if self.completed_at is None:
            return 0.0
        return (self.completed_at - self.started_at).total_seconds()

    @property
    def success(self) -> bool:
        return not self.failed


class ControllerLoop:
    """Periodically ensures every LoadBalancer service.

    Args:
        store: Object store listing services and nodes.
        reconciler: Engine invoked once per service per pass.
        interval_seconds: Pause between passes.
    """

    def __init__(
        self,
        store: KubeStore,
        reconciler: LoadBalancerReconciler,
        *,
        interval_seconds: float,
    ) -> None:
        self._store = store
        self._reconciler = reconciler
        self._interval = interval_seconds
        self._stop_event = threading.Event()

    def run_once(self) -> ResyncResult:
        """Reconcile every LoadBalancer service once.

        A failing service is recorded and does not stop the pass.

        Raises:
            ObjectStoreError: If services or nodes cannot be listed.
        """
        result = ResyncResult(started_at=datetime.now(UTC))

        services = self._store.list_load_balancer_services()
        nodes = self._store.list_backend_nodes()

        for service in services:
            if self._stop_event.is_set():
                break
            self._reconcile_service(service, nodes, result)

        result.completed_at = datetime.now(UTC)
        self._log_result(result)
        return result

    def _reconcile_service(
        self,
        service: LogicalService,
        nodes: Sequence[BackendNode],
        result: ResyncResult,
    ) -> None:
        try:
            self._reconciler.ensure_load_balancer(service, nodes)
        except NotActiveError as e:
            logger.info(
                "Load balancer not active yet",
                extra={"service": service.key, "status": e.status},
            )
            result.pending.append(service.key)
        except LoadBalancerError as e:
            logger.warning(
                "Failed to reconcile service",
                extra={"service": service.key, "error": str(e), "error_type": type(e).__name__},
            )
            result.failed[service.key] = str(e)
        else:
            result.reconciled.append(service.key)

    def _log_result(self, result: ResyncResult) -> None:
        log_data = {
            "reconciled": len(result.reconciled),
            "pending": len(result.pending),
            "failed": len(result.failed),
            "duration_seconds": round(result.duration_seconds, 2),
        }
        if result.success:
            logger.info("Resync pass completed", extra=log_data)
        else:
            logger.warning("Resync pass completed with failures", extra=log_data)

    def run(self) -> None:
        """Run passes until shutdown() is called."""
        logger.info("Starting controller loop", extra={"interval_seconds": self._interval})
        while not self._stop_event.is_set():
            started = time.monotonic()
            try:
                self.run_once()
            except (ObjectStoreError, RemoteAPIError) as e:
                logger.error("Resync pass failed", extra={"error": str(e)})
            except Exception as e:
                logger.exception("Unhandled exception in resync pass", extra={"error": str(e)})

            remaining = self._interval - (time.monotonic() - started)
            if remaining > 0:
                self._stop_event.wait(remaining)
        logger.info("Controller loop stopped")

    def shutdown(self) -> None:
        self._stop_event.set()


def main() -> int:
    """Run the controller.

    Returns:
        Exit code (0 for success, non-zero for failure).
    """
    try:
        config = Config.from_env()
    except ConfigurationError as e:
        setup_logging()
        logger.error("Configuration error", extra={"error": str(e)})
        return 1

    setup_logging(config.log_json)

    try:
        controller = build_controller(config)
    except (ConfigurationError, RemoteAPIError) as e:
        logger.error("Failed to initialize controller", extra={"error": str(e)})
        return 1

    logger.info(
        "Starting Vultr load balancer controller",
        extra={
            "region": controller.region,
            "api_url": config.api_url,
            "resync_interval_seconds": config.resync_interval_seconds,
        },
    )

    loop = ControllerLoop(
        controller.store,
        controller.reconciler,
        interval_seconds=config.resync_interval_seconds,
    )

    def signal_handler(signum: int, _frame: object) -> None:
        logger.info("Received signal", extra={"signal": signal.Signals(signum).name})
        loop.shutdown()

    for sig in (signal.SIGTERM, signal.SIGINT):
        signal.signal(sig, signal_handler)

    controller.watcher.start()
    try:
        loop.run()
    finally:
        controller.close()

    logger.info("Controller stopped")
    return 0


def run() -> None:
    """Entry point for the controller process."""
    sys.exit(main())


if __name__ == "__main__":
    run()
