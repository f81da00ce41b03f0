"""Load balancer reconciliation engine.

Converges the provider's load balancer for a service to the desired
configuration derived from the service's annotations:
1. Locate the remote load balancer (by bound ID, else by label)
2. Create it when absent, or bind and validate the ID when found
3. Refuse to touch a load balancer that is not active yet
4. Apply forwarding rule and instance changes as set differences
5. Submit the remaining settings in one update, only when they drifted

Every public operation is a single synchronous attempt. Retry cadence
belongs to the caller; the engine never sleeps or retries on its own,
except for the bounded ID annotation retries in binding.py.

Reconciling an unchanged service twice issues no mutating provider calls
on the second pass.
"""

from __future__ import annotations

import hashlib
import logging
from collections.abc import Sequence

from .annotations import (
    ANNO_CREATE,
    ANNO_LB_ID,
    creation_disabled,
    get_hostname,
    get_lb_id,
    load_balancer_name,
)
from .binding import IdentifierBindingManager
from .builder import DesiredStateBuilder
from .errors import (
    AnnotationValidationError,
    CreationDisabledError,
    InconsistentStateError,
    LoadBalancerNotFound,
    NotActiveError,
    RecreationNeededError,
)
from .locator import LoadBalancerLocator
from .models import (
    BackendNode,
    DesiredLBConfig,
    IngressAddress,
    LogicalService,
    RemoteLB,
    SSLMaterial,
)
from .vultr import VultrClient

logger = logging.getLogger(__name__)


def ssl_fingerprint(ssl: SSLMaterial | None) -> str:
    """Stable digest of TLS material; empty when there is none."""
    if ssl is None:
        return ""
    digest = hashlib.sha256()
    for part in (ssl.private_key, ssl.certificate, ssl.chain):
        digest.update(part.encode())
        digest.update(b"\0")
    return digest.hexdigest()


def build_ingress(
    service: LogicalService, lb: RemoteLB, *, strict_hostname: bool = False
) -> list[IngressAddress]:
    """Ingress addresses to report on the service status.

    A valid hostname annotation replaces the addresses entirely. Otherwise
    the IPv4 address is reported, plus the IPv6 address when the service
    asks for dual stack. An empty hostname annotation counts as unset, so
    the service never ends up with an empty ingress list.

    Args:
        strict_hostname: Raise on an invalid hostname annotation instead of
            logging it and falling back to the addresses.
    """
    try:
        hostname = get_hostname(service.annotations)
    except AnnotationValidationError:
        if strict_hostname:
            raise
        logger.error(
            "Invalid hostname annotation, reporting load balancer addresses",
            extra={"service": service.key},
        )
        hostname = None

    if hostname is not None:
        return [IngressAddress(hostname=hostname)]

    ingress = [IngressAddress(hostname=lb.label, ip=lb.ipv4)]
    if service.ipv6_enabled:
        ingress.append(IngressAddress(hostname=lb.label, ip=lb.ipv6))
    return ingress


class LoadBalancerReconciler:
    """Creates, updates and deletes a service's load balancer.

    Args:
        client: Provider API client.
        locator: Resolves services to remote load balancers.
        builder: Builds the desired configuration of a service.
        binding: Maintains the ID annotation on services.
        region: Region new load balancers are created in.
    """

    def __init__(
        self,
        client: VultrClient,
        locator: LoadBalancerLocator,
        builder: DesiredStateBuilder,
        binding: IdentifierBindingManager,
        *,
        region: str,
    ) -> None:
        self._client = client
        self._locator = locator
        self._builder = builder
        self._binding = binding
        self._region = region
        # Fingerprint of the TLS material last uploaded, per load balancer ID.
        # The provider never returns the certificate, so rotation is detected
        # against what this process uploaded.
        self._applied_ssl: dict[str, str] = {}

    # =========================================================================
    # Public operations
    # =========================================================================

    def get_load_balancer_name(self, service: LogicalService) -> str:
        return load_balancer_name(service)

    def get_load_balancer(self, service: LogicalService) -> tuple[list[IngressAddress], bool]:
        """Report the ingress of a service's load balancer.

        Returns:
            Tuple of (ingress addresses, exists). A missing load balancer is
            ([], False), not an error.

        Raises:
            AnnotationValidationError: If the hostname annotation is invalid.
        """
        try:
            lb = self._locator.locate(service)
        except LoadBalancerNotFound:
            return [], False
        return build_ingress(service, lb, strict_hostname=True), True

    def ensure_load_balancer(
        self, service: LogicalService, nodes: Sequence[BackendNode]
    ) -> list[IngressAddress]:
        """Make sure the service's load balancer exists and is up to date.

        Returns:
            Ingress addresses of the load balancer.

        Raises:
            CreationDisabledError: Creation is disabled by annotation.
            InconsistentStateError: The bound load balancer is missing or
                belongs to another service.
            NotActiveError: The load balancer is not active yet; retry later.
            AnnotationValidationError: A service annotation is malformed.
            RemoteAPIError: The provider rejected a call.
        """
        if creation_disabled(service.annotations):
            raise CreationDisabledError(
                f"{ANNO_CREATE} set to {service.annotations[ANNO_CREATE]} - "
                "load balancer will not be created"
            )

        try:
            return self._ensure(service, nodes)
        except RecreationNeededError as e:
            logger.info(
                "Stale load balancer ID cleared, restarting creation",
                extra={"service": service.key, "error": str(e)},
            )
            unbound = service.model_copy(
                update={
                    "annotations": {
                        k: v for k, v in service.annotations.items() if k != ANNO_LB_ID
                    }
                }
            )
            return self._ensure(unbound, nodes)

    def update_load_balancer(self, service: LogicalService, nodes: Sequence[BackendNode]) -> None:
        """Converge an existing load balancer to the service's configuration.

        Raises:
            LoadBalancerNotFound: If the service has no load balancer.
            NotActiveError: The load balancer is not active yet; retry later.
        """
        lb = self._locator.locate(service)
        self._binding.bind(service, lb.id)
        if not lb.is_active:
            raise NotActiveError(lb.status)
        self._converge(service, nodes, lb)

    def ensure_load_balancer_deleted(self, service: LogicalService) -> None:
        """Delete the service's load balancer. A no-op if there is none."""
        try:
            lb = self._locator.locate(service)
        except LoadBalancerNotFound:
            logger.info("Load balancer already absent", extra={"service": service.key})
            return

        self._client.delete_load_balancer(lb.id)
        self._applied_ssl.pop(lb.id, None)

    # =========================================================================
    # Transitions
    # =========================================================================

    def _ensure(self, service: LogicalService, nodes: Sequence[BackendNode]) -> list[IngressAddress]:
        try:
            lb = self._locator.locate(service)
        except LoadBalancerNotFound:
            lb_id = get_lb_id(service.annotations)
            if lb_id is not None:
                raise InconsistentStateError(
                    f"load balancer ID {lb_id} for service {service.key} not found"
                ) from None
            return self._create(service, nodes)

        logger.info(
            "Found load balancer",
            extra={"service": service.key, "lb_id": lb.id, "label": lb.label},
        )
        self._binding.bind(service, lb.id)
        if not lb.is_active:
            raise NotActiveError(lb.status)

        self._converge(service, nodes, lb)
        return build_ingress(service, lb)

    def _create(self, service: LogicalService, nodes: Sequence[BackendNode]) -> list[IngressAddress]:
        desired = self._builder.build(service, nodes).model_copy(update={"region": self._region})

        logger.info(
            "Load balancer does not exist, creating",
            extra={"service": service.key, "label": desired.label, "region": self._region},
        )
        lb = self._client.create_load_balancer(desired.to_request())
        self._applied_ssl[lb.id] = ssl_fingerprint(desired.ssl)

        self._binding.bind(service, lb.id)
        if not lb.is_active:
            raise NotActiveError(lb.status)
        return build_ingress(service, lb)

    def _converge(
        self, service: LogicalService, nodes: Sequence[BackendNode], lb: RemoteLB
    ) -> None:
        desired = self._builder.build(service, nodes)

        rule_changes = self._sync_forwarding_rules(lb.id, desired)
        instance_changes = self._sync_instances(lb.id, desired)
        settings_changed = self._sync_settings(lb, desired)

        if rule_changes or instance_changes or settings_changed:
            logger.info(
                "Load balancer converged",
                extra={
                    "service": service.key,
                    "lb_id": lb.id,
                    "rule_changes": rule_changes,
                    "instance_changes": instance_changes,
                    "settings_changed": settings_changed,
                },
            )
        else:
            logger.debug("Load balancer up to date", extra={"service": service.key, "lb_id": lb.id})

    # =========================================================================
    # Incremental updates
    # =========================================================================

    def _sync_forwarding_rules(self, lb_id: str, desired: DesiredLBConfig) -> int:
        """Delete rules no longer desired and create missing ones. Returns the change count."""
        current = self._client.list_forwarding_rules(lb_id)
        current_keys = {rule.key for rule in current}
        desired_keys = {rule.key for rule in desired.forwarding_rules}

        changes = 0
        for rule in current:
            if rule.key not in desired_keys and rule.id:
                self._client.delete_forwarding_rule(lb_id, rule.id)
                changes += 1

        created: set[tuple[str, int, str, int]] = set()
        for rule in desired.forwarding_rules:
            if rule.key in current_keys or rule.key in created:
                continue
            self._client.create_forwarding_rule(lb_id, rule)
            created.add(rule.key)
            changes += 1
        return changes

    def _sync_instances(self, lb_id: str, desired: DesiredLBConfig) -> int:
        """Detach stale instances and attach missing ones. Returns the change count.

        The attached list is read once and the result goes out in a single
        update. Instances that stay attached keep their order; new ones are
        appended sorted.
        """
        current = self._client.list_attached_instances(lb_id)
        attached = set(current)
        wanted = set(desired.instances)
        if attached == wanted:
            return 0

        detach = sorted(attached - wanted)
        attach = sorted(wanted - attached)
        logger.info(
            "Updating attached instances",
            extra={"lb_id": lb_id, "attach": attach, "detach": detach},
        )
        self._client.set_attached_instances(
            lb_id, [i for i in current if i in wanted] + attach
        )
        return len(detach) + len(attach)

    def _sync_settings(self, lb: RemoteLB, desired: DesiredLBConfig) -> bool:
        """Submit scalar settings and TLS in one update when any drifted."""
        fingerprint = ssl_fingerprint(desired.ssl)
        changed = False

        if desired.ssl is None and lb.has_ssl:
            logger.info("Removing TLS certificate from load balancer", extra={"lb_id": lb.id})
            self._client.delete_ssl(lb.id)
            self._applied_ssl.pop(lb.id, None)
            changed = True

        drifted = self._settings_drift(lb, desired)
        if desired.ssl is not None and (
            not lb.has_ssl or self._applied_ssl.get(lb.id) != fingerprint
        ):
            drifted.append("ssl")

        if not drifted:
            return changed

        logger.info(
            "Load balancer settings drifted, updating",
            extra={"lb_id": lb.id, "fields": drifted},
        )
        self._client.update_load_balancer(lb.id, desired.to_request(include_topology=False))
        self._applied_ssl[lb.id] = fingerprint
        return True

    @staticmethod
    def _settings_drift(lb: RemoteLB, desired: DesiredLBConfig) -> list[str]:
        info = lb.generic_info
        comparisons = {
            "label": (lb.label, desired.label),
            "balancing_algorithm": (info.balancing_algorithm, desired.balancing_algorithm),
            "ssl_redirect": (info.ssl_redirect, desired.ssl_redirect),
            "proxy_protocol": (info.proxy_protocol, desired.proxy_protocol),
            "http2": (info.http2, desired.http2),
            "http3": (info.http3, desired.http3),
            "timeout": (info.timeout, desired.timeout),
            "sticky_session": (
                info.sticky_sessions.cookie_name,
                desired.sticky_session.cookie_name,
            ),
            "vpc": (info.vpc, desired.vpc or ""),
            "nodes": (lb.nodes, desired.nodes),
            "health_check": (lb.health_check, desired.health_check),
            "firewall_rules": (
                {rule.key for rule in lb.firewall_rules},
                {rule.key for rule in desired.firewall_rules},
            ),
        }
        return [name for name, (actual, wanted) in comparisons.items() if actual != wanted]
