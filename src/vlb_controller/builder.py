"""Desired load balancer configuration.

Combines the decoded service annotations with the current backend node
set into one DesiredLBConfig. The build is all or nothing: the first
malformed annotation, unparseable node provider ID or unreadable TLS
secret aborts it, so a partial configuration is never submitted.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Sequence

from .annotations import parse_annotations
from .kube import KubeStore
from .metadata import MetadataClient
from .models import BackendNode, DesiredLBConfig, LogicalService, SSLMaterial
from .secret_watcher import SecretSubscriptionRegistry

logger = logging.getLogger(__name__)

# A VPC annotation holding an ID is used as is; anything else selects the
# network the local instance is attached to.
VPC_ID_PATTERN = r"^[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{12}$"


class DesiredStateBuilder:
    """Builds the desired configuration of a service's load balancer.

    Args:
        store: Object store used to read TLS secrets.
        registry: Secret subscriptions shared with the secret watcher.
        metadata: Instance metadata client used to resolve the local VPC.
    """

    def __init__(
        self,
        store: KubeStore,
        registry: SecretSubscriptionRegistry,
        metadata: MetadataClient,
    ) -> None:
        self._store = store
        self._registry = registry
        self._metadata = metadata

    def build(self, service: LogicalService, nodes: Sequence[BackendNode]) -> DesiredLBConfig:
        """Build the desired configuration for a service.

        Args:
            service: The service requesting a load balancer.
            nodes: Backend nodes that should receive traffic.

        Returns:
            The complete desired configuration. Building twice from the
            same inputs yields equal values.

        Raises:
            AnnotationValidationError: If an annotation is malformed.
            ProviderIDError: If a node's provider ID cannot be parsed.
            ObjectStoreError: If the TLS secret cannot be read.
            RemoteAPIError: If the local VPC cannot be discovered.
        """
        parsed = parse_annotations(service)

        instances = [node.instance_id for node in nodes]

        ssl = None
        if parsed.ssl_secret is not None:
            ssl = self._load_ssl(service, parsed.ssl_secret)

        return DesiredLBConfig(
            label=parsed.label,
            instances=instances,
            forwarding_rules=parsed.forwarding_rules,
            health_check=parsed.health_check,
            sticky_session=parsed.sticky_session,
            ssl=ssl,
            ssl_redirect=parsed.ssl_redirect,
            http2=parsed.http2,
            http3=parsed.http3,
            proxy_protocol=parsed.proxy_protocol,
            balancing_algorithm=parsed.balancing_algorithm,
            firewall_rules=parsed.firewall_rules,
            timeout=parsed.timeout,
            vpc=self._resolve_vpc(parsed.vpc_reference),
            nodes=parsed.node_count,
        )

    def _load_ssl(self, service: LogicalService, secret_name: str) -> SSLMaterial:
        ssl = self._store.get_tls_secret(service.namespace, secret_name)

        # Resync on rotation is best effort; never fail the build over it
        try:
            self._registry.add(service.namespace, service.name, secret_name)
        except Exception:
            logger.exception(
                "Failed to register service with secret watcher",
                extra={"service": service.key, "secret": secret_name},
            )
        return ssl

    def _resolve_vpc(self, reference: str | None) -> str | None:
        if reference is None:
            return None
        if re.match(VPC_ID_PATTERN, reference):
            return reference
        return self._metadata.vpc_network_id() or None
