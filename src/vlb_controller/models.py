"""Pydantic models for services, desired configuration and remote state.

These models provide:
1. A typed view of the Kubernetes objects the controller reads
2. The desired load balancer configuration, validated at construction
3. Parsing of provider API responses into typed remote state
"""

from __future__ import annotations

from typing import Annotated, Any

from pydantic import BaseModel, Field, field_validator

from .errors import ProviderIDError

PROVIDER_SCHEME = "vultr"

# Remote lifecycle status meaning "serving traffic"
LB_STATUS_ACTIVE = "active"

IP_FAMILY_IPV6 = "IPv6"
DUAL_STACK_POLICIES = frozenset({"PreferDualStack", "RequireDualStack"})

Port = Annotated[int, Field(ge=0, le=65535)]


# =============================================================================
# Cluster-side objects
# =============================================================================


class ServicePort(BaseModel):
    """One exposed port of a LoadBalancer service."""

    model_config = {"frozen": True, "extra": "ignore"}

    name: str = ""
    protocol: str = "TCP"
    port: Port
    node_port: Port = 0


class LogicalService(BaseModel):
    """A Kubernetes service requesting an external load balancer."""

    model_config = {"extra": "ignore"}

    name: Annotated[str, Field(min_length=1)]
    namespace: str = "default"
    uid: str = ""
    annotations: dict[str, str] = Field(default_factory=dict)
    ports: list[ServicePort] = Field(default_factory=list)
    ip_families: list[str] = Field(default_factory=list)
    ip_family_policy: str | None = None
    resource_version: str | None = None

    @property
    def key(self) -> str:
        """Namespace-qualified service name."""
        return f"{self.namespace}/{self.name}"

    @property
    def ipv6_enabled(self) -> bool:
        """Whether the service asks for an IPv6 ingress address."""
        if IP_FAMILY_IPV6 in self.ip_families:
            return True
        return self.ip_family_policy in DUAL_STACK_POLICIES


def instance_id_from_provider_id(provider_id: str) -> str:
    """Extract the instance ID from a node provider ID like ``vultr://abc123``.

    Raises:
        ProviderIDError: If the provider ID is empty or not a vultr:// URI.
    """
    if not provider_id:
        raise ProviderIDError("providerID cannot be an empty string")

    parts = provider_id.split("://")
    if len(parts) != 2:
        raise ProviderIDError(
            f"unexpected providerID format {provider_id}, "
            f"expected format to be: {PROVIDER_SCHEME}://abc123"
        )

    if parts[0] != PROVIDER_SCHEME:
        raise ProviderIDError(
            f"provider scheme from providerID should be '{PROVIDER_SCHEME}://', {provider_id}"
        )

    if not parts[1]:
        raise ProviderIDError(f"providerID {provider_id} has an empty instance ID")

    return parts[1]


class BackendNode(BaseModel):
    """A cluster node that should receive load balancer traffic."""

    model_config = {"frozen": True, "extra": "ignore"}

    name: str
    provider_id: str = ""

    @property
    def instance_id(self) -> str:
        """Provider instance ID parsed from the node's provider ID."""
        return instance_id_from_provider_id(self.provider_id)


# =============================================================================
# Load balancer configuration fragments
# =============================================================================


class ForwardingRule(BaseModel):
    """Frontend port/protocol to backend port/protocol mapping."""

    model_config = {"frozen": True, "extra": "ignore"}

    id: str | None = None
    frontend_protocol: str
    frontend_port: Port
    backend_protocol: str
    backend_port: Port

    @property
    def key(self) -> tuple[str, int, str, int]:
        """Identity of the rule, independent of its provider-assigned ID."""
        return (
            self.frontend_protocol,
            self.frontend_port,
            self.backend_protocol,
            self.backend_port,
        )

    def to_request(self) -> dict[str, Any]:
        return {
            "frontend_protocol": self.frontend_protocol,
            "frontend_port": self.frontend_port,
            "backend_protocol": self.backend_protocol,
            "backend_port": self.backend_port,
        }


class HealthCheck(BaseModel):
    """Backend health check settings."""

    model_config = {"frozen": True, "extra": "ignore"}

    protocol: str = "tcp"
    port: Port = 0
    path: str = ""
    check_interval: int = 15
    response_timeout: int = 5
    unhealthy_threshold: int = 5
    healthy_threshold: int = 5


class StickySession(BaseModel):
    """Cookie based session affinity. An empty cookie name means disabled."""

    model_config = {"frozen": True, "extra": "ignore"}

    cookie_name: str = ""

    @property
    def enabled(self) -> bool:
        return bool(self.cookie_name)


class SSLMaterial(BaseModel):
    """TLS certificate and private key taken from a Kubernetes secret."""

    model_config = {"frozen": True}

    private_key: str
    certificate: str
    chain: str = ""


class FirewallRule(BaseModel):
    """Inbound firewall rule. Source is a CIDR or ``cloudflare``."""

    model_config = {"frozen": True, "extra": "ignore"}

    id: str | None = None
    source: str
    ip_type: str = "v4"
    port: Port

    @property
    def key(self) -> tuple[str, str, int]:
        return (self.source, self.ip_type, self.port)

    def to_request(self) -> dict[str, Any]:
        return {"source": self.source, "ip_type": self.ip_type, "port": self.port}


# =============================================================================
# Desired and remote state
# =============================================================================


class DesiredLBConfig(BaseModel):
    """Complete desired load balancer configuration for one service.

    Built fresh on every reconciliation and never mutated; use
    ``model_copy(update=...)`` to derive a variant.
    """

    model_config = {"frozen": True}

    label: Annotated[str, Field(min_length=1)]
    region: str | None = None
    instances: list[str] = Field(default_factory=list)
    forwarding_rules: list[ForwardingRule] = Field(default_factory=list)
    health_check: HealthCheck = Field(default_factory=HealthCheck)
    sticky_session: StickySession = Field(default_factory=StickySession)
    ssl: SSLMaterial | None = None
    ssl_redirect: bool = False
    http2: bool = False
    http3: bool = False
    proxy_protocol: bool = False
    balancing_algorithm: str = "roundrobin"
    firewall_rules: list[FirewallRule] = Field(default_factory=list)
    timeout: int = 600
    vpc: str | None = None
    nodes: int = 1

    @field_validator("nodes")
    @classmethod
    def validate_nodes(cls, v: int) -> int:
        # Remote health quorum needs a tie-breaker
        if v < 1 or v % 2 == 0:
            raise ValueError("nodes must be a positive odd number")
        return v

    def to_request(self, *, include_topology: bool = True) -> dict[str, Any]:
        """Convert to the provider's load balancer request body.

        Args:
            include_topology: Include forwarding rules and attached
                instances. Incremental updates manage those separately.
        """
        req: dict[str, Any] = {"label": self.label}
        if self.region:
            req["region"] = self.region
        if include_topology:
            req["instances"] = list(self.instances)
            req["forwarding_rules"] = [r.to_request() for r in self.forwarding_rules]

        req["health_check"] = self.health_check.model_dump()
        req["sticky_session"] = {"cookie_name": self.sticky_session.cookie_name}
        if self.ssl is not None:
            req["ssl"] = self.ssl.model_dump()
        req["ssl_redirect"] = self.ssl_redirect
        req["http2"] = self.http2
        req["http3"] = self.http3
        req["proxy_protocol"] = self.proxy_protocol
        req["balancing_algorithm"] = self.balancing_algorithm
        req["firewall_rules"] = [r.to_request() for r in self.firewall_rules]
        req["timeout"] = self.timeout
        req["vpc"] = self.vpc or ""
        req["nodes"] = self.nodes
        return req


class GenericInfo(BaseModel):
    """Scalar settings reported by the provider for a load balancer."""

    model_config = {"extra": "ignore"}

    balancing_algorithm: str = "roundrobin"
    ssl_redirect: bool = False
    sticky_sessions: StickySession = Field(default_factory=StickySession)
    proxy_protocol: bool = False
    http2: bool = False
    http3: bool = False
    timeout: int = 600
    vpc: str = ""


class RemoteLB(BaseModel):
    """Load balancer as reported by the provider API."""

    model_config = {"extra": "ignore"}

    id: Annotated[str, Field(min_length=1)]
    label: str = ""
    region: str = ""
    status: str = ""
    ipv4: str = ""
    ipv6: str = ""
    nodes: int = 1
    has_ssl: bool = False
    generic_info: GenericInfo = Field(default_factory=GenericInfo)
    health_check: HealthCheck = Field(default_factory=HealthCheck)
    forwarding_rules: list[ForwardingRule] = Field(default_factory=list)
    instances: list[str] = Field(default_factory=list)
    firewall_rules: list[FirewallRule] = Field(default_factory=list)

    @property
    def is_active(self) -> bool:
        return self.status == LB_STATUS_ACTIVE


class IngressAddress(BaseModel):
    """One ingress entry reported back on the service status."""

    model_config = {"frozen": True}

    hostname: str = ""
    ip: str = ""
