"""Service annotation decoding.

Users configure their load balancer through annotations on the Service
object. Each decoder below reads one concern out of the annotation
mapping and returns a typed value, falling back to a documented default
when the annotation is absent. Malformed values raise
AnnotationValidationError naming the offending annotation.

``parse_annotations`` runs every decoder once and returns a single typed
LoadBalancerAnnotations value, so nothing downstream re-parses strings.
"""

from __future__ import annotations

import ipaddress
import logging
import re
from collections.abc import Mapping, Sequence

from pydantic import BaseModel, Field

from .errors import AnnotationValidationError
from .models import (
    FirewallRule,
    ForwardingRule,
    HealthCheck,
    LogicalService,
    ServicePort,
    StickySession,
)

logger = logging.getLogger(__name__)

ANNOTATION_PREFIX = "service.beta.kubernetes.io/vultr-loadbalancer-"

# Custom label for the load balancer (overrides the derived name)
ANNO_LABEL = ANNOTATION_PREFIX + "label"
# Provider ID of the bound load balancer. Managed by the controller.
ANNO_LB_ID = ANNOTATION_PREFIX + "id"
# Defaults to true; "false" disables creation for the service
ANNO_CREATE = ANNOTATION_PREFIX + "create"

ANNO_PROTOCOL = ANNOTATION_PREFIX + "protocol"
# Comma separated list of ports terminated as HTTPS: "443,8443"
ANNO_HTTPS_PORTS = ANNOTATION_PREFIX + "https-ports"
ANNO_SSL_PASSTHROUGH = ANNOTATION_PREFIX + "ssl-pass-through"
# Name of the TLS secret in the service's namespace
ANNO_SSL = ANNOTATION_PREFIX + "ssl"
ANNO_BACKEND_PROTOCOL = ANNOTATION_PREFIX + "backend-protocol"
# Hostname reported as ingress instead of the address (prevents hairpinning)
ANNO_HOSTNAME = ANNOTATION_PREFIX + "hostname"

ANNO_HEALTHCHECK_PATH = ANNOTATION_PREFIX + "healthcheck-path"
ANNO_HEALTHCHECK_PROTOCOL = ANNOTATION_PREFIX + "healthcheck-protocol"
ANNO_HEALTHCHECK_PORT = ANNOTATION_PREFIX + "healthcheck-port"
ANNO_HEALTHCHECK_INTERVAL = ANNOTATION_PREFIX + "healthcheck-check-interval"
ANNO_HEALTHCHECK_RESPONSE_TIMEOUT = ANNOTATION_PREFIX + "healthcheck-response-timeout"
ANNO_HEALTHCHECK_UNHEALTHY_THRESHOLD = ANNOTATION_PREFIX + "healthcheck-unhealthy-threshold"
ANNO_HEALTHCHECK_HEALTHY_THRESHOLD = ANNOTATION_PREFIX + "healthcheck-healthy-threshold"

ANNO_ALGORITHM = ANNOTATION_PREFIX + "algorithm"
ANNO_SSL_REDIRECT = ANNOTATION_PREFIX + "ssl-redirect"
ANNO_PROXY_PROTOCOL = ANNOTATION_PREFIX + "proxy-protocol"
ANNO_HTTP2 = ANNOTATION_PREFIX + "http2"
ANNO_HTTP3 = ANNOTATION_PREFIX + "http3"
ANNO_TIMEOUT = ANNOTATION_PREFIX + "timeout"

ANNO_STICKY_SESSION_ENABLED = ANNOTATION_PREFIX + "sticky-session-enabled"
ANNO_STICKY_SESSION_COOKIE_NAME = ANNOTATION_PREFIX + "sticky-session-cookie-name"

# "source,port;source,port" where source is a CIDR or "cloudflare"
ANNO_FIREWALL_RULES = ANNOTATION_PREFIX + "firewall-rules"
# Deprecated in favour of ANNO_VPC; the two are mutually exclusive
ANNO_PRIVATE_NETWORK = ANNOTATION_PREFIX + "private-network"
ANNO_VPC = ANNOTATION_PREFIX + "vpc"

# Number of load balancer nodes; must be odd
ANNO_NODE_COUNT = ANNOTATION_PREFIX + "node-count"

# Bumped when the TLS secret changes to force a resync. Managed by the controller.
ANNO_SSL_LAST_UPDATED = ANNOTATION_PREFIX + "ssl-last-updated"

# Supported protocols
PROTOCOL_TCP = "tcp"
PROTOCOL_HTTP = "http"
PROTOCOL_HTTPS = "https"
SUPPORTED_PROTOCOLS = frozenset({PROTOCOL_TCP, PROTOCOL_HTTP, PROTOCOL_HTTPS})

PORT_PROTOCOL_UDP = "UDP"

ALGORITHM_ROUND_ROBIN = "roundrobin"
ALGORITHM_LEAST_CONNECTIONS = "leastconn"

FIREWALL_SOURCE_CLOUDFLARE = "cloudflare"

# Defaults
DEFAULT_HEALTH_CHECK_INTERVAL = 15
DEFAULT_HEALTH_CHECK_RESPONSE_TIMEOUT = 5
DEFAULT_HEALTH_CHECK_UNHEALTHY_THRESHOLD = 5
DEFAULT_HEALTH_CHECK_HEALTHY_THRESHOLD = 5
DEFAULT_LB_TIMEOUT = 600
DEFAULT_NODE_COUNT = 1

# Kubernetes truncates derived load balancer names to this length
MAX_DEFAULT_NAME_LENGTH = 32

VALID_DNS_NAME_PATTERN = (
    r"^(?=.{1,253}$)([a-zA-Z0-9_]([a-zA-Z0-9_-]{0,61}[a-zA-Z0-9])?\.)*"
    r"[a-zA-Z0-9_]([a-zA-Z0-9_-]{0,61}[a-zA-Z0-9])?\.?$"
)

_TRUE_VALUES = frozenset({"1", "t", "true"})
_FALSE_VALUES = frozenset({"0", "f", "false"})


# =============================================================================
# Primitive parsers
# =============================================================================


def _parse_bool(value: str) -> bool | None:
    normalized = value.strip().lower()
    if normalized in _TRUE_VALUES:
        return True
    if normalized in _FALSE_VALUES:
        return False
    return None


def _get_flag(annotations: Mapping[str, str], key: str) -> bool:
    """Read a boolean annotation; absent or unparseable means False."""
    value = annotations.get(key)
    if value is None:
        return False
    parsed = _parse_bool(value)
    if parsed is None:
        logger.warning(
            "Ignoring unparseable boolean annotation",
            extra={"annotation": key, "value": value},
        )
        return False
    return parsed


def _get_int(annotations: Mapping[str, str], key: str, default: int, *, minimum: int = 1) -> int:
    value = annotations.get(key)
    if value is None:
        return default
    try:
        parsed = int(value.strip())
    except ValueError as e:
        raise AnnotationValidationError(key, f"must be an integer, got {value!r}") from e
    if parsed < minimum:
        raise AnnotationValidationError(key, f"must be at least {minimum}, got {parsed}")
    return parsed


# =============================================================================
# Naming
# =============================================================================


def default_load_balancer_name(service: LogicalService) -> str:
    """Name Kubernetes derives for a service's load balancer.

    "a" followed by the service UID without dashes, truncated to 32 chars.
    """
    name = ("a" + service.uid).replace("-", "")
    return name[:MAX_DEFAULT_NAME_LENGTH]


def load_balancer_name(service: LogicalService) -> str:
    """Label the load balancer should carry: the label override or the derived name."""
    label = service.annotations.get(ANNO_LABEL)
    if label is not None:
        return label
    return default_load_balancer_name(service)


# =============================================================================
# Single-concern decoders
# =============================================================================


def get_lb_id(annotations: Mapping[str, str]) -> str | None:
    """Provider ID bound to the service, if any."""
    return annotations.get(ANNO_LB_ID) or None


def creation_disabled(annotations: Mapping[str, str]) -> bool:
    return annotations.get(ANNO_CREATE, "").strip().lower() == "false"


def get_lb_protocol(annotations: Mapping[str, str]) -> str:
    """Frontend protocol, tcp by default."""
    value = annotations.get(ANNO_PROTOCOL)
    if value is None:
        return PROTOCOL_TCP
    protocol = value.strip().lower()
    if protocol not in SUPPORTED_PROTOCOLS:
        raise AnnotationValidationError(
            ANNO_PROTOCOL,
            f"invalid protocol {value!r}, expected one of {sorted(SUPPORTED_PROTOCOLS)}",
        )
    return protocol


def get_backend_protocol(annotations: Mapping[str, str]) -> str | None:
    """Backend protocol, or None when unset or not a supported protocol."""
    value = annotations.get(ANNO_BACKEND_PROTOCOL)
    if value is None:
        return None
    protocol = value.strip().lower()
    return protocol if protocol in SUPPORTED_PROTOCOLS else None


def get_https_ports(annotations: Mapping[str, str]) -> frozenset[int]:
    value = annotations.get(ANNO_HTTPS_PORTS)
    if value is None:
        return frozenset()

    ports: set[int] = set()
    for part in value.split(","):
        try:
            port = int(part.strip())
        except ValueError as e:
            raise AnnotationValidationError(
                ANNO_HTTPS_PORTS, f"invalid port {part.strip()!r}"
            ) from e
        if not 1 <= port <= 65535:
            raise AnnotationValidationError(ANNO_HTTPS_PORTS, f"port {port} out of range")
        ports.add(port)
    return frozenset(ports)


def get_ssl_passthrough(annotations: Mapping[str, str]) -> bool:
    return _get_flag(annotations, ANNO_SSL_PASSTHROUGH)


def get_ssl_redirect(annotations: Mapping[str, str]) -> bool:
    return _get_flag(annotations, ANNO_SSL_REDIRECT)


def get_proxy_protocol(annotations: Mapping[str, str]) -> bool:
    return _get_flag(annotations, ANNO_PROXY_PROTOCOL)


def get_http2(annotations: Mapping[str, str]) -> bool:
    return _get_flag(annotations, ANNO_HTTP2)


def get_http3(annotations: Mapping[str, str]) -> bool:
    return _get_flag(annotations, ANNO_HTTP3)


def get_algorithm(annotations: Mapping[str, str]) -> str:
    """Balancing algorithm; round robin unless least_connections is requested."""
    if annotations.get(ANNO_ALGORITHM) == "least_connections":
        return ALGORITHM_LEAST_CONNECTIONS
    return ALGORITHM_ROUND_ROBIN


def get_timeout(annotations: Mapping[str, str]) -> int:
    return _get_int(annotations, ANNO_TIMEOUT, DEFAULT_LB_TIMEOUT)


def get_node_count(annotations: Mapping[str, str]) -> int:
    count = _get_int(annotations, ANNO_NODE_COUNT, DEFAULT_NODE_COUNT)
    if count % 2 == 0:
        raise AnnotationValidationError(ANNO_NODE_COUNT, "must be odd")
    return count


def get_ssl_secret_name(annotations: Mapping[str, str]) -> str | None:
    return annotations.get(ANNO_SSL) or None


def get_vpc_reference(annotations: Mapping[str, str]) -> str | None:
    """VPC requested for the load balancer, or None.

    The legacy private-network annotation and the VPC annotation may not
    be combined, whatever their values. A value of "false" means no VPC.
    """
    private_network = annotations.get(ANNO_PRIVATE_NETWORK)
    vpc = annotations.get(ANNO_VPC)

    if private_network is not None and vpc is not None:
        raise AnnotationValidationError(
            ANNO_VPC,
            f"can not be combined with {ANNO_PRIVATE_NETWORK}; "
            "use the vpc annotation as private network is deprecated",
        )

    reference = private_network if private_network is not None else vpc
    if reference is None or reference.strip().lower() == "false":
        return None
    return reference.strip()


def get_hostname(annotations: Mapping[str, str]) -> str | None:
    """Hostname to report as ingress, validated as a DNS name."""
    hostname = annotations.get(ANNO_HOSTNAME, "")
    if not hostname:
        return None
    if not re.match(VALID_DNS_NAME_PATTERN, hostname):
        raise AnnotationValidationError(ANNO_HOSTNAME, f"{hostname} is not a valid DNS name")
    return hostname


# =============================================================================
# Composite decoders
# =============================================================================


def build_health_check(
    annotations: Mapping[str, str], ports: Sequence[ServicePort]
) -> HealthCheck:
    """Health check settings.

    Protocol defaults to TCP, or HTTP when a path is set. The port defaults
    to the first service port's node port; an explicit port must be one of
    the service's declared ports.
    """
    path = annotations.get(ANNO_HEALTHCHECK_PATH, "")

    raw_protocol = annotations.get(ANNO_HEALTHCHECK_PROTOCOL, "")
    if not raw_protocol:
        protocol = PROTOCOL_HTTP if path else PROTOCOL_TCP
    else:
        protocol = raw_protocol.strip().lower()
        if protocol not in SUPPORTED_PROTOCOLS:
            raise AnnotationValidationError(
                ANNO_HEALTHCHECK_PROTOCOL, f"invalid protocol {raw_protocol!r}"
            )

    raw_port = annotations.get(ANNO_HEALTHCHECK_PORT)
    if raw_port is None:
        if not ports:
            raise AnnotationValidationError("spec.ports", "service declares no ports")
        port = ports[0].node_port
    else:
        try:
            port = int(raw_port.strip())
        except ValueError as e:
            raise AnnotationValidationError(
                ANNO_HEALTHCHECK_PORT, f"must be an integer, got {raw_port!r}"
            ) from e
        if port not in {p.port for p in ports}:
            raise AnnotationValidationError(
                ANNO_HEALTHCHECK_PORT,
                f"provided health check port {port} does not exist on the service",
            )

    return HealthCheck(
        protocol=protocol,
        port=port,
        path=path,
        check_interval=_get_int(
            annotations, ANNO_HEALTHCHECK_INTERVAL, DEFAULT_HEALTH_CHECK_INTERVAL
        ),
        response_timeout=_get_int(
            annotations, ANNO_HEALTHCHECK_RESPONSE_TIMEOUT, DEFAULT_HEALTH_CHECK_RESPONSE_TIMEOUT
        ),
        unhealthy_threshold=_get_int(
            annotations,
            ANNO_HEALTHCHECK_UNHEALTHY_THRESHOLD,
            DEFAULT_HEALTH_CHECK_UNHEALTHY_THRESHOLD,
        ),
        healthy_threshold=_get_int(
            annotations, ANNO_HEALTHCHECK_HEALTHY_THRESHOLD, DEFAULT_HEALTH_CHECK_HEALTHY_THRESHOLD
        ),
    )


def build_sticky_session(annotations: Mapping[str, str]) -> StickySession:
    """Sticky sessions are off unless explicitly "on", which requires a cookie name."""
    if annotations.get(ANNO_STICKY_SESSION_ENABLED) != "on":
        return StickySession()

    cookie_name = annotations.get(ANNO_STICKY_SESSION_COOKIE_NAME, "")
    if not cookie_name:
        raise AnnotationValidationError(
            ANNO_STICKY_SESSION_COOKIE_NAME,
            "sticky session cookie name not supplied but is required",
        )
    return StickySession(cookie_name=cookie_name)


def _coerce_backend_protocol(frontend: str, backend: str | None) -> str:
    """Pick a backend protocol the provider accepts for the frontend protocol.

    tcp frontends need a tcp backend; http(s) frontends need an http(s)
    backend. An unset backend follows the frontend.
    """
    if backend is None:
        return frontend
    if frontend == PROTOCOL_TCP and backend != PROTOCOL_TCP:
        logger.info(
            "Backend protocol not supported for tcp frontend, using tcp",
            extra={"backend_protocol": backend},
        )
        return PROTOCOL_TCP
    if frontend in (PROTOCOL_HTTP, PROTOCOL_HTTPS) and backend == PROTOCOL_TCP:
        logger.info(
            "Backend protocol not supported for http(s) frontend, using frontend protocol",
            extra={"frontend_protocol": frontend, "backend_protocol": backend},
        )
        return frontend
    return backend


def build_forwarding_rules(
    annotations: Mapping[str, str], ports: Sequence[ServicePort]
) -> list[ForwardingRule]:
    """One forwarding rule per service port, in port declaration order."""
    default_protocol = get_lb_protocol(annotations)
    https_ports = get_https_ports(annotations)
    passthrough = get_ssl_passthrough(annotations)
    backend_protocol = get_backend_protocol(annotations)

    rules: list[ForwardingRule] = []
    for port in ports:
        if port.protocol.upper() == PORT_PROTOCOL_UDP:
            raise AnnotationValidationError(
                "spec.ports",
                f"TCP protocol is only supported: received {port.protocol} on port {port.port}",
            )

        frontend = default_protocol
        if port.port in https_ports:
            frontend = PROTOCOL_TCP if passthrough else PROTOCOL_HTTPS

        rules.append(
            ForwardingRule(
                frontend_protocol=frontend,
                frontend_port=port.port,
                backend_protocol=_coerce_backend_protocol(frontend, backend_protocol),
                backend_port=port.node_port,
            )
        )
    return rules


def build_firewall_rules(annotations: Mapping[str, str]) -> list[FirewallRule]:
    value = annotations.get(ANNO_FIREWALL_RULES, "")
    rules: list[FirewallRule] = []
    if not value.strip():
        return rules

    for entry in value.split(";"):
        entry = entry.strip()
        if not entry:
            continue

        parts = [p.strip() for p in entry.split(",")]
        if len(parts) != 2:
            raise AnnotationValidationError(
                ANNO_FIREWALL_RULES, f"rule {entry!r} must be 'source,port'"
            )
        source, raw_port = parts

        ip_type = "v4"
        if source != FIREWALL_SOURCE_CLOUDFLARE:
            if "/" not in source:
                raise AnnotationValidationError(
                    ANNO_FIREWALL_RULES, f"source {source} is not a CIDR"
                )
            try:
                network = ipaddress.ip_network(source, strict=False)
            except ValueError as e:
                raise AnnotationValidationError(
                    ANNO_FIREWALL_RULES, f"source {source} is invalid"
                ) from e
            if network.version == 6:
                ip_type = "v6"

        try:
            port = int(raw_port)
        except ValueError as e:
            raise AnnotationValidationError(
                ANNO_FIREWALL_RULES, f"port {raw_port!r} is invalid"
            ) from e
        if not 1 <= port <= 65535:
            raise AnnotationValidationError(ANNO_FIREWALL_RULES, f"port {port} out of range")

        rules.append(FirewallRule(source=source, ip_type=ip_type, port=port))
    return rules


# =============================================================================
# Boundary parse
# =============================================================================


class LoadBalancerAnnotations(BaseModel):
    """Every load balancer setting decoded from a service's annotations."""

    model_config = {"frozen": True}

    label: str
    lb_id: str | None = None
    creation_disabled: bool = False
    forwarding_rules: list[ForwardingRule] = Field(default_factory=list)
    health_check: HealthCheck
    sticky_session: StickySession = Field(default_factory=StickySession)
    firewall_rules: list[FirewallRule] = Field(default_factory=list)
    balancing_algorithm: str = ALGORITHM_ROUND_ROBIN
    ssl_redirect: bool = False
    proxy_protocol: bool = False
    http2: bool = False
    http3: bool = False
    timeout: int = DEFAULT_LB_TIMEOUT
    vpc_reference: str | None = None
    node_count: int = DEFAULT_NODE_COUNT
    ssl_secret: str | None = None


def parse_annotations(service: LogicalService) -> LoadBalancerAnnotations:
    """Decode all load balancer annotations of a service in one pass.

    Raises:
        AnnotationValidationError: On the first malformed annotation.
    """
    annotations = service.annotations
    return LoadBalancerAnnotations(
        label=load_balancer_name(service),
        lb_id=get_lb_id(annotations),
        creation_disabled=creation_disabled(annotations),
        sticky_session=build_sticky_session(annotations),
        health_check=build_health_check(annotations, service.ports),
        forwarding_rules=build_forwarding_rules(annotations, service.ports),
        timeout=get_timeout(annotations),
        firewall_rules=build_firewall_rules(annotations),
        vpc_reference=get_vpc_reference(annotations),
        node_count=get_node_count(annotations),
        balancing_algorithm=get_algorithm(annotations),
        ssl_redirect=get_ssl_redirect(annotations),
        proxy_protocol=get_proxy_protocol(annotations),
        http2=get_http2(annotations),
        http3=get_http3(annotations),
        ssl_secret=get_ssl_secret_name(annotations),
    )
