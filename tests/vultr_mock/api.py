"""Mock Vultr load balancer API.

In-memory provider state served over an ``httpx.MockTransport`` handler,
so the real VultrClient (URL building, pagination, error mapping) is
exercised end to end without network access.
"""

from __future__ import annotations

import copy
import json
import re
import uuid
from dataclasses import dataclass, field
from typing import Any

import httpx

from vlb_controller.vultr import VultrClient

# Request body keys that the provider reports under generic_info
_GENERIC_INFO_KEYS = (
    "balancing_algorithm",
    "ssl_redirect",
    "proxy_protocol",
    "http2",
    "http3",
    "timeout",
    "vpc",
)

_MUTATING_METHODS = frozenset({"POST", "PATCH", "PUT", "DELETE"})

_LB_ROUTE = re.compile(r"^/v2/load-balancers/(?P<lb_id>[^/]+)$")
_RULES_ROUTE = re.compile(r"^/v2/load-balancers/(?P<lb_id>[^/]+)/forwarding-rules$")
_RULE_ROUTE = re.compile(
    r"^/v2/load-balancers/(?P<lb_id>[^/]+)/forwarding-rules/(?P<rule_id>[^/]+)$"
)
_SSL_ROUTE = re.compile(r"^/v2/load-balancers/(?P<lb_id>[^/]+)/ssl$")


@dataclass
class RecordedRequest:
    """One request received by the mock API."""

    method: str
    path: str
    body: dict[str, Any] | None = None

    @property
    def mutating(self) -> bool:
        return self.method in _MUTATING_METHODS


@dataclass
class InjectedFailure:
    method: str
    path_prefix: str
    status: int
    body: str = '{"error": "injected failure"}'


def _new_id() -> str:
    return str(uuid.uuid4())


def _rule_with_id(rule: dict[str, Any]) -> dict[str, Any]:
    return {"id": _new_id(), **rule}


@dataclass
class MockVultrAPI:
    """In-memory provider API.

    Attributes:
        load_balancers: Load balancer documents keyed by ID, in the
            provider's response shape.
        requests: Every request received, in order.
        create_status: Status assigned to newly created load balancers.
    """

    load_balancers: dict[str, dict[str, Any]] = field(default_factory=dict)
    requests: list[RecordedRequest] = field(default_factory=list)
    create_status: str = "active"
    _failures: list[InjectedFailure] = field(default_factory=list)
    _address_counter: int = 10

    # -------------------------------------------------------------------------
    # Test helpers
    # -------------------------------------------------------------------------

    def add_load_balancer(
        self,
        label: str,
        *,
        lb_id: str | None = None,
        status: str = "active",
        forwarding_rules: list[dict[str, Any]] | None = None,
        instances: list[str] | None = None,
        **settings: Any,
    ) -> dict[str, Any]:
        """Seed a load balancer directly into state."""
        lb = self._new_document(lb_id or _new_id(), label, status)
        lb["forwarding_rules"] = [
            rule if "id" in rule else _rule_with_id(rule) for rule in forwarding_rules or []
        ]
        lb["instances"] = list(instances or [])
        self._apply_settings(lb, settings)
        self.load_balancers[lb["id"]] = lb
        return lb

    def fail_next(self, method: str, path_prefix: str, status: int = 500) -> None:
        """Make the next matching request fail with ``status``."""
        self._failures.append(InjectedFailure(method, path_prefix, status))

    def mutating_requests(self) -> list[RecordedRequest]:
        return [r for r in self.requests if r.mutating]

    def count(self, method: str, path_pattern: str) -> int:
        """Number of received requests whose path matches the regex."""
        return sum(
            1 for r in self.requests if r.method == method and re.search(path_pattern, r.path)
        )

    def clear_requests(self) -> None:
        self.requests.clear()

    def client(self) -> VultrClient:
        return VultrClient("test-api-key", transport=httpx.MockTransport(self.handle))

    # -------------------------------------------------------------------------
    # Request handling
    # -------------------------------------------------------------------------

    def handle(self, request: httpx.Request) -> httpx.Response:
        method = request.method
        path = request.url.path
        body = json.loads(request.content) if request.content else None
        self.requests.append(RecordedRequest(method, path, body))

        for failure in self._failures:
            if failure.method == method and path.startswith(failure.path_prefix):
                self._failures.remove(failure)
                return httpx.Response(failure.status, text=failure.body)

        if path == "/v2/load-balancers":
            if method == "GET":
                return self._list(request)
            if method == "POST":
                return self._create(body or {})

        if match := _LB_ROUTE.match(path):
            lb = self.load_balancers.get(match["lb_id"])
            if lb is None:
                return httpx.Response(404, json={"error": "load balancer not found"})
            if method == "GET":
                return httpx.Response(200, json={"load_balancer": copy.deepcopy(lb)})
            if method == "PATCH":
                self._apply_settings(lb, body or {})
                return httpx.Response(204)
            if method == "DELETE":
                del self.load_balancers[lb["id"]]
                return httpx.Response(204)

        if match := _RULES_ROUTE.match(path):
            lb = self.load_balancers.get(match["lb_id"])
            if lb is None:
                return httpx.Response(404, json={"error": "load balancer not found"})
            if method == "GET":
                return httpx.Response(
                    200,
                    json={
                        "forwarding_rules": copy.deepcopy(lb["forwarding_rules"]),
                        "meta": {"total": len(lb["forwarding_rules"]), "links": {"next": ""}},
                    },
                )
            if method == "POST":
                rule = _rule_with_id(body or {})
                lb["forwarding_rules"].append(rule)
                return httpx.Response(201, json={"forwarding_rule": rule})

        if match := _RULE_ROUTE.match(path):
            lb = self.load_balancers.get(match["lb_id"])
            if lb is None or method != "DELETE":
                return httpx.Response(404, json={"error": "not found"})
            before = len(lb["forwarding_rules"])
            lb["forwarding_rules"] = [
                r for r in lb["forwarding_rules"] if r["id"] != match["rule_id"]
            ]
            if len(lb["forwarding_rules"]) == before:
                return httpx.Response(404, json={"error": "forwarding rule not found"})
            return httpx.Response(204)

        if (match := _SSL_ROUTE.match(path)) and method == "DELETE":
            lb = self.load_balancers.get(match["lb_id"])
            if lb is None:
                return httpx.Response(404, json={"error": "load balancer not found"})
            lb["has_ssl"] = False
            return httpx.Response(204)

        return httpx.Response(405, json={"error": f"unsupported {method} {path}"})

    def _list(self, request: httpx.Request) -> httpx.Response:
        per_page = int(request.url.params.get("per_page", "100"))
        offset = int(request.url.params.get("cursor") or 0)

        items = list(self.load_balancers.values())
        page = items[offset : offset + per_page]
        next_cursor = str(offset + per_page) if offset + per_page < len(items) else ""
        return httpx.Response(
            200,
            json={
                "load_balancers": copy.deepcopy(page),
                "meta": {"total": len(items), "links": {"next": next_cursor, "prev": ""}},
            },
        )

    def _create(self, body: dict[str, Any]) -> httpx.Response:
        lb = self._new_document(_new_id(), body.get("label", ""), self.create_status)
        lb["region"] = body.get("region", "")
        lb["forwarding_rules"] = [_rule_with_id(r) for r in body.get("forwarding_rules", [])]
        lb["instances"] = list(body.get("instances", []))
        self._apply_settings(lb, body)
        self.load_balancers[lb["id"]] = lb
        return httpx.Response(202, json={"load_balancer": copy.deepcopy(lb)})

    def _new_document(self, lb_id: str, label: str, status: str) -> dict[str, Any]:
        self._address_counter += 1
        return {
            "id": lb_id,
            "label": label,
            "region": "ewr",
            "status": status,
            "ipv4": f"192.0.2.{self._address_counter}",
            "ipv6": f"2001:db8::{self._address_counter}",
            "nodes": 1,
            "has_ssl": False,
            "generic_info": {
                "balancing_algorithm": "roundrobin",
                "ssl_redirect": False,
                "sticky_sessions": {"cookie_name": ""},
                "proxy_protocol": False,
                "http2": False,
                "http3": False,
                "timeout": 600,
                "vpc": "",
            },
            "health_check": {
                "protocol": "tcp",
                "port": 0,
                "path": "",
                "check_interval": 15,
                "response_timeout": 5,
                "unhealthy_threshold": 5,
                "healthy_threshold": 5,
            },
            "forwarding_rules": [],
            "instances": [],
            "firewall_rules": [],
        }

    def _apply_settings(self, lb: dict[str, Any], body: dict[str, Any]) -> None:
        """Apply a create or update request body to a stored document."""
        for key in _GENERIC_INFO_KEYS:
            if key in body:
                lb["generic_info"][key] = body[key]
        if "sticky_session" in body:
            lb["generic_info"]["sticky_sessions"] = dict(body["sticky_session"])
        if "health_check" in body:
            lb["health_check"] = dict(body["health_check"])
        if "label" in body:
            lb["label"] = body["label"]
        if "nodes" in body:
            lb["nodes"] = body["nodes"]
        if "instances" in body:
            lb["instances"] = list(body["instances"])
        if "firewall_rules" in body:
            lb["firewall_rules"] = [_rule_with_id(r) for r in body["firewall_rules"]]
        if "has_ssl" in body:
            lb["has_ssl"] = body["has_ssl"]
        if body.get("ssl"):
            lb["has_ssl"] = True
        if "status" in body:
            lb["status"] = body["status"]
