"""Vultr API client for load balancer resources.

Thin synchronous wrapper over the provider's v2 REST API. Each method is
a single attempt; retries and backoff belong to the caller's scheduler.
Provider failures surface as RemoteAPIError naming the operation, and a
404 on a single-resource lookup surfaces as LoadBalancerNotFound.
"""

from __future__ import annotations

import logging
from typing import Any

import httpx

from .config import LIST_PAGE_SIZE, Config
from .errors import LoadBalancerNotFound, RemoteAPIError
from .models import ForwardingRule, RemoteLB

logger = logging.getLogger(__name__)

LOAD_BALANCERS_PATH = "/v2/load-balancers"


class VultrClient:
    """Client for the provider's load balancer endpoints.

    Args:
        api_key: Bearer token for the provider API.
        base_url: API base URL.
        user_agent: Value of the User-Agent header.
        timeout: Per-request timeout in seconds.
        transport: Optional httpx transport (used by tests).
    """

    def __init__(
        self,
        api_key: str,
        *,
        base_url: str = "https://api.vultr.com",
        user_agent: str = "vultr-lb-controller",
        timeout: float = 30.0,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self._http = httpx.Client(
            base_url=base_url.rstrip("/"),
            headers={
                "Authorization": f"Bearer {api_key}",
                "User-Agent": user_agent,
                "Accept": "application/json",
            },
            timeout=timeout,
            transport=transport,
        )

    @classmethod
    def from_config(cls, config: Config) -> VultrClient:
        return cls(
            config.api_key,
            base_url=config.api_url,
            user_agent=config.user_agent,
            timeout=config.request_timeout_seconds,
        )

    def close(self) -> None:
        self._http.close()

    def __enter__(self) -> VultrClient:
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()

    def _request(
        self,
        operation: str,
        method: str,
        path: str,
        *,
        params: dict[str, Any] | None = None,
        json: dict[str, Any] | None = None,
    ) -> httpx.Response:
        try:
            response = self._http.request(method, path, params=params, json=json)
        except httpx.HTTPError as e:
            raise RemoteAPIError(operation, str(e)) from e

        if response.is_error:
            body = response.text
            raise RemoteAPIError(
                operation,
                f"HTTP {response.status_code}: {body}",
                status_code=response.status_code,
                body=body,
            )
        return response

    # -------------------------------------------------------------------------
    # Load balancers
    # -------------------------------------------------------------------------

    def list_load_balancers(
        self, *, per_page: int = LIST_PAGE_SIZE, cursor: str = ""
    ) -> tuple[list[RemoteLB], str]:
        """Fetch one page of load balancers.

        Returns:
            Tuple of (load balancers, next cursor). The cursor is empty on
            the last page.
        """
        params: dict[str, Any] = {"per_page": per_page}
        if cursor:
            params["cursor"] = cursor

        data = self._request("list load balancers", "GET", LOAD_BALANCERS_PATH, params=params).json()
        lbs = [RemoteLB.model_validate(item) for item in data.get("load_balancers") or []]
        next_cursor = ((data.get("meta") or {}).get("links") or {}).get("next") or ""
        return lbs, next_cursor

    def get_load_balancer(self, lb_id: str) -> RemoteLB:
        """Fetch a load balancer by ID.

        Raises:
            LoadBalancerNotFound: If the provider reports 404.
            RemoteAPIError: On any other failure.
        """
        try:
            response = self._request("get load balancer", "GET", f"{LOAD_BALANCERS_PATH}/{lb_id}")
        except RemoteAPIError as e:
            if e.status_code == 404:
                raise LoadBalancerNotFound(f"load balancer {lb_id} not found") from e
            raise
        return RemoteLB.model_validate(response.json()["load_balancer"])

    def create_load_balancer(self, payload: dict[str, Any]) -> RemoteLB:
        response = self._request("create load balancer", "POST", LOAD_BALANCERS_PATH, json=payload)
        lb = RemoteLB.model_validate(response.json()["load_balancer"])
        logger.info("Created load balancer", extra={"lb_id": lb.id, "label": lb.label})
        return lb

    def update_load_balancer(self, lb_id: str, payload: dict[str, Any]) -> None:
        self._request(
            "update load balancer", "PATCH", f"{LOAD_BALANCERS_PATH}/{lb_id}", json=payload
        )

    def delete_load_balancer(self, lb_id: str) -> None:
        self._request("delete load balancer", "DELETE", f"{LOAD_BALANCERS_PATH}/{lb_id}")
        logger.info("Deleted load balancer", extra={"lb_id": lb_id})

    def delete_ssl(self, lb_id: str) -> None:
        """Remove the TLS certificate from a load balancer."""
        self._request("delete load balancer ssl", "DELETE", f"{LOAD_BALANCERS_PATH}/{lb_id}/ssl")

    # -------------------------------------------------------------------------
    # Forwarding rules
    # -------------------------------------------------------------------------

    def list_forwarding_rules(self, lb_id: str) -> list[ForwardingRule]:
        rules: list[ForwardingRule] = []
        cursor = ""
        while True:
            params: dict[str, Any] = {"per_page": LIST_PAGE_SIZE}
            if cursor:
                params["cursor"] = cursor
            data = self._request(
                "list forwarding rules",
                "GET",
                f"{LOAD_BALANCERS_PATH}/{lb_id}/forwarding-rules",
                params=params,
            ).json()
            rules.extend(
                ForwardingRule.model_validate(item) for item in data.get("forwarding_rules") or []
            )
            cursor = ((data.get("meta") or {}).get("links") or {}).get("next") or ""
            if not cursor:
                return rules

    def create_forwarding_rule(self, lb_id: str, rule: ForwardingRule) -> None:
        self._request(
            "create forwarding rule",
            "POST",
            f"{LOAD_BALANCERS_PATH}/{lb_id}/forwarding-rules",
            json=rule.to_request(),
        )

    def delete_forwarding_rule(self, lb_id: str, rule_id: str) -> None:
        self._request(
            "delete forwarding rule",
            "DELETE",
            f"{LOAD_BALANCERS_PATH}/{lb_id}/forwarding-rules/{rule_id}",
        )

    # -------------------------------------------------------------------------
    # Attached instances
    # -------------------------------------------------------------------------

    def list_attached_instances(self, lb_id: str) -> list[str]:
        return list(self.get_load_balancer(lb_id).instances)

    def set_attached_instances(self, lb_id: str, instance_ids: list[str]) -> None:
        """Replace the attached instances with exactly ``instance_ids`` in one request."""
        self._request(
            "set instances",
            "PATCH",
            f"{LOAD_BALANCERS_PATH}/{lb_id}",
            json={"instances": list(instance_ids)},
        )

    def attach_instance(self, lb_id: str, instance_id: str) -> None:
        """Attach one instance, leaving the other attachments untouched."""
        current = self.list_attached_instances(lb_id)
        if instance_id in current:
            return
        self._request(
            "attach instance",
            "PATCH",
            f"{LOAD_BALANCERS_PATH}/{lb_id}",
            json={"instances": [*current, instance_id]},
        )

    def detach_instance(self, lb_id: str, instance_id: str) -> None:
        """Detach one instance, leaving the other attachments untouched."""
        current = self.list_attached_instances(lb_id)
        if instance_id not in current:
            return
        self._request(
            "detach instance",
            "PATCH",
            f"{LOAD_BALANCERS_PATH}/{lb_id}",
            json={"instances": [i for i in current if i != instance_id]},
        )
