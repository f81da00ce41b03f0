"""Resolve a service to its remote load balancer.

A service is bound to its load balancer by the ID annotation once the
controller has seen the two together. Before that, the load balancer is
found by label: first the name Kubernetes derives from the service UID,
then the label override annotation. A bound ID is authoritative; the
name lookup is never consulted for a bound service.

Absence is reported as LoadBalancerNotFound, never as a generic error.
"""

from __future__ import annotations

import logging

from .annotations import default_load_balancer_name, get_lb_id, load_balancer_name
from .config import LIST_PAGE_SIZE
from .errors import InconsistentStateError, LoadBalancerNotFound
from .models import LogicalService, RemoteLB
from .vultr import VultrClient

logger = logging.getLogger(__name__)


class LoadBalancerLocator:
    """Finds remote load balancers by ID or label."""

    def __init__(self, client: VultrClient, *, page_size: int = LIST_PAGE_SIZE) -> None:
        self._client = client
        self._page_size = page_size

    def find_by_id(self, lb_id: str) -> RemoteLB:
        """Fetch a load balancer by its provider ID.

        Raises:
            LoadBalancerNotFound: If no load balancer has this ID.
            RemoteAPIError: On provider failures.
        """
        return self._client.get_load_balancer(lb_id)

    def find_by_name(self, name: str) -> RemoteLB:
        """Find the single load balancer labelled ``name``.

        Walks every page of the listing.

        Raises:
            LoadBalancerNotFound: If no load balancer carries the label.
            InconsistentStateError: If more than one does.
            RemoteAPIError: On provider failures.
        """
        matches: list[RemoteLB] = []
        cursor = ""
        while True:
            lbs, cursor = self._client.list_load_balancers(per_page=self._page_size, cursor=cursor)
            matches.extend(lb for lb in lbs if lb.label == name)
            if not cursor:
                break

        if not matches:
            raise LoadBalancerNotFound(f"no load balancer labelled {name!r}")

        if len(matches) > 1:
            ids = [lb.id for lb in matches]
            raise InconsistentStateError(
                f"multiple load balancers found with label {name!r}: IDs {ids} - unique label required"
            )

        return matches[0]

    def find_by_service_name(self, service: LogicalService) -> RemoteLB:
        """Find a service's load balancer by the derived name, then by its label override."""
        default_name = default_load_balancer_name(service)
        try:
            return self.find_by_name(default_name)
        except LoadBalancerNotFound:
            name = load_balancer_name(service)
            if name == default_name:
                raise
            return self.find_by_name(name)

    def locate(self, service: LogicalService) -> RemoteLB:
        """Resolve a service to its load balancer.

        Raises:
            LoadBalancerNotFound: If the service has no load balancer.
        """
        lb_id = get_lb_id(service.annotations)
        if lb_id is not None:
            return self.find_by_id(lb_id)
        return self.find_by_service_name(service)

    def exists(self, lb_id: str) -> bool:
        try:
            self.find_by_id(lb_id)
        except LoadBalancerNotFound:
            return False
        return True
