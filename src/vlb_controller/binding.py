"""Identifier binding between a service and its load balancer.

The provider ID of a service's load balancer is stored in an annotation
on the service. Every write is a read-modify-write against a freshly
read copy of the service, conditional on its resourceVersion; a caller's
copy is never written back. Write conflicts are the only errors retried
anywhere in the reconciliation path, and only here.
"""

from __future__ import annotations

import logging
import random
import time
from collections.abc import Callable

from .annotations import ANNO_LB_ID, get_lb_id, load_balancer_name
from .config import DEFAULT_BINDING_BACKOFF_BASE_SECONDS, DEFAULT_BINDING_MAX_ATTEMPTS
from .errors import (
    BindingRetriesExhausted,
    ConcurrencyConflictError,
    InconsistentStateError,
    LoadBalancerNotFound,
    RecreationNeededError,
)
from .kube import KubeStore
from .locator import LoadBalancerLocator
from .models import LogicalService

logger = logging.getLogger(__name__)


class IdentifierBindingManager:
    """Keeps the load balancer ID annotation consistent with remote state.

    Args:
        store: Object store holding the service.
        locator: Used to validate an ID that is already bound.
        max_attempts: Write attempts before giving up on conflicts.
        backoff_base: Base delay in seconds between attempts. The delay
            doubles per attempt, plus up to 20% jitter.
        sleep: Delay function, replaceable in tests.
    """

    def __init__(
        self,
        store: KubeStore,
        locator: LoadBalancerLocator,
        *,
        max_attempts: int = DEFAULT_BINDING_MAX_ATTEMPTS,
        backoff_base: float = DEFAULT_BINDING_BACKOFF_BASE_SECONDS,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._store = store
        self._locator = locator
        self._max_attempts = max_attempts
        self._backoff_base = backoff_base
        self._sleep = sleep

    def bind(self, service: LogicalService, expected_id: str) -> None:
        """Bind a service to the load balancer ``expected_id``.

        A no-op, with no write, when the service is already bound to it.

        Raises:
            RecreationNeededError: The service was bound to a load balancer
                that no longer exists. The binding has been cleared and the
                caller should go through creation again.
            InconsistentStateError: The service is bound to a load balancer
                whose label does not match the service.
            BindingRetriesExhausted: Every attempt hit a write conflict.
            ObjectStoreError: On any other object store failure.
        """
        for attempt in range(1, self._max_attempts + 1):
            try:
                if self._bind_once(service, expected_id):
                    logger.info(
                        "Bound load balancer to service",
                        extra={"service": service.key, "lb_id": expected_id},
                    )
                return
            except ConcurrencyConflictError as e:
                if attempt == self._max_attempts:
                    break

                backoff = self._backoff_base * (2 ** (attempt - 1))
                jitter = random.uniform(0, backoff * 0.2)
                wait_time = backoff + jitter

                logger.warning(
                    "Service changed during ID annotation update, retrying",
                    extra={
                        "service": service.key,
                        "attempt": attempt,
                        "max_attempts": self._max_attempts,
                        "wait_seconds": wait_time,
                        "error": str(e),
                    },
                )
                self._sleep(wait_time)

        raise BindingRetriesExhausted(
            f"failed to update annotation {ANNO_LB_ID} on {service.key} "
            f"after {self._max_attempts} attempts"
        )

    def _bind_once(self, service: LogicalService, expected_id: str) -> bool:
        """One read-modify-write attempt. Returns False if nothing was written."""
        fresh = self._store.get_service(service.namespace, service.name)

        existing_id = get_lb_id(fresh.annotations)
        if existing_id == expected_id:
            return False

        if existing_id is not None:
            self._validate_existing(fresh, existing_id)
            logger.warning(
                "Replacing valid but different load balancer ID",
                extra={"service": service.key, "existing_id": existing_id, "lb_id": expected_id},
            )

        self._store.patch_service_annotations(fresh, {ANNO_LB_ID: expected_id})
        return True

    def _validate_existing(self, service: LogicalService, existing_id: str) -> None:
        try:
            lb = self._locator.find_by_id(existing_id)
        except LoadBalancerNotFound:
            self.clear(service)
            raise RecreationNeededError(
                f"cleared invalid load balancer ID {existing_id} for service {service.key}"
            ) from None

        expected_label = load_balancer_name(service)
        if lb.label != expected_label:
            raise InconsistentStateError(
                f"load balancer {existing_id} (label: {lb.label}) does not match expected "
                f"service name {expected_label} for service {service.key}"
            )

    def clear(self, service: LogicalService) -> None:
        """Remove the ID annotation, re-reading the service first."""
        fresh = self._store.get_service(service.namespace, service.name)
        if get_lb_id(fresh.annotations) is None:
            return

        logger.info(
            "Clearing load balancer ID annotation",
            extra={"service": service.key, "lb_id": get_lb_id(fresh.annotations)},
        )
        self._store.patch_service_annotations(fresh, {ANNO_LB_ID: None})
