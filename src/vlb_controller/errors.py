"""Error taxonomy for load balancer reconciliation.

Every error raised out of the reconciliation engine is one of the types
below. Only ConcurrencyConflictError is ever retried inside this package,
and only by the identifier binding loop (see binding.py). Everything else
propagates to the caller unchanged in kind.
"""

from __future__ import annotations


class LoadBalancerError(Exception):
    """Base class for all load balancer controller errors."""

    pass


class LoadBalancerNotFound(LoadBalancerError):
    """The remote load balancer does not exist.

    This is an expected outcome, not a failure. The locator raises it and
    the engine translates it into "absent" at its public boundary.
    """

    pass


class AnnotationValidationError(LoadBalancerError, ValueError):
    """A service annotation holds a malformed or conflicting value."""

    def __init__(self, annotation: str, message: str) -> None:
        self.annotation = annotation
        super().__init__(f"{annotation}: {message}")


class ProviderIDError(LoadBalancerError, ValueError):
    """A node's provider ID could not be parsed into an instance ID."""

    pass


class RemoteAPIError(LoadBalancerError):
    """The provider API rejected a call or could not be reached.

    Attributes:
        operation: The provider operation that was attempted.
        status_code: HTTP status, or None for transport failures.
        body: Raw response body returned by the provider, if any.
    """

    def __init__(
        self,
        operation: str,
        message: str,
        *,
        status_code: int | None = None,
        body: str = "",
    ) -> None:
        self.operation = operation
        self.status_code = status_code
        self.body = body
        super().__init__(f"{operation} failed: {message}")


class ObjectStoreError(LoadBalancerError):
    """A cluster object store call failed."""

    def __init__(self, operation: str, message: str, *, status: int | None = None) -> None:
        self.operation = operation
        self.status = status
        super().__init__(f"{operation} failed: {message}")


class ConcurrencyConflictError(ObjectStoreError):
    """A service update was rejected because its resource version is stale."""

    pass


class InconsistentStateError(LoadBalancerError):
    """The identifier binding disagrees with the remote state."""

    pass


class RecreationNeededError(InconsistentStateError):
    """A stale identifier binding was cleared; the create path must restart."""

    pass


class NotActiveError(LoadBalancerError):
    """The remote load balancer exists but is not serving traffic yet."""

    def __init__(self, status: str) -> None:
        self.status = status
        super().__init__(f"load-balancer is not yet active - current status: {status}")


class CreationDisabledError(LoadBalancerError):
    """Load balancer creation is disabled for the service by annotation."""

    pass


class BindingRetriesExhausted(LoadBalancerError):
    """The identifier annotation could not be written within the retry bound."""

    pass
