"""
Error taxonomy of the order/inventory core.

Caller errors (ValidationError, NotFoundError) are raised immediately and
never retried. TransientError is raised only after local retries ran out.
Insufficient stock and replayed requests are not errors; see
orderflow.models.outcomes.
"""
from typing import Optional


class OrderFlowError(Exception):
    """Base class for errors raised by the core."""


class ValidationError(OrderFlowError):
    """Malformed input: empty item list, non-positive quantity, bad key."""


class InvalidStatusTransition(ValidationError):
    def __init__(self, order_id: str, current: str, requested: str):
        self.order_id = order_id
        self.current = current
        self.requested = requested
        super().__init__(
            f"Order {order_id} cannot move from {current} to {requested}"
        )


class NotFoundError(OrderFlowError):
    def __init__(self, resource: str, identifier: str):
        self.resource = resource
        self.identifier = identifier
        super().__init__(f"{resource} {identifier} not found")


class TransientError(OrderFlowError):
    """Backing store timeout, deadlock or lost connection."""

    def __init__(self, message: str, retry_after: float = 1.0):
        self.retry_after = retry_after
        super().__init__(message)


class OrderTimeoutError(TransientError):
    """The order did not commit before the caller's deadline and was rolled back."""

    def __init__(self, idempotency_key: str, timeout: float, retry_after: float = 1.0):
        self.idempotency_key = idempotency_key
        self.timeout = timeout
        super().__init__(
            f"Order with idempotency key {idempotency_key!r} did not complete "
            f"within {timeout:.2f}s",
            retry_after=retry_after,
        )


class CacheUnavailableError(OrderFlowError):
    """The shared cache tier could not be reached."""

    def __init__(self, operation: str, cause: Optional[BaseException] = None):
        self.operation = operation
        super().__init__(f"Shared cache unavailable during {operation}: {cause}")
