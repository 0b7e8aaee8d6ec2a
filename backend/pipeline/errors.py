"""Typed failures raised by the order pipeline.

Every failure carries a stable HTTP status code, a user-facing message and
optional diagnostic data. The API layer renders them as the response
envelope; nothing else about the exception leaks to the caller.
"""

from typing import Any, Optional


class OrderPipelineError(Exception):
    """Base exception for all order pipeline failures."""

    status_code: int = 500
    retryable: bool = False

    def __init__(self, message: str, data: Optional[Any] = None):
        self.message = message
        self.data = data
        super().__init__(message)


class ValidationFailure(OrderPipelineError):
    """Missing or malformed input."""

    status_code = 400


class AuthenticationError(OrderPipelineError):
    """No usable credentials on the request."""

    status_code = 401


class AuthorizationError(OrderPipelineError):
    """Caller is not the order owner or not an administrator."""

    status_code = 403


class NotFoundError(OrderPipelineError):
    """Order, product or receipt absent."""

    status_code = 404

    def __init__(self, entity: str, entity_id: str):
        self.entity = entity
        self.entity_id = entity_id
        super().__init__(f"{entity} not found: {entity_id}", {"id": entity_id})


class ConflictError(OrderPipelineError):
    """Request is well-formed but conflicts with current state."""

    status_code = 409


class InsufficientStockError(ConflictError):
    """Raised when a decrement would drive stock negative."""

    def __init__(self, product_id: str, requested: int, available: int, name: Optional[str] = None):
        self.product_id = product_id
        self.requested = requested
        self.available = available
        label = name or product_id
        super().__init__(
            f"Insufficient stock for product: {label}",
            {"product_id": product_id, "requested": requested, "available": available},
        )


class InvalidTransitionError(ConflictError):
    """Raised when the state machine rejects a status change."""

    def __init__(self, current: str, target: str, trigger: str):
        self.current = current
        self.target = target
        self.trigger = trigger
        super().__init__(
            f"Cannot move order from '{current}' to '{target}'",
            {"current": current, "target": target, "trigger": trigger},
        )


class UpstreamFailure(OrderPipelineError):
    """Payment gateway call failed or timed out. Safe to retry."""

    status_code = 502
    retryable = True

    def __init__(self, operation: str, detail: str):
        self.operation = operation
        self.detail = detail
        super().__init__(
            f"Payment gateway unavailable during {operation}",
            {"operation": operation, "retryable": True},
        )


class SignatureFailure(OrderPipelineError):
    """Webhook authenticity check failed."""

    status_code = 400

    def __init__(self, reason: str = "Invalid webhook signature"):
        super().__init__(reason)
