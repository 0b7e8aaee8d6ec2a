# Order Pipeline
# ==============
# Lifecycle engine, state machine, inventory, gateway and receipts

from .errors import (
    OrderPipelineError,
    ValidationFailure,
    AuthenticationError,
    AuthorizationError,
    NotFoundError,
    ConflictError,
    InsufficientStockError,
    InvalidTransitionError,
    UpstreamFailure,
    SignatureFailure,
)
from .order_lifecycle import OrderLifecycleEngine, WebhookRouter

__all__ = [
    "OrderPipelineError",
    "ValidationFailure",
    "AuthenticationError",
    "AuthorizationError",
    "NotFoundError",
    "ConflictError",
    "InsufficientStockError",
    "InvalidTransitionError",
    "UpstreamFailure",
    "SignatureFailure",
    "OrderLifecycleEngine",
    "WebhookRouter",
]
