"""
Payment Gateway Adapter
=======================
Abstraction over the external payment processor plus the Stripe-backed
implementation.

The Stripe SDK is synchronous; every call runs in a worker thread and is
bounded by `GATEWAY_TIMEOUT_SECONDS`. Timeouts and SDK errors surface as
`UpstreamFailure`, which callers treat as retryable.

pip install stripe structlog
"""

import asyncio
import json
import os
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, Optional

import stripe
import structlog
from pydantic import BaseModel, Field

from pipeline.errors import SignatureFailure, UpstreamFailure

logger = structlog.get_logger().bind(component="gateway_adapter")


# =============================================================================
# CONFIGURATION
# =============================================================================

class GatewayConfig:
    """Gateway configuration from environment"""

    STRIPE_SECRET_KEY = os.getenv("STRIPE_SECRET_KEY", "")
    STRIPE_WEBHOOK_SECRET = os.getenv("STRIPE_WEBHOOK_SECRET", "")
    TIMEOUT_SECONDS = float(os.getenv("GATEWAY_TIMEOUT_SECONDS", "10"))
    WEBHOOK_TOLERANCE_SECONDS = int(os.getenv("WEBHOOK_TOLERANCE_SECONDS", "300"))


config = GatewayConfig()


# =============================================================================
# MODELS
# =============================================================================

class PaymentIntentHandle(BaseModel):
    """What the pipeline needs to know about a payment intent."""
    id: str
    status: str
    client_secret: Optional[str] = None
    amount: Optional[int] = None
    currency: Optional[str] = None
    metadata: Dict[str, str] = Field(default_factory=dict)

    @property
    def succeeded(self) -> bool:
        return self.status == "succeeded"


# =============================================================================
# INTERFACE
# =============================================================================

class IPaymentGateway(ABC):
    """External payment processor"""

    @abstractmethod
    async def create_payment_intent(
        self,
        amount: int,
        currency: str,
        metadata: Dict[str, str],
        idempotency_key: Optional[str] = None,
    ) -> PaymentIntentHandle:
        pass

    @abstractmethod
    async def retrieve_payment_intent(self, intent_id: str) -> PaymentIntentHandle:
        pass

    @abstractmethod
    async def refund(self, payment_reference: str) -> str:
        """Refund the full captured amount. Returns the refund id."""
        pass

    @abstractmethod
    def verify_webhook_signature(self, payload: bytes, signature_header: Optional[str], secret: str) -> Dict[str, Any]:
        """Return the parsed event, or raise SignatureFailure."""
        pass


# =============================================================================
# STRIPE IMPLEMENTATION
# =============================================================================

def _as_dict(value: Any) -> Dict[str, Any]:
    if value is None:
        return {}
    if hasattr(value, "to_dict"):
        return value.to_dict()
    return dict(value)


class StripeGatewayAdapter(IPaymentGateway):
    """Stripe PaymentIntents + Refunds + webhook signatures."""

    def __init__(
        self,
        api_key: Optional[str] = None,
        timeout_seconds: Optional[float] = None,
        webhook_tolerance: Optional[int] = None,
    ):
        self._api_key = api_key if api_key is not None else config.STRIPE_SECRET_KEY
        self._timeout = timeout_seconds or config.TIMEOUT_SECONDS
        self._tolerance = webhook_tolerance or config.WEBHOOK_TOLERANCE_SECONDS
        self._logger = logger

    async def _call(self, operation: str, fn: Callable[..., Any], *args, **kwargs) -> Any:
        try:
            return await asyncio.wait_for(
                asyncio.to_thread(fn, *args, api_key=self._api_key, **kwargs),
                timeout=self._timeout,
            )
        except asyncio.TimeoutError:
            self._logger.error("gateway_timeout", operation=operation, timeout=self._timeout)
            raise UpstreamFailure(operation, "timeout")
        except stripe.StripeError as e:
            self._logger.error("gateway_error", operation=operation,
                               error=str(e), error_type=type(e).__name__)
            raise UpstreamFailure(operation, str(e)) from e

    @staticmethod
    def _to_handle(intent: Any) -> PaymentIntentHandle:
        return PaymentIntentHandle(
            id=intent.id,
            status=intent.status,
            client_secret=getattr(intent, "client_secret", None),
            amount=getattr(intent, "amount", None),
            currency=getattr(intent, "currency", None),
            metadata={k: str(v) for k, v in _as_dict(getattr(intent, "metadata", None)).items()},
        )

    async def create_payment_intent(
        self,
        amount: int,
        currency: str,
        metadata: Dict[str, str],
        idempotency_key: Optional[str] = None,
    ) -> PaymentIntentHandle:
        params: Dict[str, Any] = {
            "amount": amount,
            "currency": currency,
            "metadata": metadata,
            "automatic_payment_methods": {"enabled": True},
        }
        if idempotency_key:
            params["idempotency_key"] = idempotency_key

        intent = await self._call("create_payment_intent", stripe.PaymentIntent.create, **params)
        self._logger.info("payment_intent_created", intent_id=intent.id, amount=amount, currency=currency)
        return self._to_handle(intent)

    async def retrieve_payment_intent(self, intent_id: str) -> PaymentIntentHandle:
        intent = await self._call("retrieve_payment_intent", stripe.PaymentIntent.retrieve, intent_id)
        return self._to_handle(intent)

    async def refund(self, payment_reference: str) -> str:
        refund = await self._call(
            "refund",
            stripe.Refund.create,
            payment_intent=payment_reference,
            idempotency_key=f"refund:{payment_reference}",
        )
        self._logger.info("refund_created", payment_reference=payment_reference, refund_id=refund.id)
        return refund.id

    def verify_webhook_signature(self, payload: bytes, signature_header: Optional[str], secret: str) -> Dict[str, Any]:
        if not signature_header:
            raise SignatureFailure("Missing webhook signature")
        if not secret:
            self._logger.error("webhook_secret_missing")
            raise SignatureFailure("Webhook secret not configured")

        # Verify signature BEFORE trusting any payload content
        try:
            stripe.Webhook.construct_event(payload, signature_header, secret, tolerance=self._tolerance)
        except stripe.SignatureVerificationError as e:
            self._logger.warning("webhook_signature_invalid", error=str(e))
            raise SignatureFailure()
        except ValueError as e:
            self._logger.warning("webhook_payload_invalid", error=str(e))
            raise SignatureFailure("Invalid webhook payload")

        raw = payload.decode("utf-8") if isinstance(payload, (bytes, bytearray)) else payload
        return json.loads(raw)
