# schemas/order_definitions.py
# ============================================================================
# MARKETPLACE ORDER PIPELINE: ORDER SCHEMAS
# ============================================================================
# Purpose: Type-safe order, payment and request/response definitions
#
# All money values are integer minor units (cents).
# ============================================================================

from typing import Any, List, Optional
from datetime import datetime, timezone
from pydantic import BaseModel, Field, computed_field, field_validator
from enum import Enum
import uuid


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ============================================================================
# SECTION 1: ENUMS
# ============================================================================

class OrderStatus(str, Enum):
    CREATED = "created"
    PROCESSING = "processing"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"


class PaymentStatus(str, Enum):
    PENDING = "pending"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    REFUND_PENDING = "refund_pending"
    REFUNDED = "refunded"
    REFUND_FAILED = "refund_failed"  # retries exhausted, needs manual action


class PaymentMethod(str, Enum):
    CARD = "card"
    CASH_ON_DELIVERY = "cash_on_delivery"


class Role(str, Enum):
    USER = "user"
    ADMIN = "admin"


# Placeholder reference for orders that never involve the gateway.
CASH_ON_DELIVERY_REFERENCE = "cash_on_delivery"


# ============================================================================
# SECTION 2: ORDER RECORD
# ============================================================================

class ShippingInfo(BaseModel):
    """Shipping destination snapshot."""
    address: str = Field(min_length=1)
    city: str = Field(min_length=1)
    postal_code: str = Field(min_length=1)
    country: str = Field(min_length=1)
    phone_no: Optional[str] = None


class LineItem(BaseModel):
    """Line item frozen at order creation. Never re-read from the catalog."""
    product_id: str
    name: str
    unit_price: int = Field(ge=0)
    image: Optional[str] = None
    quantity: int = Field(ge=1)

    @computed_field
    @property
    def line_total(self) -> int:
        return self.unit_price * self.quantity


class PaymentInfo(BaseModel):
    """Payment sub-record of an order."""
    id: Optional[str] = None
    method: PaymentMethod
    status: PaymentStatus = PaymentStatus.PENDING
    paid_at: Optional[datetime] = None
    refund_id: Optional[str] = None
    refund_attempts: int = 0
    last_refund_error: Optional[str] = None


class PriceBreakdown(BaseModel):
    items_price: int = Field(ge=0)
    tax_price: int = Field(default=0, ge=0)
    shipping_price: int = Field(default=0, ge=0)
    total_price: int = Field(ge=0)


class Order(BaseModel):
    """Core order entity"""
    order_id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    user_id: str
    correlation_id: str = Field(default_factory=lambda: str(uuid.uuid4()))

    shipping_info: ShippingInfo
    order_items: List[LineItem]
    payment_info: PaymentInfo

    items_price: int
    tax_price: int
    shipping_price: int
    total_price: int

    status: OrderStatus = OrderStatus.CREATED
    stock_committed: bool = False
    delivered_at: Optional[datetime] = None

    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    version: int = 1

    @computed_field
    @property
    def is_paid(self) -> bool:
        return self.payment_info.status == PaymentStatus.SUCCEEDED

    def evolve(self, **changes: Any) -> "Order":
        """Copy with changes applied, bumping version and timestamp."""
        changes.setdefault("updated_at", utcnow())
        changes["version"] = self.version + 1
        return self.model_copy(update=changes, deep=True)

    def with_payment(self, **changes: Any) -> "Order":
        payment = self.payment_info.model_copy(update=changes)
        return self.evolve(payment_info=payment)


# ============================================================================
# SECTION 3: IDENTITY
# ============================================================================

class Identity(BaseModel):
    """Authenticated caller, decoded from the bearer token."""
    user_id: str
    role: Role = Role.USER

    @property
    def is_admin(self) -> bool:
        return self.role == Role.ADMIN

    def can_access(self, order: Order) -> bool:
        return self.is_admin or order.user_id == self.user_id


# ============================================================================
# SECTION 4: REQUEST MODELS
# ============================================================================

class OrderItemRequest(BaseModel):
    """Cart entry submitted by the client."""
    product_id: str = Field(min_length=1)
    quantity: int = Field(ge=1)


class CreateOrderRequest(BaseModel):
    shipping_info: ShippingInfo
    order_items: List[OrderItemRequest] = Field(min_length=1)
    payment_method: PaymentMethod
    items_price: int = Field(ge=0)
    tax_price: int = Field(default=0, ge=0)
    shipping_price: int = Field(default=0, ge=0)
    total_price: int = Field(ge=0)

    def price_breakdown(self) -> PriceBreakdown:
        return PriceBreakdown(
            items_price=self.items_price,
            tax_price=self.tax_price,
            shipping_price=self.shipping_price,
            total_price=self.total_price,
        )


class ConfirmPaymentRequest(BaseModel):
    payment_intent_id: str = Field(min_length=1)
    order_id: str = Field(min_length=1)


class UpdateStatusRequest(BaseModel):
    # Kept as a plain string so out-of-set values reach the status parser.
    status: str

    @field_validator("status")
    @classmethod
    def strip_status(cls, value: str) -> str:
        return value.strip().lower()


# ============================================================================
# SECTION 5: RESULTS & RESPONSE ENVELOPE
# ============================================================================

class OrderCreated(BaseModel):
    order: Order
    client_secret: Optional[str] = None


class SettlementResult(BaseModel):
    order: Order
    status: str  # "settled" | "already_settled"
    receipt_download_link: Optional[str] = None

    @computed_field
    @property
    def settled_now(self) -> bool:
        return self.status == "settled"


class OrderPage(BaseModel):
    orders: List[Order]
    page: int
    total_pages: int
    total_orders: int


class ApiResponse(BaseModel):
    """Uniform response envelope for every endpoint."""
    success: bool = True
    status_code: int = 200
    message: str = "Success"
    data: Optional[Any] = None
    timestamp: datetime = Field(default_factory=utcnow)

    @classmethod
    def ok(cls, data: Any = None, message: str = "Success", status_code: int = 200) -> "ApiResponse":
        return cls(success=True, status_code=status_code, message=message, data=data)

    @classmethod
    def fail(cls, status_code: int, message: str, data: Any = None) -> "ApiResponse":
        return cls(success=False, status_code=status_code, message=message, data=data)


__all__ = [
    "utcnow",
    "OrderStatus",
    "PaymentStatus",
    "PaymentMethod",
    "Role",
    "CASH_ON_DELIVERY_REFERENCE",
    "ShippingInfo",
    "LineItem",
    "PaymentInfo",
    "PriceBreakdown",
    "Order",
    "Identity",
    "OrderItemRequest",
    "CreateOrderRequest",
    "ConfirmPaymentRequest",
    "UpdateStatusRequest",
    "OrderCreated",
    "SettlementResult",
    "OrderPage",
    "ApiResponse",
]
