"""
Order Record Store & Audit Log
==============================
Persistence interfaces for orders and the audit trail, plus in-memory
implementations. The PostgreSQL implementations live in `database.py`.
"""

import asyncio
import uuid
from abc import ABC, abstractmethod
from collections import defaultdict
from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, Field

from schemas.order_definitions import Order, OrderStatus, PaymentStatus, utcnow


# =============================================================================
# AUDIT MODELS
# =============================================================================

class AuditEventType(str, Enum):
    ORDER_CREATED = "order.created"
    ORDER_STATUS_CHANGED = "order.status_changed"
    ORDER_DELETED = "order.deleted"
    ORDER_AUTO_CANCELLED = "order.auto_cancelled"
    PAYMENT_INITIATED = "payment.initiated"
    PAYMENT_SETTLED = "payment.settled"
    PAYMENT_FAILED = "payment.failed"
    PAYMENT_REFUNDED = "payment.refunded"
    REFUND_FAILED = "refund.failed"
    STOCK_COMMITTED = "stock.committed"
    STOCK_RESTORED = "stock.restored"
    WEBHOOK_RECEIVED = "webhook.received"


class AuditLogEntry(BaseModel):
    """Immutable audit log entry"""
    log_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    correlation_id: str
    event_type: AuditEventType
    entity_type: str  # "order", "payment", "webhook"
    entity_id: str
    previous_state: Optional[dict] = None
    new_state: Optional[dict] = None
    metadata: dict = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=utcnow)
    actor: str = "system"  # "system", "webhook", "user", "admin"


# =============================================================================
# INTERFACES
# =============================================================================

class IOrderRepository(ABC):
    """Order store. Existing orders change only through `compare_and_set`."""

    @abstractmethod
    async def get(self, order_id: str) -> Optional[Order]:
        pass

    @abstractmethod
    async def insert(self, order: Order) -> Order:
        pass

    @abstractmethod
    async def compare_and_set(
        self,
        order: Order,
        expected_status: OrderStatus,
        expected_version: Optional[int] = None,
    ) -> bool:
        """
        Write `order` only if the stored status still equals `expected_status`
        and, when given, the stored version equals `expected_version`.
        """
        pass

    @abstractmethod
    async def delete(self, order_id: str) -> Optional[Order]:
        """Remove and return the order, or None if absent."""
        pass

    @abstractmethod
    async def list_by_user(self, user_id: str) -> List[Order]:
        pass

    @abstractmethod
    async def list_page(self, skip: int, limit: int, status: Optional[OrderStatus] = None) -> List[Order]:
        pass

    @abstractmethod
    async def count(self, status: Optional[OrderStatus] = None) -> int:
        pass

    @abstractmethod
    async def list_by_payment_status(self, status: PaymentStatus, limit: int = 100) -> List[Order]:
        pass

    @abstractmethod
    async def get_by_payment_reference(self, reference: str) -> Optional[Order]:
        pass


class IAuditLog(ABC):
    """Audit log interface"""

    @abstractmethod
    async def append(self, entry: AuditLogEntry) -> None:
        pass

    @abstractmethod
    async def get_by_correlation_id(self, correlation_id: str) -> List[AuditLogEntry]:
        pass


# =============================================================================
# IN-MEMORY IMPLEMENTATIONS
# =============================================================================

def _newest_first(orders) -> List[Order]:
    return sorted(orders, key=lambda o: o.created_at, reverse=True)


class InMemoryOrderRepository(IOrderRepository):
    """Lock-guarded in-memory order repository"""

    def __init__(self):
        self._orders: Dict[str, Order] = {}
        self._lock = asyncio.Lock()

    async def get(self, order_id: str) -> Optional[Order]:
        async with self._lock:
            order = self._orders.get(order_id)
            return order.model_copy(deep=True) if order else None

    async def insert(self, order: Order) -> Order:
        async with self._lock:
            if order.order_id in self._orders:
                raise KeyError(f"Duplicate order id: {order.order_id}")
            self._orders[order.order_id] = order.model_copy(deep=True)
            return order

    async def compare_and_set(
        self,
        order: Order,
        expected_status: OrderStatus,
        expected_version: Optional[int] = None,
    ) -> bool:
        async with self._lock:
            current = self._orders.get(order.order_id)
            if current is None or current.status != expected_status:
                return False
            if expected_version is not None and current.version != expected_version:
                return False
            self._orders[order.order_id] = order.model_copy(deep=True)
            return True

    async def delete(self, order_id: str) -> Optional[Order]:
        async with self._lock:
            return self._orders.pop(order_id, None)

    async def list_by_user(self, user_id: str) -> List[Order]:
        async with self._lock:
            return _newest_first(o.model_copy(deep=True) for o in self._orders.values() if o.user_id == user_id)

    def _matching(self, status: Optional[OrderStatus]) -> List[Order]:
        return [o for o in self._orders.values() if status is None or o.status == status]

    async def list_page(self, skip: int, limit: int, status: Optional[OrderStatus] = None) -> List[Order]:
        async with self._lock:
            ordered = _newest_first(self._matching(status))
            return [o.model_copy(deep=True) for o in ordered[skip:skip + limit]]

    async def count(self, status: Optional[OrderStatus] = None) -> int:
        async with self._lock:
            return len(self._matching(status))

    async def list_by_payment_status(self, status: PaymentStatus, limit: int = 100) -> List[Order]:
        async with self._lock:
            matches = [
                o.model_copy(deep=True) for o in self._orders.values()
                if o.payment_info.status == status
            ]
            return matches[:limit]

    async def get_by_payment_reference(self, reference: str) -> Optional[Order]:
        async with self._lock:
            for order in self._orders.values():
                if order.payment_info.id == reference:
                    return order.model_copy(deep=True)
            return None


class InMemoryAuditLog(IAuditLog):
    """Append-only audit log"""

    def __init__(self):
        self._logs: List[AuditLogEntry] = []
        self._by_correlation: Dict[str, List[AuditLogEntry]] = defaultdict(list)
        self._lock = asyncio.Lock()

    async def append(self, entry: AuditLogEntry) -> None:
        async with self._lock:
            self._logs.append(entry)
            self._by_correlation[entry.correlation_id].append(entry)

    async def get_by_correlation_id(self, correlation_id: str) -> List[AuditLogEntry]:
        async with self._lock:
            return list(self._by_correlation.get(correlation_id, []))
