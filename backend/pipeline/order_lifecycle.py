"""
Order Lifecycle Engine
======================
Orchestrates the order pipeline:
- Order creation with catalog snapshots and availability checks
- One settlement operation shared by client confirmation and webhooks
- Exactly-once stock commit guarded by a status compare-and-set
- Administrative status changes with compensation (restock, refund)
- Best-effort refunds, recorded as `refund_pending` and retried until
  `refund_failed`

Example:
    engine = OrderLifecycleEngine(orders, catalog, inventory, gateway)
    created = await engine.create_order(user_id, shipping, items, PaymentMethod.CARD, price)
    # Client pays with created.client_secret
    # Then either: await engine.confirm_payment(identity, order_id, intent_id)
    #          or: await engine.process_webhook(payload, signature)
"""

import asyncio
import os
import uuid
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Optional

import structlog

from pipeline.errors import (
    AuthorizationError,
    ConflictError,
    InsufficientStockError,
    NotFoundError,
    ValidationFailure,
)
from pipeline.gateway_adapter import IPaymentGateway, config as gateway_config
from pipeline.inventory import IInventoryLedger, IProductCatalog
from pipeline.receipts import IReceiptGenerator
from pipeline.repositories import (
    AuditEventType,
    AuditLogEntry,
    IAuditLog,
    InMemoryAuditLog,
    IOrderRepository,
)
from pipeline.state_machine import SETTLED_STATES, Trigger, ensure_transition, parse_admin_target
from schemas.order_definitions import (
    CASH_ON_DELIVERY_REFERENCE,
    Identity,
    LineItem,
    Order,
    OrderCreated,
    OrderItemRequest,
    OrderPage,
    OrderStatus,
    PaymentInfo,
    PaymentMethod,
    PaymentStatus,
    PriceBreakdown,
    SettlementResult,
    ShippingInfo,
    utcnow,
)


# =============================================================================
# CONFIGURATION
# =============================================================================

class LifecycleConfig:
    CURRENCY = os.getenv("ORDER_CURRENCY", "usd")
    RECEIPT_LINK = "/orders/receipt/{order_id}"
    MAX_PAGE_SIZE = int(os.getenv("ORDER_MAX_PAGE_SIZE", "100"))
    WRITE_RETRIES = int(os.getenv("ORDER_WRITE_RETRIES", "3"))


config = LifecycleConfig()

SETTLED = "settled"
ALREADY_SETTLED = "already_settled"


# =============================================================================
# WEBHOOK ROUTER
# =============================================================================

WebhookHandler = Callable[[dict, str], Awaitable[Any]]


class WebhookRouter:
    """Maps gateway event types to handlers."""

    def __init__(self):
        self._handlers: Dict[str, WebhookHandler] = {}
        self._logger = structlog.get_logger().bind(component="webhook_router")

    def register(self, event_type: str):
        """Decorator to register handler for event type"""
        def decorator(handler: WebhookHandler):
            self._handlers[event_type] = handler
            self._logger.debug("handler_registered", event_type=event_type)
            return handler
        return decorator

    async def route(self, event: dict, correlation_id: str) -> Optional[Any]:
        event_type = event.get("type", "unknown")

        handler = self._handlers.get(event_type)
        if not handler:
            self._logger.info("no_handler", event_type=event_type)
            return None

        return await handler(event, correlation_id)

    @property
    def supported_events(self) -> List[str]:
        return list(self._handlers.keys())


# =============================================================================
# ORDER LIFECYCLE ENGINE
# =============================================================================

class OrderLifecycleEngine:
    """
    Owns every mutation of an order after it is created.

    Within a process, mutations on one order are serialized by a per-order
    lock. Across processes, every write after load is a compare-and-set on
    the stored status and version, so only one caller ever commits stock
    and a stale copy never overwrites a newer one.
    """

    def __init__(
        self,
        orders: IOrderRepository,
        catalog: IProductCatalog,
        inventory: IInventoryLedger,
        gateway: IPaymentGateway,
        receipts: Optional[IReceiptGenerator] = None,
        audit_log: Optional[IAuditLog] = None,
        currency: Optional[str] = None,
        webhook_secret: Optional[str] = None,
    ):
        self.orders = orders
        self.catalog = catalog
        self.inventory = inventory
        self.gateway = gateway
        self.receipts = receipts
        self.audit = audit_log or InMemoryAuditLog()
        self.currency = currency or config.CURRENCY
        self._webhook_secret = webhook_secret if webhook_secret is not None else gateway_config.STRIPE_WEBHOOK_SECRET

        self.router = WebhookRouter()
        self._register_handlers()

        self._order_locks: Dict[str, asyncio.Lock] = {}
        self._order_locks_mutex = asyncio.Lock()

        self._base_logger = structlog.get_logger()

    def _get_logger(self, correlation_id: Optional[str] = None):
        """Get logger bound with correlation context"""
        return self._base_logger.bind(
            component="order_lifecycle",
            correlation_id=correlation_id or str(uuid.uuid4()),
        )

    async def _get_order_lock(self, order_id: str) -> asyncio.Lock:
        async with self._order_locks_mutex:
            if order_id not in self._order_locks:
                self._order_locks[order_id] = asyncio.Lock()
            return self._order_locks[order_id]

    async def _drop_order_lock(self, order_id: str) -> None:
        async with self._order_locks_mutex:
            self._order_locks.pop(order_id, None)

    async def _emit_audit(
        self,
        event_type: AuditEventType,
        entity_id: str,
        correlation_id: str,
        entity_type: str = "order",
        previous_state: Optional[dict] = None,
        new_state: Optional[dict] = None,
        metadata: Optional[dict] = None,
        actor: str = "system",
    ):
        entry = AuditLogEntry(
            correlation_id=correlation_id,
            event_type=event_type,
            entity_type=entity_type,
            entity_id=entity_id,
            previous_state=previous_state,
            new_state=new_state,
            metadata=metadata or {},
            actor=actor,
        )
        await self.audit.append(entry)

    async def _load(self, order_id: str) -> Order:
        order = await self.orders.get(order_id)
        if order is None:
            raise NotFoundError("Order", order_id)
        return order

    # =========================================================================
    # ORDER CREATION
    # =========================================================================

    async def create_order(
        self,
        user_id: str,
        shipping_info: ShippingInfo,
        items: List[OrderItemRequest],
        payment_method: PaymentMethod,
        price: PriceBreakdown,
    ) -> OrderCreated:
        """
        Validate the cart, snapshot line items and persist a `created` order.

        Card orders get a payment intent before anything is persisted.
        Cash-on-delivery orders commit stock immediately and move to
        `processing`.
        """
        correlation_id = str(uuid.uuid4())
        log = self._get_logger(correlation_id)

        if not items or shipping_info is None or payment_method is None:
            raise ValidationFailure("Required fields are missing")

        log.info("order_requested",
                 user_id=user_id,
                 method=payment_method.value,
                 line_count=len(items),
                 total_price=price.total_price)

        line_items = await self._snapshot_line_items(items)
        self._validate_prices(line_items, price)

        if payment_method == PaymentMethod.CARD and price.total_price <= 0:
            raise ValidationFailure("Card payments require a positive total")

        order = Order(
            user_id=user_id,
            correlation_id=correlation_id,
            shipping_info=shipping_info,
            order_items=line_items,
            payment_info=PaymentInfo(method=payment_method),
            items_price=price.items_price,
            tax_price=price.tax_price,
            shipping_price=price.shipping_price,
            total_price=price.total_price,
        )

        if payment_method == PaymentMethod.CARD:
            return await self._create_card_order(order, log)
        return await self._create_cash_order(order, log)

    async def _snapshot_line_items(self, items: List[OrderItemRequest]) -> List[LineItem]:
        # Same product twice in one cart is checked as a single quantity.
        merged: Dict[str, int] = {}
        for item in items:
            merged[item.product_id] = merged.get(item.product_id, 0) + item.quantity

        line_items = []
        for product_id, quantity in merged.items():
            product = await self.catalog.get_product(product_id)
            if product is None:
                raise NotFoundError("Product", product_id)

            if not await self.inventory.check_available(product_id, quantity):
                available = await self.inventory.get_stock(product_id) or 0
                raise InsufficientStockError(product_id, quantity, available, product.name)

            line_items.append(LineItem(
                product_id=product.product_id,
                name=product.name,
                unit_price=product.price,
                image=product.primary_image,
                quantity=quantity,
            ))
        return line_items

    @staticmethod
    def _validate_prices(line_items: List[LineItem], price: PriceBreakdown) -> None:
        subtotal = sum(item.line_total for item in line_items)
        if price.items_price != subtotal:
            raise ValidationFailure(
                "Items price does not match current product prices",
                {"expected": subtotal, "received": price.items_price},
            )
        expected_total = price.items_price + price.tax_price + price.shipping_price
        if price.total_price != expected_total:
            raise ValidationFailure(
                "Total price does not match price breakdown",
                {"expected": expected_total, "received": price.total_price},
            )

    async def _create_card_order(self, order: Order, log) -> OrderCreated:
        intent = await self.gateway.create_payment_intent(
            amount=order.total_price,
            currency=self.currency,
            metadata={
                "order_id": order.order_id,
                "user_id": order.user_id,
                "correlation_id": order.correlation_id,
            },
            idempotency_key=f"order:{order.order_id}",
        )

        order = order.model_copy(update={
            "payment_info": order.payment_info.model_copy(update={"id": intent.id}),
        })
        await self.orders.insert(order)

        await self._emit_audit(
            AuditEventType.ORDER_CREATED, order.order_id, order.correlation_id,
            new_state={"status": order.status.value, "total_price": order.total_price},
            actor="user",
        )
        await self._emit_audit(
            AuditEventType.PAYMENT_INITIATED, intent.id, order.correlation_id,
            entity_type="payment",
            metadata={"order_id": order.order_id, "amount": order.total_price, "currency": self.currency},
        )

        log.info("order_created",
                 order_id=order.order_id,
                 method="card",
                 payment_intent_id=intent.id)

        return OrderCreated(order=order, client_secret=intent.client_secret)

    async def _create_cash_order(self, order: Order, log) -> OrderCreated:
        order = order.model_copy(update={
            "payment_info": order.payment_info.model_copy(update={"id": CASH_ON_DELIVERY_REFERENCE}),
        })
        await self.orders.insert(order)

        lock = await self._get_order_lock(order.order_id)
        async with lock:
            try:
                await self._commit_stock(order, log)
            except InsufficientStockError:
                await self.orders.delete(order.order_id)
                log.warning("order_rejected_stock_race", order_id=order.order_id)
                raise

            ensure_transition(order.status, OrderStatus.PROCESSING, Trigger.SETTLEMENT)
            processing = order.evolve(status=OrderStatus.PROCESSING, stock_committed=True)
            if not await self.orders.compare_and_set(processing, OrderStatus.CREATED, order.version):
                await self._restock(order, log)
                raise ConflictError("Order changed while being created", {"order_id": order.order_id})

        await self._emit_audit(
            AuditEventType.ORDER_CREATED, processing.order_id, processing.correlation_id,
            new_state={"status": processing.status.value, "total_price": processing.total_price},
            actor="user",
        )
        await self._emit_audit(
            AuditEventType.STOCK_COMMITTED, processing.order_id, processing.correlation_id,
            metadata={"items": self._quantities(processing)},
        )

        log.info("order_created",
                 order_id=processing.order_id,
                 method="cash_on_delivery",
                 status=processing.status.value)

        return OrderCreated(order=processing)

    # =========================================================================
    # INVENTORY COMMIT / COMPENSATION
    # =========================================================================

    @staticmethod
    def _quantities(order: Order) -> Dict[str, int]:
        return {item.product_id: item.quantity for item in order.order_items}

    async def _commit_stock(self, order: Order, log) -> None:
        """Decrement every line item, or none of them."""
        taken: List[LineItem] = []
        try:
            for item in order.order_items:
                await self.inventory.decrement(item.product_id, item.quantity)
                taken.append(item)
        except (InsufficientStockError, NotFoundError) as e:
            for item in taken:
                await self.inventory.increment(item.product_id, item.quantity)
            log.warning("stock_commit_failed",
                        order_id=order.order_id,
                        error=str(e),
                        rolled_back=len(taken))
            if isinstance(e, NotFoundError):
                failed = order.order_items[len(taken)]
                raise InsufficientStockError(failed.product_id, failed.quantity, 0, failed.name) from e
            raise

    async def _restock(self, order: Order, log) -> None:
        for item in order.order_items:
            restored = await self.inventory.increment(item.product_id, item.quantity)
            if restored is None:
                log.warning("restock_skipped_missing_product",
                            order_id=order.order_id,
                            product_id=item.product_id,
                            quantity=item.quantity)

        await self._emit_audit(
            AuditEventType.STOCK_RESTORED, order.order_id, order.correlation_id,
            metadata={"items": self._quantities(order)},
        )
        log.info("stock_restored", order_id=order.order_id)

    async def _refund(self, order: Order, log) -> Order:
        """
        Refund a captured card payment. Never raises for gateway failures:
        the order is marked `refund_pending` and left for the retry task.
        """
        payment = order.payment_info
        if payment.method != PaymentMethod.CARD:
            return order
        if payment.status not in (PaymentStatus.SUCCEEDED, PaymentStatus.REFUND_PENDING):
            return order

        attempts = payment.refund_attempts + 1
        try:
            refund_id = await self.gateway.refund(payment.id)
        except Exception as e:
            updated = await self._record_refund(
                order, log,
                status=PaymentStatus.REFUND_PENDING,
                refund_attempts=attempts,
                last_refund_error=str(e),
            )
            await self._emit_audit(
                AuditEventType.REFUND_FAILED, payment.id, order.correlation_id,
                entity_type="payment",
                metadata={"order_id": order.order_id, "attempt": attempts, "error": str(e)},
            )
            log.error("refund_failed",
                      order_id=order.order_id,
                      payment_reference=payment.id,
                      attempt=attempts,
                      error=str(e))
            return updated

        updated = await self._record_refund(
            order, log,
            status=PaymentStatus.REFUNDED,
            refund_id=refund_id,
            refund_attempts=attempts,
            last_refund_error=None,
        )
        await self._emit_audit(
            AuditEventType.PAYMENT_REFUNDED, payment.id, order.correlation_id,
            entity_type="payment",
            metadata={"order_id": order.order_id, "refund_id": refund_id, "amount": order.total_price},
        )
        log.info("refund_issued", order_id=order.order_id, refund_id=refund_id)
        return updated

    async def _record_refund(self, order: Order, log, **changes: Any) -> Order:
        """
        Persist a refund outcome with a version-guarded write. On a lost
        race the order is re-read and the outcome applied to the newer copy,
        unless another writer already recorded the refund.
        """
        for _ in range(config.WRITE_RETRIES):
            updated = order.with_payment(**changes)
            if await self.orders.compare_and_set(updated, order.status, order.version):
                return updated

            current = await self.orders.get(order.order_id)
            if current is None:
                log.warning("refund_recorded_on_deleted_order", order_id=order.order_id)
                return updated
            if current.payment_info.status == PaymentStatus.REFUNDED:
                return current
            order = current

        raise ConflictError("Order changed concurrently, retry", {"order_id": order.order_id})

    # =========================================================================
    # SETTLEMENT
    # =========================================================================

    async def settle_payment(
        self,
        order_id: str,
        verified_status: str,
        gateway_reference: str,
        actor: str = "system",
    ) -> SettlementResult:
        """
        Mark payment succeeded, move the order to `processing` and commit
        stock, exactly once. Re-entry returns `already_settled` untouched.

        `verified_status` must come from the gateway, never from the client.
        """
        lock = await self._get_order_lock(order_id)
        async with lock:
            order = await self._load(order_id)
            log = self._get_logger(order.correlation_id)

            if order.status == OrderStatus.CANCELLED:
                if (
                    verified_status == PaymentStatus.SUCCEEDED.value
                    and order.payment_info.id == gateway_reference
                    and order.payment_info.status in (PaymentStatus.PENDING, PaymentStatus.FAILED)
                ):
                    # Paid after an admin cancelled it: give the money back
                    log.warning("payment_captured_after_cancellation", order_id=order_id)
                    captured = order.with_payment(status=PaymentStatus.SUCCEEDED, paid_at=utcnow())
                    if await self.orders.compare_and_set(captured, OrderStatus.CANCELLED, order.version):
                        await self._refund(captured, log)
                raise ConflictError("Order has been cancelled", {"order_id": order_id})
            if order.payment_info.method != PaymentMethod.CARD:
                raise ConflictError("Order is not paid by card", {"order_id": order_id})

            if order.is_paid or order.status in SETTLED_STATES:
                if order.payment_info.id != gateway_reference:
                    log.warning("settlement_reference_mismatch",
                                order_id=order_id,
                                stored=order.payment_info.id,
                                received=gateway_reference)
                log.info("payment_already_settled", order_id=order_id, actor=actor)
                return await self._settlement_result(order, ALREADY_SETTLED)

            if order.payment_info.id != gateway_reference:
                raise ConflictError(
                    "Payment reference does not match this order",
                    {"order_id": order_id},
                )

            if verified_status != PaymentStatus.SUCCEEDED.value:
                log.info("settlement_rejected", order_id=order_id, gateway_status=verified_status)
                raise ConflictError("Payment not succeeded", {"status": verified_status})

            ensure_transition(order.status, OrderStatus.PROCESSING, Trigger.SETTLEMENT)

            claimed = order.evolve(
                status=OrderStatus.PROCESSING,
                payment_info=order.payment_info.model_copy(update={
                    "status": PaymentStatus.SUCCEEDED,
                    "paid_at": utcnow(),
                }),
            )
            if not await self.orders.compare_and_set(claimed, OrderStatus.CREATED, order.version):
                current = await self._load(order_id)
                if current.is_paid:
                    log.info("payment_settled_elsewhere", order_id=order_id)
                    return await self._settlement_result(current, ALREADY_SETTLED)
                raise ConflictError("Order changed during settlement", {"order_id": order_id})

            try:
                await self._commit_stock(claimed, log)
            except InsufficientStockError as e:
                await self._abort_settlement(claimed, log)
                raise ConflictError(
                    "Insufficient stock to fulfil order; payment will be refunded",
                    {"order_id": order_id, **(e.data or {})},
                ) from e

            committed = await self._mark_stock_committed(claimed, log)
            if committed is None:
                raise ConflictError("Order changed during settlement", {"order_id": order_id})

            await self._emit_audit(
                AuditEventType.PAYMENT_SETTLED, order_id, order.correlation_id,
                previous_state={"status": order.status.value, "payment_status": order.payment_info.status.value},
                new_state={"status": committed.status.value, "payment_status": committed.payment_info.status.value},
                metadata={"payment_reference": gateway_reference},
                actor=actor,
            )
            await self._emit_audit(
                AuditEventType.STOCK_COMMITTED, order_id, order.correlation_id,
                metadata={"items": self._quantities(committed)},
            )

            log.info("payment_settled",
                     order_id=order_id,
                     payment_reference=gateway_reference,
                     actor=actor)

            await self._generate_receipt(committed, log)
            return await self._settlement_result(committed, SETTLED)

    async def _mark_stock_committed(self, claimed: Order, log) -> Optional[Order]:
        """
        Record the stock taken for a claimed order. Another process may have
        moved the order meanwhile without seeing committed stock: a live
        order keeps the stock, a cancelled or deleted one gets it back.
        """
        current = claimed
        for _ in range(config.WRITE_RETRIES):
            committed = current.evolve(stock_committed=True)
            if await self.orders.compare_and_set(committed, current.status, current.version):
                return committed

            current = await self.orders.get(claimed.order_id)
            if current is None or current.status == OrderStatus.CANCELLED:
                log.warning("settlement_overtaken", order_id=claimed.order_id)
                await self._restock(claimed, log)
                return None

        log.error("stock_commit_unrecorded", order_id=claimed.order_id)
        await self._restock(claimed, log)
        return None

    async def _abort_settlement(self, claimed: Order, log) -> Order:
        """Lost the race for the last unit: cancel and refund, nothing to restock."""
        ensure_transition(claimed.status, OrderStatus.CANCELLED, Trigger.STOCK_CONFLICT)
        cancelled = claimed.evolve(status=OrderStatus.CANCELLED)
        if not await self.orders.compare_and_set(cancelled, OrderStatus.PROCESSING, claimed.version):
            # Whoever changed it took over compensation
            log.warning("auto_cancel_overtaken", order_id=claimed.order_id)
            return await self._load(claimed.order_id)

        await self._emit_audit(
            AuditEventType.ORDER_AUTO_CANCELLED, cancelled.order_id, cancelled.correlation_id,
            previous_state={"status": claimed.status.value},
            new_state={"status": cancelled.status.value},
            metadata={"reason": "insufficient_stock"},
        )
        log.warning("order_auto_cancelled", order_id=cancelled.order_id, reason="insufficient_stock")

        return await self._refund(cancelled, log)

    async def _generate_receipt(self, order: Order, log) -> None:
        if self.receipts is None:
            return
        try:
            await self.receipts.generate(order)
        except Exception as e:
            # Receipt failure never undoes a settlement.
            log.error("receipt_generation_failed", order_id=order.order_id, error=str(e))

    async def _settlement_result(self, order: Order, status: str) -> SettlementResult:
        link = None
        if self.receipts is not None and await self.receipts.get(order.order_id) is not None:
            link = config.RECEIPT_LINK.format(order_id=order.order_id)
        return SettlementResult(order=order, status=status, receipt_download_link=link)

    # =========================================================================
    # CLIENT CONFIRMATION
    # =========================================================================

    async def confirm_payment(self, identity: Identity, order_id: str, payment_reference: str) -> SettlementResult:
        order = await self._load(order_id)
        log = self._get_logger(order.correlation_id)

        if order.user_id != identity.user_id:
            raise AuthorizationError("Not authorized to update this order")
        if order.payment_info.method != PaymentMethod.CARD:
            raise ConflictError("Order is not paid by card", {"order_id": order_id})
        if order.payment_info.id != payment_reference:
            raise ConflictError("Payment reference does not match this order", {"order_id": order_id})

        intent = await self.gateway.retrieve_payment_intent(payment_reference)

        intent_order = intent.metadata.get("order_id")
        if intent_order is not None and intent_order != order_id:
            raise ConflictError("Payment belongs to a different order", {"order_id": order_id})
        if intent.amount is not None and intent.amount != order.total_price:
            log.warning("amount_mismatch", order_id=order_id, expected=order.total_price, received=intent.amount)

        return await self.settle_payment(order_id, intent.status, intent.id, actor="user")

    # =========================================================================
    # WEBHOOK PROCESSING
    # =========================================================================

    async def process_webhook(self, payload: bytes, signature: Optional[str]) -> Dict[str, Any]:
        """
        Verify and dispatch a gateway event.

        Business outcomes are acknowledged so the gateway stops redelivering;
        upstream and storage failures propagate so it tries again.
        """
        # Raises SignatureFailure before anything in the payload is read
        event = self.gateway.verify_webhook_signature(payload, signature, self._webhook_secret)

        event_type = event.get("type", "unknown")
        event_id = event.get("id", "unknown")
        data_object = (event.get("data") or {}).get("object") or {}
        metadata = data_object.get("metadata") or {}
        correlation_id = metadata.get("correlation_id") or str(uuid.uuid4())

        log = self._get_logger(correlation_id)
        log.info("webhook_received", event_type=event_type, event_id=event_id)

        await self._emit_audit(
            AuditEventType.WEBHOOK_RECEIVED, event_id, correlation_id,
            entity_type="webhook",
            metadata={"event_type": event_type},
            actor="webhook",
        )

        result = await self.router.route(event, correlation_id)
        if result is None:
            return {"status": "ignored", "event_id": event_id, "event_type": event_type}
        return {"event_id": event_id, "event_type": event_type, **result}

    def _register_handlers(self):
        """Register all webhook handlers"""

        @self.router.register("payment_intent.succeeded")
        async def handle_intent_succeeded(event: dict, correlation_id: str):
            intent = event["data"]["object"]
            order_id = (intent.get("metadata") or {}).get("order_id")
            return await self._settle_from_webhook(order_id, intent.get("status", ""), intent.get("id"), correlation_id)

        @self.router.register("checkout.session.completed")
        async def handle_checkout_completed(event: dict, correlation_id: str):
            session = event["data"]["object"]
            order_id = (session.get("metadata") or {}).get("order_id")
            paid = session.get("payment_status") == "paid"
            status = PaymentStatus.SUCCEEDED.value if paid else str(session.get("payment_status"))
            return await self._settle_from_webhook(order_id, status, session.get("payment_intent"), correlation_id)

        @self.router.register("payment_intent.payment_failed")
        async def handle_payment_failed(event: dict, correlation_id: str):
            return await self._on_payment_failed(event["data"]["object"], correlation_id)

        @self.router.register("charge.refunded")
        async def handle_charge_refunded(event: dict, correlation_id: str):
            return await self._on_charge_refunded(event["data"]["object"], correlation_id)

    async def _settle_from_webhook(
        self,
        order_id: Optional[str],
        status: str,
        reference: Optional[str],
        correlation_id: str,
    ) -> Dict[str, Any]:
        log = self._get_logger(correlation_id)
        if not order_id or not reference:
            log.warning("webhook_missing_order_reference", order_id=order_id, reference=reference)
            return {"status": "ignored", "reason": "missing_order_reference"}

        try:
            result = await self.settle_payment(order_id, status, reference, actor="webhook")
        except NotFoundError:
            log.warning("webhook_order_not_found", order_id=order_id)
            return {"status": "order_not_found", "order_id": order_id}
        except ConflictError as e:
            log.warning("webhook_settlement_rejected", order_id=order_id, reason=e.message)
            return {"status": "rejected", "order_id": order_id, "reason": e.message}

        return {"status": result.status, "order_id": order_id}

    async def _on_payment_failed(self, intent: dict, correlation_id: str) -> Dict[str, Any]:
        log = self._get_logger(correlation_id)
        order_id = (intent.get("metadata") or {}).get("order_id")
        error = intent.get("last_payment_error") or {}

        if not order_id:
            return {"status": "ignored", "reason": "missing_order_reference"}

        lock = await self._get_order_lock(order_id)
        async with lock:
            order = await self.orders.get(order_id)
            if order is None:
                log.warning("webhook_order_not_found", order_id=order_id)
                return {"status": "order_not_found", "order_id": order_id}

            # Never downgrade a settled payment on out-of-order delivery
            if order.status == OrderStatus.CREATED and order.payment_info.status == PaymentStatus.PENDING:
                failed = order.with_payment(status=PaymentStatus.FAILED)
                if not await self.orders.compare_and_set(failed, OrderStatus.CREATED, order.version):
                    log.info("payment_failure_superseded", order_id=order_id)

        await self._emit_audit(
            AuditEventType.PAYMENT_FAILED, intent.get("id", "unknown"), correlation_id,
            entity_type="payment",
            metadata={
                "order_id": order_id,
                "error_code": error.get("code"),
                "decline_code": error.get("decline_code"),
            },
            actor="webhook",
        )
        log.warning("payment_failed",
                    order_id=order_id,
                    error_code=error.get("code"),
                    decline_code=error.get("decline_code"))

        return {"status": "payment_failed", "order_id": order_id}

    async def _on_charge_refunded(self, charge: dict, correlation_id: str) -> Dict[str, Any]:
        log = self._get_logger(correlation_id)
        reference = charge.get("payment_intent")
        if not reference:
            return {"status": "ignored", "reason": "missing_payment_reference"}

        order = await self.orders.get_by_payment_reference(reference)
        if order is None:
            log.warning("refund_for_unknown_payment", payment_reference=reference)
            return {"status": "order_not_found"}

        lock = await self._get_order_lock(order.order_id)
        async with lock:
            order = await self._load(order.order_id)
            if order.status != OrderStatus.CANCELLED:
                log.warning("refund_outside_cancellation", order_id=order.order_id, status=order.status.value)
                return {"status": "ignored", "order_id": order.order_id}

            if order.payment_info.status != PaymentStatus.REFUNDED:
                refunded = order.with_payment(status=PaymentStatus.REFUNDED, last_refund_error=None)
                if await self.orders.compare_and_set(refunded, OrderStatus.CANCELLED, order.version):
                    log.info("refund_confirmed", order_id=order.order_id, amount_refunded=charge.get("amount_refunded"))
                else:
                    log.info("refund_confirmation_superseded", order_id=order.order_id)

        return {"status": "refunded", "order_id": order.order_id}

    # =========================================================================
    # ADMINISTRATIVE OPERATIONS
    # =========================================================================

    async def update_status(self, order_id: str, target_status: str, actor: str = "admin") -> Order:
        """
        Move an order along the admin transitions. Cancelling compensates:
        restock iff stock was committed, refund iff a card payment succeeded.
        """
        target = parse_admin_target(target_status)

        lock = await self._get_order_lock(order_id)
        async with lock:
            order = await self._load(order_id)
            log = self._get_logger(order.correlation_id)

            ensure_transition(order.status, target, Trigger.ADMIN)

            changes: Dict[str, Any] = {"status": target}
            if target == OrderStatus.DELIVERED and order.delivered_at is None:
                changes["delivered_at"] = utcnow()
            if target == OrderStatus.CANCELLED:
                changes["stock_committed"] = False

            updated = order.evolve(**changes)
            if not await self.orders.compare_and_set(updated, order.status, order.version):
                raise ConflictError("Order changed concurrently, retry", {"order_id": order_id})

            await self._emit_audit(
                AuditEventType.ORDER_STATUS_CHANGED, order_id, order.correlation_id,
                previous_state={"status": order.status.value},
                new_state={"status": updated.status.value},
                actor=actor,
            )
            log.info("order_status_changed",
                     order_id=order_id,
                     previous=order.status.value,
                     status=updated.status.value)

            if target == OrderStatus.CANCELLED:
                if order.stock_committed:
                    await self._restock(order, log)
                updated = await self._refund(updated, log)

            return updated

    async def delete_order(self, order_id: str, actor: str = "admin") -> Order:
        """
        Remove an order. Stock held by a `processing` order goes back first;
        shipped and delivered goods stay out of inventory. No refund.
        """
        lock = await self._get_order_lock(order_id)
        async with lock:
            order = await self.orders.delete(order_id)
            if order is None:
                raise NotFoundError("Order", order_id)
            log = self._get_logger(order.correlation_id)

            restock = order.status == OrderStatus.PROCESSING and order.stock_committed
            if restock:
                await self._restock(order, log)

            await self._emit_audit(
                AuditEventType.ORDER_DELETED, order_id, order.correlation_id,
                previous_state={"status": order.status.value},
                actor=actor,
            )
            log.info("order_deleted", order_id=order_id, restocked=restock)

        await self._drop_order_lock(order_id)
        return order

    async def retry_pending_refunds(self, limit: int = 20, max_attempts: int = 5) -> int:
        """
        Re-issue refunds left `refund_pending`. Returns how many succeeded.

        An order that reaches `max_attempts` moves to `refund_failed`, which
        takes it out of later batches.
        """
        log = self._get_logger()
        pending = await self.orders.list_by_payment_status(PaymentStatus.REFUND_PENDING, limit)
        refunded = 0

        for candidate in pending:
            lock = await self._get_order_lock(candidate.order_id)
            async with lock:
                order = await self.orders.get(candidate.order_id)
                if order is None or order.payment_info.status != PaymentStatus.REFUND_PENDING:
                    continue
                order_log = self._get_logger(order.correlation_id)

                if order.payment_info.refund_attempts < max_attempts:
                    order = await self._refund(order, order_log)
                    if order.payment_info.status == PaymentStatus.REFUNDED:
                        refunded += 1
                        continue

                if order.payment_info.refund_attempts >= max_attempts:
                    await self._give_up_refund(order, order_log)

        if pending:
            log.info("refund_retry_cycle", pending=len(pending), refunded=refunded)
        return refunded

    async def _give_up_refund(self, order: Order, log) -> None:
        payment = order.payment_info
        failed = await self._record_refund(order, log, status=PaymentStatus.REFUND_FAILED)
        if failed.payment_info.status != PaymentStatus.REFUND_FAILED:
            return

        await self._emit_audit(
            AuditEventType.REFUND_FAILED, payment.id, order.correlation_id,
            entity_type="payment",
            metadata={"order_id": order.order_id, "attempt": payment.refund_attempts, "final": True},
        )
        log.critical("refund_retry_exhausted",
                     order_id=order.order_id,
                     attempts=payment.refund_attempts,
                     last_error=payment.last_refund_error)

    # =========================================================================
    # READS
    # =========================================================================

    async def get_order(self, identity: Identity, order_id: str) -> Order:
        order = await self._load(order_id)
        if not identity.can_access(order):
            raise AuthorizationError("Not authorized to view this order")
        return order

    async def list_user_orders(self, user_id: str) -> List[Order]:
        return await self.orders.list_by_user(user_id)

    async def list_orders(self, page: int = 1, limit: int = 10, status: Optional[OrderStatus] = None) -> OrderPage:
        page = max(page, 1)
        limit = min(max(limit, 1), config.MAX_PAGE_SIZE)
        skip = (page - 1) * limit

        orders = await self.orders.list_page(skip, limit, status)
        total = await self.orders.count(status)
        return OrderPage(
            orders=orders,
            page=page,
            total_pages=(total + limit - 1) // limit,
            total_orders=total,
        )

    async def get_receipt(self, identity: Identity, order_id: str) -> Path:
        await self.get_order(identity, order_id)
        path = await self.receipts.get(order_id) if self.receipts else None
        if path is None:
            raise NotFoundError("Receipt", order_id)
        return path

    async def get_audit_trail(self, correlation_id: str) -> List[AuditLogEntry]:
        return await self.audit.get_by_correlation_id(correlation_id)
