import hashlib
import hmac
import json
import time
from typing import Any, Dict, List, Optional

import jwt
import pytest
from fastapi.testclient import TestClient

from api.server import create_app
from pipeline.errors import UpstreamFailure
from pipeline.gateway_adapter import IPaymentGateway, PaymentIntentHandle, StripeGatewayAdapter
from pipeline.inventory import InMemoryProductStore, Product
from pipeline.order_lifecycle import OrderLifecycleEngine
from pipeline.receipts import FileReceiptGenerator
from pipeline.repositories import InMemoryAuditLog, InMemoryOrderRepository
from schemas.order_definitions import (
    Identity,
    OrderItemRequest,
    PaymentMethod,
    PriceBreakdown,
    Role,
    ShippingInfo,
)

WEBHOOK_SECRET = "whsec_test_order_pipeline"
JWT_SECRET = "test-jwt-secret-0123456789abcdef0123456789"

USER_ID = "user_1"
OTHER_USER_ID = "user_2"
ADMIN_ID = "admin_1"


class FakeGateway(IPaymentGateway):
    """In-process gateway. Signature checks go through the real Stripe code."""

    def __init__(self):
        self.intents: Dict[str, PaymentIntentHandle] = {}
        self.created: List[Dict[str, Any]] = []
        self.refund_calls: List[str] = []
        self.fail_create = False
        self.fail_refunds = False
        self._verifier = StripeGatewayAdapter(api_key="sk_test_fake")

    async def create_payment_intent(self, amount, currency, metadata, idempotency_key=None):
        if self.fail_create:
            raise UpstreamFailure("create_payment_intent", "connection reset")
        number = len(self.created) + 1
        intent = PaymentIntentHandle(
            id=f"pi_test_{number}",
            status="requires_payment_method",
            client_secret=f"pi_test_{number}_secret",
            amount=amount,
            currency=currency,
            metadata=dict(metadata),
        )
        self.created.append({
            "amount": amount,
            "currency": currency,
            "metadata": dict(metadata),
            "idempotency_key": idempotency_key,
        })
        self.intents[intent.id] = intent
        return intent

    async def retrieve_payment_intent(self, intent_id):
        if intent_id not in self.intents:
            raise UpstreamFailure("retrieve_payment_intent", "No such payment_intent")
        return self.intents[intent_id]

    async def refund(self, payment_reference):
        self.refund_calls.append(payment_reference)
        if self.fail_refunds:
            raise UpstreamFailure("refund", "card_declined")
        return f"re_{len(self.refund_calls)}"

    def verify_webhook_signature(self, payload, signature_header, secret):
        return self._verifier.verify_webhook_signature(payload, signature_header, secret)

    def mark_succeeded(self, intent_id: str) -> None:
        self.intents[intent_id] = self.intents[intent_id].model_copy(update={"status": "succeeded"})


def sign_payload(payload: str, secret: str = WEBHOOK_SECRET, timestamp: Optional[int] = None) -> str:
    ts = int(time.time()) if timestamp is None else timestamp
    signature = hmac.new(secret.encode(), f"{ts}.{payload}".encode(), hashlib.sha256).hexdigest()
    return f"t={ts},v1={signature}"


def make_event(event_type: str, data_object: Dict[str, Any], event_id: str = "evt_test_1") -> str:
    return json.dumps({
        "id": event_id,
        "object": "event",
        "type": event_type,
        "data": {"object": data_object},
    })


def intent_succeeded_event(order, event_id: str = "evt_test_1") -> str:
    return make_event("payment_intent.succeeded", {
        "id": order.payment_info.id,
        "object": "payment_intent",
        "status": "succeeded",
        "amount": order.total_price,
        "metadata": {
            "order_id": order.order_id,
            "user_id": order.user_id,
            "correlation_id": order.correlation_id,
        },
    }, event_id)


def make_token(user_id: str = USER_ID, role: str = "user", secret: str = JWT_SECRET) -> str:
    return jwt.encode({"_id": user_id, "role": role}, secret, algorithm="HS256")


def auth_header(user_id: str = USER_ID, role: str = "user") -> Dict[str, str]:
    return {"Authorization": f"Bearer {make_token(user_id, role)}"}


SHIPPING = ShippingInfo(address="1 Main St", city="Springfield", postal_code="12345", country="US")


def price_for(store: InMemoryProductStore, lines, tax: int = 0, shipping: int = 0) -> PriceBreakdown:
    items = sum(store._products[product_id].price * quantity for product_id, quantity in lines)
    return PriceBreakdown(items_price=items, tax_price=tax, shipping_price=shipping, total_price=items + tax + shipping)


async def place_order(engine, store, lines=(("widget", 2),), method=PaymentMethod.CARD, user_id=USER_ID):
    return await engine.create_order(
        user_id=user_id,
        shipping_info=SHIPPING,
        items=[OrderItemRequest(product_id=p, quantity=q) for p, q in lines],
        payment_method=method,
        price=price_for(store, lines),
    )


@pytest.fixture
def store():
    return InMemoryProductStore([
        Product(product_id="widget", name="Widget", price=1500, images=["widget.png"], stock=5),
        Product(product_id="gadget", name="Gadget", price=2500, stock=1),
    ])


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def orders():
    return InMemoryOrderRepository()


@pytest.fixture
def audit_log():
    return InMemoryAuditLog()


@pytest.fixture
def receipts(tmp_path):
    return FileReceiptGenerator(str(tmp_path / "receipts"))


@pytest.fixture
def engine(orders, store, gateway, receipts, audit_log):
    return OrderLifecycleEngine(
        orders=orders,
        catalog=store,
        inventory=store,
        gateway=gateway,
        receipts=receipts,
        audit_log=audit_log,
        currency="usd",
        webhook_secret=WEBHOOK_SECRET,
    )


@pytest.fixture
def user():
    return Identity(user_id=USER_ID)


@pytest.fixture
def other_user():
    return Identity(user_id=OTHER_USER_ID)


@pytest.fixture
def admin():
    return Identity(user_id=ADMIN_ID, role=Role.ADMIN)


@pytest.fixture
def client(engine):
    app = create_app(engine=engine, jwt_secret=JWT_SECRET, store="memory", refund_recovery=False)
    with TestClient(app) as test_client:
        yield test_client
