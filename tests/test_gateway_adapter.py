import time
from types import SimpleNamespace

import pytest
import stripe

from conftest import WEBHOOK_SECRET, make_event, sign_payload
from pipeline.errors import SignatureFailure, UpstreamFailure
from pipeline.gateway_adapter import StripeGatewayAdapter


@pytest.fixture
def adapter():
    return StripeGatewayAdapter(api_key="sk_test_adapter", timeout_seconds=1)


def fake_intent(**overrides):
    values = dict(
        id="pi_123",
        status="requires_payment_method",
        client_secret="pi_123_secret",
        amount=3000,
        currency="usd",
        metadata={"order_id": "o1"},
    )
    values.update(overrides)
    return SimpleNamespace(**values)


class TestPaymentIntents:
    @pytest.mark.asyncio
    async def test_create_passes_key_and_idempotency(self, adapter, monkeypatch):
        calls = []

        def create(**kwargs):
            calls.append(kwargs)
            return fake_intent()

        monkeypatch.setattr(stripe.PaymentIntent, "create", create)

        handle = await adapter.create_payment_intent(3000, "usd", {"order_id": "o1"}, idempotency_key="order:o1")

        assert handle.id == "pi_123"
        assert handle.client_secret == "pi_123_secret"
        assert handle.metadata == {"order_id": "o1"}
        assert calls[0]["api_key"] == "sk_test_adapter"
        assert calls[0]["idempotency_key"] == "order:o1"
        assert calls[0]["amount"] == 3000

    @pytest.mark.asyncio
    async def test_retrieve(self, adapter, monkeypatch):
        monkeypatch.setattr(stripe.PaymentIntent, "retrieve",
                            lambda intent_id, **kwargs: fake_intent(id=intent_id, status="succeeded"))

        handle = await adapter.retrieve_payment_intent("pi_999")

        assert handle.id == "pi_999"
        assert handle.succeeded

    @pytest.mark.asyncio
    async def test_stripe_error_becomes_upstream_failure(self, adapter, monkeypatch):
        def create(**kwargs):
            raise stripe.APIConnectionError("network down")

        monkeypatch.setattr(stripe.PaymentIntent, "create", create)

        with pytest.raises(UpstreamFailure) as exc_info:
            await adapter.create_payment_intent(3000, "usd", {})
        assert exc_info.value.retryable
        assert exc_info.value.status_code == 502

    @pytest.mark.asyncio
    async def test_timeout_becomes_upstream_failure(self, monkeypatch):
        adapter = StripeGatewayAdapter(api_key="sk_test_adapter", timeout_seconds=0.05)

        def slow_retrieve(intent_id, **kwargs):
            time.sleep(0.3)
            return fake_intent()

        monkeypatch.setattr(stripe.PaymentIntent, "retrieve", slow_retrieve)

        with pytest.raises(UpstreamFailure) as exc_info:
            await adapter.retrieve_payment_intent("pi_123")
        assert exc_info.value.detail == "timeout"


class TestRefund:
    @pytest.mark.asyncio
    async def test_refund_is_idempotent_per_payment(self, adapter, monkeypatch):
        calls = []

        def create(**kwargs):
            calls.append(kwargs)
            return SimpleNamespace(id="re_1")

        monkeypatch.setattr(stripe.Refund, "create", create)

        assert await adapter.refund("pi_123") == "re_1"
        assert calls[0]["payment_intent"] == "pi_123"
        assert calls[0]["idempotency_key"] == "refund:pi_123"

    @pytest.mark.asyncio
    async def test_refund_failure(self, adapter, monkeypatch):
        def create(**kwargs):
            raise stripe.InvalidRequestError("charge already refunded", param="payment_intent")

        monkeypatch.setattr(stripe.Refund, "create", create)

        with pytest.raises(UpstreamFailure):
            await adapter.refund("pi_123")


class TestWebhookSignature:
    def test_valid_signature_returns_event(self, adapter):
        payload = make_event("payment_intent.succeeded", {"id": "pi_1", "metadata": {"order_id": "o1"}})

        event = adapter.verify_webhook_signature(payload.encode(), sign_payload(payload), WEBHOOK_SECRET)

        assert event["type"] == "payment_intent.succeeded"
        assert event["data"]["object"]["metadata"]["order_id"] == "o1"

    def test_wrong_secret(self, adapter):
        payload = make_event("payment_intent.succeeded", {"id": "pi_1"})
        with pytest.raises(SignatureFailure):
            adapter.verify_webhook_signature(payload.encode(), sign_payload(payload, "whsec_other"), WEBHOOK_SECRET)

    def test_missing_header(self, adapter):
        with pytest.raises(SignatureFailure):
            adapter.verify_webhook_signature(b"{}", None, WEBHOOK_SECRET)

    def test_unconfigured_secret(self, adapter):
        payload = make_event("payment_intent.succeeded", {"id": "pi_1"})
        with pytest.raises(SignatureFailure):
            adapter.verify_webhook_signature(payload.encode(), sign_payload(payload), "")
