"""
Tests for gateway signature verification and event translation
"""

import hashlib
import hmac
import json
import time
from decimal import Decimal
from unittest.mock import AsyncMock, patch

import pytest

from gateway.base import CanonicalStatus, EventKind
from gateway.mercadopago_adapter import MercadoPagoAdapter
from gateway.paypal_adapter import PayPalAdapter
from gateway.paystack_adapter import PaystackAdapter
from gateway.razorpay_adapter import RazorpayAdapter
from gateway.registry import get_adapter, register_adapter
from gateway.stripe_adapter import StripeAdapter
from utils.reconciliation_errors import EventParseError


def _hex(secret, message, digestmod=hashlib.sha256):
    return hmac.new(secret.encode(), message, digestmod).hexdigest()


class TestSignatures:

    @pytest.mark.asyncio
    async def test_razorpay(self):
        adapter = RazorpayAdapter(webhook_secret="rzp_whsec")
        body = b'{"event":"payment.captured"}'

        assert await adapter.verify_signature(body, {"X-Razorpay-Signature": _hex("rzp_whsec", body)})
        assert not await adapter.verify_signature(body, {"X-Razorpay-Signature": _hex("other", body)})
        assert not await adapter.verify_signature(body, {})

    @pytest.mark.asyncio
    async def test_unconfigured_secret_rejects(self):
        adapter = RazorpayAdapter(webhook_secret="")
        body = b"{}"
        assert not await adapter.verify_signature(body, {"X-Razorpay-Signature": _hex("", body)})

    @pytest.mark.asyncio
    async def test_paystack_uses_sha512(self):
        adapter = PaystackAdapter(secret_key="sk_test_1")
        body = b'{"event":"charge.success"}'

        assert await adapter.verify_signature(
            body, {"x-paystack-signature": _hex("sk_test_1", body, hashlib.sha512)}
        )
        assert not await adapter.verify_signature(body, {"x-paystack-signature": _hex("sk_test_1", body)})

    @pytest.mark.asyncio
    async def test_mercadopago_manifest(self):
        adapter = MercadoPagoAdapter(webhook_secret="mp_secret", access_token="token")
        body = json.dumps({"type": "payment", "data": {"id": "ABC123"}}).encode()
        manifest = "id:abc123;request-id:req-1;ts:1700000000;".encode()
        headers = {"x-signature": f"ts=1700000000,v1={_hex('mp_secret', manifest)}", "x-request-id": "req-1"}

        assert await adapter.verify_signature(body, headers)
        assert not await adapter.verify_signature(body, {**headers, "x-request-id": "req-2"})
        assert not await adapter.verify_signature(body, {"x-request-id": "req-1"})

    @pytest.mark.asyncio
    async def test_stripe(self):
        adapter = StripeAdapter(webhook_secret="whsec_test", api_key="sk_test")
        body = json.dumps({"id": "evt_1", "object": "event", "type": "charge.refunded"}).encode()
        timestamp = int(time.time())
        signature = _hex("whsec_test", f"{timestamp}.".encode() + body)

        assert await adapter.verify_signature(body, {"Stripe-Signature": f"t={timestamp},v1={signature}"})
        assert not await adapter.verify_signature(body, {"Stripe-Signature": f"t={timestamp},v1={'0' * 64}"})
        assert not await adapter.verify_signature(body, {})


class TestRazorpayEvents:

    def test_credit_purchase(self):
        event = RazorpayAdapter(webhook_secret="s").parse_event({
            "id": "evt_rzp_1",
            "event": "payment.captured",
            "payload": {"payment": {"entity": {
                "id": "pay_1", "amount": 49900, "currency": "inr",
                "notes": {"type": "credits", "userId": "7", "credits": "500", "packageId": "pack_500"},
            }}},
        })

        assert event.kind == EventKind.CREDIT_PURCHASE
        assert event.event_id == "evt_rzp_1"
        assert event.user_id == 7
        assert event.credits == 500
        assert event.amount == Decimal("499.00")
        assert event.currency == "INR"

    def test_subscription_payment_capture_is_ignored(self):
        event = RazorpayAdapter(webhook_secret="s").parse_event({
            "event": "payment.captured",
            "payload": {"payment": {"entity": {"id": "pay_2", "notes": {}}}},
        })
        assert event.kind == EventKind.IGNORED
        assert event.event_id == "payment.captured:pay_2"

    def test_halted_subscription_maps_to_cancelled(self):
        event = RazorpayAdapter(webhook_secret="s").parse_event({
            "event": "subscription.halted",
            "payload": {"subscription": {"entity": {"id": "sub_1", "notes": {"userId": "7"}}}},
        })
        assert event.kind == EventKind.SUBSCRIPTION_STATUS
        assert event.status == CanonicalStatus.CANCELLED
        assert event.subscription_id == "sub_1"

    def test_missing_event_type(self):
        with pytest.raises(EventParseError):
            RazorpayAdapter(webhook_secret="s").parse_event({"payload": {}})


class TestPaystackEvents:

    def test_not_renew_keeps_access(self):
        event = PaystackAdapter(secret_key="k").parse_event({
            "event": "subscription.not_renew",
            "data": {"subscription_code": "SUB_abc", "customer": {"email": "Buyer@Example.com"}},
        })
        assert event.status == CanonicalStatus.ACTIVE
        assert event.cancel_at_period_end is True
        assert event.customer_email == "Buyer@Example.com"

    def test_charge_with_json_metadata(self):
        event = PaystackAdapter(secret_key="k").parse_event({
            "event": "charge.success",
            "data": {
                "id": 99, "reference": "ps_ref_1", "amount": 500000, "currency": "NGN",
                "metadata": json.dumps({"type": "credits", "userId": 3, "credits": 500}),
            },
        })
        assert event.kind == EventKind.CREDIT_PURCHASE
        assert event.payment_id == "ps_ref_1"
        assert event.amount == Decimal("5000.00")


class TestMercadoPagoEvents:

    @pytest.mark.asyncio
    async def test_payment_notification_is_resolved_from_api(self):
        adapter = MercadoPagoAdapter(webhook_secret="s", access_token="token")
        adapter._get = AsyncMock(return_value={
            "id": 123,
            "status": "approved",
            "transaction_amount": 25.5,
            "currency_id": "brl",
            "external_reference": json.dumps({"type": "credits", "userId": 4, "credits": 250}),
        })

        event = adapter.parse_event({"id": 555, "type": "payment", "action": "payment.created", "data": {"id": "123"}})
        assert event.kind == EventKind.CREDIT_PURCHASE
        resolved = await adapter.resolve_event(event)

        adapter._get.assert_awaited_once_with("/v1/payments/123")
        assert resolved.kind == EventKind.CREDIT_PURCHASE
        assert resolved.user_id == 4
        assert resolved.credits == 250
        assert resolved.currency == "BRL"

    @pytest.mark.asyncio
    async def test_refunded_payment_becomes_refund(self):
        adapter = MercadoPagoAdapter(webhook_secret="s", access_token="token")
        adapter._get = AsyncMock(return_value={"id": 123, "status": "refunded", "refunds": [{"id": 77}]})

        resolved = await adapter.resolve_event(adapter.parse_event({"type": "payment", "data": {"id": "123"}}))

        assert resolved.kind == EventKind.REFUND
        assert resolved.refund_id == "77"


class TestRegistry:

    def test_lookup_is_case_insensitive(self):
        assert isinstance(get_adapter("Stripe"), StripeAdapter)
        assert get_adapter("bitcoin") is None

    def test_register_replaces_adapter(self):
        replacement = RazorpayAdapter(webhook_secret="override")
        register_adapter(replacement)
        assert get_adapter("razorpay") is replacement


class _FakeResponse:
    def __init__(self, status, body):
        self.status = status
        self._body = body

    async def json(self):
        return self._body

    async def text(self):
        return json.dumps(self._body)

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc_info):
        return False


class _FakeClientSession:
    """Stands in for aiohttp.ClientSession; answers posts in order"""

    def __init__(self, *responses):
        self.responses = list(responses)
        self.posts = []

    def __call__(self, *args, **kwargs):
        return self

    def post(self, url, **kwargs):
        self.posts.append((url, kwargs))
        return self.responses.pop(0)

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc_info):
        return False


PAYPAL_HEADERS = {
    "PAYPAL-TRANSMISSION-ID": "tx-1",
    "PAYPAL-TRANSMISSION-TIME": "2024-01-01T00:00:00Z",
    "PAYPAL-TRANSMISSION-SIG": "sig",
    "PAYPAL-CERT-URL": "https://api.paypal.com/cert.pem",
    "PAYPAL-AUTH-ALGO": "SHA256withRSA",
}


class TestPayPal:

    @pytest.fixture
    def adapter(self):
        return PayPalAdapter(client_id="cid", client_secret="csecret", webhook_id="WH-1",
                             api_base="https://api.sandbox.paypal.com")

    @pytest.mark.asyncio
    @pytest.mark.parametrize("verdict,expected", [("SUCCESS", True), ("FAILURE", False)])
    async def test_remote_verification(self, adapter, verdict, expected):
        body = json.dumps({"id": "WH-EVT-1", "event_type": "PAYMENT.CAPTURE.COMPLETED"}).encode()
        session = _FakeClientSession(
            _FakeResponse(200, {"access_token": "token-1"}),
            _FakeResponse(200, {"verification_status": verdict}),
        )

        with patch("gateway.paypal_adapter.aiohttp.ClientSession", session):
            assert await adapter.verify_signature(body, PAYPAL_HEADERS) is expected

        verify_url, verify_kwargs = session.posts[1]
        assert verify_url.endswith("/v1/notifications/verify-webhook-signature")
        assert verify_kwargs["headers"] == {"Authorization": "Bearer token-1"}
        assert verify_kwargs["json"]["webhook_id"] == "WH-1"
        assert verify_kwargs["json"]["transmission_sig"] == "sig"
        assert verify_kwargs["json"]["webhook_event"]["id"] == "WH-EVT-1"

    @pytest.mark.asyncio
    async def test_missing_transmission_headers(self, adapter):
        session = _FakeClientSession()
        headers = {k: v for k, v in PAYPAL_HEADERS.items() if k != "PAYPAL-TRANSMISSION-SIG"}

        with patch("gateway.paypal_adapter.aiohttp.ClientSession", session):
            assert await adapter.verify_signature(b"{}", headers) is False
        assert session.posts == []

    @pytest.mark.asyncio
    async def test_token_failure_rejects(self, adapter):
        session = _FakeClientSession(_FakeResponse(401, {"error": "invalid_client"}))

        with patch("gateway.paypal_adapter.aiohttp.ClientSession", session):
            assert await adapter.verify_signature(b'{"id": "x"}', PAYPAL_HEADERS) is False

    def test_subscription_events(self, adapter):
        custom_id = json.dumps({"userId": 12, "planId": "pro_monthly", "billingPeriod": "annual"})

        activated = adapter.parse_event({
            "id": "WH-1", "event_type": "BILLING.SUBSCRIPTION.ACTIVATED",
            "resource": {"id": "I-SUB1", "custom_id": custom_id},
        })
        suspended = adapter.parse_event({
            "id": "WH-2", "event_type": "BILLING.SUBSCRIPTION.SUSPENDED", "resource": {"id": "I-SUB1"},
        })

        assert activated.kind == EventKind.SUBSCRIPTION_STATUS
        assert activated.status == CanonicalStatus.ACTIVE
        assert activated.user_id == 12
        assert activated.subscription_id == "I-SUB1"
        assert activated.billing_period == "yearly"
        assert suspended.status == CanonicalStatus.PAST_DUE

    def test_credit_capture(self, adapter):
        event = adapter.parse_event({
            "id": "WH-3", "event_type": "PAYMENT.CAPTURE.COMPLETED",
            "resource": {
                "id": "CAP-1",
                "amount": {"value": "9.99", "currency_code": "usd"},
                "custom_id": json.dumps({"type": "credits", "userId": 5, "credits": 100}),
            },
        })

        assert event.kind == EventKind.CREDIT_PURCHASE
        assert event.payment_id == "CAP-1"
        assert event.amount == Decimal("9.99")
        assert event.currency == "USD"
        assert event.credits == 100

    def test_capture_refund_points_at_captured_payment(self, adapter):
        event = adapter.parse_event({
            "id": "WH-4", "event_type": "PAYMENT.CAPTURE.REFUNDED",
            "resource": {
                "id": "RF-1",
                "amount": {"value": "9.99", "currency_code": "USD"},
                "links": [{"rel": "up", "href": "https://api.paypal.com/v2/payments/captures/CAP-1"}],
            },
        })

        assert event.kind == EventKind.REFUND
        assert event.payment_id == "CAP-1"
        assert event.refund_id == "RF-1"

    def test_dispute(self, adapter):
        event = adapter.parse_event({
            "id": "WH-5", "event_type": "CUSTOMER.DISPUTE.CREATED",
            "resource": {
                "dispute_id": "PP-D-1",
                "reason": "UNAUTHORISED",
                "status": "OPEN",
                "dispute_amount": {"value": "9.99", "currency_code": "USD"},
                "disputed_transactions": [{"seller_transaction_id": "CAP-1"}],
            },
        })

        assert event.kind == EventKind.DISPUTE
        assert event.payment_id == "CAP-1"
        assert event.dispute_id == "PP-D-1"
        assert event.dispute_reason == "UNAUTHORISED"

    def test_event_id_required(self, adapter):
        with pytest.raises(EventParseError):
            adapter.parse_event({"event_type": "PAYMENT.CAPTURE.COMPLETED"})

    @pytest.mark.asyncio
    async def test_refund_payment(self, adapter):
        session = _FakeClientSession(
            _FakeResponse(200, {"access_token": "token-1"}),
            _FakeResponse(201, {"id": "RF-9", "status": "COMPLETED"}),
        )

        with patch("gateway.paypal_adapter.aiohttp.ClientSession", session):
            refund_id = await adapter.refund_payment("CAP-1", Decimal("2.5"), "usd")

        assert refund_id == "RF-9"
        url, kwargs = session.posts[1]
        assert url == "https://api.sandbox.paypal.com/v2/payments/captures/CAP-1/refund"
        assert kwargs["json"] == {"amount": {"value": "2.50", "currency_code": "USD"}}


class TestFallbackEventIds:

    def test_paystack_charges_on_one_subscription_differ(self):
        adapter = PaystackAdapter(secret_key="k")

        def invoice_failed(invoice_id, created_at):
            return adapter.parse_event({
                "event": "invoice.payment_failed",
                "data": {"id": invoice_id, "created_at": created_at,
                         "subscription": {"subscription_code": "SUB_abc"}},
            })

        assert invoice_failed(1, "2024-01-01").event_id != invoice_failed(2, "2024-02-01").event_id

    def test_mercadopago_uses_notification_date(self):
        adapter = MercadoPagoAdapter(webhook_secret="s", access_token="token")

        def notification(date_created):
            return adapter.parse_event({
                "type": "subscription_preapproval", "action": "updated",
                "date_created": date_created, "data": {"id": "pre_1"},
            })

        assert notification("2024-01-01T00:00:00Z").event_id != notification("2024-02-01T00:00:00Z").event_id
