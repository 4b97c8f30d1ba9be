"""
MercadoPago webhook adapter

Notifications only carry a topic and a resource id, so parse_event produces a
preliminary event and resolve_event fetches the payment or preapproval to
learn what actually happened.

Signature: x-signature is "ts=<ts>,v1=<hex>" where v1 is HMAC-SHA256 of the
manifest "id:<data.id>;request-id:<x-request-id>;ts:<ts>;".
"""

import logging
from decimal import Decimal
from typing import Any, Dict, Mapping, Optional, Tuple

import aiohttp

from config import Config
from gateway.base import (
    CanonicalEvent, CanonicalStatus, EventKind, GatewayAdapter, billing_period_of, fallback_event_id,
    hmac_hexdigest, lower_headers, parse_json_metadata, signatures_match, to_decimal,
    to_int, to_user_id
)
from utils.reconciliation_errors import EventParseError, GatewayAPIError

logger = logging.getLogger(__name__)

PAYMENT_TOPICS = ("payment", "payments")
SUBSCRIPTION_TOPICS = ("preapproval", "subscription_preapproval")
DISPUTE_TOPICS = ("chargebacks", "claim", "topic_claims_integration_wh")


def _parse_signature_header(value: Optional[str]) -> Tuple[Optional[str], Optional[str]]:
    ts, v1 = None, None
    for part in (value or "").split(","):
        key, _, val = part.strip().partition("=")
        if key == "ts":
            ts = val
        elif key == "v1":
            v1 = val
    return ts, v1


class MercadoPagoAdapter(GatewayAdapter):
    name = "mercadopago"

    STATUS_MAP = {
        "authorized": CanonicalStatus.ACTIVE,
        "approved": CanonicalStatus.ACTIVE,
        "paused": CanonicalStatus.PAST_DUE,
        "cancelled": CanonicalStatus.CANCELLED,
        "finished": CanonicalStatus.EXPIRED,
        "pending": CanonicalStatus.PENDING,
    }

    def __init__(self, webhook_secret: Optional[str] = None, access_token: Optional[str] = None,
                 api_base: Optional[str] = None):
        self.webhook_secret = webhook_secret if webhook_secret is not None else Config.MERCADOPAGO_WEBHOOK_SECRET
        self.access_token = access_token if access_token is not None else Config.MERCADOPAGO_ACCESS_TOKEN
        self.api_base = api_base or Config.MERCADOPAGO_API_BASE

    async def verify_signature(self, body: bytes, headers: Mapping[str, str]) -> bool:
        if not self.webhook_secret:
            logger.warning("⚠️ MERCADOPAGO_WEBHOOK: Webhook secret not configured - rejecting")
            return False
        lowered = lower_headers(headers)
        ts, v1 = _parse_signature_header(lowered.get("x-signature"))
        request_id = lowered.get("x-request-id")
        if not ts or not v1 or not request_id:
            logger.warning("⚠️ MERCADOPAGO_WEBHOOK: Missing x-signature parts or x-request-id")
            return False

        try:
            payload = self.decode_body(body)
        except EventParseError:
            return False
        data_id = str((payload.get("data") or {}).get("id") or "")
        # Alphanumeric ids are signed lowercased
        manifest = f"id:{data_id.lower()};request-id:{request_id};ts:{ts};"
        expected = hmac_hexdigest(self.webhook_secret, manifest.encode("utf-8"))
        return signatures_match(expected, v1)

    def parse_event(self, payload: Dict[str, Any]) -> CanonicalEvent:
        topic = payload.get("type") or payload.get("topic")
        data = payload.get("data") or {}
        resource_id = data.get("id")
        if not topic or not resource_id:
            raise EventParseError(self.name, "missing notification type or data.id")
        action = payload.get("action") or topic
        event_id = str(payload.get("id") or fallback_event_id(action, resource_id, payload.get("date_created")))

        if topic in PAYMENT_TOPICS:
            kind = EventKind.CREDIT_PURCHASE
        elif topic in SUBSCRIPTION_TOPICS:
            kind = EventKind.SUBSCRIPTION_STATUS
        elif topic in DISPUTE_TOPICS:
            return CanonicalEvent(
                gateway=self.name,
                event_id=event_id,
                event_type=action,
                kind=EventKind.DISPUTE,
                payment_id=str(data.get("payment_id") or payload.get("payment_id") or "") or None,
                dispute_id=str(resource_id),
                dispute_status=payload.get("action"),
                raw=payload,
            )
        else:
            return self.ignored(event_id, action, payload)

        # Preliminary until resolve_event reads the resource
        return CanonicalEvent(
            gateway=self.name,
            event_id=event_id,
            event_type=action,
            kind=kind,
            payment_id=str(resource_id) if kind == EventKind.CREDIT_PURCHASE else None,
            subscription_id=str(resource_id) if kind == EventKind.SUBSCRIPTION_STATUS else None,
            raw=payload,
        )

    async def resolve_event(self, event: CanonicalEvent) -> CanonicalEvent:
        if event.kind == EventKind.CREDIT_PURCHASE:
            payment = await self._get(f"/v1/payments/{event.payment_id}")
            return self._from_payment(event, payment)
        if event.kind == EventKind.SUBSCRIPTION_STATUS:
            preapproval = await self._get(f"/preapproval/{event.subscription_id}")
            return self._from_preapproval(event, preapproval)
        return event

    def _from_payment(self, event: CanonicalEvent, payment: Dict[str, Any]) -> CanonicalEvent:
        status = payment.get("status")
        metadata = parse_json_metadata(payment.get("external_reference")) or payment.get("metadata") or {}
        amount = to_decimal(payment.get("transaction_amount"))
        currency = (payment.get("currency_id") or "BRL").upper()
        payment_id = str(payment.get("id") or event.payment_id)

        if status == "refunded":
            refunds = payment.get("refunds") or []
            refund_id = str(refunds[-1].get("id")) if refunds else f"mercadopago_refund_{payment_id}"
            event.kind = EventKind.REFUND
            event.payment_id = payment_id
            event.refund_id = refund_id
            event.amount = to_decimal(payment.get("transaction_amount_refunded")) or amount
            event.currency = currency
            return event

        if status == "charged_back":
            event.kind = EventKind.DISPUTE
            event.payment_id = payment_id
            event.dispute_id = f"mercadopago_chargeback_{payment_id}"
            event.amount = amount
            event.currency = currency
            event.dispute_reason = payment.get("status_detail")
            event.dispute_status = status
            return event

        if status == "approved" and metadata.get("type") == "credits":
            event.user_id = to_user_id(metadata.get("userId"))
            event.customer_email = (payment.get("payer") or {}).get("email")
            event.payment_id = payment_id
            event.amount = amount
            event.currency = currency
            event.credits = to_int(metadata.get("credits"))
            event.package_id = metadata.get("packageId")
            return event

        if status == "approved" and (payment.get("metadata") or {}).get("preapproval_id"):
            # Recurring charge for a preapproval
            event.kind = EventKind.SUBSCRIPTION_STATUS
            event.status = CanonicalStatus.ACTIVE
            event.user_id = to_user_id(metadata.get("userId"))
            event.subscription_id = payment["metadata"]["preapproval_id"]
            event.plan_id = metadata.get("planId")
            event.billing_period = billing_period_of(metadata)
            event.payment_id = payment_id
            event.amount = amount
            event.currency = currency
            return event

        if status in ("rejected", "cancelled"):
            event.kind = EventKind.PAYMENT_FAILED
            event.user_id = to_user_id(metadata.get("userId"))
            event.payment_id = payment_id
            event.amount = amount
            event.currency = currency
            event.failure_reason = payment.get("status_detail")
            return event

        logger.info(f"ℹ️ MERCADOPAGO_WEBHOOK: Payment {payment_id} in status {status} needs no action")
        event.kind = EventKind.IGNORED
        return event

    def _from_preapproval(self, event: CanonicalEvent, preapproval: Dict[str, Any]) -> CanonicalEvent:
        metadata = parse_json_metadata(preapproval.get("external_reference"))
        recurring = preapproval.get("auto_recurring") or {}
        event.status = self.map_status(preapproval.get("status"))
        event.user_id = to_user_id(metadata.get("userId"))
        event.customer_email = preapproval.get("payer_email")
        event.subscription_id = str(preapproval.get("id") or event.subscription_id)
        event.plan_id = metadata.get("planId")
        event.billing_period = billing_period_of(metadata) or (
            "yearly" if recurring.get("frequency_type") == "months" and recurring.get("frequency") == 12 else None
        )
        return event

    async def _get(self, path: str) -> Dict[str, Any]:
        if not self.access_token:
            raise GatewayAPIError(self.name, "Access token not configured")
        async with aiohttp.ClientSession(
            timeout=aiohttp.ClientTimeout(total=Config.GATEWAY_HTTP_TIMEOUT_SECONDS),
            headers={"Authorization": f"Bearer {self.access_token}"},
        ) as session:
            async with session.get(f"{self.api_base}{path}") as response:
                if response.status >= 400:
                    raise GatewayAPIError(self.name, await response.text(), response.status)
                return await response.json()

    async def cancel_subscription(self, subscription_id: str) -> None:
        if not self.access_token:
            raise GatewayAPIError(self.name, "Access token not configured")
        async with aiohttp.ClientSession(
            timeout=aiohttp.ClientTimeout(total=Config.GATEWAY_HTTP_TIMEOUT_SECONDS),
            headers={"Authorization": f"Bearer {self.access_token}"},
        ) as session:
            async with session.put(
                f"{self.api_base}/preapproval/{subscription_id}", json={"status": "cancelled"}
            ) as response:
                if response.status >= 400:
                    raise GatewayAPIError(self.name, await response.text(), response.status)
        logger.info(f"✅ MERCADOPAGO: Cancelled preapproval {subscription_id}")

    async def refund_payment(self, payment_id: str, amount: Decimal, currency: str) -> Optional[str]:
        if not self.access_token:
            raise GatewayAPIError(self.name, "Access token not configured")
        async with aiohttp.ClientSession(
            timeout=aiohttp.ClientTimeout(total=Config.GATEWAY_HTTP_TIMEOUT_SECONDS),
            headers={"Authorization": f"Bearer {self.access_token}"},
        ) as session:
            async with session.post(
                f"{self.api_base}/v1/payments/{payment_id}/refunds", json={"amount": float(amount)}
            ) as response:
                if response.status >= 400:
                    raise GatewayAPIError(self.name, await response.text(), response.status)
                refund = await response.json()
        logger.info(f"✅ MERCADOPAGO: Refunded {amount} {currency} of payment {payment_id} ({refund.get('id')})")
        return str(refund["id"]) if refund.get("id") is not None else None
