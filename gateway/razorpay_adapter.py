"""
Razorpay webhook adapter

Signature: hex HMAC-SHA256 of the raw body with the webhook secret, sent in
X-Razorpay-Signature. Amounts arrive in paise.
"""

import logging
from decimal import Decimal
from typing import Any, Dict, Mapping, Optional

import aiohttp

from config import Config
from gateway.base import (
    CanonicalEvent, CanonicalStatus, EventKind, GatewayAdapter, billing_period_of, fallback_event_id,
    decimal_to_minor, hmac_hexdigest, lower_headers, minor_to_decimal, signatures_match, to_int, to_user_id
)
from utils.reconciliation_errors import EventParseError, GatewayAPIError

logger = logging.getLogger(__name__)


class RazorpayAdapter(GatewayAdapter):
    name = "razorpay"
    EVENT_ID_HEADER = "x-razorpay-event-id"

    STATUS_MAP = {
        "authenticated": CanonicalStatus.PENDING,
        "activated": CanonicalStatus.ACTIVE,
        "active": CanonicalStatus.ACTIVE,
        "charged": CanonicalStatus.ACTIVE,
        "pending": CanonicalStatus.PAST_DUE,
        "halted": CanonicalStatus.CANCELLED,
        "cancelled": CanonicalStatus.CANCELLED,
        "completed": CanonicalStatus.EXPIRED,
        "expired": CanonicalStatus.EXPIRED,
        "created": CanonicalStatus.PENDING,
    }

    def __init__(self, webhook_secret: Optional[str] = None, key_id: Optional[str] = None,
                 key_secret: Optional[str] = None):
        self.webhook_secret = webhook_secret if webhook_secret is not None else Config.RAZORPAY_WEBHOOK_SECRET
        self.key_id = key_id if key_id is not None else Config.RAZORPAY_KEY_ID
        self.key_secret = key_secret if key_secret is not None else Config.RAZORPAY_KEY_SECRET

    async def verify_signature(self, body: bytes, headers: Mapping[str, str]) -> bool:
        if not self.webhook_secret:
            logger.warning("⚠️ RAZORPAY_WEBHOOK: Webhook secret not configured - rejecting")
            return False
        signature = lower_headers(headers).get("x-razorpay-signature")
        return signatures_match(hmac_hexdigest(self.webhook_secret, body), signature)

    def parse_event(self, payload: Dict[str, Any]) -> CanonicalEvent:
        event_type = payload.get("event")
        if not event_type:
            raise EventParseError(self.name, "missing event type")

        body = payload.get("payload") or {}
        subscription = (body.get("subscription") or {}).get("entity") or {}
        payment = (body.get("payment") or {}).get("entity") or {}
        refund = (body.get("refund") or {}).get("entity") or {}
        dispute = (body.get("dispute") or {}).get("entity") or {}

        event_id = str(payload.get("id") or fallback_event_id(
            event_type, subscription.get("id"), payment.get("id"), refund.get("id"), dispute.get("id"),
            payload.get("created_at"),
        ))

        if event_type.startswith("subscription."):
            return self._subscription_event(event_id, event_type, subscription, payment, payload)

        if event_type == "payment.captured":
            notes = payment.get("notes") or {}
            if notes.get("type") != "credits":
                # Subscription payments are reconciled through subscription.charged
                return self.ignored(event_id, event_type, payload)
            return CanonicalEvent(
                gateway=self.name,
                event_id=event_id,
                event_type=event_type,
                kind=EventKind.CREDIT_PURCHASE,
                user_id=to_user_id(notes.get("userId")),
                payment_id=payment.get("id"),
                amount=minor_to_decimal(payment.get("amount")),
                currency=(payment.get("currency") or "INR").upper(),
                credits=to_int(notes.get("credits")),
                package_id=notes.get("packageId"),
                raw=payload,
            )

        if event_type == "payment.failed":
            notes = payment.get("notes") or {}
            return CanonicalEvent(
                gateway=self.name,
                event_id=event_id,
                event_type=event_type,
                kind=EventKind.PAYMENT_FAILED,
                user_id=to_user_id(notes.get("userId")),
                payment_id=payment.get("id"),
                failure_reason=payment.get("error_description"),
                raw=payload,
            )

        if event_type == "refund.created":
            return CanonicalEvent(
                gateway=self.name,
                event_id=event_id,
                event_type=event_type,
                kind=EventKind.REFUND,
                payment_id=refund.get("payment_id") or payment.get("id"),
                refund_id=refund.get("id"),
                amount=minor_to_decimal(refund.get("amount")),
                currency=(refund.get("currency") or "INR").upper(),
                raw=payload,
            )

        if event_type in ("payment.dispute.created", "payment.dispute.lost"):
            return CanonicalEvent(
                gateway=self.name,
                event_id=event_id,
                event_type=event_type,
                kind=EventKind.DISPUTE,
                payment_id=dispute.get("payment_id") or payment.get("id"),
                dispute_id=dispute.get("id"),
                amount=minor_to_decimal(dispute.get("amount")),
                currency=(dispute.get("currency") or "INR").upper(),
                dispute_reason=dispute.get("reason_code"),
                dispute_status=dispute.get("status"),
                raw=payload,
            )

        return self.ignored(event_id, event_type, payload)

    def _subscription_event(self, event_id: str, event_type: str, subscription: Dict[str, Any],
                            payment: Dict[str, Any], payload: Dict[str, Any]) -> CanonicalEvent:
        notes = subscription.get("notes") or {}
        status = self.map_status(event_type.split(".", 1)[1])
        charged = event_type in ("subscription.activated", "subscription.charged") and payment.get("id")
        return CanonicalEvent(
            gateway=self.name,
            event_id=event_id,
            event_type=event_type,
            kind=EventKind.SUBSCRIPTION_STATUS,
            user_id=to_user_id(notes.get("userId")),
            status=status,
            subscription_id=subscription.get("id"),
            plan_id=notes.get("planId"),
            billing_period=billing_period_of(notes),
            payment_id=payment.get("id") if charged else None,
            amount=minor_to_decimal(payment.get("amount")) if charged else None,
            currency=(payment.get("currency") or "INR").upper() if charged else None,
            raw=payload,
        )

    async def cancel_subscription(self, subscription_id: str) -> None:
        if not (self.key_id and self.key_secret):
            raise GatewayAPIError(self.name, "API credentials not configured")
        url = f"{Config.RAZORPAY_API_BASE}/subscriptions/{subscription_id}/cancel"
        timeout = aiohttp.ClientTimeout(total=Config.GATEWAY_HTTP_TIMEOUT_SECONDS)
        auth = aiohttp.BasicAuth(self.key_id, self.key_secret)
        async with aiohttp.ClientSession(timeout=timeout) as session:
            async with session.post(url, json={"cancel_at_cycle_end": 0}, auth=auth) as response:
                if response.status >= 400:
                    raise GatewayAPIError(self.name, await response.text(), response.status)
        logger.info(f"✅ RAZORPAY: Cancelled subscription {subscription_id}")

    async def refund_payment(self, payment_id: str, amount: Decimal, currency: str) -> Optional[str]:
        if not (self.key_id and self.key_secret):
            raise GatewayAPIError(self.name, "API credentials not configured")
        url = f"{Config.RAZORPAY_API_BASE}/payments/{payment_id}/refund"
        timeout = aiohttp.ClientTimeout(total=Config.GATEWAY_HTTP_TIMEOUT_SECONDS)
        auth = aiohttp.BasicAuth(self.key_id, self.key_secret)
        async with aiohttp.ClientSession(timeout=timeout) as session:
            async with session.post(url, json={"amount": decimal_to_minor(amount)}, auth=auth) as response:
                if response.status >= 400:
                    raise GatewayAPIError(self.name, await response.text(), response.status)
                refund = await response.json()
        logger.info(f"✅ RAZORPAY: Refunded {amount} {currency} of {payment_id} ({refund.get('id')})")
        return refund.get("id")
