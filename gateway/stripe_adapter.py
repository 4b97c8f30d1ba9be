"""
Stripe webhook adapter

Signature verification goes through stripe.Webhook.construct_event with the
endpoint signing secret. Amounts arrive in cents.
"""

import asyncio
import logging
from decimal import Decimal
from typing import Any, Dict, Mapping, Optional

import stripe

from config import Config
from gateway.base import (
    CanonicalEvent, CanonicalStatus, EventKind, GatewayAdapter, billing_period_of,
    decimal_to_minor, lower_headers, minor_to_decimal, to_int, to_user_id
)
from utils.reconciliation_errors import EventParseError, GatewayAPIError

logger = logging.getLogger(__name__)


def _metadata(obj: Dict[str, Any]) -> Dict[str, Any]:
    return obj.get("metadata") or {}


class StripeAdapter(GatewayAdapter):
    name = "stripe"

    STATUS_MAP = {
        "active": CanonicalStatus.ACTIVE,
        "trialing": CanonicalStatus.ACTIVE,
        "succeeded": CanonicalStatus.ACTIVE,
        "past_due": CanonicalStatus.PAST_DUE,
        "unpaid": CanonicalStatus.CANCELLED,
        "canceled": CanonicalStatus.CANCELLED,
        "cancelled": CanonicalStatus.CANCELLED,
        "incomplete_expired": CanonicalStatus.EXPIRED,
        "incomplete": CanonicalStatus.PENDING,
        "paused": CanonicalStatus.PAST_DUE,
    }

    def __init__(self, webhook_secret: Optional[str] = None, api_key: Optional[str] = None):
        self.webhook_secret = webhook_secret if webhook_secret is not None else Config.STRIPE_WEBHOOK_SECRET
        self.api_key = api_key if api_key is not None else Config.STRIPE_SECRET_KEY

    async def verify_signature(self, body: bytes, headers: Mapping[str, str]) -> bool:
        if not self.webhook_secret:
            logger.warning("⚠️ STRIPE_WEBHOOK: Signing secret not configured - rejecting")
            return False
        signature = lower_headers(headers).get("stripe-signature")
        if not signature:
            return False
        try:
            stripe.Webhook.construct_event(body, signature, self.webhook_secret)
        except (ValueError, stripe.SignatureVerificationError) as e:
            logger.warning(f"⚠️ STRIPE_WEBHOOK: Signature verification failed: {e}")
            return False
        return True

    def parse_event(self, payload: Dict[str, Any]) -> CanonicalEvent:
        event_type = payload.get("type")
        event_id = payload.get("id")
        if not event_type or not event_id:
            raise EventParseError(self.name, "missing event id or type")
        obj = (payload.get("data") or {}).get("object") or {}

        if event_type == "checkout.session.completed":
            return self._checkout_completed(event_id, event_type, obj, payload)

        if event_type in ("invoice.payment_succeeded", "invoice.payment_failed"):
            return self._invoice_event(event_id, event_type, obj, payload)

        if event_type in ("customer.subscription.updated", "customer.subscription.deleted"):
            metadata = _metadata(obj)
            status = (
                CanonicalStatus.CANCELLED if event_type == "customer.subscription.deleted"
                else self.map_status(obj.get("status"))
            )
            return CanonicalEvent(
                gateway=self.name,
                event_id=event_id,
                event_type=event_type,
                kind=EventKind.SUBSCRIPTION_STATUS,
                user_id=to_user_id(metadata.get("userId")),
                status=status,
                subscription_id=obj.get("id"),
                plan_id=metadata.get("planId"),
                billing_period=billing_period_of(metadata),
                cancel_at_period_end=bool(obj.get("cancel_at_period_end")),
                raw=payload,
            )

        if event_type == "charge.refunded":
            refunds = (obj.get("refunds") or {}).get("data") or []
            refund_id = refunds[0].get("id") if refunds else f"stripe_refund_{obj.get('id')}"
            return CanonicalEvent(
                gateway=self.name,
                event_id=event_id,
                event_type=event_type,
                kind=EventKind.REFUND,
                payment_id=obj.get("payment_intent") or obj.get("id"),
                refund_id=refund_id,
                amount=minor_to_decimal(obj.get("amount_refunded")),
                currency=(obj.get("currency") or "usd").upper(),
                raw=payload,
            )

        if event_type == "charge.dispute.created":
            charge = obj.get("charge")
            charge_id = charge.get("id") if isinstance(charge, dict) else charge
            return CanonicalEvent(
                gateway=self.name,
                event_id=event_id,
                event_type=event_type,
                kind=EventKind.DISPUTE,
                payment_id=obj.get("payment_intent") or charge_id,
                dispute_id=obj.get("id"),
                amount=minor_to_decimal(obj.get("amount")),
                currency=(obj.get("currency") or "usd").upper(),
                dispute_reason=obj.get("reason"),
                dispute_status=obj.get("status"),
                raw=payload,
            )

        return self.ignored(event_id, event_type, payload)

    def _checkout_completed(self, event_id: str, event_type: str, session: Dict[str, Any],
                            payload: Dict[str, Any]) -> CanonicalEvent:
        metadata = _metadata(session)
        user_id = to_user_id(metadata.get("userId") or session.get("client_reference_id"))
        payment_id = session.get("payment_intent") or session.get("id")
        amount = minor_to_decimal(session.get("amount_total"))
        currency = (session.get("currency") or "usd").upper()

        if metadata.get("type") == "credits" or session.get("mode") == "payment":
            return CanonicalEvent(
                gateway=self.name,
                event_id=event_id,
                event_type=event_type,
                kind=EventKind.CREDIT_PURCHASE,
                user_id=user_id,
                payment_id=payment_id,
                amount=amount,
                currency=currency,
                credits=to_int(metadata.get("credits")),
                package_id=metadata.get("packageId"),
                raw=payload,
            )

        return CanonicalEvent(
            gateway=self.name,
            event_id=event_id,
            event_type=event_type,
            kind=EventKind.SUBSCRIPTION_STATUS,
            user_id=user_id,
            status=CanonicalStatus.ACTIVE,
            subscription_id=session.get("subscription"),
            plan_id=metadata.get("planId"),
            billing_period=billing_period_of(metadata),
            payment_id=payment_id,
            amount=amount,
            currency=currency,
            raw=payload,
        )

    def _invoice_event(self, event_id: str, event_type: str, invoice: Dict[str, Any],
                       payload: Dict[str, Any]) -> CanonicalEvent:
        details = invoice.get("subscription_details") or {}
        metadata = {**_metadata(invoice), **(details.get("metadata") or {})}
        subscription_id = invoice.get("subscription")
        if isinstance(subscription_id, dict):
            subscription_id = subscription_id.get("id")

        if event_type == "invoice.payment_failed":
            return CanonicalEvent(
                gateway=self.name,
                event_id=event_id,
                event_type=event_type,
                kind=EventKind.SUBSCRIPTION_STATUS,
                user_id=to_user_id(metadata.get("userId")),
                status=CanonicalStatus.PAST_DUE,
                subscription_id=subscription_id,
                amount=minor_to_decimal(invoice.get("amount_due")),
                currency=(invoice.get("currency") or "usd").upper(),
                raw=payload,
            )

        # The first invoice is already recorded by checkout.session.completed
        renewal = invoice.get("billing_reason") != "subscription_create"
        return CanonicalEvent(
            gateway=self.name,
            event_id=event_id,
            event_type=event_type,
            kind=EventKind.SUBSCRIPTION_STATUS,
            user_id=to_user_id(metadata.get("userId")),
            status=CanonicalStatus.ACTIVE,
            subscription_id=subscription_id,
            plan_id=metadata.get("planId"),
            billing_period=billing_period_of(metadata),
            payment_id=(invoice.get("payment_intent") or invoice.get("id")) if renewal else None,
            amount=minor_to_decimal(invoice.get("amount_paid")) if renewal else None,
            currency=(invoice.get("currency") or "usd").upper(),
            raw=payload,
        )

    async def cancel_subscription(self, subscription_id: str) -> None:
        if not self.api_key:
            raise GatewayAPIError(self.name, "API key not configured")
        try:
            await asyncio.to_thread(stripe.Subscription.cancel, subscription_id, api_key=self.api_key)
        except stripe.StripeError as e:
            raise GatewayAPIError(self.name, str(e), getattr(e, "http_status", None))
        logger.info(f"✅ STRIPE: Cancelled subscription {subscription_id}")

    async def refund_payment(self, payment_id: str, amount: Decimal, currency: str) -> Optional[str]:
        if not self.api_key:
            raise GatewayAPIError(self.name, "API key not configured")
        # Legacy charges were stored by charge id, everything newer by payment intent
        target = "charge" if payment_id.startswith("ch_") else "payment_intent"
        try:
            refund = await asyncio.to_thread(
                stripe.Refund.create, amount=decimal_to_minor(amount), api_key=self.api_key, **{target: payment_id}
            )
        except stripe.StripeError as e:
            raise GatewayAPIError(self.name, str(e), getattr(e, "http_status", None))
        logger.info(f"✅ STRIPE: Refunded {amount} {currency} of {payment_id} ({refund.id})")
        return refund.id
