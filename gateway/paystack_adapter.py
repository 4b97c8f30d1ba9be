"""
Paystack webhook adapter

Signature: hex HMAC-SHA512 of the raw body keyed with the secret key, sent in
X-Paystack-Signature. Amounts arrive in kobo.
"""

import hashlib
import logging
from decimal import Decimal
from typing import Any, Dict, Mapping, Optional

import aiohttp

from config import Config
from gateway.base import (
    CanonicalEvent, CanonicalStatus, EventKind, GatewayAdapter, billing_period_of, fallback_event_id,
    decimal_to_minor, hmac_hexdigest, lower_headers, minor_to_decimal, parse_json_metadata, signatures_match,
    to_int, to_user_id
)
from utils.reconciliation_errors import EventParseError, GatewayAPIError

logger = logging.getLogger(__name__)


class PaystackAdapter(GatewayAdapter):
    name = "paystack"

    STATUS_MAP = {
        "active": CanonicalStatus.ACTIVE,
        "success": CanonicalStatus.ACTIVE,
        "non-renewing": CanonicalStatus.ACTIVE,
        "attention": CanonicalStatus.PAST_DUE,
        "cancelled": CanonicalStatus.CANCELLED,
        "disabled": CanonicalStatus.CANCELLED,
        "completed": CanonicalStatus.EXPIRED,
    }

    def __init__(self, secret_key: Optional[str] = None):
        self.secret_key = secret_key if secret_key is not None else Config.PAYSTACK_SECRET_KEY

    async def verify_signature(self, body: bytes, headers: Mapping[str, str]) -> bool:
        if not self.secret_key:
            logger.warning("⚠️ PAYSTACK_WEBHOOK: Secret key not configured - rejecting")
            return False
        signature = lower_headers(headers).get("x-paystack-signature")
        expected = hmac_hexdigest(self.secret_key, body, hashlib.sha512)
        return signatures_match(expected, signature)

    def parse_event(self, payload: Dict[str, Any]) -> CanonicalEvent:
        event_type = payload.get("event")
        if not event_type:
            raise EventParseError(self.name, "missing event type")
        data = payload.get("data") or {}
        event_id = str(payload.get("id") or fallback_event_id(
            event_type, data.get("id") or data.get("reference") or data.get("subscription_code"),
            data.get("paid_at") or data.get("created_at") or data.get("createdAt"),
        ))
        customer_email = (data.get("customer") or {}).get("email")

        if event_type == "charge.success":
            return self._charge_success(event_id, event_type, data, customer_email, payload)

        if event_type in ("subscription.create", "subscription.disable", "subscription.not_renew"):
            status = {
                "subscription.create": CanonicalStatus.ACTIVE,
                "subscription.disable": CanonicalStatus.CANCELLED,
                "subscription.not_renew": CanonicalStatus.ACTIVE,
            }[event_type]
            return CanonicalEvent(
                gateway=self.name,
                event_id=event_id,
                event_type=event_type,
                kind=EventKind.SUBSCRIPTION_STATUS,
                customer_email=customer_email,
                status=status,
                subscription_id=data.get("subscription_code"),
                cancel_at_period_end=event_type == "subscription.not_renew",
                raw=payload,
            )

        if event_type == "invoice.payment_failed":
            subscription = data.get("subscription") or {}
            return CanonicalEvent(
                gateway=self.name,
                event_id=event_id,
                event_type=event_type,
                kind=EventKind.SUBSCRIPTION_STATUS,
                customer_email=customer_email,
                status=CanonicalStatus.PAST_DUE,
                subscription_id=subscription.get("subscription_code") or data.get("subscription_code"),
                amount=minor_to_decimal(data.get("amount")),
                currency=(data.get("currency") or "NGN").upper(),
                raw=payload,
            )

        if event_type == "refund.processed":
            reference = data.get("transaction_reference") or (data.get("transaction") or {}).get("reference")
            return CanonicalEvent(
                gateway=self.name,
                event_id=event_id,
                event_type=event_type,
                kind=EventKind.REFUND,
                payment_id=reference,
                refund_id=str(data.get("id") or f"paystack_refund_{reference}"),
                amount=minor_to_decimal(data.get("amount")),
                currency=(data.get("currency") or "NGN").upper(),
                raw=payload,
            )

        if event_type == "charge.dispute.create":
            transaction = data.get("transaction") or {}
            return CanonicalEvent(
                gateway=self.name,
                event_id=event_id,
                event_type=event_type,
                kind=EventKind.DISPUTE,
                payment_id=transaction.get("reference"),
                dispute_id=str(data.get("id")),
                amount=minor_to_decimal(data.get("refund_amount") or transaction.get("amount")),
                currency=(data.get("currency") or transaction.get("currency") or "NGN").upper(),
                dispute_reason=data.get("category") or data.get("reason"),
                dispute_status=data.get("status"),
                raw=payload,
            )

        # charge.dispute.remind / resolve and transfer events need no state change
        return self.ignored(event_id, event_type, payload)

    def _charge_success(self, event_id: str, event_type: str, data: Dict[str, Any],
                        customer_email: Optional[str], payload: Dict[str, Any]) -> CanonicalEvent:
        metadata = parse_json_metadata(data.get("metadata"))
        user_id = to_user_id(metadata.get("userId"))
        reference = data.get("reference")
        amount = minor_to_decimal(data.get("amount"))
        currency = (data.get("currency") or "NGN").upper()

        if metadata.get("type") == "credits":
            return CanonicalEvent(
                gateway=self.name,
                event_id=event_id,
                event_type=event_type,
                kind=EventKind.CREDIT_PURCHASE,
                user_id=user_id,
                customer_email=customer_email,
                payment_id=reference,
                amount=amount,
                currency=currency,
                credits=to_int(metadata.get("credits")),
                package_id=metadata.get("packageId"),
                raw=payload,
            )

        if not metadata.get("planId") and not data.get("plan"):
            return self.ignored(event_id, event_type, payload)

        plan = data.get("plan")
        return CanonicalEvent(
            gateway=self.name,
            event_id=event_id,
            event_type=event_type,
            kind=EventKind.SUBSCRIPTION_STATUS,
            user_id=user_id,
            customer_email=customer_email,
            status=CanonicalStatus.ACTIVE,
            plan_id=metadata.get("planId"),
            billing_period=billing_period_of(metadata)
            or ("yearly" if isinstance(plan, dict) and plan.get("interval") == "annually" else None),
            payment_id=reference,
            amount=amount,
            currency=currency,
            raw=payload,
        )

    async def cancel_subscription(self, subscription_id: str) -> None:
        if not self.secret_key:
            raise GatewayAPIError(self.name, "Secret key not configured")
        headers = {"Authorization": f"Bearer {self.secret_key}"}
        timeout = aiohttp.ClientTimeout(total=Config.GATEWAY_HTTP_TIMEOUT_SECONDS)
        async with aiohttp.ClientSession(timeout=timeout, headers=headers) as session:
            async with session.get(f"{Config.PAYSTACK_API_BASE}/subscription/{subscription_id}") as response:
                if response.status >= 400:
                    raise GatewayAPIError(self.name, await response.text(), response.status)
                details = (await response.json()).get("data") or {}
            async with session.post(
                f"{Config.PAYSTACK_API_BASE}/subscription/disable",
                json={"code": subscription_id, "token": details.get("email_token")},
            ) as response:
                if response.status >= 400:
                    raise GatewayAPIError(self.name, await response.text(), response.status)
        logger.info(f"✅ PAYSTACK: Disabled subscription {subscription_id}")

    async def refund_payment(self, payment_id: str, amount: Decimal, currency: str) -> Optional[str]:
        if not self.secret_key:
            raise GatewayAPIError(self.name, "Secret key not configured")
        headers = {"Authorization": f"Bearer {self.secret_key}"}
        timeout = aiohttp.ClientTimeout(total=Config.GATEWAY_HTTP_TIMEOUT_SECONDS)
        async with aiohttp.ClientSession(timeout=timeout, headers=headers) as session:
            async with session.post(
                f"{Config.PAYSTACK_API_BASE}/refund",
                json={"transaction": payment_id, "amount": decimal_to_minor(amount)},
            ) as response:
                if response.status >= 400:
                    raise GatewayAPIError(self.name, await response.text(), response.status)
                refund = (await response.json()).get("data") or {}
        logger.info(f"✅ PAYSTACK: Refunded {amount} {currency} of {payment_id} ({refund.get('id')})")
        return str(refund["id"]) if refund.get("id") is not None else None
