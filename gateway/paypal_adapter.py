"""
PayPal webhook adapter

PayPal signatures cannot be checked locally: the transmission headers and the
event are posted back to /v1/notifications/verify-webhook-signature with an
OAuth client-credentials token. Amounts arrive as decimal strings.
"""

import logging
from decimal import Decimal
from typing import Any, Dict, Mapping, Optional

import aiohttp
import orjson

from config import Config
from gateway.base import (
    CanonicalEvent, CanonicalStatus, EventKind, GatewayAdapter, billing_period_of,
    lower_headers, parse_json_metadata, to_decimal, to_int, to_user_id
)
from utils.reconciliation_errors import EventParseError, GatewayAPIError

logger = logging.getLogger(__name__)

TRANSMISSION_HEADERS = {
    "transmission_id": "paypal-transmission-id",
    "transmission_time": "paypal-transmission-time",
    "transmission_sig": "paypal-transmission-sig",
    "cert_url": "paypal-cert-url",
    "auth_algo": "paypal-auth-algo",
}

SUBSCRIPTION_EVENTS = {
    "BILLING.SUBSCRIPTION.ACTIVATED": CanonicalStatus.ACTIVE,
    "BILLING.SUBSCRIPTION.RENEWED": CanonicalStatus.ACTIVE,
    "BILLING.SUBSCRIPTION.CANCELLED": CanonicalStatus.CANCELLED,
    "BILLING.SUBSCRIPTION.EXPIRED": CanonicalStatus.EXPIRED,
    "BILLING.SUBSCRIPTION.SUSPENDED": CanonicalStatus.PAST_DUE,
    "BILLING.SUBSCRIPTION.PAYMENT.FAILED": CanonicalStatus.PAST_DUE,
}


def _amount(obj: Dict[str, Any]):
    amount = obj.get("amount") or {}
    # Captures/refunds use value+currency_code, sales use total+currency
    value = amount.get("value", amount.get("total"))
    currency = amount.get("currency_code") or amount.get("currency")
    return to_decimal(value), (currency or "USD").upper()


class PayPalAdapter(GatewayAdapter):
    name = "paypal"

    STATUS_MAP = {
        "active": CanonicalStatus.ACTIVE,
        "approved": CanonicalStatus.ACTIVE,
        "approval_pending": CanonicalStatus.PENDING,
        "suspended": CanonicalStatus.PAST_DUE,
        "cancelled": CanonicalStatus.CANCELLED,
        "expired": CanonicalStatus.EXPIRED,
    }

    def __init__(self, client_id: Optional[str] = None, client_secret: Optional[str] = None,
                 webhook_id: Optional[str] = None, api_base: Optional[str] = None):
        self.client_id = client_id if client_id is not None else Config.PAYPAL_CLIENT_ID
        self.client_secret = client_secret if client_secret is not None else Config.PAYPAL_CLIENT_SECRET
        self.webhook_id = webhook_id if webhook_id is not None else Config.PAYPAL_WEBHOOK_ID
        self.api_base = api_base or Config.PAYPAL_API_BASE

    def _timeout(self) -> aiohttp.ClientTimeout:
        return aiohttp.ClientTimeout(total=Config.GATEWAY_HTTP_TIMEOUT_SECONDS)

    async def _access_token(self, session: aiohttp.ClientSession) -> str:
        async with session.post(
            f"{self.api_base}/v1/oauth2/token",
            data={"grant_type": "client_credentials"},
            auth=aiohttp.BasicAuth(self.client_id, self.client_secret),
        ) as response:
            if response.status != 200:
                raise GatewayAPIError(self.name, f"OAuth token request failed: {await response.text()}",
                                      response.status)
            data = await response.json()
            return data["access_token"]

    async def verify_signature(self, body: bytes, headers: Mapping[str, str]) -> bool:
        if not (self.client_id and self.client_secret and self.webhook_id):
            logger.warning("⚠️ PAYPAL_WEBHOOK: Credentials or webhook id not configured - rejecting")
            return False

        lowered = lower_headers(headers)
        transmission = {field: lowered.get(header) for field, header in TRANSMISSION_HEADERS.items()}
        if not all(transmission.values()):
            logger.warning("⚠️ PAYPAL_WEBHOOK: Missing transmission headers")
            return False

        try:
            webhook_event = orjson.loads(body)
        except orjson.JSONDecodeError:
            return False

        verification_request = {**transmission, "webhook_id": self.webhook_id, "webhook_event": webhook_event}
        try:
            async with aiohttp.ClientSession(timeout=self._timeout()) as session:
                token = await self._access_token(session)
                async with session.post(
                    f"{self.api_base}/v1/notifications/verify-webhook-signature",
                    json=verification_request,
                    headers={"Authorization": f"Bearer {token}"},
                ) as response:
                    if response.status != 200:
                        logger.warning(f"⚠️ PAYPAL_WEBHOOK: Verification call returned {response.status}")
                        return False
                    result = await response.json()
        except (aiohttp.ClientError, GatewayAPIError) as e:
            logger.error(f"❌ PAYPAL_WEBHOOK: Verification request failed: {e}")
            return False

        verified = result.get("verification_status") == "SUCCESS"
        if not verified:
            logger.warning("⚠️ PAYPAL_WEBHOOK: Signature verification failed")
        return verified

    def parse_event(self, payload: Dict[str, Any]) -> CanonicalEvent:
        event_type = payload.get("event_type")
        event_id = payload.get("id")
        if not event_type or not event_id:
            raise EventParseError(self.name, "missing event id or event_type")
        resource = payload.get("resource") or {}

        if event_type in SUBSCRIPTION_EVENTS:
            metadata = parse_json_metadata(resource.get("custom_id"))
            return CanonicalEvent(
                gateway=self.name,
                event_id=event_id,
                event_type=event_type,
                kind=EventKind.SUBSCRIPTION_STATUS,
                user_id=to_user_id(metadata.get("userId")),
                status=SUBSCRIPTION_EVENTS[event_type],
                subscription_id=resource.get("id"),
                plan_id=metadata.get("planId"),
                billing_period=billing_period_of(metadata),
                raw=payload,
            )

        if event_type == "PAYMENT.SALE.COMPLETED":
            # Recurring subscription charge - one per billing cycle
            subscription_id = resource.get("billing_agreement_id")
            if not subscription_id:
                return self.ignored(event_id, event_type, payload)
            metadata = parse_json_metadata(resource.get("custom") or resource.get("custom_id"))
            amount, currency = _amount(resource)
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
                payment_id=resource.get("id"),
                amount=amount,
                currency=currency,
                raw=payload,
            )

        if event_type == "PAYMENT.CAPTURE.COMPLETED":
            metadata = parse_json_metadata(resource.get("custom_id"))
            if metadata.get("type") != "credits":
                return self.ignored(event_id, event_type, payload)
            amount, currency = _amount(resource)
            return CanonicalEvent(
                gateway=self.name,
                event_id=event_id,
                event_type=event_type,
                kind=EventKind.CREDIT_PURCHASE,
                user_id=to_user_id(metadata.get("userId")),
                payment_id=resource.get("id"),
                amount=amount,
                currency=currency,
                credits=to_int(metadata.get("credits")),
                package_id=metadata.get("packageId"),
                raw=payload,
            )

        if event_type == "PAYMENT.CAPTURE.REFUNDED":
            amount, currency = _amount(resource)
            return CanonicalEvent(
                gateway=self.name,
                event_id=event_id,
                event_type=event_type,
                kind=EventKind.REFUND,
                payment_id=self._captured_id(resource),
                refund_id=resource.get("id") or event_id,
                amount=amount,
                currency=currency,
                raw=payload,
            )

        if event_type == "CUSTOMER.DISPUTE.CREATED":
            disputed = (resource.get("disputed_transactions") or [{}])[0]
            amount, currency = (
                to_decimal((resource.get("dispute_amount") or {}).get("value")),
                ((resource.get("dispute_amount") or {}).get("currency_code") or "USD").upper(),
            )
            return CanonicalEvent(
                gateway=self.name,
                event_id=event_id,
                event_type=event_type,
                kind=EventKind.DISPUTE,
                payment_id=disputed.get("seller_transaction_id") or disputed.get("buyer_transaction_id"),
                dispute_id=resource.get("dispute_id"),
                amount=amount,
                currency=currency,
                dispute_reason=resource.get("reason"),
                dispute_status=resource.get("status"),
                raw=payload,
            )

        return self.ignored(event_id, event_type, payload)

    @staticmethod
    def _captured_id(refund: Dict[str, Any]) -> Optional[str]:
        """The refunded capture is the 'up' link of the refund resource"""
        for link in refund.get("links") or []:
            if link.get("rel") == "up" and link.get("href"):
                return link["href"].rstrip("/").rsplit("/", 1)[-1]
        return refund.get("capture_id") or refund.get("id")

    async def cancel_subscription(self, subscription_id: str) -> None:
        if not (self.client_id and self.client_secret):
            raise GatewayAPIError(self.name, "API credentials not configured")
        async with aiohttp.ClientSession(timeout=self._timeout()) as session:
            token = await self._access_token(session)
            async with session.post(
                f"{self.api_base}/v1/billing/subscriptions/{subscription_id}/cancel",
                json={"reason": "Switched plan or payment provider"},
                headers={"Authorization": f"Bearer {token}"},
            ) as response:
                if response.status >= 400:
                    raise GatewayAPIError(self.name, await response.text(), response.status)
        logger.info(f"✅ PAYPAL: Cancelled subscription {subscription_id}")

    async def refund_payment(self, payment_id: str, amount: Decimal, currency: str) -> Optional[str]:
        if not (self.client_id and self.client_secret):
            raise GatewayAPIError(self.name, "API credentials not configured")
        async with aiohttp.ClientSession(timeout=self._timeout()) as session:
            token = await self._access_token(session)
            async with session.post(
                f"{self.api_base}/v2/payments/captures/{payment_id}/refund",
                json={"amount": {"value": f"{Decimal(str(amount)):.2f}", "currency_code": currency.upper()}},
                headers={"Authorization": f"Bearer {token}"},
            ) as response:
                if response.status >= 400:
                    raise GatewayAPIError(self.name, await response.text(), response.status)
                refund = await response.json()
        logger.info(f"✅ PAYPAL: Refunded {amount} {currency} of capture {payment_id} ({refund.get('id')})")
        return refund.get("id")
