"""
Gateway Adapter Interface
=========================

Each payment gateway is one GatewayAdapter implementation:
- verify_signature: validate the raw webhook body against the gateway's scheme
- parse_event: translate the gateway payload into a CanonicalEvent
- map_status: translate the gateway's native status string into CanonicalStatus

The reconciliation core only ever sees CanonicalEvent/CanonicalStatus.
"""

import hashlib
import hmac
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from enum import Enum
from typing import Any, Dict, Mapping, Optional

import orjson

from utils.reconciliation_errors import EventParseError

logger = logging.getLogger(__name__)


class CanonicalStatus(Enum):
    """Gateway-neutral subscription status vocabulary"""
    ACTIVE = "active"
    PAST_DUE = "past_due"
    CANCELLED = "cancelled"
    EXPIRED = "expired"
    PENDING = "pending"


class EventKind(Enum):
    """What the reconciliation core should do with an event"""
    CREDIT_PURCHASE = "credit_purchase"
    SUBSCRIPTION_STATUS = "subscription_status"
    REFUND = "refund"
    DISPUTE = "dispute"
    PAYMENT_FAILED = "payment_failed"
    IGNORED = "ignored"


@dataclass
class CanonicalEvent:
    """Gateway-neutral webhook event"""
    gateway: str
    event_id: str
    event_type: str
    kind: EventKind
    user_id: Optional[int] = None
    customer_email: Optional[str] = None
    status: Optional[CanonicalStatus] = None
    subscription_id: Optional[str] = None
    plan_id: Optional[str] = None
    billing_period: Optional[str] = None
    cancel_at_period_end: bool = False
    payment_id: Optional[str] = None
    refund_id: Optional[str] = None
    dispute_id: Optional[str] = None
    amount: Optional[Decimal] = None
    currency: Optional[str] = None
    credits: Optional[int] = None
    package_id: Optional[str] = None
    dispute_reason: Optional[str] = None
    dispute_status: Optional[str] = None
    failure_reason: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict, repr=False)


class GatewayAdapter(ABC):
    """Base class for gateway webhook adapters"""

    name: str = ""

    # Native status -> canonical status; subclasses fill this in
    STATUS_MAP: Dict[str, CanonicalStatus] = {}

    @abstractmethod
    async def verify_signature(self, body: bytes, headers: Mapping[str, str]) -> bool:
        """Return True only when the body carries a valid signature"""

    @abstractmethod
    def parse_event(self, payload: Dict[str, Any]) -> CanonicalEvent:
        """Translate a decoded webhook payload into a CanonicalEvent"""

    def map_status(self, gateway_status: Optional[str]) -> CanonicalStatus:
        status = self.STATUS_MAP.get((gateway_status or "").lower())
        if status is None:
            logger.warning(f"⚠️ {self.name.upper()}_STATUS: Unknown status {gateway_status!r}, treating as pending")
            return CanonicalStatus.PENDING
        return status

    async def resolve_event(self, event: CanonicalEvent) -> CanonicalEvent:
        """Fetch anything the notification omitted; most gateways send full objects"""
        return event

    async def cancel_subscription(self, subscription_id: str) -> None:
        """Cancel a subscription on the gateway side"""
        raise NotImplementedError(f"{self.name} subscription cancellation is not supported")

    async def refund_payment(self, payment_id: str, amount: Decimal, currency: str) -> Optional[str]:
        """Refund `amount` of a captured payment; returns the gateway's refund id"""
        raise NotImplementedError(f"{self.name} refunds are not supported")

    def decode_body(self, body: bytes) -> Dict[str, Any]:
        try:
            payload = orjson.loads(body)
        except orjson.JSONDecodeError as e:
            raise EventParseError(self.name, f"body is not valid JSON: {e}")
        if not isinstance(payload, dict):
            raise EventParseError(self.name, "body is not a JSON object")
        return payload

    # Header carrying the gateway's per-delivery event id when the body has none
    EVENT_ID_HEADER: Optional[str] = None

    def stamp_event_id(self, payload: Dict[str, Any], headers: Mapping[str, str]) -> Dict[str, Any]:
        """Copy the header event id into the payload so a queued replay keeps the same id"""
        if self.EVENT_ID_HEADER and not payload.get("id"):
            header_id = lower_headers(headers).get(self.EVENT_ID_HEADER)
            if header_id:
                payload["id"] = header_id
        return payload

    def ignored(self, event_id: str, event_type: str, payload: Dict[str, Any]) -> CanonicalEvent:
        logger.info(f"ℹ️ {self.name.upper()}_WEBHOOK: Unhandled event type {event_type}")
        return CanonicalEvent(self.name, event_id, event_type, EventKind.IGNORED, raw=payload)


# ----------------------------------------------------------------------------
# Helpers shared by the adapters
# ----------------------------------------------------------------------------

def lower_headers(headers: Mapping[str, str]) -> Dict[str, str]:
    return {k.lower(): v for k, v in headers.items()}


def hmac_hexdigest(secret: str, message: bytes, digestmod=hashlib.sha256) -> str:
    return hmac.new(secret.encode("utf-8"), message, digestmod).hexdigest()


def signatures_match(expected: str, provided: Optional[str]) -> bool:
    """Constant-time comparison that tolerates a missing header"""
    if not provided:
        return False
    return hmac.compare_digest(expected.encode("utf-8"), provided.strip().encode("utf-8"))


def fallback_event_id(*parts: Any) -> str:
    """Event id for payloads without one; include something that differs per delivery"""
    return ":".join(str(part) for part in parts if part not in (None, ""))


def to_user_id(value: Any) -> Optional[int]:
    if value is None or value == "":
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def to_int(value: Any, default: int = 0) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def minor_to_decimal(value: Any) -> Optional[Decimal]:
    """Amounts in minor units (cents, paise, kobo) -> Decimal major units"""
    if value is None:
        return None
    try:
        return (Decimal(str(value)) / Decimal(100)).quantize(Decimal("0.01"))
    except InvalidOperation:
        return None


def decimal_to_minor(amount: Decimal) -> int:
    """Decimal major units -> integer minor units for gateway APIs"""
    return int((Decimal(str(amount)) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def to_decimal(value: Any) -> Optional[Decimal]:
    if value is None:
        return None
    try:
        return Decimal(str(value))
    except InvalidOperation:
        return None


def parse_json_metadata(value: Any) -> Dict[str, Any]:
    """custom_id / external_reference carry JSON metadata; anything else yields {}"""
    if isinstance(value, dict):
        return value
    if not value or not isinstance(value, str):
        return {}
    try:
        parsed = orjson.loads(value)
    except orjson.JSONDecodeError:
        return {}
    return parsed if isinstance(parsed, dict) else {}


def billing_period_of(metadata: Mapping[str, Any]) -> Optional[str]:
    """None when the gateway did not say; the reconciler keeps the stored period then"""
    raw = metadata.get("billingPeriod") or metadata.get("billing_period")
    if not raw:
        return None
    period = str(raw).lower()
    return "yearly" if period in ("yearly", "annual", "year") else "monthly"
